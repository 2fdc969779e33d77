"""
Tests for login, signup, email verification, password reset and access control.
"""
import pytest
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from registration.accounts import host_hmac, sign_up


@pytest.fixture
def admin_key(monkeypatch):
    import app as app_module
    monkeypatch.setitem(app_module.config.secrets, 'admin_key', 'test-admin-key')
    return {'Authorization': 'Bearer test-admin-key'}


class TestLogin:

    def test_login_page_renders(self, client):
        response = client.get('/login')
        assert response.status_code == 200
        assert b'Sign up' in response.data

    def test_dashboard_requires_login(self, client):
        response = client.get('/')
        assert response.status_code == 302
        assert '/login' in response.headers['Location']

    def test_login_success(self, client, store):
        user = sign_up(store, 'ada@example.com', 'Ada', 'hunter22')
        user['verified_email'] = True
        store.update_user(user)

        response = client.post('/login', data={'email': 'ada@example.com', 'password': 'hunter22'})
        assert response.status_code == 302
        with client.session_transaction() as sess:
            assert sess['user'] == user['uuid']

    def test_login_wrong_password(self, client, store):
        sign_up(store, 'ada@example.com', 'Ada', 'hunter22')
        response = client.post('/login', data={'email': 'ada@example.com', 'password': 'nope'},
                               follow_redirects=True)
        assert b'Incorrect email or password' in response.data
        with client.session_transaction() as sess:
            assert 'user' not in sess

    def test_login_unverified(self, client, store):
        sign_up(store, 'ada@example.com', 'Ada', 'hunter22')
        response = client.post('/login', data={'email': 'ada@example.com', 'password': 'hunter22'})
        assert b'verify your email' in response.data

    def test_logout(self, client, make_user, login):
        login(make_user())
        response = client.get('/auth/logout')
        assert response.status_code == 302
        with client.session_transaction() as sess:
            assert 'user' not in sess

    def test_deleted_user_session_cleared(self, client, login):
        login({'uuid': 'gone'})
        response = client.get('/')
        assert response.status_code == 302


class TestSignupAndVerification:

    def test_signup_sends_verification(self, client, store, mock_mailer):
        response = client.post('/auth/signup', data={'email': 'new@example.com', 'name': 'New',
                                                     'password': 'pw'})
        assert response.status_code == 302
        user = store.find_user(email='new@example.com')
        assert user['verified_email'] is False
        code = user['local']['verification_code']

        to, subject, html, text = mock_mailer.send.call_args[0]
        assert to == 'new@example.com'
        assert 'Verify your email' in subject
        assert f'/auth/verify/{code}' in html
        assert 'Hi New' in text

    def test_signup_duplicate(self, client, make_user):
        make_user(email='dup@example.com')
        response = client.post('/auth/signup', data={'email': 'dup@example.com', 'name': 'Dup',
                                                     'password': 'pw'}, follow_redirects=True)
        assert b'already in use' in response.data

    def test_verify(self, client, store):
        client.post('/auth/signup', data={'email': 'new@example.com', 'name': 'New', 'password': 'pw'})
        code = store.find_user(email='new@example.com')['local']['verification_code']
        response = client.get(f'/auth/verify/{code}', follow_redirects=True)
        assert b'Thanks for verifying' in response.data
        assert store.find_user(email='new@example.com')['verified_email'] is True

    def test_verify_invalid_code(self, client):
        response = client.get('/auth/verify/bogus', follow_redirects=True)
        assert b'Invalid email verification code' in response.data


class TestPasswordReset:

    def test_reset_flow(self, client, store, mock_mailer):
        user = sign_up(store, 'ada@example.com', 'Ada', 'hunter22')
        user['verified_email'] = True
        store.update_user(user)

        client.post('/auth/forgot', data={'email': 'ada@example.com'})
        code = store.find_user(email='ada@example.com')['local']['reset_code']
        assert f'/auth/forgot/{code}' in mock_mailer.send.call_args[0][2]

        assert client.get(f'/auth/forgot/{code}').status_code == 200
        response = client.post(f'/auth/forgot/{code}', data={'password1': 'new-pass', 'password2': 'new-pass'},
                               follow_redirects=True)
        assert b'Password reset successfully' in response.data

        response = client.post('/login', data={'email': 'ada@example.com', 'password': 'new-pass'})
        assert response.status_code == 302

    def test_reset_mismatch_stays_on_form(self, client, store):
        user = sign_up(store, 'ada@example.com', 'Ada', 'hunter22')
        user['verified_email'] = True
        store.update_user(user)
        client.post('/auth/forgot', data={'email': 'ada@example.com'})
        code = store.find_user(email='ada@example.com')['local']['reset_code']

        response = client.post(f'/auth/forgot/{code}', data={'password1': 'a', 'password2': 'b'})
        assert response.status_code == 302
        assert f'/auth/forgot/{code}' in response.headers['Location']

    def test_invalid_reset_code(self, client):
        response = client.get('/auth/forgot/bogus', follow_redirects=True)
        assert b'Invalid password reset code' in response.data

    def test_forgot_unknown_email(self, client):
        response = client.post('/auth/forgot', data={'email': 'nobody@example.com'}, follow_redirects=True)
        assert b'No account matching' in response.data


class TestValidateHost:

    def test_returns_hmac_of_nonce(self, client):
        import app as app_module
        response = client.get('/auth/validatehost/abc123')
        assert response.status_code == 200
        assert response.get_data(as_text=True) == host_hmac(app_module.config.secrets['session'], 'abc123')


class TestAccessControl:

    def test_admin_api_requires_login(self, client):
        assert client.get('/api/admin/users').status_code == 401

    def test_admin_api_forbidden_for_applicants(self, client, make_user, login):
        login(make_user())
        assert client.get('/api/admin/users').status_code == 403

    def test_admin_api_with_admin_user(self, client, make_user, login):
        login(make_user(email='admin@example.com', admin=True))
        assert client.get('/api/admin/users').status_code == 200

    def test_admin_key(self, client, admin_key):
        assert client.get('/api/admin/users', headers=admin_key).status_code == 200

    def test_wrong_admin_key(self, client, admin_key):
        response = client.get('/api/admin/users', headers={'Authorization': 'Bearer wrong'})
        assert response.status_code == 401

    def test_cannot_submit_for_other_user(self, client, make_user, login):
        other = make_user(email='other@example.com')
        login(make_user())
        response = client.post(f"/api/user/{other['uuid']}/application/Participant", data={})
        assert response.status_code == 403

    def test_admin_page_forbidden(self, client, make_user, login):
        login(make_user())
        assert client.get('/admin').status_code == 403
