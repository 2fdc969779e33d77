"""
Tests for templated email jobs.
"""
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from registration.jobs import EmailQueue, render_templated_email, team_name_for
from registration.models import new_team, new_user


class TestTeamName:

    def test_teams_disabled(self, store):
        store.update_setting('teams_enabled', False)
        assert team_name_for(store, new_user('a@example.com')) == 'Teams not enabled'

    def test_no_team(self, store):
        assert team_name_for(store, new_user('a@example.com')) == 'No team created or joined'

    def test_team(self, store):
        user = new_user('a@example.com')
        team = store.insert_team(new_team('Hackers', user['uuid']))
        user['team_id'] = team['id']
        assert team_name_for(store, user) == 'Hackers'


class TestRender:

    def test_render_templated_email(self, store):
        user = new_user('a@example.com', 'Ada')
        html, text = render_templated_email(store, user, 'Hi **{{name}}** of {{teamName}}', 'HackGT')
        assert html == '<p>Hi <strong>Ada</strong> of No team created or joined</p>'
        assert text == 'Hi Ada of No team created or joined'


class TestEmailQueue:

    def test_synchronous_send(self, store, mock_mailer):
        user = store.insert_user(new_user('a@example.com', 'Ada'))
        jobs = EmailQueue(store, mock_mailer, 'HackGT', synchronous=True)
        assert jobs.enqueue(user['uuid'], 'Welcome', 'Hello {{name}}') is True
        to, subject, html, text = mock_mailer.send.call_args[0]
        assert (to, subject) == ('a@example.com', 'Welcome')
        assert html == '<p>Hello Ada</p>'
        assert text == 'Hello Ada'

    def test_user_reloaded_when_job_runs(self, store, mock_mailer):
        user = store.insert_user(new_user('a@example.com', 'Ada'))
        jobs = EmailQueue(store, mock_mailer, 'HackGT')
        user['name'] = 'Grace'
        store.update_user(user)
        jobs.enqueue(user['uuid'], 'Welcome', 'Hello {{name}}')
        jobs.join()
        assert mock_mailer.send.call_args[0][2] == '<p>Hello Grace</p>'

    def test_missing_user_logged(self, store, mock_mailer, caplog):
        jobs = EmailQueue(store, mock_mailer, 'HackGT', synchronous=True)
        assert jobs.enqueue('no-such-user', 'Welcome', 'Hi') is False
        mock_mailer.send.assert_not_called()
        assert 'no such user' in caplog.text

    def test_failing_job_does_not_stop_worker(self, store, mock_mailer, caplog):
        user = store.insert_user(new_user('a@example.com', 'Ada'))
        mock_mailer.send.side_effect = [RuntimeError('smtp down'), True]
        jobs = EmailQueue(store, mock_mailer, 'HackGT')
        jobs.enqueue(user['uuid'], 'First', 'Hi')
        jobs.enqueue(user['uuid'], 'Second', 'Hi')
        jobs.join()
        assert mock_mailer.send.call_count == 2
        assert 'failed' in caplog.text
