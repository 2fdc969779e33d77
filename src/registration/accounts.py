"""
Local email/password accounts.

New accounts must verify their email before they can log in. Admin status is
granted to addresses listed in the config when they verify or log in.
"""
import hashlib
import hmac
import logging
import secrets
from datetime import timedelta

from werkzeug.security import check_password_hash, generate_password_hash

from registration.models import new_user, parse_datetime, to_iso, utcnow
from registration.store import DuplicateEmailError

logger = logging.getLogger(__name__)


class AccountError(ValueError):
    """Login, signup or reset failed. The message is shown to the user."""


def _promote_if_admin(user: dict, admins: list) -> bool:
    if not user.get('admin') and user['email'] in (admins or []):
        user['admin'] = True
        logger.info(f"Adding new admin: {user['email']}")
        return True
    return False


def sign_up(store, email: str, name: str, password: str) -> dict:
    email = (email or '').strip()
    name = (name or '').strip()
    if not email or not name or not password:
        raise AccountError('Missing email, name, or password')
    user = new_user(email, name, local={'hash': generate_password_hash(password)})
    try:
        store.insert_user(user)
    except DuplicateEmailError:
        raise AccountError('That email address is already in use. You may already have an account '
                           'from another login service.')
    return user


def authenticate(store, email: str, password: str, admins: list = None) -> dict:
    """Return the user for valid credentials or raise ``AccountError``."""
    user = store.find_user(email=(email or '').strip())
    if user is None or not (user.get('local') or {}).get('hash'):
        if user is not None:
            raise AccountError('Please log back in with an external provider')
        raise AccountError('Incorrect email or password')
    if not check_password_hash(user['local']['hash'], password or ''):
        raise AccountError('Incorrect email or password')
    if not user.get('verified_email'):
        raise AccountError('You must verify your email before you can sign in')
    if _promote_if_admin(user, admins):
        store.update_user(user)
    return user


def start_verification(store, user: dict) -> str:
    code = secrets.token_hex(32)
    user['local'] = dict(user.get('local') or {}, verification_code=code)
    store.update_user(user)
    return code


def verify_email(store, code: str, admins: list = None):
    """Mark the account holding ``code`` as verified. Returns None for unknown codes."""
    if not code:
        return None
    user = store.find_user(**{'local.verification_code': code})
    if user is None:
        return None
    user['verified_email'] = True
    user['account_confirmed'] = True
    user['local'].pop('verification_code', None)
    _promote_if_admin(user, admins)
    store.update_user(user)
    return user


def request_password_reset(store, email: str, now=None):
    """Start a reset for ``email`` and return ``(user, reset_code)``."""
    email = (email or '').strip()
    if not email:
        raise AccountError('Invalid email')
    user = store.find_user(email=email)
    if user is None:
        raise AccountError('No account matching the email that you submitted was found')
    if not user.get('verified_email'):
        raise AccountError('Please verify your email first')
    if not (user.get('local') or {}).get('hash'):
        raise AccountError('The account with the email that you submitted has no password set. '
                           'Please log in with an external service instead.')
    code = secrets.token_hex(32)
    user['local'].update({
        'reset_requested': True,
        'reset_requested_time': to_iso(now or utcnow()),
        'reset_code': code,
    })
    store.update_user(user)
    return user, code


def find_reset_user(store, code: str):
    if not code:
        return None
    return store.find_user(**{'local.reset_code': code})


def reset_password(store, code: str, password1: str, password2: str,
                   expiration_seconds: int, now=None) -> dict:
    user = find_reset_user(store, code)
    if user is None:
        raise AccountError('Invalid password reset code')

    local = user['local']
    requested = parse_datetime(local.get('reset_requested_time'))
    now = now or utcnow()
    if not local.get('reset_requested') or requested is None \
            or now > requested + timedelta(seconds=expiration_seconds):
        local.update({'reset_code': '', 'reset_requested': False})
        store.update_user(user)
        raise AccountError('Your password reset link has expired. Please request a new one.')

    if not password1 or not password2:
        raise AccountError('Missing new password or confirm password')
    if password1 != password2:
        raise AccountError('Passwords must match')

    local.update({
        'hash': generate_password_hash(password1),
        'reset_code': '',
        'reset_requested': False,
    })
    store.update_user(user)
    return user


def host_hmac(secret: str, nonce: str) -> str:
    """HMAC-SHA256 of ``nonce`` used to prove a host shares the session secret."""
    return hmac.new(secret.encode(), (nonce or '').encode(), hashlib.sha256).hexdigest()


def verification_email(link: str, event_name: str) -> str:
    return (f'Hi {{{{name}}}},\n\n'
            f'Thanks for signing up for {event_name}! To verify your email, please [click here]({link}).\n\n'
            f'Sincerely,\n\nThe {event_name} Team.')


def reset_email(link: str, forgot_link: str, expiration_seconds: int, event_name: str) -> str:
    minutes = max(expiration_seconds // 60, 1)
    return (f'Hi {{{{name}}}},\n\n'
            f'You (or someone who knows your email address) recently asked to reset the password '
            f'for this account: {{{{email}}}}.\n\n'
            f'You can update your password by [clicking here]({link}).\n\n'
            f"If you don't use this link within {minutes} minutes, it will expire and you will have to "
            f'[request a new one]({forgot_link}).\n\n'
            f"If you didn't request a password reset, you can safely disregard this email and no "
            f'changes will be made to your account.\n\n'
            f'Sincerely,\n\nThe {event_name} Team.')
