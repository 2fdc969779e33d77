import uuid as uuid_lib
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value):
    """Serialize a datetime for storage (ISO-8601, UTC)."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_datetime(value):
    """Parse a stored or submitted timestamp. Naive values are taken as UTC."""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def new_user(email: str, name: str = '', **fields) -> dict:
    """Build a user document with every field set to its default."""
    user = {
        'uuid': str(uuid_lib.uuid4()),
        'email': email.strip(),
        'name': (name or '').strip(),
        'verified_email': False,
        'account_confirmed': False,
        'services': {},
        'local': None,

        'applied': False,
        'accepted': False,
        'confirmed': False,
        'pre_confirm_email_sent': False,
        'application_branch': None,
        'application_data': [],
        'application_start_time': None,
        'application_submit_time': None,

        'confirmation_branch': None,
        'confirmation_data': [],
        'confirmation_start_time': None,
        'confirmation_submit_time': None,
        'confirmation_deadline': None,

        'team_id': None,
        'admin': False,
    }
    user.update(fields)
    return user


def new_team(team_name: str, leader_uuid: str) -> dict:
    return {
        'id': str(uuid_lib.uuid4()),
        'team_name': team_name,
        'team_leader': leader_uuid,
        'members': [leader_uuid],
    }


def user_status(user: dict) -> str:
    """Human readable admission status shown in the admin user list."""
    status = 'Signed up'
    if user.get('applied'):
        status = f"Applied ({user.get('application_branch')})"
    if user.get('accepted'):
        status = f"Accepted ({user.get('application_branch')})"
    if user.get('confirmed'):
        status = (f"Accepted ({user.get('application_branch')}) / "
                  f"Attending ({user.get('confirmation_branch')})")
    return status


def login_methods(user: dict) -> list:
    methods = [name for name, info in sorted((user.get('services') or {}).items())
               if info and info.get('id')]
    local = user.get('local') or {}
    if local.get('hash'):
        methods.append('local')
    return methods


def find_item(items: list, name: str):
    """Find a saved form item by question name."""
    return next((item for item in items or [] if item.get('name') == name), None)
