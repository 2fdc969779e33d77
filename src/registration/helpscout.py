"""
HelpScout sidebar integration.

HelpScout posts the customer being viewed and signs the raw body with
HMAC-SHA1 keyed by the shared secret.
"""
import base64
import hashlib
import hmac
import logging

from registration.models import parse_datetime
from registration.questions import QuestionsConfigError

logger = logging.getLogger(__name__)

SUBMIT_TIME_FORMAT = '%d-%b-%Y %I:%M %p'


def compute_signature(secret: str, raw_body: bytes) -> str:
    digest = hmac.new(secret.encode(), raw_body, hashlib.sha1).digest()
    return base64.b64encode(digest).decode()


def verify_signature(secret: str, raw_body: bytes, signature: str) -> bool:
    if not secret or not signature:
        return False
    return hmac.compare_digest(compute_signature(secret, raw_body), signature)


def pretty_question_name(name: str) -> str:
    name = name.replace('-', ' ')
    return name[:1].upper() + name[1:]


def pretty_value(item: dict) -> str:
    value = item.get('value')
    if not value:
        return 'No response'
    if item.get('type') == 'file':
        return value.get('path', '')
    if isinstance(value, list):
        return ', '.join(str(v) for v in value)
    return str(value)


def form_answers(branch_config, items: list, branch_name: str) -> list:
    """Answers to the questions flagged ``showInHelpScout`` in ``branch_name``."""
    canonical = branch_config.get_canonical_name(branch_name)
    if canonical is None:
        return []
    try:
        branch = branch_config.load_branch(canonical)
    except QuestionsConfigError as e:
        logger.warning(f'HelpScout could not load branch {canonical}: {e}')
        return []
    shown = {q.name for q in branch.questions if q.show_in_helpscout}
    return [{'name': pretty_question_name(item['name']), 'pretty_value': pretty_value(item)}
            for item in items or [] if item['name'] in shown]


def _format_time(value):
    parsed = parse_datetime(value)
    return parsed.strftime(SUBMIT_TIME_FORMAT).replace(' 0', ' ') if parsed else None


def user_card(branch_config, user: dict) -> dict:
    """Template context for the sidebar card of ``user``."""
    card = {
        'name': user.get('name'),
        'email': user.get('email'),
        'uuid': user['uuid'],
        'applied': user.get('applied'),
        'accepted': user.get('accepted'),
        'confirmed': user.get('confirmed'),
        'application_branch': user.get('application_branch'),
        'confirmation_branch': user.get('confirmation_branch'),
        'application_submit_time': _format_time(user.get('application_submit_time')),
        'confirmation_submit_time': _format_time(user.get('confirmation_submit_time')),
        'application_questions': [],
        'confirmation_questions': [],
    }
    if user.get('application_branch') and user.get('application_data'):
        card['application_questions'] = form_answers(
            branch_config, user['application_data'], user['application_branch'])
    if user.get('confirmation_branch') and user.get('confirmation_data'):
        card['confirmation_questions'] = form_answers(
            branch_config, user['confirmation_data'], user['confirmation_branch'])
    return card
