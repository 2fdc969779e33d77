"""
Question branches.

A branch is a named form pipeline from the questions file. Its role is stored
separately and decides what it is used for:

* Noop: defined in the questions file but not in use.
* Application: applicants submit it while it is open.
* Confirmation: decided applicants are placed in it and RSVP through it.

Application and Confirmation branches have an open/close window.
"""
import logging
from datetime import timedelta
from enum import Enum
from urllib.parse import unquote

from registration import questions as question_schema
from registration.models import parse_datetime, to_iso, utcnow

logger = logging.getLogger(__name__)

BRANCH_TYPES = ('Noop', 'Application', 'Confirmation')


class ApplicationType(Enum):
    APPLICATION = 'Application'
    CONFIRMATION = 'Confirmation'


class NoopBranch:
    type = 'Noop'

    def __init__(self, name: str, location: str, store):
        self.name = name
        self.location = location
        self.store = store
        self.text_blocks = []
        self.questions = []
        self.question_labels = {}

    def __repr__(self):
        return f'{type(self).__name__}(name={self.name!r})'

    def _load_settings(self, settings: dict):
        pass

    def _serialize_settings(self) -> dict:
        return {}

    def load_from_schema(self):
        schema = question_schema.get_question_branch(self.location, self.name)
        self.text_blocks = schema.text
        self.questions = schema.questions
        self.question_labels = {q.name: q.label for q in self.questions}

        doc = self.store.find_branch_config(self.name)
        self._load_settings((doc or {}).get('settings') or {})
        return self

    def save(self):
        self.store.save_branch_config({
            'name': self.name,
            'type': self.type,
            'location': self.location,
            'settings': self._serialize_settings(),
        })
        return self

    def convert_to(self, branch_type: str):
        """Change this branch's role, returning a freshly loaded branch."""
        if branch_type not in BRANCH_TYPES:
            raise ValueError(f'Unknown branch type "{branch_type}"')
        self.save()
        self.store.set_branch_type(self.name, branch_type)
        return BranchConfig(self.store, self.location).load_branch(self.name)


class TimedBranch(NoopBranch):

    def __init__(self, name: str, location: str, store):
        super().__init__(name, location, store)
        now = utcnow()
        self.open = now
        self.close = now

    def _load_settings(self, settings: dict):
        super()._load_settings(settings)
        now = utcnow()
        self.open = parse_datetime(settings.get('open')) or now
        self.close = parse_datetime(settings.get('close')) or now

    def _serialize_settings(self) -> dict:
        settings = super()._serialize_settings()
        settings.update({'open': to_iso(self.open), 'close': to_iso(self.close)})
        return settings

    def is_open(self, now=None) -> bool:
        now = now or utcnow()
        return self.open < now < self.close


class ApplicationBranch(TimedBranch):
    type = 'Application'

    def __init__(self, name: str, location: str, store):
        super().__init__(name, location, store)
        self.allow_anonymous = False
        self.auto_accept = 'disabled'

    def _load_settings(self, settings: dict):
        super()._load_settings(settings)
        self.allow_anonymous = bool(settings.get('allow_anonymous', False))
        self.auto_accept = settings.get('auto_accept') or 'disabled'

    def _serialize_settings(self) -> dict:
        settings = super()._serialize_settings()
        settings.update({'allow_anonymous': self.allow_anonymous, 'auto_accept': self.auto_accept})
        return settings


class ConfirmationBranch(TimedBranch):
    type = 'Confirmation'

    def __init__(self, name: str, location: str, store):
        super().__init__(name, location, store)
        self.uses_rolling_deadline = False
        self.is_acceptance = False
        self.auto_confirm = False

    def _load_settings(self, settings: dict):
        super()._load_settings(settings)
        self.uses_rolling_deadline = bool(settings.get('uses_rolling_deadline', False))
        self.is_acceptance = bool(settings.get('is_acceptance', False))
        self.auto_confirm = bool(settings.get('auto_confirm', False))

    def _serialize_settings(self) -> dict:
        settings = super()._serialize_settings()
        settings.update({
            'uses_rolling_deadline': self.uses_rolling_deadline,
            'is_acceptance': self.is_acceptance,
            'auto_confirm': self.auto_confirm,
        })
        return settings


BRANCH_CLASSES = {
    'Noop': NoopBranch,
    'Application': ApplicationBranch,
    'Confirmation': ConfirmationBranch,
}


class BranchConfig:
    """Loads branches for a questions file, combined with their stored roles."""

    def __init__(self, store, location: str):
        self.store = store
        self.location = location

    def get_names(self) -> list:
        return question_schema.read_branch_names(self.location)

    def get_canonical_name(self, raw_name: str):
        """Match a (possibly URL-encoded) name case-insensitively."""
        raw_name = unquote(raw_name or '').lower()
        return next((name for name in self.get_names() if name.lower() == raw_name), None)

    def load_branch(self, name: str):
        doc = self.store.find_branch_config(name)
        branch_cls = BRANCH_CLASSES.get((doc or {}).get('type'), NoopBranch)
        return branch_cls(name, self.location, self.store).load_from_schema()

    def load_all_branches(self, branch_type: str = 'All') -> list:
        branches = []
        for name in self.get_names():
            branch = self.load_branch(name)
            if branch_type == 'All' or branch.type == branch_type:
                branches.append(branch)
        return branches

    def verify_config(self) -> bool:
        try:
            self.load_all_branches()
        except (question_schema.QuestionsConfigError, OSError, ValueError) as e:
            logger.error(f'Question branches in {self.location} failed verification: {e}')
            return False
        return True

    def get_open_branches(self, branch_type: str, now=None) -> list:
        if branch_type not in ('Application', 'Confirmation'):
            return []
        return [b for b in self.load_all_branches(branch_type) if b.is_open(now)]

    def find_branch(self, branch_name: str):
        """Timed branch matching ``branch_name`` case-insensitively, if any."""
        return next((b for b in self.load_all_branches()
                     if isinstance(b, TimedBranch) and b.name.lower() == (branch_name or '').lower()),
                    None)


def _deadline_window(user: dict, branch_name: str):
    deadline = user.get('confirmation_deadline')
    if deadline and deadline.get('name') == branch_name:
        return parse_datetime(deadline['open']), parse_datetime(deadline['close'])
    return None


def get_open_confirmation_branches(config: BranchConfig, user: dict, now=None) -> list:
    """Confirmation branches open for ``user``, honouring a personal deadline."""
    now = now or utcnow()
    open_branches = []
    for branch in config.load_all_branches('Confirmation'):
        window = _deadline_window(user, branch.name)
        open_at, close_at = window if window else (branch.open, branch.close)
        if open_at < now < close_at:
            open_branches.append(branch)
    return open_branches


def is_branch_open(config: BranchConfig, branch_name: str, user: dict,
                   request_type: ApplicationType, now=None) -> bool:
    now = now or utcnow()
    branch = config.find_branch(branch_name)
    if branch is None:
        return False

    open_at, close_at = branch.open, branch.close
    if request_type == ApplicationType.CONFIRMATION and user:
        window = _deadline_window(user, branch.name)
        if window:
            open_at, close_at = window

    if isinstance(branch, ConfirmationBranch) and branch.auto_confirm:
        return False

    return open_at < now < close_at


def branch_window(config: BranchConfig, branch, user: dict, request_type: ApplicationType):
    """The (open, close) pair that applies to ``user`` for ``branch``."""
    if request_type == ApplicationType.CONFIRMATION and user:
        window = _deadline_window(user, branch.name)
        if window:
            return window
    return branch.open, branch.close


def assign_confirmation_branch(config: BranchConfig, user: dict, branch_name: str, now=None) -> dict:
    """Place ``user`` in a confirmation branch (an admission decision).

    Returns the updated user; the caller persists it and sends email.
    """
    now = now or utcnow()
    branch = config.load_branch(branch_name)
    if not isinstance(branch, ConfirmationBranch):
        raise ValueError(f'"{branch_name}" is not a confirmation branch')

    user['confirmation_branch'] = branch.name
    user['accepted'] = branch.is_acceptance
    user['confirmed'] = False
    user['pre_confirm_email_sent'] = False
    user['confirmation_data'] = []
    user['confirmation_start_time'] = None
    user['confirmation_submit_time'] = None
    user['confirmation_deadline'] = None

    if branch.uses_rolling_deadline:
        window = branch.close - branch.open
        if window < timedelta(0):
            window = timedelta(0)
        user['confirmation_deadline'] = {
            'name': branch.name,
            'open': to_iso(now),
            'close': to_iso(now + window),
        }

    if branch.auto_confirm:
        user['confirmed'] = True
        user['confirmation_submit_time'] = to_iso(now)

    return user


def clear_decision(user: dict) -> dict:
    user['accepted'] = False
    user['confirmed'] = False
    user['pre_confirm_email_sent'] = False
    user['confirmation_branch'] = None
    user['confirmation_data'] = []
    user['confirmation_start_time'] = None
    user['confirmation_submit_time'] = None
    user['confirmation_deadline'] = None
    return user
