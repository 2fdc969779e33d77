"""
Configuration for the registration system.

Values start from defaults, are overlaid by a YAML config file and finally by
environment variables.
"""
import json
import logging
import os
import secrets

import yaml

logger = logging.getLogger(__name__)

SRC_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
BASE_DIR = os.path.dirname(SRC_DIR)
CONFIG_DIR = os.path.join(SRC_DIR, 'config')

KNOWN_STORAGE_ENGINES = ('disk', 's3')


def _positive_int(raw):
    """Parse a positive integer, returning None for anything else."""
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return None
    return value if value > 0 else None


def _truthy(raw) -> bool:
    return str(raw).strip().lower() == 'true'


class Config:
    """Runtime configuration."""

    def __init__(self, file_name: str = None, environ=None):
        self.secrets = {
            'admin_key': secrets.token_hex(32),
            'session': secrets.token_hex(32),
            'helpscout': '',
        }
        self.email = {
            'from': 'Registration Team <hello@example.com>',
            'smtp_host': '',
            'smtp_port': 587,
            'smtp_user': '',
            'smtp_password': '',
            'smtp_use_tls': True,
        }
        self.server = {
            'is_production': False,
            'port': 3000,
            'version_hash': '',
            'cookie_max_age': 60 * 60 * 24 * 30 * 6,  # 6 months
            'cookie_secure_only': False,
            'data_dir': os.path.join(BASE_DIR, 'data'),
            'password_reset_expiration': 60 * 60,
        }
        self.auth_service = {
            'url': '',
            'cookie': 'groundtruthid',
        }
        self.admins = []
        self.event_name = 'Untitled Event'
        self.storage_engine = {
            'name': 'disk',
            'options': {'upload_directory': 'uploads'},
        }
        self.max_team_size = 4
        self.questions_location = os.path.join(CONFIG_DIR, 'questions.json')

        self.admin_key_set = False
        self.session_secret_set = False

        environ = os.environ if environ is None else environ
        if file_name is None:
            file_name = environ.get('CONFIG_FILE', os.path.join(CONFIG_DIR, 'config.yaml'))
        self.load_from_file(file_name)
        self.load_from_env(environ)
        if not self.server['is_production']:
            self.event_name += ' - Development'

    @property
    def auth_service_enabled(self) -> bool:
        return bool(self.auth_service.get('url'))

    @property
    def helpscout_enabled(self) -> bool:
        return bool(self.secrets.get('helpscout'))

    @property
    def contact_email(self) -> str:
        """Bare address from the configured sender (``Name <addr>`` form)."""
        sender = self.email['from']
        if '<' in sender and sender.endswith('>'):
            return sender[sender.index('<') + 1:-1]
        return sender

    def load_from_file(self, file_name: str):
        if not os.path.exists(file_name):
            return
        with open(file_name, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
        if not data:
            return

        for section in ('secrets', 'email', 'server', 'auth_service'):
            if data.get(section):
                getattr(self, section).update(data[section])
        if data.get('secrets', {}).get('admin_key'):
            self.admin_key_set = True
        if data.get('secrets', {}).get('session'):
            self.session_secret_set = True
        if data.get('admins'):
            self.admins = list(data['admins'])
        if data.get('event_name'):
            self.event_name = data['event_name']
        if data.get('storage_engine'):
            self.storage_engine = data['storage_engine']
            self._check_storage_engine()
        if data.get('max_team_size'):
            self.max_team_size = int(data['max_team_size'])
        if data.get('questions_location'):
            self.questions_location = data['questions_location']

    def load_from_env(self, environ):
        # Secrets
        if environ.get('ADMIN_KEY_SECRET'):
            self.secrets['admin_key'] = environ['ADMIN_KEY_SECRET']
            self.admin_key_set = True
        elif not self.admin_key_set:
            logger.warning('Setting random admin key! Cannot use the service-to-service APIs.')
        if environ.get('SESSION_SECRET'):
            self.secrets['session'] = environ['SESSION_SECRET']
            self.session_secret_set = True
        if environ.get('HELPSCOUT_SECRET'):
            self.secrets['helpscout'] = environ['HELPSCOUT_SECRET']

        # Email
        if environ.get('EMAIL_FROM'):
            self.email['from'] = environ['EMAIL_FROM']
        if environ.get('SMTP_HOST'):
            self.email['smtp_host'] = environ['SMTP_HOST']
        if _positive_int(environ.get('SMTP_PORT')):
            self.email['smtp_port'] = _positive_int(environ['SMTP_PORT'])
        if environ.get('SMTP_USER'):
            self.email['smtp_user'] = environ['SMTP_USER']
        if environ.get('SMTP_PASSWORD'):
            self.email['smtp_password'] = environ['SMTP_PASSWORD']
        if environ.get('SMTP_USE_TLS'):
            self.email['smtp_use_tls'] = _truthy(environ['SMTP_USE_TLS'])

        # Server
        if environ.get('PRODUCTION') and _truthy(environ['PRODUCTION']):
            self.server['is_production'] = True
        if _positive_int(environ.get('PORT')):
            self.server['port'] = _positive_int(environ['PORT'])
        for key in ('VERSION_HASH', 'SOURCE_REV', 'SOURCE_VERSION'):
            if environ.get(key):
                self.server['version_hash'] = environ[key]
        if _positive_int(environ.get('COOKIE_MAX_AGE')):
            self.server['cookie_max_age'] = _positive_int(environ['COOKIE_MAX_AGE'])
        if environ.get('COOKIE_SECURE_ONLY') and _truthy(environ['COOKIE_SECURE_ONLY']):
            self.server['cookie_secure_only'] = True
        if environ.get('REGISTRATION_DATA_DIR'):
            self.server['data_dir'] = environ['REGISTRATION_DATA_DIR']
        if _positive_int(environ.get('PASSWORD_RESET_EXPIRATION')):
            self.server['password_reset_expiration'] = _positive_int(environ['PASSWORD_RESET_EXPIRATION'])

        # Identity service
        if environ.get('AUTH_SERVICE_URL'):
            self.auth_service['url'] = environ['AUTH_SERVICE_URL'].rstrip('/')
        if environ.get('AUTH_SERVICE_COOKIE'):
            self.auth_service['cookie'] = environ['AUTH_SERVICE_COOKIE']

        if environ.get('ADMIN_EMAILS'):
            self.admins = json.loads(environ['ADMIN_EMAILS'])
        if environ.get('EVENT_NAME'):
            self.event_name = environ['EVENT_NAME']
        if environ.get('QUESTIONS_FILE'):
            self.questions_location = environ['QUESTIONS_FILE']

        # Storage engine
        if environ.get('STORAGE_ENGINE'):
            self.storage_engine = {'name': environ['STORAGE_ENGINE'], 'options': {}}
            if environ.get('STORAGE_ENGINE_OPTIONS'):
                self.storage_engine['options'] = json.loads(environ['STORAGE_ENGINE_OPTIONS'])
            else:
                logger.warning('Custom storage engine defined but no storage engine options passed')
            self._check_storage_engine()

        if _positive_int(environ.get('MAX_TEAM_SIZE')):
            self.max_team_size = _positive_int(environ['MAX_TEAM_SIZE'])

    def _check_storage_engine(self):
        name = self.storage_engine.get('name')
        if name not in KNOWN_STORAGE_ENGINES:
            logger.warning(f'Custom storage engine "{name}" does not exist')
