"""
Tests for configuration loading.
"""
import logging
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from registration.config import Config


def _config(tmp_path, environ=None, yaml_text=None):
    config_file = tmp_path / 'config.yaml'
    if yaml_text is not None:
        config_file.write_text(yaml_text)
    return Config(file_name=str(config_file), environ=environ or {})


class TestDefaults:

    def test_defaults_without_file_or_env(self, tmp_path):
        config = _config(tmp_path)
        assert config.server['port'] == 3000
        assert config.server['is_production'] is False
        assert config.storage_engine == {'name': 'disk', 'options': {'upload_directory': 'uploads'}}
        assert config.max_team_size == 4
        assert config.admins == []

    def test_development_suffix(self, tmp_path):
        """Event name gets a development suffix outside production."""
        assert _config(tmp_path).event_name == 'Untitled Event - Development'

    def test_random_admin_key_logs_warning(self, tmp_path, caplog):
        with caplog.at_level(logging.WARNING):
            config = _config(tmp_path)
        assert config.admin_key_set is False
        assert len(config.secrets['admin_key']) == 64
        assert 'random admin key' in caplog.text

    def test_contact_email_parsed_from_sender(self, tmp_path):
        config = _config(tmp_path, {'EMAIL_FROM': 'HackGT Team <hello@hack.gt>'})
        assert config.contact_email == 'hello@hack.gt'

    def test_contact_email_plain_address(self, tmp_path):
        config = _config(tmp_path, {'EMAIL_FROM': 'hello@hack.gt'})
        assert config.contact_email == 'hello@hack.gt'


class TestEnvironment:

    def test_env_overrides(self, tmp_path):
        config = _config(tmp_path, {
            'PORT': '8080',
            'PRODUCTION': 'true',
            'EVENT_NAME': 'HackGT',
            'ADMIN_EMAILS': '["admin@example.com"]',
            'ADMIN_KEY_SECRET': 'key',
            'MAX_TEAM_SIZE': '5',
        })
        assert config.server['port'] == 8080
        assert config.event_name == 'HackGT'
        assert config.admins == ['admin@example.com']
        assert config.secrets['admin_key'] == 'key'
        assert config.admin_key_set is True
        assert config.max_team_size == 5

    def test_invalid_numbers_ignored(self, tmp_path):
        config = _config(tmp_path, {'PORT': 'abc', 'MAX_TEAM_SIZE': '-2', 'SMTP_PORT': '0'})
        assert config.server['port'] == 3000
        assert config.max_team_size == 4
        assert config.email['smtp_port'] == 587

    def test_auth_service_url(self, tmp_path):
        config = _config(tmp_path, {'AUTH_SERVICE_URL': 'https://login.example.com/'})
        assert config.auth_service_enabled
        assert config.auth_service['url'] == 'https://login.example.com'

    def test_storage_engine_from_env(self, tmp_path):
        config = _config(tmp_path, {'STORAGE_ENGINE': 's3',
                                    'STORAGE_ENGINE_OPTIONS': '{"bucket": "uploads"}'})
        assert config.storage_engine == {'name': 's3', 'options': {'bucket': 'uploads'}}

    def test_unknown_storage_engine_warns(self, tmp_path, caplog):
        with caplog.at_level(logging.WARNING):
            _config(tmp_path, {'STORAGE_ENGINE': 'ftp', 'STORAGE_ENGINE_OPTIONS': '{}'})
        assert 'does not exist' in caplog.text


class TestConfigFile:

    def test_yaml_file_values(self, tmp_path):
        config = _config(tmp_path, yaml_text=(
            'event_name: File Event\n'
            'secrets:\n'
            '  admin_key: from-file\n'
            'server:\n'
            '  is_production: true\n'
            'email:\n'
            '  smtp_host: smtp.example.com\n'))
        assert config.event_name == 'File Event'
        assert config.secrets['admin_key'] == 'from-file'
        assert config.admin_key_set is True
        assert config.email['smtp_host'] == 'smtp.example.com'
        # Untouched keys in the section keep their defaults
        assert config.email['smtp_port'] == 587

    def test_env_wins_over_file(self, tmp_path):
        config = _config(tmp_path, {'EVENT_NAME': 'Env Event'}, yaml_text='event_name: File Event\n')
        assert config.event_name == 'Env Event - Development'

    def test_empty_file(self, tmp_path):
        config = _config(tmp_path, yaml_text='')
        assert config.event_name == 'Untitled Event - Development'
