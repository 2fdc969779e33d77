"""
Shared pytest fixtures for registration tests.

Running tests:
    pytest tests/
"""
import json
import pytest
import sys
import os
from datetime import timedelta
from unittest.mock import MagicMock

# Add src directory to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from registration.branch import BranchConfig
from registration.models import new_user, to_iso, utcnow
from registration.questions import clear_cache
from registration.storage import DiskStorageEngine
from registration.store import DataStore


SAMPLE_QUESTIONS = [
    {
        'name': 'Participant',
        'text': [{'for': 'start', 'content': 'Tell us about **yourself**.'}],
        'questions': [
            {'name': 'school', 'label': 'School', 'type': 'text', 'required': True, 'showInHelpScout': True},
            {'name': 'year', 'label': 'Year', 'type': 'radio', 'required': True, 'options': ['First', 'Second']},
            {'name': 'interests', 'label': 'Interests', 'type': 'checkbox', 'options': ['Web', 'Hardware'],
             'hasOther': True},
            {'name': 'essay', 'label': 'Essay', 'type': 'textarea', 'minCharacterCount': 5,
             'maxCharacterCount': 50},
            {'name': 'resume', 'label': 'Resume', 'type': 'file'},
        ],
    },
    {
        'name': 'Mentor',
        'questions': [
            {'name': 'company', 'label': 'Company', 'type': 'text', 'required': True},
        ],
    },
    {
        'name': 'Participant Confirmation',
        'questions': [
            {'name': 'attending', 'label': 'Attending', 'type': 'radio', 'required': True,
             'options': ['Yes', 'No'], 'showInHelpScout': True},
        ],
    },
    {
        'name': 'Waitlist',
        'questions': [
            {'name': 'still-interested', 'label': 'Still interested', 'type': 'radio', 'options': ['Yes', 'No']},
        ],
    },
]


@pytest.fixture
def questions_file(tmp_path):
    """Write the sample question branches to a temporary file."""
    path = tmp_path / 'questions.json'
    path.write_text(json.dumps(SAMPLE_QUESTIONS))
    clear_cache()
    yield str(path)
    clear_cache()


@pytest.fixture
def store(tmp_path):
    return DataStore(str(tmp_path / 'data'))


@pytest.fixture
def branch_config(store, questions_file):
    return BranchConfig(store, questions_file)


@pytest.fixture
def configure_branch(store, questions_file):
    """Store a branch role with a window relative to now (in days)."""
    def _configure(name, branch_type, opens=-1, closes=1, **settings):
        now = utcnow()
        settings.update({
            'open': to_iso(now + timedelta(days=opens)),
            'close': to_iso(now + timedelta(days=closes)),
        })
        store.save_branch_config({'name': name, 'type': branch_type, 'location': questions_file,
                                  'settings': settings})
    return _configure


@pytest.fixture
def mock_mailer():
    mailer = MagicMock()
    mailer.send.return_value = True
    mailer.send_batch.side_effect = lambda messages: len(messages)
    return mailer


@pytest.fixture
def temp_data_dir(tmp_path, monkeypatch, questions_file, mock_mailer):
    """Point the app at a temporary data directory, question file and upload directory."""
    import app as app_module

    data_dir = tmp_path / 'data'
    monkeypatch.setattr(app_module, 'DATA_DIR', str(data_dir))
    monkeypatch.setattr(app_module, 'QUESTIONS_FILE', questions_file)
    monkeypatch.setattr(app_module, 'mailer', mock_mailer)
    monkeypatch.setattr(app_module, 'storage_engine',
                        DiskStorageEngine({'upload_directory': str(tmp_path / 'uploads')}))
    return str(data_dir)


@pytest.fixture
def client(temp_data_dir):
    """Create a test client (unauthenticated by default)."""
    from app import app
    app.config['TESTING'] = True
    with app.test_client() as c:
        yield c


@pytest.fixture
def make_user(temp_data_dir, store):
    """Insert a verified user into the app's data store."""
    def _make(email='applicant@example.com', name='Applicant', **fields):
        fields.setdefault('verified_email', True)
        return store.insert_user(new_user(email, name, **fields))
    return _make


@pytest.fixture
def login(client):
    """Log the test client in as a stored user."""
    def _login(user):
        with client.session_transaction() as sess:
            sess['user'] = user['uuid']
    return _login
