"""
Flask web application for hackathon registration.
"""
import csv
import hmac
import io
import json
import smtplib
import zipfile
from datetime import datetime, timedelta
from functools import wraps

from flask import Flask, render_template, request, jsonify, redirect, url_for, flash, send_file, session, g, abort

from registration import accounts
from registration.auth_service import AuthServiceClient, AuthServiceError, sync_remote_user
from registration.branch import (ApplicationBranch, ApplicationType, BranchConfig, ConfirmationBranch,
                                 TimedBranch, assign_confirmation_branch, branch_window, clear_decision,
                                 get_open_confirmation_branches, is_branch_open)
from registration.config import Config
from registration.forms import FormValidationError, parse_submission, render_form
from registration.helpscout import user_card, verify_signature
from registration.jobs import EmailQueue, render_templated_email, team_name_for
from registration.mailer import Mailer, default_subject_for, format_size
from registration.models import find_item, login_methods, new_team, new_user, parse_datetime, to_iso, user_status, utcnow
from registration.questions import QuestionsConfigError, branch_tags, all_tags
from registration.stats import compute_statistics
from registration.storage import FileTooLargeError, StorageError, create_storage_engine, discard_uploads, store_upload
from registration.store import DataStore, DuplicateEmailError, DuplicateTeamError, SettingNotFound, TeamFullError

app = Flask(__name__)

config = Config()

DATA_DIR = config.server['data_dir']
QUESTIONS_FILE = config.questions_location

app.secret_key = config.secrets['session']
app.config['PERMANENT_SESSION_LIFETIME'] = timedelta(seconds=config.server['cookie_max_age'])
app.config['SESSION_COOKIE_SECURE'] = config.server['cookie_secure_only']

if not config.session_secret_set:
    app.logger.warning("No session secret set; sessions won't carry over server restarts")

mailer = Mailer(config.email)
storage_engine = None

CLOSED_TIME_FORMAT = '%A, %B {day} %Y at {hour}:%M {ampm} %Z'

_stores = {}
_email_queues = {}


def _store() -> DataStore:
    """Data store for the current DATA_DIR."""
    if DATA_DIR not in _stores:
        _stores[DATA_DIR] = DataStore(DATA_DIR)
    return _stores[DATA_DIR]


def _branch_config() -> BranchConfig:
    return BranchConfig(_store(), QUESTIONS_FILE)


def _storage_engine():
    global storage_engine
    if storage_engine is None:
        storage_engine = create_storage_engine(config.storage_engine['name'],
                                               config.storage_engine.get('options', {}))
    return storage_engine


def _email_queue() -> EmailQueue:
    synchronous = bool(app.config.get('TESTING'))
    key = (DATA_DIR, id(mailer), synchronous)
    if key not in _email_queues:
        _email_queues[key] = EmailQueue(_store(), mailer, config.event_name, synchronous=synchronous)
    return _email_queues[key]


def _auth_client():
    if not config.auth_service_enabled:
        return None
    return AuthServiceClient(config.auth_service['url'], config.auth_service['cookie'])


def track_event(action: str, user: str = None, **data):
    """Log a notable user action."""
    event = {
        'action': action,
        'url': request.path,
        'time': to_iso(utcnow()),
        'ip': request.remote_addr,
        'user': user,
        'user_agent': request.headers.get('User-Agent'),
    }
    event.update(data)
    app.logger.info(f'{event}')


def format_closed_time(value: datetime) -> str:
    """Format like ``Monday, January 1st 2024 at 9:05 am UTC``."""
    day = value.day
    suffix = 'th' if 11 <= day % 100 <= 13 else {1: 'st', 2: 'nd', 3: 'rd'}.get(day % 10, 'th')
    hour = value.hour % 12 or 12
    ampm = 'am' if value.hour < 12 else 'pm'
    return value.strftime(CLOSED_TIME_FORMAT.format(day=f'{day}{suffix}', hour=hour, ampm=ampm))


def _safe_user(user: dict) -> dict:
    """User document without credentials."""
    return {k: v for k, v in user.items() if k != 'local'}


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------

def _has_admin_key() -> bool:
    """Admin key passed as ``Authorization: Bearer <key>``."""
    auth_header = request.headers.get('Authorization', '')
    if not auth_header.startswith('Bearer '):
        return False
    provided_key = auth_header[7:]
    return hmac.compare_digest(config.secrets['admin_key'], provided_key)


def _is_admin() -> bool:
    return _has_admin_key() or bool(g.user and g.user.get('admin'))


@app.before_request
def load_user():
    """Set g.user from the identity service cookie or the local session."""
    g.user = None
    if request.endpoint in ('static', 'auth_validatehost', None):
        return

    client = _auth_client()
    if client is not None:
        token = request.cookies.get(config.auth_service['cookie'])
        if not token:
            return
        try:
            remote = client.get_user(token)
        except AuthServiceError as e:
            app.logger.error(f'Could not load user from auth service: {e}')
            return
        if remote:
            g.user = sync_remote_user(_store(), remote)
        return

    uuid = session.get('user')
    if uuid:
        g.user = _store().get_user(uuid)
        if g.user is None:
            session.pop('user', None)


@app.context_processor
def inject_common_context():
    """Make event, user and settings available to all templates."""
    store = _store()
    return {
        'site_title': config.event_name,
        'user': g.get('user'),
        'teams_enabled': store.get_setting('teams_enabled'),
        'qr_enabled': store.get_setting('qr_enabled'),
        'version_hash': config.server['version_hash'],
        'auth_service_enabled': config.auth_service_enabled,
    }


def login_required(f):
    """Redirect to login page if user not authenticated."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if g.user is None:
            return redirect(url_for('login_page'))
        return f(*args, **kwargs)
    return decorated_function


def api_login_required(f):
    """Reject unauthenticated API requests with 401."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if g.user is None:
            return jsonify({'error': 'You must log in to access this endpoint'}), 401
        return f(*args, **kwargs)
    return decorated_function


def admin_required(f):
    """Require an admin user or the admin API key."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if _has_admin_key():
            return f(*args, **kwargs)
        if g.user is None:
            return jsonify({'error': 'You must log in to access this endpoint'}), 401
        if not g.user.get('admin'):
            return jsonify({'error': 'You are not permitted to access this endpoint'}), 403
        return f(*args, **kwargs)
    return decorated_function


def user_or_admin(f):
    """Allow the user named by the ``uuid`` route argument, or an admin."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if _has_admin_key():
            return f(*args, **kwargs)
        if g.user is None:
            return jsonify({'error': 'You must log in to access this endpoint'}), 401
        if g.user['uuid'] != kwargs.get('uuid') and not g.user.get('admin'):
            return jsonify({'error': 'You are not permitted to access this endpoint'}), 403
        return f(*args, **kwargs)
    return decorated_function


def teams_enabled_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not _store().get_setting('teams_enabled'):
            return jsonify({'error': 'Teams are not enabled'}), 403
        return f(*args, **kwargs)
    return decorated_function


# ---------------------------------------------------------------------------
# Email helpers
# ---------------------------------------------------------------------------

def _email_template(email_type: str):
    """Return (subject, markdown) for an email type, falling back to defaults."""
    store = _store()
    try:
        content = store.get_setting(f'{email_type}-email', create_missing=False)
    except SettingNotFound:
        content = ''
    try:
        subject = store.get_setting(f'{email_type}-email-subject', create_missing=False)
    except SettingNotFound:
        subject = default_subject_for(email_type, config.event_name)
    return subject, content


def send_templated_email(user: dict, email_type: str):
    subject, content = _email_template(email_type)
    if not content:
        app.logger.info(f"No content set for {email_type} email; not emailing {user['email']}")
        return
    _email_queue().enqueue(user['uuid'], subject, content)


def _external_link(endpoint: str, **values) -> str:
    return url_for(endpoint, _external=True, **values)


# ---------------------------------------------------------------------------
# Pages
# ---------------------------------------------------------------------------

@app.route('/')
@login_required
def index():
    """Applicant status dashboard."""
    user = g.user
    branch_config = _branch_config()
    now = utcnow()

    application_branches = [] if user.get('applied') else branch_config.get_open_branches('Application', now)
    confirmation_open = False
    deadline = None
    if user.get('confirmation_branch'):
        confirmation_open = any(b.name == user['confirmation_branch']
                                for b in get_open_confirmation_branches(branch_config, user, now))
        branch = branch_config.find_branch(user['confirmation_branch'])
        if branch is not None:
            deadline = format_closed_time(branch_window(branch_config, branch, user,
                                                        ApplicationType.CONFIRMATION)[1])

    team = _store().get_team(user['team_id']) if user.get('team_id') else None
    return render_template('index.html',
                           status=user_status(user),
                           application_branches=application_branches,
                           confirmation_open=confirmation_open,
                           confirmation_deadline=deadline,
                           team=team)


@app.route('/login', methods=['GET', 'POST'])
def login_page():
    """Login form and authentication."""
    if config.auth_service_enabled:
        return redirect(url_for('auth_login'))
    if g.user is not None:
        return redirect(url_for('index'))
    if request.method == 'POST':
        try:
            user = accounts.authenticate(_store(), request.form.get('email', ''),
                                         request.form.get('password', ''), config.admins)
        except accounts.AccountError as e:
            flash(str(e), 'error')
        else:
            session['user'] = user['uuid']
            session.permanent = True
            track_event('logged in', user['email'])
            return redirect(url_for('index'))
    return render_template('login.html')


@app.route('/auth/signup', methods=['POST'])
def auth_signup():
    """Create a local account and email a verification link."""
    store = _store()
    try:
        user = accounts.sign_up(store, request.form.get('email', ''), request.form.get('name', ''),
                                request.form.get('password', ''))
    except accounts.AccountError as e:
        flash(str(e), 'error')
        return redirect(url_for('login_page'))

    track_event('created account', user['email'])
    code = accounts.start_verification(store, user)
    markdown = accounts.verification_email(_external_link('auth_verify', code=code), config.event_name)
    _email_queue().enqueue(user['uuid'], f'[{config.event_name}] - Verify your email', markdown)
    flash('Account created. Please check your email for a link to verify your address.', 'success')
    return redirect(url_for('login_page'))


@app.route('/auth/verify/<code>')
def auth_verify(code):
    user = accounts.verify_email(_store(), code, config.admins)
    if user is None:
        flash('Invalid email verification code', 'error')
    else:
        track_event('verified email', user['email'])
        flash('Thanks for verifying your email. You can now log in.', 'success')
    return redirect(url_for('login_page'))


@app.route('/login/forgot')
def forgot_page():
    return render_template('forgot.html')


@app.route('/auth/forgot', methods=['POST'])
def auth_forgot():
    store = _store()
    try:
        user, code = accounts.request_password_reset(store, request.form.get('email', ''))
    except accounts.AccountError as e:
        flash(str(e), 'error')
        return redirect(url_for('forgot_page'))

    markdown = accounts.reset_email(_external_link('auth_reset', code=code), _external_link('forgot_page'),
                                    config.server['password_reset_expiration'], config.event_name)
    _email_queue().enqueue(user['uuid'], f'[{config.event_name}] - Password reset request', markdown)
    flash("Please check your email for a link to reset your password. "
          "If it doesn't appear within a few minutes, check your spam folder.", 'success')
    return redirect(url_for('forgot_page'))


@app.route('/auth/forgot/<code>', methods=['GET', 'POST'])
def auth_reset(code):
    store = _store()
    if request.method == 'GET':
        if accounts.find_reset_user(store, code) is None:
            flash('Invalid password reset code', 'error')
            return redirect(url_for('login_page'))
        return render_template('reset.html', code=code)

    try:
        accounts.reset_password(store, code, request.form.get('password1', ''), request.form.get('password2', ''),
                                config.server['password_reset_expiration'])
    except accounts.AccountError as e:
        flash(str(e), 'error')
        if accounts.find_reset_user(store, code) is None:
            return redirect(url_for('login_page'))
        return redirect(url_for('auth_reset', code=code))
    flash('Password reset successfully. You can now log in.', 'success')
    return redirect(url_for('login_page'))


@app.route('/auth/validatehost/<nonce>')
def auth_validatehost(nonce):
    return accounts.host_hmac(config.secrets['session'], nonce)


@app.route('/auth/login')
def auth_login():
    """Hand login off to the identity service."""
    client = _auth_client()
    if client is None:
        return redirect(url_for('login_page'))
    try:
        return redirect(client.authenticate_url(_external_link('index')))
    except AuthServiceError as e:
        app.logger.error(f'Auth service login failed: {e}')
        return jsonify({'error': 'Could not reach the login service'}), 502


@app.route('/auth/logout', methods=['GET', 'POST'])
def auth_logout():
    """Clear session and redirect to login."""
    session.clear()
    client = _auth_client()
    if client is not None:
        try:
            return redirect(client.logout_url())
        except AuthServiceError as e:
            app.logger.error(f'Auth service logout failed: {e}')
    return redirect(url_for('login_page'))


def _render_closed(branch_type: str, open_at: datetime, close_at: datetime):
    now = utcnow()
    return render_template('closed.html',
                           type=branch_type,
                           open={'time': format_closed_time(open_at),
                                 'verb': 'will open' if now < open_at else 'opened'},
                           close={'time': format_closed_time(close_at),
                                  'verb': 'will close' if now < close_at else 'closed'},
                           contact_email=config.contact_email)


@app.route('/apply')
@login_required
def apply_page():
    """Pick an application branch."""
    user = g.user
    if user.get('applied') and user.get('application_branch'):
        return redirect(url_for('apply_branch_page', branch=user['application_branch']))
    branches = _branch_config().get_open_branches('Application')
    if len(branches) == 1:
        return redirect(url_for('apply_branch_page', branch=branches[0].name))
    return render_template('branches.html', branches=branches, type='Application')


@app.route('/apply/<branch>')
def apply_branch_page(branch):
    """Application form for one branch."""
    branch_config = _branch_config()
    name = branch_config.get_canonical_name(branch)
    if name is None:
        abort(404)
    question_branch = branch_config.load_branch(name)
    if not isinstance(question_branch, ApplicationBranch):
        abort(404)

    user = g.user
    if user is None and not question_branch.allow_anonymous:
        return redirect(url_for('login_page'))
    if user and user.get('application_branch') and user['application_branch'] != name:
        return redirect(url_for('apply_branch_page', branch=user['application_branch']))
    if not is_branch_open(branch_config, name, user, ApplicationType.APPLICATION):
        return _render_closed('Application', question_branch.open, question_branch.close)

    saved = user.get('application_data') if user and user.get('application_branch') == name else []
    if user:
        action = url_for('api_submit_application', uuid=user['uuid'], branch=name)
    else:
        action = url_for('api_submit_anonymous_application', branch=name)
    return render_template('form.html',
                           branch=question_branch,
                           fields=render_form(question_branch.questions, saved),
                           form_type='Application',
                           anonymous=user is None,
                           action=action,
                           can_delete=bool(user and user.get('applied') and not user.get('confirmation_branch')))


@app.route('/confirm')
@login_required
def confirm_page():
    if not g.user.get('confirmation_branch'):
        flash('You have not been given a decision yet.', 'info')
        return redirect(url_for('index'))
    return redirect(url_for('confirm_branch_page', branch=g.user['confirmation_branch']))


@app.route('/confirm/<branch>')
@login_required
def confirm_branch_page(branch):
    """Confirmation (RSVP) form for the user's confirmation branch."""
    user = g.user
    branch_config = _branch_config()
    name = branch_config.get_canonical_name(branch)
    if name is None or name != user.get('confirmation_branch'):
        abort(404)
    question_branch = branch_config.load_branch(name)
    if not isinstance(question_branch, ConfirmationBranch):
        abort(404)
    if not is_branch_open(branch_config, name, user, ApplicationType.CONFIRMATION):
        open_at, close_at = branch_window(branch_config, question_branch, user, ApplicationType.CONFIRMATION)
        return _render_closed('Confirmation', open_at, close_at)

    return render_template('form.html',
                           branch=question_branch,
                           fields=render_form(question_branch.questions, user.get('confirmation_data')),
                           form_type='Confirmation',
                           anonymous=False,
                           action=url_for('api_submit_confirmation', uuid=user['uuid'], branch=name),
                           can_delete=False)


@app.route('/team')
@login_required
def team_page():
    store = _store()
    if not store.get_setting('teams_enabled'):
        flash('Teams are not enabled.', 'info')
        return redirect(url_for('index'))
    team = store.get_team(g.user['team_id']) if g.user.get('team_id') else None
    members = []
    if team:
        members = [m for m in (store.get_user(uuid) for uuid in team['members']) if m]
    return render_template('team.html', team=team, members=members, max_team_size=config.max_team_size)


@app.route('/admin')
@login_required
def admin_page():
    """Admin dashboard."""
    if not g.user.get('admin'):
        abort(403)
    store = _store()
    branch_config = _branch_config()
    application_branches = branch_config.load_all_branches('Application')
    confirmation_branches = branch_config.load_all_branches('Confirmation')
    statistics = compute_statistics(store.load_users(), application_branches, confirmation_branches)

    email_types = [f'{b.name}-apply' for b in application_branches]
    for b in confirmation_branches:
        email_types.extend([f'{b.name}-pre-confirm', f'{b.name}-attend'])

    return render_template('admin.html',
                           statistics=statistics,
                           branches=branch_config.load_all_branches(),
                           application_branches=application_branches,
                           confirmation_branches=confirmation_branches,
                           email_types=email_types,
                           admins=[u for u in store.find_users({'admin': True})])


# ---------------------------------------------------------------------------
# Form submission API
# ---------------------------------------------------------------------------

def _collect_answers(question_branch, existing_items: list) -> list:
    """Validate the submitted form and persist its uploads.

    Uploads already stored are removed again if a later one fails.
    """
    items, pending_uploads = parse_submission(question_branch.questions, request.form, request.files,
                                              existing_items)
    engine = _storage_engine() if pending_uploads else None
    stored = []
    try:
        for upload in pending_uploads:
            metadata = store_upload(engine, upload['file'])
            stored.append(metadata)
            find_item(items, upload['name'])['value'] = metadata
    except StorageError:
        discard_uploads(engine, stored)
        raise
    return items


def _form_error_response(e: Exception):
    if isinstance(e, (FormValidationError, FileTooLargeError)):
        return jsonify({'error': str(e)}), 400
    app.logger.error(f'Error saving uploaded file: {e}')
    return jsonify({'error': 'An error occurred while saving your files'}), 500


def _apply(user: dict, branch: ApplicationBranch, items: list) -> bool:
    """Record an application. Returns True on the first submission."""
    first = not user.get('applied')
    now = to_iso(utcnow())
    user['applied'] = True
    user['application_branch'] = branch.name
    user['application_data'] = items
    user['application_start_time'] = user.get('application_start_time') or now
    user['application_submit_time'] = now
    return first


def _finish_application(user: dict, branch: ApplicationBranch, first: bool):
    store = _store()
    auto_accepted = False
    if first and branch.auto_accept != 'disabled':
        try:
            assign_confirmation_branch(_branch_config(), user, branch.auto_accept)
            auto_accepted = True
        except (ValueError, QuestionsConfigError) as e:
            app.logger.error(f'Could not auto accept {user["email"]} into {branch.auto_accept}: {e}')
    store.update_user(user)
    if first:
        track_event('submitted application', user['email'], branch=branch.name)
        send_templated_email(user, f'{branch.name}-apply')
    if auto_accepted:
        track_event('auto accepted', user['email'], branch=branch.auto_accept)


def _load_application_branch(raw_name: str):
    branch_config = _branch_config()
    name = branch_config.get_canonical_name(raw_name)
    if name is None:
        return None
    question_branch = branch_config.load_branch(name)
    return question_branch if isinstance(question_branch, ApplicationBranch) else None


@app.route('/api/user/<uuid>/application/<branch>', methods=['POST'])
@user_or_admin
def api_submit_application(uuid, branch):
    """Create or update a user's application."""
    store = _store()
    user = store.get_user(uuid)
    if user is None:
        return jsonify({'error': 'User not found'}), 404
    question_branch = _load_application_branch(branch)
    if question_branch is None:
        return jsonify({'error': 'Invalid application branch'}), 400
    if user.get('application_branch') and user['application_branch'] != question_branch.name:
        return jsonify({'error': 'You have already applied with a different application type'}), 400
    if not _is_admin() and not is_branch_open(_branch_config(), question_branch.name, user,
                                               ApplicationType.APPLICATION):
        return jsonify({'error': 'Applications are closed for this branch'}), 400

    existing = user.get('application_data') if user.get('application_branch') == question_branch.name else []
    try:
        items = _collect_answers(question_branch, existing)
    except (FormValidationError, StorageError) as e:
        return _form_error_response(e)

    first = _apply(user, question_branch, items)
    _finish_application(user, question_branch, first)
    return jsonify({'success': True})


@app.route('/api/user/<uuid>/application/<branch>', methods=['DELETE'])
@user_or_admin
def api_delete_application(uuid, branch):
    """Withdraw an application that has not been decided."""
    store = _store()
    user = store.get_user(uuid)
    if user is None:
        return jsonify({'error': 'User not found'}), 404
    name = _branch_config().get_canonical_name(branch)
    if not user.get('applied') or name is None or user.get('application_branch') != name:
        return jsonify({'error': 'No application to delete for this branch'}), 400
    if user.get('accepted') or user.get('confirmation_branch'):
        return jsonify({'error': 'You cannot delete an application that has already been decided'}), 400

    user.update({
        'applied': False,
        'application_branch': None,
        'application_data': [],
        'application_start_time': None,
        'application_submit_time': None,
    })
    store.update_user(user)
    track_event('deleted application', user['email'], branch=name)
    return jsonify({'success': True})


@app.route('/api/application/<branch>/anonymous', methods=['POST'])
def api_submit_anonymous_application(branch):
    """Submit an application without an account; the form's email creates the user."""
    question_branch = _load_application_branch(branch)
    if question_branch is None or not question_branch.allow_anonymous:
        return jsonify({'error': 'This application branch does not accept anonymous applications'}), 400
    if not is_branch_open(_branch_config(), question_branch.name, None, ApplicationType.APPLICATION):
        return jsonify({'error': 'Applications are closed for this branch'}), 400

    email = request.form.get('email', '').strip()
    if not email:
        return jsonify({'error': 'An email address is required'}), 400
    store = _store()
    if store.email_in_use(email):
        return jsonify({'error': 'An account with that email already exists'}), 400

    try:
        items = _collect_answers(question_branch, [])
    except (FormValidationError, StorageError) as e:
        return _form_error_response(e)

    user = new_user(email, request.form.get('name', ''))
    try:
        store.insert_user(user)
    except DuplicateEmailError:
        uploads = [item['value'] for item in items if isinstance(item.get('value'), dict)]
        if uploads:
            discard_uploads(_storage_engine(), uploads)
        return jsonify({'error': 'An account with that email already exists'}), 400

    first = _apply(user, question_branch, items)
    _finish_application(user, question_branch, first)
    return jsonify({'success': True})


@app.route('/api/user/<uuid>/confirmation/<branch>', methods=['POST'])
@user_or_admin
def api_submit_confirmation(uuid, branch):
    """Create or update a user's RSVP."""
    store = _store()
    user = store.get_user(uuid)
    if user is None:
        return jsonify({'error': 'User not found'}), 404
    branch_config = _branch_config()
    name = branch_config.get_canonical_name(branch)
    if name is None or name != user.get('confirmation_branch'):
        return jsonify({'error': 'You can only confirm for the branch you were placed in'}), 400
    question_branch = branch_config.load_branch(name)
    if not isinstance(question_branch, ConfirmationBranch):
        return jsonify({'error': 'Invalid confirmation branch'}), 400
    if not _is_admin() and not is_branch_open(branch_config, name, user, ApplicationType.CONFIRMATION):
        return jsonify({'error': 'Confirmation is closed for this branch'}), 400

    try:
        items = _collect_answers(question_branch, user.get('confirmation_data'))
    except (FormValidationError, StorageError) as e:
        return _form_error_response(e)

    first = not user.get('confirmed')
    now = to_iso(utcnow())
    user['confirmed'] = True
    user['confirmation_data'] = items
    user['confirmation_start_time'] = user.get('confirmation_start_time') or now
    user['confirmation_submit_time'] = now
    store.update_user(user)

    if first:
        track_event('submitted confirmation', user['email'], branch=name)
        send_templated_email(user, f'{name}-attend')
    return jsonify({'success': True})


# ---------------------------------------------------------------------------
# Admin decisions and listing
# ---------------------------------------------------------------------------

def _request_value(name: str, default=None):
    """Read a field from a JSON body or form data."""
    data = request.get_json(silent=True)
    if isinstance(data, dict) and name in data:
        return data[name]
    return request.form.get(name, default)


@app.route('/api/user/<uuid>/status', methods=['PUT'])
@admin_required
def api_update_status(uuid):
    """Give an applicant a decision: ``no-decision`` or a confirmation branch."""
    store = _store()
    user = store.get_user(uuid)
    if user is None:
        return jsonify({'error': 'User not found'}), 404
    status = (_request_value('status') or '').strip()

    if status == 'no-decision':
        clear_decision(user)
    else:
        branch_config = _branch_config()
        name = branch_config.get_canonical_name(status)
        if name is None or not isinstance(branch_config.load_branch(name), ConfirmationBranch):
            return jsonify({'error': f'Invalid status "{status}"'}), 400
        assign_confirmation_branch(branch_config, user, name)

    store.update_user(user)
    track_event('changed status', user['email'], status=status)
    return jsonify({'success': True})


@app.route('/api/admin/send_acceptances', methods=['POST'])
@admin_required
def api_send_acceptances():
    """Email every decided applicant who has not been notified yet."""
    store = _store()
    count = 0
    for user in store.find_users({'pre_confirm_email_sent': False}):
        if not user.get('confirmation_branch'):
            continue
        user['pre_confirm_email_sent'] = True
        store.update_user(user)
        send_templated_email(user, f"{user['confirmation_branch']}-pre-confirm")
        count += 1
    app.logger.info(f'Queued {count} decision emails')
    return jsonify({'success': True, 'count': count})


def _positive_query_int(name: str, default: int, allow_zero: bool = False) -> int:
    try:
        value = int(request.args.get(name, ''))
    except ValueError:
        return default
    if value < 0 or (value == 0 and not allow_zero):
        return default
    return value


def _format_application_data(user: dict, labels: dict) -> list:
    formatted = []
    for item in user.get('application_data') or []:
        label = labels.get(item['name'], item['name'])
        value = item.get('value')
        row = {'label': label}
        if value is None:
            row['value'] = 'N/A'
        elif isinstance(value, str):
            row['value'] = value
        elif isinstance(value, list):
            row['value'] = ', '.join(value)
        else:
            row['value'] = f"[{value.get('mimetype')} | {format_size(value.get('size', 0))}]: {value.get('path')}"
            row['filename'] = value.get('filename')
        formatted.append(row)
    return formatted


@app.route('/api/admin/users')
@admin_required
def api_admin_users():
    """Paged, filtered user list for the admin dashboard."""
    offset = _positive_query_int('offset', 0, allow_zero=True)
    count = _positive_query_int('count', 10)

    store = _store()
    users = store.load_users()
    if request.args.get('applied') == 'true':
        users = [u for u in users if u.get('applied')]
    branch = request.args.get('branch')
    if branch:
        users = [u for u in users if branch in (u.get('application_branch'), u.get('confirmation_branch'))]
    status = request.args.get('status')
    if status == 'no-decision':
        users = [u for u in users if u.get('applied') and not u.get('accepted')]
    elif status == 'accepted':
        users = [u for u in users if u.get('applied') and u.get('accepted')]
    users.sort(key=lambda u: (u.get('name') or '').lower())

    team_names = {t['id']: t['team_name'] for t in store.load_teams()}
    labels_by_branch = {}
    for b in _branch_config().load_all_branches():
        labels_by_branch[b.name] = {q.name: q.label for q in b.questions}

    data = []
    for user in users[offset:offset + count]:
        row = _safe_user(user)
        row.update({
            'status': user_status(user),
            'login_methods': ', '.join(login_methods(user)),
            'application_data_formatted': _format_application_data(
                user, labels_by_branch.get(user.get('application_branch'), {})),
            'team_name': team_names.get(user.get('team_id')),
        })
        data.append(row)

    return jsonify({'offset': offset, 'count': count, 'total': len(users), 'data': data})


@app.route('/api/admin/statistics')
@admin_required
def api_admin_statistics():
    branch_config = _branch_config()
    return jsonify(compute_statistics(_store().load_users(),
                                      branch_config.load_all_branches('Application'),
                                      branch_config.load_all_branches('Confirmation')))


def _csv_value(value) -> str:
    if value is None:
        return ''
    if isinstance(value, list):
        return ', '.join(value)
    if isinstance(value, dict):
        return value.get('path', '')
    return str(value)


@app.route('/api/admin/export')
@admin_required
def api_admin_export():
    """Export applications as a ZIP with one CSV per application branch."""
    store = _store()
    users = store.load_users()
    team_names = {t['id']: t['team_name'] for t in store.load_teams()}

    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, 'w', zipfile.ZIP_DEFLATED) as zf:
        for branch in _branch_config().load_all_branches('Application'):
            output = io.StringIO()
            writer = csv.writer(output)
            question_names = [q.name for q in branch.questions]
            writer.writerow(['uuid', 'name', 'email', 'status', 'team'] + question_names)
            for user in users:
                if not user.get('applied') or user.get('application_branch') != branch.name:
                    continue
                answers = [_csv_value((find_item(user.get('application_data'), name) or {}).get('value'))
                           for name in question_names]
                writer.writerow([user['uuid'], user.get('name'), user['email'], user_status(user),
                                 team_names.get(user.get('team_id'), '')] + answers)
            zf.writestr(f'{branch.name}.csv', output.getvalue())

    buffer.seek(0)
    timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
    return send_file(
        buffer,
        mimetype='application/zip',
        as_attachment=True,
        download_name=f'applications_export_{timestamp}.zip',
    )


@app.route('/uploads/<path:filename>')
@admin_required
def uploads(filename):
    """Serve an uploaded file to admins."""
    try:
        stream = _storage_engine().read_file(filename)
    except StorageError as e:
        app.logger.warning(f'Upload {filename} not available: {e}')
        abort(404)
    return send_file(stream, as_attachment=True, download_name=filename)


# ---------------------------------------------------------------------------
# Teams
# ---------------------------------------------------------------------------

@app.route('/api/teams/create', methods=['POST'])
@api_login_required
@teams_enabled_required
def api_create_team():
    store = _store()
    user = g.user
    team_name = (_request_value('name') or '').strip()
    if not team_name:
        return jsonify({'error': 'Team name cannot be blank'}), 400
    if user.get('team_id'):
        return jsonify({'error': 'You must leave your current team before creating a new one'}), 400

    team = new_team(team_name, user['uuid'])
    try:
        store.insert_team(team)
    except DuplicateTeamError:
        return jsonify({'error': 'That team name is already taken'}), 400
    user['team_id'] = team['id']
    store.update_user(user)
    track_event('created team', user['email'], team=team_name)
    return jsonify({'success': True, 'team': team})


@app.route('/api/teams/join', methods=['POST'])
@api_login_required
@teams_enabled_required
def api_join_team():
    store = _store()
    user = g.user
    team_name = (_request_value('name') or '').strip()
    if user.get('team_id'):
        return jsonify({'error': 'You must leave your current team before joining another'}), 400
    team = store.find_team_by_name(team_name)
    if team is None:
        return jsonify({'error': 'Could not find a team with that name'}), 400
    try:
        team = store.add_team_member(team['id'], user['uuid'], config.max_team_size)
    except TeamFullError:
        return jsonify({'error': f'Teams are limited to {config.max_team_size} members'}), 400
    if team is None:
        return jsonify({'error': 'Could not find a team with that name'}), 400

    user['team_id'] = team['id']
    store.update_user(user)
    track_event('joined team', user['email'], team=team_name)
    return jsonify({'success': True, 'team': team})


@app.route('/api/teams/leave', methods=['POST'])
@api_login_required
@teams_enabled_required
def api_leave_team():
    store = _store()
    user = g.user
    team = store.get_team(user['team_id']) if user.get('team_id') else None
    if team is None:
        return jsonify({'error': 'You are not in a team'}), 400

    store.remove_team_member(team['id'], user['uuid'])
    user['team_id'] = None
    store.update_user(user)
    track_event('left team', user['email'], team=team['team_name'])
    return jsonify({'success': True})


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

def _toggle_setting(name: str, label: str):
    store = _store()
    if request.method == 'GET':
        return jsonify({'enabled': store.get_setting(name)})
    if not _is_admin():
        if g.user is None:
            return jsonify({'error': 'You must log in to access this endpoint'}), 401
        return jsonify({'error': 'You are not permitted to access this endpoint'}), 403
    raw_enabled = _request_value('enabled')
    if isinstance(raw_enabled, bool):
        raw_enabled = 'true' if raw_enabled else 'false'
    if raw_enabled not in ('true', 'false'):
        return jsonify({'error': f'Invalid value for enabling or disabling {label}'}), 400
    store.update_setting(name, raw_enabled == 'true')
    return jsonify({'success': True})


@app.route('/api/settings/teams_enabled', methods=['GET', 'PUT'])
def api_settings_teams_enabled():
    return _toggle_setting('teams_enabled', 'teams')


@app.route('/api/settings/qr_enabled', methods=['GET', 'PUT'])
def api_settings_qr_enabled():
    return _toggle_setting('qr_enabled', 'QR codes')


@app.route('/api/settings/admin_emails', methods=['PUT'])
@admin_required
def api_settings_admin_emails():
    """Grant or revoke admin for a comma separated list of emails."""
    raw_admins = _request_value('admin_string') or ''
    add_admins = str(_request_value('add_admins', 'false')).lower() == 'true'
    emails = [e.strip() for e in raw_admins.split(',') if e.strip()]
    if not emails:
        return jsonify({'success': True, 'info': 'Admins unchanged'})

    store = _store()
    updated = 0
    for email in emails:
        user = store.find_user(email=email)
        if user is None:
            continue
        user['admin'] = add_admins
        store.update_user(user)
        updated += 1
    app.logger.info(f"{'Granted' if add_admins else 'Revoked'} admin for {updated} user(s)")
    return jsonify({'success': True, 'updated': updated})


@app.route('/api/settings/branch_roles', methods=['GET'])
@admin_required
def api_get_branch_roles():
    branch_config = _branch_config()
    return jsonify({
        'noop': [b.name for b in branch_config.load_all_branches('Noop')],
        'application_branches': [b.name for b in branch_config.load_all_branches('Application')],
        'confirmation_branches': [b.name for b in branch_config.load_all_branches('Confirmation')],
    })


def _branch_roles_payload() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        try:
            data = {name: json.loads(value) for name, value in request.form.items()}
        except ValueError as e:
            raise ValueError('Branch settings must be JSON') from e
    invalid = [name for name, value in data.items() if not isinstance(value, dict)]
    if invalid:
        raise ValueError(f'Settings for {", ".join(invalid)} must be a JSON object')
    return data


@app.route('/api/settings/branch_roles', methods=['PUT'])
@admin_required
def api_put_branch_roles():
    """Set each branch's role, window and flags."""
    try:
        payload = _branch_roles_payload()
    except ValueError as e:
        return jsonify({'error': str(e)}), 400

    branch_config = _branch_config()
    names = branch_config.get_names()
    unknown = [name for name in payload if name not in names]
    if unknown:
        return jsonify({'error': f'Unknown branch(es): {", ".join(unknown)}'}), 400

    try:
        for name, data in payload.items():
            branch = branch_config.load_branch(name)
            role = data.get('role', 'Noop')
            if branch.type != role:
                branch = branch.convert_to(role if role in ('Application', 'Confirmation') else 'Noop')

            if isinstance(branch, TimedBranch):
                branch.open = parse_datetime(data.get('open')) or utcnow()
                branch.close = parse_datetime(data.get('close')) or utcnow()
            if isinstance(branch, ApplicationBranch):
                branch.allow_anonymous = bool(data.get('allow_anonymous', False))
                branch.auto_accept = data.get('auto_accept') or 'disabled'
            if isinstance(branch, ConfirmationBranch):
                branch.uses_rolling_deadline = bool(data.get('uses_rolling_deadline', False))
                branch.is_acceptance = bool(data.get('is_acceptance', False))
                branch.auto_confirm = bool(data.get('auto_confirm', False))
            branch.save()
    except (ValueError, QuestionsConfigError) as e:
        app.logger.error(f'Error setting branch roles: {e}')
        return jsonify({'error': 'An error occurred while setting branch roles'}), 500

    track_event('updated branch roles', g.user['email'] if g.user else None)
    return jsonify({'success': True})


@app.route('/api/settings/email_content/<email_type>', methods=['GET'])
@admin_required
def api_get_email_content(email_type):
    subject, content = _email_template(email_type)
    return jsonify({'subject': subject, 'content': content})


@app.route('/api/settings/email_content/<email_type>', methods=['PUT'])
@admin_required
def api_put_email_content(email_type):
    store = _store()
    store.update_setting(f'{email_type}-email-subject', _request_value('subject') or '')
    store.update_setting(f'{email_type}-email', _request_value('content') or '')
    return jsonify({'success': True})


@app.route('/api/settings/email_content/<email_type>/rendered', methods=['POST'])
@admin_required
def api_render_email_content(email_type):
    """Preview an email rendered for the requesting admin."""
    preview_user = g.user or new_user(config.contact_email, 'Admin')
    html, text = render_templated_email(_store(), preview_user, _request_value('content') or '',
                                        config.event_name)
    return jsonify({'html': html, 'text': text})


@app.route('/api/settings/send_batch_email', methods=['POST'])
@admin_required
def api_send_batch_email():
    """Email every user matching a field filter, with a copy to each admin."""
    raw_filter = _request_value('filter')
    try:
        user_filter = json.loads(raw_filter) if isinstance(raw_filter, str) else raw_filter
    except ValueError:
        user_filter = None
    subject = _request_value('subject') or ''
    markdown_content = _request_value('markdown_content') or ''
    if not isinstance(user_filter, dict):
        return jsonify({'error': f"Your query '{raw_filter}' is not a valid filter"}), 400
    if not subject:
        return jsonify({'error': "Can't have an empty subject!"}), 400
    if not markdown_content:
        return jsonify({'error': "Can't have an empty email body!"}), 400

    store = _store()
    messages = []
    for user in store.find_users(user_filter):
        html, text = render_templated_email(store, user, markdown_content, config.event_name)
        messages.append(mailer.build_message(user['email'], subject, html, text))

    filter_text = json.dumps(user_filter)
    for admin in store.find_users({'admin': True}):
        html, text = render_templated_email(store, admin, markdown_content, config.event_name)
        messages.append(mailer.build_message(admin['email'], f'[Admin FYI] {subject}',
                                             f'{filter_text}<br>{html}', f'{filter_text}\n{text}'))

    try:
        sent = mailer.send_batch(messages)
    except (smtplib.SMTPException, OSError) as e:
        app.logger.error(f'Error sending batch email: {e}')
        return jsonify({'error': 'Error sending email!'}), 500
    app.logger.info(f'Sent {sent} batch emails requested by {g.user["email"] if g.user else "admin key"}')
    return jsonify({'success': True, 'count': len(messages), 'sent': sent})


# ---------------------------------------------------------------------------
# Read API
# ---------------------------------------------------------------------------

@app.route('/api/question_branches')
def api_question_branches():
    return jsonify({'branches': _branch_config().get_names()})


@app.route('/api/question_names')
def api_question_names():
    branch = request.args.get('branch')
    if not branch:
        return jsonify({'names': all_tags(QUESTIONS_FILE)})
    tags = branch_tags(QUESTIONS_FILE)
    if branch not in tags:
        return jsonify({'error': f'Unknown branch "{branch}"'}), 404
    return jsonify({'names': tags[branch]})


@app.route('/api/users/<uuid>')
@admin_required
def api_get_user(uuid):
    user = _store().get_user(uuid)
    if user is None:
        return jsonify({'error': 'User not found'}), 404
    data = _safe_user(user)
    data['status'] = user_status(user)
    data['team_name'] = team_name_for(_store(), user)
    return jsonify(data)


@app.route('/api/users/<uuid>/question/<name>')
@admin_required
def api_get_user_question(uuid, name):
    user = _store().get_user(uuid)
    if user is None:
        return jsonify({'error': 'User not found'}), 404
    item = find_item((user.get('confirmation_data') or []) + (user.get('application_data') or []), name)
    if item is None or not isinstance(item.get('value'), str):
        return jsonify({'error': f'No answer for "{name}"'}), 404
    return jsonify({'name': item['name'], 'type': item['type'], 'value': item['value']})


# ---------------------------------------------------------------------------
# HelpScout
# ---------------------------------------------------------------------------

@app.route('/api/helpscout/userInfo', methods=['POST'])
def api_helpscout_user_info():
    """Sidebar card for the customer HelpScout is showing."""
    if not config.helpscout_enabled:
        return jsonify({'error': 'HelpScout integration is not enabled'}), 404
    raw_body = request.get_data()
    if not verify_signature(config.secrets['helpscout'], raw_body,
                            request.headers.get('X-HelpScout-Signature', '')):
        return jsonify({'error': 'Invalid signature'}), 401

    body = request.get_json(silent=True) or {}
    email = ((body.get('customer') or {}).get('email') or '').strip()
    user = _store().find_user(email=email) if email else None
    if user is None:
        return jsonify({'html': render_template('helpscout_not_found.html', email=email)})
    return jsonify({'html': render_template('helpscout_main.html', **user_card(_branch_config(), user))})


@app.errorhandler(500)
def internal_error(error):
    """Log unhandled errors and answer with JSON."""
    original = getattr(error, 'original_exception', None) or error
    app.logger.error(f'Unhandled error on {request.path}: {original}', exc_info=original)
    return jsonify({'error': 'An internal error occurred'}), 500


if __name__ == '__main__':
    if not _branch_config().verify_config():
        raise SystemExit(f'Invalid question branches in {QUESTIONS_FILE}')
    _store().set_default_settings()
    app.run(debug=not config.server['is_production'], port=config.server['port'])
