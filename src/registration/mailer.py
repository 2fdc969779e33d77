"""
Markdown rendering and transactional email.

Email bodies are written by admins in markdown with ``{{placeholder}}``
variables, rendered to HTML for the HTML part and flattened to text for the
plain part.
"""
import logging
import math
import re
import smtplib
from contextlib import contextmanager
from email.message import EmailMessage

import markdown as mdlib
from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)

MARKDOWN_EXTENSIONS = ['smarty', 'fenced_code', 'tables']

APPLICATION_FIELD_RE = re.compile(r'\{\{application\.([a-zA-Z0-9\- ]+)\}\}')
CONFIRMATION_FIELD_RE = re.compile(r'\{\{confirmation\.([a-zA-Z0-9\- ]+)\}\}')


def render_markdown(text: str, single_line: bool = False) -> str:
    """Render markdown to HTML.

    Single line rendering is used for question labels and options: the
    paragraph wrapper is dropped and links open in a new tab.
    """
    html = mdlib.markdown(text or '', extensions=MARKDOWN_EXTENSIONS)
    if not single_line:
        return html
    soup = BeautifulSoup(html, 'html.parser')
    for link in soup.find_all('a'):
        link['target'] = '_blank'
    for paragraph in soup.find_all('p'):
        paragraph.unwrap()
    return str(soup).strip()


def sanitize(value) -> str:
    if not isinstance(value, str):
        return ''
    return value.replace('&', '&amp;').replace('<', '&lt;').replace('>', '&gt;')


def format_size(size: int, binary: bool = True) -> str:
    """Human readable file size, e.g. ``1.50 KiB``."""
    if not size or size <= 0:
        return '0 bytes'
    base = 1024 if binary else 1000
    labels = (['bytes', 'KiB', 'MiB', 'GiB', 'TiB'] if binary
              else ['bytes', 'KB', 'MB', 'GB', 'TB'])
    i = min(int(math.floor(math.log(size) / math.log(base))), len(labels) - 1)
    return f'{size / base ** i:.2f} {labels[i]}'


def default_email_subjects(event_name: str) -> dict:
    return {
        'apply': f'[{event_name}] - Thank you for applying!',
        'pre-confirm': f'[{event_name}] - Application Update',
        'attend': f'[{event_name}] - Thank you for RSVPing!',
    }


def default_subject_for(email_type: str, event_name: str) -> str:
    """Default subject for an ``<branch>-<kind>`` email type."""
    subjects = default_email_subjects(event_name)
    for kind in ('pre-confirm', 'apply', 'attend'):
        if email_type.endswith(f'-{kind}'):
            return subjects[kind]
    return ''


def format_form_item(item) -> str:
    if item is None or item.get('value') is None:
        return 'N/A'
    value = item['value']
    if isinstance(value, str):
        return sanitize(value).replace('\n', '\n<br />')
    if isinstance(value, list):
        return sanitize(', '.join(str(v) for v in value))
    # Uploaded file metadata
    return f"`{sanitize(value.get('original_name', ''))}` / {format_size(value.get('size', 0))}"


def interpolate(markdown_text: str, user: dict, event_name: str, team_name: str) -> str:
    """Substitute user variables into admin-written markdown."""
    replacements = {
        '{{eventName}}': event_name,
        '{{email}}': user.get('email'),
        '{{name}}': user.get('name'),
        '{{teamName}}': team_name,
        '{{applicationBranch}}': user.get('application_branch') or '',
        '{{confirmationBranch}}': user.get('confirmation_branch') or '',
    }
    for placeholder, value in replacements.items():
        markdown_text = markdown_text.replace(placeholder, sanitize(value))

    def lookup(items):
        def replace(match):
            name = match.group(1)
            return format_form_item(next((i for i in items or [] if i.get('name') == name), None))
        return replace

    markdown_text = APPLICATION_FIELD_RE.sub(lookup(user.get('application_data')), markdown_text)
    markdown_text = CONFIRMATION_FIELD_RE.sub(lookup(user.get('confirmation_data')), markdown_text)
    return markdown_text


def render_email_html(markdown_text: str, user: dict, event_name: str, team_name: str) -> str:
    return render_markdown(interpolate(markdown_text, user, event_name, team_name))


def render_email_text(html: str) -> str:
    """Flatten rendered email HTML into the plain text alternative."""
    soup = BeautifulSoup(html, 'html.parser')
    for tag in soup.find_all(['style', 'script']):
        tag.clear()
    for link in soup.find_all('a'):
        link.string = f"{link.get_text()} ({link.get('href', '')})"
    return soup.get_text()


class Mailer:
    """Sends email over SMTP using the ``email`` section of the config."""

    def __init__(self, email_config: dict):
        self.config = email_config

    @property
    def sender(self) -> str:
        return self.config['from']

    @property
    def configured(self) -> bool:
        return bool(self.config.get('smtp_host'))

    def build_message(self, to: str, subject: str, html: str, text: str) -> EmailMessage:
        msg = EmailMessage()
        msg['Subject'] = subject
        msg['From'] = self.sender
        msg['To'] = to
        msg.set_content(text)
        msg.add_alternative(html, subtype='html')
        return msg

    @contextmanager
    def _connect(self):
        with smtplib.SMTP(self.config['smtp_host'], self.config['smtp_port'], timeout=10) as smtp:
            if self.config.get('smtp_use_tls'):
                smtp.starttls()
            if self.config.get('smtp_user') and self.config.get('smtp_password'):
                smtp.login(self.config['smtp_user'], self.config['smtp_password'])
            yield smtp

    def send(self, to: str, subject: str, html: str, text: str) -> bool:
        return self.send_batch([self.build_message(to, subject, html, text)]) == 1

    def send_batch(self, messages: list) -> int:
        """Send prepared messages over one connection. Returns the number sent."""
        if not messages:
            return 0
        if not self.configured:
            for msg in messages:
                logger.warning(f"SMTP not configured; not sending '{msg['Subject']}' to {msg['To']}")
            return 0
        with self._connect() as smtp:
            for msg in messages:
                smtp.send_message(msg)
        logger.info(f'Sent {len(messages)} email(s)')
        return len(messages)
