"""
Background email jobs.

Templated emails are rendered per user on a worker thread so routes return
without waiting on SMTP. Tests run the queue synchronously.
"""
import logging
import queue
import threading

from registration.mailer import render_email_html, render_email_text

logger = logging.getLogger(__name__)


def team_name_for(store, user: dict) -> str:
    """Team name as shown in emails."""
    if not store.get_setting('teams_enabled'):
        return 'Teams not enabled'
    team = store.get_team(user['team_id']) if user.get('team_id') else None
    if team is None:
        return 'No team created or joined'
    return team['team_name']


def render_templated_email(store, user: dict, markdown_text: str, event_name: str):
    """Render ``markdown_text`` for ``user`` into ``(html, text)``."""
    html = render_email_html(markdown_text, user, event_name, team_name_for(store, user))
    return html, render_email_text(html)


class EmailQueue:
    """Queue of ``send_templated_email`` jobs.

    Each job names a user by uuid; the user is reloaded when the job runs so
    the email reflects their current data.
    """

    def __init__(self, store, mailer, event_name: str, synchronous: bool = False):
        self.store = store
        self.mailer = mailer
        self.event_name = event_name
        self.synchronous = synchronous
        self._queue = queue.Queue()
        self._thread = None
        self._lock = threading.Lock()

    def _ensure_worker(self):
        with self._lock:
            if self._thread is None or not self._thread.is_alive():
                self._thread = threading.Thread(target=self._run, name='email-queue', daemon=True)
                self._thread.start()

    def _run(self):
        while True:
            job = self._queue.get()
            try:
                self.send_templated_email(**job)
            except Exception:
                logger.exception(f"Email job for user {job.get('user_id')} failed")
            finally:
                self._queue.task_done()

    def enqueue(self, user_id: str, subject: str, markdown_text: str):
        job = {'user_id': user_id, 'subject': subject, 'markdown_text': markdown_text}
        if self.synchronous:
            return self.send_templated_email(**job)
        self._ensure_worker()
        self._queue.put(job)
        return None

    def join(self):
        """Block until every queued job has run."""
        self._queue.join()

    def send_templated_email(self, user_id: str, subject: str, markdown_text: str) -> bool:
        user = self.store.get_user(user_id)
        if user is None:
            logger.error(f'Cannot send "{subject}": no such user {user_id}')
            return False
        html, text = render_templated_email(self.store, user, markdown_text, self.event_name)
        return self.mailer.send(user['email'], subject, html, text)
