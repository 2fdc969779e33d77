"""
Client for the external identity service.

The service speaks GraphQL over HTTP. Login, session lookup and logout are all
delegated to it; users are mirrored into the local store on each request.
"""
import logging

import requests

from registration.models import new_user

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 10


class AuthServiceError(Exception):
    """The identity service returned an invalid response."""


class AuthServiceClient:

    def __init__(self, url: str, cookie: str = 'groundtruthid'):
        self.url = url.rstrip('/')
        self.cookie = cookie

    def _query(self, query: str, variables: dict = None) -> dict:
        try:
            response = requests.post(f'{self.url}/graphql',
                                     json={'query': query, 'variables': variables or {}},
                                     timeout=REQUEST_TIMEOUT)
            response.raise_for_status()
            body = response.json()
        except (requests.RequestException, ValueError) as e:
            raise AuthServiceError(f'Could not reach auth service: {e}') from e
        if not body or not body.get('data'):
            logger.error(f'Invalid response from auth service: {body}')
            raise AuthServiceError('Got invalid response from auth service.')
        return body['data']

    def authenticate_url(self, callback: str) -> str:
        data = self._query('query ($callback: String!) { authenticate(callback: $callback) }',
                           {'callback': callback})
        if not data.get('authenticate'):
            raise AuthServiceError('Got invalid response from auth service.')
        return data['authenticate']

    def get_user(self, token: str):
        """Remote user for a session token, or None when not logged in."""
        if not token:
            return None
        data = self._query(
            'query ($token: String!) { user(token: $token) { id email email_verified name admin } }',
            {'token': token})
        return data.get('user')

    def is_admin(self, token: str) -> bool:
        user = self.get_user(token)
        return bool(user and user.get('admin'))

    def logout_url(self) -> str:
        return self._query('{ logout }')['logout']


def sync_remote_user(store, remote: dict) -> dict:
    """Upsert the local copy of a remote user, keeping local application data."""
    user = store.get_user(remote['id'])
    if user is None:
        user = new_user(remote.get('email') or '', remote.get('name') or '', uuid=remote['id'])
    user.update({
        'email': remote.get('email') or user['email'],
        'name': remote.get('name') or user['name'],
        'verified_email': bool(remote.get('email_verified')),
        'admin': bool(remote.get('admin')),
    })
    user['services'] = dict(user.get('services') or {}, groundtruth={'id': remote['id']})
    return store.update_user(user)
