"""
YAML document store.

Users, teams, settings and branch configuration live in one YAML file each
inside the data directory. Writers hold the data directory's file lock for the
whole read-modify-write.
"""
import logging
import os

import yaml
from filelock import FileLock

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS = {
    'teams_enabled': True,
    'qr_enabled': True,
}


class DuplicateEmailError(ValueError):
    """A user with that email already exists."""


class DuplicateTeamError(ValueError):
    """A team with that name already exists."""


class TeamFullError(ValueError):
    """The team already has the maximum number of members."""


class SettingNotFound(KeyError):
    pass


class DataStore:
    """Documents kept under ``data_dir``."""

    def __init__(self, data_dir: str):
        self.data_dir = data_dir
        os.makedirs(data_dir, exist_ok=True)
        self.lock = FileLock(os.path.join(data_dir, '.lock'), timeout=10)

    def _path(self, filename: str) -> str:
        return os.path.join(self.data_dir, filename)

    def _load(self, filename: str, key: str, default):
        path = self._path(filename)
        if not os.path.exists(path):
            return default
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            logger.warning(f'Failed to parse {path}: {e}')
            return default
        if not data or key not in data:
            return default
        return data[key]

    def _save(self, filename: str, key: str, value):
        with open(self._path(filename), 'w', encoding='utf-8') as f:
            yaml.safe_dump({key: value}, f, default_flow_style=False, allow_unicode=True)

    # Users

    def load_users(self) -> list:
        return self._load('users.yaml', 'users', [])

    def save_users(self, users: list):
        with self.lock:
            self._save('users.yaml', 'users', users)

    def get_user(self, uuid: str):
        return next((u for u in self.load_users() if u['uuid'] == uuid), None)

    def find_user(self, **criteria):
        """Return the first user whose fields equal all ``criteria``."""
        matches = self.find_users(criteria)
        return matches[0] if matches else None

    def find_users(self, criteria: dict = None) -> list:
        criteria = criteria or {}
        return [u for u in self.load_users()
                if all(_field(u, k) == v for k, v in criteria.items())]

    def email_in_use(self, email: str) -> bool:
        return any(u['email'].lower() == email.lower() for u in self.load_users())

    def insert_user(self, user: dict) -> dict:
        with self.lock:
            users = self.load_users()
            if any(u['email'].lower() == user['email'].lower() for u in users):
                raise DuplicateEmailError(user['email'])
            users.append(user)
            self._save('users.yaml', 'users', users)
        return user

    def update_user(self, user: dict) -> dict:
        """Replace the stored user with the same uuid, inserting if missing."""
        with self.lock:
            users = self.load_users()
            for i, existing in enumerate(users):
                if existing['uuid'] == user['uuid']:
                    users[i] = user
                    break
            else:
                users.append(user)
            self._save('users.yaml', 'users', users)
        return user

    def delete_user(self, uuid: str) -> bool:
        with self.lock:
            users = self.load_users()
            remaining = [u for u in users if u['uuid'] != uuid]
            if len(remaining) == len(users):
                return False
            self._save('users.yaml', 'users', remaining)
        return True

    # Teams

    def load_teams(self) -> list:
        return self._load('teams.yaml', 'teams', [])

    def save_teams(self, teams: list):
        with self.lock:
            self._save('teams.yaml', 'teams', teams)

    def get_team(self, team_id: str):
        return next((t for t in self.load_teams() if t['id'] == team_id), None)

    def find_team_by_name(self, team_name: str):
        return next((t for t in self.load_teams() if t['team_name'] == team_name), None)

    def insert_team(self, team: dict) -> dict:
        with self.lock:
            teams = self.load_teams()
            if any(t['team_name'] == team['team_name'] for t in teams):
                raise DuplicateTeamError(team['team_name'])
            teams.append(team)
            self._save('teams.yaml', 'teams', teams)
        return team

    def update_team(self, team: dict) -> dict:
        with self.lock:
            teams = self.load_teams()
            for i, existing in enumerate(teams):
                if existing['id'] == team['id']:
                    teams[i] = team
                    break
            else:
                teams.append(team)
            self._save('teams.yaml', 'teams', teams)
        return team

    def delete_team(self, team_id: str):
        with self.lock:
            teams = [t for t in self.load_teams() if t['id'] != team_id]
            self._save('teams.yaml', 'teams', teams)

    def add_team_member(self, team_id: str, uuid: str, max_size: int):
        """Append ``uuid`` to the team unless it is full. Returns the team, or None if it is gone."""
        with self.lock:
            teams = self.load_teams()
            team = next((t for t in teams if t['id'] == team_id), None)
            if team is None:
                return None
            if uuid not in team['members']:
                if len(team['members']) >= max_size:
                    raise TeamFullError(team['team_name'])
                team['members'].append(uuid)
                self._save('teams.yaml', 'teams', teams)
        return team

    def remove_team_member(self, team_id: str, uuid: str):
        """Drop ``uuid`` from the team, handing leadership on or deleting the emptied team.

        Returns the remaining team, or None when the team no longer exists.
        """
        with self.lock:
            teams = self.load_teams()
            team = next((t for t in teams if t['id'] == team_id), None)
            if team is None:
                return None
            team['members'] = [m for m in team['members'] if m != uuid]
            if not team['members']:
                teams.remove(team)
                team = None
            elif team['team_leader'] == uuid:
                team['team_leader'] = team['members'][0]
            self._save('teams.yaml', 'teams', teams)
        return team

    # Settings

    def load_settings(self) -> dict:
        return self._load('settings.yaml', 'settings', {})

    def set_default_settings(self):
        with self.lock:
            settings = self.load_settings()
            changed = False
            for name, value in DEFAULT_SETTINGS.items():
                if name not in settings:
                    settings[name] = value
                    changed = True
                    logger.info(f'Updated previously unset setting {name} to {value!r}')
            if changed:
                self._save('settings.yaml', 'settings', settings)

    def get_setting(self, name: str, create_missing: bool = True):
        settings = self.load_settings()
        if name not in settings:
            if not create_missing:
                raise SettingNotFound(name)
            self.set_default_settings()
            settings = self.load_settings()
            if name not in settings:
                raise SettingNotFound(name)
        return settings[name]

    def update_setting(self, name: str, value, create_missing: bool = True):
        with self.lock:
            settings = self.load_settings()
            if name not in settings and not create_missing:
                raise SettingNotFound(name)
            settings[name] = value
            self._save('settings.yaml', 'settings', settings)

    # Branch configuration

    def load_branch_configs(self) -> list:
        return self._load('branches.yaml', 'branches', [])

    def find_branch_config(self, name: str):
        return next((b for b in self.load_branch_configs() if b['name'] == name), None)

    def save_branch_config(self, doc: dict):
        with self.lock:
            configs = self.load_branch_configs()
            for i, existing in enumerate(configs):
                if existing['name'] == doc['name']:
                    configs[i] = doc
                    break
            else:
                configs.append(doc)
            self._save('branches.yaml', 'branches', configs)

    def set_branch_type(self, name: str, branch_type: str):
        with self.lock:
            configs = self.load_branch_configs()
            for doc in configs:
                if doc['name'] == name:
                    doc['type'] = branch_type
            self._save('branches.yaml', 'branches', configs)


def _field(doc: dict, dotted: str):
    """Look up ``a.b.c`` style keys in nested dicts."""
    value = doc
    for part in dotted.split('.'):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value
