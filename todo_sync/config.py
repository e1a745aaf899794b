"""Configuration for the sync client.

Settings live in a small JSON file; any key can be overridden with a
`TODO_SYNC_<KEY>` environment variable (e.g. `TODO_SYNC_POLL_INTERVAL=10`).
"""
import json
import logging
import os
from typing import Any, Optional

logger = logging.getLogger(__name__)

DEFAULTS: dict[str, Any] = {
    'server_url': 'http://localhost:8000',
    'poll_interval': 30.0,
    'max_attempts': 3,
    'retry_base_delay': 0.25,
    'retry_max_delay': 4.0,
    'tombstone_ttl': None,
    'request_timeout': 10.0,
    'email': '',
}

ENV_PREFIX = 'TODO_SYNC_'


def _coerce(raw: str, default: Any) -> Any:
    if isinstance(default, bool):
        return raw.lower() in ('1', 'true', 'yes', 'on')
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float) or default is None:
        return float(raw) if raw else None
    return raw


class Config:
    """JSON-file backed settings with property accessors."""

    def __init__(self, config_file: Optional[str] = None, env: Optional[dict[str, str]] = None):
        self.config_file = config_file or os.path.join(os.path.expanduser('~'), '.todo_sync.json')
        self._env = os.environ if env is None else env
        self._config: dict[str, Any] = {}
        self.load()

    def load(self) -> None:
        if os.path.exists(self.config_file):
            try:
                with open(self.config_file, 'r') as f:
                    self._config = json.load(f)
            except (OSError, ValueError):
                logger.warning('could not read %s, using defaults', self.config_file)
                self._config = {}
        else:
            self._config = {}

    def save(self) -> None:
        directory = os.path.dirname(self.config_file)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(self.config_file, 'w') as f:
            json.dump(self._config, f, indent=2)

    def get(self, key: str) -> Any:
        default = DEFAULTS.get(key)
        raw = self._env.get(ENV_PREFIX + key.upper())
        if raw is not None:
            try:
                return _coerce(raw, default)
            except ValueError:
                logger.warning('ignoring malformed %s%s=%r', ENV_PREFIX, key.upper(), raw)
        return self._config.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._config[key] = value
        self.save()

    @property
    def server_url(self) -> str:
        return self.get('server_url')

    @server_url.setter
    def server_url(self, value: str):
        self.set('server_url', value)

    @property
    def poll_interval(self) -> float:
        return float(self.get('poll_interval'))

    @poll_interval.setter
    def poll_interval(self, value: float):
        self.set('poll_interval', value)

    @property
    def max_attempts(self) -> int:
        return int(self.get('max_attempts'))

    @property
    def retry_base_delay(self) -> float:
        return float(self.get('retry_base_delay'))

    @property
    def retry_max_delay(self) -> float:
        return float(self.get('retry_max_delay'))

    @property
    def tombstone_ttl(self) -> Optional[float]:
        value = self.get('tombstone_ttl')
        return None if value is None else float(value)

    @property
    def request_timeout(self) -> float:
        return float(self.get('request_timeout'))

    @property
    def email(self) -> str:
        return self.get('email') or ''

    @email.setter
    def email(self, value: str):
        self.set('email', value)
