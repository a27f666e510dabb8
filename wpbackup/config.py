import os
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional

import httpx


class Config:
    """Base configuration"""

    # Credentials encryption (see utils/crypto.py)
    SECRET_KEY = os.environ.get('SECRET_KEY')

    # Shell-style KEY="value" settings file
    CONFIG_FILE = os.environ.get('WP_BACKUP_CONFIG') or os.path.expanduser('~/.wp-backup.conf')

    # Remote WebDAV store
    WEBDAV_HOST = None
    WEBDAV_USER = None
    WEBDAV_PASSWORD = None
    WEBDAV_PASSWORD_ENCRYPTED = None
    WEBDAV_REMOTE_DIR = '/'
    WEBDAV_SCHEME = 'https'
    REMOTE_BACKUP_COUNT = 3

    # Monitoring (healthchecks.io style base URL)
    MONITOR_URL = None

    # WordPress
    WORDPRESS_PATH = os.path.expanduser('~/html')
    WP_CLI_PATH = 'wp'

    # Pipeline: 'stream' pipes straight to the store, 'staging' writes each
    # artifact to STAGING_DIR first
    BACKUP_MODE = 'stream'
    STAGING_DIR = os.path.expanduser('~/tmp/wp-backups')

    # Transport
    CONNECT_TIMEOUT = 10
    OPERATION_TIMEOUT = 60
    UPLOAD_TIMEOUT = 3600
    MAX_RETRIES = 3
    RETRY_DELAY = 5

    # Scheduler
    BACKUP_SCHEDULE_CRON = None
    SCHEDULER_TIMEZONE = 'UTC'

    # Logging
    LOG_DIR = os.environ.get('LOG_DIR') or os.path.expanduser('~/.wp-backup/logs')


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    STAGING_DIR = os.path.join(DATA_DIR, 'staging')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


class TestingConfig(Config):
    """Test configuration; never reads the user's settings file"""
    TESTING = True
    DEBUG = False
    CONFIG_FILE = None
    LOG_DIR = None
    RETRY_DELAY = 0


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}


# Keys that may come from the settings file or the environment
SETTINGS_KEYS = [
    'WEBDAV_HOST',
    'WEBDAV_USER',
    'WEBDAV_PASSWORD',
    'WEBDAV_PASSWORD_ENCRYPTED',
    'WEBDAV_REMOTE_DIR',
    'WEBDAV_SCHEME',
    'REMOTE_BACKUP_COUNT',
    'MONITOR_URL',
    'WORDPRESS_PATH',
    'WP_CLI_PATH',
    'BACKUP_MODE',
    'STAGING_DIR',
    'CONNECT_TIMEOUT',
    'OPERATION_TIMEOUT',
    'UPLOAD_TIMEOUT',
    'MAX_RETRIES',
    'RETRY_DELAY',
    'BACKUP_SCHEDULE_CRON',
]

# Legacy Hetzner Storage Box names, accepted as aliases
LEGACY_ALIASES = {
    'HETZNER_HOST': 'WEBDAV_HOST',
    'HETZNER_USER': 'WEBDAV_USER',
    'HETZNER_PASSWORD': 'WEBDAV_PASSWORD',
    'HETZNER_REMOTE_DIR': 'WEBDAV_REMOTE_DIR',
    'HEALTHCHECK_URL': 'MONITOR_URL',
}

BACKUP_MODES = ('stream', 'staging')

EXAMPLE_CONFIG = '''# WordPress Backup Configuration

WEBDAV_HOST=""
WEBDAV_USER=""
WEBDAV_PASSWORD=""
WEBDAV_REMOTE_DIR="/"

REMOTE_BACKUP_COUNT="3"

# Optional monitoring base URL, e.g. https://hc-ping.com/<uuid>
MONITOR_URL=""
'''


class SettingsError(Exception):
    """Raised when the backup settings are missing or invalid."""

    def __init__(self, problems: List[str]):
        self.problems = problems
        super().__init__('Invalid settings: ' + '; '.join(problems))


@dataclass(frozen=True)
class Settings:
    """Validated settings for one backup run."""
    host: str
    username: str
    password: str
    remote_dir: str
    retention_count: int
    wordpress_path: str
    monitor_url: Optional[str] = None
    scheme: str = 'https'
    wp_cli_path: str = 'wp'
    mode: str = 'stream'
    staging_dir: Optional[str] = None
    connect_timeout: float = 10.0
    operation_timeout: float = 60.0
    upload_timeout: float = 3600.0
    max_retries: int = 3
    retry_delay: float = 5.0
    schedule_cron: Optional[str] = None

    @property
    def base_url(self) -> str:
        if '://' in self.host:
            return self.host.rstrip('/')
        return f"{self.scheme}://{self.host}"

    def __repr__(self):
        return f'<Settings {self.username}@{self.host}:{self.remote_dir} keep={self.retention_count}>'


def read_config_file(path: str) -> Dict[str, str]:
    """
    Read a shell-style KEY="value" settings file.

    Blank lines, comments and `export ` prefixes are allowed. Legacy
    HETZNER_* names are mapped to their WEBDAV_* equivalents.

    Args:
        path: Settings file path

    Returns:
        Dict of recognised keys to string values
    """
    values = {}

    with open(path, 'r') as f:
        for line in f:
            tokens = shlex.split(line, comments=True)
            if not tokens:
                continue
            if tokens[0] == 'export':
                tokens = tokens[1:]
            for token in tokens:
                if '=' not in token:
                    continue
                key, value = token.split('=', 1)
                key = LEGACY_ALIASES.get(key, key)
                if key in SETTINGS_KEYS:
                    values[key] = value

    return values


def collect_overrides(config_file: Optional[str], environ: Mapping[str, str]) -> Dict[str, str]:
    """
    Gather settings from the settings file and the environment.

    Environment variables win over the file. Empty values are ignored.
    """
    values = {}

    if config_file and os.path.exists(config_file):
        values.update({k: v for k, v in read_config_file(config_file).items() if v != ''})

    for name, value in environ.items():
        key = LEGACY_ALIASES.get(name, name)
        if key in SETTINGS_KEYS and value != '':
            values[key] = value

    return values


def write_example_config(path: str) -> bool:
    """
    Create an example settings file readable only by the owner.

    Returns:
        True if the file was created, False if it already existed
    """
    config_path = Path(path).expanduser()
    if config_path.exists():
        return False

    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(EXAMPLE_CONFIG)
    os.chmod(config_path, 0o600)
    return True


def load_settings(values: Mapping) -> Settings:
    """
    Build a validated Settings record.

    Args:
        values: Mapping with the SETTINGS_KEYS (Flask app.config works)

    Returns:
        Settings

    Raises:
        SettingsError: Listing every problem found
    """
    problems = []

    def text(key, default=None):
        value = values.get(key, default)
        if value is None:
            return default
        value = str(value).strip()
        return value or default

    def number(key, cast, minimum):
        raw = values.get(key)
        try:
            value = cast(raw)
        except (TypeError, ValueError):
            problems.append(f"{key} must be a number, got {raw!r}")
            return None
        if value < minimum:
            problems.append(f"{key} must be at least {minimum}, got {value}")
            return None
        return value

    host = text('WEBDAV_HOST')
    username = text('WEBDAV_USER')
    password = text('WEBDAV_PASSWORD')

    if not host:
        problems.append('WEBDAV_HOST is required')
    if not username:
        problems.append('WEBDAV_USER is required')

    if not password:
        encrypted = text('WEBDAV_PASSWORD_ENCRYPTED')
        if encrypted:
            password = _decrypt_password(encrypted, text('SECRET_KEY'), problems)
        else:
            problems.append('WEBDAV_PASSWORD or WEBDAV_PASSWORD_ENCRYPTED is required')

    remote_dir = text('WEBDAV_REMOTE_DIR', '/')
    if not remote_dir.startswith('/'):
        remote_dir = '/' + remote_dir

    scheme = text('WEBDAV_SCHEME', 'https')
    if host:
        _check_url('WEBDAV_HOST', host if '://' in host else f"{scheme}://{host}", problems)

    monitor_url = text('MONITOR_URL')
    if monitor_url:
        _check_url('MONITOR_URL', monitor_url, problems)

    mode = text('BACKUP_MODE', 'stream')
    if mode not in BACKUP_MODES:
        problems.append(f"BACKUP_MODE must be one of {list(BACKUP_MODES)}, got {mode!r}")

    retention_count = number('REMOTE_BACKUP_COUNT', int, 1)
    connect_timeout = number('CONNECT_TIMEOUT', float, 0)
    operation_timeout = number('OPERATION_TIMEOUT', float, 0)
    upload_timeout = number('UPLOAD_TIMEOUT', float, 0)
    max_retries = number('MAX_RETRIES', int, 0)
    retry_delay = number('RETRY_DELAY', float, 0)

    if problems:
        raise SettingsError(problems)

    return Settings(
        host=host,
        username=username,
        password=password,
        remote_dir=remote_dir,
        retention_count=retention_count,
        wordpress_path=os.path.expanduser(text('WORDPRESS_PATH', '~/html')),
        monitor_url=monitor_url,
        scheme=scheme,
        wp_cli_path=text('WP_CLI_PATH', 'wp'),
        mode=mode,
        staging_dir=text('STAGING_DIR'),
        connect_timeout=connect_timeout,
        operation_timeout=operation_timeout,
        upload_timeout=upload_timeout,
        max_retries=max_retries,
        retry_delay=retry_delay,
        schedule_cron=text('BACKUP_SCHEDULE_CRON')
    )


def _check_url(key: str, url: str, problems: List[str]):
    try:
        parsed = httpx.URL(url)
    except httpx.InvalidURL as e:
        problems.append(f"{key} is not a valid URL: {e}")
        return
    if parsed.scheme not in ('http', 'https') or not parsed.host:
        problems.append(f"{key} must be an http(s) URL, got {url!r}")


def _decrypt_password(encrypted: str, secret_key: Optional[str], problems: List[str]) -> Optional[str]:
    from cryptography.fernet import InvalidToken
    from wpbackup.utils.crypto import CredentialCipher

    if not secret_key:
        problems.append('SECRET_KEY is required to decrypt WEBDAV_PASSWORD_ENCRYPTED')
        return None

    try:
        return CredentialCipher(secret_key).decrypt(encrypted)
    except (InvalidToken, ValueError):
        problems.append('WEBDAV_PASSWORD_ENCRYPTED could not be decrypted with SECRET_KEY')
        return None
