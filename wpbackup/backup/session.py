"""
Backup session data model.

A session is one run of the backup pipeline. It is identified by a
timestamp token (YYYYMMDD_HHMMSS) that also names the remote session folder.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Callable, List, Optional


TIMESTAMP_FORMAT = '%Y%m%d_%H%M%S'

# Session folders ("20240101_000000") and legacy single archives
# ("20240101_000000.tar.gz")
SNAPSHOT_NAME_PATTERN = re.compile(r'^\d{8}_\d{6}(\.tar\.gz)?$')

logger = logging.getLogger(__name__)


class ExitCode(IntEnum):
    """Process exit codes, forwarded verbatim to the failure notification."""
    SUCCESS = 0
    FAILURE = 1
    PRECONDITION = 2
    REMOTE_FOLDER = 3
    ARTIFACT = 4
    CONFIG = 5


class SessionState(str, Enum):
    INIT = 'init'
    FOLDER_CREATED = 'folder_created'
    ARTIFACT_UPLOADED = 'artifact_uploaded'
    MANIFEST_UPLOADED = 'manifest_uploaded'
    PRUNED = 'pruned'
    DONE = 'done'
    FAILED = 'failed'


def generate_timestamp_token(now: Optional[datetime] = None) -> str:
    """
    Generate a session timestamp token.

    Args:
        now: Time to format (default: current local time)

    Returns:
        Token in YYYYMMDD_HHMMSS format
    """
    return (now or datetime.now()).strftime(TIMESTAMP_FORMAT)


def is_snapshot_name(name: str) -> bool:
    """Return True if a remote entry name looks like a backup snapshot."""
    return bool(SNAPSHOT_NAME_PATTERN.match(name.rstrip('/')))


class SessionLog:
    """
    Session-scoped log buffer.

    Every line is kept in emission order so the whole text can be shipped
    with the final notification. Lines are also forwarded to the standard
    logger so they reach the console and the log file.
    """

    def __init__(self, logger_: Optional[logging.Logger] = None):
        self.lines: List[str] = []
        self.warnings = 0
        self.errors = 0
        self._logger = logger_ or logger

    def info(self, message: str):
        self._append(logging.INFO, message)

    def warning(self, message: str):
        self.warnings += 1
        self._append(logging.WARNING, message)

    def error(self, message: str):
        self.errors += 1
        self._append(logging.ERROR, message)

    def text(self) -> str:
        return '\n'.join(self.lines)

    def _append(self, level: int, message: str):
        timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
        self.lines.append(f"[{timestamp}] {logging.getLevelName(level)}: {message}")
        self._logger.log(level, message)


@dataclass
class Artifact:
    """One named payload uploaded into the session folder."""
    name: str
    description: str
    fatal: bool
    produce: Callable


@dataclass
class ArtifactOutcome:
    name: str
    status: str  # 'uploaded', 'failed' or 'skipped'
    bytes_uploaded: int = 0
    error: Optional[str] = None


@dataclass
class BackupSession:
    """
    In-process record of one backup run.

    The remote session folder is the durable counterpart; this record is
    never persisted.
    """
    token: str
    created_at: datetime
    remote_folder: str
    log: SessionLog = field(default_factory=SessionLog)
    outcomes: List[ArtifactOutcome] = field(default_factory=list)
    state: SessionState = SessionState.INIT
    exit_code: Optional[int] = None

    @classmethod
    def start(cls, remote_dir: str, now: Optional[datetime] = None, log: Optional[SessionLog] = None):
        """Create a session named after the current timestamp."""
        created_at = now or datetime.now()
        token = generate_timestamp_token(created_at)
        remote_folder = f"{remote_dir.rstrip('/')}/{token}"
        return cls(
            token=token,
            created_at=created_at,
            remote_folder=remote_folder,
            log=log or SessionLog()
        )

    @property
    def succeeded(self) -> bool:
        return self.exit_code == ExitCode.SUCCESS

    @property
    def total_bytes(self) -> int:
        return sum(o.bytes_uploaded for o in self.outcomes if o.status == 'uploaded')

    def outcome(self, name: str) -> Optional[ArtifactOutcome]:
        for item in self.outcomes:
            if item.name == name:
                return item
        return None

    def to_dict(self) -> dict:
        return {
            'token': self.token,
            'created_at': self.created_at.isoformat(),
            'remote_folder': self.remote_folder,
            'state': self.state.value,
            'exit_code': self.exit_code,
            'total_bytes': self.total_bytes,
            'warnings': self.log.warnings,
            'artifacts': [
                {
                    'name': o.name,
                    'status': o.status,
                    'bytes_uploaded': o.bytes_uploaded,
                    'error': o.error
                }
                for o in self.outcomes
            ]
        }
