"""
Backup module for wpbackup.

This module handles the core backup functionality including:
- WebDAV transport to the remote store
- Streaming artifact production (database, plugins, files, manifest)
- Session orchestration
- Retention policy enforcement
- Monitoring pings
"""

from .executor import BackupExecutor
from .notifier import Notifier
from .producer import SnapshotProducer, ProducerError
from .retention import RetentionManager
from .session import BackupSession, ExitCode, SessionLog
from .transport import WebDAVClient, TransportError

__all__ = [
    'BackupExecutor',
    'Notifier',
    'SnapshotProducer',
    'ProducerError',
    'RetentionManager',
    'BackupSession',
    'ExitCode',
    'SessionLog',
    'WebDAVClient',
    'TransportError'
]
