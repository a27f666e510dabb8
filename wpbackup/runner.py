"""
Builds the backup components from settings and runs sessions.

Keeps a summary of the most recent session for the status endpoint.
"""

import threading
from typing import Optional

from wpbackup.config import Settings
from wpbackup.backup.executor import BackupExecutor
from wpbackup.backup.notifier import Notifier
from wpbackup.backup.producer import SnapshotProducer
from wpbackup.backup.retention import PruneResult, RetentionManager
from wpbackup.backup.session import BackupSession, SessionLog
from wpbackup.backup.transport import WebDAVClient


_last_session = None
_lock = threading.Lock()


def create_client(settings: Settings, transport=None, log: Optional[SessionLog] = None) -> WebDAVClient:
    """Create a WebDAV client from settings. Retry warnings go to log, if given."""
    return WebDAVClient(
        base_url=settings.base_url,
        username=settings.username,
        password=settings.password,
        connect_timeout=settings.connect_timeout,
        operation_timeout=settings.operation_timeout,
        upload_timeout=settings.upload_timeout,
        max_retries=settings.max_retries,
        retry_delay=settings.retry_delay,
        transport=transport,
        log=log
    )


def create_notifier(settings: Settings, transport=None) -> Notifier:
    return Notifier(
        settings.monitor_url,
        timeout=settings.connect_timeout,
        max_retries=settings.max_retries,
        retry_delay=settings.retry_delay,
        transport=transport
    )


def run_backup(settings: Settings, transport=None) -> BackupSession:
    """
    Run one backup session with the real components.

    Args:
        settings: Validated settings
        transport: Optional httpx transport shared by the WebDAV client and
            the notifier (tests)

    Returns:
        The finished BackupSession
    """
    global _last_session

    producer = SnapshotProducer(settings.wordpress_path, wp_cli_path=settings.wp_cli_path)
    notifier = create_notifier(settings, transport)
    log = SessionLog()

    with create_client(settings, transport, log=log) as client:
        executor = BackupExecutor(settings, client, producer, notifier, log=log)
        session = executor.execute()

    with _lock:
        _last_session = session

    return session


def run_prune(settings: Settings, log: Optional[SessionLog] = None, transport=None) -> PruneResult:
    """
    Apply the retention policy without creating a backup.

    Raises:
        TransportError: If the remote directory cannot be listed
    """
    log = log or SessionLog()
    with create_client(settings, transport, log=log) as client:
        manager = RetentionManager(client, log)
        return manager.prune(settings.remote_dir, settings.retention_count)


def last_session() -> Optional[dict]:
    """Summary of the most recent session run in this process."""
    with _lock:
        return _last_session.to_dict() if _last_session else None
