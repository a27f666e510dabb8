"""
Retention policy enforcement for remote snapshots.

Keeps the N newest snapshots in the remote backup directory and deletes the
rest. Snapshot names carry a fixed-width timestamp, so descending name order
is descending chronological order.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from .session import SessionLog, is_snapshot_name
from .transport import TransportError, WebDAVClient


@dataclass
class PruneResult:
    kept: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


def select_for_deletion(names: List[str], keep_count: int) -> List[str]:
    """
    Pick the snapshot names that fall outside the retention window.

    Args:
        names: Entry names from the remote listing
        keep_count: Number of newest snapshots to keep (>= 1)

    Returns:
        Names to delete, newest first. Names that are not snapshots are
        never returned.
    """
    if keep_count < 1:
        raise ValueError(f"Retention count must be at least 1, got {keep_count}")

    snapshots = sorted((n for n in names if is_snapshot_name(n)), reverse=True)
    return snapshots[keep_count:]


class RetentionManager:
    """
    Prunes old snapshots from the remote store.

    Listing failures propagate to the caller; a failed deletion is logged as a
    warning and the remaining deletions still run.
    """

    def __init__(self, client: WebDAVClient, log: Optional[SessionLog] = None):
        self.client = client
        self.log = log or SessionLog()

    def prune(self, base_path: str, keep_count: int) -> PruneResult:
        """
        Delete all but the newest keep_count snapshots under base_path.

        Args:
            base_path: Remote backup directory
            keep_count: Number of snapshots to keep

        Returns:
            PruneResult with kept, deleted and failed names

        Raises:
            TransportError: If the directory cannot be listed
            ValueError: If keep_count is below 1
        """
        self.log.info(f"Cleaning up old remote backups (keeping {keep_count})...")

        entries = self.client.list_collection(base_path)
        by_name = {entry.name: entry for entry in entries}

        to_delete = select_for_deletion(list(by_name), keep_count)
        result = PruneResult(
            kept=sorted((n for n in by_name if is_snapshot_name(n) and n not in to_delete), reverse=True)
        )

        if not to_delete:
            self.log.info("No old backups to clean up")
            return result

        base = base_path.rstrip('/')
        for name in to_delete:
            path = f"{base}/{name}"
            if by_name[name].is_collection:
                path += '/'

            self.log.info(f"Deleting old backup: {name}")
            try:
                self.client.delete(path)
                result.deleted.append(name)
            except TransportError as e:
                self.log.warning(f"Could not delete backup: {name} ({e.cause})")
                result.failed.append(name)

        return result
