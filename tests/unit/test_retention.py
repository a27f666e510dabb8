"""
Unit tests for remote retention (wpbackup/backup/retention.py).
"""

import random

import pytest

from wpbackup.backup.retention import RetentionManager, select_for_deletion
from wpbackup.backup.session import SessionLog
from wpbackup.backup.transport import TransportError


SNAPSHOTS = ['20240101_000000', '20240102_000000', '20240103_000000', '20240104_000000']


@pytest.fixture
def populated(webdav):
    """Remote directory with four snapshot folders and some unrelated entries."""
    for name in SNAPSHOTS:
        webdav.add_collection(f'/backups/{name}')
        webdav.add_file(f'/backups/{name}/manifest.txt', b'manifest')
    webdav.add_file('/backups/notes.txt', b'keep me')
    webdav.add_collection('/backups/manual-copy')
    return webdav


class TestSelectForDeletion:
    """Test the pure selection rule."""

    def test_keeps_newest(self):
        assert select_for_deletion(SNAPSHOTS, 3) == ['20240101_000000']

    def test_nothing_to_delete(self):
        assert select_for_deletion(SNAPSHOTS, 4) == []
        assert select_for_deletion(SNAPSHOTS, 10) == []
        assert select_for_deletion([], 1) == []

    def test_ignores_unrelated_names(self):
        names = SNAPSHOTS + ['notes.txt', 'manual-copy', '2024-01-01', 'zzz']

        assert select_for_deletion(names, 1) == ['20240103_000000', '20240102_000000', '20240101_000000']

    def test_legacy_archive_names(self):
        names = ['20231231_120000.tar.gz', '20240101_000000', '20240102_000000']

        assert select_for_deletion(names, 2) == ['20231231_120000.tar.gz']

    @pytest.mark.parametrize('keep_count', [0, -1])
    def test_keep_count_below_one(self, keep_count):
        with pytest.raises(ValueError):
            select_for_deletion(SNAPSHOTS, keep_count)

    @pytest.mark.parametrize('seed', range(10))
    def test_survivors_are_newest(self, seed):
        rng = random.Random(seed)
        snapshots = sorted({
            f"2024{rng.randint(1, 12):02d}{rng.randint(1, 28):02d}_{rng.randint(0, 235959):06d}"
            for _ in range(rng.randint(0, 15))
        })
        noise = ['notes.txt', 'latest', 'backup.zip']
        names = snapshots + noise
        rng.shuffle(names)
        keep = rng.randint(1, 5)

        deleted = select_for_deletion(names, keep)

        survivors = [n for n in snapshots if n not in deleted]
        assert survivors == snapshots[-keep:]
        assert len(survivors) == min(keep, len(snapshots))
        assert not set(deleted) & set(noise)


class TestRetentionManager:
    """Test pruning against the in-memory WebDAV server."""

    def test_prune_deletes_oldest(self, client, populated):
        result = RetentionManager(client).prune('/backups', 3)

        assert result.deleted == ['20240101_000000']
        assert result.kept == ['20240104_000000', '20240103_000000', '20240102_000000']
        assert result.failed == []
        assert populated.children('/backups') == [
            '20240102_000000', '20240103_000000', '20240104_000000', 'manual-copy', 'notes.txt'
        ]

    def test_collections_are_deleted_with_trailing_slash(self, client, populated):
        RetentionManager(client).prune('/backups', 3)

        assert populated.requests_for('DELETE') == ['/backups/20240101_000000/']

    def test_prune_is_idempotent(self, client, populated):
        RetentionManager(client).prune('/backups', 2)
        second = RetentionManager(client).prune('/backups', 2)

        assert second.deleted == []
        assert len(populated.requests_for('DELETE')) == 2

    def test_nothing_to_delete_is_logged(self, client, populated):
        log = SessionLog()

        result = RetentionManager(client, log).prune('/backups', 5)

        assert result.deleted == []
        assert populated.requests_for('DELETE') == []
        assert log.text().endswith('INFO: No old backups to clean up')

    def test_failed_deletion_does_not_stop_others(self, client, populated):
        populated.fail('DELETE', '/backups/20240102_000000', status=403)
        log = SessionLog()

        result = RetentionManager(client, log).prune('/backups', 1)

        assert result.deleted == ['20240103_000000', '20240101_000000']
        assert result.failed == ['20240102_000000']
        assert log.warnings == 1
        assert 'WARNING: Could not delete backup: 20240102_000000 (HTTP 403 Forbidden)' in log.text()
        assert populated.children('/backups') == [
            '20240102_000000', '20240104_000000', 'manual-copy', 'notes.txt'
        ]

    def test_deletions_are_logged(self, client, populated):
        log = SessionLog()

        RetentionManager(client, log).prune('/backups', 3)

        messages = [line.split('] ', 1)[1] for line in log.lines]
        assert messages == [
            'INFO: Cleaning up old remote backups (keeping 3)...',
            'INFO: Deleting old backup: 20240101_000000',
        ]

    def test_listing_failure_raises(self, client, populated):
        populated.fail('PROPFIND', '/backups', status=404)

        with pytest.raises(TransportError):
            RetentionManager(client).prune('/backups', 3)

        assert populated.requests_for('DELETE') == []

    def test_legacy_archive_files(self, client, webdav):
        webdav.add_file('/backups/20231201_000000.tar.gz', b'old')
        webdav.add_collection('/backups/20240101_000000')

        result = RetentionManager(client).prune('/backups', 1)

        assert result.deleted == ['20231201_000000.tar.gz']
        assert webdav.requests_for('DELETE') == ['/backups/20231201_000000.tar.gz']
