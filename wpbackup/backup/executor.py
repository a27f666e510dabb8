"""
Backup executor - orchestrates one backup session.

Workflow:
1. Ping the monitoring endpoint (start)
2. Check preconditions (WP-CLI, WordPress directory)
3. Create the remote session folder
4. Stream each artifact into the store, in fixed order
5. Prune old remote snapshots
6. Ping the monitoring endpoint (success or exit code)

This is the only place where a failure is classified as fatal or advisory.
"""

import shutil
import tempfile
from functools import partial
from pathlib import Path
from typing import List, Optional

from wpbackup.config import Settings
from .notifier import Notifier
from .producer import ManifestEntry, ManifestInfo, ProducerError, SnapshotProducer, stage_artifact
from .retention import RetentionManager
from .session import (
    Artifact,
    ArtifactOutcome,
    BackupSession,
    ExitCode,
    SessionLog,
    SessionState,
)
from .transport import TransportError, WebDAVClient


class BackupFailed(Exception):
    """A fatal step failure, carrying the exit code for the session."""

    def __init__(self, exit_code: ExitCode, message: str):
        self.exit_code = exit_code
        super().__init__(message)


class BackupExecutor:
    """
    Runs the backup pipeline for one session.
    """

    def __init__(
        self,
        settings: Settings,
        client: WebDAVClient,
        producer: SnapshotProducer,
        notifier: Notifier,
        log: Optional[SessionLog] = None
    ):
        """
        Initialize backup executor.

        Args:
            settings: Validated settings
            client: WebDAV client for the remote store
            producer: Artifact producer for the WordPress site
            notifier: Monitoring notifier (may be disabled)
            log: Session log buffer (a new one by default)
        """
        self.settings = settings
        self.client = client
        self.producer = producer
        self.notifier = notifier
        self.log = log or SessionLog()
        self.session = None
        self.staging_dir = None
        self.artifacts = self._declare_artifacts()

    def _declare_artifacts(self) -> List[Artifact]:
        return [
            Artifact('database.sql.gz', 'Database dump', True, self.producer.database_dump),
            Artifact('plugins.json', 'Plugin list (JSON)', False, partial(self.producer.plugin_inventory, 'json')),
            Artifact('plugins.txt', 'Plugin list (table)', False, partial(self.producer.plugin_inventory, 'table')),
            Artifact('wordpress-files.tar.gz', 'wp-content and wp-config.php', True, self.producer.file_archive),
            Artifact('manifest.txt', 'Backup manifest', True, self._produce_manifest),
        ]

    def execute(self) -> BackupSession:
        """
        Execute the backup session.

        Returns:
            BackupSession with outcomes, log and exit code
        """
        self.session = BackupSession.start(self.settings.remote_dir, log=self.log)
        log = self.session.log

        log.info("Starting WordPress backup process...")
        self.notifier.ping('start', log=log, body=log.text())

        try:
            self._execute_workflow()

            self.session.state = SessionState.DONE
            self.session.exit_code = ExitCode.SUCCESS
            log.info("Backup process completed successfully!")
            log.info(
                f"Backup location: {self.settings.username}@{self.settings.host}:"
                f"{self.session.remote_folder}"
            )
            log.info(f"Total backup size: {self.session.total_bytes / 1024 / 1024:.2f} MB")

        except BackupFailed as e:
            self._fail(e.exit_code, str(e))

        except Exception as e:
            self._fail(ExitCode.FAILURE, f"Unexpected error: {e}")

        finally:
            self._cleanup()

        self._notify_result()
        return self.session

    def _execute_workflow(self):
        """Execute the main backup workflow steps."""
        # Step 1: Preconditions
        try:
            self.producer.check_wp_cli()
            self.producer.check_wordpress_path()
        except ProducerError as e:
            raise BackupFailed(ExitCode.PRECONDITION, str(e))

        # Step 2: Remote session folder
        self._create_session_folder()

        # Step 3: Artifacts, in declared order
        for index, artifact in enumerate(self.artifacts):
            try:
                self._upload_artifact(artifact)
            except BackupFailed:
                for skipped in self.artifacts[index + 1:]:
                    self.session.outcomes.append(ArtifactOutcome(skipped.name, 'skipped'))
                raise

        # Step 4: Retention
        self._prune_remote()

    def _create_session_folder(self):
        log = self.session.log
        log.info(f"Creating remote backup directory: {self.session.remote_folder}")

        try:
            self.client.create_collection(self.session.remote_folder)
        except TransportError as e:
            raise BackupFailed(ExitCode.REMOTE_FOLDER, f"Failed to create remote backup directory: {e}")

        self.session.state = SessionState.FOLDER_CREATED

    def _upload_artifact(self, artifact: Artifact):
        """
        Produce one artifact and pipe it into the store.

        Raises:
            BackupFailed: If a fatal artifact fails
        """
        log = self.session.log
        remote_path = f"{self.session.remote_folder}/{artifact.name}"
        log.info(f"Creating and uploading {artifact.name} ({artifact.description})...")

        stream = None
        try:
            stream = artifact.produce()

            if self.settings.mode == 'staging':
                staged = stage_artifact(stream, self._staging_path(), artifact.name)
                uploaded = self.client.upload(remote_path, staged.open(), reopen=staged.open)
                expected = staged.size
            else:
                uploaded = self.client.upload(remote_path, stream)
                expected = stream.bytes_emitted

            if uploaded != expected:
                raise TransportError('upload', remote_path, f"sent {uploaded} of {expected} bytes")

        except (ProducerError, TransportError) as e:
            self.session.outcomes.append(ArtifactOutcome(artifact.name, 'failed', error=str(e)))
            if artifact.fatal:
                log.error(f"Failed to create or upload {artifact.name}: {e}")
                raise BackupFailed(ExitCode.ARTIFACT, f"Required artifact {artifact.name} failed")
            log.warning(f"Failed to create or upload {artifact.name}: {e}")
            return

        finally:
            if stream is not None:
                stream.close()

        self.session.outcomes.append(ArtifactOutcome(artifact.name, 'uploaded', bytes_uploaded=uploaded))
        log.info(f"Uploaded {artifact.name} ({uploaded / 1024 / 1024:.2f} MB)")

        if artifact.name == 'manifest.txt':
            self.session.state = SessionState.MANIFEST_UPLOADED
        else:
            self.session.state = SessionState.ARTIFACT_UPLOADED

    def _produce_manifest(self):
        entries = []
        for artifact in self.artifacts:
            if artifact.name == 'manifest.txt':
                continue
            outcome = self.session.outcome(artifact.name)
            entries.append(ManifestEntry(
                name=artifact.name,
                description=artifact.description,
                status=outcome.status if outcome else 'skipped',
                bytes_uploaded=outcome.bytes_uploaded if outcome else 0
            ))

        info = ManifestInfo(
            token=self.session.token,
            created_at=self.session.created_at,
            wordpress_path=self.producer.wordpress_path,
            entries=entries
        )
        return self.producer.manifest(info)

    def _prune_remote(self):
        """Apply the retention policy. Failures here never fail the session."""
        log = self.session.log
        retention = RetentionManager(self.client, log)

        try:
            result = retention.prune(self.settings.remote_dir, self.settings.retention_count)
        except TransportError as e:
            log.warning(f"Skipping cleanup of old backups, could not list remote directory: {e}")
            return

        if result.deleted:
            log.info(f"Deleted {len(result.deleted)} old backup(s)")
        self.session.state = SessionState.PRUNED

    def _staging_path(self) -> str:
        if self.staging_dir is None:
            base = Path(self.settings.staging_dir or Path(tempfile.gettempdir()) / 'wp-backups')
            self.staging_dir = str(base / self.session.token)
        return self.staging_dir

    def _fail(self, exit_code: ExitCode, message: str):
        log = self.session.log
        uploaded = sum(1 for o in self.session.outcomes if o.status == 'uploaded')

        self.session.state = SessionState.FAILED
        self.session.exit_code = exit_code
        log.error(message)
        log.error(
            f"Backup failed (exit code {int(exit_code)}): "
            f"{uploaded} of {len(self.artifacts)} artifacts uploaded"
        )

    def _notify_result(self):
        log = self.session.log
        body = log.text()

        if self.session.succeeded:
            self.notifier.ping('', log=log, body=body)
        else:
            self.notifier.ping(str(int(self.session.exit_code)), log=log, body=body)

    def _cleanup(self):
        """Remove the staging directory, if one was used."""
        if self.staging_dir and Path(self.staging_dir).exists():
            try:
                shutil.rmtree(self.staging_dir)
                self.session.log.info("Cleaned up temporary files")
            except OSError as e:
                self.session.log.warning(f"Failed to cleanup staging directory: {e}")
