"""
Snapshot producers for backup artifacts.

Each artifact is exposed as a single-use ArtifactStream of byte chunks:
- database_dump: `wp db export` piped through gzip
- file_archive: tar.gz of wp-content/ and wp-config.php, built on the fly
- plugin_inventory: `wp plugin list` in JSON or table format
- manifest: plain text summary of the session

Nothing is written to local disk unless the artifact is explicitly staged
with stage_artifact().
"""

import logging
import os
import shutil
import subprocess
import tarfile
import tempfile
import threading
import zlib
from dataclasses import dataclass, field
from datetime import datetime
from fnmatch import fnmatchcase
from pathlib import Path
from typing import Callable, Iterable, Iterator, List, Optional


logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024

# Members of the WordPress root that go into the file archive
ARCHIVE_MEMBERS = ('wp-content', 'wp-config.php')

# Regenerable or unrelated content left out of the file archive.
# Thumbnails can be rebuilt with `wp media regenerate`.
DEFAULT_EXCLUDES = [
    'wp-content/cache',
    'wp-content/uploads/cache',
    'wp-content/plugins',
    'wp-content/languages',
    'wp-content/upgrade',
    'wp-content/upgrade-temp-backup',
    'backwpup*',
    '*.log',
    '.git',
    '.svn',
    'node_modules',
    '.DS_Store',
    'Thumbs.db',
    '*-[0-9]*x[0-9]*.jpg',
    '*-[0-9]*x[0-9]*.jpeg',
    '*-[0-9]*x[0-9]*.png',
    '*-[0-9]*x[0-9]*.gif',
    '*-[0-9]*x[0-9]*.webp',
]

INVENTORY_FORMATS = ('json', 'table')

UNKNOWN = 'Unknown'


class ProducerError(Exception):
    """Raised when an artifact cannot be produced."""

    def __init__(self, message: str, artifact: Optional[str] = None, returncode: Optional[int] = None):
        self.artifact = artifact
        self.returncode = returncode
        super().__init__(message)


def is_excluded(arcname: str, patterns: Iterable[str]) -> bool:
    """
    Check an archive member name against exclusion patterns.

    Patterns containing a slash are anchored at the archive root and also
    cover everything below the matched directory. Patterns without a slash
    match any single path component.

    Args:
        arcname: Member name inside the archive, e.g. wp-content/uploads/a.jpg
        patterns: Glob patterns

    Returns:
        True if the member should be left out
    """
    path = arcname.strip('/')
    parts = path.split('/')

    for pattern in patterns:
        pattern = pattern.strip('/')
        if '/' in pattern:
            prefixes = ('/'.join(parts[:i]) for i in range(1, len(parts) + 1))
            if any(fnmatchcase(prefix, pattern) for prefix in prefixes):
                return True
        elif any(fnmatchcase(part, pattern) for part in parts):
            return True

    return False


class ArtifactStream:
    """
    Single-use stream of byte chunks for one artifact.

    The producer's exit status is checked once the chunks are exhausted;
    a failed producer raises ProducerError at that point, after the last
    chunk has been handed to the consumer.
    """

    def __init__(
        self,
        name: str,
        chunks: Iterable[bytes],
        finish: Optional[Callable[[], None]] = None,
        cancel: Optional[Callable[[], None]] = None,
        size: Optional[int] = None
    ):
        self.name = name
        self.size = size
        self.bytes_emitted = 0
        self._chunks = chunks
        self._finish = finish
        self._cancel = cancel
        self._consumed = False
        self._closed = False

    def __iter__(self) -> Iterator[bytes]:
        if self._consumed:
            raise ProducerError(f"Stream for {self.name} was already consumed", artifact=self.name)
        self._consumed = True
        return self._generate()

    def _generate(self) -> Iterator[bytes]:
        try:
            for chunk in self._chunks:
                if chunk:
                    self.bytes_emitted += len(chunk)
                    yield chunk
            if self._finish:
                self._finish()
        finally:
            self.close()

    def close(self):
        """Stop the producer if it is still running."""
        if self._closed:
            return
        self._closed = True
        if self._cancel:
            self._cancel()


class _ProcessOutput:
    """Runs a command and exposes its stdout as chunks."""

    def __init__(self, artifact: str, args: List[str], cwd: str, chunk_size: int):
        self.artifact = artifact
        self.args = args
        self.chunk_size = chunk_size
        # stderr goes to a small temp file so a chatty tool can't block on a full pipe
        self._stderr = tempfile.TemporaryFile()

        try:
            self.process = subprocess.Popen(
                args,
                cwd=cwd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=self._stderr
            )
        except OSError as e:
            self._stderr.close()
            raise ProducerError(f"Failed to start {args[0]}: {e}", artifact=artifact)

    def chunks(self) -> Iterator[bytes]:
        while True:
            data = self.process.stdout.read(self.chunk_size)
            if not data:
                break
            yield data

    def finish(self):
        returncode = self.process.wait()
        if returncode != 0:
            raise ProducerError(
                f"{' '.join(self.args[:3])} exited with code {returncode}: {self._stderr_excerpt()}",
                artifact=self.artifact,
                returncode=returncode
            )

    def cancel(self):
        if self.process.poll() is None:
            self.process.kill()
            self.process.wait()
        if self.process.stdout:
            self.process.stdout.close()
        self._stderr.close()

    def _stderr_excerpt(self, limit: int = 500) -> str:
        self._stderr.seek(0)
        text = self._stderr.read().decode('utf-8', errors='replace').strip()
        return text[-limit:] if text else 'no error output'


def _gzip_chunks(chunks: Iterable[bytes], level: int) -> Iterator[bytes]:
    """Compress a chunk stream into the gzip container format."""
    compressor = zlib.compressobj(level, zlib.DEFLATED, 16 + zlib.MAX_WBITS)
    for chunk in chunks:
        data = compressor.compress(chunk)
        if data:
            yield data
    yield compressor.flush()


class _ArchiveBuilder:
    """Writes a tar.gz of the WordPress files into a pipe on a worker thread."""

    def __init__(self, root: Path, patterns: List[str], chunk_size: int):
        self.root = root
        self.patterns = patterns
        self.chunk_size = chunk_size
        self.error = None

        read_fd, write_fd = os.pipe()
        self._reader = os.fdopen(read_fd, 'rb')
        self._writer = os.fdopen(write_fd, 'wb')
        self._thread = threading.Thread(target=self._build, name='wp-archive', daemon=True)
        self._thread.start()

    def _filter(self, tarinfo: tarfile.TarInfo) -> Optional[tarfile.TarInfo]:
        if is_excluded(tarinfo.name, self.patterns):
            return None
        return tarinfo

    def _build(self):
        try:
            with tarfile.open(fileobj=self._writer, mode='w|gz', dereference=True) as tar:
                for member in ARCHIVE_MEMBERS:
                    source = self.root / member
                    if not source.exists():
                        raise FileNotFoundError(f"{member} not found in {self.root}")
                    tar.add(str(source), arcname=member, recursive=True, filter=self._filter)
        except Exception as e:
            self.error = e
        finally:
            try:
                self._writer.close()
            except OSError:
                pass

    def chunks(self) -> Iterator[bytes]:
        while True:
            data = self._reader.read(self.chunk_size)
            if not data:
                break
            yield data

    def finish(self):
        self._thread.join()
        if self.error is not None:
            raise ProducerError(f"Failed to archive WordPress files: {self.error}", artifact='files')

    def cancel(self):
        # Closing the read end makes a blocked writer fail with BrokenPipeError
        self._reader.close()
        self._thread.join()


@dataclass
class ManifestEntry:
    name: str
    description: str
    status: str
    bytes_uploaded: int = 0


@dataclass
class ManifestInfo:
    """Session metadata rendered into manifest.txt."""
    token: str
    created_at: datetime
    wordpress_path: str
    entries: List[ManifestEntry] = field(default_factory=list)


class SnapshotProducer:
    """
    Produces backup artifacts from a WordPress installation using WP-CLI.
    """

    def __init__(
        self,
        wordpress_path: str,
        wp_cli_path: str = 'wp',
        chunk_size: int = CHUNK_SIZE,
        compression_level: int = 6,
        introspection_timeout: float = 60.0
    ):
        """
        Initialize the producer.

        Args:
            wordpress_path: WordPress root directory
            wp_cli_path: WP-CLI executable
            chunk_size: Read size for streamed output
            compression_level: gzip level for the database dump
            introspection_timeout: Seconds allowed per manifest field lookup
        """
        self.wordpress_path = str(Path(wordpress_path).expanduser())
        self.wp_cli_path = wp_cli_path
        self.chunk_size = chunk_size
        self.compression_level = compression_level
        self.introspection_timeout = introspection_timeout

    def check_wp_cli(self):
        """
        Raises:
            ProducerError: If WP-CLI cannot be found
        """
        if shutil.which(self.wp_cli_path) is None:
            raise ProducerError(
                f"WP-CLI not found at '{self.wp_cli_path}'. "
                f"Please install WP-CLI or set WP_CLI_PATH."
            )

    def check_wordpress_path(self):
        """
        Raises:
            ProducerError: If the WordPress directory does not exist
        """
        if not os.path.isdir(self.wordpress_path):
            raise ProducerError(f"WordPress directory not found at: {self.wordpress_path}")

    def database_dump(self) -> ArtifactStream:
        """Stream a gzip-compressed SQL dump of the site database."""
        output = self._run('database', ['db', 'export', '-', '--add-drop-table'])
        return ArtifactStream(
            'database',
            _gzip_chunks(output.chunks(), self.compression_level),
            finish=output.finish,
            cancel=output.cancel
        )

    def plugin_inventory(self, fmt: str = 'json') -> ArtifactStream:
        """Stream the plugin list with versions in JSON or table format."""
        if fmt not in INVENTORY_FORMATS:
            raise ValueError(f"Invalid inventory format: {fmt}. Valid options: {list(INVENTORY_FORMATS)}")

        name = f"plugins-{fmt}"
        output = self._run(name, ['plugin', 'list', f'--format={fmt}'])
        return ArtifactStream(name, output.chunks(), finish=output.finish, cancel=output.cancel)

    def file_archive(self, exclude_patterns: Optional[List[str]] = None) -> ArtifactStream:
        """
        Stream a tar.gz of wp-content/ and wp-config.php.

        Symlinks are followed. Members matching exclude_patterns (default:
        DEFAULT_EXCLUDES) are skipped along with everything below them.
        """
        patterns = list(DEFAULT_EXCLUDES if exclude_patterns is None else exclude_patterns)
        builder = _ArchiveBuilder(Path(self.wordpress_path), patterns, self.chunk_size)
        return ArtifactStream('files', builder.chunks(), finish=builder.finish, cancel=builder.cancel)

    def manifest(self, info: ManifestInfo) -> ArtifactStream:
        """Stream the plain text manifest for a session."""
        text = self.render_manifest(info)
        return ArtifactStream('manifest', [text.encode('utf-8')])

    def render_manifest(self, info: ManifestInfo) -> str:
        lines = [
            f"Backup Date: {info.created_at.strftime('%a %b %d %H:%M:%S %Y')}",
            f"Backup ID: {info.token}",
            f"WordPress Path: {info.wordpress_path}",
            "Backup Type: Full WordPress Backup",
            "",
            "Artifacts:",
        ]

        for entry in info.entries:
            if entry.status == 'uploaded':
                detail = f"Included, {entry.bytes_uploaded / 1024 / 1024:.2f} MB"
            else:
                detail = entry.status.capitalize()
            lines.append(f"  {entry.name}: {entry.description} ({detail})")

        lines.extend([
            "",
            f"WordPress Version: {self.introspect(['core', 'version'])}",
            f"Active Theme: {self.introspect(['theme', 'list', '--status=active', '--field=name'])}",
            f"Total Plugins: {self.introspect(['plugin', 'list', '--format=count'])}",
        ])

        return '\n'.join(lines) + '\n'

    def introspect(self, args: List[str]) -> str:
        """
        Run one WP-CLI query for the manifest.

        Returns:
            Trimmed output, or "Unknown" if the query fails
        """
        try:
            result = subprocess.run(
                [self.wp_cli_path] + args,
                cwd=self.wordpress_path,
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                timeout=self.introspection_timeout
            )
        except (OSError, subprocess.SubprocessError) as e:
            logger.debug(f"wp {' '.join(args)} failed: {e}")
            return UNKNOWN

        value = result.stdout.strip()
        if result.returncode != 0 or not value:
            return UNKNOWN
        return value

    def _run(self, artifact: str, args: List[str]) -> _ProcessOutput:
        return _ProcessOutput(
            artifact,
            [self.wp_cli_path] + args,
            cwd=self.wordpress_path,
            chunk_size=self.chunk_size
        )


class StagedArtifact:
    """An artifact written to the local staging directory; can be re-read."""

    def __init__(self, name: str, path: Path, chunk_size: int = CHUNK_SIZE):
        self.name = name
        self.path = path
        self.chunk_size = chunk_size
        self.size = path.stat().st_size

    def open(self) -> ArtifactStream:
        handle = open(self.path, 'rb')

        def chunks():
            while True:
                data = handle.read(self.chunk_size)
                if not data:
                    break
                yield data

        return ArtifactStream(self.name, chunks(), cancel=handle.close, size=self.size)


def stage_artifact(stream: ArtifactStream, staging_dir: str, filename: str) -> StagedArtifact:
    """
    Drain a stream into a file in the staging directory.

    Args:
        stream: Artifact stream to consume
        staging_dir: Local staging directory
        filename: File name inside staging_dir

    Returns:
        StagedArtifact that can be opened any number of times

    Raises:
        ProducerError: If the producer fails or the file cannot be written
    """
    path = Path(staging_dir) / filename

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'wb') as f:
            for chunk in stream:
                f.write(chunk)
    except OSError as e:
        raise ProducerError(f"Failed to stage {filename}: {e}", artifact=stream.name)
    finally:
        stream.close()

    return StagedArtifact(stream.name, path)
