"""
Shared pytest fixtures for wpbackup tests.

This module provides fixtures for:
- Flask app and CLI runner
- An in-memory WebDAV server behind httpx.MockTransport
- A recording monitoring endpoint
- A fake WP-CLI executable and a temporary WordPress site
- Settings pointing at all of the above
"""

import stat
from urllib.parse import quote, unquote

import httpx
import pytest

from wpbackup import create_app
from wpbackup import runner as runner_module
from wpbackup.config import Settings
from wpbackup.backup.transport import WebDAVClient


LAST_MODIFIED = 'Mon, 01 Jan 2024 00:00:00 GMT'


def _norm(path: str) -> str:
    return path.rstrip('/') or '/'


def _parent(path: str) -> str:
    return path.rsplit('/', 1)[0] or '/'


class FakeWebDAV:
    """
    Minimal in-memory WebDAV server.

    Supports MKCOL, PUT, PROPFIND (Depth 0/1) and DELETE. Failures can be
    injected per (method, path).
    """

    def __init__(self):
        self.files = {}
        self.collections = {'/'}
        self.requests = []
        self._failures = {}

    def add_collection(self, path):
        path = _norm(path)
        self.collections.add(path)
        return path

    def add_file(self, path, data=b''):
        self.files[path] = data
        return path

    def fail(self, method, path, status=500, times=None, error=False):
        """Fail matching requests with a status (or a connection error)."""
        self._failures[(method, _norm(path))] = {'status': status, 'remaining': times, 'error': error}

    def requests_for(self, method):
        return [path for m, path in self.requests if m == method]

    def children(self, path):
        path = _norm(path)
        names = [p for p in self.collections | set(self.files) if p != '/' and _parent(p) == path]
        return sorted(p.rsplit('/', 1)[-1] for p in names)

    def handle(self, request: httpx.Request) -> httpx.Response:
        method = request.method
        path = unquote(request.url.path)
        self.requests.append((method, path))

        failure = self._failures.get((method, _norm(path)))
        if failure and failure['remaining'] != 0:
            if failure['remaining'] is not None:
                failure['remaining'] -= 1
            if failure['error']:
                raise httpx.ConnectError('connection refused', request=request)
            return httpx.Response(failure['status'])

        handler = getattr(self, f"_{method.lower()}", None)
        if handler is None:
            return httpx.Response(405)
        return handler(request, path)

    def _mkcol(self, request, path):
        path = _norm(path)
        if path in self.collections or path in self.files:
            return httpx.Response(405)
        if _parent(path) not in self.collections:
            return httpx.Response(409)
        self.collections.add(path)
        return httpx.Response(201)

    def _put(self, request, path):
        if _parent(path) not in self.collections:
            return httpx.Response(409)
        self.files[path] = request.content
        return httpx.Response(201)

    def _delete(self, request, path):
        path = _norm(path)
        if path in self.files:
            del self.files[path]
            return httpx.Response(204)
        if path in self.collections and path != '/':
            prefix = path + '/'
            self.collections = {c for c in self.collections if c != path and not c.startswith(prefix)}
            self.files = {f: d for f, d in self.files.items() if not f.startswith(prefix)}
            return httpx.Response(204)
        return httpx.Response(404)

    def _propfind(self, request, path):
        path = _norm(path)
        if path not in self.collections:
            return httpx.Response(404)

        members = [(path, True)]
        if request.headers.get('Depth') == '1':
            for name in self.children(path):
                child = f"{path.rstrip('/')}/{name}"
                members.append((child, child in self.collections))

        body = ['<?xml version="1.0" encoding="utf-8"?><d:multistatus xmlns:d="DAV:">']
        for member, is_collection in members:
            href = quote(member + ('/' if is_collection and member != '/' else ''))
            resource_type = '<d:resourcetype><d:collection/></d:resourcetype>' if is_collection else '<d:resourcetype/>'
            body.append(
                f'<d:response><d:href>{href}</d:href><d:propstat><d:prop>'
                f'<d:displayname>{member.rsplit("/", 1)[-1]}</d:displayname>{resource_type}'
                f'<d:getlastmodified>{LAST_MODIFIED}</d:getlastmodified>'
                f'</d:prop><d:status>HTTP/1.1 200 OK</d:status></d:propstat></d:response>'
            )
        body.append('</d:multistatus>')
        return httpx.Response(207, content=''.join(body).encode('utf-8'))


class PingRecorder:
    """Records monitoring pings; answers 200 unless told otherwise."""

    def __init__(self, status=200):
        self.status = status
        self.pings = []

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.pings.append((request.url.path, request.content.decode('utf-8')))
        return httpx.Response(self.status)

    @property
    def paths(self):
        return [path for path, _ in self.pings]


FAKE_WP_SCRIPT = r'''#!/bin/sh
# Fake WP-CLI for tests. FAKE_WP_FAIL lists commands that should fail,
# e.g. "db-export plugin-list-json core-version".
key="$1-$2"
case "$*" in
  *--format=json*) key="$key-json" ;;
  *--format=table*) key="$key-table" ;;
  *--format=count*) key="$key-count" ;;
esac
for failing in $FAKE_WP_FAIL; do
  if [ "$failing" = "$key" ]; then
    echo "Error: simulated failure ($key)" >&2
    exit 1
  fi
done
case "$key" in
  db-export)
    echo "-- MySQL dump"
    echo "DROP TABLE IF EXISTS wp_posts;"
    echo "CREATE TABLE wp_posts (ID int);"
    if [ -n "$FAKE_WP_DUMP_LINES" ]; then
      yes "INSERT INTO wp_posts VALUES (1);" | head -n "$FAKE_WP_DUMP_LINES"
    fi
    ;;
  plugin-list-json) echo '[{"name":"akismet","status":"active","version":"5.3"}]' ;;
  plugin-list-table) printf 'name\tstatus\tversion\nakismet\tactive\t5.3\n' ;;
  plugin-list-count) echo 1 ;;
  core-version) echo 6.4.2 ;;
  theme-list) echo twentytwentyfour ;;
  *) echo "unknown command: $*" >&2; exit 2 ;;
esac
'''


@pytest.fixture(autouse=True)
def reset_runner_state(monkeypatch):
    """Each test starts without a remembered session or injected failures."""
    monkeypatch.delenv('FAKE_WP_FAIL', raising=False)
    monkeypatch.delenv('FAKE_WP_DUMP_LINES', raising=False)
    runner_module._last_session = None
    yield
    runner_module._last_session = None


@pytest.fixture(scope='function')
def app():
    """Flask app with the testing configuration."""
    app = create_app('testing')
    yield app


@pytest.fixture(scope='function')
def cli_runner(app):
    """Flask CLI test runner."""
    return app.test_cli_runner()


@pytest.fixture
def webdav():
    """In-memory WebDAV server with an empty /backups folder."""
    server = FakeWebDAV()
    server.add_collection('/backups')
    return server


@pytest.fixture
def webdav_transport(webdav):
    return httpx.MockTransport(webdav.handle)


@pytest.fixture
def client(webdav_transport):
    """WebDAVClient talking to the in-memory server, without retry delays."""
    dav = WebDAVClient(
        'https://dav.example.com',
        'u12345',
        'secret',
        max_retries=2,
        retry_delay=0,
        transport=webdav_transport
    )
    yield dav
    dav.close()


@pytest.fixture
def monitor():
    return PingRecorder()


@pytest.fixture
def monitor_transport(monitor):
    return httpx.MockTransport(monitor.handle)


@pytest.fixture
def fake_wp(tmp_path):
    """Path to an executable fake WP-CLI script."""
    bin_dir = tmp_path / 'bin'
    bin_dir.mkdir()
    script = bin_dir / 'wp'
    script.write_text(FAKE_WP_SCRIPT)
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(script)


@pytest.fixture
def wp_site(tmp_path):
    """
    Create a small WordPress installation.

    Creates:
    - wp-config.php
    - wp-content/themes/twentytwentyfour/style.css
    - wp-content/uploads/2024/01/photo.jpg (+ resized photo-150x150.jpg)
    - wp-content/plugins/akismet/akismet.php (excluded)
    - wp-content/cache/page.html (excluded)
    - wp-content/debug.log (excluded)
    """
    site = tmp_path / 'html'
    content = site / 'wp-content'

    (content / 'themes' / 'twentytwentyfour').mkdir(parents=True)
    (content / 'uploads' / '2024' / '01').mkdir(parents=True)
    (content / 'plugins' / 'akismet').mkdir(parents=True)
    (content / 'cache').mkdir()

    (site / 'wp-config.php').write_text("<?php define('DB_NAME', 'wordpress');\n")
    (site / 'index.php').write_text("<?php // core file, not archived\n")
    (content / 'themes' / 'twentytwentyfour' / 'style.css').write_text('/* Theme Name: Twenty Twenty-Four */\n')
    (content / 'uploads' / '2024' / '01' / 'photo.jpg').write_bytes(b'\xff\xd8original')
    (content / 'uploads' / '2024' / '01' / 'photo-150x150.jpg').write_bytes(b'\xff\xd8thumb')
    (content / 'plugins' / 'akismet' / 'akismet.php').write_text('<?php\n')
    (content / 'cache' / 'page.html').write_text('<html></html>')
    (content / 'debug.log').write_text('PHP Notice\n')

    return site


@pytest.fixture
def settings(wp_site, fake_wp, tmp_path):
    """Settings for a session against the fake server, site and WP-CLI."""
    return Settings(
        host='dav.example.com',
        username='u12345',
        password='secret',
        remote_dir='/backups',
        retention_count=3,
        wordpress_path=str(wp_site),
        monitor_url='https://hc.example.com/ping/abc',
        wp_cli_path=fake_wp,
        staging_dir=str(tmp_path / 'staging'),
        max_retries=1,
        retry_delay=0
    )
