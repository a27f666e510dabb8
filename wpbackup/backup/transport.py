"""
WebDAV transport client for the remote backup store.

Supports the subset of WebDAV the pipeline needs:
- MKCOL: create the session folder
- PUT: stream an artifact
- PROPFIND (Depth: 1): list a folder's immediate children
- DELETE: remove a stale snapshot

Idempotent operations are retried with a fixed delay. Uploads are retried
only when the caller can reopen the source stream.
"""

import logging
import time
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from datetime import datetime
from email.utils import parsedate_to_datetime
from typing import Callable, Iterable, Iterator, List, Optional
from urllib.parse import quote, unquote, urlsplit

import httpx

from .session import SessionLog


logger = logging.getLogger(__name__)

DAV_NS = {'d': 'DAV:'}

PROPFIND_BODY = (
    '<?xml version="1.0" encoding="utf-8"?>'
    '<propfind xmlns="DAV:"><prop>'
    '<displayname/><resourcetype/><getlastmodified/>'
    '</prop></propfind>'
)


class TransportError(Exception):
    """Raised when a WebDAV operation fails."""

    def __init__(self, operation: str, path: str, cause: str):
        self.operation = operation
        self.path = path
        self.cause = cause
        super().__init__(f"WebDAV {operation} failed for {path}: {cause}")


@dataclass
class RemoteEntry:
    """One child of a remote collection."""
    name: str
    is_collection: bool = False
    last_modified: Optional[datetime] = None


def parse_multistatus(body: bytes, collection_path: str) -> List[RemoteEntry]:
    """
    Parse a PROPFIND multistatus response.

    Args:
        body: Raw XML response body
        collection_path: URL path of the listed collection; its own entry is
            left out of the result

    Returns:
        List of RemoteEntry for the collection's children

    Raises:
        ValueError: If the body is not a DAV multistatus document
    """
    try:
        root = ET.fromstring(body)
    except ET.ParseError as e:
        raise ValueError(f"Invalid PROPFIND response: {e}")

    if root.tag != '{DAV:}multistatus':
        raise ValueError(f"Unexpected PROPFIND root element: {root.tag}")

    base = unquote(collection_path).rstrip('/')
    entries = []

    for response in root.findall('d:response', DAV_NS):
        href = (response.findtext('d:href', default='', namespaces=DAV_NS) or '').strip()
        path = unquote(urlsplit(href).path).rstrip('/')
        if not path or path == base:
            continue

        name = path.rsplit('/', 1)[-1]
        is_collection = response.find('.//d:resourcetype/d:collection', DAV_NS) is not None

        last_modified = None
        raw_modified = response.findtext('.//d:getlastmodified', namespaces=DAV_NS)
        if raw_modified:
            try:
                last_modified = parsedate_to_datetime(raw_modified.strip())
            except (TypeError, ValueError):
                last_modified = None

        entries.append(RemoteEntry(name=name, is_collection=is_collection, last_modified=last_modified))

    return entries


class _CountingStream:
    """Wraps a chunk iterator and counts the bytes that pass through."""

    def __init__(self, chunks: Iterable[bytes]):
        self._chunks = chunks
        self.count = 0

    def __iter__(self) -> Iterator[bytes]:
        for chunk in self._chunks:
            self.count += len(chunk)
            yield chunk


class WebDAVClient:
    """
    Authenticated client for a WebDAV endpoint (HTTP Basic over TLS).

    Every failure surfaces as TransportError; nothing is swallowed.
    """

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        connect_timeout: float = 10.0,
        operation_timeout: float = 60.0,
        upload_timeout: float = 3600.0,
        max_retries: int = 3,
        retry_delay: float = 5.0,
        transport: Optional[httpx.BaseTransport] = None,
        log: Optional[SessionLog] = None
    ):
        """
        Initialize the WebDAV client.

        Args:
            base_url: Server URL, e.g. https://u123.your-storagebox.de
            username: Basic auth user
            password: Basic auth password
            connect_timeout: Seconds to establish a connection
            operation_timeout: Seconds for MKCOL/PROPFIND/DELETE
            upload_timeout: Seconds for a PUT (large payloads)
            max_retries: Extra attempts for retryable operations
            retry_delay: Fixed delay between attempts
            transport: Optional httpx transport (tests use MockTransport)
            log: Session log that receives retry warnings (module logger
                when not given)
        """
        self.base_url = base_url.rstrip('/')
        self.username = username
        self.connect_timeout = connect_timeout
        self.operation_timeout = operation_timeout
        self.upload_timeout = upload_timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.log = log

        self._client = httpx.Client(
            auth=(username, password),
            timeout=httpx.Timeout(operation_timeout, connect=connect_timeout),
            transport=transport
        )

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def close(self):
        self._client.close()

    def url_for(self, path: str) -> str:
        if not path.startswith('/'):
            path = '/' + path
        return self.base_url + quote(path, safe="/-_.~")

    def create_collection(self, path: str):
        """
        Create a remote folder.

        An already existing folder (405) counts as success.

        Raises:
            TransportError: If the folder cannot be created
        """
        self._request('create_collection', 'MKCOL', path, ok_statuses=(201, 405))
        logger.debug(f"Created collection {path}")

    def upload(
        self,
        path: str,
        stream: Iterable[bytes],
        reopen: Optional[Callable[[], Iterable[bytes]]] = None
    ) -> int:
        """
        Upload a byte stream with a streaming PUT.

        Chunks are sent as the stream yields them, so the artifact never has
        to be held in memory.

        Args:
            path: Remote file path
            stream: Iterable of byte chunks, consumed once
            reopen: Optional function returning a fresh copy of the stream.
                Only when given is a failed upload retried.

        Returns:
            Number of bytes sent

        Raises:
            TransportError: If the upload fails
        """
        attempts = self.max_retries + 1 if reopen is not None else 1
        timeout = httpx.Timeout(self.upload_timeout, connect=self.connect_timeout)
        cause = 'no attempt made'

        for attempt in range(1, attempts + 1):
            source = stream if attempt == 1 else reopen()
            counted = _CountingStream(source)

            headers = {'Content-Type': 'application/octet-stream'}
            size = getattr(source, 'size', None)
            if size is not None:
                headers['Content-Length'] = str(size)

            retryable = True
            try:
                response = self._client.put(
                    self.url_for(path),
                    content=iter(counted),
                    headers=headers,
                    timeout=timeout
                )
            except httpx.InvalidURL as e:
                cause = f"Invalid URL: {e}"
                retryable = False
            except httpx.HTTPError as e:
                cause = str(e) or e.__class__.__name__
            else:
                if response.status_code in (200, 201, 204):
                    return counted.count
                cause = f"HTTP {response.status_code} {response.reason_phrase}"
                retryable = self._is_retryable(response.status_code)

            if attempt < attempts and retryable:
                self._warn(f"Upload of {path} failed (attempt {attempt}/{attempts}): {cause}")
                time.sleep(self.retry_delay)
                continue
            break

        raise TransportError('upload', path, cause)

    def list_collection(self, path: str) -> List[RemoteEntry]:
        """
        List the immediate children of a remote folder.

        Returns:
            List of RemoteEntry

        Raises:
            TransportError: If listing fails or the response cannot be parsed
        """
        collection = path.rstrip('/') + '/'
        response = self._request(
            'list',
            'PROPFIND',
            collection,
            ok_statuses=(207,),
            headers={'Depth': '1', 'Content-Type': 'text/xml; charset=utf-8'},
            content=PROPFIND_BODY.encode('utf-8')
        )

        try:
            return parse_multistatus(response.content, urlsplit(self.url_for(collection)).path)
        except ValueError as e:
            raise TransportError('list', path, str(e))

    def delete(self, path: str):
        """
        Delete a remote file or folder.

        A missing entry (404) counts as success.

        Raises:
            TransportError: If deletion fails
        """
        self._request('delete', 'DELETE', path, ok_statuses=(200, 204, 404))

    def test_connection(self, path: str = '/') -> bool:
        """
        Check credentials and that the base folder is reachable.

        Returns:
            True if the server answered the PROPFIND

        Raises:
            TransportError: If the check fails
        """
        collection = path.rstrip('/') + '/'
        self._request(
            'test_connection',
            'PROPFIND',
            collection,
            ok_statuses=(207,),
            headers={'Depth': '0', 'Content-Type': 'text/xml; charset=utf-8'},
            content=PROPFIND_BODY.encode('utf-8')
        )
        return True

    def _request(self, operation: str, method: str, path: str, ok_statuses, **kwargs) -> httpx.Response:
        attempts = self.max_retries + 1
        cause = 'no attempt made'

        for attempt in range(1, attempts + 1):
            retryable = True
            try:
                response = self._client.request(method, self.url_for(path), **kwargs)
            except httpx.InvalidURL as e:
                cause = f"Invalid URL: {e}"
                retryable = False
            except httpx.HTTPError as e:
                cause = str(e) or e.__class__.__name__
            else:
                if response.status_code in ok_statuses:
                    return response
                cause = f"HTTP {response.status_code} {response.reason_phrase}"
                retryable = self._is_retryable(response.status_code)

            if attempt < attempts and retryable:
                self._warn(f"{method} {path} failed (attempt {attempt}/{attempts}): {cause}")
                time.sleep(self.retry_delay)
                continue
            break

        raise TransportError(operation, path, cause)

    def _warn(self, message: str):
        if self.log is not None:
            self.log.warning(message)
        else:
            logger.warning(message)

    @staticmethod
    def _is_retryable(status_code: int) -> bool:
        # Client errors other than timeouts, locks and throttling will not
        # change on a second attempt
        return status_code >= 500 or status_code in (408, 423, 429)
