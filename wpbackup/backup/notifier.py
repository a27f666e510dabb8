"""Monitoring pings (healthchecks.io style).

- `<base>/start` before any backup work
- `<base>` on success
- `<base>/<exit code>` on failure

The request body carries the session log. Ping failures are logged as
warnings and never change the outcome of a backup.
"""

from __future__ import annotations

import logging
import time
from typing import Optional

import httpx

from .session import SessionLog


class Notifier:
    def __init__(
        self,
        base_url: Optional[str],
        timeout: float = 10.0,
        max_retries: int = 3,
        retry_delay: float = 5.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/") if base_url else None
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._transport = transport
        self._logger = logging.getLogger(__name__)

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    def url_for(self, suffix: str) -> str:
        if not suffix:
            return str(self.base_url)
        return f"{self.base_url}/{suffix}"

    def ping(self, suffix: str = "", log: Optional[SessionLog] = None, body: str = "") -> bool:
        """Send one monitoring ping. Returns True if the endpoint accepted it."""
        if not self.enabled:
            return False

        url = self.url_for(suffix)
        attempts = self.max_retries + 1
        error = "no attempt made"

        with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
            for attempt in range(1, attempts + 1):
                try:
                    resp = client.post(url, content=body.encode("utf-8"))
                except httpx.InvalidURL as exc:
                    error = f"invalid URL: {exc}"
                    break
                except httpx.HTTPError as exc:
                    error = str(exc) or exc.__class__.__name__
                else:
                    if resp.status_code // 100 == 2:
                        self._logger.debug("monitor_ping_ok | url=%s status=%s", url, resp.status_code)
                        return True
                    error = f"HTTP {resp.status_code}"

                if attempt < attempts:
                    time.sleep(self.retry_delay)

        message = f"Monitoring ping to {url} failed: {error}"
        if log is not None:
            log.warning(message)
        else:
            self._logger.warning(message)
        return False
