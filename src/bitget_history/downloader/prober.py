"""
Existence probes for archive URLs.

A probe is a HEAD request through a random proxy. Results are remembered in a
small SQLite cache (``checked_urls``) so repeated runs do not re-probe
archives that are known to exist.
"""

from __future__ import annotations

import logging
import random
import sqlite3
import threading
import time
from pathlib import Path
from typing import Optional, Sequence, Union

import requests

from bitget_history.core.errors import NoWorkingProxiesError, OperationCancelled, ProbeError
from bitget_history.core.models import ProbeResult, ProxyEndpoint
from bitget_history.exchanges.bitget_archive import USER_AGENT

_DEFAULT_ATTEMPTS = 3
_DEFAULT_TIMEOUT = 30
_DEFAULT_NEGATIVE_TTL = 24 * 3600


class ProbeCache:
    """URL -> last definitive probe result, stored in ``checked_urls``."""

    def __init__(self, db_path: Union[str, Path], negative_ttl: float = _DEFAULT_NEGATIVE_TTL) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.negative_ttl = negative_ttl
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        with self._lock:
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS checked_urls (
                    url TEXT PRIMARY KEY,
                    status_code INTEGER NOT NULL,
                    content_length INTEGER NOT NULL,
                    checked_at REAL NOT NULL
                )
                """
            )
            self._conn.commit()

    def get(self, url: str, now: Optional[float] = None) -> Optional[ProbeResult]:
        with self._lock:
            row = self._conn.execute(
                "SELECT status_code, content_length, checked_at FROM checked_urls WHERE url = ?",
                (url,),
            ).fetchone()
        if row is None:
            return None
        status, size, checked_at = row
        exists = 200 <= status < 400
        if not exists and (now or time.time()) - checked_at > self.negative_ttl:
            return None
        return ProbeResult(exists=exists, size=size, status_code=status, cached=True)

    def put(self, url: str, result: ProbeResult, now: Optional[float] = None) -> None:
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO checked_urls (url, status_code, content_length, checked_at) "
                "VALUES (?, ?, ?, ?)",
                (url, result.status_code, result.size, now or time.time()),
            )
            self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()


class ExistenceProber:
    """
    HEAD-probe archive URLs through the proxy pool.

    Parameters
    ----------
    cache : ProbeCache, optional
        Result cache; probes always hit the network when omitted.
    attempts : int
        Network attempts per URL, each through a freshly chosen proxy.
    """

    def __init__(
        self,
        cache: Optional[ProbeCache] = None,
        attempts: int = _DEFAULT_ATTEMPTS,
        timeout: float = _DEFAULT_TIMEOUT,
        user_agent: str = USER_AGENT,
        retry_delay: float = 0.0,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.cache = cache
        self.attempts = max(1, int(attempts))
        self.timeout = timeout
        self.user_agent = user_agent
        self.retry_delay = retry_delay
        self.logger = logger or logging.getLogger(__name__)

    def probe(self, url: str, proxies: Sequence[ProxyEndpoint],
              cancel_event: Optional[threading.Event] = None) -> ProbeResult:
        """
        Return whether *url* exists and its advertised size.

        A status in [200, 400) means the archive exists. Any status >= 400 is a
        definitive absence and is returned without retrying. Network errors
        are retried with a new random proxy.

        Raises
        ------
        ProbeError
            Every attempt failed with a network-level error.
        NoWorkingProxiesError
            *proxies* is empty.
        """
        if self.cache is not None:
            cached = self.cache.get(url)
            if cached is not None:
                self.logger.debug(f"Cached probe {url}: status={cached.status_code}, size={cached.size}")
                return cached

        if not proxies:
            raise NoWorkingProxiesError("no proxies available for probing")

        last_error: Optional[Exception] = None
        for attempt in range(1, self.attempts + 1):
            if cancel_event is not None and cancel_event.is_set():
                raise OperationCancelled(f"probe of {url} cancelled")
            proxy = random.choice(proxies)
            try:
                resp = requests.head(
                    url,
                    proxies=proxy.requests_proxies(),
                    headers={"User-Agent": self.user_agent},
                    timeout=self.timeout,
                    allow_redirects=False,
                )
            except requests.RequestException as exc:
                last_error = exc
                self.logger.debug(f"Probe attempt {attempt}/{self.attempts} for {url} via {proxy} failed: {exc}")
                if attempt < self.attempts and self.retry_delay:
                    if cancel_event is not None:
                        cancel_event.wait(self.retry_delay * attempt)
                    else:
                        time.sleep(self.retry_delay * attempt)
                continue

            result = ProbeResult(
                exists=200 <= resp.status_code < 400,
                size=self._content_length(resp),
                status_code=resp.status_code,
            )
            self.logger.debug(f"Checked {url}: status={result.status_code}, size={result.size}")
            if self.cache is not None:
                self.cache.put(url, result)
            return result

        raise ProbeError(url, self.attempts, last_error)

    @staticmethod
    def _content_length(resp: requests.Response) -> int:
        try:
            return max(0, int(resp.headers.get("Content-Length", 0)))
        except (TypeError, ValueError):
            return 0
