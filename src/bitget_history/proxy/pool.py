"""
SOCKS proxy pool used for existence probes and archive downloads.

Candidates come from public SOCKS4/SOCKS5 lists (cached in a raw file). Each
candidate is validated by asking an IP-echo service for our egress address
through it; only proxies that report their own host are kept. Survivors are
persisted to the working-set file, which is what the downloader reads.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Optional, Union

import requests

from bitget_history.core.errors import (
    NoWorkingProxiesError,
    OperationCancelled,
    ProxyListEmptyError,
)
from bitget_history.core.models import ProxyEndpoint
from bitget_history.helpers.data_helper import read_lines, write_lines

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
PROXY_LIST_URLS = [
    "https://cdn.jsdelivr.net/gh/proxifly/free-proxy-list@main/proxies/protocols/socks4/data.txt",
    "https://cdn.jsdelivr.net/gh/proxifly/free-proxy-list@main/proxies/protocols/socks5/data.txt",
]
CHECK_URL = "https://ifconfig.io"

_LIST_TIMEOUT = 10
_CHECK_TIMEOUT = 3
_DEFAULT_VALIDATE_WORKERS = 64


class ProxyPool:
    """
    Candidate list, validation and publication of the working proxy set.

    Parameters
    ----------
    raw_file : str | Path
        Cache of the concatenated candidate lists. Fetched only when absent
        or empty.
    working_file : str | Path
        Validated endpoints, one URL per line.
    fallback : str, optional
        Proxy URL used to fetch the candidate lists (e.g. when the list CDN
        is blocked).
    """

    def __init__(
        self,
        raw_file: Union[str, Path],
        working_file: Union[str, Path],
        fallback: Optional[str] = None,
        list_urls: Optional[list[str]] = None,
        check_url: str = CHECK_URL,
        check_timeout: float = _CHECK_TIMEOUT,
        validate_workers: int = _DEFAULT_VALIDATE_WORKERS,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.raw_file = Path(raw_file)
        self.working_file = Path(working_file)
        self.fallback = fallback or None
        self.list_urls = list(list_urls or PROXY_LIST_URLS)
        self.check_url = check_url
        self.check_timeout = check_timeout
        self.validate_workers = max(1, int(validate_workers))
        self.logger = logger or logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def ensure(self, cancel_event: Optional[threading.Event] = None,
               reuse_working: bool = False) -> list[ProxyEndpoint]:
        """
        Make sure a non-empty, freshly validated working set is on disk.

        Returns
        -------
        list[ProxyEndpoint]
            The endpoints that passed validation, in candidate-list order.

        Raises
        ------
        ProxyListEmptyError
            The candidate list could not be obtained or holds no usable entry.
        NoWorkingProxiesError
            No candidate passed validation.
        OperationCancelled
            *cancel_event* was set during validation.
        """
        if reuse_working and self._has_lines(self.working_file):
            working = self.get()
            self.logger.info(f"Reusing {len(working)} proxies from {self.working_file}")
            return working

        if not self._has_lines(self.raw_file):
            self._download_candidates()

        candidates = self._load_candidates()
        if not candidates:
            raise ProxyListEmptyError(f"proxy list is empty: {self.raw_file}")

        self.logger.info(f"Checking {len(candidates)} proxy candidates")
        working = self._validate_all(candidates, cancel_event)
        if not working:
            raise NoWorkingProxiesError("no working proxies found")

        write_lines(self.working_file, [p.url for p in working])
        self.logger.info(f"{len(working)} of {len(candidates)} proxies are working, saved to {self.working_file}")
        return working

    def get(self) -> list[ProxyEndpoint]:
        """Current working set read from the working-set file."""
        try:
            lines = read_lines(self.working_file)
        except FileNotFoundError:
            raise NoWorkingProxiesError(f"working proxy file {self.working_file} does not exist") from None
        endpoints = []
        for line in lines:
            try:
                endpoints.append(ProxyEndpoint.parse(line))
            except ValueError as exc:
                self.logger.debug(f"Ignoring working-set entry: {exc}")
        if not endpoints:
            raise NoWorkingProxiesError(f"working proxy file {self.working_file} is empty")
        return endpoints

    def check(self, endpoint: ProxyEndpoint) -> bool:
        """One validation attempt: the echoed egress IP must equal the proxy host."""
        try:
            resp = requests.get(
                self.check_url,
                proxies=endpoint.requests_proxies(as_socks5=True),
                timeout=self.check_timeout,
            )
            if resp.status_code != 200:
                return False
            return resp.text.strip() == endpoint.host
        except (requests.RequestException, ValueError) as exc:
            self.logger.debug(f"Proxy {endpoint} failed check: {exc}")
            return False

    # ------------------------------------------------------------------
    # Candidate list
    # ------------------------------------------------------------------

    @staticmethod
    def _has_lines(path: Path) -> bool:
        try:
            return bool(read_lines(path))
        except FileNotFoundError:
            return False

    def _download_candidates(self) -> None:
        proxies = None
        if self.fallback:
            proxies = {"http": self.fallback, "https": self.fallback}
            self.logger.info(f"Fetching proxy lists through fallback {self.fallback}")

        lines: list[str] = []
        for url in self.list_urls:
            try:
                resp = requests.get(url, proxies=proxies, timeout=_LIST_TIMEOUT)
                resp.raise_for_status()
            except requests.RequestException as exc:
                raise ProxyListEmptyError(f"failed to download proxy list {url}: {exc}") from exc
            lines.extend(line.strip() for line in resp.text.splitlines() if line.strip())

        if not lines:
            raise ProxyListEmptyError(f"proxy lists returned no candidates: {', '.join(self.list_urls)}")
        write_lines(self.raw_file, lines)
        self.logger.info(f"Saved {len(lines)} proxy candidates to {self.raw_file}")

    def _load_candidates(self) -> list[ProxyEndpoint]:
        seen: set[str] = set()
        candidates = []
        for line in read_lines(self.raw_file):
            if line in seen:
                continue
            seen.add(line)
            try:
                candidates.append(ProxyEndpoint.parse(line))
            except ValueError as exc:
                self.logger.debug(f"Skipping candidate: {exc}")
        return candidates

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _validate_all(self, candidates: list[ProxyEndpoint],
                      cancel_event: Optional[threading.Event]) -> list[ProxyEndpoint]:
        passed: set[int] = set()
        workers = min(self.validate_workers, len(candidates))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            future_to_idx = {pool.submit(self.check, c): i for i, c in enumerate(candidates)}
            try:
                for future in as_completed(future_to_idx):
                    if cancel_event is not None and cancel_event.is_set():
                        raise OperationCancelled("proxy validation cancelled")
                    if future.result():
                        passed.add(future_to_idx[future])
            except BaseException:
                for f in future_to_idx:
                    f.cancel()
                raise
        return [c for i, c in enumerate(candidates) if i in passed]
