"""
Concurrent archive downloads through the proxy pool.

Every resource is fetched by one task: up to N attempts, each through a
random proxy that has not failed at connection level during this run. The
payload is streamed to ``<path>.part``, checked to be a valid ZIP and only
then renamed into place.
"""

from __future__ import annotations

import logging
import os
import random
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Optional, Sequence

import requests
from tqdm import tqdm

from bitget_history.core.errors import DownloadError, OperationCancelled
from bitget_history.core.models import (
    CandidateResource,
    DataKind,
    FetchOutcome,
    FetchResult,
    ProxyEndpoint,
)
from bitget_history.downloader.resume import ResumeMarker
from bitget_history.exchanges.bitget_archive import USER_AGENT, validate_archive
from bitget_history.proxy.pool import ProxyPool

_DEFAULT_MAX_WORKERS = 16
_DEFAULT_ATTEMPTS = 5
_DEFAULT_BACKOFF = 1.0
_TIMEOUTS = {DataKind.TRADES: 60, DataKind.DEPTH: 30}
_CHUNK_SIZE = 64 * 1024


class _NotFound(Exception):
    pass


class _Corrupt(Exception):
    pass


class DownloadRun:
    """State shared by the tasks of one ``download_all`` call."""

    def __init__(self, proxies: Sequence[ProxyEndpoint]) -> None:
        self.proxies = tuple(proxies)
        self._lock = threading.Lock()
        self._bad: set[str] = set()
        self.failed_urls: list[str] = []

    def mark_bad(self, proxy: ProxyEndpoint) -> bool:
        """Quarantine *proxy* for the rest of the run. Returns True if newly added."""
        with self._lock:
            if proxy.url in self._bad:
                return False
            self._bad.add(proxy.url)
            return True

    def bad_proxies(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._bad)

    def available(self) -> list[ProxyEndpoint]:
        bad = self.bad_proxies()
        return [p for p in self.proxies if p.url not in bad]

    def add_failure(self, url: str) -> None:
        with self._lock:
            self.failed_urls.append(url)


class DownloadEngine:
    """
    Fetch candidate resources concurrently with retry and proxy rotation.

    Parameters
    ----------
    pool : ProxyPool
        Working proxy set; read once per ``download_all`` call.
    resume : ResumeMarker
        Decides which resources are already complete and where files go.
    max_workers : int
        Upper bound on concurrent downloads.
    attempts : int
        Attempts per resource.
    timeouts : dict, optional
        Per-attempt timeout in seconds by data kind.
    backoff_seconds : float
        Delay after attempt ``n`` is ``n * backoff_seconds``.
    """

    def __init__(
        self,
        pool: ProxyPool,
        resume: ResumeMarker,
        max_workers: int = _DEFAULT_MAX_WORKERS,
        attempts: int = _DEFAULT_ATTEMPTS,
        timeouts: Optional[dict] = None,
        backoff_seconds: float = _DEFAULT_BACKOFF,
        user_agent: str = USER_AGENT,
        show_progress: bool = False,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.pool = pool
        self.resume = resume
        self.max_workers = max(1, int(max_workers))
        self.attempts = max(1, int(attempts))
        self.timeouts = dict(_TIMEOUTS)
        for kind, seconds in (timeouts or {}).items():
            self.timeouts[DataKind(kind)] = seconds
        self.backoff_seconds = backoff_seconds
        self.user_agent = user_agent
        self.show_progress = show_progress
        self.logger = logger or logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def download_all(self, resources: Sequence[CandidateResource],
                     cancel_event: Optional[threading.Event] = None) -> list[FetchResult]:
        """
        Download *resources*, returning one FetchResult per resource in input order.

        Raises
        ------
        DownloadError
            At least one resource could not be retrieved; carries all results.
        NoWorkingProxiesError
            The working set is empty and something needs downloading.
        OperationCancelled
            *cancel_event* was set; partial files have been removed.
        """
        cancel_event = cancel_event or threading.Event()
        if not resources:
            return []

        pending = [r for r in resources if not self.resume.is_complete(r)]
        run = DownloadRun(self.pool.get() if pending else ())
        self.logger.info(f"Starting download of {len(pending)} files ({len(resources) - len(pending)} already present)")

        results: dict[int, FetchResult] = {}
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor, \
                tqdm(total=len(resources), desc="download", unit="file", leave=False,
                     disable=not self.show_progress) as bar:
            future_to_idx = {
                executor.submit(self._fetch_one, run, r, cancel_event): i
                for i, r in enumerate(resources)
            }
            try:
                for future in as_completed(future_to_idx):
                    idx = future_to_idx[future]
                    results[idx] = future.result()
                    bar.update(1)
            except BaseException:
                cancel_event.set()
                for f in future_to_idx:
                    f.cancel()
                raise

        ordered = [results[i] for i in range(len(resources))]
        if cancel_event.is_set():
            raise OperationCancelled("download cancelled")

        fetched = sum(1 for r in ordered if r.outcome == FetchOutcome.FETCHED)
        missing = sum(1 for r in ordered if r.outcome == FetchOutcome.NOT_FOUND)
        if run.failed_urls:
            self.logger.warning(
                f"Downloaded {fetched} files, {len(run.failed_urls)} failed, {missing} not found"
            )
            raise DownloadError(sorted(run.failed_urls), ordered)
        self.logger.info(f"All files downloaded successfully ({fetched} fetched, {missing} not found)")
        return ordered

    # ------------------------------------------------------------------
    # Per-resource task
    # ------------------------------------------------------------------

    def _fetch_one(self, run: DownloadRun, resource: CandidateResource,
                   cancel_event: threading.Event) -> FetchResult:
        result = FetchResult(resource=resource, outcome=FetchOutcome.FAILED)
        if self.resume.is_complete(resource):
            self.logger.debug(f"Skipping {resource.url}: already present")
            result.outcome = FetchOutcome.SKIPPED
            return result

        for attempt in range(1, self.attempts + 1):
            if cancel_event.is_set():
                result.error = "cancelled"
                return result

            available = run.available()
            if not available:
                self.logger.warning(f"All proxies marked as bad for {resource.url}")
                result.error = "no good proxies left"
                break

            proxy = random.choice(available)
            result.attempts = attempt
            result.proxy = proxy.url
            self.logger.debug(f"Attempt {attempt}/{self.attempts} for {resource.url} using proxy {proxy}")
            try:
                self._download_with_proxy(resource, proxy, cancel_event)
            except _NotFound:
                self.logger.info(f"{resource.url} not found on origin")
                result.outcome = FetchOutcome.NOT_FOUND
                result.attempt_outcomes.append(FetchOutcome.NOT_FOUND)
                return result
            except _Corrupt as exc:
                result.error = str(exc)
                result.attempt_outcomes.append(FetchOutcome.CORRUPT)
                self.logger.warning(f"Attempt {attempt} for {resource.url}: {exc}")
            except OperationCancelled:
                result.error = "cancelled"
                return result
            except (requests.RequestException, OSError) as exc:
                result.error = str(exc)
                result.attempt_outcomes.append(FetchOutcome.TRANSIENT)
                self.logger.debug(f"Failed attempt {attempt} for {resource.url} with proxy {proxy}: {exc}")
                if self._is_connection_level(exc) and run.mark_bad(proxy):
                    self.logger.debug(f"Marked proxy {proxy} as bad")
            else:
                result.outcome = FetchOutcome.FETCHED
                result.error = None
                result.attempt_outcomes.append(FetchOutcome.FETCHED)
                self.logger.debug(f"Saved {resource.remote_path}")
                return result

            if attempt < self.attempts and cancel_event.wait(attempt * self.backoff_seconds):
                result.error = "cancelled"
                return result

        self.logger.warning(f"Failed to download {resource.url} after {result.attempts} attempts: {result.error}")
        run.add_failure(resource.url)
        return result

    def _download_with_proxy(self, resource: CandidateResource, proxy: ProxyEndpoint,
                             cancel_event: threading.Event) -> None:
        target = self.resume.path_for(resource)
        target.parent.mkdir(parents=True, exist_ok=True)
        part = target.with_name(target.name + ".part")
        try:
            with requests.get(
                resource.url,
                proxies=proxy.requests_proxies(),
                headers={"User-Agent": self.user_agent},
                timeout=self.timeouts[resource.kind],
                stream=True,
            ) as resp:
                if resp.status_code == 404:
                    raise _NotFound(resource.url)
                resp.raise_for_status()
                with open(part, "wb") as f:
                    for chunk in resp.iter_content(chunk_size=_CHUNK_SIZE):
                        if cancel_event.is_set():
                            raise OperationCancelled(f"download of {resource.url} cancelled")
                        if chunk:
                            f.write(chunk)
            if not validate_archive(part):
                raise _Corrupt(f"invalid zip archive received for {resource.url}")
            os.replace(part, target)
        finally:
            Path(part).unlink(missing_ok=True)

    @staticmethod
    def _is_connection_level(exc: BaseException) -> bool:
        if isinstance(exc, (requests.Timeout, requests.exceptions.ProxyError)):
            return True
        if isinstance(exc, requests.ConnectionError):
            text = str(exc).lower()
            return "refused" in text or "timed out" in text or "timeout" in text
        return False

