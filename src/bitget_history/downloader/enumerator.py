"""
Enumerate candidate archives for a pair / market / data kind / date range.

Trades archives are numbered per day (001, 002, ...) with no index to list
them, so sequence numbers are probed in concurrent batches until the first
absent number. Depth archives are one file per day and market code.
"""

from __future__ import annotations

import logging
import shutil
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import date
from pathlib import Path
from typing import Optional, Sequence, Union

from tqdm import tqdm

from bitget_history.core.errors import OperationCancelled, ProbeError
from bitget_history.core.models import CandidateResource, DataKind, Market
from bitget_history.downloader.prober import ExistenceProber
from bitget_history.downloader.resume import ResumeMarker
from bitget_history.exchanges import bitget_archive as archive
from bitget_history.helpers.data_helper import iter_days
from bitget_history.proxy.pool import ProxyPool

_DEFAULT_MAX_WORKERS = 16
_DEFAULT_BATCH_SIZE = 10


class _EnumerationRun:
    """Per-call collector; workers finish in any order."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._resources: dict[str, CandidateResource] = {}
        self.probe_errors = 0

    def add(self, resource: CandidateResource) -> None:
        with self._lock:
            self._resources[resource.remote_path] = resource

    def record_error(self) -> None:
        with self._lock:
            self.probe_errors += 1

    def sorted(self) -> list[CandidateResource]:
        with self._lock:
            return [self._resources[k] for k in sorted(self._resources)]


class URLEnumerator:
    """
    Discover which remote archives exist.

    Parameters
    ----------
    pool : ProxyPool
        Source of the working proxy set (read once per call).
    prober : ExistenceProber
        Performs the HEAD probes.
    resume : ResumeMarker
        Tells which archives are already mirrored locally.
    max_workers : int
        Upper bound on concurrent probes.
    """

    def __init__(
        self,
        pool: ProxyPool,
        prober: ExistenceProber,
        resume: ResumeMarker,
        base_url: str = archive.BASE_URL,
        max_workers: int = _DEFAULT_MAX_WORKERS,
        batch_size: int = _DEFAULT_BATCH_SIZE,
        max_sequence: int = archive.MAX_SEQUENCE,
        show_progress: bool = False,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.pool = pool
        self.prober = prober
        self.resume = resume
        self.base_url = base_url
        self.max_workers = max(1, int(max_workers))
        self.batch_size = max(1, int(batch_size))
        self.max_sequence = min(int(max_sequence), archive.MAX_SEQUENCE)
        self.show_progress = show_progress
        self.logger = logger or logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def enumerate(
        self,
        pair: str,
        market: Union[Market, str],
        kind: Union[DataKind, str],
        start: date,
        end: date,
        skip_locally_present: bool = False,
        skip_download: bool = False,
        cancel_event: Optional[threading.Event] = None,
    ) -> list[CandidateResource]:
        """
        Return the candidate resources for the range, sorted by remote path.

        With *skip_download* no network call is made: only archives already
        mirrored locally are returned (for an offline re-import).
        """
        pair = archive.normalize_pair(pair)
        kind = DataKind(kind)
        codes = archive.market_codes(kind, market)
        days = list(iter_days(start, end))

        if skip_download:
            return self._enumerate_local(pair, kind, codes, start, end)

        cancel_event = cancel_event or threading.Event()
        run = _EnumerationRun()
        proxies = self.pool.get()
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor, \
                tqdm(desc=f"probe {kind.value} {pair}", unit="url", leave=False,
                     disable=not self.show_progress) as bar:
            try:
                if kind == DataKind.TRADES:
                    for code in codes:
                        for day in days:
                            self._check_cancel(cancel_event)
                            self._enumerate_trades_day(executor, run, proxies, pair, code, day,
                                                       skip_locally_present, cancel_event, bar)
                else:
                    self._enumerate_depth(executor, run, proxies, pair, codes, days,
                                          skip_locally_present, cancel_event, bar)
            except BaseException:
                # Queued probes must not run once the caller is unwinding.
                cancel_event.set()
                executor.shutdown(wait=False, cancel_futures=True)
                raise

        resources = run.sorted()
        msg = f"Found {len(resources)} {kind.value} archives for {pair} ({start} .. {end})"
        if run.probe_errors:
            msg += f", {run.probe_errors} probes failed"
        self.logger.info(msg)
        return resources

    # ------------------------------------------------------------------
    # Trades
    # ------------------------------------------------------------------

    def _enumerate_trades_day(self, executor, run, proxies, pair, code, day,
                              skip_locally_present, cancel_event, bar) -> None:
        first = 1
        while first <= self.max_sequence:
            last = min(first + self.batch_size - 1, self.max_sequence)
            # seq -> resource (exists), None (absent) or False (probe error)
            outcome: dict[int, object] = {}
            future_to_seq = {}
            for seq in range(first, last + 1):
                resource = archive.trade_resource(pair, code, day, seq, base_url=self.base_url)
                if skip_locally_present and self.resume.is_present(resource):
                    self.logger.debug(f"Local copy of {resource.remote_path} found, not probing")
                    outcome[seq] = resource
                    continue
                future_to_seq[executor.submit(self.prober.probe, resource.url, proxies, cancel_event)] = (seq, resource)

            for future in as_completed(future_to_seq):
                seq, resource = future_to_seq[future]
                bar.update(1)
                try:
                    result = future.result()
                except ProbeError as exc:
                    self.logger.warning(f"Probe failed, skipping {resource.url}: {exc}")
                    run.record_error()
                    outcome[seq] = False
                    continue
                if result.exists:
                    outcome[seq] = archive.trade_resource(pair, code, day, seq,
                                                          base_url=self.base_url, size_hint=result.size)
                else:
                    outcome[seq] = None

            absent = [seq for seq, value in outcome.items() if value is None]
            stop_at = min(absent) if absent else last + 1
            for seq in range(first, stop_at):
                value = outcome.get(seq)
                if isinstance(value, CandidateResource):
                    run.add(value)
            if absent:
                self.logger.debug(f"{pair} {code} {day}: last archive is {stop_at - 1:03d}")
                return
            self._check_cancel(cancel_event)
            first = last + 1

    # ------------------------------------------------------------------
    # Depth
    # ------------------------------------------------------------------

    def _enumerate_depth(self, executor, run, proxies, pair, codes, days,
                         skip_locally_present, cancel_event, bar) -> None:
        futures = {}
        for day in days:
            for code in codes:
                resource = archive.depth_resource(pair, code, day, base_url=self.base_url)
                if skip_locally_present and self._reuse_local_depth(resource):
                    run.add(resource)
                    continue
                futures[executor.submit(self.prober.probe, resource.url, proxies, cancel_event)] = resource

        for future in as_completed(futures):
            resource = futures[future]
            bar.update(1)
            try:
                result = future.result()
            except ProbeError as exc:
                self.logger.warning(f"Probe failed, skipping {resource.url}: {exc}")
                run.record_error()
                continue
            if result.exists:
                run.add(archive.depth_resource(resource.pair, resource.market_code, resource.day,
                                               base_url=self.base_url, size_hint=result.size))
            elif result.status_code in (403, 404):
                self._write_placeholder(resource)

    def _reuse_local_depth(self, resource: CandidateResource) -> bool:
        if self.resume.is_present(resource):
            self.logger.debug(f"Local copy of {resource.remote_path} found, not probing")
            return True
        sibling = archive.depth_resource(resource.pair, archive.sibling_depth_code(resource.market_code),
                                         resource.day, base_url=self.base_url)
        src = self.resume.path_for(sibling)
        if src.is_file() and src.stat().st_size > 0:
            dst = self.resume.path_for(resource)
            dst.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(src, dst)
            self.logger.debug(f"Copied {sibling.remote_path} to {resource.remote_path}")
            return True
        return False

    def _write_placeholder(self, resource: CandidateResource) -> None:
        path: Path = self.resume.path_for(resource)
        path.parent.mkdir(parents=True, exist_ok=True)
        if not path.exists():
            path.touch()
            self.logger.debug(f"No depth archive at {resource.url}, placeholder written")

    # ------------------------------------------------------------------
    # Offline
    # ------------------------------------------------------------------

    def _enumerate_local(self, pair: str, kind: DataKind, codes: Sequence[str],
                         start: date, end: date) -> list[CandidateResource]:
        resources = sorted(
            self.resume.iter_local(kind, pair, codes, start, end, base_url=self.base_url),
            key=lambda r: r.remote_path,
        )
        self.logger.info(f"Found {len(resources)} local {kind.value} archives for {pair} ({start} .. {end})")
        return resources

    @staticmethod
    def _check_cancel(cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelled("enumeration cancelled")

