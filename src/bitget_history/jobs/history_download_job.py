"""Bitget History Download Job

Mirrors Bitget trade/depth archives for one pair and loads them into SQLite.

The job:
1. Optionally deletes corrupt local archives (recheck mode)
2. Makes sure a validated proxy working set exists
3. Enumerates candidate archives and downloads the missing ones,
   repeating for depth until nothing is pending or progress stops
4. Loads the archives into a temporary copy of each database
5. Swaps the temporary copy over the live database, keeping a backup

Each database (one per trades market code, one per depth pair) is handled
independently: a failure in one never aborts the others.
"""

from __future__ import annotations

import copy
import json
import logging
import sqlite3
import threading
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Optional, Sequence, Union

from tqdm import tqdm

from bitget_history.core.errors import (
    ConfigurationError,
    ConversionError,
    CorruptArchiveError,
    DownloadError,
    PersistenceSwapError,
)
from bitget_history.core.models import CandidateResource, DataKind, FetchOutcome, Market
from bitget_history.data.converter import convert_archive
from bitget_history.data.storage import HistoryDatabase, depth_db_name, trades_db_name
from bitget_history.downloader.engine import DownloadEngine
from bitget_history.downloader.enumerator import URLEnumerator
from bitget_history.downloader.prober import ExistenceProber, ProbeCache
from bitget_history.downloader.resume import LocalFileResumeMarker, ResumeMarker
from bitget_history.exchanges import bitget_archive as archive
from bitget_history.helpers.data_helper import copy_database, remove_database, replace_with_backup
from bitget_history.proxy.pool import CHECK_URL, PROXY_LIST_URLS, ProxyPool

DEFAULT_CONFIG: dict = {
    "base_url": archive.BASE_URL,
    "user_agent": archive.USER_AGENT,
    "data_paths": {
        "archive_dir": "data/bitget-history/archives",
        "db_dir": "data/bitget-history/database",
        "temp_dir": "data/bitget-history/tmp",
        "log_path": "logs",
        "probe_cache": "data/bitget-history/checked_urls.db",
    },
    "proxy": {
        "raw_file": "data/bitget-history/proxies/raw.txt",
        "working_file": "data/bitget-history/proxies/working.txt",
        "fallback": "",
        "list_urls": list(PROXY_LIST_URLS),
        "check_url": CHECK_URL,
        "check_timeout": 3,
        "validate_workers": 64,
    },
    "downloader": {
        "max_workers": 16,
        "probe_attempts": 3,
        "probe_timeout": 30,
        "download_attempts": 5,
        "trades_timeout": 60,
        "depth_timeout": 30,
        "backoff_seconds": 1,
        "batch_size": 10,
        "max_sequence": 999,
        "negative_cache_ttl": 86400,
    },
    "database": {
        "backup_suffix": ".bak",
    },
    "max_repeat_cycles": 10,
    "log_level": "INFO",
}


def deep_merge(base: dict, override: dict) -> dict:
    """Return a copy of *base* with *override* merged in, recursing into dicts."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def load_config(config_path: Optional[Union[str, Path]] = None) -> dict:
    """Load configuration from a JSON file, merged over DEFAULT_CONFIG.

    Args:
        config_path: Path to the config JSON file. A missing file (or None)
            yields the defaults.

    Returns:
        Dictionary with configuration parameters

    Raises:
        ConfigurationError: The file is not valid JSON or not a JSON object
    """
    if config_path is None or not Path(config_path).exists():
        return copy.deepcopy(DEFAULT_CONFIG)
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            overrides = json.load(f)
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"malformed config file {config_path}: {exc}") from exc
    if not isinstance(overrides, dict):
        raise ConfigurationError(f"config file {config_path} must contain a JSON object")
    return deep_merge(DEFAULT_CONFIG, overrides)


@dataclass
class LoadReport:
    group: str
    db_path: Path
    files: int = 0
    inserted: int = 0
    skipped_rows: int = 0
    failed_files: int = 0
    corrupt_removed: int = 0


@dataclass
class RunSummary:
    kind: DataKind
    pair: str
    cycles: int = 0
    enumerated: int = 0
    fetched: int = 0
    not_found: int = 0
    corrupt_removed: int = 0
    failed_urls: list[str] = field(default_factory=list)
    loads: list[LoadReport] = field(default_factory=list)
    failed_groups: list[str] = field(default_factory=list)

    @property
    def failure_count(self) -> int:
        return len(self.failed_urls) + len(self.failed_groups)


class ReconciliationLoop:
    """
    Drive enumerate → download cycles and the transactional load.

    Parameters
    ----------
    config : dict
        Merged configuration (see ``load_config``).
    pool, enumerator, engine, resume
        Collaborators; ``from_config`` builds the production set.
    """

    def __init__(
        self,
        config: dict,
        pool: ProxyPool,
        enumerator: URLEnumerator,
        engine: DownloadEngine,
        resume: ResumeMarker,
        show_progress: bool = False,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.config = config
        self.pool = pool
        self.enumerator = enumerator
        self.engine = engine
        self.resume = resume
        self.show_progress = show_progress
        self.logger = logger or logging.getLogger(__name__)
        self.db_dir = Path(config["data_paths"]["db_dir"])
        self.temp_dir = Path(config["data_paths"]["temp_dir"])
        self.backup_suffix = config["database"]["backup_suffix"]
        self.max_repeat_cycles = max(1, int(config["max_repeat_cycles"]))
        self._closers: list = []

    @classmethod
    def from_config(cls, config: dict, show_progress: bool = False,
                    logger: Optional[logging.Logger] = None) -> "ReconciliationLoop":
        paths, proxy_cfg, dl = config["data_paths"], config["proxy"], config["downloader"]
        pool = ProxyPool(
            raw_file=proxy_cfg["raw_file"],
            working_file=proxy_cfg["working_file"],
            fallback=proxy_cfg.get("fallback") or None,
            list_urls=proxy_cfg["list_urls"],
            check_url=proxy_cfg["check_url"],
            check_timeout=proxy_cfg["check_timeout"],
            validate_workers=proxy_cfg["validate_workers"],
            logger=logger,
        )
        resume = LocalFileResumeMarker(paths["archive_dir"])
        cache = ProbeCache(paths["probe_cache"], negative_ttl=dl["negative_cache_ttl"])
        prober = ExistenceProber(
            cache=cache,
            attempts=dl["probe_attempts"],
            timeout=dl["probe_timeout"],
            user_agent=config["user_agent"],
            logger=logger,
        )
        enumerator = URLEnumerator(
            pool, prober, resume,
            base_url=config["base_url"],
            max_workers=dl["max_workers"],
            batch_size=dl["batch_size"],
            max_sequence=dl["max_sequence"],
            show_progress=show_progress,
            logger=logger,
        )
        engine = DownloadEngine(
            pool, resume,
            max_workers=dl["max_workers"],
            attempts=dl["download_attempts"],
            timeouts={DataKind.TRADES: dl["trades_timeout"], DataKind.DEPTH: dl["depth_timeout"]},
            backoff_seconds=dl["backoff_seconds"],
            user_agent=config["user_agent"],
            show_progress=show_progress,
            logger=logger,
        )
        loop = cls(config, pool, enumerator, engine, resume, show_progress=show_progress, logger=logger)
        loop._closers.append(cache.close)
        return loop

    def close(self) -> None:
        while self._closers:
            self._closers.pop()()

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(
        self,
        pair: str,
        kind: Union[DataKind, str],
        market: Union[Market, str],
        start: date,
        end: date,
        skip_locally_present: bool = False,
        skip_download: bool = False,
        repeat: bool = False,
        recheck: bool = False,
        reuse_proxies: bool = False,
        cancel_event: Optional[threading.Event] = None,
    ) -> RunSummary:
        """Mirror and load one pair. Raises only on fatal configuration errors."""
        pair = archive.normalize_pair(pair)
        try:
            kind = DataKind(kind)
        except ValueError:
            raise ConfigurationError(f"invalid data type {kind!r} (must be trades or depth)") from None
        codes = archive.market_codes(kind, market)
        if start > end:
            raise ConfigurationError(f"start date {start} is after end date {end}")

        summary = RunSummary(kind=kind, pair=pair)
        if recheck:
            summary.corrupt_removed = self.recheck_archives(kind, pair, codes)

        if not skip_download:
            self.pool.ensure(cancel_event=cancel_event, reuse_working=reuse_proxies)

        resources = self._download_cycles(summary, pair, kind, market, start, end,
                                          skip_locally_present, skip_download, repeat, cancel_event)

        if kind == DataKind.TRADES:
            for code in codes:
                group = [r for r in resources if r.market_code == code]
                self._load_group(summary, kind, self.db_dir / trades_db_name(pair, code), group, codes=[code])
        else:
            local = list(self.resume.iter_local(kind, pair, codes, date.min, date.max,
                                                base_url=self.config["base_url"]))
            self._load_group(summary, kind, self.db_dir / depth_db_name(pair), local, codes=codes)

        self.logger.info(
            f"Run finished for {kind.value} {pair}: {summary.fetched} fetched, "
            f"{summary.failure_count} failures"
        )
        return summary

    def _download_cycles(self, summary: RunSummary, pair: str, kind: DataKind, market,
                         start: date, end: date, skip_locally_present: bool, skip_download: bool,
                         repeat: bool, cancel_event) -> list[CandidateResource]:
        repeating = repeat and skip_locally_present and kind == DataKind.DEPTH and not skip_download
        seen: dict[str, CandidateResource] = {}
        failed: set[str] = set()

        while True:
            summary.cycles += 1
            resources = self.enumerator.enumerate(
                pair, market, kind, start, end,
                skip_locally_present=skip_locally_present,
                skip_download=skip_download,
                cancel_event=cancel_event,
            )
            for r in resources:
                seen[r.remote_path] = r
            if skip_download:
                break

            pending = [r for r in resources if not self.resume.is_complete(r)]
            self.logger.info(f"Cycle {summary.cycles}: {len(resources)} archives, {len(pending)} pending")
            if not pending:
                break

            try:
                results = self.engine.download_all(resources, cancel_event=cancel_event)
            except DownloadError as exc:
                self.logger.warning(str(exc))
                results = exc.results
            fetched = 0
            for result in results:
                url = result.resource.url
                if result.outcome == FetchOutcome.FETCHED:
                    fetched += 1
                    failed.discard(url)
                elif result.outcome == FetchOutcome.NOT_FOUND:
                    summary.not_found += 1
                    failed.discard(url)
                elif not result.success:
                    failed.add(url)
            summary.fetched += fetched

            if not repeating:
                break
            if fetched == 0:
                self.logger.warning(f"Cycle {summary.cycles} made no progress, stopping")
                break
            if summary.cycles >= self.max_repeat_cycles:
                self.logger.warning(f"Stopping after {summary.cycles} cycles with archives still pending")
                break

        summary.enumerated = len(seen)
        summary.failed_urls = sorted(failed)
        if failed:
            self.logger.warning(f"{len(failed)} archives could not be downloaded")
        return [seen[k] for k in sorted(seen)]

    # ------------------------------------------------------------------
    # Recheck
    # ------------------------------------------------------------------

    def recheck_archives(self, kind: DataKind, pair: str, codes: Sequence[str]) -> int:
        """Delete every non-empty local archive that fails ZIP validation."""
        removed = 0
        local = list(self.resume.iter_local(kind, pair, codes, date.min, date.max,
                                            base_url=self.config["base_url"]))
        for resource in tqdm(local, desc=f"recheck {kind.value} {pair}", unit="file", leave=False,
                             disable=not self.show_progress):
            path = self.resume.path_for(resource)
            if not archive.validate_archive(path):
                self.logger.warning(f"Removing corrupt archive {path}")
                path.unlink(missing_ok=True)
                removed += 1
        self.logger.info(f"Rechecked {len(local)} archives, removed {removed}")
        return removed

    # ------------------------------------------------------------------
    # Load
    # ------------------------------------------------------------------

    def _load_group(self, summary: RunSummary, kind: DataKind, live_path: Path,
                    resources: Sequence[CandidateResource], codes: Sequence[str]) -> None:
        files = [(r, self.resume.path_for(r)) for r in resources]
        files = [(r, p) for r, p in files if p.is_file() and p.stat().st_size > 0]
        group = live_path.stem
        if not files:
            self.logger.info(f"[{group}] nothing to load")
            return

        report = LoadReport(group=group, db_path=live_path, files=len(files))
        try:
            self.load_into(live_path, kind, files, codes, report)
            replace_with_backup(self.temp_dir / live_path.name, live_path, self.backup_suffix, log=self.logger)
        except PersistenceSwapError as exc:
            self.logger.error(f"[{group}] {exc}")
            summary.failed_groups.append(group)
        summary.corrupt_removed += report.corrupt_removed
        summary.loads.append(report)

    def load_into(self, live_path: Path, kind: DataKind, files, codes: Sequence[str],
                  report: LoadReport) -> Path:
        """Load *files* into a working copy of *live_path*; returns the closed copy."""
        work_path = self.temp_dir / live_path.name
        try:
            copy_database(live_path, work_path)
            with HistoryDatabase(work_path, kind, depth_codes=codes, logger=self.logger) as db:
                if kind == DataKind.DEPTH:
                    db.reset_depth_tables(codes)
                for resource, path in tqdm(files, desc=f"load {live_path.stem}", unit="file",
                                           leave=False, disable=not self.show_progress):
                    self._load_file(db, kind, resource, path, report)
        except (sqlite3.Error, OSError) as exc:
            remove_database(work_path)
            raise PersistenceSwapError(f"failed to load into {work_path}: {exc}") from exc

        self.logger.info(
            f"[{report.group}] loaded {report.files - report.failed_files} files: "
            f"inserted {report.inserted} rows, skipped {report.skipped_rows} rows"
        )
        return work_path

    def _load_file(self, db: HistoryDatabase, kind: DataKind, resource: CandidateResource,
                   path: Path, report: LoadReport) -> None:
        try:
            records, skipped = convert_archive(path, kind, log=self.logger)
        except CorruptArchiveError as exc:
            self.logger.warning(f"{exc}; removing it")
            path.unlink(missing_ok=True)
            report.corrupt_removed += 1
            report.failed_files += 1
            return
        except ConversionError as exc:
            self.logger.warning(f"Failed to process {path}: {exc}")
            report.failed_files += 1
            return

        if kind == DataKind.TRADES:
            inserted, duplicates = db.insert_trades(records)
        else:
            inserted, duplicates = db.insert_depth(resource.market_code, records)
        report.inserted += inserted
        report.skipped_rows += skipped + duplicates
        self.logger.debug(f"{path}: inserted {inserted} rows, skipped {skipped + duplicates} rows")
