"""Helper utilities for dates, line files and database file handling.

This module provides:
- parse_date / iter_days: Date parsing and inclusive day iteration.
- read_lines / write_lines: One-entry-per-line files (proxy lists).
- copy_database: Seed a working copy from the live SQLite file.
- replace_with_backup: Move a working copy over the live file, restoring the
  previous live file if anything fails.
"""

from __future__ import annotations

import logging
import os
import shutil
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Iterable, Iterator, Optional, Union

from bitget_history.core.errors import ConfigurationError, PersistenceSwapError

PathLike = Union[str, Path]

# SQLite keeps uncheckpointed pages and the shared-memory index next to the main file.
DB_SIDECAR_SUFFIXES = ("-wal", "-shm")

logger = logging.getLogger(__name__)


def parse_date(value: Union[str, date, datetime]) -> date:
    """Parse 'YYYY-MM-DD' (or pass through a date) into a ``date``.

    Raises
    - ConfigurationError: If the string is not a valid calendar date
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(value.strip()[:10], "%Y-%m-%d").date()
    except (AttributeError, ValueError):
        raise ConfigurationError(f"invalid date {value!r}, expected YYYY-MM-DD") from None


def default_range(today: Optional[date] = None) -> tuple[date, date]:
    """Return (one year before *today*, *today*); 29 February falls back to the 28th."""
    today = today or date.today()
    try:
        start = today.replace(year=today.year - 1)
    except ValueError:
        start = today.replace(year=today.year - 1, day=28)
    return start, today


def iter_days(start: date, end: date) -> Iterator[date]:
    """Yield every day from *start* to *end* inclusive.

    Raises
    - ConfigurationError: If start is after end
    """
    if start > end:
        raise ConfigurationError(f"start date {start} is after end date {end}")
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


def read_lines(file_path: PathLike) -> list[str]:
    """Return the non-blank, stripped lines of a text file.

    Raises
    - FileNotFoundError: If the path does not exist
    """
    with open(file_path, "r", encoding="utf-8") as f:
        return [line.strip() for line in f if line.strip()]


def write_lines(file_path: PathLike, lines: Iterable[str]) -> None:
    """Write one entry per line, replacing the file atomically."""
    path = Path(file_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    try:
        with open(tmp, "w", encoding="utf-8") as f:
            for line in lines:
                f.write(f"{line}\n")
        os.replace(tmp, path)
    except OSError:
        tmp.unlink(missing_ok=True)
        raise


def remove_database(db_path: PathLike) -> None:
    """Delete a SQLite file together with its sidecars, ignoring missing ones."""
    path = Path(db_path)
    for candidate in [path] + [Path(f"{path}{s}") for s in DB_SIDECAR_SUFFIXES]:
        candidate.unlink(missing_ok=True)


def copy_database(live_path: PathLike, work_path: PathLike) -> bool:
    """Seed *work_path* with the live database (and its WAL, if any).

    Any previous working copy is discarded first. Returns True when a live
    file existed and was copied.
    """
    live, work = Path(live_path), Path(work_path)
    work.parent.mkdir(parents=True, exist_ok=True)
    remove_database(work)
    if not live.exists():
        return False
    shutil.copyfile(live, work)
    wal = Path(f"{live}-wal")
    if wal.exists():
        shutil.copyfile(wal, Path(f"{work}-wal"))
    return True


def _move(src: Path, dst: Path) -> None:
    try:
        os.replace(src, dst)
    except OSError:
        # Cross-device: copy, flush to disk, then drop the source.
        with open(src, "rb") as fin, open(dst, "wb") as fout:
            shutil.copyfileobj(fin, fout)
            fout.flush()
            os.fsync(fout.fileno())
        src.unlink()


def replace_with_backup(
    work_path: PathLike,
    live_path: PathLike,
    backup_suffix: str = ".bak",
    log: Optional[logging.Logger] = None,
) -> Optional[Path]:
    """Move the closed working database over the live file.

    The previous live file (with its sidecars) is kept as
    ``<live><backup_suffix>``. If any step fails the backup is restored and
    ``PersistenceSwapError`` is raised. Returns the backup path, or None when
    there was no previous live file.
    """
    log = log or logger
    work, live = Path(work_path), Path(live_path)
    backup = Path(f"{live}{backup_suffix}")

    if not work.exists():
        raise PersistenceSwapError(f"working database {work} does not exist")

    had_live = live.exists()
    try:
        if had_live:
            remove_database(backup)
            os.replace(live, backup)
            for suffix in DB_SIDECAR_SUFFIXES:
                sidecar = Path(f"{live}{suffix}")
                if sidecar.exists():
                    os.replace(sidecar, Path(f"{backup}{suffix}"))
            log.debug(f"Backed up {live} to {backup}")
        live.parent.mkdir(parents=True, exist_ok=True)
        _move(work, live)
    except OSError as exc:
        if had_live and backup.exists():
            remove_database(live)
            os.replace(backup, live)
            for suffix in DB_SIDECAR_SUFFIXES:
                sidecar = Path(f"{backup}{suffix}")
                if sidecar.exists():
                    os.replace(sidecar, Path(f"{live}{suffix}"))
            log.warning(f"Restored {live} from {backup} after failed swap")
        raise PersistenceSwapError(f"failed to move {work} over {live}: {exc}") from exc

    for suffix in DB_SIDECAR_SUFFIXES:
        Path(f"{work}{suffix}").unlink(missing_ok=True)
    log.info(f"Installed {live}" + (f" (previous copy kept at {backup})" if had_live else ""))
    return backup if had_live else None
