"""
Layout of the Bitget public history archive at https://img.bitgetimg.com/online/.

Provides the pieces every other component agrees on:
  - market_codes()       → remote market codes for a data kind / market filter
  - trade_resource()     → CandidateResource for one trades archive
  - depth_resource()     → CandidateResource for one depth archive
  - local_path()         → where a resource is mirrored under the archive dir
  - iter_local_archives()→ resources already mirrored locally
  - validate_archive()   → structural ZIP check

No network logic lives here. Probing and downloading are done by the
downloader package.
"""

from __future__ import annotations

import re
import zipfile
from datetime import date, datetime
from pathlib import Path
from typing import Iterator, Optional, Union

from bitget_history.core.errors import ConfigurationError
from bitget_history.core.models import CandidateResource, DataKind, Market

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
BASE_URL = "https://img.bitgetimg.com/online"
USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)

TRADES_PATH = "trades/{code}/{pair}/{day}_{seq:03d}.zip"
DEPTH_PATH = "depth/{pair}/{code}/{day}.zip"

MAX_SEQUENCE = 999

_MARKET_CODES = {
    DataKind.TRADES: {Market.SPOT: "SPBL", Market.FUTURES: "UMCBL"},
    DataKind.DEPTH: {Market.SPOT: "1", Market.FUTURES: "2"},
}

_PAIR_RE = re.compile(r"^[A-Z0-9]{2,32}$")
_TRADES_NAME_RE = re.compile(r"^(\d{8})_(\d{3})\.zip$")
_DEPTH_NAME_RE = re.compile(r"^(\d{8})\.zip$")


def normalize_pair(pair: str) -> str:
    """Upper-case and validate a trading pair such as 'btcusdt'.

    Raises
    - ConfigurationError: If the pair contains anything but letters/digits
    """
    value = (pair or "").strip().upper()
    if not _PAIR_RE.match(value):
        raise ConfigurationError(f"invalid pair {pair!r}")
    return value


def market_codes(kind: Union[DataKind, str], market: Union[Market, str]) -> list[str]:
    """Return the remote market codes for *kind* filtered by *market*.

    Examples
    - market_codes("trades", "all") -> ["SPBL", "UMCBL"]
    - market_codes("depth", "futures") -> ["2"]
    """
    try:
        kind = DataKind(kind)
        market = Market(market)
    except ValueError as exc:
        raise ConfigurationError(str(exc)) from None
    codes = _MARKET_CODES[kind]
    if market == Market.ALL:
        return [codes[Market.SPOT], codes[Market.FUTURES]]
    return [codes[market]]


def sibling_depth_code(code: str) -> str:
    """The other depth market code; both codes carry the same depth file for a day."""
    spot, futures = _MARKET_CODES[DataKind.DEPTH][Market.SPOT], _MARKET_CODES[DataKind.DEPTH][Market.FUTURES]
    if code == spot:
        return futures
    if code == futures:
        return spot
    raise ConfigurationError(f"unknown depth market code {code!r}")


def trade_resource(pair: str, code: str, day: date, sequence: int,
                   base_url: str = BASE_URL, size_hint: int = 0) -> CandidateResource:
    if not 1 <= sequence <= MAX_SEQUENCE:
        raise ValueError(f"sequence {sequence} outside 1..{MAX_SEQUENCE}")
    remote = TRADES_PATH.format(code=code, pair=pair, day=day.strftime("%Y%m%d"), seq=sequence)
    return CandidateResource(
        kind=DataKind.TRADES,
        pair=pair,
        market_code=code,
        day=day,
        remote_path=remote,
        url=f"{base_url.rstrip('/')}/{remote}",
        sequence=sequence,
        size_hint=size_hint,
    )


def depth_resource(pair: str, code: str, day: date,
                   base_url: str = BASE_URL, size_hint: int = 0) -> CandidateResource:
    remote = DEPTH_PATH.format(pair=pair, code=code, day=day.strftime("%Y%m%d"))
    return CandidateResource(
        kind=DataKind.DEPTH,
        pair=pair,
        market_code=code,
        day=day,
        remote_path=remote,
        url=f"{base_url.rstrip('/')}/{remote}",
        size_hint=size_hint,
    )


def local_path(archive_dir: Union[str, Path], resource: CandidateResource) -> Path:
    return Path(archive_dir).joinpath(*resource.remote_path.split("/"))


def kind_dir(archive_dir: Union[str, Path], kind: DataKind, pair: str,
             code: Optional[str] = None) -> Path:
    """Directory holding the mirrored archives of one pair (and code)."""
    if DataKind(kind) == DataKind.TRADES:
        if code is None:
            raise ValueError("trades archives are grouped by market code")
        return Path(archive_dir) / "trades" / code / pair
    base = Path(archive_dir) / "depth" / pair
    return base / code if code is not None else base


def iter_local_archives(
    archive_dir: Union[str, Path],
    kind: Union[DataKind, str],
    pair: str,
    codes: list[str],
    start: Optional[date] = None,
    end: Optional[date] = None,
    base_url: str = BASE_URL,
) -> Iterator[CandidateResource]:
    """Yield resources already mirrored under *archive_dir*, sorted per code.

    Files whose names do not follow the archive naming scheme are ignored.
    The size hint is always 0.
    """
    kind = DataKind(kind)
    for code in codes:
        folder = kind_dir(archive_dir, kind, pair, code)
        if not folder.is_dir():
            continue
        for entry in sorted(folder.iterdir()):
            if not entry.is_file():
                continue
            pattern = _TRADES_NAME_RE if kind == DataKind.TRADES else _DEPTH_NAME_RE
            m = pattern.match(entry.name)
            if not m:
                continue
            day = datetime.strptime(m.group(1), "%Y%m%d").date()
            if (start and day < start) or (end and day > end):
                continue
            if kind == DataKind.TRADES:
                seq = int(m.group(2))
                if seq < 1:
                    continue
                yield trade_resource(pair, code, day, seq, base_url=base_url)
            else:
                yield depth_resource(pair, code, day, base_url=base_url)


def validate_archive(path: Union[str, Path], allow_empty: bool = False) -> bool:
    """Return True if *path* is a well-formed ZIP archive.

    A zero-byte file is only accepted when *allow_empty* is set (depth
    placeholders for days the origin reported absent).
    """
    path = Path(path)
    try:
        if path.stat().st_size == 0:
            return allow_empty
        with zipfile.ZipFile(path) as zf:
            return zf.testzip() is None
    except (OSError, zipfile.BadZipFile, zipfile.LargeZipFile, EOFError, ValueError):
        return False
