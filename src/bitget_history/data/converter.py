"""
Archive → normalized rows.

Bitget archives hold a single CSV or XLSX sheet. The first row is always a
header. Numeric cells exported by the spreadsheet tool can be truncated
("50000.") or blank; these are repaired before parsing. Rows that still do
not parse are skipped and counted, never fatal.

Usage::

    records, skipped = convert_archive(path, DataKind.TRADES)
"""

from __future__ import annotations

import io
import logging
import math
import zipfile
from pathlib import Path
from typing import Optional, Union

import pandas as pd
from openpyxl.utils.exceptions import InvalidFileException

from bitget_history.core.errors import ConversionError, CorruptArchiveError
from bitget_history.core.models import DataKind, DepthRecord, TradeRecord

TRADE_COLUMNS = ["trade_id", "timestamp", "price", "side", "volume_quote", "size_base"]
DEPTH_COLUMNS = ["timestamp", "ask_price", "bid_price", "ask_volume", "bid_volume"]

_TRADE_NUMERIC = (2, 4, 5)
_SIDES = ("buy", "sell")

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Archive reading
# ---------------------------------------------------------------------------

def read_archive_rows(path: Union[str, Path], width: int) -> tuple[list[list[str]], bool]:
    """
    Return the raw rows (header included) of the first CSV/XLSX member.

    Returns
    -------
    (rows, from_xlsx)
        CSV rows keep their original length (up to *width*); XLSX rows are
        padded to *width* with empty strings.

    Raises
    ------
    CorruptArchiveError
        The file is not a readable ZIP or a member fails its CRC check.
    ConversionError
        No CSV or XLSX member, or the payload cannot be parsed.
    """
    try:
        with zipfile.ZipFile(path) as zf:
            bad = zf.testzip()
            if bad is not None:
                raise CorruptArchiveError(f"corrupted zip {path}: bad member {bad}")
            member = None
            for name in zf.namelist():
                lower = name.lower()
                if lower.endswith(".csv") or lower.endswith(".xlsx"):
                    member = name
                    break
            if member is None:
                raise ConversionError(f"no CSV file found in {path} (and no XLSX to convert)")
            payload = zf.read(member)
    except (zipfile.BadZipFile, zipfile.LargeZipFile, EOFError, OSError) as exc:
        raise CorruptArchiveError(f"failed to open zip {path}: {exc}") from exc

    try:
        if member.lower().endswith(".xlsx"):
            return _xlsx_rows(payload, width), True
        return _csv_rows(payload, width), False
    except (ValueError, KeyError, pd.errors.ParserError, pd.errors.EmptyDataError,
            zipfile.BadZipFile, InvalidFileException) as exc:
        raise ConversionError(f"failed to read {member} in {path}: {exc}") from exc


def _csv_rows(payload: bytes, width: int) -> list[list[str]]:
    if not payload.strip():
        return []
    df = pd.read_csv(
        io.BytesIO(payload),
        header=None,
        names=list(range(width)),
        dtype=str,
        keep_default_na=False,
        skip_blank_lines=True,
        engine="python",
        on_bad_lines=lambda bad: bad[:width],
    )
    rows = []
    for values in df.itertuples(index=False, name=None):
        row = ["" if _missing(v) else str(v) for v in values]
        # Short lines come back padded with NaN; keep them short.
        while row and _missing(values[len(row) - 1]):
            row.pop()
        rows.append(row)
    return rows


def _xlsx_rows(payload: bytes, width: int) -> list[list[str]]:
    df = pd.read_excel(io.BytesIO(payload), sheet_name=0, header=None, dtype=str, engine="openpyxl")
    if df.empty:
        raise ConversionError("no rows found in first sheet of XLSX")
    df = df.iloc[:, :width]
    rows = [
        ["" if _missing(v) else str(v) for v in values]
        for values in df.itertuples(index=False, name=None)
    ]
    return [row + [""] * (width - len(row)) for row in rows]


def _missing(value) -> bool:
    return value is None or (isinstance(value, float) and math.isnan(value))


# ---------------------------------------------------------------------------
# Row normalization (pure)
# ---------------------------------------------------------------------------

def _repair_number(value: str, fill_empty: bool) -> str:
    value = value.strip()
    if value.endswith("."):
        value += "0"
    if fill_empty and value == "":
        value = "0.0"
    return value


def _parse_timestamp(value: str) -> int:
    value = value.strip()
    try:
        return int(value)
    except ValueError:
        number = float(value)
        if not number.is_integer():
            raise
        return int(number)


def normalize_trade_rows(rows: list[list[str]], fill_empty: bool = False,
                         source: str = "", log: Optional[logging.Logger] = None) -> tuple[list[TradeRecord], int]:
    """
    Convert raw trade rows (first row is the header) into TradeRecords.

    Returns (records, skipped). A row is skipped when it has fewer than six
    fields, an empty trade id, a side other than buy/sell, or a value that
    does not parse.
    """
    log = log or logger
    records: list[TradeRecord] = []
    skipped = 0
    for line, raw in enumerate(rows[1:], start=2):
        cells = [c.strip() for c in raw]
        if fill_empty:
            cells += [""] * (len(TRADE_COLUMNS) - len(cells))
        if not any(cells):
            continue
        if len(cells) < len(TRADE_COLUMNS):
            log.debug(f"Skipping invalid record in {source} at line {line}: {raw}")
            skipped += 1
            continue
        for idx in _TRADE_NUMERIC:
            cells[idx] = _repair_number(cells[idx], fill_empty)
        trade_id, side = cells[0], cells[3].lower()
        if not trade_id or side not in _SIDES:
            log.debug(f"Skipping record in {source} at line {line}: trade_id={trade_id!r} side={cells[3]!r}")
            skipped += 1
            continue
        try:
            records.append(TradeRecord(
                trade_id=trade_id,
                timestamp=_parse_timestamp(cells[1]),
                price=float(cells[2]),
                side=side,
                volume_quote=float(cells[4]),
                size_base=float(cells[5]),
            ))
        except ValueError:
            log.debug(f"Skipping record in {source} at line {line}: unparsable values {raw}")
            skipped += 1
    return records, skipped


def normalize_depth_rows(rows: list[list[str]], source: str = "",
                         log: Optional[logging.Logger] = None) -> tuple[list[DepthRecord], int]:
    """
    Convert raw depth rows (first row is the header) into DepthRecords.

    Short rows are padded with "0.0"; blank or truncated numbers are
    repaired. Returns (records, skipped).
    """
    log = log or logger
    width = len(DEPTH_COLUMNS)
    records: list[DepthRecord] = []
    skipped = 0
    for line, raw in enumerate(rows[1:], start=2):
        cells = [c.strip() for c in raw[:width]]
        if not any(cells):
            continue
        cells += ["0.0"] * (width - len(cells))
        values = [_repair_number(c, fill_empty=True) for c in cells[1:]]
        try:
            records.append(DepthRecord(
                _parse_timestamp(cells[0]),
                *(float(v) for v in values),
            ))
        except ValueError:
            log.debug(f"Skipping record in {source} at line {line}: invalid values {raw}")
            skipped += 1
    return records, skipped


def convert_archive(path: Union[str, Path], kind: Union[DataKind, str],
                    log: Optional[logging.Logger] = None):
    """Read *path* and normalize it as trades or depth. Returns (records, skipped)."""
    kind = DataKind(kind)
    source = str(path)
    if kind == DataKind.TRADES:
        rows, from_xlsx = read_archive_rows(path, len(TRADE_COLUMNS))
        return normalize_trade_rows(rows, fill_empty=from_xlsx, source=source, log=log)
    rows, _ = read_archive_rows(path, len(DEPTH_COLUMNS))
    return normalize_depth_rows(rows, source=source, log=log)
