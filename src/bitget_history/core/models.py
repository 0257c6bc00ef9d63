from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Optional
from urllib.parse import urlsplit


class DataKind(str, Enum):
    TRADES = "trades"
    DEPTH = "depth"


class Market(str, Enum):
    SPOT = "spot"
    FUTURES = "futures"
    ALL = "all"


class ProxyScheme(str, Enum):
    SOCKS4 = "socks4"
    SOCKS5 = "socks5"


# requests/PySocks scheme names with DNS resolved on the proxy side.
_REMOTE_DNS_SCHEMES = {
    ProxyScheme.SOCKS4: "socks4a",
    ProxyScheme.SOCKS5: "socks5h",
}


@dataclass(frozen=True)
class ProxyEndpoint:
    url: str             # as read from the candidate list, e.g. "socks5://1.2.3.4:1080"
    scheme: ProxyScheme
    host: str
    port: int
    username: Optional[str] = None
    password: Optional[str] = None

    @classmethod
    def parse(cls, raw: str) -> "ProxyEndpoint":
        """Parse one candidate line. Raises ``ValueError`` on anything unusable."""
        raw = raw.strip()
        parts = urlsplit(raw)
        try:
            scheme = ProxyScheme(parts.scheme.lower())
        except ValueError:
            raise ValueError(f"unsupported proxy scheme in {raw!r}") from None
        if not parts.hostname or parts.port is None:
            raise ValueError(f"proxy {raw!r} has no host:port")
        # The egress check compares against the host as written, not lowercased.
        netloc = parts.netloc.rsplit("@", 1)[-1]
        host = netloc.rsplit(":", 1)[0].strip("[]")
        return cls(
            url=raw,
            scheme=scheme,
            host=host,
            port=parts.port,
            username=parts.username,
            password=parts.password,
        )

    def dial_url(self, as_socks5: bool = False) -> str:
        scheme = _REMOTE_DNS_SCHEMES[ProxyScheme.SOCKS5 if as_socks5 else self.scheme]
        auth = ""
        if self.username:
            auth = self.username + (f":{self.password}" if self.password else "") + "@"
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"{scheme}://{auth}{host}:{self.port}"

    def requests_proxies(self, as_socks5: bool = False) -> dict[str, str]:
        url = self.dial_url(as_socks5=as_socks5)
        return {"http": url, "https": url}

    def __str__(self) -> str:
        return self.url


@dataclass(frozen=True)
class CandidateResource:
    kind: DataKind
    pair: str            # e.g. "BTCUSDT"
    market_code: str     # "SPBL" / "UMCBL" for trades, "1" / "2" for depth
    day: date
    remote_path: str     # e.g. "trades/SPBL/BTCUSDT/20250502_001.zip"
    url: str
    sequence: Optional[int] = None
    size_hint: int = 0   # expected byte length, 0 when unknown


@dataclass(frozen=True)
class ProbeResult:
    exists: bool
    size: int
    status_code: int
    cached: bool = False


class FetchOutcome(str, Enum):
    FETCHED = "fetched"        # downloaded and passed archive validation
    CORRUPT = "corrupt"        # payload failed validation, artifact removed
    NOT_FOUND = "not_found"    # origin reported absence, terminal
    TRANSIENT = "transient"    # network/proxy error on one attempt
    SKIPPED = "skipped"        # already present locally
    FAILED = "failed"          # attempts exhausted or no usable proxy left


@dataclass
class FetchResult:
    resource: CandidateResource
    outcome: FetchOutcome
    attempts: int = 0
    proxy: Optional[str] = None
    error: Optional[str] = None
    attempt_outcomes: list[FetchOutcome] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.outcome in (FetchOutcome.FETCHED, FetchOutcome.SKIPPED)


@dataclass(frozen=True)
class TradeRecord:
    trade_id: str
    timestamp: int       # ms since epoch
    price: float
    side: str            # "buy" or "sell"
    volume_quote: float
    size_base: float


@dataclass(frozen=True)
class DepthRecord:
    timestamp: int       # ms since epoch
    ask_price: float
    bid_price: float
    ask_volume: float
    bid_volume: float
