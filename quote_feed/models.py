from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from quote_feed.errors import ErrorKind


class CredentialKind(str, Enum):
    SID = "sid"
    TOKEN = "token"


@dataclass(frozen=True)
class Credential:
    kind: CredentialKind
    value: str = field(repr=False)
    obtained_at: float
    expires_at: float

    def is_live(self, now: float) -> bool:
        return now < self.expires_at

    @property
    def preview(self) -> str:
        return self.value[:8] + "..."


@dataclass(frozen=True)
class EndpointCandidate:
    """One request the probe may try.

    ``group`` names the logical endpoint family (e.g. ``"quotes"``) so the
    probe can remember which URL last worked for it.
    """

    url: str
    method: str = "GET"
    headers: Mapping[str, str] = field(default_factory=dict)
    params: Optional[Mapping[str, str]] = None
    data: Optional[Mapping[str, str]] = None
    json_body: Any = None
    group: str = "default"

    @property
    def label(self) -> str:
        return f"{self.method} {self.url}"


@dataclass(frozen=True)
class RawResponse:
    url: str
    status_code: int
    body: str
    content_type: str = ""
    elapsed_seconds: float = 0.0


@dataclass(frozen=True)
class CanonicalQuote:
    symbol: str
    company_name: str = ""
    short_name: str = ""
    exchange: str = ""
    exchange_long_name: str = ""
    datatype: str = "equity"
    price: float = 0.0
    change: float = 0.0
    change_percent: float = 0.0
    tick: int = 0
    open: float = 0.0
    high: float = 0.0
    low: float = 0.0
    previous_close: float = 0.0
    bid: float = 0.0
    ask: float = 0.0
    bid_size: int = 0
    ask_size: int = 0
    volume: int = 0
    trade_volume: int = 0
    vwap: float = 0.0
    market_cap: float = 0.0
    pe: float | None = None
    eps: float | None = None
    pb: float | None = None
    week52_high: float = 0.0
    week52_low: float = 0.0
    last_trade_time: str | None = None
    entitlement: str | None = None
    source: str = "vendor"
    debug: str | None = None
    raw_length: int | None = None
    observed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def dollar_volume(self) -> float:
        return self.price * self.volume

    @property
    def is_diagnostic(self) -> bool:
        return self.debug is not None

    def as_dict(self) -> Dict[str, Any]:
        """Wire shape consumed by the display layer (camelCase keys)."""
        return {
            "symbol": self.symbol,
            "companyName": self.company_name,
            "shortName": self.short_name,
            "exchange": self.exchange,
            "exchangeLongName": self.exchange_long_name,
            "datatype": self.datatype,
            "price": self.price,
            "change": self.change,
            "changePercent": self.change_percent,
            "tick": self.tick,
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "previousClose": self.previous_close,
            "bid": self.bid,
            "ask": self.ask,
            "bidSize": self.bid_size,
            "askSize": self.ask_size,
            "volume": self.volume,
            "tradeVolume": self.trade_volume,
            "vwap": self.vwap,
            "dollarVolume": self.dollar_volume,
            "marketCap": self.market_cap,
            "pe": self.pe,
            "eps": self.eps,
            "pb": self.pb,
            "week52High": self.week52_high,
            "week52Low": self.week52_low,
            "lastTradeTime": self.last_trade_time,
            "entitlement": self.entitlement,
            "source": self.source,
            "debug": self.debug,
            "rawLength": self.raw_length,
            "observedAt": self.observed_at.isoformat(),
        }


@dataclass(frozen=True)
class CanonicalHalt:
    symbol: str
    halt_date: str
    halt_time: str = "N/A"
    issue_name: str = "N/A"
    market: str = "N/A"
    reason_codes: str = "N/A"
    pause_threshold_price: str = "N/A"
    resumption_date: str = "N/A"
    resumption_quote_time: str = "N/A"

    def as_dict(self) -> Dict[str, str]:
        return {
            "symbol": self.symbol,
            "haltDate": self.halt_date,
            "haltTime": self.halt_time,
            "issueName": self.issue_name,
            "market": self.market,
            "reasonCodes": self.reason_codes,
            "pauseThresholdPrice": self.pause_threshold_price,
            "resumptionDate": self.resumption_date,
            "resumptionQuoteTime": self.resumption_quote_time,
        }


@dataclass(frozen=True)
class SourceStatus:
    """Status-channel entry for one data class, paired with its records."""

    source: str
    ok: bool
    record_count: int = 0
    error_kind: ErrorKind | None = None
    message: str = ""
    retry_after_seconds: float = 0.0
    endpoint: str | None = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def as_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "ok": self.ok,
            "recordCount": self.record_count,
            "errorType": self.error_kind.value if self.error_kind else None,
            "message": self.message,
            "retryAfter": self.retry_after_seconds,
            "endpoint": self.endpoint,
            "updatedAt": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class FeedSnapshot:
    quotes: tuple[CanonicalQuote, ...]
    halts: tuple[CanonicalHalt, ...]
    quote_status: SourceStatus
    halt_status: SourceStatus
    cycle: int = 0
