from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List

from dotenv import load_dotenv

MARKET_SESSIONS = ("NORMAL", "PRE", "POST")
MARKET_STATS = ("dv", "pg", "pl", "va", "dg", "dl", "ah", "vol")
PROBE_MODES = ("sequential", "concurrent")
SID_LOGIN_MODES = ("session_form", "json")

DEFAULT_TOKEN_HASH = "32767a4633142b08e3315819e5eeef1af1be83bd7817e59926d246d7ba416430"


def _as_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _as_float(value: str | None, default: float) -> float:
    if value is None or not value.strip():
        return default
    return float(value)


def _as_int(value: str | None, default: int) -> int:
    if value is None or not value.strip():
        return default
    return int(value)


def _as_csv(value: str | None) -> List[str]:
    if value is None or not value.strip():
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


def _as_choice(value: str | None, default: str, choices: tuple[str, ...], name: str) -> str:
    if value is None or not value.strip():
        return default
    candidate = value.strip()
    for choice in choices:
        if candidate.lower() == choice.lower():
            return choice
    raise ValueError(f"{name} must be one of {', '.join(choices)}; got {value!r}")


@dataclass(frozen=True)
class QuoteMediaSettings:
    """Quote vendor credentials and market-stats query defaults.

    Parameters
    ----------
    username, password:
        Vendor login. Quotes are unavailable without them.
    webmaster_id:
        WMID assigned to the integration.
    token_hash:
        Static per-integration hash used to derive the DataTool token.
    sid_login_mode:
        ``session_form`` posts to ``session_url`` and reads ``PHPSESSID``
        from the redirect; ``json`` posts to ``auth_url`` and reads ``sid``.
    category:
        Market-data tool family, mapped to the vendor's ``qmodTool`` and
        ``pathName`` parameters.
    market_session, stat:
        Passed through to ``getMarketStats.json``.
    extra_quote_urls:
        Additional GET candidates appended after the built-in ones.
    synthetic_fallback:
        Emit deterministic placeholder quotes when no endpoint answers.
    """

    username: str = ""
    password: str = field(default="", repr=False)
    webmaster_id: str = "101020"
    token_hash: str = field(default=DEFAULT_TOKEN_HASH, repr=False)
    sid_login_mode: str = "session_form"
    base_url: str = "https://app.quotemedia.com"
    session_url: str = "https://tmxpowerstream.com/session.php"
    auth_url: str = "https://app.quotemedia.com/auth/p/authenticate/v0/"
    sid_ttl_seconds: float = 3600.0
    token_ttl_seconds: float = 1800.0
    category: str = "Market Movers"
    market_session: str = "PRE"
    stat: str = "pg"
    stat_country: str = "US"
    stat_exchange: str = ""
    stat_top: int = 100
    extra_quote_urls: List[str] = field(default_factory=list)
    synthetic_fallback: bool = False

    @property
    def has_credentials(self) -> bool:
        return bool(self.username and self.password)


@dataclass(frozen=True)
class HaltFeedSettings:
    url: str = "https://www.nasdaqtrader.com/RPCHandler.axd"
    max_attempts: int = 3
    timeout_seconds: float = 8.0
    backoff_seconds: float = 1.0


@dataclass(frozen=True)
class RetrySettings:
    auth_max_attempts: int = 3
    auth_timeout_seconds: float = 10.0
    auth_backoff_seconds: float = 1.0
    probe_max_attempts: int = 1
    probe_timeout_seconds: float = 6.0
    probe_backoff_seconds: float = 0.0


@dataclass(frozen=True)
class ProbeSettings:
    mode: str = "sequential"
    race_width: int = 2


@dataclass(frozen=True)
class StreamSettings:
    enabled: bool = False
    ws_url: str = "wss://app.quotemedia.com/cache/stream/connect"
    connect_timeout_seconds: float = 10.0


@dataclass(frozen=True)
class AppSettings:
    poll_interval_seconds: float
    log_level: str
    default_symbols: List[str]

    quotemedia: QuoteMediaSettings
    halts: HaltFeedSettings
    retry: RetrySettings
    probe: ProbeSettings
    stream: StreamSettings


def load_settings() -> AppSettings:
    load_dotenv(override=False)

    quotemedia = QuoteMediaSettings(
        username=os.getenv("QUOTEMEDIA_USERNAME", "").strip(),
        password=os.getenv("QUOTEMEDIA_PASSWORD", ""),
        webmaster_id=os.getenv("QUOTEMEDIA_WEBMASTER_ID", "101020").strip() or "101020",
        token_hash=os.getenv("QUOTEMEDIA_TOKEN_HASH", DEFAULT_TOKEN_HASH).strip() or DEFAULT_TOKEN_HASH,
        sid_login_mode=_as_choice(
            os.getenv("QUOTEMEDIA_SID_LOGIN_MODE"), "session_form", SID_LOGIN_MODES, "QUOTEMEDIA_SID_LOGIN_MODE"
        ),
        base_url=os.getenv("QUOTEMEDIA_BASE_URL", "https://app.quotemedia.com").rstrip("/"),
        session_url=os.getenv("QUOTEMEDIA_SESSION_URL", "https://tmxpowerstream.com/session.php"),
        auth_url=os.getenv("QUOTEMEDIA_AUTH_URL", "https://app.quotemedia.com/auth/p/authenticate/v0/"),
        sid_ttl_seconds=_as_float(os.getenv("QUOTEMEDIA_SID_TTL_SECONDS"), 3600.0),
        token_ttl_seconds=_as_float(os.getenv("QUOTEMEDIA_TOKEN_TTL_SECONDS"), 1800.0),
        category=os.getenv("QUOTEMEDIA_CATEGORY", "Market Movers").strip() or "Market Movers",
        market_session=_as_choice(
            os.getenv("QUOTEMEDIA_MARKET_SESSION"), "PRE", MARKET_SESSIONS, "QUOTEMEDIA_MARKET_SESSION"
        ),
        stat=_as_choice(os.getenv("QUOTEMEDIA_STAT"), "pg", MARKET_STATS, "QUOTEMEDIA_STAT"),
        stat_country=os.getenv("QUOTEMEDIA_STAT_COUNTRY", "US").strip() or "US",
        stat_exchange=os.getenv("QUOTEMEDIA_STAT_EXCHANGE", "").strip(),
        stat_top=_as_int(os.getenv("QUOTEMEDIA_STAT_TOP"), 100),
        extra_quote_urls=_as_csv(os.getenv("QUOTEMEDIA_EXTRA_QUOTE_URLS")),
        synthetic_fallback=_as_bool(os.getenv("QUOTEMEDIA_SYNTHETIC_FALLBACK"), False),
    )

    halts = HaltFeedSettings(
        url=os.getenv("HALTS_FEED_URL", "https://www.nasdaqtrader.com/RPCHandler.axd"),
        max_attempts=_as_int(os.getenv("HALTS_MAX_ATTEMPTS"), 3),
        timeout_seconds=_as_float(os.getenv("HALTS_TIMEOUT_SECONDS"), 8.0),
        backoff_seconds=_as_float(os.getenv("HALTS_BACKOFF_SECONDS"), 1.0),
    )

    retry = RetrySettings(
        auth_max_attempts=_as_int(os.getenv("QUOTE_FEED_AUTH_MAX_ATTEMPTS"), 3),
        auth_timeout_seconds=_as_float(os.getenv("QUOTE_FEED_AUTH_TIMEOUT_SECONDS"), 10.0),
        auth_backoff_seconds=_as_float(os.getenv("QUOTE_FEED_AUTH_BACKOFF_SECONDS"), 1.0),
        probe_max_attempts=_as_int(os.getenv("QUOTE_FEED_PROBE_MAX_ATTEMPTS"), 1),
        probe_timeout_seconds=_as_float(os.getenv("QUOTE_FEED_PROBE_TIMEOUT_SECONDS"), 6.0),
        probe_backoff_seconds=_as_float(os.getenv("QUOTE_FEED_PROBE_BACKOFF_SECONDS"), 0.0),
    )

    probe = ProbeSettings(
        mode=_as_choice(os.getenv("QUOTE_FEED_PROBE_MODE"), "sequential", PROBE_MODES, "QUOTE_FEED_PROBE_MODE"),
        race_width=max(1, min(3, _as_int(os.getenv("QUOTE_FEED_PROBE_RACE_WIDTH"), 2))),
    )

    stream = StreamSettings(
        enabled=_as_bool(os.getenv("QUOTE_FEED_STREAM_ENABLED"), False),
        ws_url=os.getenv("QUOTE_FEED_STREAM_URL", "wss://app.quotemedia.com/cache/stream/connect"),
        connect_timeout_seconds=_as_float(os.getenv("QUOTE_FEED_STREAM_CONNECT_TIMEOUT_SECONDS"), 10.0),
    )

    return AppSettings(
        poll_interval_seconds=_as_float(os.getenv("QUOTE_FEED_POLL_INTERVAL_SECONDS"), 15.0),
        log_level=os.getenv("QUOTE_FEED_LOG_LEVEL", "INFO"),
        default_symbols=[s.upper() for s in _as_csv(os.getenv("QUOTE_FEED_SYMBOLS"))],
        quotemedia=quotemedia,
        halts=halts,
        retry=retry,
        probe=probe,
        stream=stream,
    )
