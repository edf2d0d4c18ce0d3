"""Quote vendor source.

Authentication is two-step: a session id (SID) from a credential login,
then a short-lived DataTool token derived from that SID plus a static
per-integration hash.  Both live in a :class:`SessionTokenCache` that
knows the token is derived from the SID: a login runs under its own retry
policy before the token request starts, and a new SID retires the token
derived from the old one.

Data requests go through the :class:`EndpointProbe`.  When every candidate
is refused with 401/403 the cached credentials are dropped and the probe
runs once more with fresh ones.
"""

from __future__ import annotations

import logging
import re
import zlib
from typing import Callable, Dict, List, Sequence

import httpx

from quote_feed.config import QuoteMediaSettings
from quote_feed.errors import AuthFailure, EndpointNotFound, TokenFailure, UpstreamHTTPError
from quote_feed.framework.endpoint_probe import EndpointProbe, ProbeFound
from quote_feed.framework.retry_executor import RetryExecutor, RetryPolicy
from quote_feed.framework.token_cache import SessionTokenCache
from quote_feed.models import CanonicalQuote, Credential, CredentialKind, EndpointCandidate
from quote_feed.normalize.quotes import ResponseNormalizer
from quote_feed.sources.base import DataSource, browser_headers

LOGGER = logging.getLogger(__name__)

_PHPSESSID = re.compile(r"PHPSESSID=([^;]+)")

QUOTE_ORIGIN = "https://qrm.quotemedia.com"
QUOTE_REFERER = "https://qrm.quotemedia.com/"

# category -> (qmodTool, pathName)
MARKET_TOOLS: Dict[str, tuple[str, str]] = {
    "Market Overview": ("MarketOverview", "/marketoverview/"),
    "Market Indices": ("MarketIndices", "/marketindices/"),
    "Market Movers": ("MarketMovers", "/marketmovers/"),
    "Market Performers": ("MarketPerformers", "/marketperformers/"),
    "Market Heatmaps": ("MarketHeatmaps", "/marketheatmaps/"),
    "Market Forex": ("MarketForex", "/marketforex/"),
    "Market Rates": ("MarketRates", "/marketrates/"),
    "Market Calendars": ("MarketCalendars", "/marketcalendars/"),
    "Market Options": ("MarketOptions", "/marketoptions/"),
    "Market Industries": ("MarketIndustries", "/marketindustries/"),
    "Market Constituents": ("MarketConstituents", "/marketconstituents/"),
    "Market Filings": ("MarketFilings", "/marketfilings/"),
}
DEFAULT_MARKET_TOOL = MARKET_TOOLS["Market Movers"]


def normalize_symbols(symbols: Sequence[str] | None) -> List[str]:
    wanted: List[str] = []
    for symbol in symbols or ():
        cleaned = symbol.strip().upper()
        if cleaned and cleaned not in wanted:
            wanted.append(cleaned)
    return wanted


def filter_symbols(quotes: Sequence[CanonicalQuote], wanted: Sequence[str]) -> List[CanonicalQuote]:
    """Keep requested symbols; diagnostics always pass so failures stay visible."""
    if not wanted:
        return list(quotes)
    keep = set(wanted)
    return [q for q in quotes if q.is_diagnostic or q.symbol in keep]


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class QuoteMediaAuthenticator:
    """The two vendor authentication calls, without any caching."""

    def __init__(self, settings: QuoteMediaSettings, client: httpx.AsyncClient) -> None:
        self._settings = settings
        self._client = client

    async def login(self) -> str:
        settings = self._settings
        if not settings.has_credentials:
            raise AuthFailure("QuoteMedia credentials not configured (QUOTEMEDIA_USERNAME/QUOTEMEDIA_PASSWORD)")
        if settings.sid_login_mode == "json":
            return await self._login_json()
        return await self._login_session_form()

    async def _login_session_form(self) -> str:
        settings = self._settings
        response = await self._client.post(
            settings.session_url,
            data={
                "username": settings.username,
                "password": settings.password,
                "wmid": settings.webmaster_id,
            },
            headers=browser_headers(),
            follow_redirects=False,
        )
        if response.status_code in (401, 403):
            raise AuthFailure(f"session login rejected: HTTP {response.status_code}", status=response.status_code)
        if response.status_code not in (200, 302):
            raise UpstreamHTTPError(response.status_code, f"session login returned HTTP {response.status_code}")

        cookies = "; ".join(response.headers.get_list("set-cookie"))
        match = _PHPSESSID.search(cookies)
        if match is None:
            raise AuthFailure("no session id in login response", status=response.status_code)
        return match.group(1)

    async def _login_json(self) -> str:
        settings = self._settings
        wm_id: int | str = int(settings.webmaster_id) if settings.webmaster_id.isdigit() else settings.webmaster_id
        response = await self._client.post(
            settings.auth_url,
            json={"wmId": wm_id, "username": settings.username, "password": settings.password},
            headers=browser_headers(accept="application/json"),
        )
        if response.status_code in (401, 403):
            raise AuthFailure(f"login rejected: HTTP {response.status_code}", status=response.status_code)
        if response.status_code >= 300:
            raise UpstreamHTTPError(response.status_code, f"login returned HTTP {response.status_code}")
        sid = response.json().get("sid")
        if not sid:
            raise AuthFailure("no session id in authentication response")
        return str(sid)

    async def derive_token(self, sid: str) -> str:
        settings = self._settings
        url = (
            f"{settings.base_url}/auth/g/authenticate/dataTool/v0/"
            f"{settings.webmaster_id}/{settings.token_hash}"
        )
        response = await self._client.post(
            url,
            json={"sid": sid},
            headers=browser_headers(QUOTE_ORIGIN, QUOTE_REFERER, datatool_token="null"),
        )
        if response.status_code in (401, 403):
            raise TokenFailure(f"token generation rejected: HTTP {response.status_code}", status=response.status_code)
        if response.status_code >= 300:
            raise UpstreamHTTPError(response.status_code, f"token generation returned HTTP {response.status_code}")
        token = response.json().get("token")
        if not token:
            raise TokenFailure("no token found in response")
        return str(token)


def build_token_cache(
    authenticator: QuoteMediaAuthenticator,
    settings: QuoteMediaSettings,
    executor: RetryExecutor | None = None,
    policy: RetryPolicy | None = None,
    clock: Callable[[], float] | None = None,
) -> SessionTokenCache:
    """Wire the authenticator into a cache that derives the token from the cached SID."""
    cache: SessionTokenCache

    async def refresh_token(sid: Credential) -> str:
        try:
            return await authenticator.derive_token(sid.value)
        except TokenFailure as exc:
            # The vendor refused the SID itself; the next attempt must log in again.
            if exc.status in (401, 403) and cache.is_current(sid):
                cache.invalidate(CredentialKind.SID)
            raise

    cache = SessionTokenCache(
        refreshers={CredentialKind.SID: authenticator.login, CredentialKind.TOKEN: refresh_token},
        ttl_seconds={
            CredentialKind.SID: settings.sid_ttl_seconds,
            CredentialKind.TOKEN: settings.token_ttl_seconds,
        },
        executor=executor,
        policy=policy,
        clock=clock,
        depends_on={CredentialKind.TOKEN: CredentialKind.SID},
    )
    return cache


# ---------------------------------------------------------------------------
# Source
# ---------------------------------------------------------------------------


class QuoteMediaSource(DataSource):
    name = "quotes"

    def __init__(
        self,
        settings: QuoteMediaSettings,
        cache: SessionTokenCache,
        probe: EndpointProbe,
        normalizer: ResponseNormalizer | None = None,
    ) -> None:
        super().__init__()
        self._settings = settings
        self._cache = cache
        self._probe = probe
        self._normalizer = normalizer or ResponseNormalizer()

    @property
    def settings(self) -> QuoteMediaSettings:
        return self._settings

    def market_stats_params(self, sid: str) -> Dict[str, str]:
        settings = self._settings
        qmod_tool, path_name = MARKET_TOOLS.get(settings.category, DEFAULT_MARKET_TOOL)
        params = {
            "marketSession": settings.market_session,
            "pathName": path_name,
            "qmodTool": qmod_tool,
            "sid": sid,
            "stat": settings.stat,
            "statCountry": settings.stat_country,
            "statTop": str(settings.stat_top),
            "timezone": "true",
            "webmasterId": settings.webmaster_id,
        }
        if settings.stat_exchange:
            params["statExchange"] = settings.stat_exchange
        if settings.market_session == "PRE":
            params["premarket"] = "true"
        return params

    def build_candidates(self, sid: str, token: str, symbols: Sequence[str]) -> List[EndpointCandidate]:
        base = self._settings.base_url
        headers = browser_headers(QUOTE_ORIGIN, QUOTE_REFERER, datatool_token=token)
        candidates = [
            EndpointCandidate(
                url=f"{base}/datatool/getMarketStats.json",
                headers=headers,
                params=self.market_stats_params(sid),
                group="quotes",
            )
        ]

        lookup: Dict[str, str] = {"sid": sid, "webmasterId": self._settings.webmaster_id}
        if symbols:
            lookup["symbols"] = ",".join(symbols)
            candidates.extend(
                [
                    EndpointCandidate(
                        url=f"{base}/datatool/getQuote.json", headers=headers, params=lookup, group="quotes",
                    ),
                    EndpointCandidate(
                        url=f"{base}/datatool/getQuote.json", method="POST", headers=headers, data=lookup,
                        group="quotes",
                    ),
                    EndpointCandidate(
                        url=f"{base}/quotetools/getQuote.json", method="POST", headers=headers, data=lookup,
                        group="quotes",
                    ),
                ]
            )
        for url in self._settings.extra_quote_urls:
            candidates.append(EndpointCandidate(url=url, headers=headers, params=lookup, group="quotes"))
        return candidates

    async def fetch_quotes(self, symbols: Sequence[str] | None = None) -> List[CanonicalQuote]:
        """Fetch, normalize and filter quotes.

        Raises :class:`AuthFailure`/:class:`TokenFailure` when credentials
        cannot be obtained or keep being refused, and
        :class:`EndpointNotFound` when no candidate produced quote data.
        """
        wanted = normalize_symbols(symbols)
        result = None
        for pass_number in (1, 2):
            sid = await self._cache.get(CredentialKind.SID)
            token = await self._cache.get(CredentialKind.TOKEN)
            result = await self._probe.probe(self.build_candidates(sid.value, token.value, wanted))

            if isinstance(result, ProbeFound):
                self.last_endpoint = result.url
                quotes = self._normalizer.normalize(result.response)
                LOGGER.info(
                    "quotes fetched endpoint=%s records=%d requested=%d",
                    result.url,
                    len(quotes),
                    len(wanted),
                )
                return filter_symbols(quotes, wanted)

            if not result.auth_rejected:
                break
            # Only drop credentials nobody has replaced in the meantime.
            if self._cache.is_current(token):
                self._cache.invalidate(CredentialKind.TOKEN)
            if self._cache.is_current(sid):
                self._cache.invalidate(CredentialKind.SID)
            if pass_number == 1:
                LOGGER.warning("quote endpoints refused credentials; re-authenticating")

        if result is not None and result.auth_rejected:
            raise AuthFailure("quote endpoints refused fresh credentials", status=403)
        raise EndpointNotFound(f"no quote endpoint accepted ({len(result.attempts) if result else 0} tried)")


# ---------------------------------------------------------------------------
# Synthetic fallback
# ---------------------------------------------------------------------------


_SYNTHETIC_REFERENCE: Dict[str, tuple[str, float]] = {
    "AAPL": ("Apple Inc.", 258.06),
    "MSFT": ("Microsoft Corporation", 445.92),
    "GOOGL": ("Alphabet Inc.", 189.54),
    "TSLA": ("Tesla Inc.", 248.98),
    "NVDA": ("NVIDIA Corporation", 673.11),
    "SPY": ("SPDR S&P 500 ETF", 579.23),
    "QQQ": ("Invesco QQQ Trust", 498.76),
    "AMZN": ("Amazon.com Inc.", 189.32),
}

SYNTHETIC_SOURCE = "synthetic"


def synthetic_quotes(symbols: Sequence[str]) -> List[CanonicalQuote]:
    """Deterministic placeholder quotes: the same symbol always yields the same record."""
    quotes: List[CanonicalQuote] = []
    for symbol in normalize_symbols(symbols):
        seed = zlib.crc32(symbol.encode("utf-8"))
        name, base = _SYNTHETIC_REFERENCE.get(symbol, (f"{symbol} Corporation", 50.0 + (seed % 20000) / 100.0))
        change_percent = round(((seed % 1000) / 1000.0 - 0.5) * 10.0, 2)
        price = round(base * (1 + change_percent / 100.0), 2)
        quotes.append(
            CanonicalQuote(
                symbol=symbol,
                company_name=name,
                short_name=name.split(" ")[0],
                exchange="NASDAQ",
                price=price,
                change=round(price - base, 2),
                change_percent=change_percent,
                open=round(base * (0.98 + (seed % 100) / 2500.0), 2),
                high=round(price * (1.01 + (seed % 50) / 5000.0), 2),
                low=round(price * (0.97 + (seed % 30) / 3000.0), 2),
                previous_close=base,
                bid=round(price - 0.01, 2),
                ask=round(price + 0.01, 2),
                volume=1_000_000 + seed % 50_000_000,
                week52_high=round(base * (1.2 + (seed % 30) / 100.0), 2),
                week52_low=round(base * (0.6 + (seed % 20) / 100.0), 2),
                source=SYNTHETIC_SOURCE,
            )
        )
    return quotes
