"""Turn vendor quote payloads into :class:`CanonicalQuote` records.

Three strategies, first one that yields structured data wins:

1. JSON with a recognisable record array (``results.quote``,
   ``results.stock``, ``quotes``, ``data`` or a top-level list), mapped via
   :data:`QUOTE_ALIASES`.
2. JavaScript object/array literals embedded in an HTML or script body,
   fed back through step 1.
3. ``<tr>/<td>`` table scraping, tagged ``source="html-table-fallback"``.

:meth:`ResponseNormalizer.normalize` never raises.  When nothing can be
extracted it returns a single diagnostic record (``symbol="DEBUG"``, or
``"ERROR"`` if the normalizer itself blew up) carrying the body length.
"""

from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from bs4 import BeautifulSoup

from quote_feed.models import CanonicalQuote, RawResponse

LOGGER = logging.getLogger(__name__)

TABLE_FALLBACK_SOURCE = "html-table-fallback"
DIAGNOSTIC_SOURCE = "diagnostic"
NO_DATA_NOTE = "No parseable market data found in HTML response"

EMBEDDED_LITERAL_PATTERNS: Tuple[re.Pattern[str], ...] = (
    re.compile(r"var\s+data\s*=\s*(\{[\s\S]*?\});"),
    re.compile(r"window\.marketData\s*=\s*(\{[\s\S]*?\});"),
    re.compile(r"\"quotes\":\s*(\[[\s\S]*?\])"),
    re.compile(r"marketMoversData\s*=\s*(\{[\s\S]*?\});"),
    re.compile(r"(\{[\s\S]*\})"),
)

_MAX_EMBED_DEPTH = 2


# ---------------------------------------------------------------------------
# Coercions
# ---------------------------------------------------------------------------


def _unwrap(value: Any) -> Any:
    # Some vendor fields arrive as {"content": 12.3}.
    if isinstance(value, Mapping):
        return value.get("content")
    return value


def _as_number(value: Any) -> float | None:
    value = _unwrap(value)
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.replace(",", "").replace("$", "").replace("%", "").strip()
        if not value:
            return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def number_or_zero(value: Any) -> float:
    number = _as_number(value)
    return number if number is not None else 0.0


def int_or_zero(value: Any) -> int:
    return int(number_or_zero(value))


def optional_number(value: Any) -> float | None:
    return _as_number(value)


def text(value: Any) -> str:
    value = _unwrap(value)
    if value is None:
        return ""
    return str(value).strip()


def optional_text(value: Any) -> str | None:
    value = text(value)
    return value or None


# ---------------------------------------------------------------------------
# Alias table
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FieldAlias:
    """Canonical attribute, the dotted source paths that may hold it, and its coercion."""

    attr: str
    paths: Tuple[str, ...]
    coerce: Callable[[Any], Any]


QUOTE_ALIASES: Tuple[FieldAlias, ...] = (
    FieldAlias("symbol", ("key.symbol", "symbol", "ticker"), text),
    FieldAlias("company_name", ("equityinfo.longname", "longname", "companyName", "name"), text),
    FieldAlias("short_name", ("equityinfo.shortname", "shortname", "shortName"), text),
    FieldAlias("exchange", ("key.exchange", "exchange"), text),
    FieldAlias("exchange_long_name", ("key.exLgName", "exLgName", "exchangeLongName"), text),
    FieldAlias("datatype", ("datatype", "key.datatype"), text),
    FieldAlias("price", ("pricedata.last", "last", "price", "lastPrice"), number_or_zero),
    FieldAlias("change", ("pricedata.change", "change"), number_or_zero),
    FieldAlias("change_percent", ("pricedata.changepercent", "changepercent", "changePercent"), number_or_zero),
    FieldAlias("tick", ("pricedata.tick", "tick"), int_or_zero),
    FieldAlias("open", ("pricedata.open", "open"), number_or_zero),
    FieldAlias("high", ("pricedata.high", "high"), number_or_zero),
    FieldAlias("low", ("pricedata.low", "low"), number_or_zero),
    FieldAlias("previous_close", ("pricedata.prevclose", "prevclose", "previousClose"), number_or_zero),
    FieldAlias("bid", ("pricedata.bid", "bid"), number_or_zero),
    FieldAlias("ask", ("pricedata.ask", "ask"), number_or_zero),
    FieldAlias("bid_size", ("pricedata.bidsize", "bidsize", "bidSize"), int_or_zero),
    FieldAlias("ask_size", ("pricedata.asksize", "asksize", "askSize"), int_or_zero),
    FieldAlias("volume", ("pricedata.sharevolume", "sharevolume", "volume"), int_or_zero),
    FieldAlias("trade_volume", ("pricedata.tradevolume", "tradevolume", "tradeVolume"), int_or_zero),
    FieldAlias("vwap", ("pricedata.vwap", "vwap"), number_or_zero),
    FieldAlias("market_cap", ("fundamental.marketcap", "marketcap", "marketCap"), number_or_zero),
    FieldAlias("pe", ("fundamental.peratio", "peratio", "pe"), optional_number),
    FieldAlias("eps", ("fundamental.eps", "eps"), optional_number),
    FieldAlias("pb", ("fundamental.pbratio", "pbratio", "pb"), optional_number),
    FieldAlias("week52_high", ("fundamental.week52high", "week52high", "week52High"), number_or_zero),
    FieldAlias("week52_low", ("fundamental.week52low", "week52low", "week52Low"), number_or_zero),
    FieldAlias("last_trade_time", ("pricedata.lasttradedatetime", "lasttradedatetime", "lastTradeTime"), optional_text),
    FieldAlias("entitlement", ("entitlement",), optional_text),
)


def lookup(record: Mapping[str, Any], path: str) -> Any:
    node: Any = record
    for part in path.split("."):
        if not isinstance(node, Mapping):
            return None
        node = node.get(part)
        if node is None:
            return None
    return node


def map_record(
    record: Mapping[str, Any],
    aliases: Sequence[FieldAlias] = QUOTE_ALIASES,
    source: str = "vendor",
) -> CanonicalQuote | None:
    """Map one vendor object onto a quote, or None when it has no symbol."""
    fields: Dict[str, Any] = {}
    for alias in aliases:
        raw = None
        for path in alias.paths:
            raw = lookup(record, path)
            if raw is not None:
                break
        fields[alias.attr] = alias.coerce(raw)

    symbol = fields.get("symbol", "")
    if not symbol:
        return None
    fields["symbol"] = symbol.upper()
    if not fields.get("company_name"):
        fields["company_name"] = fields.get("short_name") or fields["symbol"]
    if not fields.get("datatype"):
        fields.pop("datatype", None)
    return CanonicalQuote(source=source, **fields)


# ---------------------------------------------------------------------------
# Normalizer
# ---------------------------------------------------------------------------


def find_records(payload: Any) -> Optional[List[Any]]:
    """Locate the record array in a decoded payload; None if there is none."""
    if isinstance(payload, list):
        return payload
    if not isinstance(payload, Mapping):
        return None
    results = payload.get("results")
    if isinstance(results, Mapping):
        for key in ("quote", "stock"):
            rows = results.get(key)
            if isinstance(rows, list):
                return rows
            if isinstance(rows, Mapping):
                return [rows]
    elif isinstance(results, list):
        return results
    for key in ("quotes", "data"):
        rows = payload.get(key)
        if isinstance(rows, list):
            return rows
    return None


class ResponseNormalizer:
    def __init__(self, aliases: Sequence[FieldAlias] = QUOTE_ALIASES) -> None:
        self._aliases = tuple(aliases)

    def normalize(self, raw: Union[RawResponse, str]) -> List[CanonicalQuote]:
        body = raw.body if isinstance(raw, RawResponse) else (raw or "")
        try:
            quotes = self._normalize_body(body)
        except Exception as exc:  # normalizer bugs become a diagnostic record
            LOGGER.exception("quote normalizer failed length=%d", len(body))
            return [self.diagnostic("ERROR", f"Normalizer error: {exc}", len(body))]
        if quotes is None:
            LOGGER.warning("no quote data recognised length=%d", len(body))
            return [self.diagnostic("DEBUG", NO_DATA_NOTE, len(body))]
        return quotes

    @staticmethod
    def diagnostic(symbol: str, note: str, raw_length: int) -> CanonicalQuote:
        return CanonicalQuote(
            symbol=symbol,
            company_name="Debug Info" if symbol == "DEBUG" else "Error",
            source=DIAGNOSTIC_SOURCE,
            debug=note,
            raw_length=raw_length,
        )

    def _normalize_body(self, body: str) -> Optional[List[CanonicalQuote]]:
        try:
            payload = json.loads(body)
        except ValueError:
            payload = None
        else:
            quotes = self._from_payload(payload)
            if quotes is not None:
                return quotes
            html = _embedded_html(payload)
            if html:
                return self._from_table(html)

        quotes = self._from_embedded_literals(body, depth=0)
        if quotes is not None:
            return quotes
        return self._from_table(body)

    def _from_payload(self, payload: Any) -> Optional[List[CanonicalQuote]]:
        rows = find_records(payload)
        if rows is None:
            return None
        quotes: List[CanonicalQuote] = []
        for row in rows:
            if not isinstance(row, Mapping):
                continue
            quote = map_record(row, self._aliases)
            if quote is not None:
                quotes.append(quote)
        return quotes

    def _from_embedded_literals(self, body: str, depth: int) -> Optional[List[CanonicalQuote]]:
        if depth > _MAX_EMBED_DEPTH:
            return None
        for pattern in EMBEDDED_LITERAL_PATTERNS:
            for match in pattern.finditer(body):
                literal = match.group(1)
                if literal == body:
                    continue
                try:
                    payload = json.loads(literal)
                except ValueError:
                    nested = self._from_embedded_literals(literal, depth + 1)
                    if nested:
                        return nested
                    continue
                quotes = self._from_payload(payload)
                if quotes:
                    LOGGER.info("quotes recovered from embedded literal pattern=%s", pattern.pattern[:24])
                    return quotes
        return None

    def _from_table(self, html: str) -> Optional[List[CanonicalQuote]]:
        if "<tr" not in html.lower():
            return None
        soup = BeautifulSoup(html, "html.parser")
        quotes: List[CanonicalQuote] = []
        for row in soup.find_all("tr"):
            cells = row.find_all("td")
            if len(cells) < 3:
                continue
            symbol = cells[0].get_text(strip=True).upper()
            if not symbol:
                continue
            quotes.append(
                CanonicalQuote(
                    symbol=symbol,
                    company_name=symbol,
                    price=number_or_zero(cells[1].get_text(strip=True)),
                    change=number_or_zero(cells[2].get_text(strip=True)),
                    source=TABLE_FALLBACK_SOURCE,
                )
            )
        if not quotes:
            return None
        LOGGER.info("quotes scraped from html table rows=%d", len(quotes))
        return quotes


def _embedded_html(payload: Any) -> str | None:
    if not isinstance(payload, Mapping):
        return None
    for value in payload.values():
        if isinstance(value, str) and "<tr" in value.lower():
            return value
    return None
