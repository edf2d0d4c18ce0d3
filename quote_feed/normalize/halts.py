"""Parser for the exchange trading-halt feed.

The feed answers with a JSON envelope whose ``result`` member is an HTML
fragment holding one table.  Columns are mapped by the header row's
``<th>`` text, so a reordered table still parses.  Only rows whose
"Halt Date" is exactly today's ``MM/DD/YYYY`` string are kept.

An empty list is the normal answer on a quiet day; only an unreadable
envelope raises :class:`ParseFailure`.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import date
from typing import Any, Callable, Dict, List

from bs4 import BeautifulSoup

from quote_feed.errors import ParseFailure
from quote_feed.models import CanonicalHalt

LOGGER = logging.getLogger(__name__)

_BARE_AMPERSAND = re.compile(r"&(?![a-zA-Z0-9#]+;)")

# header text -> CanonicalHalt attribute
HALT_COLUMNS: Dict[str, str] = {
    "Halt Date": "halt_date",
    "Halt Time": "halt_time",
    "Issue Symbol": "symbol",
    "Issue Name": "issue_name",
    "Market": "market",
    "Reason Codes": "reason_codes",
    "Pause Threshold Price": "pause_threshold_price",
    "Resumption Date": "resumption_date",
    "Resumption Quote Time": "resumption_quote_time",
}
REASON_CODES_HEADER = "Reason Codes"
MISSING = "N/A"


def format_halt_date(day: date) -> str:
    """Zero-padded ``MM/DD/YYYY`` as used by the feed."""
    return f"{day.month:02d}/{day.day:02d}/{day.year:04d}"


def escape_bare_ampersands(html: str) -> str:
    return _BARE_AMPERSAND.sub("&amp;", html)


def decode_envelope(body: str) -> Any:
    """Decode the JSON envelope, salvaging the outermost ``{...}`` if needed."""
    try:
        return json.loads(body)
    except ValueError as exc:
        text = (body or "").strip()
        first = text.find("{")
        last = text.rfind("}")
        if first == -1 or last <= first:
            raise ParseFailure(f"halt feed envelope is not JSON: {exc}") from exc
        LOGGER.warning("halt feed envelope needed cleanup length=%d", len(text))
        try:
            return json.loads(text[first : last + 1])
        except ValueError as inner:
            raise ParseFailure(f"halt feed envelope is not JSON: {inner}") from inner


class HaltFeedParser:
    """Header-driven halt table parser with an injectable ``today``."""

    def __init__(self, today: Callable[[], date] | None = None) -> None:
        self._today = today or date.today

    def today_string(self) -> str:
        return format_halt_date(self._today())

    def parse(self, body: str) -> List[CanonicalHalt]:
        envelope = decode_envelope(body)
        if not isinstance(envelope, dict):
            raise ParseFailure("halt feed envelope is not an object")
        html = envelope.get("result")
        if html is None:
            raise ParseFailure("halt feed envelope has no result")
        if not isinstance(html, str):
            raise ParseFailure(f"halt feed result is {type(html).__name__}, expected HTML")
        return self.parse_html(html)

    def parse_html(self, html: str) -> List[CanonicalHalt]:
        soup = BeautifulSoup(f"<root>{escape_bare_ampersands(html)}</root>", "html.parser")
        # find() searches descendants, so wrapper elements are transparent.
        table = soup.find("table")
        if table is None:
            LOGGER.info("halt feed contained no table")
            return []

        rows = table.find_all("tr")
        if not rows:
            return []
        headers = [th.get_text(strip=True) for th in rows[0].find_all("th")]
        if not headers:
            LOGGER.warning("halt table has no header cells")
            return []

        today = self.today_string()
        halts: List[CanonicalHalt] = []
        seen = 0
        for row in rows[1:]:
            cells = row.find_all("td")
            if not cells:
                continue
            seen += 1
            values: Dict[str, str] = {}
            for header, cell in zip(headers, cells):
                attr = HALT_COLUMNS.get(header)
                if attr is None:
                    continue
                if header == REASON_CODES_HEADER:
                    values[attr] = _reason_codes(cell)
                else:
                    values[attr] = cell.get_text(strip=True)

            if values.get("halt_date") != today:
                continue
            symbol = values.pop("symbol", "")
            if not symbol:
                continue
            halts.append(
                CanonicalHalt(
                    symbol=symbol,
                    **{key: (value or MISSING) for key, value in values.items()},
                )
            )

        LOGGER.info("halt table rows=%d today=%s kept=%d", seen, today, len(halts))
        return halts


def _reason_codes(cell: Any) -> str:
    codes: List[str] = []
    for div in cell.find_all("div"):
        anchor = div.find("a")
        if anchor is None:
            continue
        label = anchor.get_text(strip=True)
        if label:
            codes.append(label)
    if codes:
        return ", ".join(codes)
    return cell.get_text(strip=True)
