from __future__ import annotations

import logging
from typing import Any, Dict, List

import httpx

from quote_feed.config import HaltFeedSettings
from quote_feed.errors import ErrorKind, UpstreamHTTPError
from quote_feed.framework.retry_executor import RetryExecutor, RetryPolicy
from quote_feed.models import CanonicalHalt
from quote_feed.normalize.halts import HaltFeedParser
from quote_feed.sources.base import DataSource, browser_headers

LOGGER = logging.getLogger(__name__)

HALT_ORIGIN = "https://www.nasdaqtrader.com"
HALT_REFERER = "https://www.nasdaqtrader.com/trader.aspx?id=tradehalts"

HALT_REQUEST: Dict[str, Any] = {
    "id": 2,
    "method": "BL_TradeHalt.GetTradeHalts",
    "params": "[]",
    "version": "1.1",
}


class HaltFeedSource(DataSource):
    """Exchange trading-halt feed (JSON-RPC style POST returning an HTML table)."""

    name = "halts"

    def __init__(
        self,
        settings: HaltFeedSettings,
        client: httpx.AsyncClient,
        executor: RetryExecutor | None = None,
        parser: HaltFeedParser | None = None,
    ) -> None:
        super().__init__()
        self._settings = settings
        self._client = client
        self._executor = executor or RetryExecutor()
        self._parser = parser or HaltFeedParser()
        self._policy = RetryPolicy(
            max_attempts=settings.max_attempts,
            timeout_seconds=settings.timeout_seconds,
            backoff_seconds=settings.backoff_seconds,
            retry_on=frozenset({ErrorKind.TIMEOUT, ErrorKind.UPSTREAM}),
            name="halts",
        )

    async def fetch_halts(self) -> List[CanonicalHalt]:
        """Today's halts; raises the classified error once retries are exhausted."""
        outcome = await self._executor.execute(self._fetch_once, self._policy)
        halts = outcome.unwrap()
        self.last_endpoint = self._settings.url
        return halts

    async def _fetch_once(self) -> List[CanonicalHalt]:
        response = await self._client.post(
            self._settings.url,
            json=HALT_REQUEST,
            headers=browser_headers(
                HALT_ORIGIN,
                HALT_REFERER,
                sec_fetch_dest="empty",
                sec_fetch_mode="cors",
                sec_fetch_site="same-origin",
            ),
        )
        if response.status_code < 200 or response.status_code >= 300:
            raise UpstreamHTTPError(response.status_code, f"halt feed returned HTTP {response.status_code}")
        LOGGER.debug("halt feed response length=%d", len(response.text))
        return self._parser.parse(response.text)
