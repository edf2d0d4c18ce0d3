"""Acquisition facade: the only surface the presentation layer talks to.

``fetch_quotes`` and ``fetch_halts`` never raise.  On failure they return
an empty list and record a :class:`SourceStatus` explaining what went
wrong and when to ask again; on success the status carries the record
count and the endpoint that answered.  One data class failing never
affects the other.

The facade owns every shared resource: the HTTP client (unless one is
injected), the credential cache, the endpoint probe and the optional
stream channel.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Sequence

import httpx

from quote_feed.config import AppSettings
from quote_feed.errors import (
    ClassifiedError,
    EndpointNotFound,
    ErrorKind,
    classify_exception,
    retry_after_for,
    user_message,
)
from quote_feed.framework.endpoint_probe import EndpointProbe
from quote_feed.framework.retry_executor import RetryExecutor, RetryPolicy
from quote_feed.framework.token_cache import REFRESH_RETRY_KINDS
from quote_feed.models import CanonicalHalt, CanonicalQuote, CredentialKind, FeedSnapshot, SourceStatus
from quote_feed.normalize.halts import HaltFeedParser
from quote_feed.sources.base import CHROME_USER_AGENT
from quote_feed.sources.nasdaq_halts import HaltFeedSource
from quote_feed.sources.quotemedia import (
    QuoteMediaAuthenticator,
    QuoteMediaSource,
    build_token_cache,
    filter_symbols,
    normalize_symbols,
    synthetic_quotes,
)
from quote_feed.sources.quotestream import QuoteStreamChannel

LOGGER = logging.getLogger(__name__)

QUOTES = "quotes"
HALTS = "halts"

_SOURCE_LABELS = {QUOTES: "Quote service", HALTS: "NASDAQ halt feed"}

SnapshotCallback = Callable[[FeedSnapshot], Any]


class AcquisitionFacade:
    def __init__(
        self,
        settings: AppSettings,
        client: httpx.AsyncClient | None = None,
        executor: RetryExecutor | None = None,
        clock: Callable[[], float] | None = None,
        halt_parser: HaltFeedParser | None = None,
        stream: QuoteStreamChannel | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._settings = settings
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(15.0),
            headers={"user-agent": CHROME_USER_AGENT},
        )
        self._executor = executor or RetryExecutor(sleep=sleep)
        self._sleep = sleep or asyncio.sleep

        retry = settings.retry
        auth_policy = RetryPolicy(
            max_attempts=retry.auth_max_attempts,
            timeout_seconds=retry.auth_timeout_seconds,
            backoff_seconds=retry.auth_backoff_seconds,
            retry_on=REFRESH_RETRY_KINDS,
            name="auth",
        )
        self.token_cache = build_token_cache(
            QuoteMediaAuthenticator(settings.quotemedia, self._client),
            settings.quotemedia,
            executor=self._executor,
            policy=auth_policy,
            clock=clock,
        )
        self.probe = EndpointProbe(
            self._client,
            executor=self._executor,
            candidate_policy=RetryPolicy(
                max_attempts=retry.probe_max_attempts,
                timeout_seconds=retry.probe_timeout_seconds,
                backoff_seconds=retry.probe_backoff_seconds,
                name="probe",
            ),
            mode=settings.probe.mode,
            race_width=settings.probe.race_width,
        )
        self.quotes_source = QuoteMediaSource(settings.quotemedia, self.token_cache, self.probe)
        self.halts_source = HaltFeedSource(
            settings.halts,
            self._client,
            executor=self._executor,
            parser=halt_parser,
        )
        if stream is None and settings.stream.enabled:
            stream = QuoteStreamChannel(settings.stream, settings.quotemedia.webmaster_id)
        self._stream = stream

        self._statuses: Dict[str, SourceStatus] = {}
        self._cycle = 0

    async def __aenter__(self) -> "AcquisitionFacade":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Status channel
    # ------------------------------------------------------------------

    def status(self, source: str) -> SourceStatus | None:
        return self._statuses.get(source)

    @property
    def statuses(self) -> Dict[str, SourceStatus]:
        return dict(self._statuses)

    def _record_success(self, source: str, count: int, endpoint: str | None) -> SourceStatus:
        status = SourceStatus(source=source, ok=True, record_count=count, endpoint=endpoint)
        self._statuses[source] = status
        return status

    def _record_failure(
        self,
        source: str,
        error: ClassifiedError,
        count: int = 0,
        endpoint: str | None = None,
    ) -> SourceStatus:
        label = _SOURCE_LABELS.get(source, source)
        status = SourceStatus(
            source=source,
            ok=False,
            record_count=count,
            error_kind=error.kind,
            message=user_message(error.kind, label),
            retry_after_seconds=retry_after_for(error.kind),
            endpoint=endpoint,
        )
        self._statuses[source] = status
        LOGGER.warning(
            "%s unavailable kind=%s retry_after=%.0fs detail=%s",
            source,
            error.kind.value,
            status.retry_after_seconds,
            error.message,
        )
        return status

    # ------------------------------------------------------------------
    # Fetch operations
    # ------------------------------------------------------------------

    async def fetch_quotes(self, symbols: Sequence[str] | None = None) -> List[CanonicalQuote]:
        wanted = normalize_symbols(symbols if symbols is not None else self._settings.default_symbols)
        try:
            quotes = await self.quotes_source.fetch_quotes(wanted)
        except asyncio.CancelledError:
            raise
        except EndpointNotFound as exc:
            fallback: List[CanonicalQuote] = []
            if self._settings.quotemedia.synthetic_fallback:
                fallback = synthetic_quotes(wanted)
            self._record_failure(QUOTES, classify_exception(exc), count=len(fallback))
            return fallback
        except Exception as exc:
            self._record_failure(QUOTES, classify_exception(exc))
            return []

        real = [q for q in quotes if not q.is_diagnostic]
        endpoint = self.quotes_source.last_endpoint
        if quotes and not real:
            notes = "; ".join(q.debug or "" for q in quotes)
            self._record_failure(QUOTES, ClassifiedError(ErrorKind.PARSE, notes), endpoint=endpoint)
            return []
        self._record_success(QUOTES, len(real), endpoint)
        return real

    async def fetch_halts(self) -> List[CanonicalHalt]:
        try:
            halts = await self.halts_source.fetch_halts()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._record_failure(HALTS, classify_exception(exc), endpoint=self._settings.halts.url)
            return []
        self._record_success(HALTS, len(halts), self.halts_source.last_endpoint)
        return halts

    async def refresh(
        self,
        symbols: Sequence[str] | None = None,
        include_quotes: bool = True,
        include_halts: bool = True,
    ) -> FeedSnapshot:
        """Fetch both data classes concurrently and package one snapshot."""
        self._cycle += 1
        cycle = self._cycle

        async def _skip() -> list:
            return []

        quotes, halts = await asyncio.gather(
            self.fetch_quotes(symbols) if include_quotes else _skip(),
            self.fetch_halts() if include_halts else _skip(),
        )
        return FeedSnapshot(
            quotes=tuple(quotes),
            halts=tuple(halts),
            quote_status=self._snapshot_status(QUOTES, include_quotes),
            halt_status=self._snapshot_status(HALTS, include_halts),
            cycle=cycle,
        )

    def _snapshot_status(self, source: str, included: bool) -> SourceStatus:
        if not included:
            return SourceStatus(source=source, ok=True, message="not requested")
        return self._statuses[source]

    # ------------------------------------------------------------------
    # Polling and streaming
    # ------------------------------------------------------------------

    async def run_polling(
        self,
        on_snapshot: SnapshotCallback,
        stop_event: asyncio.Event,
        interval: float | None = None,
        symbols: Sequence[str] | None = None,
        include_quotes: bool = True,
        include_halts: bool = True,
    ) -> int:
        """Refresh every ``interval`` seconds until ``stop_event`` is set.

        A cycle still in flight when the stop is requested (or when this
        coroutine is cancelled) is cancelled and its result discarded.
        Returns the number of snapshots delivered.
        """
        interval = self._settings.poll_interval_seconds if interval is None else interval
        delivered = 0
        while not stop_event.is_set():
            cycle_task = asyncio.ensure_future(self.refresh(symbols, include_quotes, include_halts))
            stop_task = asyncio.ensure_future(stop_event.wait())
            try:
                await asyncio.wait({cycle_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for task in (cycle_task, stop_task):
                    if not task.done():
                        task.cancel()
                await asyncio.gather(cycle_task, stop_task, return_exceptions=True)

            if stop_event.is_set() or cycle_task.cancelled():
                LOGGER.info("polling stopped; in-flight cycle discarded")
                break

            snapshot = cycle_task.result()
            result = on_snapshot(snapshot)
            if inspect.isawaitable(result):
                await result
            delivered += 1

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        return delivered

    async def stream_quotes(self, symbols: Sequence[str] | None = None) -> AsyncIterator[List[CanonicalQuote]]:
        """Quote batches from the stream channel, or from polling once it fails."""
        wanted = normalize_symbols(symbols if symbols is not None else self._settings.default_symbols)
        if self._stream is not None:
            try:
                sid = await self.token_cache.get(CredentialKind.SID)
                token = await self.token_cache.get(CredentialKind.TOKEN)
                async for batch in self._stream.stream(sid.value, token.value):
                    selected = filter_symbols(batch, wanted)
                    if selected:
                        self._record_success(QUOTES, len(selected), self._settings.stream.ws_url)
                        yield selected
                LOGGER.warning("quote stream closed by server; falling back to polling")
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                LOGGER.warning("quote stream failed, falling back to polling: %s", exc)

        while True:
            yield await self.fetch_quotes(wanted)
            await self._sleep(self._settings.poll_interval_seconds)

    async def aclose(self) -> None:
        await self.quotes_source.aclose()
        await self.halts_source.aclose()
        if self._owns_client:
            await self._client.aclose()
