"""Tests for the acquisition facade: isolation, status channel, polling."""

from __future__ import annotations

import asyncio
import json
from datetime import date

import httpx

from quote_feed.config import (
    AppSettings,
    HaltFeedSettings,
    ProbeSettings,
    QuoteMediaSettings,
    RetrySettings,
    StreamSettings,
)
from quote_feed.errors import AcquisitionError, ErrorKind
from quote_feed.facade import HALTS, QUOTES, AcquisitionFacade
from quote_feed.normalize.halts import HaltFeedParser
from quote_feed.sources.quotemedia import synthetic_quotes

TODAY = date(2025, 3, 7)

MARKET_STATS = json.dumps(
    {
        "results": {
            "quote": [
                {"key": {"symbol": "AAPL"}, "pricedata": {"last": 258.06, "sharevolume": 100}},
                {"key": {"symbol": "MSFT"}, "pricedata": {"last": 445.92, "sharevolume": 200}},
            ]
        }
    }
)

HALT_TABLE = (
    "<table><tr><th>Halt Date</th><th>Halt Time</th><th>Issue Symbol</th><th>Issue Name</th>"
    "<th>Market</th><th>Reason Codes</th></tr>"
    "<tr><td>03/07/2025</td><td>09:45:12</td><td>XYZ</td><td>Xyz Holdings</td><td>NASDAQ</td>"
    "<td><div><a>Volatility Pause</a></div></td></tr>"
    "<tr><td>03/06/2025</td><td>15:01:00</td><td>OLD</td><td>Old Co</td><td>NYSE</td>"
    "<td><div><a>News Pending</a></div></td></tr></table>"
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class Upstream:
    """Both vendors behind one MockTransport handler."""

    def __init__(
        self,
        login_status: int = 302,
        stats: tuple = (200, MARKET_STATS),
        halts=None,
        login=None,
    ) -> None:
        self.login_status = login_status
        self.login = login
        self.stats = stats
        self.halts = halts
        self.halt_calls = 0
        self.paths: list[str] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.paths.append(path)
        if path == "/session.php":
            if self.login is not None:
                return await self.login(request)
            if self.login_status != 302:
                return httpx.Response(self.login_status, text="denied")
            return httpx.Response(302, headers={"set-cookie": "PHPSESSID=sid-1; path=/"})
        if path.startswith("/auth/g/authenticate/dataTool/v0/"):
            return httpx.Response(200, json={"token": "tok-1"})
        if path == "/datatool/getMarketStats.json":
            status, body = self.stats
            return httpx.Response(status, text=body)
        if path == "/RPCHandler.axd":
            self.halt_calls += 1
            if self.halts is not None:
                return await self.halts(request)
            return httpx.Response(200, json={"id": 2, "result": HALT_TABLE, "error": None})
        return httpx.Response(404)


async def _no_sleep(_delay: float) -> None:
    return None


def _settings(
    synthetic_fallback: bool = False,
    halt_timeout: float = 5.0,
    symbols: list | None = None,
    auth_timeout: float = 10.0,
) -> AppSettings:
    return AppSettings(
        poll_interval_seconds=0.01,
        log_level="INFO",
        default_symbols=symbols or [],
        quotemedia=QuoteMediaSettings(
            username="trader",
            password="hunter2",
            synthetic_fallback=synthetic_fallback,
        ),
        halts=HaltFeedSettings(max_attempts=3, timeout_seconds=halt_timeout, backoff_seconds=0.0),
        retry=RetrySettings(auth_timeout_seconds=auth_timeout, auth_backoff_seconds=0.0),
        probe=ProbeSettings(),
        stream=StreamSettings(),
    )


def _run(upstream: Upstream, scenario, settings: AppSettings | None = None, stream=None):
    async def _main():
        async with httpx.AsyncClient(transport=httpx.MockTransport(upstream)) as client:
            facade = AcquisitionFacade(
                settings or _settings(),
                client=client,
                halt_parser=HaltFeedParser(today=lambda: TODAY),
                stream=stream,
                sleep=_no_sleep,
            )
            async with facade:
                return await scenario(facade)

    return asyncio.run(_main())


# ---------------------------------------------------------------------------
# Refresh
# ---------------------------------------------------------------------------


class TestRefresh:
    def test_both_sources_succeed(self) -> None:
        snapshot = _run(Upstream(), lambda facade: facade.refresh())

        assert snapshot.cycle == 1
        assert [q.symbol for q in snapshot.quotes] == ["AAPL", "MSFT"]
        assert [h.symbol for h in snapshot.halts] == ["XYZ"]
        assert snapshot.halts[0].reason_codes == "Volatility Pause"
        assert snapshot.halts[0].issue_name == "Xyz Holdings"
        assert snapshot.quote_status.ok
        assert snapshot.quote_status.record_count == 2
        assert "getMarketStats.json" in snapshot.quote_status.endpoint
        assert snapshot.halt_status.ok
        assert snapshot.halt_status.record_count == 1
        assert snapshot.halt_status.endpoint == "https://www.nasdaqtrader.com/RPCHandler.axd"

    def test_quote_auth_failure_does_not_affect_halts(self) -> None:
        upstream = Upstream(login_status=403)
        snapshot = _run(upstream, lambda facade: facade.refresh())

        assert snapshot.quotes == ()
        assert snapshot.quote_status.error_kind is ErrorKind.AUTH
        assert snapshot.quote_status.retry_after_seconds == 10.0
        assert "Quote service" in snapshot.quote_status.message
        assert [h.symbol for h in snapshot.halts] == ["XYZ"]
        assert snapshot.halt_status.ok

    def test_halt_timeouts_reported_with_longer_retry_after(self) -> None:
        async def hang(_request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(5)
            return httpx.Response(200)

        upstream = Upstream(halts=hang)

        async def scenario(facade):
            halts = await facade.fetch_halts()
            return halts, facade.status(HALTS)

        halts, status = _run(upstream, scenario, _settings(halt_timeout=0.02))
        assert halts == []
        assert upstream.halt_calls == 3
        assert status.error_kind is ErrorKind.TIMEOUT
        assert status.retry_after_seconds == 30.0
        assert "timed out" in status.message

    def test_halt_server_error_is_upstream(self) -> None:
        async def broken(_request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, text="oops")

        upstream = Upstream(halts=broken)
        status = _run(upstream, lambda facade: _halts_status(facade))
        assert status.error_kind is ErrorKind.UPSTREAM
        assert upstream.halt_calls == 3

    def test_unreadable_halt_body_is_not_retried(self) -> None:
        async def maintenance(_request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="<html>Service Unavailable</html>")

        upstream = Upstream(halts=maintenance)
        status = _run(upstream, lambda facade: _halts_status(facade))
        assert status.error_kind is ErrorKind.PARSE
        assert status.retry_after_seconds == 10.0
        assert upstream.halt_calls == 1

    def test_slow_login_is_reported_as_timeout(self) -> None:
        async def hang(_request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(5)
            return httpx.Response(302)

        upstream = Upstream(login=hang)

        async def scenario(facade):
            quotes = await facade.fetch_quotes(["AAPL"])
            return quotes, facade.status(QUOTES)

        quotes, status = _run(upstream, scenario, _settings(auth_timeout=0.05))
        assert quotes == []
        assert status.error_kind is ErrorKind.TIMEOUT
        assert status.retry_after_seconds == 30.0
        assert "timed out" in status.message
        assert upstream.paths.count("/session.php") == 3
        assert not any(p.startswith("/auth/g/") for p in upstream.paths)

    def test_diagnostic_only_payload_is_parse_failure(self) -> None:
        upstream = Upstream(stats=(200, json.dumps({"status": {"price": "n/a"}})))

        async def scenario(facade):
            quotes = await facade.fetch_quotes()
            return quotes, facade.status(QUOTES)

        quotes, status = _run(upstream, scenario)
        assert quotes == []
        assert status.error_kind is ErrorKind.PARSE
        assert "getMarketStats.json" in status.endpoint

    def test_no_endpoint_without_fallback(self) -> None:
        upstream = Upstream(stats=(404, ""))

        async def scenario(facade):
            quotes = await facade.fetch_quotes(["AAPL"])
            return quotes, facade.status(QUOTES)

        quotes, status = _run(upstream, scenario)
        assert quotes == []
        assert status.error_kind is ErrorKind.NOT_FOUND

    def test_synthetic_fallback_is_flagged(self) -> None:
        upstream = Upstream(stats=(404, ""))

        async def scenario(facade):
            quotes = await facade.fetch_quotes()
            return quotes, facade.status(QUOTES)

        quotes, status = _run(upstream, scenario, _settings(synthetic_fallback=True, symbols=["aapl"]))
        assert [q.symbol for q in quotes] == ["AAPL"]
        assert quotes[0].source == "synthetic"
        assert not status.ok
        assert status.error_kind is ErrorKind.NOT_FOUND
        assert status.record_count == 1

    def test_skipped_source_is_not_requested(self) -> None:
        upstream = Upstream()
        snapshot = _run(upstream, lambda facade: facade.refresh(include_halts=False))
        assert snapshot.halts == ()
        assert snapshot.halt_status.ok
        assert snapshot.halt_status.message == "not requested"
        assert upstream.halt_calls == 0


async def _halts_status(facade):
    await facade.fetch_halts()
    return facade.status(HALTS)


# ---------------------------------------------------------------------------
# Polling
# ---------------------------------------------------------------------------


class TestPolling:
    def test_stop_during_cycle_discards_it(self) -> None:
        started = asyncio.Event()

        async def hang(_request: httpx.Request) -> httpx.Response:
            started.set()
            await asyncio.sleep(5)
            return httpx.Response(200)

        upstream = Upstream(halts=hang)
        delivered: list = []

        async def scenario(facade):
            stop = asyncio.Event()

            async def stopper():
                await started.wait()
                stop.set()

            stopper_task = asyncio.ensure_future(stopper())
            count = await facade.run_polling(delivered.append, stop, include_quotes=False)
            await stopper_task
            return count, facade.status(HALTS)

        count, status = _run(upstream, scenario, _settings(halt_timeout=30.0))
        assert count == 0
        assert delivered == []
        assert status is None

    def test_callback_can_stop_polling(self) -> None:
        received: list = []

        async def scenario(facade):
            stop = asyncio.Event()

            async def on_snapshot(snapshot):
                received.append(snapshot)
                stop.set()

            return await facade.run_polling(on_snapshot, stop, interval=0.01)

        assert _run(Upstream(), scenario) == 1
        assert len(received) == 1
        assert received[0].cycle == 1

    def test_cycles_repeat_until_stopped(self) -> None:
        received: list = []

        async def scenario(facade):
            stop = asyncio.Event()

            def on_snapshot(snapshot):
                received.append(snapshot.cycle)
                if len(received) == 3:
                    stop.set()

            return await facade.run_polling(on_snapshot, stop, interval=0.0, include_quotes=False)

        assert _run(Upstream(), scenario) == 3
        assert received == [1, 2, 3]


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------


class FailingStream:
    def __init__(self) -> None:
        self.opened_with: list[tuple] = []

    async def stream(self, sid, token):
        self.opened_with.append((sid, token))
        raise AcquisitionError("socket refused")
        yield  # pragma: no cover


class OneBatchStream:
    async def stream(self, sid, token):
        yield synthetic_quotes(["AAPL", "MSFT"])


async def _first_batches(facade, count: int, symbols):
    batches = []
    agen = facade.stream_quotes(symbols)
    try:
        for _ in range(count):
            batches.append(await agen.__anext__())
    finally:
        await agen.aclose()
    return batches


class TestStreamQuotes:
    def test_stream_failure_falls_back_to_polling(self) -> None:
        stream = FailingStream()
        batches = _run(Upstream(), lambda facade: _first_batches(facade, 2, ["AAPL"]), stream=stream)
        assert stream.opened_with == [("sid-1", "tok-1")]
        assert [[q.symbol for q in batch] for batch in batches] == [["AAPL"], ["AAPL"]]
        assert batches[0][0].source == "vendor"

    def test_stream_batches_are_filtered_then_polling_takes_over(self) -> None:
        batches = _run(
            Upstream(),
            lambda facade: _first_batches(facade, 2, ["MSFT"]),
            stream=OneBatchStream(),
        )
        assert [q.symbol for q in batches[0]] == ["MSFT"]
        assert batches[0][0].source == "synthetic"
        assert [q.symbol for q in batches[1]] == ["MSFT"]
        assert batches[1][0].source == "vendor"
