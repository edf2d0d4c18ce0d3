"""Tests for multi-endpoint fallback probing."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from quote_feed.framework.endpoint_probe import (
    EndpointProbe,
    ProbeFound,
    ProbeNotFound,
    looks_like_quote_data,
)
from quote_feed.framework.retry_executor import RetryExecutor, RetryPolicy
from quote_feed.models import EndpointCandidate

QUOTE_BODY = json.dumps({"results": {"quote": [{"key": {"symbol": "AAPL"}, "pricedata": {"last": 1.0}}]}})


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _no_sleep(_delay: float) -> None:
    return None


def _candidate(name: str, method: str = "GET", group: str = "quotes") -> EndpointCandidate:
    return EndpointCandidate(url=f"https://vendor.test/{name}", method=method, group=group)


class Upstream:
    """Routes requests by last path segment to canned responses."""

    def __init__(self, routes: dict) -> None:
        self.routes = routes
        self.requested: list[str] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        name = request.url.path.rsplit("/", 1)[-1]
        self.requested.append(name)
        route = self.routes[name]
        if callable(route):
            return await route(request)
        status, body = route
        return httpx.Response(status, text=body, headers={"content-type": "application/json"})


def _run_probe(routes: dict, candidates, **probe_kwargs):
    upstream = Upstream(routes)

    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(upstream)) as client:
            probe = EndpointProbe(client, executor=RetryExecutor(sleep=_no_sleep), **probe_kwargs)
            result = await probe.probe(candidates)
            return probe, result

    probe, result = asyncio.run(scenario())
    return upstream, probe, result


# ---------------------------------------------------------------------------
# Accept heuristic
# ---------------------------------------------------------------------------


class TestLooksLikeQuoteData:
    def test_json_with_quote_field(self) -> None:
        assert looks_like_quote_data(QUOTE_BODY, "application/json")

    def test_json_without_quote_fields(self) -> None:
        assert not looks_like_quote_data('{"status": "ok"}')

    def test_html_rejected_even_with_keywords(self) -> None:
        assert not looks_like_quote_data('<html><body>"price"</body></html>', "text/html")

    def test_array_body(self) -> None:
        assert looks_like_quote_data('[{"symbol": "X", "last": 2}]')

    def test_empty(self) -> None:
        assert not looks_like_quote_data("")


# ---------------------------------------------------------------------------
# Sequential mode
# ---------------------------------------------------------------------------


class TestSequential:
    def test_first_accepted_wins_and_later_candidates_are_never_issued(self) -> None:
        upstream, _, result = _run_probe(
            {"a": (500, "oops"), "b": (200, QUOTE_BODY), "c": (200, QUOTE_BODY)},
            [_candidate("a"), _candidate("b"), _candidate("c")],
        )
        assert isinstance(result, ProbeFound)
        assert result.url == "https://vendor.test/b"
        assert result.response.body == QUOTE_BODY
        assert upstream.requested == ["a", "b"]

    def test_rejected_body_moves_to_next_candidate(self) -> None:
        upstream, _, result = _run_probe(
            {"a": (200, "<html>login</html>"), "b": (200, QUOTE_BODY)},
            [_candidate("a"), _candidate("b")],
        )
        assert isinstance(result, ProbeFound)
        assert result.candidate.url.endswith("/b")
        assert [a.accepted for a in result.attempts] == [False, True]

    def test_not_found_when_nothing_accepted(self) -> None:
        _, _, result = _run_probe(
            {"a": (404, ""), "b": (200, '{"status": "empty"}')},
            [_candidate("a"), _candidate("b")],
        )
        assert isinstance(result, ProbeNotFound)
        assert len(result.attempts) == 2
        assert not result.auth_rejected

    def test_not_found_reports_auth_rejection(self) -> None:
        _, _, result = _run_probe(
            {"a": (403, "denied"), "b": (404, "")},
            [_candidate("a"), _candidate("b")],
        )
        assert isinstance(result, ProbeNotFound)
        assert result.auth_rejected

    def test_empty_candidate_list(self) -> None:
        _, _, result = _run_probe({}, [])
        assert isinstance(result, ProbeNotFound)
        assert result.attempts == ()

    def test_one_retry_pass_per_candidate(self) -> None:
        upstream, _, result = _run_probe(
            {"a": (503, "busy"), "b": (503, "busy")},
            [_candidate("a"), _candidate("b")],
            candidate_policy=RetryPolicy(max_attempts=2, timeout_seconds=1.0, backoff_seconds=0.0),
        )
        assert isinstance(result, ProbeNotFound)
        assert upstream.requested == ["a", "a", "b", "b"]

    def test_remembers_last_winner_per_group(self) -> None:
        _, probe, _ = _run_probe(
            {"a": (500, ""), "b": (200, QUOTE_BODY)},
            [_candidate("a"), _candidate("b")],
        )
        assert probe.last_winner("quotes") == "https://vendor.test/b"
        assert probe.last_winner("halts") is None

    def test_post_candidate_sends_form(self) -> None:
        seen: list[bytes] = []

        async def capture(request: httpx.Request) -> httpx.Response:
            seen.append(request.content)
            return httpx.Response(200, text=QUOTE_BODY)

        candidate = EndpointCandidate(
            url="https://vendor.test/form", method="POST", data={"symbols": "AAPL"}, group="quotes",
        )
        _, _, result = _run_probe({"form": capture}, [candidate])
        assert isinstance(result, ProbeFound)
        assert seen == [b"symbols=AAPL"]

    def test_invalid_mode_rejected(self) -> None:
        with pytest.raises(ValueError):
            EndpointProbe(httpx.AsyncClient(), mode="shotgun")


# ---------------------------------------------------------------------------
# Concurrent mode
# ---------------------------------------------------------------------------


class TestConcurrent:
    def test_fast_candidate_wins_race_and_loser_is_cancelled(self) -> None:
        cancelled: list[str] = []

        async def slow(request: httpx.Request) -> httpx.Response:
            try:
                await asyncio.sleep(5)
            except asyncio.CancelledError:
                cancelled.append("a")
                raise
            return httpx.Response(200, text=QUOTE_BODY)

        upstream, _, result = _run_probe(
            {"a": slow, "b": (200, QUOTE_BODY), "c": (200, QUOTE_BODY)},
            [_candidate("a"), _candidate("b"), _candidate("c")],
            mode="concurrent",
            race_width=2,
        )
        assert isinstance(result, ProbeFound)
        assert result.url.endswith("/b")
        assert cancelled == ["a"]
        assert "c" not in upstream.requested

    def test_next_batch_tried_when_first_batch_fails(self) -> None:
        upstream, _, result = _run_probe(
            {"a": (500, ""), "b": (404, ""), "c": (200, QUOTE_BODY)},
            [_candidate("a"), _candidate("b"), _candidate("c")],
            mode="concurrent",
            race_width=2,
        )
        assert isinstance(result, ProbeFound)
        assert result.url.endswith("/c")
        assert sorted(upstream.requested) == ["a", "b", "c"]

    def test_race_width_is_clamped(self) -> None:
        probe = EndpointProbe(httpx.AsyncClient(), mode="concurrent", race_width=10)
        assert probe._race_width == 3
