"""Multi-endpoint fallback probing.

Upstream vendors move their data endpoints around without notice, so a
data class is described by an ordered list of :class:`EndpointCandidate`
requests.  The probe issues them until one returns a body the accept
predicate likes, and reports which URL actually worked.

Two modes:

* ``sequential`` (default): strictly in declared order, one candidate at a
  time.  Gentle on vendors that share a rate limit.
* ``concurrent``: candidates are raced in batches of ``race_width``; the
  first accepted body wins and the rest of the batch is cancelled.

Each candidate gets its own short retry pass through the
:class:`RetryExecutor`; there is no retry across candidates.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Sequence, Tuple, Union

import httpx

from quote_feed.errors import ClassifiedError, ErrorKind, UpstreamHTTPError
from quote_feed.framework.retry_executor import RetryExecutor, RetryPolicy
from quote_feed.models import EndpointCandidate, RawResponse

LOGGER = logging.getLogger(__name__)

AcceptPredicate = Callable[[str, str], bool]

QUOTE_FIELD_MARKERS: Tuple[str, ...] = (
    '"price"',
    '"last"',
    '"bid"',
    '"ask"',
    '"volume"',
    '"change"',
    '"quote"',
)


def looks_like_quote_data(body: str, content_type: str = "") -> bool:
    """Default accept heuristic: JSON-ish and mentions a quote-shaped field."""
    text = (body or "").strip()
    if not text:
        return False
    json_like = text.startswith("{") or text.startswith("[")
    if not json_like:
        try:
            json.loads(text)
            json_like = True
        except ValueError:
            json_like = False
    if not json_like:
        return False
    return any(marker in text for marker in QUOTE_FIELD_MARKERS)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CandidateAttempt:
    """What happened to one candidate during a probe."""

    candidate: EndpointCandidate
    accepted: bool
    status_code: int | None = None
    error: ClassifiedError | None = None

    @property
    def auth_rejected(self) -> bool:
        status = self.status_code
        if status is None and self.error is not None:
            status = self.error.status
        return status in (401, 403)


@dataclass(frozen=True)
class ProbeFound:
    response: RawResponse
    candidate: EndpointCandidate
    attempts: Tuple[CandidateAttempt, ...]

    @property
    def url(self) -> str:
        return self.response.url


@dataclass(frozen=True)
class ProbeNotFound:
    attempts: Tuple[CandidateAttempt, ...]

    @property
    def auth_rejected(self) -> bool:
        """True when at least one candidate was refused with 401/403."""
        return any(a.auth_rejected for a in self.attempts)

    @property
    def all_timed_out(self) -> bool:
        return bool(self.attempts) and all(
            a.error is not None and a.error.kind is ErrorKind.TIMEOUT for a in self.attempts
        )


ProbeResult = Union[ProbeFound, ProbeNotFound]


# ---------------------------------------------------------------------------
# Probe
# ---------------------------------------------------------------------------


class EndpointProbe:
    """Tries candidate endpoints until one yields an accepted payload."""

    MODES = ("sequential", "concurrent")

    def __init__(
        self,
        client: httpx.AsyncClient,
        executor: RetryExecutor | None = None,
        candidate_policy: RetryPolicy | None = None,
        mode: str = "sequential",
        race_width: int = 2,
    ) -> None:
        if mode not in self.MODES:
            raise ValueError(f"unknown probe mode {mode!r}")
        self._client = client
        self._executor = executor or RetryExecutor()
        self._candidate_policy = candidate_policy or RetryPolicy(
            max_attempts=1, timeout_seconds=6.0, backoff_seconds=0.0,
        )
        self._mode = mode
        self._race_width = max(1, min(3, int(race_width)))
        self._last_winner: Dict[str, str] = {}
        self.requests_issued = 0

    @property
    def mode(self) -> str:
        return self._mode

    def last_winner(self, group: str) -> str | None:
        """URL of the candidate that most recently won for ``group``."""
        return self._last_winner.get(group)

    async def probe(
        self,
        candidates: Sequence[EndpointCandidate],
        accept: AcceptPredicate | None = None,
        mode: str | None = None,
    ) -> ProbeResult:
        accept = accept or looks_like_quote_data
        mode = mode or self._mode
        if mode not in self.MODES:
            raise ValueError(f"unknown probe mode {mode!r}")
        if not candidates:
            return ProbeNotFound(attempts=())

        if mode == "sequential":
            result = await self._probe_sequential(candidates, accept)
        else:
            result = await self._probe_concurrent(candidates, accept)

        if isinstance(result, ProbeFound):
            self._last_winner[result.candidate.group] = result.url
            LOGGER.info(
                "probe accepted group=%s url=%s after=%d candidates",
                result.candidate.group,
                result.url,
                len(result.attempts),
            )
        else:
            LOGGER.warning(
                "probe found nothing tried=%d auth_rejected=%s",
                len(result.attempts),
                result.auth_rejected,
            )
        return result

    async def _probe_sequential(
        self,
        candidates: Sequence[EndpointCandidate],
        accept: AcceptPredicate,
    ) -> ProbeResult:
        attempts: List[CandidateAttempt] = []
        for candidate in candidates:
            attempt, response = await self._try_candidate(candidate, accept)
            attempts.append(attempt)
            if attempt.accepted and response is not None:
                return ProbeFound(response=response, candidate=candidate, attempts=tuple(attempts))
        return ProbeNotFound(attempts=tuple(attempts))

    async def _probe_concurrent(
        self,
        candidates: Sequence[EndpointCandidate],
        accept: AcceptPredicate,
    ) -> ProbeResult:
        attempts: List[CandidateAttempt] = []
        for start in range(0, len(candidates), self._race_width):
            batch = candidates[start : start + self._race_width]
            tasks = [asyncio.ensure_future(self._try_candidate(c, accept)) for c in batch]
            try:
                for next_done in asyncio.as_completed(tasks):
                    attempt, response = await next_done
                    attempts.append(attempt)
                    if attempt.accepted and response is not None:
                        return ProbeFound(
                            response=response,
                            candidate=attempt.candidate,
                            attempts=tuple(attempts),
                        )
            finally:
                pending = [t for t in tasks if not t.done()]
                for task in pending:
                    task.cancel()
                if pending:
                    await asyncio.gather(*pending, return_exceptions=True)
        return ProbeNotFound(attempts=tuple(attempts))

    async def _try_candidate(
        self,
        candidate: EndpointCandidate,
        accept: AcceptPredicate,
    ) -> Tuple[CandidateAttempt, RawResponse | None]:
        policy = RetryPolicy(
            max_attempts=self._candidate_policy.max_attempts,
            timeout_seconds=self._candidate_policy.timeout_seconds,
            backoff_seconds=self._candidate_policy.backoff_seconds,
            retry_on=self._candidate_policy.retry_on,
            name=f"probe[{candidate.label}]",
        )
        outcome = await self._executor.execute(lambda: self.send(candidate), policy)
        if not outcome.ok or outcome.value is None:
            return CandidateAttempt(candidate=candidate, accepted=False, error=outcome.error), None

        response = outcome.value
        accepted = False
        try:
            accepted = bool(accept(response.body, response.content_type))
        except Exception as exc:  # a broken predicate rejects, it does not abort the probe
            LOGGER.warning("accept predicate raised for %s: %s", candidate.label, exc)
        if not accepted:
            LOGGER.info(
                "probe rejected body url=%s status=%d length=%d",
                response.url,
                response.status_code,
                len(response.body),
            )
        return (
            CandidateAttempt(candidate=candidate, accepted=accepted, status_code=response.status_code),
            response if accepted else None,
        )

    async def send(self, candidate: EndpointCandidate) -> RawResponse:
        """Issue one candidate request; non-2xx raises :class:`UpstreamHTTPError`."""
        self.requests_issued += 1
        started = time.monotonic()
        kwargs: Dict[str, object] = {"headers": dict(candidate.headers)}
        if candidate.params:
            kwargs["params"] = dict(candidate.params)
        if candidate.data is not None:
            kwargs["data"] = dict(candidate.data)
        elif candidate.json_body is not None:
            kwargs["json"] = candidate.json_body
        response = await self._client.request(candidate.method, candidate.url, **kwargs)
        if response.status_code < 200 or response.status_code >= 300:
            raise UpstreamHTTPError(
                response.status_code,
                f"{candidate.label} returned HTTP {response.status_code}",
            )
        return RawResponse(
            url=str(response.url),
            status_code=response.status_code,
            body=response.text,
            content_type=response.headers.get("content-type", ""),
            elapsed_seconds=time.monotonic() - started,
        )
