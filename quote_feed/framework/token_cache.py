"""Process-wide cache of short-lived vendor credentials.

Holds at most one live :class:`Credential` per :class:`CredentialKind`.
A miss triggers the kind's refresher through the :class:`RetryExecutor`;
concurrent callers that miss at the same time share a single in-flight
refresh (single-flight).  ``invalidate`` bumps a per-kind epoch so a
refresh that was already running when the invalidation happened answers
its waiters but never repopulates the cache.

A kind listed in ``depends_on`` is derived from another credential: the
parent is obtained first, under its own retry policy, and handed to the
refresher.  A derived credential stays live only while its parent is
still the cached one.

Usage::

    cache = SessionTokenCache(
        refreshers={CredentialKind.SID: login, CredentialKind.TOKEN: derive_token},
        ttl_seconds={CredentialKind.SID: 3600.0, CredentialKind.TOKEN: 1800.0},
        depends_on={CredentialKind.TOKEN: CredentialKind.SID},
    )
    sid = await cache.get(CredentialKind.SID)
    ...
    cache.invalidate(CredentialKind.TOKEN)  # after a 401/403
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Mapping

from quote_feed.errors import AuthFailure, ErrorKind, TokenFailure
from quote_feed.framework.retry_executor import RetryExecutor, RetryPolicy
from quote_feed.models import Credential, CredentialKind

LOGGER = logging.getLogger(__name__)

# Derived kinds receive their parent credential as the only argument.
Refresher = Callable[..., Awaitable[str]]

DEFAULT_TTL_SECONDS: Dict[CredentialKind, float] = {
    CredentialKind.SID: 60 * 60.0,
    CredentialKind.TOKEN: 30 * 60.0,
}

# Rejected credentials are not retried; only transport-level trouble is.
REFRESH_RETRY_KINDS = frozenset({ErrorKind.TIMEOUT, ErrorKind.UPSTREAM})


@dataclass
class _Inflight:
    task: "asyncio.Task[Credential]"
    epoch: int
    waiters: int = 0


class SessionTokenCache:
    """Single-flight credential cache with injected clock."""

    def __init__(
        self,
        refreshers: Mapping[CredentialKind, Refresher],
        ttl_seconds: Mapping[CredentialKind, float] | None = None,
        executor: RetryExecutor | None = None,
        policy: RetryPolicy | None = None,
        clock: Callable[[], float] | None = None,
        depends_on: Mapping[CredentialKind, CredentialKind] | None = None,
    ) -> None:
        self._refreshers = dict(refreshers)
        self._depends_on = dict(depends_on or {})
        self._ttl = dict(DEFAULT_TTL_SECONDS)
        if ttl_seconds:
            self._ttl.update(ttl_seconds)
        self._executor = executor or RetryExecutor()
        self._policy = policy or RetryPolicy(
            max_attempts=3,
            timeout_seconds=10.0,
            backoff_seconds=1.0,
            retry_on=REFRESH_RETRY_KINDS,
        )
        self._clock = clock or time.time
        self._credentials: Dict[CredentialKind, Credential] = {}
        self._parents: Dict[CredentialKind, Credential] = {}
        self._inflight: Dict[CredentialKind, _Inflight] = {}
        self._epochs: Dict[CredentialKind, int] = {kind: 0 for kind in CredentialKind}
        self._lock = asyncio.Lock()
        self.refresh_count: Dict[CredentialKind, int] = {kind: 0 for kind in CredentialKind}

    def peek(self, kind: CredentialKind) -> Credential | None:
        """Return the live credential without refreshing, or None."""
        credential = self._credentials.get(kind)
        if credential is None or not credential.is_live(self._clock()):
            return None
        parent = self._parents.get(kind)
        if parent is not None and self.peek(parent.kind) is not parent:
            return None
        return credential

    def is_current(self, credential: Credential) -> bool:
        """True while ``credential`` is still the cached, unexpired one."""
        return self.peek(credential.kind) is credential

    async def get(self, kind: CredentialKind) -> Credential:
        credential = self.peek(kind)
        if credential is not None:
            return credential

        async with self._lock:
            credential = self.peek(kind)
            if credential is not None:
                return credential
            inflight = self._inflight.get(kind)
            if inflight is None or inflight.task.done():
                inflight = _Inflight(
                    task=asyncio.ensure_future(self._refresh(kind, self._epochs[kind])),
                    epoch=self._epochs[kind],
                )
                self._inflight[kind] = inflight
            inflight.waiters += 1

        try:
            return await asyncio.shield(inflight.task)
        except asyncio.CancelledError:
            # Cancel the shared refresh only when nobody is waiting for it any more.
            if not inflight.task.done() and inflight.waiters <= 1:
                inflight.task.cancel()
                if self._inflight.get(kind) is inflight:
                    del self._inflight[kind]
            raise
        finally:
            inflight.waiters -= 1
            if inflight.task.done() and self._inflight.get(kind) is inflight:
                del self._inflight[kind]

    def invalidate(self, kind: CredentialKind) -> None:
        """Drop the cached credential so the next ``get`` refreshes."""
        self._epochs[kind] += 1
        dropped = self._credentials.pop(kind, None)
        self._inflight.pop(kind, None)
        if dropped is not None:
            LOGGER.info("credential invalidated kind=%s value=%s", kind.value, dropped.preview)
        else:
            LOGGER.info("credential invalidated kind=%s (none cached)", kind.value)

    def clear(self) -> None:
        for kind in CredentialKind:
            self.invalidate(kind)

    async def _refresh(self, kind: CredentialKind, epoch: int) -> Credential:
        refresher = self._refreshers.get(kind)
        if refresher is None:
            raise self._failure(kind, f"no refresher registered for {kind.value}")

        # The parent runs its own retry loop; its errors propagate unchanged.
        parent: Credential | None = None
        action = refresher
        parent_kind = self._depends_on.get(kind)
        if parent_kind is not None:
            parent = await self.get(parent_kind)
            action = functools.partial(refresher, parent)

        self.refresh_count[kind] += 1
        LOGGER.info("refreshing credential kind=%s", kind.value)
        policy = RetryPolicy(
            max_attempts=self._policy.max_attempts,
            timeout_seconds=self._policy.timeout_seconds,
            backoff_seconds=self._policy.backoff_seconds,
            retry_on=self._policy.retry_on,
            name=f"refresh[{kind.value}]",
        )
        outcome = await self._executor.execute(action, policy)
        error = outcome.error
        if error is not None:
            # Slow or failing transport is not a credential problem.
            if error.kind in (ErrorKind.TIMEOUT, ErrorKind.UPSTREAM):
                raise error.to_exception()
            if error.kind is ErrorKind.AUTH:
                raise AuthFailure(error.message, status=error.status)
            raise self._failure(kind, error.message, error.status)
        if not outcome.value:
            raise self._failure(kind, "empty credential")

        now = self._clock()
        credential = Credential(
            kind=kind,
            value=outcome.value,
            obtained_at=now,
            expires_at=now + self._ttl[kind],
        )
        if self._epochs[kind] == epoch:
            self._credentials[kind] = credential
            if parent is not None:
                self._parents[kind] = parent
            else:
                self._parents.pop(kind, None)
            LOGGER.info(
                "credential cached kind=%s value=%s ttl=%.0fs",
                kind.value,
                credential.preview,
                self._ttl[kind],
            )
        else:
            LOGGER.info("credential refresh superseded by invalidate kind=%s", kind.value)
        return credential

    @staticmethod
    def _failure(kind: CredentialKind, message: str, status: int | None = None) -> Exception:
        if kind is CredentialKind.TOKEN:
            return TokenFailure(message, status=status)
        return AuthFailure(message, status=status)
