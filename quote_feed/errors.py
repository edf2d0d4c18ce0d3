"""Error taxonomy for the acquisition layer.

Every failure that crosses a component boundary is either one of the
``AcquisitionError`` subclasses below or is classified into a
``ClassifiedError`` value by :func:`classify_exception`.  Cancellation is
never classified: ``asyncio.CancelledError`` always propagates.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from enum import Enum

import httpx


class ErrorKind(str, Enum):
    AUTH = "auth"
    TOKEN = "token"
    TIMEOUT = "timeout"
    UPSTREAM = "upstream"
    PARSE = "parse"
    NOT_FOUND = "not_found"


class AcquisitionError(Exception):
    kind: ErrorKind = ErrorKind.UPSTREAM

    def __init__(self, message: str = "", status: int | None = None) -> None:
        super().__init__(message or self.kind.value)
        self.status = status


class AuthFailure(AcquisitionError):
    """Credentials rejected or missing."""

    kind = ErrorKind.AUTH


class TokenFailure(AcquisitionError):
    """Derived-token step failed despite a valid session."""

    kind = ErrorKind.TOKEN


class TimeoutFailure(AcquisitionError):
    kind = ErrorKind.TIMEOUT


class UpstreamHTTPError(AcquisitionError):
    kind = ErrorKind.UPSTREAM

    def __init__(self, status: int, message: str = "") -> None:
        super().__init__(message or f"upstream returned HTTP {status}", status=status)

    @property
    def is_auth_rejection(self) -> bool:
        return self.status in (401, 403)


class ParseFailure(AcquisitionError):
    kind = ErrorKind.PARSE


class EndpointNotFound(AcquisitionError):
    """No candidate endpoint produced an accepted payload."""

    kind = ErrorKind.NOT_FOUND


@dataclass(frozen=True)
class ClassifiedError:
    kind: ErrorKind
    message: str
    status: int | None = None

    def to_exception(self) -> AcquisitionError:
        if self.kind is ErrorKind.UPSTREAM and self.status is not None:
            return UpstreamHTTPError(self.status, self.message)
        return _EXCEPTION_BY_KIND[self.kind](self.message, status=self.status)


_EXCEPTION_BY_KIND: dict[ErrorKind, type[AcquisitionError]] = {
    ErrorKind.AUTH: AuthFailure,
    ErrorKind.TOKEN: TokenFailure,
    ErrorKind.TIMEOUT: TimeoutFailure,
    ErrorKind.UPSTREAM: AcquisitionError,
    ErrorKind.PARSE: ParseFailure,
    ErrorKind.NOT_FOUND: EndpointNotFound,
}


def classify_exception(exc: BaseException) -> ClassifiedError:
    """Map any non-cancellation exception onto the error taxonomy."""
    if isinstance(exc, asyncio.CancelledError):
        raise exc
    if isinstance(exc, AcquisitionError):
        return ClassifiedError(exc.kind, str(exc), exc.status)
    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
        return ClassifiedError(ErrorKind.TIMEOUT, str(exc) or "timed out")
    if isinstance(exc, httpx.HTTPStatusError):
        return ClassifiedError(ErrorKind.UPSTREAM, str(exc), exc.response.status_code)
    if isinstance(exc, httpx.RequestError):
        return ClassifiedError(ErrorKind.UPSTREAM, str(exc) or type(exc).__name__)
    # JSONDecodeError is a ValueError subclass; both mean the payload was unreadable.
    if isinstance(exc, (json.JSONDecodeError, ValueError, KeyError, TypeError)):
        return ClassifiedError(ErrorKind.PARSE, str(exc) or type(exc).__name__)
    return ClassifiedError(ErrorKind.UPSTREAM, str(exc) or type(exc).__name__)


def retry_after_for(kind: ErrorKind | None) -> float:
    """Seconds the presentation layer should wait before asking again."""
    if kind is None:
        return 0.0
    if kind is ErrorKind.TIMEOUT:
        return 30.0
    return 10.0


def user_message(kind: ErrorKind, source: str) -> str:
    if kind is ErrorKind.TIMEOUT:
        return f"{source} timed out - the service may be under heavy load. Please try again."
    if kind is ErrorKind.AUTH:
        return f"{source} rejected our credentials."
    if kind is ErrorKind.TOKEN:
        return f"{source} access token could not be generated."
    if kind is ErrorKind.PARSE:
        return f"{source} returned data we could not interpret."
    if kind is ErrorKind.NOT_FOUND:
        return f"{source} is currently unavailable (no endpoint answered with data)."
    return f"{source} request failed."
