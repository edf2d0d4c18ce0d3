"""Best-effort streaming channel over STOMP-style JSON frames.

The vendor's web client opens a WebSocket with the ``atmosphere-websocket``
and ``stomp`` subprotocols, sends a JSON ``CONNECT`` frame carrying the
session id and DataTool token, then subscribes to its user queue.  Market
data arrives in ``MESSAGE`` frames whose ``body`` is a JSON string.

No delivery guarantees: callers treat any exception from :meth:`stream`
as "fall back to polling".
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Mapping

import websockets

from quote_feed.config import StreamSettings
from quote_feed.errors import AcquisitionError
from quote_feed.models import CanonicalQuote
from quote_feed.normalize.quotes import find_records, map_record

LOGGER = logging.getLogger(__name__)

SUBPROTOCOLS = ["atmosphere-websocket", "stomp"]
USER_QUEUE = "/user/queue/messages"
STREAM_SOURCE = "stream"


@dataclass(frozen=True)
class StreamFrame:
    command: str
    headers: Dict[str, Any] = field(default_factory=dict)
    body: Any = None


def connect_frame(sid: str, token: str, wmid: str) -> str:
    return json.dumps(
        {
            "command": "CONNECT",
            "headers": {
                "X-Stream-Sid": sid,
                "X-Stream-Wmid": wmid,
                "X-Stream-DataTool-Token": token,
                "authenticationMethod": "datatool",
                "conflation": "LATEST",
                "rejectExcessiveConnection": "false",
            },
        }
    )


def subscribe_frame(subscription_id: str | None = None) -> str:
    return json.dumps(
        {
            "command": "SUBSCRIBE",
            "headers": {
                "destination": USER_QUEUE,
                "id": subscription_id or f"sub-{int(time.time() * 1000)}",
            },
        }
    )


def parse_frame(raw: str | bytes) -> StreamFrame | None:
    """Decode one frame; None for anything that is not a JSON command frame."""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    try:
        payload = json.loads(raw)
    except ValueError:
        return None
    if not isinstance(payload, Mapping) or not payload.get("command"):
        return None
    headers = payload.get("headers")
    return StreamFrame(
        command=str(payload["command"]).upper(),
        headers=dict(headers) if isinstance(headers, Mapping) else {},
        body=payload.get("body"),
    )


def quotes_from_message(frame: StreamFrame) -> List[CanonicalQuote]:
    body = frame.body
    if isinstance(body, str):
        try:
            body = json.loads(body)
        except ValueError:
            LOGGER.debug("stream message body is not JSON length=%d", len(body))
            return []
    records = find_records(body)
    if records is None:
        records = [body] if isinstance(body, Mapping) else []
    quotes: List[CanonicalQuote] = []
    for record in records:
        if not isinstance(record, Mapping):
            continue
        quote = map_record(record, source=STREAM_SOURCE)
        if quote is not None:
            quotes.append(quote)
    return quotes


class QuoteStreamChannel:
    def __init__(self, settings: StreamSettings, wmid: str) -> None:
        self._settings = settings
        self._wmid = wmid

    @property
    def enabled(self) -> bool:
        return self._settings.enabled

    async def stream(self, sid: str, token: str) -> AsyncIterator[List[CanonicalQuote]]:
        """Yield quote batches until the server closes or errors."""
        LOGGER.info("opening quote stream url=%s", self._settings.ws_url)
        async with websockets.connect(
            self._settings.ws_url,
            subprotocols=SUBPROTOCOLS,
            open_timeout=self._settings.connect_timeout_seconds,
            ping_interval=20,
            ping_timeout=20,
            max_size=None,
        ) as socket:
            await socket.send(connect_frame(sid, token, self._wmid))
            await socket.send(subscribe_frame())

            async for raw in socket:
                frame = parse_frame(raw)
                if frame is None:
                    continue
                if frame.command == "CONNECTED":
                    LOGGER.info("quote stream session established")
                elif frame.command == "MESSAGE":
                    quotes = quotes_from_message(frame)
                    if quotes:
                        yield quotes
                elif frame.command == "ERROR":
                    message = frame.headers.get("message") or frame.body or "stream error"
                    raise AcquisitionError(f"quote stream error frame: {message}")
