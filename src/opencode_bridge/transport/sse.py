"""Server-sent event framing and cancellable subscriptions."""

from __future__ import annotations

import codecs
import json
import logging
from collections import deque
from enum import Enum
from typing import Any

import httpx

from opencode_bridge.transport.errors import TransportError
from opencode_bridge.transport.failure_classifier import classify_exception
from opencode_bridge.transport.models import SseEvent

logger = logging.getLogger(__name__)

DEFAULT_EVENT_TYPE = "message"


class StreamEndReason(str, Enum):
    """Why a subscription stopped delivering events."""

    CLOSED = "closed"
    CANCELLED = "cancelled"
    TRANSPORT_ERROR = "transport_error"


class SseFrameParser:
    """Incremental line reassembly for `text/event-stream` bodies.

    Bytes are buffered until a line terminator arrives; an event is emitted only
    when its terminating blank line has been seen. Whatever follows the last
    complete line stays in the buffer for the next `feed()` call.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._trailing_cr = False
        self._data_lines: list[str] = []
        self._event_type: str | None = None
        self._event_id: str | None = None
        self._retry_ms: int | None = None

    @property
    def has_partial_frame(self) -> bool:
        return bool(self._buffer) or bool(self._data_lines) or self._event_type is not None

    def feed(self, chunk: bytes) -> list[SseEvent]:
        text = self._decoder.decode(chunk)
        if self._trailing_cr:
            text = "\r" + text
            self._trailing_cr = False
        if text.endswith("\r"):
            text = text[:-1]
            self._trailing_cr = True
        self._buffer += text.replace("\r\n", "\n").replace("\r", "\n")

        events: list[SseEvent] = []
        while True:
            index = self._buffer.find("\n")
            if index < 0:
                break
            line = self._buffer[:index]
            self._buffer = self._buffer[index + 1 :]
            event = self._process_line(line)
            if event is not None:
                events.append(event)
        return events

    def _process_line(self, line: str) -> SseEvent | None:
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "data":
            self._data_lines.append(value)
        elif name == "event":
            self._event_type = value or None
        elif name == "id":
            self._event_id = value or None
        elif name == "retry" and value.isdigit():
            self._retry_ms = int(value)
        return None

    def _dispatch(self) -> SseEvent | None:
        if not self._data_lines:
            self._event_type = None
            return None
        raw_data = "\n".join(self._data_lines)
        payload = _decode_payload(raw_data)
        event = SseEvent(
            event_type=self._event_type or _payload_type(payload) or DEFAULT_EVENT_TYPE,
            payload=payload,
            event_id=self._event_id,
            retry_ms=self._retry_ms,
            raw_data=raw_data,
        )
        self._data_lines = []
        self._event_type = None
        return event


class EventSubscription:
    """One open event stream; yields complete events until closed, cancelled or broken."""

    def __init__(self, response: httpx.Response, *, path: str) -> None:
        self.path = path
        self.end_reason: StreamEndReason | None = None
        self.error: TransportError | None = None
        self._response = response
        self._chunks = response.aiter_bytes()
        self._parser = SseFrameParser()
        self._pending: deque[SseEvent] = deque()
        self._cancelled = False

    @property
    def closed(self) -> bool:
        return self.end_reason is not None

    async def next_event(self) -> SseEvent | None:
        """Return the next complete event, or `None` once the stream has ended."""

        while True:
            if self._cancelled:
                return None
            if self._pending:
                return self._pending.popleft()
            if self.end_reason is not None:
                return None
            try:
                chunk = await self._chunks.__anext__()
            except StopAsyncIteration:
                await self._finish(StreamEndReason.CLOSED)
                continue
            except httpx.HTTPError as error:
                if self._cancelled:
                    return None
                self.error = TransportError(
                    f"Event stream {self.path} broke: {error or type(error).__name__}",
                    classification=classify_exception(error),
                    cause=error,
                )
                await self._finish(StreamEndReason.TRANSPORT_ERROR)
                continue
            except httpx.StreamError:
                # Closed underneath a pending read by aclose().
                if self._cancelled:
                    return None
                raise
            if self._cancelled:
                return None
            self._pending.extend(self._parser.feed(chunk))

    async def aclose(self) -> None:
        """Cancel the subscription and close its connection."""

        if self.end_reason is not None:
            return
        self._cancelled = True
        self.end_reason = StreamEndReason.CANCELLED
        self._pending.clear()
        await self._response.aclose()
        logger.debug("Event stream %s cancelled", self.path)

    async def _finish(self, reason: StreamEndReason) -> None:
        self.end_reason = reason
        if self._parser.has_partial_frame:
            logger.warning("Event stream %s ended mid-frame; partial frame dropped", self.path)
        await self._response.aclose()
        logger.debug("Event stream %s ended: %s", self.path, reason.value)

    def __aiter__(self) -> EventSubscription:
        return self

    async def __anext__(self) -> SseEvent:
        event = await self.next_event()
        if event is None:
            raise StopAsyncIteration
        return event

    async def __aenter__(self) -> EventSubscription:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.aclose()


def _decode_payload(raw_data: str) -> Any:
    try:
        return json.loads(raw_data)
    except json.JSONDecodeError:
        return raw_data


def _payload_type(payload: Any) -> str | None:
    if isinstance(payload, dict):
        value = payload.get("type")
        if isinstance(value, str) and value:
            return value
    return None
