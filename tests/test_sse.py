from __future__ import annotations

import asyncio

import allure
import httpx
import pytest

from opencode_bridge.transport import (
    FailureClass,
    HttpTransport,
    RequestDescriptor,
    SseFrameParser,
    StreamEndReason,
    TransportError,
)

pytestmark = [
    allure.epic("Transport"),
    allure.feature("Event Streams"),
]


class ScriptedStream(httpx.AsyncByteStream):
    """Response body that plays fixed chunks, then fails, ends or keeps ticking."""

    def __init__(
        self,
        chunks: list[bytes],
        *,
        error: Exception | None = None,
        tick: bytes | None = None,
    ) -> None:
        self._chunks = chunks
        self._error = error
        self._tick = tick
        self.closed = False

    async def __aiter__(self):
        for chunk in self._chunks:
            yield chunk
        if self._error is not None:
            raise self._error
        while self._tick is not None and not self.closed:
            await asyncio.sleep(0.01)
            yield self._tick

    async def aclose(self) -> None:
        self.closed = True


def _event_stream_response(stream: ScriptedStream) -> httpx.Response:
    return httpx.Response(200, headers={"content-type": "text/event-stream"}, stream=stream)


def _transport(settings, handler, sleep) -> HttpTransport:
    return HttpTransport(
        server=settings.server,
        retry=settings.retry,
        transport=httpx.MockTransport(handler),
        sleep=sleep,
    )


def test_parser_reassembles_frames_split_across_reads() -> None:
    parser = SseFrameParser()
    wire = b'data: {"type":"session.updated","id":1}\n\ndata: {"type":"message.part","id":2}\n\n'

    events = []
    for index in range(len(wire)):
        events.extend(parser.feed(wire[index : index + 1]))

    assert [event.event_type for event in events] == ["session.updated", "message.part"]
    assert [event.payload["id"] for event in events] == [1, 2]
    assert not parser.has_partial_frame


def test_parser_handles_crlf_split_between_chunks() -> None:
    parser = SseFrameParser()

    assert parser.feed(b"data: one\r") == []
    assert parser.feed(b"\n\r") == []
    events = parser.feed(b"\n")

    assert len(events) == 1
    assert events[0].payload == "one"


def test_parser_keeps_split_multibyte_characters_intact() -> None:
    parser = SseFrameParser()
    encoded = 'data: {"text":"héllo"}\n\n'.encode()
    split_at = encoded.index("é".encode()) + 1

    assert parser.feed(encoded[:split_at]) == []
    events = parser.feed(encoded[split_at:])

    assert events[0].payload == {"text": "héllo"}


def test_parser_event_fields_comments_and_multiline_data() -> None:
    parser = SseFrameParser()

    events = parser.feed(
        b": keep-alive\n"
        b"event: server.connected\n"
        b"id: 42\n"
        b"retry: 1500\n"
        b"data: line one\n"
        b"data: line two\n"
        b"\n"
        b"\n",
    )

    assert len(events) == 1
    event = events[0]
    assert event.event_type == "server.connected"
    assert event.payload == "line one\nline two"
    assert event.event_id == "42"
    assert event.retry_ms == 1500


def test_parser_defaults_event_type_to_message() -> None:
    events = SseFrameParser().feed(b'data: {"no_type": true}\n\n')
    assert events[0].event_type == "message"


def test_parser_holds_incomplete_frame() -> None:
    parser = SseFrameParser()

    assert parser.feed(b'data: {"type":"a"}\n') == []
    assert parser.has_partial_frame


@pytest.mark.asyncio
async def test_mid_frame_disconnect_yields_only_complete_frames(settings, recording_sleep) -> None:
    stream = ScriptedStream(
        [
            b'data: {"type":"a","n":1}\n\n',
            b'event: custom\ndata: {"n":2}\n',
            b'\ndata: plain text\n\ndata: {"type":"par',
        ],
        error=httpx.RemoteProtocolError("peer closed connection"),
    )

    async with _transport(
        settings, lambda _: _event_stream_response(stream), recording_sleep
    ) as transport:
        subscription = await transport.subscribe("/event")
        received = [event async for event in subscription]

    assert [event.event_type for event in received] == ["a", "custom", "message"]
    assert received[2].payload == "plain text"
    assert subscription.end_reason == StreamEndReason.TRANSPORT_ERROR
    assert subscription.error is not None
    assert subscription.error.failure_class == FailureClass.TRANSIENT_HTTP
    assert stream.closed
    assert await subscription.next_event() is None


@pytest.mark.asyncio
async def test_clean_end_of_stream(settings, recording_sleep) -> None:
    stream = ScriptedStream([b'data: {"type":"only"}\n\n'])

    async with _transport(
        settings, lambda _: _event_stream_response(stream), recording_sleep
    ) as transport:
        subscription = await transport.subscribe()
        first = await subscription.next_event()
        second = await subscription.next_event()

    assert first is not None
    assert first.event_type == "only"
    assert second is None
    assert subscription.end_reason == StreamEndReason.CLOSED
    assert subscription.error is None


@pytest.mark.asyncio
async def test_cancel_closes_stream_without_disturbing_other_calls(
    settings, recording_sleep
) -> None:
    stream = ScriptedStream([b'data: {"type":"first"}\n\n'], tick=b'data: {"type":"tick"}\n\n')

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/event":
            return _event_stream_response(stream)
        return httpx.Response(200, json={"healthy": True})

    async with _transport(settings, handler, recording_sleep) as transport:
        subscription = await transport.subscribe("/event")
        first = await subscription.next_event()
        await subscription.aclose()
        health = await transport.request(RequestDescriptor.build("GET", "/global/health"))
        after_cancel = await subscription.next_event()

    assert first is not None
    assert first.event_type == "first"
    assert stream.closed
    assert subscription.end_reason == StreamEndReason.CANCELLED
    assert after_cancel is None
    assert health == {"healthy": True}


@pytest.mark.asyncio
async def test_subscription_context_manager_cancels_on_exit(settings, recording_sleep) -> None:
    stream = ScriptedStream([], tick=b'data: {"type":"tick"}\n\n')

    async with _transport(
        settings, lambda _: _event_stream_response(stream), recording_sleep
    ) as transport:
        async with await transport.subscribe() as subscription:
            event = await subscription.next_event()

    assert event is not None
    assert event.event_type == "tick"
    assert stream.closed
    assert subscription.end_reason == StreamEndReason.CANCELLED


@pytest.mark.asyncio
async def test_subscribe_auth_failure_is_not_retried(settings, recording_sleep) -> None:
    calls = 0

    def handler(_: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(401, text="unauthorized")

    async with _transport(settings, handler, recording_sleep) as transport:
        with pytest.raises(TransportError) as excinfo:
            await transport.subscribe("/event")

    assert calls == 1
    assert excinfo.value.failure_class == FailureClass.AUTH
    assert "unauthorized" in str(excinfo.value)


@pytest.mark.asyncio
async def test_subscribe_sends_event_stream_headers(settings, recording_sleep) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return _event_stream_response(ScriptedStream([]))

    async with _transport(settings, handler, recording_sleep) as transport:
        subscription = await transport.subscribe("/event")
        await subscription.aclose()

    assert seen[0].headers["accept"] == "text/event-stream"
    assert seen[0].headers["cache-control"] == "no-cache"
