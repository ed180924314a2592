"""Async HTTP transport with auth, directory scoping, retries and timeouts."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import httpx

from opencode_bridge import __version__
from opencode_bridge.config import RetrySettings, ServerSettings
from opencode_bridge.transport.errors import TransportError
from opencode_bridge.transport.failure_classifier import classify_exception, classify_status
from opencode_bridge.transport.models import (
    DEFAULT_EVENT_PATH,
    NO_CONTENT,
    RequestDescriptor,
)
from opencode_bridge.transport.retry import RetryPolicy, RetryState
from opencode_bridge.transport.scope import directory_scope_headers, normalize_directory_scope
from opencode_bridge.transport.sse import EventSubscription

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_USER_AGENT = f"opencode-bridge/{__version__}"
HTTP_NO_CONTENT = 204
BODY_EXCERPT_CHARS = 500

SleepFn = Callable[[float], Awaitable[None]]


class HttpTransport:
    """Issue requests and open event streams against one backend base URL.

    Every attempt is bounded by a timeout. Transient failures are retried with
    exponential backoff; anything else is raised on first occurrence.
    """

    def __init__(
        self,
        *,
        server: ServerSettings,
        retry: RetrySettings,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.base_url = server.base_url.rstrip("/")
        self.policy = RetryPolicy.from_settings(retry)
        self._sleep = sleep
        self._stream_timeout = httpx.Timeout(
            connect=retry.connect_timeout_seconds,
            read=retry.sse_read_timeout_seconds,
            write=retry.request_timeout_seconds,
            pool=retry.connect_timeout_seconds,
        )
        auth = httpx.BasicAuth(server.username, server.password) if server.auth_enabled else None
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            auth=auth,
            timeout=httpx.Timeout(
                retry.request_timeout_seconds,
                connect=retry.connect_timeout_seconds,
            ),
            headers={"User-Agent": DEFAULT_USER_AGENT, "Accept": "application/json"},
            transport=transport,
            follow_redirects=True,
        )

    async def request(self, descriptor: RequestDescriptor) -> Any:
        """Validate the directory scope, then run the attempt loop for one call."""

        directory = normalize_directory_scope(descriptor.directory)
        return await self.run_attempts(
            lambda: self.attempt_request(descriptor, directory=directory),
            label=f"{descriptor.method.value} {descriptor.path}",
        )

    async def subscribe(
        self,
        path: str = DEFAULT_EVENT_PATH,
        *,
        query: tuple[tuple[str, str], ...] = (),
        directory: str | None = None,
    ) -> EventSubscription:
        normalized = normalize_directory_scope(directory)
        return await self.run_attempts(
            lambda: self.attempt_subscribe(path, query=query, directory=normalized),
            label=f"GET {path} (events)",
        )

    async def run_attempts(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        label: str,
        state: RetryState | None = None,
    ) -> T:
        """Run `operation` until it succeeds, fails non-transiently, or attempts run out."""

        state = state or RetryState()
        while True:
            attempt = state.begin_attempt()
            logger.debug("%s attempt %d/%d", label, attempt, self.policy.max_attempts)
            try:
                return await operation()
            except TransportError as error:
                state.record_failure(error)
                if not self.policy.should_retry(state):
                    raise
                delay = self.policy.delay_for(
                    attempt,
                    retry_after=error.retry_after,
                    previous=state.delays[-1] if state.delays else None,
                )
                state.delays.append(delay)
                logger.warning(
                    "%s failed (%s, attempt %d/%d); retrying in %.2fs",
                    label,
                    error.classification.reason_code,
                    attempt,
                    self.policy.max_attempts,
                    delay,
                )
                await self._sleep(delay)

    async def attempt_request(self, descriptor: RequestDescriptor, *, directory: str | None) -> Any:
        """Single HTTP attempt; `directory` must already be validated."""

        label = f"{descriptor.method.value} {descriptor.path}"
        extra: dict[str, Any] = {}
        if descriptor.body is not None:
            extra["json"] = descriptor.body
        try:
            response = await self._client.request(
                descriptor.method.value,
                descriptor.path,
                params=list(descriptor.query) or None,
                headers=directory_scope_headers(directory),
                **extra,
            )
        except httpx.HTTPError as error:
            raise _exception_error(label, error) from error
        return _decode_response(label, response)

    async def attempt_subscribe(
        self,
        path: str,
        *,
        query: tuple[tuple[str, str], ...],
        directory: str | None,
    ) -> EventSubscription:
        label = f"GET {path} (events)"
        request = self._client.build_request(
            "GET",
            path,
            params=list(query) or None,
            headers={
                "Accept": "text/event-stream",
                "Cache-Control": "no-cache",
                **directory_scope_headers(directory),
            },
            timeout=self._stream_timeout,
        )
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as error:
            raise _exception_error(label, error) from error
        if not response.is_success:
            try:
                await response.aread()
            except httpx.HTTPError:
                logger.debug("Could not read error body from %s", label, exc_info=True)
            finally:
                await response.aclose()
            raise _status_error(label, response)
        logger.debug("Event stream %s opened", path)
        return EventSubscription(response, path=path)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> HttpTransport:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.aclose()


def _decode_response(label: str, response: httpx.Response) -> Any:
    if response.status_code == HTTP_NO_CONTENT:
        return NO_CONTENT
    if not response.is_success:
        raise _status_error(label, response)
    if not response.content.strip():
        return NO_CONTENT
    try:
        return response.json()
    except ValueError as error:
        raise TransportError(
            f"{label} returned a body that is not valid JSON",
            classification=replace(classify_exception(error), status_code=response.status_code),
            cause=error,
            body=_excerpt(response.text),
        ) from error


def _status_error(label: str, response: httpx.Response) -> TransportError:
    try:
        body = _excerpt(response.text)
    except httpx.ResponseNotRead:
        body = ""
    message = f"{label} returned HTTP {response.status_code}"
    if body:
        message = f"{message}: {body}"
    return TransportError(
        message,
        classification=classify_status(response.status_code),
        body=body,
        retry_after=_parse_retry_after(response.headers.get("Retry-After")),
    )


def _exception_error(label: str, error: httpx.HTTPError) -> TransportError:
    detail = str(error) or type(error).__name__
    return TransportError(
        f"{label} failed: {detail}",
        classification=classify_exception(error),
        cause=error,
    )


def _excerpt(text: str) -> str:
    stripped = text.strip()
    if len(stripped) <= BODY_EXCERPT_CHARS:
        return stripped
    return f"{stripped[:BODY_EXCERPT_CHARS]}... [truncated]"


def _parse_retry_after(value: str | None) -> int | None:
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        return None
