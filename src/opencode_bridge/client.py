"""Reconnecting backend client: the retrying transport plus supervised recovery."""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, Protocol, TypeVar

import httpx

from opencode_bridge.backend.supervisor import BackendSupervisor
from opencode_bridge.config import Settings
from opencode_bridge.transport.errors import BackendUnavailableError, SupervisionError, TransportError
from opencode_bridge.transport.http_client import HttpTransport, SleepFn
from opencode_bridge.transport.models import (
    DEFAULT_EVENT_PATH,
    HEALTH_PATH,
    HttpMethod,
    RequestDescriptor,
    normalize_query,
)
from opencode_bridge.transport.retry import RetryState
from opencode_bridge.transport.scope import normalize_directory_scope
from opencode_bridge.transport.sse import EventSubscription

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Supervisor(Protocol):
    """What the reconnection step needs from a backend supervisor."""

    async def ensure_running(self) -> None:
        """Return once a reachable backend exists; raise `SupervisionError` otherwise."""


class ReconnectionBudget:
    """Bridge-wide count of supervised reconnections.

    The counter only grows; once it reaches `ceiling` no further recovery is
    attempted until the bridge process restarts.
    """

    def __init__(self, ceiling: int = 3) -> None:
        self.ceiling = ceiling
        self._used = 0
        self._lock = threading.Lock()

    @property
    def used(self) -> int:
        return self._used

    @property
    def exhausted(self) -> bool:
        return self._used >= self.ceiling

    def try_acquire(self) -> bool:
        """Atomically check the ceiling and consume one reconnection."""

        with self._lock:
            if self._used >= self.ceiling:
                return False
            self._used += 1
            return True


class ReconnectingClient:
    """Entry point for call handlers: `request()` and `subscribe()` with recovery.

    When every attempt of a call failed without reaching the backend, the
    supervisor is asked to bring it up and the whole attempt loop runs once
    more. Concurrent calls hitting the same outage share one recovery and
    consume one unit of the budget.
    """

    def __init__(
        self,
        transport: HttpTransport,
        *,
        supervisor: Supervisor | None,
        budget: ReconnectionBudget,
        auto_serve: bool = True,
    ) -> None:
        self.transport = transport
        self.supervisor = supervisor
        self.budget = budget
        self.auto_serve = auto_serve
        self._recovery: asyncio.Future[None] | None = None
        self._recovery_generation = 0

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        supervisor: Supervisor | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> ReconnectingClient:
        http = HttpTransport(
            server=settings.server,
            retry=settings.retry,
            transport=transport,
            sleep=sleep,
        )
        if supervisor is None and settings.supervisor.auto_serve:
            supervisor = BackendSupervisor(server=settings.server, settings=settings.supervisor)
        return cls(
            http,
            supervisor=supervisor,
            budget=ReconnectionBudget(settings.supervisor.max_reconnects),
            auto_serve=settings.supervisor.auto_serve,
        )

    async def request(self, descriptor: RequestDescriptor) -> Any:
        directory = normalize_directory_scope(descriptor.directory)
        return await self._call_with_recovery(
            lambda: self.transport.attempt_request(descriptor, directory=directory),
            label=f"{descriptor.method.value} {descriptor.path}",
        )

    async def subscribe(
        self,
        path: str = DEFAULT_EVENT_PATH,
        *,
        query: Mapping[str, object] | None = None,
        directory: str | None = None,
    ) -> EventSubscription:
        normalized = normalize_directory_scope(directory)
        pairs = normalize_query(query)
        return await self._call_with_recovery(
            lambda: self.transport.attempt_subscribe(path, query=pairs, directory=normalized),
            label=f"GET {path} (events)",
        )

    async def get(
        self,
        path: str,
        query: Mapping[str, object] | None = None,
        directory: str | None = None,
    ) -> Any:
        return await self.request(
            RequestDescriptor.build(HttpMethod.GET, path, query=query, directory=directory),
        )

    async def post(
        self,
        path: str,
        body: Any = None,
        *,
        query: Mapping[str, object] | None = None,
        directory: str | None = None,
    ) -> Any:
        return await self.request(
            RequestDescriptor.build(
                HttpMethod.POST, path, query=query, body=body, directory=directory
            ),
        )

    async def patch(
        self,
        path: str,
        body: Any = None,
        *,
        query: Mapping[str, object] | None = None,
        directory: str | None = None,
    ) -> Any:
        return await self.request(
            RequestDescriptor.build(
                HttpMethod.PATCH, path, query=query, body=body, directory=directory
            ),
        )

    async def put(
        self,
        path: str,
        body: Any = None,
        *,
        query: Mapping[str, object] | None = None,
        directory: str | None = None,
    ) -> Any:
        return await self.request(
            RequestDescriptor.build(HttpMethod.PUT, path, query=query, body=body, directory=directory),
        )

    async def delete(
        self,
        path: str,
        query: Mapping[str, object] | None = None,
        directory: str | None = None,
    ) -> Any:
        return await self.request(
            RequestDescriptor.build(HttpMethod.DELETE, path, query=query, directory=directory),
        )

    async def health(self, directory: str | None = None) -> Any:
        return await self.get(HEALTH_PATH, directory=directory)

    async def aclose(self) -> None:
        await self.transport.aclose()

    async def __aenter__(self) -> ReconnectingClient:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.aclose()

    async def _call_with_recovery(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        label: str,
    ) -> T:
        state = RetryState()
        generation = self._recovery_generation
        try:
            return await self.transport.run_attempts(operation, label=label, state=state)
        except TransportError as error:
            if not self._recovery_applies(state):
                raise
            connection_error = error

        try:
            recovered = await self._recover_backend(label, generation)
        except SupervisionError as supervision_error:
            logger.warning("Backend recovery for %s failed: %s", label, supervision_error)
            raise BackendUnavailableError(connection_error, supervision_error) from connection_error
        if not recovered:
            raise connection_error

        logger.info("Retrying %s after backend recovery", label)
        return await self.transport.run_attempts(operation, label=label)

    def _recovery_applies(self, state: RetryState) -> bool:
        return self.auto_serve and self.supervisor is not None and state.only_connection_failures

    async def _recover_backend(self, label: str, generation: int) -> bool:
        """Run or join the shared recovery; `False` when the budget is spent.

        `generation` is the recovery count seen when the call started. A recovery
        that succeeded since then already covers this call's failures.
        """

        supervisor = self.supervisor
        if supervisor is None:
            return False
        inflight = self._recovery
        if inflight is not None and not inflight.done():
            logger.debug("%s joins the backend recovery already in progress", label)
            await asyncio.shield(inflight)
            return True
        if (
            inflight is not None
            and generation != self._recovery_generation
            and not inflight.cancelled()
            and inflight.exception() is None
        ):
            logger.debug("%s retries after a backend recovery that finished meanwhile", label)
            return True

        if not self.budget.try_acquire():
            logger.warning(
                "Backend unreachable during %s; reconnection budget exhausted (%d/%d)",
                label,
                self.budget.used,
                self.budget.ceiling,
            )
            return False

        logger.warning(
            "Backend unreachable during %s; ensuring it is running (reconnect %d/%d)",
            label,
            self.budget.used,
            self.budget.ceiling,
        )
        self._recovery_generation += 1
        self._recovery = asyncio.ensure_future(supervisor.ensure_running())
        await asyncio.shield(self._recovery)
        return True
