"""Controllers for the diagnostic CLI commands."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import httpx

from opencode_bridge.client import ReconnectingClient, Supervisor
from opencode_bridge.config import Settings
from opencode_bridge.transport import (
    NO_CONTENT,
    BackendUnavailableError,
    FailureClass,
    RequestDescriptor,
    TransportError,
)
from opencode_bridge.transport.models import DEFAULT_EVENT_PATH, HEALTH_PATH

_GUIDANCE: dict[FailureClass, str] = {
    FailureClass.AUTH: (
        "Check OPENCODE_SERVER_USERNAME / OPENCODE_SERVER_PASSWORD against the server's settings."
    ),
    FailureClass.TRANSIENT_CONNECTION: (
        "Start the backend with `opencode serve`, check OPENCODE_BASE_URL, "
        "or enable OPENCODE_AUTO_SERVE."
    ),
    FailureClass.NOT_FOUND: "The route or resource does not exist on this server.",
    FailureClass.VALIDATION_ERROR: "Pass an absolute path to an existing directory.",
}


@dataclass(slots=True)
class RequestCommand:
    """CLI input for one raw backend request."""

    method: str
    path: str
    query: dict[str, str] = field(default_factory=dict)
    body: Any = None
    directory: str | None = None


@dataclass(slots=True)
class EventsCommand:
    """CLI input for an event stream tail."""

    path: str = DEFAULT_EVENT_PATH
    limit: int | None = None
    directory: str | None = None


@dataclass(slots=True)
class CommandResult:
    """Rendered output plus overall success flag."""

    lines: list[str]
    success: bool = True


class BridgeCliController:
    """Run transport operations for CLI commands and render plain-text results."""

    def __init__(
        self,
        *,
        settings_factory: Callable[[], Settings] = Settings.from_env,
        transport: httpx.AsyncBaseTransport | None = None,
        supervisor: Supervisor | None = None,
    ) -> None:
        self._settings_factory = settings_factory
        self._transport = transport
        self._supervisor = supervisor

    def health(self, *, directory: str | None = None) -> CommandResult:
        return self.request(RequestCommand(method="GET", path=HEALTH_PATH, directory=directory))

    def request(self, command: RequestCommand) -> CommandResult:
        descriptor = RequestDescriptor.build(
            command.method,
            command.path,
            query=command.query,
            body=command.body,
            directory=command.directory,
        )
        return asyncio.run(self._run_request(descriptor))

    def events(self, command: EventsCommand) -> CommandResult:
        return asyncio.run(self._run_events(command))

    def _build_client(self) -> ReconnectingClient:
        settings = self._settings_factory()
        settings.validate()
        return ReconnectingClient.from_settings(
            settings,
            transport=self._transport,
            supervisor=self._supervisor,
        )

    async def _run_request(self, descriptor: RequestDescriptor) -> CommandResult:
        async with self._build_client() as client:
            try:
                result = await client.request(descriptor)
            except TransportError as error:
                return _failure_result(error)
        if result is NO_CONTENT:
            return CommandResult(lines=["(no content)"])
        return CommandResult(lines=[_render_json(result)])

    async def _run_events(self, command: EventsCommand) -> CommandResult:
        lines: list[str] = []
        async with self._build_client() as client:
            try:
                subscription = await client.subscribe(command.path, directory=command.directory)
            except TransportError as error:
                return _failure_result(error)
            async with subscription:
                async for event in subscription:
                    lines.append(f"{event.event_type} {_render_json(event.payload, indent=None)}")
                    if command.limit is not None and len(lines) >= command.limit:
                        break
            if subscription.error is not None:
                lines.extend(_failure_result(subscription.error).lines)
                return CommandResult(lines=lines, success=False)
        return CommandResult(lines=lines)


def _failure_result(error: TransportError) -> CommandResult:
    lines = [f"error [{error.failure_class.value}] {error.message}"]
    if isinstance(error, BackendUnavailableError):
        lines.append(
            f"backend recovery [{error.supervision_error.reason_code}] {error.supervision_error}",
        )
    guidance = _GUIDANCE.get(error.failure_class)
    if guidance:
        lines.append(f"hint: {guidance}")
    return CommandResult(lines=lines, success=False)


def _render_json(value: Any, *, indent: int | None = 2) -> str:
    if isinstance(value, str) and indent is None:
        return value
    return json.dumps(value, indent=indent, ensure_ascii=False)
