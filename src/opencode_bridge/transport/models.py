"""Request, response and event value types for the transport layer."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

DIRECTORY_HEADER = "x-opencode-directory"
HEALTH_PATH = "/global/health"
DEFAULT_EVENT_PATH = "/event"


class HttpMethod(str, Enum):
    """Verbs accepted by the backend API."""

    GET = "GET"
    POST = "POST"
    PATCH = "PATCH"
    PUT = "PUT"
    DELETE = "DELETE"


class FailureClass(str, Enum):
    """Exactly one class is attached to every transport failure."""

    TRANSIENT_HTTP = "transient_http"
    TRANSIENT_CONNECTION = "transient_connection"
    NOT_FOUND = "not_found"
    AUTH = "auth"
    CLIENT_ERROR = "client_error"
    SERVER_ERROR = "server_error"
    MALFORMED_RESPONSE = "malformed_response"
    VALIDATION_ERROR = "validation_error"
    SUPERVISION_ERROR = "supervision_error"

    @property
    def is_transient(self) -> bool:
        return self in {FailureClass.TRANSIENT_HTTP, FailureClass.TRANSIENT_CONNECTION}


class _NoContent:
    """Sentinel for a successful response without a body."""

    _instance: _NoContent | None = None

    def __new__(cls) -> _NoContent:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "NO_CONTENT"

    def __bool__(self) -> bool:
        return False


NO_CONTENT = _NoContent()


@dataclass(frozen=True, slots=True)
class RequestDescriptor:
    """One logical backend call: verb, backend-relative route, payload and scope."""

    method: HttpMethod
    path: str
    query: tuple[tuple[str, str], ...] = ()
    body: Any = None
    directory: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "method", _coerce_method(self.method))
        if "://" in self.path:
            raise ValueError(f"Request path must be backend-relative, got URL: {self.path!r}")
        if not self.path.startswith("/"):
            object.__setattr__(self, "path", f"/{self.path}")

    @classmethod
    def build(
        cls,
        method: HttpMethod | str,
        path: str,
        *,
        query: Mapping[str, object] | None = None,
        body: Any = None,
        directory: str | None = None,
    ) -> RequestDescriptor:
        """Build a descriptor, dropping `None` query values and stringifying the rest."""

        return cls(
            method=_coerce_method(method),
            path=path,
            query=normalize_query(query),
            body=body,
            directory=directory,
        )


@dataclass(slots=True)
class SseEvent:
    """One complete server-sent event."""

    event_type: str
    payload: Any
    event_id: str | None = None
    retry_ms: int | None = None
    raw_data: str = field(default="", repr=False)


def normalize_query(query: Mapping[str, object] | None) -> tuple[tuple[str, str], ...]:
    if not query:
        return ()
    pairs: list[tuple[str, str]] = []
    for key, value in query.items():
        if value is None:
            continue
        if isinstance(value, bool):
            pairs.append((key, "true" if value else "false"))
            continue
        pairs.append((key, str(value)))
    return tuple(pairs)


def _coerce_method(method: HttpMethod | str) -> HttpMethod:
    if isinstance(method, HttpMethod):
        return method
    try:
        return HttpMethod(method.upper())
    except (AttributeError, ValueError) as error:
        raise ValueError(f"Unsupported HTTP method: {method!r}") from error
