"""HTTP/SSE transport: descriptors, classification, retries and event streams."""

from opencode_bridge.transport.errors import (
    BackendUnavailableError,
    DirectoryScopeError,
    SupervisionError,
    TransportError,
    TransportFailureClassification,
)
from opencode_bridge.transport.failure_classifier import classify_exception, classify_status
from opencode_bridge.transport.http_client import HttpTransport
from opencode_bridge.transport.models import (
    NO_CONTENT,
    FailureClass,
    HttpMethod,
    RequestDescriptor,
    SseEvent,
)
from opencode_bridge.transport.retry import RetryPolicy, RetryState
from opencode_bridge.transport.sse import EventSubscription, SseFrameParser, StreamEndReason

__all__ = [
    "NO_CONTENT",
    "BackendUnavailableError",
    "DirectoryScopeError",
    "EventSubscription",
    "FailureClass",
    "HttpMethod",
    "HttpTransport",
    "RequestDescriptor",
    "RetryPolicy",
    "RetryState",
    "SseEvent",
    "SseFrameParser",
    "StreamEndReason",
    "SupervisionError",
    "TransportError",
    "TransportFailureClassification",
    "classify_exception",
    "classify_status",
]
