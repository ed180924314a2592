"""Deterministic failure classification for the transport retry policy.

Classification is computed before any retry decision and depends only on the
status code or the exception type, never on retry state.
"""

from __future__ import annotations

import httpx

from opencode_bridge.transport.errors import TransportFailureClassification
from opencode_bridge.transport.models import FailureClass

TRANSPORT_FAILURE_CLASSIFIER_VERSION = 1

TRANSIENT_STATUS_CODES: frozenset[int] = frozenset({429, 502, 503, 504})
AUTH_STATUS_CODES: frozenset[int] = frozenset({401, 403})
HTTP_NOT_FOUND = 404

# Order matters: subclasses before their bases.
_EXCEPTION_RULES: tuple[tuple[type[BaseException], FailureClass, str], ...] = (
    (httpx.ConnectTimeout, FailureClass.TRANSIENT_CONNECTION, "connect_timeout"),
    (httpx.ConnectError, FailureClass.TRANSIENT_CONNECTION, "connect_error"),
    (httpx.UnsupportedProtocol, FailureClass.CLIENT_ERROR, "unsupported_protocol"),
    (httpx.ProxyError, FailureClass.CLIENT_ERROR, "proxy_error"),
    (httpx.TimeoutException, FailureClass.TRANSIENT_HTTP, "timeout"),
    (httpx.RemoteProtocolError, FailureClass.TRANSIENT_HTTP, "remote_protocol_error"),
    (httpx.NetworkError, FailureClass.TRANSIENT_HTTP, "network_error"),
    (httpx.DecodingError, FailureClass.MALFORMED_RESPONSE, "decoding_error"),
    (ValueError, FailureClass.MALFORMED_RESPONSE, "invalid_json"),
)


def classify_status(status_code: int) -> TransportFailureClassification:
    """Classify a non-success HTTP status code."""

    if status_code in TRANSIENT_STATUS_CODES:
        return TransportFailureClassification(
            failure_class=FailureClass.TRANSIENT_HTTP,
            reason_code=f"http_{status_code}",
            matched_rule="transient_status",
            status_code=status_code,
        )
    if status_code == HTTP_NOT_FOUND:
        return TransportFailureClassification(
            failure_class=FailureClass.NOT_FOUND,
            reason_code="http_404",
            matched_rule="not_found_status",
            status_code=status_code,
        )
    if status_code in AUTH_STATUS_CODES:
        return TransportFailureClassification(
            failure_class=FailureClass.AUTH,
            reason_code=f"http_{status_code}",
            matched_rule="auth_status",
            status_code=status_code,
        )
    if 400 <= status_code < 500:
        return TransportFailureClassification(
            failure_class=FailureClass.CLIENT_ERROR,
            reason_code=f"http_{status_code}",
            matched_rule="client_error_status",
            status_code=status_code,
        )
    return TransportFailureClassification(
        failure_class=FailureClass.SERVER_ERROR,
        reason_code=f"http_{status_code}",
        matched_rule="fallback_server_error",
        status_code=status_code,
    )


def classify_exception(error: BaseException) -> TransportFailureClassification:
    """Classify an exception raised while issuing a request or decoding its body."""

    for error_type, failure_class, rule in _EXCEPTION_RULES:
        if isinstance(error, error_type):
            return TransportFailureClassification(
                failure_class=failure_class,
                reason_code=rule,
                matched_rule="exception_type",
            )
    return TransportFailureClassification(
        failure_class=FailureClass.CLIENT_ERROR,
        reason_code=type(error).__name__.lower(),
        matched_rule="fallback_client_error",
    )
