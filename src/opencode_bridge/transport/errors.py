"""Transport exception hierarchy; every failure carries a classification."""

from __future__ import annotations

from dataclasses import dataclass

from opencode_bridge.transport.models import FailureClass


@dataclass(slots=True)
class TransportFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    status_code: int | None = None

    @property
    def is_transient(self) -> bool:
        return self.failure_class.is_transient

    @property
    def is_connection_failure(self) -> bool:
        return self.failure_class == FailureClass.TRANSIENT_CONNECTION


class TransportError(Exception):
    """A classified failure of one logical request."""

    def __init__(
        self,
        message: str,
        *,
        classification: TransportFailureClassification,
        cause: BaseException | None = None,
        body: str | None = None,
        retry_after: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.classification = classification
        self.cause = cause
        self.body = body
        self.retry_after = retry_after

    @property
    def failure_class(self) -> FailureClass:
        return self.classification.failure_class

    @property
    def status_code(self) -> int | None:
        return self.classification.status_code

    def __str__(self) -> str:
        return self.message


class DirectoryScopeError(TransportError):
    """Directory scope failed local validation; nothing was sent."""

    def __init__(self, message: str, *, directory: str | None) -> None:
        super().__init__(
            message,
            classification=TransportFailureClassification(
                failure_class=FailureClass.VALIDATION_ERROR,
                reason_code="directory_scope_invalid",
                matched_rule="local_validation",
            ),
        )
        self.directory = directory


class SupervisionError(RuntimeError):
    """Backend could not be located, launched, or never became healthy."""

    def __init__(self, message: str, *, reason_code: str) -> None:
        super().__init__(message)
        self.reason_code = reason_code

    @property
    def failure_class(self) -> FailureClass:
        return FailureClass.SUPERVISION_ERROR


class BackendUnavailableError(TransportError):
    """Connection failure that supervised recovery could not repair."""

    def __init__(self, connection_error: TransportError, supervision_error: SupervisionError) -> None:
        super().__init__(
            f"{connection_error.message} (backend recovery failed: {supervision_error})",
            classification=connection_error.classification,
            cause=connection_error.cause,
        )
        self.connection_error = connection_error
        self.supervision_error = supervision_error
