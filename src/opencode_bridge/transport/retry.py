"""Exponential backoff policy and per-call retry bookkeeping."""

from __future__ import annotations

import time
from dataclasses import dataclass, field

from opencode_bridge.config import RetrySettings
from opencode_bridge.transport.errors import TransportError
from opencode_bridge.transport.models import FailureClass


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Attempt ceiling plus `base * 2^(attempt-1)` backoff capped at `max_delay`."""

    max_attempts: int = 3
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 8.0

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> RetryPolicy:
        return cls(
            max_attempts=settings.max_attempts,
            base_delay_seconds=settings.base_delay_seconds,
            max_delay_seconds=settings.max_delay_seconds,
        )

    def delay_for(
        self,
        attempt: int,
        *,
        retry_after: int | None = None,
        previous: float | None = None,
    ) -> float:
        """Delay to wait after failed `attempt` (1-based) before the next one.

        Never shorter than double the `previous` delay, so a large `Retry-After`
        early on does not make later waits shrink.
        """

        delay = self.base_delay_seconds * (2 ** (attempt - 1))
        if previous is not None:
            delay = max(delay, previous * 2)
        if retry_after is not None:
            delay = max(delay, float(retry_after))
        return min(delay, self.max_delay_seconds)

    def should_retry(self, state: RetryState) -> bool:
        error = state.last_error
        if error is None or not error.classification.is_transient:
            return False
        return state.attempt < self.max_attempts


@dataclass(slots=True)
class RetryState:
    """Counters for one attempt loop; never shared across calls."""

    attempt: int = 0
    started_monotonic: float = field(default_factory=time.monotonic)
    last_error: TransportError | None = None
    delays: list[float] = field(default_factory=list)
    failure_classes: list[FailureClass] = field(default_factory=list)

    @property
    def elapsed_seconds(self) -> float:
        return time.monotonic() - self.started_monotonic

    def begin_attempt(self) -> int:
        self.attempt += 1
        return self.attempt

    @property
    def only_connection_failures(self) -> bool:
        """True when every attempt so far failed without reaching the backend."""
        return bool(self.failure_classes) and all(
            failure_class == FailureClass.TRANSIENT_CONNECTION
            for failure_class in self.failure_classes
        )

    def record_failure(self, error: TransportError) -> None:
        self.last_error = error
        self.failure_classes.append(error.failure_class)
