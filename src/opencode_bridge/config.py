"""Runtime configuration for the transport layer and backend supervision."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

DEFAULT_BASE_URL = "http://127.0.0.1:4096"
DEFAULT_USERNAME = "opencode"


@dataclass(slots=True)
class ServerSettings:
    """Where the backend lives and how to authenticate against it."""

    base_url: str = DEFAULT_BASE_URL
    username: str = DEFAULT_USERNAME
    password: str | None = None

    @property
    def auth_enabled(self) -> bool:
        return bool(self.password)


@dataclass(slots=True)
class RetrySettings:
    """Per-call attempt loop and timeout settings."""

    max_attempts: int = 3
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 8.0
    request_timeout_seconds: float = 30.0
    connect_timeout_seconds: float = 5.0
    sse_read_timeout_seconds: float | None = None


@dataclass(slots=True)
class SupervisorSettings:
    """Backend process supervision settings."""

    auto_serve: bool = True
    max_reconnects: int = 3
    executable: Path | None = None
    workdir: Path | None = None
    startup_timeout_seconds: float = 20.0
    health_poll_interval_seconds: float = 0.25
    log_path: Path | None = None


@dataclass(slots=True)
class Settings:
    """Bridge settings grouped by concern."""

    server: ServerSettings = field(default_factory=ServerSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    supervisor: SupervisorSettings = field(default_factory=SupervisorSettings)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment with defaults for a local `opencode serve`."""

        return cls(
            server=ServerSettings(
                base_url=os.getenv("OPENCODE_BASE_URL", DEFAULT_BASE_URL).strip().rstrip("/"),
                username=os.getenv("OPENCODE_SERVER_USERNAME", DEFAULT_USERNAME).strip()
                or DEFAULT_USERNAME,
                password=os.getenv("OPENCODE_SERVER_PASSWORD") or None,
            ),
            retry=RetrySettings(
                max_attempts=int(os.getenv("OPENCODE_RETRY_MAX_ATTEMPTS", "3")),
                base_delay_seconds=float(os.getenv("OPENCODE_RETRY_BASE_DELAY_SECONDS", "0.5")),
                max_delay_seconds=float(os.getenv("OPENCODE_RETRY_MAX_DELAY_SECONDS", "8.0")),
                request_timeout_seconds=float(
                    os.getenv("OPENCODE_REQUEST_TIMEOUT_SECONDS", "30.0"),
                ),
                connect_timeout_seconds=float(
                    os.getenv("OPENCODE_CONNECT_TIMEOUT_SECONDS", "5.0"),
                ),
                sse_read_timeout_seconds=_env_optional_float("OPENCODE_SSE_READ_TIMEOUT_SECONDS"),
            ),
            supervisor=SupervisorSettings(
                auto_serve=_env_bool("OPENCODE_AUTO_SERVE", default=True),
                max_reconnects=int(os.getenv("OPENCODE_MAX_RECONNECTS", "3")),
                executable=_env_path("OPENCODE_BIN"),
                workdir=_env_path("OPENCODE_SERVE_WORKDIR"),
                startup_timeout_seconds=float(
                    os.getenv("OPENCODE_SERVE_STARTUP_TIMEOUT_SECONDS", "20.0"),
                ),
                log_path=_env_path("OPENCODE_SERVE_LOG_PATH"),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if any setting is out of range."""

        parsed = urlparse(self.server.base_url)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError(
                "Invalid OPENCODE_BASE_URL: "
                f"{self.server.base_url!r}. Expected an absolute http:// or https:// URL.",
            )
        if self.retry.max_attempts <= 0:
            raise ValueError("OPENCODE_RETRY_MAX_ATTEMPTS must be > 0.")
        if self.retry.base_delay_seconds <= 0:
            raise ValueError("OPENCODE_RETRY_BASE_DELAY_SECONDS must be > 0.")
        if self.retry.max_delay_seconds < self.retry.base_delay_seconds:
            raise ValueError(
                "OPENCODE_RETRY_MAX_DELAY_SECONDS must be >= OPENCODE_RETRY_BASE_DELAY_SECONDS.",
            )
        if self.retry.request_timeout_seconds <= 0:
            raise ValueError("OPENCODE_REQUEST_TIMEOUT_SECONDS must be > 0.")
        if self.retry.connect_timeout_seconds <= 0:
            raise ValueError("OPENCODE_CONNECT_TIMEOUT_SECONDS must be > 0.")
        sse_timeout = self.retry.sse_read_timeout_seconds
        if sse_timeout is not None and sse_timeout <= 0:
            raise ValueError("OPENCODE_SSE_READ_TIMEOUT_SECONDS must be > 0 when set.")
        if self.supervisor.max_reconnects < 0:
            raise ValueError("OPENCODE_MAX_RECONNECTS must be >= 0.")
        if self.supervisor.startup_timeout_seconds <= 0:
            raise ValueError("OPENCODE_SERVE_STARTUP_TIMEOUT_SECONDS must be > 0.")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")


def _env_optional_float(name: str) -> float | None:
    value = os.getenv(name, "").strip()
    if not value:
        return None
    try:
        return float(value)
    except ValueError as error:
        raise ValueError(f"Invalid numeric value for {name}: {value!r}") from error


def _env_path(name: str) -> Path | None:
    value = os.getenv(name, "").strip()
    if not value:
        return None
    return Path(value).expanduser()
