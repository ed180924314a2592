"""Supervise a locally launched backend process.

The supervisor probes the configured base URL, launches `opencode serve` when
nothing answers, and waits for the new process to report healthy. Concurrent
`ensure_running()` calls share one in-flight check, so one outage produces at
most one launch. Only processes launched here are ever terminated; a backend
that was already running is left alone.
"""

from __future__ import annotations

import asyncio
import atexit
import ipaddress
import logging
import os
import signal
import subprocess
import time
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import IO, Any
from urllib.parse import urlparse

import httpx

from opencode_bridge.backend.locator import locate_backend_executable
from opencode_bridge.config import ServerSettings, SupervisorSettings
from opencode_bridge.transport.errors import SupervisionError
from opencode_bridge.transport.models import HEALTH_PATH

logger = logging.getLogger(__name__)

HEALTH_PROBE_TIMEOUT_SECONDS = 2.0
TERMINATE_GRACE_SECONDS = 2.0

_TERMINATION_SIGNALS: tuple[signal.Signals, ...] = tuple(
    getattr(signal, name) for name in ("SIGTERM", "SIGHUP") if hasattr(signal, name)
)

PopenFn = Callable[..., "subprocess.Popen[bytes]"]
SleepFn = Callable[[float], Awaitable[None]]


class BackendSupervisor:
    """Owns at most one child backend process for the lifetime of the bridge."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        server: ServerSettings,
        settings: SupervisorSettings,
        probe_transport: httpx.AsyncBaseTransport | None = None,
        popen: PopenFn = subprocess.Popen,
        sleep: SleepFn = asyncio.sleep,
        install_exit_handlers: bool = True,
    ) -> None:
        self._server = server
        self._settings = settings
        self._probe_transport = probe_transport
        self._popen = popen
        self._sleep = sleep
        self._install_exit_handlers = install_exit_handlers
        self._exit_handlers_installed = False
        self._process: subprocess.Popen[bytes] | None = None
        self._log_handle: IO[bytes] | None = None
        self._inflight: asyncio.Future[None] | None = None
        self.launch_count = 0

    @property
    def managed_pid(self) -> int | None:
        if self._process is None:
            return None
        return self._process.pid

    @property
    def owns_running_process(self) -> bool:
        return self._process is not None and self._process.poll() is None

    async def is_reachable(self) -> bool:
        """Probe the health route; any non-5xx answer means a backend is listening."""

        auth = (
            httpx.BasicAuth(self._server.username, self._server.password)
            if self._server.auth_enabled
            else None
        )
        try:
            async with httpx.AsyncClient(
                base_url=self._server.base_url,
                auth=auth,
                timeout=httpx.Timeout(HEALTH_PROBE_TIMEOUT_SECONDS),
                transport=self._probe_transport,
            ) as client:
                response = await client.get(HEALTH_PATH)
        except httpx.HTTPError as error:
            logger.debug("Health probe to %s failed: %s", self._server.base_url, error)
            return False
        return response.status_code < 500

    async def ensure_running(self) -> None:
        """Make sure a reachable backend exists, launching one if needed.

        Raises:
            SupervisionError: executable missing, launch failed, or the launched
                process did not become healthy in time.
        """

        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.ensure_future(self._ensure_running_once())
        await asyncio.shield(self._inflight)

    def shutdown(self) -> None:
        """Terminate the process this supervisor launched, if it is still alive."""

        process = self._process
        self._process = None
        if process is not None and process.poll() is None:
            logger.info("Terminating backend process %d", process.pid)
            _terminate_process(process)
        self._close_log()

    def register_exit_handlers(self) -> None:
        """Tie the child's lifetime to ours: atexit plus common termination signals.

        A forcible kill of the bridge bypasses these handlers; the child then
        outlives it.
        """

        if self._exit_handlers_installed:
            return
        self._exit_handlers_installed = True
        atexit.register(self.shutdown)
        for signum in _TERMINATION_SIGNALS:
            self._chain_signal_handler(signum)

    async def _ensure_running_once(self) -> None:
        if await self.is_reachable():
            if self._process is None:
                logger.debug("Backend at %s is already reachable", self._server.base_url)
            return

        await self._discard_unhealthy_child()
        if not _is_loopback_url(self._server.base_url):
            raise SupervisionError(
                f"Backend at {self._server.base_url} is unreachable and is not a local address; "
                "it cannot be launched from here.",
                reason_code="remote_backend",
            )
        executable = locate_backend_executable(self._settings.executable)
        self._spawn(executable)
        await self._wait_until_healthy()

    def _spawn(self, executable: Path) -> None:
        host, port = _host_and_port(self._server.base_url)
        args = [str(executable), "serve", "--hostname", host, "--port", str(port)]
        env = os.environ.copy()
        if self._server.auth_enabled:
            env["OPENCODE_SERVER_USERNAME"] = self._server.username
            env["OPENCODE_SERVER_PASSWORD"] = self._server.password or ""
        workdir = self._settings.workdir or Path.cwd()

        # The bridge's own stdio is its transport; the child must never write to it.
        output: IO[bytes] | int = subprocess.DEVNULL
        log_path = self._settings.log_path
        if log_path is not None:
            try:
                log_path.parent.mkdir(parents=True, exist_ok=True)
                self._log_handle = log_path.open("ab")
            except OSError as error:
                raise SupervisionError(
                    f"Cannot open backend log file {log_path}: {error}",
                    reason_code="log_open_failed",
                ) from error
            output = self._log_handle

        try:
            self._process = self._popen(  # noqa: S603
                args,
                cwd=str(workdir),
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=output,
                stderr=subprocess.STDOUT if self._log_handle is not None else subprocess.DEVNULL,
                start_new_session=True,
            )
        except FileNotFoundError as error:
            self._close_log()
            raise SupervisionError(
                f"Backend executable not found: {executable}",
                reason_code="executable_not_found",
            ) from error
        except OSError as error:
            self._close_log()
            raise SupervisionError(
                f"Backend failed to start: {error}",
                reason_code="launch_failed",
            ) from error

        self.launch_count += 1
        if self._install_exit_handlers:
            self.register_exit_handlers()
        logger.info(
            "Launched backend %s (pid %d) in %s for %s",
            executable,
            self._process.pid,
            workdir,
            self._server.base_url,
        )

    async def _wait_until_healthy(self) -> None:
        process = self._process
        if process is None:
            raise SupervisionError("Backend process handle is missing.", reason_code="launch_failed")
        timeout = self._settings.startup_timeout_seconds
        deadline = time.monotonic() + timeout
        while True:
            if await self.is_reachable():
                logger.info("Backend pid %d is ready at %s", process.pid, self._server.base_url)
                return
            returncode = process.poll()
            if returncode is not None:
                self._process = None
                self._close_log()
                raise SupervisionError(
                    f"Backend exited with code {returncode} before becoming healthy.",
                    reason_code="backend_exited",
                )
            if time.monotonic() >= deadline:
                await self._stop_child()
                raise SupervisionError(
                    f"Backend did not become healthy within {timeout:g}s.",
                    reason_code="startup_timeout",
                )
            await self._sleep(self._settings.health_poll_interval_seconds)

    async def _discard_unhealthy_child(self) -> None:
        if self._process is None:
            return
        if self._process.poll() is None:
            logger.warning(
                "Managed backend pid %d is alive but unreachable; replacing it",
                self._process.pid,
            )
        await self._stop_child()

    async def _stop_child(self) -> None:
        """Like `shutdown()`, but waits for the child off the event loop."""

        process = self._process
        self._process = None
        if process is not None and process.poll() is None:
            logger.info("Terminating backend process %d", process.pid)
            await asyncio.to_thread(_terminate_process, process)
        self._close_log()

    def _close_log(self) -> None:
        if self._log_handle is not None:
            self._log_handle.close()
            self._log_handle = None

    def _chain_signal_handler(self, signum: signal.Signals) -> None:
        try:
            previous = signal.getsignal(signum)
        except ValueError:
            return

        def _handler(received: int, frame: Any) -> None:
            self.shutdown()
            if callable(previous):
                previous(received, frame)
                return
            if previous == signal.SIG_IGN:
                return
            signal.signal(received, signal.SIG_DFL)
            os.kill(os.getpid(), received)

        try:
            signal.signal(signum, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            logger.debug("Cannot install %s handler outside the main thread", signum.name)


def _terminate_process(process: subprocess.Popen[bytes]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=TERMINATE_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=TERMINATE_GRACE_SECONDS)


def _host_and_port(base_url: str) -> tuple[str, int]:
    parsed = urlparse(base_url)
    host = parsed.hostname or "127.0.0.1"
    port = parsed.port or (443 if parsed.scheme == "https" else 80)
    return host, port


def _is_loopback_url(base_url: str) -> bool:
    host = urlparse(base_url).hostname
    if host is None:
        return False
    if host == "localhost":
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False
