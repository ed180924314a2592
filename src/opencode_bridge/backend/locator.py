"""Find the backend executable: explicit setting, install locations, then PATH."""

from __future__ import annotations

import os
import shutil
from collections.abc import Callable, Sequence
from pathlib import Path

from opencode_bridge.transport.errors import SupervisionError

EXECUTABLE_NAME = "opencode"


def default_install_locations() -> tuple[Path, ...]:
    return (
        Path.home() / ".opencode" / "bin" / EXECUTABLE_NAME,
        Path.home() / ".local" / "bin" / EXECUTABLE_NAME,
        Path("/opt/homebrew/bin") / EXECUTABLE_NAME,
        Path("/usr/local/bin") / EXECUTABLE_NAME,
        Path("/usr/bin") / EXECUTABLE_NAME,
    )


def locate_backend_executable(
    configured: Path | None,
    *,
    install_locations: Sequence[Path] | None = None,
    which: Callable[[str], str | None] = shutil.which,
) -> Path:
    if configured is not None:
        if _is_executable(configured):
            return configured
        raise SupervisionError(
            f"Configured OPENCODE_BIN is not an executable file: {configured}",
            reason_code="executable_not_found",
        )

    candidates = default_install_locations() if install_locations is None else install_locations
    for candidate in candidates:
        if _is_executable(candidate):
            return candidate

    found = which(EXECUTABLE_NAME)
    if found:
        return Path(found)
    raise SupervisionError(
        f"Could not find the `{EXECUTABLE_NAME}` executable. "
        "Install it, add it to PATH, or set OPENCODE_BIN.",
        reason_code="executable_not_found",
    )


def _is_executable(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)
