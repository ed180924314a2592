"""Directory scope validation and header encoding."""

from __future__ import annotations

import os
from pathlib import Path
from urllib.parse import quote

from opencode_bridge.transport.errors import DirectoryScopeError
from opencode_bridge.transport.models import DIRECTORY_HEADER


def normalize_directory_scope(directory: str | os.PathLike[str] | None) -> str | None:
    """Return the normalized absolute directory, or raise before any network call.

    The result has no trailing separator (except for the filesystem root) and
    refers to a path that exists right now.
    """

    if directory is None:
        return None
    raw = os.fspath(directory).strip()
    if not raw:
        raise DirectoryScopeError("Directory scope must not be empty.", directory=raw)
    expanded = os.path.expanduser(raw)
    if not os.path.isabs(expanded):
        raise DirectoryScopeError(
            f"Directory scope must be an absolute path: {raw!r}",
            directory=raw,
        )
    normalized = os.path.normpath(expanded)
    if not Path(normalized).exists():
        raise DirectoryScopeError(
            f"Directory scope does not exist: {normalized}",
            directory=raw,
        )
    return normalized


def directory_scope_headers(directory: str | None) -> dict[str, str]:
    if directory is None:
        return {}
    if directory.isascii():
        return {DIRECTORY_HEADER: directory}
    return {DIRECTORY_HEADER: quote(directory, safe="/:\\")}
