"""Local backend process discovery and supervision."""

from opencode_bridge.backend.locator import EXECUTABLE_NAME, locate_backend_executable
from opencode_bridge.backend.supervisor import BackendSupervisor

__all__ = [
    "EXECUTABLE_NAME",
    "BackendSupervisor",
    "locate_backend_executable",
]
