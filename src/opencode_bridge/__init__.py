"""Resilient HTTP/SSE bridge to a local or remote OpenCode server."""

__version__ = "0.1.0"
