"""CLI entrypoint for opencode-bridge diagnostics."""

import json
import logging
import sys
from collections.abc import Callable

import rich_click as click

from opencode_bridge import __version__
from opencode_bridge.controllers import (
    BridgeCliController,
    CommandResult,
    EventsCommand,
    RequestCommand,
)
from opencode_bridge.transport.models import DEFAULT_EVENT_PATH, HttpMethod

click.rich_click.USE_MARKDOWN = True
BRIDGE_CONTROLLER = BridgeCliController()


@click.group()
@click.version_option(version=__version__, prog_name="opencode-bridge")
@click.option("--verbose", "-v", is_flag=True, help="Log transport activity to stderr.")
def opencode_bridge(verbose: bool) -> None:
    """Resilient HTTP/SSE bridge to an OpenCode server."""

    # stdout is reserved for command output.
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@opencode_bridge.command("health")
@click.option("--directory", default=None, help="Absolute project directory to scope the call to.")
def health(directory: str | None) -> None:
    """Check backend health, launching a local backend if needed."""

    _finish(_run(lambda: BRIDGE_CONTROLLER.health(directory=directory)))


@opencode_bridge.command("request")
@click.argument(
    "method",
    type=click.Choice([method.value for method in HttpMethod], case_sensitive=False),
)
@click.argument("path")
@click.option(
    "--query",
    "query",
    multiple=True,
    callback=lambda _ctx, _param, value: _parse_query(value),
    help="Query parameter as key=value. Can be repeated.",
)
@click.option(
    "--body",
    default=None,
    callback=lambda _ctx, _param, value: _parse_body(value),
    help="JSON request body.",
)
@click.option("--directory", default=None, help="Absolute project directory to scope the call to.")
def request(
    method: str,
    path: str,
    query: dict[str, str],
    body: object,
    directory: str | None,
) -> None:
    """Send one request to a backend route and print the decoded response."""

    _finish(
        _run(
            lambda: BRIDGE_CONTROLLER.request(
                RequestCommand(
                    method=method,
                    path=path,
                    query=query,
                    body=body,
                    directory=directory,
                ),
            ),
        ),
    )


@opencode_bridge.command("events")
@click.option("--path", default=DEFAULT_EVENT_PATH, show_default=True, help="Event stream route.")
@click.option(
    "--limit",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many events.",
)
@click.option(
    "--directory",
    default=None,
    help="Absolute project directory to scope the stream to.",
)
def events(path: str, limit: int | None, directory: str | None) -> None:
    """Print server-sent events as `type payload` lines."""

    _finish(
        _run(
            lambda: BRIDGE_CONTROLLER.events(
                EventsCommand(path=path, limit=limit, directory=directory),
            ),
        ),
    )


def _run(action: Callable[[], CommandResult]) -> CommandResult:
    try:
        return action()
    except ValueError as error:
        raise click.ClickException(str(error)) from error


def _finish(result: CommandResult) -> None:
    for line in result.lines:
        click.echo(line)
    if not result.success:
        raise click.ClickException("Backend call failed.")


def _parse_query(values: tuple[str, ...]) -> dict[str, str]:
    query: dict[str, str] = {}
    for value in values:
        key, separator, item = value.partition("=")
        if not separator or not key:
            raise click.BadParameter(f"Expected key=value, got {value!r}.")
        query[key] = item
    return query


def _parse_body(value: str | None) -> object:
    if value is None:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError as error:
        raise click.BadParameter(f"Body is not valid JSON: {error}") from error


if __name__ == "__main__":  # pragma: no cover
    opencode_bridge()
