from __future__ import annotations

import json
from pathlib import Path

import allure
import httpx
import pytest
from click.testing import CliRunner

from opencode_bridge import __version__
from opencode_bridge.config import RetrySettings, Settings, SupervisorSettings
from opencode_bridge.controllers import BridgeCliController
from opencode_bridge.main import opencode_bridge

pytestmark = [
    allure.epic("Bridge Runtime"),
    allure.feature("Diagnostic CLI"),
]


def _offline_settings() -> Settings:
    return Settings(
        retry=RetrySettings(max_attempts=1),
        supervisor=SupervisorSettings(auto_serve=False),
    )


def _use_backend(monkeypatch: pytest.MonkeyPatch, handler) -> None:
    controller = BridgeCliController(
        settings_factory=_offline_settings,
        transport=httpx.MockTransport(handler),
    )
    monkeypatch.setattr("opencode_bridge.main.BRIDGE_CONTROLLER", controller)


def test_version():
    assert __version__


def test_version_option():
    runner = CliRunner()
    result = runner.invoke(opencode_bridge, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_health_prints_decoded_body(monkeypatch: pytest.MonkeyPatch) -> None:
    _use_backend(monkeypatch, lambda _: httpx.Response(200, json={"healthy": True}))

    result = CliRunner().invoke(opencode_bridge, ["health"])

    assert result.exit_code == 0
    assert json.loads(result.output) == {"healthy": True}


def test_request_sends_query_body_and_directory(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"id": "ses_1"})

    _use_backend(monkeypatch, handler)

    result = CliRunner().invoke(
        opencode_bridge,
        [
            "request",
            "post",
            "session",
            "--query",
            "limit=5",
            "--body",
            '{"title": "demo"}',
            "--directory",
            str(tmp_path),
        ],
    )

    assert result.exit_code == 0, result.output
    assert '"id": "ses_1"' in result.output
    request = seen[0]
    assert request.method == "POST"
    assert request.url.path == "/session"
    assert request.url.params["limit"] == "5"
    assert json.loads(request.content) == {"title": "demo"}
    assert request.headers["x-opencode-directory"] == str(tmp_path)


def test_request_reports_no_content(monkeypatch: pytest.MonkeyPatch) -> None:
    _use_backend(monkeypatch, lambda _: httpx.Response(204))

    result = CliRunner().invoke(opencode_bridge, ["request", "DELETE", "/session/ses_1"])

    assert result.exit_code == 0
    assert "(no content)" in result.output


def test_auth_failure_prints_class_and_hint(monkeypatch: pytest.MonkeyPatch) -> None:
    _use_backend(monkeypatch, lambda _: httpx.Response(401, text="unauthorized"))

    result = CliRunner().invoke(opencode_bridge, ["request", "GET", "/config"])

    assert result.exit_code == 1
    assert "error [auth]" in result.output
    assert "hint: Check OPENCODE_SERVER_USERNAME" in result.output
    assert "Backend call failed." in result.output


def test_connection_failure_without_auto_serve(monkeypatch: pytest.MonkeyPatch) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("Connection refused", request=request)

    _use_backend(monkeypatch, handler)

    result = CliRunner().invoke(opencode_bridge, ["health"])

    assert result.exit_code == 1
    assert "error [transient_connection]" in result.output
    assert "OPENCODE_AUTO_SERVE" in result.output


def test_invalid_directory_is_rejected_before_sending(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={})

    _use_backend(monkeypatch, handler)

    result = CliRunner().invoke(
        opencode_bridge,
        ["health", "--directory", str(tmp_path / "missing")],
    )

    assert result.exit_code == 1
    assert "error [validation_error]" in result.output
    assert calls == []


def test_events_prints_limited_stream(monkeypatch: pytest.MonkeyPatch) -> None:
    body = (
        b'data: {"type":"server.connected","properties":{}}\n\n'
        b'data: {"type":"session.updated","properties":{"id":"ses_1"}}\n\n'
        b'data: {"type":"session.idle","properties":{}}\n\n'
    )
    _use_backend(
        monkeypatch,
        lambda _: httpx.Response(
            200,
            headers={"content-type": "text/event-stream"},
            content=body,
        ),
    )

    result = CliRunner().invoke(opencode_bridge, ["events", "--limit", "2"])

    assert result.exit_code == 0, result.output
    lines = result.output.strip().splitlines()
    assert len(lines) == 2
    assert lines[0].startswith("server.connected ")
    assert lines[1].startswith("session.updated ")


def test_request_rejects_malformed_query_option() -> None:
    result = CliRunner().invoke(opencode_bridge, ["request", "GET", "/session", "--query", "limit"])

    assert result.exit_code == 2
    assert "Expected key=value" in result.output


def test_request_rejects_malformed_body_option() -> None:
    result = CliRunner().invoke(
        opencode_bridge,
        ["request", "POST", "/session", "--body", "{not json"],
    )

    assert result.exit_code == 2
    assert "Body is not valid JSON" in result.output


def test_invalid_configuration_is_a_cli_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OPENCODE_BASE_URL", "ftp://nowhere")
    controller = BridgeCliController(transport=httpx.MockTransport(lambda _: httpx.Response(200)))
    monkeypatch.setattr("opencode_bridge.main.BRIDGE_CONTROLLER", controller)

    result = CliRunner().invoke(opencode_bridge, ["health"])

    assert result.exit_code == 1
    assert "OPENCODE_BASE_URL" in result.output
