import asyncio
import json
from typing import Any

import httpx
import pytest

from dispatcher.gateway import (
    BriefValidationError,
    CliGatewayClient,
    GatewayError,
    GatewayTimeoutError,
    HttpGatewayClient,
    parse_gateway_status,
)


def _http_client(handler: Any, **kwargs: Any) -> HttpGatewayClient:
    transport = httpx.MockTransport(handler)
    return HttpGatewayClient(
        "http://gateway.test/",
        client=httpx.AsyncClient(transport=transport),
        **kwargs,
    )


def test_http_spawn_posts_sessions_spawn_invocation() -> None:
    seen: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "result": {
                    "details": {
                        "status": "accepted",
                        "childSessionKey": "agent:dev-1:subagent:abc",
                        "runId": "run-42",
                    }
                }
            },
        )

    client = _http_client(handler, token="tkn", model="anthropic/claude-sonnet-4-5")
    session = asyncio.run(client.spawn_session("dev-1", "## brief", "dev-1-t1-1"))

    assert session.session_key == "agent:dev-1:subagent:abc"
    assert session.run_id == "run-42"
    assert seen["url"] == "http://gateway.test/tools/invoke"
    assert seen["auth"] == "Bearer tkn"
    assert seen["body"]["tool"] == "sessions_spawn"
    assert seen["body"]["args"]["agentId"] == "dev-1"
    assert seen["body"]["args"]["task"] == "## brief"
    assert seen["body"]["args"]["label"] == "dev-1-t1-1"
    assert seen["body"]["args"]["runTimeoutSeconds"] == 600
    assert seen["body"]["args"]["model"] == "anthropic/claude-sonnet-4-5"


def test_http_spawn_reads_session_from_text_content() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        text = json.dumps({"status": "accepted", "childSessionKey": "sess-9"})
        return httpx.Response(200, json={"result": {"content": [{"type": "text", "text": text}]}})

    session = asyncio.run(_http_client(handler).spawn_session("qa", "brief", "qa-t2-1"))

    assert session.session_key == "sess-9"
    assert session.run_id is None


def test_http_spawn_classifies_failures() -> None:
    def rejecting(request: httpx.Request) -> httpx.Response:
        return httpx.Response(422, text="task is required")

    def failing(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="overloaded")

    def timing_out(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    def refusing(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    def unexpected(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"result": {"details": {"status": "forbidden"}}})

    with pytest.raises(BriefValidationError) as rejected:
        asyncio.run(_http_client(rejecting).spawn_session("dev-1", "b", "s"))
    assert rejected.value.retriable is False
    assert rejected.value.status_code == 422

    with pytest.raises(GatewayError) as failed:
        asyncio.run(_http_client(failing).spawn_session("dev-1", "b", "s"))
    assert not isinstance(failed.value, (GatewayTimeoutError, BriefValidationError))
    assert failed.value.status_code == 503

    with pytest.raises(GatewayTimeoutError):
        asyncio.run(_http_client(timing_out).spawn_session("dev-1", "b", "s"))

    with pytest.raises(GatewayError, match="unreachable"):
        asyncio.run(_http_client(refusing).spawn_session("dev-1", "b", "s"))

    with pytest.raises(GatewayError, match="Unexpected response"):
        asyncio.run(_http_client(unexpected).spawn_session("dev-1", "b", "s"))


def test_http_status_maps_health_probe() -> None:
    def healthy(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/health"
        return httpx.Response(200, json={"ok": True})

    def refusing(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    def erroring(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    assert asyncio.run(_http_client(healthy).status()).health == "ok"
    assert asyncio.run(_http_client(refusing).status()).health == "down"
    assert asyncio.run(_http_client(erroring).status()).health == "warn"


class FakeProcess:
    def __init__(self, returncode: int, stdout: bytes = b"", stderr: bytes = b"") -> None:
        self.returncode = returncode
        self._stdout = stdout
        self._stderr = stderr

    async def communicate(self) -> tuple[bytes, bytes]:
        return self._stdout, self._stderr

    def kill(self) -> None:
        return None

    async def wait(self) -> int:
        return self.returncode


def _fake_exec(monkeypatch: pytest.MonkeyPatch, process: FakeProcess, calls: list[tuple]) -> None:
    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        _ = kwargs
        calls.append(args)
        return process

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)


def test_cli_build_command_shape() -> None:
    client = CliGatewayClient("openclaw", run_timeout_seconds=300)

    command = client.build_command("dev-2", "## brief")

    assert command == [
        "openclaw",
        "agent",
        "--agent",
        "dev-2",
        "--message",
        "## brief",
        "--timeout",
        "300",
        "--json",
    ]


def test_cli_spawn_parses_json_output(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[tuple] = []
    _fake_exec(
        monkeypatch,
        FakeProcess(0, stdout=b'{"sessionKey": "agent:dev-2:main", "runId": "r1"}'),
        calls,
    )

    session = asyncio.run(CliGatewayClient().spawn_session("dev-2", "brief", "dev-2-t1-1"))

    assert session.session_key == "agent:dev-2:main"
    assert session.run_id == "r1"
    assert calls[0][:4] == ("openclaw", "agent", "--agent", "dev-2")


def test_cli_spawn_falls_back_to_session_id(monkeypatch: pytest.MonkeyPatch) -> None:
    _fake_exec(monkeypatch, FakeProcess(0, stdout=b"done"), [])

    session = asyncio.run(CliGatewayClient().spawn_session("qa", "brief", "qa-t9-2"))

    assert session.session_key == "qa-t9-2"


def test_cli_spawn_maps_exit_codes(monkeypatch: pytest.MonkeyPatch) -> None:
    _fake_exec(monkeypatch, FakeProcess(2, stderr=b"missing --message"), [])
    with pytest.raises(BriefValidationError):
        asyncio.run(CliGatewayClient().spawn_session("qa", "brief", "s"))

    _fake_exec(monkeypatch, FakeProcess(1, stderr=b"gateway closed"), [])
    with pytest.raises(GatewayError, match="exit code 1"):
        asyncio.run(CliGatewayClient().spawn_session("qa", "brief", "s"))


def test_cli_missing_binary_is_gateway_error(monkeypatch: pytest.MonkeyPatch) -> None:
    async def missing(*args: Any, **kwargs: Any) -> FakeProcess:
        raise FileNotFoundError(args[0])

    monkeypatch.setattr(asyncio, "create_subprocess_exec", missing)

    with pytest.raises(GatewayError, match="not found"):
        asyncio.run(CliGatewayClient("no-such-openclaw").spawn_session("qa", "brief", "s"))
    assert asyncio.run(CliGatewayClient("no-such-openclaw").status()).health == "unknown"


def test_cli_status_parses_gateway_output(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[tuple] = []
    _fake_exec(monkeypatch, FakeProcess(0, stdout=b"Service: systemd\nRPC probe: ok\n"), calls)

    status = asyncio.run(CliGatewayClient().status())

    assert status.health == "ok"
    assert calls[0] == ("openclaw", "gateway", "status")


@pytest.mark.parametrize(
    ("text", "health", "summary"),
    [
        ("RPC probe: ok\nRuntime: running", "ok", "probe ok"),
        ("RPC probe: ok\nRuntime: unknown", "warn", "probe ok (runtime unknown)"),
        ("RPC probe: failed (connection refused)", "down", "probe failed"),
        ("Listening: 127.0.0.1:18789", "ok", "listening"),
        ("Dashboard: http://127.0.0.1:18789/", "ok", "listening"),
        ("Gateway service inactive", "down", "stopped"),
        ("Service config looks out of date; run doctor --repair", "warn", "config issue"),
        ("", "unknown", "unknown"),
    ],
)
def test_parse_gateway_status(text: str, health: str, summary: str) -> None:
    status = parse_gateway_status(text)

    assert status.health == health
    assert status.summary == summary
