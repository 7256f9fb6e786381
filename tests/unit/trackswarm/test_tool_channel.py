"""Tests for the HTTP tool channel and its factory."""

from __future__ import annotations

import json
import socket
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from trackswarm.adapters.base import WorkspaceHandle
from trackswarm.errors import ToolError, ToolTimeoutError
from trackswarm.protocol.io import ENDPOINT_SIDECAR, ToolEndpoint
from trackswarm.tools.channel import HttpToolChannel, HttpToolChannelFactory, find_open_port


def _channel(handler) -> HttpToolChannel:
    return HttpToolChannel(
        ToolEndpoint(host="127.0.0.1", port=8123, executor="ts-a"),
        call_timeout=5.0,
        transport=httpx.MockTransport(handler),
    )


@pytest.fixture
def workspace(tmp_path: Path) -> WorkspaceHandle:
    path = tmp_path / "wt"
    path.mkdir()
    return WorkspaceHandle(path=path, branch="work/a")


class TestInvoke:
    @pytest.mark.asyncio
    async def test_posts_arguments(self) -> None:
        seen: list[tuple[str, dict]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((request.url.path, json.loads(request.content)))
            return httpx.Response(200, json={"success": True, "exitCode": 0, "log": "built"})

        channel = _channel(handler)
        result = await channel.invoke("build.project", {"target": "all"})
        await channel.close()

        assert result["log"] == "built"
        assert seen == [("/tools/build.project", {"target": "all"})]

    @pytest.mark.asyncio
    async def test_scope_is_sent_with_every_call(self) -> None:
        bodies: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"success": True})

        channel = HttpToolChannel(
            ToolEndpoint(host="127.0.0.1", port=8123, executor="ts-a"),
            transport=httpx.MockTransport(handler),
            scope={"workspace": "/wt/work-a", "executor": "ts-a"},
        )
        await channel.invoke("build.project", {"target": "all"})
        await channel.invoke("test.run", {"workspace": "/elsewhere"})
        await channel.close()

        assert bodies == [
            {"target": "all", "workspace": "/wt/work-a", "executor": "ts-a"},
            {"workspace": "/wt/work-a", "executor": "ts-a"},
        ]

    @pytest.mark.asyncio
    async def test_reported_failure_is_fatal(self) -> None:
        channel = _channel(lambda r: httpx.Response(200, json={"success": False, "log": "3 tests failed"}))
        with pytest.raises(ToolError, match="3 tests failed") as info:
            await channel.invoke("test.run", {})
        assert not info.value.retryable
        assert info.value.tool_name == "test.run"

    @pytest.mark.asyncio
    async def test_is_error_flag(self) -> None:
        channel = _channel(lambda r: httpx.Response(200, json={"isError": True, "log": "lint crashed"}))
        with pytest.raises(ToolError, match="lint crashed"):
            await channel.invoke("lint.fix", {})

    @pytest.mark.asyncio
    async def test_timeout_maps_to_tool_timeout(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("read timed out", request=request)

        channel = _channel(handler)
        with pytest.raises(ToolTimeoutError) as info:
            await channel.invoke("build.project", {})
        assert info.value.retryable
        assert info.value.timeout == 5.0

    @pytest.mark.parametrize(("status", "retryable"), [(503, True), (429, True), (400, False)])
    @pytest.mark.asyncio
    async def test_http_status(self, status: int, retryable: bool) -> None:
        channel = _channel(lambda r: httpx.Response(status, text="nope"))
        with pytest.raises(ToolError, match=f"status {status}") as info:
            await channel.invoke("build.project", {})
        assert info.value.retryable is retryable

    @pytest.mark.asyncio
    async def test_connection_error_is_retryable(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ToolError) as info:
            await _channel(handler).invoke("build.project", {})
        assert info.value.retryable

    @pytest.mark.asyncio
    async def test_invalid_json(self) -> None:
        channel = _channel(lambda r: httpx.Response(200, text="<html>"))
        with pytest.raises(ToolError, match="Failed to parse"):
            await channel.invoke("build.project", {})

    @pytest.mark.asyncio
    async def test_closed_channel_refuses(self) -> None:
        channel = _channel(lambda r: httpx.Response(200, json={}))
        await channel.close()
        await channel.close()
        assert channel.closed
        with pytest.raises(ToolError, match="closed"):
            await channel.invoke("build.project", {})

    @pytest.mark.asyncio
    async def test_close_terminates_tool_host(self) -> None:
        proc = MagicMock()
        proc.returncode = None
        proc.wait = AsyncMock(return_value=0)
        channel = HttpToolChannel(
            ToolEndpoint(host="127.0.0.1", port=8123),
            process=proc,
            transport=httpx.MockTransport(lambda r: httpx.Response(200)),
        )
        await channel.close()
        await channel.close()
        proc.terminate.assert_called_once()
        proc.kill.assert_not_called()


class TestFactory:
    @pytest.mark.asyncio
    async def test_open_writes_sidecar(self, workspace: WorkspaceHandle) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/health":
                return httpx.Response(200, json={"status": "ok"})
            return httpx.Response(200, json={"success": True})

        factory = HttpToolChannelFactory(port_range=(8123, 8200), transport=httpx.MockTransport(handler))
        channel = await factory.open(workspace, "ts-a-a0")

        assert (workspace.path / ENDPOINT_SIDECAR).exists()
        sidecar = json.loads((workspace.path / ENDPOINT_SIDECAR).read_text())
        assert sidecar == {"host": "127.0.0.1", "port": 8123, "executor": "ts-a-a0"}
        assert channel.endpoint.base_url == "http://127.0.0.1:8123"
        await channel.close()

    @pytest.mark.asyncio
    async def test_shared_host_calls_are_scoped_per_unit(self, tmp_path: Path) -> None:
        bodies: list[tuple[int, dict]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/health":
                return httpx.Response(200)
            bodies.append((request.url.port, json.loads(request.content)))
            return httpx.Response(200, json={"success": True})

        factory = HttpToolChannelFactory(port_range=(8123, 8200), transport=httpx.MockTransport(handler))
        handles = []
        for name in ("a", "b"):
            path = tmp_path / f"work-{name}"
            path.mkdir()
            handles.append(WorkspaceHandle(path=path, branch=f"work/{name}"))

        first = await factory.open(handles[0], "ts-a-a0")
        second = await factory.open(handles[1], "ts-b-a0")
        await first.invoke("build.project", {})
        await second.invoke("build.project", {})
        await first.close()
        await second.close()

        assert bodies == [
            (8123, {"workspace": str(handles[0].path), "executor": "ts-a-a0"}),
            (8123, {"workspace": str(handles[1].path), "executor": "ts-b-a0"}),
        ]

    @pytest.mark.asyncio
    async def test_unhealthy_host_times_out(self, workspace: WorkspaceHandle) -> None:
        factory = HttpToolChannelFactory(
            startup_timeout=0,
            health_interval=0,
            transport=httpx.MockTransport(lambda r: httpx.Response(503)),
        )
        with pytest.raises(ToolError, match="startup timeout") as info:
            await factory.open(workspace, "ts-a-a0")
        assert info.value.retryable
        assert not (workspace.path / ENDPOINT_SIDECAR).exists()

    @pytest.mark.asyncio
    async def test_spawns_host_with_placeholders(self, workspace: WorkspaceHandle) -> None:
        proc = MagicMock()
        proc.returncode = None
        proc.wait = AsyncMock(return_value=0)
        spawn = AsyncMock(return_value=proc)
        factory = HttpToolChannelFactory(
            ["tool-host", "--port", "{port}", "--root", "{workspace}", "--container", "{executor}"],
            transport=httpx.MockTransport(lambda r: httpx.Response(200)),
        )

        with (
            patch("trackswarm.tools.channel.find_open_port", return_value=8555),
            patch("trackswarm.tools.channel.asyncio.create_subprocess_exec", spawn),
        ):
            channel = await factory.open(workspace, "ts-a-a0")

        argv = spawn.call_args.args
        assert argv == ("tool-host", "--port", "8555", "--root", str(workspace.path), "--container", "ts-a-a0")
        env = spawn.call_args.kwargs["env"]
        assert env["PORT"] == "8555"
        assert env["TOOL_WORKSPACE"] == str(workspace.path)
        assert env["CONTAINER_NAME"] == "ts-a-a0"
        assert channel.endpoint.port == 8555

        await channel.close()
        proc.terminate.assert_called_once()

    @pytest.mark.asyncio
    async def test_host_exit_before_healthy(self, workspace: WorkspaceHandle) -> None:
        proc = MagicMock()
        proc.returncode = 2
        factory = HttpToolChannelFactory(
            ["tool-host"],
            transport=httpx.MockTransport(lambda r: httpx.Response(503)),
        )
        with (
            patch("trackswarm.tools.channel.find_open_port", return_value=8555),
            patch("trackswarm.tools.channel.asyncio.create_subprocess_exec", AsyncMock(return_value=proc)),
        ):
            with pytest.raises(ToolError, match="exited with code 2"):
                await factory.open(workspace, "ts-a-a0")


class TestFindOpenPort:
    def test_skips_bound_port(self) -> None:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as held:
            held.bind(("127.0.0.1", 0))
            port = held.getsockname()[1]
            with pytest.raises(ToolError, match="No open ports"):
                find_open_port(port, port)

    def test_returns_port_in_range(self) -> None:
        port = find_open_port(20000, 20100)
        assert 20000 <= port <= 20100
