"""HTTP tool channel.

A tool host process is spawned per workspace on an open local port.  Once
``GET /health`` answers 200 the workspace sidecar is written and tools are
invoked with ``POST /tools/<name>``.
"""

from __future__ import annotations

import asyncio
import logging
import os
import socket
import time
from typing import Any

import httpx

from trackswarm.adapters.base import WorkspaceHandle
from trackswarm.errors import ToolError, ToolTimeoutError
from trackswarm.protocol.io import ToolEndpoint, write_endpoint

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})


def find_open_port(start: int, end: int, host: str = "127.0.0.1") -> int:
    """Return the first port in ``[start, end]`` that can be bound on *host*."""
    for port in range(start, end + 1):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            try:
                sock.bind((host, port))
            except OSError:
                continue
            return port
    raise ToolError(f"No open ports found between {start} and {end}", retryable=True)


class HttpToolChannel:
    """Tool channel bound to one workspace's tool host."""

    def __init__(
        self,
        endpoint: ToolEndpoint,
        *,
        process: asyncio.subprocess.Process | None = None,
        call_timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
        scope: dict[str, str] | None = None,
    ) -> None:
        self.endpoint = endpoint
        self.call_timeout = call_timeout
        # Sent with every call so a shared host can route it to the right unit.
        self.scope: dict[str, str] = dict(scope or {})
        self._process = process
        self._client: httpx.AsyncClient | None = httpx.AsyncClient(
            base_url=endpoint.base_url,
            timeout=call_timeout,
            transport=transport,
        )

    @property
    def closed(self) -> bool:
        return self._client is None

    async def health(self) -> bool:
        if self._client is None:
            return False
        try:
            resp = await self._client.get("/health", timeout=5.0)
        except httpx.HTTPError as exc:
            logger.debug("Health check on %s failed: %s", self.endpoint.base_url, exc)
            return False
        return resp.status_code == 200

    async def invoke(self, tool: str, args: dict[str, Any]) -> Any:
        if self._client is None:
            raise ToolError(f"Tool channel closed; cannot invoke '{tool}'", tool_name=tool)

        logger.info("Invoking tool %s on %s", tool, self.endpoint.base_url)
        try:
            resp = await self._client.post(f"/tools/{tool}", json={**args, **self.scope})
            resp.raise_for_status()
        except httpx.TimeoutException as exc:
            raise ToolTimeoutError(tool, self.call_timeout) from exc
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            raise ToolError(
                f"Tool '{tool}' failed with status {status}: {exc.response.text[:200]}",
                tool_name=tool,
                retryable=status in _RETRYABLE_STATUS,
            ) from exc
        except httpx.RequestError as exc:
            raise ToolError(
                f"Tool '{tool}' request error: {exc}", tool_name=tool, retryable=True,
            ) from exc

        try:
            result = resp.json()
        except ValueError as exc:
            raise ToolError(f"Failed to parse response of tool '{tool}': {exc}", tool_name=tool) from exc

        if isinstance(result, dict) and (result.get("success") is False or result.get("isError") is True):
            log_tail = str(result.get("log", ""))[-500:]
            raise ToolError(f"Tool '{tool}' reported failure: {log_tail}", tool_name=tool)
        return result

    async def close(self) -> None:
        """Close the HTTP client and terminate the tool host.  Safe to call twice."""
        if self._client is not None:
            client, self._client = self._client, None
            await client.aclose()
        if self._process is not None:
            proc, self._process = self._process, None
            if proc.returncode is not None:
                return
            try:
                proc.terminate()
                await asyncio.wait_for(proc.wait(), timeout=5.0)
            except (asyncio.TimeoutError, ProcessLookupError):
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass


class HttpToolChannelFactory:
    """Spawns a tool host per workspace and hands out channels to it.

    ``host_command`` may contain ``{port}``, ``{workspace}`` and
    ``{executor}`` placeholders; the same values are exported as
    ``PORT``, ``TOOL_WORKSPACE`` and ``CONTAINER_NAME``.  With an empty
    command no process is spawned and the first port of the range is
    used, so one host serves every unit.  Every call therefore carries
    ``workspace`` and ``executor`` so a shared host can tell units apart.
    """

    def __init__(
        self,
        host_command: list[str] | None = None,
        *,
        host: str = "127.0.0.1",
        port_range: tuple[int, int] = (8000, 9000),
        call_timeout: float = 60.0,
        startup_timeout: float = 30.0,
        health_interval: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.host_command = list(host_command or [])
        self.host = host
        self.port_range = port_range
        self.call_timeout = call_timeout
        self.startup_timeout = startup_timeout
        self.health_interval = health_interval
        self._transport = transport

    async def _spawn(self, port: int, workspace: WorkspaceHandle, executor_id: str) -> asyncio.subprocess.Process:
        values = {"port": str(port), "workspace": str(workspace.path), "executor": executor_id}
        argv = [part.format(**values) for part in self.host_command]
        env = {
            **os.environ,
            "PORT": str(port),
            "TOOL_WORKSPACE": str(workspace.path),
            "CONTAINER_NAME": executor_id,
        }
        try:
            return await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(workspace.path),
                env=env,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as exc:
            raise ToolError(f"Failed to launch tool host {argv[0]!r}: {exc}") from exc

    async def _wait_healthy(self, channel: HttpToolChannel, process: asyncio.subprocess.Process | None) -> None:
        deadline = time.monotonic() + self.startup_timeout
        while True:
            if await channel.health():
                return
            if process is not None and process.returncode is not None:
                raise ToolError(
                    f"Tool host exited with code {process.returncode} before becoming healthy",
                )
            if time.monotonic() >= deadline:
                raise ToolError(
                    f"Tool host startup timeout after {self.startup_timeout}s "
                    f"on {channel.endpoint.base_url}",
                    retryable=True,
                )
            await asyncio.sleep(self.health_interval)

    async def open(self, workspace: WorkspaceHandle, executor_id: str) -> HttpToolChannel:
        process: asyncio.subprocess.Process | None = None
        if self.host_command:
            port = find_open_port(*self.port_range, host=self.host)
            process = await self._spawn(port, workspace, executor_id)
        else:
            port = self.port_range[0]

        endpoint = ToolEndpoint(host=self.host, port=port, executor=executor_id)
        channel = HttpToolChannel(
            endpoint,
            process=process,
            call_timeout=self.call_timeout,
            transport=self._transport,
            scope={"workspace": str(workspace.path), "executor": executor_id},
        )
        try:
            await self._wait_healthy(channel, process)
            write_endpoint(workspace.path, endpoint)
        except BaseException:
            await channel.close()
            raise
        logger.info("Tool host for %s listening on %s", workspace.branch, endpoint.base_url)
        return channel
