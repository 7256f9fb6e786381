"""Docker executor provider.

Starts one hardened, network-isolated container per unit attempt with the
unit's workspace mounted at ``/workspace``.
"""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
from collections.abc import Awaitable, Callable

from trackswarm.adapters.base import SecurityProfile, WorkspaceHandle
from trackswarm.errors import ExecutorError

logger = logging.getLogger(__name__)

_NAME_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*$")


class DockerExecutorProvider:
    """Runs executors through the ``docker`` CLI."""

    def __init__(
        self,
        *,
        binary: str = "docker",
        start_grace: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.binary = binary
        self.start_grace = start_grace
        self._sleep = sleep

    def is_available(self) -> bool:
        return shutil.which(self.binary) is not None

    async def _run(self, *args: str) -> tuple[int, str, str]:
        proc = await asyncio.create_subprocess_exec(
            self.binary, *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await proc.communicate()
        return (
            proc.returncode or 0,
            stdout.decode(errors="replace").strip(),
            stderr.decode(errors="replace").strip(),
        )

    async def _exists(self, name: str) -> bool:
        rc, out, _ = await self._run("ps", "-a", "--filter", f"name=^{name}$", "--format", "{{.Names}}")
        return rc == 0 and name in out.splitlines()

    def build_run_args(
        self, image: str, name: str, profile: SecurityProfile, workspace: WorkspaceHandle,
    ) -> list[str]:
        return [
            "run", "-d",
            "--name", name,
            *profile.docker_flags(),
            "-v", f"{workspace.path.resolve()}:/workspace",
            "-w", "/workspace",
            image,
        ]

    async def start(
        self, image: str, name: str, profile: SecurityProfile, workspace: WorkspaceHandle,
    ) -> str:
        if not image or not image.strip():
            raise ExecutorError("Docker image name is required")
        if not name or not _NAME_RE.match(name):
            raise ExecutorError(f"Invalid container name: {name!r}", executor=name)
        if await self._exists(name):
            raise ExecutorError(f"Container with name '{name}' already exists", executor=name)

        args = self.build_run_args(image, name, profile, workspace)
        logger.info("Starting container %s from %s", name, image)
        rc, out, err = await self._run(*args)
        if rc != 0:
            if "Unable to find image" in err:
                message = f"Docker image '{image}' not found. Pull the image first."
            elif "Conflict. The container name" in err:
                message = f"Container name '{name}' is already in use"
            else:
                message = f"Error starting container {name}: {err or out}"
            raise ExecutorError(message, executor=name)

        container_id = out.splitlines()[-1] if out else name
        try:
            if self.start_grace > 0:
                await self._sleep(self.start_grace)
            rc, status, _ = await self._run("ps", "--filter", f"id={container_id}", "--format", "{{.Status}}")
            if rc != 0 or "Up" not in status:
                raise ExecutorError(f"Container {name} failed to start properly", executor=name)
        except BaseException:
            # The container exists from here on; the caller never sees its name.
            await self.stop(name)
            raise

        logger.info("Container %s is running (%s)", name, status)
        return name

    async def stop(self, executor_id: str) -> None:
        """Stop and remove the container.  Failures are logged, not raised."""
        rc, _, err = await self._run("rm", "-f", executor_id)
        if rc != 0:
            logger.warning("Failed to remove container %s: %s", executor_id, err)
        else:
            logger.info("Container %s removed", executor_id)
