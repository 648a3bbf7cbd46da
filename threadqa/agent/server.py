"""
Supervisor for a locally spawned agent-runtime process.

Only used when THREADQA_SPAWN_RUNTIME is enabled; otherwise the runtime is
expected to be running already at RUNTIME_URL.
"""
import asyncio
import logging
import time
from typing import Optional, Sequence

import httpx

from threadqa.config import RUNTIME_COMMAND

logger = logging.getLogger(__name__)

HEALTH_TIMEOUT = 60.0
HEALTH_POLL_INTERVAL = 1.0
STOP_TIMEOUT = 10.0


class RuntimeServer:
    def __init__(
        self,
        repo_dir: str,
        host: str = "127.0.0.1",
        port: int = 4096,
        command: Sequence[str] = RUNTIME_COMMAND,
        health_path: str = "/global/health",
    ) -> None:
        self.repo_dir = repo_dir
        self.host = host
        self.port = port
        self.command = list(command)
        self.health_path = health_path
        self.restarting = False
        self._process: Optional[asyncio.subprocess.Process] = None

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def start(self, health_timeout: float = HEALTH_TIMEOUT) -> None:
        """Spawn the runtime and wait until its health endpoint answers 200."""
        args = [*self.command, "--port", str(self.port), "--hostname", self.host]
        logger.info(f"Starting agent runtime: {' '.join(args)} (cwd={self.repo_dir})")
        self._process = await asyncio.create_subprocess_exec(*args, cwd=self.repo_dir)

        started = time.monotonic()
        async with httpx.AsyncClient(base_url=self.url, timeout=2.0) as client:
            while time.monotonic() - started < health_timeout:
                if self._process.returncode is not None:
                    raise RuntimeError(f"Agent runtime exited during startup (code={self._process.returncode})")
                try:
                    resp = await client.get(self.health_path)
                    if resp.status_code == 200:
                        logger.info(f"Agent runtime is ready (took {time.monotonic() - started:.1f}s).")
                        return
                except httpx.HTTPError:
                    pass  # not listening yet
                await asyncio.sleep(HEALTH_POLL_INTERVAL)

        await self.stop()
        raise RuntimeError(f"Agent runtime failed to start within {health_timeout:.0f}s")

    async def stop(self, timeout: float = STOP_TIMEOUT) -> None:
        """Terminate gracefully, killing the process if it ignores SIGTERM."""
        proc, self._process = self._process, None
        if proc is None or proc.returncode is not None:
            return
        logger.info("Stopping agent runtime...")
        proc.terminate()
        try:
            await asyncio.wait_for(proc.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Force killing agent runtime (SIGKILL).")
            proc.kill()
            await proc.wait()
        logger.info(f"Agent runtime stopped (code={proc.returncode}).")

    async def restart(self) -> float:
        """Stop and start again; returns elapsed seconds. ``restarting`` is set meanwhile."""
        started = time.monotonic()
        self.restarting = True
        try:
            await self.stop()
            await self.start()
            return time.monotonic() - started
        finally:
            self.restarting = False
