"""Child process adapter for the claude CLI."""

import asyncio
import logging
import os
import signal
from pathlib import Path
from typing import AsyncIterator

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
TERMINATE_GRACE_SECONDS = 3.0


class SpawnError(Exception):
    """The process could not be started (e.g. executable not found)."""


class ProcessHandle:
    """A running child with piped stdout/stderr."""

    def __init__(self, process: asyncio.subprocess.Process):
        self._process = process
        self._terminating: asyncio.Task | None = None

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    async def stdout_chunks(self) -> AsyncIterator[bytes]:
        async for chunk in _read_chunks(self._process.stdout):
            yield chunk

    async def stderr_chunks(self) -> AsyncIterator[bytes]:
        async for chunk in _read_chunks(self._process.stderr):
            yield chunk

    async def wait(self) -> int:
        return await self._process.wait()

    async def terminate(self, grace: float = TERMINATE_GRACE_SECONDS) -> None:
        """Stop the process: SIGTERM, then SIGKILL once ``grace`` runs out.

        Safe to call repeatedly, concurrently, and after the process exited.
        """
        if self._process.returncode is not None:
            return
        if self._terminating is None:
            self._terminating = asyncio.ensure_future(self._terminate(grace))
        await asyncio.shield(self._terminating)

    async def _terminate(self, grace: float) -> None:
        try:
            self._process.send_signal(signal.SIGTERM)
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(self._process.wait(), timeout=grace)
            return
        except asyncio.TimeoutError:
            logger.warning("Process %d ignored SIGTERM for %.1fs, killing", self.pid, grace)
        try:
            self._process.kill()
        except ProcessLookupError:
            return
        await self._process.wait()


async def _read_chunks(stream: asyncio.StreamReader | None) -> AsyncIterator[bytes]:
    if stream is None:
        return
    while True:
        chunk = await stream.read(CHUNK_SIZE)
        if not chunk:
            break
        yield chunk


async def spawn(argv: list[str], env: dict[str, str], cwd: Path | str | None = None) -> ProcessHandle:
    """Start ``argv`` with stdin closed and stdout/stderr piped.

    Raises SpawnError if the process cannot be started.
    """
    if not argv:
        raise SpawnError("empty command")
    if cwd is not None and not os.path.isdir(cwd):
        raise SpawnError(f"working directory does not exist: {cwd}")
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
            cwd=str(cwd) if cwd is not None else None,
        )
    except OSError as e:
        raise SpawnError(f"failed to start {argv[0]}: {e}") from e
    logger.debug("Spawned %s (pid %d)", argv[0], process.pid)
    return ProcessHandle(process)
