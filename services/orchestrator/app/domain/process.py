"""OS process handles for node software."""
from __future__ import annotations

import asyncio
import signal
from datetime import datetime, timezone
from typing import Awaitable, Callable

import structlog

from .errors import ProcessError
from .types import BinaryArtifact, NodeRecord

logger = structlog.get_logger(__name__)

# Node output lines can be long JSON log records.
STREAM_LIMIT = 1 << 20

ExitCallback = Callable[["ProcessHandle", int], Awaitable[None]]


class ProcessHandle:
    """A spawned node process.

    A single watcher task awaits the OS exit and resolves :attr:`exited`; everyone else
    waits on that future. A handle is *claimed* once an operation expects it to exit, so
    the watcher can tell a requested exit from a crash.
    """

    def __init__(self, node_id: str, process: asyncio.subprocess.Process, artifact: BinaryArtifact) -> None:
        self.node_id = node_id
        self.artifact = artifact
        self.started_at = datetime.now(timezone.utc)
        self._process = process
        self._claimed = False
        self.exited: asyncio.Future[int] = asyncio.get_running_loop().create_future()
        self._watcher: asyncio.Task | None = None

    def __repr__(self) -> str:
        return f"ProcessHandle(node_id={self.node_id!r}, pid={self.pid}, returncode={self.returncode})"

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    @property
    def stdout(self) -> asyncio.StreamReader | None:
        return self._process.stdout

    @property
    def claimed(self) -> bool:
        return self._claimed

    @property
    def running(self) -> bool:
        return not self.exited.done()

    def claim(self) -> None:
        self._claimed = True

    def watch(self, on_exit: ExitCallback | None = None) -> None:
        if self._watcher is None:
            self._watcher = asyncio.create_task(self._watch(on_exit), name=f"watch:{self.node_id}:{self.pid}")

    async def _watch(self, on_exit: ExitCallback | None) -> None:
        code = await self._process.wait()
        if not self.exited.done():
            self.exited.set_result(code)
        logger.debug("process.exited", node_id=self.node_id, pid=self.pid, exit_code=code, claimed=self._claimed)
        if on_exit is not None:
            await on_exit(self, code)

    def send_signal(self, signum: int) -> bool:
        """Deliver ``signum``; returns False when the process is already gone."""
        if self.exited.done():
            return False
        try:
            self._process.send_signal(signum)
        except ProcessLookupError:
            return False
        return True

    async def terminate(self, grace: float) -> int:
        """SIGTERM, wait up to ``grace`` seconds, then SIGKILL. Returns the exit code."""
        if self.send_signal(signal.SIGTERM):
            try:
                return await asyncio.wait_for(asyncio.shield(self.exited), timeout=grace)
            except asyncio.TimeoutError:
                logger.warning("process.kill", node_id=self.node_id, pid=self.pid, grace_s=grace)
                self.send_signal(signal.SIGKILL)
        return await asyncio.shield(self.exited)

    async def kill(self) -> int:
        self.send_signal(signal.SIGKILL)
        return await asyncio.shield(self.exited)


async def spawn(record: NodeRecord, artifact: BinaryArtifact, on_exit: ExitCallback | None = None) -> ProcessHandle:
    """Launch ``<binary> validator <config.toml>`` inside the node's data directory."""
    config_path = record.data_dir / "config.toml"
    if not config_path.is_file():
        raise ProcessError(
            f"Missing node config {config_path}", node_id=record.node_id, operation="spawn"
        )
    try:
        process = await asyncio.create_subprocess_exec(
            str(artifact.path),
            "validator",
            str(config_path),
            cwd=str(record.data_dir),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            stdin=asyncio.subprocess.DEVNULL,
            limit=STREAM_LIMIT,
            start_new_session=True,
        )
    except OSError as exc:
        raise ProcessError(
            f"Failed to spawn {artifact.path}: {exc.strerror or exc}",
            node_id=record.node_id,
            operation="spawn",
            cause=exc,
        ) from exc
    handle = ProcessHandle(record.node_id, process, artifact)
    handle.watch(on_exit)
    logger.info("process.spawned", node_id=record.node_id, pid=handle.pid, version=artifact.version)
    return handle


__all__ = ["ProcessHandle", "spawn", "STREAM_LIMIT"]
