"""Node lifecycle operations: start, stop, restart, upgrade and crash detection.

Every operation on one node runs under that node's lock, so lifecycle transitions of a
node never interleave while unrelated nodes proceed concurrently. Upgrades additionally
share a semaphore that caps how many nodes are Upgrading at once. State is committed to
the topology only after the underlying action is confirmed (process spawned or exited,
artifact resolved, readiness observed).
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, TypeVar

import httpx
import structlog
from opentelemetry import trace

from ..config import SupervisorSettings, get_settings
from .errors import NetworkStateError, OrchestratorError, ProcessError, ProvisioningError, UpgradeError
from .monitoring import MonitoringAggregator
from .process import ProcessHandle, spawn
from .provisioner import BinaryProvisioner
from .readiness import build_probe
from .topology import NetworkTopology
from .types import HAS_PROCESS_STATES, BinaryArtifact, BinarySource, CrashReport, NodeRecord, NodeState

logger = structlog.get_logger(__name__)
tracer = trace.get_tracer(__name__)

T = TypeVar("T")

S = NodeState


@dataclass
class UpgradeOutcome:
    node_id: str
    ok: bool
    version: str | None = None
    error: OrchestratorError | None = None

    def to_dict(self) -> dict:
        return {
            "nodeId": self.node_id,
            "ok": self.ok,
            "version": self.version,
            "error": self.error.to_dict() if self.error else None,
        }


class ProcessSupervisor:
    def __init__(
        self,
        topology: NetworkTopology,
        monitor: MonitoringAggregator,
        provisioner: BinaryProvisioner | None = None,
        settings: SupervisorSettings | None = None,
        *,
        probe_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._topology = topology
        self._monitor = monitor
        self._provisioner = provisioner
        self._settings = settings or get_settings().supervisor
        self._probe_transport = probe_transport
        self._locks: dict[str, asyncio.Lock] = {}
        self._inflight: dict[str, asyncio.Task] = {}
        self._preempted: set[asyncio.Task] = set()
        self._upgrade_slots = asyncio.Semaphore(self._settings.upgrade_concurrency)

    @property
    def topology(self) -> NetworkTopology:
        return self._topology

    def _lock(self, node_id: str) -> asyncio.Lock:
        self._topology.get(node_id)
        lock = self._locks.get(node_id)
        if lock is None:
            lock = self._locks[node_id] = asyncio.Lock()
        return lock

    async def _exclusive(self, node_id: str, operation: str, action: Callable[[], Awaitable[T]]) -> T:
        """Run ``action`` under the node lock as a task that ``stop`` can pre-empt."""
        lock = self._lock(node_id)

        async def locked() -> T:
            async with lock:
                return await action()

        return await self._track(node_id, operation, locked)

    async def _track(self, node_id: str, operation: str, action: Callable[[], Awaitable[T]]) -> T:
        task = asyncio.ensure_future(action())
        self._inflight[node_id] = task
        try:
            return await task
        except asyncio.CancelledError:
            if task in self._preempted:
                raise NetworkStateError(
                    f"{operation} was pre-empted by stop", node_id=node_id, operation=operation
                ) from None
            raise
        finally:
            self._preempted.discard(task)
            if self._inflight.get(node_id) is task:
                del self._inflight[node_id]

    async def _preempt(self, node_id: str) -> None:
        task = self._inflight.get(node_id)
        if task is None or task.done():
            return
        logger.info("supervisor.preempt", node_id=node_id)
        self._preempted.add(task)
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    # Operations

    async def start(self, node_id: str) -> NodeRecord:
        """Provisioned/Stopped -> Starting -> Running."""

        async def action() -> NodeRecord:
            record = self._topology.get(node_id)
            if record.state not in (S.provisioned, S.stopped):
                raise NetworkStateError(
                    f"Cannot start a node in {record.state.value}", node_id=node_id, operation="start"
                )
            await self._launch(record, operation="start")
            return record

        with tracer.start_as_current_span("supervisor.start", attributes={"node_id": node_id}):
            return await self._exclusive(node_id, "start", action)

    async def stop(self, node_id: str) -> NodeRecord:
        """Any has-process state -> Stopping -> Stopped, forcing termination after the grace period."""
        with tracer.start_as_current_span("supervisor.stop", attributes={"node_id": node_id}):
            await self._preempt(node_id)
            async with self._lock(node_id):
                record = self._topology.get(node_id)
                if record.state is S.restarting:
                    # A restart pre-empted between the old exit and the new spawn holds no process.
                    self._topology.transition(node_id, S.stopped)
                    logger.info("supervisor.node_stopped", node_id=node_id, exit_code=None)
                    return record
                if record.state not in HAS_PROCESS_STATES:
                    raise NetworkStateError(
                        f"Cannot stop a node in {record.state.value}", node_id=node_id, operation="stop"
                    )
                handle = record.process
                assert handle is not None
                handle.claim()
                self._topology.transition(node_id, S.stopping)
                code = await handle.terminate(self._settings.stop_grace_s)
                await self._monitor.detach(node_id)
                self._topology.transition(node_id, S.stopped)
                logger.info("supervisor.node_stopped", node_id=node_id, exit_code=code)
                return record

    async def restart(self, node_id: str) -> NodeRecord:
        """Stop (when running) then start again with the same binary, config and keys."""

        async def action() -> NodeRecord:
            record = self._topology.get(node_id)
            if record.state is S.running:
                handle = record.process
                assert handle is not None
                handle.claim()
                await handle.terminate(self._settings.stop_grace_s)
                await self._monitor.detach(node_id)
                self._topology.transition(node_id, S.restarting)
            elif record.state in (S.stopped, S.crashed):
                self._topology.transition(node_id, S.restarting)
            else:
                raise NetworkStateError(
                    f"Cannot restart a node in {record.state.value}", node_id=node_id, operation="restart"
                )
            await self._launch(record, operation="restart")
            return record

        with tracer.start_as_current_span("supervisor.restart", attributes={"node_id": node_id}):
            return await self._exclusive(node_id, "restart", action)

    async def upgrade(self, node_id: str, target: BinaryArtifact | BinarySource) -> NodeRecord:
        """Running -> Upgrading -> Running on the new binary.

        The new artifact is resolved before anything changes; if that fails the node keeps
        running its old binary and :class:`UpgradeError` is raised.
        """
        self._require(node_id, S.running, "upgrade")
        lock = self._lock(node_id)

        async def action() -> NodeRecord:
            artifact = await self.resolve_upgrade(target, node_id=node_id)
            async with self._upgrade_slots, lock:
                return await self._upgrade_locked(node_id, artifact)

        with tracer.start_as_current_span("supervisor.upgrade", attributes={"node_id": node_id}):
            return await self._track(node_id, "upgrade", action)

    async def resolve_upgrade(self, target: BinaryArtifact | BinarySource, node_id: str | None = None) -> BinaryArtifact:
        if isinstance(target, BinaryArtifact):
            if not target.path.is_file():
                raise UpgradeError(
                    f"Artifact {target.path} does not exist", node_id=node_id, operation="upgrade"
                )
            return target
        if self._provisioner is None:
            raise UpgradeError("No provisioner available to resolve the upgrade", node_id=node_id, operation="upgrade")
        try:
            return await self._provisioner.resolve(target)
        except ProvisioningError as exc:
            raise UpgradeError(
                f"Upgrade artifact could not be resolved: {exc.message}",
                node_id=node_id,
                operation="upgrade",
                cause=exc,
            ) from exc

    async def _upgrade_locked(self, node_id: str, artifact: BinaryArtifact) -> NodeRecord:
        record = self._require(node_id, S.running, "upgrade")
        old = record.process
        assert old is not None
        previous = record.binary
        self._topology.transition(node_id, S.upgrading)
        old.claim()
        await old.terminate(self._settings.stop_grace_s)
        await self._monitor.detach(node_id)
        self._topology.assign_binary(node_id, artifact)
        try:
            handle = await spawn(record, artifact, self._on_exit)
        except ProcessError as exc:
            self._commit_crash(record, None, reason=f"upgrade spawn failed: {exc.message}")
            raise
        except asyncio.CancelledError:
            # Pre-empted before the new binary ever ran: the node keeps its old one.
            if previous is not None:
                self._topology.assign_binary(node_id, previous)
            raise
        self._monitor.attach(record, handle)
        self._topology.replace_process(node_id, handle)
        await self._await_ready(record, handle, operation="upgrade")
        self._topology.transition(node_id, S.running)
        logger.info(
            "supervisor.node_upgraded",
            node_id=node_id,
            version=artifact.version,
            previous=previous.version if previous else None,
        )
        return record

    async def rolling_upgrade(
        self, target: BinaryArtifact | BinarySource, node_ids: Iterable[str] | None = None
    ) -> list[UpgradeOutcome]:
        """Upgrade Running nodes, at most ``upgrade_concurrency`` at a time.

        The artifact is resolved once up front. After the first failed node no further
        upgrades begin, so a bad binary cannot take down the quorum.
        """
        artifact = await self.resolve_upgrade(target)
        targets = list(node_ids) if node_ids is not None else [r.node_id for r in self._topology.nodes_in_state(S.running)]
        halted = asyncio.Event()

        async def one(node_id: str) -> UpgradeOutcome:
            async with self._upgrade_slots:
                if halted.is_set():
                    return UpgradeOutcome(
                        node_id,
                        ok=False,
                        error=UpgradeError("Rolling upgrade halted after an earlier failure", node_id=node_id, operation="upgrade"),
                    )
                try:
                    self._require(node_id, S.running, "upgrade")
                    await self._exclusive(node_id, "upgrade", lambda: self._upgrade_locked(node_id, artifact))
                except OrchestratorError as exc:
                    halted.set()
                    logger.warning("supervisor.rolling_upgrade_failed", node_id=node_id, error=str(exc))
                    return UpgradeOutcome(node_id, ok=False, error=exc)
                return UpgradeOutcome(node_id, ok=True, version=artifact.version)

        with tracer.start_as_current_span("supervisor.rolling_upgrade", attributes={"version": artifact.version}):
            outcomes = await asyncio.gather(*(one(node_id) for node_id in targets))
        logger.info(
            "supervisor.rolling_upgrade_done",
            version=artifact.version,
            upgraded=sum(1 for outcome in outcomes if outcome.ok),
            failed=sum(1 for outcome in outcomes if not outcome.ok),
        )
        return list(outcomes)

    async def reprovision(self, node_id: str, artifact: BinaryArtifact | None = None) -> NodeRecord:
        """Reopen a Stopped or Crashed node, optionally on a different binary."""
        async with self._lock(node_id):
            record = self._topology.get(node_id)
            if record.state not in (S.stopped, S.crashed):
                raise NetworkStateError(
                    f"Cannot reprovision a node in {record.state.value}", node_id=node_id, operation="reprovision"
                )
            if artifact is not None:
                self._topology.assign_binary(node_id, artifact)
            return self._topology.transition(node_id, S.provisioned)

    async def start_all(self) -> list[NodeRecord]:
        """Start every Provisioned/Stopped node concurrently; the first failure is raised once all settle."""
        records = self._topology.nodes_in_state(S.provisioned, S.stopped)
        results = await asyncio.gather(*(self.start(record.node_id) for record in records), return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                raise result
        return list(results)

    async def stop_all(self) -> None:
        """Drive every node with a process to Stopped; errors are collected, not swallowed."""
        for node_id in list(self._inflight):
            await self._preempt(node_id)
        records = self._topology.nodes_in_state(*HAS_PROCESS_STATES, S.restarting)
        results = await asyncio.gather(
            *(self.stop(record.node_id) for record in records), return_exceptions=True
        )
        failures = [result for result in results if isinstance(result, BaseException)]
        # A node that crashed between listing and stopping is already terminal.
        failures = [failure for failure in failures if not isinstance(failure, NetworkStateError)]
        if failures:
            raise failures[0]

    # Internals

    def _require(self, node_id: str, state: NodeState, operation: str) -> NodeRecord:
        record = self._topology.get(node_id)
        if record.state is not state:
            raise NetworkStateError(
                f"{operation} requires {state.value}, node is {record.state.value}",
                node_id=node_id,
                operation=operation,
            )
        return record

    async def _launch(self, record: NodeRecord, *, operation: str) -> None:
        """Spawn and wait for readiness; the caller holds the node lock."""
        if record.binary is None:
            raise NetworkStateError("Node has no assigned binary", node_id=record.node_id, operation=operation)
        try:
            handle = await spawn(record, record.binary, self._on_exit)
        except ProcessError as exc:
            self._commit_crash(record, None, reason=f"spawn failed: {exc.message}")
            raise
        self._monitor.attach(record, handle)
        self._topology.transition(record.node_id, S.starting, process=handle)
        await self._await_ready(record, handle, operation=operation)
        self._topology.transition(record.node_id, S.running)
        logger.info("supervisor.node_running", node_id=record.node_id, pid=handle.pid, version=record.binary.version)

    async def _await_ready(self, record: NodeRecord, handle: ProcessHandle, *, operation: str) -> None:
        probe = build_probe(handle.artifact.version, self._settings, self._monitor, self._probe_transport)
        ready = asyncio.ensure_future(probe.wait_ready(record, handle))
        exited = asyncio.ensure_future(asyncio.shield(handle.exited))
        try:
            done, _ = await asyncio.wait(
                {ready, exited}, timeout=self._settings.startup_timeout_s, return_when=asyncio.FIRST_COMPLETED
            )
            if ready in done and ready.exception() is None and handle.running:
                return
            handle.claim()
            if handle.running:
                reason = "readiness timeout" if not done else f"readiness failed: {ready.exception()}"
                code = await handle.kill()
            else:
                reason = "exited before ready"
                code = handle.exited.result()
        finally:
            for future in (ready, exited):
                if future.done() and not future.cancelled():
                    future.exception()
                future.cancel()
        await self._monitor.detach(record.node_id)
        tail = self._monitor.log_tail(record.node_id, self._settings.crash_tail_lines)
        self._commit_crash(record, code, reason=reason, tail=tail)
        raise ProcessError(
            f"Node did not become ready ({reason})",
            node_id=record.node_id,
            operation=operation,
            exit_code=code,
            log_tail=tail,
        )

    def _commit_crash(self, record: NodeRecord, code: int | None, *, reason: str, tail: list[str] | None = None) -> None:
        report = CrashReport(exit_code=code, log_tail=list(tail or []), reason=reason)
        self._topology.transition(record.node_id, S.crashed, process=None, crash=report)
        logger.error(
            "supervisor.node_crashed", node_id=record.node_id, exit_code=code, reason=reason, tail=report.log_tail
        )

    async def _on_exit(self, handle: ProcessHandle, code: int) -> None:
        """Watcher callback: an unclaimed exit is a crash."""
        if handle.claimed:
            return
        async with self._lock(handle.node_id):
            record = self._topology.get(handle.node_id)
            if handle.claimed or record.process is not handle:
                return
            handle.claim()
            await self._monitor.detach(handle.node_id)
            tail = self._monitor.log_tail(handle.node_id, self._settings.crash_tail_lines)
            self._commit_crash(record, code, reason="unexpected exit", tail=tail)


__all__ = ["ProcessSupervisor", "UpgradeOutcome"]
