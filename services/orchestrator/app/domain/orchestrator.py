"""Orchestration session: owns the one live network and wires the engine together."""
from __future__ import annotations

import asyncio
import shutil
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import httpx
import structlog
from opentelemetry import trace

from ..config import OrchestratorSettings, get_settings
from ..persistence.layout import write_network
from ..persistence.storage import ArtifactStorage
from .assets import AssetOverrides, generate_assets
from .deploys import DeploySubmitter
from .errors import AssetGenerationError, NetworkStateError
from .monitoring import MonitoringAggregator
from .provisioner import BinaryProvisioner, source_from_settings
from .supervisor import ProcessSupervisor
from .topology import NetworkTopology
from .types import BinarySource, NodeRecord, NodeState

logger = structlog.get_logger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass
class NetworkRequest:
    size: int | None = None
    overrides: AssetOverrides = field(default_factory=AssetOverrides)
    source: BinarySource | None = None
    workdir: Path | None = None
    name: str | None = None
    start: bool = True


@dataclass
class Transports:
    """Optional httpx transports, injected by tests in place of real sockets."""

    readiness: httpx.AsyncBaseTransport | None = None
    rpc: httpx.AsyncBaseTransport | None = None
    status: httpx.AsyncBaseTransport | None = None
    artifacts: httpx.AsyncBaseTransport | None = None


class NetworkOrchestrator:
    """One orchestration session; at most one topology is live at a time."""

    def __init__(
        self,
        settings: OrchestratorSettings | None = None,
        *,
        provisioner: BinaryProvisioner | None = None,
        storage: ArtifactStorage | None = None,
        transports: Transports | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._transports = transports or Transports()
        self._storage = storage or ArtifactStorage(self._settings.storage)
        self._provisioner = provisioner or BinaryProvisioner(
            self._settings.provisioning, transport=self._transports.artifacts, storage=self._storage
        )
        self._monitor = MonitoringAggregator(self._settings.monitoring)
        self._topology: NetworkTopology | None = None
        self._supervisor: ProcessSupervisor | None = None
        self._deploys: DeploySubmitter | None = None
        self._owned_workdir: Path | None = None
        self._session_lock = asyncio.Lock()

    @property
    def settings(self) -> OrchestratorSettings:
        return self._settings

    @property
    def defined(self) -> bool:
        return self._topology is not None

    @property
    def topology(self) -> NetworkTopology:
        if self._topology is None:
            raise NetworkStateError("No network is defined", operation="lookup_network")
        return self._topology

    @property
    def supervisor(self) -> ProcessSupervisor:
        if self._supervisor is None:
            raise NetworkStateError("No network is defined", operation="lookup_network")
        return self._supervisor

    @property
    def deploys(self) -> DeploySubmitter:
        if self._deploys is None:
            raise NetworkStateError("No network is defined", operation="lookup_network")
        return self._deploys

    @property
    def monitor(self) -> MonitoringAggregator:
        return self._monitor

    @property
    def provisioner(self) -> BinaryProvisioner:
        return self._provisioner

    @property
    def storage(self) -> ArtifactStorage:
        return self._storage

    async def define_network(self, request: NetworkRequest | None = None) -> NetworkTopology:
        """Generate assets, resolve the binary and write the working directory.

        Configuration and provisioning failures happen before anything touches the disk,
        so a rejected definition leaves neither nodes nor files behind.
        """
        request = request or NetworkRequest()
        async with self._session_lock:
            if self._topology is not None:
                raise NetworkStateError(
                    f"Network {self._topology.name!r} is already defined; tear it down first",
                    operation="define_network",
                )
            with tracer.start_as_current_span("orchestrator.define_network"):
                size = request.size if request.size is not None else self._settings.network.size
                assets = generate_assets(size, request.overrides, self._settings.network)
                source = request.source or source_from_settings(self._settings.provisioning)
                artifact = await self._provisioner.resolve(source)

                workdir, owned = self._workdir(request.workdir)
                try:
                    layout = write_network(workdir, assets, artifact)
                except AssetGenerationError:
                    if owned:
                        shutil.rmtree(workdir, ignore_errors=True)
                    raise

                name = request.name or f"{assets.chainspec.chain_name}-{datetime.now(timezone.utc):%Y%m%dT%H%M%S}"
                topology = NetworkTopology(name=name, chainspec=assets.chainspec, workdir=workdir)
                for node in assets.nodes:
                    topology.register_node(
                        NodeRecord(
                            node_id=node.node_id,
                            config=node.config,
                            keypair=node.keypair,
                            data_dir=layout.node_dir(node.node_id),
                        )
                    )
                    topology.assign_binary(node.node_id, artifact)
                    topology.transition(node.node_id, NodeState.provisioned)

            self._topology = topology
            self._owned_workdir = workdir if owned else None
            self._supervisor = ProcessSupervisor(
                topology,
                self._monitor,
                self._provisioner,
                self._settings.supervisor,
                probe_transport=self._transports.readiness,
            )
            self._deploys = DeploySubmitter(topology, transport=self._transports.rpc)
            logger.info(
                "network.defined",
                name=name,
                nodes=len(topology),
                validators=len(assets.chainspec.validators),
                version=artifact.version,
                workdir=str(workdir),
            )
            return topology

    async def run_network(self, request: NetworkRequest | None = None) -> NetworkTopology:
        """Define the network and, unless ``request.start`` is false, start every node."""
        request = request or NetworkRequest()
        topology = await self.define_network(request)
        if request.start:
            await self.supervisor.start_all()
            logger.info("network.running", name=topology.name, nodes=len(topology))
        return topology

    async def teardown(self, *, keep_workdir: bool = False) -> None:
        """Stop every node, release monitoring and forget the topology."""
        async with self._session_lock:
            if self._topology is None:
                raise NetworkStateError("No network is defined", operation="teardown")
            name = self._topology.name
            assert self._supervisor is not None
            try:
                await self._supervisor.stop_all()
            finally:
                await self._monitor.close()
                self._monitor.forget()
                if self._owned_workdir is not None and not keep_workdir:
                    shutil.rmtree(self._owned_workdir, ignore_errors=True)
                self._topology = None
                self._supervisor = None
                self._deploys = None
                self._owned_workdir = None
            logger.info("network.torn_down", name=name)

    async def node_status(self) -> list[dict[str, Any]]:
        """Query every node's REST ``/status`` concurrently."""
        topology = self.topology
        path = self._settings.supervisor.readiness.status_path

        async def one(client: httpx.AsyncClient, record: NodeRecord) -> dict[str, Any]:
            status: dict[str, Any] = {"nodeId": record.node_id, "state": record.state.value, "reachable": False}
            if record.state is not NodeState.running:
                return status
            try:
                response = await client.get(record.config.rest_endpoint + path)
                response.raise_for_status()
                body = response.json()
            except (httpx.HTTPError, ValueError) as exc:
                status["error"] = repr(exc)
                return status
            block = body.get("last_added_block_info") or {}
            status.update(reachable=True, eraId=block.get("era_id"), height=block.get("height"))
            return status

        async with httpx.AsyncClient(transport=self._transports.status, timeout=5.0) as client:
            return list(await asyncio.gather(*(one(client, record) for record in topology.nodes())))

    async def export_logs(self, node_id: str | None = None) -> dict[str, Any]:
        """Write the retained log/metric buffers via artifact storage; returns the reference."""
        topology = self.topology
        if node_id is not None:
            topology.get(node_id)
        snapshot = self._monitor.snapshot(node_id)
        ref = await self._storage.put_json(
            {"network": topology.name, "exportedAt": datetime.now(timezone.utc).isoformat(), "nodes": snapshot},
            prefix=f"exports/{topology.name}",
        )
        logger.info("network.logs_exported", name=topology.name, ref=ref, nodes=len(snapshot))
        return {"ref": ref, "nodes": sorted(snapshot)}

    def _workdir(self, requested: Path | None) -> tuple[Path, bool]:
        if requested is not None:
            return Path(requested), False
        root = self._settings.network.workdir_root
        if root is not None:
            Path(root).mkdir(parents=True, exist_ok=True)
        return Path(tempfile.mkdtemp(prefix="testnet-", dir=str(root) if root else None)), True


__all__ = ["NetworkOrchestrator", "NetworkRequest", "Transports"]
