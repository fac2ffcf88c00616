import asyncio
import os
import sys
from pathlib import Path

import pytest

os.environ.setdefault("TESTNET_STORAGE__DATABASE_URL", "sqlite+aiosqlite:///./test_orchestrator.db")
os.environ.setdefault("TESTNET_OBSERVABILITY__LOG_LEVEL", "WARNING")

from services.orchestrator.app.config import (  # noqa: E402
    MonitoringSettings,
    NetworkSettings,
    OrchestratorSettings,
    ProvisioningSettings,
    ReadinessSettings,
    StorageSettings,
    SupervisorSettings,
)
from services.orchestrator.app.domain.assets import AssetOverrides, generate_assets  # noqa: E402
from services.orchestrator.app.domain.orchestrator import NetworkOrchestrator, NetworkRequest  # noqa: E402
from services.orchestrator.app.domain.topology import NetworkTopology  # noqa: E402
from services.orchestrator.app.domain.types import NodeRecord, NodeState, PrebuiltPath  # noqa: E402

FAKE_NODE = Path(__file__).with_name("fake_node.py")


def write_node_binary(directory: Path, *, mode: str | None = None, name: str = "casper-node") -> Path:
    """A shell shim that execs the fake node; ``mode`` makes every process of this binary misbehave."""
    directory.mkdir(parents=True, exist_ok=True)
    lines = ["#!/bin/sh"]
    if mode:
        lines.append(f"export FAKE_NODE_MODE={mode}")
    lines.append(f'exec "{sys.executable}" "{FAKE_NODE}" "$@"')
    binary = directory / name
    binary.write_text("\n".join(lines) + "\n")
    binary.chmod(0o755)
    return binary


@pytest.fixture
def settings(tmp_path):
    return OrchestratorSettings(
        network=NetworkSettings(size=3, seed=11, genesis_delay_ms=0),
        provisioning=ProvisioningSettings(source="path", cache_dir=tmp_path / "cache", fetch_backoff_s=0),
        supervisor=SupervisorSettings(
            startup_timeout_s=10.0,
            stop_grace_s=2.0,
            readiness=ReadinessSettings(kind="log-marker"),
        ),
        monitoring=MonitoringSettings(sample_interval_s=0.05),
        storage=StorageSettings(export_dir=tmp_path / "exports"),
    )


@pytest.fixture
def node_binary(tmp_path):
    return write_node_binary(tmp_path / "bin" / "v1")


@pytest.fixture
def make_binary(tmp_path):
    def factory(label: str, mode: str | None = None) -> Path:
        return write_node_binary(tmp_path / "bin" / label, mode=mode)

    return factory


@pytest.fixture
async def orchestrator(settings):
    orchestrator = NetworkOrchestrator(settings)
    yield orchestrator
    if orchestrator.defined:
        await orchestrator.teardown()


@pytest.fixture
def network_request(tmp_path, node_binary):
    def factory(**overrides) -> NetworkRequest:
        start = overrides.pop("start", True)
        size = overrides.pop("size", None)
        return NetworkRequest(
            size=size,
            source=PrebuiltPath(node_binary),
            workdir=tmp_path / "net",
            name="test-net",
            start=start,
            overrides=AssetOverrides(**overrides),
        )

    return factory


@pytest.fixture
def wait_for_state():
    async def wait(topology: NetworkTopology, node_id: str, state: NodeState, timeout: float = 10.0) -> None:
        deadline = asyncio.get_running_loop().time() + timeout
        while topology.get(node_id).state is not state:
            if asyncio.get_running_loop().time() > deadline:
                raise AssertionError(f"{node_id} stayed {topology.get(node_id).state.value}, expected {state.value}")
            await asyncio.sleep(0.02)

    return wait


@pytest.fixture
def bare_topology(tmp_path):
    """A provisioned topology held in memory only; no files, no processes."""

    def factory(size: int = 3, **overrides) -> NetworkTopology:
        assets = generate_assets(size, AssetOverrides(seed=5, **overrides), NetworkSettings())
        topology = NetworkTopology(name="bare", chainspec=assets.chainspec, workdir=tmp_path)
        for node in assets.nodes:
            topology.register_node(
                NodeRecord(
                    node_id=node.node_id,
                    config=node.config,
                    keypair=node.keypair,
                    data_dir=tmp_path / node.node_id,
                )
            )
            topology.transition(node.node_id, NodeState.provisioned)
        return topology

    return factory
