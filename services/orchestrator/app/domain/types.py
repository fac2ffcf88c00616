"""Domain-level dataclasses for test networks."""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Union

from .crypto import KeyPair

if TYPE_CHECKING:  # pragma: no cover
    from .process import ProcessHandle


class NodeState(enum.Enum):
    not_provisioned = "NotProvisioned"
    provisioned = "Provisioned"
    starting = "Starting"
    running = "Running"
    upgrading = "Upgrading"
    restarting = "Restarting"
    stopping = "Stopping"
    stopped = "Stopped"
    crashed = "Crashed"


HAS_PROCESS_STATES = frozenset({NodeState.starting, NodeState.running, NodeState.upgrading, NodeState.stopping})


# Binary sources: a closed set, one resolution strategy each in the provisioner.


@dataclass(frozen=True)
class LocalBuild:
    project_path: Path
    compile: bool = True


@dataclass(frozen=True)
class RevisionBuild:
    revision: str
    repo_url: str


@dataclass(frozen=True)
class RemoteArtifact:
    url: str
    sha256: str | None = None
    version: str | None = None


@dataclass(frozen=True)
class PrebuiltPath:
    path: Path


BinarySource = Union[LocalBuild, RevisionBuild, RemoteArtifact, PrebuiltPath]


@dataclass(frozen=True)
class BinaryArtifact:
    """A materialized node executable, addressed by its resolved version."""

    version: str
    source: str
    path: Path
    sha256: str
    resources_dir: Path | None = None

    def template(self, name: str) -> Path | None:
        if self.resources_dir is None:
            return None
        candidate = self.resources_dir / name
        return candidate if candidate.exists() else None

    def to_dict(self) -> dict[str, Any]:
        return {"version": self.version, "source": self.source, "path": str(self.path), "sha256": self.sha256}


@dataclass(frozen=True)
class ConsensusTiming:
    era_duration: str = "41 seconds"
    minimum_era_height: int = 5
    minimum_block_time: str = "4096 ms"
    auction_delay: int = 1
    unbonding_delay: int = 7


@dataclass(frozen=True)
class AccountEntry:
    name: str
    keypair: KeyPair
    balance: int
    bonded_amount: int | None = None

    @property
    def is_validator(self) -> bool:
        return self.bonded_amount is not None


@dataclass(frozen=True)
class ChainSpec:
    """Network-wide genesis parameters; a new ChainSpec means a new network."""

    chain_name: str
    protocol_version: str
    genesis_delay_ms: int
    validator_slots: int
    timing: ConsensusTiming
    accounts: tuple[AccountEntry, ...]

    @property
    def validators(self) -> tuple[AccountEntry, ...]:
        return tuple(account for account in self.accounts if account.is_validator)

    def account(self, name: str) -> AccountEntry | None:
        for account in self.accounts:
            if account.name == name:
                return account
        return None

    def balances(self) -> dict[str, int]:
        return {account.name: account.balance for account in self.accounts}


@dataclass(frozen=True)
class NodeConfig:
    node_id: str
    index: int
    host: str
    bind_port: int
    rpc_port: int
    rest_port: int
    speculative_port: int
    event_stream_port: int
    known_addresses: tuple[str, ...]
    validator: bool
    overrides: dict[str, Any] = field(default_factory=dict)

    @property
    def bind_address(self) -> str:
        return f"{self.host}:{self.bind_port}"

    @property
    def rpc_endpoint(self) -> str:
        return f"http://{self.host}:{self.rpc_port}/rpc"

    @property
    def rest_endpoint(self) -> str:
        return f"http://{self.host}:{self.rest_port}"

    def toml_updates(self) -> dict[tuple[str, ...], Any]:
        """Key paths written over the node's config template."""
        return {
            ("network", "bind_address"): f"0.0.0.0:{self.bind_port}",
            ("network", "known_addresses"): list(self.known_addresses),
            ("rpc_server", "address"): f"0.0.0.0:{self.rpc_port}",
            ("speculative_exec_server", "address"): f"0.0.0.0:{self.speculative_port}",
            ("rest_server", "address"): f"0.0.0.0:{self.rest_port}",
            ("event_stream_server", "address"): f"0.0.0.0:{self.event_stream_port}",
            ("storage", "path"): "./node-storage",
            ("consensus", "secret_key_path"): "secret_key.pem",
        }


@dataclass(frozen=True)
class CrashReport:
    exit_code: int | None
    log_tail: list[str]
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    reason: str = "unexpected exit"

    def to_dict(self) -> dict[str, Any]:
        return {"exitCode": self.exit_code, "logTail": self.log_tail, "at": self.at.isoformat(), "reason": self.reason}


@dataclass
class NodeRecord:
    node_id: str
    config: NodeConfig
    keypair: KeyPair
    data_dir: Path
    binary: BinaryArtifact | None = None
    state: NodeState = NodeState.not_provisioned
    process: "ProcessHandle | None" = None
    crash: CrashReport | None = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def address(self) -> str:
        return self.config.bind_address

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodeId": self.node_id,
            "state": self.state.value,
            "validator": self.config.validator,
            "address": self.address,
            "rpcEndpoint": self.config.rpc_endpoint,
            "publicKey": self.keypair.public_key_hex,
            "binary": self.binary.to_dict() if self.binary else None,
            "pid": self.process.pid if self.process else None,
            "dataDir": str(self.data_dir),
            "crash": self.crash.to_dict() if self.crash else None,
            "updatedAt": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class LogLine:
    node_id: str
    seq: int
    text: str
    at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {"nodeId": self.node_id, "seq": self.seq, "text": self.text, "at": self.at.isoformat()}


@dataclass(frozen=True)
class ResourceSample:
    node_id: str
    seq: int
    at: datetime
    rss_bytes: int
    cpu_percent: float | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodeId": self.node_id,
            "seq": self.seq,
            "at": self.at.isoformat(),
            "rssBytes": self.rss_bytes,
            "cpuPercent": self.cpu_percent,
        }


class DeployOutcome(enum.Enum):
    pending = "pending"
    accepted = "accepted"
    rejected = "rejected"


@dataclass(frozen=True)
class Deploy:
    deploy_hash: str
    target_node: str
    signer: str
    payload: dict[str, Any]
    outcome: DeployOutcome = DeployOutcome.pending
    response: dict[str, Any] | None = None
    status_code: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "deployHash": self.deploy_hash,
            "targetNode": self.target_node,
            "signer": self.signer,
            "outcome": self.outcome.value,
            "response": self.response,
            "statusCode": self.status_code,
        }


__all__ = [
    "NodeState",
    "HAS_PROCESS_STATES",
    "LocalBuild",
    "RevisionBuild",
    "RemoteArtifact",
    "PrebuiltPath",
    "BinarySource",
    "BinaryArtifact",
    "ConsensusTiming",
    "AccountEntry",
    "ChainSpec",
    "NodeConfig",
    "CrashReport",
    "NodeRecord",
    "LogLine",
    "ResourceSample",
    "DeployOutcome",
    "Deploy",
]
