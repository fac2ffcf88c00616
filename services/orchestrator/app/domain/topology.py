"""Authoritative in-memory model of one test network."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Callable

import structlog

from .errors import NetworkStateError, NodeNotFoundError
from .types import HAS_PROCESS_STATES, AccountEntry, BinaryArtifact, ChainSpec, CrashReport, NodeRecord, NodeState

if TYPE_CHECKING:  # pragma: no cover
    from .process import ProcessHandle

logger = structlog.get_logger(__name__)

S = NodeState

# Edges into Crashed from process-less states record a failed spawn.
TRANSITIONS: dict[NodeState, frozenset[NodeState]] = {
    S.not_provisioned: frozenset({S.provisioned}),
    S.provisioned: frozenset({S.starting, S.crashed}),
    S.starting: frozenset({S.running, S.crashed, S.stopping}),
    S.running: frozenset({S.upgrading, S.restarting, S.stopping, S.crashed}),
    S.upgrading: frozenset({S.running, S.crashed, S.stopping}),
    S.restarting: frozenset({S.starting, S.stopped, S.crashed}),
    S.stopping: frozenset({S.stopped}),
    S.stopped: frozenset({S.starting, S.restarting, S.provisioned, S.crashed}),
    S.crashed: frozenset({S.restarting, S.provisioned}),
}

# Binary swaps only happen while no process is serving the old one.
_BINARY_ASSIGNABLE = frozenset({S.not_provisioned, S.provisioned, S.upgrading, S.stopped, S.crashed})

TransitionListener = Callable[[NodeRecord, NodeState, NodeState], None]

_UNSET = object()


@dataclass
class NetworkTopology:
    """Node records plus the shared chainspec of one network instance.

    All mutation goes through :meth:`transition`, :meth:`assign_binary` and
    :meth:`replace_process`; each validates before applying, so a rejected call leaves the
    record exactly as it was.
    """

    name: str
    chainspec: ChainSpec
    workdir: Path
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    _nodes: dict[str, NodeRecord] = field(default_factory=dict, init=False, repr=False)
    _listeners: list[TransitionListener] = field(default_factory=list, init=False, repr=False)

    # Queries

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def get(self, node_id: str) -> NodeRecord:
        try:
            return self._nodes[node_id]
        except KeyError:
            raise NodeNotFoundError(f"Unknown node {node_id!r}", node_id=node_id) from None

    def nodes(self) -> list[NodeRecord]:
        return sorted(self._nodes.values(), key=lambda record: record.config.index)

    def nodes_in_state(self, *states: NodeState) -> list[NodeRecord]:
        wanted = set(states)
        return [record for record in self.nodes() if record.state in wanted]

    def node_ids(self) -> list[str]:
        return [record.node_id for record in self.nodes()]

    def accounts(self) -> tuple[AccountEntry, ...]:
        return self.chainspec.accounts

    def account(self, name: str) -> AccountEntry:
        entry = self.chainspec.account(name)
        if entry is None:
            raise NetworkStateError(f"Unknown account {name!r}", operation="lookup_account")
        return entry

    def counts(self) -> dict[str, int]:
        summary: dict[str, int] = {}
        for record in self._nodes.values():
            summary[record.state.value] = summary.get(record.state.value, 0) + 1
        return summary

    def describe(self) -> dict:
        return {
            "name": self.name,
            "chainName": self.chainspec.chain_name,
            "protocolVersion": self.chainspec.protocol_version,
            "workdir": str(self.workdir),
            "createdAt": self.created_at.isoformat(),
            "states": self.counts(),
            "nodes": [record.to_dict() for record in self.nodes()],
            "accounts": [
                {
                    "name": account.name,
                    "publicKey": account.keypair.public_key_hex,
                    "balance": str(account.balance),
                    "validator": account.is_validator,
                }
                for account in self.chainspec.accounts
            ],
        }

    # Mutation

    def add_listener(self, listener: TransitionListener) -> None:
        self._listeners.append(listener)

    def register_node(self, record: NodeRecord) -> NodeRecord:
        if record.node_id in self._nodes:
            raise NetworkStateError(
                f"Node {record.node_id!r} is already registered", node_id=record.node_id, operation="register_node"
            )
        if record.state is not S.not_provisioned or record.process is not None:
            raise NetworkStateError(
                "Nodes are registered unprovisioned and without a process",
                node_id=record.node_id,
                operation="register_node",
            )
        self._nodes[record.node_id] = record
        logger.debug("topology.node_registered", node_id=record.node_id, validator=record.config.validator)
        return record

    def transition(
        self,
        node_id: str,
        state: NodeState,
        *,
        process: "ProcessHandle | None | object" = _UNSET,
        crash: CrashReport | None = None,
    ) -> NodeRecord:
        """Move ``node_id`` to ``state``.

        ``process`` defaults to the current handle when the target state keeps a process
        and to ``None`` otherwise. Either way the result must satisfy "live handle if and
        only if the state has a process".
        """
        record = self.get(node_id)
        current = record.state
        if state not in TRANSITIONS[current]:
            raise NetworkStateError(
                f"Invalid transition {current.value} -> {state.value}",
                node_id=node_id,
                operation="transition",
            )
        if process is _UNSET:
            process = record.process if state in HAS_PROCESS_STATES else None
        if (process is not None) != (state in HAS_PROCESS_STATES):
            raise NetworkStateError(
                f"State {state.value} {'requires' if state in HAS_PROCESS_STATES else 'forbids'} a process handle",
                node_id=node_id,
                operation="transition",
            )
        record.state = state
        record.process = process  # type: ignore[assignment]
        if crash is not None:
            record.crash = crash
        elif state in (S.starting, S.provisioned):
            record.crash = None
        record.updated_at = datetime.now(timezone.utc)
        logger.info("topology.transition", node_id=node_id, old=current.value, new=state.value)
        for listener in list(self._listeners):
            listener(record, current, state)
        return record

    def replace_process(self, node_id: str, process: "ProcessHandle") -> NodeRecord:
        """Swap the live handle without changing state (used while Upgrading)."""
        record = self.get(node_id)
        if record.state is not S.upgrading:
            raise NetworkStateError(
                f"Cannot replace the process of a node in {record.state.value}",
                node_id=node_id,
                operation="replace_process",
            )
        record.process = process
        record.updated_at = datetime.now(timezone.utc)
        return record

    def assign_binary(self, node_id: str, artifact: BinaryArtifact) -> NodeRecord:
        record = self.get(node_id)
        if record.state not in _BINARY_ASSIGNABLE:
            raise NetworkStateError(
                f"Cannot assign a binary to a node in {record.state.value}",
                node_id=node_id,
                operation="assign_binary",
            )
        previous = record.binary
        record.binary = artifact
        record.updated_at = datetime.now(timezone.utc)
        logger.info(
            "topology.binary_assigned",
            node_id=node_id,
            version=artifact.version,
            previous=previous.version if previous else None,
        )
        return record


__all__ = ["NetworkTopology", "TRANSITIONS", "TransitionListener"]
