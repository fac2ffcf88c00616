from pathlib import Path

import pytest

from services.orchestrator.app.domain.errors import NetworkStateError, NodeNotFoundError
from services.orchestrator.app.domain.types import BinaryArtifact, CrashReport, NodeState

S = NodeState


class StandInProcess:
    """Anything non-None satisfies the topology's handle bookkeeping."""

    pid = 4242


def artifact(version: str) -> BinaryArtifact:
    return BinaryArtifact(version=version, source="path", path=Path(f"/opt/{version}/casper-node"), sha256="00")


def test_lookup_and_ordering(bare_topology):
    topology = bare_topology(4)

    assert topology.node_ids() == ["Node_A", "Node_B", "Node_C", "Node_D"]
    assert "Node_B" in topology and len(topology) == 4
    with pytest.raises(NodeNotFoundError):
        topology.get("Node_Z")


def test_full_lifecycle_path(bare_topology):
    topology = bare_topology(1)
    process = StandInProcess()

    topology.transition("Node_A", S.starting, process=process)
    topology.transition("Node_A", S.running)
    assert topology.get("Node_A").process is process
    topology.transition("Node_A", S.stopping)
    record = topology.transition("Node_A", S.stopped)

    assert record.state is S.stopped
    assert record.process is None


def test_invalid_transition_leaves_record_untouched(bare_topology):
    topology = bare_topology(1)
    before = topology.get("Node_A").updated_at

    with pytest.raises(NetworkStateError) as excinfo:
        topology.transition("Node_A", S.running, process=StandInProcess())

    assert "Provisioned -> Running" in excinfo.value.message
    record = topology.get("Node_A")
    assert record.state is S.provisioned
    assert record.process is None
    assert record.updated_at == before


def test_process_handle_must_match_state(bare_topology):
    topology = bare_topology(1)

    with pytest.raises(NetworkStateError):
        topology.transition("Node_A", S.starting)
    topology.transition("Node_A", S.starting, process=StandInProcess())
    topology.transition("Node_A", S.running)
    topology.transition("Node_A", S.stopping)
    with pytest.raises(NetworkStateError):
        topology.transition("Node_A", S.stopped, process=StandInProcess())


def test_listeners_observe_transitions(bare_topology):
    topology = bare_topology(2)
    seen = []
    topology.add_listener(lambda record, old, new: seen.append((record.node_id, old, new)))

    topology.transition("Node_B", S.starting, process=StandInProcess())

    assert seen == [("Node_B", S.provisioned, S.starting)]


def test_crash_report_cleared_on_next_start(bare_topology):
    topology = bare_topology(1)
    topology.transition("Node_A", S.starting, process=StandInProcess())
    topology.transition("Node_A", S.crashed, process=None, crash=CrashReport(exit_code=1, log_tail=["boom"]))
    assert topology.get("Node_A").crash.exit_code == 1

    topology.transition("Node_A", S.restarting)
    topology.transition("Node_A", S.starting, process=StandInProcess())

    assert topology.get("Node_A").crash is None


def test_binary_assignment_requires_no_live_process(bare_topology):
    topology = bare_topology(1)
    topology.assign_binary("Node_A", artifact("v1"))
    topology.transition("Node_A", S.starting, process=StandInProcess())
    topology.transition("Node_A", S.running)

    with pytest.raises(NetworkStateError):
        topology.assign_binary("Node_A", artifact("v2"))
    with pytest.raises(NetworkStateError):
        topology.replace_process("Node_A", StandInProcess())

    topology.transition("Node_A", S.upgrading)
    topology.assign_binary("Node_A", artifact("v2"))
    replacement = StandInProcess()
    topology.replace_process("Node_A", replacement)
    topology.transition("Node_A", S.running)

    record = topology.get("Node_A")
    assert record.binary.version == "v2"
    assert record.process is replacement


def test_counts_and_state_queries(bare_topology):
    topology = bare_topology(3)
    topology.transition("Node_C", S.starting, process=StandInProcess())

    assert topology.counts() == {"Provisioned": 2, "Starting": 1}
    assert [r.node_id for r in topology.nodes_in_state(S.provisioned)] == ["Node_A", "Node_B"]
    described = topology.describe()
    assert described["states"] == {"Provisioned": 2, "Starting": 1}
    assert described["nodes"][2]["pid"] == 4242


def test_account_lookup(bare_topology):
    topology = bare_topology(2, accounts=["faucet"])

    assert topology.account("faucet").name == "faucet"
    with pytest.raises(NetworkStateError):
        topology.account("nobody")
