import asyncio
import signal

import pytest

from services.orchestrator.app.domain import supervisor as supervisor_module
from services.orchestrator.app.domain.errors import NetworkStateError, NodeNotFoundError, ProcessError, UpgradeError
from services.orchestrator.app.domain.types import NodeState, PrebuiltPath

S = NodeState


async def test_run_network_starts_every_node(orchestrator, network_request):
    topology = await orchestrator.run_network(network_request())

    assert topology.counts() == {"Running": 3}
    pids = {record.process.pid for record in topology.nodes()}
    assert len(pids) == 3
    for node_id in topology.node_ids():
        assert any("Node is ready" in line for line in orchestrator.monitor.log_tail(node_id, 50))


async def test_stop_terminates_and_keeps_logs(orchestrator, network_request):
    topology = await orchestrator.run_network(network_request())
    handle = topology.get("Node_B").process

    record = await orchestrator.supervisor.stop("Node_B")

    assert record.state is S.stopped
    assert record.process is None
    assert handle.returncode == 0
    stream = orchestrator.monitor.stream("Node_B")
    assert not stream.live
    assert any("Node is ready" in line.text for line in stream.logs.snapshot())
    assert "Node is ready" in (record.data_dir / "node.log").read_text()
    assert topology.get("Node_A").state is S.running


async def test_stop_forces_termination_after_grace(orchestrator, settings, network_request):
    settings.supervisor.stop_grace_s = 0.3
    topology = await orchestrator.run_network(network_request(node_overrides={"Node_A": {"fake": {"ignore_sigterm": True}}}))
    handle = topology.get("Node_A").process

    await orchestrator.supervisor.stop("Node_A")

    assert topology.get("Node_A").state is S.stopped
    assert handle.returncode == -signal.SIGKILL


async def test_restart_spawns_a_new_process_with_the_same_assets(orchestrator, network_request):
    topology = await orchestrator.run_network(network_request())
    before = topology.get("Node_C")
    old_pid, binary, key = before.process.pid, before.binary, before.keypair

    record = await orchestrator.supervisor.restart("Node_C")

    assert record.state is S.running
    assert record.process.pid != old_pid
    assert record.binary == binary
    assert record.keypair == key


async def test_restart_from_stopped(orchestrator, network_request):
    await orchestrator.run_network(network_request())
    await orchestrator.supervisor.stop("Node_A")

    record = await orchestrator.supervisor.restart("Node_A")

    assert record.state is S.running


async def test_unexpected_exit_is_recorded_as_crash(orchestrator, network_request, wait_for_state):
    topology = await orchestrator.run_network(
        network_request(node_overrides={"Node_C": {"fake": {"crash_after": 0.5, "exit_code": 101}}})
    )

    await wait_for_state(topology, "Node_C", S.crashed)

    record = topology.get("Node_C")
    assert record.process is None
    assert record.crash.exit_code == 101
    assert record.crash.reason == "unexpected exit"
    assert "panic: simulated failure" in record.crash.log_tail
    assert topology.get("Node_A").state is S.running


async def test_crashed_node_can_be_reprovisioned_and_started(orchestrator, network_request, wait_for_state):
    topology = await orchestrator.run_network(
        network_request(node_overrides={"Node_A": {"fake": {"crash_after": 0.3}}})
    )
    await wait_for_state(topology, "Node_A", S.crashed)

    record = await orchestrator.supervisor.reprovision("Node_A")
    assert record.state is S.provisioned
    assert record.crash is None

    record = await orchestrator.supervisor.start("Node_A")
    assert record.state is S.running


async def test_exit_before_ready_fails_the_start(orchestrator, network_request):
    topology = await orchestrator.run_network(
        network_request(start=False, node_overrides={"Node_A": {"fake": {"fail_fast": True, "exit_code": 3}}})
    )

    with pytest.raises(ProcessError) as excinfo:
        await orchestrator.supervisor.start("Node_A")

    assert excinfo.value.exit_code == 3
    assert "fatal: invalid configuration" in excinfo.value.log_tail
    record = topology.get("Node_A")
    assert record.state is S.crashed
    assert record.crash.exit_code == 3
    assert record.process is None


async def test_readiness_timeout_kills_the_process(orchestrator, settings, network_request):
    settings.supervisor.startup_timeout_s = 0.8
    topology = await orchestrator.run_network(
        network_request(start=False, node_overrides={"Node_B": {"fake": {"never_ready": True}}})
    )

    with pytest.raises(ProcessError, match="readiness timeout"):
        await orchestrator.supervisor.start("Node_B")

    record = topology.get("Node_B")
    assert record.state is S.crashed
    assert record.crash.reason == "readiness timeout"
    assert record.crash.exit_code == -signal.SIGKILL


async def test_start_all_reports_a_failure_after_the_rest_settle(orchestrator, network_request):
    with pytest.raises(ProcessError):
        await orchestrator.run_network(
            network_request(node_overrides={"Node_B": {"fake": {"fail_fast": True}}})
        )

    topology = orchestrator.topology
    assert topology.get("Node_A").state is S.running
    assert topology.get("Node_B").state is S.crashed
    assert topology.get("Node_C").state is S.running


async def test_upgrade_switches_the_binary(orchestrator, network_request, make_binary):
    topology = await orchestrator.run_network(network_request())
    old = topology.get("Node_A")
    old_pid, old_version = old.process.pid, old.binary.version
    v2 = make_binary("v2")
    v2.write_text(v2.read_text() + "# v2\n")

    record = await orchestrator.supervisor.upgrade("Node_A", PrebuiltPath(v2))

    assert record.state is S.running
    assert record.binary.path == v2.resolve()
    assert record.binary.version != old_version
    assert record.process.pid != old_pid
    assert record.process.artifact == record.binary
    assert topology.get("Node_B").binary.version == old_version


async def test_unresolvable_upgrade_keeps_the_old_binary(orchestrator, network_request, tmp_path):
    topology = await orchestrator.run_network(network_request())
    before = topology.get("Node_A")
    pid, binary = before.process.pid, before.binary

    with pytest.raises(UpgradeError):
        await orchestrator.supervisor.upgrade("Node_A", PrebuiltPath(tmp_path / "missing-node"))

    record = topology.get("Node_A")
    assert record.state is S.running
    assert record.process.pid == pid
    assert record.binary == binary


async def test_upgrade_to_a_broken_binary_crashes_the_node(orchestrator, network_request, make_binary):
    topology = await orchestrator.run_network(network_request())
    broken = make_binary("broken", mode="fail_fast")

    with pytest.raises(ProcessError):
        await orchestrator.supervisor.upgrade("Node_B", PrebuiltPath(broken))

    record = topology.get("Node_B")
    assert record.state is S.crashed
    assert "fatal: invalid configuration" in record.crash.log_tail


async def test_upgrade_requires_a_running_node(orchestrator, network_request, make_binary):
    await orchestrator.run_network(network_request())
    await orchestrator.supervisor.stop("Node_A")

    with pytest.raises(NetworkStateError):
        await orchestrator.supervisor.upgrade("Node_A", PrebuiltPath(make_binary("v2")))


async def test_rolling_upgrade_caps_concurrent_upgrades(orchestrator, network_request, make_binary):
    topology = await orchestrator.run_network(network_request(size=4))
    upgrading = set()
    peak = 0

    def observe(record, old, new):
        nonlocal peak
        if new is S.upgrading:
            upgrading.add(record.node_id)
        elif old is S.upgrading:
            upgrading.discard(record.node_id)
        peak = max(peak, len(upgrading))

    topology.add_listener(observe)
    v2 = make_binary("v2")
    v2.write_text(v2.read_text() + "# v2\n")

    outcomes = await orchestrator.supervisor.rolling_upgrade(PrebuiltPath(v2))

    assert [outcome.ok for outcome in outcomes] == [True] * 4
    assert peak == 1
    assert {record.binary.path for record in topology.nodes()} == {v2.resolve()}


async def test_rolling_upgrade_halts_after_the_first_failure(orchestrator, network_request, make_binary):
    topology = await orchestrator.run_network(network_request())
    old_version = topology.get("Node_A").binary.version
    broken = make_binary("broken", mode="fail_fast")

    outcomes = await orchestrator.supervisor.rolling_upgrade(PrebuiltPath(broken))

    assert [outcome.ok for outcome in outcomes] == [False, False, False]
    assert isinstance(outcomes[0].error, ProcessError)
    assert all("halted" in outcome.error.message for outcome in outcomes[1:])
    assert topology.get("Node_A").state is S.crashed
    for node_id in ("Node_B", "Node_C"):
        assert topology.get(node_id).state is S.running
        assert topology.get(node_id).binary.version == old_version


async def test_stop_preempts_an_inflight_start(orchestrator, settings, network_request, wait_for_state):
    topology = await orchestrator.run_network(
        network_request(start=False, node_overrides={"Node_A": {"fake": {"never_ready": True}}})
    )
    starting = asyncio.create_task(orchestrator.supervisor.start("Node_A"))
    await wait_for_state(topology, "Node_A", S.starting)

    record = await orchestrator.supervisor.stop("Node_A")

    assert record.state is S.stopped
    with pytest.raises(NetworkStateError, match="pre-empted"):
        await starting


def delay_spawns(monkeypatch, delay=0.5):
    real_spawn = supervisor_module.spawn

    async def slow_spawn(*args, **kwargs):
        await asyncio.sleep(delay)
        return await real_spawn(*args, **kwargs)

    monkeypatch.setattr(supervisor_module, "spawn", slow_spawn)


async def test_stop_during_a_restart_ends_stopped_and_can_start_again(
    orchestrator, network_request, monkeypatch, wait_for_state
):
    topology = await orchestrator.run_network(network_request())
    binary = topology.get("Node_A").binary
    delay_spawns(monkeypatch)
    restarting = asyncio.create_task(orchestrator.supervisor.restart("Node_A"))
    await wait_for_state(topology, "Node_A", S.restarting)

    record = await orchestrator.supervisor.stop("Node_A")

    assert record.state is S.stopped
    assert record.process is None
    with pytest.raises(NetworkStateError, match="pre-empted"):
        await restarting

    record = await orchestrator.supervisor.start("Node_A")
    assert record.state is S.running
    assert record.binary == binary


async def test_stop_during_an_upgrade_keeps_the_old_binary(
    orchestrator, network_request, make_binary, monkeypatch, wait_for_state
):
    topology = await orchestrator.run_network(network_request())
    original = topology.get("Node_A").binary
    v2 = make_binary("v2")
    v2.write_text(v2.read_text() + "# v2\n")
    delay_spawns(monkeypatch)
    upgrading = asyncio.create_task(orchestrator.supervisor.upgrade("Node_A", PrebuiltPath(v2)))
    await wait_for_state(topology, "Node_A", S.upgrading)

    record = await orchestrator.supervisor.stop("Node_A")

    assert record.state is S.stopped
    assert record.process is None
    assert record.binary == original
    with pytest.raises(NetworkStateError, match="pre-empted"):
        await upgrading

    record = await orchestrator.supervisor.start("Node_A")
    assert record.state is S.running
    assert record.process.artifact == original


async def test_operations_in_the_wrong_state_are_rejected(orchestrator, network_request):
    await orchestrator.run_network(network_request(start=False))
    supervisor = orchestrator.supervisor

    with pytest.raises(NetworkStateError):
        await supervisor.stop("Node_A")
    with pytest.raises(NetworkStateError):
        await supervisor.restart("Node_A")
    with pytest.raises(NodeNotFoundError):
        await supervisor.start("Node_Q")
    await supervisor.start("Node_A")
    with pytest.raises(NetworkStateError):
        await supervisor.start("Node_A")


async def test_teardown_stops_everything(orchestrator, network_request):
    topology = await orchestrator.run_network(network_request())
    handles = [record.process for record in topology.nodes()]

    await orchestrator.teardown()

    assert not orchestrator.defined
    assert all(not handle.running for handle in handles)
    assert topology.counts() == {"Stopped": 3}
    with pytest.raises(NetworkStateError):
        orchestrator.topology
