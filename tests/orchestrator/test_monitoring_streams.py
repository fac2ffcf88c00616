import asyncio
import gc
import json
import os
from datetime import datetime, timezone
from pathlib import Path

from services.orchestrator.app.config import MonitoringSettings
from services.orchestrator.app.domain.monitoring import MonitoringAggregator, RetainedBuffer, _Merged
from services.orchestrator.app.domain.types import LogLine, NodeState


def push_line(buffer, text):
    return buffer.push(lambda seq: LogLine("Node_A", seq, text, datetime.now(timezone.utc)))


async def collect(iterator, count, timeout=5.0):
    items = []

    async def run():
        async for item in iterator:
            items.append(item)
            if len(items) >= count:
                return

    await asyncio.wait_for(run(), timeout)
    return items


async def test_buffer_retention_window():
    buffer = RetainedBuffer(maxlen=3)
    for index in range(5):
        push_line(buffer, f"line {index}")

    assert [line.text for line in buffer.snapshot()] == ["line 2", "line 3", "line 4"]
    assert [line.seq for line in buffer.tail(2)] == [3, 4]
    assert buffer.tail(0) == []


async def test_follower_sees_history_then_live_items_until_close():
    buffer = RetainedBuffer(maxlen=10)
    push_line(buffer, "old")
    received = []

    async def follow():
        async for line in buffer.follow(from_start=True):
            received.append(line.text)

    task = asyncio.create_task(follow())
    await asyncio.sleep(0)
    push_line(buffer, "new")
    buffer.close()
    await asyncio.wait_for(task, 2)

    assert received == ["old", "new"]


async def test_live_only_follower_skips_history():
    buffer = RetainedBuffer(maxlen=10)
    push_line(buffer, "old")
    follower = buffer.follow(from_start=False)
    pending = asyncio.ensure_future(follower.__anext__())
    await asyncio.sleep(0)
    push_line(buffer, "new")

    line = await asyncio.wait_for(pending, 2)
    assert line.text == "new"
    await follower.aclose()


async def test_slow_follower_resumes_at_oldest_retained_item():
    buffer = RetainedBuffer(maxlen=2)
    push_line(buffer, "a")
    follower = buffer.follow(from_start=True)
    first = await follower.__anext__()
    for text in ("b", "c", "d"):
        push_line(buffer, text)
    second = await follower.__anext__()

    assert first.text == "a"
    assert second.text == "c"
    await follower.aclose()


async def test_two_consumers_receive_the_same_items(orchestrator, network_request):
    await orchestrator.run_network(network_request(size=1))
    one = orchestrator.monitor.subscribe("Node_A", "logs", from_start=True)
    two = orchestrator.monitor.subscribe("Node_A", "logs", from_start=True)

    first = await collect(one, 3)
    second = await collect(two, 3)

    assert [line.seq for line in first] == [line.seq for line in second]
    assert [line.text for line in first] == [line.text for line in second]


async def test_resource_samples_are_collected(orchestrator, network_request):
    await orchestrator.run_network(network_request(size=1))

    samples = await collect(orchestrator.monitor.subscribe("Node_A", "metrics", from_start=True), 2)

    assert all(sample.rss_bytes > 0 for sample in samples)
    assert samples[0].seq < samples[1].seq


async def test_network_wide_subscription_follows_nodes_started_later(orchestrator, network_request):
    topology = await orchestrator.run_network(network_request(start=False, size=2))
    seen = set()

    async def watch():
        async for line in orchestrator.monitor.subscribe_all("logs"):
            if "Node is ready" in line.text:
                seen.add(line.node_id)
                if len(seen) == 2:
                    return

    watcher = asyncio.create_task(watch())
    await asyncio.sleep(0)
    await orchestrator.supervisor.start_all()
    await asyncio.wait_for(watcher, 5)

    assert seen == {"Node_A", "Node_B"}
    assert topology.counts() == {"Running": 2}


async def test_export_writes_retained_buffers(orchestrator, network_request):
    await orchestrator.run_network(network_request(size=2))
    await orchestrator.supervisor.stop("Node_B")

    exported = await orchestrator.export_logs()

    assert exported["nodes"] == ["Node_A", "Node_B"]
    path = Path(exported["ref"].removeprefix("file://"))
    document = json.loads(path.read_text())
    assert document["network"] == "test-net"
    assert any("Node is ready" in line["text"] for line in document["nodes"]["Node_B"]["logs"])
    assert orchestrator.topology.get("Node_B").state is NodeState.stopped


class StandInProcess:
    """Just enough of a ProcessHandle for the aggregator: our own pid and a fed reader."""

    def __init__(self, stdout=None):
        self.pid = os.getpid()
        self.stdout = stdout


def quiet_monitor(**overrides):
    return MonitoringAggregator(MonitoringSettings(sample_interval_s=60, **overrides))


def provisioned_node(bare_topology):
    record = bare_topology(1).get("Node_A")
    record.data_dir.mkdir(parents=True, exist_ok=True)
    return record


async def test_network_wide_subscriber_follows_every_reattach(bare_topology):
    record = provisioned_node(bare_topology)
    monitor = quiet_monitor()
    cycles = 300
    received = []

    async def consume():
        async for line in monitor.subscribe_all("logs"):
            received.append(line.text)
            if len(received) == cycles:
                return

    consumer = asyncio.create_task(consume())
    await asyncio.sleep(0)
    for index in range(cycles):
        stream = monitor.attach(record, StandInProcess())
        push_line(stream.logs, f"line {index}")
        await monitor.detach("Node_A", drain_timeout=0)
        gc.collect()
    await asyncio.wait_for(consumer, 5)

    assert sorted(received) == sorted(f"line {index}" for index in range(cycles))


async def test_finished_forwarders_are_dropped(bare_topology):
    record = provisioned_node(bare_topology)
    monitor = quiet_monitor()
    subscriber = _Merged("logs", maxsize=100)
    for _ in range(20):
        stream = monitor.attach(record, StandInProcess())
        subscriber.follow(stream, from_start=True)
        await monitor.detach("Node_A", drain_timeout=0)
    await asyncio.sleep(0.05)

    assert subscriber.forwarders == 0
    subscriber.close()


async def test_node_log_is_written_in_batches_and_on_exit(bare_topology):
    record = provisioned_node(bare_topology)
    monitor = quiet_monitor(log_flush_lines=3, log_flush_interval_s=0.05)
    reader = asyncio.StreamReader()
    monitor.attach(record, StandInProcess(stdout=reader))
    log_file = record.data_dir / "node.log"

    reader.feed_data(b"one\n")
    deadline = asyncio.get_running_loop().time() + 5
    while not (log_file.exists() and "one" in log_file.read_text()):
        assert asyncio.get_running_loop().time() < deadline, "quiet output was never written"
        await asyncio.sleep(0.02)

    reader.feed_data(b"two\nthree\nfour\n")
    reader.feed_eof()
    await monitor.detach("Node_A")

    assert log_file.read_text().splitlines() == ["one", "two", "three", "four"]
    assert [line.text for line in monitor.stream("Node_A").logs.snapshot()] == ["one", "two", "three", "four"]
