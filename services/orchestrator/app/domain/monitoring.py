"""Per-node log and resource-usage streams.

Each live node process gets a :class:`MonitorStream` with two producer tasks: a log pump
reading the process output and a psutil sampler. Both feed bounded
:class:`RetainedBuffer` instances that consumers can snapshot or follow without affecting
the producers.
"""
from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Callable, Generic, Literal, TypeVar

import psutil
import structlog

from ..config import MonitoringSettings, get_settings
from .errors import NodeNotFoundError
from .process import ProcessHandle
from .types import LogLine, NodeRecord, ResourceSample

logger = structlog.get_logger(__name__)

T = TypeVar("T", LogLine, ResourceSample)

StreamKind = Literal["logs", "metrics"]


def _append_lines(path: Path, lines: list[str]) -> None:
    with open(path, "a", encoding="utf-8") as handle:
        handle.write("\n".join(lines) + "\n")


class RetainedBuffer(Generic[T]):
    """Append-only sequence with a retention window and live followers."""

    def __init__(self, maxlen: int) -> None:
        self._items: deque[T] = deque(maxlen=maxlen)
        self._next_seq = 0
        self._changed = asyncio.Event()
        self._closed = False

    def __len__(self) -> int:
        return len(self._items)

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, build: Callable[[int], T]) -> T:
        if self._closed:
            raise RuntimeError("buffer is closed")
        item = build(self._next_seq)
        self._next_seq += 1
        self._items.append(item)
        self._wake()
        return item

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._wake()

    def _wake(self) -> None:
        changed, self._changed = self._changed, asyncio.Event()
        changed.set()

    def snapshot(self) -> list[T]:
        return list(self._items)

    def tail(self, count: int) -> list[T]:
        if count <= 0:
            return []
        return list(self._items)[-count:]

    async def follow(self, from_start: bool = True) -> AsyncIterator[T]:
        """Yield retained items (optionally) and then new ones until the buffer closes.

        A follower that falls behind the retention window resumes at the oldest item still
        retained.
        """
        cursor = self._items[0].seq if (from_start and self._items) else self._next_seq
        while True:
            if self._items:
                start = max(cursor - self._items[0].seq, 0)
                pending = [self._items[index] for index in range(start, len(self._items))]
            else:
                pending = []
            for item in pending:
                cursor = item.seq + 1
                yield item
            if self._closed and cursor >= self._next_seq:
                return
            if cursor < self._next_seq:
                continue
            await self._changed.wait()


@dataclass
class MonitorStream:
    node_id: str
    pid: int
    logs: RetainedBuffer[LogLine]
    samples: RetainedBuffer[ResourceSample]
    log_path: Path | None = None
    pump: asyncio.Task | None = None
    sampler: asyncio.Task | None = None

    @property
    def tasks(self) -> list[asyncio.Task]:
        return [task for task in (self.pump, self.sampler) if task is not None]

    @property
    def live(self) -> bool:
        return not self.logs.closed

    def buffer(self, kind: StreamKind) -> RetainedBuffer:
        return self.logs if kind == "logs" else self.samples


class _Merged:
    """One network-wide subscriber: a bounded queue fed by per-node forwarders."""

    def __init__(self, kind: StreamKind, maxsize: int) -> None:
        self.kind = kind
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        # Keyed by the buffer itself so a finished forwarder's key cannot be reused.
        self._forwarders: dict[RetainedBuffer, asyncio.Task] = {}

    def follow(self, stream: MonitorStream, from_start: bool) -> None:
        buffer = stream.buffer(self.kind)
        if buffer in self._forwarders:
            return
        task = asyncio.create_task(self._forward(buffer, from_start))
        self._forwarders[buffer] = task
        task.add_done_callback(lambda _: self._forwarders.pop(buffer, None))

    @property
    def forwarders(self) -> int:
        return len(self._forwarders)

    async def _forward(self, buffer: RetainedBuffer, from_start: bool) -> None:
        async for item in buffer.follow(from_start=from_start):
            await self.queue.put(item)

    def close(self) -> None:
        for task in self._forwarders.values():
            task.cancel()
        self._forwarders.clear()


class MonitoringAggregator:
    def __init__(self, settings: MonitoringSettings | None = None) -> None:
        self._settings = settings or get_settings().monitoring
        self._streams: dict[str, MonitorStream] = {}
        self._merged: set[_Merged] = set()

    # Lifecycle, driven by the supervisor

    def attach(self, record: NodeRecord, handle: ProcessHandle) -> MonitorStream:
        """Start collecting from ``handle``; replaces any retained stream of the node."""
        previous = self._streams.get(record.node_id)
        if previous is not None and previous.live:
            self._release(previous)
        stream = MonitorStream(
            node_id=record.node_id,
            pid=handle.pid,
            logs=RetainedBuffer(self._settings.log_retention_lines),
            samples=RetainedBuffer(self._settings.sample_retention),
            log_path=record.data_dir / "node.log",
        )
        if handle.stdout is not None:
            stream.pump = asyncio.create_task(self._pump(stream, handle.stdout), name=f"logs:{record.node_id}")
        stream.sampler = asyncio.create_task(self._sample(stream), name=f"samples:{record.node_id}")
        self._streams[record.node_id] = stream
        for subscriber in self._merged:
            subscriber.follow(stream, from_start=True)
        logger.debug("monitor.attached", node_id=record.node_id, pid=handle.pid)
        return stream

    async def detach(self, node_id: str, drain_timeout: float = 2.0) -> None:
        """Stop collecting for ``node_id``; retained items stay readable."""
        stream = self._streams.get(node_id)
        if stream is None or not stream.live:
            return
        if stream.pump is not None and not stream.pump.done() and drain_timeout > 0:
            # The pump ends on EOF once the process has exited; give it a moment to drain.
            await asyncio.wait({stream.pump}, timeout=drain_timeout)
        self._release(stream)
        await asyncio.gather(*stream.tasks, return_exceptions=True)
        logger.debug("monitor.detached", node_id=node_id, lines=len(stream.logs), samples=len(stream.samples))

    def _release(self, stream: MonitorStream) -> None:
        for task in stream.tasks:
            task.cancel()
        stream.logs.close()
        stream.samples.close()

    async def close(self) -> None:
        for node_id in list(self._streams):
            await self.detach(node_id, drain_timeout=0)
        for subscriber in list(self._merged):
            subscriber.close()
        self._merged.clear()

    def forget(self) -> None:
        self._streams.clear()

    # Producers

    async def _pump(self, stream: MonitorStream, reader: asyncio.StreamReader) -> None:
        """Read process output into the log buffer; ``node.log`` is appended in batches."""
        loop = asyncio.get_running_loop()
        interval = self._settings.log_flush_interval_s
        pending: list[str] = []
        oldest = 0.0
        read: asyncio.Task | None = None
        try:
            while True:
                read = read or asyncio.ensure_future(reader.readline())
                if pending:
                    done, _ = await asyncio.wait({read}, timeout=interval)
                    if not done:
                        # Quiet process: write out what has accumulated and keep waiting.
                        batch, pending = pending, []
                        await asyncio.to_thread(_append_lines, stream.log_path, batch)
                        continue
                try:
                    raw = await read
                except ValueError:
                    text = "[line truncated: exceeds stream limit]"
                else:
                    if not raw:
                        break
                    text = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                finally:
                    read = None
                at = datetime.now(timezone.utc)
                stream.logs.push(lambda seq: LogLine(stream.node_id, seq, text, at))
                if stream.log_path is None:
                    continue
                if not pending:
                    oldest = loop.time()
                pending.append(text)
                if len(pending) >= self._settings.log_flush_lines or loop.time() - oldest >= interval:
                    batch, pending = pending, []
                    await asyncio.to_thread(_append_lines, stream.log_path, batch)
        finally:
            if read is not None:
                read.cancel()
            if pending and stream.log_path is not None:
                # Runs on cancellation too, so the tail is written synchronously.
                _append_lines(stream.log_path, pending)

    async def _sample(self, stream: MonitorStream) -> None:
        try:
            process = psutil.Process(stream.pid)
            process.cpu_percent(None)
        except psutil.NoSuchProcess:
            return
        while True:
            await asyncio.sleep(self._settings.sample_interval_s)
            try:
                rss = process.memory_info().rss
            except psutil.NoSuchProcess:
                return
            except psutil.AccessDenied:
                logger.warning("monitor.sample_denied", node_id=stream.node_id, pid=stream.pid)
                return
            try:
                cpu: float | None = process.cpu_percent(None)
            except (psutil.AccessDenied, NotImplementedError):
                cpu = None
            except psutil.NoSuchProcess:
                return
            at = datetime.now(timezone.utc)
            stream.samples.push(lambda seq: ResourceSample(stream.node_id, seq, at, rss, cpu))

    # Consumers

    def stream(self, node_id: str) -> MonitorStream:
        stream = self._streams.get(node_id)
        if stream is None:
            raise NodeNotFoundError(f"No monitoring data for node {node_id!r}", node_id=node_id, operation="monitor")
        return stream

    def has_stream(self, node_id: str) -> bool:
        return node_id in self._streams

    def log_tail(self, node_id: str, count: int) -> list[str]:
        stream = self._streams.get(node_id)
        if stream is None:
            return []
        return [line.text for line in stream.logs.tail(count)]

    def snapshot(self, node_id: str | None = None) -> dict[str, dict[str, list[dict]]]:
        """Full retained buffers, keyed by node id."""
        node_ids = [node_id] if node_id is not None else sorted(self._streams)
        result: dict[str, dict[str, list[dict]]] = {}
        for current in node_ids:
            stream = self.stream(current)
            result[current] = {
                "logs": [line.to_dict() for line in stream.logs.snapshot()],
                "metrics": [sample.to_dict() for sample in stream.samples.snapshot()],
            }
        return result

    def subscribe(self, node_id: str, kind: StreamKind = "logs", from_start: bool = True) -> AsyncIterator:
        """Follow one node's stream; ends when that process's stream closes."""
        return self.stream(node_id).buffer(kind).follow(from_start=from_start)

    async def subscribe_all(self, kind: StreamKind = "logs") -> AsyncIterator:
        """Follow every node, including nodes started after subscribing.

        Items from one node keep their order; there is no ordering across nodes.
        """
        subscriber = _Merged(kind, self._settings.subscriber_queue_size)
        self._merged.add(subscriber)
        for stream in self._streams.values():
            if stream.live:
                subscriber.follow(stream, from_start=False)
        try:
            while True:
                yield await subscriber.queue.get()
        finally:
            self._merged.discard(subscriber)
            subscriber.close()


__all__ = ["MonitoringAggregator", "MonitorStream", "RetainedBuffer", "StreamKind"]
