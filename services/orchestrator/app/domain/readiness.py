"""Readiness contracts: how the supervisor decides a started node is up.

A contract is chosen per node-software version (longest matching version prefix in
``supervisor.readiness_by_version``, else ``supervisor.readiness``). A process merely
existing never counts as ready.
"""
from __future__ import annotations

import asyncio
import re
from typing import Protocol

import httpx
import structlog

from ..config import ReadinessSettings, SupervisorSettings
from .errors import ProcessError
from .monitoring import MonitoringAggregator
from .process import ProcessHandle
from .types import NodeRecord

logger = structlog.get_logger(__name__)


class ReadinessProbe(Protocol):
    async def wait_ready(self, record: NodeRecord, handle: ProcessHandle) -> None: ...


class LogMarkerReadiness:
    """Ready once a line of the node's output matches ``pattern``."""

    def __init__(self, pattern: str, monitor: MonitoringAggregator) -> None:
        self._pattern = re.compile(pattern)
        self._monitor = monitor

    async def wait_ready(self, record: NodeRecord, handle: ProcessHandle) -> None:
        async for line in self._monitor.subscribe(record.node_id, "logs", from_start=True):
            if self._pattern.search(line.text):
                logger.debug("readiness.marker_seen", node_id=record.node_id, line=line.text)
                return
        raise ProcessError(
            "Output ended before the readiness marker appeared", node_id=record.node_id, operation="readiness"
        )


class HttpStatusReadiness:
    """Ready once the node's REST status endpoint answers 2xx, probed with backoff."""

    def __init__(self, settings: ReadinessSettings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._settings = settings
        self._transport = transport

    async def wait_ready(self, record: NodeRecord, handle: ProcessHandle) -> None:
        url = record.config.rest_endpoint + self._settings.status_path
        delay = self._settings.probe_interval_s
        async with httpx.AsyncClient(transport=self._transport, timeout=5.0) as client:
            while handle.running:
                try:
                    response = await client.get(url)
                    if response.is_success:
                        logger.debug("readiness.status_ok", node_id=record.node_id, url=url)
                        return
                except httpx.HTTPError as exc:
                    logger.debug("readiness.probe_failed", node_id=record.node_id, url=url, error=repr(exc))
                await asyncio.sleep(delay)
                delay = min(delay * 2, self._settings.probe_max_interval_s)
        raise ProcessError("Process exited before reporting ready", node_id=record.node_id, operation="readiness")


def contract_for(version: str, settings: SupervisorSettings) -> ReadinessSettings:
    matches = [prefix for prefix in settings.readiness_by_version if version.startswith(prefix)]
    if not matches:
        return settings.readiness
    return settings.readiness_by_version[max(matches, key=len)]


def build_probe(
    version: str,
    settings: SupervisorSettings,
    monitor: MonitoringAggregator,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ReadinessProbe:
    contract = contract_for(version, settings)
    if contract.kind == "log-marker":
        return LogMarkerReadiness(contract.log_pattern, monitor)
    return HttpStatusReadiness(contract, transport)


__all__ = ["ReadinessProbe", "LogMarkerReadiness", "HttpStatusReadiness", "contract_for", "build_probe"]
