"""Per-node lifecycle and monitoring endpoints."""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ..auth.oidc import require_operator
from ..domain.orchestrator import NetworkOrchestrator
from .deps import audit, get_db_session, get_orchestrator
from .schemas import NodeUpgradeRequest

router = APIRouter(prefix="/network/nodes", tags=["nodes"])


@router.get("/{node_id}")
async def get_node(node_id: str, orchestrator: NetworkOrchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    return orchestrator.topology.get(node_id).to_dict()


@router.post("/{node_id}/start")
async def start_node(
    node_id: str,
    orchestrator: NetworkOrchestrator = Depends(get_orchestrator),
    session: AsyncSession = Depends(get_db_session),
    principal: dict = Depends(require_operator()),
) -> dict[str, Any]:
    record = await orchestrator.supervisor.start(node_id)
    audit(session, principal, "node.start", new={"nodeId": node_id, "state": record.state.value})
    return record.to_dict()


@router.post("/{node_id}/stop")
async def stop_node(
    node_id: str,
    orchestrator: NetworkOrchestrator = Depends(get_orchestrator),
    session: AsyncSession = Depends(get_db_session),
    principal: dict = Depends(require_operator()),
) -> dict[str, Any]:
    record = await orchestrator.supervisor.stop(node_id)
    audit(session, principal, "node.stop", new={"nodeId": node_id, "state": record.state.value})
    return record.to_dict()


@router.post("/{node_id}/restart")
async def restart_node(
    node_id: str,
    orchestrator: NetworkOrchestrator = Depends(get_orchestrator),
    session: AsyncSession = Depends(get_db_session),
    principal: dict = Depends(require_operator()),
) -> dict[str, Any]:
    record = await orchestrator.supervisor.restart(node_id)
    audit(session, principal, "node.restart", new={"nodeId": node_id, "state": record.state.value})
    return record.to_dict()


@router.post("/{node_id}/upgrade")
async def upgrade_node(
    node_id: str,
    payload: NodeUpgradeRequest,
    orchestrator: NetworkOrchestrator = Depends(get_orchestrator),
    session: AsyncSession = Depends(get_db_session),
    principal: dict = Depends(require_operator()),
) -> dict[str, Any]:
    previous = orchestrator.topology.get(node_id).binary
    record = await orchestrator.supervisor.upgrade(node_id, payload.source.to_source())
    audit(
        session,
        principal,
        "node.upgrade",
        old={"nodeId": node_id, "binary": previous.to_dict() if previous else None},
        new={"nodeId": node_id, "binary": record.binary.to_dict() if record.binary else None},
    )
    return record.to_dict()


@router.post("/{node_id}/provision")
async def reprovision_node(
    node_id: str,
    orchestrator: NetworkOrchestrator = Depends(get_orchestrator),
    session: AsyncSession = Depends(get_db_session),
    principal: dict = Depends(require_operator()),
) -> dict[str, Any]:
    record = await orchestrator.supervisor.reprovision(node_id)
    audit(session, principal, "node.provision", new={"nodeId": node_id, "state": record.state.value})
    return record.to_dict()


@router.get("/{node_id}/logs")
async def node_logs(
    node_id: str,
    tail: int | None = Query(default=None, ge=1),
    orchestrator: NetworkOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    orchestrator.topology.get(node_id)
    if not orchestrator.monitor.has_stream(node_id):
        return {"nodeId": node_id, "lines": []}
    buffer = orchestrator.monitor.stream(node_id).logs
    lines = buffer.tail(tail) if tail else buffer.snapshot()
    return {"nodeId": node_id, "lines": [line.to_dict() for line in lines]}


@router.get("/{node_id}/metrics")
async def node_metrics(node_id: str, orchestrator: NetworkOrchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    orchestrator.topology.get(node_id)
    if not orchestrator.monitor.has_stream(node_id):
        return {"nodeId": node_id, "samples": []}
    samples = orchestrator.monitor.stream(node_id).samples.snapshot()
    return {"nodeId": node_id, "samples": [sample.to_dict() for sample in samples]}


__all__ = ["router"]
