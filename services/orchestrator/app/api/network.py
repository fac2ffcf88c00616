"""Network-level endpoints: define, inspect, upgrade and tear down."""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..auth.oidc import require_operator
from ..domain.orchestrator import NetworkOrchestrator
from .deps import audit, get_db_session, get_orchestrator
from .schemas import NetworkCreateRequest, UpgradeRequest

router = APIRouter(prefix="/network", tags=["network"])


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_network(
    payload: NetworkCreateRequest,
    orchestrator: NetworkOrchestrator = Depends(get_orchestrator),
    session: AsyncSession = Depends(get_db_session),
    principal: dict = Depends(require_operator()),
) -> dict[str, Any]:
    topology = await orchestrator.run_network(payload.to_request())
    described = topology.describe()
    audit(session, principal, "network.create", new={"name": topology.name, "nodes": topology.node_ids()})
    return described


@router.get("")
async def get_network(orchestrator: NetworkOrchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    return orchestrator.topology.describe()


@router.delete("")
async def delete_network(
    keep_workdir: bool = Query(default=False, alias="keepWorkdir"),
    orchestrator: NetworkOrchestrator = Depends(get_orchestrator),
    session: AsyncSession = Depends(get_db_session),
    principal: dict = Depends(require_operator()),
) -> dict[str, Any]:
    name = orchestrator.topology.name
    await orchestrator.teardown(keep_workdir=keep_workdir)
    audit(session, principal, "network.teardown", old={"name": name})
    return {"status": "torn_down", "name": name}


@router.post("/upgrade")
async def upgrade_network(
    payload: UpgradeRequest,
    orchestrator: NetworkOrchestrator = Depends(get_orchestrator),
    session: AsyncSession = Depends(get_db_session),
    principal: dict = Depends(require_operator()),
) -> dict[str, Any]:
    outcomes = await orchestrator.supervisor.rolling_upgrade(payload.source.to_source(), payload.node_ids)
    results = [outcome.to_dict() for outcome in outcomes]
    audit(session, principal, "network.upgrade", new={"results": results})
    return {"results": results}


@router.get("/status")
async def network_status(orchestrator: NetworkOrchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    return {"name": orchestrator.topology.name, "nodes": await orchestrator.node_status()}


@router.post("/logs/export")
async def export_logs(
    node_id: str | None = Query(default=None, alias="nodeId"),
    orchestrator: NetworkOrchestrator = Depends(get_orchestrator),
    session: AsyncSession = Depends(get_db_session),
    principal: dict = Depends(require_operator()),
) -> dict[str, Any]:
    exported = await orchestrator.export_logs(node_id)
    audit(session, principal, "network.logs_export", new=exported)
    return exported


@router.post("/shutdown", status_code=status.HTTP_202_ACCEPTED)
async def shutdown(
    request: Request,
    orchestrator: NetworkOrchestrator = Depends(get_orchestrator),
    principal: dict = Depends(require_operator()),
) -> dict[str, Any]:
    """Tear down the network (if any) and ask the hosting process to exit."""
    name = orchestrator.topology.name if orchestrator.defined else None
    if name is not None:
        await orchestrator.teardown()
    shutdown_event = getattr(request.app.state, "shutdown_event", None)
    if shutdown_event is not None:
        shutdown_event.set()
    return {"status": "shutting_down", "network": name}


__all__ = ["router"]
