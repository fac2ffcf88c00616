"""Deploy submission and history."""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..auth.oidc import require_operator
from ..domain.orchestrator import NetworkOrchestrator
from ..persistence.models import DeployRecord, DeployStatus
from .deps import audit, get_db_session, get_orchestrator
from .schemas import DeployCreateRequest

router = APIRouter(prefix="/network/deploys", tags=["deploys"])


def _record_to_dict(record: DeployRecord) -> dict[str, Any]:
    return {
        "deployHash": record.deploy_hash,
        "network": record.network,
        "targetNode": record.target_node,
        "signer": record.signer,
        "outcome": record.outcome.value,
        "statusCode": record.status_code,
        "response": record.response,
        "createdAt": record.created_at.isoformat() if record.created_at else None,
    }


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_deploy(
    payload: DeployCreateRequest,
    orchestrator: NetworkOrchestrator = Depends(get_orchestrator),
    session: AsyncSession = Depends(get_db_session),
    principal: dict = Depends(require_operator()),
) -> dict[str, Any]:
    submitter = orchestrator.deploys
    if payload.session is not None:
        signer = orchestrator.topology.account(payload.signer)
        deploy = await submitter.submit(
            payload.target_node, payload.session, signer.keypair, signer_name=signer.name, payment=payload.payment
        )
    elif payload.amount is not None and payload.recipient is not None:
        deploy = await submitter.transfer(
            payload.target_node, payload.signer, payload.recipient, payload.amount, transfer_id=payload.transfer_id
        )
    else:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Provide either a raw session or a transfer amount and recipient",
        )
    record = DeployRecord(
        deploy_hash=deploy.deploy_hash,
        network=orchestrator.topology.name,
        target_node=deploy.target_node,
        signer=deploy.signer,
        outcome=DeployStatus(deploy.outcome.value),
        status_code=deploy.status_code,
        response=deploy.response,
        payload=deploy.payload,
    )
    session.add(record)
    audit(session, principal, "deploy.submit", new={"deployHash": deploy.deploy_hash, "outcome": deploy.outcome.value})
    return deploy.to_dict()


@router.get("")
async def list_deploys(
    target_node: str | None = Query(default=None, alias="targetNode"),
    session: AsyncSession = Depends(get_db_session),
) -> list[dict[str, Any]]:
    query = select(DeployRecord).order_by(DeployRecord.created_at)
    if target_node:
        query = query.where(DeployRecord.target_node == target_node)
    result = await session.execute(query)
    return [_record_to_dict(record) for record in result.scalars()]


__all__ = ["router"]
