"""Server-sent event stream of live logs and resource samples."""
from __future__ import annotations

import json
from typing import AsyncIterator, Literal

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse

from ..domain.orchestrator import NetworkOrchestrator
from .deps import get_orchestrator

router = APIRouter(prefix="/network", tags=["streams"])


async def _events(items: AsyncIterator, kind: str) -> AsyncIterator[str]:
    async for item in items:
        yield f"event: {kind}\ndata: {json.dumps(item.to_dict())}\n\n"


@router.get("/stream")
async def stream(
    node_id: str | None = Query(default=None),
    kind: Literal["logs", "metrics"] = Query(default="logs"),
    from_start: bool = Query(default=False),
    orchestrator: NetworkOrchestrator = Depends(get_orchestrator),
) -> StreamingResponse:
    """Per-node streams end when the node's process exits; the network-wide stream runs until the client leaves."""
    topology = orchestrator.topology
    if node_id is not None:
        topology.get(node_id)
        items = orchestrator.monitor.subscribe(node_id, kind, from_start=from_start)
    else:
        items = orchestrator.monitor.subscribe_all(kind)
    return StreamingResponse(
        _events(items, kind),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )


__all__ = ["router"]
