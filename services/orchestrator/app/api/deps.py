"""FastAPI dependency helpers."""
from __future__ import annotations

import uuid
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession

from ..domain.orchestrator import NetworkOrchestrator
from ..persistence.db import session_scope
from ..persistence.models import AuditLog

_orchestrator: NetworkOrchestrator | None = None


async def get_db_session() -> AsyncIterator[AsyncSession]:
    async with session_scope() as session:
        yield session


def get_orchestrator() -> NetworkOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = NetworkOrchestrator()
    return _orchestrator


def set_orchestrator(orchestrator: NetworkOrchestrator | None) -> None:
    """Install the session the API operates on (the CLI and tests provide their own)."""
    global _orchestrator
    _orchestrator = orchestrator


def audit(
    session: AsyncSession,
    principal: dict[str, Any],
    action: str,
    *,
    old: dict[str, Any] | None = None,
    new: dict[str, Any] | None = None,
) -> None:
    session.add(
        AuditLog(
            principal=str(principal.get("sub", "anonymous")),
            action=action,
            old_val=old,
            new_val=new,
            correlation_id=str(uuid.uuid4()),
        )
    )


__all__ = ["get_db_session", "get_orchestrator", "set_orchestrator", "audit"]
