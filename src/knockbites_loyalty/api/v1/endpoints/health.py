from __future__ import annotations

from typing import Dict, Literal

from fastapi import APIRouter, Depends, Request
from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from knockbites_loyalty.core.settings import settings
from knockbites_loyalty.db.session import get_session


router = APIRouter()


class ComponentStatus(BaseModel):
    status: Literal["ready", "starting", "disabled", "error"]
    detail: str | None = Field(default=None, description="Human readable status detail")
    last_run_at: str | None = Field(default=None, description="ISO timestamp of the most recent sweep")


class ReadinessPayload(BaseModel):
    status: Literal["ready", "degraded", "error"]
    components: Dict[str, ComponentStatus]


def _worker_component(worker: object | None, enabled: bool, label: str) -> ComponentStatus:
    if not enabled or worker is None:
        return ComponentStatus(status="disabled", detail=f"{label} disabled via settings")
    running = bool(getattr(worker, "is_running", False))
    last_run_at = getattr(worker, "last_run_at", None)
    return ComponentStatus(
        status="ready" if running else "starting",
        detail=None if running else f"{label} not running",
        last_run_at=last_run_at.isoformat() if last_run_at else None,
    )


@router.get("/readyz", summary="Service readiness", response_model=ReadinessPayload)
async def service_readiness(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> ReadinessPayload:
    components: Dict[str, ComponentStatus] = {}
    overall: Literal["ready", "degraded", "error"] = "ready"

    try:
        await session.execute(text("SELECT 1"))
        components["database"] = ComponentStatus(status="ready")
    except SQLAlchemyError as exc:
        logger.exception("Readiness database check failed")
        components["database"] = ComponentStatus(status="error", detail=str(exc))
        overall = "error"

    components["referral_expiration"] = _worker_component(
        getattr(request.app.state, "referral_expiration_worker", None),
        settings.referral_expiration_worker_enabled,
        "Referral expiration worker",
    )
    components["ledger_reconciliation"] = _worker_component(
        getattr(request.app.state, "ledger_reconciliation_worker", None),
        settings.ledger_reconciliation_worker_enabled,
        "Ledger reconciliation worker",
    )

    if overall == "ready" and any(item.status == "starting" for item in components.values()):
        overall = "degraded"
    return ReadinessPayload(status=overall, components=components)
