from __future__ import annotations

from typing import Dict, Literal

from fastapi import APIRouter, Depends
from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy import func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from rac_rewards_api.core.settings import settings
from rac_rewards_api.db.session import get_session
from rac_rewards_api.models.membership import MembershipType


router = APIRouter()


class ComponentStatus(BaseModel):
    status: Literal["ready", "disabled", "error"]
    detail: str | None = Field(default=None, description="Human readable status detail")


class ReadinessPayload(BaseModel):
    status: Literal["ready", "degraded", "error"]
    components: Dict[str, ComponentStatus]


@router.get("/healthz", summary="Service health check")
async def service_health() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz", summary="Service readiness", response_model=ReadinessPayload)
async def service_readiness(session: AsyncSession = Depends(get_session)) -> ReadinessPayload:
    components: Dict[str, ComponentStatus] = {}
    status: Literal["ready", "degraded", "error"] = "ready"

    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError as error:
        logger.warning("Readiness database check failed", error=str(error))
        components["database"] = ComponentStatus(status="error", detail="Database unreachable")
        status = "error"
    else:
        components["database"] = ComponentStatus(status="ready")
        listed = await session.scalar(
            select(func.count()).select_from(MembershipType).where(MembershipType.is_active.is_(True))
        )
        components["catalog"] = ComponentStatus(status="ready", detail=f"{listed or 0} active membership types")

    if settings.ownership_ledger_url:
        components["ownership_ledger"] = ComponentStatus(status="ready", detail="Ownership ledger configured")
    else:
        components["ownership_ledger"] = ComponentStatus(
            status="disabled",
            detail="Ownership ledger not configured (non-custodial verification unavailable)",
        )
        status = "degraded" if status != "error" else status

    if settings.membership_notifications_enabled:
        components["notifications"] = ComponentStatus(status="ready")
    else:
        components["notifications"] = ComponentStatus(
            status="disabled",
            detail="Membership notifications disabled via settings",
        )

    return ReadinessPayload(status=status, components=components)
