"""Operator endpoints for publishing membership types and controlling minting."""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from rac_rewards_api.api.dependencies.membership import get_ownership_lifecycle
from rac_rewards_api.api.dependencies.security import require_admin_api_key
from rac_rewards_api.models.membership import CustodyMode, MembershipRarity, StakingDuration
from rac_rewards_api.services.membership import InvalidTypeDefinitionError, OwnershipLifecycle

from .memberships import raise_for_failure


router = APIRouter(
    prefix="/admin/memberships",
    tags=["memberships-admin"],
    dependencies=[Depends(require_admin_api_key)],
)


class PublishTypeRequest(BaseModel):
    slug: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    custodyMode: CustodyMode
    rarity: MembershipRarity
    basePriceUsdt: Decimal = Field(Decimal("0"), ge=0)
    mintCap: int = Field(..., ge=0)
    isUnbounded: bool = False
    isUpgradeable: bool = False
    isEvolvable: bool = False
    isFractionEligible: bool = False
    baseEarnRatio: Decimal = Field(..., ge=0, le=1)
    upgradeBonusRatio: Decimal = Field(Decimal("0"), ge=0)
    evolutionMinInvestment: Decimal = Field(Decimal("0"), ge=0)
    evolutionBonusRatio: Decimal = Field(Decimal("0"), ge=0)
    stakingDuration: StakingDuration = StakingDuration.FOREVER


class ReviseTypeRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    basePriceUsdt: Optional[Decimal] = Field(None, ge=0)
    mintCap: Optional[int] = Field(None, ge=0)
    isUnbounded: Optional[bool] = None
    isUpgradeable: Optional[bool] = None
    isEvolvable: Optional[bool] = None
    isFractionEligible: Optional[bool] = None
    baseEarnRatio: Optional[Decimal] = Field(None, ge=0, le=1)
    upgradeBonusRatio: Optional[Decimal] = Field(None, ge=0)
    evolutionMinInvestment: Optional[Decimal] = Field(None, ge=0)
    evolutionBonusRatio: Optional[Decimal] = Field(None, ge=0)
    stakingDuration: Optional[StakingDuration] = None


class PauseMintingRequest(BaseModel):
    reason: str = Field(..., min_length=1, description="Shown to operators while minting is paused")


_REVISION_FIELDS = {
    "name": "name",
    "description": "description",
    "basePriceUsdt": "base_price_usdt",
    "mintCap": "mint_cap",
    "isUnbounded": "is_unbounded",
    "isUpgradeable": "is_upgradeable",
    "isEvolvable": "is_evolvable",
    "isFractionEligible": "is_fraction_eligible",
    "baseEarnRatio": "base_earn_ratio",
    "upgradeBonusRatio": "upgrade_bonus_ratio",
    "evolutionMinInvestment": "evolution_min_investment",
    "evolutionBonusRatio": "evolution_bonus_ratio",
    "stakingDuration": "staking_duration",
}


@router.post("/types", status_code=status.HTTP_201_CREATED, summary="Publish a membership type")
async def publish_membership_type(
    payload: PublishTypeRequest,
    lifecycle: OwnershipLifecycle = Depends(get_ownership_lifecycle),
) -> dict[str, Any]:
    try:
        definition = await lifecycle.catalog.publish(
            slug=payload.slug,
            name=payload.name,
            description=payload.description,
            custody_mode=payload.custodyMode,
            rarity=payload.rarity,
            base_price_usdt=payload.basePriceUsdt,
            mint_cap=payload.mintCap,
            is_unbounded=payload.isUnbounded,
            is_upgradeable=payload.isUpgradeable,
            is_evolvable=payload.isEvolvable,
            is_fraction_eligible=payload.isFractionEligible,
            base_earn_ratio=payload.baseEarnRatio,
            upgrade_bonus_ratio=payload.upgradeBonusRatio,
            evolution_min_investment=payload.evolutionMinInvestment,
            evolution_bonus_ratio=payload.evolutionBonusRatio,
            staking_duration=payload.stakingDuration,
        )
    except InvalidTypeDefinitionError as error:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(error)) from error
    return definition.as_payload()


@router.post(
    "/types/{type_id}/revisions",
    status_code=status.HTTP_201_CREATED,
    summary="Publish a new version superseding a membership type",
)
async def publish_membership_type_revision(
    type_id: UUID,
    payload: ReviseTypeRequest,
    lifecycle: OwnershipLifecycle = Depends(get_ownership_lifecycle),
) -> dict[str, Any]:
    changes = {
        _REVISION_FIELDS[key]: value
        for key, value in payload.model_dump(exclude_unset=True).items()
    }
    if not changes:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No changes supplied")
    try:
        definition = await lifecycle.catalog.publish_revision(type_id, **changes)
    except InvalidTypeDefinitionError as error:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(error)) from error
    if definition is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Membership type not found")
    return definition.as_payload()


@router.post("/types/{type_id}/minting/pause", summary="Pause minting for a membership type")
async def pause_membership_minting(
    type_id: UUID,
    payload: PauseMintingRequest,
    lifecycle: OwnershipLifecycle = Depends(get_ownership_lifecycle),
) -> dict[str, Any]:
    result = await lifecycle.admission.pause(type_id, payload.reason)
    if not result.ok:
        raise_for_failure(result.failure)
    return result.value.as_payload()


@router.post("/types/{type_id}/minting/resume", summary="Resume minting for a membership type")
async def resume_membership_minting(
    type_id: UUID,
    lifecycle: OwnershipLifecycle = Depends(get_ownership_lifecycle),
) -> dict[str, Any]:
    result = await lifecycle.admission.resume(type_id)
    if not result.ok:
        raise_for_failure(result.failure)
    return result.value.as_payload()
