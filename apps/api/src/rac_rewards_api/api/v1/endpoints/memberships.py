"""API endpoints for membership catalog browsing and the member lifecycle."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, List, NoReturn, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from rac_rewards_api.api.dependencies.membership import get_ownership_lifecycle
from rac_rewards_api.api.dependencies.session import require_member_session
from rac_rewards_api.models.membership import CustodyMode, MembershipInstance, MembershipLifecycleEvent
from rac_rewards_api.services.membership import (
    MembershipErrorKind,
    MembershipFailure,
    OwnershipLifecycle,
    WalletProof,
)


router = APIRouter(prefix="/memberships", tags=["memberships"])


_NOT_FOUND = {MembershipErrorKind.CATALOG_NOT_FOUND, MembershipErrorKind.INSTANCE_NOT_FOUND}
_UNPROCESSABLE = {
    MembershipErrorKind.NOT_APPLICABLE,
    MembershipErrorKind.INVALID_AMOUNT,
    MembershipErrorKind.VERIFICATION_FAILED,
}


def failure_status(failure: MembershipFailure) -> int:
    if failure.kind in _NOT_FOUND:
        return status.HTTP_404_NOT_FOUND
    if failure.retryable and failure.kind != MembershipErrorKind.CONCURRENT_MODIFICATION:
        return status.HTTP_503_SERVICE_UNAVAILABLE
    if failure.kind in _UNPROCESSABLE:
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    return status.HTTP_409_CONFLICT


def raise_for_failure(failure: MembershipFailure) -> NoReturn:
    raise HTTPException(status_code=failure_status(failure), detail=failure.as_payload())


class MembershipInstanceResponse(BaseModel):
    id: UUID
    ownerId: UUID
    typeId: UUID
    custodyMode: str
    upgradeState: str
    evolutionState: str
    autoStakingState: str
    verificationState: str
    isUpgraded: bool
    isEvolved: bool
    autoStakingEnabled: bool
    isVerified: bool
    accumulatedInvestment: str
    autoStakingAssetRef: Optional[str]
    walletRef: Optional[str]
    paymentRef: Optional[str]
    createdAt: datetime
    upgradedAt: Optional[datetime]
    evolvedAt: Optional[datetime]
    autoStakingEnabledAt: Optional[datetime]
    verifiedAt: Optional[datetime]


class LifecycleEventResponse(BaseModel):
    id: UUID
    eventType: str
    metadata: dict[str, Any]
    createdAt: datetime


class CreateMembershipRequest(BaseModel):
    typeId: UUID = Field(..., description="Membership type to mint")
    walletRef: Optional[str] = Field(None, description="Wallet for non-custodial delivery")
    paymentRef: Optional[str] = Field(None, description="Captured payment reference for priced types")


class EvolveRequest(BaseModel):
    additionalInvestment: Decimal = Field(Decimal("0"), description="USDT invested with this request")


class InvestmentRequest(BaseModel):
    amount: Decimal = Field(..., gt=0, description="USDT invested through the marketplace")


class AutoStakingRequest(BaseModel):
    assetRef: str = Field(..., min_length=1, description="Asset staked on the member's behalf")


class VerifyRequest(BaseModel):
    walletRef: str = Field(..., min_length=1, description="Wallet claimed to hold the membership")
    signature: Optional[str] = Field(None, description="Signed ownership challenge")


def _serialize_instance(instance: MembershipInstance) -> MembershipInstanceResponse:
    return MembershipInstanceResponse(
        id=instance.id,
        ownerId=instance.owner_id,
        typeId=instance.membership_type_id,
        custodyMode=instance.custody_mode.value,
        upgradeState=instance.upgrade_state.value,
        evolutionState=instance.evolution_state.value,
        autoStakingState=instance.auto_staking_state.value,
        verificationState=instance.verification_state.value,
        isUpgraded=instance.is_upgraded,
        isEvolved=instance.is_evolved,
        autoStakingEnabled=instance.auto_staking_enabled,
        isVerified=instance.is_verified,
        accumulatedInvestment=str(instance.accumulated_investment or Decimal("0")),
        autoStakingAssetRef=instance.auto_staking_asset_ref,
        walletRef=instance.wallet_ref,
        paymentRef=instance.payment_ref,
        createdAt=instance.created_at,
        upgradedAt=instance.upgraded_at,
        evolvedAt=instance.evolved_at,
        autoStakingEnabledAt=instance.auto_staking_enabled_at,
        verifiedAt=instance.verified_at,
    )


def _serialize_event(event: MembershipLifecycleEvent) -> LifecycleEventResponse:
    return LifecycleEventResponse(
        id=event.id,
        eventType=event.event_type.value,
        metadata=dict(event.metadata_json or {}),
        createdAt=event.created_at,
    )


async def _owned_instance(lifecycle: OwnershipLifecycle, instance_id: UUID, owner_id: UUID) -> MembershipInstance:
    result = await lifecycle.get_instance(instance_id)
    if not result.ok:
        raise_for_failure(result.failure)
    if result.value.owner_id != owner_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Membership belongs to another member")
    return result.value


@router.get("/types", summary="List membership types open for minting")
async def list_membership_types(
    custody_mode: Optional[CustodyMode] = Query(None, alias="custodyMode"),
    lifecycle: OwnershipLifecycle = Depends(get_ownership_lifecycle),
) -> List[dict[str, Any]]:
    definitions = await lifecycle.catalog.list_active(custody_mode=custody_mode)
    return [definition.as_payload() for definition in definitions]


@router.get("/types/{type_id}", summary="Membership type definition")
async def get_membership_type(
    type_id: UUID,
    lifecycle: OwnershipLifecycle = Depends(get_ownership_lifecycle),
) -> dict[str, Any]:
    definition = await lifecycle.catalog.get(type_id)
    if definition is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Membership type not found")
    return definition.as_payload()


@router.get("/types/{type_id}/minting", summary="Remaining supply for a membership type")
async def get_minting_status(
    type_id: UUID,
    lifecycle: OwnershipLifecycle = Depends(get_ownership_lifecycle),
) -> dict[str, Any]:
    result = await lifecycle.admission.status(type_id)
    if not result.ok:
        raise_for_failure(result.failure)
    return result.value.as_payload()


@router.post(
    "/instances",
    response_model=MembershipInstanceResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_membership(
    payload: CreateMembershipRequest,
    owner_id: UUID = Depends(require_member_session),
    lifecycle: OwnershipLifecycle = Depends(get_ownership_lifecycle),
) -> MembershipInstanceResponse:
    result = await lifecycle.create(
        payload.typeId,
        owner_id,
        wallet_ref=payload.walletRef,
        payment_ref=payload.paymentRef,
    )
    if not result.ok:
        raise_for_failure(result.failure)
    return _serialize_instance(result.value)


@router.post(
    "/instances/free",
    response_model=MembershipInstanceResponse,
    summary="Claim the free starter membership",
)
async def claim_free_membership(
    owner_id: UUID = Depends(require_member_session),
    lifecycle: OwnershipLifecycle = Depends(get_ownership_lifecycle),
) -> MembershipInstanceResponse:
    result = await lifecycle.assign_free_membership(owner_id)
    if not result.ok:
        raise_for_failure(result.failure)
    return _serialize_instance(result.value)


@router.get("/instances", response_model=List[MembershipInstanceResponse])
async def list_my_memberships(
    owner_id: UUID = Depends(require_member_session),
    lifecycle: OwnershipLifecycle = Depends(get_ownership_lifecycle),
) -> List[MembershipInstanceResponse]:
    instances = await lifecycle.list_owner_instances(owner_id)
    return [_serialize_instance(instance) for instance in instances]


@router.get("/instances/{instance_id}", response_model=MembershipInstanceResponse)
async def get_membership(
    instance_id: UUID,
    owner_id: UUID = Depends(require_member_session),
    lifecycle: OwnershipLifecycle = Depends(get_ownership_lifecycle),
) -> MembershipInstanceResponse:
    return _serialize_instance(await _owned_instance(lifecycle, instance_id, owner_id))


@router.post("/instances/{instance_id}/upgrade", response_model=MembershipInstanceResponse)
async def upgrade_membership(
    instance_id: UUID,
    owner_id: UUID = Depends(require_member_session),
    lifecycle: OwnershipLifecycle = Depends(get_ownership_lifecycle),
) -> MembershipInstanceResponse:
    await _owned_instance(lifecycle, instance_id, owner_id)
    result = await lifecycle.upgrade(instance_id)
    if not result.ok:
        raise_for_failure(result.failure)
    return _serialize_instance(result.value)


@router.post("/instances/{instance_id}/evolve", response_model=MembershipInstanceResponse)
async def evolve_membership(
    instance_id: UUID,
    payload: EvolveRequest,
    owner_id: UUID = Depends(require_member_session),
    lifecycle: OwnershipLifecycle = Depends(get_ownership_lifecycle),
) -> MembershipInstanceResponse:
    await _owned_instance(lifecycle, instance_id, owner_id)
    result = await lifecycle.evolve(instance_id, payload.additionalInvestment)
    if not result.ok:
        raise_for_failure(result.failure)
    return _serialize_instance(result.value)


@router.post("/instances/{instance_id}/investments", response_model=MembershipInstanceResponse)
async def record_membership_investment(
    instance_id: UUID,
    payload: InvestmentRequest,
    owner_id: UUID = Depends(require_member_session),
    lifecycle: OwnershipLifecycle = Depends(get_ownership_lifecycle),
) -> MembershipInstanceResponse:
    await _owned_instance(lifecycle, instance_id, owner_id)
    result = await lifecycle.record_investment(instance_id, payload.amount)
    if not result.ok:
        raise_for_failure(result.failure)
    return _serialize_instance(result.value)


@router.post("/instances/{instance_id}/auto-staking", response_model=MembershipInstanceResponse)
async def enable_membership_auto_staking(
    instance_id: UUID,
    payload: AutoStakingRequest,
    owner_id: UUID = Depends(require_member_session),
    lifecycle: OwnershipLifecycle = Depends(get_ownership_lifecycle),
) -> MembershipInstanceResponse:
    await _owned_instance(lifecycle, instance_id, owner_id)
    result = await lifecycle.enable_auto_staking(instance_id, payload.assetRef)
    if not result.ok:
        raise_for_failure(result.failure)
    return _serialize_instance(result.value)


@router.post("/instances/{instance_id}/verify", response_model=MembershipInstanceResponse)
async def verify_membership(
    instance_id: UUID,
    payload: VerifyRequest,
    owner_id: UUID = Depends(require_member_session),
    lifecycle: OwnershipLifecycle = Depends(get_ownership_lifecycle),
) -> MembershipInstanceResponse:
    await _owned_instance(lifecycle, instance_id, owner_id)
    result = await lifecycle.verify(
        instance_id,
        WalletProof(wallet_ref=payload.walletRef, signature=payload.signature),
    )
    if not result.ok:
        raise_for_failure(result.failure)
    return _serialize_instance(result.value)


@router.get("/instances/{instance_id}/entitlements", summary="Effective ratios and eligibility")
async def get_membership_entitlements(
    instance_id: UUID,
    owner_id: UUID = Depends(require_member_session),
    lifecycle: OwnershipLifecycle = Depends(get_ownership_lifecycle),
) -> dict[str, Any]:
    await _owned_instance(lifecycle, instance_id, owner_id)
    result = await lifecycle.entitlements(instance_id)
    if not result.ok:
        raise_for_failure(result.failure)
    return result.value.as_payload()


@router.get("/instances/{instance_id}/evolution-eligibility", summary="Evolution progress")
async def get_membership_evolution_eligibility(
    instance_id: UUID,
    owner_id: UUID = Depends(require_member_session),
    lifecycle: OwnershipLifecycle = Depends(get_ownership_lifecycle),
) -> dict[str, Any]:
    await _owned_instance(lifecycle, instance_id, owner_id)
    result = await lifecycle.evolution_eligibility(instance_id)
    if not result.ok:
        raise_for_failure(result.failure)
    return result.value.as_payload()


@router.get("/instances/{instance_id}/fractional-eligibility", summary="Fractional investment allowance")
async def get_membership_fractional_eligibility(
    instance_id: UUID,
    points_balance: Decimal = Query(..., alias="pointsBalance", ge=0),
    owner_id: UUID = Depends(require_member_session),
    lifecycle: OwnershipLifecycle = Depends(get_ownership_lifecycle),
) -> dict[str, Any]:
    await _owned_instance(lifecycle, instance_id, owner_id)
    result = await lifecycle.fractional_eligibility(instance_id, points_balance)
    if not result.ok:
        raise_for_failure(result.failure)
    return result.value.as_payload()


@router.get("/instances/{instance_id}/events", response_model=List[LifecycleEventResponse])
async def list_membership_events(
    instance_id: UUID,
    owner_id: UUID = Depends(require_member_session),
    lifecycle: OwnershipLifecycle = Depends(get_ownership_lifecycle),
) -> List[LifecycleEventResponse]:
    await _owned_instance(lifecycle, instance_id, owner_id)
    result = await lifecycle.list_events(instance_id)
    if not result.ok:
        raise_for_failure(result.failure)
    return [_serialize_event(event) for event in result.value]
