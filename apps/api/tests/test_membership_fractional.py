from decimal import Decimal
from uuid import uuid4

import pytest

from rac_rewards_api.models.membership import MembershipInstance, MembershipRarity
from rac_rewards_api.services.membership import (
    FractionalEligibilityGate,
    LifecycleEventPublisher,
    MembershipErrorKind,
    OwnershipLifecycle,
    max_investable,
)
from rac_rewards_api.services.membership.fractional import MAX_TIER_MULTIPLIER, TIER_MULTIPLIERS, tier_multiplier


def test_tier_multipliers_rise_with_rarity_and_are_capped() -> None:
    ordered = [
        MembershipRarity.COMMON,
        MembershipRarity.LESS_COMMON,
        MembershipRarity.RARE,
        MembershipRarity.VERY_RARE,
    ]
    multipliers = [tier_multiplier(rarity) for rarity in ordered]

    assert multipliers == sorted(multipliers)
    assert len(set(multipliers)) == len(multipliers)
    assert max(TIER_MULTIPLIERS.values()) <= MAX_TIER_MULTIPLIER


@pytest.mark.asyncio
async def test_max_investable_scales_balance(session_factory, publish_type) -> None:
    rare = await publish_type(session_factory)
    common = await publish_type(session_factory, slug="lite", name="Lite", rarity=MembershipRarity.COMMON)
    locked = await publish_type(session_factory, slug="basic", name="Basic", is_fraction_eligible=False)

    assert max_investable(rare, Decimal("100")) == Decimal("200")
    assert max_investable(common, 100) == Decimal("100")
    assert max_investable(locked, Decimal("100")) == Decimal("0")
    assert max_investable(rare, Decimal("0")) == Decimal("0")


@pytest.mark.asyncio
async def test_gate_explains_eligibility(session_factory, publish_type) -> None:
    rare = await publish_type(session_factory)
    locked = await publish_type(session_factory, slug="basic", name="Basic", is_fraction_eligible=False)
    gate = FractionalEligibilityGate()

    instance = MembershipInstance(id=uuid4(), owner_id=uuid4(), membership_type_id=rare.id)
    eligible = gate.evaluate(instance, rare, "250")
    empty = gate.evaluate(instance, rare, 0)

    assert eligible.is_eligible is True
    assert eligible.max_investable == Decimal("500")
    assert eligible.message == "You can invest up to 500 points (2x your balance)"
    assert empty.is_eligible is True
    assert empty.max_investable == Decimal("0")

    locked_instance = MembershipInstance(id=uuid4(), owner_id=uuid4(), membership_type_id=locked.id)
    denied = gate.evaluate(locked_instance, locked, 250)
    assert denied.is_eligible is False
    assert denied.as_payload()["maxInvestable"] == "0"

    with pytest.raises(ValueError):
        gate.evaluate(instance, locked, 250)


@pytest.mark.asyncio
async def test_lifecycle_fractional_query_validates_balance(session_factory, publish_type) -> None:
    rare = await publish_type(session_factory)

    async with session_factory() as session:
        lifecycle = OwnershipLifecycle(session, publisher=LifecycleEventPublisher())
        created = await lifecycle.create(rare.id, uuid4())
        result = await lifecycle.fractional_eligibility(created.value.id, "75.5")
        negative = await lifecycle.fractional_eligibility(created.value.id, "-1")
        missing = await lifecycle.fractional_eligibility(uuid4(), 10)

    assert result.value.max_investable == Decimal("151.0")
    assert negative.failure.kind == MembershipErrorKind.INVALID_AMOUNT
    assert missing.failure.kind == MembershipErrorKind.INSTANCE_NOT_FOUND
