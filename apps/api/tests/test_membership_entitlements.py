from decimal import Decimal
from uuid import uuid4

import pytest

from rac_rewards_api.models.membership import (
    CustodyMode,
    EvolutionState,
    MembershipInstance,
    MembershipRarity,
    StakingDuration,
    UpgradeState,
)
from rac_rewards_api.services.membership import (
    EntitlementCalculator,
    MembershipErrorKind,
    MembershipTypeDefinition,
    OwnershipLifecycle,
    effective_earn_ratio,
    evolution_eligibility,
    investment_multiplier,
)
from rac_rewards_api.services.membership.entitlements import summarize


def _definition(**overrides) -> MembershipTypeDefinition:
    values = {
        "id": uuid4(),
        "slug": "gold",
        "version": 1,
        "name": "Gold",
        "custody_mode": CustodyMode.CUSTODIAL,
        "rarity": MembershipRarity.RARE,
        "base_price_usdt": Decimal("300"),
        "mint_cap": 750,
        "is_unbounded": False,
        "is_upgradeable": True,
        "is_evolvable": True,
        "is_fraction_eligible": True,
        "base_earn_ratio": Decimal("0.0130"),
        "upgrade_bonus_ratio": Decimal("0.0020"),
        "evolution_min_investment": Decimal("1500"),
        "evolution_bonus_ratio": Decimal("0.0100"),
        "staking_duration": StakingDuration.FOREVER,
    }
    values.update(overrides)
    return MembershipTypeDefinition(**values)


def _instance(definition: MembershipTypeDefinition, **overrides) -> MembershipInstance:
    values = {
        "id": uuid4(),
        "owner_id": uuid4(),
        "membership_type_id": definition.id,
        "custody_mode": definition.custody_mode,
        "upgrade_state": UpgradeState.BASE,
        "evolution_state": EvolutionState.DORMANT,
        "accumulated_investment": Decimal("0"),
    }
    values.update(overrides)
    return MembershipInstance(**values)


def test_effective_ratio_adds_upgrade_bonus_for_custodial_only() -> None:
    custodial = _definition()
    base = _instance(custodial)
    upgraded = _instance(custodial, upgrade_state=UpgradeState.UPGRADED)

    assert effective_earn_ratio(base, custodial) == Decimal("0.0130")
    assert effective_earn_ratio(upgraded, custodial) == Decimal("0.0150")

    non_custodial = _definition(custody_mode=CustodyMode.NON_CUSTODIAL)
    upgraded_wallet = _instance(non_custodial, upgrade_state=UpgradeState.UPGRADED)
    assert effective_earn_ratio(upgraded_wallet, non_custodial) == Decimal("0.0130")


def test_effective_ratio_ignores_evolution() -> None:
    definition = _definition()
    dormant = _instance(definition)
    evolved = _instance(definition, evolution_state=EvolutionState.EVOLVED, accumulated_investment=Decimal("2000"))

    assert effective_earn_ratio(evolved, definition) == effective_earn_ratio(dormant, definition)


def test_evolution_eligibility_reports_every_failing_guard() -> None:
    definition = _definition(is_evolvable=False)
    instance = _instance(definition, evolution_state=EvolutionState.EVOLVED, accumulated_investment=Decimal("100"))

    eligibility = evolution_eligibility(instance, definition)

    assert eligibility.eligible is False
    assert eligibility.reasons == (
        MembershipErrorKind.ALREADY_EVOLVED,
        MembershipErrorKind.NOT_EVOLVABLE,
        MembershipErrorKind.INSUFFICIENT_INVESTMENT,
    )


def test_evolution_eligibility_progress() -> None:
    definition = _definition()
    instance = _instance(definition, accumulated_investment=Decimal("1000"))

    eligibility = evolution_eligibility(instance, definition)

    assert eligibility.eligible is False
    assert eligibility.reasons == (MembershipErrorKind.INSUFFICIENT_INVESTMENT,)
    assert eligibility.progress_percentage == Decimal("66.67")
    assert eligibility.remaining_investment == Decimal("500")

    instance.accumulated_investment = Decimal("1500")
    ready = evolution_eligibility(instance, definition)
    assert ready.eligible is True
    assert ready.reasons == ()
    assert ready.progress_percentage == Decimal("100.00")


def test_zero_minimum_counts_as_complete_progress() -> None:
    definition = _definition(evolution_min_investment=Decimal("0"))
    eligibility = evolution_eligibility(_instance(definition), definition)

    assert eligibility.eligible is True
    assert eligibility.progress_percentage == Decimal("100.00")


def test_investment_multiplier_combines_bonuses_and_caps() -> None:
    definition = _definition()
    assert investment_multiplier(_instance(definition), definition) == Decimal("1.25")

    boosted = _instance(
        definition,
        upgrade_state=UpgradeState.UPGRADED,
        evolution_state=EvolutionState.EVOLVED,
    )
    assert investment_multiplier(boosted, definition) == Decimal("1.2620")

    generous = _definition(rarity=MembershipRarity.VERY_RARE, evolution_bonus_ratio=Decimal("0.9"))
    evolved = _instance(generous, evolution_state=EvolutionState.EVOLVED)
    assert investment_multiplier(evolved, generous) == Decimal("2.0")


def test_summary_flags_unverified_wallet_memberships() -> None:
    definition = _definition(custody_mode=CustodyMode.NON_CUSTODIAL)
    instance = _instance(definition, upgrade_state=UpgradeState.UPGRADED)

    snapshot = summarize(instance, definition)

    assert snapshot.upgrade_bonus_applied is False
    assert snapshot.upgrade_available is False
    assert snapshot.auto_staking_available is True
    assert "Upgrade bonus applies to custodial memberships only" in snapshot.notes
    assert snapshot.as_payload()["effectiveEarnRatio"] == "0.0130"


@pytest.mark.asyncio
async def test_calculator_resolves_definitions_from_catalog(session_factory, publish_type) -> None:
    definition = await publish_type(session_factory)

    async with session_factory() as session:
        lifecycle = OwnershipLifecycle(session)
        created = await lifecycle.create(definition.id, uuid4())
        assert created.ok

        calculator = EntitlementCalculator(lifecycle.catalog)
        ratio = await calculator.effective_earn_ratio(created.value)
        eligibility = await calculator.evolution_eligibility(created.value)
        snapshot = await calculator.summarize(created.value)

    assert ratio == Decimal("0.0130")
    assert eligibility.reasons == (MembershipErrorKind.INSUFFICIENT_INVESTMENT,)
    assert snapshot.upgrade_available is True
