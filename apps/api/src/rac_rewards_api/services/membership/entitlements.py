"""Effective reward ratio and eligibility predicates for membership instances.

Every place that needs the spend-earn ratio, the evolution progress or the
marketplace investment multiplier goes through this module. The functions
are pure: they read an instance and its type definition and never mutate
either.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional

from rac_rewards_api.models.membership import MembershipInstance, MembershipRarity
from rac_rewards_api.services.membership.catalog import MembershipTypeDefinition, TypeCatalog
from rac_rewards_api.services.membership.results import MembershipErrorKind


RARITY_INVESTMENT_MULTIPLIERS: Dict[MembershipRarity, Decimal] = {
    MembershipRarity.COMMON: Decimal("1.0"),
    MembershipRarity.LESS_COMMON: Decimal("1.1"),
    MembershipRarity.RARE: Decimal("1.25"),
    MembershipRarity.VERY_RARE: Decimal("1.5"),
}
MAX_INVESTMENT_MULTIPLIER = Decimal("2.0")

_ZERO = Decimal("0")
_HUNDRED = Decimal("100")


@dataclass(frozen=True, slots=True)
class EvolutionEligibility:
    eligible: bool
    reasons: tuple[MembershipErrorKind, ...]
    accumulated_investment: Decimal
    min_investment: Decimal
    progress_percentage: Decimal

    @property
    def remaining_investment(self) -> Decimal:
        return max(self.min_investment - self.accumulated_investment, _ZERO)

    def as_payload(self) -> Dict[str, Any]:
        return {
            "eligible": self.eligible,
            "reasons": [reason.value for reason in self.reasons],
            "accumulatedInvestment": str(self.accumulated_investment),
            "minInvestment": str(self.min_investment),
            "remainingInvestment": str(self.remaining_investment),
            "progressPercentage": str(self.progress_percentage),
        }


@dataclass(frozen=True, slots=True)
class EntitlementSnapshot:
    """Everything the member-facing surfaces show about an instance's benefits."""

    instance_id: str
    effective_earn_ratio: Decimal
    base_earn_ratio: Decimal
    upgrade_bonus_applied: bool
    investment_multiplier: Decimal
    evolution: EvolutionEligibility
    upgrade_available: bool
    auto_staking_available: bool
    notes: tuple[str, ...] = field(default_factory=tuple)

    def as_payload(self) -> Dict[str, Any]:
        return {
            "instanceId": self.instance_id,
            "effectiveEarnRatio": str(self.effective_earn_ratio),
            "baseEarnRatio": str(self.base_earn_ratio),
            "upgradeBonusApplied": self.upgrade_bonus_applied,
            "investmentMultiplier": str(self.investment_multiplier),
            "evolution": self.evolution.as_payload(),
            "upgradeAvailable": self.upgrade_available,
            "autoStakingAvailable": self.auto_staking_available,
            "notes": list(self.notes),
        }


def _as_decimal(value: Any) -> Decimal:
    if value is None:
        return _ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def upgrade_bonus_applies(instance: MembershipInstance) -> bool:
    return instance.is_upgraded and instance.is_custodial


def effective_earn_ratio(instance: MembershipInstance, definition: MembershipTypeDefinition) -> Decimal:
    """Points earned per unit spent; evolution does not change it."""

    ratio = definition.base_earn_ratio
    if upgrade_bonus_applies(instance):
        ratio += definition.upgrade_bonus_ratio
    return ratio


def evolution_eligibility(
    instance: MembershipInstance,
    definition: MembershipTypeDefinition,
) -> EvolutionEligibility:
    """Evaluate the evolve guards in the order ``evolve`` applies them."""

    accumulated = _as_decimal(instance.accumulated_investment)
    minimum = definition.evolution_min_investment
    reasons: list[MembershipErrorKind] = []
    if instance.is_evolved:
        reasons.append(MembershipErrorKind.ALREADY_EVOLVED)
    if not definition.is_evolvable:
        reasons.append(MembershipErrorKind.NOT_EVOLVABLE)
    if accumulated < minimum:
        reasons.append(MembershipErrorKind.INSUFFICIENT_INVESTMENT)

    if minimum <= _ZERO:
        progress = _HUNDRED
    else:
        progress = min(accumulated / minimum * _HUNDRED, _HUNDRED)
    return EvolutionEligibility(
        eligible=not reasons,
        reasons=tuple(reasons),
        accumulated_investment=accumulated,
        min_investment=minimum,
        progress_percentage=progress.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP),
    )


def investment_multiplier(instance: MembershipInstance, definition: MembershipTypeDefinition) -> Decimal:
    """Multiplier applied by the marketplace investment flow, capped at 2.0."""

    multiplier = RARITY_INVESTMENT_MULTIPLIERS.get(definition.rarity, Decimal("1.0"))
    if upgrade_bonus_applies(instance):
        multiplier += definition.upgrade_bonus_ratio
    if instance.is_evolved:
        multiplier += definition.evolution_bonus_ratio
    return min(multiplier, MAX_INVESTMENT_MULTIPLIER)


def can_upgrade(instance: MembershipInstance, definition: MembershipTypeDefinition) -> bool:
    return definition.is_upgradeable and not instance.is_upgraded


def can_enable_auto_staking(instance: MembershipInstance) -> bool:
    return not instance.auto_staking_enabled


def summarize(instance: MembershipInstance, definition: MembershipTypeDefinition) -> EntitlementSnapshot:
    notes: list[str] = []
    if instance.is_upgraded and not instance.is_custodial:
        notes.append("Upgrade bonus applies to custodial memberships only")
    if not instance.is_custodial and not instance.is_verified:
        notes.append("Verify wallet ownership to confirm this membership")
    return EntitlementSnapshot(
        instance_id=str(instance.id),
        effective_earn_ratio=effective_earn_ratio(instance, definition),
        base_earn_ratio=definition.base_earn_ratio,
        upgrade_bonus_applied=upgrade_bonus_applies(instance),
        investment_multiplier=investment_multiplier(instance, definition),
        evolution=evolution_eligibility(instance, definition),
        upgrade_available=can_upgrade(instance, definition),
        auto_staking_available=can_enable_auto_staking(instance),
        notes=tuple(notes),
    )


class EntitlementCalculator:
    """Resolve type definitions for instances and evaluate their entitlements."""

    def __init__(self, catalog: TypeCatalog) -> None:
        self._catalog = catalog

    async def definition_for(self, instance: MembershipInstance) -> Optional[MembershipTypeDefinition]:
        return await self._catalog.get(instance.membership_type_id)

    async def effective_earn_ratio(self, instance: MembershipInstance) -> Optional[Decimal]:
        definition = await self.definition_for(instance)
        if definition is None:
            return None
        return effective_earn_ratio(instance, definition)

    async def evolution_eligibility(self, instance: MembershipInstance) -> Optional[EvolutionEligibility]:
        definition = await self.definition_for(instance)
        if definition is None:
            return None
        return evolution_eligibility(instance, definition)

    async def summarize(self, instance: MembershipInstance) -> Optional[EntitlementSnapshot]:
        definition = await self.definition_for(instance)
        if definition is None:
            return None
        return summarize(instance, definition)


__all__ = [
    "EntitlementCalculator",
    "EntitlementSnapshot",
    "EvolutionEligibility",
    "MAX_INVESTMENT_MULTIPLIER",
    "RARITY_INVESTMENT_MULTIPLIERS",
    "can_enable_auto_staking",
    "can_upgrade",
    "effective_earn_ratio",
    "evolution_eligibility",
    "investment_multiplier",
    "summarize",
]
