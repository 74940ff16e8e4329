"""Upper bound on points a member may invest into fractional ownership."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict

from rac_rewards_api.models.membership import MembershipInstance, MembershipRarity
from rac_rewards_api.services.membership.catalog import MembershipTypeDefinition


TIER_MULTIPLIERS: Dict[MembershipRarity, Decimal] = {
    MembershipRarity.COMMON: Decimal("1.0"),
    MembershipRarity.LESS_COMMON: Decimal("1.5"),
    MembershipRarity.RARE: Decimal("2.0"),
    MembershipRarity.VERY_RARE: Decimal("3.0"),
}
MAX_TIER_MULTIPLIER = Decimal("3.0")


@dataclass(frozen=True, slots=True)
class FractionalEligibility:
    is_eligible: bool
    max_investable: Decimal
    tier_multiplier: Decimal
    message: str

    def as_payload(self) -> Dict[str, Any]:
        return {
            "isEligible": self.is_eligible,
            "maxInvestable": str(self.max_investable),
            "tierMultiplier": str(self.tier_multiplier),
            "message": self.message,
        }


def tier_multiplier(rarity: MembershipRarity) -> Decimal:
    return min(TIER_MULTIPLIERS.get(rarity, Decimal("1.0")), MAX_TIER_MULTIPLIER)


def max_investable(definition: MembershipTypeDefinition, points_balance: Decimal | int | str) -> Decimal:
    if not definition.is_fraction_eligible:
        return Decimal("0")
    balance = points_balance if isinstance(points_balance, Decimal) else Decimal(str(points_balance))
    if balance <= 0:
        return Decimal("0")
    return balance * tier_multiplier(definition.rarity)


class FractionalEligibilityGate:
    """Evaluate how much of a points balance an instance lets its owner invest."""

    def evaluate(
        self,
        instance: MembershipInstance,
        definition: MembershipTypeDefinition,
        points_balance: Decimal | int | str,
    ) -> FractionalEligibility:
        if definition.id != instance.membership_type_id:
            raise ValueError("definition does not belong to the membership instance")

        multiplier = tier_multiplier(definition.rarity)
        if not definition.is_fraction_eligible:
            return FractionalEligibility(
                is_eligible=False,
                max_investable=Decimal("0"),
                tier_multiplier=multiplier,
                message=f"{definition.name} memberships cannot invest in fractional ownership",
            )

        amount = max_investable(definition, points_balance)
        if amount <= 0:
            message = "Earn points to unlock fractional investment"
        else:
            message = f"You can invest up to {amount.normalize():f} points ({multiplier.normalize():f}x your balance)"
        return FractionalEligibility(
            is_eligible=True,
            max_investable=amount,
            tier_multiplier=multiplier,
            message=message,
        )


__all__ = [
    "FractionalEligibility",
    "FractionalEligibilityGate",
    "MAX_TIER_MULTIPLIER",
    "TIER_MULTIPLIERS",
    "max_investable",
    "tier_multiplier",
]
