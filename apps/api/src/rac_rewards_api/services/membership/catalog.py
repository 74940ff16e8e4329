"""Registry of published membership type definitions.

Definitions are immutable once published, so the in-process cache never
needs invalidation for correctness; ``clear_cache`` exists for tests and for
operators that rebuild the database underneath a running process. A change
to a type is published with ``publish_revision`` as a new version row; the
superseded row is delisted but stays readable for the instances minted
under it.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from rac_rewards_api.models.membership import (
    CustodyMode,
    MembershipRarity,
    MembershipType,
    MintingCounter,
    StakingDuration,
)


class InvalidTypeDefinitionError(ValueError):
    """Raised when a type definition violates the catalog constraints."""


@dataclass(frozen=True, slots=True)
class MembershipTypeDefinition:
    """Immutable snapshot of a published membership type."""

    id: UUID
    slug: str
    version: int
    name: str
    custody_mode: CustodyMode
    rarity: MembershipRarity
    base_price_usdt: Decimal
    mint_cap: int
    is_unbounded: bool
    is_upgradeable: bool
    is_evolvable: bool
    is_fraction_eligible: bool
    base_earn_ratio: Decimal
    upgrade_bonus_ratio: Decimal
    evolution_min_investment: Decimal
    evolution_bonus_ratio: Decimal
    staking_duration: StakingDuration
    description: str | None = None
    supersedes_id: UUID | None = None
    created_at: datetime | None = None

    @property
    def is_custodial(self) -> bool:
        return self.custody_mode == CustodyMode.CUSTODIAL

    def as_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": str(self.id),
            "slug": self.slug,
            "version": self.version,
            "name": self.name,
            "custodyMode": self.custody_mode.value,
            "rarity": self.rarity.value,
            "basePriceUsdt": str(self.base_price_usdt),
            "mintCap": self.mint_cap,
            "isUnbounded": self.is_unbounded,
            "isUpgradeable": self.is_upgradeable,
            "isEvolvable": self.is_evolvable,
            "isFractionEligible": self.is_fraction_eligible,
            "baseEarnRatio": str(self.base_earn_ratio),
            "upgradeBonusRatio": str(self.upgrade_bonus_ratio),
            "evolutionMinInvestment": str(self.evolution_min_investment),
            "evolutionBonusRatio": str(self.evolution_bonus_ratio),
            "stakingDuration": self.staking_duration.value,
        }
        if self.description:
            payload["description"] = self.description
        if self.supersedes_id:
            payload["supersedesId"] = str(self.supersedes_id)
        return payload


_DEFINITIONS: Dict[UUID, MembershipTypeDefinition] = {}

_REVISABLE_FIELDS = frozenset(
    {
        "name",
        "description",
        "base_price_usdt",
        "mint_cap",
        "is_unbounded",
        "is_upgradeable",
        "is_evolvable",
        "is_fraction_eligible",
        "base_earn_ratio",
        "upgrade_bonus_ratio",
        "evolution_min_investment",
        "evolution_bonus_ratio",
        "staking_duration",
    }
)


def _decimal(value: Any) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _to_definition(row: MembershipType) -> MembershipTypeDefinition:
    return MembershipTypeDefinition(
        id=row.id,
        slug=row.slug,
        version=int(row.version),
        name=row.name,
        description=row.description,
        custody_mode=CustodyMode(row.custody_mode),
        rarity=MembershipRarity(row.rarity),
        base_price_usdt=_decimal(row.base_price_usdt),
        mint_cap=int(row.mint_cap),
        is_unbounded=bool(row.is_unbounded),
        is_upgradeable=bool(row.is_upgradeable),
        is_evolvable=bool(row.is_evolvable),
        is_fraction_eligible=bool(row.is_fraction_eligible),
        base_earn_ratio=_decimal(row.base_earn_ratio),
        upgrade_bonus_ratio=_decimal(row.upgrade_bonus_ratio),
        evolution_min_investment=_decimal(row.evolution_min_investment),
        evolution_bonus_ratio=_decimal(row.evolution_bonus_ratio),
        staking_duration=StakingDuration(row.staking_duration),
        supersedes_id=row.supersedes_id,
        created_at=row.created_at,
    )


def _validate(definition: MembershipTypeDefinition) -> None:
    if not definition.slug or not definition.name:
        raise InvalidTypeDefinitionError("slug and name are required")
    if not Decimal("0") <= definition.base_earn_ratio <= Decimal("1"):
        raise InvalidTypeDefinitionError("base_earn_ratio must be within [0, 1]")
    for field_name in ("upgrade_bonus_ratio", "evolution_bonus_ratio", "evolution_min_investment", "base_price_usdt"):
        if getattr(definition, field_name) < 0:
            raise InvalidTypeDefinitionError(f"{field_name} must not be negative")
    if definition.mint_cap < 0:
        raise InvalidTypeDefinitionError("mint_cap must not be negative")


def counter_for_update(type_id: UUID):
    """Row-locked read of the latest committed counter for ``type_id``.

    Admissions against the locked row wait for the revision to commit and
    then see ``minting_enabled`` off, so every unit minted under the old
    version is counted in the carried-over total.
    """

    return (
        select(MintingCounter)
        .where(MintingCounter.membership_type_id == type_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )


def clear_cache() -> None:
    """Drop every cached definition."""

    _DEFINITIONS.clear()


def cached_definition(type_id: UUID) -> Optional[MembershipTypeDefinition]:
    return _DEFINITIONS.get(type_id)


class TypeCatalog:
    """Read-mostly access to membership type definitions."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, type_id: UUID) -> Optional[MembershipTypeDefinition]:
        cached = _DEFINITIONS.get(type_id)
        if cached is not None:
            return cached
        row = await self._session.get(MembershipType, type_id)
        if row is None:
            return None
        definition = _to_definition(row)
        _DEFINITIONS[definition.id] = definition
        return definition

    async def get_active_by_slug(self, slug: str) -> Optional[MembershipTypeDefinition]:
        """The listed version of the product line ``slug``."""

        stmt = select(MembershipType).where(MembershipType.slug == slug, MembershipType.is_active.is_(True))
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        if row is None:
            return None
        definition = _DEFINITIONS.get(row.id) or _to_definition(row)
        _DEFINITIONS[definition.id] = definition
        return definition

    async def list_active(self, *, custody_mode: CustodyMode | None = None) -> list[MembershipTypeDefinition]:
        stmt = select(MembershipType).where(MembershipType.is_active.is_(True))
        if custody_mode is not None:
            stmt = stmt.where(MembershipType.custody_mode == custody_mode)
        stmt = stmt.order_by(MembershipType.base_earn_ratio, MembershipType.slug)
        result = await self._session.execute(stmt)
        definitions = []
        for row in result.scalars().all():
            definition = _DEFINITIONS.get(row.id) or _to_definition(row)
            _DEFINITIONS[definition.id] = definition
            definitions.append(definition)
        return definitions

    async def is_listed(self, type_id: UUID) -> bool:
        row = await self._session.get(MembershipType, type_id)
        return bool(row is not None and row.is_active)

    async def publish(
        self,
        *,
        slug: str,
        name: str,
        custody_mode: CustodyMode,
        rarity: MembershipRarity,
        mint_cap: int,
        base_earn_ratio: Decimal | str | float,
        base_price_usdt: Decimal | str | float = 0,
        is_unbounded: bool = False,
        is_upgradeable: bool = False,
        is_evolvable: bool = False,
        is_fraction_eligible: bool = False,
        upgrade_bonus_ratio: Decimal | str | float = 0,
        evolution_min_investment: Decimal | str | float = 0,
        evolution_bonus_ratio: Decimal | str | float = 0,
        staking_duration: StakingDuration = StakingDuration.FOREVER,
        description: str | None = None,
    ) -> MembershipTypeDefinition:
        """Publish version 1 of a new type together with its minting counter."""

        existing = await self._session.execute(
            select(MembershipType.id).where(MembershipType.slug == slug).limit(1)
        )
        if existing.scalar_one_or_none() is not None:
            raise InvalidTypeDefinitionError(f"membership type '{slug}' already published; publish a revision")

        draft = MembershipTypeDefinition(
            id=UUID(int=0),
            slug=slug,
            version=1,
            name=name,
            description=description,
            custody_mode=CustodyMode(custody_mode),
            rarity=MembershipRarity(rarity),
            base_price_usdt=_decimal(base_price_usdt),
            mint_cap=int(mint_cap),
            is_unbounded=is_unbounded,
            is_upgradeable=is_upgradeable,
            is_evolvable=is_evolvable,
            is_fraction_eligible=is_fraction_eligible,
            base_earn_ratio=_decimal(base_earn_ratio),
            upgrade_bonus_ratio=_decimal(upgrade_bonus_ratio),
            evolution_min_investment=_decimal(evolution_min_investment),
            evolution_bonus_ratio=_decimal(evolution_bonus_ratio),
            staking_duration=StakingDuration(staking_duration),
        )
        _validate(draft)
        definition = await self._insert(draft, total_minted=0)
        logger.info(
            "Membership type published",
            membership_type_id=str(definition.id),
            slug=definition.slug,
            custody_mode=definition.custody_mode.value,
            mint_cap=definition.mint_cap,
        )
        return definition

    async def publish_revision(self, type_id: UUID, **changes: Any) -> Optional[MembershipTypeDefinition]:
        """Publish a new version of a type; the current row is delisted, never edited.

        Supply already minted carries over to the new counter so the cap keeps
        bounding the product line as a whole. The superseded counter is
        disabled so new admissions go through the current version only.
        """

        unknown = set(changes) - _REVISABLE_FIELDS
        if unknown:
            raise InvalidTypeDefinitionError(f"fields cannot be revised: {', '.join(sorted(unknown))}")

        current_row = await self._session.get(MembershipType, type_id)
        if current_row is None:
            return None
        if not current_row.is_active:
            raise InvalidTypeDefinitionError(f"membership type {type_id} is already superseded")

        current = _to_definition(current_row)
        normalized: Dict[str, Any] = {}
        for key, value in changes.items():
            if key in {"base_price_usdt", "base_earn_ratio", "upgrade_bonus_ratio", "evolution_min_investment", "evolution_bonus_ratio"}:
                normalized[key] = _decimal(value)
            elif key == "staking_duration":
                normalized[key] = StakingDuration(value)
            elif key == "mint_cap":
                normalized[key] = int(value)
            else:
                normalized[key] = value
        draft = replace(current, version=current.version + 1, supersedes_id=current.id, **normalized)
        _validate(draft)

        counter = (await self._session.execute(counter_for_update(type_id))).scalar_one()
        if not draft.is_unbounded and counter.total_minted > draft.mint_cap:
            raise InvalidTypeDefinitionError(
                f"mint_cap {draft.mint_cap} is below the {counter.total_minted} units already minted"
            )

        current_row.is_active = False
        counter.minting_enabled = False
        counter.pause_reason = "superseded"
        counter.paused_at = datetime.now(timezone.utc)
        definition = await self._insert(draft, total_minted=int(counter.total_minted))
        logger.info(
            "Membership type revision published",
            membership_type_id=str(definition.id),
            supersedes_id=str(current.id),
            slug=definition.slug,
            version=definition.version,
        )
        return definition

    async def _insert(self, draft: MembershipTypeDefinition, *, total_minted: int) -> MembershipTypeDefinition:
        row = MembershipType(
            slug=draft.slug,
            version=draft.version,
            supersedes_id=draft.supersedes_id,
            name=draft.name,
            description=draft.description,
            custody_mode=draft.custody_mode,
            rarity=draft.rarity,
            base_price_usdt=draft.base_price_usdt,
            mint_cap=draft.mint_cap,
            is_unbounded=draft.is_unbounded,
            is_upgradeable=draft.is_upgradeable,
            is_evolvable=draft.is_evolvable,
            is_fraction_eligible=draft.is_fraction_eligible,
            base_earn_ratio=draft.base_earn_ratio,
            upgrade_bonus_ratio=draft.upgrade_bonus_ratio,
            evolution_min_investment=draft.evolution_min_investment,
            evolution_bonus_ratio=draft.evolution_bonus_ratio,
            staking_duration=draft.staking_duration,
            is_active=True,
        )
        self._session.add(row)
        await self._session.flush()
        self._session.add(
            MintingCounter(
                membership_type_id=row.id,
                total_minted=total_minted,
                cap=draft.mint_cap,
                is_unbounded=draft.is_unbounded,
                minting_enabled=True,
            )
        )
        await self._session.commit()
        definition = replace(draft, id=row.id, created_at=row.created_at)
        _DEFINITIONS[definition.id] = definition
        return definition


__all__ = [
    "InvalidTypeDefinitionError",
    "MembershipTypeDefinition",
    "TypeCatalog",
    "cached_definition",
    "clear_cache",
]
