"""Membership catalog, minting counter and owned instance models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, validates

from rac_rewards_api.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_values(enum: type[Enum]) -> list[str]:
    return [member.value for member in enum]


class CustodyMode(str, Enum):
    """Who holds the underlying asset."""

    CUSTODIAL = "custodial"
    NON_CUSTODIAL = "non_custodial"


class MembershipRarity(str, Enum):
    """Rarity tiers ordered from most to least common."""

    COMMON = "common"
    LESS_COMMON = "less_common"
    RARE = "rare"
    VERY_RARE = "very_rare"


class StakingDuration(str, Enum):
    """Auto-staking lock period offered by a membership type."""

    ONE_YEAR = "1_year"
    TWO_YEARS = "2_years"
    FIVE_YEARS = "5_years"
    FOREVER = "forever"


class UpgradeState(str, Enum):
    BASE = "base"
    UPGRADED = "upgraded"


class EvolutionState(str, Enum):
    DORMANT = "dormant"
    EVOLVED = "evolved"


class AutoStakingState(str, Enum):
    DISABLED = "disabled"
    ENABLED = "enabled"


class VerificationState(str, Enum):
    UNVERIFIED = "unverified"
    VERIFIED = "verified"


class CustodyModeFrozenError(ValueError):
    """Raised when code attempts to reassign the custody of a persisted instance."""


class MembershipType(Base):
    """Published, immutable membership type definition.

    Rows are never edited in place once published. A change is published as a
    new row with ``version + 1`` pointing at the row it supersedes; the old row
    only loses its ``is_active`` listing flag so existing instances keep the
    definition they were minted under.
    """

    __tablename__ = "membership_types"
    __table_args__ = (
        UniqueConstraint("slug", "version", name="uq_membership_types_slug_version"),
        CheckConstraint("base_earn_ratio >= 0 AND base_earn_ratio <= 1", name="ck_membership_types_base_ratio"),
        CheckConstraint("upgrade_bonus_ratio >= 0", name="ck_membership_types_upgrade_bonus"),
        CheckConstraint("evolution_bonus_ratio >= 0", name="ck_membership_types_evolution_bonus"),
        CheckConstraint("evolution_min_investment >= 0", name="ck_membership_types_evolution_min"),
        CheckConstraint("mint_cap >= 0", name="ck_membership_types_mint_cap"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    slug = Column(String, nullable=False, index=True)
    version = Column(Integer, nullable=False, default=1)
    supersedes_id = Column(UUID(as_uuid=True), ForeignKey("membership_types.id"), nullable=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    custody_mode = Column(
        SqlEnum(CustodyMode, name="membership_custody_mode", values_callable=_enum_values),
        nullable=False,
    )
    rarity = Column(
        SqlEnum(MembershipRarity, name="membership_rarity", values_callable=_enum_values),
        nullable=False,
    )
    base_price_usdt = Column(Numeric(12, 2), nullable=False, default=0)
    mint_cap = Column(Integer, nullable=False)
    is_unbounded = Column(Boolean, nullable=False, default=False)
    is_upgradeable = Column(Boolean, nullable=False, default=False)
    is_evolvable = Column(Boolean, nullable=False, default=False)
    is_fraction_eligible = Column(Boolean, nullable=False, default=False)
    base_earn_ratio = Column(Numeric(8, 4), nullable=False)
    upgrade_bonus_ratio = Column(Numeric(8, 4), nullable=False, default=0)
    evolution_min_investment = Column(Numeric(14, 2), nullable=False, default=0)
    evolution_bonus_ratio = Column(Numeric(8, 4), nullable=False, default=0)
    staking_duration = Column(
        SqlEnum(StakingDuration, name="membership_staking_duration", values_callable=_enum_values),
        nullable=False,
        default=StakingDuration.FOREVER,
    )
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    counter = relationship("MintingCounter", back_populates="membership_type", uselist=False)


class MintingCounter(Base):
    """Supply counter for a membership type; exactly one per type."""

    __tablename__ = "membership_minting_counters"
    __table_args__ = (
        UniqueConstraint("membership_type_id", name="uq_membership_minting_counters_type"),
        CheckConstraint("total_minted >= 0", name="ck_membership_minting_counters_non_negative"),
        CheckConstraint(
            "is_unbounded OR total_minted <= cap",
            name="ck_membership_minting_counters_within_cap",
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    membership_type_id = Column(
        UUID(as_uuid=True),
        ForeignKey("membership_types.id", ondelete="CASCADE"),
        nullable=False,
    )
    total_minted = Column(Integer, nullable=False, default=0)
    cap = Column(Integer, nullable=False)
    is_unbounded = Column(Boolean, nullable=False, default=False)
    minting_enabled = Column(Boolean, nullable=False, default=True)
    pause_reason = Column(String, nullable=True)
    paused_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    membership_type = relationship("MembershipType", back_populates="counter")

    @property
    def remaining(self) -> int | None:
        if self.is_unbounded:
            return None
        return max(int(self.cap or 0) - int(self.total_minted or 0), 0)


class MembershipInstance(Base):
    """A membership card owned by one member.

    Every lifecycle axis is an independent one-way latch stored as its own
    tagged state. ``custody_mode`` is copied from the type at creation and
    frozen afterwards.
    """

    __tablename__ = "membership_instances"
    __table_args__ = (
        CheckConstraint("accumulated_investment >= 0", name="ck_membership_instances_investment"),
        UniqueConstraint("owner_id", "membership_type_id", name="uq_membership_instances_owner_type"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    owner_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    membership_type_id = Column(UUID(as_uuid=True), ForeignKey("membership_types.id"), nullable=False)
    custody_mode = Column(
        SqlEnum(CustodyMode, name="membership_custody_mode", values_callable=_enum_values),
        nullable=False,
    )
    upgrade_state = Column(
        SqlEnum(UpgradeState, name="membership_upgrade_state", values_callable=_enum_values),
        nullable=False,
        default=UpgradeState.BASE,
    )
    evolution_state = Column(
        SqlEnum(EvolutionState, name="membership_evolution_state", values_callable=_enum_values),
        nullable=False,
        default=EvolutionState.DORMANT,
    )
    auto_staking_state = Column(
        SqlEnum(AutoStakingState, name="membership_auto_staking_state", values_callable=_enum_values),
        nullable=False,
        default=AutoStakingState.DISABLED,
    )
    verification_state = Column(
        SqlEnum(VerificationState, name="membership_verification_state", values_callable=_enum_values),
        nullable=False,
        default=VerificationState.UNVERIFIED,
    )
    accumulated_investment = Column(Numeric(14, 2), nullable=False, default=0)
    auto_staking_asset_ref = Column(String, nullable=True)
    wallet_ref = Column(String, nullable=True)
    payment_ref = Column(String, nullable=True)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    upgraded_at = Column(DateTime(timezone=True), nullable=True)
    evolved_at = Column(DateTime(timezone=True), nullable=True)
    auto_staking_enabled_at = Column(DateTime(timezone=True), nullable=True)
    verified_at = Column(DateTime(timezone=True), nullable=True)

    __mapper_args__ = {"version_id_col": version}

    membership_type = relationship("MembershipType")
    events = relationship(
        "MembershipLifecycleEvent",
        back_populates="instance",
        order_by="MembershipLifecycleEvent.created_at",
    )

    @validates("custody_mode")
    def _freeze_custody_mode(self, key: str, value: CustodyMode) -> CustodyMode:
        current = self.__dict__.get(key)
        if current is not None and current != value:
            raise CustodyModeFrozenError(
                f"custody mode of membership instance {self.id} is frozen at {current.value}"
            )
        return value

    @property
    def is_upgraded(self) -> bool:
        return self.upgrade_state == UpgradeState.UPGRADED

    @property
    def is_evolved(self) -> bool:
        return self.evolution_state == EvolutionState.EVOLVED

    @property
    def auto_staking_enabled(self) -> bool:
        return self.auto_staking_state == AutoStakingState.ENABLED

    @property
    def is_verified(self) -> bool:
        return self.verification_state == VerificationState.VERIFIED

    @property
    def is_custodial(self) -> bool:
        return self.custody_mode == CustodyMode.CUSTODIAL


class LifecycleEventType(str, Enum):
    """Audit and notification event kinds for membership instances."""

    CREATED = "created"
    UPGRADED = "upgraded"
    EVOLVED = "evolved"
    INVESTMENT_RECORDED = "investment_recorded"
    AUTO_STAKING_ENABLED = "auto_staking_enabled"
    VERIFIED = "verified"


class MembershipLifecycleEvent(Base):
    """Append-only audit trail of membership lifecycle transitions."""

    __tablename__ = "membership_lifecycle_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    instance_id = Column(
        UUID(as_uuid=True),
        ForeignKey("membership_instances.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    event_type = Column(
        SqlEnum(LifecycleEventType, name="membership_lifecycle_event_type", values_callable=_enum_values),
        nullable=False,
    )
    metadata_json = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    instance = relationship("MembershipInstance", back_populates="events")
