"""Create membership catalog, minting counter, instance and lifecycle event tables."""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = "20261019_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


_ENUMS = {
    "membership_custody_mode": ("custodial", "non_custodial"),
    "membership_rarity": ("common", "less_common", "rare", "very_rare"),
    "membership_staking_duration": ("1_year", "2_years", "5_years", "forever"),
    "membership_upgrade_state": ("base", "upgraded"),
    "membership_evolution_state": ("dormant", "evolved"),
    "membership_auto_staking_state": ("disabled", "enabled"),
    "membership_verification_state": ("unverified", "verified"),
    "membership_lifecycle_event_type": (
        "created",
        "upgraded",
        "evolved",
        "investment_recorded",
        "auto_staking_enabled",
        "verified",
    ),
}


def _enum(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(*_ENUMS[name], name=name, create_type=False)


def upgrade() -> None:
    for name, values in _ENUMS.items():
        labels = ", ".join(f"'{value}'" for value in values)
        op.execute(f"""
            DO $$ BEGIN
                IF NOT EXISTS (SELECT 1 FROM pg_type WHERE typname = '{name}') THEN
                    CREATE TYPE {name} AS ENUM ({labels});
                END IF;
            END $$;
        """)

    op.create_table(
        "membership_types",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("slug", sa.String(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column(
            "supersedes_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("membership_types.id"),
            nullable=True,
        ),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("custody_mode", _enum("membership_custody_mode"), nullable=False),
        sa.Column("rarity", _enum("membership_rarity"), nullable=False),
        sa.Column("base_price_usdt", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("mint_cap", sa.Integer(), nullable=False),
        sa.Column("is_unbounded", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_upgradeable", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_evolvable", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_fraction_eligible", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("base_earn_ratio", sa.Numeric(8, 4), nullable=False),
        sa.Column("upgrade_bonus_ratio", sa.Numeric(8, 4), nullable=False, server_default="0"),
        sa.Column("evolution_min_investment", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("evolution_bonus_ratio", sa.Numeric(8, 4), nullable=False, server_default="0"),
        sa.Column(
            "staking_duration",
            _enum("membership_staking_duration"),
            nullable=False,
            server_default="forever",
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("slug", "version", name="uq_membership_types_slug_version"),
        sa.CheckConstraint(
            "base_earn_ratio >= 0 AND base_earn_ratio <= 1",
            name="ck_membership_types_base_ratio",
        ),
        sa.CheckConstraint("upgrade_bonus_ratio >= 0", name="ck_membership_types_upgrade_bonus"),
        sa.CheckConstraint("evolution_bonus_ratio >= 0", name="ck_membership_types_evolution_bonus"),
        sa.CheckConstraint("evolution_min_investment >= 0", name="ck_membership_types_evolution_min"),
        sa.CheckConstraint("mint_cap >= 0", name="ck_membership_types_mint_cap"),
    )
    op.create_index("ix_membership_types_slug", "membership_types", ["slug"])

    op.create_table(
        "membership_minting_counters",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "membership_type_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("membership_types.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("total_minted", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cap", sa.Integer(), nullable=False),
        sa.Column("is_unbounded", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("minting_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("pause_reason", sa.String(), nullable=True),
        sa.Column("paused_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("membership_type_id", name="uq_membership_minting_counters_type"),
        sa.CheckConstraint("total_minted >= 0", name="ck_membership_minting_counters_non_negative"),
        sa.CheckConstraint(
            "is_unbounded OR total_minted <= cap",
            name="ck_membership_minting_counters_within_cap",
        ),
    )

    op.create_table(
        "membership_instances",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("owner_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column(
            "membership_type_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("membership_types.id"),
            nullable=False,
        ),
        sa.Column("custody_mode", _enum("membership_custody_mode"), nullable=False),
        sa.Column("upgrade_state", _enum("membership_upgrade_state"), nullable=False, server_default="base"),
        sa.Column(
            "evolution_state",
            _enum("membership_evolution_state"),
            nullable=False,
            server_default="dormant",
        ),
        sa.Column(
            "auto_staking_state",
            _enum("membership_auto_staking_state"),
            nullable=False,
            server_default="disabled",
        ),
        sa.Column(
            "verification_state",
            _enum("membership_verification_state"),
            nullable=False,
            server_default="unverified",
        ),
        sa.Column("accumulated_investment", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("auto_staking_asset_ref", sa.String(), nullable=True),
        sa.Column("wallet_ref", sa.String(), nullable=True),
        sa.Column("payment_ref", sa.String(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("upgraded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("evolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("auto_staking_enabled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("owner_id", "membership_type_id", name="uq_membership_instances_owner_type"),
        sa.CheckConstraint("accumulated_investment >= 0", name="ck_membership_instances_investment"),
    )
    op.create_index("ix_membership_instances_owner_id", "membership_instances", ["owner_id"])

    op.create_table(
        "membership_lifecycle_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "instance_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("membership_instances.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("event_type", _enum("membership_lifecycle_event_type"), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=False, server_default=sa.text("'{}'::json")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index(
        "ix_membership_lifecycle_events_instance_id",
        "membership_lifecycle_events",
        ["instance_id"],
    )


def downgrade() -> None:
    op.drop_index("ix_membership_lifecycle_events_instance_id", table_name="membership_lifecycle_events")
    op.drop_table("membership_lifecycle_events")
    op.drop_index("ix_membership_instances_owner_id", table_name="membership_instances")
    op.drop_table("membership_instances")
    op.drop_table("membership_minting_counters")
    op.drop_index("ix_membership_types_slug", table_name="membership_types")
    op.drop_table("membership_types")
    for name in reversed(list(_ENUMS)):
        op.execute(f"DROP TYPE IF EXISTS {name}")
