"""Membership instance lifecycle: minting, one-way latches and wallet verification."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Sequence
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from rac_rewards_api.core.settings import settings
from rac_rewards_api.models.membership import (
    AutoStakingState,
    CustodyMode,
    EvolutionState,
    LifecycleEventType,
    MembershipInstance,
    MembershipLifecycleEvent,
    UpgradeState,
    VerificationState,
)
from rac_rewards_api.observability.membership import get_membership_telemetry
from rac_rewards_api.observability.tracing import membership_span
from rac_rewards_api.services.membership.admission import MintingAdmissionControl
from rac_rewards_api.services.membership.catalog import MembershipTypeDefinition, TypeCatalog
from rac_rewards_api.services.membership.entitlements import (
    EntitlementSnapshot,
    EvolutionEligibility,
    effective_earn_ratio,
    evolution_eligibility,
    summarize,
)
from rac_rewards_api.services.membership.events import (
    LifecycleEventPublisher,
    LifecycleNotice,
    get_event_publisher,
)
from rac_rewards_api.services.membership.fractional import (
    FractionalEligibility,
    FractionalEligibilityGate,
)
from rac_rewards_api.services.membership.ledger import (
    HttpOwnershipLedger,
    LedgerRejectedError,
    LedgerUnavailableError,
    OwnershipLedger,
)
from rac_rewards_api.services.membership.results import (
    MembershipErrorKind,
    MembershipFailure,
    MembershipResult,
    Rejected,
)
from rac_rewards_api.services.membership.store import (
    InstanceMutation,
    MembershipStore,
    MutationCallback,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _failure(kind: MembershipErrorKind, detail: str, *, retryable: bool = False) -> MembershipFailure:
    return MembershipFailure(kind=kind, detail=detail, retryable=retryable)


def _parse_amount(value: Decimal | int | str) -> Decimal | None:
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite():
        return None
    return amount


@dataclass(frozen=True, slots=True)
class WalletProof:
    """Wallet the member claims to hold the non-custodial membership in."""

    wallet_ref: str
    signature: str | None = None


class OwnershipLifecycle:
    """Create membership instances and move them through their lifecycle latches.

    Guard failures come back as ``MembershipResult`` failures. Every
    successful transition writes an audit row in the same commit as the state
    change and is published to subscribers after that commit.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        ledger: OwnershipLedger | None = None,
        publisher: LifecycleEventPublisher | None = None,
        max_attempts: int | None = None,
    ) -> None:
        self._session = session
        self._catalog = TypeCatalog(session)
        self._store = MembershipStore(session, max_attempts=max_attempts)
        self._admission = MintingAdmissionControl(self._store, self._catalog)
        self._fractional = FractionalEligibilityGate()
        self._ledger = ledger or HttpOwnershipLedger()
        self._publisher = publisher or get_event_publisher()
        self._telemetry = get_membership_telemetry()

    @property
    def catalog(self) -> TypeCatalog:
        return self._catalog

    @property
    def admission(self) -> MintingAdmissionControl:
        return self._admission

    @property
    def store(self) -> MembershipStore:
        return self._store

    async def create(
        self,
        type_id: UUID,
        owner_id: UUID,
        *,
        wallet_ref: str | None = None,
        payment_ref: str | None = None,
    ) -> MembershipResult[MembershipInstance]:
        """Mint an instance; the supply reservation commits with the insert.

        An owner holds at most one instance per product line (every version
        of a slug). A second request is ``ALREADY_OWNED`` and consumes no
        supply.
        """

        requested = await self._catalog.get(type_id)
        if requested is not None:
            held = await self._store.find_owner_instance(owner_id, requested.slug)
            if held is not None:
                return self._failed("create", self._already_owned(owner_id, requested), instance_id=held.id)

        with membership_span("admit", membership_type_id=type_id):
            decision = await self._admission.try_admit(type_id, commit=False)
        if isinstance(decision, Rejected):
            # Nothing was written; end the transaction without expiring loaded instances.
            await self._session.commit()
            return self._failed("create", decision.reason)

        definition = await self._catalog.get(type_id)
        now = _utcnow()
        custodial = definition.custody_mode == CustodyMode.CUSTODIAL
        instance = MembershipInstance(
            id=uuid4(),
            owner_id=owner_id,
            membership_type_id=definition.id,
            custody_mode=definition.custody_mode,
            upgrade_state=UpgradeState.BASE,
            evolution_state=EvolutionState.DORMANT,
            auto_staking_state=AutoStakingState.DISABLED,
            verification_state=VerificationState.VERIFIED if custodial else VerificationState.UNVERIFIED,
            accumulated_investment=Decimal("0"),
            wallet_ref=wallet_ref,
            payment_ref=payment_ref,
            created_at=now,
            verified_at=now if custodial else None,
        )
        event = self._event(
            instance,
            LifecycleEventType.CREATED,
            {
                "membershipTypeId": str(definition.id),
                "membershipVersion": definition.version,
                "custodyMode": definition.custody_mode.value,
                "serialNumber": decision.total_minted,
                "paymentRef": payment_ref,
            },
        )
        self._store.add_instance(instance, [event])
        try:
            await self._session.commit()
        except IntegrityError:
            # A concurrent create for the same owner won; the rollback also returns the reserved unit.
            await self._session.rollback()
            if await self._store.find_owner_instance(owner_id, definition.slug) is None:
                raise
            return self._failed("create", self._already_owned(owner_id, definition))

        self._telemetry.record_transition(LifecycleEventType.CREATED.value)
        logger.info(
            "Membership instance created",
            instance_id=str(instance.id),
            owner_id=str(owner_id),
            membership_type_id=str(definition.id),
            custody_mode=definition.custody_mode.value,
            total_minted=decision.total_minted,
        )
        self._publish(instance, definition, [event])
        return MembershipResult.succeeded(instance)

    async def assign_free_membership(self, owner_id: UUID) -> MembershipResult[MembershipInstance]:
        """Give a new member the free custodial card; members who hold any card keep it.

        Idempotent: repeated calls return the member's first membership
        instead of minting again.
        """

        held = await self._store.list_owner_instances(owner_id)
        if held:
            return MembershipResult.succeeded(held[0])

        slug = settings.free_membership_slug
        definition = await self._catalog.get_active_by_slug(slug)
        if definition is None:
            return self._failed(
                "assign_free",
                _failure(MembershipErrorKind.CATALOG_NOT_FOUND, f"Free membership type '{slug}' is not published"),
            )
        if definition.custody_mode != CustodyMode.CUSTODIAL or definition.base_price_usdt != 0:
            return self._failed(
                "assign_free",
                _failure(
                    MembershipErrorKind.NOT_APPLICABLE,
                    f"Membership type '{slug}' is not a free custodial membership",
                ),
            )

        created = await self.create(definition.id, owner_id)
        if not created.ok and created.failure.kind == MembershipErrorKind.ALREADY_OWNED:
            held = await self._store.list_owner_instances(owner_id)
            return MembershipResult.succeeded(held[0])
        return created

    async def upgrade(self, instance_id: UUID) -> MembershipResult[MembershipInstance]:
        async def apply(instance: MembershipInstance) -> InstanceMutation:
            definition = await self._catalog.get(instance.membership_type_id)
            if definition is None:
                return InstanceMutation(failure=self._missing_definition(instance))
            if not definition.is_upgradeable:
                return InstanceMutation(
                    failure=_failure(
                        MembershipErrorKind.NOT_UPGRADEABLE,
                        f"{definition.name} memberships cannot be upgraded",
                    )
                )
            if instance.is_upgraded:
                return InstanceMutation(
                    failure=_failure(
                        MembershipErrorKind.ALREADY_UPGRADED,
                        f"Membership {instance.id} is already upgraded",
                    )
                )

            original_ratio = effective_earn_ratio(instance, definition)
            instance.upgrade_state = UpgradeState.UPGRADED
            instance.upgraded_at = _utcnow()
            new_ratio = effective_earn_ratio(instance, definition)
            return InstanceMutation(
                events=[
                    self._event(
                        instance,
                        LifecycleEventType.UPGRADED,
                        {
                            "originalRatio": str(original_ratio),
                            "newRatio": str(new_ratio),
                            "bonusRatio": str(new_ratio - original_ratio),
                        },
                    )
                ]
            )

        return await self._mutate("upgrade", instance_id, apply)

    async def evolve(
        self,
        instance_id: UUID,
        additional_investment: Decimal | int | str = Decimal("0"),
    ) -> MembershipResult[MembershipInstance]:
        """Record ``additional_investment`` and evolve once the minimum is reached.

        The investment is kept even when a guard rejects the evolution.
        """

        amount = _parse_amount(additional_investment)
        if amount is None or amount < 0:
            return self._failed(
                "evolve",
                _failure(MembershipErrorKind.INVALID_AMOUNT, "Investment amount must be a non-negative number"),
            )

        async def apply(instance: MembershipInstance) -> InstanceMutation:
            definition = await self._catalog.get(instance.membership_type_id)
            if definition is None:
                return InstanceMutation(failure=self._missing_definition(instance))

            events: list[MembershipLifecycleEvent] = []
            if amount > 0:
                events.append(self._add_investment(instance, amount))

            total = Decimal(instance.accumulated_investment)
            if instance.is_evolved:
                return InstanceMutation(
                    failure=_failure(
                        MembershipErrorKind.ALREADY_EVOLVED,
                        f"Membership {instance.id} has already evolved",
                    ),
                    events=events,
                )
            if not definition.is_evolvable:
                return InstanceMutation(
                    failure=_failure(
                        MembershipErrorKind.NOT_EVOLVABLE,
                        f"{definition.name} memberships cannot evolve",
                    ),
                    events=events,
                )
            if total < definition.evolution_min_investment:
                return InstanceMutation(
                    failure=_failure(
                        MembershipErrorKind.INSUFFICIENT_INVESTMENT,
                        f"{total} of {definition.evolution_min_investment} USDT invested",
                    ),
                    events=events,
                )

            instance.evolution_state = EvolutionState.EVOLVED
            instance.evolved_at = _utcnow()
            events.append(
                self._event(
                    instance,
                    LifecycleEventType.EVOLVED,
                    {
                        "investmentAmount": str(amount),
                        "totalInvestment": str(total),
                        "evolutionBonusRatio": str(definition.evolution_bonus_ratio),
                    },
                )
            )
            return InstanceMutation(events=events)

        return await self._mutate("evolve", instance_id, apply)

    async def record_investment(
        self,
        instance_id: UUID,
        amount: Decimal | int | str,
    ) -> MembershipResult[MembershipInstance]:
        """Add investment from the marketplace flow without attempting evolution."""

        parsed = _parse_amount(amount)
        if parsed is None or parsed <= 0:
            return self._failed(
                "record_investment",
                _failure(MembershipErrorKind.INVALID_AMOUNT, "Investment amount must be a positive number"),
            )

        async def apply(instance: MembershipInstance) -> InstanceMutation:
            return InstanceMutation(events=[self._add_investment(instance, parsed)])

        return await self._mutate("record_investment", instance_id, apply)

    async def enable_auto_staking(self, instance_id: UUID, asset_ref: str) -> MembershipResult[MembershipInstance]:
        if not asset_ref or not asset_ref.strip():
            raise ValueError("asset_ref is required to enable auto-staking")

        async def apply(instance: MembershipInstance) -> InstanceMutation:
            if instance.auto_staking_enabled:
                return InstanceMutation(
                    failure=_failure(
                        MembershipErrorKind.ALREADY_AUTO_STAKING,
                        f"Auto-staking is already enabled for membership {instance.id}",
                    )
                )
            definition = await self._catalog.get(instance.membership_type_id)
            instance.auto_staking_state = AutoStakingState.ENABLED
            instance.auto_staking_asset_ref = asset_ref.strip()
            instance.auto_staking_enabled_at = _utcnow()
            return InstanceMutation(
                events=[
                    self._event(
                        instance,
                        LifecycleEventType.AUTO_STAKING_ENABLED,
                        {
                            "assetRef": instance.auto_staking_asset_ref,
                            "stakingDuration": definition.staking_duration.value if definition else None,
                        },
                    )
                ]
            )

        return await self._mutate("enable_auto_staking", instance_id, apply)

    async def verify(self, instance_id: UUID, proof: WalletProof) -> MembershipResult[MembershipInstance]:
        """Confirm a non-custodial instance against the external ownership ledger.

        The ledger call happens outside any open transaction. Ledger outages
        come back as a retryable ``VERIFICATION_FAILED``; a mismatch is
        terminal for the attempt. A verified instance never goes back to
        unverified.
        """

        instance = await self._store.get_instance(instance_id, refresh=True)
        if instance is None:
            return self._failed("verify", self._missing_instance(instance_id))
        if instance.custody_mode == CustodyMode.CUSTODIAL:
            return self._failed(
                "verify",
                _failure(
                    MembershipErrorKind.NOT_APPLICABLE,
                    "Custodial memberships are verified by construction",
                ),
            )

        conflict = self._wallet_conflict(instance, proof)
        if conflict is not None:
            return self._failed("verify", conflict)
        if instance.is_verified:
            return MembershipResult.succeeded(instance)

        owner_id = instance.owner_id
        await self._session.commit()
        try:
            owned = await self._ledger.check_ownership(proof.wallet_ref, str(owner_id), signature=proof.signature)
        except LedgerUnavailableError as exc:
            return self._failed(
                "verify",
                _failure(
                    MembershipErrorKind.VERIFICATION_FAILED,
                    f"Ownership ledger unavailable: {exc}",
                    retryable=True,
                ),
            )
        except LedgerRejectedError as exc:
            return self._failed(
                "verify",
                _failure(MembershipErrorKind.VERIFICATION_FAILED, f"Ownership ledger rejected the check: {exc}"),
            )
        if not owned:
            return self._failed(
                "verify",
                _failure(
                    MembershipErrorKind.VERIFICATION_FAILED,
                    f"Wallet {proof.wallet_ref} is not held by the membership owner",
                ),
            )

        async def apply(current: MembershipInstance) -> InstanceMutation:
            if current.is_verified:
                return InstanceMutation()
            mismatch = self._wallet_conflict(current, proof)
            if mismatch is not None:
                return InstanceMutation(failure=mismatch)
            current.verification_state = VerificationState.VERIFIED
            current.verified_at = _utcnow()
            current.wallet_ref = proof.wallet_ref
            return InstanceMutation(
                events=[
                    self._event(
                        current,
                        LifecycleEventType.VERIFIED,
                        {"walletRef": proof.wallet_ref},
                    )
                ]
            )

        return await self._mutate("verify", instance_id, apply)

    async def get_instance(self, instance_id: UUID) -> MembershipResult[MembershipInstance]:
        instance = await self._store.get_instance(instance_id)
        if instance is None:
            return MembershipResult(failure=self._missing_instance(instance_id))
        return MembershipResult.succeeded(instance)

    async def list_owner_instances(self, owner_id: UUID) -> list[MembershipInstance]:
        return await self._store.list_owner_instances(owner_id)

    async def list_events(self, instance_id: UUID) -> MembershipResult[list[MembershipLifecycleEvent]]:
        instance = await self._store.get_instance(instance_id)
        if instance is None:
            return MembershipResult(failure=self._missing_instance(instance_id))
        return MembershipResult.succeeded(await self._store.list_events(instance_id))

    async def entitlements(self, instance_id: UUID) -> MembershipResult[EntitlementSnapshot]:
        resolved = await self._resolve(instance_id)
        if not resolved.ok:
            return MembershipResult(failure=resolved.failure)
        instance, definition = resolved.value
        return MembershipResult.succeeded(summarize(instance, definition))

    async def evolution_eligibility(self, instance_id: UUID) -> MembershipResult[EvolutionEligibility]:
        resolved = await self._resolve(instance_id)
        if not resolved.ok:
            return MembershipResult(failure=resolved.failure)
        instance, definition = resolved.value
        return MembershipResult.succeeded(evolution_eligibility(instance, definition))

    async def fractional_eligibility(
        self,
        instance_id: UUID,
        points_balance: Decimal | int | str,
    ) -> MembershipResult[FractionalEligibility]:
        balance = _parse_amount(points_balance)
        if balance is None or balance < 0:
            return MembershipResult(
                failure=_failure(MembershipErrorKind.INVALID_AMOUNT, "Points balance must be a non-negative number")
            )
        resolved = await self._resolve(instance_id)
        if not resolved.ok:
            return MembershipResult(failure=resolved.failure)
        instance, definition = resolved.value
        return MembershipResult.succeeded(self._fractional.evaluate(instance, definition, balance))

    async def _resolve(
        self, instance_id: UUID
    ) -> MembershipResult[tuple[MembershipInstance, MembershipTypeDefinition]]:
        instance = await self._store.get_instance(instance_id)
        if instance is None:
            return MembershipResult(failure=self._missing_instance(instance_id))
        definition = await self._catalog.get(instance.membership_type_id)
        if definition is None:
            return MembershipResult(failure=self._missing_definition(instance))
        return MembershipResult.succeeded((instance, definition))

    async def _mutate(
        self,
        operation: str,
        instance_id: UUID,
        apply: MutationCallback,
    ) -> MembershipResult[MembershipInstance]:
        outcome = await self._store.mutate_instance(instance_id, apply)
        if outcome.instance is not None and outcome.events:
            definition = await self._catalog.get(outcome.instance.membership_type_id)
            if definition is not None:
                self._publish(outcome.instance, definition, outcome.events)
            for event in outcome.events:
                self._telemetry.record_transition(event.event_type.value)

        if outcome.failure is not None:
            return self._failed(operation, outcome.failure, instance_id=instance_id)

        logger.info(
            "Membership lifecycle operation applied",
            operation=operation,
            instance_id=str(instance_id),
            events=[event.event_type.value for event in outcome.events],
            attempts=outcome.attempts,
        )
        return MembershipResult.succeeded(outcome.instance)

    def _failed(
        self,
        operation: str,
        failure: MembershipFailure,
        *,
        instance_id: UUID | None = None,
    ) -> MembershipResult[Any]:
        self._telemetry.record_failure(failure.kind.value)
        logger.info(
            "Membership lifecycle operation rejected",
            operation=operation,
            instance_id=str(instance_id) if instance_id else None,
            reason=failure.kind.value,
            retryable=failure.retryable,
        )
        return MembershipResult(failure=failure)

    def _add_investment(self, instance: MembershipInstance, amount: Decimal) -> MembershipLifecycleEvent:
        total = Decimal(instance.accumulated_investment or 0) + amount
        instance.accumulated_investment = total
        return self._event(
            instance,
            LifecycleEventType.INVESTMENT_RECORDED,
            {"amount": str(amount), "totalInvestment": str(total)},
        )

    @staticmethod
    def _wallet_conflict(instance: MembershipInstance, proof: WalletProof) -> MembershipFailure | None:
        if instance.wallet_ref and instance.wallet_ref != proof.wallet_ref:
            return _failure(
                MembershipErrorKind.VERIFICATION_FAILED,
                "Wallet proof does not match the wallet recorded for this membership",
            )
        return None

    @staticmethod
    def _event(
        instance: MembershipInstance,
        event_type: LifecycleEventType,
        metadata: dict[str, Any],
    ) -> MembershipLifecycleEvent:
        return MembershipLifecycleEvent(
            id=uuid4(),
            instance_id=instance.id,
            event_type=event_type,
            metadata_json=metadata,
            created_at=_utcnow(),
        )

    @staticmethod
    def _already_owned(owner_id: UUID, definition: MembershipTypeDefinition) -> MembershipFailure:
        return _failure(
            MembershipErrorKind.ALREADY_OWNED,
            f"Member {owner_id} already holds a {definition.name} membership",
        )

    @staticmethod
    def _missing_instance(instance_id: UUID) -> MembershipFailure:
        return _failure(MembershipErrorKind.INSTANCE_NOT_FOUND, f"Membership instance {instance_id} not found")

    @staticmethod
    def _missing_definition(instance: MembershipInstance) -> MembershipFailure:
        return _failure(
            MembershipErrorKind.CATALOG_NOT_FOUND,
            f"Membership type {instance.membership_type_id} not found",
        )

    def _publish(
        self,
        instance: MembershipInstance,
        definition: MembershipTypeDefinition,
        events: Sequence[MembershipLifecycleEvent],
    ) -> None:
        self._publisher.publish(
            LifecycleNotice(
                event_type=event.event_type,
                instance_id=instance.id,
                owner_id=instance.owner_id,
                membership_type_id=definition.id,
                membership_name=definition.name,
                metadata=dict(event.metadata_json or {}),
                occurred_at=event.created_at or _utcnow(),
            )
            for event in events
        )


__all__ = ["OwnershipLifecycle", "WalletProof"]
