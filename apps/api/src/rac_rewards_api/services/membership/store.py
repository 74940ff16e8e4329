"""Persistence adapter for minting counters and membership instances."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from rac_rewards_api.core.settings import settings
from rac_rewards_api.models.membership import (
    MembershipInstance,
    MembershipLifecycleEvent,
    MembershipType,
    MintingCounter,
)
from rac_rewards_api.services.membership.results import MembershipErrorKind, MembershipFailure


@dataclass(slots=True)
class InstanceMutation:
    """What a read-modify-write callback decided for one attempt."""

    failure: MembershipFailure | None = None
    events: list[MembershipLifecycleEvent] = field(default_factory=list)


@dataclass(slots=True)
class MutationOutcome:
    instance: MembershipInstance | None
    failure: MembershipFailure | None = None
    events: list[MembershipLifecycleEvent] = field(default_factory=list)
    attempts: int = 0


MutationCallback = Callable[[MembershipInstance], Awaitable[InstanceMutation]]


class MembershipStore:
    """Counter and instance storage with atomic admission and optimistic writes."""

    def __init__(self, session: AsyncSession, *, max_attempts: int | None = None) -> None:
        self._session = session
        self._max_attempts = max(1, max_attempts or settings.membership_store_max_attempts)

    @property
    def session(self) -> AsyncSession:
        return self._session

    async def get_counter(self, type_id: UUID) -> MintingCounter | None:
        stmt = (
            select(MintingCounter)
            .where(MintingCounter.membership_type_id == type_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def atomic_increment_if_below_cap(self, type_id: UUID) -> bool:
        """Reserve one unit of supply; the bound is checked by the storage engine.

        Runs inside the caller's transaction. Nothing is incremented when the
        counter is disabled or already at its cap.
        """

        stmt = (
            update(MintingCounter)
            .where(
                MintingCounter.membership_type_id == type_id,
                MintingCounter.minting_enabled.is_(True),
                or_(
                    MintingCounter.is_unbounded.is_(True),
                    MintingCounter.total_minted < MintingCounter.cap,
                ),
            )
            .values(
                total_minted=MintingCounter.total_minted + 1,
                updated_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def get_instance(self, instance_id: UUID, *, refresh: bool = False) -> MembershipInstance | None:
        stmt = select(MembershipInstance).where(MembershipInstance.id == instance_id)
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    def add_instance(
        self,
        instance: MembershipInstance,
        events: Sequence[MembershipLifecycleEvent] = (),
    ) -> None:
        self._session.add(instance)
        for event in events:
            self._session.add(event)

    async def list_owner_instances(self, owner_id: UUID) -> list[MembershipInstance]:
        stmt = (
            select(MembershipInstance)
            .where(MembershipInstance.owner_id == owner_id)
            .order_by(MembershipInstance.created_at)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def find_owner_instance(self, owner_id: UUID, slug: str) -> MembershipInstance | None:
        """The instance ``owner_id`` holds in the product line ``slug``, across every version."""

        stmt = (
            select(MembershipInstance)
            .join(MembershipType, MembershipType.id == MembershipInstance.membership_type_id)
            .where(MembershipInstance.owner_id == owner_id, MembershipType.slug == slug)
            .order_by(MembershipInstance.created_at)
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_events(self, instance_id: UUID) -> list[MembershipLifecycleEvent]:
        stmt = (
            select(MembershipLifecycleEvent)
            .where(MembershipLifecycleEvent.instance_id == instance_id)
            .order_by(MembershipLifecycleEvent.created_at)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def mutate_instance(self, instance_id: UUID, apply: MutationCallback) -> MutationOutcome:
        """Run ``apply`` against a fresh copy of the instance and commit with a version check.

        The outcome of ``apply`` is committed even when it reports a failure,
        since a failed guard may still have recorded state (investment).
        Version conflicts reload and re-run ``apply`` up to the configured
        number of attempts before surfacing ``CONCURRENT_MODIFICATION``.
        """

        for attempt in range(1, self._max_attempts + 1):
            instance = await self.get_instance(instance_id, refresh=True)
            if instance is None:
                await self._session.commit()
                return MutationOutcome(
                    instance=None,
                    failure=MembershipFailure(
                        kind=MembershipErrorKind.INSTANCE_NOT_FOUND,
                        detail=f"Membership instance {instance_id} not found",
                    ),
                    attempts=attempt,
                )

            mutation = await apply(instance)
            for event in mutation.events:
                self._session.add(event)
            try:
                await self._session.commit()
            except StaleDataError:
                await self._session.rollback()
                logger.warning(
                    "Membership instance changed concurrently; retrying",
                    instance_id=str(instance_id),
                    attempt=attempt,
                    max_attempts=self._max_attempts,
                )
                continue

            return MutationOutcome(
                instance=instance,
                failure=mutation.failure,
                events=list(mutation.events),
                attempts=attempt,
            )

        logger.error(
            "Membership instance mutation abandoned after version conflicts",
            instance_id=str(instance_id),
            attempts=self._max_attempts,
        )
        instance = await self.get_instance(instance_id, refresh=True)
        return MutationOutcome(
            instance=instance,
            failure=MembershipFailure(
                kind=MembershipErrorKind.CONCURRENT_MODIFICATION,
                detail=f"Membership instance {instance_id} was modified concurrently; retry the operation",
                retryable=True,
            ),
            attempts=self._max_attempts,
        )


__all__ = ["InstanceMutation", "MembershipStore", "MutationCallback", "MutationOutcome"]
