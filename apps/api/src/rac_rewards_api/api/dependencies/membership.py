"""Wiring for the membership lifecycle and its external collaborators."""

from __future__ import annotations

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from rac_rewards_api.db.session import get_session
from rac_rewards_api.services.membership import (
    HttpOwnershipLedger,
    LifecycleEventPublisher,
    OwnershipLedger,
    OwnershipLifecycle,
    get_event_publisher,
)


def get_ownership_ledger() -> OwnershipLedger:
    return HttpOwnershipLedger()


def get_lifecycle_publisher() -> LifecycleEventPublisher:
    return get_event_publisher()


async def get_ownership_lifecycle(
    session: AsyncSession = Depends(get_session),
    ledger: OwnershipLedger = Depends(get_ownership_ledger),
    publisher: LifecycleEventPublisher = Depends(get_lifecycle_publisher),
) -> OwnershipLifecycle:
    return OwnershipLifecycle(session, ledger=ledger, publisher=publisher)
