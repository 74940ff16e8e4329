"""Fire-and-forget fan-out of membership lifecycle events."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable
from uuid import UUID

from loguru import logger

from rac_rewards_api.models.membership import LifecycleEventType


@dataclass(frozen=True, slots=True)
class LifecycleNotice:
    """Committed lifecycle transition handed to subscribers."""

    event_type: LifecycleEventType
    instance_id: UUID
    owner_id: UUID
    membership_type_id: UUID
    membership_name: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


LifecycleSubscriber = Callable[[LifecycleNotice], Awaitable[None]]


class LifecycleEventPublisher:
    """Deliver notices to subscribers without tying delivery to the state change.

    ``publish`` returns immediately; each subscriber runs in its own task and
    its failures are logged, never raised to the caller.
    """

    def __init__(self) -> None:
        self._subscribers: list[LifecycleSubscriber] = []
        self._pending: set[asyncio.Task[None]] = set()

    def subscribe(self, subscriber: LifecycleSubscriber) -> None:
        if subscriber not in self._subscribers:
            self._subscribers.append(subscriber)

    def unsubscribe(self, subscriber: LifecycleSubscriber) -> None:
        if subscriber in self._subscribers:
            self._subscribers.remove(subscriber)

    def clear(self) -> None:
        self._subscribers.clear()

    def publish(self, notices: Iterable[LifecycleNotice]) -> None:
        for notice in notices:
            for subscriber in list(self._subscribers):
                task = asyncio.create_task(self._dispatch(subscriber, notice))
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for in-flight deliveries (shutdown and tests)."""

        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _dispatch(self, subscriber: LifecycleSubscriber, notice: LifecycleNotice) -> None:
        try:
            await subscriber(notice)
        except Exception as exc:
            logger.exception(
                "Membership lifecycle subscriber failed",
                event_type=notice.event_type.value,
                instance_id=str(notice.instance_id),
                error=str(exc),
            )


_PUBLISHER = LifecycleEventPublisher()


def get_event_publisher() -> LifecycleEventPublisher:
    return _PUBLISHER


__all__ = [
    "LifecycleEventPublisher",
    "LifecycleNotice",
    "LifecycleSubscriber",
    "get_event_publisher",
]
