"""Email notifications for membership lifecycle events."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Sequence

from loguru import logger

from rac_rewards_api.core.settings import get_settings
from rac_rewards_api.models.membership import LifecycleEventType
from rac_rewards_api.observability.membership import get_membership_telemetry
from rac_rewards_api.services.membership.events import LifecycleNotice

from .backend import EmailBackend, OutboundEmail, SMTPEmailBackend
from .directory import MemberContact, MemberDirectory
from .templates import (
    RenderedTemplate,
    render_membership_created,
    render_membership_evolved,
    render_membership_upgraded,
    render_membership_verified,
)


@dataclass
class NotificationEvent:
    """Representation of a notification that was sent."""

    recipient: str
    subject: str
    body_text: str
    body_html: str | None
    event_type: str
    metadata: dict[str, Any]


_TEMPLATES: Dict[LifecycleEventType, Callable[..., RenderedTemplate]] = {
    LifecycleEventType.CREATED: render_membership_created,
    LifecycleEventType.UPGRADED: render_membership_upgraded,
    LifecycleEventType.EVOLVED: render_membership_evolved,
    LifecycleEventType.VERIFIED: render_membership_verified,
}


class NotificationService:
    """Email membership owners when their membership changes state.

    Registered as a lifecycle subscriber; events without a template
    (investment records, auto-staking) are ignored.
    """

    def __init__(
        self,
        directory: MemberDirectory,
        backend: Optional[EmailBackend] = None,
        *,
        bcc: Sequence[str] | None = None,
        history_size: int = 100,
    ) -> None:
        self._directory = directory
        self._backend = backend or SMTPEmailBackend.from_settings(get_settings())
        self._bcc = tuple(bcc if bcc is not None else get_settings().membership_notification_bcc)
        # Recent deliveries only; the audit trail lives in membership_lifecycle_events.
        self._events: deque[NotificationEvent] = deque(maxlen=history_size)
        self._telemetry = get_membership_telemetry()

    @property
    def sent_events(self) -> list[NotificationEvent]:
        """The most recent deliveries, oldest first."""
        return list(self._events)

    async def __call__(self, notice: LifecycleNotice) -> None:
        await self.handle_lifecycle_event(notice)

    async def handle_lifecycle_event(self, notice: LifecycleNotice) -> None:
        renderer = _TEMPLATES.get(notice.event_type)
        if renderer is None or self._backend is None:
            return

        contact = await self._directory.resolve(notice.owner_id)
        if contact is None:
            self._telemetry.record_notification("no_contact")
            logger.info(
                "Skipping membership notification without contact",
                owner_id=str(notice.owner_id),
                event_type=notice.event_type.value,
            )
            return

        template = renderer(notice, contact_name=contact.display_name)
        await self._deliver(
            contact,
            template,
            event_type=f"membership_{notice.event_type.value}",
            metadata={"instance_id": str(notice.instance_id), **notice.metadata},
        )

    async def _deliver(
        self,
        contact: MemberContact,
        template: RenderedTemplate,
        *,
        event_type: str,
        metadata: dict[str, Any],
    ) -> None:
        """Send using active backend and record emitted event."""
        if self._backend is None:
            return

        await self._backend.send(
            OutboundEmail(
                recipient=contact.email,
                subject=template.subject,
                text_body=template.text_body,
                html_body=template.html_body,
                bcc=self._bcc,
                headers={"X-RAC-Event": event_type, "X-RAC-Instance": metadata["instance_id"]},
            )
        )
        self._telemetry.record_notification("sent")
        logger.info("Membership notification sent", event_type=event_type, recipient=contact.email)
        self._events.append(
            NotificationEvent(
                recipient=contact.email,
                subject=template.subject,
                body_text=template.text_body,
                body_html=template.html_body,
                event_type=event_type,
                metadata=metadata,
            )
        )
