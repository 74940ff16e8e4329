"""Hard per-type supply cap for membership minting."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict
from uuid import UUID

from loguru import logger

from rac_rewards_api.observability.membership import get_membership_telemetry
from rac_rewards_api.services.membership.catalog import TypeCatalog
from rac_rewards_api.services.membership.results import (
    AdmissionDecision,
    Admitted,
    MembershipErrorKind,
    MembershipFailure,
    MembershipResult,
    Rejected,
)
from rac_rewards_api.services.membership.store import MembershipStore


@dataclass(frozen=True, slots=True)
class MintingStatus:
    type_id: UUID
    total_minted: int
    cap: int
    is_unbounded: bool
    minting_enabled: bool
    pause_reason: str | None
    paused_at: datetime | None

    @property
    def remaining(self) -> int | None:
        if self.is_unbounded:
            return None
        return max(self.cap - self.total_minted, 0)

    @property
    def sold_out(self) -> bool:
        return not self.is_unbounded and self.total_minted >= self.cap

    def as_payload(self) -> Dict[str, Any]:
        return {
            "typeId": str(self.type_id),
            "totalMinted": self.total_minted,
            "cap": self.cap,
            "isUnbounded": self.is_unbounded,
            "remaining": self.remaining,
            "soldOut": self.sold_out,
            "mintingEnabled": self.minting_enabled,
            "pauseReason": self.pause_reason,
            "pausedAt": self.paused_at.isoformat() if self.paused_at else None,
        }


class MintingAdmissionControl:
    """Admit or reject minting requests against the stored per-type counter."""

    def __init__(self, store: MembershipStore, catalog: TypeCatalog) -> None:
        self._store = store
        self._catalog = catalog
        self._telemetry = get_membership_telemetry()

    async def try_admit(self, type_id: UUID, *, commit: bool = True) -> AdmissionDecision:
        """Reserve one unit of supply for ``type_id``.

        With ``commit=False`` the reservation stays in the caller's open
        transaction so it lands atomically with whatever the caller inserts,
        and a rejection leaves that transaction for the caller to end. The
        session is never rolled back here, so instances the caller already
        holds stay loaded.
        """

        session = self._store.session
        definition = await self._catalog.get(type_id)
        if definition is None:
            return self._reject(
                type_id,
                MembershipErrorKind.CATALOG_NOT_FOUND,
                f"Membership type {type_id} not found",
            )

        if await self._store.atomic_increment_if_below_cap(type_id):
            counter = await self._store.get_counter(type_id)
            if commit:
                await session.commit()
            self._telemetry.record_admission("admitted")
            logger.info(
                "Membership minting admitted",
                membership_type_id=str(type_id),
                total_minted=counter.total_minted,
                cap=None if counter.is_unbounded else counter.cap,
            )
            return Admitted(
                type_id=type_id,
                total_minted=int(counter.total_minted),
                cap=None if counter.is_unbounded else int(counter.cap),
            )

        counter = await self._store.get_counter(type_id)
        snapshot = None if counter is None else _status(type_id, counter)
        if commit:
            await session.commit()
        if snapshot is None:
            return self._reject(
                type_id,
                MembershipErrorKind.CATALOG_NOT_FOUND,
                f"Membership type {type_id} has no minting counter",
            )
        if not snapshot.minting_enabled:
            reason = snapshot.pause_reason or "paused"
            return self._reject(
                type_id,
                MembershipErrorKind.MINTING_DISABLED,
                f"Minting is disabled for {definition.name} ({reason})",
            )
        return self._reject(
            type_id,
            MembershipErrorKind.CAPACITY_EXCEEDED,
            f"{definition.name} is sold out ({snapshot.total_minted}/{snapshot.cap})",
        )

    async def pause(self, type_id: UUID, reason: str) -> MembershipResult[MintingStatus]:
        counter = await self._store.get_counter(type_id)
        if counter is None:
            return MembershipResult.failed(
                MembershipErrorKind.CATALOG_NOT_FOUND, f"Membership type {type_id} not found"
            )
        counter.minting_enabled = False
        counter.pause_reason = reason
        counter.paused_at = datetime.now(timezone.utc)
        await self._store.session.commit()
        logger.info("Membership minting paused", membership_type_id=str(type_id), reason=reason)
        return MembershipResult.succeeded(_status(type_id, counter))

    async def resume(self, type_id: UUID) -> MembershipResult[MintingStatus]:
        """Re-enable minting; a sold-out type stays closed by its cap."""

        counter = await self._store.get_counter(type_id)
        if counter is None:
            return MembershipResult.failed(
                MembershipErrorKind.CATALOG_NOT_FOUND, f"Membership type {type_id} not found"
            )
        if not await self._catalog.is_listed(type_id):
            return MembershipResult.failed(
                MembershipErrorKind.NOT_APPLICABLE,
                f"Membership type {type_id} has been superseded and cannot be resumed",
            )
        counter.minting_enabled = True
        counter.pause_reason = None
        counter.paused_at = None
        await self._store.session.commit()
        logger.info("Membership minting resumed", membership_type_id=str(type_id))
        return MembershipResult.succeeded(_status(type_id, counter))

    async def status(self, type_id: UUID) -> MembershipResult[MintingStatus]:
        counter = await self._store.get_counter(type_id)
        if counter is None:
            return MembershipResult.failed(
                MembershipErrorKind.CATALOG_NOT_FOUND, f"Membership type {type_id} not found"
            )
        return MembershipResult.succeeded(_status(type_id, counter))

    def _reject(self, type_id: UUID, kind: MembershipErrorKind, detail: str) -> Rejected:
        self._telemetry.record_admission(kind.value)
        logger.info("Membership minting rejected", membership_type_id=str(type_id), reason=kind.value)
        return Rejected(reason=MembershipFailure(kind=kind, detail=detail))


def _status(type_id: UUID, counter) -> MintingStatus:
    return MintingStatus(
        type_id=type_id,
        total_minted=int(counter.total_minted),
        cap=int(counter.cap),
        is_unbounded=bool(counter.is_unbounded),
        minting_enabled=bool(counter.minting_enabled),
        pause_reason=counter.pause_reason,
        paused_at=counter.paused_at,
    )


__all__ = ["MintingAdmissionControl", "MintingStatus"]
