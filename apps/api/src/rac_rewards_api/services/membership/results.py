"""Discriminated outcomes shared by the membership services."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar
from uuid import UUID


T = TypeVar("T")


class MembershipErrorKind(str, Enum):
    """Guard failures returned as values by the membership operations."""

    CATALOG_NOT_FOUND = "catalog_not_found"
    INSTANCE_NOT_FOUND = "instance_not_found"
    MINTING_DISABLED = "minting_disabled"
    CAPACITY_EXCEEDED = "capacity_exceeded"
    NOT_UPGRADEABLE = "not_upgradeable"
    ALREADY_UPGRADED = "already_upgraded"
    NOT_EVOLVABLE = "not_evolvable"
    ALREADY_EVOLVED = "already_evolved"
    INSUFFICIENT_INVESTMENT = "insufficient_investment"
    ALREADY_AUTO_STAKING = "already_auto_staking"
    NOT_APPLICABLE = "not_applicable"
    VERIFICATION_FAILED = "verification_failed"
    CONCURRENT_MODIFICATION = "concurrent_modification"
    INVALID_AMOUNT = "invalid_amount"
    ALREADY_OWNED = "already_owned"


@dataclass(frozen=True, slots=True)
class MembershipFailure:
    kind: MembershipErrorKind
    detail: str
    retryable: bool = False

    def as_payload(self) -> dict[str, object]:
        return {"code": self.kind.value, "message": self.detail, "retryable": self.retryable}


@dataclass(frozen=True, slots=True)
class MembershipResult(Generic[T]):
    """Either a value or a failure, never both."""

    value: Optional[T] = None
    failure: Optional[MembershipFailure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    @classmethod
    def succeeded(cls, value: T) -> "MembershipResult[T]":
        return cls(value=value)

    @classmethod
    def failed(
        cls,
        kind: MembershipErrorKind,
        detail: str,
        *,
        retryable: bool = False,
    ) -> "MembershipResult[T]":
        return cls(failure=MembershipFailure(kind=kind, detail=detail, retryable=retryable))


@dataclass(frozen=True, slots=True)
class Admitted:
    """One unit of supply reserved for the caller."""

    type_id: UUID
    total_minted: int
    cap: int | None


@dataclass(frozen=True, slots=True)
class Rejected:
    reason: MembershipFailure


AdmissionDecision = Admitted | Rejected


__all__ = [
    "AdmissionDecision",
    "Admitted",
    "MembershipErrorKind",
    "MembershipFailure",
    "MembershipResult",
    "Rejected",
]
