"""SQLAlchemy models package."""

from .membership import (  # noqa: F401
    AutoStakingState,
    CustodyMode,
    CustodyModeFrozenError,
    EvolutionState,
    LifecycleEventType,
    MembershipInstance,
    MembershipLifecycleEvent,
    MembershipRarity,
    MembershipType,
    MintingCounter,
    StakingDuration,
    UpgradeState,
    VerificationState,
)
