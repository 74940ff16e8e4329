"""Membership entitlement service exports."""

from .admission import MintingAdmissionControl, MintingStatus  # noqa: F401
from .catalog import (  # noqa: F401
    InvalidTypeDefinitionError,
    MembershipTypeDefinition,
    TypeCatalog,
    clear_cache,
)
from .entitlements import (  # noqa: F401
    EntitlementCalculator,
    EntitlementSnapshot,
    EvolutionEligibility,
    effective_earn_ratio,
    evolution_eligibility,
    investment_multiplier,
)
from .events import (  # noqa: F401
    LifecycleEventPublisher,
    LifecycleNotice,
    get_event_publisher,
)
from .fractional import FractionalEligibility, FractionalEligibilityGate, max_investable  # noqa: F401
from .ledger import (  # noqa: F401
    HttpOwnershipLedger,
    LedgerRejectedError,
    LedgerUnavailableError,
    OwnershipLedger,
)
from .lifecycle import OwnershipLifecycle, WalletProof  # noqa: F401
from .results import (  # noqa: F401
    Admitted,
    MembershipErrorKind,
    MembershipFailure,
    MembershipResult,
    Rejected,
)
from .store import InstanceMutation, MembershipStore, MutationOutcome  # noqa: F401
