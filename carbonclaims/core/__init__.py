# Core marketplace client services
from .hasher import Hasher, CanonicalSerializationError
from .wallet import Wallet
from .wallet_service import WalletService, get_wallet_service
from .decoder import (
    DecodeError,
    DecodeResult,
    decode_claims,
    decode_organization,
    decode_organizations,
)
from .timewindow import (
    TimeResolutionError,
    resolve_window,
    resolve_record_window,
    voting_ends_at,
    voting_period_seconds_until,
)
from .guard import (
    Actor,
    DenialReason,
    Eligibility,
    can_manage_organization,
    can_vote,
    check_vote,
    is_active,
)
from .ledger_client import (
    AbortReason,
    LedgerAbortError,
    LedgerClient,
    LedgerDispatchError,
    LedgerError,
    classify_failure,
)
from .memory_ledger import InMemoryLedgerClient, ManualClock
from .tally import VoteCategory, VoteOutcome, VotePhase, VoteTallyEngine
from .sync import ClaimSyncCoordinator, ClaimView, SyncAmbiguousEmptyError
from .actions import (
    ActionResult,
    MarketplaceActions,
    NotOrganizationOwnerError,
    ValidationError,
)

__all__ = [
    "Hasher",
    "CanonicalSerializationError",
    "Wallet",
    "WalletService",
    "get_wallet_service",
    "DecodeError",
    "DecodeResult",
    "decode_claims",
    "decode_organization",
    "decode_organizations",
    "TimeResolutionError",
    "resolve_window",
    "resolve_record_window",
    "voting_ends_at",
    "voting_period_seconds_until",
    "Actor",
    "DenialReason",
    "Eligibility",
    "can_manage_organization",
    "can_vote",
    "check_vote",
    "is_active",
    "AbortReason",
    "LedgerAbortError",
    "LedgerClient",
    "LedgerDispatchError",
    "LedgerError",
    "classify_failure",
    "InMemoryLedgerClient",
    "ManualClock",
    "VoteCategory",
    "VoteOutcome",
    "VotePhase",
    "VoteTallyEngine",
    "ClaimSyncCoordinator",
    "ClaimView",
    "SyncAmbiguousEmptyError",
    "ActionResult",
    "MarketplaceActions",
    "NotOrganizationOwnerError",
    "ValidationError",
]
