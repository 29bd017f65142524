# Canonical Schemas for the Carbon Claims Marketplace Client
# These define what the client believes the ledger is telling it.

from .claim import ClaimRecord, ClaimStatus, VoteDecision
from .organization import OrganizationRecord, LendRequestRecord
from .events import (
    CallArgument,
    EntryFunction,
    EventName,
    LedgerEvent,
    MoveCall,
    SignedTransaction,
    TransactionResult,
)
from .sync import (
    ClaimEntry,
    EMPTY_STATE,
    ErrorInfo,
    ErrorKind,
    ResolvedWindow,
    SyncSource,
    SyncState,
)

__all__ = [
    # Claim
    "ClaimRecord",
    "ClaimStatus",
    "VoteDecision",
    # Organization
    "OrganizationRecord",
    "LendRequestRecord",
    # Wire
    "CallArgument",
    "EntryFunction",
    "EventName",
    "LedgerEvent",
    "MoveCall",
    "SignedTransaction",
    "TransactionResult",
    # Sync
    "ClaimEntry",
    "EMPTY_STATE",
    "ErrorInfo",
    "ErrorKind",
    "ResolvedWindow",
    "SyncSource",
    "SyncState",
]
