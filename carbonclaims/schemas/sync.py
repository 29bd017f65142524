"""
Sync State Schema

The canonical claim list a view renders from.

A SyncState is never patched. Each decode pass builds a new one and the
coordinator swaps it in with a single assignment.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .claim import ClaimRecord


class SyncSource(str, Enum):
    """Which acquisition path produced a state."""
    PASSIVE = "passive"   # object query / subscription
    ACTIVE = "active"     # get_all_claims invocation + event


class ErrorKind(str, Enum):
    DECODE = "decode"
    EVENT_MISSING = "event_missing"
    LEDGER_DISPATCH = "ledger_dispatch"
    LEDGER_ABORT = "ledger_abort"
    SYNC_AMBIGUOUS_EMPTY = "sync_ambiguous_empty"


@dataclass(frozen=True)
class ErrorInfo:
    """Human-readable error attached to a published state."""
    kind: ErrorKind
    message: str


@dataclass(frozen=True)
class ResolvedWindow:
    """
    Absolute voting window in epoch milliseconds.

    Derived, never persisted. An invalid window is never active.
    """
    start_ms: float
    end_ms: float
    valid: bool = True

    @classmethod
    def invalid(cls) -> "ResolvedWindow":
        return cls(start_ms=0, end_ms=0, valid=False)

    def contains(self, now_ms: float) -> bool:
        return self.valid and now_ms <= self.end_ms


@dataclass(frozen=True)
class ClaimEntry:
    """A decoded record paired with the window resolved in the same pass."""
    record: ClaimRecord
    window: ResolvedWindow


@dataclass(frozen=True)
class SyncState:
    """
    Immutable snapshot of the canonical claim list.

    version increases by one on every publish, whichever path produced it.
    """
    entries: tuple[ClaimEntry, ...] = ()
    last_source: Optional[SyncSource] = None
    error: Optional[ErrorInfo] = None
    diagnostics: tuple[str, ...] = ()
    version: int = 0

    @property
    def records(self) -> tuple[ClaimRecord, ...]:
        return tuple(entry.record for entry in self.entries)

    @property
    def is_empty(self) -> bool:
        return not self.entries

    def get(self, claim_id: str) -> Optional[ClaimEntry]:
        return next((e for e in self.entries if e.record.claim_id == claim_id), None)


EMPTY_STATE = SyncState()
