"""
Voting Guard

Pure predicates deciding who may do what. No I/O, no clock reads: the
caller passes the current time in.

A denial is an answer, not an error. Views render it as a disabled
action; the vote engine turns it into a rejected outcome.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..schemas import ClaimRecord, OrganizationRecord, ResolvedWindow


UNKNOWN_ADDRESS = "Unknown"


@dataclass(frozen=True)
class Actor:
    """The party asking. address is None until a wallet is connected."""
    address: Optional[str] = None
    connected: bool = False

    @classmethod
    def anonymous(cls) -> "Actor":
        return cls(address=None, connected=False)

    @classmethod
    def wallet(cls, address: str) -> "Actor":
        return cls(address=address, connected=True)

    @property
    def is_identified(self) -> bool:
        return self.connected and bool(self.address) and self.address != UNKNOWN_ADDRESS


class DenialReason(str, Enum):
    NOT_CONNECTED = "not_connected"
    OWN_CLAIM = "own_claim"
    NOT_PENDING = "not_pending"
    WINDOW_INVALID = "window_invalid"
    WINDOW_CLOSED = "window_closed"


DENIAL_MESSAGES = {
    DenialReason.NOT_CONNECTED: "Connect a wallet to vote",
    DenialReason.OWN_CLAIM: "You cannot vote on your own claim",
    DenialReason.NOT_PENDING: "Voting is closed: the claim is no longer pending",
    DenialReason.WINDOW_INVALID: "Voting window could not be determined",
    DenialReason.WINDOW_CLOSED: "Voting period has ended",
}


@dataclass(frozen=True)
class Eligibility:
    allowed: bool
    reason: Optional[DenialReason] = None

    @property
    def message(self) -> str:
        if self.allowed or self.reason is None:
            return "Eligible to vote"
        return DENIAL_MESSAGES[self.reason]


ELIGIBLE = Eligibility(allowed=True)


def _activity_denial(record: ClaimRecord, window: ResolvedWindow, now_ms: float) -> Optional[DenialReason]:
    if not record.is_pending:
        return DenialReason.NOT_PENDING
    if not window.valid:
        return DenialReason.WINDOW_INVALID
    if now_ms > window.end_ms:
        return DenialReason.WINDOW_CLOSED
    return None


def is_active(record: ClaimRecord, window: ResolvedWindow, now_ms: float) -> bool:
    """Pending and inside a valid window. Invalid windows are never active."""
    return _activity_denial(record, window, now_ms) is None


def check_vote(actor: Actor, record: ClaimRecord, window: ResolvedWindow, now_ms: float) -> Eligibility:
    """
    Decide whether actor may vote on record at now_ms.

    The first failing rule is reported.
    """
    if not actor.is_identified:
        return Eligibility(allowed=False, reason=DenialReason.NOT_CONNECTED)
    if actor.address == record.owner_address:
        return Eligibility(allowed=False, reason=DenialReason.OWN_CLAIM)
    denial = _activity_denial(record, window, now_ms)
    if denial is not None:
        return Eligibility(allowed=False, reason=denial)
    return ELIGIBLE


def can_vote(actor: Actor, record: ClaimRecord, window: ResolvedWindow, now_ms: float) -> bool:
    return check_vote(actor, record, window, now_ms).allowed


def can_manage_organization(actor: Actor, organization: OrganizationRecord) -> bool:
    """Only the owner address may rename an organisation or report its emissions."""
    return actor.is_identified and actor.address == organization.owner_address
