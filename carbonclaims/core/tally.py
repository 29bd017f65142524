"""
Vote Tally Engine

Submits one vote at a time and turns whatever the ledger says into a
VoteOutcome. It never raises for ledger-level problems; every path ends
in an outcome with a category a person can read.

PHASES (one attempt at a time):
    IDLE -> SUBMITTING -> AWAITING_CONFIRMATION -> SETTLED -> IDLE

A second submit while an attempt is open is rejected without touching
the ledger. There is no automatic retry.
"""

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Callable, Optional

from ..config import MarketplaceConfig
from ..observability import get_logger, get_metrics
from ..schemas import (
    ClaimRecord,
    ErrorInfo,
    EventName,
    LedgerEvent,
    VoteDecision,
)
from .guard import Actor, Eligibility, check_vote
from .hasher import CanonicalSerializationError
from .ledger_client import (
    AbortReason,
    LedgerClient,
    LedgerError,
    build_vote_call,
    classify_failure,
    describe_failure,
)
from .timewindow import now_ms as wall_clock_ms
from .timewindow import resolve_record_window
from .wallet import Wallet

if TYPE_CHECKING:
    from .sync import ClaimSyncCoordinator

logger = get_logger(__name__)


class VotePhase(str, Enum):
    IDLE = "idle"
    SUBMITTING = "submitting"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    SETTLED = "settled"


class VoteCategory(str, Enum):
    SUCCESS = "success"
    UNCONFIRMED = "unconfirmed"
    VOTE_IN_FLIGHT = "vote_in_flight"
    ELIGIBILITY_DENIED = "eligibility_denied"
    DISPATCH_FAILED = "dispatch_failed"
    CLAIM_NOT_FOUND = "claim_not_found"
    VOTING_EXPIRED = "voting_expired"
    ALREADY_VOTED = "already_voted"
    UNCLASSIFIED = "unclassified"


_ABORT_CATEGORIES = {
    AbortReason.CLAIM_NOT_FOUND: VoteCategory.CLAIM_NOT_FOUND,
    AbortReason.VOTING_EXPIRED: VoteCategory.VOTING_EXPIRED,
    AbortReason.ALREADY_VOTED: VoteCategory.ALREADY_VOTED,
    AbortReason.UNCLASSIFIED: VoteCategory.UNCLASSIFIED,
}

# Rejected before anything was sent.
LOCAL_REJECTIONS = frozenset({VoteCategory.VOTE_IN_FLIGHT, VoteCategory.ELIGIBILITY_DENIED})


@dataclass(frozen=True)
class VoteOutcome:
    """
    How a vote attempt ended.

    resync_error is set when the vote succeeded but the follow-up refresh
    did not; the vote itself still counts.

    confirmed is False when the vote went out but no confirmation arrived.
    The transaction may still land, so it is reported as a success and a
    retry should wait for the next refresh.
    """
    success: bool
    category: VoteCategory
    message: str
    claim_id: str
    decision: VoteDecision
    digest: Optional[str] = None
    event: Optional[LedgerEvent] = None
    eligibility: Optional[Eligibility] = None
    resync_error: Optional[ErrorInfo] = None
    confirmed: bool = True

    @property
    def dispatched(self) -> bool:
        return self.category not in LOCAL_REJECTIONS


class VoteTallyEngine:
    """
    Owns the single in-flight vote attempt of one session.

    The session wallet signs every vote. When a coordinator is given, a
    successful vote is followed by a full active refresh before the
    attempt settles.
    """

    def __init__(
        self,
        client: LedgerClient,
        wallet: Wallet,
        coordinator: Optional["ClaimSyncCoordinator"] = None,
        config: Optional[MarketplaceConfig] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self._client = client
        self._wallet = wallet
        self._coordinator = coordinator
        self._config = config or MarketplaceConfig()
        self._clock = clock or wall_clock_ms
        self._phase = VotePhase.IDLE

    @property
    def phase(self) -> VotePhase:
        return self._phase

    @property
    def actor(self) -> Actor:
        return Actor.wallet(self._wallet.address)

    async def submit_vote(
        self,
        record: ClaimRecord,
        decision: VoteDecision,
        now_ms: Optional[float] = None,
    ) -> VoteOutcome:
        """
        Cast decision on record.

        The window is resolved again here rather than trusted from a view.
        """
        if self._phase is not VotePhase.IDLE:
            return self._reject(
                record, decision, VoteCategory.VOTE_IN_FLIGHT,
                "A vote is already being submitted",
            )

        now = self._clock() if now_ms is None else now_ms
        eligibility = check_vote(self.actor, record, resolve_record_window(record), now)
        if not eligibility.allowed:
            return self._reject(
                record, decision, VoteCategory.ELIGIBILITY_DENIED,
                eligibility.message, eligibility,
            )

        self._phase = VotePhase.SUBMITTING
        try:
            outcome = await self._run(record, decision)
            self._phase = VotePhase.SETTLED
        finally:
            self._phase = VotePhase.IDLE

        get_metrics().record_vote("success" if outcome.success else "failure")
        logger.info(
            "Vote settled",
            claim_id=record.claim_id,
            decision=decision.value,
            category=outcome.category.value,
            digest=outcome.digest,
        )
        return outcome

    def _reject(
        self,
        record: ClaimRecord,
        decision: VoteDecision,
        category: VoteCategory,
        message: str,
        eligibility: Optional[Eligibility] = None,
    ) -> VoteOutcome:
        get_metrics().record_vote("rejected")
        logger.info(
            "Vote rejected locally",
            claim_id=record.claim_id,
            category=category.value,
        )
        return VoteOutcome(
            success=False,
            category=category,
            message=message,
            claim_id=record.claim_id,
            decision=decision,
            eligibility=eligibility,
        )

    async def _run(self, record: ClaimRecord, decision: VoteDecision) -> VoteOutcome:
        def failed(category: VoteCategory, message: str, digest: Optional[str] = None) -> VoteOutcome:
            return VoteOutcome(
                success=False,
                category=category,
                message=message,
                claim_id=record.claim_id,
                decision=decision,
                digest=digest,
            )

        call = build_vote_call(self._config, record.claim_id, decision.wire_value)
        started = time.perf_counter()
        try:
            transaction = self._wallet.sign_transaction(call)
            digest = await self._client.sign_and_execute(transaction)
        except (LedgerError, CanonicalSerializationError) as e:
            return failed(VoteCategory.DISPATCH_FAILED, str(e))

        self._phase = VotePhase.AWAITING_CONFIRMATION
        try:
            result = await asyncio.wait_for(
                self._client.wait_for_transaction(digest),
                timeout=self._config.confirmation_timeout_seconds,
            )
        except (asyncio.TimeoutError, LedgerError) as e:
            logger.warning(
                "Vote submitted but confirmation failed",
                claim_id=record.claim_id,
                digest=digest,
                error=str(e) or type(e).__name__,
            )
            return VoteOutcome(
                success=True,
                category=VoteCategory.UNCONFIRMED,
                message="Vote submitted but confirmation failed; refresh before voting again",
                claim_id=record.claim_id,
                decision=decision,
                digest=digest,
                confirmed=False,
            )
        finally:
            get_metrics().record_dispatch((time.perf_counter() - started) * 1000)

        if not result.succeeded:
            raw = result.error or "Transaction failed"
            reason = classify_failure(raw)
            return failed(_ABORT_CATEGORIES[reason], describe_failure(raw, reason), digest)

        event = result.find_event(EventName.CLAIM_VOTED)
        if event is None:
            logger.debug("No ClaimVoted event in confirmed vote", digest=digest)

        resync_error = None
        if self._coordinator is not None:
            state = await self._coordinator.refresh_active()
            resync_error = state.error
            if resync_error is not None:
                logger.warning(
                    "Resync after vote did not complete cleanly",
                    claim_id=record.claim_id,
                    error_kind=resync_error.kind.value,
                )

        return VoteOutcome(
            success=True,
            category=VoteCategory.SUCCESS,
            message="Vote submitted successfully",
            claim_id=record.claim_id,
            decision=decision,
            digest=digest,
            event=event,
            resync_error=resync_error,
        )
