"""
Tests for the vote tally engine.

Every path ends in a VoteOutcome; nothing here should raise.
"""

import asyncio

from carbonclaims.config import MarketplaceConfig
from carbonclaims.core.decoder import decode_claims
from carbonclaims.core.guard import DenialReason
from carbonclaims.core.sync import ClaimSyncCoordinator
from carbonclaims.core.tally import VoteCategory, VotePhase, VoteTallyEngine
from carbonclaims.observability import get_metrics
from carbonclaims.schemas import ErrorKind, EventName, VoteDecision


NOW_MS = 1_700_000_000_000
DAY_MS = 86_400_000


def record_of(ledger, claim_id):
    document = asyncio.run(ledger.get_object(ledger.config.claim_handler_id))
    return next(r for r in decode_claims(document).records if r.claim_id == claim_id)


def seed_open_claim(ledger, owner, **kwargs):
    claim_id = ledger.seed_claim(owner.address, issued_at=NOW_MS, voting_period=7, **kwargs)
    return record_of(ledger, claim_id)


class TestSuccessfulVote:

    def test_yes_vote(self, ledger, config, clock, owner, voter):
        record = seed_open_claim(ledger, owner)
        engine = VoteTallyEngine(ledger, voter, config=config, clock=clock)

        outcome = asyncio.run(engine.submit_vote(record, VoteDecision.YES))

        assert outcome.success
        assert outcome.category is VoteCategory.SUCCESS
        assert outcome.message == "Vote submitted successfully"
        assert outcome.digest
        assert outcome.event.is_named(EventName.CLAIM_VOTED)
        assert engine.phase is VotePhase.IDLE
        assert record_of(ledger, record.claim_id).yes_votes == 1

    def test_no_vote_goes_on_the_wire_as_zero(self, ledger, config, clock, owner, voter):
        record = seed_open_claim(ledger, owner)
        engine = VoteTallyEngine(ledger, voter, config=config, clock=clock)

        asyncio.run(engine.submit_vote(record, VoteDecision.NO))

        updated = record_of(ledger, record.claim_id)
        assert (updated.yes_votes, updated.no_votes, updated.total_votes) == (0, 1, 1)

    def test_success_triggers_active_resync(self, ledger, config, clock, owner, voter):
        record = seed_open_claim(ledger, owner)
        coordinator = ClaimSyncCoordinator(ledger, voter, config)
        engine = VoteTallyEngine(ledger, voter, coordinator, config, clock=clock)

        outcome = asyncio.run(engine.submit_vote(record, VoteDecision.YES))

        assert outcome.resync_error is None
        entry = coordinator.state.get(record.claim_id)
        assert entry.record.yes_votes == 1
        assert coordinator.state.last_source.value == "active"

    def test_resync_failure_does_not_fail_the_vote(self, ledger, config, clock, owner, voter):
        record = seed_open_claim(ledger, owner)
        coordinator = ClaimSyncCoordinator(ledger, voter, config)
        engine = VoteTallyEngine(ledger, voter, coordinator, config, clock=clock)
        ledger.emit_events = False

        outcome = asyncio.run(engine.submit_vote(record, VoteDecision.YES))

        assert outcome.success
        assert outcome.event is None
        assert outcome.resync_error.kind is ErrorKind.EVENT_MISSING

    def test_metrics(self, ledger, config, clock, owner, voter):
        record = seed_open_claim(ledger, owner)
        engine = VoteTallyEngine(ledger, voter, config=config, clock=clock)

        asyncio.run(engine.submit_vote(record, VoteDecision.YES))

        metrics = get_metrics()
        assert metrics.votes_submitted == 1
        assert metrics.votes_succeeded == 1
        assert len(metrics.dispatch_latencies_ms) == 1


class TestLocalRejection:
    """Nothing is sent to the ledger."""

    def test_own_claim(self, ledger, config, clock, owner):
        record = seed_open_claim(ledger, owner)
        engine = VoteTallyEngine(ledger, owner, config=config, clock=clock)

        outcome = asyncio.run(engine.submit_vote(record, VoteDecision.YES))

        assert not outcome.success
        assert outcome.category is VoteCategory.ELIGIBILITY_DENIED
        assert outcome.eligibility.reason is DenialReason.OWN_CLAIM
        assert not outcome.dispatched
        assert ledger.dispatch_count == 0
        assert get_metrics().votes_rejected_locally == 1
        assert get_metrics().votes_submitted == 0

    def test_closed_window(self, ledger, config, clock, owner, voter):
        record = seed_open_claim(ledger, owner)
        engine = VoteTallyEngine(ledger, voter, config=config, clock=clock)

        outcome = asyncio.run(engine.submit_vote(record, VoteDecision.YES, now_ms=NOW_MS + 8 * DAY_MS))

        assert outcome.eligibility.reason is DenialReason.WINDOW_CLOSED
        assert ledger.dispatch_count == 0

    def test_invalid_window(self, ledger, config, clock, owner, voter):
        claim_id = ledger.seed_claim(owner.address, issued_at=NOW_MS, voting_period=10**9)
        engine = VoteTallyEngine(ledger, voter, config=config, clock=clock)

        outcome = asyncio.run(engine.submit_vote(record_of(ledger, claim_id), VoteDecision.YES))

        assert outcome.eligibility.reason is DenialReason.WINDOW_INVALID

    def test_second_vote_while_in_flight(self, ledger, config, clock, owner, voter):
        record = seed_open_claim(ledger, owner)
        engine = VoteTallyEngine(ledger, voter, config=config, clock=clock)
        ledger.confirmation_delay = 0.2

        async def run():
            first = asyncio.create_task(engine.submit_vote(record, VoteDecision.YES))
            await asyncio.sleep(0.05)
            assert engine.phase is VotePhase.AWAITING_CONFIRMATION
            second = await engine.submit_vote(record, VoteDecision.NO)
            return await first, second

        first, second = asyncio.run(run())

        assert first.success
        assert second.category is VoteCategory.VOTE_IN_FLIGHT
        assert ledger.dispatch_count == 1
        assert engine.phase is VotePhase.IDLE


class TestLedgerFailures:

    def test_voting_expired_on_ledger(self, ledger, config, clock, owner, voter):
        record = seed_open_claim(ledger, owner)
        engine = VoteTallyEngine(ledger, voter, config=config, clock=lambda: NOW_MS)
        clock.advance(8 * DAY_MS)

        outcome = asyncio.run(engine.submit_vote(record, VoteDecision.YES))

        assert outcome.category is VoteCategory.VOTING_EXPIRED
        assert outcome.message == "Voting period has expired for this claim"
        assert outcome.dispatched

    def test_already_voted(self, ledger, config, clock, owner, voter):
        record = seed_open_claim(ledger, owner)
        engine = VoteTallyEngine(ledger, voter, config=config, clock=clock)

        asyncio.run(engine.submit_vote(record, VoteDecision.YES))
        outcome = asyncio.run(engine.submit_vote(record, VoteDecision.NO))

        assert outcome.category is VoteCategory.ALREADY_VOTED
        assert outcome.message == "You have already voted on this claim"
        assert get_metrics().votes_failed == 1

    def test_claim_not_found(self, ledger, config, clock, owner, voter):
        record = seed_open_claim(ledger, owner)
        ledger.clear_claims()
        engine = VoteTallyEngine(ledger, voter, config=config, clock=clock)

        outcome = asyncio.run(engine.submit_vote(record, VoteDecision.YES))

        assert outcome.category is VoteCategory.CLAIM_NOT_FOUND
        assert outcome.message == "Claim not found or invalid"

    def test_dispatch_failure(self, ledger, config, clock, owner, voter):
        record = seed_open_claim(ledger, owner)
        engine = VoteTallyEngine(ledger, voter, config=config, clock=clock)
        ledger.fail_next_dispatch = "Network unreachable"

        outcome = asyncio.run(engine.submit_vote(record, VoteDecision.YES))

        assert outcome.category is VoteCategory.DISPATCH_FAILED
        assert outcome.message == "Network unreachable"
        assert outcome.digest is None
        assert engine.phase is VotePhase.IDLE

    def test_confirmation_timeout(self, ledger, clock, owner, voter):
        record = seed_open_claim(ledger, owner)
        engine = VoteTallyEngine(
            ledger, voter, config=MarketplaceConfig(confirmation_timeout_seconds=0.05), clock=clock
        )
        ledger.confirmation_delay = 1.0

        outcome = asyncio.run(engine.submit_vote(record, VoteDecision.YES))

        assert outcome.success
        assert not outcome.confirmed
        assert outcome.category is VoteCategory.UNCONFIRMED
        assert outcome.message.startswith("Vote submitted but confirmation failed")
        assert outcome.digest is not None
        assert outcome.resync_error is None
        assert engine.phase is VotePhase.IDLE

    def test_unclassified_abort_keeps_raw_message(self, ledger, config, clock, owner, voter):
        record = seed_open_claim(ledger, owner)
        engine = VoteTallyEngine(
            ledger, voter, config=MarketplaceConfig(package_id="0xgone"), clock=clock
        )

        outcome = asyncio.run(engine.submit_vote(record, VoteDecision.YES))

        assert outcome.category is VoteCategory.UNCLASSIFIED
        assert "0xgone" in outcome.message
