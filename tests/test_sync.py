"""
Tests for the claim sync coordinator.

Covers the empty-read policy, both acquisition paths, and lifecycle:
last completion wins, nothing publishes after close().
"""

import asyncio

from carbonclaims.config import MarketplaceConfig
from carbonclaims.core.guard import Actor, DenialReason
from carbonclaims.core.sync import ClaimSyncCoordinator, SyncAmbiguousEmptyError
from carbonclaims.observability import check_health, get_metrics
from carbonclaims.schemas import ErrorKind, EventName, SyncSource


NOW_MS = 1_700_000_000_000
DAY_MS = 86_400_000


def seed(ledger, owner, count=1, **kwargs):
    return [
        ledger.seed_claim(owner.address, issued_at=NOW_MS, voting_period=7, **kwargs)
        for _ in range(count)
    ]


class TestPassiveRefresh:

    def test_publishes_decoded_claims(self, ledger, config, owner):
        ids = seed(ledger, owner, count=2)
        coordinator = ClaimSyncCoordinator(ledger, config=config)

        state = asyncio.run(coordinator.refresh_passive())

        assert [r.claim_id for r in state.records] == ids
        assert state.version == 1
        assert state.last_source is SyncSource.PASSIVE
        assert state.error is None
        assert all(entry.window.valid for entry in state.entries)

    def test_only_if_changed_skips_same_version(self, ledger, config, owner):
        seed(ledger, owner)
        coordinator = ClaimSyncCoordinator(ledger, config=config)

        async def run():
            await coordinator.refresh_passive(only_if_changed=True)
            await coordinator.refresh_passive(only_if_changed=True)
            seed(ledger, owner)
            return await coordinator.refresh_passive(only_if_changed=True)

        state = asyncio.run(run())
        assert state.version == 2
        assert len(state.records) == 2

    def test_ledger_failure_keeps_prior_claims(self, ledger, owner):
        seed(ledger, owner)
        document = asyncio.run(ledger.get_object(ledger.config.claim_handler_id))
        coordinator = ClaimSyncCoordinator(ledger, config=MarketplaceConfig(claim_handler_id="0xmissing"))
        coordinator.apply_document(document)

        state = asyncio.run(coordinator.refresh_passive())

        assert len(state.records) == 1
        assert state.error.kind is ErrorKind.LEDGER_DISPATCH
        assert "does not exist" in state.error.message
        assert state.version == 2


class TestEmptyReads:

    def test_malformed_document_clears_claims(self, ledger, config, owner):
        seed(ledger, owner)
        coordinator = ClaimSyncCoordinator(ledger, config=config)
        asyncio.run(coordinator.refresh_passive())

        state = coordinator.apply_document("not a document")

        assert state.is_empty
        assert state.error.kind is ErrorKind.DECODE
        assert state.diagnostics

    def test_empty_read_after_claims_is_ambiguous(self, ledger, config, owner):
        seed(ledger, owner, count=3)
        coordinator = ClaimSyncCoordinator(ledger, config=config)
        asyncio.run(coordinator.refresh_passive())
        ledger.clear_claims()

        state = asyncio.run(coordinator.refresh_passive())

        assert len(state.records) == 3
        assert state.error.kind is ErrorKind.SYNC_AMBIGUOUS_EMPTY
        assert state.error.message == SyncAmbiguousEmptyError.message
        assert state.version == 2
        assert get_metrics().ambiguous_empty_reads == 1

    def test_empty_read_from_empty_is_confirmed(self, ledger, config):
        coordinator = ClaimSyncCoordinator(ledger, config=config)

        state = asyncio.run(coordinator.refresh_passive())

        assert state.is_empty
        assert state.error is None
        assert state.version == 1

    def test_good_read_clears_previous_error(self, ledger, config, owner):
        seed(ledger, owner)
        coordinator = ClaimSyncCoordinator(ledger, config=config)
        coordinator.apply_document(None)
        assert coordinator.state.error.kind is ErrorKind.DECODE

        state = asyncio.run(coordinator.refresh_passive())

        assert state.error is None
        assert len(state.records) == 1

    def test_oversized_issue_time_publishes_invalid_window(self, ledger, config, owner):
        claim_id = ledger.seed_claim(owner.address, issued_at=10**400, voting_period=7)
        coordinator = ClaimSyncCoordinator(ledger, config=config)

        state = asyncio.run(coordinator.refresh_passive())

        (entry,) = state.entries
        assert entry.record.claim_id == claim_id
        assert not entry.window.valid
        assert state.error is None

    def test_skipped_entries_are_reported(self, ledger, config):
        coordinator = ClaimSyncCoordinator(ledger, config=config)
        state = coordinator.apply_document({"claims": [
            {"claim_id": "0xa", "yes_votes": "1", "no_votes": "0", "total_votes": "1"},
            {"claim_id": "0xb", "yes_votes": "1", "no_votes": "0", "total_votes": "5"},
        ]})

        assert [r.claim_id for r in state.records] == ["0xa"]
        assert len(state.diagnostics) == 1
        assert state.error is None


class TestActiveRefresh:

    def test_publishes_event_claims(self, ledger, config, owner, voter):
        ids = seed(ledger, owner, count=2)
        coordinator = ClaimSyncCoordinator(ledger, voter, config)

        state = asyncio.run(coordinator.refresh_active())

        assert [r.claim_id for r in state.records] == ids
        assert state.last_source is SyncSource.ACTIVE

    def test_legacy_event_name(self, ledger, config, owner, voter):
        seed(ledger, owner)
        ledger.claims_event_name = EventName.ALL_CLAIMS_LEGACY
        coordinator = ClaimSyncCoordinator(ledger, voter, config)

        state = asyncio.run(coordinator.refresh_active())

        assert len(state.records) == 1

    def test_missing_event_clears_claims(self, ledger, config, owner, voter):
        seed(ledger, owner)
        coordinator = ClaimSyncCoordinator(ledger, voter, config)
        asyncio.run(coordinator.refresh_passive())
        ledger.emit_events = False

        state = asyncio.run(coordinator.refresh_active())

        assert state.is_empty
        assert state.error.kind is ErrorKind.EVENT_MISSING
        assert state.error.message == "No claims data found in transaction events"

    def test_abort_keeps_prior_claims(self, ledger, owner, voter):
        seed(ledger, owner)
        coordinator = ClaimSyncCoordinator(ledger, voter, MarketplaceConfig(package_id="0xgone"))
        asyncio.run(coordinator.refresh_passive())

        state = asyncio.run(coordinator.refresh_active())

        assert len(state.records) == 1
        assert state.error.kind is ErrorKind.LEDGER_ABORT
        assert "0xgone" in state.error.message

    def test_dispatch_failure(self, ledger, config, voter):
        coordinator = ClaimSyncCoordinator(ledger, voter, config)
        ledger.fail_next_dispatch = "Network unreachable"

        state = asyncio.run(coordinator.refresh_active())

        assert state.error.kind is ErrorKind.LEDGER_DISPATCH
        assert state.error.message == "Network unreachable"

    def test_timeout(self, ledger, voter):
        coordinator = ClaimSyncCoordinator(
            ledger, voter, MarketplaceConfig(confirmation_timeout_seconds=0.05)
        )
        ledger.confirmation_delay = 1.0

        state = asyncio.run(coordinator.refresh_active())

        assert state.error.kind is ErrorKind.LEDGER_DISPATCH
        assert state.error.message.startswith("Timed out")

    def test_without_wallet(self, ledger, config):
        coordinator = ClaimSyncCoordinator(ledger, config=config)

        state = asyncio.run(coordinator.refresh_active())

        assert state.error.message == "Wallet not connected"
        assert ledger.dispatch_count == 0


class TestLifecycle:

    def test_last_completion_wins(self, ledger, config, owner, voter):
        (first,) = seed(ledger, owner)
        coordinator = ClaimSyncCoordinator(ledger, voter, config)
        ledger.confirmation_delay = 0.1

        async def run():
            # The active read is executed now but confirms after the passive one.
            active = coordinator.trigger_refresh(SyncSource.ACTIVE)
            await asyncio.sleep(0.02)
            seed(ledger, owner)
            passive = await coordinator.trigger_refresh(SyncSource.PASSIVE)
            await active
            return passive

        passive = asyncio.run(run())

        assert len(passive.records) == 2
        state = coordinator.state
        assert state.version == 2
        assert state.last_source is SyncSource.ACTIVE
        assert [r.claim_id for r in state.records] == [first]

    def test_versions_increase_on_every_publish(self, ledger, config, owner, voter):
        seed(ledger, owner)
        coordinator = ClaimSyncCoordinator(ledger, voter, config)

        async def run():
            versions = []
            for refresh in (coordinator.refresh_passive, coordinator.refresh_active, coordinator.refresh_passive):
                versions.append((await refresh()).version)
            return versions

        assert asyncio.run(run()) == [1, 2, 3]

    def test_close_discards_late_completion(self, ledger, config, owner, voter):
        seed(ledger, owner)
        coordinator = ClaimSyncCoordinator(ledger, voter, config)
        ledger.confirmation_delay = 0.2

        async def run():
            untracked = asyncio.create_task(coordinator.refresh_active())
            tracked = coordinator.trigger_refresh(SyncSource.ACTIVE)
            await asyncio.sleep(0.05)
            await coordinator.close()
            await untracked
            return tracked

        tracked = asyncio.run(run())

        assert tracked.cancelled()
        assert coordinator.closed
        assert coordinator.state.version == 0

    def test_refresh_after_close_is_noop(self, ledger, config, owner, voter):
        seed(ledger, owner)
        coordinator = ClaimSyncCoordinator(ledger, voter, config)

        async def run():
            await coordinator.close()
            await coordinator.close()
            assert coordinator.trigger_refresh() is None
            await coordinator.refresh_passive()
            await coordinator.refresh_active()

        asyncio.run(run())

        assert coordinator.state.version == 0
        assert ledger.dispatch_count == 0
        assert coordinator.apply_document({"claims": []}).version == 0

    def test_start_without_polling(self, ledger, config):
        coordinator = ClaimSyncCoordinator(ledger, config=config)

        async def run():
            coordinator.start()
            polling = coordinator.is_polling
            await coordinator.close()
            return polling

        assert asyncio.run(run()) is False

    def test_poll_loop(self, ledger, owner):
        config = MarketplaceConfig(poll_enabled=True, poll_interval_seconds=0.01)
        coordinator = ClaimSyncCoordinator(ledger, config=config)

        async def run():
            coordinator.start()
            assert coordinator.is_polling
            await asyncio.sleep(0.03)
            seed(ledger, owner)
            await asyncio.sleep(0.05)
            count = len(coordinator.state.records)
            await coordinator.close()
            return count

        assert asyncio.run(run()) == 1
        assert not coordinator.is_polling


class TestViews:

    def test_window_closes_with_time(self, ledger, config, clock, owner, voter):
        claim_id = ledger.seed_claim(owner.address, issued_at=NOW_MS - 2 * DAY_MS, voting_period=3)
        coordinator = ClaimSyncCoordinator(ledger, config=config)
        asyncio.run(coordinator.refresh_passive())
        actor = Actor.wallet(voter.address)

        (view,) = coordinator.views(actor, now_ms=clock())
        assert view.record.claim_id == claim_id
        assert view.is_active
        assert view.can_vote
        assert view.voting_ends_at is not None

        clock.advance(2 * DAY_MS)
        (view,) = coordinator.views(actor, now_ms=clock())
        assert not view.is_active
        assert not view.can_vote
        assert view.eligibility.reason is DenialReason.WINDOW_CLOSED

    def test_owner_sees_own_claim_blocked(self, ledger, config, clock, owner):
        seed(ledger, owner)
        coordinator = ClaimSyncCoordinator(ledger, config=config)
        asyncio.run(coordinator.refresh_passive())

        (view,) = coordinator.views(Actor.wallet(owner.address), now_ms=clock())
        assert view.is_active
        assert view.eligibility.reason is DenialReason.OWN_CLAIM

    def test_invalid_window_view(self, ledger, config, clock, owner, voter):
        ledger.seed_claim(owner.address, issued_at=NOW_MS, voting_period=10**9)
        coordinator = ClaimSyncCoordinator(ledger, config=config)
        asyncio.run(coordinator.refresh_passive())

        (view,) = coordinator.views(Actor.wallet(voter.address), now_ms=clock())
        assert not view.window.valid
        assert not view.is_active
        assert view.voting_ends_at is None


class TestHealth:

    def test_degraded_on_error_unhealthy_when_closed(self, ledger, config):
        coordinator = ClaimSyncCoordinator(ledger, config=config)
        coordinator.apply_document(None)

        health = check_health(coordinator)
        assert health.healthy
        assert health.checks["claim_sync"]["status"] == "degraded"
        assert health.checks["claim_sync"]["error"]["kind"] == "decode"

        asyncio.run(coordinator.close())
        assert not check_health(coordinator).healthy
