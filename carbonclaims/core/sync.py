"""
Claim Sync Coordinator

Two ways to learn what claims exist:

    passive  fetch the claim handler object and decode its contents
    active   call get_all_claims, wait for confirmation, decode the
             AllClaimsEvent payload

Both feed one SyncState. Whichever completes last wins. A publish is a
single assignment of a new immutable state; nothing is merged field by
field.

EMPTY READS:
- malformed document / missing claims event -> records cleared, error set
- well-formed zero records, prior state non-empty -> prior records kept,
  SYNC_AMBIGUOUS_EMPTY set
- well-formed zero records, prior state empty -> confirmed empty
- ledger failure -> prior records kept, ledger error set

CONFIGURATION:
- CARBONCLAIMS_POLL_INTERVAL_SECONDS: Seconds between passive refreshes
- CARBONCLAIMS_POLL_ENABLED: Run the passive poll loop

USAGE:
    coordinator = ClaimSyncCoordinator(client, wallet, config)
    coordinator.start()
    await coordinator.refresh_active()
    views = coordinator.views(actor)
    await coordinator.close()
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from ..config import MarketplaceConfig
from ..observability import get_logger, get_metrics
from ..schemas import (
    ClaimEntry,
    ClaimRecord,
    EMPTY_STATE,
    ErrorInfo,
    ErrorKind,
    EventName,
    ResolvedWindow,
    SyncSource,
    SyncState,
)
from .decoder import DecodeResult, decode_claims
from .guard import Actor, Eligibility, check_vote, is_active
from .ledger_client import (
    LedgerClient,
    LedgerError,
    build_get_all_claims_call,
    describe_failure,
    object_version,
)
from .timewindow import now_ms as wall_clock_ms
from .timewindow import resolve_record_window, voting_ends_at
from .wallet import Wallet

logger = get_logger(__name__)


class SyncAmbiguousEmptyError(Exception):
    """
    A well-formed read returned no claims while claims were already known.

    Not raised; its message is what the SYNC_AMBIGUOUS_EMPTY error carries.
    """
    message = (
        "Ledger returned no claims; keeping the previously loaded claims "
        "until a read confirms the change"
    )


@dataclass(frozen=True)
class ClaimView:
    """Everything a view needs to render one claim row."""
    record: ClaimRecord
    window: ResolvedWindow
    is_active: bool
    can_vote: bool
    voting_ends_at: Optional[datetime]
    eligibility: Eligibility


class ClaimSyncCoordinator:
    """
    Owns the canonical claim list for one view or app.

    After close() every refresh is a no-op and late completions are
    discarded.
    """

    def __init__(
        self,
        client: LedgerClient,
        wallet: Optional[Wallet] = None,
        config: Optional[MarketplaceConfig] = None,
    ):
        self._client = client
        self._wallet = wallet
        self._config = config or MarketplaceConfig()

        self._state: SyncState = EMPTY_STATE
        self._closed = False
        self._tasks: set[asyncio.Task] = set()
        self._poll_task: Optional[asyncio.Task] = None
        self._last_seen_version: Optional[str] = None

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def is_polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    # ------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------

    def _publish(
        self,
        source: SyncSource,
        entries: tuple[ClaimEntry, ...],
        error: Optional[ErrorInfo] = None,
        diagnostics: tuple[str, ...] = (),
    ) -> SyncState:
        self._state = SyncState(
            entries=entries,
            last_source=source,
            error=error,
            diagnostics=diagnostics,
            version=self._state.version + 1,
        )
        get_metrics().record_publish(source.value, error.kind.value if error else None)
        logger.debug(
            "Published claim state",
            source=source.value,
            version=self._state.version,
            record_count=len(entries),
            error_kind=error.kind.value if error else None,
        )
        return self._state

    def _publish_decoded(self, source: SyncSource, result: DecodeResult[ClaimRecord]) -> SyncState:
        if result.malformed:
            return self._publish(
                source,
                (),
                ErrorInfo(ErrorKind.DECODE, "; ".join(result.diagnostics) or "Malformed claims document"),
                result.diagnostics,
            )

        if not result.records:
            if not self._state.is_empty:
                logger.warning(
                    "Ambiguous empty read, keeping prior claims",
                    source=source.value,
                    prior_count=len(self._state.entries),
                )
                return self._publish(
                    source,
                    self._state.entries,
                    ErrorInfo(ErrorKind.SYNC_AMBIGUOUS_EMPTY, SyncAmbiguousEmptyError.message),
                    result.diagnostics,
                )
            return self._publish(source, (), None, result.diagnostics)

        entries = tuple(
            ClaimEntry(record=record, window=resolve_record_window(record))
            for record in result.records
        )
        return self._publish(source, entries, None, result.diagnostics)

    def _publish_ledger_failure(self, source: SyncSource, kind: ErrorKind, message: str) -> SyncState:
        logger.warning("Claim refresh failed", source=source.value, error=message)
        return self._publish(source, self._state.entries, ErrorInfo(kind, message))

    # ------------------------------------------------------------
    # Passive path
    # ------------------------------------------------------------

    def apply_document(self, document: Any, source: SyncSource = SyncSource.PASSIVE) -> SyncState:
        """Decode a claim handler document (or claims payload) and publish it."""
        if self._closed:
            return self._state
        return self._publish_decoded(source, decode_claims(document))

    async def refresh_passive(self, only_if_changed: bool = False) -> SyncState:
        """
        Fetch the claim handler object and publish its claims.

        With only_if_changed, an unchanged object version publishes nothing.
        """
        if self._closed:
            return self._state

        try:
            document = await self._client.get_object(self._config.claim_handler_id)
        except LedgerError as e:
            if self._closed:
                return self._state
            return self._publish_ledger_failure(SyncSource.PASSIVE, ErrorKind.LEDGER_DISPATCH, str(e))

        if self._closed:
            return self._state

        version = object_version(document)
        if only_if_changed and version is not None and version == self._last_seen_version:
            return self._state
        self._last_seen_version = version
        return self.apply_document(document, SyncSource.PASSIVE)

    # ------------------------------------------------------------
    # Active path
    # ------------------------------------------------------------

    async def refresh_active(self) -> SyncState:
        """Invoke get_all_claims and publish the claims its event carries."""
        if self._closed:
            return self._state

        if self._wallet is None:
            return self._publish_ledger_failure(
                SyncSource.ACTIVE, ErrorKind.LEDGER_DISPATCH, "Wallet not connected"
            )

        call = build_get_all_claims_call(self._config)
        try:
            digest = await self._client.sign_and_execute(self._wallet.sign_transaction(call))
            result = await asyncio.wait_for(
                self._client.wait_for_transaction(digest),
                timeout=self._config.confirmation_timeout_seconds,
            )
        except asyncio.TimeoutError:
            if self._closed:
                return self._state
            return self._publish_ledger_failure(
                SyncSource.ACTIVE,
                ErrorKind.LEDGER_DISPATCH,
                f"Timed out after {self._config.confirmation_timeout_seconds}s waiting for get_all_claims",
            )
        except LedgerError as e:
            if self._closed:
                return self._state
            return self._publish_ledger_failure(SyncSource.ACTIVE, ErrorKind.LEDGER_DISPATCH, str(e))

        if self._closed:
            return self._state

        if not result.succeeded:
            return self._publish_ledger_failure(
                SyncSource.ACTIVE,
                ErrorKind.LEDGER_ABORT,
                describe_failure(result.error or "Transaction failed"),
            )

        event = result.find_event(EventName.ALL_CLAIMS, EventName.ALL_CLAIMS_LEGACY)
        if event is None:
            logger.warning("No claims event in get_all_claims result", digest=digest)
            return self._publish(
                SyncSource.ACTIVE,
                (),
                ErrorInfo(ErrorKind.EVENT_MISSING, "No claims data found in transaction events"),
            )

        return self._publish_decoded(SyncSource.ACTIVE, decode_claims(event.parsed_json))

    # ------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------

    def _track(self, task: asyncio.Task) -> asyncio.Task:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def trigger_refresh(self, source: SyncSource = SyncSource.ACTIVE) -> Optional[asyncio.Task]:
        """
        Start a refresh in the background.

        Returns the task, or None once closed. Must be called from a
        running event loop.
        """
        if self._closed:
            return None
        if source is SyncSource.ACTIVE:
            return self._track(asyncio.create_task(self.refresh_active()))
        return self._track(asyncio.create_task(self.refresh_passive()))

    def start(self) -> None:
        """Start the passive poll loop. Must be called from a running event loop."""
        if self._closed:
            return
        if not self._config.poll_enabled:
            logger.info("Claim polling disabled (set CARBONCLAIMS_POLL_ENABLED=1 to enable)")
            return
        if self.is_polling:
            logger.warning("Claim polling already running")
            return

        self._poll_task = self._track(asyncio.create_task(self._poll_loop()))
        logger.info(
            "Claim polling started",
            interval_seconds=self._config.poll_interval_seconds,
        )

    async def _poll_loop(self) -> None:
        while not self._closed:
            try:
                await self.refresh_passive(only_if_changed=True)
            except Exception as e:
                logger.exception(f"Error polling claim handler: {e}")
            await asyncio.sleep(self._config.poll_interval_seconds)

    async def close(self) -> None:
        """Cancel outstanding work. Safe to call twice."""
        if self._closed:
            return
        self._closed = True

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._poll_task = None
        logger.info("Claim sync closed", cancelled=len(tasks))

    # ------------------------------------------------------------
    # Views
    # ------------------------------------------------------------

    def views(self, actor: Actor, now_ms: Optional[float] = None) -> list[ClaimView]:
        now = wall_clock_ms() if now_ms is None else now_ms
        result = []
        for entry in self._state.entries:
            eligibility = check_vote(actor, entry.record, entry.window, now)
            result.append(ClaimView(
                record=entry.record,
                window=entry.window,
                is_active=is_active(entry.record, entry.window, now),
                can_vote=eligibility.allowed,
                voting_ends_at=voting_ends_at(entry.window),
                eligibility=eligibility,
            ))
        return result
