"""
In-Memory Ledger

A deterministic stand-in for a deployed carbon_marketplace package.
Used for development (ENABLE_AUTO_SEED=1) and tests.

It behaves like the real thing where the client can observe it:
- transactions must carry a valid Ed25519 signature from the sender
- aborts come back as MoveAbort(..., code) failure messages
- events are emitted with <package>::carbon_marketplace::<Name> types
- objects are served in the object-query envelope, u64 values as strings
- every mutation bumps the version of the object it touched

Time comes from an injectable clock (epoch milliseconds) so voting
windows can be exercised without sleeping.
"""

import asyncio
import uuid
from typing import Any, Callable, Optional

from ..config import MarketplaceConfig
from ..observability import get_logger
from ..schemas import (
    EntryFunction,
    EventName,
    LedgerEvent,
    MoveCall,
    SignedTransaction,
    TransactionResult,
)
from ..schemas.events import MODULE_NAME
from .hasher import Hasher
from .ledger_client import LedgerClient, LedgerDispatchError
from .timewindow import now_ms, resolve_window
from .wallet import Wallet

logger = get_logger(__name__)

STATUS_PENDING = 0
STATUS_APPROVED = 1
STATUS_REJECTED = 2

ABORT_NOT_FOUND = 0
ABORT_VOTING_CLOSED = 1
ABORT_ALREADY_VOTED = 2
ABORT_ALREADY_REGISTERED = 3
ABORT_NOT_OWNER = 4
ABORT_INVALID_ARGUMENT = 5


class ManualClock:
    """A clock that only moves when told to."""

    def __init__(self, start_ms: int):
        self._now_ms = start_ms

    def __call__(self) -> int:
        return self._now_ms

    def advance(self, ms: int) -> None:
        self._now_ms += ms

    def set(self, ms: int) -> None:
        self._now_ms = ms


class _Abort(Exception):
    def __init__(self, code: int):
        self.code = code
        super().__init__(code)


def _new_object_id() -> str:
    return "0x" + uuid.uuid4().hex + uuid.uuid4().hex


class InMemoryLedgerClient(LedgerClient):
    """
    Simulated marketplace package.

    Test hooks:
        fail_next_dispatch: message of a transport failure to raise once
        confirmation_delay: seconds wait_for_transaction sleeps first
        claims_event_name: which name get_all_claims emits under
        emit_events: set False to simulate a package that emits nothing
    """

    def __init__(
        self,
        config: Optional[MarketplaceConfig] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self._config = config or MarketplaceConfig()
        self._clock = clock or now_ms

        self._claims: dict[str, dict[str, Any]] = {}
        self._voters: dict[str, set[str]] = {}
        self._organisations: dict[str, dict[str, Any]] = {}
        self._lend_requests: dict[str, dict[str, Any]] = {}
        self._versions: dict[str, int] = {
            self._config.claim_handler_id: 1,
            self._config.organization_handler_id: 1,
            self._config.lend_request_handler_id: 1,
        }
        self._results: dict[str, TransactionResult] = {}
        self._sequence = 0

        self.fail_next_dispatch: Optional[str] = None
        self.confirmation_delay: float = 0.0
        self.claims_event_name: EventName = EventName.ALL_CLAIMS
        self.emit_events: bool = True
        self.dispatch_count = 0

        self._handlers: dict[str, Callable[[str, tuple], list[LedgerEvent]]] = {
            EntryFunction.CREATE_CLAIM.value: self._create_claim,
            EntryFunction.VOTE_ON_A_CLAIM.value: self._vote_on_a_claim,
            EntryFunction.GET_ALL_CLAIMS.value: self._get_all_claims,
            EntryFunction.REGISTER_ORGANISATION.value: self._register_organisation,
            EntryFunction.GET_MY_ORGANISATION_DETAILS.value: self._get_my_organisation_details,
            EntryFunction.GET_ORGANISATION_DETAILS.value: self._get_organisation_details,
            EntryFunction.GET_ALL_ORGANISATION_IDS.value: self._get_all_organisation_ids,
            EntryFunction.UPDATE_ORGANISATION_NAME.value: self._update_organisation_name,
            EntryFunction.ADD_ORGANISATION_EMISSION.value: self._add_organisation_emission,
            EntryFunction.CREATE_LEND_REQUEST.value: self._create_lend_request,
        }

    @property
    def config(self) -> MarketplaceConfig:
        return self._config

    def now_ms(self) -> int:
        return self._clock()

    # ------------------------------------------------------------
    # LedgerClient
    # ------------------------------------------------------------

    async def get_object(self, object_id: str) -> dict[str, Any]:
        await asyncio.sleep(0)
        if object_id == self._config.claim_handler_id:
            fields = {
                "id": {"id": object_id},
                "claims": self._vec_map(
                    "Claim", ((cid, self._claim_fields(c)) for cid, c in self._claims.items())
                ),
            }
            type_name = "ClaimHandler"
        elif object_id == self._config.organization_handler_id:
            fields = {
                "id": {"id": object_id},
                "organisations": self._vec_map(
                    "Organisation",
                    ((oid, self._organisation_fields(o)) for oid, o in self._organisations.items()),
                ),
            }
            type_name = "OrganisationHandler"
        elif object_id == self._config.lend_request_handler_id:
            fields = {
                "id": {"id": object_id},
                "lend_requests": self._vec_map(
                    "LendRequest",
                    ((rid, _stringify(r)) for rid, r in self._lend_requests.items()),
                ),
            }
            type_name = "LendRequestHandler"
        else:
            raise LedgerDispatchError(f"Object {object_id} does not exist")

        return {
            "data": {
                "objectId": object_id,
                "version": str(self._versions[object_id]),
                "content": {
                    "dataType": "moveObject",
                    "type": f"{self._config.module_path}::{type_name}",
                    "hasPublicTransfer": False,
                    "fields": fields,
                },
            }
        }

    async def sign_and_execute(self, transaction: SignedTransaction) -> str:
        await asyncio.sleep(0)
        self.dispatch_count += 1

        if self.fail_next_dispatch is not None:
            message, self.fail_next_dispatch = self.fail_next_dispatch, None
            raise LedgerDispatchError(message)

        if not Wallet.verify_transaction(transaction):
            raise LedgerDispatchError(
                f"Invalid user signature: signature does not verify for sender {transaction.sender}"
            )

        self._sequence += 1
        digest = Hasher.hash_data({"tx": transaction.digest, "seq": self._sequence})
        result = self._execute(digest, transaction.call, transaction.sender)
        self._results[digest] = result

        logger.debug(
            "Executed transaction",
            function=transaction.call.function,
            digest=digest,
            status=result.status,
        )
        return digest

    async def wait_for_transaction(self, digest: str) -> TransactionResult:
        if self.confirmation_delay:
            await asyncio.sleep(self.confirmation_delay)
        else:
            await asyncio.sleep(0)
        result = self._results.get(digest)
        if result is None:
            raise LedgerDispatchError(f"Could not find the referenced transaction [{digest}]")
        return result

    # ------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------

    def _execute(self, digest: str, call: MoveCall, sender: str) -> TransactionResult:
        if call.package_id != self._config.package_id:
            return TransactionResult(
                digest=digest,
                status="failure",
                error=f"Package object does not exist with ID {call.package_id}",
            )
        handler = self._handlers.get(call.function)
        if handler is None:
            return TransactionResult(
                digest=digest,
                status="failure",
                error=f"FunctionNotFound: {call.target}",
            )

        values = tuple(argument.value for argument in call.arguments)
        try:
            events = handler(sender, values)
        except _Abort as abort:
            return TransactionResult(
                digest=digest,
                status="failure",
                error=self._abort_message(call.function, abort.code),
            )
        except (ValueError, TypeError, IndexError) as e:
            return TransactionResult(
                digest=digest,
                status="failure",
                error=f"CommandArgumentError {{ arg_idx: 0, kind: TypeMismatch }}: {e}",
            )

        return TransactionResult(
            digest=digest,
            status="success",
            events=tuple(events) if self.emit_events else (),
        )

    def _abort_message(self, function: str, code: int) -> str:
        return (
            f"MoveAbort(MoveLocation {{ module: ModuleId {{ address: {self._config.package_id}, "
            f"name: Identifier(\"{MODULE_NAME}\") }}, function: 0, instruction: 0, "
            f"function_name: Some(\"{function}\") }}, {code}) in command 0"
        )

    def _event(self, name: EventName, sender: str, payload: dict[str, Any]) -> LedgerEvent:
        return LedgerEvent(
            type=f"{self._config.module_path}::{name.value}",
            parsed_json=payload,
            sender=sender,
        )

    def _bump(self, object_id: str) -> None:
        self._versions[object_id] = self._versions.get(object_id, 0) + 1

    def _expect_handler(self, value: Any, object_id: str) -> None:
        if value != object_id:
            raise _Abort(ABORT_INVALID_ARGUMENT)

    # ------------------------------------------------------------
    # Entry functions
    # ------------------------------------------------------------

    def _create_claim(self, sender: str, args: tuple) -> list[LedgerEvent]:
        handler, _clock, longitude, latitude, credits, _status, ipfs_hash, description, period = args
        self._expect_handler(handler, self._config.claim_handler_id)

        # The package opens every claim for voting; the status argument is ignored.
        claim_id = _new_object_id()
        self._claims[claim_id] = {
            "organisation_wallet_address": sender,
            "longitude": int(longitude),
            "latitude": int(latitude),
            "requested_carbon_credits": int(credits),
            "status": STATUS_PENDING,
            "ipfs_hash": str(ipfs_hash),
            "description": str(description),
            "time_of_issue": self._clock(),
            "voting_period": int(period),
            "yes_votes": 0,
            "no_votes": 0,
            "total_votes": 0,
        }
        self._voters[claim_id] = set()
        self._bump(self._config.claim_handler_id)
        return [self._event(EventName.CLAIM_CREATED, sender, {
            "claim_id": claim_id,
            "organisation_wallet_address": sender,
            "requested_carbon_credits": str(int(credits)),
        })]

    def _vote_on_a_claim(self, sender: str, args: tuple) -> list[LedgerEvent]:
        handler, _clock, claim_id, vote = args
        self._expect_handler(handler, self._config.claim_handler_id)

        claim = self._claims.get(claim_id)
        if claim is None:
            raise _Abort(ABORT_NOT_FOUND)
        if claim["status"] != STATUS_PENDING:
            raise _Abort(ABORT_VOTING_CLOSED)
        window = resolve_window(claim["time_of_issue"], claim["voting_period"])
        if not window.contains(self._clock()):
            raise _Abort(ABORT_VOTING_CLOSED)
        if sender in self._voters[claim_id]:
            raise _Abort(ABORT_ALREADY_VOTED)
        if vote not in (0, 1):
            raise _Abort(ABORT_INVALID_ARGUMENT)

        self._voters[claim_id].add(sender)
        if vote == 1:
            claim["yes_votes"] += 1
        else:
            claim["no_votes"] += 1
        claim["total_votes"] += 1
        self._bump(self._config.claim_handler_id)

        return [self._event(EventName.CLAIM_VOTED, sender, {
            "claim_id": claim_id,
            "voter": sender,
            "vote": str(vote),
            "yes_votes": str(claim["yes_votes"]),
            "no_votes": str(claim["no_votes"]),
        })]

    def _get_all_claims(self, sender: str, args: tuple) -> list[LedgerEvent]:
        org_handler, claim_handler, _clock = args
        self._expect_handler(org_handler, self._config.organization_handler_id)
        self._expect_handler(claim_handler, self._config.claim_handler_id)

        claims = [
            {"claim_id": claim_id, **self._claim_fields(claim)}
            for claim_id, claim in self._claims.items()
        ]
        return [self._event(self.claims_event_name, sender, {"claims": claims})]

    def _register_organisation(self, sender: str, args: tuple) -> list[LedgerEvent]:
        handler, name, description = args
        self._expect_handler(handler, self._config.organization_handler_id)

        if self._organisation_of(sender) is not None:
            raise _Abort(ABORT_ALREADY_REGISTERED)

        org_id = _new_object_id()
        self._organisations[org_id] = _new_organisation(sender, str(name), str(description))
        self._bump(self._config.organization_handler_id)
        return [self._event(EventName.ORGANISATION_CREATED, sender, {
            "organisation_id": org_id,
            "owner": sender,
            "name": str(name),
        })]

    def _get_my_organisation_details(self, sender: str, args: tuple) -> list[LedgerEvent]:
        (handler,) = args
        self._expect_handler(handler, self._config.organization_handler_id)

        org_id = self._organisation_of(sender)
        if org_id is None:
            raise _Abort(ABORT_NOT_FOUND)
        return [self._details_event(sender, org_id)]

    def _get_organisation_details(self, sender: str, args: tuple) -> list[LedgerEvent]:
        handler, org_id = args
        self._expect_handler(handler, self._config.organization_handler_id)

        if org_id not in self._organisations:
            raise _Abort(ABORT_NOT_FOUND)
        return [self._details_event(sender, org_id)]

    def _get_all_organisation_ids(self, sender: str, args: tuple) -> list[LedgerEvent]:
        (handler,) = args
        self._expect_handler(handler, self._config.organization_handler_id)
        return [self._event(EventName.ORGANISATION_IDS, sender, {"ids": list(self._organisations)})]

    def _update_organisation_name(self, sender: str, args: tuple) -> list[LedgerEvent]:
        handler, org_id, name = args
        self._expect_handler(handler, self._config.organization_handler_id)

        org = self._owned_organisation(sender, org_id)
        org["name"] = str(name)
        self._bump(self._config.organization_handler_id)
        return [self._details_event(sender, org_id)]

    def _add_organisation_emission(self, sender: str, args: tuple) -> list[LedgerEvent]:
        handler, org_id, amount = args
        self._expect_handler(handler, self._config.organization_handler_id)

        org = self._owned_organisation(sender, org_id)
        org["emissions"] += int(amount)
        self._bump(self._config.organization_handler_id)
        return [self._details_event(sender, org_id)]

    def _create_lend_request(self, sender: str, args: tuple) -> list[LedgerEvent]:
        org_handler, _clock, lend_handler, lender_org_id, amount, issued_at, duration = args
        self._expect_handler(org_handler, self._config.organization_handler_id)
        self._expect_handler(lend_handler, self._config.lend_request_handler_id)

        if lender_org_id not in self._organisations:
            raise _Abort(ABORT_NOT_FOUND)
        if int(amount) <= 0:
            raise _Abort(ABORT_INVALID_ARGUMENT)

        request_id = _new_object_id()
        self._lend_requests[request_id] = {
            "request_id": request_id,
            "borrower": sender,
            "lender_org_id": lender_org_id,
            "amount": int(amount),
            "issued_at": int(issued_at),
            "duration": int(duration),
        }
        self._bump(self._config.lend_request_handler_id)
        return [self._event(
            EventName.LEND_REQUEST_CREATED, sender, _stringify(self._lend_requests[request_id])
        )]

    # ------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------

    def _organisation_of(self, owner: str) -> Optional[str]:
        return next(
            (oid for oid, org in self._organisations.items() if org["owner"] == owner),
            None,
        )

    def _owned_organisation(self, sender: str, org_id: str) -> dict[str, Any]:
        org = self._organisations.get(org_id)
        if org is None:
            raise _Abort(ABORT_NOT_FOUND)
        if org["owner"] != sender:
            raise _Abort(ABORT_NOT_OWNER)
        return org

    def _details_event(self, sender: str, org_id: str) -> LedgerEvent:
        return self._event(
            EventName.ORGANISATION_DETAILS,
            sender,
            {"organisation_id": org_id, **_stringify(self._organisations[org_id])},
        )

    def _claim_fields(self, claim: dict[str, Any]) -> dict[str, Any]:
        return _stringify(claim)

    def _organisation_fields(self, org: dict[str, Any]) -> dict[str, Any]:
        return _stringify(org)

    def _vec_map(self, value_type: str, items) -> dict[str, Any]:
        module = self._config.module_path
        return {
            "type": f"0x2::vec_map::VecMap<0x2::object::ID, {module}::{value_type}>",
            "fields": {
                "contents": [
                    {
                        "type": f"0x2::vec_map::Entry<0x2::object::ID, {module}::{value_type}>",
                        "fields": {
                            "key": key,
                            "value": {"type": f"{module}::{value_type}", "fields": fields},
                        },
                    }
                    for key, fields in items
                ]
            },
        }

    # ------------------------------------------------------------
    # Seeding and administration
    # ------------------------------------------------------------

    def seed_claim(
        self,
        owner: str,
        issued_at: int,
        voting_period: int,
        requested_credits: int = 100,
        status: int = STATUS_PENDING,
        longitude: int = 0,
        latitude: int = 0,
        description: str = "Reforestation project",
        ipfs_hash: str = "QmSeed",
        yes_votes: int = 0,
        no_votes: int = 0,
        claim_id: Optional[str] = None,
    ) -> str:
        """Insert a claim directly, bypassing create_claim. Returns its id."""
        claim_id = claim_id or _new_object_id()
        self._claims[claim_id] = {
            "organisation_wallet_address": owner,
            "longitude": longitude,
            "latitude": latitude,
            "requested_carbon_credits": requested_credits,
            "status": status,
            "ipfs_hash": ipfs_hash,
            "description": description,
            "time_of_issue": issued_at,
            "voting_period": voting_period,
            "yes_votes": yes_votes,
            "no_votes": no_votes,
            "total_votes": yes_votes + no_votes,
        }
        self._voters[claim_id] = set()
        self._bump(self._config.claim_handler_id)
        return claim_id

    def seed_organisation(
        self,
        owner: str,
        name: str,
        description: str = "No description",
        carbon_credits: int = 0,
        reputation_score: int = 50,
    ) -> str:
        org_id = _new_object_id()
        org = _new_organisation(owner, name, description)
        org["carbon_credits"] = carbon_credits
        org["reputation_score"] = reputation_score
        self._organisations[org_id] = org
        self._bump(self._config.organization_handler_id)
        return org_id

    def finalize_claim(self, claim_id: str) -> int:
        """Close voting on a claim: more yes than no votes approves it."""
        claim = self._claims[claim_id]
        claim["status"] = STATUS_APPROVED if claim["yes_votes"] > claim["no_votes"] else STATUS_REJECTED
        self._bump(self._config.claim_handler_id)
        return claim["status"]

    def clear_claims(self) -> None:
        self._claims.clear()
        self._voters.clear()
        self._bump(self._config.claim_handler_id)

    def seed_demo_data(self) -> None:
        """A handful of organisations and claims in every state."""
        now = self._clock()
        day = 86_400_000
        green = Wallet.generate().address
        forest = Wallet.generate().address

        self.seed_organisation(green, "Green Horizons", "Solar farms in the Sahel", 1200, 85)
        self.seed_organisation(forest, "Forest Keepers", "Mangrove restoration", 300, 55)

        self.seed_claim(green, issued_at=now - day, voting_period=7, requested_credits=250,
                        longitude=13, latitude=12, description="Solar array phase 2")
        self.seed_claim(forest, issued_at=now - 2 * day, voting_period=3, requested_credits=80,
                        longitude=104, latitude=10, description="Mangrove belt, 40 ha",
                        yes_votes=2, no_votes=1)
        self.seed_claim(forest, issued_at=now - 30 * day, voting_period=7, requested_credits=40,
                        status=STATUS_APPROVED, yes_votes=5, no_votes=1,
                        description="Seedling nursery")
        self.seed_claim(green, issued_at=now - 20 * day, voting_period=5, requested_credits=900,
                        status=STATUS_REJECTED, yes_votes=1, no_votes=4,
                        description="Unverified offset bundle")
        logger.info("Seeded demo marketplace data", claims=len(self._claims),
                    organisations=len(self._organisations))


def _new_organisation(owner: str, name: str, description: str) -> dict[str, Any]:
    return {
        "owner": owner,
        "name": name,
        "description": description,
        "wallet_address": owner,
        "carbon_credits": 0,
        "reputation_score": 50,
        "times_lent": 0,
        "total_lent": 0,
        "times_borrowed": 0,
        "total_borrowed": 0,
        "total_returned": 0,
        "times_returned": 0,
        "emissions": 0,
    }


def _stringify(fields: dict[str, Any]) -> dict[str, Any]:
    """u64 values travel as decimal strings."""
    return {
        key: str(value) if isinstance(value, int) and not isinstance(value, bool) else value
        for key, value in fields.items()
    }
