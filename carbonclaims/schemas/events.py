"""
Canonical Ledger Wire Schema

What goes out (move calls, signed transactions) and what comes back
(transaction results and the events they emitted).

Events are optional by contract. A caller that finds no matching event
must degrade to a generic success, never fail.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


MODULE_NAME = "carbon_marketplace"


class EventName(str, Enum):
    """
    Events emitted by the marketplace module.
    Matched by suffix: ``<package>::carbon_marketplace::<name>``.
    """
    CLAIM_CREATED = "ClaimCreated"
    CLAIM_VOTED = "ClaimVoted"
    ALL_CLAIMS = "AllClaimsEvent"
    ALL_CLAIMS_LEGACY = "getAllClaimsEvent"
    ORGANISATION_CREATED = "OrganisationCreated"
    ORGANISATION_DETAILS = "OrganisationDetailsEvent"
    ORGANISATION_IDS = "OrganisationIDsEvent"
    LEND_REQUEST_CREATED = "LendRequestCreated"

    @property
    def suffix(self) -> str:
        return f"::{MODULE_NAME}::{self.value}"


class EntryFunction(str, Enum):
    """Entry functions of the marketplace module."""
    CREATE_CLAIM = "create_claim"
    VOTE_ON_A_CLAIM = "vote_on_a_claim"
    GET_ALL_CLAIMS = "get_all_claims"
    REGISTER_ORGANISATION = "register_organisation"
    GET_MY_ORGANISATION_DETAILS = "get_my_organisation_details"
    GET_ORGANISATION_DETAILS = "get_organisation_details"
    GET_ALL_ORGANISATION_IDS = "get_all_organisation_ids"
    UPDATE_ORGANISATION_NAME = "update_organisation_name"
    ADD_ORGANISATION_EMISSION = "add_organisation_emission"
    CREATE_LEND_REQUEST = "create_lend_request"


class CallArgument(BaseModel):
    """
    One argument of a move call.

    kind is "object" for a shared object reference, otherwise the pure
    type tag ("u64", "string", "id").
    """
    model_config = ConfigDict(frozen=True)

    kind: str
    value: Any


class MoveCall(BaseModel):
    """An unsigned invocation of a marketplace entry function."""
    model_config = ConfigDict(frozen=True)

    target: str = Field(..., description="<package>::<module>::<function>")
    arguments: tuple[CallArgument, ...] = ()

    @property
    def function(self) -> str:
        return self.target.rsplit("::", 1)[-1]

    @property
    def package_id(self) -> str:
        return self.target.split("::", 1)[0]


class SignedTransaction(BaseModel):
    """
    A move call plus the sender's Ed25519 signature over its digest.
    """
    model_config = ConfigDict(frozen=True)

    call: MoveCall
    sender: str
    public_key: str = Field(..., description="Base64 Ed25519 public key")
    signature: str = Field(..., description="Base64 Ed25519 signature of the digest")
    digest: str


class LedgerEvent(BaseModel):
    """An event emitted by a confirmed transaction."""
    model_config = ConfigDict(frozen=True)

    type: str
    parsed_json: dict[str, Any] = Field(default_factory=dict)
    sender: Optional[str] = None

    def is_named(self, name: EventName) -> bool:
        return self.type.endswith(name.suffix)


class TransactionResult(BaseModel):
    """
    Confirmation of a dispatched transaction.

    status is "success" or "failure". On failure, error carries the raw
    ledger message (e.g. a MoveAbort string).
    """
    model_config = ConfigDict(frozen=True)

    digest: str
    status: str = "success"
    error: Optional[str] = None
    events: tuple[LedgerEvent, ...] = ()

    @property
    def succeeded(self) -> bool:
        return self.status == "success"

    def find_event(self, *names: EventName) -> Optional[LedgerEvent]:
        """Return the first event matching any of the given names."""
        for event in self.events:
            if any(event.is_named(name) for name in names):
                return event
        return None
