"""
Ledger Client Interface

The collaborator that reads objects from the ledger and dispatches signed
move calls to it. Transport is pluggable: the package ships an in-memory
implementation (memory_ledger.py); a network client implements the same
three coroutines.

This module also owns:
- the move call builders for every marketplace entry function
- the ledger error taxonomy
- abort-code classification of raw failure messages
"""

import re
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Optional

from ..config import MarketplaceConfig
from ..schemas import (
    CallArgument,
    EntryFunction,
    MoveCall,
    SignedTransaction,
    TransactionResult,
)


# ============================================================
# ERRORS
# ============================================================

class LedgerError(Exception):
    """Base exception for anything the ledger (or the road to it) rejects."""
    pass


class LedgerDispatchError(LedgerError):
    """
    Transport, signing, or confirmation timeout failure.

    The message is the underlying failure, verbatim.
    """
    pass


class AbortReason(str, Enum):
    CLAIM_NOT_FOUND = "claim_not_found"
    VOTING_EXPIRED = "voting_expired"
    ALREADY_VOTED = "already_voted"
    UNCLASSIFIED = "unclassified"


ABORT_CODES = {
    0: AbortReason.CLAIM_NOT_FOUND,
    1: AbortReason.VOTING_EXPIRED,
    2: AbortReason.ALREADY_VOTED,
}

ABORT_MESSAGES = {
    AbortReason.CLAIM_NOT_FOUND: "Claim not found or invalid",
    AbortReason.VOTING_EXPIRED: "Voting period has expired for this claim",
    AbortReason.ALREADY_VOTED: "You have already voted on this claim",
}

# MoveAbort(MoveLocation { ... }, 2) in ...
_MOVE_ABORT_CODE = re.compile(r"MoveAbort\(.*,\s*(\d+)\s*\)", re.DOTALL)


class LedgerAbortError(LedgerError):
    """The contract aborted the call. raw_message is kept for unclassified aborts."""

    def __init__(self, raw_message: str, reason: Optional[AbortReason] = None):
        self.raw_message = raw_message
        self.reason = reason or classify_failure(raw_message)
        super().__init__(describe_failure(raw_message, self.reason))


def abort_code(message: str) -> Optional[int]:
    """The numeric abort code embedded in a raw ledger message, if any."""
    match = _MOVE_ABORT_CODE.search(message or "")
    if match is None:
        return None
    return int(match.group(1))


def classify_failure(message: str) -> AbortReason:
    """
    Map a raw failure message to an AbortReason.

    Only a MoveAbort with code 0, 1 or 2 is classified. Everything else,
    including messages that merely contain those digits, is UNCLASSIFIED.
    """
    code = abort_code(message)
    if code is None:
        return AbortReason.UNCLASSIFIED
    return ABORT_CODES.get(code, AbortReason.UNCLASSIFIED)


def describe_failure(message: str, reason: Optional[AbortReason] = None) -> str:
    """Readable text for a failure; the raw message for unclassified ones."""
    reason = reason or classify_failure(message)
    return ABORT_MESSAGES.get(reason, message)


# ============================================================
# CLIENT INTERFACE
# ============================================================

class LedgerClient(ABC):
    """
    Async access to the ledger.

    Implementations raise LedgerDispatchError for transport problems.
    A transaction that reaches the ledger and aborts is not an exception
    here: wait_for_transaction returns a TransactionResult with
    status "failure" and the raw abort message in error.
    """

    @abstractmethod
    async def get_object(self, object_id: str) -> dict[str, Any]:
        """
        Fetch a shared object with its content.

        Returns the object-query envelope:
        {"data": {"objectId", "version", "content": {"dataType", "type", "fields"}}}
        """
        ...

    @abstractmethod
    async def sign_and_execute(self, transaction: SignedTransaction) -> str:
        """Dispatch a signed transaction and return its digest."""
        ...

    @abstractmethod
    async def wait_for_transaction(self, digest: str) -> TransactionResult:
        """Wait until a dispatched transaction is confirmed, with its events."""
        ...

    async def close(self) -> None:
        pass


def object_version(document: Any) -> Optional[str]:
    """Version of an object-query response, used to skip unchanged polls."""
    if not isinstance(document, dict):
        return None
    data = document.get("data")
    if not isinstance(data, dict):
        return None
    version = data.get("version")
    return None if version is None else str(version)


# ============================================================
# MOVE CALL BUILDERS
# ============================================================

U64_LIMIT = 2**64


def _obj(object_id: str) -> CallArgument:
    return CallArgument(kind="object", value=object_id)


def _u64(value: int) -> CallArgument:
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"u64 argument must be an int, got {type(value).__name__}")
    if value < 0 or value >= U64_LIMIT:
        raise ValueError(f"u64 argument out of range: {value}")
    return CallArgument(kind="u64", value=value)


def _string(value: str) -> CallArgument:
    return CallArgument(kind="string", value=value)


def _id(value: str) -> CallArgument:
    return CallArgument(kind="id", value=value)


def _call(config: MarketplaceConfig, function: EntryFunction, *arguments: CallArgument) -> MoveCall:
    return MoveCall(target=f"{config.module_path}::{function.value}", arguments=arguments)


def build_vote_call(config: MarketplaceConfig, claim_id: str, vote: int) -> MoveCall:
    return _call(
        config,
        EntryFunction.VOTE_ON_A_CLAIM,
        _obj(config.claim_handler_id),
        _obj(config.clock_object_id),
        _obj(claim_id),
        _u64(vote),
    )


def build_get_all_claims_call(config: MarketplaceConfig) -> MoveCall:
    return _call(
        config,
        EntryFunction.GET_ALL_CLAIMS,
        _obj(config.organization_handler_id),
        _obj(config.claim_handler_id),
        _obj(config.clock_object_id),
    )


def build_create_claim_call(
    config: MarketplaceConfig,
    longitude: int,
    latitude: int,
    credits: int,
    evidence_ref: str,
    description: str,
    voting_period_seconds: int,
    initial_status: int = 1,
) -> MoveCall:
    """
    Coordinates travel as u64, so negative degrees cannot be encoded.
    Callers validate and round before building.
    """
    return _call(
        config,
        EntryFunction.CREATE_CLAIM,
        _obj(config.claim_handler_id),
        _obj(config.clock_object_id),
        _u64(longitude),
        _u64(latitude),
        _u64(credits),
        _u64(initial_status),
        _string(evidence_ref),
        _string(description),
        _u64(voting_period_seconds),
    )


def build_register_organisation_call(config: MarketplaceConfig, name: str, description: str) -> MoveCall:
    return _call(
        config,
        EntryFunction.REGISTER_ORGANISATION,
        _obj(config.organization_handler_id),
        _string(name),
        _string(description),
    )


def build_my_organisation_details_call(config: MarketplaceConfig) -> MoveCall:
    return _call(
        config,
        EntryFunction.GET_MY_ORGANISATION_DETAILS,
        _obj(config.organization_handler_id),
    )


def build_organisation_details_call(config: MarketplaceConfig, org_id: str) -> MoveCall:
    return _call(
        config,
        EntryFunction.GET_ORGANISATION_DETAILS,
        _obj(config.organization_handler_id),
        _id(org_id),
    )


def build_organisation_ids_call(config: MarketplaceConfig) -> MoveCall:
    return _call(
        config,
        EntryFunction.GET_ALL_ORGANISATION_IDS,
        _obj(config.organization_handler_id),
    )


def build_update_organisation_name_call(config: MarketplaceConfig, org_id: str, name: str) -> MoveCall:
    return _call(
        config,
        EntryFunction.UPDATE_ORGANISATION_NAME,
        _obj(config.organization_handler_id),
        _id(org_id),
        _string(name),
    )


def build_add_emission_call(config: MarketplaceConfig, org_id: str, amount: int) -> MoveCall:
    return _call(
        config,
        EntryFunction.ADD_ORGANISATION_EMISSION,
        _obj(config.organization_handler_id),
        _id(org_id),
        _u64(amount),
    )


def build_create_lend_request_call(
    config: MarketplaceConfig,
    lender_org_id: str,
    amount: int,
    issued_at_seconds: int,
    duration_seconds: int,
) -> MoveCall:
    return _call(
        config,
        EntryFunction.CREATE_LEND_REQUEST,
        _obj(config.organization_handler_id),
        _obj(config.clock_object_id),
        _obj(config.lend_request_handler_id),
        _id(lender_org_id),
        _u64(amount),
        _u64(issued_at_seconds),
        _u64(duration_seconds),
    )
