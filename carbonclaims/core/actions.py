"""
Marketplace Actions

Everything besides voting that the session wallet can ask the ledger to
do: file claims, register and maintain an organisation, request a loan
of credits, and look organisations up.

Arguments are validated locally first; a ValidationError means nothing
was sent. Expected events are optional: a confirmed transaction without
one still succeeds, with a generic message.
"""

import asyncio
import math
from dataclasses import dataclass, field
from numbers import Real
from typing import Any, Callable, Optional

from ..config import MarketplaceConfig
from ..observability import get_logger
from ..schemas import (
    EventName,
    LedgerEvent,
    LendRequestRecord,
    MoveCall,
    OrganizationRecord,
    TransactionResult,
)
from .decoder import DecodeResult, decode_organization, decode_organizations
from .guard import Actor, can_manage_organization
from .ledger_client import (
    LedgerAbortError,
    LedgerClient,
    LedgerDispatchError,
    U64_LIMIT,
    abort_code,
    build_add_emission_call,
    build_create_claim_call,
    build_create_lend_request_call,
    build_my_organisation_details_call,
    build_organisation_details_call,
    build_organisation_ids_call,
    build_register_organisation_call,
    build_update_organisation_name_call,
)
from .timewindow import MS_PER_SECOND
from .timewindow import now_ms as wall_clock_ms
from .wallet import Wallet

logger = get_logger(__name__)

DEFAULT_LEND_DURATION_SECONDS = 604_800  # one week
INITIAL_CLAIM_STATUS = 1


class ValidationError(Exception):
    """Action arguments rejected before anything was sent."""
    pass


class NotOrganizationOwnerError(Exception):
    """Only the owner address may change an organisation."""
    pass


@dataclass(frozen=True)
class ActionResult:
    """
    Outcome of a confirmed (or at least dispatched) action.

    registered is an optimistic hint for registration only. It says the
    registration went through, not that the organisation is visible yet;
    re-read the ledger before relying on it.
    """
    success: bool
    message: str
    digest: Optional[str] = None
    event: Optional[LedgerEvent] = None
    confirmed: bool = True
    data: dict[str, Any] = field(default_factory=dict)
    registered: Optional[bool] = None


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def _require_number(value: Any, name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, Real) or not math.isfinite(value):
        raise ValidationError(f"{name} must be a finite number")
    return value


def _require_positive_int(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{name} must be a positive whole number")
    if value >= U64_LIMIT:
        raise ValidationError(f"{name} is too large for a u64 ledger argument")
    return value


def _require_text(value: Any, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} is required")
    return value.strip()


class MarketplaceActions:
    """Signs with the session wallet and waits for confirmation."""

    def __init__(
        self,
        client: LedgerClient,
        wallet: Wallet,
        config: Optional[MarketplaceConfig] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self._client = client
        self._wallet = wallet
        self._config = config or MarketplaceConfig()
        self._clock = clock or wall_clock_ms

    @property
    def actor(self) -> Actor:
        return Actor.wallet(self._wallet.address)

    async def _dispatch(self, call: MoveCall) -> tuple[str, Optional[TransactionResult]]:
        """
        Sign, send, and wait.

        Returns (digest, None) when the transaction went out but its
        confirmation did not arrive in time.

        Raises:
            LedgerDispatchError: If the transaction could not be sent
            LedgerAbortError: If the package aborted it
        """
        digest = await self._client.sign_and_execute(self._wallet.sign_transaction(call))
        try:
            result = await asyncio.wait_for(
                self._client.wait_for_transaction(digest),
                timeout=self._config.confirmation_timeout_seconds,
            )
        except (asyncio.TimeoutError, LedgerDispatchError) as e:
            logger.warning(
                "Transaction submitted but confirmation failed",
                function=call.function,
                digest=digest,
                error=str(e) or type(e).__name__,
            )
            return digest, None

        if not result.succeeded:
            raise LedgerAbortError(result.error or "Transaction failed")
        return digest, result

    def _unconfirmed(self, digest: str, **extra: Any) -> ActionResult:
        return ActionResult(
            success=True,
            message="Transaction submitted but confirmation failed",
            digest=digest,
            confirmed=False,
            **extra,
        )

    # ------------------------------------------------------------
    # Claims
    # ------------------------------------------------------------

    async def create_claim(
        self,
        longitude: float,
        latitude: float,
        credits: float,
        evidence_ref: str,
        description: str,
        voting_period_seconds: int,
    ) -> ActionResult:
        """
        File a claim for credits.

        Coordinates and credits are rounded to whole numbers. Every claim
        is sent with initial status 1; the package decides its real status.
        """
        longitude = _require_number(longitude, "Longitude")
        latitude = _require_number(latitude, "Latitude")
        credits = _require_number(credits, "Carbon credits")
        evidence_ref = _require_text(evidence_ref, "Evidence reference")
        description = _require_text(description, "Description")
        voting_period_seconds = _require_positive_int(voting_period_seconds, "Voting period")

        if not -180 <= longitude <= 180:
            raise ValidationError("Longitude must be between -180 and 180")
        if not -90 <= latitude <= 90:
            raise ValidationError("Latitude must be between -90 and 90")
        if credits <= 0:
            raise ValidationError("Carbon credits must be a positive number")

        longitude_u64 = _round_half_up(longitude)
        latitude_u64 = _round_half_up(latitude)
        credits_u64 = _round_half_up(credits)
        if longitude_u64 < 0 or latitude_u64 < 0:
            raise ValidationError(
                "Negative coordinates cannot be encoded as u64 ledger arguments"
            )
        if credits_u64 <= 0:
            raise ValidationError("Carbon credits must round to at least 1")
        if credits_u64 >= U64_LIMIT:
            raise ValidationError("Carbon credits are too large for a u64 ledger argument")

        call = build_create_claim_call(
            self._config,
            longitude=longitude_u64,
            latitude=latitude_u64,
            credits=credits_u64,
            evidence_ref=evidence_ref,
            description=description,
            voting_period_seconds=voting_period_seconds,
            initial_status=INITIAL_CLAIM_STATUS,
        )
        digest, result = await self._dispatch(call)
        if result is None:
            return self._unconfirmed(digest)

        event = result.find_event(EventName.CLAIM_CREATED)
        if event is None:
            return ActionResult(success=True, message="Claim created successfully!", digest=digest)

        claim_id = event.parsed_json.get("claim_id")
        logger.info("Claim created", claim_id=claim_id, digest=digest)
        return ActionResult(
            success=True,
            message=f"Claim created successfully! Claim ID: {claim_id}",
            digest=digest,
            event=event,
            data={"claim_id": claim_id},
        )

    # ------------------------------------------------------------
    # Organisations
    # ------------------------------------------------------------

    async def register_organization(self, name: str, description: str) -> ActionResult:
        name = _require_text(name, "Organization name")
        description = _require_text(description, "Organization description")

        digest, result = await self._dispatch(
            build_register_organisation_call(self._config, name, description)
        )
        if result is None:
            return self._unconfirmed(digest, registered=True)

        event = result.find_event(EventName.ORGANISATION_CREATED)
        if event is None:
            return ActionResult(
                success=True,
                message="Transaction completed - refreshing data...",
                digest=digest,
                registered=True,
            )

        org_id = event.parsed_json.get("organisation_id")
        logger.info("Organisation registered", org_id=org_id, digest=digest)
        return ActionResult(
            success=True,
            message="Organization registered successfully!",
            digest=digest,
            event=event,
            data={"org_id": org_id},
            registered=True,
        )

    def _require_owner(self, organization: OrganizationRecord) -> None:
        if not can_manage_organization(self.actor, organization):
            raise NotOrganizationOwnerError(
                f"Only the owner of organisation {organization.org_id} may change it"
            )

    async def update_organization_name(self, organization: OrganizationRecord, name: str) -> ActionResult:
        name = _require_text(name, "Organization name")
        self._require_owner(organization)

        digest, result = await self._dispatch(
            build_update_organisation_name_call(self._config, organization.org_id, name)
        )
        if result is None:
            return self._unconfirmed(digest)
        return self._details_result(result, digest, "Organization name updated")

    async def add_emissions(self, organization: OrganizationRecord, amount: int) -> ActionResult:
        amount = _require_positive_int(amount, "Emission amount")
        self._require_owner(organization)

        digest, result = await self._dispatch(
            build_add_emission_call(self._config, organization.org_id, amount)
        )
        if result is None:
            return self._unconfirmed(digest)
        return self._details_result(result, digest, "Emissions recorded")

    def _details_result(self, result: TransactionResult, digest: str, message: str) -> ActionResult:
        event = result.find_event(EventName.ORGANISATION_DETAILS)
        organization = decode_organization(event.parsed_json) if event else None
        return ActionResult(
            success=True,
            message=message,
            digest=digest,
            event=event,
            data={"organization": organization.model_dump()} if organization else {},
        )

    async def list_organizations(self) -> DecodeResult[OrganizationRecord]:
        """Passive read of the organisation handler."""
        document = await self._client.get_object(self._config.organization_handler_id)
        return decode_organizations(document)

    async def _details_lookup(self, call: MoveCall) -> Optional[OrganizationRecord]:
        try:
            digest, result = await self._dispatch(call)
        except LedgerAbortError as e:
            if abort_code(e.raw_message) == 0:
                return None
            raise
        if result is None:
            raise LedgerDispatchError(f"Confirmation of {digest} did not arrive")
        event = result.find_event(EventName.ORGANISATION_DETAILS)
        if event is None:
            return None
        return decode_organization(event.parsed_json)

    async def my_organization(self) -> Optional[OrganizationRecord]:
        """The organisation owned by the session wallet, or None."""
        return await self._details_lookup(build_my_organisation_details_call(self._config))

    async def organization_details(self, org_id: str) -> Optional[OrganizationRecord]:
        return await self._details_lookup(build_organisation_details_call(self._config, org_id))

    async def organization_ids(self) -> list[str]:
        digest, result = await self._dispatch(build_organisation_ids_call(self._config))
        if result is None:
            raise LedgerDispatchError(f"Confirmation of {digest} did not arrive")
        event = result.find_event(EventName.ORGANISATION_IDS)
        if event is None:
            return []
        ids = event.parsed_json.get("ids") or []
        return [str(org_id) for org_id in ids]

    async def organization_directory(self) -> list[OrganizationRecord]:
        """
        Details of every organisation, looked up one by one.

        An organisation whose lookup fails is left out; the rest still load.
        """
        directory = []
        for org_id in await self.organization_ids():
            try:
                organization = await self.organization_details(org_id)
            except (LedgerAbortError, LedgerDispatchError) as e:
                logger.warning("Skipping organisation", org_id=org_id, error=str(e))
                continue
            if organization is not None:
                directory.append(organization)
        return directory

    # ------------------------------------------------------------
    # Lending
    # ------------------------------------------------------------

    async def create_lend_request(
        self,
        lender_org_id: str,
        amount: int,
        duration_seconds: int = DEFAULT_LEND_DURATION_SECONDS,
        issued_at_seconds: Optional[int] = None,
    ) -> ActionResult:
        """Ask lender_org_id to lend amount credits for duration_seconds."""
        lender_org_id = _require_text(lender_org_id, "Lender organisation")
        amount = _require_positive_int(amount, "Amount")
        duration_seconds = _require_positive_int(duration_seconds, "Duration")
        if issued_at_seconds is None:
            issued_at_seconds = int(self._clock() // MS_PER_SECOND)
        else:
            issued_at_seconds = _require_positive_int(issued_at_seconds, "Issue time")

        digest, result = await self._dispatch(build_create_lend_request_call(
            self._config,
            lender_org_id=lender_org_id,
            amount=amount,
            issued_at_seconds=issued_at_seconds,
            duration_seconds=duration_seconds,
        ))
        if result is None:
            return self._unconfirmed(digest)

        event = result.find_event(EventName.LEND_REQUEST_CREATED)
        if event is None:
            return ActionResult(success=True, message="Lend request submitted", digest=digest)

        request = _decode_lend_request(event.parsed_json)
        return ActionResult(
            success=True,
            message="Lend request created successfully!",
            digest=digest,
            event=event,
            data={"lend_request": request.model_dump()} if request else {},
        )


def _decode_lend_request(payload: dict[str, Any]) -> Optional[LendRequestRecord]:
    try:
        return LendRequestRecord(
            request_id=str(payload.get("request_id", "")),
            borrower=str(payload.get("borrower", "Unknown")),
            lender_org_id=str(payload.get("lender_org_id", "")),
            amount=int(payload.get("amount", 0)),
            issued_at=int(payload.get("issued_at", 0)),
            duration=int(payload.get("duration", 0)),
        )
    except (TypeError, ValueError) as e:
        logger.warning("Could not decode lend request event", error=str(e))
        return None
