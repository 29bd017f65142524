"""
API Routes for the Carbon Claims Marketplace

Command endpoints (POST only, no PATCH, no PUT, no DELETE):
- POST /api/claims                          - File a claim
- POST /api/claims/refresh                  - Re-read the claim list
- POST /api/claims/{id}/vote                - Vote yes/no on a claim
- POST /api/organizations                   - Register the session's organisation
- POST /api/organizations/{id}/name         - Rename an organisation (owner only)
- POST /api/organizations/{id}/emissions    - Report emissions (owner only)
- POST /api/lend-requests                   - Ask an organisation to lend credits

Query endpoints:
- GET /api/claims                           - Canonical claim list with vote eligibility
- GET /api/organizations                    - Organisation directory
- GET /api/organizations/mine               - The session wallet's organisation

Every transaction is signed by the session wallet. X-Actor-Address only
changes whose perspective claim eligibility is computed from.
"""

from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Query, Request, status
from pydantic import BaseModel, Field, model_validator

from ..core.actions import (
    ActionResult,
    MarketplaceActions,
    NotOrganizationOwnerError,
    ValidationError,
)
from ..core.guard import Actor
from ..core.ledger_client import LedgerError
from ..core.sync import ClaimSyncCoordinator, ClaimView
from ..core.tally import LOCAL_REJECTIONS, VoteOutcome, VoteTallyEngine
from ..core.timewindow import TimeResolutionError, voting_period_seconds_until
from ..observability import ACTOR_HEADER
from ..schemas import OrganizationRecord, SyncSource, SyncState, VoteDecision


router = APIRouter(prefix="/api")


# ============================================================
# Dependencies
# ============================================================

def get_coordinator(request: Request) -> ClaimSyncCoordinator:
    return request.app.state.coordinator


def get_engine(request: Request) -> VoteTallyEngine:
    return request.app.state.engine


def get_actions(request: Request) -> MarketplaceActions:
    return request.app.state.actions


def get_viewer(request: Request) -> Actor:
    """Whose eligibility to show: X-Actor-Address, else the session wallet."""
    address = request.headers.get(ACTOR_HEADER)
    if address:
        return Actor.wallet(address)
    return Actor.wallet(request.app.state.wallet.address)


def ledger_failure(e: LedgerError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))


# ============================================================
# Request/Response Models
# ============================================================

class ErrorResponse(BaseModel):
    kind: str
    message: str


class ClaimViewResponse(BaseModel):
    """One claim as a view renders it."""
    claim_id: str
    owner_address: str
    longitude: float
    latitude: float
    requested_credits: int
    status: str
    evidence_ref: str
    description: str
    yes_votes: int
    no_votes: int
    total_votes: int
    window_valid: bool
    voting_ends_at: Optional[datetime] = None
    is_active: bool
    can_vote: bool
    vote_blocked_reason: Optional[str] = None

    @classmethod
    def from_view(cls, view: ClaimView) -> "ClaimViewResponse":
        record = view.record
        return cls(
            claim_id=record.claim_id,
            owner_address=record.owner_address,
            longitude=record.longitude,
            latitude=record.latitude,
            requested_credits=record.requested_credits,
            status=record.status.value,
            evidence_ref=record.evidence_ref,
            description=record.description,
            yes_votes=record.yes_votes,
            no_votes=record.no_votes,
            total_votes=record.total_votes,
            window_valid=view.window.valid,
            voting_ends_at=view.voting_ends_at,
            is_active=view.is_active,
            can_vote=view.can_vote,
            vote_blocked_reason=None if view.can_vote else view.eligibility.message,
        )


class ClaimListResponse(BaseModel):
    version: int
    last_source: Optional[str] = None
    error: Optional[ErrorResponse] = None
    diagnostics: list[str] = Field(default_factory=list)
    claims: list[ClaimViewResponse]


class CreateClaimRequest(BaseModel):
    """
    Give either voting_period_seconds or voting_ends_at (timezone-aware).
    """
    longitude: float
    latitude: float
    credits: float
    evidence_ref: str = Field(..., min_length=1, description="IPFS hash of the evidence")
    description: str = Field(..., min_length=1)
    voting_period_seconds: Optional[int] = Field(default=None, gt=0)
    voting_ends_at: Optional[datetime] = None

    @model_validator(mode="after")
    def one_voting_bound(self) -> "CreateClaimRequest":
        if (self.voting_period_seconds is None) == (self.voting_ends_at is None):
            raise ValueError("Give exactly one of voting_period_seconds or voting_ends_at")
        return self


class VoteRequest(BaseModel):
    decision: VoteDecision


class VoteResponse(BaseModel):
    success: bool
    category: str
    message: str
    claim_id: str
    decision: str
    digest: Optional[str] = None
    confirmed: bool = True
    resync_error: Optional[ErrorResponse] = None

    @classmethod
    def from_outcome(cls, outcome: VoteOutcome) -> "VoteResponse":
        return cls(
            success=outcome.success,
            confirmed=outcome.confirmed,
            category=outcome.category.value,
            message=outcome.message,
            claim_id=outcome.claim_id,
            decision=outcome.decision.value,
            digest=outcome.digest,
            resync_error=_error(outcome.resync_error),
        )


class RegisterOrganizationRequest(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)


class RenameOrganizationRequest(BaseModel):
    name: str = Field(..., min_length=1)


class AddEmissionsRequest(BaseModel):
    amount: int = Field(..., gt=0)


class LendRequestRequest(BaseModel):
    lender_org_id: str = Field(..., min_length=1)
    amount: int = Field(..., gt=0)
    duration_seconds: int = Field(default=604_800, gt=0)


class ActionResponse(BaseModel):
    success: bool
    message: str
    digest: Optional[str] = None
    confirmed: bool = True
    registered: Optional[bool] = None
    data: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_result(cls, result: ActionResult) -> "ActionResponse":
        return cls(
            success=result.success,
            message=result.message,
            digest=result.digest,
            confirmed=result.confirmed,
            registered=result.registered,
            data=result.data,
        )


class OrganizationResponse(BaseModel):
    org_id: str
    owner_address: str
    name: str
    description: str
    wallet_address: str
    carbon_credits: int
    reputation_score: int
    reputation_tier: str
    emissions: int
    times_lent: int
    total_lent: int
    times_borrowed: int
    total_borrowed: int
    total_returned: int
    times_returned: int

    @classmethod
    def from_record(cls, record: OrganizationRecord) -> "OrganizationResponse":
        return cls(**record.model_dump(), reputation_tier=record.reputation_tier)


class OrganizationListResponse(BaseModel):
    organizations: list[OrganizationResponse]
    diagnostics: list[str] = Field(default_factory=list)


def _error(info) -> Optional[ErrorResponse]:
    if info is None:
        return None
    return ErrorResponse(kind=info.kind.value, message=info.message)


def _claim_list(state: SyncState, views: list[ClaimView]) -> ClaimListResponse:
    return ClaimListResponse(
        version=state.version,
        last_source=state.last_source.value if state.last_source else None,
        error=_error(state.error),
        diagnostics=list(state.diagnostics),
        claims=[ClaimViewResponse.from_view(view) for view in views],
    )


# ============================================================
# Claims
# ============================================================

@router.get("/claims", response_model=ClaimListResponse, tags=["Claims"])
async def list_claims(request: Request):
    """
    The canonical claim list as last published.

    Does not hit the ledger. Use POST /api/claims/refresh to re-read.
    """
    coordinator = get_coordinator(request)
    return _claim_list(coordinator.state, coordinator.views(get_viewer(request)))


@router.post("/claims/refresh", response_model=ClaimListResponse, tags=["Claims"])
async def refresh_claims(
    request: Request,
    source: SyncSource = Query(default=SyncSource.ACTIVE),
):
    """
    Re-read claims from the ledger.

    Ledger problems are reported in the error field, not as an HTTP
    error: the previous claims are still served.
    """
    coordinator = get_coordinator(request)
    if source is SyncSource.ACTIVE:
        await coordinator.refresh_active()
    else:
        await coordinator.refresh_passive()
    return _claim_list(coordinator.state, coordinator.views(get_viewer(request)))


@router.post(
    "/claims",
    response_model=ActionResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Claims"],
)
async def create_claim(request: Request, body: CreateClaimRequest):
    """File a claim for carbon credits, signed by the session wallet."""
    try:
        period = body.voting_period_seconds
        if period is None:
            period = voting_period_seconds_until(body.voting_ends_at)
        result = await get_actions(request).create_claim(
            longitude=body.longitude,
            latitude=body.latitude,
            credits=body.credits,
            evidence_ref=body.evidence_ref,
            description=body.description,
            voting_period_seconds=period,
        )
    except (ValidationError, TimeResolutionError) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except LedgerError as e:
        raise ledger_failure(e)
    return ActionResponse.from_result(result)


@router.post("/claims/{claim_id}/vote", response_model=VoteResponse, tags=["Claims"])
async def vote_on_claim(request: Request, claim_id: str, body: VoteRequest):
    """
    Vote on a claim from the current list.

    409: rejected locally (not eligible, or a vote is already in flight)
    502: the ledger refused or could not be reached
    """
    entry = get_coordinator(request).state.get(claim_id)
    if entry is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Claim not found")

    outcome = await get_engine(request).submit_vote(entry.record, body.decision)
    if outcome.success:
        return VoteResponse.from_outcome(outcome)

    detail = {"category": outcome.category.value, "message": outcome.message}
    if outcome.category in LOCAL_REJECTIONS:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=detail)
    raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=detail)


# ============================================================
# Organisations
# ============================================================

@router.get("/organizations", response_model=OrganizationListResponse, tags=["Organizations"])
async def list_organizations(request: Request):
    try:
        result = await get_actions(request).list_organizations()
    except LedgerError as e:
        raise ledger_failure(e)
    return OrganizationListResponse(
        organizations=[OrganizationResponse.from_record(r) for r in result.records],
        diagnostics=list(result.diagnostics),
    )


@router.get("/organizations/mine", response_model=OrganizationResponse, tags=["Organizations"])
async def my_organization(request: Request):
    try:
        organization = await get_actions(request).my_organization()
    except LedgerError as e:
        raise ledger_failure(e)
    if organization is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Organization details not found")
    return OrganizationResponse.from_record(organization)


@router.post(
    "/organizations",
    response_model=ActionResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Organizations"],
)
async def register_organization(request: Request, body: RegisterOrganizationRequest):
    try:
        result = await get_actions(request).register_organization(body.name, body.description)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except LedgerError as e:
        raise ledger_failure(e)
    return ActionResponse.from_result(result)


async def _owned_organization(actions: MarketplaceActions, org_id: str) -> OrganizationRecord:
    try:
        organization = await actions.organization_details(org_id)
    except LedgerError as e:
        raise ledger_failure(e)
    if organization is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Organization not found")
    return organization


@router.post("/organizations/{org_id}/name", response_model=ActionResponse, tags=["Organizations"])
async def rename_organization(request: Request, org_id: str, body: RenameOrganizationRequest):
    actions = get_actions(request)
    organization = await _owned_organization(actions, org_id)
    try:
        result = await actions.update_organization_name(organization, body.name)
    except NotOrganizationOwnerError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except LedgerError as e:
        raise ledger_failure(e)
    return ActionResponse.from_result(result)


@router.post("/organizations/{org_id}/emissions", response_model=ActionResponse, tags=["Organizations"])
async def add_emissions(request: Request, org_id: str, body: AddEmissionsRequest):
    actions = get_actions(request)
    organization = await _owned_organization(actions, org_id)
    try:
        result = await actions.add_emissions(organization, body.amount)
    except NotOrganizationOwnerError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except LedgerError as e:
        raise ledger_failure(e)
    return ActionResponse.from_result(result)


# ============================================================
# Lending
# ============================================================

@router.post(
    "/lend-requests",
    response_model=ActionResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Lending"],
)
async def create_lend_request(request: Request, body: LendRequestRequest):
    try:
        result = await get_actions(request).create_lend_request(
            lender_org_id=body.lender_org_id,
            amount=body.amount,
            duration_seconds=body.duration_seconds,
        )
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except LedgerError as e:
        raise ledger_failure(e)
    return ActionResponse.from_result(result)
