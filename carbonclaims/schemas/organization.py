"""
Canonical Organization Schema

Who files claims and trades credits?
Only the owner address may change an organization through the ledger.
"""

from pydantic import BaseModel, ConfigDict, Field


class OrganizationRecord(BaseModel):
    """
    An organization registered with the marketplace.

    Lending counters are maintained by the ledger and are read-only here.
    """
    model_config = ConfigDict(frozen=True)

    org_id: str = Field(..., min_length=1)
    owner_address: str = "Unknown"
    name: str = "Unknown"
    description: str = "No description"
    wallet_address: str = "Unknown"

    carbon_credits: int = Field(default=0, ge=0)
    reputation_score: int = Field(default=0, ge=0, le=100)

    times_lent: int = Field(default=0, ge=0)
    total_lent: int = Field(default=0, ge=0)
    times_borrowed: int = Field(default=0, ge=0)
    total_borrowed: int = Field(default=0, ge=0)
    total_returned: int = Field(default=0, ge=0)
    times_returned: int = Field(default=0, ge=0)

    emissions: int = Field(default=0, ge=0)

    @property
    def reputation_tier(self) -> str:
        if self.reputation_score >= 80:
            return "excellent"
        if self.reputation_score >= 50:
            return "good"
        return "needs_improvement"


class LendRequestRecord(BaseModel):
    """Payload of a LendRequestCreated event."""
    model_config = ConfigDict(frozen=True)

    request_id: str = ""
    borrower: str = "Unknown"
    lender_org_id: str = ""
    amount: int = Field(default=0, ge=0)
    issued_at: int = 0
    duration: int = 0
