"""
Canonical Claim Schema

A Claim is a request for carbon credits that the community votes on.
The ledger is authoritative; this is the client's typed view of it.
"""

from enum import Enum
from typing import Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ClaimStatus(str, Enum):
    """
    Claims move through exactly one path.
    PENDING -> APPROVED or PENDING -> REJECTED. No reversals.
    """
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"

    @classmethod
    def from_code(cls, code: int) -> "ClaimStatus":
        """
        Map the ledger's numeric status code.

        0 is pending, 1 is approved, anything else is rejected.
        """
        if code == 0:
            return cls.PENDING
        if code == 1:
            return cls.APPROVED
        return cls.REJECTED

    @property
    def is_terminal(self) -> bool:
        return self is not ClaimStatus.PENDING


class VoteDecision(str, Enum):
    """A yes/no vote. Encoded on the wire as 1/0."""
    YES = "yes"
    NO = "no"

    @property
    def wire_value(self) -> int:
        return 1 if self is VoteDecision.YES else 0


class ClaimRecord(BaseModel):
    """
    The atomic unit of the marketplace.

    issued_at and voting_period are kept raw: their units are not tagged
    in the ledger document and are only interpreted by the time window
    resolver.
    """
    model_config = ConfigDict(frozen=True)

    claim_id: str = Field(..., min_length=1, description="Unique claim identifier")
    owner_address: str = Field(
        default="Unknown",
        description="Wallet address of the organisation that filed the claim",
    )
    longitude: float = 0.0
    latitude: float = 0.0
    requested_credits: int = Field(default=0, ge=0)
    status: ClaimStatus = ClaimStatus.PENDING
    evidence_ref: str = Field(default="", description="IPFS hash of the evidence bundle")
    description: str = ""

    issued_at: Union[int, float] = Field(default=0, description="Raw issue timestamp, unit unknown")
    voting_period: Union[int, float] = Field(default=0, description="Raw voting period, unit unknown")

    yes_votes: int = Field(default=0, ge=0)
    no_votes: int = Field(default=0, ge=0)
    total_votes: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def tally_is_consistent(self) -> "ClaimRecord":
        if self.yes_votes + self.no_votes != self.total_votes:
            raise ValueError(
                f"Inconsistent tally for claim {self.claim_id}: "
                f"{self.yes_votes} yes + {self.no_votes} no != {self.total_votes} total"
            )
        return self

    @property
    def is_pending(self) -> bool:
        return self.status is ClaimStatus.PENDING
