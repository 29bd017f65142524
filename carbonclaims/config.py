"""
Marketplace Configuration

Which deployment of the carbon_marketplace package we talk to, and how
patiently.

Environment Variables:
    CARBONCLAIMS_PACKAGE_ID: Published package address
    CARBONCLAIMS_CLAIM_HANDLER_ID: Shared ClaimHandler object
    CARBONCLAIMS_ORGANIZATION_HANDLER_ID: Shared OrganisationHandler object
    CARBONCLAIMS_LEND_REQUEST_HANDLER_ID: Shared LendRequestHandler object
    CARBONCLAIMS_CLOCK_OBJECT_ID: System clock object (default 0x6)
    CARBONCLAIMS_CONFIRMATION_TIMEOUT_SECONDS: Wait for confirmation (default 30)
    CARBONCLAIMS_POLL_INTERVAL_SECONDS: Passive refresh interval (default 10)
    CARBONCLAIMS_POLL_ENABLED: Run the passive poll loop (default false)
    ENABLE_AUTO_SEED: Seed demo claims into the in-memory ledger
"""

import os
from dataclasses import dataclass

from .schemas.events import MODULE_NAME

# Testnet deployment the dApp was published against.
DEFAULT_PACKAGE_ID = "0x0514cb5817179ac60a31c8b552c252928745a35048e189e0a857ea2a8487000a"
DEFAULT_CLAIM_HANDLER_ID = "0x9dfc31fa670a2722a806be47eef3fd02b98db35d8c6910a2ef9a2868793a6225"
DEFAULT_ORGANIZATION_HANDLER_ID = "0x3e93f9c3174505789f34825c4833e59adeb9b3f68adb8bfd53ecdcf0b61b75db"
DEFAULT_LEND_REQUEST_HANDLER_ID = "0x74b52a993916d235e68de2033b67529c9f0ea8c73fc5341ccaa24b37afd95b96"
DEFAULT_CLOCK_OBJECT_ID = "0x6"


def _flag(name: str) -> bool:
    return os.getenv(name, "").lower() in ("1", "true", "yes")


@dataclass(frozen=True)
class MarketplaceConfig:
    """Object ids and timing for one marketplace deployment."""
    package_id: str = DEFAULT_PACKAGE_ID
    claim_handler_id: str = DEFAULT_CLAIM_HANDLER_ID
    organization_handler_id: str = DEFAULT_ORGANIZATION_HANDLER_ID
    lend_request_handler_id: str = DEFAULT_LEND_REQUEST_HANDLER_ID
    clock_object_id: str = DEFAULT_CLOCK_OBJECT_ID

    confirmation_timeout_seconds: float = 30.0
    poll_interval_seconds: float = 10.0
    poll_enabled: bool = False
    auto_seed: bool = False

    @classmethod
    def from_env(cls) -> "MarketplaceConfig":
        """Load configuration from environment variables."""
        config = cls(
            package_id=os.getenv("CARBONCLAIMS_PACKAGE_ID", DEFAULT_PACKAGE_ID),
            claim_handler_id=os.getenv("CARBONCLAIMS_CLAIM_HANDLER_ID", DEFAULT_CLAIM_HANDLER_ID),
            organization_handler_id=os.getenv(
                "CARBONCLAIMS_ORGANIZATION_HANDLER_ID", DEFAULT_ORGANIZATION_HANDLER_ID
            ),
            lend_request_handler_id=os.getenv(
                "CARBONCLAIMS_LEND_REQUEST_HANDLER_ID", DEFAULT_LEND_REQUEST_HANDLER_ID
            ),
            clock_object_id=os.getenv("CARBONCLAIMS_CLOCK_OBJECT_ID", DEFAULT_CLOCK_OBJECT_ID),
            confirmation_timeout_seconds=float(
                os.getenv("CARBONCLAIMS_CONFIRMATION_TIMEOUT_SECONDS", "30")
            ),
            poll_interval_seconds=float(os.getenv("CARBONCLAIMS_POLL_INTERVAL_SECONDS", "10")),
            poll_enabled=_flag("CARBONCLAIMS_POLL_ENABLED"),
            auto_seed=_flag("ENABLE_AUTO_SEED"),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """
        Raises:
            ValueError: If an id is blank or a duration is not positive
        """
        for name in (
            "package_id",
            "claim_handler_id",
            "organization_handler_id",
            "lend_request_handler_id",
            "clock_object_id",
        ):
            if not getattr(self, name).strip():
                raise ValueError(f"{name} must not be empty")
        if self.confirmation_timeout_seconds <= 0:
            raise ValueError("confirmation_timeout_seconds must be positive")
        if self.poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be positive")

    @property
    def module_path(self) -> str:
        """<package>::carbon_marketplace"""
        return f"{self.package_id}::{MODULE_NAME}"
