"""
Wallet Service - Session Key Management

Loads the wallet that signs every transaction this process sends.

KEY SOURCE:
- CARBONCLAIMS_WALLET_PRIVATE_KEY: base64-encoded Ed25519 private key
- Generate with: python tools/manage.py generate-wallet

DEVELOPMENT MODE:
- If the key is not set, an ephemeral wallet is generated (warning logged)
- Its address changes on each restart, so votes and registrations made
  with it cannot be repeated from the same identity later

PRODUCTION (CARBONCLAIMS_PRODUCTION=1):
- The key is mandatory
"""

import binascii
import os
import warnings
from typing import Optional

from nacl.exceptions import CryptoError

from ..observability import get_logger, is_production
from .wallet import Wallet

logger = get_logger(__name__)


class WalletService:
    """
    Process-wide holder of the session wallet.

    Private keys are never logged or exposed; only the address is.
    """

    _instance: Optional["WalletService"] = None
    _initialized: bool = False

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if WalletService._initialized:
            return

        self._wallet: Optional[Wallet] = None
        self._is_ephemeral = False
        self._load_wallet()
        WalletService._initialized = True

    @classmethod
    def reset(cls) -> None:
        """Reset the singleton (for testing only)."""
        cls._instance = None
        cls._initialized = False

    def _load_wallet(self) -> None:
        private_key = os.environ.get("CARBONCLAIMS_WALLET_PRIVATE_KEY", "")

        if private_key:
            try:
                self._wallet = Wallet(private_key)
            except (binascii.Error, ValueError, TypeError, CryptoError) as e:
                raise RuntimeError(
                    "CARBONCLAIMS_WALLET_PRIVATE_KEY is not a valid base64 Ed25519 private key"
                ) from e
            self._is_ephemeral = False
            logger.info("Session wallet loaded from environment", address=self._wallet.address)
            return

        if is_production():
            raise RuntimeError(
                "CARBONCLAIMS_WALLET_PRIVATE_KEY must be set in production. "
                "Generate one with: python tools/manage.py generate-wallet"
            )

        warnings.warn(
            "Session wallet not configured. Generating an ephemeral wallet for development. "
            "Its address changes on each restart - NOT suitable for production!",
            stacklevel=2,
        )
        self._wallet = Wallet.generate()
        self._is_ephemeral = True
        logger.warning("Generated ephemeral session wallet", address=self._wallet.address)

    @property
    def wallet(self) -> Wallet:
        if self._wallet is None:
            raise RuntimeError("Session wallet not initialized")
        return self._wallet

    @property
    def address(self) -> str:
        return self.wallet.address

    @property
    def is_ephemeral(self) -> bool:
        return self._is_ephemeral


def get_wallet_service() -> WalletService:
    """Get the global WalletService instance."""
    return WalletService()
