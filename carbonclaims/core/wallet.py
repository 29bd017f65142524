"""
Wallet - Ed25519 Transaction Signing

Every action sent to the ledger is signed by the connected wallet.
The ledger derives the sender address from the public key and rejects
anything whose signature does not verify.

Addresses are "0x" + BLAKE2b-256(flag || public_key), flag 0x00 for Ed25519.
"""

import base64
from typing import Tuple

from nacl.encoding import RawEncoder
from nacl.exceptions import BadSignatureError
from nacl.hash import blake2b
from nacl.signing import SigningKey, VerifyKey

from ..schemas import MoveCall, SignedTransaction
from .hasher import Hasher

ED25519_FLAG = b"\x00"


class Wallet:
    """
    A connected identity that can sign transactions.

    Holds the private key; exposes only the public key and address.
    """

    def __init__(self, private_key_b64: str):
        self._signing_key = SigningKey(base64.b64decode(private_key_b64))
        self._public_key_b64 = base64.b64encode(
            bytes(self._signing_key.verify_key)
        ).decode("utf-8")
        self._address = self.derive_address(self._public_key_b64)

    @classmethod
    def generate(cls) -> "Wallet":
        private_key, _ = cls.generate_keypair()
        return cls(private_key)

    @staticmethod
    def generate_keypair() -> Tuple[str, str]:
        """
        Generate a new Ed25519 keypair.

        Returns:
            Tuple of (private_key_b64, public_key_b64)
        """
        signing_key = SigningKey.generate()
        private_b64 = base64.b64encode(bytes(signing_key)).decode("utf-8")
        public_b64 = base64.b64encode(bytes(signing_key.verify_key)).decode("utf-8")
        return private_b64, public_b64

    @staticmethod
    def derive_address(public_key_b64: str) -> str:
        public_key = base64.b64decode(public_key_b64)
        digest = blake2b(ED25519_FLAG + public_key, digest_size=32, encoder=RawEncoder)
        return "0x" + digest.hex()

    @property
    def address(self) -> str:
        return self._address

    @property
    def public_key(self) -> str:
        return self._public_key_b64

    def sign(self, message: str) -> str:
        """Sign a message and return the base64 signature."""
        signed = self._signing_key.sign(message.encode("utf-8"))
        return base64.b64encode(signed.signature).decode("utf-8")

    def sign_transaction(self, call: MoveCall) -> SignedTransaction:
        """Digest the call for this sender and sign the digest."""
        digest = Hasher.transaction_digest(call, self._address)
        return SignedTransaction(
            call=call,
            sender=self._address,
            public_key=self._public_key_b64,
            signature=self.sign(digest),
            digest=digest,
        )

    @staticmethod
    def verify(message: str, signature_b64: str, public_key_b64: str) -> bool:
        """
        Verify an Ed25519 signature.

        Returns False on any malformed input rather than raising.
        """
        try:
            verify_key = VerifyKey(base64.b64decode(public_key_b64))
            verify_key.verify(message.encode("utf-8"), base64.b64decode(signature_b64))
            return True
        except (BadSignatureError, ValueError, TypeError):
            return False

    @classmethod
    def verify_transaction(cls, tx: SignedTransaction) -> bool:
        """
        Check that a signed transaction is internally consistent:
        the sender matches the public key, the digest matches the call,
        and the signature covers the digest.
        """
        try:
            if cls.derive_address(tx.public_key) != tx.sender:
                return False
        except (ValueError, TypeError):
            return False
        if Hasher.transaction_digest(tx.call, tx.sender) != tx.digest:
            return False
        return cls.verify(tx.digest, tx.signature, tx.public_key)
