"""
Canonical Transaction Hashing

Deterministic serialization and SHA-256 digests for outbound transactions.
Same call, same sender: same digest. The signature covers the digest, so
any drift here invalidates every signature.

CANONICAL SERIALIZATION RULES:
1. Version: "__canon_v" injected into every canonical output
2. Dictionary keys: sorted recursively
3. Nulls: omitted entirely
4. Empty strings, lists, dicts: preserved
5. Enums: string value (not name)
6. Floats: BANNED - move arguments are u64 integers or strings
7. JSON output: no extra whitespace, ASCII only
8. Top-level: must be a dict
"""

import hashlib
import json
from enum import Enum
from typing import Any


class CanonicalSerializationError(Exception):
    """Raised when data cannot be canonically serialized."""
    pass


class Hasher:
    """
    Canonical serialization and hashing.

    If serialization rules change, bump SERIALIZATION_VERSION.
    """

    SERIALIZATION_VERSION = 1

    @classmethod
    def _serialize_value(cls, value: Any, path: str = "") -> Any:
        if value is None:
            return None

        # bool before int: bool is an int subclass
        if isinstance(value, bool):
            return value

        if isinstance(value, int):
            return value

        if isinstance(value, float):
            raise CanonicalSerializationError(
                f"Floats are banned at {path}. "
                "Round to an integer before building the call."
            )

        if isinstance(value, Enum):
            return value.value

        if isinstance(value, str):
            return value

        if isinstance(value, (list, tuple)):
            return [
                cls._serialize_value(v, f"{path}[{i}]")
                for i, v in enumerate(value)
            ]

        if isinstance(value, dict):
            return cls._to_canonical_dict(value, path)

        if hasattr(value, "model_dump"):
            return cls._to_canonical_dict(value.model_dump(mode="python"), path)

        if isinstance(value, set):
            raise CanonicalSerializationError(
                f"Cannot serialize set at {path}. Sets have no stable ordering."
            )

        raise CanonicalSerializationError(
            f"Cannot serialize {type(value).__name__} at {path}. "
            "Only JSON-compatible types are allowed."
        )

    @classmethod
    def _to_canonical_dict(cls, data: dict[str, Any], path: str = "") -> dict[str, Any]:
        result = {}
        for key in sorted(data.keys()):
            if not isinstance(key, str):
                raise CanonicalSerializationError(
                    f"Dictionary keys must be strings at {path}, got {type(key).__name__}"
                )
            serialized = cls._serialize_value(data[key], f"{path}.{key}" if path else key)
            if serialized is not None:
                result[key] = serialized
        return result

    @classmethod
    def canonicalize(cls, data: Any) -> str:
        """
        Convert data to its canonical JSON string.

        Raises:
            CanonicalSerializationError: If data cannot be serialized deterministically
        """
        if hasattr(data, "model_dump"):
            data = data.model_dump(mode="python")

        if not isinstance(data, dict):
            raise CanonicalSerializationError(
                f"Top-level data must be a dict, got {type(data).__name__}"
            )

        canonical = cls._to_canonical_dict(data)
        canonical["__canon_v"] = cls.SERIALIZATION_VERSION

        return json.dumps(
            canonical,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=True,
        )

    @classmethod
    def hash_data(cls, data: Any) -> str:
        """SHA-256 hex digest of the canonical form."""
        return hashlib.sha256(cls.canonicalize(data).encode("utf-8")).hexdigest()

    @classmethod
    def transaction_digest(cls, call: Any, sender: str) -> str:
        """
        Digest of a move call as sent by a given address.

        This is the message the sender's wallet signs.
        """
        return cls.hash_data({"call": call, "sender": sender})
