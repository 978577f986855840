"""
Checkpoint Hashing

Deterministic serialization and SHA-256 hashing for committed batches.
Every checkpoint carries hash(previous_hash : canonical(batch)), so the
checkpoint history forms a tamper-evident chain. verify_integrity()
walks it back from genesis.

Same batch → same hash. Always. If this changes, every stored chain
becomes unverifiable, so any change must bump SERIALIZATION_VERSION.

CANONICAL SERIALIZATION RULES:
1. Version: "__canon_v" injected into every canonical output (first key when sorted)
2. Dictionary keys: sorted recursively (Unicode codepoint order)
3. Nulls: omitted entirely
4. Empty strings, lists, dicts: preserved
5. Datetimes: must be tz-aware, forced to UTC, microseconds, Z suffix
6. Enums: string value (not name)
7. Floats, bytes, sets: BANNED
8. JSON output: no whitespace, sorted keys, ASCII only
9. Top-level: must be dict/object
"""

import hashlib
import hmac
import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class CanonicalSerializationError(Exception):
    """Raised when data cannot be canonically serialized."""
    pass


class Hasher:
    """Canonical serialization and chained hashing of batches."""

    SERIALIZATION_VERSION = 1

    @classmethod
    def _serialize_value(cls, value: Any, path: str = "") -> Any:
        if value is None:
            return None

        if isinstance(value, datetime):
            if value.tzinfo is None:
                raise CanonicalSerializationError(
                    f"Datetime at {path} is timezone-naive."
                )
            utc = value.astimezone(timezone.utc)
            return utc.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc.microsecond:06d}Z"

        if isinstance(value, Enum):
            return value.value

        if isinstance(value, (bool, int, str)):
            return value

        if isinstance(value, float):
            raise CanonicalSerializationError(
                f"Cannot serialize float at {path}. Floats are banned in canonical payloads."
            )

        if isinstance(value, (list, tuple)):
            return [cls._serialize_value(v, f"{path}[{i}]") for i, v in enumerate(value)]

        if isinstance(value, dict):
            return cls._to_canonical_dict(value, path)

        if hasattr(value, "model_dump"):
            return cls._to_canonical_dict(value.model_dump(mode="python"), path)

        if isinstance(value, (bytes, bytearray)):
            raise CanonicalSerializationError(
                f"Cannot serialize bytes at {path}. Convert to 0x hex first."
            )

        if isinstance(value, (set, frozenset)):
            raise CanonicalSerializationError(
                f"Cannot serialize set at {path}. Convert to sorted list first."
            )

        raise CanonicalSerializationError(
            f"Cannot serialize {type(value).__name__} at {path}."
        )

    @classmethod
    def _to_canonical_dict(cls, data: dict[str, Any], path: str = "") -> dict[str, Any]:
        result = {}
        for key in sorted(data.keys()):
            if not isinstance(key, str):
                raise CanonicalSerializationError(
                    f"Dictionary key at {path} must be string, got {type(key).__name__}"
                )
            serialized = cls._serialize_value(data[key], f"{path}.{key}" if path else key)
            if serialized is not None:
                result[key] = serialized
        return result

    @classmethod
    def canonicalize(cls, data: dict[str, Any] | Any) -> str:
        """Canonical JSON string with version marker."""
        if hasattr(data, "model_dump"):
            data = data.model_dump(mode="python")

        if not isinstance(data, dict):
            raise CanonicalSerializationError(
                f"Top-level canonicalization requires a dict/object, got {type(data).__name__}."
            )

        canonical_dict = {"__canon_v": cls.SERIALIZATION_VERSION, **cls._to_canonical_dict(data)}
        return json.dumps(
            canonical_dict,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=True,
            allow_nan=False,
        )

    @classmethod
    def hash_data(cls, data: dict[str, Any] | Any) -> str:
        return hashlib.sha256(cls.canonicalize(data).encode("utf-8")).hexdigest()

    @classmethod
    def hash_batch(cls, batch: dict[str, Any], previous_hash: str | None = None) -> str:
        """
        Hash a committed batch with chain linkage.

        FORMAT:
        - First batch: SHA256(canonical_batch)
        - Chained:     SHA256(previous_hash + ":" + canonical_batch)
        """
        canonical = cls.canonicalize(batch)
        if previous_hash is None:
            chain_input = canonical
        else:
            if len(previous_hash) != 64 or any(
                c not in "0123456789abcdef" for c in previous_hash.lower()
            ):
                raise CanonicalSerializationError(
                    f"Invalid previous_hash format: {previous_hash}. Must be 64 hex characters."
                )
            chain_input = f"{previous_hash.lower()}:{canonical}"
        return hashlib.sha256(chain_input.encode("utf-8")).hexdigest()

    @classmethod
    def verify_link(
        cls,
        batch: dict[str, Any],
        expected_hash: str,
        previous_hash: str | None = None,
    ) -> bool:
        """True if batch hashes to expected_hash when chained onto previous_hash."""
        try:
            computed = cls.hash_batch(batch, previous_hash)
        except CanonicalSerializationError:
            return False
        return hmac.compare_digest(computed, expected_hash.lower())
