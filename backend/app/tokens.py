"""Selection token issuing and hashing.

The raw token only ever leaves this module inside the customer's selection link;
storage and logs see the SHA-256 hex digest.
"""

from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass

TOKEN_BYTES = 32  # 256 bits
HASH_PREFIX_LENGTH = 16


@dataclass(frozen=True, slots=True)
class IssuedToken:
    raw: str
    hash: str

    def __repr__(self) -> str:
        return f"IssuedToken(hash={self.hash[:HASH_PREFIX_LENGTH]}...)"


def hash_token(raw: str) -> str:
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def issue() -> IssuedToken:
    raw = secrets.token_urlsafe(TOKEN_BYTES)
    return IssuedToken(raw=raw, hash=hash_token(raw))


def hash_prefix(token_hash: str, length: int = HASH_PREFIX_LENGTH) -> str:
    return token_hash[:length]


__all__ = ["IssuedToken", "hash_prefix", "hash_token", "issue"]
