"""
Identity & Address Validator.

Participant identities are account addresses: 40 hexadecimal characters
with an optional ``0x`` prefix. Comparison is case-insensitive, so every
identity is stored and compared in its canonical form: ``0x`` followed by
lower-case hex.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

from agora.errors import InvalidIdentityError

ADDRESS_PREFIX = "0x"
ADDRESS_HEX_LENGTH = 40

_ADDRESS_RE = re.compile(r"^(?:0[xX])?([0-9a-fA-F]{40})$")


@dataclass(frozen=True)
class IdentityCheck:
    """Result of normalizing a raw identity string."""

    raw: Any
    identity: str | None
    reason: str = ""

    @property
    def is_valid(self) -> bool:
        return self.identity is not None


def normalize_identity(raw: Any) -> IdentityCheck:
    """
    Validate and canonicalize a raw identity.

    Never raises: anything that is not an address string (including
    non-string values) comes back as an invalid check the caller inspects.
    """
    if not isinstance(raw, str):
        return IdentityCheck(raw=raw, identity=None, reason="identity is not a string")

    match = _ADDRESS_RE.match(raw.strip())
    if match is None:
        return IdentityCheck(
            raw=raw,
            identity=None,
            reason=f"expected {ADDRESS_HEX_LENGTH} hex characters with optional {ADDRESS_PREFIX} prefix",
        )
    return IdentityCheck(raw=raw, identity=ADDRESS_PREFIX + match.group(1).lower())


def require_identity(raw: Any) -> str:
    """Normalize ``raw`` or raise InvalidIdentityError."""
    check = normalize_identity(raw)
    if not check.is_valid:
        raise InvalidIdentityError(f"Invalid identity {raw!r}: {check.reason}")
    return check.identity


def same_identity(left: Any, right: Any) -> bool:
    """Case-insensitive identity equality. Invalid values never match."""
    a = normalize_identity(left)
    b = normalize_identity(right)
    return a.is_valid and a.identity == b.identity
