"""
Rejection Catalog — versioned mapping of ledger revert reasons.

Ledger rejections arrive as free text wrapped in provider noise such as
``execution reverted: Already signed``. The catalog strips the known
wrappers and then matches the bare reason *exactly* against the entries
of one catalog version. Text that no entry matches is unrecognised and
classifies as None; it is never treated as success and never guessed at.

When the ledger contract changes its messages, add a new version rather
than editing an existing one.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from agora.participation.schema import ItemKind, RejectionKind

logger = logging.getLogger(__name__)

_REASON_PATTERNS = [
    re.compile(r"reverted with reason string\s*['\"]([^'\"]*)['\"]", re.IGNORECASE),
    re.compile(r"execution reverted:\s*([^\"\n]*)", re.IGNORECASE),
    re.compile(r"VM Exception while processing transaction:\s*(?:revert\s+)?([^\"\n]*)", re.IGNORECASE),
]


def extract_reason(text: str) -> str:
    """Pull the bare revert reason out of a provider error message."""
    for pattern in _REASON_PATTERNS:
        match = pattern.search(text)
        if match:
            text = match.group(1)
            break
    return text.strip().strip("'\"").strip()


@dataclass(frozen=True)
class RejectionCatalog:
    """One version of the ledger's rejection vocabulary."""

    version: str
    entries: dict[str, RejectionKind] = field(default_factory=dict)

    def classify(self, text: str | None) -> RejectionKind | None:
        """Map raw rejection text to a RejectionKind, or None if unrecognised."""
        if not text:
            return None
        kind = self.entries.get(extract_reason(text))
        if kind is None:
            logger.warning(
                "Unrecognised ledger rejection (catalog %s): %r", self.version, text
            )
        return kind


CATALOG_V1 = RejectionCatalog(
    version="v1",
    entries={
        "Already signed": RejectionKind.ALREADY_PARTICIPATED,
        "Already voted": RejectionKind.ALREADY_PARTICIPATED,
        "Deadline passed": RejectionKind.CLOSED,
        "Petition closed": RejectionKind.CLOSED,
        "Poll closed": RejectionKind.CLOSED,
        "Not allowed": RejectionKind.NOT_ELIGIBLE,
        "Not eligible": RejectionKind.NOT_ELIGIBLE,
        "Invalid option": RejectionKind.INVALID_REQUEST,
        "Invalid petition": RejectionKind.INVALID_REQUEST,
        "Invalid poll": RejectionKind.INVALID_REQUEST,
        "Unknown intent": RejectionKind.INVALID_REQUEST,
        "Petition not found": RejectionKind.INVALID_REQUEST,
        "Poll not found": RejectionKind.INVALID_REQUEST,
    },
)

CATALOGS: dict[str, RejectionCatalog] = {CATALOG_V1.version: CATALOG_V1}


def get_catalog(version: str) -> RejectionCatalog:
    try:
        return CATALOGS[version]
    except KeyError:
        raise ValueError(
            f"Unknown rejection catalog version {version!r}; known: {sorted(CATALOGS)}"
        ) from None


GENERIC_REJECTION_MESSAGE = "Action rejected by the ledger."

_USER_MESSAGES = {
    (ItemKind.PETITION, RejectionKind.CLOSED): "Cannot sign: deadline has passed.",
    (ItemKind.PETITION, RejectionKind.ALREADY_PARTICIPATED): "Already signed.",
    (ItemKind.PETITION, RejectionKind.NOT_ELIGIBLE): "You are not allowed to sign this petition.",
    (ItemKind.POLL, RejectionKind.CLOSED): "Cannot vote: the poll has closed.",
    (ItemKind.POLL, RejectionKind.ALREADY_PARTICIPATED): "You have already voted.",
    (ItemKind.POLL, RejectionKind.NOT_ELIGIBLE): "You are not eligible to vote in this poll.",
}


def user_message(kind: ItemKind, rejection: RejectionKind | None) -> str:
    """User-facing message for a classified rejection."""
    return _USER_MESSAGES.get((kind, rejection), GENERIC_REJECTION_MESSAGE)
