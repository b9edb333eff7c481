"""
Visibility & Eligibility Resolver.

Public items admit every identity, including an absent one (read-only
views may still display "eligible"; submitting an action additionally
needs an identity, which the participation guard checks). Private items
admit exactly the identities on the allow-list.

This is a client-side prediction. The ledger applies the same rule on
write, and its rejection wins over a local "eligible" computed from a
stale allow-list snapshot.
"""

from __future__ import annotations

from agora.participation.identity import normalize_identity
from agora.participation.schema import ParticipationItem, Visibility


def allow_list_set(item: ParticipationItem) -> frozenset[str]:
    """Normalized allow-list of ``item``; malformed entries are ignored."""
    members = set()
    for entry in item.allow_list:
        check = normalize_identity(entry)
        if check.is_valid:
            members.add(check.identity)
    return frozenset(members)


def is_eligible(item: ParticipationItem, identity: str | None = None) -> bool:
    """Whether ``identity`` may participate in ``item``."""
    if item.visibility == Visibility.PUBLIC:
        return True

    if identity is None:
        return False
    check = normalize_identity(identity)
    if not check.is_valid:
        return False
    return check.identity in allow_list_set(item)
