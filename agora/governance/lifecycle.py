"""
Lifecycle Clock — OPEN/CLOSED state of a confirmed item.

An item is CLOSED when either signal fires:
- the deadline has been reached (``now >= deadline``), or
- the ledger reports an explicit closed flag.

Ledger schemas differ in which signals they surface, so both are always
checked and an absent flag counts as False.
"""

from __future__ import annotations

from datetime import datetime

from agora.participation.schema import LifecycleState, ParticipationItem, utcnow


def lifecycle_state(
    item: ParticipationItem, now: datetime | None = None
) -> LifecycleState:
    """Derive the temporal state of ``item`` at ``now`` (default: current time)."""
    if now is None:
        now = utcnow()
    elif now.tzinfo is None:
        raise ValueError("now must be timezone-aware")

    if item.closed_flag:
        return LifecycleState.CLOSED
    if now >= item.deadline:
        return LifecycleState.CLOSED
    return LifecycleState.OPEN


def is_open(item: ParticipationItem, now: datetime | None = None) -> bool:
    return lifecycle_state(item, now) == LifecycleState.OPEN


def seconds_remaining(item: ParticipationItem, now: datetime | None = None) -> int:
    """Whole seconds until the deadline; 0 once the item is closed."""
    if now is None:
        now = utcnow()
    if lifecycle_state(item, now) == LifecycleState.CLOSED:
        return 0
    return int((item.deadline - now).total_seconds())
