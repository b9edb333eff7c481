"""
Result Aggregator — final tallies for closed items.

Results only exist once an item is CLOSED. Ties are reported as multiple
winners; an item with no participation at all has no winners rather than
a tie between every option. Percentage shares are derived from the integer
counts on every access and never stored.
"""

from __future__ import annotations

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from pydantic import BaseModel, Field, computed_field

from agora.errors import ResultsNotYetFinalError
from agora.governance.lifecycle import lifecycle_state
from agora.participation.schema import ItemKind, LifecycleState, ParticipationItem

_ONE_DECIMAL = Decimal("0.1")


class TallyResult(BaseModel):
    """Final per-option counts of a closed item."""

    kind: ItemKind
    item_id: int
    labels: list[str]
    per_option: list[int] = Field(description="Counts aligned with labels")

    @computed_field
    @property
    def total(self) -> int:
        return sum(self.per_option)

    @computed_field
    @property
    def max_count(self) -> int:
        return max(self.per_option, default=0)

    @computed_field
    @property
    def winner_indices(self) -> list[int]:
        """Indices of every option sharing the maximum count."""
        if self.total == 0:
            return []
        return [i for i, count in enumerate(self.per_option) if count == self.max_count]

    @computed_field
    @property
    def winners(self) -> list[str]:
        return [self.labels[i] for i in self.winner_indices]

    @property
    def has_participation(self) -> bool:
        return self.total > 0

    @property
    def is_tie(self) -> bool:
        return len(self.winner_indices) > 1

    @computed_field
    @property
    def percentages(self) -> list[Decimal]:
        """Share of the total per option, rounded half-up to one decimal."""
        if self.total == 0:
            return [Decimal("0.0") for _ in self.per_option]
        total = Decimal(self.total)
        return [
            (Decimal(count) * 100 / total).quantize(_ONE_DECIMAL, rounding=ROUND_HALF_UP)
            for count in self.per_option
        ]

    def rendered_percentages(self) -> list[str]:
        return [f"{share:.1f}" for share in self.percentages]

    def summary(self) -> str:
        """One-line human summary, e.g. ``Winners: Yes, No (3 votes)``."""
        if not self.has_participation:
            return "No votes recorded." if self.kind == ItemKind.POLL else "No signatures recorded."
        noun = "vote" if self.kind == ItemKind.POLL else "signature"
        label = "Winners" if self.is_tie else "Winner"
        plural = "" if self.max_count == 1 else "s"
        return f"{label}: {', '.join(self.winners)} ({self.max_count} {noun}{plural})"


def tally(item: ParticipationItem, now: datetime | None = None) -> TallyResult:
    """
    Tally a closed item.

    Raises:
        ResultsNotYetFinalError: If the item is still OPEN at ``now``.
    """
    if lifecycle_state(item, now) != LifecycleState.CLOSED:
        raise ResultsNotYetFinalError(
            f"{item.kind.value} #{item.id} is still open until {item.deadline.isoformat()}"
        )

    return TallyResult(
        kind=item.kind,
        item_id=item.id,
        labels=item.option_labels,
        per_option=item.counts,
    )
