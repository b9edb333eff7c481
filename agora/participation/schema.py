"""
Participation Schema — Pydantic models for petitions, polls and intents.

These models are the canonical shapes the participation core works with.
The external ledger owns the durable record; every model here is either a
read-through projection of that record, locally held form state, or an
in-flight intent that the ledger has not confirmed yet.

Item lifecycle:
    DRAFT      — exists only in the creator's form state
    PENDING    — create intent submitted, not yet confirmed
    CONFIRMED  — assigned an id by the ledger, queryable
    OPEN       — now < deadline and not explicitly closed
    CLOSED     — now >= deadline or explicitly closed (terminal)
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, computed_field, field_validator, model_validator


# ════════════════════════════════════════════════════════════════
# Enumerations
# ════════════════════════════════════════════════════════════════


class ItemKind(str, enum.Enum):
    """The two participation item variants."""

    PETITION = "petition"
    POLL = "poll"


class Visibility(str, enum.Enum):
    """Who may participate in an item."""

    PUBLIC = "public"  # open to every identity
    PRIVATE = "private"  # restricted to the allow-list


class LifecycleState(str, enum.Enum):
    """Temporal state of a confirmed item."""

    OPEN = "open"
    CLOSED = "closed"


class CreationPhase(str, enum.Enum):
    """Where a create request is between the form and the ledger."""

    DRAFT = "draft"
    PENDING = "pending"
    CONFIRMED = "confirmed"


class IntentAction(str, enum.Enum):
    """State-changing calls the ledger accepts."""

    CREATE = "create"
    SIGN = "sign"
    VOTE = "vote"


class StoreCapability(str, enum.Enum):
    """
    Optional features of a ledger schema.

    Some deployments expose only a deadline; others add an explicit closed
    flag or a direct "has participated" query. The core resolves these at
    the boundary instead of branching into two different item models.
    """

    VISIBILITY = "visibility"
    EXPLICIT_CLOSE = "explicit_close"
    PARTICIPATION_QUERY = "participation_query"


class RejectionKind(str, enum.Enum):
    """Classified meaning of a ledger rejection."""

    ALREADY_PARTICIPATED = "already_participated"
    CLOSED = "closed"
    NOT_ELIGIBLE = "not_eligible"
    INVALID_REQUEST = "invalid_request"


def _as_utc_seconds(value: datetime) -> datetime:
    """Coerce to an aware UTC datetime truncated to whole seconds."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).replace(microsecond=0)


def utcnow() -> datetime:
    """Current instant at the ledger's seconds resolution."""
    return _as_utc_seconds(datetime.now(timezone.utc))


# ════════════════════════════════════════════════════════════════
# Items
# ════════════════════════════════════════════════════════════════


class ParticipationItem(BaseModel):
    """
    Common shape of a confirmed petition or poll.

    ``allow_list`` is only meaningful for PRIVATE items. ``closed_flag`` is
    None when the ledger schema has no explicit close; the lifecycle clock
    treats an absent flag as False.
    """

    kind: ItemKind
    id: int = Field(gt=0, description="Ledger-assigned identifier, unique per kind")
    title: str = Field(min_length=1, description="Petition title or poll question")
    created_at: datetime
    deadline: datetime
    visibility: Visibility = Visibility.PUBLIC
    allow_list: list[str] = Field(
        default_factory=list, description="Participant identities for PRIVATE items"
    )
    closed_flag: bool | None = Field(
        default=None, description="Explicit early closure, when the schema has one"
    )

    @field_validator("created_at", "deadline")
    @classmethod
    def _seconds_resolution(cls, value: datetime) -> datetime:
        return _as_utc_seconds(value)

    @model_validator(mode="after")
    def _deadline_after_creation(self) -> "ParticipationItem":
        if self.deadline <= self.created_at:
            raise ValueError("deadline must be later than created_at")
        return self

    @property
    def option_labels(self) -> list[str]:
        raise TypeError(f"{type(self).__name__} has no options; build a Petition or Poll")

    @property
    def counts(self) -> list[int]:
        raise TypeError(f"{type(self).__name__} has no counts; build a Petition or Poll")


class Petition(ParticipationItem):
    """A sign-to-support item with a single signature count."""

    kind: Literal[ItemKind.PETITION] = ItemKind.PETITION
    description: str = ""
    signature_count: int = Field(default=0, ge=0)

    @property
    def option_labels(self) -> list[str]:
        return [self.title]

    @property
    def counts(self) -> list[int]:
        return [self.signature_count]

    @computed_field
    @property
    def participation_total(self) -> int:
        """Signatures recorded so far."""
        return self.signature_count


class Poll(ParticipationItem):
    """A choose-one item. ``vote_counts`` is aligned with ``options``."""

    kind: Literal[ItemKind.POLL] = ItemKind.POLL
    options: list[str] = Field(min_length=2)
    vote_counts: list[Annotated[int, Field(ge=0)]] = Field(default_factory=list)

    @model_validator(mode="after")
    def _align_counts(self) -> "Poll":
        if not self.vote_counts:
            self.vote_counts = [0] * len(self.options)
        elif len(self.vote_counts) != len(self.options):
            raise ValueError(
                f"{len(self.vote_counts)} vote counts for {len(self.options)} options"
            )
        return self

    @property
    def option_labels(self) -> list[str]:
        return list(self.options)

    @property
    def counts(self) -> list[int]:
        return list(self.vote_counts)

    @computed_field
    @property
    def participation_total(self) -> int:
        """Votes recorded so far."""
        return sum(self.vote_counts)


Item = Annotated[Union[Petition, Poll], Field(discriminator="kind")]


class ItemSummary(BaseModel):
    """One row of an item listing."""

    kind: ItemKind
    id: int
    title: str
    visibility: Visibility
    created_at: datetime
    deadline: datetime
    participation_total: int
    state: LifecycleState


# ════════════════════════════════════════════════════════════════
# Form state and intents
# ════════════════════════════════════════════════════════════════


class Proof(BaseModel):
    """
    Membership/anonymity proof values passed alongside a signature or vote.

    Shape matches a Groth16 proof (a, b, c, public inputs) plus a nullifier.
    """

    a: list[int] = Field(default_factory=lambda: [0, 0])
    b: list[list[int]] = Field(default_factory=lambda: [[0, 0], [0, 0]])
    c: list[int] = Field(default_factory=lambda: [0, 0])
    inputs: list[int] = Field(default_factory=lambda: [0])
    nullifier: str = "0x" + "00" * 32


class ItemDraft(BaseModel):
    """
    Creator's local form state. Nothing here is validated until the
    controller decides whether to submit it.
    """

    kind: ItemKind
    title: str = ""
    description: str = ""
    options: list[str] = Field(default_factory=list)
    duration_seconds: int = 0
    visibility: Visibility = Visibility.PUBLIC
    allow_list_rows: list[Any] = Field(
        default_factory=list, description="Raw spreadsheet rows for PRIVATE items"
    )
    allow_list: list[str] = Field(
        default_factory=list, description="Normalized identities, filled before submission"
    )


class IntentCall(BaseModel):
    """
    The call shape shared by submission and simulation.

    ``simulate`` receives exactly what the matching ``submit_*`` would send.
    """

    action: IntentAction
    kind: ItemKind
    item_id: int | None = None
    identity: str | None = None
    option_index: int | None = None
    draft: ItemDraft | None = None
    proof: Proof | None = None


class IntentHandle(BaseModel):
    """Reference to a submitted, unconfirmed intent (a transaction hash)."""

    id: str
    call: IntentCall
    submitted_at: datetime = Field(default_factory=utcnow)


class Confirmation(BaseModel):
    """Final outcome of an intent."""

    confirmed: bool
    item_id: int | None = None
    reason: str | None = None


class SimulationResult(BaseModel):
    """Dry-run outcome. Simulation never mutates the ledger."""

    would_succeed: bool
    reason: str | None = None


class ParticipationIntent(BaseModel):
    """A signature or vote between submission and confirmation."""

    kind: ItemKind
    item_id: int
    identity: str
    choice: int | None = None
    handle: IntentHandle | None = None
