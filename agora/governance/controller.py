"""
Item Lifecycle Controller — create, view, participate and list.

Composes the validator, allow-list builder, eligibility resolver,
lifecycle clock, participation guard and result aggregator into the four
workflows the presentation layer calls. The controller holds no
authoritative state: everything it reports is either local form state or
a fresh read from the ledger projected through the governance rules.

Write workflows (``create_item``, ``participate``) never raise domain
errors; every failure comes back as an ActionOutcome. Reads raise the
typed errors from ``agora.errors``. Cancelling a workflow mid-flight
drops its intent from ``in_flight`` and propagates the cancellation.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from agora.errors import (
    AgoraError,
    AlreadyParticipatedError,
    ExternalRejectedError,
    ExternalUnavailableError,
    IncompleteFormError,
    InvalidIdentityError,
    ItemClosedError,
    ItemNotFoundError,
    NotEligibleError,
    ValidationError,
)
from agora.governance.eligibility import is_eligible
from agora.governance.guard import (
    DenialReason,
    ParticipationDecision,
    ParticipationGuard,
)
from agora.governance.lifecycle import lifecycle_state
from agora.governance.results import TallyResult, tally
from agora.ledger.rejections import CATALOG_V1, RejectionCatalog, user_message
from agora.ledger.store import ParticipationStore
from agora.participation.allowlist import build_allow_list
from agora.participation.identity import normalize_identity
from agora.participation.proofs import MembershipProver, PlaceholderProver
from agora.participation.schema import (
    CreationPhase,
    IntentAction,
    IntentCall,
    IntentHandle,
    ItemDraft,
    ItemKind,
    ItemSummary,
    LifecycleState,
    ParticipationIntent,
    ParticipationItem,
    Poll,
    RejectionKind,
    StoreCapability,
    Visibility,
    utcnow,
)

logger = logging.getLogger(__name__)


class OutcomeStatus(str, enum.Enum):
    """Terminal status of a write workflow."""

    CONFIRMED = "confirmed"  # ledger confirmed, fresh read agrees
    UNVERIFIED = "unverified"  # ledger confirmed, fresh read does not show it yet
    DENIED = "denied"  # local advisory check refused; nothing submitted
    INVALID = "invalid"  # malformed input; nothing submitted
    REJECTED = "rejected"  # ledger rejected the submitted intent
    UNAVAILABLE = "unavailable"  # ledger unreachable or timed out


@dataclass
class ActionOutcome:
    """Typed result of ``create_item`` or ``participate``."""

    status: OutcomeStatus
    message: str
    kind: ItemKind
    item_id: int | None = None
    phase: CreationPhase | None = None
    intent: IntentHandle | None = None
    explorer_url: str | None = None
    decision: ParticipationDecision | None = None
    item: ParticipationItem | None = None
    error: AgoraError | None = None

    @property
    def ok(self) -> bool:
        return self.status == OutcomeStatus.CONFIRMED


@dataclass
class ItemView:
    """Everything the presentation layer shows for one item."""

    item: ParticipationItem
    state: LifecycleState
    identity: str | None
    eligible: bool
    decision: ParticipationDecision | None
    tally: TallyResult | None
    observed_at: datetime

    @property
    def already_participated(self) -> bool:
        return (
            self.decision is not None
            and self.decision.reason == DenialReason.ALREADY_PARTICIPATED
        )

    @property
    def can_act(self) -> bool:
        return self.decision is not None and self.decision.is_allowed


DEFAULT_DURATIONS: dict[ItemKind, int] = {
    ItemKind.PETITION: 7 * 24 * 60 * 60,
    ItemKind.POLL: 60 * 60,
}

_DENIAL_ERRORS: dict[DenialReason, type[AgoraError]] = {
    DenialReason.NO_IDENTITY: InvalidIdentityError,
    DenialReason.CLOSED: ItemClosedError,
    DenialReason.NOT_ELIGIBLE: NotEligibleError,
    DenialReason.ALREADY_PARTICIPATED: AlreadyParticipatedError,
}

_DENIAL_REJECTIONS: dict[DenialReason, RejectionKind] = {
    DenialReason.CLOSED: RejectionKind.CLOSED,
    DenialReason.NOT_ELIGIBLE: RejectionKind.NOT_ELIGIBLE,
    DenialReason.ALREADY_PARTICIPATED: RejectionKind.ALREADY_PARTICIPATED,
}


class ItemLifecycleController:
    """
    Orchestrates the petition/poll workflows against one ledger.

    Usage:
        controller = ItemLifecycleController(store)
        outcome = await controller.create_item(draft)
        view = await controller.get_item_view(ItemKind.POLL, outcome.item_id, identity)
        outcome = await controller.participate(ItemKind.POLL, 1, identity, choice=0)
    """

    def __init__(
        self,
        store: ParticipationStore,
        prover: MembershipProver | None = None,
        catalog: RejectionCatalog = CATALOG_V1,
        confirmation_timeout: float = 120.0,
        explorer_tx_url: str = "",
        clock: Callable[[], datetime] = utcnow,
        default_durations: dict[ItemKind, int] | None = None,
    ) -> None:
        self.store = store
        self.guard = ParticipationGuard(store, catalog)
        self.prover = prover or PlaceholderProver()
        self.catalog = catalog
        self.confirmation_timeout = confirmation_timeout
        self.explorer_tx_url = explorer_tx_url
        self.clock = clock
        self.default_durations = default_durations or dict(DEFAULT_DURATIONS)
        self.in_flight: dict[str, ItemDraft | ParticipationIntent] = {}
        self._listing: dict[ItemKind, list[ParticipationItem]] = {}

    # ── Create ─────────────────────────────────────────────────

    def new_draft(self, kind: ItemKind) -> ItemDraft:
        """Empty create form for ``kind`` with its default duration."""
        draft = ItemDraft(kind=kind, duration_seconds=self.default_durations[kind])
        if kind == ItemKind.POLL:
            draft.options = ["", ""]
        return draft

    def validate_draft(self, draft: ItemDraft) -> ItemDraft:
        """
        Check a create form locally and return the submittable version.

        Raises:
            IncompleteFormError: Missing title, description, options or allow-list.
            ValidationError: Duration below one second.
        """
        noun = "question" if draft.kind == ItemKind.POLL else "title"
        title = draft.title.strip()
        if not title:
            raise IncompleteFormError(f"A {noun} is required")

        if draft.kind == ItemKind.PETITION and not draft.description.strip():
            raise IncompleteFormError("Title and description are required")

        if draft.kind == ItemKind.POLL:
            if len(draft.options) < 2 or any(not o.strip() for o in draft.options):
                raise IncompleteFormError(
                    "Please provide a question and at least two non-empty options"
                )

        if draft.duration_seconds < 1:
            raise ValidationError("Duration must be at least 1 second")

        allow_list: list[str] = []
        if draft.visibility == Visibility.PRIVATE:
            allow_list = build_allow_list([draft.allow_list_rows, draft.allow_list])
            if not allow_list:
                raise IncompleteFormError(
                    "A private item needs at least one valid address on its allow-list"
                )

        return draft.model_copy(
            update={
                "title": title,
                "options": [o.strip() for o in draft.options],
                "allow_list_rows": [],
                "allow_list": allow_list,
            }
        )

    async def create_item(self, draft: ItemDraft, creator: str | None = None) -> ActionOutcome:
        """
        Validate a draft, submit the create intent and wait for confirmation.

        On confirmation the cached listing for the item's kind is refreshed.
        """
        try:
            ready = self.validate_draft(draft)
        except ValidationError as exc:
            return ActionOutcome(
                status=OutcomeStatus.INVALID, message=str(exc), kind=draft.kind,
                phase=CreationPhase.DRAFT, error=exc,
            )

        if creator is not None and not normalize_identity(creator).is_valid:
            exc = InvalidIdentityError(f"Invalid creator address {creator!r}")
            return ActionOutcome(
                status=OutcomeStatus.INVALID, message=str(exc), kind=draft.kind,
                phase=CreationPhase.DRAFT, error=exc,
            )

        call = IntentCall(
            action=IntentAction.CREATE,
            kind=ready.kind,
            identity=normalize_identity(creator).identity,
            draft=ready,
        )
        try:
            handle = await self.store.submit(call)
        except ExternalRejectedError as exc:
            return self._rejected(ready.kind, exc.reason_text, None, phase=CreationPhase.DRAFT)
        except ExternalUnavailableError as exc:
            return self._unavailable(ready.kind, exc, None, phase=CreationPhase.DRAFT)

        self.in_flight[handle.id] = ready
        try:
            confirmation = await self._await_confirmation(handle)
        except ExternalUnavailableError as exc:
            return self._unavailable(ready.kind, exc, handle, phase=CreationPhase.PENDING)
        finally:
            self.in_flight.pop(handle.id, None)

        if not confirmation.confirmed:
            return self._rejected(
                ready.kind, confirmation.reason, handle, phase=CreationPhase.PENDING
            )

        logger.info(
            "Item created: %s #%d '%s' visibility=%s",
            ready.kind.value, confirmation.item_id, ready.title[:80], ready.visibility.value,
        )
        await self._refresh_after_create(ready.kind)

        return ActionOutcome(
            status=OutcomeStatus.CONFIRMED,
            message=f"{ready.kind.value.capitalize()} #{confirmation.item_id} created.",
            kind=ready.kind,
            item_id=confirmation.item_id,
            phase=CreationPhase.CONFIRMED,
            intent=handle,
            explorer_url=self.explorer_link(handle),
        )

    async def _refresh_after_create(self, kind: ItemKind) -> None:
        try:
            await self.refresh_listing(kind)
        except AgoraError as exc:
            self._listing.pop(kind, None)
            logger.warning("Listing refresh after create failed: %s", exc)

    # ── View ───────────────────────────────────────────────────

    async def get_item_view(
        self,
        kind: ItemKind,
        item_id: int,
        identity: str | None = None,
        now: datetime | None = None,
    ) -> ItemView:
        """
        Fresh view of one item for an optional identity.

        Raises:
            ItemNotFoundError: Unknown id.
            ExternalUnavailableError: Ledger unreachable.
        """
        if now is None:
            now = self.clock()
        item = await self.store.read_item(kind, item_id)
        state = lifecycle_state(item, now)

        decision = None
        if identity is not None:
            decision = await self.guard.can_act(item, identity, now)

        return ItemView(
            item=item,
            state=state,
            identity=normalize_identity(identity).identity,
            eligible=is_eligible(item, identity),
            decision=decision,
            tally=tally(item, now) if state == LifecycleState.CLOSED else None,
            observed_at=now,
        )

    # ── Participate ────────────────────────────────────────────

    async def participate(
        self,
        kind: ItemKind,
        item_id: int,
        identity: str | None,
        choice: int | None = None,
        now: datetime | None = None,
    ) -> ActionOutcome:
        """
        Sign a petition or vote in a poll.

        Runs the guard against a fresh snapshot, submits, waits for the
        ledger, then re-reads the item and re-runs the participation check
        before reporting CONFIRMED.
        """
        try:
            item = await self.store.read_item(kind, item_id)
        except ItemNotFoundError as exc:
            return ActionOutcome(
                status=OutcomeStatus.INVALID, message=str(exc), kind=kind,
                item_id=item_id, error=exc,
            )
        except ExternalUnavailableError as exc:
            return self._unavailable(kind, exc, None, item_id=item_id)

        try:
            self._validate_choice(item, choice)
        except ValidationError as exc:
            return ActionOutcome(
                status=OutcomeStatus.INVALID, message=str(exc), kind=kind,
                item_id=item_id, item=item, error=exc,
            )

        try:
            decision = await self.guard.can_act(item, identity, now or self.clock())
        except ExternalUnavailableError as exc:
            return self._unavailable(kind, exc, None, item_id=item_id)
        if not decision.is_allowed:
            return self._denied(item, decision)

        voter = decision.identity
        proof = self.prover.prove_membership(voter, item)
        try:
            if kind == ItemKind.PETITION:
                handle = await self.store.submit_sign(item_id, voter, proof)
            else:
                handle = await self.store.submit_vote(item_id, voter, choice, proof)
        except ExternalRejectedError as exc:
            return self._rejected(kind, exc.reason_text, None, item_id=item_id)
        except ExternalUnavailableError as exc:
            return self._unavailable(kind, exc, None, item_id=item_id)

        self.in_flight[handle.id] = ParticipationIntent(
            kind=kind, item_id=item_id, identity=voter, choice=choice, handle=handle
        )
        try:
            confirmation = await self._await_confirmation(handle)
        except ExternalUnavailableError as exc:
            return self._unavailable(kind, exc, handle, item_id=item_id)
        finally:
            self.in_flight.pop(handle.id, None)

        if not confirmation.confirmed:
            logger.warning(
                "Local check allowed %s on %s #%d but the ledger rejected it: %s",
                voter, kind.value, item_id, confirmation.reason,
            )
            return self._rejected(kind, confirmation.reason, handle, item_id=item_id)

        return await self._verify_participation(item, voter, choice, handle)

    async def _verify_participation(
        self,
        before: ParticipationItem,
        identity: str,
        choice: int | None,
        handle: IntentHandle,
    ) -> ActionOutcome:
        """
        Re-read the item and check the ledger now reports the action.

        Without a direct participation query the simulate dry-run only says
        "already participated" while the item is open; once it has closed
        the dry-run answers "closed" instead, so the count of the chosen
        option in the fresh snapshot is compared with the pre-submit one.
        """
        kind, item_id = before.kind, before.id
        noun = "Signature" if kind == ItemKind.PETITION else "Vote"
        try:
            fresh = await self.store.read_item(kind, item_id)
            if (
                self.store.supports(StoreCapability.PARTICIPATION_QUERY)
                or lifecycle_state(fresh, self.clock()) == LifecycleState.OPEN
            ):
                recorded = await self.guard.has_participated(fresh, identity)
            else:
                index = choice if choice is not None else 0
                recorded = fresh.counts[index] > before.counts[index]
        except AgoraError as exc:
            logger.warning("Post-confirmation read of %s #%d failed: %s", kind.value, item_id, exc)
            fresh, recorded = None, False

        if not recorded:
            logger.warning(
                "%s confirmed for %s #%d but not yet visible on a fresh read",
                noun, kind.value, item_id,
            )
            return ActionOutcome(
                status=OutcomeStatus.UNVERIFIED,
                message=f"{noun} confirmed; waiting for the ledger to reflect it.",
                kind=kind, item_id=item_id, intent=handle,
                explorer_url=self.explorer_link(handle), item=fresh,
            )

        logger.info("%s recorded: %s #%d identity=%s", noun, kind.value, item_id, identity)
        return ActionOutcome(
            status=OutcomeStatus.CONFIRMED,
            message=f"{noun} recorded.",
            kind=kind, item_id=item_id, intent=handle,
            explorer_url=self.explorer_link(handle), item=fresh,
        )

    @staticmethod
    def _validate_choice(item: ParticipationItem, choice: int | None) -> None:
        if isinstance(item, Poll):
            if choice is None:
                raise ValidationError("Please select an option to vote")
            if not 0 <= choice < len(item.options):
                raise ValidationError(
                    f"Option {choice} does not exist; poll has {len(item.options)} options"
                )
        elif choice is not None:
            raise ValidationError("Petitions take no choice")

    # ── List ───────────────────────────────────────────────────

    async def refresh_listing(self, kind: ItemKind) -> list[ParticipationItem]:
        """
        Refetch every item of ``kind``, replacing the cached listing.

        An id the ledger lists but cannot read yet is skipped. Any other
        read failure is raised after every sibling read has finished.
        """
        ids = await self.store.list_item_ids(kind)
        results = await asyncio.gather(
            *(self.store.read_item(kind, i) for i in ids), return_exceptions=True
        )
        items: list[ParticipationItem] = []
        failure: BaseException | None = None
        for item_id, result in zip(ids, results):
            if isinstance(result, ItemNotFoundError):
                logger.warning("Listed %s #%d is not readable yet; skipping", kind.value, item_id)
            elif isinstance(result, BaseException):
                failure = failure or result
            else:
                items.append(result)
        if failure is not None:
            raise failure

        self._listing[kind] = items
        logger.debug("Listing refreshed: %d %ss", len(items), kind.value)
        return items

    async def list_items(
        self,
        kind: ItemKind,
        refresh: bool = False,
        now: datetime | None = None,
    ) -> list[ItemSummary]:
        """
        Summaries of every item of ``kind``.

        Uses the cached listing unless ``refresh`` is set or nothing is
        cached yet. Lifecycle state is recomputed at ``now`` on every call.
        """
        if refresh or kind not in self._listing:
            items = await self.refresh_listing(kind)
        else:
            items = self._listing[kind]
        if now is None:
            now = self.clock()
        return [
            ItemSummary(
                kind=item.kind,
                id=item.id,
                title=item.title,
                visibility=item.visibility,
                created_at=item.created_at,
                deadline=item.deadline,
                participation_total=item.participation_total,
                state=lifecycle_state(item, now),
            )
            for item in items
        ]

    async def count_items(self, kind: ItemKind) -> int:
        return len(await self.store.list_item_ids(kind))

    # ── Helpers ────────────────────────────────────────────────

    def explorer_link(self, handle: IntentHandle) -> str | None:
        if not self.explorer_tx_url:
            return None
        return f"{self.explorer_tx_url}{handle.id}"

    async def _await_confirmation(self, handle: IntentHandle):
        try:
            return await asyncio.wait_for(
                self.store.await_confirmation(handle), self.confirmation_timeout
            )
        except asyncio.TimeoutError as exc:
            raise ExternalUnavailableError(
                f"No confirmation for intent {handle.id} within {self.confirmation_timeout}s"
            ) from exc

    def _denied(self, item: ParticipationItem, decision: ParticipationDecision) -> ActionOutcome:
        if decision.reason == DenialReason.NO_IDENTITY:
            verb = "sign" if item.kind == ItemKind.PETITION else "vote"
            message = f"Connect a wallet to {verb}."
        else:
            message = user_message(item.kind, _DENIAL_REJECTIONS[decision.reason])
        error = _DENIAL_ERRORS[decision.reason](message, detail=decision.detail)
        return ActionOutcome(
            status=OutcomeStatus.DENIED, message=message, kind=item.kind,
            item_id=item.id, decision=decision, item=item, error=error,
        )

    def _rejected(
        self,
        kind: ItemKind,
        reason_text: str | None,
        handle: IntentHandle | None,
        item_id: int | None = None,
        phase: CreationPhase | None = None,
    ) -> ActionOutcome:
        rejection = self.catalog.classify(reason_text)
        message = user_message(kind, rejection)
        error = ExternalRejectedError(reason_text or "", kind=rejection, message=message)
        return ActionOutcome(
            status=OutcomeStatus.REJECTED, message=message, kind=kind, item_id=item_id,
            phase=phase, intent=handle,
            explorer_url=self.explorer_link(handle) if handle else None, error=error,
        )

    def _unavailable(
        self,
        kind: ItemKind,
        exc: ExternalUnavailableError,
        handle: IntentHandle | None,
        item_id: int | None = None,
        phase: CreationPhase | None = None,
    ) -> ActionOutcome:
        logger.warning("Ledger unavailable during %s workflow: %s", kind.value, exc)
        return ActionOutcome(
            status=OutcomeStatus.UNAVAILABLE,
            message="The ledger could not be reached. Try again later.",
            kind=kind, item_id=item_id, phase=phase, intent=handle,
            explorer_url=self.explorer_link(handle) if handle else None, error=exc,
        )
