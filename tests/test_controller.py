"""
Tests for the Item Lifecycle Controller.

Validates:
- Create form validation happens before the ledger is contacted
- Participation outcomes for every guard denial
- The ledger's rejection wins over a local "allowed"
- Timeouts, outages and cancellation leave no in-flight residue
- Listing cache refresh and per-call lifecycle state
"""

from __future__ import annotations

import asyncio

import pytest

from agora.errors import (
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
from agora.governance.controller import ItemLifecycleController, OutcomeStatus
from agora.ledger.service import LedgerParticipationStore
from agora.ledger.store import sign_call
from agora.participation.schema import (
    CreationPhase,
    ItemDraft,
    ItemKind,
    LifecycleState,
    RejectionKind,
    StoreCapability,
    Visibility,
)

from conftest import ALICE, BOB, CAROL, FakeClock, confirm_action

EXPLORER = "https://explorer.test/tx/"


class RivalLedger(LedgerParticipationStore):
    """Confirms a competing intent from the same identity right after ours is submitted."""

    async def submit(self, call):
        handle = await super().submit(call)
        if call.item_id is not None:
            rival = await super().submit(call)
            await super().await_confirmation(rival)
        return handle


class StalledLedger(LedgerParticipationStore):
    """Never confirms."""

    async def await_confirmation(self, handle):
        await asyncio.sleep(3600)


class LaggingLedger(LedgerParticipationStore):
    """Confirms writes but its participation query never catches up."""

    async def has_participated(self, kind, item_id, identity):
        return False


class OfflineLedger(LedgerParticipationStore):

    async def read_item(self, kind, item_id):
        raise ExternalUnavailableError("node offline")


class SlowFinalityLedger(LedgerParticipationStore):
    """Deadline-only ledger whose clock moves on while an intent finalizes."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, capabilities={StoreCapability.VISIBILITY}, **kwargs)

    async def await_confirmation(self, handle):
        confirmation = await super().await_confirmation(handle)
        self.clock.advance(1)
        return confirmation


class PhantomListingLedger(LedgerParticipationStore):
    """Lists an id it cannot serve yet."""

    async def list_item_ids(self, kind):
        return await super().list_item_ids(kind) + [99]


class BrokenReadLedger(LedgerParticipationStore):
    """Confirms writes but every item read fails."""

    async def read_item(self, kind, item_id):
        raise ExternalUnavailableError("read replica down")


class _ControllerFixture:

    store_class = LedgerParticipationStore
    confirmation_timeout = 5.0

    def setup_method(self):
        self.clock = FakeClock()
        self.store = self.store_class("sqlite://", clock=self.clock)
        self.store.initialize()
        self.controller = ItemLifecycleController(
            self.store,
            confirmation_timeout=self.confirmation_timeout,
            explorer_tx_url=EXPLORER,
            clock=self.clock,
        )

    def petition_draft(self, **kwargs):
        fields = {"kind": ItemKind.PETITION, "title": "Repave Elm St", "description": "Potholes everywhere",
                  "duration_seconds": 600}
        fields.update(kwargs)
        return ItemDraft(**fields)

    def poll_draft(self, **kwargs):
        fields = {"kind": ItemKind.POLL, "title": "Festival date?", "options": ["June", "July"],
                  "duration_seconds": 600}
        fields.update(kwargs)
        return ItemDraft(**fields)

    async def create(self, draft):
        outcome = await self.controller.create_item(draft)
        assert outcome.status == OutcomeStatus.CONFIRMED, outcome.message
        return outcome.item_id


class TestCreateItem(_ControllerFixture):
    """Test the create workflow."""

    @pytest.mark.asyncio
    async def test_petition_confirmed(self):
        outcome = await self.controller.create_item(self.petition_draft(), creator=ALICE)
        assert outcome.ok
        assert outcome.phase == CreationPhase.CONFIRMED
        assert outcome.item_id == 1
        assert outcome.explorer_url == EXPLORER + outcome.intent.id
        assert self.controller.in_flight == {}

    @pytest.mark.asyncio
    async def test_duplicate_labels_allowed(self):
        outcome = await self.controller.create_item(self.poll_draft(options=["Yes", "Yes"]))
        assert outcome.ok
        poll = await self.store.read_item(ItemKind.POLL, outcome.item_id)
        assert poll.options == ["Yes", "Yes"]

    @pytest.mark.asyncio
    async def test_single_option_rejected_locally(self):
        outcome = await self.controller.create_item(self.poll_draft(options=["Yes"]))
        assert outcome.status == OutcomeStatus.INVALID
        assert outcome.phase == CreationPhase.DRAFT
        assert isinstance(outcome.error, IncompleteFormError)
        assert outcome.intent is None
        assert await self.store.list_item_ids(ItemKind.POLL) == []

    @pytest.mark.asyncio
    async def test_blank_option_rejected(self):
        outcome = await self.controller.create_item(self.poll_draft(options=["June", "  "]))
        assert isinstance(outcome.error, IncompleteFormError)

    @pytest.mark.asyncio
    async def test_missing_title_or_description(self):
        for draft in (self.petition_draft(title=""), self.petition_draft(description=" ")):
            outcome = await self.controller.create_item(draft)
            assert isinstance(outcome.error, IncompleteFormError)
        assert await self.store.list_item_ids(ItemKind.PETITION) == []

    @pytest.mark.asyncio
    async def test_zero_duration_rejected(self):
        outcome = await self.controller.create_item(self.petition_draft(duration_seconds=0))
        assert outcome.status == OutcomeStatus.INVALID
        assert isinstance(outcome.error, ValidationError)

    @pytest.mark.asyncio
    async def test_private_without_addresses_rejected(self):
        draft = self.poll_draft(visibility=Visibility.PRIVATE, allow_list_rows=[["Address"], [""], [7]])
        outcome = await self.controller.create_item(draft)
        assert outcome.status == OutcomeStatus.INVALID
        assert isinstance(outcome.error, IncompleteFormError)

    @pytest.mark.asyncio
    async def test_private_allow_list_built_from_rows(self):
        rows = [["Address"], [ALICE.upper().replace("0X", "0x")], [BOB], [ALICE]]
        outcome = await self.controller.create_item(
            self.poll_draft(visibility=Visibility.PRIVATE, allow_list_rows=rows)
        )
        assert outcome.ok
        poll = await self.store.read_item(ItemKind.POLL, outcome.item_id)
        assert sorted(poll.allow_list) == sorted([ALICE, BOB])

    @pytest.mark.asyncio
    async def test_public_drops_allow_list(self):
        outcome = await self.controller.create_item(self.petition_draft(allow_list=[ALICE]))
        petition = await self.store.read_item(ItemKind.PETITION, outcome.item_id)
        assert petition.allow_list == []

    @pytest.mark.asyncio
    async def test_invalid_creator(self):
        outcome = await self.controller.create_item(self.petition_draft(), creator="nobody")
        assert isinstance(outcome.error, InvalidIdentityError)

    @pytest.mark.asyncio
    async def test_listing_refreshed_after_create(self):
        assert await self.controller.list_items(ItemKind.PETITION) == []
        await self.create(self.petition_draft())
        summaries = await self.controller.list_items(ItemKind.PETITION)
        assert [s.id for s in summaries] == [1]

    def test_new_draft_defaults(self):
        petition = self.controller.new_draft(ItemKind.PETITION)
        poll = self.controller.new_draft(ItemKind.POLL)
        assert petition.duration_seconds == 7 * 24 * 60 * 60
        assert poll.duration_seconds == 60 * 60
        assert poll.options == ["", ""]


class TestParticipate(_ControllerFixture):
    """Test signing and voting."""

    @pytest.mark.asyncio
    async def test_sign_confirmed(self):
        item_id = await self.create(self.petition_draft())
        outcome = await self.controller.participate(ItemKind.PETITION, item_id, ALICE)
        assert outcome.status == OutcomeStatus.CONFIRMED
        assert outcome.item.signature_count == 1
        assert outcome.explorer_url.startswith(EXPLORER)

    @pytest.mark.asyncio
    async def test_vote_confirmed(self):
        item_id = await self.create(self.poll_draft())
        outcome = await self.controller.participate(ItemKind.POLL, item_id, BOB, choice=1)
        assert outcome.ok
        assert outcome.item.vote_counts == [0, 1]

    @pytest.mark.asyncio
    async def test_vote_requires_valid_choice(self):
        item_id = await self.create(self.poll_draft())
        for choice in (None, 2, -1):
            outcome = await self.controller.participate(ItemKind.POLL, item_id, ALICE, choice=choice)
            assert outcome.status == OutcomeStatus.INVALID
            assert isinstance(outcome.error, ValidationError)

    @pytest.mark.asyncio
    async def test_petition_rejects_choice(self):
        item_id = await self.create(self.petition_draft())
        outcome = await self.controller.participate(ItemKind.PETITION, item_id, ALICE, choice=0)
        assert outcome.status == OutcomeStatus.INVALID

    @pytest.mark.asyncio
    async def test_second_signature_denied(self):
        item_id = await self.create(self.petition_draft())
        await self.controller.participate(ItemKind.PETITION, item_id, ALICE)
        outcome = await self.controller.participate(ItemKind.PETITION, item_id, ALICE)
        assert outcome.status == OutcomeStatus.DENIED
        assert outcome.message == "Already signed."
        assert isinstance(outcome.error, AlreadyParticipatedError)

    @pytest.mark.asyncio
    async def test_closed_poll_denied(self):
        item_id = await self.create(self.poll_draft())
        self.clock.advance(600)
        outcome = await self.controller.participate(ItemKind.POLL, item_id, ALICE, choice=0)
        assert outcome.status == OutcomeStatus.DENIED
        assert outcome.message == "Cannot vote: the poll has closed."
        assert isinstance(outcome.error, ItemClosedError)

    @pytest.mark.asyncio
    async def test_outsider_denied(self):
        item_id = await self.create(self.poll_draft(visibility=Visibility.PRIVATE, allow_list=[ALICE]))
        outcome = await self.controller.participate(ItemKind.POLL, item_id, CAROL, choice=0)
        assert outcome.status == OutcomeStatus.DENIED
        assert isinstance(outcome.error, NotEligibleError)

    @pytest.mark.asyncio
    async def test_missing_identity_denied(self):
        item_id = await self.create(self.petition_draft())
        outcome = await self.controller.participate(ItemKind.PETITION, item_id, None)
        assert outcome.status == OutcomeStatus.DENIED
        assert isinstance(outcome.error, InvalidIdentityError)

    @pytest.mark.asyncio
    async def test_unknown_item(self):
        outcome = await self.controller.participate(ItemKind.PETITION, 42, ALICE)
        assert outcome.status == OutcomeStatus.INVALID
        assert isinstance(outcome.error, ItemNotFoundError)


class TestLedgerIsAuthoritative(_ControllerFixture):
    """Another intent from the same identity confirms first."""

    store_class = RivalLedger

    @pytest.mark.asyncio
    async def test_race_reported_as_rejection(self):
        item_id = await self.create(self.petition_draft())
        outcome = await self.controller.participate(ItemKind.PETITION, item_id, ALICE)
        assert outcome.status == OutcomeStatus.REJECTED
        assert isinstance(outcome.error, ExternalRejectedError)
        assert outcome.error.kind == RejectionKind.ALREADY_PARTICIPATED
        assert outcome.error.reason_text == "Already signed"
        assert outcome.message == "Already signed."
        petition = await self.store.read_item(ItemKind.PETITION, item_id)
        assert petition.signature_count == 1


class TestConfirmationTimeout(_ControllerFixture):

    store_class = StalledLedger
    confirmation_timeout = 0.05

    @pytest.mark.asyncio
    async def test_timeout_is_unavailable(self):
        outcome = await self.controller.create_item(self.petition_draft())
        assert outcome.status == OutcomeStatus.UNAVAILABLE
        assert outcome.phase == CreationPhase.PENDING
        assert isinstance(outcome.error, ExternalUnavailableError)
        assert outcome.intent is not None
        assert self.controller.in_flight == {}


class TestCancellation(_ControllerFixture):

    store_class = StalledLedger

    @pytest.mark.asyncio
    async def test_cancel_leaves_no_residue(self):
        task = asyncio.create_task(self.controller.create_item(self.petition_draft()))
        for _ in range(50):
            await asyncio.sleep(0)
            if self.controller.in_flight:
                break
        assert len(self.controller.in_flight) == 1
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert self.controller.in_flight == {}


class TestUnverifiedConfirmation(_ControllerFixture):

    store_class = LaggingLedger

    @pytest.mark.asyncio
    async def test_confirmed_but_not_visible(self):
        item_id = await self.create(self.petition_draft())
        outcome = await self.controller.participate(ItemKind.PETITION, item_id, ALICE)
        assert outcome.status == OutcomeStatus.UNVERIFIED
        assert not outcome.ok
        assert outcome.intent is not None


class TestLedgerOffline(_ControllerFixture):

    store_class = OfflineLedger

    @pytest.mark.asyncio
    async def test_participate_unavailable(self):
        outcome = await self.controller.participate(ItemKind.POLL, 1, ALICE, choice=0)
        assert outcome.status == OutcomeStatus.UNAVAILABLE

    @pytest.mark.asyncio
    async def test_view_raises(self):
        with pytest.raises(ExternalUnavailableError):
            await self.controller.get_item_view(ItemKind.POLL, 1)


class TestItemView(_ControllerFixture):
    """Test the read-only view workflow."""

    @pytest.mark.asyncio
    async def test_open_view_without_identity(self):
        item_id = await self.create(self.poll_draft())
        view = await self.controller.get_item_view(ItemKind.POLL, item_id)
        assert view.state == LifecycleState.OPEN
        assert view.eligible
        assert view.decision is None
        assert view.tally is None
        assert not view.can_act

    @pytest.mark.asyncio
    async def test_view_reports_prior_vote(self):
        item_id = await self.create(self.poll_draft())
        await self.controller.participate(ItemKind.POLL, item_id, ALICE, choice=0)
        view = await self.controller.get_item_view(ItemKind.POLL, item_id, ALICE)
        assert view.already_participated
        other = await self.controller.get_item_view(ItemKind.POLL, item_id, BOB)
        assert other.can_act

    @pytest.mark.asyncio
    async def test_closed_view_has_tally(self):
        item_id = await self.create(self.poll_draft())
        await self.controller.participate(ItemKind.POLL, item_id, ALICE, choice=1)
        await self.controller.participate(ItemKind.POLL, item_id, BOB, choice=1)
        self.clock.advance(600)
        view = await self.controller.get_item_view(ItemKind.POLL, item_id, CAROL)
        assert view.state == LifecycleState.CLOSED
        assert view.tally.winners == ["July"]
        assert view.tally.total == 2

    @pytest.mark.asyncio
    async def test_private_view_eligibility(self):
        item_id = await self.create(self.petition_draft(visibility=Visibility.PRIVATE, allow_list=[ALICE]))
        assert (await self.controller.get_item_view(ItemKind.PETITION, item_id, ALICE)).eligible
        assert not (await self.controller.get_item_view(ItemKind.PETITION, item_id, BOB)).eligible

    @pytest.mark.asyncio
    async def test_unknown_item_raises(self):
        with pytest.raises(ItemNotFoundError):
            await self.controller.get_item_view(ItemKind.PETITION, 7)


class TestListing(_ControllerFixture):
    """Test cached listings and counts."""

    @pytest.mark.asyncio
    async def test_cache_until_refresh(self):
        await self.create(self.petition_draft())
        await self.controller.list_items(ItemKind.PETITION)
        # signature recorded behind the controller's back
        await confirm_action(self.store, sign_call(1, ALICE))
        cached = await self.controller.list_items(ItemKind.PETITION)
        assert cached[0].participation_total == 0
        fresh = await self.controller.list_items(ItemKind.PETITION, refresh=True)
        assert fresh[0].participation_total == 1

    @pytest.mark.asyncio
    async def test_state_recomputed_each_call(self):
        await self.create(self.poll_draft())
        assert (await self.controller.list_items(ItemKind.POLL))[0].state == LifecycleState.OPEN
        self.clock.advance(600)
        assert (await self.controller.list_items(ItemKind.POLL))[0].state == LifecycleState.CLOSED

    @pytest.mark.asyncio
    async def test_explicit_close_shown_as_closed(self):
        await self.create(self.poll_draft())
        await self.store.close_item(ItemKind.POLL, 1)
        summaries = await self.controller.list_items(ItemKind.POLL, refresh=True)
        assert summaries[0].state == LifecycleState.CLOSED

    @pytest.mark.asyncio
    async def test_count_items(self):
        await self.create(self.poll_draft())
        await self.create(self.poll_draft(title="Another?"))
        assert await self.controller.count_items(ItemKind.POLL) == 2
        assert await self.controller.count_items(ItemKind.PETITION) == 0


class TestDryRunOnlyLedger(_ControllerFixture):
    """The full flow against a ledger without a participation query."""

    def setup_method(self):
        super().setup_method()
        self.store.capabilities = frozenset({StoreCapability.VISIBILITY})

    @pytest.mark.asyncio
    async def test_sign_then_denied(self):
        item_id = await self.create(self.petition_draft())
        first = await self.controller.participate(ItemKind.PETITION, item_id, ALICE)
        assert first.status == OutcomeStatus.CONFIRMED
        second = await self.controller.participate(ItemKind.PETITION, item_id, ALICE)
        assert second.status == OutcomeStatus.DENIED
        assert isinstance(second.error, AlreadyParticipatedError)


class TestConfirmationAcrossDeadline(_ControllerFixture):
    """A vote confirmed in the last second is still reported as recorded."""

    store_class = SlowFinalityLedger

    @pytest.mark.asyncio
    async def test_vote_confirmed_as_poll_closes(self):
        item_id = await self.create(self.poll_draft(duration_seconds=10))
        # creation took 1s; cast the vote at t=9 of a 10s poll
        self.clock.advance(8)
        outcome = await self.controller.participate(ItemKind.POLL, item_id, ALICE, choice=1)
        assert outcome.status == OutcomeStatus.CONFIRMED
        assert outcome.item.vote_counts == [0, 1]
        view = await self.controller.get_item_view(ItemKind.POLL, item_id)
        assert view.state == LifecycleState.CLOSED

    @pytest.mark.asyncio
    async def test_signature_confirmed_as_petition_closes(self):
        item_id = await self.create(self.petition_draft(duration_seconds=10))
        self.clock.advance(8)
        outcome = await self.controller.participate(ItemKind.PETITION, item_id, BOB)
        assert outcome.status == OutcomeStatus.CONFIRMED
        assert outcome.item.signature_count == 1


class TestListingReadRace(_ControllerFixture):
    """The ledger lists an id that a read then reports as missing."""

    store_class = PhantomListingLedger

    @pytest.mark.asyncio
    async def test_create_still_confirmed(self):
        outcome = await self.controller.create_item(self.petition_draft())
        assert outcome.status == OutcomeStatus.CONFIRMED
        summaries = await self.controller.list_items(ItemKind.PETITION)
        assert [s.id for s in summaries] == [1]


class TestListingRefreshFailure(_ControllerFixture):

    store_class = BrokenReadLedger

    @pytest.mark.asyncio
    async def test_create_confirmed_and_cache_dropped(self):
        outcome = await self.controller.create_item(self.petition_draft())
        assert outcome.status == OutcomeStatus.CONFIRMED
        assert ItemKind.PETITION not in self.controller._listing

    @pytest.mark.asyncio
    async def test_refresh_raises_after_all_reads(self):
        await self.controller.create_item(self.petition_draft())
        await self.controller.create_item(self.petition_draft(title="Second"))
        with pytest.raises(ExternalUnavailableError):
            await self.controller.refresh_listing(ItemKind.PETITION)
