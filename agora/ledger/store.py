"""
Participation Store — the interface the core needs from the external ledger.

The ledger durably owns petitions, polls, signatures and votes, and it
enforces the canonical rules when an intent is confirmed. The core can
only read snapshots, submit intents, wait for their confirmation, and
dry-run a call to see whether it would succeed. It cannot lock.

Every method may fail with ExternalUnavailableError, or take as long as
the ledger's own finality process needs.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from agora.participation.schema import (
    Confirmation,
    IntentAction,
    IntentCall,
    IntentHandle,
    ItemDraft,
    ItemKind,
    ParticipationItem,
    Proof,
    SimulationResult,
    StoreCapability,
)


class ParticipationStore(ABC):
    """
    Abstract external ledger.

    Subclasses implement the raw primitives; ``submit_create``,
    ``submit_sign`` and ``submit_vote`` build the shared IntentCall so the
    same shape can be handed to ``simulate``.
    """

    capabilities: frozenset[StoreCapability] = frozenset({StoreCapability.VISIBILITY})

    def supports(self, capability: StoreCapability) -> bool:
        return capability in self.capabilities

    # ── Reads ──────────────────────────────────────────────────

    @abstractmethod
    async def read_item(self, kind: ItemKind, item_id: int) -> ParticipationItem:
        """Point-in-time snapshot of one item. Raises ItemNotFoundError."""

    @abstractmethod
    async def list_item_ids(self, kind: ItemKind) -> list[int]:
        """Every known id of ``kind``, in ledger order."""

    async def has_participated(self, kind: ItemKind, item_id: int, identity: str) -> bool:
        """Direct participation query (PARTICIPATION_QUERY capability)."""
        raise NotImplementedError(f"{type(self).__name__} has no participation query")

    # ── Writes ─────────────────────────────────────────────────

    @abstractmethod
    async def submit(self, call: IntentCall) -> IntentHandle:
        """Submit a state-changing intent. Returns before confirmation."""

    @abstractmethod
    async def await_confirmation(self, handle: IntentHandle) -> Confirmation:
        """Wait until the ledger confirms or rejects ``handle``."""

    @abstractmethod
    async def simulate(self, call: IntentCall) -> SimulationResult:
        """Dry-run ``call`` against current state without mutating it."""

    async def submit_create(self, draft: ItemDraft) -> IntentHandle:
        return await self.submit(
            IntentCall(action=IntentAction.CREATE, kind=draft.kind, draft=draft)
        )

    async def submit_sign(
        self, item_id: int, identity: str, proof: Proof | None = None
    ) -> IntentHandle:
        return await self.submit(sign_call(item_id, identity, proof))

    async def submit_vote(
        self,
        item_id: int,
        identity: str,
        option_index: int,
        proof: Proof | None = None,
    ) -> IntentHandle:
        return await self.submit(vote_call(item_id, identity, option_index, proof))


def sign_call(item_id: int, identity: str, proof: Proof | None = None) -> IntentCall:
    return IntentCall(
        action=IntentAction.SIGN,
        kind=ItemKind.PETITION,
        item_id=item_id,
        identity=identity,
        proof=proof,
    )


def vote_call(
    item_id: int, identity: str, option_index: int, proof: Proof | None = None
) -> IntentCall:
    return IntentCall(
        action=IntentAction.VOTE,
        kind=ItemKind.POLL,
        item_id=item_id,
        identity=identity,
        option_index=option_index,
        proof=proof,
    )
