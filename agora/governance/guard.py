"""
Participation Guard — may this identity sign or vote on this item now?

Preconditions are evaluated in a fixed order and the first failure wins:

1. identity present and a valid address      → NO_IDENTITY
2. item OPEN at ``now``                       → CLOSED
3. identity eligible under the visibility     → NOT_ELIGIBLE
4. identity has not participated already      → ALREADY_PARTICIPATED

The core keeps no ledger of past participation. Step 4 asks the ledger
directly when its schema offers a participation query; otherwise it
dry-runs the very call a real submission would make and reads an
"already signed/voted" rejection, as classified by the versioned
rejection catalog, as a positive detection. Any other simulation
outcome means "not yet participated". Nothing here mutates the ledger.

An ALLOWED decision is advisory. Nothing locks the window between the
check and the submission; the ledger's confirmation is authoritative.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime

from agora.governance.eligibility import is_eligible
from agora.governance.lifecycle import lifecycle_state
from agora.ledger.rejections import CATALOG_V1, RejectionCatalog
from agora.ledger.store import ParticipationStore, sign_call, vote_call
from agora.participation.identity import normalize_identity
from agora.participation.schema import (
    IntentCall,
    ItemKind,
    LifecycleState,
    ParticipationItem,
    RejectionKind,
    StoreCapability,
    utcnow,
)

logger = logging.getLogger(__name__)


class GuardDecision(str, enum.Enum):
    ALLOWED = "allowed"
    DENIED = "denied"


class DenialReason(str, enum.Enum):
    NO_IDENTITY = "no_identity"
    CLOSED = "closed"
    NOT_ELIGIBLE = "not_eligible"
    ALREADY_PARTICIPATED = "already_participated"


@dataclass
class ParticipationDecision:
    """Result of checking one (item, identity) pair."""

    decision: GuardDecision
    kind: ItemKind
    item_id: int
    identity: str | None
    reason: DenialReason | None = None
    detail: str = ""

    @property
    def is_allowed(self) -> bool:
        return self.decision == GuardDecision.ALLOWED


class ParticipationGuard:
    """
    Advisory mutual-exclusion check in front of every signature and vote.

    Usage:
        guard = ParticipationGuard(store)
        decision = await guard.can_act(item, identity)
        if decision.is_allowed:
            ...submit...
    """

    def __init__(
        self,
        store: ParticipationStore,
        catalog: RejectionCatalog = CATALOG_V1,
    ) -> None:
        self.store = store
        self.catalog = catalog

    async def can_act(
        self,
        item: ParticipationItem,
        identity: str | None,
        now: datetime | None = None,
    ) -> ParticipationDecision:
        """Evaluate the four preconditions in order."""
        if now is None:
            now = utcnow()

        check = normalize_identity(identity)
        if not check.is_valid:
            return self._deny(item, None, DenialReason.NO_IDENTITY, check.reason or "no identity")

        if lifecycle_state(item, now) == LifecycleState.CLOSED:
            return self._deny(
                item, check.identity, DenialReason.CLOSED,
                f"closed since {item.deadline.isoformat()}"
                if not item.closed_flag else "closed early by the ledger",
            )

        if not is_eligible(item, check.identity):
            return self._deny(
                item, check.identity, DenialReason.NOT_ELIGIBLE, "not on the allow-list"
            )

        if await self.has_participated(item, check.identity):
            return self._deny(
                item, check.identity, DenialReason.ALREADY_PARTICIPATED,
                "ledger reports a prior signature" if item.kind == ItemKind.PETITION
                else "ledger reports a prior vote",
            )

        return ParticipationDecision(
            decision=GuardDecision.ALLOWED,
            kind=item.kind,
            item_id=item.id,
            identity=check.identity,
        )

    async def has_participated(self, item: ParticipationItem, identity: str) -> bool:
        """
        Whether ``identity`` already signed/voted on ``item``.

        Prefers the ledger's direct query; falls back to the simulate dry-run.
        Raises ExternalUnavailableError if the ledger cannot be reached.
        """
        if self.store.supports(StoreCapability.PARTICIPATION_QUERY):
            return await self.store.has_participated(item.kind, item.id, identity)

        result = await self.store.simulate(self.dry_run_call(item, identity))
        if result.would_succeed:
            return False
        rejection = self.catalog.classify(result.reason)
        if rejection != RejectionKind.ALREADY_PARTICIPATED:
            logger.debug(
                "Dry-run for %s #%d rejected for another reason: %r",
                item.kind.value, item.id, result.reason,
            )
            return False
        return True

    @staticmethod
    def dry_run_call(item: ParticipationItem, identity: str) -> IntentCall:
        """The call a real submission would make; option 0 for polls."""
        if item.kind == ItemKind.PETITION:
            return sign_call(item.id, identity)
        return vote_call(item.id, identity, 0)

    @staticmethod
    def _deny(
        item: ParticipationItem,
        identity: str | None,
        reason: DenialReason,
        detail: str,
    ) -> ParticipationDecision:
        return ParticipationDecision(
            decision=GuardDecision.DENIED,
            kind=item.kind,
            item_id=item.id,
            identity=identity,
            reason=reason,
            detail=detail,
        )
