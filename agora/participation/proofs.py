"""
Membership proof interface.

Signatures and votes carry a proof that is meant to anonymize membership
in the allow-list. Proof generation and verification belong to a separate
subsystem; this module only defines the seam the core calls and a
placeholder that produces structurally valid, all-zero values.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from agora.participation.schema import ParticipationItem, Proof


class MembershipProver(ABC):
    """Produces the proof submitted with a signature or vote."""

    @abstractmethod
    def prove_membership(self, identity: str, item: ParticipationItem) -> Proof:
        """Return a proof that ``identity`` may act on ``item``."""


class PlaceholderProver(MembershipProver):
    """Zeroed proof values accepted by ledgers that do not verify proofs."""

    def prove_membership(self, identity: str, item: ParticipationItem) -> Proof:
        return Proof()
