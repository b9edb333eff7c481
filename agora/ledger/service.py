"""
Reference Ledger Service — a SQLAlchemy-backed ParticipationStore.

Stands in for the distributed ledger during development and in tests.
It mirrors how the ledger behaves from the core's point of view:

- submitted intents sit in a pending pool until ``await_confirmation``
  applies them, so other intents can confirm first
- the canonical rules are enforced at confirmation, with the same
  rejection reasons the deployed contract reverts with
- ``simulate`` runs the identical checks inside a session that is never
  committed
- sessions against a file or server database run in worker threads, so a
  slow commit does not stall the event loop

Usage:
    store = LedgerParticipationStore("sqlite:///agora_ledger.db")
    store.initialize()

    handle = await store.submit_create(draft)
    confirmation = await store.await_confirmation(handle)
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta, timezone
from typing import Any, TypeVar

from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from agora.errors import ItemNotFoundError
from agora.ledger.models import AllowListEntryDB, Base, ItemDB, ParticipationDB
from agora.ledger.store import ParticipationStore
from agora.participation.allowlist import build_allow_list
from agora.participation.identity import normalize_identity
from agora.participation.schema import (
    Confirmation,
    IntentAction,
    IntentCall,
    IntentHandle,
    ItemKind,
    ParticipationItem,
    Petition,
    Poll,
    SimulationResult,
    StoreCapability,
    Visibility,
    utcnow,
)

logger = logging.getLogger(__name__)

# Revert reasons, matching the deployed contract
DEADLINE_PASSED = "Deadline passed"
NOT_ALLOWED = "Not allowed"
INVALID_OPTION = "Invalid option"
UNKNOWN_INTENT = "Unknown intent"

_CLOSED = {ItemKind.PETITION: "Petition closed", ItemKind.POLL: "Poll closed"}
_ALREADY = {ItemKind.PETITION: "Already signed", ItemKind.POLL: "Already voted"}
_INVALID = {ItemKind.PETITION: "Invalid petition", ItemKind.POLL: "Invalid poll"}
_NOT_FOUND = {ItemKind.PETITION: "Petition not found", ItemKind.POLL: "Poll not found"}

ALL_CAPABILITIES = frozenset(StoreCapability)

T = TypeVar("T")


def _aware(value: datetime) -> datetime:
    # sqlite drops tzinfo on the way back
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class LedgerParticipationStore(ParticipationStore):
    """Reference ledger implementing the ParticipationStore contract."""

    def __init__(
        self,
        database_url: str,
        clock: Callable[[], datetime] = utcnow,
        capabilities: Iterable[StoreCapability] | None = None,
    ) -> None:
        """
        Initialize the reference ledger.

        Args:
            database_url: SQLAlchemy connection string. In-memory sqlite
                URLs share one connection so every session sees the same data,
                and their sessions run inline on the event loop. Any other
                database runs its sessions in worker threads.
            clock: Source of the ledger's notion of "now".
            capabilities: Schema features to expose. Defaults to all of them;
                pass a subset to behave like a deadline-only deployment.
        """
        engine_kwargs: dict = {}
        in_memory = database_url in ("sqlite://", "sqlite:///:memory:")
        if in_memory:
            engine_kwargs["poolclass"] = StaticPool
        if database_url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False}
        self.engine = create_engine(database_url, echo=False, **engine_kwargs)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)
        self.clock = clock
        self.capabilities = frozenset(
            capabilities if capabilities is not None else ALL_CAPABILITIES
        )
        self._offload = not in_memory
        self._pending: dict[str, IntentHandle] = {}
        self._nonce = 0

    def initialize(self) -> None:
        """Create the ledger tables if they do not exist."""
        Base.metadata.create_all(self.engine)

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        # a single shared in-memory connection must not be used from two threads
        if self._offload:
            return await asyncio.to_thread(fn, *args)
        return fn(*args)

    # ── Reads ──────────────────────────────────────────────────

    async def read_item(self, kind: ItemKind, item_id: int) -> ParticipationItem:
        return await self._run(self._read_item, kind, item_id)

    async def list_item_ids(self, kind: ItemKind) -> list[int]:
        return await self._run(self._list_item_ids, kind)

    async def has_participated(self, kind: ItemKind, item_id: int, identity: str) -> bool:
        check = normalize_identity(identity)
        if not check.is_valid:
            return False
        return await self._run(self._has_participated, kind, item_id, check.identity)

    def _read_item(self, kind: ItemKind, item_id: int) -> ParticipationItem:
        with self.SessionLocal() as session:
            row = self._load(session, kind, item_id)
            if row is None:
                raise ItemNotFoundError(f"{kind.value} #{item_id} not found")
            return self._project(session, row)

    def _list_item_ids(self, kind: ItemKind) -> list[int]:
        with self.SessionLocal() as session:
            return list(
                session.execute(
                    select(ItemDB.item_number)
                    .where(ItemDB.kind == kind.value)
                    .order_by(ItemDB.item_number.asc())
                ).scalars().all()
            )

    def _has_participated(self, kind: ItemKind, item_id: int, identity: str) -> bool:
        with self.SessionLocal() as session:
            row = self._load(session, kind, item_id)
            if row is None:
                raise ItemNotFoundError(f"{kind.value} #{item_id} not found")
            return self._participation(session, row, identity) is not None

    # ── Writes ─────────────────────────────────────────────────

    async def submit(self, call: IntentCall) -> IntentHandle:
        self._nonce += 1
        handle = IntentHandle(id=self._intent_hash(call, self._nonce), call=call)
        self._pending[handle.id] = handle
        logger.info(
            "Intent submitted: %s %s item=%s hash=%s",
            call.action.value, call.kind.value, call.item_id, handle.id[:18],
        )
        return handle

    async def await_confirmation(self, handle: IntentHandle) -> Confirmation:
        pending = self._pending.pop(handle.id, None)
        if pending is None:
            return Confirmation(confirmed=False, reason=UNKNOWN_INTENT)
        return await self._run(self._confirm, pending)

    async def simulate(self, call: IntentCall) -> SimulationResult:
        return await self._run(self._simulate, call)

    async def close_item(self, kind: ItemKind, item_id: int) -> None:
        """Administrative early closure (EXPLICIT_CLOSE schemas)."""
        await self._run(self._close_item, kind, item_id)
        logger.info("Item closed early: %s #%d", kind.value, item_id)

    def _confirm(self, handle: IntentHandle) -> Confirmation:
        call = handle.call
        now = self.clock()
        with self.SessionLocal() as session:
            reason = self._check(session, call, now)
            if reason is not None:
                logger.info("Intent rejected: hash=%s reason=%s", handle.id[:18], reason)
                return Confirmation(confirmed=False, reason=reason)
            try:
                item_id = self._apply(session, call, handle.id, now)
                session.commit()
            except IntegrityError:
                session.rollback()
                logger.info("Intent lost a race: hash=%s", handle.id[:18])
                return Confirmation(confirmed=False, reason=_ALREADY[call.kind])

        logger.info(
            "Intent confirmed: %s %s #%d hash=%s",
            call.action.value, call.kind.value, item_id, handle.id[:18],
        )
        return Confirmation(confirmed=True, item_id=item_id)

    def _simulate(self, call: IntentCall) -> SimulationResult:
        with self.SessionLocal() as session:
            reason = self._check(session, call, self.clock())
            session.rollback()
        return SimulationResult(would_succeed=reason is None, reason=reason)

    def _close_item(self, kind: ItemKind, item_id: int) -> None:
        with self.SessionLocal() as session:
            row = self._load(session, kind, item_id)
            if row is None:
                raise ItemNotFoundError(f"{kind.value} #{item_id} not found")
            row.closed = True
            session.commit()

    # ── Rules ──────────────────────────────────────────────────

    def _check(self, session: Session, call: IntentCall, now: datetime) -> str | None:
        """Return the revert reason ``call`` would hit, or None if it succeeds."""
        if call.action == IntentAction.CREATE:
            return self._check_create(call)

        if call.item_id is None:
            return _NOT_FOUND[call.kind]
        row = self._load(session, call.kind, call.item_id)
        if row is None:
            return _NOT_FOUND[call.kind]

        identity = normalize_identity(call.identity).identity
        if identity is None:
            return NOT_ALLOWED
        if row.closed and StoreCapability.EXPLICIT_CLOSE in self.capabilities:
            return _CLOSED[call.kind]
        if now >= _aware(row.deadline):
            return DEADLINE_PASSED
        if not self._admits(row, call.identity):
            return NOT_ALLOWED
        if call.action == IntentAction.VOTE:
            if call.option_index is None or not 0 <= call.option_index < len(row.options):
                return INVALID_OPTION

        if self._participation(session, row, identity) is not None:
            return _ALREADY[call.kind]
        return None

    @staticmethod
    def _check_create(call: IntentCall) -> str | None:
        draft = call.draft
        if draft is None or not draft.title.strip() or draft.duration_seconds < 1:
            return _INVALID[call.kind]
        if draft.kind == ItemKind.POLL:
            if len(draft.options) < 2 or any(not o.strip() for o in draft.options):
                return _INVALID[call.kind]
        if draft.visibility == Visibility.PRIVATE and not build_allow_list(draft.allow_list):
            return _INVALID[call.kind]
        return None

    @staticmethod
    def _admits(row: ItemDB, identity: str | None) -> bool:
        if row.visibility == Visibility.PUBLIC.value:
            return True
        check = normalize_identity(identity)
        if not check.is_valid:
            return False
        return any(entry.identity == check.identity for entry in row.allow_list)

    def _apply(self, session: Session, call: IntentCall, intent_hash: str, now: datetime) -> int:
        if call.action == IntentAction.CREATE:
            draft = call.draft
            last = session.execute(
                select(func.max(ItemDB.item_number)).where(ItemDB.kind == draft.kind.value)
            ).scalar()
            number = (last or 0) + 1
            row = ItemDB(
                kind=draft.kind.value,
                item_number=number,
                title=draft.title.strip(),
                description=draft.description,
                options=list(draft.options),
                created_at=now,
                deadline=now + timedelta(seconds=draft.duration_seconds),
                visibility=draft.visibility.value,
                closed=False,
                creator=normalize_identity(call.identity).identity,
                intent_hash=intent_hash,
            )
            if draft.visibility == Visibility.PRIVATE:
                row.allow_list = [
                    AllowListEntryDB(identity=identity)
                    for identity in build_allow_list(draft.allow_list)
                ]
            session.add(row)
            session.flush()
            return number

        row = self._load(session, call.kind, call.item_id)
        session.add(
            ParticipationDB(
                item_pk=row.pk,
                identity=normalize_identity(call.identity).identity,
                option_index=call.option_index if call.action == IntentAction.VOTE else None,
                recorded_at=now,
                intent_hash=intent_hash,
            )
        )
        session.flush()
        return row.item_number

    # ── Internal ───────────────────────────────────────────────

    @staticmethod
    def _load(session: Session, kind: ItemKind, item_id: int) -> ItemDB | None:
        return session.execute(
            select(ItemDB).where(
                ItemDB.kind == kind.value, ItemDB.item_number == item_id
            )
        ).scalar_one_or_none()

    @staticmethod
    def _participation(session: Session, row: ItemDB, identity: str) -> ParticipationDB | None:
        return session.execute(
            select(ParticipationDB).where(
                ParticipationDB.item_pk == row.pk,
                ParticipationDB.identity == identity,
            )
        ).scalar_one_or_none()

    def _project(self, session: Session, row: ItemDB) -> ParticipationItem:
        """Build the read-through projection of ``row`` with fresh counts."""
        common = {
            "id": row.item_number,
            "title": row.title,
            "created_at": _aware(row.created_at),
            "deadline": _aware(row.deadline),
            "visibility": Visibility(row.visibility),
            "allow_list": [entry.identity for entry in row.allow_list],
            "closed_flag": (
                row.closed if StoreCapability.EXPLICIT_CLOSE in self.capabilities else None
            ),
        }

        if row.kind == ItemKind.PETITION.value:
            count = session.execute(
                select(func.count())
                .select_from(ParticipationDB)
                .where(ParticipationDB.item_pk == row.pk)
            ).scalar() or 0
            return Petition(description=row.description, signature_count=count, **common)

        counts = [0] * len(row.options)
        grouped = session.execute(
            select(ParticipationDB.option_index, func.count())
            .where(ParticipationDB.item_pk == row.pk)
            .group_by(ParticipationDB.option_index)
        ).all()
        for option_index, count in grouped:
            counts[option_index] = count
        return Poll(options=list(row.options), vote_counts=counts, **common)

    @staticmethod
    def _intent_hash(call: IntentCall, nonce: int) -> str:
        """
        Transaction-style hash of an intent.

        Hash = SHA-256(canonical_json(call) || nonce), rendered 0x-prefixed.
        """
        canonical = json.dumps(call.model_dump(mode="json"), sort_keys=True, default=str)
        digest = hashlib.sha256(f"{canonical}:{nonce}".encode("utf-8")).hexdigest()
        return "0x" + digest
