"""
Reference Ledger — SQLAlchemy models for petitions, polls and participation.

These tables back the local reference ledger used for development and
tests. Tallies are never stored: they are counted from the participation
rows on every read. The unique (item, identity) constraint is the
ledger's authoritative one-signature/one-vote guarantee.
"""

from __future__ import annotations

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, relationship


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all ledger models."""
    pass


class ItemDB(Base):
    """A confirmed petition or poll."""

    __tablename__ = "items"

    pk = Column(Integer, primary_key=True, autoincrement=True)
    kind = Column(String(20), nullable=False, comment="'petition' or 'poll'")
    item_number = Column(
        Integer, nullable=False,
        comment="Ledger-assigned id, sequential per kind starting at 1",
    )
    title = Column(Text, nullable=False, comment="Petition title or poll question")
    description = Column(Text, nullable=False, default="")
    options = Column(JSON, nullable=False, default=list, comment="Poll option labels")
    created_at = Column(DateTime(timezone=True), nullable=False)
    deadline = Column(DateTime(timezone=True), nullable=False)
    visibility = Column(String(10), nullable=False, default="public")
    closed = Column(
        Boolean, nullable=False, default=False,
        comment="Administrative early closure",
    )
    creator = Column(String(42), nullable=True)
    intent_hash = Column(String(66), nullable=False, unique=True)

    allow_list = relationship(
        "AllowListEntryDB", back_populates="item", cascade="all, delete-orphan"
    )
    participations = relationship(
        "ParticipationDB", back_populates="item", cascade="all, delete-orphan"
    )

    __table_args__ = (
        UniqueConstraint("kind", "item_number", name="uq_item_kind_number"),
        Index("ix_item_kind_deadline", "kind", "deadline"),
    )

    def __repr__(self) -> str:
        return f"<Item {self.kind}#{self.item_number} title={self.title[:24]!r}>"


class AllowListEntryDB(Base):
    """One normalized identity admitted to a PRIVATE item."""

    __tablename__ = "allow_list_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    item_pk = Column(Integer, ForeignKey("items.pk"), nullable=False)
    identity = Column(String(42), nullable=False)

    item = relationship("ItemDB", back_populates="allow_list")

    __table_args__ = (
        UniqueConstraint("item_pk", "identity", name="uq_allow_list_item_identity"),
    )


class ParticipationDB(Base):
    """A confirmed signature (option_index NULL) or vote."""

    __tablename__ = "participations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    item_pk = Column(Integer, ForeignKey("items.pk"), nullable=False)
    identity = Column(String(42), nullable=False)
    option_index = Column(Integer, nullable=True)
    recorded_at = Column(DateTime(timezone=True), nullable=False)
    intent_hash = Column(String(66), nullable=False, unique=True)

    item = relationship("ItemDB", back_populates="participations")

    __table_args__ = (
        UniqueConstraint("item_pk", "identity", name="uq_participation_item_identity"),
        Index("ix_participation_item_option", "item_pk", "option_index"),
    )
