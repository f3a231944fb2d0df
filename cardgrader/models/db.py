"""
SQLAlchemy ORM models for persistent storage.

A collection is stored as one JSON document per owner, mirroring the
single-file layout of the remote document store.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Integer, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class CardCollectionDB(Base):
    """
    A user's graded card collection.

    `cards` holds the serialized card records in collection order.
    """

    __tablename__ = "card_collections"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner: Mapped[str] = mapped_column(String(255), index=True)
    cards: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<CardCollectionDB(id={self.id}, owner={self.owner}, cards={len(self.cards)})>"
