"""
Database CRUD operations for stored card collections.
"""

from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cardgrader.models.db import CardCollectionDB


async def get_collection_by_owner(session: AsyncSession, owner: str) -> CardCollectionDB | None:
    """
    Get the most recently updated collection for an owner.

    Returns None if the owner has never saved one.
    """
    result = await session.execute(
        select(CardCollectionDB)
        .where(CardCollectionDB.owner == owner)
        .order_by(CardCollectionDB.updated_at.desc(), CardCollectionDB.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_collection_by_id(
    session: AsyncSession, collection_id: int
) -> CardCollectionDB | None:
    return await session.get(CardCollectionDB, collection_id)


async def create_collection(
    session: AsyncSession, owner: str, cards: list[dict[str, Any]]
) -> CardCollectionDB:
    collection = CardCollectionDB(owner=owner, cards=cards)
    session.add(collection)
    await session.flush()
    return collection


async def replace_collection_cards(
    session: AsyncSession, collection: CardCollectionDB, cards: list[dict[str, Any]]
) -> CardCollectionDB:
    """Overwrite the stored document; last writer wins."""
    collection.cards = cards
    await session.flush()
    return collection
