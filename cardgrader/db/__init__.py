from cardgrader.db.operations import (
    create_collection,
    get_collection_by_id,
    get_collection_by_owner,
    replace_collection_cards,
)

__all__ = [
    "create_collection",
    "get_collection_by_id",
    "get_collection_by_owner",
    "replace_collection_cards",
]
