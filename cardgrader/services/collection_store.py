"""
Remote persistence for the whole card collection.

The collection is always read and written as one document. `save()` with
no location creates the document; with a location it overwrites it. There
is no transactional guarantee across writers: the last save wins.

Implementations:
- DriveCollectionStore: JSON file in the user's Google Drive (httpx)
- DatabaseCollectionStore: one JSON row per owner (async SQLAlchemy)
"""

import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Protocol

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cardgrader.db.operations import (
    create_collection,
    get_collection_by_id,
    get_collection_by_owner,
    replace_collection_cards,
)
from cardgrader.models.card import CardRecord, dump_records, load_records
from cardgrader.models.failure import CredentialMissingError, PersistenceError
from cardgrader.services.credentials import CredentialProvider

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CollectionSnapshot:
    """A loaded collection and the handle to save it back to."""

    location: str | None
    records: list[CardRecord] = field(default_factory=list)


class CollectionStore(Protocol):
    async def load(self) -> CollectionSnapshot: ...

    async def save(self, location: str | None, records: Sequence[CardRecord]) -> str: ...


# =============================================================================
# GOOGLE DRIVE DOCUMENT STORE
# =============================================================================

DRIVE_API_URL = "https://www.googleapis.com/drive/v3"
UPLOAD_API_URL = "https://www.googleapis.com/upload/drive/v3"
COLLECTION_FILE_NAME = "card_collection.json"
REQUEST_TIMEOUT = 30.0


class DriveCollectionStore:
    """
    Stores the collection as `card_collection.json` in Google Drive.

    New files go to the private app data folder; an existing file is
    updated in place wherever it lives.
    """

    def __init__(self, credentials: CredentialProvider, client: httpx.AsyncClient | None = None):
        self._credentials = credentials
        self._client = client

    async def _headers(self) -> dict[str, str]:
        token = await self._credentials.get_token(interactive=False)
        if not token:
            raise CredentialMissingError(detail="no Drive access token")
        return {"Authorization": f"Bearer {token}"}

    async def _request(self, method: str, url: str, **kwargs: object) -> httpx.Response:
        if self._client is not None:
            return await self._client.request(method, url, **kwargs)  # type: ignore[arg-type]
        async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT) as client:
            return await client.request(method, url, **kwargs)  # type: ignore[arg-type]

    async def find_file_id(self) -> str | None:
        """Most recently modified collection file, searching drive and app data."""
        headers = await self._headers()
        params = {
            "spaces": "drive,appDataFolder",
            "fields": "files(id,name,modifiedTime)",
            "q": f"name='{COLLECTION_FILE_NAME}' and trashed=false",
            "orderBy": "modifiedTime desc",
            "pageSize": "10",
        }
        try:
            response = await self._request(
                "GET", f"{DRIVE_API_URL}/files", params=params, headers=headers
            )
        except httpx.HTTPError as e:
            logger.error("DRIVE_SEARCH_FAILED", extra={"error": str(e)})
            return None
        if response.status_code != 200:
            logger.error("DRIVE_SEARCH_FAILED", extra={"status_code": response.status_code})
            return None

        try:
            files = response.json().get("files") or []
            return files[0]["id"] if files else None
        except (json.JSONDecodeError, AttributeError, KeyError, TypeError):
            logger.error("DRIVE_SEARCH_INVALID", extra={"body": response.text[:200]})
            return None

    async def load(self) -> CollectionSnapshot:
        """
        Download the collection.

        A missing file, failed download or non-list document yields an empty
        collection rather than an error.
        """
        file_id = await self.find_file_id()
        if not file_id:
            return CollectionSnapshot(location=None)

        headers = await self._headers()
        try:
            response = await self._request(
                "GET",
                f"{DRIVE_API_URL}/files/{file_id}",
                params={"alt": "media"},
                headers=headers,
            )
        except httpx.HTTPError as e:
            logger.error("DRIVE_DOWNLOAD_FAILED", extra={"file_id": file_id, "error": str(e)})
            return CollectionSnapshot(location=file_id)
        if response.status_code != 200:
            logger.error(
                "DRIVE_DOWNLOAD_FAILED",
                extra={"file_id": file_id, "status_code": response.status_code},
            )
            return CollectionSnapshot(location=file_id)

        try:
            documents = response.json()
        except json.JSONDecodeError:
            logger.error("DRIVE_COLLECTION_INVALID", extra={"file_id": file_id})
            return CollectionSnapshot(location=file_id)
        if not isinstance(documents, list):
            return CollectionSnapshot(location=file_id)
        return CollectionSnapshot(location=file_id, records=load_records(documents))

    async def save(self, location: str | None, records: Sequence[CardRecord]) -> str:
        """
        Create or overwrite the collection file.

        Raises:
            CredentialMissingError: No access token available
            PersistenceError: Upload failed
        """
        headers = await self._headers()
        metadata: dict[str, object] = {
            "name": COLLECTION_FILE_NAME,
            "mimeType": "application/json",
        }
        if not location:
            metadata["parents"] = ["appDataFolder"]

        files = {
            "metadata": (None, json.dumps(metadata), "application/json"),
            "file": (
                COLLECTION_FILE_NAME,
                json.dumps(dump_records(records)),
                "application/json",
            ),
        }
        if location:
            method, url = "PATCH", f"{UPLOAD_API_URL}/files/{location}"
        else:
            method, url = "POST", f"{UPLOAD_API_URL}/files"

        try:
            response = await self._request(
                method, url, params={"uploadType": "multipart"}, headers=headers, files=files
            )
        except httpx.HTTPError as e:
            raise PersistenceError("Failed to save collection to Google Drive.", str(e)) from e
        if response.status_code >= 400:
            raise PersistenceError(
                "Failed to save collection to Google Drive.",
                detail=f"HTTP {response.status_code}: {response.text[:200]}",
            )
        try:
            return str(response.json()["id"])
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            raise PersistenceError(
                "Google Drive did not return the saved file id.",
                detail=response.text[:200],
            ) from e


# =============================================================================
# DATABASE STORE
# =============================================================================


class DatabaseCollectionStore:
    """Stores the collection as a JSON row keyed by owner; location is the row id."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], owner: str):
        self._session_factory = session_factory
        self._owner = owner

    async def load(self) -> CollectionSnapshot:
        try:
            async with self._session_factory() as session:
                row = await get_collection_by_owner(session, self._owner)
        except SQLAlchemyError as e:
            raise PersistenceError("Failed to load collection.", str(e)) from e

        if row is None:
            return CollectionSnapshot(location=None)
        return CollectionSnapshot(location=str(row.id), records=load_records(row.cards or []))

    async def save(self, location: str | None, records: Sequence[CardRecord]) -> str:
        documents = dump_records(records)
        try:
            row_id = int(location) if location else None
        except ValueError as e:
            raise PersistenceError("Invalid collection location.", detail=location) from e

        try:
            async with self._session_factory() as session:
                row = await get_collection_by_id(session, row_id) if row_id is not None else None
                if row is None:
                    row = await create_collection(session, self._owner, documents)
                else:
                    row = await replace_collection_cards(session, row, documents)
                await session.commit()
                return str(row.id)
        except SQLAlchemyError as e:
            raise PersistenceError("Failed to save collection.", str(e)) from e
