"""
Builds a fully wired `CardProcessor` from settings.
"""

import logging

from cardgrader.config import Settings
from cardgrader.services.collection_store import (
    CollectionStore,
    DatabaseCollectionStore,
    DriveCollectionStore,
)
from cardgrader.services.credentials import (
    CredentialPrompt,
    PromptCallback,
    SettingsCredentialProvider,
    StaticTokenProvider,
)
from cardgrader.services.dispatcher import CardProcessor
from cardgrader.services.grading_service import AnthropicGradingService
from cardgrader.services.local_cache import LocalSnapshotCache
from cardgrader.services.retry_policy import RetryPolicy

logger = logging.getLogger(__name__)


def build_collection_store(settings: Settings) -> CollectionStore | None:
    """Remote store selected by `collection_backend`, or None for local-only."""
    if settings.collection_backend == "drive":
        return DriveCollectionStore(StaticTokenProvider(settings.drive_access_token))
    if settings.collection_backend == "database":
        # Imported here so other backends need no database driver
        from cardgrader.db.database import async_session_factory

        return DatabaseCollectionStore(async_session_factory, settings.collection_owner)
    return None


def build_processor(
    settings: Settings,
    *,
    credentials: SettingsCredentialProvider | None = None,
    on_credential_prompt: PromptCallback | None = None,
    standalone: bool = False,
) -> CardProcessor:
    """
    Wire the processor.

    A standalone processor has neither remote store nor local snapshot, so
    one-off runs never overwrite the application's saved collection.
    """
    credentials = credentials or SettingsCredentialProvider(settings)
    store = None if standalone else build_collection_store(settings)
    cache = None
    if not standalone and settings.local_cache_path:
        cache = LocalSnapshotCache(settings.local_cache_path)
    logger.info(
        "PROCESSOR_CONFIGURED",
        extra={
            "backend": settings.collection_backend if store else "none",
            "concurrency_limit": settings.concurrency_limit,
        },
    )
    return CardProcessor(
        AnthropicGradingService.from_settings(settings, credentials),
        store=store,
        cache=cache,
        policy=RetryPolicy.from_settings(settings),
        concurrency_limit=settings.concurrency_limit,
        save_debounce_seconds=settings.save_debounce_seconds,
        flush_interval_seconds=settings.flush_interval_seconds,
        credential_prompt=CredentialPrompt(on_credential_prompt),
    )
