"""
CardGrader services.

Card lifecycle, background dispatch, retries and persistence.
"""

from cardgrader.services.collection_store import (
    CollectionSnapshot,
    CollectionStore,
    DatabaseCollectionStore,
    DriveCollectionStore,
)
from cardgrader.services.credentials import (
    CredentialPrompt,
    CredentialProvider,
    SettingsCredentialProvider,
    StaticTokenProvider,
)
from cardgrader.services.dispatcher import CardProcessor
from cardgrader.services.grading_service import AnthropicGradingService, GradingService
from cardgrader.services.local_cache import LocalSnapshotCache
from cardgrader.services.retry_policy import RetryPolicy

__all__ = [
    "AnthropicGradingService",
    "CardProcessor",
    "CollectionSnapshot",
    "CollectionStore",
    "CredentialPrompt",
    "CredentialProvider",
    "DatabaseCollectionStore",
    "DriveCollectionStore",
    "GradingService",
    "LocalSnapshotCache",
    "RetryPolicy",
    "SettingsCredentialProvider",
    "StaticTokenProvider",
]
