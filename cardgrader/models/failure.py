"""
Failure classification for grading operations and the HTTP surface.

Every failure the pipeline can observe is a `KnownError` subclass carrying
a `FailureKind`. The kind alone decides whether the retry policy may try
the same operation again:

- Retryable: transient service trouble, malformed model output, timeouts
- Terminal: missing/invalid credential, permission denied, quota exhausted

Per-card failures end up in the card's `error_message`; they never abort
the dispatcher. Persistence failures are logged and swallowed by their
callers.
"""

import asyncio
from enum import Enum
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, Field


class FailureKind(str, Enum):
    """Classification of failure types."""

    # Retryable grading-service failures
    TRANSIENT_SERVICE = "transient_service"
    MALFORMED_RESPONSE = "malformed_response"
    TIMEOUT = "timeout"

    # Terminal, need user action
    CREDENTIAL_MISSING = "credential_missing"
    PERMISSION_DENIED = "permission_denied"
    QUOTA_EXHAUSTED = "quota_exhausted"

    # Storage
    PERSISTENCE_FAILURE = "persistence_failure"

    # User intent
    INVALID_INPUT = "invalid_input"
    INVALID_TRANSITION = "invalid_transition"
    NOT_FOUND = "not_found"

    UNKNOWN = "unknown"


RETRYABLE_KINDS: frozenset[FailureKind] = frozenset(
    {
        FailureKind.TRANSIENT_SERVICE,
        FailureKind.MALFORMED_RESPONSE,
        FailureKind.TIMEOUT,
    }
)


class OutcomeType(str, Enum):
    SUCCESS = "success"
    KNOWN_FAILURE = "known_failure"
    UNKNOWN_FAILURE = "unknown_failure"


T = TypeVar("T")


class FailureDetail(BaseModel):
    """Detailed information about a failure."""

    kind: FailureKind = Field(..., description="Classification of the failure")
    message: str = Field(..., description="User-appropriate explanation of what went wrong")
    detail: str | None = Field(default=None, description="Additional technical detail")
    suggestion: str | None = Field(default=None, description="Suggested action for the user")


class ApiResponse(BaseModel, Generic[T]):
    """Response envelope for the HTTP endpoints."""

    outcome: OutcomeType
    data: T | None = None
    failure: FailureDetail | None = None

    @classmethod
    def success(cls, data: T) -> "ApiResponse[T]":
        return cls(outcome=OutcomeType.SUCCESS, data=data)

    @classmethod
    def known_failure(
        cls,
        kind: FailureKind,
        message: str,
        detail: str | None = None,
        suggestion: str | None = None,
    ) -> "ApiResponse[Any]":
        return cls(
            outcome=OutcomeType.KNOWN_FAILURE,
            failure=FailureDetail(
                kind=kind,
                message=message,
                detail=detail,
                suggestion=suggestion,
            ),
        )

    @classmethod
    def unknown_failure(cls, detail: str | None = None) -> "ApiResponse[Any]":
        return cls(
            outcome=OutcomeType.UNKNOWN_FAILURE,
            failure=FailureDetail(
                kind=FailureKind.UNKNOWN,
                message="I failed and I don't know why. Try again in a moment.",
                detail=detail,
                suggestion="If this persists, please report the issue.",
            ),
        )


class KnownError(Exception):
    """
    Base class for failures the system can explain.

    Subclass this for errors where the system knows exactly what went wrong.
    """

    def __init__(
        self,
        kind: FailureKind,
        message: str,
        detail: str | None = None,
        suggestion: str | None = None,
        status_code: int = 400,
    ):
        self.kind = kind
        self.message = message
        self.detail = detail
        self.suggestion = suggestion
        self.status_code = status_code
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    def to_response(self) -> ApiResponse[Any]:
        """Convert to an ApiResponse."""
        return ApiResponse.known_failure(
            kind=self.kind,
            message=self.message,
            detail=self.detail,
            suggestion=self.suggestion,
        )


# =============================================================================
# GRADING SERVICE FAILURES
# =============================================================================


class TransientServiceError(KnownError):
    """The model is overloaded, busy or temporarily unavailable."""

    def __init__(self, detail: str | None = None):
        super().__init__(
            kind=FailureKind.TRANSIENT_SERVICE,
            message=(
                "The AI model is currently busy. "
                "If this persists, please try again in a few minutes."
            ),
            detail=detail,
            suggestion="Retry the card later.",
            status_code=503,
        )


class MalformedResponseError(KnownError):
    """The model answered with empty or unparseable output."""

    def __init__(self, message: str, detail: str | None = None):
        super().__init__(
            kind=FailureKind.MALFORMED_RESPONSE,
            message=message,
            detail=detail,
            suggestion="Try capturing the card again with a clearer photo.",
            status_code=502,
        )


class GradingTimeoutError(KnownError):
    """A single grading call exceeded its hard time limit."""

    def __init__(self, context: str, timeout: float | None = None):
        self.context = context
        self.timeout = timeout
        limit = f" after {timeout:g}s" if timeout is not None else ""
        super().__init__(
            kind=FailureKind.TIMEOUT,
            message=f"Timed out{limit} while {context}.",
            detail=f"attempt timeout: {timeout:g}s" if timeout is not None else None,
            suggestion="Retry the card; the service may be slow right now.",
            status_code=504,
        )


class CredentialMissingError(KnownError):
    """No usable API key or access token is available."""

    def __init__(self, detail: str | None = None):
        super().__init__(
            kind=FailureKind.CREDENTIAL_MISSING,
            message="API_KEY_MISSING",
            detail=detail,
            suggestion="Provide a valid API key, then retry the card.",
            status_code=401,
        )


class PermissionDeniedError(KnownError):
    """The credential is valid but not allowed to use the service."""

    def __init__(self, detail: str | None = None):
        super().__init__(
            kind=FailureKind.PERMISSION_DENIED,
            message="Permission denied by the grading service.",
            detail=detail,
            suggestion="Check that the API key's account has access to the model.",
            status_code=403,
        )


class QuotaExhaustedError(KnownError):
    """Rate limit or usage quota exhausted on the provider account."""

    def __init__(self, detail: str | None = None):
        super().__init__(
            kind=FailureKind.QUOTA_EXHAUSTED,
            message="The grading service quota has been exhausted.",
            detail=detail,
            suggestion="Check billing and usage limits on the provider account.",
            status_code=429,
        )


# =============================================================================
# STORAGE AND USER-INTENT FAILURES
# =============================================================================


class PersistenceError(KnownError):
    """Reading or writing the collection failed."""

    def __init__(self, message: str, detail: str | None = None):
        super().__init__(
            kind=FailureKind.PERSISTENCE_FAILURE,
            message=message,
            detail=detail,
            status_code=502,
        )


class InvalidTransitionError(KnownError):
    """A user action is not allowed from the card's current status."""

    def __init__(self, card_id: str, status: str, action: str):
        self.card_id = card_id
        self.status = status
        self.action = action
        super().__init__(
            kind=FailureKind.INVALID_TRANSITION,
            message=f"Cannot {action} a card that is {status}.",
            detail=f"card {card_id}: {action} from {status}",
            status_code=409,
        )


class InvalidGradeError(KnownError):
    def __init__(self, grade: float):
        self.grade = grade
        super().__init__(
            kind=FailureKind.INVALID_INPUT,
            message=f"{grade} is not a valid grade.",
            suggestion="Use a grade from 1 to 10 in half-point steps.",
            status_code=422,
        )


class CardNotFoundError(KnownError):
    def __init__(self, card_id: str):
        self.card_id = card_id
        super().__init__(
            kind=FailureKind.NOT_FOUND,
            message=f"Card {card_id} not found.",
            status_code=404,
        )


def is_retryable(error: BaseException) -> bool:
    """Whether the retry policy may attempt the same operation again."""
    if isinstance(error, KnownError):
        return error.retryable
    return isinstance(error, asyncio.TimeoutError)


def describe_failure(error: BaseException) -> str:
    """Non-empty message suitable for a card's `error_message`."""
    if isinstance(error, KnownError):
        return error.message
    return str(error) or type(error).__name__
