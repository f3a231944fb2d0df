from cardgrader.models.card import (
    IN_PROGRESS_STATUSES,
    CardRecord,
    CardStatus,
    ChallengeDirection,
    GradeDetails,
    MarketValue,
    SourceLink,
    SubGrade,
    new_card,
)
from cardgrader.models.failure import (
    ApiResponse,
    CardNotFoundError,
    CredentialMissingError,
    FailureDetail,
    FailureKind,
    GradingTimeoutError,
    InvalidGradeError,
    InvalidTransitionError,
    KnownError,
    MalformedResponseError,
    OutcomeType,
    PermissionDeniedError,
    PersistenceError,
    QuotaExhaustedError,
    TransientServiceError,
)
from cardgrader.models.grading import (
    ChallengeOutcome,
    GradingOutcome,
    Identification,
    MarketValueOutcome,
    Outcome,
    PreliminaryGrade,
    RegeneratedAnalysis,
    SummaryOutcome,
)

__all__ = [
    "ApiResponse",
    "CardNotFoundError",
    "CardRecord",
    "CardStatus",
    "ChallengeDirection",
    "ChallengeOutcome",
    "CredentialMissingError",
    "FailureDetail",
    "FailureKind",
    "GradeDetails",
    "GradingOutcome",
    "GradingTimeoutError",
    "IN_PROGRESS_STATUSES",
    "Identification",
    "InvalidGradeError",
    "InvalidTransitionError",
    "KnownError",
    "MalformedResponseError",
    "MarketValue",
    "MarketValueOutcome",
    "Outcome",
    "OutcomeType",
    "PermissionDeniedError",
    "PersistenceError",
    "PreliminaryGrade",
    "QuotaExhaustedError",
    "RegeneratedAnalysis",
    "SourceLink",
    "SubGrade",
    "SummaryOutcome",
    "TransientServiceError",
    "new_card",
]
