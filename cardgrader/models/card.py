"""
Card records, the unit of work moving through the grading pipeline.

A record is an immutable value. Every change produces a new record through
`CardRecord.with_changes()`, which re-validates the result and clears the
`is_synced` hint. The serialized form uses camelCase keys so stored
collection documents keep the layout existing clients read.
"""

import logging
import time
import uuid
from collections.abc import Iterable
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from cardgrader.config import GRADE_STEP, MAX_GRADE, MIN_GRADE

logger = logging.getLogger(__name__)


class CardStatus(str, Enum):
    """Lifecycle status of a card; determines the pending background operation."""

    GRADING = "grading"
    NEEDS_REVIEW = "needs_review"
    CHALLENGING = "challenging"
    GENERATING_SUMMARY = "generating_summary"
    REGENERATING_SUMMARY = "regenerating_summary"
    FETCHING_VALUE = "fetching_value"
    REVIEWED = "reviewed"
    GRADING_FAILED = "grading_failed"


# Statuses with a pending grading-service operation
IN_PROGRESS_STATUSES: frozenset[CardStatus] = frozenset(
    {
        CardStatus.GRADING,
        CardStatus.CHALLENGING,
        CardStatus.GENERATING_SUMMARY,
        CardStatus.REGENERATING_SUMMARY,
        CardStatus.FETCHING_VALUE,
    }
)


class ChallengeDirection(str, Enum):
    """Direction the user believes the grade should move."""

    HIGHER = "higher"
    LOWER = "lower"


class _WireModel(BaseModel):
    """Immutable model serialized with camelCase keys."""

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
        use_enum_values=False,
    )


class SubGrade(_WireModel):
    grade: float
    notes: str = ""


class GradeDetails(_WireModel):
    """The five sub-grades making up an evaluation."""

    centering: SubGrade
    corners: SubGrade
    edges: SubGrade
    surface: SubGrade
    print_quality: SubGrade


class SourceLink(_WireModel):
    title: str = "Source"
    uri: str


class MarketValue(_WireModel):
    """Recent sold-price range for a graded card."""

    average_price: float = 0.0
    min_price: float = 0.0
    max_price: float = 0.0
    currency: str = "USD"
    notes: str | None = None
    source_urls: list[SourceLink] = Field(default_factory=list)


def is_valid_grade(value: float) -> bool:
    """Check a grade is within the scale and on a half-point step."""
    if not MIN_GRADE <= value <= MAX_GRADE:
        return False
    return (value / GRADE_STEP).is_integer()


class CardRecord(_WireModel):
    """
    One physical card and its grading lifecycle.

    Attributes:
        id: Opaque unique identifier, immutable
        status: Drives which background operation runs next
        front_image: Encoded front image payload (data URL or base64)
        back_image: Encoded back image payload
        timestamp: Creation time in epoch milliseconds
        failed_from: In-progress status a failed card returns to on retry
        is_synced: True only right after a remote save of this exact content
    """

    id: str
    status: CardStatus = CardStatus.GRADING
    front_image: str
    back_image: str
    timestamp: int
    grading_system: str = "NGA"

    # Identification
    name: str | None = None
    team: str | None = None
    year: str | None = None
    set: str | None = None
    company: str | None = None
    card_number: str | None = None
    edition: str | None = None

    # Grading
    details: GradeDetails | None = None
    overall_grade: float | None = None
    grade_name: str | None = None
    summary: str | None = None
    summary_pending: bool = False
    market_value: MarketValue | None = None

    challenge_direction: ChallengeDirection | None = None
    failed_from: CardStatus | None = None
    error_message: str | None = None
    is_synced: bool = False

    @field_validator("overall_grade")
    @classmethod
    def _check_grade(cls, value: float | None) -> float | None:
        if value is not None and not is_valid_grade(value):
            raise ValueError(
                f"overall grade must be between {MIN_GRADE} and {MAX_GRADE} "
                f"in steps of {GRADE_STEP}, got {value}"
            )
        return value

    @property
    def is_in_progress(self) -> bool:
        return self.status in IN_PROGRESS_STATUSES

    def with_changes(self, **changes: Any) -> "CardRecord":
        """
        Return a validated copy with `changes` applied.

        Any local change invalidates the sync hint, so `is_synced` is
        cleared unless explicitly provided.
        """
        changes.setdefault("is_synced", False)
        data = self.model_dump()
        data.update(changes)
        return CardRecord.model_validate(data)

    def to_document(self) -> dict[str, Any]:
        """Serialize for storage (camelCase keys, unset fields omitted)."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def new_card(front_image: str, back_image: str) -> CardRecord:
    """Create a freshly captured card, queued for grading."""
    return CardRecord(
        id=uuid.uuid4().hex,
        status=CardStatus.GRADING,
        front_image=front_image,
        back_image=back_image,
        timestamp=int(time.time() * 1000),
    )


def is_complete_review(record: CardRecord) -> bool:
    """A reviewed card must carry a grade, a designation and a summary."""
    return (
        record.overall_grade is not None
        and record.grade_name is not None
        and record.summary is not None
    )


def dump_records(records: Iterable[CardRecord]) -> list[dict[str, Any]]:
    return [record.to_document() for record in records]


def load_records(documents: Iterable[Any]) -> list[CardRecord]:
    """
    Parse stored card documents.

    Entries that fail validation are skipped and logged; one corrupt card
    must not make the rest of the collection unreadable.
    """
    records: list[CardRecord] = []
    for index, document in enumerate(documents):
        try:
            records.append(CardRecord.model_validate(document))
        except ValidationError as e:
            logger.warning(
                "CARD_DOCUMENT_INVALID",
                extra={"index": index, "errors": e.error_count()},
            )
    return records
