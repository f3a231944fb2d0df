"""
Pure card lifecycle transforms.

Maps (current status, operation outcome | failure) to the next card value.
Nothing here performs I/O or touches shared state: every function takes
values and returns new values; the dispatcher applies them through
its single update channel.

Lifecycle:

    grading ──► needs_review ──accept──► generating_summary ──► fetching_value ──► reviewed
                  │    ▲                                              ▲
          challenge    └── challenging                                │
                                                                      │
    manual override ──► regenerating_summary ─────────────────────────┘

Any in-progress status falls to grading_failed on a terminal failure.
"""

import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from enum import Enum

from cardgrader.models.card import (
    IN_PROGRESS_STATUSES,
    CardRecord,
    CardStatus,
    ChallengeDirection,
    GradeDetails,
    is_complete_review,
    is_valid_grade,
)
from cardgrader.models.failure import (
    CardNotFoundError,
    InvalidGradeError,
    InvalidTransitionError,
    describe_failure,
)
from cardgrader.models.grading import (
    ChallengeOutcome,
    GradingOutcome,
    MarketValueOutcome,
    Outcome,
    RegeneratedAnalysis,
    SummaryOutcome,
)

logger = logging.getLogger(__name__)

Records = tuple[CardRecord, ...]
Transform = Callable[[Records], Records]
CardChange = Callable[[CardRecord], CardRecord]

RECOVERED_MESSAGE = "Recovered after crash."


class Operation(str, Enum):
    """Grading-service work implied by an in-progress status."""

    GRADE = "grade"
    SUMMARIZE = "summarize"
    CHALLENGE = "challenge"
    REGENERATE = "regenerate"
    MARKET_VALUE = "market_value"


@dataclass(frozen=True, slots=True)
class Step:
    operation: Operation
    next_status: CardStatus
    outcome_type: type[Outcome]


STEPS: dict[CardStatus, Step] = {
    CardStatus.GRADING: Step(Operation.GRADE, CardStatus.NEEDS_REVIEW, GradingOutcome),
    CardStatus.GENERATING_SUMMARY: Step(
        Operation.SUMMARIZE, CardStatus.FETCHING_VALUE, SummaryOutcome
    ),
    CardStatus.CHALLENGING: Step(Operation.CHALLENGE, CardStatus.NEEDS_REVIEW, ChallengeOutcome),
    CardStatus.REGENERATING_SUMMARY: Step(
        Operation.REGENERATE, CardStatus.FETCHING_VALUE, RegeneratedAnalysis
    ),
    CardStatus.FETCHING_VALUE: Step(
        Operation.MARKET_VALUE, CardStatus.REVIEWED, MarketValueOutcome
    ),
}


def operation_for(status: CardStatus) -> Operation | None:
    """Operation pending for a status, or None when nothing runs."""
    step = STEPS.get(status)
    return step.operation if step else None


# =============================================================================
# OPERATION RESULTS
# =============================================================================


def _merged_fields(outcome: Outcome) -> dict[str, object]:
    if isinstance(outcome, GradingOutcome):
        return {
            **outcome.identification.model_dump(),
            "details": outcome.grade.details,
            "overall_grade": outcome.grade.overall_grade,
            "grade_name": outcome.grade.grade_name,
        }
    if isinstance(outcome, SummaryOutcome):
        return {"summary": outcome.summary, "summary_pending": False}
    if isinstance(outcome, ChallengeOutcome):
        return {
            "details": outcome.details,
            "overall_grade": outcome.overall_grade,
            "grade_name": outcome.grade_name,
            "summary": outcome.summary,
            "summary_pending": False,
            "challenge_direction": None,
        }
    if isinstance(outcome, RegeneratedAnalysis):
        return {"details": outcome.details, "summary": outcome.summary, "summary_pending": False}
    return {"market_value": outcome.market_value}


def apply_success(record: CardRecord, outcome: Outcome) -> CardRecord:
    """
    Merge a successful operation's fields and advance the status.

    Statuses without an operation are returned unchanged. A value lookup on
    a card that was never summarized returns it to needs_review rather than
    marking it reviewed without a summary.

    Raises:
        InvalidTransitionError: If the outcome does not belong to the status
    """
    step = STEPS.get(record.status)
    if step is None:
        return record
    if not isinstance(outcome, step.outcome_type):
        raise InvalidTransitionError(
            record.id, record.status.value, f"apply {type(outcome).__name__} to"
        )

    updated = record.with_changes(
        status=step.next_status,
        error_message=None,
        failed_from=None,
        **_merged_fields(outcome),
    )
    if updated.status == CardStatus.REVIEWED and not is_complete_review(updated):
        updated = updated.with_changes(status=CardStatus.NEEDS_REVIEW)
    return updated


def apply_failure(record: CardRecord, error: BaseException) -> CardRecord:
    """Mark a card failed, remembering which step to resume on retry."""
    return record.with_changes(
        status=CardStatus.GRADING_FAILED,
        failed_from=record.status if record.is_in_progress else record.failed_from,
        error_message=describe_failure(error),
    )


# =============================================================================
# USER INTENT
# =============================================================================


def _require(record: CardRecord, allowed: Iterable[CardStatus], action: str) -> None:
    if record.status not in allowed:
        raise InvalidTransitionError(record.id, record.status.value, action)


def _check_grade(grade: float) -> None:
    if not is_valid_grade(grade):
        raise InvalidGradeError(grade)


def accept_grade(record: CardRecord) -> CardRecord:
    _require(record, {CardStatus.NEEDS_REVIEW}, "accept the grade of")
    return record.with_changes(status=CardStatus.GENERATING_SUMMARY, summary_pending=True)


def challenge_grade(record: CardRecord, direction: ChallengeDirection) -> CardRecord:
    _require(record, {CardStatus.NEEDS_REVIEW, CardStatus.REVIEWED}, "challenge")
    return record.with_changes(status=CardStatus.CHALLENGING, challenge_direction=direction)


def manual_override(
    record: CardRecord,
    grade: float,
    grade_name: str,
    details: GradeDetails | None = None,
) -> CardRecord:
    """Set a user-chosen grade and have the analysis rewritten to justify it."""
    _require(
        record,
        {CardStatus.NEEDS_REVIEW, CardStatus.REVIEWED, CardStatus.GRADING_FAILED},
        "override the grade of",
    )
    _check_grade(grade)
    changes: dict[str, object] = {
        "status": CardStatus.REGENERATING_SUMMARY,
        "overall_grade": grade,
        "grade_name": grade_name,
        "summary_pending": True,
        "error_message": None,
        "failed_from": None,
    }
    if details is not None:
        changes["details"] = details
    return record.with_changes(**changes)


def manual_entry(
    record: CardRecord,
    grade: float,
    grade_name: str,
    summary: str,
    details: GradeDetails | None = None,
) -> CardRecord:
    """Record a grade entered by hand, bypassing the grading service."""
    _require(
        record,
        {CardStatus.NEEDS_REVIEW, CardStatus.REVIEWED, CardStatus.GRADING_FAILED},
        "enter a grade for",
    )
    _check_grade(grade)
    changes: dict[str, object] = {
        "status": CardStatus.REVIEWED,
        "overall_grade": grade,
        "grade_name": grade_name,
        "summary": summary,
        "summary_pending": False,
        "error_message": None,
        "failed_from": None,
    }
    if details is not None:
        changes["details"] = details
    return record.with_changes(**changes)


def request_market_value(record: CardRecord) -> CardRecord:
    _require(record, {CardStatus.NEEDS_REVIEW, CardStatus.REVIEWED}, "look up the value of")
    return record.with_changes(status=CardStatus.FETCHING_VALUE)


def retry_failed(record: CardRecord) -> CardRecord:
    """Send a failed card back to the step that failed."""
    _require(record, {CardStatus.GRADING_FAILED}, "retry")
    origin = record.failed_from if record.failed_from in IN_PROGRESS_STATUSES else None
    return record.with_changes(
        status=origin or CardStatus.GRADING,
        error_message=None,
        failed_from=None,
    )


# =============================================================================
# COLLECTION TRANSFORMS
# =============================================================================


def find_card(records: Sequence[CardRecord], card_id: str) -> CardRecord | None:
    return next((record for record in records if record.id == card_id), None)


def add_card(records: Records, card: CardRecord) -> Records:
    """Newest cards first, matching the default timestamp ordering."""
    return (card, *records)


def remove_card(records: Records, card_id: str) -> Records:
    if find_card(records, card_id) is None:
        raise CardNotFoundError(card_id)
    return tuple(record for record in records if record.id != card_id)


def replace_card(
    records: Records,
    card_id: str,
    change: CardChange,
) -> Records:
    """
    Apply `change` to one card, keeping collection order.

    Raises:
        CardNotFoundError: If no card has `card_id`
    """
    if find_card(records, card_id) is None:
        raise CardNotFoundError(card_id)
    return tuple(change(record) if record.id == card_id else record for record in records)


def recover_after_crash(records: Iterable[CardRecord]) -> Records:
    """
    Reclassify interrupted work as failed.

    The outcome of a request in flight when the process died is unknown,
    so it is never resumed silently.
    """
    recovered = []
    for record in records:
        if record.is_in_progress:
            record = record.with_changes(
                status=CardStatus.GRADING_FAILED,
                failed_from=record.status,
                error_message=RECOVERED_MESSAGE,
            )
        recovered.append(record)
    return tuple(recovered)


def retry_all_failed(records: Records) -> Records:
    return tuple(
        retry_failed(record) if record.status == CardStatus.GRADING_FAILED else record
        for record in records
    )


def _same_capture(a: CardRecord, b: CardRecord) -> bool:
    return (
        a.timestamp == b.timestamp
        and a.front_image == b.front_image
        and a.back_image == b.back_image
    )


def merge_collections(local: Iterable[CardRecord], remote: Iterable[CardRecord]) -> Records:
    """
    Combine two independently obtained copies of a collection.

    Cards are matched by id, or by identical capture (same timestamp and
    images) when the ids differ. Unsynced local edits win over the remote
    copy; otherwise the remote copy wins. Result is newest first.
    """
    merged: dict[str, CardRecord] = {record.id: record for record in remote}

    for record in local:
        match = merged.get(record.id)
        if match is None:
            match = next((r for r in merged.values() if _same_capture(r, record)), None)
            if match is not None:
                logger.info(
                    "DUPLICATE_CARD_MERGED",
                    extra={"local_id": record.id, "remote_id": match.id},
                )
        if match is None:
            merged[record.id] = record
        elif not record.is_synced:
            del merged[match.id]
            merged[record.id] = record

    return tuple(sorted(merged.values(), key=lambda r: r.timestamp, reverse=True))
