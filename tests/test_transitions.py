"""Tests for the card lifecycle transforms."""

import pytest

from cardgrader.models.card import (
    IN_PROGRESS_STATUSES,
    CardStatus,
    ChallengeDirection,
    MarketValue,
    is_complete_review,
)
from cardgrader.models.failure import (
    CardNotFoundError,
    CredentialMissingError,
    InvalidGradeError,
    InvalidTransitionError,
    TransientServiceError,
)
from cardgrader.models.grading import (
    ChallengeOutcome,
    GradingOutcome,
    Identification,
    MarketValueOutcome,
    PreliminaryGrade,
    RegeneratedAnalysis,
    SummaryOutcome,
)
from cardgrader.services import transitions
from cardgrader.services.transitions import (
    RECOVERED_MESSAGE,
    STEPS,
    Operation,
    apply_failure,
    apply_success,
    merge_collections,
    operation_for,
    recover_after_crash,
)
from tests.conftest import make_card, make_details, make_graded_card

GRADING_OUTCOME = GradingOutcome(
    identification=Identification(name="Ken Griffey Jr.", year="1989", card_number="1"),
    grade=PreliminaryGrade(details=make_details(), overall_grade=8.5, grade_name="NM-MT+"),
)


class TestStepTable:
    def test_every_in_progress_status_has_an_operation(self) -> None:
        """Exactly the in-progress statuses map to an operation."""
        assert set(STEPS) == set(IN_PROGRESS_STATUSES)

    def test_settled_statuses_have_no_operation(self) -> None:
        """Review, reviewed and failed cards are never dispatched."""
        assert operation_for(CardStatus.NEEDS_REVIEW) is None
        assert operation_for(CardStatus.REVIEWED) is None
        assert operation_for(CardStatus.GRADING_FAILED) is None
        assert operation_for(CardStatus.GRADING) is Operation.GRADE


class TestApplySuccess:
    def test_grading_moves_to_review(self) -> None:
        """Identification and grade are merged and the card awaits review."""
        updated = apply_success(make_card(), GRADING_OUTCOME)

        assert updated.status == CardStatus.NEEDS_REVIEW
        assert updated.name == "Ken Griffey Jr."
        assert updated.card_number == "1"
        assert updated.overall_grade == 8.5
        assert updated.grade_name == "NM-MT+"
        assert updated.details == make_details()

    def test_summary_moves_to_value_lookup(self) -> None:
        """A written summary clears the pending flag and fetches the value."""
        card = make_graded_card(status=CardStatus.GENERATING_SUMMARY, summary_pending=True)

        updated = apply_success(card, SummaryOutcome(summary="Crisp."))

        assert updated.status == CardStatus.FETCHING_VALUE
        assert updated.summary == "Crisp."
        assert not updated.summary_pending

    def test_challenge_returns_to_review(self) -> None:
        """A re-grade replaces grade, details and summary."""
        card = make_graded_card(
            status=CardStatus.CHALLENGING, challenge_direction=ChallengeDirection.LOWER
        )
        outcome = ChallengeOutcome(
            details=make_details(8.0), overall_grade=8.0, grade_name="NM-MT", summary="Lower."
        )

        updated = apply_success(card, outcome)

        assert updated.status == CardStatus.NEEDS_REVIEW
        assert updated.overall_grade == 8.0
        assert updated.summary == "Lower."
        assert updated.challenge_direction is None

    def test_regenerated_analysis_keeps_manual_grade(self) -> None:
        """Regeneration rewrites the narrative but never the chosen grade."""
        card = make_graded_card(
            status=CardStatus.REGENERATING_SUMMARY, overall_grade=6.0, grade_name="EX-MT"
        )
        outcome = RegeneratedAnalysis(details=make_details(6.0), summary="Soft corners.")

        updated = apply_success(card, outcome)

        assert updated.status == CardStatus.FETCHING_VALUE
        assert updated.overall_grade == 6.0
        assert updated.grade_name == "EX-MT"
        assert updated.summary == "Soft corners."

    def test_value_lookup_completes_review(self) -> None:
        """A summarized card with a market value is reviewed."""
        card = make_graded_card(status=CardStatus.FETCHING_VALUE, summary="Crisp.")
        value = MarketValue(average_price=100.0, min_price=80.0, max_price=120.0)

        updated = apply_success(card, MarketValueOutcome(market_value=value))

        assert updated.status == CardStatus.REVIEWED
        assert updated.market_value == value
        assert is_complete_review(updated)

    def test_value_lookup_without_summary_returns_to_review(self) -> None:
        """A card is never marked reviewed without a summary."""
        card = make_graded_card(status=CardStatus.FETCHING_VALUE)

        updated = apply_success(card, MarketValueOutcome(market_value=MarketValue()))

        assert updated.status == CardStatus.NEEDS_REVIEW
        assert updated.market_value == MarketValue()

    @pytest.mark.parametrize(
        ("status", "outcome"),
        [
            (CardStatus.GRADING, GRADING_OUTCOME),
            (CardStatus.GENERATING_SUMMARY, SummaryOutcome(summary="Crisp.")),
            (CardStatus.FETCHING_VALUE, MarketValueOutcome(market_value=MarketValue())),
        ],
    )
    def test_same_input_same_output(self, status: CardStatus, outcome) -> None:
        """Applying an outcome to two copies of a card gives equal results."""
        card = make_graded_card(status=status, summary="Crisp.")

        assert apply_success(card, outcome) == apply_success(card.model_copy(), outcome)

    def test_success_clears_previous_error(self) -> None:
        """A successful retry clears the old failure."""
        card = make_card(error_message="busy", failed_from=CardStatus.GRADING)

        updated = apply_success(card, GRADING_OUTCOME)

        assert updated.error_message is None
        assert updated.failed_from is None

    def test_settled_card_is_unchanged(self) -> None:
        """Outcomes for cards without a pending operation are ignored."""
        card = make_graded_card()

        assert apply_success(card, GRADING_OUTCOME) is card

    def test_mismatched_outcome_raises(self) -> None:
        """An outcome from the wrong operation is rejected."""
        with pytest.raises(InvalidTransitionError):
            apply_success(make_card(), SummaryOutcome(summary="Wrong step."))


class TestApplyFailure:
    def test_failure_records_message_and_origin(self) -> None:
        """Failed cards keep a message and the step to resume."""
        card = make_graded_card(status=CardStatus.GENERATING_SUMMARY)

        failed = apply_failure(card, TransientServiceError())

        assert failed.status == CardStatus.GRADING_FAILED
        assert failed.failed_from == CardStatus.GENERATING_SUMMARY
        assert failed.error_message == TransientServiceError().message

    def test_credential_failure_message(self) -> None:
        """A missing credential is reported with its sentinel message."""
        failed = apply_failure(make_card(), CredentialMissingError())

        assert failed.error_message == "API_KEY_MISSING"

    def test_unexpected_error_has_message(self) -> None:
        """Errors without text still leave a non-empty message."""
        failed = apply_failure(make_card(), RuntimeError())

        assert failed.error_message == "RuntimeError"


class TestUserIntent:
    def test_accept_starts_summary(self) -> None:
        """Accepting a grade queues the summary."""
        accepted = transitions.accept_grade(make_graded_card())

        assert accepted.status == CardStatus.GENERATING_SUMMARY
        assert accepted.summary_pending

    def test_accept_requires_review(self) -> None:
        """Only a card awaiting review can be accepted."""
        with pytest.raises(InvalidTransitionError) as exc_info:
            transitions.accept_grade(make_card())

        assert exc_info.value.status_code == 409

    def test_challenge_records_direction(self) -> None:
        """A challenge remembers which way the user disagrees."""
        card = make_graded_card(status=CardStatus.REVIEWED, summary="Crisp.")

        challenged = transitions.challenge_grade(card, ChallengeDirection.HIGHER)

        assert challenged.status == CardStatus.CHALLENGING
        assert challenged.challenge_direction == ChallengeDirection.HIGHER

    def test_challenge_not_allowed_while_grading(self) -> None:
        with pytest.raises(InvalidTransitionError):
            transitions.challenge_grade(make_card(), ChallengeDirection.LOWER)

    def test_manual_override_regenerates(self) -> None:
        """A manual grade is kept and the analysis regenerated."""
        overridden = transitions.manual_override(make_graded_card(), 6.5, "EX-MT+")

        assert overridden.status == CardStatus.REGENERATING_SUMMARY
        assert overridden.overall_grade == 6.5
        assert overridden.grade_name == "EX-MT+"
        assert overridden.summary_pending

    def test_manual_override_of_failed_card(self) -> None:
        """A failed card can be rescued with a manual grade."""
        failed = make_card(
            status=CardStatus.GRADING_FAILED,
            error_message="busy",
            failed_from=CardStatus.GRADING,
        )

        overridden = transitions.manual_override(failed, 7.0, "NM")

        assert overridden.status == CardStatus.REGENERATING_SUMMARY
        assert overridden.error_message is None
        assert overridden.failed_from is None

    @pytest.mark.parametrize("grade", [0.0, 10.5, 7.3])
    def test_manual_grade_validated(self, grade: float) -> None:
        """Manual grades must be on the half-point scale."""
        with pytest.raises(InvalidGradeError):
            transitions.manual_override(make_graded_card(), grade, "Odd")

    def test_manual_entry_is_reviewed(self) -> None:
        """A hand-entered grade needs no background work."""
        entered = transitions.manual_entry(make_graded_card(), 9.0, "MINT", "Entered by hand.")

        assert entered.status == CardStatus.REVIEWED
        assert entered.summary == "Entered by hand."
        assert not entered.is_in_progress

    def test_manual_entry_replaces_details(self) -> None:
        entered = transitions.manual_entry(
            make_graded_card(), 5.0, "EX", "Crease.", details=make_details(5.0)
        )

        assert entered.details == make_details(5.0)

    def test_request_market_value(self) -> None:
        """Value can be refreshed on a reviewed card."""
        card = make_graded_card(status=CardStatus.REVIEWED, summary="Crisp.")

        assert transitions.request_market_value(card).status == CardStatus.FETCHING_VALUE

    def test_retry_resumes_failed_step(self) -> None:
        """Retry goes back to the step that failed."""
        failed = apply_failure(
            make_graded_card(status=CardStatus.FETCHING_VALUE, summary="Crisp."),
            TransientServiceError(),
        )

        retried = transitions.retry_failed(failed)

        assert retried.status == CardStatus.FETCHING_VALUE
        assert retried.error_message is None
        assert retried.failed_from is None

    def test_retry_defaults_to_grading(self) -> None:
        """A failed card with no recorded origin is graded again."""
        failed = make_card(status=CardStatus.GRADING_FAILED, error_message="busy")

        assert transitions.retry_failed(failed).status == CardStatus.GRADING

    def test_retry_requires_failure(self) -> None:
        with pytest.raises(InvalidTransitionError):
            transitions.retry_failed(make_graded_card())


class TestCollectionTransforms:
    def test_add_card_prepends(self) -> None:
        """Newest card comes first."""
        older = make_card(id="old")
        newer = make_card(id="new")

        records = transitions.add_card((older,), newer)

        assert [r.id for r in records] == ["new", "old"]

    def test_remove_card(self) -> None:
        records = (make_card(id="a"), make_card(id="b"))

        assert [r.id for r in transitions.remove_card(records, "a")] == ["b"]

    def test_remove_unknown_card_raises(self) -> None:
        with pytest.raises(CardNotFoundError):
            transitions.remove_card((make_card(),), "missing")

    def test_replace_card_keeps_order_and_identity(self) -> None:
        """Only the targeted card is replaced; others are the same objects."""
        a, b, c = make_card(id="a"), make_card(id="b"), make_card(id="c")

        records = transitions.replace_card(
            (a, b, c), "b", lambda r: r.with_changes(status=CardStatus.GRADING_FAILED)
        )

        assert [r.id for r in records] == ["a", "b", "c"]
        assert records[0] is a
        assert records[2] is c
        assert records[1].status == CardStatus.GRADING_FAILED

    def test_recover_after_crash(self) -> None:
        """Interrupted cards fail with a recovery message; settled cards are untouched."""
        interrupted = make_graded_card(id="a", status=CardStatus.GENERATING_SUMMARY)
        settled = make_graded_card(id="b")

        recovered = recover_after_crash([interrupted, settled])

        assert recovered[0].status == CardStatus.GRADING_FAILED
        assert recovered[0].error_message == RECOVERED_MESSAGE
        assert recovered[0].failed_from == CardStatus.GENERATING_SUMMARY
        assert recovered[1] is settled

    def test_recover_after_crash_is_idempotent(self) -> None:
        """Recovering twice gives the same collection as recovering once."""
        records = [make_card(id="a"), make_graded_card(id="b")]

        once = recover_after_crash(records)

        assert recover_after_crash(once) == once

    def test_retry_all_failed(self) -> None:
        """Every failed card is retried; others are left alone."""
        records = (
            make_card(id="a", status=CardStatus.GRADING_FAILED, error_message="API_KEY_MISSING"),
            make_graded_card(id="b"),
        )

        retried = transitions.retry_all_failed(records)

        assert retried[0].status == CardStatus.GRADING
        assert retried[1] is records[1]


class TestMergeCollections:
    def test_union_sorted_newest_first(self) -> None:
        """Cards only on one side are kept; result is newest first."""
        local = [make_card(id="a", timestamp=1)]
        remote = [make_card(id="b", timestamp=2)]

        merged = merge_collections(local, remote)

        assert [r.id for r in merged] == ["b", "a"]

    def test_unsynced_local_edit_wins(self) -> None:
        """A local change not yet saved beats the remote copy."""
        local = [make_graded_card(id="a", status=CardStatus.REVIEWED, summary="Local.")]
        remote = [make_graded_card(id="a", is_synced=True)]

        merged = merge_collections(local, remote)

        assert len(merged) == 1
        assert merged[0].summary == "Local."

    def test_synced_local_copy_yields_to_remote(self) -> None:
        """A synced local copy is replaced by newer remote content."""
        local = [make_graded_card(id="a", is_synced=True)]
        remote = [make_graded_card(id="a", status=CardStatus.REVIEWED, summary="Remote.")]

        merged = merge_collections(local, remote)

        assert merged[0].summary == "Remote."

    def test_same_capture_is_deduplicated(self) -> None:
        """The same capture stored under two ids is kept once."""
        local = [make_card(id="local", timestamp=5, is_synced=True)]
        remote = [make_card(id="remote", timestamp=5)]

        merged = merge_collections(local, remote)

        assert [r.id for r in merged] == ["remote"]

    def test_merge_is_idempotent(self) -> None:
        """Merging a result with the same remote again changes nothing."""
        local = [make_card(id="a", timestamp=1), make_graded_card(id="b", timestamp=3)]
        remote = [make_card(id="c", timestamp=2)]

        once = merge_collections(local, remote)

        assert merge_collections(once, remote) == once
