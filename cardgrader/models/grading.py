"""
Typed results returned by the grading service.

Each model matches the structured JSON the grading model is asked to
produce. Grades coming back from the model are snapped to the half-point
scale rather than rejected; completeness of the data is the service's
concern, not the pipeline's.
"""

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel

from cardgrader.config import GRADE_STEP, MAX_GRADE, MIN_GRADE
from cardgrader.models.card import GradeDetails, MarketValue


def normalize_grade(value: float) -> float:
    """Clamp to the grading scale and round to the nearest half point."""
    clamped = min(max(float(value), MIN_GRADE), MAX_GRADE)
    return round(clamped / GRADE_STEP) * GRADE_STEP


class _ResponseModel(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
        coerce_numbers_to_str=True,
    )


class Identification(_ResponseModel):
    name: str | None = None
    team: str | None = None
    year: str | None = None
    set: str | None = None
    company: str | None = None
    card_number: str | None = None
    edition: str | None = None


class PreliminaryGrade(_ResponseModel):
    details: GradeDetails
    overall_grade: float
    grade_name: str

    @field_validator("overall_grade")
    @classmethod
    def _snap_grade(cls, value: float) -> float:
        return normalize_grade(value)


class GradingOutcome(_ResponseModel):
    """Identification and preliminary grade, obtained concurrently."""

    identification: Identification
    grade: PreliminaryGrade


class SummaryOutcome(_ResponseModel):
    summary: str


class ChallengeOutcome(_ResponseModel):
    details: GradeDetails
    overall_grade: float
    grade_name: str
    summary: str

    @field_validator("overall_grade")
    @classmethod
    def _snap_grade(cls, value: float) -> float:
        return normalize_grade(value)


class RegeneratedAnalysis(_ResponseModel):
    """Sub-grades and narrative rewritten to justify a manual grade."""

    details: GradeDetails
    summary: str


class MarketValueOutcome(_ResponseModel):
    market_value: MarketValue


Outcome = (
    GradingOutcome | SummaryOutcome | ChallengeOutcome | RegeneratedAnalysis | MarketValueOutcome
)
