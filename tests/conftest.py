import asyncio
from collections import defaultdict
from collections.abc import Iterable, Sequence
from typing import Any

import pytest

from cardgrader.models.card import (
    CardRecord,
    CardStatus,
    ChallengeDirection,
    GradeDetails,
    MarketValue,
    SubGrade,
    dump_records,
    load_records,
)
from cardgrader.models.failure import PersistenceError
from cardgrader.models.grading import (
    ChallengeOutcome,
    Identification,
    PreliminaryGrade,
    RegeneratedAnalysis,
)
from cardgrader.services.collection_store import CollectionSnapshot
from cardgrader.services.dispatcher import CardProcessor
from cardgrader.services.retry_policy import RetryPolicy

SAMPLE_FRONT = "data:image/jpeg;base64,ZnJvbnQ="
SAMPLE_BACK = "data:image/png;base64,YmFjaw=="


def make_details(grade: float = 9.0) -> GradeDetails:
    sub = SubGrade(grade=grade, notes="Clean")
    return GradeDetails(centering=sub, corners=sub, edges=sub, surface=sub, print_quality=sub)


def make_card(**overrides: Any) -> CardRecord:
    """A card with sensible defaults; graded fields only when overridden."""
    fields: dict[str, Any] = {
        "id": "card-1",
        "status": CardStatus.GRADING,
        "front_image": SAMPLE_FRONT,
        "back_image": SAMPLE_BACK,
        "timestamp": 1_700_000_000_000,
    }
    fields.update(overrides)
    return CardRecord(**fields)


def make_graded_card(**overrides: Any) -> CardRecord:
    fields: dict[str, Any] = {
        "status": CardStatus.NEEDS_REVIEW,
        "name": "Ken Griffey Jr.",
        "year": "1989",
        "set": "Upper Deck",
        "details": make_details(),
        "overall_grade": 8.5,
        "grade_name": "NM-MT+",
    }
    fields.update(overrides)
    return make_card(**fields)


class FakeGradingService:
    """
    Scripted grading service.

    Failures queued with `fail()` are raised by the next calls to that
    method, in order. While `gate` is set to an unset Event, every call
    blocks on it; `gates` does the same for a single method.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []
        self.failures: dict[str, list[Exception]] = defaultdict(list)
        self.gate: asyncio.Event | None = None
        self.gates: dict[str, asyncio.Event] = {}
        self.directions: list[ChallengeDirection] = []
        self.manual_grades: list[tuple[float, str]] = []

    def fail(self, method: str, *errors: Exception) -> None:
        self.failures[method].extend(errors)

    def called(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    def cards_called(self) -> set[str]:
        return {key for _, key in self.calls}

    async def _enter(self, method: str, key: str) -> None:
        self.calls.append((method, key))
        gate = self.gates.get(method, self.gate)
        if gate is not None:
            await gate.wait()
        else:
            await asyncio.sleep(0)
        if self.failures[method]:
            raise self.failures[method].pop(0)

    async def identify(self, front_image: str, back_image: str) -> Identification:
        await self._enter("identify", front_image)
        return Identification(
            name="Ken Griffey Jr.",
            team="Mariners",
            year="1989",
            set="Upper Deck",
            company="Upper Deck",
            card_number="1",
        )

    async def grade_preliminary(self, front_image: str, back_image: str) -> PreliminaryGrade:
        await self._enter("grade_preliminary", front_image)
        return PreliminaryGrade(details=make_details(), overall_grade=8.5, grade_name="NM-MT+")

    async def generate_summary(self, card: CardRecord) -> str:
        await self._enter("generate_summary", card.id)
        return "Sharp corners with slight off-center borders."

    async def challenge_grade(
        self, card: CardRecord, direction: ChallengeDirection
    ) -> ChallengeOutcome:
        await self._enter("challenge_grade", card.id)
        self.directions.append(direction)
        return ChallengeOutcome(
            details=make_details(8.0),
            overall_grade=8.0,
            grade_name="NM-MT",
            summary="Re-examined; corner wear supports a lower grade.",
        )

    async def regenerate_for_manual_grade(
        self, card: CardRecord, grade: float, grade_name: str
    ) -> RegeneratedAnalysis:
        await self._enter("regenerate_for_manual_grade", card.id)
        self.manual_grades.append((grade, grade_name))
        return RegeneratedAnalysis(
            details=make_details(grade), summary=f"Flaws consistent with {grade_name}."
        )

    async def get_market_value(self, card: CardRecord) -> MarketValue:
        await self._enter("get_market_value", card.id)
        return MarketValue(average_price=120.0, min_price=90.0, max_price=150.0)


class InMemoryCollectionStore:
    """Collection store holding the serialized document in memory."""

    def __init__(self, records: Iterable[CardRecord] = (), location: str | None = None):
        self.documents: list[dict[str, Any]] = dump_records(records)
        self.location = location
        self.saves = 0
        self.fail_saves = 0
        self.save_errors: list[Exception] = []

    async def load(self) -> CollectionSnapshot:
        return CollectionSnapshot(location=self.location, records=load_records(self.documents))

    async def save(self, location: str | None, records: Sequence[CardRecord]) -> str:
        if self.save_errors:
            raise self.save_errors.pop(0)
        if self.fail_saves:
            self.fail_saves -= 1
            raise PersistenceError("Failed to save collection.")
        self.saves += 1
        self.documents = dump_records(records)
        self.location = location or "collection-1"
        return self.location


@pytest.fixture
def service() -> FakeGradingService:
    return FakeGradingService()


@pytest.fixture
def instant_policy() -> RetryPolicy:
    """Retry policy with no waiting between attempts."""
    return RetryPolicy(
        max_attempts=3,
        initial_delay=0.0,
        multiplier=1.0,
        max_delay=0.0,
        jitter=0.0,
        attempt_timeout=5.0,
    )


@pytest.fixture
async def processor(service: FakeGradingService, instant_policy: RetryPolicy):
    """Processor with no remote store or local snapshot."""
    processor = CardProcessor(service, policy=instant_policy, concurrency_limit=2)
    yield processor
    if service.gate is not None:
        service.gate.set()
    await processor.stop()
