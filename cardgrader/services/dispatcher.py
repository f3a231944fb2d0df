"""
Bounded background processing of card work.

`CardProcessor` owns the collection (an immutable tuple of records) and the
set of card ids with an operation in flight. All changes go through ONE
update channel, `update(transform)`, which applies a pure
"current collection -> next collection" function and then re-runs the
scheduler.

INVARIANTS:
- At most `concurrency_limit` grading operations run at once
- A card id is reserved in `in_progress` in the same synchronous step that
  selects it, so no two scheduling passes can dispatch the same card
- Eligibility scans and transition merges never await; the only suspension
  points are grading-service calls and persistence
- A per-card failure ends in that card's `error_message`; it never stops
  the dispatcher or touches other cards
- Results for cards deleted (or changed) while in flight are discarded
- Remote saves are debounced and best-effort; failures are logged only
"""

import asyncio
import logging
from collections.abc import Sequence

from cardgrader.models.card import (
    IN_PROGRESS_STATUSES,
    CardRecord,
    CardStatus,
    ChallengeDirection,
    GradeDetails,
    new_card,
)
from cardgrader.models.failure import (
    CardNotFoundError,
    CredentialMissingError,
    FailureKind,
    InvalidTransitionError,
    KnownError,
    describe_failure,
)
from cardgrader.models.grading import (
    GradingOutcome,
    MarketValueOutcome,
    Outcome,
    SummaryOutcome,
)
from cardgrader.services import transitions
from cardgrader.services.collection_store import CollectionStore
from cardgrader.services.credentials import CredentialPrompt
from cardgrader.services.grading_service import GradingService
from cardgrader.services.local_cache import LocalSnapshotCache
from cardgrader.services.retry_policy import RetryPolicy
from cardgrader.services.transitions import Operation, Records, Transform

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY_LIMIT = 2
DEFAULT_SAVE_DEBOUNCE_SECONDS = 2.0
DEFAULT_FLUSH_INTERVAL_SECONDS = 30.0


class CardProcessor:
    """
    Drives cards through the grading state machine.

    Args:
        service: Grading service used for every operation
        store: Remote collection store; None keeps the collection local
        cache: Local crash-recovery snapshot; None disables it
        policy: Retry/backoff applied to each grading call
        concurrency_limit: Maximum simultaneous card operations
        credential_prompt: Opened once when the service reports no credential
    """

    def __init__(
        self,
        service: GradingService,
        *,
        store: CollectionStore | None = None,
        cache: LocalSnapshotCache | None = None,
        policy: RetryPolicy | None = None,
        concurrency_limit: int = DEFAULT_CONCURRENCY_LIMIT,
        save_debounce_seconds: float = DEFAULT_SAVE_DEBOUNCE_SECONDS,
        flush_interval_seconds: float = DEFAULT_FLUSH_INTERVAL_SECONDS,
        credential_prompt: CredentialPrompt | None = None,
    ):
        if concurrency_limit < 1:
            raise ValueError("concurrency_limit must be at least 1")

        self._service = service
        self._store = store
        self._cache = cache
        self._policy = policy or RetryPolicy()
        self._concurrency_limit = concurrency_limit
        self._save_debounce = save_debounce_seconds
        self._flush_interval = flush_interval_seconds
        self.credential_prompt = credential_prompt or CredentialPrompt()

        self._records: Records = ()
        self._in_progress: set[str] = set()
        self._tasks: set[asyncio.Task[None]] = set()

        self._location: str | None = None
        self._dirty = False
        self._save_lock = asyncio.Lock()
        self._save_task: asyncio.Task[None] | None = None
        self._flush_task: asyncio.Task[None] | None = None

        self.dispatched_total = 0
        self.peak_in_flight = 0

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def records(self) -> Records:
        return self._records

    @property
    def in_progress(self) -> frozenset[str]:
        return frozenset(self._in_progress)

    @property
    def location(self) -> str | None:
        return self._location

    @property
    def concurrency_limit(self) -> int:
        return self._concurrency_limit

    def get_card(self, card_id: str) -> CardRecord | None:
        return transitions.find_card(self._records, card_id)

    def require_card(self, card_id: str) -> CardRecord:
        card = self.get_card(card_id)
        if card is None:
            raise CardNotFoundError(card_id)
        return card

    def eligible(self) -> list[CardRecord]:
        """Cards waiting for an operation that is not already running."""
        return [
            record
            for record in self._records
            if record.status in IN_PROGRESS_STATUSES and record.id not in self._in_progress
        ]

    # -------------------------------------------------------------------------
    # Update channel and scheduling
    # -------------------------------------------------------------------------

    def update(self, transform: Transform) -> Records:
        """
        Apply `transform` to the current collection and reschedule.

        The transform runs synchronously against the latest value; if it
        raises, the collection is left unchanged.
        """
        current = self._records
        updated = tuple(transform(current))
        if _changed(current, updated):
            self._records = updated
            self._write_local_snapshot()
            self._request_save()
        self.schedule()
        return updated

    def schedule(self) -> list[str]:
        """
        Dispatch eligible cards into free slots, in collection order.

        Returns:
            Ids dispatched by this pass
        """
        free = self._concurrency_limit - len(self._in_progress)
        if free <= 0:
            return []

        selected = self.eligible()[:free]
        for record in selected:
            # Reserve before the task exists; nothing below awaits.
            self._in_progress.add(record.id)
            self.dispatched_total += 1
            task = asyncio.get_running_loop().create_task(
                self._run(record), name=f"card-{record.id}"
            )
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            logger.info(
                "CARD_DISPATCHED",
                extra={"card_id": record.id, "status": record.status.value},
            )

        self.peak_in_flight = max(self.peak_in_flight, len(self._in_progress))
        return [record.id for record in selected]

    async def _run(self, dispatched: CardRecord) -> None:
        outcome: Outcome | None = None
        failure: Exception | None = None
        try:
            outcome = await self._perform(dispatched)
        except KnownError as e:
            failure = e
        except Exception as e:
            logger.exception("CARD_OPERATION_CRASHED", extra={"card_id": dispatched.id})
            failure = e
        finally:
            self._in_progress.discard(dispatched.id)

        self._settle(dispatched, outcome, failure)

    def _settle(
        self,
        dispatched: CardRecord,
        outcome: Outcome | None,
        failure: Exception | None,
    ) -> None:
        current = self.get_card(dispatched.id)
        if current is None or current.status != dispatched.status:
            logger.info(
                "CARD_RESULT_DISCARDED",
                extra={
                    "card_id": dispatched.id,
                    "reason": "deleted" if current is None else "status changed",
                },
            )
            self.schedule()
            return

        if outcome is not None:
            result = outcome
            try:
                self.update(
                    lambda records: transitions.replace_card(
                        records, dispatched.id, lambda r: transitions.apply_success(r, result)
                    )
                )
            except (KnownError, ValueError) as e:
                logger.exception("CARD_MERGE_FAILED", extra={"card_id": dispatched.id})
                failure = e
            else:
                logger.info(
                    "CARD_OPERATION_SUCCEEDED",
                    extra={"card_id": dispatched.id, "status": dispatched.status.value},
                )
                return

        logger.warning(
            "CARD_OPERATION_FAILED",
            extra={
                "card_id": dispatched.id,
                "status": dispatched.status.value,
                "error": str(failure),
            },
        )
        if isinstance(failure, CredentialMissingError):
            self.credential_prompt.request()
        error = failure
        self.update(
            lambda records: transitions.replace_card(
                records, dispatched.id, lambda r: transitions.apply_failure(r, error)
            )
        )

    async def _perform(self, card: CardRecord) -> Outcome:
        """Call the grading service for the operation implied by the card's status."""
        operation = transitions.operation_for(card.status)
        call = self._policy.call
        service = self._service

        if operation is Operation.GRADE:
            halves = (
                asyncio.ensure_future(
                    call(
                        lambda: service.identify(card.front_image, card.back_image),
                        "identifying card",
                    )
                ),
                asyncio.ensure_future(
                    call(
                        lambda: service.grade_preliminary(card.front_image, card.back_image),
                        "grading card",
                    )
                ),
            )
            try:
                identification, grade = await asyncio.gather(*halves)
            finally:
                # The first failure decides the card; stop the other half
                for half in halves:
                    half.cancel()
            return GradingOutcome(identification=identification, grade=grade)

        if operation is Operation.SUMMARIZE:
            summary = await call(lambda: service.generate_summary(card), "writing summary")
            return SummaryOutcome(summary=summary)

        if operation is Operation.CHALLENGE:
            direction = card.challenge_direction or ChallengeDirection.LOWER
            return await call(
                lambda: service.challenge_grade(card, direction), "re-grading challenge"
            )

        if operation is Operation.REGENERATE:
            if card.overall_grade is None or card.grade_name is None:
                raise InvalidTransitionError(
                    card.id, card.status.value, "regenerate the analysis without a grade for"
                )
            grade, grade_name = card.overall_grade, card.grade_name
            return await call(
                lambda: service.regenerate_for_manual_grade(card, grade, grade_name),
                "regenerating analysis",
            )

        if operation is Operation.MARKET_VALUE:
            value = await call(lambda: service.get_market_value(card), "looking up market value")
            return MarketValueOutcome(market_value=value)

        raise InvalidTransitionError(card.id, card.status.value, "process")

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def _write_local_snapshot(self) -> None:
        if self._cache is None:
            return
        try:
            self._cache.write(self._records)
        except OSError as e:
            logger.warning("LOCAL_SNAPSHOT_FAILED", extra={"error": str(e)})

    def _request_save(self) -> None:
        self._dirty = True
        if self._store is None:
            return
        if self._save_task is None or self._save_task.done():
            self._save_task = asyncio.get_running_loop().create_task(self._debounced_save())

    async def _debounced_save(self) -> None:
        await asyncio.sleep(self._save_debounce)
        saved = await self.flush()
        # Changes made while the save was running
        while saved and self._dirty:
            await asyncio.sleep(self._save_debounce)
            saved = await self.flush()

    async def _flush_periodically(self) -> None:
        while True:
            await asyncio.sleep(self._flush_interval)
            await self.flush()

    async def flush(self) -> bool:
        """
        Save the current collection if it changed since the last save.

        Failures are logged and swallowed; the in-memory collection stays
        authoritative and the next flush tries again.

        Returns:
            True if a save succeeded
        """
        if self._store is None:
            return False

        async with self._save_lock:
            if not self._dirty:
                return False
            snapshot = self._records
            self._dirty = False
            try:
                self._location = await self._store.save(self._location, snapshot)
            except KnownError as e:
                self._dirty = True
                logger.warning(
                    "COLLECTION_SAVE_FAILED",
                    extra={"kind": e.kind.value, "error": e.message},
                )
                return False
            except Exception as e:
                self._dirty = True
                logger.exception(
                    "COLLECTION_SAVE_FAILED",
                    extra={"kind": FailureKind.UNKNOWN.value, "error": describe_failure(e)},
                )
                return False

        self._mark_synced(snapshot)
        logger.info(
            "COLLECTION_SAVED",
            extra={"cards": len(snapshot), "location": self._location},
        )
        return True

    def _mark_synced(self, saved: Sequence[CardRecord]) -> None:
        """
        Flag records whose content is exactly what was just saved.

        The flag is a hint, so setting it does not make the collection dirty.
        """
        by_id = {record.id: record for record in saved}
        self._records = tuple(
            record.model_copy(update={"is_synced": True})
            if by_id.get(record.id) is record and not record.is_synced
            else record
            for record in self._records
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self, *, load_remote: bool = True) -> None:
        """
        Restore the collection and begin processing.

        Local snapshot and remote collection are merged; any card found
        mid-operation is marked failed rather than resumed.
        """
        local = self._cache.recover() if self._cache is not None else ()

        remote: Records = ()
        if self._store is not None and load_remote:
            try:
                snapshot = await self._store.load()
            except KnownError as e:
                logger.warning("COLLECTION_LOAD_FAILED", extra={"error": e.message})
            else:
                self._location = snapshot.location
                remote = transitions.recover_after_crash(snapshot.records)

        if local or remote:
            self.update(lambda records: transitions.merge_collections((*records, *local), remote))

        if self._store is not None and self._flush_task is None:
            self._flush_task = asyncio.get_running_loop().create_task(self._flush_periodically())
        logger.info("PROCESSOR_STARTED", extra={"cards": len(self._records)})

    async def stop(self) -> None:
        """
        Stop background work and save what is in memory.

        In-flight operations are cancelled; their cards keep an in-progress
        status and are reported as failed on the next start.
        """
        for task in (self._flush_task, self._save_task, *self._tasks):
            if task is not None and not task.done():
                task.cancel()
        pending = [t for t in (self._flush_task, self._save_task, *self._tasks) if t is not None]
        await asyncio.gather(*pending, return_exceptions=True)
        self._flush_task = None
        self._save_task = None
        await self.flush()

    async def wait_idle(self) -> None:
        """Wait until no operation is running and nothing is left to dispatch."""
        while self._tasks:
            await asyncio.wait(list(self._tasks))

    # -------------------------------------------------------------------------
    # User intent
    # -------------------------------------------------------------------------

    def _change_card(self, card_id: str, change: transitions.CardChange) -> CardRecord:
        self.update(lambda records: transitions.replace_card(records, card_id, change))
        return self.require_card(card_id)

    def create_card(self, front_image: str, back_image: str) -> CardRecord:
        card = new_card(front_image, back_image)
        self.update(lambda records: transitions.add_card(records, card))
        logger.info("CARD_CREATED", extra={"card_id": card.id})
        return card

    def accept_grade(self, card_id: str) -> CardRecord:
        return self._change_card(card_id, transitions.accept_grade)

    def challenge_grade(self, card_id: str, direction: ChallengeDirection) -> CardRecord:
        return self._change_card(card_id, lambda r: transitions.challenge_grade(r, direction))

    def manual_override(
        self,
        card_id: str,
        grade: float,
        grade_name: str,
        details: GradeDetails | None = None,
    ) -> CardRecord:
        return self._change_card(
            card_id, lambda r: transitions.manual_override(r, grade, grade_name, details)
        )

    def manual_entry(
        self,
        card_id: str,
        grade: float,
        grade_name: str,
        summary: str,
        details: GradeDetails | None = None,
    ) -> CardRecord:
        return self._change_card(
            card_id, lambda r: transitions.manual_entry(r, grade, grade_name, summary, details)
        )

    def request_market_value(self, card_id: str) -> CardRecord:
        return self._change_card(card_id, transitions.request_market_value)

    def retry_failed(self, card_id: str) -> CardRecord:
        return self._change_card(card_id, transitions.retry_failed)

    def delete_card(self, card_id: str) -> None:
        """
        Remove a card. An operation already in flight for it keeps running,
        but its result is discarded when it arrives.
        """
        self.update(lambda records: transitions.remove_card(records, card_id))
        logger.info(
            "CARD_DELETED",
            extra={"card_id": card_id, "in_flight": card_id in self._in_progress},
        )

    def credentials_updated(self) -> Records:
        """A credential was supplied: close the prompt and retry failed cards."""
        self.credential_prompt.resolve()
        return self.update(transitions.retry_all_failed)

    async def sync_from_store(self) -> Records:
        """
        Merge the remote collection into the local one.

        Raises:
            KnownError: If the store cannot be read
        """
        if self._store is None:
            return self._records
        snapshot = await self._store.load()
        self._location = snapshot.location or self._location

        # Remote cards unknown here were interrupted elsewhere; ours are live.
        known = {record.id for record in self._records}
        remote = tuple(
            record
            if record.id in known
            else transitions.recover_after_crash([record])[0]
            for record in snapshot.records
        )
        return self.update(lambda records: transitions.merge_collections(records, remote))

    def summary_counts(self) -> dict[str, int]:
        counts = {status.value: 0 for status in CardStatus}
        for record in self._records:
            counts[record.status.value] += 1
        return counts


def _changed(current: Records, updated: Records) -> bool:
    if len(current) != len(updated):
        return True
    return any(a is not b for a, b in zip(current, updated, strict=True))
