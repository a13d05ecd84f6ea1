"""
Batch barcode generation.

A run owns one database session and acts as the single progress aggregator.
A fixed pool of worker threads draws candidate strings for slot tasks; every
decision that touches shared state (in-batch dedup, store lookups, counters,
commits) is taken back on the aggregator thread, in slot submission order.
Accepted strings are persisted in chunks, and each chunk commit is the unit of
progress durability.
"""
from __future__ import annotations

import logging
import math
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional, Protocol, Tuple

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from warranty.config import Config
from warranty.errors import DuplicateBarcodeError, NotFoundError
from warranty.models import BarcodeBatch, BatchStatus, CollisionType
from warranty.observability import (
    clear_batch_progress,
    increment_counter,
    log_context,
    observe_latency,
    record_event,
    set_gauge,
    track_batch_progress,
)
from warranty.services.collaborators import Clock, NotificationSink, SystemClock, dispatch_notification
from warranty.services.collision_service import CollisionDetector, CollisionOutcome
from warranty.services.warranty_store import WarrantyStore
from warranty.time_utils import as_utc

logger = logging.getLogger(__name__)


class CandidateFactory(Protocol):
    def candidate(self, slot: int, attempt: int) -> str: ...


@dataclass(frozen=True)
class SlotTask:
    slot: int
    attempt: int = 0


@dataclass
class RoundOutcome:
    accepted: List[Tuple[SlotTask, str]] = field(default_factory=list)
    collisions: List[CollisionOutcome] = field(default_factory=list)
    failed: List[Tuple[SlotTask, str]] = field(default_factory=list)
    requeue: List[SlotTask] = field(default_factory=list)


@dataclass(frozen=True)
class CancelRequest:
    force: bool = False
    actor_id: Optional[int] = None
    reason: Optional[str] = None


# -----------------------------------------------------------------------------
# In-process registry of running batches
# -----------------------------------------------------------------------------

_registry_lock = threading.Lock()
_active_runs: Dict[int, "BatchRun"] = {}


def active_runs() -> List[int]:
    with _registry_lock:
        return list(_active_runs)


def request_cancel(
    batch_id: int,
    force: bool = False,
    actor_id: Optional[int] = None,
    reason: Optional[str] = None,
) -> bool:
    """Signal a run executing in this process; False when none is registered."""
    with _registry_lock:
        run = _active_runs.get(batch_id)
    if run is None:
        return False
    run.request_cancel(CancelRequest(force=force, actor_id=actor_id, reason=reason))
    return True


# -----------------------------------------------------------------------------
# Run
# -----------------------------------------------------------------------------


class BatchRun:
    def __init__(
        self,
        db_session: Session,
        batch_id: int,
        generator: CandidateFactory,
        *,
        config: type[Config] = Config,
        clock: Optional[Clock] = None,
        notification_sink: Optional[NotificationSink] = None,
        sleep=time.sleep,
    ) -> None:
        self.db = db_session
        self.batch_id = batch_id
        self.generator = generator
        self.config = config
        self.clock = clock or SystemClock()
        self.notification_sink = notification_sink
        self.store = WarrantyStore(db_session, config=config, clock=self.clock)
        self._sleep = sleep
        self._cancel_event = threading.Event()
        self._cancel_request: Optional[CancelRequest] = None
        self._samples: Deque[Tuple[float, int]] = deque(maxlen=max(2, config.BATCH_RATE_WINDOW))
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Cancellation flag
    # ------------------------------------------------------------------
    def request_cancel(self, request: CancelRequest) -> None:
        # A forced request upgrades a pending graceful one
        if self._cancel_request is None or request.force:
            self._cancel_request = request
        self._cancel_event.set()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def force_requested(self) -> bool:
        return self._cancel_event.is_set() and bool(self._cancel_request and self._cancel_request.force)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------
    def execute(self) -> BarcodeBatch:
        batch = self._load()
        if BatchStatus(batch.status) != BatchStatus.IN_PROGRESS:
            return batch

        with _registry_lock:
            _active_runs[self.batch_id] = self
        set_gauge("barcode_batches_running", len(_active_runs))
        started = time.perf_counter()
        try:
            with log_context(batch_id=self.batch_id):
                self._run(batch)
        finally:
            with _registry_lock:
                _active_runs.pop(self.batch_id, None)
            set_gauge("barcode_batches_running", len(_active_runs))
            clear_batch_progress(self.batch_id)
            observe_latency("barcode_batch_run_ms", (time.perf_counter() - started) * 1000.0)
        return self._load()

    def _run(self, batch: BarcodeBatch) -> None:
        requested = batch.requested_quantity
        detector = CollisionDetector(self.db, self.store, max_retries=batch.max_retries)
        self._commit_retries = batch.max_retries
        threshold = math.floor(requested * self.config.BATCH_FAILURE_THRESHOLD)
        chunk_size = max(1, self.config.BATCH_CHUNK_SIZE)
        workers = max(1, self.config.BATCH_WORKERS)

        # Slots below generated_count were resolved by an earlier run
        pending: Deque[SlotTask] = deque(SlotTask(slot) for slot in range(batch.generated_count or 0, requested))
        self._samples.append((time.monotonic(), batch.generated_count or 0))
        self.logger.info(
            "Batch %s generating %s slots",
            batch.batch_number,
            len(pending),
            extra={"batch_id": self.batch_id},
        )

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"batch-{self.batch_id}") as pool:
            while pending:
                if self.cancel_requested:
                    break
                tasks = [pending.popleft() for _ in range(min(chunk_size, len(pending)))]
                drawn = list(pool.map(self._draw, tasks))
                if self.force_requested:
                    self.logger.info(
                        "Batch %s force-cancelled, discarding %s staged candidates",
                        batch.batch_number,
                        len(drawn),
                        extra={"batch_id": self.batch_id},
                    )
                    break

                batch, committed = self._persist(detector, self._screen(detector, drawn))
                if batch is None:
                    return
                pending.extendleft(reversed(committed.requeue))

                if batch.failed_count > threshold:
                    self._finish(
                        BatchStatus.FAILED,
                        f"{batch.failed_count} slots failed, above the tolerated {threshold}",
                    )
                    return

        if self.cancel_requested:
            self._finish_cancelled()
            return
        batch = self._load()
        if batch.generated_count != requested:
            self._fail(f"Run ended with {batch.generated_count} of {requested} slots resolved")
            return
        self._finish(BatchStatus.COMPLETED)

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------
    def _draw(self, task: SlotTask) -> Tuple[SlotTask, str]:
        return task, self.generator.candidate(task.slot, task.attempt)

    # ------------------------------------------------------------------
    # Aggregator side
    # ------------------------------------------------------------------
    def _screen(self, detector: CollisionDetector, drawn: List[Tuple[SlotTask, str]]) -> RoundOutcome:
        outcome = RoundOutcome()
        staged: List[Tuple[SlotTask, str]] = []
        for task, value in drawn:
            if detector.claim(value):
                staged.append((task, value))
            else:
                self._register_collision(
                    outcome,
                    detector.resolve(task.slot, task.attempt, value, CollisionType.DUPLICATE_IN_BATCH),
                )

        existing = detector.find_in_store(value for _, value in staged)
        for task, value in staged:
            if value in existing:
                self._register_collision(
                    outcome,
                    detector.resolve(
                        task.slot,
                        task.attempt,
                        value,
                        CollisionType.DUPLICATE_IN_STORE,
                        existing_barcode_id=existing[value],
                    ),
                )
            else:
                outcome.accepted.append((task, value))
        return outcome

    def _register_collision(self, outcome: RoundOutcome, collision: CollisionOutcome) -> None:
        outcome.collisions.append(collision)
        task = SlotTask(collision.slot, collision.attempt)
        if collision.regenerate:
            outcome.requeue.append(SlotTask(collision.slot, collision.attempt + 1))
        else:
            outcome.failed.append(
                (task, f"slot {collision.slot} exhausted {collision.attempt} retries ({collision.collision_type.value})")
            )

    def _reclassify(
        self,
        detector: CollisionDetector,
        outcome: RoundOutcome,
        clashing: List[str],
    ) -> RoundOutcome:
        """Move strings that lost a unique-key race from accepted to collisions."""
        existing = detector.find_in_store(clashing)
        clashing_set = set(clashing)
        refreshed = RoundOutcome(
            collisions=list(outcome.collisions),
            failed=list(outcome.failed),
            requeue=list(outcome.requeue),
        )
        for task, value in outcome.accepted:
            if value in clashing_set:
                self._register_collision(
                    refreshed,
                    detector.resolve(
                        task.slot,
                        task.attempt,
                        value,
                        CollisionType.DUPLICATE_IN_STORE,
                        existing_barcode_id=existing.get(value),
                    ),
                )
            else:
                refreshed.accepted.append((task, value))
        return refreshed

    def _persist(
        self,
        detector: CollisionDetector,
        outcome: RoundOutcome,
    ) -> Tuple[Optional[BarcodeBatch], RoundOutcome]:
        """
        Commit one chunk together with the batch counters it moves.

        Returns the refreshed batch and the outcome that was actually
        committed, which differs from the one passed in when strings lost a
        unique-key race and were moved back to regeneration. The batch is None
        when the run must stop (batch no longer in progress, or a permanent
        store failure).
        """
        retries = 0
        while True:
            try:
                batch = self._lock_batch()
                if BatchStatus(batch.status) != BatchStatus.IN_PROGRESS:
                    self.db.rollback()
                    self.logger.info(
                        "Batch %s left in_progress (%s); stopping run",
                        batch.batch_number,
                        BatchStatus(batch.status).value,
                        extra={"batch_id": self.batch_id},
                    )
                    return None, outcome
                self._apply(batch, detector, outcome, retries)
                self.db.commit()
                self._samples.append((time.monotonic(), batch.generated_count))
                track_batch_progress(self.batch_id, batch.progress, batch.generation_rate)
                increment_counter("barcodes_created_total", amount=len(outcome.accepted))
                return batch, outcome
            except DuplicateBarcodeError as exc:
                # Another writer committed one of our strings first
                outcome = self._reclassify(detector, outcome, exc.barcodes)
            except OperationalError as exc:
                self.db.rollback()
                retries += 1
                increment_counter("barcode_batch_commit_retries_total")
                if retries > self._commit_retries:
                    self._fail(f"Store unavailable after {retries - 1} retries: {exc}")
                    return None, outcome
                self._sleep(self.config.BATCH_COMMIT_BACKOFF_SECONDS * (2 ** (retries - 1)))
            except IntegrityError as exc:
                self.db.rollback()
                self._fail(f"Permanent store error: {exc.orig}")
                return None, outcome

    def _apply(
        self,
        batch: BarcodeBatch,
        detector: CollisionDetector,
        outcome: RoundOutcome,
        retries: int,
    ) -> None:
        now = self.clock.now()
        for collision in outcome.collisions:
            detector.record(batch, collision, now)
        barcodes = [
            self.store.build_barcode(
                value,
                batch.productID,
                batch.expiry_months,
                batch_id=batch.batchID,
                batch_number=batch.batch_number,
                storefront_id=batch.storefrontID,
                generation_attempt=task.attempt + 1,
            )
            for task, value in outcome.accepted
        ]
        self.store.bulk_create_barcodes(barcodes)

        resolved = len(outcome.accepted) + len(outcome.failed)
        batch.generated_count = (batch.generated_count or 0) + resolved
        batch.successful_count = (batch.successful_count or 0) + len(outcome.accepted)
        batch.failed_count = (batch.failed_count or 0) + len(outcome.failed)
        batch.error_count = (batch.error_count or 0) + len(outcome.failed)
        batch.collision_count = (batch.collision_count or 0) + len(outcome.collisions)
        batch.retry_count = (batch.retry_count or 0) + retries
        if outcome.failed:
            batch.last_error = outcome.failed[-1][1]
        batch.advance_progress()
        batch.generation_rate = max(0.0, self._current_rate(batch.generated_count))
        batch.current_step = "generating"
        batch.last_updated = now

    def _current_rate(self, generated: int) -> float:
        if not self._samples:
            return 0.0
        first_at, first_count = self._samples[0]
        elapsed = time.monotonic() - first_at
        if elapsed <= 0:
            return 0.0
        return round((generated - first_count) / elapsed, 2)

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------
    def _finish(self, status: BatchStatus, error: Optional[str] = None) -> None:
        batch = self._lock_batch()
        if BatchStatus(batch.status) != BatchStatus.IN_PROGRESS:
            self.db.rollback()
            return
        now = self.clock.now()
        batch.transition_to(status)
        batch.completed_at = now
        batch.current_step = status.value
        batch.last_updated = now
        if batch.started_at:
            batch.processing_time_seconds = max(0.0, (now - as_utc(batch.started_at)).total_seconds())
        if error:
            batch.last_error = error
        batch.advance_progress()
        self.db.commit()

        increment_counter("barcode_batches_finished_total", labels={"status": status.value})
        record_event(
            "barcode_batch_finished",
            {
                "batch_id": batch.batchID,
                "status": status.value,
                "successful": batch.successful_count,
                "failed": batch.failed_count,
                "collisions": batch.collision_count,
            },
        )
        log = self.logger.warning if status == BatchStatus.FAILED else self.logger.info
        log(
            "Batch %s finished as %s (%s/%s successful)",
            batch.batch_number,
            status.value,
            batch.successful_count,
            batch.requested_quantity,
            extra={"batch_id": batch.batchID},
        )
        if status == BatchStatus.COMPLETED:
            self._notify_completion(batch)

    def _finish_cancelled(self) -> None:
        batch = self._lock_batch()
        if BatchStatus(batch.status) != BatchStatus.IN_PROGRESS:
            self.db.rollback()
            return
        request = self._cancel_request or CancelRequest()
        now = self.clock.now()
        batch.transition_to(BatchStatus.CANCELLED)
        batch.cancelled_at = now
        batch.cancelled_by = request.actor_id
        batch.cancellation_reason = request.reason
        batch.current_step = BatchStatus.CANCELLED.value
        batch.last_updated = now
        self.db.commit()
        increment_counter("barcode_batches_finished_total", labels={"status": BatchStatus.CANCELLED.value})
        self.logger.info(
            "Batch %s cancelled after %s barcodes",
            batch.batch_number,
            batch.successful_count,
            extra={"batch_id": batch.batchID},
        )

    def _fail(self, error: str) -> None:
        self.logger.error("Batch %s failed: %s", self.batch_id, error, extra={"batch_id": self.batch_id})
        self._finish(BatchStatus.FAILED, error)

    def _notify_completion(self, batch: BarcodeBatch) -> None:
        if not batch.notify_on_complete or batch.notification_sent or self.notification_sink is None:
            return
        delivered = dispatch_notification(
            self.notification_sink,
            batch.created_by,
            "batch_completed",
            {
                "batch_id": batch.batchID,
                "batch_number": batch.batch_number,
                "successful_count": batch.successful_count,
                "failed_count": batch.failed_count,
            },
        )
        if delivered:
            batch.notification_sent = True
            self.db.commit()

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------
    def _load(self) -> BarcodeBatch:
        batch = (
            self.db.query(BarcodeBatch)
            .filter_by(batchID=self.batch_id)
            .populate_existing()
            .first()
        )
        if batch is None:
            raise NotFoundError("Batch not found", {"batch_id": self.batch_id})
        return batch

    def _lock_batch(self) -> BarcodeBatch:
        # Serializes chunk application with cancel requests on the same row
        batch = (
            self.db.query(BarcodeBatch)
            .filter_by(batchID=self.batch_id)
            .populate_existing()
            .with_for_update()
            .first()
        )
        if batch is None:
            raise NotFoundError("Batch not found", {"batch_id": self.batch_id})
        return batch
