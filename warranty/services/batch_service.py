from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Tuple

from sqlalchemy import or_
from sqlalchemy.orm import Session

from warranty.config import Config
from warranty.database import SessionLocal
from warranty.errors import InvalidArgumentError, InvalidStateError, NotFoundError
from warranty.models import (
    BarcodeBatch,
    BatchCollision,
    BatchStatus,
    CollisionType,
    Priority,
    WarrantyBarcode,
)
from warranty.observability import increment_counter, record_event
from warranty.observability.warranty_metrics import compute_batch_statistics
from warranty.services import batch_engine
from warranty.services.batch_engine import BatchRun, CandidateFactory
from warranty.services.collaborators import (
    ROLE_ADMIN,
    ROLE_AGENT,
    Actor,
    Clock,
    NotificationSink,
    ProductDirectory,
    SqlProductDirectory,
    SystemClock,
    require_role,
)
from warranty.services.collision_service import CollisionDetector
from warranty.services.identifier_generator import BarcodeGenerator, PREFIX_PATTERN
from warranty.services.notification_service import build_notification_sink
from warranty.services.numbering import BATCH_PREFIX, next_number
from warranty.services.sanitization import optional_text, sanitize_text
from warranty.services.warranty_store import WarrantyStore
from warranty.time_utils import as_utc

GeneratorFactory = Callable[[BarcodeBatch, int], CandidateFactory]

MIN_EXPIRY_MONTHS = 1
MAX_EXPIRY_MONTHS = 120
MAX_PAGE_SIZE = 100
MAX_TAGS = 20

_SORT_COLUMNS = {
    "created_at": BarcodeBatch.created_at,
    "batch_number": BarcodeBatch.batch_number,
    "status": BarcodeBatch.status,
    "priority": BarcodeBatch.priority,
    "progress": BarcodeBatch.progress,
}


def _default_generator_factory(batch: BarcodeBatch, year: int) -> CandidateFactory:
    return BarcodeGenerator(batch.prefix, year)


# -----------------------------------------------------------------------------
# Dispatchers
# -----------------------------------------------------------------------------


class BatchDispatcher(Protocol):
    def dispatch(self, batch_id: int, runner: Callable[[Session], Any]) -> None: ...


class InlineBatchDispatcher:
    """Runs the batch to completion inside the calling request."""

    def __init__(self, db_session: Session) -> None:
        self.db = db_session

    def dispatch(self, batch_id: int, runner: Callable[[Session], Any]) -> None:
        runner(self.db)


class ThreadedBatchDispatcher:
    """Runs each batch on a daemon thread with its own session."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal) -> None:
        self.session_factory = session_factory
        self.logger = logging.getLogger(__name__)

    def dispatch(self, batch_id: int, runner: Callable[[Session], Any]) -> None:
        thread = threading.Thread(
            target=self._run,
            args=(batch_id, runner),
            name=f"batch-runner-{batch_id}",
            daemon=True,
        )
        thread.start()

    def _run(self, batch_id: int, runner: Callable[[Session], Any]) -> None:
        session = self.session_factory()
        try:
            runner(session)
        except Exception as exc:
            # Thread boundary: nobody above us can observe the error
            self.logger.exception("Batch runner crashed", extra={"batch_id": batch_id})
            increment_counter("barcode_batch_runner_crashes_total")
            session.rollback()
            mark_batch_failed(session, batch_id, f"Runner crashed: {exc}")
        finally:
            session.close()


def mark_batch_failed(db_session: Session, batch_id: int, error: str, clock: Optional[Clock] = None) -> None:
    batch = db_session.query(BarcodeBatch).filter_by(batchID=batch_id).populate_existing().first()
    if batch is None or BatchStatus(batch.status) != BatchStatus.IN_PROGRESS:
        return
    now = (clock or SystemClock()).now()
    batch.transition_to(BatchStatus.FAILED)
    batch.last_error = error
    batch.completed_at = now
    batch.last_updated = now
    batch.current_step = BatchStatus.FAILED.value
    db_session.commit()


def build_dispatcher(db_session: Session, config: type[Config] = Config) -> BatchDispatcher:
    if config.BATCH_EXECUTION_MODE == "inline":
        return InlineBatchDispatcher(db_session)
    return ThreadedBatchDispatcher()


# -----------------------------------------------------------------------------
# Service
# -----------------------------------------------------------------------------


class BatchService:
    """Administrative surface for barcode batches: create, start, observe, cancel, list."""

    def __init__(
        self,
        db_session: Session,
        config: type[Config] = Config,
        clock: Optional[Clock] = None,
        product_directory: Optional[ProductDirectory] = None,
        dispatcher: Optional[BatchDispatcher] = None,
        generator_factory: Optional[GeneratorFactory] = None,
        notification_sink: Optional[NotificationSink] = None,
    ) -> None:
        self.db = db_session
        self.config = config
        self.clock = clock or SystemClock()
        self.logger = logging.getLogger(__name__)
        self.products = product_directory or SqlProductDirectory(db_session)
        self.dispatcher = dispatcher or build_dispatcher(db_session, config)
        self.generator_factory = generator_factory or _default_generator_factory
        self.notification_sink = notification_sink or build_notification_sink(config)
        self.store = WarrantyStore(db_session, config=config, clock=self.clock)

    # ------------------------------------------------------------------
    # Create / start / cancel
    # ------------------------------------------------------------------
    def create_batch(
        self,
        actor: Actor,
        product_id: int,
        storefront_id: int,
        quantity: int,
        expiry_months: int,
        prefix: Optional[str] = None,
        priority: Priority | str = Priority.NORMAL,
        description: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
        notify_on_complete: bool = False,
        max_retries: Optional[int] = None,
    ) -> BarcodeBatch:
        require_role(actor, ROLE_ADMIN, action="create barcode batches")

        errors: List[Dict[str, Any]] = []
        quantity_value = self._bounded_int(errors, "quantity", quantity, 1, self.config.BATCH_MAX_QUANTITY)
        expiry_value = self._bounded_int(errors, "expiry_months", expiry_months, MIN_EXPIRY_MONTHS, MAX_EXPIRY_MONTHS)
        retries_value = self._bounded_int(
            errors,
            "max_retries",
            self.config.BATCH_MAX_RETRIES if max_retries is None else max_retries,
            0,
            10,
        )
        storefront_value = self._bounded_int(errors, "storefront_id", storefront_id, 1, None)

        prefix_value = (prefix if prefix is not None else self.config.BARCODE_DEFAULT_PREFIX).strip().upper()
        if not PREFIX_PATTERN.match(prefix_value):
            errors.append({"field": "prefix", "message": "prefix must be 2-10 letters A-Z", "value": prefix})

        try:
            priority_value = Priority(priority)
        except ValueError:
            priority_value = None
            errors.append({"field": "priority", "message": "unknown priority", "value": priority})

        description_value = None
        try:
            description_value = optional_text("description", description, max_length=1000)
        except InvalidArgumentError as exc:
            errors.extend(exc.fields)

        tag_values = self._clean_tags(errors, tags)

        product = None
        if isinstance(product_id, int) and not isinstance(product_id, bool):
            product = self.products.lookup_product(product_id)
        if product is None:
            errors.append({"field": "product_id", "message": "unknown product", "value": product_id})

        if errors:
            increment_counter("barcode_batch_rejections_total")
            raise InvalidArgumentError("Invalid batch request", fields=errors)

        now = self.clock.now()
        batch = BarcodeBatch(
            batch_number=next_number(self.db, BATCH_PREFIX, now.year),
            productID=product.product_id,
            storefrontID=storefront_value,
            requested_quantity=quantity_value,
            max_retries=retries_value,
            prefix=prefix_value,
            description=description_value,
            expiry_months=expiry_value,
            priority=priority_value,
            status=BatchStatus.PENDING,
            progress=0,
            current_step="queued",
            notify_on_complete=bool(notify_on_complete),
            tags=tag_values,
            created_by=actor.actor_id,
            created_at=now,
            last_updated=now,
        )
        self.db.add(batch)
        self.db.commit()

        increment_counter("barcode_batches_created_total", labels={"priority": priority_value.value})
        record_event(
            "barcode_batch_created",
            {"batch_id": batch.batchID, "quantity": quantity_value, "product_id": product.product_id},
        )
        self.logger.info(
            "Batch %s created for %s barcodes",
            batch.batch_number,
            quantity_value,
            extra={"batch_id": batch.batchID},
        )
        return batch

    def start_batch(self, batch_id: int, actor: Actor) -> BarcodeBatch:
        """Move a pending batch into generation; repeated starts return the current state."""
        require_role(actor, ROLE_ADMIN, action="start barcode batches")
        batch = self._lock(batch_id)
        status = BatchStatus(batch.status)
        if status in {BatchStatus.IN_PROGRESS, BatchStatus.COMPLETED}:
            self.db.rollback()
            return self.get_batch(batch_id)
        if status != BatchStatus.PENDING:
            self.db.rollback()
            raise InvalidStateError(
                f"Batch is {status.value} and cannot be started",
                current_state=status,
                legal_actions=[],
            )

        now = self.clock.now()
        batch.transition_to(BatchStatus.IN_PROGRESS)
        batch.started_at = now
        batch.last_updated = now
        batch.current_step = "generating"
        self.db.commit()
        increment_counter("barcode_batches_started_total")

        generator = self.generator_factory(batch, as_utc(now).year)
        self.dispatcher.dispatch(batch_id, lambda session: self._build_run(session, batch_id, generator).execute())
        return self.get_batch(batch_id)

    def _build_run(self, session: Session, batch_id: int, generator: CandidateFactory) -> BatchRun:
        return BatchRun(
            session,
            batch_id,
            generator,
            config=self.config,
            clock=self.clock,
            notification_sink=self.notification_sink,
        )

    def cancel_batch(
        self,
        batch_id: int,
        actor: Actor,
        reason: str,
        force: bool = False,
    ) -> BarcodeBatch:
        require_role(actor, ROLE_ADMIN, action="cancel barcode batches")
        cleaned_reason = sanitize_text(reason)
        if cleaned_reason is None or not 5 <= len(cleaned_reason) <= 500:
            raise InvalidArgumentError.for_field(
                "reason", "reason must be between 5 and 500 characters", reason
            )

        batch = self._lock(batch_id)
        status = BatchStatus(batch.status)
        if batch.is_terminal:
            self.db.rollback()
            raise InvalidStateError(
                f"Batch is already {status.value}",
                current_state=status,
                legal_actions=[],
            )

        increment_counter("barcode_batches_cancelled_total", labels={"force": str(bool(force)).lower()})
        if status == BatchStatus.IN_PROGRESS and batch_engine.request_cancel(
            batch_id, force=force, actor_id=actor.actor_id, reason=cleaned_reason
        ):
            # The local run writes CANCELLED once its in-flight chunk is settled
            self.db.rollback()
            self.logger.info(
                "Batch %s cancellation signalled to its run (force=%s)",
                batch.batch_number,
                force,
                extra={"batch_id": batch_id},
            )
            return self.get_batch(batch_id)

        # Pending, or running in another process: the row is the arbiter and
        # that run stops at its next chunk commit
        now = self.clock.now()
        batch.transition_to(BatchStatus.CANCELLED)
        batch.cancelled_at = now
        batch.cancelled_by = actor.actor_id
        batch.cancellation_reason = cleaned_reason
        batch.current_step = BatchStatus.CANCELLED.value
        batch.last_updated = now
        self.db.commit()
        self.logger.info(
            "Batch %s cancelled from %s (force=%s)",
            batch.batch_number,
            status.value,
            force,
            extra={"batch_id": batch_id},
        )
        return batch

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get_batch(self, batch_id: int) -> BarcodeBatch:
        batch = self.db.query(BarcodeBatch).filter_by(batchID=batch_id).populate_existing().first()
        if batch is None:
            raise NotFoundError("Batch not found", {"batch_id": batch_id})
        return batch

    def get_progress(self, batch_id: int) -> Dict[str, Any]:
        return progress_snapshot(self.get_batch(batch_id))

    def list_batches(
        self,
        actor: Actor,
        *,
        status: Optional[str] = None,
        priority: Optional[str] = None,
        product_id: Optional[int] = None,
        storefront_id: Optional[int] = None,
        created_by: Optional[int] = None,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
        completed_from: Optional[datetime] = None,
        completed_to: Optional[datetime] = None,
        search: Optional[str] = None,
        has_errors: Optional[bool] = None,
        has_collisions: Optional[bool] = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
        page: int = 1,
        page_size: int = 20,
    ) -> Tuple[List[BarcodeBatch], int]:
        require_role(actor, ROLE_ADMIN, ROLE_AGENT, action="list barcode batches")
        self._check_page(page, page_size)
        if sort_by not in _SORT_COLUMNS:
            raise InvalidArgumentError.for_field("sort_by", f"sort_by must be one of {sorted(_SORT_COLUMNS)}", sort_by)
        if sort_order not in {"asc", "desc"}:
            raise InvalidArgumentError.for_field("sort_order", "sort_order must be asc or desc", sort_order)

        query = self.db.query(BarcodeBatch)
        if status:
            query = query.filter(BarcodeBatch.status == self._parse_enum(BatchStatus, "status", status))
        if priority:
            query = query.filter(BarcodeBatch.priority == self._parse_enum(Priority, "priority", priority))
        if product_id is not None:
            query = query.filter(BarcodeBatch.productID == product_id)
        if storefront_id is not None:
            query = query.filter(BarcodeBatch.storefrontID == storefront_id)
        if created_by is not None:
            query = query.filter(BarcodeBatch.created_by == created_by)
        if created_from is not None:
            query = query.filter(BarcodeBatch.created_at >= created_from)
        if created_to is not None:
            query = query.filter(BarcodeBatch.created_at <= created_to)
        if completed_from is not None:
            query = query.filter(BarcodeBatch.completed_at >= completed_from)
        if completed_to is not None:
            query = query.filter(BarcodeBatch.completed_at <= completed_to)
        if search:
            pattern = f"%{search.strip()}%"
            query = query.filter(
                or_(BarcodeBatch.batch_number.ilike(pattern), BarcodeBatch.description.ilike(pattern))
            )
        if has_errors is not None:
            query = query.filter(BarcodeBatch.error_count > 0 if has_errors else BarcodeBatch.error_count == 0)
        if has_collisions is not None:
            query = query.filter(
                BarcodeBatch.collision_count > 0 if has_collisions else BarcodeBatch.collision_count == 0
            )

        total = query.count()
        column = _SORT_COLUMNS[sort_by]
        ordering = column.asc() if sort_order == "asc" else column.desc()
        items = (
            query.order_by(ordering, BarcodeBatch.batchID.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
            .all()
        )
        return items, total

    def list_collisions(
        self,
        batch_id: int,
        actor: Actor,
        collision_type: Optional[str] = None,
        page: int = 1,
        page_size: int = 50,
    ) -> Tuple[List[BatchCollision], int]:
        require_role(actor, ROLE_ADMIN, ROLE_AGENT, action="view batch collisions")
        self._check_page(page, page_size)
        self.get_batch(batch_id)
        type_value = self._parse_enum(CollisionType, "collision_type", collision_type) if collision_type else None
        detector = CollisionDetector(self.db, self.store, max_retries=self.config.BATCH_MAX_RETRIES)
        return detector.list_for_batch(batch_id, type_value, page, page_size)

    def list_barcodes(
        self,
        batch_id: int,
        actor: Actor,
        page: int = 1,
        page_size: int = 100,
    ) -> Tuple[List[WarrantyBarcode], int]:
        require_role(actor, ROLE_ADMIN, ROLE_AGENT, action="view batch barcodes")
        self._check_page(page, page_size)
        self.get_batch(batch_id)
        return self.store.list_by_batch(batch_id, page, page_size)

    def statistics(self, actor: Actor) -> Dict[str, Any]:
        require_role(actor, ROLE_ADMIN, ROLE_AGENT, action="view batch statistics")
        return compute_batch_statistics(self.db)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _lock(self, batch_id: int) -> BarcodeBatch:
        batch = (
            self.db.query(BarcodeBatch)
            .filter_by(batchID=batch_id)
            .populate_existing()
            .with_for_update()
            .first()
        )
        if batch is None:
            self.db.rollback()
            raise NotFoundError("Batch not found", {"batch_id": batch_id})
        return batch

    @staticmethod
    def _bounded_int(
        errors: List[Dict[str, Any]],
        field: str,
        value: Any,
        minimum: int,
        maximum: Optional[int],
    ) -> Optional[int]:
        if isinstance(value, bool) or not isinstance(value, int):
            errors.append({"field": field, "message": f"{field} must be an integer", "value": value})
            return None
        if value < minimum or (maximum is not None and value > maximum):
            if maximum is None:
                message = f"{field} must be at least {minimum}"
            else:
                message = f"{field} must be between {minimum} and {maximum}"
            errors.append({"field": field, "message": message, "value": value})
            return None
        return value

    @staticmethod
    def _clean_tags(errors: List[Dict[str, Any]], tags: Optional[Iterable[str]]) -> List[str]:
        if tags is None:
            return []
        if isinstance(tags, str):
            tags = [tags]
        cleaned: List[str] = []
        for tag in tags:
            value = sanitize_text(str(tag))
            if value and value not in cleaned:
                cleaned.append(value[:50])
        if len(cleaned) > MAX_TAGS:
            errors.append({"field": "tags", "message": f"at most {MAX_TAGS} tags are allowed", "value": len(cleaned)})
        return cleaned

    @staticmethod
    def _check_page(page: int, page_size: int) -> None:
        if not isinstance(page, int) or page < 1:
            raise InvalidArgumentError.for_field("page", "page must be a positive integer", page)
        if not isinstance(page_size, int) or not 1 <= page_size <= MAX_PAGE_SIZE:
            raise InvalidArgumentError.for_field(
                "page_size", f"page_size must be between 1 and {MAX_PAGE_SIZE}", page_size
            )

    @staticmethod
    def _parse_enum(enum_cls, field: str, value: Any):
        try:
            return enum_cls(str(value).lower())
        except ValueError:
            raise InvalidArgumentError.for_field(field, f"unknown {field}", value) from None


def progress_snapshot(batch: BarcodeBatch) -> Dict[str, Any]:
    """Polling view of a batch; estimated_completion is a linear extrapolation of the recent rate."""
    generated = batch.generated_count or 0
    remaining = batch.remaining_count
    rate = batch.generation_rate or 0.0
    estimated_completion = None
    if BatchStatus(batch.status) == BatchStatus.IN_PROGRESS and generated > 0 and rate > 0 and batch.last_updated:
        estimated_completion = as_utc(batch.last_updated) + timedelta(seconds=remaining / rate)
    return {
        "batch_id": batch.batchID,
        "batch_number": batch.batch_number,
        "status": BatchStatus(batch.status).value,
        "progress": batch.progress or 0,
        "current_step": batch.current_step,
        "requested_quantity": batch.requested_quantity,
        "processed_count": generated,
        "remaining_count": remaining,
        "successful_count": batch.successful_count or 0,
        "failed_count": batch.failed_count or 0,
        "error_count": batch.error_count or 0,
        "collision_count": batch.collision_count or 0,
        "retry_count": batch.retry_count or 0,
        "generation_rate": rate,
        "last_updated": as_utc(batch.last_updated),
        "estimated_completion": estimated_completion,
        "last_error": batch.last_error,
    }
