from __future__ import annotations

from uuid import uuid4

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from warranty.config import Config
from warranty.database import SessionLocal
from warranty.errors import ForbiddenError, InvalidArgumentError, InvalidStateError, NotFoundError
from warranty.models import BatchStatus, CollisionType, WarrantyBarcode
from warranty.observability.metrics import get_counter_value, get_gauge_value
from warranty.services import batch_engine
from warranty.services.batch_service import BatchService, InlineBatchDispatcher
from warranty.services.collaborators import Actor
from warranty.services.warranty_store import WarrantyStore


class _SmallChunkConfig(Config):
    BATCH_CHUNK_SIZE = 5
    BATCH_WORKERS = 2
    BATCH_EXECUTION_MODE = "inline"


class _ScriptedGenerator:
    """Returns scripted values for chosen (slot, attempt) pairs and fresh ones otherwise."""

    def __init__(self, script=None, on_draw=None):
        self.script = script or {}
        self.on_draw = on_draw

    def candidate(self, slot, attempt):
        if self.on_draw is not None:
            self.on_draw(slot, attempt)
        scripted = self.script.get((slot, attempt)) or self.script.get((slot, "*"))
        if scripted:
            return scripted
        return f"WB-2025-{uuid4().hex[:12].upper()}"


def _service(db_session, clock, sink, generator=None, factory=None, config=_SmallChunkConfig) -> BatchService:
    if factory is None and generator is not None:
        factory = lambda batch, year: generator  # noqa: E731
    return BatchService(
        db_session,
        config=config,
        clock=clock,
        dispatcher=InlineBatchDispatcher(db_session),
        generator_factory=factory,
        notification_sink=sink,
    )


def _create(service, admin, product, quantity=20, **overrides):
    params = {
        "product_id": product.productID,
        "storefront_id": 3,
        "quantity": quantity,
        "expiry_months": 24,
    }
    params.update(overrides)
    return service.create_batch(admin, **params)


def test_create_batch_assigns_number_and_queues(db_session, clock, notification_sink, admin, sample_product):
    service = _service(db_session, clock, notification_sink)

    batch = _create(service, admin, sample_product, tags=["launch", "launch", "q1"], description="<b>Launch</b> run")

    assert batch.batch_number.startswith(f"BATCH-{clock.now().year}-")
    assert len(batch.batch_number.split("-")[2]) == 6
    assert batch.status == BatchStatus.PENDING
    assert batch.prefix == "WB"
    assert batch.tags == ["launch", "q1"]
    assert "<b>" not in batch.description
    assert batch.created_by == admin.actor_id


def test_batch_numbers_increase(db_session, clock, notification_sink, admin, sample_product):
    service = _service(db_session, clock, notification_sink)

    first = _create(service, admin, sample_product)
    second = _create(service, admin, sample_product)

    assert second.batch_number > first.batch_number


def test_create_batch_collects_every_invalid_field(db_session, clock, notification_sink, admin):
    service = _service(db_session, clock, notification_sink)

    with pytest.raises(InvalidArgumentError) as exc_info:
        service.create_batch(
            admin,
            product_id=424242,
            storefront_id=0,
            quantity=0,
            expiry_months=121,
            prefix="W1",
            priority="someday",
            max_retries=11,
        )

    fields = {item["field"] for item in exc_info.value.fields}
    assert fields == {"product_id", "storefront_id", "quantity", "expiry_months", "prefix", "priority", "max_retries"}


@pytest.mark.parametrize("quantity, valid", [(1, True), (100000, True), (0, False), (100001, False)])
def test_quantity_bounds(db_session, clock, notification_sink, admin, sample_product, quantity, valid):
    service = _service(db_session, clock, notification_sink)

    if valid:
        assert _create(service, admin, sample_product, quantity=quantity).requested_quantity == quantity
    else:
        with pytest.raises(InvalidArgumentError):
            _create(service, admin, sample_product, quantity=quantity)


@pytest.mark.parametrize("months, valid", [(1, True), (120, True), (0, False), (121, False)])
def test_expiry_month_bounds(db_session, clock, notification_sink, admin, sample_product, months, valid):
    service = _service(db_session, clock, notification_sink)

    if valid:
        assert _create(service, admin, sample_product, expiry_months=months).expiry_months == months
    else:
        with pytest.raises(InvalidArgumentError):
            _create(service, admin, sample_product, expiry_months=months)


def test_only_admins_manage_batches(db_session, clock, notification_sink, agent, sample_product):
    service = _service(db_session, clock, notification_sink)

    with pytest.raises(ForbiddenError):
        _create(service, agent, sample_product)
    with pytest.raises(ForbiddenError):
        _create(service, Actor.customer(5), sample_product)


def test_started_batch_completes_and_notifies_creator(db_session, clock, notification_sink, admin, sample_product):
    service = _service(db_session, clock, notification_sink)
    batch = _create(service, admin, sample_product, quantity=23, notify_on_complete=True)

    finished = service.start_batch(batch.batchID, admin)

    assert finished.status == BatchStatus.COMPLETED
    assert finished.successful_count == 23
    assert finished.generated_count == 23
    assert finished.failed_count == 0
    assert finished.progress == 100
    assert finished.notification_sent is True
    assert notification_sink.templates_for(admin.actor_id) == ["batch_completed"]

    barcodes, total = service.list_barcodes(batch.batchID, admin, page_size=100)
    assert total == 23
    assert len({barcode.barcode_number for barcode in barcodes}) == 23
    assert all(barcode.barcode_number.startswith("WB-") for barcode in barcodes)
    assert all(barcode.batch_number == batch.batch_number for barcode in barcodes)


def test_starting_again_returns_current_state(db_session, clock, notification_sink, admin, sample_product):
    service = _service(db_session, clock, notification_sink)
    batch = _create(service, admin, sample_product, quantity=5)
    service.start_batch(batch.batchID, admin)

    again = service.start_batch(batch.batchID, admin)

    assert again.status == BatchStatus.COMPLETED
    assert db_session.query(WarrantyBarcode).filter_by(batchID=batch.batchID).count() == 5


def test_in_batch_repeat_is_regenerated(db_session, clock, notification_sink, admin, sample_product):
    repeated = "WB-2025-REPEATED01"
    generator = _ScriptedGenerator({(0, 0): repeated, (1, 0): repeated})
    service = _service(db_session, clock, notification_sink, generator=generator)
    batch = _create(service, admin, sample_product, quantity=8)

    finished = service.start_batch(batch.batchID, admin)

    assert finished.status == BatchStatus.COMPLETED
    assert finished.successful_count == 8
    assert finished.collision_count == 1
    collisions, total = service.list_collisions(batch.batchID, admin)
    assert total == 1
    assert collisions[0].collision_type == CollisionType.DUPLICATE_IN_BATCH
    assert collisions[0].slot_index == 1
    assert collisions[0].resolution.value == "regenerated"


def test_store_collision_is_regenerated(db_session, clock, notification_sink, admin, sample_product, barcode_factory):
    existing = barcode_factory()
    generator = _ScriptedGenerator({(2, 0): existing.barcode_number})
    service = _service(db_session, clock, notification_sink, generator=generator)
    batch = _create(service, admin, sample_product, quantity=6)

    finished = service.start_batch(batch.batchID, admin)

    assert finished.status == BatchStatus.COMPLETED
    assert finished.successful_count == 6
    collisions, _ = service.list_collisions(batch.batchID, admin, collision_type="duplicate_in_store")
    assert [collision.existing_barcodeID for collision in collisions] == [existing.barcodeID]


def test_exhausted_slot_fails_a_small_batch(db_session, clock, notification_sink, admin, sample_product, barcode_factory):
    existing = barcode_factory()
    generator = _ScriptedGenerator({(3, "*"): existing.barcode_number})
    service = _service(db_session, clock, notification_sink, generator=generator)
    batch = _create(service, admin, sample_product, quantity=12, max_retries=2)

    finished = service.start_batch(batch.batchID, admin)

    # floor(12 * 0.05) tolerates no failed slots
    assert finished.status == BatchStatus.FAILED
    assert finished.failed_count == 1
    assert finished.collision_count == 3
    assert finished.last_error


def test_exhausted_slot_within_threshold_still_completes(
    db_session, clock, notification_sink, admin, sample_product, barcode_factory
):
    existing = barcode_factory()
    generator = _ScriptedGenerator({(3, "*"): existing.barcode_number})
    service = _service(db_session, clock, notification_sink, generator=generator)
    batch = _create(service, admin, sample_product, quantity=40, max_retries=2)

    finished = service.start_batch(batch.batchID, admin)

    assert finished.status == BatchStatus.COMPLETED
    assert finished.generated_count == 40
    assert finished.successful_count == 39
    assert finished.failed_count == 1
    dropped = [c for c in service.list_collisions(batch.batchID, admin)[0] if c.resolution.value == "dropped"]
    assert [collision.attempt for collision in dropped] == [2]


class _LateWriterDetector(batch_engine.CollisionDetector):
    """Misses store rows on its first lookup, as if another writer committed them meanwhile."""

    lookups = 0

    def find_in_store(self, values):
        type(self).lookups += 1
        if type(self).lookups == 1:
            list(values)
            return {}
        return super().find_in_store(values)


def test_lost_unique_race_is_regenerated(
    db_session, clock, notification_sink, admin, sample_product, barcode_factory, monkeypatch
):
    existing = barcode_factory()
    monkeypatch.setattr(_LateWriterDetector, "lookups", 0)
    monkeypatch.setattr(batch_engine, "CollisionDetector", _LateWriterDetector)
    generator = _ScriptedGenerator({(3, 0): existing.barcode_number})
    service = _service(db_session, clock, notification_sink, generator=generator)
    batch = _create(service, admin, sample_product, quantity=20)

    finished = service.start_batch(batch.batchID, admin)

    assert finished.status == BatchStatus.COMPLETED
    assert finished.successful_count == 20
    assert finished.generated_count == 20
    assert finished.progress == 100
    assert db_session.query(WarrantyBarcode).filter_by(batchID=batch.batchID).count() == 20
    collisions, _ = service.list_collisions(batch.batchID, admin, collision_type="duplicate_in_store")
    assert [(collision.slot_index, collision.existing_barcodeID) for collision in collisions] == [
        (3, existing.barcodeID)
    ]


class _NoBackoffConfig(_SmallChunkConfig):
    BATCH_COMMIT_BACKOFF_SECONDS = 0.0


def _failing_bulk_create(monkeypatch, error, times):
    original = WarrantyStore.bulk_create_barcodes
    calls = {"count": 0}

    def _bulk_create(self, barcodes):
        calls["count"] += 1
        if calls["count"] <= times:
            raise error
        return original(self, barcodes)

    monkeypatch.setattr(WarrantyStore, "bulk_create_barcodes", _bulk_create)
    return calls


def test_transient_store_error_is_retried(db_session, clock, notification_sink, admin, sample_product, monkeypatch):
    _failing_bulk_create(monkeypatch, OperationalError("INSERT", {}, Exception("database is locked")), times=1)
    service = _service(db_session, clock, notification_sink, config=_NoBackoffConfig)
    batch = _create(service, admin, sample_product, quantity=10)

    finished = service.start_batch(batch.batchID, admin)

    assert finished.status == BatchStatus.COMPLETED
    assert finished.successful_count == 10
    assert finished.retry_count == 1
    assert get_counter_value("barcode_batch_commit_retries_total") == 1


def test_store_that_stays_down_fails_the_batch(
    db_session, clock, notification_sink, admin, sample_product, monkeypatch
):
    _failing_bulk_create(monkeypatch, OperationalError("INSERT", {}, Exception("database is locked")), times=10)
    service = _service(db_session, clock, notification_sink, config=_NoBackoffConfig)
    batch = _create(service, admin, sample_product, quantity=10, max_retries=2)

    finished = service.start_batch(batch.batchID, admin)

    assert finished.status == BatchStatus.FAILED
    assert finished.successful_count == 0
    assert finished.last_error.startswith("Store unavailable after 2 retries")


def test_permanent_store_error_fails_the_batch(
    db_session, clock, notification_sink, admin, sample_product, monkeypatch
):
    calls = _failing_bulk_create(
        monkeypatch, IntegrityError("INSERT", {}, Exception("CHECK constraint failed: expiry_months")), times=1
    )
    service = _service(db_session, clock, notification_sink, config=_NoBackoffConfig)
    batch = _create(service, admin, sample_product, quantity=10)

    finished = service.start_batch(batch.batchID, admin)

    assert finished.status == BatchStatus.FAILED
    assert finished.generated_count == 0
    assert finished.last_error == "Permanent store error: CHECK constraint failed: expiry_months"
    assert calls["count"] == 1
    assert db_session.query(WarrantyBarcode).filter_by(batchID=batch.batchID).count() == 0


def _cancelling_factory(force, actor_id):
    def _factory(batch, year):
        def _on_draw(slot, attempt):
            if slot == 5 and attempt == 0:
                batch_engine.request_cancel(batch.batchID, force=force, actor_id=actor_id, reason="Operator stop")

        return _ScriptedGenerator(on_draw=_on_draw)

    return _factory


def test_graceful_cancel_keeps_the_chunk_in_flight(db_session, clock, notification_sink, admin, sample_product):
    service = _service(db_session, clock, notification_sink, factory=_cancelling_factory(False, admin.actor_id))
    batch = _create(service, admin, sample_product, quantity=20)

    finished = service.start_batch(batch.batchID, admin)

    assert finished.status == BatchStatus.CANCELLED
    assert finished.successful_count == 10
    assert finished.cancelled_by == admin.actor_id
    assert finished.cancellation_reason == "Operator stop"
    assert batch_engine.active_runs() == []


def test_force_cancel_discards_the_chunk_in_flight(db_session, clock, notification_sink, admin, sample_product):
    service = _service(db_session, clock, notification_sink, factory=_cancelling_factory(True, admin.actor_id))
    batch = _create(service, admin, sample_product, quantity=20)

    finished = service.start_batch(batch.batchID, admin)

    assert finished.status == BatchStatus.CANCELLED
    assert finished.successful_count == 5
    assert db_session.query(WarrantyBarcode).filter_by(batchID=batch.batchID).count() == 5


def _cancelling_through_service(clock, actor, force, seen):
    def _factory(batch, year):
        def _on_draw(slot, attempt):
            if slot == 5 and attempt == 0:
                # The request arrives on its own connection, as an HTTP call would
                session = SessionLocal()
                try:
                    other = BatchService(session, config=_SmallChunkConfig, clock=clock)
                    seen.append(other.cancel_batch(batch.batchID, actor, "Operator stop", force=force).status)
                finally:
                    session.close()

        return _ScriptedGenerator(on_draw=_on_draw)

    return _factory


@pytest.mark.parametrize(("force", "kept"), [(False, 10), (True, 5)])
def test_cancel_batch_signals_the_running_batch(
    db_session, clock, notification_sink, admin, sample_product, force, kept
):
    seen = []
    factory = _cancelling_through_service(clock, admin, force, seen)
    service = _service(db_session, clock, notification_sink, factory=factory)
    batch = _create(service, admin, sample_product, quantity=20)

    finished = service.start_batch(batch.batchID, admin)

    # Acknowledged while the run was still settling its chunk
    assert seen == [BatchStatus.IN_PROGRESS]
    assert finished.status == BatchStatus.CANCELLED
    assert finished.successful_count == kept
    assert finished.generated_count == kept
    assert finished.cancelled_by == admin.actor_id
    assert finished.cancellation_reason == "Operator stop"
    assert db_session.query(WarrantyBarcode).filter_by(batchID=batch.batchID).count() == kept


def test_cancel_without_a_local_run_writes_the_row(db_session, clock, notification_sink, admin, sample_product):
    service = _service(db_session, clock, notification_sink)
    batch = _create(service, admin, sample_product)
    # Started by a runner in another process
    batch.transition_to(BatchStatus.IN_PROGRESS)
    db_session.commit()

    cancelled = service.cancel_batch(batch.batchID, admin, "Stop the remote run", force=True)

    assert cancelled.status == BatchStatus.CANCELLED
    assert cancelled.cancelled_by == admin.actor_id
    run = batch_engine.BatchRun(db_session, batch.batchID, _ScriptedGenerator(), config=_SmallChunkConfig, clock=clock)
    assert run.execute().status == BatchStatus.CANCELLED
    assert db_session.query(WarrantyBarcode).filter_by(batchID=batch.batchID).count() == 0


def test_cancelled_pending_batch_cannot_start(db_session, clock, notification_sink, admin, sample_product):
    service = _service(db_session, clock, notification_sink)
    batch = _create(service, admin, sample_product)

    cancelled = service.cancel_batch(batch.batchID, admin, "Wrong product selected")

    assert cancelled.status == BatchStatus.CANCELLED
    assert cancelled.cancellation_reason == "Wrong product selected"
    with pytest.raises(InvalidStateError) as exc_info:
        service.start_batch(batch.batchID, admin)
    assert exc_info.value.current_state == "cancelled"


def test_terminal_batch_cannot_be_cancelled(db_session, clock, notification_sink, admin, sample_product):
    service = _service(db_session, clock, notification_sink)
    batch = _create(service, admin, sample_product, quantity=3)
    service.start_batch(batch.batchID, admin)

    with pytest.raises(InvalidStateError):
        service.cancel_batch(batch.batchID, admin, "Too late to stop")


def test_cancel_requires_a_reason(db_session, clock, notification_sink, admin, sample_product):
    service = _service(db_session, clock, notification_sink)
    batch = _create(service, admin, sample_product)

    with pytest.raises(InvalidArgumentError):
        service.cancel_batch(batch.batchID, admin, "no")


def test_request_cancel_without_a_run_reports_false():
    assert batch_engine.request_cancel(123456) is False


def test_progress_gauge_follows_the_run(db_session, clock, notification_sink, admin, sample_product):
    seen = []

    def _factory(batch, year):
        labels = {"batch_id": str(batch.batchID)}

        def _on_draw(slot, attempt):
            if slot == 5 and attempt == 0:
                seen.append(get_gauge_value("barcode_batch_progress_percent", labels))

        return _ScriptedGenerator(on_draw=_on_draw)

    service = _service(db_session, clock, notification_sink, factory=_factory)
    batch = _create(service, admin, sample_product, quantity=20)

    service.start_batch(batch.batchID, admin)

    assert seen == [25.0]
    assert get_gauge_value("barcode_batch_progress_percent", {"batch_id": str(batch.batchID)}) is None


def test_progress_snapshot_of_a_finished_batch(db_session, clock, notification_sink, admin, sample_product):
    service = _service(db_session, clock, notification_sink)
    batch = _create(service, admin, sample_product, quantity=7)
    service.start_batch(batch.batchID, admin)

    progress = service.get_progress(batch.batchID)

    assert progress["status"] == "completed"
    assert progress["processed_count"] == 7
    assert progress["remaining_count"] == 0
    assert progress["successful_count"] == 7
    assert progress["estimated_completion"] is None


def test_unknown_batch_is_not_found(db_session, clock, notification_sink):
    service = _service(db_session, clock, notification_sink)

    with pytest.raises(NotFoundError):
        service.get_progress(987654)


def test_list_filters_and_statistics(db_session, clock, notification_sink, admin, agent, sample_product):
    service = _service(db_session, clock, notification_sink)
    done = _create(service, admin, sample_product, quantity=4, priority="high", description="Holiday stock")
    _create(service, admin, sample_product, quantity=2)
    service.start_batch(done.batchID, admin)

    completed, completed_total = service.list_batches(agent, status="completed")
    searched, _ = service.list_batches(agent, search="holiday")
    high, _ = service.list_batches(agent, priority="high")
    stats = service.statistics(agent)

    assert completed_total == 1 and completed[0].batchID == done.batchID
    assert [item.batchID for item in searched] == [done.batchID]
    assert [item.batchID for item in high] == [done.batchID]
    assert stats["total_batches"] == 2
    assert stats["by_status"]["completed"] == 1
    assert stats["by_status"]["pending"] == 1
    assert stats["total_successful"] == 4


def test_list_rejects_bad_paging(db_session, clock, notification_sink, agent):
    service = _service(db_session, clock, notification_sink)

    with pytest.raises(InvalidArgumentError):
        service.list_batches(agent, page_size=101)
    with pytest.raises(InvalidArgumentError):
        service.list_batches(agent, sort_by="secret")
