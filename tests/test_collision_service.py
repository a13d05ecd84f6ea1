from __future__ import annotations

from warranty.models import BarcodeBatch, BatchStatus, CollisionResolution, CollisionType
from warranty.observability.metrics import get_counter_value
from warranty.services.collision_service import CollisionDetector
from warranty.services.warranty_store import WarrantyStore


def _detector(db_session, clock, max_retries=2) -> CollisionDetector:
    return CollisionDetector(db_session, WarrantyStore(db_session, clock=clock), max_retries=max_retries)


def _batch(db_session, product, clock) -> BarcodeBatch:
    batch = BarcodeBatch(
        batch_number="BATCH-2025-999001",
        productID=product.productID,
        storefrontID=1,
        requested_quantity=10,
        prefix="WB",
        expiry_months=12,
        status=BatchStatus.IN_PROGRESS,
        created_by=1,
        created_at=clock.now(),
    )
    db_session.add(batch)
    db_session.commit()
    return batch


def test_claim_rejects_a_value_already_accepted_in_the_run(db_session, clock):
    detector = _detector(db_session, clock)

    assert detector.claim("WB-2025-AAAAAAAAAA") is True
    assert detector.claim("WB-2025-AAAAAAAAAA") is False
    assert detector.accepted_count == 1

    detector.release(["WB-2025-AAAAAAAAAA"])
    assert detector.claim("WB-2025-AAAAAAAAAA") is True


def test_find_in_store_reports_persisted_values(db_session, clock, barcode_factory, new_barcode_value):
    detector = _detector(db_session, clock)
    existing = barcode_factory()

    found = detector.find_in_store([existing.barcode_number, new_barcode_value()])

    assert found == {existing.barcode_number: existing.barcodeID}


def test_resolution_regenerates_until_retries_are_exhausted(db_session, clock):
    detector = _detector(db_session, clock, max_retries=2)
    value = "WB-2025-BBBBBBBBBB"

    outcomes = [detector.resolve(4, attempt, value, CollisionType.DUPLICATE_IN_BATCH) for attempt in range(3)]

    assert [outcome.resolution for outcome in outcomes] == [
        CollisionResolution.REGENERATED,
        CollisionResolution.REGENERATED,
        CollisionResolution.DROPPED,
    ]
    assert outcomes[0].regenerate and not outcomes[2].regenerate
    assert get_counter_value(
        "barcode_collisions_total",
        labels={"type": "duplicate_in_batch", "resolution": "regenerated"},
    ) == 2
    assert get_counter_value(
        "barcode_collisions_total",
        labels={"type": "duplicate_in_batch", "resolution": "dropped"},
    ) == 1


def test_zero_retries_drops_on_first_collision(db_session, clock):
    detector = _detector(db_session, clock, max_retries=0)

    outcome = detector.resolve(0, 0, "WB-2025-CCCCCCCCCC", CollisionType.DUPLICATE_IN_STORE, existing_barcode_id=7)

    assert outcome.resolution == CollisionResolution.DROPPED
    assert outcome.existing_barcode_id == 7


def test_recorded_collisions_are_listed_per_batch(db_session, clock, sample_product):
    detector = _detector(db_session, clock)
    batch = _batch(db_session, sample_product, clock)

    detector.record(batch, detector.resolve(0, 0, "WB-2025-DDDDDDDDDD", CollisionType.DUPLICATE_IN_BATCH), clock.now())
    detector.record(batch, detector.resolve(1, 0, "WB-2025-EEEEEEEEEE", CollisionType.DUPLICATE_IN_STORE), clock.now())
    db_session.commit()

    everything, total = detector.list_for_batch(batch.batchID)
    in_store, in_store_total = detector.list_for_batch(batch.batchID, CollisionType.DUPLICATE_IN_STORE)

    assert total == 2
    assert [collision.slot_index for collision in everything] == [0, 1]
    assert all(collision.resolved_at is not None for collision in everything)
    assert in_store_total == 1
    assert in_store[0].barcode_value == "WB-2025-EEEEEEEEEE"
