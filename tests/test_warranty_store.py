from __future__ import annotations

from datetime import datetime, timezone

import pytest

from warranty.errors import ConflictError, DuplicateBarcodeError, InvalidArgumentError, InvalidStateError, NotFoundError
from warranty.models import BarcodeStatus, WarrantyBarcode
from warranty.observability.metrics import get_counter_value
from warranty.services.collaborators import Actor
from warranty.services.warranty_store import PurchaseDetails, WarrantyStore


def _store(db_session, clock) -> WarrantyStore:
    return WarrantyStore(db_session, clock=clock)


def test_create_barcode_persists_generated_record_with_audit(db_session, clock, sample_product, new_barcode_value):
    store = _store(db_session, clock)
    value = new_barcode_value()

    barcode = store.create_barcode(value, sample_product.productID, 12)

    assert barcode.barcodeID is not None
    assert barcode.status == BarcodeStatus.GENERATED
    assert barcode.qr_code_data.endswith(f"/{value}")
    assert [event.event_type for event in store.audit_trail(barcode.barcodeID)] == ["generated"]
    assert get_counter_value("barcodes_created_total") == 1


def test_duplicate_barcode_is_reported_by_value(db_session, clock, sample_product, new_barcode_value):
    store = _store(db_session, clock)
    value = new_barcode_value()
    store.create_barcode(value, sample_product.productID, 12)

    with pytest.raises(DuplicateBarcodeError) as exc_info:
        store.create_barcode(value, sample_product.productID, 12)

    assert exc_info.value.barcodes == [value]
    assert exc_info.value.kind == "conflict"
    assert db_session.query(WarrantyBarcode).filter_by(barcode_number=value).count() == 1


def test_bulk_create_flags_repeats_inside_one_chunk(db_session, clock, sample_product, new_barcode_value):
    store = _store(db_session, clock)
    value = new_barcode_value()
    chunk = [store.build_barcode(value, sample_product.productID, 12) for _ in range(2)]

    with pytest.raises(DuplicateBarcodeError) as exc_info:
        store.bulk_create_barcodes(chunk)

    assert exc_info.value.barcodes == [value]


def test_lookup_normalizes_the_barcode_string(db_session, clock, sample_product, new_barcode_value):
    store = _store(db_session, clock)
    value = new_barcode_value()
    store.create_barcode(value, sample_product.productID, 12)

    assert store.get_by_string(f"  {value.lower()} ").barcode_number == value
    assert store.get_by_string("") is None
    with pytest.raises(NotFoundError):
        store.require_by_string("WB-2025-0000000000")


def test_existing_values_maps_known_strings_to_ids(db_session, clock, sample_product, new_barcode_value):
    store = _store(db_session, clock)
    known = store.create_barcode(new_barcode_value(), sample_product.productID, 12)

    found = store.existing_values([known.barcode_number, new_barcode_value(), ""])

    assert found == {known.barcode_number: known.barcodeID}


def test_activation_is_guarded_against_a_second_activation(db_session, clock, barcode_factory, sample_customer):
    store = _store(db_session, clock)
    barcode = barcode_factory()
    activated_at = datetime(2025, 1, 31, 12, 0, tzinfo=timezone.utc)

    activated = store.activate(
        barcode.barcodeID,
        activated_at,
        1,
        customer_id=sample_customer.customerID,
        purchase=PurchaseDetails(retailer="SmartSeller Store", serial_number="SN-1"),
    )

    assert activated.status == BarcodeStatus.ACTIVE
    assert activated.customerID == sample_customer.customerID
    # Month arithmetic clamps to the end of February
    assert activated.expiry_date.replace(tzinfo=None) == datetime(2025, 2, 28, 12, 0)
    with pytest.raises(ConflictError):
        store.activate(barcode.barcodeID, activated_at, 12, customer_id=sample_customer.customerID)


def test_status_changes_follow_the_lifecycle(db_session, clock, barcode_factory):
    store = _store(db_session, clock)
    barcode = barcode_factory()

    with pytest.raises(InvalidStateError) as exc_info:
        store.update_status(barcode.barcodeID, BarcodeStatus.CLAIMED)

    assert exc_info.value.current_state == "generated"
    assert exc_info.value.legal_actions == ["active", "revoked"]


def test_revoke_records_reason_and_audit(db_session, clock, barcode_factory, admin):
    store = _store(db_session, clock)
    barcode = barcode_factory()

    revoked = store.revoke(barcode.barcodeID, "Printed on a damaged label", admin)

    assert revoked.status == BarcodeStatus.REVOKED
    assert revoked.revoked_by == admin.actor_id
    assert revoked.revocation_reason == "Printed on a damaged label"
    assert [event.event_type for event in store.audit_trail(barcode.barcodeID)] == ["generated", "revoked"]


def test_revoke_requires_a_reason(db_session, clock, barcode_factory):
    store = _store(db_session, clock)
    barcode = barcode_factory()

    with pytest.raises(InvalidArgumentError):
        store.revoke(barcode.barcodeID, "no", Actor.system())


def test_revoked_barcode_cannot_be_revoked_again(db_session, clock, barcode_factory, admin):
    store = _store(db_session, clock)
    barcode = barcode_factory()
    store.revoke(barcode.barcodeID, "Duplicate print run", admin)

    with pytest.raises(InvalidStateError):
        store.revoke(barcode.barcodeID, "Duplicate print run", admin)
