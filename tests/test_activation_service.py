from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest

from warranty.errors import (
    ConflictError,
    ForbiddenError,
    InvalidArgumentError,
    NotFoundError,
    PreconditionFailedError,
)
from warranty.models import BarcodeStatus
from warranty.services.activation_service import ActivationService
from warranty.services.collaborators import Actor
from warranty.time_utils import as_utc


def _service(db_session, clock) -> ActivationService:
    return ActivationService(db_session, clock=clock)


def test_customer_activates_their_own_warranty(db_session, clock, barcode_factory, sample_customer):
    service = _service(db_session, clock)
    barcode = barcode_factory(months=24)
    purchased = (clock.now() - timedelta(days=3)).date().isoformat()

    activated = service.activate(
        barcode.barcode_number.lower(),
        Actor.customer(sample_customer.customerID),
        retailer="SmartSeller Store",
        invoice="INV-1001",
        serial_number="SN-ABC-1",
        purchase_date=purchased,
        purchase_price="899.5",
    )

    assert activated.status == BarcodeStatus.ACTIVE
    assert activated.customerID == sample_customer.customerID
    assert activated.purchase_invoice == "INV-1001"
    assert Decimal(str(activated.purchase_price)) == Decimal("899.50")
    assert as_utc(activated.expiry_date) > clock.now() + timedelta(days=700)
    trail = service.audit_trail(barcode.barcode_number, Actor.agent(9))
    assert [entry["event_type"] for entry in trail] == ["generated", "activated"]


def test_agent_registers_on_behalf_of_a_customer(db_session, clock, barcode_factory, sample_customer, agent):
    service = _service(db_session, clock)
    barcode = barcode_factory()

    activated = service.activate(barcode.barcode_number, agent, customer_id=sample_customer.customerID)

    assert activated.customerID == sample_customer.customerID
    assert activated.activated_by == agent.actor_id


def test_agent_must_name_the_customer(db_session, clock, barcode_factory, agent):
    service = _service(db_session, clock)

    with pytest.raises(InvalidArgumentError) as exc_info:
        service.activate(barcode_factory().barcode_number, agent)

    assert exc_info.value.fields[0]["field"] == "customer_id"


def test_unknown_customer_is_rejected(db_session, clock, barcode_factory, agent):
    service = _service(db_session, clock)

    with pytest.raises(InvalidArgumentError):
        service.activate(barcode_factory().barcode_number, agent, customer_id=55555)


def test_customer_cannot_register_for_someone_else(db_session, clock, barcode_factory, customer_factory):
    service = _service(db_session, clock)
    first, second = customer_factory(), customer_factory()

    with pytest.raises(ForbiddenError):
        service.activate(
            barcode_factory().barcode_number,
            Actor.customer(first.customerID),
            customer_id=second.customerID,
        )


def test_second_activation_conflicts(db_session, clock, barcode_factory, sample_customer, activate_barcode):
    service = _service(db_session, clock)
    barcode = barcode_factory()
    activate_barcode(barcode, sample_customer, clock)

    with pytest.raises(ConflictError):
        service.activate(barcode.barcode_number, Actor.customer(sample_customer.customerID))


def test_revoked_barcode_cannot_be_activated(db_session, clock, barcode_factory, sample_customer, admin):
    service = _service(db_session, clock)
    barcode = barcode_factory()
    service.revoke(barcode.barcode_number, admin, "Label misprinted")

    with pytest.raises(PreconditionFailedError) as exc_info:
        service.activate(barcode.barcode_number, Actor.customer(sample_customer.customerID))

    assert exc_info.value.reason == "warranty_revoked"


def test_unknown_barcode_is_not_found(db_session, clock, sample_customer, new_barcode_value):
    service = _service(db_session, clock)

    with pytest.raises(NotFoundError):
        service.activate(new_barcode_value(), Actor.customer(sample_customer.customerID))


def test_purchase_details_are_validated_together(db_session, clock, barcode_factory, sample_customer):
    service = _service(db_session, clock)
    future = (clock.now() + timedelta(days=2)).isoformat()

    with pytest.raises(InvalidArgumentError) as exc_info:
        service.activate(
            barcode_factory().barcode_number,
            Actor.customer(sample_customer.customerID),
            purchase_date=future,
            purchase_price="-5",
        )

    assert {item["field"] for item in exc_info.value.fields} == {"purchase_date", "purchase_price"}


def test_warranty_period_override_is_bounded(db_session, clock, barcode_factory, sample_customer):
    service = _service(db_session, clock)

    with pytest.raises(InvalidArgumentError):
        service.activate(
            barcode_factory().barcode_number,
            Actor.customer(sample_customer.customerID),
            warranty_period_months=121,
        )


def test_other_customers_cannot_read_a_warranty(db_session, clock, active_warranty, customer_factory, agent):
    service = _service(db_session, clock)
    stranger = customer_factory()

    with pytest.raises(ForbiddenError):
        service.get_warranty(active_warranty.barcode_number, Actor.customer(stranger.customerID))
    assert service.get_warranty(active_warranty.barcode_number, agent).barcodeID == active_warranty.barcodeID


def test_expiring_soon_lists_only_near_expiry(db_session, clock, barcode_factory, sample_customer, agent):
    service = _service(db_session, clock)
    customer = Actor.customer(sample_customer.customerID)
    short = service.activate(barcode_factory().barcode_number, customer, warranty_period_months=1)
    service.activate(barcode_factory().barcode_number, customer, warranty_period_months=12)

    expiring = service.list_expiring_soon(agent, days=45)

    assert [barcode.barcodeID for barcode in expiring] == [short.barcodeID]
    with pytest.raises(InvalidArgumentError):
        service.list_expiring_soon(agent, days=0)
    with pytest.raises(ForbiddenError):
        service.list_expiring_soon(customer, days=30)


def test_customer_lists_their_warranties(db_session, clock, active_warranty, sample_customer, customer_factory):
    service = _service(db_session, clock)
    stranger = customer_factory()

    mine = service.list_customer_warranties(Actor.customer(sample_customer.customerID))

    assert [barcode.barcodeID for barcode in mine] == [active_warranty.barcodeID]
    with pytest.raises(ForbiddenError):
        service.list_customer_warranties(Actor.customer(stranger.customerID), sample_customer.customerID)


def test_only_admins_revoke(db_session, clock, barcode_factory, agent):
    service = _service(db_session, clock)

    with pytest.raises(ForbiddenError):
        service.revoke(barcode_factory().barcode_number, agent, "Not allowed")
