# tests/conftest.py
"""
Pytest configuration and shared fixtures for the warranty test-suite.

Tests run against a throwaway SQLite file (or TEST_DATABASE_URL when set) and
execute barcode batches inline, so a started batch has finished by the time
the service call returns.
"""

import os
import tempfile
from datetime import timedelta
from uuid import uuid4

import pytest

_TEST_DB_DIR = tempfile.mkdtemp(prefix="warranty-tests-")
os.environ["DATABASE_URL"] = os.getenv(
    "TEST_DATABASE_URL",
    f"sqlite:///{os.path.join(_TEST_DB_DIR, 'warranty_test.db')}",
)
os.environ["BATCH_EXECUTION_MODE"] = "inline"
os.environ["STRUCTURED_LOGS_ENABLED"] = "false"
os.environ["FLASK_TESTING"] = "true"
os.environ["NOTIFICATION_WEBHOOK_URL"] = ""
os.environ["ATTACHMENT_SCANNER_URL"] = ""

from warranty.database import Base, SessionLocal, engine  # noqa: E402
from warranty.models import Customer, Product  # noqa: E402
from warranty.observability.metrics import reset_metrics  # noqa: E402
from warranty.services.activation_service import ActivationService  # noqa: E402
from warranty.services.claim_service import ClaimService  # noqa: E402
from warranty.services.collaborators import Actor  # noqa: E402
from warranty.services.notification_service import NotificationService  # noqa: E402
from warranty.services.repair_ticket_service import RepairTicketService  # noqa: E402
from warranty.services.warranty_store import WarrantyStore  # noqa: E402
from warranty.time_utils import utcnow  # noqa: E402

AGENT_ID = 900
TECHNICIAN_ID = 700
ADMIN_ID = 1


class FixedClock:
    """Clock the tests move by hand."""

    def __init__(self, now=None):
        self.current = now or utcnow()

    def now(self):
        return self.current

    def advance(self, **kwargs):
        self.current = self.current + timedelta(**kwargs)
        return self.current


class RecordingSink:
    """Notification sink that remembers what it was asked to deliver."""

    def __init__(self):
        self.sent = []

    def notify(self, recipient, template_id, payload):
        self.sent.append((recipient, template_id, dict(payload)))

    def templates_for(self, recipient):
        return [template for to, template, _ in self.sent if to == recipient]


def unique_barcode_value(prefix: str = "WB", year: int = 2025) -> str:
    return f"{prefix}-{year}-{uuid4().hex[:10].upper()}"


@pytest.fixture(scope="session")
def test_db():
    """Create the schema once for the whole session."""
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db_session(test_db):
    """Fresh session per test; every table is emptied afterwards."""
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        for table in reversed(Base.metadata.sorted_tables):
            session.execute(table.delete())
        session.commit()
        session.close()


@pytest.fixture(autouse=True)
def _reset_observability():
    reset_metrics()
    NotificationService().clear_notifications()
    yield
    NotificationService().clear_notifications()


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def notification_sink():
    return RecordingSink()


@pytest.fixture
def admin():
    return Actor.admin(ADMIN_ID)


@pytest.fixture
def agent():
    return Actor.agent(AGENT_ID)


@pytest.fixture
def technician():
    return Actor.technician(TECHNICIAN_ID)


@pytest.fixture
def product_factory(db_session):
    def _create(**overrides):
        suffix = uuid4().hex[:8].upper()
        product = Product(
            name=overrides.get("name", "SmartPhone X"),
            sku=overrides.get("sku", f"SKU-{suffix}"),
            brand=overrides.get("brand", "Acme"),
            category=overrides.get("category", "phones"),
            description=overrides.get("description", "Test handset"),
            base_price=overrides.get("base_price", 899),
        )
        db_session.add(product)
        db_session.commit()
        return product

    return _create


@pytest.fixture
def customer_factory(db_session):
    def _create(**overrides):
        suffix = uuid4().hex[:8]
        customer = Customer(
            full_name=overrides.get("full_name", "Test Customer"),
            email=overrides.get("email", f"customer_{suffix}@example.com"),
            phone=overrides.get("phone", "+1-555-0100"),
            address=overrides.get("address", "1 Main Street"),
        )
        db_session.add(customer)
        db_session.commit()
        return customer

    return _create


@pytest.fixture
def sample_product(product_factory):
    return product_factory()


@pytest.fixture
def sample_customer(customer_factory):
    return customer_factory()


@pytest.fixture
def barcode_factory(db_session, clock, sample_product):
    """Persist a generated (not yet activated) barcode."""
    store = WarrantyStore(db_session, clock=clock)

    def _create(product=None, months=12, value=None):
        return store.create_barcode(
            value or unique_barcode_value(),
            (product or sample_product).productID,
            months,
        )

    return _create


@pytest.fixture
def activate_barcode(db_session):
    def _activate(barcode, customer, clock, **purchase):
        purchase.setdefault("serial_number", f"SN-{uuid4().hex[:6].upper()}")
        purchase.setdefault("retailer", "SmartSeller Store")
        purchase.setdefault("purchase_price", "899.00")
        service = ActivationService(db_session, clock=clock)
        return service.activate(barcode.barcode_number, Actor.customer(customer.customerID), **purchase)

    return _activate


@pytest.fixture
def active_warranty(barcode_factory, activate_barcode, sample_customer, clock):
    """A barcode activated today by ``sample_customer``."""
    return activate_barcode(barcode_factory(), sample_customer, clock)


@pytest.fixture
def claim_service(db_session, clock, notification_sink):
    return ClaimService(db_session, clock=clock, notification_sink=notification_sink)


@pytest.fixture
def ticket_service(db_session, clock, notification_sink, claim_service):
    return RepairTicketService(
        db_session,
        clock=clock,
        notification_sink=notification_sink,
        claim_service=claim_service,
    )


@pytest.fixture
def new_barcode_value():
    return unique_barcode_value


ISSUE_DESCRIPTION = "The screen flickers after ten minutes of use"


@pytest.fixture
def submit_claim(claim_service, active_warranty, sample_customer):
    """Submit a claim as the warranty owner; defaults to ``active_warranty``."""

    def _submit(warranty=None, customer=None, **overrides):
        owner = customer or sample_customer
        return claim_service.submit_claim(
            Actor.customer(owner.customerID),
            (warranty or active_warranty).barcode_number,
            overrides.pop("issue_category", "hardware"),
            overrides.pop("issue_description", ISSUE_DESCRIPTION),
            overrides.pop("severity", "medium"),
            **overrides,
        )

    return _submit


@pytest.fixture
def claim_in_repair(claim_service, submit_claim, agent, technician):
    """A claim validated, assigned to ``technician`` and with its repair started."""
    claim = submit_claim()
    claim_service.validate_claim(claim.claimID, agent)
    claim_service.assign_technician(claim.claimID, agent, technician.actor_id)
    return claim_service.start_repair(claim.claimID, technician)


@pytest.fixture
def finish_ticket(ticket_service):
    """Record the technician's work on the claim's live ticket."""

    def _finish(claim, worker, labor_cost="80.00", unit_cost="50.00"):
        ticket = claim.active_repair_ticket()
        return ticket_service.complete_ticket(
            ticket.ticketID,
            worker,
            actual_hours="2.5",
            labor_cost=labor_cost,
            used_parts=[{"part_name": "Charging port", "quantity": 1, "unit_cost": unit_cost}],
            test_results=[{"test_name": "Charge cycle", "result": "passed"}],
            repair_notes="Port replaced",
        )

    return _finish
