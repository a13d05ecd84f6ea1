"""
Narrow capability interfaces the warranty core depends on, plus default providers.

The core only relies on the Protocol shapes; concrete providers are chosen at
the edges (blueprints, app factory, tests).
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, FrozenSet, Iterable, Optional, Protocol

import requests
from sqlalchemy import func
from sqlalchemy.orm import Session

from warranty.config import Config
from warranty.errors import DeadlineExceededError, DependencyFailureError, ForbiddenError
from warranty.models import ActorType, Customer, Product, ScanStatus
from warranty.time_utils import utcnow

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Caller identity
# -----------------------------------------------------------------------------

ROLE_ADMIN = "admin"
ROLE_AGENT = "agent"
ROLE_TECHNICIAN = "technician"
ROLE_CUSTOMER = "customer"


@dataclass(frozen=True)
class Actor:
    """Verified caller identity handed in by the transport layer."""

    actor_id: Optional[int]
    actor_type: ActorType
    roles: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def system(cls) -> "Actor":
        return cls(actor_id=None, actor_type=ActorType.SYSTEM, roles=frozenset({ROLE_ADMIN}))

    @classmethod
    def admin(cls, admin_id: int) -> "Actor":
        return cls(actor_id=admin_id, actor_type=ActorType.AGENT, roles=frozenset({ROLE_ADMIN, ROLE_AGENT}))

    @classmethod
    def customer(cls, customer_id: int) -> "Actor":
        return cls(actor_id=customer_id, actor_type=ActorType.CUSTOMER, roles=frozenset({ROLE_CUSTOMER}))

    @classmethod
    def agent(cls, agent_id: int, *extra_roles: str) -> "Actor":
        return cls(actor_id=agent_id, actor_type=ActorType.AGENT, roles=frozenset({ROLE_AGENT, *extra_roles}))

    @classmethod
    def technician(cls, technician_id: int) -> "Actor":
        return cls(actor_id=technician_id, actor_type=ActorType.TECHNICIAN, roles=frozenset({ROLE_TECHNICIAN}))

    def has_role(self, *roles: str) -> bool:
        if ROLE_ADMIN in self.roles:
            return True
        return any(role in self.roles for role in roles)

    @property
    def is_staff(self) -> bool:
        return self.has_role(ROLE_AGENT, ROLE_TECHNICIAN)


def require_role(actor: Actor, *roles: str, action: str = "perform this operation") -> None:
    if not actor.has_role(*roles):
        raise ForbiddenError(
            f"Caller is not permitted to {action}",
            {"required_roles": sorted(roles), "actor_type": actor.actor_type.value},
        )


# -----------------------------------------------------------------------------
# Clock
# -----------------------------------------------------------------------------


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    def now(self) -> datetime:
        return utcnow()


class Deadline:
    """Cooperative budget for long-running operations, checked between items."""

    def __init__(self, seconds: Optional[float], monotonic=time.monotonic) -> None:
        self._monotonic = monotonic
        self._expires_at = None if seconds is None else monotonic() + seconds

    def expired(self) -> bool:
        return self._expires_at is not None and self._monotonic() >= self._expires_at

    def check(self, operation: str) -> None:
        if self.expired():
            raise DeadlineExceededError(f"{operation} exceeded its deadline")


# -----------------------------------------------------------------------------
# Product & customer read models
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class ProductInfo:
    product_id: int
    name: str
    sku: str
    brand: Optional[str]
    category: Optional[str]
    description: Optional[str]
    base_price: Decimal
    image_url: Optional[str] = None


@dataclass(frozen=True)
class CustomerContact:
    customer_id: int
    name: str
    email: str
    phone: Optional[str]
    address: Optional[str]


class ProductDirectory(Protocol):
    def lookup_product(self, product_id: int) -> Optional[ProductInfo]: ...

    def lookup_by_sku(self, sku: str) -> Optional[ProductInfo]: ...


class CustomerDirectory(Protocol):
    def lookup_customer_by_email(self, email: str) -> Optional[int]: ...

    def get_contact(self, customer_id: int) -> Optional[CustomerContact]: ...


def _product_info(product: Product) -> ProductInfo:
    return ProductInfo(
        product_id=product.productID,
        name=product.name,
        sku=product.sku,
        brand=product.brand,
        category=product.category,
        description=product.description,
        base_price=Decimal(str(product.base_price or 0)),
        image_url=product.image_url,
    )


class SqlProductDirectory:
    """Product lookups against the catalogue tables shared with the storefront."""

    def __init__(self, db_session: Session) -> None:
        self.db = db_session

    def lookup_product(self, product_id: int) -> Optional[ProductInfo]:
        product = self.db.query(Product).filter_by(productID=product_id).first()
        return _product_info(product) if product else None

    def lookup_by_sku(self, sku: str) -> Optional[ProductInfo]:
        product = self.db.query(Product).filter(func.lower(Product.sku) == sku.strip().lower()).first()
        return _product_info(product) if product else None


class SqlCustomerDirectory:
    def __init__(self, db_session: Session) -> None:
        self.db = db_session

    def lookup_customer_by_email(self, email: str) -> Optional[int]:
        customer = (
            self.db.query(Customer)
            .filter(func.lower(Customer.email) == email.strip().lower())
            .first()
        )
        return customer.customerID if customer else None

    def get_contact(self, customer_id: int) -> Optional[CustomerContact]:
        customer = self.db.query(Customer).filter_by(customerID=customer_id).first()
        if not customer:
            return None
        return CustomerContact(
            customer_id=customer.customerID,
            name=customer.full_name,
            email=customer.email,
            phone=customer.phone,
            address=customer.address,
        )


# -----------------------------------------------------------------------------
# Notification sink
# -----------------------------------------------------------------------------


class NotificationSink(Protocol):
    def notify(self, recipient: int, template_id: str, payload: Dict[str, Any]) -> None: ...


class HttpNotificationSink:
    """Forwards notifications to an external delivery webhook."""

    def __init__(self, url: str, timeout: float = Config.COLLABORATOR_TIMEOUT_SECONDS) -> None:
        self.url = url
        self.timeout = timeout

    def notify(self, recipient: int, template_id: str, payload: Dict[str, Any]) -> None:
        try:
            response = requests.post(
                self.url,
                json={"recipient": recipient, "template_id": template_id, "payload": payload},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            raise DependencyFailureError(
                "Notification delivery failed",
                {"template_id": template_id, "error": str(exc)},
            ) from exc


def dispatch_notification(
    sink: NotificationSink,
    recipient: Optional[int],
    template_id: str,
    payload: Dict[str, Any],
) -> bool:
    """Fire-and-forget delivery; failures are logged and counted, never raised."""
    from warranty.observability import increment_counter

    if recipient is None:
        return False
    try:
        sink.notify(recipient, template_id, payload)
    except Exception as exc:
        increment_counter("notifications_failed_total", labels={"template": template_id})
        logger.warning(
            "Notification %s to %s failed: %s",
            template_id,
            recipient,
            exc,
        )
        return False
    increment_counter("notifications_sent_total", labels={"template": template_id})
    return True


# -----------------------------------------------------------------------------
# Attachment scanner
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class ScanResult:
    status: ScanStatus
    detail: Optional[str] = None


class AttachmentScanner(Protocol):
    def scan(self, storage_ref: str) -> Optional[ScanResult]:
        """Return a verdict, or None when the verdict will arrive asynchronously."""
        ...


class DeferredScanner:
    """Leaves every upload pending until an out-of-band verdict is recorded."""

    def scan(self, storage_ref: str) -> Optional[ScanResult]:
        return None


class HttpAttachmentScanner:
    def __init__(self, url: str, timeout: float = Config.COLLABORATOR_TIMEOUT_SECONDS) -> None:
        self.url = url
        self.timeout = timeout

    def scan(self, storage_ref: str) -> Optional[ScanResult]:
        try:
            response = requests.post(self.url, json={"storage_ref": storage_ref}, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise DependencyFailureError("Attachment scanner unavailable", {"error": str(exc)}) from exc

        if response.status_code == 202:
            return None
        body = response.json() if response.content else {}
        verdict = str(body.get("status", "")).lower()
        if verdict in {ScanStatus.PASSED.value, "clean"}:
            return ScanResult(ScanStatus.PASSED, body.get("detail"))
        if verdict in {ScanStatus.FAILED.value, "infected"}:
            return ScanResult(ScanStatus.FAILED, body.get("detail"))
        return None


def build_scanner(config: type[Config] = Config) -> AttachmentScanner:
    if config.ATTACHMENT_SCANNER_URL:
        return HttpAttachmentScanner(config.ATTACHMENT_SCANNER_URL, config.COLLABORATOR_TIMEOUT_SECONDS)
    return DeferredScanner()


def roles_from(values: Optional[Iterable[str]]) -> FrozenSet[str]:
    if not values:
        return frozenset()
    if isinstance(values, str):
        values = values.split(",")
    return frozenset(str(value).strip().lower() for value in values if str(value).strip())
