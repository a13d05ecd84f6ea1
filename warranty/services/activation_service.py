from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from warranty.config import Config
from warranty.errors import (
    ConflictError,
    ForbiddenError,
    InvalidArgumentError,
    PreconditionFailedError,
)
from warranty.models import ActorType, BarcodeStatus, WarrantyBarcode
from warranty.services.collaborators import (
    ROLE_ADMIN,
    ROLE_AGENT,
    Actor,
    Clock,
    CustomerDirectory,
    SqlCustomerDirectory,
    SystemClock,
    require_role,
)
from warranty.services.sanitization import optional_text
from warranty.services.warranty_store import PurchaseDetails, WarrantyStore
from warranty.time_utils import as_utc, parse_iso_datetime


class ActivationService:
    """Registers a generated barcode to its buyer and starts the warranty clock."""

    def __init__(
        self,
        db_session: Session,
        config: type[Config] = Config,
        clock: Optional[Clock] = None,
        customer_directory: Optional[CustomerDirectory] = None,
        store: Optional[WarrantyStore] = None,
    ) -> None:
        self.db = db_session
        self.config = config
        self.clock = clock or SystemClock()
        self.logger = logging.getLogger(__name__)
        self.customers = customer_directory or SqlCustomerDirectory(db_session)
        self.store = store or WarrantyStore(db_session, config=config, clock=self.clock)

    def activate(
        self,
        barcode: str,
        actor: Actor,
        customer_id: Optional[int] = None,
        retailer: Optional[str] = None,
        invoice: Optional[str] = None,
        serial_number: Optional[str] = None,
        purchase_date: Optional[Any] = None,
        purchase_price: Optional[Any] = None,
        warranty_period_months: Optional[int] = None,
    ) -> WarrantyBarcode:
        customer_id = self._resolve_customer(actor, customer_id)
        now = self.clock.now()
        purchase = self._purchase_details(retailer, invoice, serial_number, purchase_date, purchase_price, now)

        record = self.store.require_by_string(barcode)
        status = BarcodeStatus(record.status)
        if status == BarcodeStatus.REVOKED:
            raise PreconditionFailedError("Warranty barcode has been revoked", reason="warranty_revoked")
        if status != BarcodeStatus.GENERATED or record.activated_at is not None:
            raise ConflictError(
                "Warranty barcode has already been activated",
                {"barcode": record.barcode_number, "status": status.value},
            )

        period = record.warranty_period_months
        if warranty_period_months is not None:
            if isinstance(warranty_period_months, bool) or not isinstance(warranty_period_months, int) or not 1 <= warranty_period_months <= 120:
                raise InvalidArgumentError.for_field(
                    "warranty_period_months",
                    "warranty_period_months must be between 1 and 120",
                    warranty_period_months,
                )
            period = warranty_period_months

        activated = self.store.activate(
            record.barcodeID,
            now,
            period,
            customer_id=customer_id,
            purchase=purchase,
            actor=actor,
        )
        self.logger.info(
            "Warranty %s activated for customer %s",
            activated.barcode_number,
            customer_id,
            extra={"barcode_id": activated.barcodeID},
        )
        return activated

    def get_warranty(self, barcode: str, actor: Actor) -> WarrantyBarcode:
        record = self.store.require_by_string(barcode)
        if actor.actor_type == ActorType.CUSTOMER and not actor.has_role(ROLE_AGENT):
            if record.customerID != actor.actor_id:
                raise ForbiddenError("Warranty belongs to another customer")
        return record

    def list_customer_warranties(self, actor: Actor, customer_id: Optional[int] = None) -> List[WarrantyBarcode]:
        target = customer_id if customer_id is not None else actor.actor_id
        if target != actor.actor_id:
            require_role(actor, ROLE_AGENT, action="list another customer's warranties")
        return self.store.list_by_customer(target)

    def list_expiring_soon(self, actor: Actor, days: int = 30) -> List[WarrantyBarcode]:
        require_role(actor, ROLE_AGENT, action="list expiring warranties")
        if isinstance(days, bool) or not isinstance(days, int) or not 1 <= days <= 365:
            raise InvalidArgumentError.for_field("days", "days must be between 1 and 365", days)
        return self.store.list_expiring_soon(days)

    def revoke(self, barcode: str, actor: Actor, reason: str) -> WarrantyBarcode:
        require_role(actor, ROLE_ADMIN, action="revoke warranties")
        record = self.store.require_by_string(barcode)
        return self.store.revoke(record.barcodeID, reason, actor)

    def audit_trail(self, barcode: str, actor: Actor) -> List[Dict[str, Any]]:
        require_role(actor, ROLE_AGENT, action="view the warranty audit trail")
        record = self.store.require_by_string(barcode)
        return [
            {
                "event_type": event.event_type,
                "description": event.description,
                "actor_id": event.actor_id,
                "actor_type": getattr(event.actor_type, "value", event.actor_type),
                "created_at": as_utc(event.created_at),
                "metadata": event.event_metadata or {},
            }
            for event in self.store.audit_trail(record.barcodeID)
        ]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _resolve_customer(self, actor: Actor, customer_id: Optional[int]) -> int:
        if actor.actor_type == ActorType.CUSTOMER and not actor.has_role(ROLE_AGENT):
            if customer_id is not None and customer_id != actor.actor_id:
                raise ForbiddenError("Customers can only register warranties for themselves")
            customer_id = actor.actor_id
        elif customer_id is None:
            raise InvalidArgumentError.for_field("customer_id", "customer_id is required", None)
        else:
            require_role(actor, ROLE_AGENT, action="register warranties for customers")

        if self.customers.get_contact(customer_id) is None:
            raise InvalidArgumentError.for_field("customer_id", "unknown customer", customer_id)
        return customer_id

    @staticmethod
    def _purchase_details(
        retailer: Optional[str],
        invoice: Optional[str],
        serial_number: Optional[str],
        purchase_date: Optional[Any],
        purchase_price: Optional[Any],
        now: datetime,
    ) -> PurchaseDetails:
        fields: List[Dict[str, Any]] = []

        def _text(field: str, value: Optional[str], max_length: int) -> Optional[str]:
            try:
                return optional_text(field, value, max_length=max_length)
            except InvalidArgumentError as exc:
                fields.extend(exc.fields)
                return None

        retailer_value = _text("retailer", retailer, 255)
        invoice_value = _text("invoice", invoice, 100)
        serial_value = _text("serial_number", serial_number, 100)

        purchased_at = None
        try:
            purchased_at = parse_iso_datetime(purchase_date)
        except (TypeError, ValueError):
            fields.append({"field": "purchase_date", "message": "purchase_date must be an ISO date", "value": purchase_date})
        if purchased_at is not None and purchased_at > as_utc(now):
            fields.append({"field": "purchase_date", "message": "purchase_date cannot be in the future", "value": purchase_date})

        price = None
        if purchase_price is not None and purchase_price != "":
            try:
                price = Decimal(str(purchase_price)).quantize(Decimal("0.01"))
            except InvalidOperation:
                fields.append({"field": "purchase_price", "message": "purchase_price must be a number", "value": purchase_price})
            else:
                if not price.is_finite() or price < 0:
                    fields.append({"field": "purchase_price", "message": "purchase_price cannot be negative", "value": purchase_price})

        if fields:
            raise InvalidArgumentError("Invalid purchase details", fields=fields)
        return PurchaseDetails(
            retailer=retailer_value,
            invoice=invoice_value,
            serial_number=serial_value,
            purchase_date=purchased_at,
            price=price,
        )
