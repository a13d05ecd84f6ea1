from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from warranty.config import Config
from warranty.errors import ConflictError, DuplicateBarcodeError, NotFoundError
from warranty.models import (
    ActorType,
    BarcodeAuditEvent,
    BarcodeStatus,
    WarrantyBarcode,
)
from warranty.observability import increment_counter, record_event
from warranty.services.collaborators import Actor, Clock, SystemClock
from warranty.services.identifier_generator import normalize_barcode
from warranty.services.sanitization import require_text
from warranty.time_utils import as_utc


@dataclass(frozen=True)
class PurchaseDetails:
    retailer: Optional[str] = None
    invoice: Optional[str] = None
    serial_number: Optional[str] = None
    purchase_date: Optional[datetime] = None
    price: Optional[Decimal] = None


class WarrantyStore:
    """Persistence gateway for barcodes; owns uniqueness and the barcode audit log."""

    def __init__(
        self,
        db_session: Session,
        config: type[Config] = Config,
        clock: Optional[Clock] = None,
    ) -> None:
        self.db = db_session
        self.config = config
        self.clock = clock or SystemClock()
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------
    def build_barcode(
        self,
        barcode_number: str,
        product_id: int,
        warranty_period_months: int,
        *,
        batch_id: Optional[int] = None,
        batch_number: Optional[str] = None,
        storefront_id: Optional[int] = None,
        generation_attempt: int = 1,
    ) -> WarrantyBarcode:
        return WarrantyBarcode(
            barcode_number=barcode_number,
            productID=product_id,
            batchID=batch_id,
            batch_number=batch_number,
            storefrontID=storefront_id,
            status=BarcodeStatus.GENERATED,
            warranty_period_months=warranty_period_months,
            generated_at=self.clock.now(),
            generation_attempt=generation_attempt,
            collision_checked=True,
            qr_code_data=f"{self.config.PUBLIC_CLAIM_URL_BASE.rstrip('/')}/{barcode_number}",
        )

    def create_barcode(
        self,
        barcode_number: str,
        product_id: int,
        warranty_period_months: int,
        **kwargs: Any,
    ) -> WarrantyBarcode:
        barcode = self.build_barcode(barcode_number, product_id, warranty_period_months, **kwargs)
        self.bulk_create_barcodes([barcode])
        self.db.commit()
        increment_counter("barcodes_created_total")
        return barcode

    def bulk_create_barcodes(self, barcodes: Sequence[WarrantyBarcode]) -> List[WarrantyBarcode]:
        """
        Stage a chunk of barcodes inside the caller's transaction.

        On a unique-key violation the transaction is rolled back and
        DuplicateBarcodeError names the strings that already exist; any other
        integrity failure propagates unchanged.
        """
        if not barcodes:
            return []
        self.db.add_all(barcodes)
        try:
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
            values = [barcode.barcode_number for barcode in barcodes]
            existing = self.existing_values(values)
            duplicates_in_chunk = {value for value in values if values.count(value) > 1}
            clashing = set(existing) | duplicates_in_chunk
            if clashing:
                raise DuplicateBarcodeError(clashing)
            raise
        for barcode in barcodes:
            self._append_audit(barcode, "generated", "Barcode generated", None)
        return list(barcodes)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get_by_string(self, barcode_number: str) -> Optional[WarrantyBarcode]:
        value = normalize_barcode(barcode_number)
        if not value:
            return None
        return self.db.query(WarrantyBarcode).filter_by(barcode_number=value).first()

    def require_by_string(self, barcode_number: str) -> WarrantyBarcode:
        barcode = self.get_by_string(barcode_number)
        if not barcode:
            raise NotFoundError("Warranty barcode not found", {"barcode": barcode_number})
        return barcode

    def get_by_id(self, barcode_id: int) -> Optional[WarrantyBarcode]:
        return self.db.query(WarrantyBarcode).filter_by(barcodeID=barcode_id).first()

    def require_by_id(self, barcode_id: int) -> WarrantyBarcode:
        barcode = self.get_by_id(barcode_id)
        if not barcode:
            raise NotFoundError("Warranty barcode not found", {"barcode_id": barcode_id})
        return barcode

    def existing_values(self, values: Iterable[str]) -> Dict[str, int]:
        """Map each already-persisted string in ``values`` to its barcode id."""
        wanted = list({value for value in values if value})
        found: Dict[str, int] = {}
        # Keep IN-lists bounded for large chunks
        for start in range(0, len(wanted), 500):
            window = wanted[start:start + 500]
            rows = (
                self.db.query(WarrantyBarcode.barcode_number, WarrantyBarcode.barcodeID)
                .filter(WarrantyBarcode.barcode_number.in_(window))
                .all()
            )
            found.update({row[0]: row[1] for row in rows})
        return found

    def list_by_batch(
        self,
        batch_id: int,
        page: int = 1,
        page_size: int = 100,
    ) -> Tuple[List[WarrantyBarcode], int]:
        query = self.db.query(WarrantyBarcode).filter_by(batchID=batch_id)
        total = query.count()
        items = (
            query.order_by(WarrantyBarcode.barcodeID)
            .offset((max(page, 1) - 1) * page_size)
            .limit(page_size)
            .all()
        )
        return items, total

    def list_by_customer(self, customer_id: int) -> List[WarrantyBarcode]:
        return (
            self.db.query(WarrantyBarcode)
            .filter_by(customerID=customer_id)
            .order_by(WarrantyBarcode.activated_at.desc())
            .all()
        )

    def find_for_product(
        self,
        product_id: int,
        *,
        serial_number: Optional[str] = None,
        customer_id: Optional[int] = None,
        purchased_on: Optional[datetime] = None,
        limit: int = 50,
    ) -> List[WarrantyBarcode]:
        """Activated barcodes of a product, narrowed by the optional purchase facts."""
        query = self.db.query(WarrantyBarcode).filter(
            WarrantyBarcode.productID == product_id,
            WarrantyBarcode.status.in_([BarcodeStatus.ACTIVE, BarcodeStatus.CLAIMED, BarcodeStatus.EXPIRED]),
        )
        if serial_number:
            query = query.filter(WarrantyBarcode.serial_number == serial_number)
        if customer_id is not None:
            query = query.filter(WarrantyBarcode.customerID == customer_id)
        if purchased_on is not None:
            day = as_utc(purchased_on).replace(hour=0, minute=0, second=0, microsecond=0)
            query = query.filter(
                WarrantyBarcode.purchase_date >= day,
                WarrantyBarcode.purchase_date < day + timedelta(days=1),
            )
        return query.order_by(WarrantyBarcode.activated_at.desc()).limit(limit).all()

    def list_expiring_soon(self, days: int, limit: int = 100) -> List[WarrantyBarcode]:
        now = self.clock.now()
        horizon = now + timedelta(days=days)
        return (
            self.db.query(WarrantyBarcode)
            .filter(
                WarrantyBarcode.status == BarcodeStatus.ACTIVE,
                WarrantyBarcode.expiry_date.isnot(None),
                WarrantyBarcode.expiry_date >= now,
                WarrantyBarcode.expiry_date <= horizon,
            )
            .order_by(WarrantyBarcode.expiry_date.asc())
            .limit(limit)
            .all()
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def activate(
        self,
        barcode_id: int,
        activated_at: datetime,
        period_months: int,
        *,
        customer_id: int,
        purchase: Optional[PurchaseDetails] = None,
        actor: Optional[Actor] = None,
    ) -> WarrantyBarcode:
        """
        Bind the barcode to a customer and start its warranty clock.

        Guarded by ``status = generated`` in the UPDATE itself, so of two
        concurrent activations exactly one wins.
        """
        purchase = purchase or PurchaseDetails()
        activated_at = as_utc(activated_at)
        expiry = WarrantyBarcode.compute_expiry(activated_at, period_months)
        updated = (
            self.db.query(WarrantyBarcode)
            .filter(
                WarrantyBarcode.barcodeID == barcode_id,
                WarrantyBarcode.status == BarcodeStatus.GENERATED,
                WarrantyBarcode.activated_at.is_(None),
            )
            .update(
                {
                    WarrantyBarcode.status: BarcodeStatus.ACTIVE,
                    WarrantyBarcode.activated_at: activated_at,
                    WarrantyBarcode.expiry_date: expiry,
                    WarrantyBarcode.warranty_period_months: period_months,
                    WarrantyBarcode.customerID: customer_id,
                    WarrantyBarcode.activated_by: actor.actor_id if actor else customer_id,
                    WarrantyBarcode.purchase_location: purchase.retailer,
                    WarrantyBarcode.purchase_invoice: purchase.invoice,
                    WarrantyBarcode.serial_number: purchase.serial_number,
                    WarrantyBarcode.purchase_date: purchase.purchase_date,
                    WarrantyBarcode.purchase_price: purchase.price,
                    WarrantyBarcode.updated_at: self.clock.now(),
                },
                synchronize_session=False,
            )
        )
        if updated != 1:
            self.db.rollback()
            raise ConflictError("Warranty barcode has already been activated", {"barcode_id": barcode_id})

        barcode = self.require_by_id(barcode_id)
        self.db.refresh(barcode)
        self._append_audit(
            barcode,
            "activated",
            "Warranty activated",
            actor,
            {"customer_id": customer_id, "expiry_date": expiry.isoformat()},
        )
        self.db.commit()
        increment_counter("barcodes_activated_total")
        record_event("barcode_activated", {"barcode_id": barcode_id, "customer_id": customer_id})
        return barcode

    def update_status(
        self,
        barcode_id: int,
        new_status: BarcodeStatus | str,
        actor: Optional[Actor] = None,
        reason: Optional[str] = None,
        *,
        commit: bool = True,
    ) -> WarrantyBarcode:
        barcode = self.require_by_id(barcode_id)
        status_enum = BarcodeStatus(new_status)
        old_status = BarcodeStatus(barcode.status)
        barcode.transition_to(status_enum)
        self._append_audit(
            barcode,
            "status_updated",
            f"Status changed from {old_status.value} to {status_enum.value}",
            actor,
            {"old_value": old_status.value, "new_value": status_enum.value, "reason": reason},
        )
        if commit:
            self.db.commit()
        increment_counter(
            "barcode_status_transitions_total",
            labels={"from_status": old_status.value, "to_status": status_enum.value},
        )
        return barcode

    def revoke(self, barcode_id: int, reason: str, actor: Optional[Actor] = None) -> WarrantyBarcode:
        cleaned_reason = require_text("reason", reason, min_length=3, max_length=500)
        barcode = self.require_by_id(barcode_id)
        barcode.transition_to(BarcodeStatus.REVOKED)
        barcode.revoked_at = self.clock.now()
        barcode.revoked_by = actor.actor_id if actor else None
        barcode.revocation_reason = cleaned_reason
        self._append_audit(barcode, "revoked", cleaned_reason, actor)
        self.db.commit()
        increment_counter("barcodes_revoked_total")
        self.logger.info("Barcode %s revoked", barcode.barcode_number, extra={"barcode_id": barcode_id})
        return barcode

    def audit_trail(self, barcode_id: int) -> List[BarcodeAuditEvent]:
        return (
            self.db.query(BarcodeAuditEvent)
            .filter_by(barcodeID=barcode_id)
            .order_by(BarcodeAuditEvent.auditID)
            .all()
        )

    def _append_audit(
        self,
        barcode: WarrantyBarcode,
        event_type: str,
        description: str,
        actor: Optional[Actor],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> BarcodeAuditEvent:
        event = BarcodeAuditEvent(
            barcode=barcode,
            event_type=event_type,
            description=description,
            actor_id=actor.actor_id if actor else None,
            actor_type=actor.actor_type if actor else ActorType.SYSTEM,
            created_at=self.clock.now(),
            event_metadata=metadata,
        )
        self.db.add(event)
        return event
