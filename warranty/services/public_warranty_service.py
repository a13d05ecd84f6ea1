"""
Read-only warranty checks for anonymous callers.

Responses never carry customer identity, and a revoked barcode is reported
exactly like an unknown one.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from warranty.config import Config
from warranty.errors import InvalidArgumentError
from warranty.models import BarcodeStatus, WarrantyBarcode
from warranty.observability import increment_counter
from warranty.services.collaborators import (
    Clock,
    CustomerDirectory,
    ProductDirectory,
    ProductInfo,
    SqlCustomerDirectory,
    SqlProductDirectory,
    SystemClock,
)
from warranty.services.coverage_policy import CoveragePolicy, DefaultCoveragePolicy
from warranty.services.identifier_generator import is_valid_barcode, normalize_barcode
from warranty.services.sanitization import optional_text
from warranty.services.warranty_store import WarrantyStore
from warranty.time_utils import parse_iso_datetime, to_iso

NOT_FOUND_STATUS = "not_found"
NOT_FOUND_MESSAGE = "No warranty found for the provided barcode"

_STATUS_MESSAGES = {
    BarcodeStatus.ACTIVE: "Warranty is valid and active",
    BarcodeStatus.GENERATED: "Warranty has not been activated yet",
    BarcodeStatus.CLAIMED: "Warranty has already been claimed",
    BarcodeStatus.EXPIRED: "Warranty has expired",
}


def _check_barcode_input(value: Optional[str]) -> str:
    barcode = normalize_barcode(value)
    if not 8 <= len(barcode) <= 50:
        raise InvalidArgumentError.for_field("barcode_value", "barcode_value must be 8 to 50 characters", value)
    return barcode


class PublicWarrantyService:
    def __init__(
        self,
        db_session: Session,
        config: type[Config] = Config,
        clock: Optional[Clock] = None,
        product_directory: Optional[ProductDirectory] = None,
        customer_directory: Optional[CustomerDirectory] = None,
        coverage_policy: Optional[CoveragePolicy] = None,
        store: Optional[WarrantyStore] = None,
    ) -> None:
        self.db = db_session
        self.config = config
        self.clock = clock or SystemClock()
        self.logger = logging.getLogger(__name__)
        self.products = product_directory or SqlProductDirectory(db_session)
        self.customers = customer_directory or SqlCustomerDirectory(db_session)
        self.coverage = coverage_policy or DefaultCoveragePolicy()
        self.store = store or WarrantyStore(db_session, config=config, clock=self.clock)

    def validate(self, barcode_value: str, product_sku: Optional[str] = None) -> Dict[str, Any]:
        barcode = _check_barcode_input(barcode_value)
        sku = optional_text("product_sku", product_sku, max_length=100)
        now = self.clock.now()

        record = self._visible_record(barcode)
        product = self.products.lookup_product(record.productID) if record else None
        if record is not None and sku and (product is None or product.sku.lower() != sku.lower()):
            record = None
        if record is None:
            increment_counter("public_validations_total", labels={"result": NOT_FOUND_STATUS})
            return {
                "valid": False,
                "barcode_value": barcode,
                "status": NOT_FOUND_STATUS,
                "message": NOT_FOUND_MESSAGE,
                "validation_time": to_iso(now),
            }

        status = record.effective_status(now)
        valid = status == BarcodeStatus.ACTIVE
        increment_counter("public_validations_total", labels={"result": status.value})
        return {
            "valid": valid,
            "barcode_value": record.barcode_number,
            "status": status.value,
            "message": _STATUS_MESSAGES.get(status, NOT_FOUND_MESSAGE),
            "product": self._product_summary(product),
            "warranty": self._warranty_summary(record),
            "coverage": self.coverage.coverage_for(record),
            "validation_time": to_iso(now),
        }

    def lookup_by_product(
        self,
        product_sku: str,
        serial_number: Optional[str] = None,
        purchase_date: Optional[str] = None,
        customer_email: Optional[str] = None,
    ) -> Dict[str, Any]:
        sku = optional_text("product_sku", product_sku, max_length=100)
        if not sku:
            raise InvalidArgumentError.for_field("product_sku", "product_sku is required", product_sku)
        serial = optional_text("serial_number", serial_number, max_length=100)
        try:
            purchased_on = parse_iso_datetime(purchase_date)
        except (TypeError, ValueError):
            raise InvalidArgumentError.for_field("purchase_date", "purchase_date must be an ISO-8601 date", purchase_date) from None
        email = optional_text("customer_email", customer_email, max_length=255)
        if email and "@" not in email:
            raise InvalidArgumentError.for_field("customer_email", "customer_email is malformed", customer_email)
        now = self.clock.now()

        product = self.products.lookup_by_sku(sku)
        if product is None:
            increment_counter("public_lookups_total", labels={"result": "unknown_product"})
            return {
                "found": False,
                "warranties": [],
                "message": "No product found for this SKU",
                "search_time": to_iso(now),
            }

        records: List[WarrantyBarcode] = []
        customer_id = self.customers.lookup_customer_by_email(email) if email else None
        if not email or customer_id is not None:
            records = self.store.find_for_product(
                product.product_id,
                serial_number=serial,
                customer_id=customer_id,
                purchased_on=purchased_on,
            )

        warranties = [self._warranty_summary(record) for record in records]
        increment_counter("public_lookups_total", labels={"result": "found" if warranties else "empty"})
        return {
            "found": bool(warranties),
            "warranties": warranties,
            "product": self._product_summary(product),
            "message": f"Found {len(warranties)} warranties for this product" if warranties else "No warranties found for this product",
            "search_time": to_iso(now),
        }

    def check_coverage(
        self,
        barcode_value: str,
        issue_type: str,
        description: Optional[str] = None,
    ) -> Dict[str, Any]:
        barcode = _check_barcode_input(barcode_value)
        issue = optional_text("issue_type", issue_type, max_length=100)
        if not issue:
            raise InvalidArgumentError.for_field("issue_type", "issue_type is required", issue_type)
        details = optional_text("description", description, max_length=500)
        now = self.clock.now()

        record = self._visible_record(barcode)
        if record is None:
            increment_counter("public_coverage_checks_total", labels={"result": NOT_FOUND_STATUS})
            return {
                "covered": False,
                "barcode_value": barcode,
                "issue_type": issue,
                "coverage_type": "not_covered",
                "message": NOT_FOUND_MESSAGE,
                "next_steps": ["Check the barcode and try again"],
                "checked_at": to_iso(now),
            }

        decision = self.coverage.assess(record, issue, details, can_claim=record.can_claim(now))
        increment_counter(
            "public_coverage_checks_total",
            labels={"result": "covered" if decision.covered else "not_covered"},
        )
        return {
            "covered": decision.covered,
            "barcode_value": record.barcode_number,
            "issue_type": issue,
            "coverage_type": decision.coverage_type,
            "estimated_cost": f"{decision.estimated_cost:.2f}",
            "coverage": self.coverage.coverage_for(record),
            "recommendations": decision.recommendations,
            "next_steps": decision.next_steps,
            "message": decision.message,
            "checked_at": to_iso(now),
        }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _visible_record(self, barcode: str) -> Optional[WarrantyBarcode]:
        if not is_valid_barcode(barcode):
            return None
        record = self.store.get_by_string(barcode)
        if record is None or BarcodeStatus(record.status) == BarcodeStatus.REVOKED:
            return None
        return record

    @staticmethod
    def _product_summary(product: Optional[ProductInfo]) -> Optional[Dict[str, Any]]:
        if product is None:
            return None
        return {
            "sku": product.sku,
            "name": product.name,
            "brand": product.brand,
            "category": product.category,
            "description": product.description,
            "image_url": product.image_url,
        }

    def _warranty_summary(self, record: WarrantyBarcode) -> Dict[str, Any]:
        now = self.clock.now()
        status = record.effective_status(now)
        return {
            "barcode_value": record.barcode_number,
            "status": status.value,
            "is_active": status == BarcodeStatus.ACTIVE,
            "activated_at": to_iso(record.activated_at),
            "expiry_date": to_iso(record.expiry_date),
            "days_remaining": record.days_remaining(now),
            "warranty_period": record.warranty_period,
            "is_expired": record.is_expired(now),
            "can_claim": record.can_claim(now),
        }
