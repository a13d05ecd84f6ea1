"""Anonymous warranty checks. No session is required or read."""
from __future__ import annotations

from flask import Blueprint, jsonify, request

from warranty.database import get_db
from warranty.blueprints.common import error_body, json_body
from warranty.errors import WarrantyError, http_status_for
from warranty.observability import increment_counter
from warranty.services.public_warranty_service import PublicWarrantyService

public_bp = Blueprint("public_warranty", __name__, url_prefix="/api/public/warranty")


def _get_public_service() -> PublicWarrantyService:
    return PublicWarrantyService(get_db())


@public_bp.errorhandler(WarrantyError)
def handle_public_error(error: WarrantyError):
    status = http_status_for(error)
    increment_counter("public_warranty_errors_total", labels={"status": str(status)})
    return jsonify(error_body(error, code=f"WAR_{status}")), status


@public_bp.route("/validate", methods=["POST"])
def validate_barcode():
    payload = json_body()
    result = _get_public_service().validate(payload.get("barcode_value", ""), product_sku=payload.get("product_sku"))
    return jsonify(result)


@public_bp.route("/validate/<barcode>", methods=["GET"])
def validate_barcode_by_path(barcode: str):
    result = _get_public_service().validate(barcode, product_sku=request.args.get("product_sku"))
    return jsonify(result)


@public_bp.route("/lookup", methods=["POST"])
def lookup_by_product():
    payload = json_body()
    result = _get_public_service().lookup_by_product(
        payload.get("product_sku", ""),
        serial_number=payload.get("serial_number"),
        purchase_date=payload.get("purchase_date"),
        customer_email=payload.get("customer_email"),
    )
    return jsonify(result)


@public_bp.route("/coverage", methods=["POST"])
def check_coverage():
    payload = json_body()
    result = _get_public_service().check_coverage(
        payload.get("barcode_value", ""),
        issue_type=payload.get("issue_type", ""),
        description=payload.get("description"),
    )
    return jsonify(result)
