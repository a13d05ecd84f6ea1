from __future__ import annotations

from flask import Blueprint, g, jsonify

from warranty.database import get_db
from warranty.blueprints.common import int_arg, json_body, require_actor
from warranty.blueprints.serializers import serialize_barcode, serialize_snapshot
from warranty.services.activation_service import ActivationService

warranties_bp = Blueprint("warranties", __name__, url_prefix="/api/warranty/barcodes")


def _get_activation_service() -> ActivationService:
    return ActivationService(get_db())


@warranties_bp.route("/<barcode>/activate", methods=["POST"])
@require_actor
def activate_warranty(barcode: str):
    payload = json_body()
    record = _get_activation_service().activate(
        barcode,
        g.actor,
        customer_id=payload.get("customer_id"),
        retailer=payload.get("retailer"),
        invoice=payload.get("invoice"),
        serial_number=payload.get("serial_number"),
        purchase_date=payload.get("purchase_date"),
        purchase_price=payload.get("purchase_price"),
        warranty_period_months=payload.get("warranty_period_months"),
    )
    return jsonify({"warranty": serialize_barcode(record)})


@warranties_bp.route("/<barcode>", methods=["GET"])
@require_actor
def get_warranty(barcode: str):
    record = _get_activation_service().get_warranty(barcode, g.actor)
    return jsonify({"warranty": serialize_barcode(record)})


@warranties_bp.route("/mine", methods=["GET"])
@require_actor
def list_my_warranties():
    records = _get_activation_service().list_customer_warranties(g.actor, customer_id=int_arg("customer_id"))
    return jsonify({"warranties": [serialize_barcode(record) for record in records]})


@warranties_bp.route("/expiring", methods=["GET"])
@require_actor
def list_expiring_warranties():
    records = _get_activation_service().list_expiring_soon(g.actor, days=int_arg("days", 30))
    return jsonify({"warranties": [serialize_barcode(record) for record in records]})


@warranties_bp.route("/<barcode>/revoke", methods=["POST"])
@require_actor
def revoke_warranty(barcode: str):
    payload = json_body()
    record = _get_activation_service().revoke(barcode, g.actor, reason=payload.get("reason", ""))
    return jsonify({"warranty": serialize_barcode(record)})


@warranties_bp.route("/<barcode>/audit", methods=["GET"])
@require_actor
def warranty_audit_trail(barcode: str):
    events = _get_activation_service().audit_trail(barcode, g.actor)
    return jsonify({"events": [serialize_snapshot(event) for event in events]})
