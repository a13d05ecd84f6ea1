from __future__ import annotations

from flask import Blueprint, g, jsonify, request

from warranty.database import get_db
from warranty.blueprints.common import (
    bool_arg,
    date_arg,
    int_arg,
    json_body,
    page_args,
    pagination,
    require_actor,
)
from warranty.blueprints.serializers import (
    serialize_barcode,
    serialize_batch,
    serialize_collision,
    serialize_snapshot,
)
from warranty.models import BatchStatus
from warranty.services.batch_service import BatchService
from warranty.services.collaborators import ROLE_ADMIN, ROLE_AGENT, require_role
from warranty.services.identifier_generator import generator_configuration

batches_bp = Blueprint("batches", __name__, url_prefix="/api/warranty/batches")


def _get_batch_service() -> BatchService:
    return BatchService(get_db())


@batches_bp.route("", methods=["POST"])
@require_actor
def create_batch():
    payload = json_body()
    service = _get_batch_service()
    batch = service.create_batch(
        g.actor,
        product_id=payload.get("product_id"),
        storefront_id=payload.get("storefront_id"),
        quantity=payload.get("quantity"),
        expiry_months=payload.get("expiry_months"),
        prefix=payload.get("prefix"),
        priority=payload.get("priority", "normal"),
        description=payload.get("description"),
        tags=payload.get("tags"),
        notify_on_complete=bool(payload.get("notify_on_complete", False)),
        max_retries=payload.get("max_retries"),
    )
    if payload.get("start", False):
        batch = service.start_batch(batch.batchID, g.actor)
    return jsonify({"batch": serialize_batch(batch)}), 201


@batches_bp.route("", methods=["GET"])
@require_actor
def list_batches():
    page, page_size = page_args()
    items, total = _get_batch_service().list_batches(
        g.actor,
        status=request.args.get("status"),
        priority=request.args.get("priority"),
        product_id=int_arg("product_id"),
        storefront_id=int_arg("storefront_id"),
        created_by=int_arg("created_by"),
        created_from=date_arg("created_from"),
        created_to=date_arg("created_to"),
        completed_from=date_arg("completed_from"),
        completed_to=date_arg("completed_to"),
        search=request.args.get("search"),
        has_errors=bool_arg("has_errors"),
        has_collisions=bool_arg("has_collisions"),
        sort_by=request.args.get("sort_by", "created_at"),
        sort_order=request.args.get("sort_order", "desc"),
        page=page,
        page_size=page_size,
    )
    return jsonify({
        "batches": [serialize_batch(batch) for batch in items],
        "pagination": pagination(page, page_size, total),
    })


@batches_bp.route("/statistics", methods=["GET"])
@require_actor
def batch_statistics():
    return jsonify(_get_batch_service().statistics(g.actor))


@batches_bp.route("/generator", methods=["GET"])
@require_actor
def generator_info():
    require_role(g.actor, ROLE_ADMIN, ROLE_AGENT, action="view generator configuration")
    return jsonify(generator_configuration())


@batches_bp.route("/<int:batch_id>", methods=["GET"])
@require_actor
def get_batch(batch_id: int):
    require_role(g.actor, ROLE_ADMIN, ROLE_AGENT, action="view barcode batches")
    return jsonify({"batch": serialize_batch(_get_batch_service().get_batch(batch_id))})


@batches_bp.route("/<int:batch_id>/start", methods=["POST"])
@require_actor
def start_batch(batch_id: int):
    batch = _get_batch_service().start_batch(batch_id, g.actor)
    return jsonify({"batch": serialize_batch(batch)}), 202


@batches_bp.route("/<int:batch_id>/cancel", methods=["POST"])
@require_actor
def cancel_batch(batch_id: int):
    payload = json_body()
    batch = _get_batch_service().cancel_batch(
        batch_id,
        g.actor,
        reason=payload.get("reason", ""),
        force=bool(payload.get("force", False)),
    )
    # A running batch acknowledges the request and settles asynchronously
    status_code = 202 if BatchStatus(batch.status) == BatchStatus.IN_PROGRESS else 200
    return jsonify({"batch": serialize_batch(batch)}), status_code


@batches_bp.route("/<int:batch_id>/progress", methods=["GET"])
@require_actor
def batch_progress(batch_id: int):
    require_role(g.actor, ROLE_ADMIN, ROLE_AGENT, action="view batch progress")
    snapshot = _get_batch_service().get_progress(batch_id)
    return jsonify(serialize_snapshot(snapshot))


@batches_bp.route("/<int:batch_id>/collisions", methods=["GET"])
@require_actor
def batch_collisions(batch_id: int):
    page, page_size = page_args(default_size=50)
    items, total = _get_batch_service().list_collisions(
        batch_id,
        g.actor,
        collision_type=request.args.get("collision_type"),
        page=page,
        page_size=page_size,
    )
    return jsonify({
        "collisions": [serialize_collision(collision) for collision in items],
        "pagination": pagination(page, page_size, total),
    })


@batches_bp.route("/<int:batch_id>/barcodes", methods=["GET"])
@require_actor
def batch_barcodes(batch_id: int):
    page, page_size = page_args(default_size=100)
    items, total = _get_batch_service().list_barcodes(batch_id, g.actor, page=page, page_size=page_size)
    return jsonify({
        "barcodes": [serialize_barcode(barcode) for barcode in items],
        "pagination": pagination(page, page_size, total),
    })
