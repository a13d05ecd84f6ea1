from __future__ import annotations

from typing import Any, Dict

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
    serialize_attachment,
    serialize_claim,
    serialize_ticket,
    serialize_timeline_event,
    serialize_upload_receipt,
)
from warranty.errors import InvalidArgumentError
from warranty.models import WarrantyClaim
from warranty.services.attachment_service import AttachmentService
from warranty.services.claim_service import ClaimService
from warranty.services.collaborators import ROLE_AGENT, Deadline, require_role
from warranty.services.repair_ticket_service import RepairTicketService

claims_bp = Blueprint("claims", __name__, url_prefix="/api/warranty")

_ACTION_PARAMS = (
    "reason",
    "technician_id",
    "estimated_completion_date",
    "priority",
    "ticket_details",
    "replacement_product_id",
    "replacement_cost",
    "tracking_number",
    "shipping_provider",
    "shipping_cost",
    "estimated_delivery_date",
    "resolution_type",
    "resolution_notes",
    "refund_amount",
    "resolve_to",
)


def _get_claim_service() -> ClaimService:
    return ClaimService(get_db())


def _get_ticket_service() -> RepairTicketService:
    return RepairTicketService(get_db())


def _get_attachment_service() -> AttachmentService:
    return AttachmentService(get_db())


def _claim_response(claim: WarrantyClaim, status_code: int = 200):
    return jsonify({"claim": serialize_claim(claim, include_internal=g.actor.is_staff)}), status_code


def _action_params(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {name: payload[name] for name in _ACTION_PARAMS if name in payload}


def _request_key(payload: Dict[str, Any]):
    return payload.get("request_key") or request.headers.get("Idempotency-Key")


# ---------------------------------------------
# Claims
# ---------------------------------------------
@claims_bp.route("/claims", methods=["POST"])
@require_actor
def submit_claim():
    payload = json_body()
    claim = _get_claim_service().submit_claim(
        g.actor,
        barcode=payload.get("barcode_value", ""),
        issue_category=payload.get("issue_category"),
        issue_description=payload.get("issue_description"),
        severity=payload.get("severity"),
        issue_date=payload.get("issue_date"),
        contact=payload.get("contact"),
        customer_notes=payload.get("customer_notes"),
        tags=payload.get("tags"),
        attachments=payload.get("attachments"),
    )
    return _claim_response(claim, 201)


@claims_bp.route("/claims", methods=["GET"])
@require_actor
def list_claims():
    page, page_size = page_args()
    items, total = _get_claim_service().list_claims(
        g.actor,
        status=request.args.get("status"),
        priority=request.args.get("priority"),
        severity=request.args.get("severity"),
        issue_category=request.args.get("issue_category"),
        technician_id=int_arg("technician_id"),
        customer_id=int_arg("customer_id"),
        storefront_id=int_arg("storefront_id"),
        date_from=date_arg("date_from"),
        date_to=date_arg("date_to"),
        overdue_only=bool(bool_arg("overdue")),
        page=page,
        page_size=page_size,
    )
    return jsonify({
        "claims": [serialize_claim(claim, include_internal=g.actor.is_staff) for claim in items],
        "pagination": pagination(page, page_size, total),
    })


@claims_bp.route("/claims/overdue", methods=["GET"])
@require_actor
def list_overdue_claims():
    page, page_size = page_args()
    items, total = _get_claim_service().list_overdue(g.actor, page=page, page_size=page_size)
    return jsonify({
        "claims": [serialize_claim(claim, include_internal=True) for claim in items],
        "pagination": pagination(page, page_size, total),
    })


@claims_bp.route("/claims/statistics", methods=["GET"])
@require_actor
def claim_statistics():
    return jsonify(
        _get_claim_service().statistics(g.actor, date_from=date_arg("date_from"), date_to=date_arg("date_to"))
    )


@claims_bp.route("/claims/by-number/<claim_number>", methods=["GET"])
@require_actor
def get_claim_by_number(claim_number: str):
    return _claim_response(_get_claim_service().get_claim_by_number(claim_number, g.actor))


@claims_bp.route("/claims/<int:claim_id>", methods=["GET"])
@require_actor
def get_claim(claim_id: int):
    return _claim_response(_get_claim_service().get_claim(claim_id, g.actor))


@claims_bp.route("/claims/<int:claim_id>/timeline", methods=["GET"])
@require_actor
def get_claim_timeline(claim_id: int):
    events = _get_claim_service().get_timeline(claim_id, g.actor)
    return jsonify({"timeline": [serialize_timeline_event(event) for event in events]})


@claims_bp.route("/claims/<int:claim_id>/status", methods=["POST"])
@require_actor
def update_claim_status(claim_id: int):
    payload = json_body()
    if not payload.get("action"):
        raise InvalidArgumentError.for_field("action", "action is required", None)
    claim = _get_claim_service().update_status(
        claim_id,
        g.actor,
        payload["action"],
        notes=payload.get("notes"),
        repair_notes=payload.get("repair_notes"),
        request_key=_request_key(payload),
        **_action_params(payload),
    )
    return _claim_response(claim)


@claims_bp.route("/claims/<int:claim_id>/assign", methods=["POST"])
@require_actor
def assign_claim(claim_id: int):
    payload = json_body()
    claim = _get_claim_service().assign_technician(
        claim_id,
        g.actor,
        technician_id=payload.get("technician_id"),
        estimated_completion_date=payload.get("estimated_completion_date"),
        priority=payload.get("priority"),
        notes=payload.get("notes"),
        request_key=_request_key(payload),
        ticket_details=payload.get("ticket_details"),
    )
    return _claim_response(claim)


@claims_bp.route("/claims/<int:claim_id>/start", methods=["POST"])
@require_actor
def start_claim_repair(claim_id: int):
    payload = json_body()
    claim = _get_claim_service().start_repair(claim_id, g.actor, request_key=_request_key(payload))
    return _claim_response(claim)


@claims_bp.route("/claims/<int:claim_id>/complete", methods=["POST"])
@require_actor
def complete_claim(claim_id: int):
    payload = json_body()
    claim = _get_claim_service().complete(
        claim_id,
        g.actor,
        resolution_type=payload.get("resolution_type"),
        resolution_notes=payload.get("resolution_notes"),
        refund_amount=payload.get("refund_amount"),
        request_key=_request_key(payload),
    )
    return _claim_response(claim)


@claims_bp.route("/claims/<int:claim_id>/cancel", methods=["POST"])
@require_actor
def cancel_claim(claim_id: int):
    payload = json_body()
    claim = _get_claim_service().cancel_claim(
        claim_id, g.actor, reason=payload.get("reason"), request_key=_request_key(payload)
    )
    return _claim_response(claim)


@claims_bp.route("/claims/<int:claim_id>/dispute", methods=["POST"])
@require_actor
def dispute_claim(claim_id: int):
    payload = json_body()
    claim = _get_claim_service().dispute_claim(
        claim_id, g.actor, reason=payload.get("reason", ""), request_key=_request_key(payload)
    )
    return _claim_response(claim)


@claims_bp.route("/claims/<int:claim_id>/request-info", methods=["POST"])
@require_actor
def request_claim_info(claim_id: int):
    payload = json_body()
    claim = _get_claim_service().request_info(claim_id, g.actor, message=payload.get("message", ""))
    return _claim_response(claim)


@claims_bp.route("/claims/<int:claim_id>/delivery", methods=["POST"])
@require_actor
def update_claim_delivery(claim_id: int):
    payload = json_body()
    claim = _get_claim_service().update_delivery_status(claim_id, g.actor, payload.get("delivery_status", ""))
    return _claim_response(claim)


@claims_bp.route("/claims/<int:claim_id>/costs", methods=["POST"])
@require_actor
def update_claim_costs(claim_id: int):
    payload = json_body()
    claim = _get_claim_service().update_costs(
        claim_id,
        g.actor,
        repair_cost=payload.get("repair_cost"),
        shipping_cost=payload.get("shipping_cost"),
        replacement_cost=payload.get("replacement_cost"),
    )
    return _claim_response(claim)


@claims_bp.route("/claims/<int:claim_id>/notes", methods=["POST"])
@require_actor
def add_claim_note(claim_id: int):
    payload = json_body()
    event = _get_claim_service().add_note(
        claim_id,
        g.actor,
        note=payload.get("note", ""),
        visible_to_customer=bool(payload.get("visible_to_customer", True)),
    )
    return jsonify({"event": serialize_timeline_event(event)}), 201


@claims_bp.route("/claims/<int:claim_id>/feedback", methods=["POST"])
@require_actor
def submit_claim_feedback(claim_id: int):
    payload = json_body()
    claim = _get_claim_service().submit_feedback(
        claim_id, g.actor, rating=payload.get("rating"), feedback=payload.get("feedback")
    )
    return _claim_response(claim)


@claims_bp.route("/claims/bulk-status", methods=["POST"])
@require_actor
def bulk_update_claim_status():
    payload = json_body()
    timeout = payload.get("timeout_seconds")
    if timeout is not None and (isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0):
        raise InvalidArgumentError.for_field("timeout_seconds", "timeout_seconds must be a positive number", timeout)
    result = _get_claim_service().bulk_update_status(
        g.actor,
        claim_ids=payload.get("claim_ids"),
        action=payload.get("action", ""),
        notes=payload.get("notes"),
        deadline=Deadline(timeout),
        **_action_params(payload),
    )
    return jsonify(result)


# ---------------------------------------------
# Repair tickets
# ---------------------------------------------
@claims_bp.route("/claims/<int:claim_id>/tickets", methods=["POST"])
@require_actor
def create_repair_ticket(claim_id: int):
    payload = json_body()
    ticket = _get_ticket_service().create_ticket(
        claim_id,
        g.actor,
        description=payload.get("description", ""),
        estimated_hours=payload.get("estimated_hours"),
        priority=payload.get("priority"),
        required_parts=payload.get("required_parts"),
        special_instructions=payload.get("special_instructions"),
        customer_approval_required=bool(payload.get("customer_approval_required", False)),
        technician_id=payload.get("technician_id"),
        estimated_completion_date=payload.get("estimated_completion_date"),
    )
    return jsonify({"ticket": serialize_ticket(ticket)}), 201


@claims_bp.route("/tickets", methods=["GET"])
@require_actor
def list_repair_tickets():
    page, page_size = page_args()
    items, total = _get_ticket_service().list_tickets(
        g.actor,
        status=request.args.get("status"),
        technician_id=int_arg("technician_id"),
        claim_id=int_arg("claim_id"),
        page=page,
        page_size=page_size,
    )
    return jsonify({
        "tickets": [serialize_ticket(ticket) for ticket in items],
        "pagination": pagination(page, page_size, total),
    })


@claims_bp.route("/tickets/<int:ticket_id>", methods=["GET"])
@require_actor
def get_repair_ticket(ticket_id: int):
    return jsonify({"ticket": serialize_ticket(_get_ticket_service().get_ticket(ticket_id, g.actor))})


@claims_bp.route("/tickets/<int:ticket_id>/assign", methods=["POST"])
@require_actor
def assign_repair_ticket(ticket_id: int):
    payload = json_body()
    ticket = _get_ticket_service().assign_ticket(
        ticket_id,
        g.actor,
        technician_id=payload.get("technician_id"),
        estimated_completion_date=payload.get("estimated_completion_date"),
    )
    return jsonify({"ticket": serialize_ticket(ticket)})


@claims_bp.route("/tickets/<int:ticket_id>/start", methods=["POST"])
@require_actor
def start_repair_ticket(ticket_id: int):
    ticket = _get_ticket_service().start_ticket(ticket_id, g.actor)
    return jsonify({"ticket": serialize_ticket(ticket)})


@claims_bp.route("/tickets/<int:ticket_id>/complete", methods=["POST"])
@require_actor
def complete_repair_ticket(ticket_id: int):
    payload = json_body()
    ticket = _get_ticket_service().complete_ticket(
        ticket_id,
        g.actor,
        actual_hours=payload.get("actual_hours"),
        labor_cost=payload.get("labor_cost"),
        parts_cost=payload.get("parts_cost"),
        used_parts=payload.get("used_parts"),
        test_results=payload.get("test_results"),
        repair_notes=payload.get("repair_notes"),
    )
    return jsonify({"ticket": serialize_ticket(ticket)})


@claims_bp.route("/tickets/<int:ticket_id>/quality-check", methods=["POST"])
@require_actor
def quality_check_repair_ticket(ticket_id: int):
    payload = json_body()
    if not isinstance(payload.get("approved"), bool):
        raise InvalidArgumentError.for_field("approved", "approved must be true or false", payload.get("approved"))
    ticket = _get_ticket_service().quality_check(
        ticket_id, g.actor, approved=payload["approved"], notes=payload.get("notes")
    )
    return jsonify({"ticket": serialize_ticket(ticket)})


@claims_bp.route("/tickets/<int:ticket_id>/customer-approval", methods=["POST"])
@require_actor
def customer_approval_repair_ticket(ticket_id: int):
    payload = json_body()
    if not isinstance(payload.get("approved"), bool):
        raise InvalidArgumentError.for_field("approved", "approved must be true or false", payload.get("approved"))
    ticket = _get_ticket_service().record_customer_approval(
        ticket_id, g.actor, approved=payload["approved"], notes=payload.get("notes")
    )
    return jsonify({"ticket": serialize_ticket(ticket)})


@claims_bp.route("/tickets/<int:ticket_id>/cancel", methods=["POST"])
@require_actor
def cancel_repair_ticket(ticket_id: int):
    payload = json_body()
    ticket = _get_ticket_service().cancel_ticket(ticket_id, g.actor, reason=payload.get("reason", ""))
    return jsonify({"ticket": serialize_ticket(ticket)})


# ---------------------------------------------
# Attachments
# ---------------------------------------------
@claims_bp.route("/claims/<int:claim_id>/attachments", methods=["POST"])
@require_actor
def upload_claim_attachment(claim_id: int):
    payload = json_body()
    attachment = _get_attachment_service().upload(
        claim_id,
        g.actor,
        filename=payload.get("filename", ""),
        storage_ref=payload.get("storage_ref", ""),
        file_size=payload.get("file_size"),
        mime_type=payload.get("mime_type", ""),
        attachment_type=payload.get("attachment_type"),
        description=payload.get("description"),
    )
    if g.actor.is_staff or attachment.is_visible_to_customer:
        return jsonify({"attachment": serialize_attachment(attachment)}), 201
    return jsonify({"attachment": serialize_upload_receipt(attachment)}), 202


@claims_bp.route("/claims/<int:claim_id>/attachments", methods=["GET"])
@require_actor
def list_claim_attachments(claim_id: int):
    attachments = _get_attachment_service().list_attachments(claim_id, g.actor)
    return jsonify({"attachments": [serialize_attachment(item) for item in attachments]})


@claims_bp.route("/attachments/pending-scans", methods=["GET"])
@require_actor
def list_pending_attachment_scans():
    attachments = _get_attachment_service().list_pending_scans(g.actor, limit=int_arg("limit", 100))
    return jsonify({"attachments": [serialize_attachment(item) for item in attachments]})


@claims_bp.route("/attachments/<int:attachment_id>", methods=["GET"])
@require_actor
def get_claim_attachment(attachment_id: int):
    attachment = _get_attachment_service().get_attachment(attachment_id, g.actor)
    return jsonify({"attachment": serialize_attachment(attachment)})


@claims_bp.route("/attachments/<int:attachment_id>/scan-result", methods=["POST"])
@require_actor
def record_attachment_scan(attachment_id: int):
    require_role(g.actor, ROLE_AGENT, action="record scan results")
    payload = json_body()
    attachment = _get_attachment_service().record_scan_result(
        attachment_id, payload.get("status", ""), detail=payload.get("detail")
    )
    return jsonify({"attachment": serialize_attachment(attachment)})
