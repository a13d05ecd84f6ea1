"""JSON shapes for warranty entities. One canonical definition per entity."""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from warranty.models import (
    BarcodeBatch,
    BatchCollision,
    ClaimAttachment,
    ClaimStatus,
    ClaimTimelineEvent,
    RepairTicket,
    WarrantyBarcode,
    WarrantyClaim,
)
from warranty.services.claim_service import NEXT_ACTIONS
from warranty.time_utils import as_utc


def _serialize_dt(value: Optional[datetime]) -> Optional[str]:
    if not value:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def _enum_value(value: Any) -> Any:
    return value.value if hasattr(value, "value") else value


def _money(value: Optional[Decimal]) -> Optional[float]:
    return float(value) if value is not None else None


def serialize_snapshot(snapshot: Dict[str, Any]) -> Dict[str, Any]:
    """Render datetimes in a service-produced dict (progress, audit trail)."""
    return {
        key: _serialize_dt(value) if isinstance(value, datetime) else value
        for key, value in snapshot.items()
    }


def serialize_batch(batch: BarcodeBatch) -> Dict[str, Any]:
    return {
        "id": batch.batchID,
        "batch_number": batch.batch_number,
        "product_id": batch.productID,
        "storefront_id": batch.storefrontID,
        "requested_quantity": batch.requested_quantity,
        "generated_count": batch.generated_count or 0,
        "successful_count": batch.successful_count or 0,
        "failed_count": batch.failed_count or 0,
        "error_count": batch.error_count or 0,
        "collision_count": batch.collision_count or 0,
        "retry_count": batch.retry_count or 0,
        "max_retries": batch.max_retries,
        "prefix": batch.prefix,
        "description": batch.description,
        "expiry_months": batch.expiry_months,
        "priority": _enum_value(batch.priority),
        "status": _enum_value(batch.status),
        "progress": batch.progress or 0,
        "current_step": batch.current_step,
        "generation_rate": batch.generation_rate or 0.0,
        "processing_time_seconds": batch.processing_time_seconds,
        "success_rate": batch.success_rate,
        "collision_rate": batch.collision_rate,
        "error_rate": batch.error_rate,
        "performance_grade": batch.performance_grade,
        "notify_on_complete": bool(batch.notify_on_complete),
        "notification_sent": bool(batch.notification_sent),
        "tags": list(batch.tags or []),
        "created_by": batch.created_by,
        "created_at": _serialize_dt(batch.created_at),
        "started_at": _serialize_dt(batch.started_at),
        "completed_at": _serialize_dt(batch.completed_at),
        "cancelled_at": _serialize_dt(batch.cancelled_at),
        "cancellation_reason": batch.cancellation_reason,
        "last_error": batch.last_error,
    }


def serialize_collision(collision: BatchCollision) -> Dict[str, Any]:
    return {
        "id": collision.collisionID,
        "batch_id": collision.batchID,
        "slot_index": collision.slot_index,
        "attempt": collision.attempt,
        "barcode_value": collision.barcode_value,
        "collision_type": _enum_value(collision.collision_type),
        "existing_barcode_id": collision.existing_barcodeID,
        "resolution": _enum_value(collision.resolution),
        "detected_at": _serialize_dt(collision.detected_at),
        "resolved_at": _serialize_dt(collision.resolved_at),
    }


def serialize_barcode(barcode: WarrantyBarcode, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = as_utc(now) if now else datetime.now(timezone.utc)
    return {
        "id": barcode.barcodeID,
        "barcode_value": barcode.barcode_number,
        "product_id": barcode.productID,
        "batch_id": barcode.batchID,
        "batch_number": barcode.batch_number,
        "storefront_id": barcode.storefrontID,
        "status": _enum_value(barcode.status),
        "effective_status": barcode.effective_status(now).value,
        "warranty_period_months": barcode.warranty_period_months,
        "warranty_period": barcode.warranty_period,
        "qr_code_data": barcode.qr_code_data,
        "generated_at": _serialize_dt(barcode.generated_at),
        "generation_attempt": barcode.generation_attempt,
        "customer_id": barcode.customerID,
        "activated_at": _serialize_dt(barcode.activated_at),
        "expiry_date": _serialize_dt(barcode.expiry_date),
        "days_remaining": barcode.days_remaining(now),
        "is_expired": barcode.is_expired(now),
        "can_claim": barcode.can_claim(now),
        "purchase": {
            "purchase_date": _serialize_dt(barcode.purchase_date),
            "retailer": barcode.purchase_location,
            "invoice": barcode.purchase_invoice,
            "serial_number": barcode.serial_number,
            "purchase_price": _money(barcode.purchase_price),
        } if barcode.activated_at else None,
        "revoked_at": _serialize_dt(barcode.revoked_at),
        "revocation_reason": barcode.revocation_reason,
    }


def serialize_claim(claim: WarrantyClaim, include_internal: bool = False) -> Dict[str, Any]:
    status = ClaimStatus(claim.status)
    payload: Dict[str, Any] = {
        "id": claim.claimID,
        "claim_number": claim.claim_number,
        "barcode_id": claim.barcodeID,
        "barcode_value": claim.barcode.barcode_number if claim.barcode else None,
        "customer_id": claim.customerID,
        "product_id": claim.productID,
        "storefront_id": claim.storefrontID,
        "issue_category": _enum_value(claim.issue_category),
        "issue_description": claim.issue_description,
        "issue_date": _serialize_dt(claim.issue_date),
        "severity": _enum_value(claim.severity),
        "priority": _enum_value(claim.priority),
        "status": status.value,
        "display_status": claim.display_status,
        "previous_status": _enum_value(claim.previous_status),
        "legal_actions": claim.legal_actions(),
        "next_actions": list(NEXT_ACTIONS.get(status, [])),
        "claim_date": _serialize_dt(claim.claim_date),
        "validated_at": _serialize_dt(claim.validated_at),
        "assigned_at": _serialize_dt(claim.assigned_at),
        "technician_id": claim.technicianID,
        "estimated_completion_date": _serialize_dt(claim.estimated_completion_date),
        "actual_completion_date": _serialize_dt(claim.actual_completion_date),
        "completed_at": _serialize_dt(claim.completed_at),
        "processing_time_hours": claim.processing_time_hours,
        "resolution_type": _enum_value(claim.resolution_type),
        "resolution_notes": claim.resolution_notes,
        "replacement_product_id": claim.replacement_productID,
        "refund_amount": _money(claim.refund_amount),
        "costs": {
            "repair_cost": _money(claim.repair_cost),
            "shipping_cost": _money(claim.shipping_cost),
            "replacement_cost": _money(claim.replacement_cost),
            "total_cost": _money(claim.total_cost),
        },
        "delivery": {
            "status": _enum_value(claim.delivery_status),
            "shipping_provider": claim.shipping_provider,
            "tracking_number": claim.tracking_number,
            "estimated_delivery_date": _serialize_dt(claim.estimated_delivery_date),
            "actual_delivery_date": _serialize_dt(claim.actual_delivery_date),
        },
        "contact": {
            "name": claim.customer_name,
            "email": claim.customer_email,
            "phone": claim.customer_phone,
            "pickup_address": claim.pickup_address,
        },
        "customer_notes": claim.customer_notes,
        "rejection_reason": claim.rejection_reason,
        "dispute_reason": claim.dispute_reason,
        "repair_notes": claim.repair_notes,
        "feedback": {
            "rating": claim.customer_satisfaction_rating,
            "comment": claim.customer_feedback,
            "submitted_at": _serialize_dt(claim.feedback_at),
        } if claim.customer_satisfaction_rating is not None else None,
        "tags": list(claim.tags or []),
        "version": claim.version,
        "created_at": _serialize_dt(claim.created_at),
        "updated_at": _serialize_dt(claim.updated_at),
    }
    if include_internal:
        payload["admin_notes"] = claim.admin_notes
        payload["internal_notes"] = claim.internal_notes
        payload["disputed_from_status"] = _enum_value(claim.disputed_from_status)
    return payload


def serialize_timeline_event(event: ClaimTimelineEvent) -> Dict[str, Any]:
    return {
        "id": event.eventID,
        "sequence": event.sequence,
        "event_type": _enum_value(event.event_type),
        "description": event.description,
        "actor_id": event.actor_id,
        "actor_type": _enum_value(event.actor_type),
        "visible_to_customer": bool(event.visible_to_customer),
        "metadata": event.event_metadata or {},
        "created_at": _serialize_dt(event.created_at),
    }


def serialize_ticket(ticket: RepairTicket) -> Dict[str, Any]:
    return {
        "id": ticket.ticketID,
        "ticket_number": ticket.ticket_number,
        "claim_id": ticket.claimID,
        "status": _enum_value(ticket.status),
        "priority": _enum_value(ticket.priority),
        "technician_id": ticket.technicianID,
        "assigned_at": _serialize_dt(ticket.assigned_at),
        "started_at": _serialize_dt(ticket.started_at),
        "estimated_hours": _money(ticket.estimated_hours),
        "actual_hours": _money(ticket.actual_hours),
        "estimated_completion_date": _serialize_dt(ticket.estimated_completion_date),
        "actual_completion_date": _serialize_dt(ticket.actual_completion_date),
        "description": ticket.description,
        "special_instructions": ticket.special_instructions,
        "required_parts": list(ticket.required_parts or []),
        "used_parts": list(ticket.used_parts or []),
        "test_results": list(ticket.test_results or []),
        "repair_notes": ticket.repair_notes,
        "labor_cost": _money(ticket.labor_cost),
        "parts_cost": _money(ticket.parts_cost),
        "total_cost": _money(ticket.total_cost),
        "quality_check": {
            "status": _enum_value(ticket.quality_check_status),
            "checked_by": ticket.quality_checked_by,
            "checked_at": _serialize_dt(ticket.quality_check_date),
            "notes": ticket.quality_check_notes,
        },
        "customer_approval": {
            "required": bool(ticket.customer_approval_required),
            "status": _enum_value(ticket.customer_approval_status),
            "approved_at": _serialize_dt(ticket.customer_approved_at),
            "notes": ticket.customer_approval_notes,
        },
        "reopen_count": ticket.reopen_count or 0,
        "cancelled_at": _serialize_dt(ticket.cancelled_at),
        "cancellation_reason": ticket.cancellation_reason,
        "created_at": _serialize_dt(ticket.created_at),
    }


def serialize_attachment(attachment: ClaimAttachment) -> Dict[str, Any]:
    return {
        "id": attachment.attachmentID,
        "claim_id": attachment.claimID,
        "filename": attachment.filename,
        "original_filename": attachment.original_filename,
        "storage_ref": attachment.storage_ref,
        "file_size": attachment.file_size,
        "mime_type": attachment.mime_type,
        "attachment_type": _enum_value(attachment.attachment_type),
        "description": attachment.description,
        "scan_status": _enum_value(attachment.scan_status),
        "scanned_at": _serialize_dt(attachment.scanned_at),
        "uploaded_by": attachment.uploaded_by,
        "uploader_type": _enum_value(attachment.uploader_type),
        "uploaded_at": _serialize_dt(attachment.uploaded_at),
    }


def serialize_upload_receipt(attachment: ClaimAttachment) -> Dict[str, Any]:
    """What a customer learns about an upload that has not passed scanning."""
    return {
        "id": attachment.attachmentID,
        "claim_id": attachment.claimID,
        "filename": attachment.filename,
        "status": "processing",
    }
