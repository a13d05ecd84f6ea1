from __future__ import annotations

import logging
from typing import Any, List, Optional

from sqlalchemy.orm import Session
from werkzeug.utils import secure_filename

from warranty.config import Config
from warranty.errors import (
    ConflictError,
    DependencyFailureError,
    InvalidArgumentError,
    InvalidStateError,
    NotFoundError,
    PayloadTooLargeError,
)
from warranty.models import (
    AttachmentType,
    ClaimAttachment,
    ScanStatus,
    TimelineEventType,
    WarrantyClaim,
)
from warranty.observability import increment_counter, record_event
from warranty.services.claim_service import ClaimService, append_timeline_event
from warranty.services.collaborators import (
    ROLE_AGENT,
    ROLE_TECHNICIAN,
    Actor,
    AttachmentScanner,
    Clock,
    ScanResult,
    SystemClock,
    build_scanner,
    require_role,
)
from warranty.services.sanitization import optional_text, require_text

_RECEIPT_HINTS = ("receipt", "invoice", "bill")


def detect_attachment_type(mime_type: str, filename: str) -> AttachmentType:
    """Best guess at what an upload is when the caller did not say."""
    name = (filename or "").lower()
    mime = (mime_type or "").lower()
    looks_like_receipt = any(hint in name for hint in _RECEIPT_HINTS)
    if mime.startswith("image/"):
        return AttachmentType.RECEIPT if looks_like_receipt else AttachmentType.PHOTO
    if mime.startswith("video/"):
        return AttachmentType.VIDEO
    if mime == "application/pdf" and looks_like_receipt:
        return AttachmentType.RECEIPT
    if mime in {"application/pdf", "text/plain"} or "word" in mime:
        return AttachmentType.DOCUMENT
    return AttachmentType.OTHER


def size_limit_for(mime_type: str, config: type[Config] = Config) -> int:
    if mime_type.startswith("image/"):
        return config.ATTACHMENT_MAX_IMAGE_BYTES
    if mime_type.startswith("video/"):
        return config.ATTACHMENT_MAX_VIDEO_BYTES
    return config.ATTACHMENT_MAX_DOCUMENT_BYTES


class AttachmentService:
    """
    Custody of claim evidence.

    Uploads start ``pending`` and are handed to the scanner. Customer-facing
    reads only ever return attachments whose scan ``passed``.
    """

    def __init__(
        self,
        db_session: Session,
        config: type[Config] = Config,
        clock: Optional[Clock] = None,
        scanner: Optional[AttachmentScanner] = None,
        claim_service: Optional[ClaimService] = None,
    ) -> None:
        self.db = db_session
        self.config = config
        self.clock = clock or SystemClock()
        self.logger = logging.getLogger(__name__)
        self.scanner = scanner or build_scanner(config)
        self.claims = claim_service or ClaimService(db_session, config=config, clock=self.clock)

    def upload(
        self,
        claim_id: int,
        actor: Actor,
        filename: str,
        storage_ref: str,
        file_size: int,
        mime_type: str,
        attachment_type: Optional[Any] = None,
        description: Optional[str] = None,
    ) -> ClaimAttachment:
        claim = self.claims.get_claim(claim_id, actor)
        if claim.is_terminal and not actor.is_staff:
            raise InvalidStateError(
                "Attachments cannot be added to a closed claim",
                current_state=claim.status_enum,
                legal_actions=claim.legal_actions(),
            )

        attachment = self.prepare(
            actor,
            filename=filename,
            storage_ref=storage_ref,
            file_size=file_size,
            mime_type=mime_type,
            attachment_type=attachment_type,
            description=description,
        )
        self.attach(claim, attachment, actor)
        self.claims.commit()
        self.dispatch_uploaded(claim, attachment)
        return attachment

    def prepare(
        self,
        actor: Actor,
        filename: str,
        storage_ref: str,
        file_size: int,
        mime_type: str,
        attachment_type: Optional[Any] = None,
        description: Optional[str] = None,
    ) -> ClaimAttachment:
        """Validate one upload and build its row without touching the session."""
        mime = (mime_type or "").split(";", 1)[0].strip().lower()
        if mime not in self.config.ATTACHMENT_ALLOWED_MIME_TYPES:
            raise InvalidArgumentError.for_field("mime_type", "file type is not allowed", mime_type)
        if isinstance(file_size, bool) or not isinstance(file_size, int) or file_size <= 0:
            raise InvalidArgumentError.for_field("file_size", "file_size must be a positive integer", file_size)
        limit = size_limit_for(mime, self.config)
        if file_size > limit:
            raise PayloadTooLargeError(
                "File is larger than allowed",
                fields=[{"field": "file_size", "message": f"file_size must be at most {limit} bytes", "value": file_size}],
                details={"max_bytes": limit},
            )
        original = (filename or "").strip()
        safe_name = secure_filename(original)
        if not safe_name:
            raise InvalidArgumentError.for_field("filename", "filename is required", filename)
        reference = require_text("storage_ref", storage_ref, max_length=512)

        if attachment_type:
            try:
                kind = AttachmentType(str(getattr(attachment_type, "value", attachment_type)).strip().lower())
            except ValueError:
                allowed = ", ".join(member.value for member in AttachmentType)
                raise InvalidArgumentError.for_field(
                    "attachment_type", f"attachment_type must be one of: {allowed}", attachment_type
                ) from None
        else:
            kind = detect_attachment_type(mime, safe_name)

        return ClaimAttachment(
            filename=safe_name,
            original_filename=original[:255],
            storage_ref=reference,
            file_size=file_size,
            mime_type=mime,
            attachment_type=kind,
            description=optional_text("description", description, max_length=1000),
            scan_status=ScanStatus.PENDING,
            uploaded_by=actor.actor_id,
            uploader_type=actor.actor_type,
        )

    def attach(self, claim: WarrantyClaim, attachment: ClaimAttachment, actor: Actor) -> None:
        """Stage a prepared upload on the claim; the caller owns the commit."""
        now = self.clock.now()
        attachment.uploaded_at = now
        claim.attachments.append(attachment)
        kind = AttachmentType(attachment.attachment_type)
        append_timeline_event(
            claim,
            TimelineEventType.ATTACHMENT_UPLOADED,
            f"Attachment uploaded: {attachment.filename}",
            actor,
            now,
            visible_to_customer=False,
            metadata={
                "attachment_type": kind.value,
                "file_size": attachment.file_size,
                "mime_type": attachment.mime_type,
            },
        )

    def dispatch_uploaded(self, claim: WarrantyClaim, attachment: ClaimAttachment) -> None:
        """Post-commit bookkeeping for a stored upload, then hand it to the scanner."""
        kind = AttachmentType(attachment.attachment_type)
        increment_counter("attachments_uploaded_total", labels={"type": kind.value})
        self.logger.info(
            "Attachment %s uploaded to claim %s",
            attachment.filename,
            claim.claim_number,
            extra={"attachment_id": attachment.attachmentID, "claim_id": claim.claimID},
        )
        self._dispatch_scan(attachment)

    def record_scan_result(
        self,
        attachment_id: int,
        status: Any,
        detail: Optional[str] = None,
    ) -> ClaimAttachment:
        """Apply a scanner verdict. Repeating the same verdict is a no-op."""
        try:
            verdict = ScanStatus(str(getattr(status, "value", status)).strip().lower())
        except ValueError:
            raise InvalidArgumentError.for_field("status", "status must be passed or failed", status) from None
        if verdict == ScanStatus.PENDING:
            raise InvalidArgumentError.for_field("status", "status must be passed or failed", status)

        attachment = self._get_attachment(attachment_id)
        current = ScanStatus(attachment.scan_status)
        if current == verdict:
            return attachment
        if current != ScanStatus.PENDING:
            raise ConflictError(
                "Attachment already has a scan verdict",
                {"attachment_id": attachment_id, "scan_status": current.value},
            )

        attachment.scan_status = verdict
        attachment.scan_detail = optional_text("detail", detail, max_length=1000)
        attachment.scanned_at = self.clock.now()
        self.db.commit()
        increment_counter("attachment_scans_total", labels={"result": verdict.value})
        if verdict == ScanStatus.FAILED:
            record_event(
                "attachment_scan_failed",
                {"attachment_id": attachment.attachmentID, "claim_id": attachment.claimID},
            )
            self.logger.warning(
                "Attachment %s failed scanning: %s",
                attachment.attachmentID,
                attachment.scan_detail,
                extra={"attachment_id": attachment.attachmentID, "claim_id": attachment.claimID},
            )
        return attachment

    def list_attachments(self, claim_id: int, actor: Actor) -> List[ClaimAttachment]:
        """Staff see every scan state; customers only see passed files."""
        claim = self.claims.get_claim(claim_id, actor)
        query = self.db.query(ClaimAttachment).filter(ClaimAttachment.claimID == claim.claimID)
        if not actor.is_staff:
            query = query.filter(ClaimAttachment.scan_status == ScanStatus.PASSED)
        return query.order_by(ClaimAttachment.attachmentID).all()

    def list_customer_visible(self, claim_id: int, actor: Actor) -> List[ClaimAttachment]:
        claim = self.claims.get_claim(claim_id, actor)
        return (
            self.db.query(ClaimAttachment)
            .filter(
                ClaimAttachment.claimID == claim.claimID,
                ClaimAttachment.scan_status == ScanStatus.PASSED,
            )
            .order_by(ClaimAttachment.attachmentID)
            .all()
        )

    def list_pending_scans(self, actor: Actor, limit: int = 100) -> List[ClaimAttachment]:
        require_role(actor, ROLE_AGENT, action="list pending scans")
        return (
            self.db.query(ClaimAttachment)
            .filter(ClaimAttachment.scan_status == ScanStatus.PENDING)
            .order_by(ClaimAttachment.uploaded_at)
            .limit(limit)
            .all()
        )

    def get_attachment(self, attachment_id: int, actor: Actor) -> ClaimAttachment:
        attachment = self._get_attachment(attachment_id)
        if actor.has_role(ROLE_AGENT, ROLE_TECHNICIAN):
            return attachment
        if attachment.claim.customerID != actor.actor_id or not attachment.is_visible_to_customer:
            raise NotFoundError("Attachment not found", {"attachment_id": attachment_id})
        return attachment

    def _dispatch_scan(self, attachment: ClaimAttachment) -> None:
        try:
            result: Optional[ScanResult] = self.scanner.scan(attachment.storage_ref)
        except DependencyFailureError as exc:
            # Upload stands; the verdict can still arrive through the callback
            increment_counter("attachment_scan_dispatch_failures_total")
            self.logger.warning(
                "Scanner unavailable for attachment %s: %s",
                attachment.attachmentID,
                exc.message,
                extra={"attachment_id": attachment.attachmentID},
            )
            return
        if result is not None:
            self.record_scan_result(attachment.attachmentID, result.status, result.detail)

    def _get_attachment(self, attachment_id: int) -> ClaimAttachment:
        attachment = self.db.query(ClaimAttachment).filter_by(attachmentID=attachment_id).first()
        if attachment is None:
            raise NotFoundError("Attachment not found", {"attachment_id": attachment_id})
        return attachment
