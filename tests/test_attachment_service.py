from __future__ import annotations

import pytest

from warranty.errors import (
    ConflictError,
    DependencyFailureError,
    ForbiddenError,
    InvalidArgumentError,
    InvalidStateError,
    NotFoundError,
    PayloadTooLargeError,
)
from warranty.models import AttachmentType, ClaimAttachment, ScanStatus, TimelineEventType, WarrantyClaim
from warranty.observability.metrics import get_counter_value
from warranty.services.attachment_service import AttachmentService, detect_attachment_type
from warranty.services.collaborators import Actor, ScanResult


class _StubScanner:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.scanned = []

    def scan(self, storage_ref):
        self.scanned.append(storage_ref)
        if self.error is not None:
            raise self.error
        return self.result


def _service(db_session, clock, claim_service, scanner=None) -> AttachmentService:
    return AttachmentService(
        db_session,
        clock=clock,
        scanner=scanner or _StubScanner(),
        claim_service=claim_service,
    )


def _upload(service, claim, actor, **overrides):
    fields = {
        "filename": "broken-screen.jpg",
        "storage_ref": "s3://evidence/broken-screen.jpg",
        "file_size": 120_000,
        "mime_type": "image/jpeg",
    }
    fields.update(overrides)
    return service.upload(claim.claimID, actor, **fields)


def test_upload_starts_pending_and_hidden_from_the_customer(
    db_session, clock, claim_service, submit_claim, sample_customer, agent
):
    scanner = _StubScanner()
    service = _service(db_session, clock, claim_service, scanner)
    claim = submit_claim()
    customer = Actor.customer(sample_customer.customerID)

    attachment = _upload(service, claim, customer, filename="../../My Receipt.png", mime_type="image/png")

    assert attachment.filename == "My_Receipt.png"
    assert attachment.original_filename == "../../My Receipt.png"
    assert attachment.attachment_type == AttachmentType.RECEIPT
    assert attachment.scan_status == ScanStatus.PENDING
    assert scanner.scanned == ["s3://evidence/broken-screen.jpg"]
    assert service.list_attachments(claim.claimID, customer) == []
    assert [item.attachmentID for item in service.list_attachments(claim.claimID, agent)] == [attachment.attachmentID]
    assert get_counter_value("attachments_uploaded_total", labels={"type": "receipt"}) == 1


def test_immediate_verdict_makes_the_file_visible(db_session, clock, claim_service, submit_claim, sample_customer):
    service = _service(db_session, clock, claim_service, _StubScanner(result=ScanResult(ScanStatus.PASSED)))
    claim = submit_claim()
    customer = Actor.customer(sample_customer.customerID)

    attachment = _upload(service, claim, customer)

    assert attachment.scan_status == ScanStatus.PASSED
    assert attachment.scanned_at is not None
    assert [item.attachmentID for item in service.list_customer_visible(claim.claimID, customer)] == [
        attachment.attachmentID
    ]
    assert service.get_attachment(attachment.attachmentID, customer).attachmentID == attachment.attachmentID


def test_scanner_outage_leaves_the_upload_pending(db_session, clock, claim_service, submit_claim, sample_customer):
    scanner = _StubScanner(error=DependencyFailureError("Attachment scanner unavailable"))
    service = _service(db_session, clock, claim_service, scanner)

    attachment = _upload(service, submit_claim(), Actor.customer(sample_customer.customerID))

    assert attachment.attachmentID is not None
    assert attachment.scan_status == ScanStatus.PENDING
    assert get_counter_value("attachment_scan_dispatch_failures_total") == 1


def test_oversized_image_is_rejected(db_session, clock, claim_service, submit_claim, sample_customer):
    service = _service(db_session, clock, claim_service)

    with pytest.raises(PayloadTooLargeError) as exc_info:
        _upload(service, submit_claim(), Actor.customer(sample_customer.customerID), file_size=5 * 1024 * 1024 + 1)

    assert exc_info.value.details["max_bytes"] == 5 * 1024 * 1024


@pytest.mark.parametrize(
    "overrides",
    [
        {"mime_type": "application/x-msdownload"},
        {"file_size": 0},
        {"filename": "../.."},
        {"attachment_type": "hologram"},
    ],
)
def test_invalid_uploads_are_rejected(db_session, clock, claim_service, submit_claim, sample_customer, overrides):
    service = _service(db_session, clock, claim_service)

    with pytest.raises(InvalidArgumentError):
        _upload(service, submit_claim(), Actor.customer(sample_customer.customerID), **overrides)


def test_closed_claims_only_accept_staff_uploads(
    db_session, clock, claim_service, submit_claim, sample_customer, agent
):
    service = _service(db_session, clock, claim_service)
    claim = submit_claim()
    claim_service.reject_claim(claim.claimID, agent, "Damage caused by a drop")

    with pytest.raises(InvalidStateError):
        _upload(service, claim, Actor.customer(sample_customer.customerID))
    assert _upload(service, claim, agent, mime_type="application/pdf", filename="inspection.pdf").attachment_type == (
        AttachmentType.DOCUMENT
    )


def test_scan_verdicts_are_final(db_session, clock, claim_service, submit_claim, agent):
    service = _service(db_session, clock, claim_service)
    attachment = _upload(service, submit_claim(), agent)

    service.record_scan_result(attachment.attachmentID, "failed", "EICAR signature")
    again = service.record_scan_result(attachment.attachmentID, ScanStatus.FAILED)

    assert again.scan_detail == "EICAR signature"
    with pytest.raises(ConflictError):
        service.record_scan_result(attachment.attachmentID, "passed")
    with pytest.raises(InvalidArgumentError):
        service.record_scan_result(attachment.attachmentID, "pending")
    with pytest.raises(NotFoundError):
        service.record_scan_result(424242, "passed")


def test_other_customers_cannot_see_attachments(
    db_session, clock, claim_service, submit_claim, sample_customer, customer_factory
):
    service = _service(db_session, clock, claim_service, _StubScanner(result=ScanResult(ScanStatus.PASSED)))
    attachment = _upload(service, submit_claim(), Actor.customer(sample_customer.customerID))
    stranger = Actor.customer(customer_factory().customerID)

    with pytest.raises(NotFoundError):
        service.get_attachment(attachment.attachmentID, stranger)
    with pytest.raises(NotFoundError):
        service.list_attachments(attachment.claimID, stranger)


def test_pending_scan_queue_is_staff_only(db_session, clock, claim_service, submit_claim, sample_customer, agent):
    service = _service(db_session, clock, claim_service)
    attachment = _upload(service, submit_claim(), agent)

    assert [item.attachmentID for item in service.list_pending_scans(agent)] == [attachment.attachmentID]
    with pytest.raises(ForbiddenError):
        service.list_pending_scans(Actor.customer(sample_customer.customerID))


@pytest.mark.parametrize(
    ("mime_type", "filename", "expected"),
    [
        ("image/jpeg", "IMG_0042.jpg", AttachmentType.PHOTO),
        ("image/png", "store-receipt.png", AttachmentType.RECEIPT),
        ("application/pdf", "invoice-1001.pdf", AttachmentType.RECEIPT),
        ("application/pdf", "manual.pdf", AttachmentType.DOCUMENT),
        ("video/mp4", "boot-loop.mp4", AttachmentType.VIDEO),
        ("application/zip", "logs.zip", AttachmentType.OTHER),
    ],
)
def test_attachment_type_detection(mime_type, filename, expected):
    assert detect_attachment_type(mime_type, filename) == expected


def test_claim_with_a_bad_attachment_is_not_opened(db_session, submit_claim):
    receipt = {
        "filename": "receipt.png",
        "storage_ref": "s3://evidence/receipt.png",
        "file_size": 80_000,
        "mime_type": "image/png",
    }
    installer = dict(
        receipt, filename="setup.exe", storage_ref="s3://evidence/setup.exe", mime_type="application/x-msdownload"
    )

    with pytest.raises(InvalidArgumentError) as exc_info:
        submit_claim(attachments=[receipt, installer])

    assert exc_info.value.fields[0]["field"] == "mime_type"
    assert db_session.query(WarrantyClaim).count() == 0
    assert db_session.query(ClaimAttachment).count() == 0

    claim = submit_claim(attachments=[receipt])

    assert [attachment.filename for attachment in claim.attachments] == ["receipt.png"]
    assert [event.event_type for event in claim.timeline] == [
        TimelineEventType.SUBMITTED,
        TimelineEventType.ATTACHMENT_UPLOADED,
    ]
    assert get_counter_value("attachments_uploaded_total", labels={"type": "receipt"}) == 1
