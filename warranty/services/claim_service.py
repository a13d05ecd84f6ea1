from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from warranty.config import Config
from warranty.errors import (
    ConflictError,
    DeadlineExceededError,
    ForbiddenError,
    InvalidArgumentError,
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    PreconditionFailedError,
    WarrantyError,
)
from warranty.models import (
    BarcodeStatus,
    ClaimAction,
    ClaimStatus,
    ClaimTimelineEvent,
    DeliveryStatus,
    IssueCategory,
    IssueSeverity,
    Priority,
    ProcessedRequest,
    ResolutionType,
    TimelineEventType,
    WarrantyClaim,
    _money,
)
from warranty.observability import increment_counter, log_context, observe_latency, record_event
from warranty.observability.warranty_metrics import compute_claim_statistics
from warranty.services.collaborators import (
    ROLE_AGENT,
    ROLE_TECHNICIAN,
    Actor,
    Clock,
    CustomerDirectory,
    Deadline,
    NotificationSink,
    ProductDirectory,
    SqlCustomerDirectory,
    SqlProductDirectory,
    SystemClock,
    dispatch_notification,
    require_role,
)
from warranty.services.notification_service import build_notification_sink, publish_claim_status_change
from warranty.services.numbering import CLAIM_PREFIX, next_number
from warranty.services.sanitization import optional_text, require_text
from warranty.services.warranty_store import WarrantyStore
from warranty.time_utils import as_utc, parse_iso_datetime

MAX_DESCRIPTION_LENGTH = 5000
MIN_DESCRIPTION_LENGTH = 10

NEXT_ACTIONS: Dict[ClaimStatus, List[str]] = {
    ClaimStatus.PENDING: ["Our team is reviewing your claim", "Keep your receipt and product at hand"],
    ClaimStatus.VALIDATED: ["A technician will be assigned shortly"],
    ClaimStatus.REJECTED: ["Review the rejection reason", "Contact support if you disagree"],
    ClaimStatus.ASSIGNED: ["A technician has been assigned", "Prepare the product for pickup"],
    ClaimStatus.IN_REPAIR: ["Your product is being repaired"],
    ClaimStatus.REPAIRED: ["Your product will be shipped back soon"],
    ClaimStatus.REPLACED: ["Your replacement will be shipped soon"],
    ClaimStatus.SHIPPED: ["Track your shipment with the tracking number provided"],
    ClaimStatus.DELIVERED: ["Confirm the product works as expected"],
    ClaimStatus.COMPLETED: ["Rate your warranty experience"],
    ClaimStatus.CANCELLED: ["Submit a new claim if the issue persists"],
    ClaimStatus.DISPUTED: ["Our team is reviewing your dispute"],
}

_TRANSITION_EVENTS: Dict[ClaimAction, Tuple[TimelineEventType, str]] = {
    ClaimAction.VALIDATE: (TimelineEventType.VALIDATED, "Claim validated"),
    ClaimAction.REJECT: (TimelineEventType.REJECTED, "Claim rejected"),
    ClaimAction.CANCEL: (TimelineEventType.STATUS_UPDATED, "Claim cancelled"),
    ClaimAction.ASSIGN: (TimelineEventType.ASSIGNED, "Technician assigned"),
    ClaimAction.START: (TimelineEventType.REPAIR_STARTED, "Repair started"),
    ClaimAction.REPAIR: (TimelineEventType.REPAIR_COMPLETED, "Repair completed"),
    ClaimAction.REPLACE: (TimelineEventType.REPAIR_COMPLETED, "Product replaced"),
    ClaimAction.SHIP: (TimelineEventType.STATUS_UPDATED, "Product shipped"),
    ClaimAction.DELIVER: (TimelineEventType.STATUS_UPDATED, "Product delivered"),
    ClaimAction.COMPLETE: (TimelineEventType.COMPLETED, "Claim completed"),
    ClaimAction.DISPUTE: (TimelineEventType.STATUS_UPDATED, "Claim disputed"),
    ClaimAction.RESOLVE: (TimelineEventType.STATUS_UPDATED, "Dispute resolved"),
}


def default_priority(severity: IssueSeverity | str, category: IssueCategory | str) -> Priority:
    """Starting priority for a validated claim."""
    severity = IssueSeverity(severity)
    category = IssueCategory(category)
    if severity == IssueSeverity.CRITICAL:
        return Priority.HIGH
    if severity == IssueSeverity.HIGH and category in {IssueCategory.DEFECT, IssueCategory.MALFUNCTION}:
        return Priority.HIGH
    if severity == IssueSeverity.MEDIUM:
        return Priority.NORMAL
    return Priority.LOW


def append_timeline_event(
    claim: WarrantyClaim,
    event_type: TimelineEventType,
    description: str,
    actor: Actor,
    at: datetime,
    visible_to_customer: bool = True,
    metadata: Optional[Dict[str, Any]] = None,
) -> ClaimTimelineEvent:
    """
    Append to the claim's history.

    Sequence numbers are dense per claim and timestamps never go backwards,
    even if the wall clock does.
    """
    last = claim.timeline[-1] if claim.timeline else None
    sequence = (last.sequence + 1) if last else 1
    created_at = as_utc(at)
    if last is not None and as_utc(last.created_at) > created_at:
        created_at = as_utc(last.created_at)
    event = ClaimTimelineEvent(
        sequence=sequence,
        event_type=event_type,
        description=description,
        actor_id=actor.actor_id,
        actor_type=actor.actor_type,
        created_at=created_at,
        visible_to_customer=visible_to_customer,
        event_metadata=metadata,
    )
    claim.timeline.append(event)
    return event


def parse_money(field: str, value: Any, *, allow_none: bool = True) -> Optional[Decimal]:
    if value is None or value == "":
        if allow_none:
            return None
        raise InvalidArgumentError.for_field(field, f"{field} is required", value)
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise InvalidArgumentError.for_field(field, f"{field} must be a number", value) from None
    if not amount.is_finite() or amount < 0:
        raise InvalidArgumentError.for_field(field, f"{field} cannot be negative", value)
    return _money(amount)


class ClaimService:
    """Warranty claim lifecycle: submission, review, repair hand-off, resolution, feedback."""

    def __init__(
        self,
        db_session: Session,
        config: type[Config] = Config,
        clock: Optional[Clock] = None,
        customer_directory: Optional[CustomerDirectory] = None,
        product_directory: Optional[ProductDirectory] = None,
        notification_sink: Optional[NotificationSink] = None,
        store: Optional[WarrantyStore] = None,
    ) -> None:
        self.db = db_session
        self.config = config
        self.clock = clock or SystemClock()
        self.logger = logging.getLogger(__name__)
        self.customers = customer_directory or SqlCustomerDirectory(db_session)
        self.products = product_directory or SqlProductDirectory(db_session)
        self.notification_sink = notification_sink or build_notification_sink(config)
        self.store = store or WarrantyStore(db_session, config=config, clock=self.clock)
        self._after_commit: List[Callable[[], None]] = []

    # ------------------------------------------------------------------
    # Customer flows
    # ------------------------------------------------------------------
    def submit_claim(
        self,
        actor: Actor,
        barcode: str,
        issue_category: IssueCategory | str,
        issue_description: str,
        severity: IssueSeverity | str,
        issue_date: Optional[Any] = None,
        contact: Optional[Dict[str, Any]] = None,
        customer_notes: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
        attachments: Optional[List[Dict[str, Any]]] = None,
    ) -> WarrantyClaim:
        started = self.clock.now()
        now = started
        category = self._parse_enum(IssueCategory, "issue_category", issue_category)
        severity_value = self._parse_enum(IssueSeverity, "severity", severity)
        description = require_text(
            "issue_description",
            issue_description,
            min_length=MIN_DESCRIPTION_LENGTH,
            max_length=MAX_DESCRIPTION_LENGTH,
        )
        notes = optional_text("customer_notes", customer_notes, max_length=2000)
        issue_at = self._parse_date("issue_date", issue_date)
        if issue_at is not None and issue_at > as_utc(now):
            raise InvalidArgumentError.for_field("issue_date", "issue_date cannot be in the future", issue_date)

        # Every attachment is checked before anything is written
        uploader = None
        staged: List[Any] = []
        if attachments:
            from warranty.services.attachment_service import AttachmentService

            uploader = AttachmentService(self.db, config=self.config, clock=self.clock, claim_service=self)
            staged = [uploader.prepare(actor, **attachment) for attachment in attachments]

        record = self.store.require_by_string(barcode)
        status = BarcodeStatus(record.status)
        if status == BarcodeStatus.GENERATED:
            raise PreconditionFailedError("Warranty has not been activated", reason="warranty_not_activated")
        if record.customerID != actor.actor_id and not actor.has_role(ROLE_AGENT):
            raise ForbiddenError("Warranty belongs to another customer")
        if status == BarcodeStatus.REVOKED:
            raise PreconditionFailedError("Warranty has been revoked", reason="warranty_revoked")
        if status == BarcodeStatus.CLAIMED:
            raise PreconditionFailedError("Warranty has already been claimed", reason="warranty_already_claimed")
        if status == BarcodeStatus.EXPIRED or record.is_expired(now):
            raise PreconditionFailedError(
                "Warranty has expired",
                reason="warranty_expired",
                details={"expiry_date": as_utc(record.expiry_date).isoformat() if record.expiry_date else None},
            )

        open_claim = (
            self.db.query(WarrantyClaim)
            .filter(
                WarrantyClaim.barcodeID == record.barcodeID,
                WarrantyClaim.status.in_(list(WarrantyClaim.OPEN_STATUSES)),
            )
            .first()
        )
        if open_claim is not None:
            raise ConflictError(
                "An open claim already exists for this warranty",
                {"claim_number": open_claim.claim_number},
            )

        snapshot = self._contact_snapshot(record.customerID, contact)
        claim = WarrantyClaim(
            claim_number=next_number(self.db, CLAIM_PREFIX, as_utc(now).year),
            barcodeID=record.barcodeID,
            customerID=record.customerID,
            productID=record.productID,
            storefrontID=record.storefrontID,
            issue_category=category,
            issue_description=description,
            issue_date=issue_at,
            severity=severity_value,
            priority=Priority.NORMAL,
            status=ClaimStatus.PENDING,
            status_updated_at=now,
            status_updated_by=actor.actor_id,
            claim_date=now,
            customer_notes=notes,
            tags=self._clean_tags(tags),
            delivery_status=DeliveryStatus.NOT_SHIPPED,
            repair_cost=Decimal("0.00"),
            shipping_cost=Decimal("0.00"),
            replacement_cost=Decimal("0.00"),
            total_cost=Decimal("0.00"),
            created_at=now,
            **snapshot,
        )
        self.db.add(claim)
        append_timeline_event(claim, TimelineEventType.SUBMITTED, "Claim submitted", actor, now)
        for attachment in staged:
            uploader.attach(claim, attachment, actor)
        self._commit()

        increment_counter(
            "claims_submitted_total",
            labels={"category": category.value, "severity": severity_value.value},
        )
        record_event("claim_submitted", {"claim_id": claim.claimID, "barcode_id": record.barcodeID})
        self.logger.info("Claim %s submitted", claim.claim_number, extra={"claim_id": claim.claimID})
        self._notify(claim.customerID, "claim_submitted", {"claim_id": claim.claimID, "claim_number": claim.claim_number})

        for attachment in staged:
            uploader.dispatch_uploaded(claim, attachment)

        observe_latency("claim_submit_ms", (self.clock.now() - started).total_seconds() * 1000.0)
        return claim

    def cancel_claim(self, claim_id: int, actor: Actor, reason: Optional[str] = None, request_key: Optional[str] = None) -> WarrantyClaim:
        claim = self.get_claim(claim_id, actor)
        if not actor.has_role(ROLE_AGENT) and claim.customerID != actor.actor_id:
            raise ForbiddenError("Only the owning customer or an agent may cancel this claim")
        return self._run_transition(
            claim,
            ClaimAction.CANCEL,
            actor,
            request_key=request_key,
            notes=optional_text("reason", reason, max_length=500),
        )

    def dispute_claim(self, claim_id: int, actor: Actor, reason: str, request_key: Optional[str] = None) -> WarrantyClaim:
        claim = self.get_claim(claim_id, actor)
        cleaned = require_text("reason", reason, min_length=5, max_length=2000)
        return self._run_transition(
            claim,
            ClaimAction.DISPUTE,
            actor,
            request_key=request_key,
            notes=cleaned,
            mutate=lambda c: setattr(c, "dispute_reason", cleaned),
        )

    def submit_feedback(self, claim_id: int, actor: Actor, rating: int, feedback: Optional[str] = None) -> WarrantyClaim:
        claim = self._get_claim(claim_id)
        if claim.customerID != actor.actor_id:
            raise ForbiddenError("Only the owning customer may leave feedback")
        if claim.status_enum != ClaimStatus.COMPLETED:
            raise InvalidStateError(
                "Feedback can only be left on completed claims",
                current_state=claim.status_enum,
                legal_actions=claim.legal_actions(),
            )
        if claim.feedback_at is not None:
            raise ConflictError("Feedback has already been submitted for this claim")
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise InvalidArgumentError.for_field("rating", "rating must be between 1 and 5", rating)

        now = self.clock.now()
        claim.customer_satisfaction_rating = rating
        claim.customer_feedback = optional_text("feedback", feedback, max_length=2000)
        claim.feedback_at = now
        append_timeline_event(
            claim,
            TimelineEventType.NOTE_ADDED,
            f"Customer rated the service {rating}/5",
            actor,
            now,
            metadata={"rating": rating},
        )
        self._commit()
        increment_counter("claim_feedback_total", labels={"rating": str(rating)})
        return claim

    # ------------------------------------------------------------------
    # Agent flows
    # ------------------------------------------------------------------
    def validate_claim(
        self,
        claim_id: int,
        actor: Actor,
        notes: Optional[str] = None,
        request_key: Optional[str] = None,
    ) -> WarrantyClaim:
        require_role(actor, ROLE_AGENT, action="validate claims")
        claim = self._get_claim(claim_id)

        def _mutate(c: WarrantyClaim) -> None:
            c.validated_at = c.status_updated_at
            c.validated_by = actor.actor_id
            c.priority = default_priority(c.severity, c.issue_category)

        return self._run_transition(
            claim,
            ClaimAction.VALIDATE,
            actor,
            request_key=request_key,
            notes=optional_text("notes", notes, max_length=2000),
            mutate=_mutate,
        )

    def reject_claim(
        self,
        claim_id: int,
        actor: Actor,
        reason: str,
        request_key: Optional[str] = None,
    ) -> WarrantyClaim:
        require_role(actor, ROLE_AGENT, action="reject claims")
        cleaned = require_text("reason", reason, min_length=5, max_length=2000)
        claim = self._get_claim(claim_id)
        return self._run_transition(
            claim,
            ClaimAction.REJECT,
            actor,
            request_key=request_key,
            notes=cleaned,
            mutate=lambda c: setattr(c, "rejection_reason", cleaned),
        )

    def request_info(self, claim_id: int, actor: Actor, message: str) -> WarrantyClaim:
        require_role(actor, ROLE_AGENT, action="request claim information")
        cleaned = require_text("message", message, min_length=5, max_length=2000)
        claim = self._get_claim(claim_id)
        if claim.status_enum != ClaimStatus.PENDING:
            raise InvalidTransitionError(
                "Information can only be requested while the claim is pending",
                current_state=claim.status_enum,
                legal_actions=claim.legal_actions(),
            )
        append_timeline_event(
            claim,
            TimelineEventType.NOTE_ADDED,
            cleaned,
            actor,
            self.clock.now(),
            metadata={"kind": "information_requested"},
        )
        self._commit()
        increment_counter("claim_info_requests_total")
        return claim

    def assign_technician(
        self,
        claim_id: int,
        actor: Actor,
        technician_id: int,
        estimated_completion_date: Optional[Any] = None,
        priority: Optional[Priority | str] = None,
        notes: Optional[str] = None,
        request_key: Optional[str] = None,
        ticket_details: Optional[Dict[str, Any]] = None,
    ) -> WarrantyClaim:
        """
        ``validated -> assigned``.

        Opens the repair ticket for the assignment; ``ticket_details`` may carry
        its description, estimate, required parts and approval flag.
        """
        require_role(actor, ROLE_AGENT, action="assign technicians")
        if isinstance(technician_id, bool) or not isinstance(technician_id, int) or technician_id < 1:
            raise InvalidArgumentError.for_field("technician_id", "technician_id must be a positive integer", technician_id)
        eta = self._parse_date("estimated_completion_date", estimated_completion_date)
        now = self.clock.now()
        if eta is not None and eta <= as_utc(now):
            raise InvalidArgumentError.for_field(
                "estimated_completion_date", "estimated_completion_date must be in the future", estimated_completion_date
            )
        priority_value = self._parse_enum(Priority, "priority", priority) if priority else None
        claim = self._get_claim(claim_id)

        def _mutate(c: WarrantyClaim) -> None:
            c.technicianID = technician_id
            c.assigned_at = c.status_updated_at
            if eta is not None:
                c.estimated_completion_date = eta
            if priority_value is not None:
                c.priority = priority_value
            self._tickets().open_for_assignment(c, actor, technician_id, eta, ticket_details or {})

        return self._run_transition(
            claim,
            ClaimAction.ASSIGN,
            actor,
            request_key=request_key,
            notes=optional_text("notes", notes, max_length=2000),
            mutate=_mutate,
            metadata={"technician_id": technician_id},
        )

    def update_status(
        self,
        claim_id: int,
        actor: Actor,
        action: ClaimAction | str,
        notes: Optional[str] = None,
        repair_notes: Optional[str] = None,
        request_key: Optional[str] = None,
        **params: Any,
    ) -> WarrantyClaim:
        """Apply any legal action by name; the action-specific parameters ride in ``params``."""
        require_role(actor, ROLE_AGENT, action="update claim status")
        action_value = self._parse_action(action)
        if request_key:
            claim = self._get_claim(claim_id)
            if self._already_processed(request_key, claim, action_value):
                return claim

        if action_value == ClaimAction.VALIDATE:
            return self.validate_claim(claim_id, actor, notes=notes, request_key=request_key)
        if action_value == ClaimAction.REJECT:
            return self.reject_claim(claim_id, actor, reason=params.get("reason") or notes or "", request_key=request_key)
        if action_value == ClaimAction.ASSIGN:
            return self.assign_technician(
                claim_id,
                actor,
                technician_id=params.get("technician_id"),
                estimated_completion_date=params.get("estimated_completion_date"),
                priority=params.get("priority"),
                notes=notes,
                request_key=request_key,
                ticket_details=params.get("ticket_details"),
            )
        if action_value == ClaimAction.START:
            return self.start_repair(claim_id, actor, request_key=request_key)
        if action_value in {ClaimAction.REPAIR, ClaimAction.REPLACE}:
            return self.record_resolution(
                claim_id,
                actor,
                action_value,
                repair_notes=repair_notes or notes,
                replacement_product_id=params.get("replacement_product_id"),
                replacement_cost=params.get("replacement_cost"),
                request_key=request_key,
            )
        if action_value == ClaimAction.SHIP:
            return self.ship(
                claim_id,
                actor,
                tracking_number=params.get("tracking_number"),
                shipping_provider=params.get("shipping_provider"),
                shipping_cost=params.get("shipping_cost"),
                estimated_delivery_date=params.get("estimated_delivery_date"),
                notes=notes,
                request_key=request_key,
            )
        if action_value == ClaimAction.DELIVER:
            return self.deliver(claim_id, actor, notes=notes, request_key=request_key)
        if action_value == ClaimAction.COMPLETE:
            return self.complete(
                claim_id,
                actor,
                resolution_type=params.get("resolution_type"),
                resolution_notes=params.get("resolution_notes") or notes,
                refund_amount=params.get("refund_amount"),
                request_key=request_key,
            )
        if action_value == ClaimAction.CANCEL:
            return self.cancel_claim(claim_id, actor, reason=notes, request_key=request_key)
        if action_value == ClaimAction.DISPUTE:
            return self.dispute_claim(claim_id, actor, reason=params.get("reason") or notes or "", request_key=request_key)
        return self.resolve_dispute(
            claim_id,
            actor,
            resolve_to=params.get("resolve_to"),
            resolution_type=params.get("resolution_type"),
            notes=notes,
            request_key=request_key,
        )

    def bulk_update_status(
        self,
        actor: Actor,
        claim_ids: List[int],
        action: ClaimAction | str,
        notes: Optional[str] = None,
        deadline: Optional[Deadline] = None,
        **params: Any,
    ) -> Dict[str, Any]:
        """
        Apply one action to many claims, each in its own transaction.

        Per-item failures are reported, not raised. An expired deadline stops
        the loop; items already committed stay committed.
        """
        require_role(actor, ROLE_AGENT, action="update claim status")
        if not isinstance(claim_ids, list) or not 1 <= len(claim_ids) <= self.config.CLAIM_BULK_MAX_ITEMS:
            raise InvalidArgumentError.for_field(
                "claim_ids",
                f"claim_ids must contain between 1 and {self.config.CLAIM_BULK_MAX_ITEMS} items",
                len(claim_ids) if isinstance(claim_ids, list) else claim_ids,
            )
        action_value = self._parse_action(action)
        deadline = deadline or Deadline(None)

        results: List[Dict[str, Any]] = []
        for claim_id in claim_ids:
            if deadline.expired():
                increment_counter("claim_bulk_deadline_exceeded_total")
                raise DeadlineExceededError(
                    "Bulk status update exceeded its deadline",
                    {"results": results, "processed": len(results), "requested": len(claim_ids)},
                )
            try:
                claim = self.update_status(claim_id, actor, action_value, notes=notes, **params)
            except WarrantyError as exc:
                self.db.rollback()
                results.append({"claim_id": claim_id, "success": False, "error": exc.to_dict()})
                continue
            results.append({"claim_id": claim_id, "success": True, "status": claim.status_enum.value})

        succeeded = sum(1 for result in results if result["success"])
        increment_counter("claim_bulk_updates_total", labels={"action": action_value.value})
        return {
            "action": action_value.value,
            "requested": len(claim_ids),
            "succeeded": succeeded,
            "failed": len(results) - succeeded,
            "results": results,
        }

    def start_repair(self, claim_id: int, actor: Actor, request_key: Optional[str] = None) -> WarrantyClaim:
        """``assigned -> in_repair``; starts the live repair ticket, opening one if needed."""
        claim = self._get_claim(claim_id)
        if not (actor.has_role(ROLE_AGENT) or (actor.has_role(ROLE_TECHNICIAN) and claim.technicianID == actor.actor_id)):
            raise ForbiddenError("Only agents or the assigned technician may start a repair")
        if request_key and self._already_processed(request_key, claim, ClaimAction.START):
            return claim
        claim.target_for(ClaimAction.START)
        self._tickets().start_for_claim(claim, actor)
        return self._run_transition(claim, ClaimAction.START, actor, request_key=request_key)

    def record_resolution(
        self,
        claim_id: int,
        actor: Actor,
        action: ClaimAction,
        repair_notes: Optional[str] = None,
        replacement_product_id: Optional[int] = None,
        replacement_cost: Optional[Any] = None,
        request_key: Optional[str] = None,
    ) -> WarrantyClaim:
        """``in_repair -> repaired | replaced``, gated on the live ticket's checks."""
        require_role(actor, ROLE_AGENT, action="record repair outcomes")
        claim = self._get_claim(claim_id)
        if request_key and self._already_processed(request_key, claim, action):
            return claim
        claim.target_for(action)

        ticket = claim.active_repair_ticket()
        if ticket is None or not ticket.is_cleared_for_resolution:
            raise PreconditionFailedError(
                "The repair ticket must be completed and approved first",
                reason="repair_ticket_not_cleared",
                details={
                    "ticket_number": ticket.ticket_number if ticket else None,
                    "ticket_status": getattr(ticket.status, "value", ticket.status) if ticket else None,
                    "quality_check_status": getattr(ticket.quality_check_status, "value", ticket.quality_check_status) if ticket else None,
                    "customer_approval_status": getattr(ticket.customer_approval_status, "value", ticket.customer_approval_status) if ticket else None,
                },
            )

        cost = parse_money("replacement_cost", replacement_cost)
        if action == ClaimAction.REPLACE:
            if replacement_product_id is None:
                raise InvalidArgumentError.for_field(
                    "replacement_product_id", "a replacement product is required", replacement_product_id
                )
            if self.products.lookup_product(replacement_product_id) is None:
                raise InvalidArgumentError.for_field(
                    "replacement_product_id", "unknown replacement product", replacement_product_id
                )
        cleaned_notes = optional_text("repair_notes", repair_notes, max_length=5000)

        def _mutate(c: WarrantyClaim) -> None:
            c.repair_cost = _money(ticket.total_cost)
            if action == ClaimAction.REPLACE:
                c.replacement_productID = replacement_product_id
                if cost is not None:
                    c.replacement_cost = cost
            if cleaned_notes:
                c.repair_notes = cleaned_notes
            c.recompute_total()

        return self._run_transition(
            claim,
            action,
            actor,
            request_key=request_key,
            notes=cleaned_notes,
            mutate=_mutate,
            metadata={"ticket_number": ticket.ticket_number},
        )

    def ship(
        self,
        claim_id: int,
        actor: Actor,
        tracking_number: Optional[str] = None,
        shipping_provider: Optional[str] = None,
        shipping_cost: Optional[Any] = None,
        estimated_delivery_date: Optional[Any] = None,
        notes: Optional[str] = None,
        request_key: Optional[str] = None,
    ) -> WarrantyClaim:
        require_role(actor, ROLE_AGENT, action="ship claims")
        claim = self._get_claim(claim_id)
        cost = parse_money("shipping_cost", shipping_cost)
        tracking = optional_text("tracking_number", tracking_number, max_length=120)
        provider = optional_text("shipping_provider", shipping_provider, max_length=100)
        eta = self._parse_date("estimated_delivery_date", estimated_delivery_date)

        def _mutate(c: WarrantyClaim) -> None:
            c.delivery_status = DeliveryStatus.IN_TRANSIT
            c.tracking_number = tracking
            c.shipping_provider = provider
            c.estimated_delivery_date = eta
            if cost is not None:
                c.shipping_cost = cost
            c.recompute_total()

        return self._run_transition(
            claim,
            ClaimAction.SHIP,
            actor,
            request_key=request_key,
            notes=optional_text("notes", notes, max_length=2000),
            mutate=_mutate,
            metadata={"status": ClaimStatus.SHIPPED.value, "tracking_number": tracking},
        )

    def deliver(self, claim_id: int, actor: Actor, notes: Optional[str] = None, request_key: Optional[str] = None) -> WarrantyClaim:
        require_role(actor, ROLE_AGENT, action="mark claims delivered")
        claim = self._get_claim(claim_id)

        def _mutate(c: WarrantyClaim) -> None:
            c.delivery_status = DeliveryStatus.DELIVERED
            c.actual_delivery_date = c.status_updated_at

        return self._run_transition(
            claim,
            ClaimAction.DELIVER,
            actor,
            request_key=request_key,
            notes=optional_text("notes", notes, max_length=2000),
            mutate=_mutate,
            metadata={"status": ClaimStatus.DELIVERED.value},
        )

    def update_delivery_status(self, claim_id: int, actor: Actor, delivery_status: DeliveryStatus | str) -> WarrantyClaim:
        """Carrier progress while shipped; ``delivered`` itself goes through :meth:`deliver`."""
        require_role(actor, ROLE_AGENT, action="update delivery tracking")
        value = self._parse_enum(DeliveryStatus, "delivery_status", delivery_status)
        claim = self._get_claim(claim_id)
        if value == DeliveryStatus.DELIVERED:
            return self.deliver(claim_id, actor)
        if claim.status_enum != ClaimStatus.SHIPPED:
            raise InvalidStateError(
                "Delivery tracking can only change while the claim is shipped",
                current_state=claim.status_enum,
                legal_actions=claim.legal_actions(),
            )
        previous = DeliveryStatus(claim.delivery_status)
        claim.delivery_status = value
        append_timeline_event(
            claim,
            TimelineEventType.STATUS_UPDATED,
            f"Delivery status changed to {value.value.replace('_', ' ')}",
            actor,
            self.clock.now(),
            metadata={"old_value": previous.value, "new_value": value.value},
        )
        self._commit()
        return claim

    def complete(
        self,
        claim_id: int,
        actor: Actor,
        resolution_type: Optional[ResolutionType | str],
        resolution_notes: Optional[str],
        refund_amount: Optional[Any] = None,
        request_key: Optional[str] = None,
    ) -> WarrantyClaim:
        require_role(actor, ROLE_AGENT, action="complete claims")
        claim = self._get_claim(claim_id)
        if request_key and self._already_processed(request_key, claim, ClaimAction.COMPLETE):
            return claim
        claim.target_for(ClaimAction.COMPLETE)
        resolution, notes, refund = self._resolution_inputs(resolution_type, resolution_notes, refund_amount)
        return self._run_transition(
            claim,
            ClaimAction.COMPLETE,
            actor,
            request_key=request_key,
            notes=notes,
            mutate=lambda c: self._write_resolution(c, actor, resolution, notes, refund),
            metadata={"resolution_type": resolution.value},
        )

    def resolve_dispute(
        self,
        claim_id: int,
        actor: Actor,
        resolve_to: Optional[ClaimStatus | str] = None,
        resolution_type: Optional[ResolutionType | str] = None,
        notes: Optional[str] = None,
        request_key: Optional[str] = None,
    ) -> WarrantyClaim:
        require_role(actor, ROLE_AGENT, action="resolve disputes")
        claim = self._get_claim(claim_id)
        target_value = self._parse_enum(ClaimStatus, "resolve_to", resolve_to) if resolve_to else None
        target = claim.target_for(ClaimAction.RESOLVE, target_value)
        cleaned_notes = optional_text("notes", notes, max_length=2000)

        mutate = None
        if target == ClaimStatus.COMPLETED and claim.resolution_type is None:
            resolution, resolution_notes, _ = self._resolution_inputs(
                resolution_type, cleaned_notes or "Resolved after dispute review", None
            )

            def mutate(c: WarrantyClaim) -> None:
                self._write_resolution(c, actor, resolution, resolution_notes, None)

        return self._run_transition(
            claim,
            ClaimAction.RESOLVE,
            actor,
            request_key=request_key,
            notes=cleaned_notes,
            mutate=mutate,
            resolve_to=target,
        )

    def add_note(
        self,
        claim_id: int,
        actor: Actor,
        note: str,
        visible_to_customer: bool = True,
    ) -> ClaimTimelineEvent:
        claim = self.get_claim(claim_id, actor)
        cleaned = require_text("note", note, min_length=1, max_length=5000)
        # Customers cannot write staff-only notes
        visible = bool(visible_to_customer) or not actor.is_staff
        if actor.is_staff and not visible:
            claim.internal_notes = "\n".join(filter(None, [claim.internal_notes, cleaned]))
        elif actor.is_staff:
            claim.admin_notes = "\n".join(filter(None, [claim.admin_notes, cleaned]))
        event = append_timeline_event(
            claim,
            TimelineEventType.NOTE_ADDED,
            cleaned,
            actor,
            self.clock.now(),
            visible_to_customer=visible,
        )
        self._commit()
        increment_counter("claim_notes_added_total", labels={"visible": str(visible).lower()})
        return event

    def update_costs(
        self,
        claim_id: int,
        actor: Actor,
        repair_cost: Optional[Any] = None,
        shipping_cost: Optional[Any] = None,
        replacement_cost: Optional[Any] = None,
    ) -> WarrantyClaim:
        require_role(actor, ROLE_AGENT, action="update claim costs")
        claim = self._get_claim(claim_id)
        if claim.is_terminal:
            raise InvalidStateError(
                "Costs cannot change on a closed claim",
                current_state=claim.status_enum,
                legal_actions=claim.legal_actions(),
            )
        changes: Dict[str, str] = {}
        for field, value in (
            ("repair_cost", repair_cost),
            ("shipping_cost", shipping_cost),
            ("replacement_cost", replacement_cost),
        ):
            amount = parse_money(field, value)
            if amount is not None:
                setattr(claim, field, amount)
                changes[field] = str(amount)
        if not changes:
            raise InvalidArgumentError("At least one cost field is required")
        claim.recompute_total()
        append_timeline_event(
            claim,
            TimelineEventType.STATUS_UPDATED,
            "Claim costs updated",
            actor,
            self.clock.now(),
            visible_to_customer=False,
            metadata={**changes, "total_cost": str(claim.total_cost)},
        )
        self._commit()
        return claim

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get_claim(self, claim_id: int, actor: Actor) -> WarrantyClaim:
        claim = self._get_claim(claim_id)
        if not actor.is_staff and claim.customerID != actor.actor_id:
            # Do not confirm existence to other customers
            raise NotFoundError("Claim not found", {"claim_id": claim_id})
        return claim

    def get_claim_by_number(self, claim_number: str, actor: Actor) -> WarrantyClaim:
        claim = self.db.query(WarrantyClaim).filter_by(claim_number=(claim_number or "").strip().upper()).first()
        if claim is None:
            raise NotFoundError("Claim not found", {"claim_number": claim_number})
        return self.get_claim(claim.claimID, actor)

    def get_timeline(self, claim_id: int, actor: Actor) -> List[ClaimTimelineEvent]:
        claim = self.get_claim(claim_id, actor)
        query = self.db.query(ClaimTimelineEvent).filter(ClaimTimelineEvent.claimID == claim.claimID)
        if not actor.is_staff:
            query = query.filter(ClaimTimelineEvent.visible_to_customer.is_(True))
        return query.order_by(ClaimTimelineEvent.sequence).all()

    def list_claims(
        self,
        actor: Actor,
        *,
        status: Optional[str] = None,
        priority: Optional[str] = None,
        severity: Optional[str] = None,
        issue_category: Optional[str] = None,
        technician_id: Optional[int] = None,
        customer_id: Optional[int] = None,
        storefront_id: Optional[int] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        overdue_only: bool = False,
        page: int = 1,
        page_size: int = 20,
    ) -> Tuple[List[WarrantyClaim], int]:
        if not isinstance(page, int) or page < 1:
            raise InvalidArgumentError.for_field("page", "page must be a positive integer", page)
        if not isinstance(page_size, int) or not 1 <= page_size <= self.config.CLAIM_LIST_MAX_PAGE_SIZE:
            raise InvalidArgumentError.for_field(
                "page_size", f"page_size must be between 1 and {self.config.CLAIM_LIST_MAX_PAGE_SIZE}", page_size
            )

        query = self.db.query(WarrantyClaim)
        if not actor.is_staff:
            query = query.filter(WarrantyClaim.customerID == actor.actor_id)
        elif customer_id is not None:
            query = query.filter(WarrantyClaim.customerID == customer_id)
        if status:
            query = query.filter(WarrantyClaim.status == self._parse_enum(ClaimStatus, "status", status))
        if priority:
            query = query.filter(WarrantyClaim.priority == self._parse_enum(Priority, "priority", priority))
        if severity:
            query = query.filter(WarrantyClaim.severity == self._parse_enum(IssueSeverity, "severity", severity))
        if issue_category:
            query = query.filter(
                WarrantyClaim.issue_category == self._parse_enum(IssueCategory, "issue_category", issue_category)
            )
        if technician_id is not None:
            query = query.filter(WarrantyClaim.technicianID == technician_id)
        if storefront_id is not None:
            query = query.filter(WarrantyClaim.storefrontID == storefront_id)
        if date_from is not None:
            query = query.filter(WarrantyClaim.claim_date >= date_from)
        if date_to is not None:
            query = query.filter(WarrantyClaim.claim_date <= date_to)
        if overdue_only:
            query = query.filter(
                WarrantyClaim.estimated_completion_date.isnot(None),
                WarrantyClaim.estimated_completion_date < self.clock.now(),
                WarrantyClaim.status.in_(list(WarrantyClaim.OPEN_STATUSES)),
            )

        total = query.count()
        items = (
            query.order_by(WarrantyClaim.claim_date.desc(), WarrantyClaim.claimID.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
            .all()
        )
        return items, total

    def list_overdue(self, actor: Actor, page: int = 1, page_size: int = 20) -> Tuple[List[WarrantyClaim], int]:
        require_role(actor, ROLE_AGENT, action="view overdue claims")
        return self.list_claims(actor, overdue_only=True, page=page, page_size=page_size)

    def statistics(
        self,
        actor: Actor,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        require_role(actor, ROLE_AGENT, action="view claim statistics")
        stats = compute_claim_statistics(self.db, date_from, date_to, now=self.clock.now())
        stats["sla_hours"] = self.config.CLAIM_PROCESSING_SLA_HOURS
        return stats

    # ------------------------------------------------------------------
    # Transition core (shared with the repair ticket engine)
    # ------------------------------------------------------------------
    def record_transition(
        self,
        claim: WarrantyClaim,
        action: ClaimAction,
        actor: Actor,
        *,
        notes: Optional[str] = None,
        mutate: Optional[Callable[[WarrantyClaim], None]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        request_key: Optional[str] = None,
        resolve_to: Optional[ClaimStatus] = None,
        visible_to_customer: bool = True,
    ) -> ClaimStatus:
        """
        Apply ``action`` inside the caller's transaction.

        Writes the status fields, the timeline event and the processed request
        key; commit and notification are left to the caller.
        """
        now = self.clock.now()
        old_status = claim.status_enum
        new_status = claim.apply_transition(action, actor.actor_id, now, resolve_to)
        if mutate is not None:
            mutate(claim)

        event_type, description = _TRANSITION_EVENTS[action]
        event_metadata = {"old_status": old_status.value, "new_status": new_status.value}
        if metadata:
            event_metadata.update(metadata)
        if notes:
            event_metadata["notes"] = notes
        append_timeline_event(
            claim,
            event_type,
            description,
            actor,
            now,
            visible_to_customer=visible_to_customer,
            metadata=event_metadata,
        )
        if request_key:
            self.db.add(
                ProcessedRequest(
                    request_key=request_key,
                    claimID=claim.claimID,
                    action=action.value,
                    resulting_status=new_status.value,
                    processed_at=now,
                )
            )

        increment_counter(
            "claim_transitions_total",
            labels={"from_status": old_status.value, "to_status": new_status.value},
        )
        claim_id, customer_id, claim_number = claim.claimID, claim.customerID, claim.claim_number
        self.after_commit(
            lambda: publish_claim_status_change(
                self.notification_sink,
                claim_id=claim_id,
                customer_id=customer_id,
                old_status=old_status.value,
                new_status=new_status.value,
                claim_number=claim_number,
            )
        )
        return new_status

    def after_commit(self, callback: Callable[[], None]) -> None:
        """Queue a best-effort side effect for after the next successful commit."""
        self._after_commit.append(callback)

    def commit(self) -> None:
        """Commit the unit of work, then run whatever it queued."""
        self._commit()

    def _run_transition(self, claim: WarrantyClaim, action: ClaimAction, actor: Actor, **kwargs: Any) -> WarrantyClaim:
        request_key = kwargs.get("request_key")
        if request_key and self._already_processed(request_key, claim, action):
            return claim
        with log_context(claim_id=claim.claimID):
            try:
                self.record_transition(claim, action, actor, **kwargs)
            except WarrantyError:
                self.db.rollback()
                self._after_commit.clear()
                raise
            self._commit()
        self.logger.info(
            "Claim %s %s -> %s",
            claim.claim_number,
            action.value,
            claim.status_enum.value,
            extra={"claim_id": claim.claimID},
        )
        return claim

    def _commit(self) -> None:
        try:
            self.db.commit()
        except StaleDataError:
            self.db.rollback()
            self._after_commit.clear()
            increment_counter("claim_conflicts_total")
            raise ConflictError("Claim was modified concurrently; reload and retry") from None
        except IntegrityError as exc:
            self.db.rollback()
            self._after_commit.clear()
            increment_counter("claim_conflicts_total")
            raise ConflictError("Claim update conflicts with a concurrent write", {"error": str(exc.orig)}) from exc
        pending, self._after_commit = self._after_commit, []
        for callback in pending:
            callback()

    def _already_processed(self, request_key: str, claim: WarrantyClaim, action: ClaimAction) -> bool:
        processed = self.db.query(ProcessedRequest).filter_by(request_key=request_key).first()
        if processed is None:
            return False
        if processed.claimID != claim.claimID or processed.action != action.value:
            raise ConflictError(
                "Request key was already used for a different operation",
                {"request_key": request_key},
            )
        increment_counter("claim_transition_replays_total")
        return True

    def _write_resolution(
        self,
        claim: WarrantyClaim,
        actor: Actor,
        resolution: ResolutionType,
        notes: str,
        refund: Optional[Decimal],
    ) -> None:
        if claim.resolution_type is not None or claim.completed_at is not None:
            raise InvalidStateError("Claim resolution has already been recorded", current_state=claim.status_enum)
        now = claim.status_updated_at
        claim.resolution_type = resolution
        claim.resolution_notes = notes
        claim.completed_at = now
        claim.actual_completion_date = now
        if refund is not None:
            claim.refund_amount = refund
        claim_date = as_utc(claim.claim_date)
        claim.processing_time_hours = round((as_utc(now) - claim_date).total_seconds() / 3600.0, 2)
        if resolution == ResolutionType.REPLACE:
            self.store.update_status(
                claim.barcodeID,
                BarcodeStatus.CLAIMED,
                actor,
                reason=f"Replaced under claim {claim.claim_number}",
                commit=False,
            )

    def _resolution_inputs(
        self,
        resolution_type: Optional[Any],
        resolution_notes: Optional[str],
        refund_amount: Optional[Any],
    ) -> Tuple[ResolutionType, str, Optional[Decimal]]:
        if not resolution_type:
            raise InvalidArgumentError.for_field("resolution_type", "resolution_type is required", resolution_type)
        resolution = self._parse_enum(ResolutionType, "resolution_type", resolution_type)
        notes = require_text("resolution_notes", resolution_notes, min_length=3, max_length=5000)
        refund = parse_money("refund_amount", refund_amount)
        if refund is not None and resolution != ResolutionType.REFUND:
            raise InvalidArgumentError.for_field("refund_amount", "refund_amount only applies to refunds", refund_amount)
        return resolution, notes, refund

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _tickets(self):
        from warranty.services.repair_ticket_service import RepairTicketService

        return RepairTicketService(
            self.db,
            config=self.config,
            clock=self.clock,
            notification_sink=self.notification_sink,
            claim_service=self,
        )

    def _get_claim(self, claim_id: int) -> WarrantyClaim:
        claim = self.db.query(WarrantyClaim).filter_by(claimID=claim_id).first()
        if claim is None:
            raise NotFoundError("Claim not found", {"claim_id": claim_id})
        return claim

    def _contact_snapshot(self, customer_id: int, contact: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        contact = contact or {}
        known = self.customers.get_contact(customer_id)
        name = optional_text("contact.name", contact.get("name"), max_length=255) or (known.name if known else None)
        email = optional_text("contact.email", contact.get("email"), max_length=255) or (known.email if known else None)
        phone = optional_text("contact.phone", contact.get("phone"), max_length=50) or (known.phone if known else None)
        address = optional_text("contact.pickup_address", contact.get("pickup_address"), max_length=1000) or (
            known.address if known else None
        )
        if email and "@" not in email:
            raise InvalidArgumentError.for_field("contact.email", "email address is malformed", email)
        return {
            "customer_name": name,
            "customer_email": email,
            "customer_phone": phone,
            "pickup_address": address,
        }

    @staticmethod
    def _clean_tags(tags: Optional[Iterable[str]]) -> List[str]:
        if not tags:
            return []
        if isinstance(tags, str):
            tags = [tags]
        cleaned: List[str] = []
        for tag in tags:
            value = optional_text("tags", str(tag), max_length=50)
            if value and value not in cleaned:
                cleaned.append(value)
        return cleaned[:20]

    @staticmethod
    def _parse_date(field: str, value: Any) -> Optional[datetime]:
        try:
            return parse_iso_datetime(value)
        except (TypeError, ValueError):
            raise InvalidArgumentError.for_field(field, f"{field} must be an ISO-8601 date", value) from None

    @staticmethod
    def _parse_enum(enum_cls, field: str, value: Any):
        try:
            return enum_cls(getattr(value, "value", value) if not isinstance(value, str) else value.strip().lower())
        except ValueError:
            allowed = ", ".join(member.value for member in enum_cls)
            raise InvalidArgumentError.for_field(field, f"{field} must be one of: {allowed}", value) from None

    def _parse_action(self, action: Any) -> ClaimAction:
        return self._parse_enum(ClaimAction, "action", action)

    def _notify(self, recipient: int, template_id: str, payload: Dict[str, Any]) -> None:
        dispatch_notification(self.notification_sink, recipient, template_id, payload)
