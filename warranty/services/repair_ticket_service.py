from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from warranty.config import Config
from warranty.errors import (
    ConflictError,
    ForbiddenError,
    InvalidArgumentError,
    InvalidStateError,
    NotFoundError,
)
from warranty.models import (
    ClaimAction,
    ClaimStatus,
    CustomerApprovalStatus,
    Priority,
    QualityCheckStatus,
    RepairTicket,
    TicketStatus,
    TimelineEventType,
    WarrantyClaim,
    _money,
)
from warranty.observability import increment_counter, record_event
from warranty.services.claim_service import ClaimService, append_timeline_event, parse_money
from warranty.services.collaborators import (
    ROLE_AGENT,
    ROLE_TECHNICIAN,
    Actor,
    Clock,
    NotificationSink,
    SystemClock,
    dispatch_notification,
    require_role,
)
from warranty.services.notification_service import build_notification_sink
from warranty.services.numbering import TICKET_PREFIX, next_number
from warranty.services.sanitization import optional_text, require_text
from warranty.time_utils import as_utc, parse_iso_datetime

TEST_RESULTS = ("passed", "failed", "warning")
MIN_ESTIMATED_HOURS = Decimal("0.1")
MAX_ESTIMATED_HOURS = Decimal("1000")
_TICKET_DETAIL_FIELDS = frozenset(
    {
        "description",
        "estimated_hours",
        "priority",
        "required_parts",
        "special_instructions",
        "customer_approval_required",
    }
)


class RepairTicketService:
    """
    Technician-side workflow behind a claim: diagnosis, parts, labour, QA.

    Ticket changes that move the parent claim go through the claim service so
    the claim timeline and version checks stay in one place.
    """

    def __init__(
        self,
        db_session: Session,
        config: type[Config] = Config,
        clock: Optional[Clock] = None,
        notification_sink: Optional[NotificationSink] = None,
        claim_service: Optional[ClaimService] = None,
    ) -> None:
        self.db = db_session
        self.config = config
        self.clock = clock or SystemClock()
        self.logger = logging.getLogger(__name__)
        self.notification_sink = notification_sink or build_notification_sink(config)
        self.claims = claim_service or ClaimService(
            db_session,
            config=config,
            clock=self.clock,
            notification_sink=self.notification_sink,
        )

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------
    def open_for_assignment(
        self,
        claim: WarrantyClaim,
        actor: Actor,
        technician_id: int,
        estimated_completion_date=None,
        details: Optional[Dict[str, Any]] = None,
    ) -> RepairTicket:
        """Open the ticket for a fresh assignment inside the caller's transaction."""
        details = dict(details or {})
        unknown = sorted(set(details) - _TICKET_DETAIL_FIELDS)
        if unknown:
            raise InvalidArgumentError.for_field("ticket_details", "unsupported ticket fields", unknown)
        details.setdefault("description", claim.issue_description)
        details.setdefault("priority", claim.priority)
        ticket = self._build_ticket(claim, actor, technician_id, estimated_completion_date, **details)
        increment_counter("repair_tickets_created_total", labels={"source": "assignment"})
        return ticket

    def create_ticket(
        self,
        claim_id: int,
        actor: Actor,
        description: str,
        estimated_hours: Optional[Any] = None,
        priority: Optional[Priority | str] = None,
        required_parts: Optional[List[Dict[str, Any]]] = None,
        special_instructions: Optional[str] = None,
        customer_approval_required: bool = False,
        technician_id: Optional[int] = None,
        estimated_completion_date: Optional[Any] = None,
    ) -> RepairTicket:
        """Open a replacement ticket for an assigned claim whose previous ticket was cancelled."""
        require_role(actor, ROLE_AGENT, action="create repair tickets")
        claim = self._get_claim(claim_id)
        if claim.status_enum not in {ClaimStatus.ASSIGNED, ClaimStatus.IN_REPAIR}:
            raise InvalidStateError(
                "Repair tickets can only be opened for assigned claims",
                current_state=claim.status_enum,
                legal_actions=claim.legal_actions(),
            )
        if claim.active_repair_ticket() is not None:
            raise ConflictError(
                "Claim already has an active repair ticket",
                {"ticket_number": claim.active_repair_ticket().ticket_number},
            )
        ticket = self._build_ticket(
            claim,
            actor,
            technician_id or claim.technicianID,
            self._parse_date("estimated_completion_date", estimated_completion_date),
            description=description,
            estimated_hours=estimated_hours,
            priority=priority or claim.priority,
            required_parts=required_parts,
            special_instructions=special_instructions,
            customer_approval_required=customer_approval_required,
        )
        self.claims.commit()
        increment_counter("repair_tickets_created_total", labels={"source": "manual"})
        self.logger.info("Repair ticket %s opened", ticket.ticket_number, extra={"ticket_id": ticket.ticketID})
        return ticket

    def _build_ticket(
        self,
        claim: WarrantyClaim,
        actor: Actor,
        technician_id: Optional[int],
        estimated_completion_date,
        description: Optional[str] = None,
        estimated_hours: Optional[Any] = None,
        priority: Optional[Any] = None,
        required_parts: Optional[List[Dict[str, Any]]] = None,
        special_instructions: Optional[str] = None,
        customer_approval_required: bool = False,
    ) -> RepairTicket:
        now = self.clock.now()
        ticket = RepairTicket(
            ticket_number=next_number(self.db, TICKET_PREFIX, as_utc(now).year),
            status=TicketStatus.ASSIGNED if technician_id else TicketStatus.PENDING,
            priority=self._parse_priority(priority),
            technicianID=technician_id,
            assigned_at=now if technician_id else None,
            estimated_hours=self._parse_hours("estimated_hours", estimated_hours, required=False),
            estimated_completion_date=estimated_completion_date,
            description=require_text("description", description, min_length=10, max_length=5000),
            special_instructions=optional_text("special_instructions", special_instructions, max_length=2000),
            required_parts=self._parse_required_parts(required_parts),
            used_parts=[],
            test_results=[],
            labor_cost=Decimal("0.00"),
            parts_cost=Decimal("0.00"),
            quality_check_status=QualityCheckStatus.PENDING,
            customer_approval_required=bool(customer_approval_required),
            customer_approval_status=CustomerApprovalStatus.NOT_REQUIRED,
            reopen_count=0,
            created_by=actor.actor_id,
            created_at=now,
        )
        claim.repair_tickets.append(ticket)
        if technician_id:
            self._queue_assignment_notice(ticket, claim, technician_id)
        return ticket

    # ------------------------------------------------------------------
    # Assignment & progress
    # ------------------------------------------------------------------
    def assign_ticket(
        self,
        ticket_id: int,
        actor: Actor,
        technician_id: int,
        estimated_completion_date: Optional[Any] = None,
    ) -> RepairTicket:
        require_role(actor, ROLE_AGENT, action="assign repair tickets")
        if isinstance(technician_id, bool) or not isinstance(technician_id, int) or technician_id < 1:
            raise InvalidArgumentError.for_field("technician_id", "technician_id must be a positive integer", technician_id)
        eta = self._parse_date("estimated_completion_date", estimated_completion_date)
        if eta is not None and eta <= as_utc(self.clock.now()):
            raise InvalidArgumentError.for_field(
                "estimated_completion_date", "estimated_completion_date must be in the future", estimated_completion_date
            )
        ticket = self._get_ticket(ticket_id)
        status = TicketStatus(ticket.status)
        if status in {TicketStatus.COMPLETED, TicketStatus.CANCELLED}:
            raise InvalidStateError(
                f"Cannot reassign a {status.value} repair ticket",
                current_state=status,
                legal_actions=[],
            )

        now = self.clock.now()
        previous = ticket.technicianID
        if status == TicketStatus.PENDING:
            ticket.transition_to(TicketStatus.ASSIGNED)
        ticket.technicianID = technician_id
        ticket.assigned_at = now
        if eta is not None:
            ticket.estimated_completion_date = eta

        claim = ticket.claim
        claim.technicianID = technician_id
        if eta is not None:
            claim.estimated_completion_date = eta
        if previous and previous != technician_id:
            append_timeline_event(
                claim,
                TimelineEventType.STATUS_UPDATED,
                "Repair ticket reassigned",
                actor,
                now,
                visible_to_customer=False,
                metadata={"ticket_number": ticket.ticket_number, "from_technician": previous, "to_technician": technician_id},
            )
        self._queue_assignment_notice(ticket, claim, technician_id)
        self.claims.commit()
        increment_counter("repair_ticket_assignments_total")
        return ticket

    def start_ticket(self, ticket_id: int, actor: Actor) -> RepairTicket:
        """``assigned -> in_progress``; an assigned claim moves to ``in_repair`` with it."""
        ticket = self._get_ticket(ticket_id)
        self._require_worker(ticket, actor)
        claim = ticket.claim
        if claim.status_enum == ClaimStatus.ASSIGNED:
            claim.target_for(ClaimAction.START)
        elif claim.status_enum != ClaimStatus.IN_REPAIR:
            raise InvalidStateError(
                "The claim is not ready for repair",
                current_state=claim.status_enum,
                legal_actions=claim.legal_actions(),
            )
        self._start(ticket, actor)
        if claim.status_enum == ClaimStatus.ASSIGNED:
            self.claims.record_transition(claim, ClaimAction.START, actor)
        self.claims.commit()
        return ticket

    def start_for_claim(self, claim: WarrantyClaim, actor: Actor) -> RepairTicket:
        """Start the claim's live ticket, opening one first if there is none."""
        ticket = claim.active_repair_ticket()
        if ticket is None:
            ticket = self._build_ticket(
                claim,
                actor,
                claim.technicianID,
                claim.estimated_completion_date,
                description=claim.issue_description,
                priority=claim.priority,
            )
        if TicketStatus(ticket.status) != TicketStatus.IN_PROGRESS:
            self._start(ticket, actor)
        return ticket

    def _start(self, ticket: RepairTicket, actor: Actor) -> None:
        if TicketStatus(ticket.status) == TicketStatus.PENDING:
            if not ticket.technicianID:
                raise InvalidStateError(
                    "Assign a technician before starting the repair",
                    current_state=TicketStatus.PENDING,
                    legal_actions=["assign", "cancel"],
                )
            ticket.transition_to(TicketStatus.ASSIGNED)
        ticket.transition_to(TicketStatus.IN_PROGRESS)
        ticket.started_at = self.clock.now()
        increment_counter("repair_tickets_started_total")

    def complete_ticket(
        self,
        ticket_id: int,
        actor: Actor,
        actual_hours: Any,
        labor_cost: Any,
        parts_cost: Optional[Any] = None,
        used_parts: Optional[List[Dict[str, Any]]] = None,
        test_results: Optional[List[Dict[str, Any]]] = None,
        repair_notes: Optional[str] = None,
    ) -> RepairTicket:
        """
        Record the work done and close the ticket for quality check.

        The claim does not move here; it waits for QA (and the customer, when
        the cost needs their approval).
        """
        ticket = self._get_ticket(ticket_id)
        self._require_worker(ticket, actor)
        status = TicketStatus(ticket.status)
        if status != TicketStatus.IN_PROGRESS:
            raise InvalidStateError(
                "Only repair tickets in progress can be completed",
                current_state=status,
                legal_actions=self._legal_ticket_actions(ticket),
            )
        if ticket.total_cost is not None:
            raise InvalidStateError("Repair ticket costs were already recorded", current_state=status)

        hours = self._parse_hours("actual_hours", actual_hours, required=True)
        labor = parse_money("labor_cost", labor_cost, allow_none=False)
        parts_lines = self._parse_used_parts(used_parts)
        parts = parse_money("parts_cost", parts_cost)
        if parts is None:
            parts = _money(sum((Decimal(line["total_cost"]) for line in parts_lines), Decimal("0")))
        tests = self._parse_test_results(test_results)
        notes = optional_text("repair_notes", repair_notes, max_length=5000)

        now = self.clock.now()
        ticket.transition_to(TicketStatus.COMPLETED)
        ticket.actual_hours = hours
        ticket.labor_cost = labor
        ticket.parts_cost = parts
        ticket.total_cost = _money(labor + parts)
        ticket.used_parts = parts_lines
        ticket.test_results = tests
        if notes:
            ticket.repair_notes = notes
        ticket.actual_completion_date = now
        ticket.quality_check_status = QualityCheckStatus.PENDING

        threshold = _money(self.config.CUSTOMER_APPROVAL_COST_THRESHOLD)
        claim = ticket.claim
        if ticket.customer_approval_required or ticket.total_cost > threshold:
            ticket.customer_approval_required = True
            ticket.customer_approval_status = CustomerApprovalStatus.PENDING
            payload = {
                "claim_id": claim.claimID,
                "claim_number": claim.claim_number,
                "ticket_number": ticket.ticket_number,
                "total_cost": str(ticket.total_cost),
            }
            customer_id = claim.customerID
            self.claims.after_commit(
                lambda: dispatch_notification(
                    self.notification_sink, customer_id, "customer_approval_requested", payload
                )
            )
        else:
            ticket.customer_approval_status = CustomerApprovalStatus.NOT_REQUIRED

        self.claims.commit()
        increment_counter("repair_tickets_completed_total")
        record_event(
            "repair_ticket_completed",
            {"ticket_id": ticket.ticketID, "claim_id": claim.claimID, "total_cost": str(ticket.total_cost)},
        )
        self.logger.info(
            "Repair ticket %s completed at %s",
            ticket.ticket_number,
            ticket.total_cost,
            extra={"ticket_id": ticket.ticketID, "claim_id": claim.claimID},
        )
        return ticket

    def quality_check(self, ticket_id: int, actor: Actor, approved: bool, notes: Optional[str] = None) -> RepairTicket:
        require_role(actor, ROLE_AGENT, action="perform quality checks")
        ticket = self._get_ticket(ticket_id)
        status = TicketStatus(ticket.status)
        if status != TicketStatus.COMPLETED or QualityCheckStatus(ticket.quality_check_status) != QualityCheckStatus.PENDING:
            raise InvalidStateError(
                "Quality check needs a completed ticket awaiting review",
                current_state=status,
                legal_actions=self._legal_ticket_actions(ticket),
            )

        now = self.clock.now()
        ticket.quality_checked_by = actor.actor_id
        ticket.quality_check_date = now
        if approved:
            ticket.quality_check_status = QualityCheckStatus.APPROVED
            ticket.quality_check_notes = optional_text("notes", notes, max_length=2000)
            append_timeline_event(
                ticket.claim,
                TimelineEventType.QUALITY_APPROVED,
                "Quality check passed",
                actor,
                now,
                visible_to_customer=False,
                metadata={"ticket_number": ticket.ticket_number, "notes": ticket.quality_check_notes},
            )
        else:
            cleaned = require_text("notes", notes, min_length=5, max_length=2000)
            ticket.quality_check_status = QualityCheckStatus.REJECTED
            ticket.quality_check_notes = cleaned
            # Reopen the same ticket; costs are written again on the next completion
            ticket.transition_to(TicketStatus.IN_PROGRESS)
            ticket.reopen_count = (ticket.reopen_count or 0) + 1
            ticket.total_cost = None
            ticket.actual_completion_date = None
            if ticket.customer_approval_status != CustomerApprovalStatus.NOT_REQUIRED:
                ticket.customer_approval_status = CustomerApprovalStatus.PENDING
            append_timeline_event(
                ticket.claim,
                TimelineEventType.STATUS_UPDATED,
                "Quality check failed; repair reopened",
                actor,
                now,
                visible_to_customer=False,
                metadata={"ticket_number": ticket.ticket_number, "notes": cleaned, "reopen_count": ticket.reopen_count},
            )

        self.claims.commit()
        increment_counter(
            "repair_ticket_quality_checks_total",
            labels={"result": "approved" if approved else "rejected"},
        )
        return ticket

    def record_customer_approval(
        self,
        ticket_id: int,
        actor: Actor,
        approved: bool,
        notes: Optional[str] = None,
    ) -> RepairTicket:
        ticket = self._get_ticket(ticket_id)
        claim = ticket.claim
        if claim.customerID != actor.actor_id and not actor.has_role(ROLE_AGENT):
            raise ForbiddenError("Only the owning customer or an agent may answer this approval")
        if not ticket.customer_approval_required or CustomerApprovalStatus(ticket.customer_approval_status) != CustomerApprovalStatus.PENDING:
            raise InvalidStateError(
                "Repair ticket is not awaiting customer approval",
                current_state=ticket.customer_approval_status,
                legal_actions=self._legal_ticket_actions(ticket),
            )

        now = self.clock.now()
        cleaned = optional_text("notes", notes, max_length=2000)
        ticket.customer_approval_notes = cleaned
        if approved:
            ticket.customer_approval_status = CustomerApprovalStatus.APPROVED
            ticket.customer_approved_at = now
            append_timeline_event(
                claim,
                TimelineEventType.CUSTOMER_APPROVED,
                "Customer approved the repair cost",
                actor,
                now,
                metadata={"ticket_number": ticket.ticket_number, "total_cost": str(ticket.total_cost)},
            )
        else:
            ticket.customer_approval_status = CustomerApprovalStatus.REJECTED
            append_timeline_event(
                claim,
                TimelineEventType.STATUS_UPDATED,
                "Customer declined the repair cost",
                actor,
                now,
                metadata={"ticket_number": ticket.ticket_number, "notes": cleaned},
            )
        self.claims.commit()
        increment_counter(
            "repair_ticket_customer_approvals_total",
            labels={"result": "approved" if approved else "rejected"},
        )
        return ticket

    def cancel_ticket(self, ticket_id: int, actor: Actor, reason: str) -> RepairTicket:
        require_role(actor, ROLE_AGENT, action="cancel repair tickets")
        cleaned = require_text("reason", reason, min_length=5, max_length=500)
        ticket = self._get_ticket(ticket_id)
        ticket.transition_to(TicketStatus.CANCELLED)
        now = self.clock.now()
        ticket.cancelled_at = now
        ticket.cancellation_reason = cleaned
        append_timeline_event(
            ticket.claim,
            TimelineEventType.STATUS_UPDATED,
            "Repair ticket cancelled",
            actor,
            now,
            visible_to_customer=False,
            metadata={"ticket_number": ticket.ticket_number, "reason": cleaned},
        )
        self.claims.commit()
        increment_counter("repair_tickets_cancelled_total")
        return ticket

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get_ticket(self, ticket_id: int, actor: Actor) -> RepairTicket:
        require_role(actor, ROLE_AGENT, ROLE_TECHNICIAN, action="view repair tickets")
        return self._get_ticket(ticket_id)

    def get_ticket_by_number(self, ticket_number: str, actor: Actor) -> RepairTicket:
        require_role(actor, ROLE_AGENT, ROLE_TECHNICIAN, action="view repair tickets")
        ticket = self.db.query(RepairTicket).filter_by(ticket_number=(ticket_number or "").strip().upper()).first()
        if ticket is None:
            raise NotFoundError("Repair ticket not found", {"ticket_number": ticket_number})
        return ticket

    def list_tickets(
        self,
        actor: Actor,
        status: Optional[str] = None,
        technician_id: Optional[int] = None,
        claim_id: Optional[int] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Tuple[List[RepairTicket], int]:
        require_role(actor, ROLE_AGENT, ROLE_TECHNICIAN, action="list repair tickets")
        if not isinstance(page, int) or page < 1:
            raise InvalidArgumentError.for_field("page", "page must be a positive integer", page)
        if not isinstance(page_size, int) or not 1 <= page_size <= 100:
            raise InvalidArgumentError.for_field("page_size", "page_size must be between 1 and 100", page_size)
        if not actor.has_role(ROLE_AGENT):
            technician_id = actor.actor_id

        query = self.db.query(RepairTicket)
        if status:
            try:
                query = query.filter(RepairTicket.status == TicketStatus(status.strip().lower()))
            except ValueError:
                raise InvalidArgumentError.for_field("status", "unknown ticket status", status) from None
        if technician_id is not None:
            query = query.filter(RepairTicket.technicianID == technician_id)
        if claim_id is not None:
            query = query.filter(RepairTicket.claimID == claim_id)
        total = query.count()
        items = (
            query.order_by(RepairTicket.created_at.desc(), RepairTicket.ticketID.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
            .all()
        )
        return items, total

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _queue_assignment_notice(self, ticket: RepairTicket, claim: WarrantyClaim, technician_id: int) -> None:
        payload = {"ticket_number": ticket.ticket_number, "claim_number": claim.claim_number}

        def _send() -> None:
            payload["ticket_id"] = ticket.ticketID
            dispatch_notification(self.notification_sink, technician_id, "ticket_assigned", payload)

        self.claims.after_commit(_send)

    def _require_worker(self, ticket: RepairTicket, actor: Actor) -> None:
        if actor.has_role(ROLE_AGENT):
            return
        if actor.has_role(ROLE_TECHNICIAN) and ticket.technicianID == actor.actor_id:
            return
        raise ForbiddenError("Only the assigned technician or an agent may work this ticket")

    @staticmethod
    def _legal_ticket_actions(ticket: RepairTicket) -> List[str]:
        status = TicketStatus(ticket.status)
        actions = {
            TicketStatus.PENDING: ["assign", "cancel"],
            TicketStatus.ASSIGNED: ["assign", "start", "cancel"],
            TicketStatus.IN_PROGRESS: ["assign", "complete", "cancel"],
            TicketStatus.COMPLETED: [],
            TicketStatus.CANCELLED: [],
        }[status]
        if status == TicketStatus.COMPLETED:
            if QualityCheckStatus(ticket.quality_check_status) == QualityCheckStatus.PENDING:
                actions.append("quality_check")
            if CustomerApprovalStatus(ticket.customer_approval_status) == CustomerApprovalStatus.PENDING:
                actions.append("customer_approval")
        return actions

    def _get_ticket(self, ticket_id: int) -> RepairTicket:
        ticket = self.db.query(RepairTicket).filter_by(ticketID=ticket_id).first()
        if ticket is None:
            raise NotFoundError("Repair ticket not found", {"ticket_id": ticket_id})
        return ticket

    def _get_claim(self, claim_id: int) -> WarrantyClaim:
        claim = self.db.query(WarrantyClaim).filter_by(claimID=claim_id).first()
        if claim is None:
            raise NotFoundError("Claim not found", {"claim_id": claim_id})
        return claim

    @staticmethod
    def _parse_priority(value: Any) -> Priority:
        if value is None:
            return Priority.NORMAL
        try:
            return Priority(value.strip().lower() if isinstance(value, str) else value)
        except ValueError:
            raise InvalidArgumentError.for_field("priority", "unknown priority", value) from None

    @staticmethod
    def _parse_date(field: str, value: Any):
        try:
            return parse_iso_datetime(value)
        except (TypeError, ValueError):
            raise InvalidArgumentError.for_field(field, f"{field} must be an ISO-8601 date", value) from None

    @staticmethod
    def _parse_hours(field: str, value: Any, *, required: bool) -> Optional[Decimal]:
        if value is None or value == "":
            if required:
                raise InvalidArgumentError.for_field(field, f"{field} is required", value)
            return None
        try:
            hours = Decimal(str(value))
        except InvalidOperation:
            raise InvalidArgumentError.for_field(field, f"{field} must be a number", value) from None
        if not hours.is_finite() or not MIN_ESTIMATED_HOURS <= hours <= MAX_ESTIMATED_HOURS:
            raise InvalidArgumentError.for_field(field, f"{field} must be between 0.1 and 1000", value)
        return hours.quantize(Decimal("0.01"))

    @staticmethod
    def _parse_required_parts(parts: Optional[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
        if not parts:
            return []
        if not isinstance(parts, list):
            raise InvalidArgumentError.for_field("required_parts", "required_parts must be a list", parts)
        cleaned = []
        for index, part in enumerate(parts):
            if not isinstance(part, dict):
                raise InvalidArgumentError.for_field(f"required_parts[{index}]", "part must be an object", part)
            cleaned.append(
                {
                    "part_number": optional_text(f"required_parts[{index}].part_number", part.get("part_number"), max_length=100),
                    "part_name": require_text(f"required_parts[{index}].part_name", part.get("part_name"), max_length=255),
                    "quantity": RepairTicketService._quantity(index, "required_parts", part.get("quantity", 1)),
                }
            )
        return cleaned

    @staticmethod
    def _parse_used_parts(parts: Optional[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
        if not parts:
            return []
        if not isinstance(parts, list):
            raise InvalidArgumentError.for_field("used_parts", "used_parts must be a list", parts)
        lines = []
        for index, part in enumerate(parts):
            if not isinstance(part, dict):
                raise InvalidArgumentError.for_field(f"used_parts[{index}]", "part must be an object", part)
            quantity = RepairTicketService._quantity(index, "used_parts", part.get("quantity", 1))
            unit_cost = parse_money(f"used_parts[{index}].unit_cost", part.get("unit_cost"), allow_none=False)
            lines.append(
                {
                    "part_number": optional_text(f"used_parts[{index}].part_number", part.get("part_number"), max_length=100),
                    "part_name": require_text(f"used_parts[{index}].part_name", part.get("part_name"), max_length=255),
                    "quantity": quantity,
                    "unit_cost": str(unit_cost),
                    "total_cost": str(_money(unit_cost * quantity)),
                }
            )
        return lines

    @staticmethod
    def _parse_test_results(results: Optional[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
        if not results:
            return []
        if not isinstance(results, list):
            raise InvalidArgumentError.for_field("test_results", "test_results must be a list", results)
        cleaned = []
        for index, result in enumerate(results):
            if not isinstance(result, dict):
                raise InvalidArgumentError.for_field(f"test_results[{index}]", "test result must be an object", result)
            outcome = str(result.get("result", "")).strip().lower()
            if outcome not in TEST_RESULTS:
                raise InvalidArgumentError.for_field(
                    f"test_results[{index}].result", "result must be passed, failed or warning", result.get("result")
                )
            cleaned.append(
                {
                    "test_name": require_text(f"test_results[{index}].test_name", result.get("test_name"), max_length=255),
                    "result": outcome,
                    "notes": optional_text(f"test_results[{index}].notes", result.get("notes"), max_length=1000),
                }
            )
        return cleaned

    @staticmethod
    def _quantity(index: int, field: str, value: Any) -> int:
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            raise InvalidArgumentError.for_field(f"{field}[{index}].quantity", "quantity must be a positive integer", value)
        return value
