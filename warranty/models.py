# warranty/models.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Dict, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Enum as SAEnum,
)
from sqlalchemy.orm import relationship

# Use a single, shared Base for all models
from warranty.database import Base
from warranty.errors import InvalidStateError, InvalidTransitionError
from warranty.time_utils import add_months, as_utc, utcnow


def _enum(enum_cls, name: str) -> SAEnum:
    # Persist the lowercase wire values rather than member names
    return SAEnum(
        enum_cls,
        name=name,
        native_enum=False,
        validate_strings=True,
        values_callable=lambda members: [member.value for member in members],
    )


def _money(value) -> Decimal:
    if value is None:
        return Decimal("0.00")
    return Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


# ==============================================
# Status enumerations
# ==============================================


class BarcodeStatus(str, Enum):
    GENERATED = "generated"
    ACTIVE = "active"
    CLAIMED = "claimed"
    EXPIRED = "expired"
    REVOKED = "revoked"


class BatchStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class Priority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class CollisionType(str, Enum):
    DUPLICATE_IN_BATCH = "duplicate_in_batch"
    DUPLICATE_IN_STORE = "duplicate_in_store"


class CollisionResolution(str, Enum):
    REGENERATED = "regenerated"
    DROPPED = "dropped"


class ClaimStatus(str, Enum):
    PENDING = "pending"
    VALIDATED = "validated"
    REJECTED = "rejected"
    ASSIGNED = "assigned"
    IN_REPAIR = "in_repair"
    REPAIRED = "repaired"
    REPLACED = "replaced"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"


class ClaimAction(str, Enum):
    VALIDATE = "validate"
    REJECT = "reject"
    CANCEL = "cancel"
    ASSIGN = "assign"
    START = "start"
    REPAIR = "repair"
    REPLACE = "replace"
    SHIP = "ship"
    DELIVER = "deliver"
    COMPLETE = "complete"
    DISPUTE = "dispute"
    RESOLVE = "resolve"


class IssueCategory(str, Enum):
    HARDWARE = "hardware"
    SOFTWARE = "software"
    PERFORMANCE = "performance"
    DEFECT = "defect"
    MALFUNCTION = "malfunction"
    DAMAGE = "damage"
    OTHER = "other"


class IssueSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ResolutionType(str, Enum):
    REPAIR = "repair"
    REPLACE = "replace"
    REFUND = "refund"


class DeliveryStatus(str, Enum):
    NOT_SHIPPED = "not_shipped"
    PREPARING = "preparing"
    PICKED_UP = "picked_up"
    IN_TRANSIT = "in_transit"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    FAILED_DELIVERY = "failed_delivery"
    RETURNED = "returned"


class TicketStatus(str, Enum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class QualityCheckStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class CustomerApprovalStatus(str, Enum):
    NOT_REQUIRED = "not_required"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class AttachmentType(str, Enum):
    RECEIPT = "receipt"
    PHOTO = "photo"
    VIDEO = "video"
    DOCUMENT = "document"
    OTHER = "other"


class ScanStatus(str, Enum):
    PENDING = "pending"
    PASSED = "passed"
    FAILED = "failed"


class TimelineEventType(str, Enum):
    SUBMITTED = "submitted"
    VALIDATED = "validated"
    REJECTED = "rejected"
    ASSIGNED = "assigned"
    REPAIR_STARTED = "repair_started"
    REPAIR_COMPLETED = "repair_completed"
    QUALITY_APPROVED = "quality_approved"
    CUSTOMER_APPROVED = "customer_approved"
    COMPLETED = "completed"
    NOTE_ADDED = "note_added"
    ATTACHMENT_UPLOADED = "attachment_uploaded"
    STATUS_UPDATED = "status_updated"


class ActorType(str, Enum):
    CUSTOMER = "customer"
    AGENT = "agent"
    TECHNICIAN = "technician"
    SYSTEM = "system"


# ==============================================
# Read models for external collaborators
# ==============================================


class Customer(Base):
    __tablename__ = 'Customer'

    customerID = Column(Integer, primary_key=True, autoincrement=True)
    full_name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    phone = Column(String(50))
    address = Column(Text)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    warranties = relationship("WarrantyBarcode", back_populates="customer")


class Product(Base):
    __tablename__ = 'Product'

    productID = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    sku = Column(String(100), unique=True, nullable=False)
    brand = Column(String(120))
    category = Column(String(120))
    description = Column(Text)
    base_price = Column(Numeric(12, 2), nullable=False, default=0)
    image_url = Column(String(512))


class NumberSequence(Base):
    """Per (prefix, year) counter behind WAR-/RPR-/BATCH- numbers."""

    __tablename__ = 'NumberSequence'
    __table_args__ = (UniqueConstraint("prefix", "year", name="uq_number_sequence_prefix_year"),)

    sequenceID = Column(Integer, primary_key=True, autoincrement=True)
    prefix = Column(String(20), nullable=False)
    year = Column(Integer, nullable=False)
    last_value = Column(Integer, nullable=False, default=0)


# ==============================================
# Barcode issuance
# ==============================================


class BarcodeBatch(Base):
    __tablename__ = 'BarcodeBatch'
    __table_args__ = (Index("ix_barcode_batch_status_created", "status", "created_at"),)

    batchID = Column(Integer, primary_key=True, autoincrement=True)
    batch_number = Column(String(40), unique=True, nullable=False)
    productID = Column(Integer, ForeignKey('Product.productID'), nullable=False)
    storefrontID = Column(Integer, nullable=False)
    requested_quantity = Column(Integer, nullable=False)
    generated_count = Column(Integer, nullable=False, default=0)
    successful_count = Column(Integer, nullable=False, default=0)
    failed_count = Column(Integer, nullable=False, default=0)
    error_count = Column(Integer, nullable=False, default=0)
    collision_count = Column(Integer, nullable=False, default=0)
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    prefix = Column(String(10), nullable=False)
    description = Column(Text)
    expiry_months = Column(Integer, nullable=False)
    priority = Column(_enum(Priority, "batch_priority"), nullable=False, default=Priority.NORMAL)
    status = Column(_enum(BatchStatus, "batch_status"), nullable=False, default=BatchStatus.PENDING)
    progress = Column(Integer, nullable=False, default=0)
    current_step = Column(String(50))
    generation_rate = Column(Float, nullable=False, default=0.0)
    processing_time_seconds = Column(Float)
    notify_on_complete = Column(Boolean, nullable=False, default=False)
    notification_sent = Column(Boolean, nullable=False, default=False)
    tags = Column(JSON, default=list)
    created_by = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    started_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    cancelled_at = Column(DateTime(timezone=True))
    cancelled_by = Column(Integer)
    cancellation_reason = Column(Text)
    last_error = Column(Text)
    last_updated = Column(DateTime(timezone=True), default=utcnow)

    product = relationship("Product")
    collisions = relationship(
        "BatchCollision",
        back_populates="batch",
        cascade="all, delete-orphan",
        order_by="BatchCollision.collisionID",
    )
    barcodes = relationship("WarrantyBarcode", back_populates="batch")

    _VALID_TRANSITIONS = {
        BatchStatus.PENDING: {BatchStatus.IN_PROGRESS, BatchStatus.CANCELLED},
        BatchStatus.IN_PROGRESS: {BatchStatus.COMPLETED, BatchStatus.CANCELLED, BatchStatus.FAILED},
    }
    TERMINAL_STATUSES = frozenset({BatchStatus.COMPLETED, BatchStatus.CANCELLED, BatchStatus.FAILED})

    def can_transition(self, new_status: BatchStatus) -> bool:
        allowed = self._VALID_TRANSITIONS.get(BatchStatus(self.status), set())
        return new_status in allowed

    def transition_to(self, new_status: BatchStatus) -> None:
        if not self.can_transition(new_status):
            raise InvalidStateError(
                f"Invalid batch status transition from {BatchStatus(self.status).value} to {new_status.value}",
                current_state=self.status,
                legal_actions=[status.value for status in self._VALID_TRANSITIONS.get(BatchStatus(self.status), set())],
            )
        self.status = new_status

    @property
    def is_terminal(self) -> bool:
        return BatchStatus(self.status) in self.TERMINAL_STATUSES

    @property
    def remaining_count(self) -> int:
        return max(0, self.requested_quantity - (self.generated_count or 0))

    @property
    def success_rate(self) -> float:
        if not self.generated_count:
            return 0.0
        return round((self.successful_count or 0) / self.generated_count * 100, 2)

    @property
    def collision_rate(self) -> float:
        if not self.generated_count:
            return 0.0
        return round((self.collision_count or 0) / self.generated_count * 100, 2)

    @property
    def error_rate(self) -> float:
        if not self.generated_count:
            return 0.0
        return round((self.error_count or 0) / self.generated_count * 100, 2)

    @property
    def performance_grade(self) -> str:
        rate = self.success_rate
        if rate >= 95:
            return "EXCELLENT"
        if rate >= 85:
            return "GOOD"
        if rate >= 70:
            return "FAIR"
        return "POOR"

    def advance_progress(self) -> None:
        """Recompute progress without ever moving it backwards."""
        if not self.requested_quantity:
            return
        computed = int((self.generated_count or 0) * 100 / self.requested_quantity)
        self.progress = max(self.progress or 0, min(100, computed))


class BatchCollision(Base):
    __tablename__ = 'BatchCollision'

    collisionID = Column(Integer, primary_key=True, autoincrement=True)
    batchID = Column(Integer, ForeignKey('BarcodeBatch.batchID', ondelete="CASCADE"), nullable=False, index=True)
    slot_index = Column(Integer, nullable=False)
    attempt = Column(Integer, nullable=False, default=0)
    barcode_value = Column(String(40), nullable=False)
    collision_type = Column(_enum(CollisionType, "collision_type"), nullable=False)
    existing_barcodeID = Column(Integer, ForeignKey('WarrantyBarcode.barcodeID'))
    resolution = Column(_enum(CollisionResolution, "collision_resolution"))
    detected_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    resolved_at = Column(DateTime(timezone=True))

    batch = relationship("BarcodeBatch", back_populates="collisions")

    def resolve(self, resolution: CollisionResolution, resolved_at: Optional[datetime] = None) -> None:
        if self.resolution is not None:
            raise InvalidStateError(
                "Collision already resolved",
                current_state=self.resolution,
            )
        self.resolution = resolution
        self.resolved_at = resolved_at or utcnow()


class WarrantyBarcode(Base):
    __tablename__ = 'WarrantyBarcode'

    barcodeID = Column(Integer, primary_key=True, autoincrement=True)
    barcode_number = Column(String(40), unique=True, nullable=False, index=True)
    productID = Column(Integer, ForeignKey('Product.productID'), nullable=False, index=True)
    batchID = Column(Integer, ForeignKey('BarcodeBatch.batchID'), index=True)
    batch_number = Column(String(40))
    storefrontID = Column(Integer)
    status = Column(_enum(BarcodeStatus, "barcode_status"), nullable=False, default=BarcodeStatus.GENERATED)
    warranty_period_months = Column(Integer, nullable=False)
    generated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    generation_attempt = Column(Integer, nullable=False, default=1)
    collision_checked = Column(Boolean, nullable=False, default=True)
    qr_code_data = Column(String(512))

    customerID = Column(Integer, ForeignKey('Customer.customerID'), index=True)
    activated_at = Column(DateTime(timezone=True))
    activated_by = Column(Integer)
    expiry_date = Column(DateTime(timezone=True), index=True)
    purchase_date = Column(DateTime(timezone=True))
    purchase_location = Column(String(255))
    purchase_invoice = Column(String(100))
    serial_number = Column(String(100))
    purchase_price = Column(Numeric(12, 2))

    revoked_at = Column(DateTime(timezone=True))
    revoked_by = Column(Integer)
    revocation_reason = Column(Text)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    product = relationship("Product")
    batch = relationship("BarcodeBatch", back_populates="barcodes")
    customer = relationship("Customer", back_populates="warranties")
    claims = relationship("WarrantyClaim", back_populates="barcode")
    audit_events = relationship(
        "BarcodeAuditEvent",
        back_populates="barcode",
        cascade="all, delete-orphan",
        order_by="BarcodeAuditEvent.auditID",
    )

    _VALID_TRANSITIONS = {
        BarcodeStatus.GENERATED: {BarcodeStatus.ACTIVE, BarcodeStatus.REVOKED},
        BarcodeStatus.ACTIVE: {BarcodeStatus.CLAIMED, BarcodeStatus.EXPIRED, BarcodeStatus.REVOKED},
        BarcodeStatus.CLAIMED: {BarcodeStatus.REVOKED},
        BarcodeStatus.EXPIRED: {BarcodeStatus.REVOKED},
    }

    def can_transition(self, new_status: BarcodeStatus) -> bool:
        allowed = self._VALID_TRANSITIONS.get(BarcodeStatus(self.status), set())
        return new_status in allowed

    def transition_to(self, new_status: BarcodeStatus) -> None:
        if not self.can_transition(new_status):
            raise InvalidStateError(
                f"Invalid barcode status transition from {BarcodeStatus(self.status).value} to {new_status.value}",
                current_state=self.status,
                legal_actions=[status.value for status in self._VALID_TRANSITIONS.get(BarcodeStatus(self.status), set())],
            )
        self.status = new_status

    @staticmethod
    def compute_expiry(activated_at: datetime, period_months: int) -> datetime:
        return add_months(as_utc(activated_at), period_months)

    @property
    def warranty_period(self) -> str:
        months = self.warranty_period_months or 0
        return "1 month" if months == 1 else f"{months} months"

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expiry_date is None:
            return False
        return as_utc(self.expiry_date) < as_utc(now or utcnow())

    def days_remaining(self, now: Optional[datetime] = None) -> int:
        if self.expiry_date is None:
            return 0
        delta = as_utc(self.expiry_date) - as_utc(now or utcnow())
        return max(0, delta.days)

    def can_claim(self, now: Optional[datetime] = None) -> bool:
        return BarcodeStatus(self.status) == BarcodeStatus.ACTIVE and not self.is_expired(now)

    def effective_status(self, now: Optional[datetime] = None) -> BarcodeStatus:
        """Status as seen by readers; an active barcode past expiry projects as expired."""
        status = BarcodeStatus(self.status)
        if status == BarcodeStatus.ACTIVE and self.is_expired(now):
            return BarcodeStatus.EXPIRED
        return status


class BarcodeAuditEvent(Base):
    __tablename__ = 'BarcodeAuditEvent'

    auditID = Column(Integer, primary_key=True, autoincrement=True)
    barcodeID = Column(Integer, ForeignKey('WarrantyBarcode.barcodeID', ondelete="CASCADE"), nullable=False, index=True)
    event_type = Column(String(50), nullable=False)
    description = Column(Text)
    actor_id = Column(Integer)
    actor_type = Column(_enum(ActorType, "barcode_audit_actor_type"), nullable=False, default=ActorType.SYSTEM)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    event_metadata = Column(JSON)

    barcode = relationship("WarrantyBarcode", back_populates="audit_events")


# ==============================================
# Claims
# ==============================================


def _build_claim_transitions() -> Dict[ClaimStatus, Dict[ClaimAction, ClaimStatus]]:
    table: Dict[ClaimStatus, Dict[ClaimAction, ClaimStatus]] = {
        ClaimStatus.PENDING: {
            ClaimAction.VALIDATE: ClaimStatus.VALIDATED,
            ClaimAction.REJECT: ClaimStatus.REJECTED,
            ClaimAction.CANCEL: ClaimStatus.CANCELLED,
        },
        ClaimStatus.VALIDATED: {
            ClaimAction.ASSIGN: ClaimStatus.ASSIGNED,
            ClaimAction.CANCEL: ClaimStatus.CANCELLED,
        },
        ClaimStatus.ASSIGNED: {ClaimAction.START: ClaimStatus.IN_REPAIR},
        ClaimStatus.IN_REPAIR: {
            ClaimAction.REPAIR: ClaimStatus.REPAIRED,
            ClaimAction.REPLACE: ClaimStatus.REPLACED,
        },
        ClaimStatus.REPAIRED: {ClaimAction.SHIP: ClaimStatus.SHIPPED},
        ClaimStatus.REPLACED: {ClaimAction.SHIP: ClaimStatus.SHIPPED},
        ClaimStatus.SHIPPED: {ClaimAction.DELIVER: ClaimStatus.DELIVERED},
        ClaimStatus.DELIVERED: {ClaimAction.COMPLETE: ClaimStatus.COMPLETED},
        # resolve goes back to the pre-dispute status or forward to completed
        ClaimStatus.DISPUTED: {ClaimAction.RESOLVE: ClaimStatus.COMPLETED},
    }
    for status in ClaimStatus:
        if status in WarrantyClaim.TERMINAL_STATUSES or status == ClaimStatus.DISPUTED:
            continue
        table.setdefault(status, {})[ClaimAction.DISPUTE] = ClaimStatus.DISPUTED
    return table


CLAIM_STATUS_LABELS: Dict[ClaimStatus, str] = {
    ClaimStatus.PENDING: "Pending Review",
    ClaimStatus.VALIDATED: "Approved",
    ClaimStatus.REJECTED: "Rejected",
    ClaimStatus.ASSIGNED: "Assigned to Technician",
    ClaimStatus.IN_REPAIR: "Being Repaired",
    ClaimStatus.REPAIRED: "Repair Complete",
    ClaimStatus.REPLACED: "Product Replaced",
    ClaimStatus.SHIPPED: "Shipped",
    ClaimStatus.DELIVERED: "Delivered",
    ClaimStatus.COMPLETED: "Completed",
    ClaimStatus.CANCELLED: "Cancelled",
    ClaimStatus.DISPUTED: "Under Review",
}


class WarrantyClaim(Base):
    __tablename__ = 'WarrantyClaim'
    __table_args__ = (Index("ix_warranty_claim_status_date", "status", "claim_date"),)

    claimID = Column(Integer, primary_key=True, autoincrement=True)
    claim_number = Column(String(40), unique=True, nullable=False)
    barcodeID = Column(Integer, ForeignKey('WarrantyBarcode.barcodeID'), nullable=False, index=True)
    customerID = Column(Integer, ForeignKey('Customer.customerID'), nullable=False, index=True)
    productID = Column(Integer, ForeignKey('Product.productID'), nullable=False)
    storefrontID = Column(Integer)

    issue_category = Column(_enum(IssueCategory, "claim_issue_category"), nullable=False)
    issue_description = Column(Text, nullable=False)
    issue_date = Column(DateTime(timezone=True))
    severity = Column(_enum(IssueSeverity, "claim_severity"), nullable=False)
    priority = Column(_enum(Priority, "claim_priority"), nullable=False, default=Priority.NORMAL)

    status = Column(_enum(ClaimStatus, "claim_status"), nullable=False, default=ClaimStatus.PENDING)
    previous_status = Column(_enum(ClaimStatus, "claim_previous_status"))
    status_updated_at = Column(DateTime(timezone=True))
    status_updated_by = Column(Integer)
    disputed_from_status = Column(_enum(ClaimStatus, "claim_disputed_from_status"))
    dispute_reason = Column(Text)

    claim_date = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    validated_at = Column(DateTime(timezone=True))
    validated_by = Column(Integer)
    assigned_at = Column(DateTime(timezone=True))
    technicianID = Column(Integer, index=True)
    completed_at = Column(DateTime(timezone=True))
    estimated_completion_date = Column(DateTime(timezone=True))
    actual_completion_date = Column(DateTime(timezone=True))
    processing_time_hours = Column(Float)

    resolution_type = Column(_enum(ResolutionType, "claim_resolution_type"))
    resolution_notes = Column(Text)
    replacement_productID = Column(Integer, ForeignKey('Product.productID'))
    refund_amount = Column(Numeric(12, 2))

    repair_cost = Column(Numeric(12, 2), nullable=False, default=0)
    shipping_cost = Column(Numeric(12, 2), nullable=False, default=0)
    replacement_cost = Column(Numeric(12, 2), nullable=False, default=0)
    total_cost = Column(Numeric(12, 2), nullable=False, default=0)

    shipping_provider = Column(String(100))
    tracking_number = Column(String(120))
    delivery_status = Column(_enum(DeliveryStatus, "claim_delivery_status"), nullable=False, default=DeliveryStatus.NOT_SHIPPED)
    estimated_delivery_date = Column(DateTime(timezone=True))
    actual_delivery_date = Column(DateTime(timezone=True))

    customer_name = Column(String(255))
    customer_email = Column(String(255))
    customer_phone = Column(String(50))
    pickup_address = Column(Text)

    customer_notes = Column(Text)
    admin_notes = Column(Text)
    internal_notes = Column(Text)
    repair_notes = Column(Text)
    rejection_reason = Column(Text)

    customer_satisfaction_rating = Column(Integer)
    customer_feedback = Column(Text)
    feedback_at = Column(DateTime(timezone=True))

    tags = Column(JSON, default=list)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    barcode = relationship("WarrantyBarcode", back_populates="claims")
    customer = relationship("Customer")
    product = relationship("Product", foreign_keys=[productID])
    attachments = relationship(
        "ClaimAttachment",
        back_populates="claim",
        cascade="all, delete-orphan",
        order_by="ClaimAttachment.attachmentID",
    )
    timeline = relationship(
        "ClaimTimelineEvent",
        back_populates="claim",
        cascade="all, delete-orphan",
        order_by="ClaimTimelineEvent.sequence",
    )
    repair_tickets = relationship(
        "RepairTicket",
        back_populates="claim",
        cascade="all, delete-orphan",
        order_by="RepairTicket.ticketID",
    )

    __mapper_args__ = {"version_id_col": version}

    TERMINAL_STATUSES = frozenset({ClaimStatus.REJECTED, ClaimStatus.COMPLETED, ClaimStatus.CANCELLED})
    OPEN_STATUSES = frozenset(set(ClaimStatus) - {ClaimStatus.REJECTED, ClaimStatus.COMPLETED, ClaimStatus.CANCELLED})

    @property
    def status_enum(self) -> ClaimStatus:
        return ClaimStatus(self.status)

    @property
    def display_status(self) -> str:
        return CLAIM_STATUS_LABELS.get(self.status_enum, self.status_enum.value)

    @property
    def is_terminal(self) -> bool:
        return self.status_enum in self.TERMINAL_STATUSES

    def legal_actions(self) -> List[str]:
        actions = [action.value for action in _CLAIM_TRANSITIONS.get(self.status_enum, {})]
        if self.status_enum == ClaimStatus.PENDING:
            actions.append("request_info")
        return sorted(actions)

    def can_apply(self, action: ClaimAction) -> bool:
        return action in _CLAIM_TRANSITIONS.get(self.status_enum, {})

    def target_for(self, action: ClaimAction, resolve_to: Optional[ClaimStatus] = None) -> ClaimStatus:
        if not self.can_apply(action):
            raise InvalidTransitionError(
                f"Cannot {action.value} a claim in status {self.status_enum.value}",
                current_state=self.status_enum,
                legal_actions=self.legal_actions(),
            )
        if action == ClaimAction.RESOLVE:
            prior = ClaimStatus(self.disputed_from_status) if self.disputed_from_status else None
            if resolve_to is None:
                return prior or ClaimStatus.COMPLETED
            if resolve_to not in {ClaimStatus.COMPLETED, prior}:
                raise InvalidTransitionError(
                    f"A dispute can only resolve to {prior.value if prior else 'completed'} or completed",
                    current_state=self.status_enum,
                    legal_actions=self.legal_actions(),
                )
            return resolve_to
        return _CLAIM_TRANSITIONS[self.status_enum][action]

    def apply_transition(
        self,
        action: ClaimAction,
        actor_id: Optional[int],
        at: datetime,
        resolve_to: Optional[ClaimStatus] = None,
    ) -> ClaimStatus:
        target = self.target_for(action, resolve_to)
        current = self.status_enum
        if action == ClaimAction.DISPUTE:
            self.disputed_from_status = current
        elif action == ClaimAction.RESOLVE:
            self.disputed_from_status = None
        self.previous_status = current
        self.status = target
        self.status_updated_at = at
        self.status_updated_by = actor_id
        return target

    def recompute_total(self) -> Decimal:
        self.total_cost = _money(self.repair_cost) + _money(self.shipping_cost) + _money(self.replacement_cost)
        return self.total_cost

    def active_repair_ticket(self) -> Optional["RepairTicket"]:
        live = [
            ticket for ticket in self.repair_tickets
            if TicketStatus(ticket.status) != TicketStatus.CANCELLED
        ]
        return live[-1] if live else None


class RepairTicket(Base):
    __tablename__ = 'RepairTicket'

    ticketID = Column(Integer, primary_key=True, autoincrement=True)
    ticket_number = Column(String(40), unique=True, nullable=False)
    claimID = Column(Integer, ForeignKey('WarrantyClaim.claimID', ondelete="CASCADE"), nullable=False, index=True)
    status = Column(_enum(TicketStatus, "ticket_status"), nullable=False, default=TicketStatus.PENDING)
    priority = Column(_enum(Priority, "ticket_priority"), nullable=False, default=Priority.NORMAL)

    technicianID = Column(Integer, index=True)
    assigned_at = Column(DateTime(timezone=True))
    started_at = Column(DateTime(timezone=True))
    estimated_hours = Column(Numeric(8, 2))
    actual_hours = Column(Numeric(8, 2))
    estimated_completion_date = Column(DateTime(timezone=True))
    actual_completion_date = Column(DateTime(timezone=True))

    description = Column(Text, nullable=False)
    special_instructions = Column(Text)
    required_parts = Column(JSON, default=list)
    used_parts = Column(JSON, default=list)
    test_results = Column(JSON, default=list)
    repair_notes = Column(Text)

    labor_cost = Column(Numeric(12, 2), nullable=False, default=0)
    parts_cost = Column(Numeric(12, 2), nullable=False, default=0)
    total_cost = Column(Numeric(12, 2))

    quality_check_status = Column(_enum(QualityCheckStatus, "ticket_quality_check_status"), nullable=False, default=QualityCheckStatus.PENDING)
    quality_checked_by = Column(Integer)
    quality_check_date = Column(DateTime(timezone=True))
    quality_check_notes = Column(Text)

    customer_approval_required = Column(Boolean, nullable=False, default=False)
    customer_approval_status = Column(_enum(CustomerApprovalStatus, "ticket_customer_approval_status"), nullable=False, default=CustomerApprovalStatus.NOT_REQUIRED)
    customer_approved_at = Column(DateTime(timezone=True))
    customer_approval_notes = Column(Text)

    reopen_count = Column(Integer, nullable=False, default=0)
    cancelled_at = Column(DateTime(timezone=True))
    cancellation_reason = Column(Text)
    created_by = Column(Integer)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    claim = relationship("WarrantyClaim", back_populates="repair_tickets")

    _VALID_TRANSITIONS = {
        TicketStatus.PENDING: {TicketStatus.ASSIGNED, TicketStatus.CANCELLED},
        TicketStatus.ASSIGNED: {TicketStatus.IN_PROGRESS, TicketStatus.CANCELLED},
        TicketStatus.IN_PROGRESS: {TicketStatus.COMPLETED, TicketStatus.CANCELLED},
        # quality-check rejection reopens the same ticket
        TicketStatus.COMPLETED: {TicketStatus.IN_PROGRESS},
    }

    def can_transition(self, new_status: TicketStatus) -> bool:
        allowed = self._VALID_TRANSITIONS.get(TicketStatus(self.status), set())
        return new_status in allowed

    def transition_to(self, new_status: TicketStatus) -> None:
        if not self.can_transition(new_status):
            raise InvalidStateError(
                f"Invalid repair ticket transition from {TicketStatus(self.status).value} to {new_status.value}",
                current_state=self.status,
                legal_actions=[status.value for status in self._VALID_TRANSITIONS.get(TicketStatus(self.status), set())],
            )
        self.status = new_status

    @property
    def is_cleared_for_resolution(self) -> bool:
        return (
            TicketStatus(self.status) == TicketStatus.COMPLETED
            and QualityCheckStatus(self.quality_check_status) == QualityCheckStatus.APPROVED
            and CustomerApprovalStatus(self.customer_approval_status)
            in {CustomerApprovalStatus.NOT_REQUIRED, CustomerApprovalStatus.APPROVED}
        )


class ClaimAttachment(Base):
    __tablename__ = 'ClaimAttachment'

    attachmentID = Column(Integer, primary_key=True, autoincrement=True)
    claimID = Column(Integer, ForeignKey('WarrantyClaim.claimID', ondelete="CASCADE"), nullable=False, index=True)
    filename = Column(String(255), nullable=False)
    original_filename = Column(String(255))
    storage_ref = Column(String(512), nullable=False)
    file_size = Column(Integer, nullable=False)
    mime_type = Column(String(120), nullable=False)
    attachment_type = Column(_enum(AttachmentType, "attachment_type"), nullable=False, default=AttachmentType.OTHER)
    description = Column(Text)
    scan_status = Column(_enum(ScanStatus, "attachment_scan_status"), nullable=False, default=ScanStatus.PENDING)
    scan_detail = Column(Text)
    scanned_at = Column(DateTime(timezone=True))
    uploaded_by = Column(Integer)
    uploader_type = Column(_enum(ActorType, "attachment_uploader_type"), nullable=False, default=ActorType.CUSTOMER)
    uploaded_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    claim = relationship("WarrantyClaim", back_populates="attachments")

    @property
    def is_visible_to_customer(self) -> bool:
        return ScanStatus(self.scan_status) == ScanStatus.PASSED


class ClaimTimelineEvent(Base):
    """Append-only history row; never updated after insert."""

    __tablename__ = 'ClaimTimelineEvent'
    __table_args__ = (
        UniqueConstraint("claimID", "sequence", name="uq_claim_timeline_sequence"),
        Index("ix_claim_timeline_claim_time", "claimID", "created_at", "sequence"),
    )

    eventID = Column(Integer, primary_key=True, autoincrement=True)
    claimID = Column(Integer, ForeignKey('WarrantyClaim.claimID', ondelete="CASCADE"), nullable=False)
    sequence = Column(Integer, nullable=False)
    event_type = Column(_enum(TimelineEventType, "timeline_event_type"), nullable=False)
    description = Column(Text, nullable=False)
    actor_id = Column(Integer)
    actor_type = Column(_enum(ActorType, "timeline_actor_type"), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    visible_to_customer = Column(Boolean, nullable=False, default=True)
    event_metadata = Column(JSON)

    claim = relationship("WarrantyClaim", back_populates="timeline")


class ProcessedRequest(Base):
    """Request keys already applied to a claim, for replay-safe transitions."""

    __tablename__ = 'ProcessedRequest'

    request_key = Column(String(120), primary_key=True)
    claimID = Column(Integer, ForeignKey('WarrantyClaim.claimID', ondelete="CASCADE"), nullable=False)
    action = Column(String(40), nullable=False)
    resulting_status = Column(String(40), nullable=False)
    processed_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


_CLAIM_TRANSITIONS = _build_claim_transitions()
