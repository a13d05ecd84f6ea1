from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from warranty.models import (
    BarcodeBatch,
    BatchStatus,
    ClaimStatus,
    IssueCategory,
    IssueSeverity,
    Priority,
    WarrantyClaim,
)
from warranty.time_utils import utcnow


def _grouped_counts(session: Session, column, enum_cls, *criteria) -> Dict[str, int]:
    counts = {member.value: 0 for member in enum_cls}
    rows = session.query(column, func.count()).filter(*criteria).group_by(column).all()
    for value, count in rows:
        key = getattr(value, "value", value)
        counts[key] = count
    return counts


def _as_float(value: Any) -> float:
    if value is None:
        return 0.0
    if isinstance(value, Decimal):
        return float(value)
    return float(value)


def compute_batch_statistics(session: Session) -> Dict[str, Any]:
    """Batch counts by status and priority plus issuance totals."""
    totals = session.query(
        func.count(BarcodeBatch.batchID),
        func.coalesce(func.sum(BarcodeBatch.requested_quantity), 0),
        func.coalesce(func.sum(BarcodeBatch.successful_count), 0),
        func.coalesce(func.sum(BarcodeBatch.failed_count), 0),
        func.coalesce(func.sum(BarcodeBatch.collision_count), 0),
        func.avg(BarcodeBatch.processing_time_seconds),
    ).one()
    batch_count, requested, successful, failed, collisions, avg_seconds = totals
    generated = successful + failed
    return {
        "total_batches": batch_count,
        "by_status": _grouped_counts(session, BarcodeBatch.status, BatchStatus),
        "by_priority": _grouped_counts(session, BarcodeBatch.priority, Priority),
        "total_requested": int(requested),
        "total_successful": int(successful),
        "total_failed": int(failed),
        "total_collisions": int(collisions),
        "success_rate": round(successful / generated * 100, 2) if generated else 0.0,
        "collision_rate": round(collisions / generated * 100, 2) if generated else 0.0,
        "average_processing_seconds": round(_as_float(avg_seconds), 2),
    }


def compute_claim_statistics(
    session: Session,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Claim counts by status, severity, category, and priority; cost totals; cycle time."""
    criteria = []
    if date_from is not None:
        criteria.append(WarrantyClaim.claim_date >= date_from)
    if date_to is not None:
        criteria.append(WarrantyClaim.claim_date <= date_to)

    costs = session.query(
        func.count(WarrantyClaim.claimID),
        func.coalesce(func.sum(WarrantyClaim.repair_cost), 0),
        func.coalesce(func.sum(WarrantyClaim.shipping_cost), 0),
        func.coalesce(func.sum(WarrantyClaim.replacement_cost), 0),
        func.coalesce(func.sum(WarrantyClaim.total_cost), 0),
        func.avg(WarrantyClaim.processing_time_hours),
        func.avg(WarrantyClaim.customer_satisfaction_rating),
    ).filter(*criteria).one()
    count, repair, shipping, replacement, total, avg_hours, avg_rating = costs

    overdue = (
        session.query(func.count(WarrantyClaim.claimID))
        .filter(*criteria)
        .filter(
            WarrantyClaim.estimated_completion_date.isnot(None),
            WarrantyClaim.estimated_completion_date < (now or utcnow()),
            WarrantyClaim.status.in_(list(WarrantyClaim.OPEN_STATUSES)),
        )
        .scalar()
    )

    return {
        "total_claims": count,
        "by_status": _grouped_counts(session, WarrantyClaim.status, ClaimStatus, *criteria),
        "by_severity": _grouped_counts(session, WarrantyClaim.severity, IssueSeverity, *criteria),
        "by_category": _grouped_counts(session, WarrantyClaim.issue_category, IssueCategory, *criteria),
        "by_priority": _grouped_counts(session, WarrantyClaim.priority, Priority, *criteria),
        "costs": {
            "repair": round(_as_float(repair), 2),
            "shipping": round(_as_float(shipping), 2),
            "replacement": round(_as_float(replacement), 2),
            "total": round(_as_float(total), 2),
        },
        "average_processing_hours": round(_as_float(avg_hours), 2),
        "average_satisfaction_rating": round(_as_float(avg_rating), 2) if avg_rating is not None else None,
        "overdue_claims": overdue or 0,
    }


__all__ = ["compute_batch_statistics", "compute_claim_statistics"]
