from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest

from warranty.errors import (
    ConflictError,
    DeadlineExceededError,
    ForbiddenError,
    InvalidArgumentError,
    InvalidTransitionError,
    NotFoundError,
    PreconditionFailedError,
)
from warranty.models import BarcodeStatus, ClaimAction, ClaimStatus, DeliveryStatus, Priority
from warranty.services.collaborators import Actor, Deadline


def _customer(customer) -> Actor:
    return Actor.customer(customer.customerID)


def test_submission_opens_a_pending_claim(claim_service, submit_claim, sample_customer, notification_sink, clock):
    claim = submit_claim(issue_description="<script>x</script>Battery drains within an hour")

    assert claim.claim_number.startswith(f"WAR-{clock.now().year}-")
    assert claim.status == ClaimStatus.PENDING
    assert claim.priority == Priority.NORMAL
    assert claim.customer_email == sample_customer.email
    assert "<script>" not in claim.issue_description
    assert [event.event_type.value for event in claim.timeline] == ["submitted"]
    assert notification_sink.templates_for(sample_customer.customerID) == ["claim_submitted"]


def test_full_repair_lifecycle(
    claim_service, ticket_service, submit_claim, finish_ticket, sample_customer, agent, technician, notification_sink
):
    claim = submit_claim()
    claim_service.validate_claim(claim.claimID, agent)
    claim_service.assign_technician(claim.claimID, agent, technician.actor_id)
    claim_service.start_repair(claim.claimID, technician)
    ticket = finish_ticket(claim, technician)
    ticket_service.quality_check(ticket.ticketID, agent, approved=True)
    claim_service.record_resolution(claim.claimID, agent, ClaimAction.REPAIR, repair_notes="Charging port replaced")
    claim_service.ship(claim.claimID, agent, tracking_number="1Z999", shipping_provider="UPS", shipping_cost="15.00")
    claim_service.deliver(claim.claimID, agent)
    done = claim_service.complete(claim.claimID, agent, "repair", "Port replaced and tested")

    assert done.status == ClaimStatus.COMPLETED
    assert done.repair_cost == Decimal("130.00")
    assert done.total_cost == Decimal("145.00")
    assert done.delivery_status == DeliveryStatus.DELIVERED
    assert done.processing_time_hours is not None
    assert done.barcode.status == BarcodeStatus.ACTIVE
    timeline = claim_service.get_timeline(claim.claimID, _customer(sample_customer))
    assert [event.event_type.value for event in timeline] == [
        "submitted",
        "validated",
        "assigned",
        "repair_started",
        "repair_completed",
        "status_updated",
        "status_updated",
        "completed",
    ]
    # Sequence 5 is the staff-only quality approval
    assert [event.sequence for event in timeline] == [1, 2, 3, 4, 6, 7, 8, 9]
    customer_templates = notification_sink.templates_for(sample_customer.customerID)
    assert customer_templates.count("claim_status_changed") == 7
    assert notification_sink.templates_for(technician.actor_id) == ["ticket_assigned"]

    rated = claim_service.submit_feedback(claim.claimID, _customer(sample_customer), 5, "Quick turnaround")
    assert rated.customer_satisfaction_rating == 5
    with pytest.raises(ConflictError):
        claim_service.submit_feedback(claim.claimID, _customer(sample_customer), 4)


def test_replacement_marks_the_warranty_claimed(
    claim_service, ticket_service, claim_in_repair, finish_ticket, product_factory, submit_claim, agent, technician
):
    replacement = product_factory(name="SmartPhone X2")
    ticket = finish_ticket(claim_in_repair, technician)
    ticket_service.quality_check(ticket.ticketID, agent, approved=True)

    claim_service.record_resolution(
        claim_in_repair.claimID,
        agent,
        ClaimAction.REPLACE,
        replacement_product_id=replacement.productID,
        replacement_cost="300.00",
    )
    claim_service.ship(claim_in_repair.claimID, agent)
    claim_service.deliver(claim_in_repair.claimID, agent)
    done = claim_service.complete(claim_in_repair.claimID, agent, "replace", "Unit swapped for a new one")

    assert done.barcode.status == BarcodeStatus.CLAIMED
    assert done.replacement_productID == replacement.productID
    with pytest.raises(PreconditionFailedError) as exc_info:
        submit_claim()
    assert exc_info.value.reason == "warranty_already_claimed"


def test_resolution_waits_for_the_ticket(claim_service, claim_in_repair, finish_ticket, agent, technician):
    with pytest.raises(PreconditionFailedError) as exc_info:
        claim_service.record_resolution(claim_in_repair.claimID, agent, ClaimAction.REPAIR)
    assert exc_info.value.reason == "repair_ticket_not_cleared"

    finish_ticket(claim_in_repair, technician)
    # Completed but not yet through quality check
    with pytest.raises(PreconditionFailedError):
        claim_service.record_resolution(claim_in_repair.claimID, agent, ClaimAction.REPAIR)


def test_rejection_closes_the_claim_and_allows_a_new_one(claim_service, submit_claim, agent):
    claim = submit_claim()

    rejected = claim_service.reject_claim(claim.claimID, agent, "Damage caused by a drop")

    assert rejected.status == ClaimStatus.REJECTED
    assert rejected.rejection_reason == "Damage caused by a drop"
    with pytest.raises(InvalidTransitionError) as exc_info:
        claim_service.validate_claim(claim.claimID, agent)
    assert exc_info.value.legal_actions == []
    assert submit_claim().status == ClaimStatus.PENDING


def test_rejection_needs_a_reason(claim_service, submit_claim, agent):
    claim = submit_claim()

    with pytest.raises(InvalidArgumentError):
        claim_service.reject_claim(claim.claimID, agent, "no")


def test_claim_on_unactivated_warranty(claim_service, barcode_factory, sample_customer):
    barcode = barcode_factory()

    with pytest.raises(PreconditionFailedError) as exc_info:
        claim_service.submit_claim(
            _customer(sample_customer), barcode.barcode_number, "hardware", "Device does not turn on at all", "high"
        )

    assert exc_info.value.reason == "warranty_not_activated"


def test_claim_on_expired_warranty(
    claim_service, barcode_factory, activate_barcode, sample_customer, clock, submit_claim
):
    warranty = activate_barcode(barcode_factory(), sample_customer, clock, warranty_period_months=1)
    clock.advance(days=40)

    with pytest.raises(PreconditionFailedError) as exc_info:
        submit_claim(warranty=warranty)

    assert exc_info.value.reason == "warranty_expired"


def test_claim_by_another_customer_is_forbidden(submit_claim, customer_factory):
    with pytest.raises(ForbiddenError):
        submit_claim(customer=customer_factory())


def test_only_one_open_claim_per_warranty(submit_claim):
    submit_claim()

    with pytest.raises(ConflictError):
        submit_claim()


def test_description_length_is_enforced(submit_claim):
    with pytest.raises(InvalidArgumentError):
        submit_claim(issue_description="too short")


@pytest.mark.parametrize(
    "severity, category, expected",
    [
        ("critical", "hardware", Priority.HIGH),
        ("high", "defect", Priority.HIGH),
        ("medium", "software", Priority.NORMAL),
        ("low", "other", Priority.LOW),
    ],
)
def test_validation_sets_priority_from_severity(claim_service, submit_claim, agent, severity, category, expected):
    claim = submit_claim(severity=severity, issue_category=category)

    validated = claim_service.validate_claim(claim.claimID, agent)

    assert validated.priority == expected
    assert validated.validated_by == agent.actor_id


def test_request_key_replays_and_guards_reuse(claim_service, submit_claim, agent):
    claim = submit_claim()
    claim_service.validate_claim(claim.claimID, agent, request_key="req-1")

    replayed = claim_service.validate_claim(claim.claimID, agent, request_key="req-1")

    assert replayed.status == ClaimStatus.VALIDATED
    assert len(replayed.timeline) == 2
    with pytest.raises(ConflictError):
        claim_service.update_status(claim.claimID, agent, "cancel", request_key="req-1")


def test_dispute_returns_to_the_prior_status(claim_service, submit_claim, sample_customer, agent):
    claim = submit_claim()
    claim_service.validate_claim(claim.claimID, agent)

    disputed = claim_service.dispute_claim(claim.claimID, _customer(sample_customer), "Nobody has contacted me yet")
    assert disputed.status == ClaimStatus.DISPUTED
    assert disputed.disputed_from_status == ClaimStatus.VALIDATED

    resolved = claim_service.resolve_dispute(claim.claimID, agent)
    assert resolved.status == ClaimStatus.VALIDATED
    assert resolved.disputed_from_status is None


def test_dispute_resolved_as_completed_needs_a_resolution(claim_service, submit_claim, sample_customer, agent):
    claim = submit_claim()
    claim_service.dispute_claim(claim.claimID, _customer(sample_customer), "I want my money back")

    with pytest.raises(InvalidArgumentError):
        claim_service.resolve_dispute(claim.claimID, agent, resolve_to="completed")

    done = claim_service.resolve_dispute(claim.claimID, agent, resolve_to="completed", resolution_type="refund")
    assert done.status == ClaimStatus.COMPLETED
    assert done.resolution_type.value == "refund"


def test_customer_can_cancel_a_pending_claim(claim_service, submit_claim, sample_customer, customer_factory):
    claim = submit_claim()

    with pytest.raises(NotFoundError):
        claim_service.cancel_claim(claim.claimID, _customer(customer_factory()))
    cancelled = claim_service.cancel_claim(claim.claimID, _customer(sample_customer), "Fixed it myself")

    assert cancelled.status == ClaimStatus.CANCELLED


def test_request_info_only_while_pending(claim_service, submit_claim, agent):
    claim = submit_claim()
    claim_service.request_info(claim.claimID, agent, "Please upload the purchase receipt")
    claim_service.validate_claim(claim.claimID, agent)

    with pytest.raises(InvalidTransitionError):
        claim_service.request_info(claim.claimID, agent, "And a photo of the damage")


def test_bulk_update_reports_each_item(claim_service, submit_claim, barcode_factory, activate_barcode, sample_customer, clock, agent):
    first = submit_claim()
    second = submit_claim(warranty=activate_barcode(barcode_factory(), sample_customer, clock))

    outcome = claim_service.bulk_update_status(agent, [first.claimID, 999999, second.claimID], "validate")

    assert outcome["requested"] == 3
    assert outcome["succeeded"] == 2
    assert outcome["failed"] == 1
    failure = outcome["results"][1]
    assert failure["success"] is False
    assert failure["error"]["kind"] == "not_found"


def test_bulk_update_stops_at_the_deadline(claim_service, submit_claim, agent):
    claim = submit_claim()

    with pytest.raises(DeadlineExceededError):
        claim_service.bulk_update_status(agent, [claim.claimID], "validate", deadline=Deadline(0))


def test_bulk_update_limits_batch_size(claim_service, agent):
    with pytest.raises(InvalidArgumentError):
        claim_service.bulk_update_status(agent, list(range(1, 102)), "validate")
    with pytest.raises(InvalidArgumentError):
        claim_service.bulk_update_status(agent, [], "validate")


def test_staff_notes_hidden_from_the_customer(claim_service, submit_claim, sample_customer, agent):
    claim = submit_claim()
    claim_service.add_note(claim.claimID, agent, "Customer called twice", visible_to_customer=False)
    claim_service.add_note(claim.claimID, agent, "We will call you tomorrow")
    claim_service.add_note(claim.claimID, _customer(sample_customer), "Thanks", visible_to_customer=False)

    customer_view = claim_service.get_timeline(claim.claimID, _customer(sample_customer))
    staff_view = claim_service.get_timeline(claim.claimID, agent)

    assert [event.description for event in customer_view][1:] == ["We will call you tomorrow", "Thanks"]
    assert len(staff_view) == 4
    assert claim_service.get_claim(claim.claimID, agent).internal_notes == "Customer called twice"


def test_customers_only_see_their_own_claims(
    claim_service, submit_claim, barcode_factory, activate_barcode, customer_factory, sample_customer, clock, agent
):
    other = customer_factory()
    mine = submit_claim()
    theirs = submit_claim(warranty=activate_barcode(barcode_factory(), other, clock), customer=other)

    my_claims, my_total = claim_service.list_claims(_customer(sample_customer))
    all_claims, all_total = claim_service.list_claims(agent)

    assert my_total == 1 and my_claims[0].claimID == mine.claimID
    assert all_total == 2
    with pytest.raises(NotFoundError):
        claim_service.get_claim(theirs.claimID, _customer(sample_customer))
    assert claim_service.get_claim_by_number(mine.claim_number.lower(), agent).claimID == mine.claimID


def test_overdue_claims_and_statistics(claim_service, submit_claim, agent, technician, clock):
    claim = submit_claim()
    claim_service.validate_claim(claim.claimID, agent)
    eta = (clock.now() + timedelta(days=1)).isoformat()
    claim_service.assign_technician(claim.claimID, agent, technician.actor_id, estimated_completion_date=eta)
    clock.advance(days=3)

    overdue, total = claim_service.list_overdue(agent)
    stats = claim_service.statistics(agent)

    assert total == 1 and overdue[0].claimID == claim.claimID
    assert stats["total_claims"] == 1
    assert stats["by_status"]["assigned"] == 1
    assert stats["overdue_claims"] == 1


def test_shipping_updates_delivery_tracking(claim_service, ticket_service, claim_in_repair, finish_ticket, agent, technician):
    ticket = finish_ticket(claim_in_repair, technician)
    ticket_service.quality_check(ticket.ticketID, agent, approved=True)
    claim_service.record_resolution(claim_in_repair.claimID, agent, ClaimAction.REPAIR)
    claim_service.ship(claim_in_repair.claimID, agent, tracking_number="TRACK-1")

    moving = claim_service.update_delivery_status(claim_in_repair.claimID, agent, "out_for_delivery")
    assert moving.delivery_status == DeliveryStatus.OUT_FOR_DELIVERY

    delivered = claim_service.update_delivery_status(claim_in_repair.claimID, agent, "delivered")
    assert delivered.status == ClaimStatus.DELIVERED


def test_cost_updates_recompute_the_total(claim_service, submit_claim, agent):
    claim = submit_claim()

    updated = claim_service.update_costs(claim.claimID, agent, shipping_cost="12.50", replacement_cost="40")

    assert updated.total_cost == Decimal("52.50")
    with pytest.raises(InvalidArgumentError):
        claim_service.update_costs(claim.claimID, agent, repair_cost="-1")


def test_customers_cannot_drive_staff_transitions(claim_service, submit_claim, sample_customer):
    claim = submit_claim()

    with pytest.raises(ForbiddenError):
        claim_service.validate_claim(claim.claimID, _customer(sample_customer))


def test_shipping_a_pending_claim_is_refused_and_changes_nothing(claim_service, submit_claim, agent):
    claim = submit_claim()

    with pytest.raises(InvalidTransitionError) as exc_info:
        claim_service.update_status(claim.claimID, agent, "ship", tracking_number="1Z999AA10123456784")

    assert exc_info.value.current_state == "pending"
    assert "validate" in exc_info.value.legal_actions
    assert "ship" not in exc_info.value.legal_actions
    reloaded = claim_service.get_claim(claim.claimID, agent)
    assert reloaded.status == ClaimStatus.PENDING
    assert reloaded.delivery_status == DeliveryStatus.NOT_SHIPPED
    assert reloaded.tracking_number is None
    assert [event.event_type.value for event in reloaded.timeline] == ["submitted"]
