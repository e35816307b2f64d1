"""Unit tests for the approval workflow."""

from datetime import datetime, timedelta

import pytest
from pydantic import ValidationError as PydanticValidationError

from governance.errors import (
    AuthorizationError,
    InvalidTransitionError,
    NotFoundError,
    RequestExpiredError,
)
from governance.events import EventBus, EventType
from governance.safety.approval_gate import (
    PRIORITY_ORDER,
    ApprovalStatus,
    ApprovalWorkflow,
    ChangeDetail,
    ChangeRequest,
    ImpactEstimate,
    Priority,
    PriorityPolicy,
    ReviewDecision,
)


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def workflow(events):
    return ApprovalWorkflow(events=events)


def budget_request(**overrides):
    data = {
        "change_type": "budget_increase",
        "entity_type": "campaign",
        "entity_id": "cmp-1",
        "entity_name": "Brand Search",
        "changes": [
            ChangeDetail(
                field="budget",
                current_value=100,
                new_value=115,
                display_label="Daily budget",
            )
        ],
        "reason": "Seasonal demand",
        "impact": ImpactEstimate(
            estimated_spend_change=450,
            estimated_impact_percentage=15,
            affected_entities=1,
        ),
    }
    data.update(overrides)
    return ChangeRequest(**data)


class TestCreate:
    """Tests for creating requests."""

    def test_create_pending_request(self, workflow, analyst):
        request = workflow.create(budget_request(), analyst)

        assert request.status == ApprovalStatus.PENDING
        assert request.requested_by.id == analyst.id
        assert request.expires_at == request.requested_at + timedelta(days=7)
        assert request.expired is False
        assert workflow.get(request.id) is request

    def test_expiry_days_configurable(self, analyst):
        workflow = ApprovalWorkflow(expiry_days=2)
        request = workflow.create(budget_request(), analyst)

        assert request.expires_at - request.requested_at == timedelta(days=2)

    def test_request_needs_changes(self):
        with pytest.raises(PydanticValidationError):
            budget_request(changes=[])

    def test_request_needs_reason(self):
        with pytest.raises(PydanticValidationError):
            budget_request(reason="")

    def test_changes_derived_from_proposed_changes(self, budget_change):
        request = budget_request(changes=[], proposed_changes=[budget_change(100, 150)])

        assert len(request.changes) == 1
        assert request.changes[0].field == "budget"
        assert request.changes[0].display_label.startswith("Set Budget")

    def test_create_publishes_event(self, workflow, events, analyst):
        received = []
        events.subscribe(received.append)

        request = workflow.create(budget_request(), analyst)

        assert received[0].event_type == EventType.REQUEST_CREATED
        assert received[0].subject_id == request.id


class TestPriority:
    """Tests for priority assignment."""

    @pytest.fixture
    def policy(self):
        return PriorityPolicy()

    def test_low_impact_low_priority(self, policy):
        impact = ImpactEstimate(estimated_impact_percentage=5, affected_entities=1)
        assert policy.priority("label_change", impact) == Priority.LOW

    def test_budget_change_medium_priority(self, policy):
        impact = ImpactEstimate(estimated_impact_percentage=15, affected_entities=1)
        assert policy.priority("budget_increase", impact) == Priority.MEDIUM

    def test_large_impact_high_priority(self, policy):
        impact = ImpactEstimate(estimated_impact_percentage=-60, affected_entities=1)
        assert policy.priority("label_change", impact) == Priority.HIGH

    def test_many_entities_high_priority(self, policy):
        impact = ImpactEstimate(affected_entities=12)
        assert policy.priority("label_change", impact) == Priority.HIGH

    def test_bulk_edit_high_priority(self, policy):
        assert policy.priority("bulk_edit", ImpactEstimate()) == Priority.HIGH

    def test_priority_is_monotonic(self, policy):
        def rank(percent, entities):
            impact = ImpactEstimate(
                estimated_impact_percentage=percent, affected_entities=entities
            )
            return PRIORITY_ORDER.index(policy.priority("status_change", impact))

        percents = range(0, 101, 5)
        entity_counts = (1, 2, 3, 5, 10, 20)
        for entities in entity_counts:
            ranks = [rank(p, entities) for p in percents]
            assert ranks == sorted(ranks)
        for percent in percents:
            ranks = [rank(percent, e) for e in entity_counts]
            assert ranks == sorted(ranks)


class TestReview:
    """Tests for reviewing requests."""

    def test_manager_approves(self, workflow, analyst, manager):
        request = workflow.create(budget_request(), analyst)

        reviewed = workflow.review(request.id, ReviewDecision.APPROVE, manager, "Looks good")

        assert reviewed.status == ApprovalStatus.APPROVED
        assert reviewed.reviewed_by.id == manager.id
        assert reviewed.reviewed_at is not None
        assert reviewed.review_comments == "Looks good"

    def test_reject_with_string_decision(self, workflow, analyst, admin):
        request = workflow.create(budget_request(), analyst)

        assert workflow.review(request.id, "reject", admin).status == ApprovalStatus.REJECTED

    def test_analyst_cannot_review(self, workflow, analyst):
        request = workflow.create(budget_request(), analyst)

        with pytest.raises(AuthorizationError):
            workflow.review(request.id, ReviewDecision.APPROVE, analyst)
        assert workflow.get(request.id).status == ApprovalStatus.PENDING

    def test_review_twice_fails(self, workflow, analyst, manager):
        request = workflow.create(budget_request(), analyst)
        workflow.review(request.id, ReviewDecision.APPROVE, manager)

        with pytest.raises(InvalidTransitionError):
            workflow.review(request.id, ReviewDecision.REJECT, manager)
        assert workflow.get(request.id).status == ApprovalStatus.APPROVED

    def test_expired_request_cannot_be_reviewed(self, workflow, analyst, manager):
        request = workflow.create(budget_request(), analyst)
        request.expires_at = datetime.utcnow() - timedelta(minutes=1)

        assert request.is_expired()
        with pytest.raises(RequestExpiredError):
            workflow.review(request.id, ReviewDecision.APPROVE, manager)
        assert workflow.get(request.id).status == ApprovalStatus.PENDING

    def test_unknown_request(self, workflow, manager):
        with pytest.raises(NotFoundError):
            workflow.review("approval-missing", ReviewDecision.APPROVE, manager)


class TestCancel:
    """Tests for cancelling requests."""

    def test_requester_can_cancel(self, workflow, analyst):
        request = workflow.create(budget_request(), analyst)

        assert workflow.cancel(request.id, analyst).status == ApprovalStatus.CANCELLED

    def test_approver_can_cancel_others(self, workflow, analyst, manager):
        request = workflow.create(budget_request(), analyst)

        assert workflow.cancel(request.id, manager).status == ApprovalStatus.CANCELLED

    def test_other_user_cannot_cancel(self, workflow, analyst, viewer):
        request = workflow.create(budget_request(), analyst)

        with pytest.raises(AuthorizationError):
            workflow.cancel(request.id, viewer)

    def test_cannot_cancel_reviewed(self, workflow, analyst, manager):
        request = workflow.create(budget_request(), analyst)
        workflow.review(request.id, ReviewDecision.APPROVE, manager)

        with pytest.raises(InvalidTransitionError):
            workflow.cancel(request.id, analyst)


class TestQueries:
    """Tests for listing and statistics."""

    def test_stats(self, workflow, analyst, manager):
        approved = workflow.create(budget_request(), analyst)
        rejected = workflow.create(budget_request(), analyst)
        cancelled = workflow.create(budget_request(), analyst)
        expired = workflow.create(budget_request(), analyst)
        workflow.create(budget_request(), analyst)

        workflow.review(approved.id, ReviewDecision.APPROVE, manager)
        workflow.review(rejected.id, ReviewDecision.REJECT, manager)
        workflow.cancel(cancelled.id, analyst)
        expired.expires_at = datetime.utcnow() - timedelta(seconds=1)

        stats = workflow.get_stats()

        assert stats == {
            "total": 5,
            "pending": 2,
            "approved": 1,
            "rejected": 1,
            "cancelled": 1,
            "expired": 1,
        }

    def test_pending_excludes_expired_oldest_first(self, workflow, analyst):
        first = workflow.create(budget_request(), analyst)
        second = workflow.create(budget_request(), analyst)
        stale = workflow.create(budget_request(), analyst)
        stale.expires_at = datetime.utcnow() - timedelta(seconds=1)

        assert [r.id for r in workflow.pending()] == [first.id, second.id]
        assert len(workflow.pending(include_expired=True)) == 3

    def test_list_filters_and_paginates(self, workflow, analyst, manager):
        for _ in range(4):
            workflow.create(budget_request(), analyst)
        bulk = workflow.create(budget_request(change_type="bulk_edit"), manager)

        page = workflow.list(requested_by=manager.id)
        assert page.total == 1
        assert page.items[0].id == bulk.id

        page = workflow.list(limit=2, offset=0)
        assert page.total == 5
        assert len(page.items) == 2
        assert page.has_more is True

        assert workflow.list(priority="high").total == 1
