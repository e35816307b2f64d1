"""Unit tests for safe-apply mode negotiation."""

from datetime import date, datetime, timedelta

import pytest

from governance.errors import GuardrailBlockedError, NotFoundError, ValidationError
from governance.events import EventBus, EventType
from governance.executor import Executor
from governance.models import ActionStatus
from governance.queue import ActionQueue
from governance.safe_apply import (
    ApplyMode,
    ApplyOptions,
    SafeApplyNegotiator,
    change_type_of,
    estimate_impact,
)
from governance.safety.approval_gate import ApprovalStatus, ApprovalWorkflow
from governance.safety.audit import AuditLog
from governance.safety.guardrails import CampaignSnapshot, GuardrailSettingsStore


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def store():
    return GuardrailSettingsStore()


@pytest.fixture
def queue(store, events):
    return ActionQueue(store, events=events)


@pytest.fixture
def approvals():
    return ApprovalWorkflow()


@pytest.fixture
def negotiator(queue, store, approvals, events):
    return SafeApplyNegotiator(queue, store, approvals, events=events)


class TestModes:
    """Tests for the effect of each apply mode."""

    def test_direct_enqueues_approved(self, negotiator, queue, budget_change):
        effect = negotiator.apply([budget_change(100, 110)], ApplyMode.DIRECT)

        assert effect.outcome == "queued"
        assert len(effect.actions) == 1
        assert queue.get(effect.actions[0].id).status == ActionStatus.APPROVED

    def test_draft_enqueues_pending(self, negotiator, queue, make_change):
        changes = [make_change(entity_id="cmp-1"), make_change(entity_id="cmp-2")]

        effect = negotiator.apply(changes, "draft")

        assert effect.outcome == "drafted"
        assert [a.status for a in queue.list()] == ["pending", "pending"]

    def test_scheduled_combines_date_and_time(self, negotiator, queue, make_change):
        tomorrow = date.today() + timedelta(days=1)
        options = ApplyOptions(scheduled_date=tomorrow, scheduled_time="14:30")

        effect = negotiator.apply([make_change()], ApplyMode.SCHEDULED, options)

        expected = datetime(tomorrow.year, tomorrow.month, tomorrow.day, 14, 30)
        assert effect.outcome == "scheduled"
        assert effect.scheduled_at == expected
        action = queue.get(effect.actions[0].id)
        assert action.status == ActionStatus.APPROVED
        assert action.scheduled_at == expected
        assert queue.snapshot_approved() == []

    def test_scheduled_accepts_timestamp(self, negotiator, make_change):
        at = datetime.utcnow() + timedelta(hours=3)

        effect = negotiator.apply(
            [make_change()], ApplyMode.SCHEDULED, ApplyOptions(scheduled_at=at)
        )

        assert effect.actions[0].scheduled_at == at

    def test_scheduled_offset_timestamp_stored_as_utc(self, negotiator, make_change):
        options = ApplyOptions.model_validate({"scheduled_at": "2030-06-01T12:00:00+02:00"})

        effect = negotiator.apply([make_change()], ApplyMode.SCHEDULED, options)

        assert effect.scheduled_at == datetime(2030, 6, 1, 10, 0)
        assert effect.actions[0].scheduled_at == datetime(2030, 6, 1, 10, 0)

    @pytest.mark.asyncio
    async def test_scheduled_utc_timestamp_runs_when_due(
        self, negotiator, queue, stub_boundary, make_change
    ):
        options = ApplyOptions.model_validate({"scheduled_at": "2020-01-01T09:00:00Z"})
        effect = negotiator.apply([make_change()], ApplyMode.SCHEDULED, options)
        executor = Executor(queue, stub_boundary, AuditLog(), default_timeout=1.0)

        result = await executor.run()

        assert result.succeeded == 1
        assert queue.get(effect.actions[0].id).status == ActionStatus.COMPLETED

    def test_experiment_records_trial_without_enqueueing(
        self, negotiator, queue, events, budget_change
    ):
        received = []
        events.subscribe(received.append)
        options = ApplyOptions(
            experiment_name="Budget lift", traffic_split_percent=20, duration_days=21
        )

        effect = negotiator.apply([budget_change(100, 150)], ApplyMode.EXPERIMENT, options)

        trial = effect.experiment
        assert effect.outcome == "experiment_started"
        assert trial.name == "Budget lift"
        assert trial.end_date - trial.start_date == timedelta(days=21)
        assert negotiator.experiments.get(trial.id) is trial
        assert len(queue) == 0
        assert received[-1].event_type == EventType.EXPERIMENT_STARTED

    def test_unknown_experiment(self, negotiator):
        with pytest.raises(NotFoundError):
            negotiator.experiments.get("experiment-missing")


class TestValidation:
    """Tests for rejecting bad input before any effect."""

    def test_empty_batch(self, negotiator):
        with pytest.raises(ValidationError):
            negotiator.apply([], ApplyMode.DIRECT)

    def test_scheduled_needs_date(self, negotiator, queue, make_change):
        with pytest.raises(ValidationError, match="requires a date"):
            negotiator.apply([make_change()], ApplyMode.SCHEDULED)
        assert len(queue) == 0

    @pytest.mark.parametrize("value", ["24:00", "9:00", "09:60", "noon"])
    def test_scheduled_time_format(self, negotiator, make_change, value):
        options = ApplyOptions(scheduled_date=date.today(), scheduled_time=value)

        with pytest.raises(ValidationError, match="HH:MM"):
            negotiator.apply([make_change()], ApplyMode.SCHEDULED, options)

    @pytest.mark.parametrize("split", [5, 9, 51, 80])
    def test_experiment_split_range(self, negotiator, queue, make_change, split):
        options = ApplyOptions(traffic_split_percent=split)

        with pytest.raises(ValidationError):
            negotiator.apply([make_change()], ApplyMode.EXPERIMENT, options)
        assert negotiator.experiments.list() == []

    @pytest.mark.parametrize("days", [1, 10, 60])
    def test_experiment_duration_choices(self, negotiator, make_change, days):
        options = ApplyOptions(duration_days=days)

        with pytest.raises(ValidationError):
            negotiator.apply([make_change()], ApplyMode.EXPERIMENT, options)

    def test_require_approval_needs_user(self, negotiator, make_change):
        with pytest.raises(ValidationError):
            negotiator.apply(
                [make_change()], ApplyMode.DIRECT, ApplyOptions(require_approval=True)
            )


class TestGating:
    """Tests for guardrail gating and approval routing."""

    def test_blocked_batch_stores_nothing(self, negotiator, queue, budget_change):
        changes = [budget_change(100, 110), budget_change(80, 0, entity_id="cmp-2")]

        with pytest.raises(GuardrailBlockedError) as exc_info:
            negotiator.apply(changes, ApplyMode.DIRECT)

        assert "Cannot set budget to $0" in exc_info.value.message
        assert len(queue) == 0

    def test_pause_all_detection_uses_snapshot(self, negotiator, queue, make_change):
        campaigns = [
            CampaignSnapshot(id="cmp-1", status="ENABLED"),
            CampaignSnapshot(id="cmp-2", status="ENABLED"),
        ]
        changes = [make_change(entity_id="cmp-1"), make_change(entity_id="cmp-2")]

        with pytest.raises(GuardrailBlockedError):
            negotiator.apply(changes, ApplyMode.DRAFT, ApplyOptions(campaigns=campaigns))
        assert len(queue) == 0

    def test_warnings_are_surfaced(self, negotiator, budget_change):
        effect = negotiator.apply([budget_change(100, 130)], ApplyMode.DRAFT)

        assert effect.warnings == ["Large budget increase: 30% change detected."]
        assert effect.verdict.decision == "warn"

    def test_high_risk_routes_to_approval(self, negotiator, queue, approvals, make_change, manager):
        options = ApplyOptions(performance_scores={"cmp-1": 90}, requested_by=manager)

        effect = negotiator.apply([make_change()], ApplyMode.DIRECT, options)

        assert effect.outcome == "approval_requested"
        assert len(queue) == 0
        request = approvals.get(effect.approval_request.id)
        assert request.status == ApprovalStatus.PENDING
        assert request.change_type == "status_change"
        assert request.proposed_changes[0].entity_id == "cmp-1"

    def test_high_risk_without_user_is_rejected(self, negotiator, queue, budget_change):
        with pytest.raises(ValidationError):
            negotiator.apply([budget_change(100, 50)], ApplyMode.DIRECT)
        assert len(queue) == 0

    def test_require_approval_flag(self, negotiator, queue, approvals, budget_change, analyst):
        options = ApplyOptions(require_approval=True, requested_by=analyst, reason="Q4 push")

        effect = negotiator.apply([budget_change(100, 110)], ApplyMode.DIRECT, options)

        assert effect.outcome == "approval_requested"
        assert effect.approval_request.reason == "Q4 push"
        assert len(queue) == 0

    def test_draft_of_high_risk_change_is_queued(self, negotiator, queue, budget_change):
        effect = negotiator.apply([budget_change(100, 50)], ApplyMode.DRAFT)

        assert effect.outcome == "drafted"
        assert queue.get(effect.actions[0].id).risk_level == "high"

    def test_threshold_none_disables_risk_routing(
        self, queue, store, approvals, budget_change
    ):
        negotiator = SafeApplyNegotiator(
            queue, store, approvals, approval_risk_threshold=None
        )

        effect = negotiator.apply([budget_change(100, 50)], ApplyMode.DIRECT)

        assert effect.outcome == "queued"

    def test_medium_threshold(self, queue, store, approvals, budget_change, manager):
        negotiator = SafeApplyNegotiator(
            queue, store, approvals, approval_risk_threshold="medium"
        )
        options = ApplyOptions(requested_by=manager)

        effect = negotiator.apply([budget_change(100, 130)], ApplyMode.DIRECT, options)

        assert effect.outcome == "approval_requested"


class TestBatchSummary:
    """Tests for change type and impact estimation."""

    def test_change_types(self, make_change, budget_change):
        assert change_type_of([budget_change(100, 150)]) == "budget_increase"
        assert change_type_of([budget_change(100, 50)]) == "budget_decrease"
        assert change_type_of([make_change()]) == "status_change"
        assert change_type_of([make_change(action_type="update_bid")]) == "bid_change"
        assert change_type_of([make_change(), make_change()]) == "bulk_edit"
        assert (
            change_type_of([make_change(action_type="pause_all_campaigns")])
            == "pause_all_campaigns"
        )

    def test_impact_estimate(self, budget_change, make_change):
        impact = estimate_impact(
            [
                budget_change(100, 150, entity_id="cmp-1"),
                budget_change(200, 100, entity_id="cmp-2"),
                make_change(entity_id="cmp-3"),
            ]
        )

        assert impact.estimated_spend_change == -50
        assert impact.estimated_impact_percentage == 50
        assert impact.affected_entities == 3
