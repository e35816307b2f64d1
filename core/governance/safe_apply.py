"""Safe Apply - Negotiates how a batch of proposed changes takes effect."""

from __future__ import annotations

import re
import threading
from datetime import date, datetime, time, timedelta
from enum import Enum
from uuid import uuid4

from pydantic import Field, field_validator

from common.logging import LoggerMixin
from common.models import BaseModel

from .errors import GuardrailBlockedError, NotFoundError, ValidationError
from .events import EventBus, EventType
from .models import (
    ActionStatus,
    ActionType,
    ProposedChange,
    QueuedAction,
    as_naive_utc,
    risk_at_least,
    to_number,
)
from .permissions import User
from .queue import ActionQueue
from .safety.approval_gate import (
    ApprovalRequest,
    ApprovalWorkflow,
    ChangeRequest,
    ImpactEstimate,
)
from .safety.guardrails import (
    CampaignSnapshot,
    GuardrailPolicyEngine,
    GuardrailSettingsStore,
    GuardrailVerdict,
)

EXPERIMENT_DURATIONS = (7, 14, 21, 30)
MIN_TRAFFIC_SPLIT = 10
MAX_TRAFFIC_SPLIT = 50
TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


class ApplyMode(str, Enum):
    """How a batch of changes takes effect."""

    DIRECT = "direct"
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    EXPERIMENT = "experiment"


class ApplyOptions(BaseModel):
    """Mode-specific options for ``apply``."""

    # Scheduled
    scheduled_date: date | None = Field(default=None)
    scheduled_time: str = Field(default="09:00", description="HH:MM, 24h")
    scheduled_at: datetime | None = Field(default=None, description="Overrides date/time")

    # Experiment
    experiment_name: str | None = Field(default=None)
    traffic_split_percent: int = Field(default=30)
    duration_days: int = Field(default=14)

    # Gating
    performance_scores: dict[str, float] = Field(default_factory=dict)
    campaigns: list[CampaignSnapshot] | None = Field(
        default=None, description="Campaign status snapshot for pause-all detection"
    )
    require_approval: bool = Field(default=False)
    requested_by: User | None = Field(default=None)
    reason: str | None = Field(default=None)

    @field_validator("scheduled_at")
    @classmethod
    def _normalize_scheduled_at(cls, value):
        return as_naive_utc(value)


class ExperimentTrial(BaseModel):
    """A recorded experiment; nothing is mutated until it is promoted."""

    id: str = Field(default_factory=lambda: f"experiment-{uuid4()}")
    name: str
    traffic_split_percent: int
    duration_days: int
    start_date: date
    end_date: date
    changes: list[ProposedChange]
    created_by: str | None = Field(default=None)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    status: str = Field(default="running")


class ApplyEffect(BaseModel):
    """What ``apply`` did with the batch."""

    mode: ApplyMode
    outcome: str = Field(
        description="queued, drafted, scheduled, experiment_started or approval_requested"
    )
    verdict: GuardrailVerdict
    warnings: list[str] = Field(default_factory=list)
    actions: list[QueuedAction] = Field(default_factory=list)
    scheduled_at: datetime | None = Field(default=None)
    experiment: ExperimentTrial | None = Field(default=None)
    approval_request: ApprovalRequest | None = Field(default=None)


class ExperimentRegistry(LoggerMixin):
    """In-process record of experiment trials."""

    def __init__(self) -> None:
        self._trials: dict[str, ExperimentTrial] = {}
        self._lock = threading.Lock()

    def add(self, trial: ExperimentTrial) -> ExperimentTrial:
        with self._lock:
            self._trials[trial.id] = trial
        self.logger.info(
            "experiment_recorded",
            experiment_id=trial.id,
            name=trial.name,
            split=trial.traffic_split_percent,
            duration_days=trial.duration_days,
        )
        return trial

    def get(self, trial_id: str) -> ExperimentTrial:
        trial = self._trials.get(trial_id)
        if trial is None:
            raise NotFoundError(f"Experiment not found: {trial_id}")
        return trial

    def list(self) -> list[ExperimentTrial]:
        return sorted(self._trials.values(), key=lambda t: t.created_at, reverse=True)


class SafeApplyNegotiator(LoggerMixin):
    """Applies a batch of changes in one of four modes.

    Validation happens before any effect. The whole batch is gated by the
    guardrail engine: one blocked change refuses the batch and nothing is
    stored. Batches that are explicitly flagged, or whose risk reaches
    ``approval_risk_threshold``, become an approval request instead.
    """

    def __init__(
        self,
        queue: ActionQueue,
        settings_store: GuardrailSettingsStore,
        approvals: ApprovalWorkflow,
        experiments: ExperimentRegistry | None = None,
        guardrails: GuardrailPolicyEngine | None = None,
        approval_risk_threshold: str | None = "high",
        events: EventBus | None = None,
    ) -> None:
        """Initialize negotiator.

        Args:
            queue: Queue receiving direct, draft and scheduled changes
            settings_store: Current guardrail settings
            approvals: Workflow receiving batches that need sign-off
            experiments: Registry receiving experiment trials
            guardrails: Policy engine gating every batch
            approval_risk_threshold: Risk that routes a batch to approval (None disables)
            events: Bus for domain events
        """
        self.queue = queue
        self.settings_store = settings_store
        self.approvals = approvals
        self.experiments = experiments or ExperimentRegistry()
        self.guardrails = guardrails or GuardrailPolicyEngine()
        self.approval_risk_threshold = approval_risk_threshold
        self.events = events

    def apply(
        self,
        changes: list[ProposedChange],
        mode: ApplyMode | str,
        options: ApplyOptions | None = None,
    ) -> ApplyEffect:
        """Apply ``changes`` in ``mode``.

        Raises:
            ValidationError: invalid options or an empty batch
            GuardrailBlockedError: a guardrail blocked the batch
        """
        mode = ApplyMode(mode)
        options = options or ApplyOptions()
        scheduled_at = self._validate(changes, mode, options)

        verdict = self.guardrails.evaluate_bulk(
            changes,
            self.settings_store.current,
            performance_scores=options.performance_scores,
            campaigns=options.campaigns,
            pending_actions=self.queue.list(),
        )
        if verdict.blocked:
            self.logger.warning("apply_blocked", mode=mode.value, reason=verdict.reason)
            raise GuardrailBlockedError(verdict)

        warnings = list(verdict.reasons)

        if mode == ApplyMode.EXPERIMENT:
            return self._start_experiment(changes, options, verdict, warnings)

        if self._needs_approval(changes, mode, options):
            return self._request_approval(changes, mode, options, verdict, warnings)

        items = [(c, options.performance_scores.get(c.entity_id)) for c in changes]
        if mode == ApplyMode.DRAFT:
            actions = self.queue.enqueue_many(items, status=ActionStatus.PENDING)
            outcome = "drafted"
        elif mode == ApplyMode.SCHEDULED:
            actions = self.queue.enqueue_many(
                items, status=ActionStatus.APPROVED, scheduled_at=scheduled_at
            )
            outcome = "scheduled"
        else:
            actions = self.queue.enqueue_many(items, status=ActionStatus.APPROVED)
            outcome = "queued"

        self.logger.info(
            "changes_applied",
            mode=mode.value,
            outcome=outcome,
            count=len(actions),
            warnings=len(warnings),
        )
        return ApplyEffect(
            mode=mode,
            outcome=outcome,
            verdict=verdict,
            warnings=warnings,
            actions=actions,
            scheduled_at=scheduled_at,
        )

    def _validate(
        self,
        changes: list[ProposedChange],
        mode: ApplyMode,
        options: ApplyOptions,
    ) -> datetime | None:
        """Check the batch and options; returns the scheduled timestamp if any."""
        if not changes:
            raise ValidationError("At least one change is required")

        scheduled_at = None
        if mode == ApplyMode.SCHEDULED:
            scheduled_at = options.scheduled_at
            if scheduled_at is None:
                if options.scheduled_date is None:
                    raise ValidationError("Scheduled mode requires a date")
                if not TIME_PATTERN.match(options.scheduled_time):
                    raise ValidationError(
                        f"Invalid scheduled time {options.scheduled_time!r}, expected HH:MM"
                    )
                hours, minutes = options.scheduled_time.split(":")
                scheduled_at = datetime.combine(
                    options.scheduled_date, time(int(hours), int(minutes))
                )

        if mode == ApplyMode.EXPERIMENT:
            split = options.traffic_split_percent
            if not MIN_TRAFFIC_SPLIT <= split <= MAX_TRAFFIC_SPLIT:
                raise ValidationError(
                    f"Traffic split must be between {MIN_TRAFFIC_SPLIT} and "
                    f"{MAX_TRAFFIC_SPLIT} percent",
                    traffic_split_percent=split,
                )
            if options.duration_days not in EXPERIMENT_DURATIONS:
                raise ValidationError(
                    f"Experiment duration must be one of {list(EXPERIMENT_DURATIONS)} days",
                    duration_days=options.duration_days,
                )

        if options.require_approval and options.requested_by is None:
            raise ValidationError("An approval request needs a requesting user")
        return scheduled_at

    def _needs_approval(
        self,
        changes: list[ProposedChange],
        mode: ApplyMode,
        options: ApplyOptions,
    ) -> bool:
        if options.require_approval:
            return True
        # Drafts already wait for a human in the queue
        if mode == ApplyMode.DRAFT or self.approval_risk_threshold is None:
            return False
        return any(
            risk_at_least(
                self.queue.classify(c, options.performance_scores.get(c.entity_id)),
                self.approval_risk_threshold,
            )
            for c in changes
        )

    def _request_approval(
        self,
        changes: list[ProposedChange],
        mode: ApplyMode,
        options: ApplyOptions,
        verdict: GuardrailVerdict,
        warnings: list[str],
    ) -> ApplyEffect:
        if options.requested_by is None:
            raise ValidationError(
                "This batch needs approval; a requesting user is required"
            )

        first = changes[0]
        single_entity = len({c.entity_id for c in changes}) == 1
        request = self.approvals.create(
            ChangeRequest(
                change_type=change_type_of(changes),
                entity_type=first.entity_type,
                entity_id=first.entity_id if single_entity else None,
                entity_name=first.entity_name if single_entity else None,
                proposed_changes=changes,
                reason=options.reason or first.reason or f"{mode.value} apply of {len(changes)} change(s)",
                impact=estimate_impact(changes),
            ),
            options.requested_by,
        )

        self.logger.info("apply_routed_to_approval", request_id=request.id, count=len(changes))
        return ApplyEffect(
            mode=mode,
            outcome="approval_requested",
            verdict=verdict,
            warnings=warnings,
            approval_request=request,
        )

    def _start_experiment(
        self,
        changes: list[ProposedChange],
        options: ApplyOptions,
        verdict: GuardrailVerdict,
        warnings: list[str],
    ) -> ApplyEffect:
        start = date.today()
        trial = self.experiments.add(
            ExperimentTrial(
                name=options.experiment_name or f"Experiment {start.isoformat()}",
                traffic_split_percent=options.traffic_split_percent,
                duration_days=options.duration_days,
                start_date=start,
                end_date=start + timedelta(days=options.duration_days),
                changes=changes,
                created_by=options.requested_by.id if options.requested_by else None,
            )
        )

        if self.events is not None:
            self.events.publish(
                EventType.EXPERIMENT_STARTED,
                subject_id=trial.id,
                name=trial.name,
                change_count=len(changes),
            )
        return ApplyEffect(
            mode=ApplyMode.EXPERIMENT,
            outcome="experiment_started",
            verdict=verdict,
            warnings=warnings,
            experiment=trial,
        )


def change_type_of(changes: list[ProposedChange]) -> str:
    """Summarize a batch as an approval change type."""
    if len(changes) > 1:
        return ActionType.BULK_EDIT.value

    change = changes[0]
    if change.action_type == ActionType.PAUSE_ALL_CAMPAIGNS:
        return change.action_type
    if change.is_budget_change:
        percent = change.budget_change_percent
        if percent is not None and percent < 0:
            return "budget_decrease"
        return "budget_increase"
    if "bid" in change.action_type:
        return "bid_change"
    if change.action_type.startswith(("pause", "enable")):
        return "status_change"
    return change.action_type


def estimate_impact(changes: list[ProposedChange]) -> ImpactEstimate:
    """Rough impact of a batch from its budget deltas and entity count."""
    spend_change = 0.0
    swings: list[float] = []
    for change in changes:
        if not change.is_budget_change:
            continue
        current = to_number(change.current_value)
        new = to_number(change.new_value)
        if current is not None and new is not None:
            spend_change += new - current
        percent = change.budget_change_percent
        if percent is not None:
            swings.append(percent)

    return ImpactEstimate(
        estimated_spend_change=spend_change or None,
        estimated_impact_percentage=max(swings, key=abs) if swings else None,
        affected_entities=len({c.entity_id for c in changes}),
    )
