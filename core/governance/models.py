"""Core domain models: proposed changes, queued actions and their lifecycle."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from pydantic import ConfigDict, Field, field_validator

from common.models import BaseModel

from .errors import InvalidTransitionError

ChangeValue = str | int | float | bool | None


class EntityType(str, Enum):
    """Entity kinds of the external ad account."""

    CAMPAIGN = "campaign"
    AD_GROUP = "ad_group"
    KEYWORD = "keyword"
    AD = "ad"


class ActionType(str, Enum):
    """Mutations an operator can propose."""

    PAUSE_CAMPAIGN = "pause_campaign"
    ENABLE_CAMPAIGN = "enable_campaign"
    PAUSE_AD_GROUP = "pause_ad_group"
    ENABLE_AD_GROUP = "enable_ad_group"
    PAUSE_KEYWORD = "pause_keyword"
    ENABLE_KEYWORD = "enable_keyword"
    PAUSE_AD = "pause_ad"
    ENABLE_AD = "enable_ad"
    UPDATE_BUDGET = "update_budget"
    SET_BUDGET = "set_budget"
    ADJUST_BUDGET = "adjust_budget"
    SCALE_BUDGET = "scale_budget"
    UPDATE_BID = "update_bid"
    ADJUST_BID = "adjust_bid"
    ADD_NEGATIVES = "add_negatives"
    BULK_EDIT = "bulk_edit"
    PAUSE_ALL_CAMPAIGNS = "pause_all_campaigns"


ACTION_LABELS: dict[str, str] = {
    ActionType.PAUSE_CAMPAIGN: "Pause Campaign",
    ActionType.ENABLE_CAMPAIGN: "Enable Campaign",
    ActionType.PAUSE_AD_GROUP: "Pause Ad Group",
    ActionType.ENABLE_AD_GROUP: "Enable Ad Group",
    ActionType.PAUSE_KEYWORD: "Pause Keyword",
    ActionType.ENABLE_KEYWORD: "Enable Keyword",
    ActionType.PAUSE_AD: "Pause Ad",
    ActionType.ENABLE_AD: "Enable Ad",
    ActionType.UPDATE_BUDGET: "Update Budget",
    ActionType.SET_BUDGET: "Set Budget",
    ActionType.ADJUST_BUDGET: "Adjust Budget",
    ActionType.SCALE_BUDGET: "Scale Budget",
    ActionType.UPDATE_BID: "Update Bid",
    ActionType.ADJUST_BID: "Adjust Bid",
    ActionType.ADD_NEGATIVES: "Add Negative Keywords",
    ActionType.BULK_EDIT: "Bulk Edit",
    ActionType.PAUSE_ALL_CAMPAIGNS: "Pause All Campaigns",
}

BUDGET_ACTIONS = frozenset({
    ActionType.UPDATE_BUDGET.value,
    ActionType.SET_BUDGET.value,
    ActionType.ADJUST_BUDGET.value,
    ActionType.SCALE_BUDGET.value,
})

ROLLBACK_PREFIX = "rollback_"


def action_label(action_type: str) -> str:
    """Human label for an action type; rollbacks read "Rollback: <label>"."""
    if action_type.startswith(ROLLBACK_PREFIX):
        return f"Rollback: {action_label(action_type[len(ROLLBACK_PREFIX):])}"
    return ACTION_LABELS.get(action_type, action_type.replace("_", " ").title())


def _enum_value(value):
    return value.value if isinstance(value, Enum) else value


def as_naive_utc(value: datetime | None) -> datetime | None:
    """Timestamps are kept as naive UTC; aware values are converted."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def to_number(value: ChangeValue) -> float | None:
    """Coerce a change value to a number, or None when it is not numeric."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).replace(",", "").replace("$", "").strip())
    except ValueError:
        return None


class RiskLevel(str, Enum):
    """Risk levels for proposed changes."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


RISK_ORDER = [RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH]


def risk_at_least(level: str, threshold: str) -> bool:
    """Whether ``level`` is at or above ``threshold``."""
    return RISK_ORDER.index(RiskLevel(level)) >= RISK_ORDER.index(RiskLevel(threshold))


class ProposedChange(BaseModel):
    """A single intended mutation to one entity's field. Immutable."""

    model_config = ConfigDict(frozen=True)

    entity_type: EntityType = Field(description="Kind of entity being changed")
    entity_id: str = Field(min_length=1)
    entity_name: str = Field(default="")
    action_type: str = Field(min_length=1, description="ActionType value or rollback_* type")
    field_name: str = Field(default="status")
    current_value: ChangeValue = Field(default=None)
    new_value: ChangeValue = Field(default=None)
    account_id: str | None = Field(default=None)
    ad_group_id: str | None = Field(default=None, description="Parent ad group for keywords")
    reason: str | None = Field(default=None)

    @field_validator("action_type", mode="before")
    @classmethod
    def _normalize_action_type(cls, value):
        return _enum_value(value)

    @property
    def is_pause(self) -> bool:
        if self.action_type.startswith("pause") or self.action_type.startswith("remove"):
            return True
        return str(self.new_value).upper() in {"PAUSED", "REMOVED"}

    @property
    def is_budget_change(self) -> bool:
        return self.action_type in BUDGET_ACTIONS or self.field_name == "budget"

    @property
    def budget_change_percent(self) -> float | None:
        """Signed percent change from current to new budget, if computable."""
        current = to_number(self.current_value)
        new = to_number(self.new_value)
        if current is None or new is None or current <= 0:
            return None
        return (new - current) / current * 100


class ActionStatus(str, Enum):
    """Lifecycle states of a queued action."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    ActionStatus.PENDING: frozenset({ActionStatus.APPROVED, ActionStatus.REJECTED}),
    ActionStatus.APPROVED: frozenset({ActionStatus.EXECUTING}),
    ActionStatus.EXECUTING: frozenset({ActionStatus.COMPLETED, ActionStatus.FAILED}),
    ActionStatus.REJECTED: frozenset(),
    ActionStatus.COMPLETED: frozenset(),
    ActionStatus.FAILED: frozenset(),
}

TERMINAL_STATUSES = frozenset(
    {ActionStatus.REJECTED, ActionStatus.COMPLETED, ActionStatus.FAILED}
)


def check_transition(entity_id: str, current: str, target: str) -> None:
    """Raise InvalidTransitionError unless current -> target is a legal move."""
    if ActionStatus(target) not in ALLOWED_TRANSITIONS[ActionStatus(current)]:
        raise InvalidTransitionError(
            entity_id, ActionStatus(current).value, ActionStatus(target).value
        )


class QueuedAction(BaseModel):
    """A proposed change plus its risk classification and lifecycle status."""

    id: str = Field(default_factory=lambda: f"action-{uuid4()}")
    change: ProposedChange
    risk_level: RiskLevel = Field(default=RiskLevel.LOW)
    status: ActionStatus = Field(default=ActionStatus.PENDING)
    performance_score: float | None = Field(default=None, ge=0, le=100)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    scheduled_at: datetime | None = Field(default=None)
    executed_at: datetime | None = Field(default=None)
    error: str | None = Field(default=None)

    @field_validator("scheduled_at")
    @classmethod
    def _normalize_scheduled_at(cls, value):
        return as_naive_utc(value)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_due(self, now: datetime) -> bool:
        """Scheduled actions are due once their target timestamp has passed."""
        return self.scheduled_at is None or self.scheduled_at <= now


class AuditStatus(str, Enum):
    """Outcome recorded in the audit log."""

    SUCCESS = "success"
    FAILED = "failed"


class AuditSource(str, Enum):
    """What produced an audit entry."""

    USER = "user"
    QUEUE = "queue"
    ROLLBACK = "rollback"
    SYSTEM = "system"


class AuditLogEntry(BaseModel):
    """Immutable record of an executed action's outcome."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: f"audit-{uuid4()}")
    action_type: str
    entity_type: EntityType
    entity_id: str
    entity_name: str = Field(default="")
    before_value: ChangeValue = Field(default=None)
    after_value: ChangeValue = Field(default=None)
    status: AuditStatus
    error_message: str | None = Field(default=None)
    source: AuditSource = Field(default=AuditSource.QUEUE)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    account_id: str | None = Field(default=None)
    queued_action_id: str | None = Field(default=None)
    rollback_of: str | None = Field(default=None, description="Original entry reversed by this one")
    user_id: str | None = Field(default=None)

    @field_validator("action_type", mode="before")
    @classmethod
    def _normalize_action_type(cls, value):
        return _enum_value(value)

    @property
    def is_rollback(self) -> bool:
        return self.action_type.startswith(ROLLBACK_PREFIX)
