"""Action Queue - Ordered holding area for proposed changes awaiting execution."""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Any, Iterable

from common.logging import LoggerMixin

from .errors import ActionInFlightError, InvalidTransitionError, NotFoundError, ValidationError
from .events import EventBus, EventType
from .models import (
    ActionStatus,
    ProposedChange,
    QueuedAction,
    RiskLevel,
    TERMINAL_STATUSES,
    as_naive_utc,
    check_transition,
)
from .safety.guardrails import GuardrailSettingsStore
from .safety.risk import RiskClassifier, RiskPolicy

ENQUEUE_STATUSES = frozenset({ActionStatus.PENDING, ActionStatus.APPROVED})
CANCELLABLE_STATUSES = frozenset({ActionStatus.PENDING, ActionStatus.APPROVED})


class ActionQueue(LoggerMixin):
    """FIFO queue of QueuedActions with a forward-only lifecycle.

    The queue is the sole owner of its entries. Every mutation runs under a
    re-entrant lock; entries that are executing cannot be removed, cancelled
    or cleared.
    """

    def __init__(
        self,
        settings_store: GuardrailSettingsStore | None = None,
        events: EventBus | None = None,
    ) -> None:
        """Initialize action queue.

        Args:
            settings_store: Source of the risk thresholds
            events: Bus for domain events
        """
        self.settings_store = settings_store or GuardrailSettingsStore()
        self.events = events
        self._actions: list[QueuedAction] = []
        self._lock = threading.RLock()

    def classify(self, change: ProposedChange, performance_score: float | None = None) -> RiskLevel:
        """Risk of ``change`` under the current thresholds."""
        policy = RiskPolicy.from_settings(self.settings_store.current)
        return RiskClassifier(policy).classify(change, performance_score)

    def enqueue(
        self,
        change: ProposedChange,
        performance_score: float | None = None,
        *,
        status: ActionStatus = ActionStatus.PENDING,
        scheduled_at: datetime | None = None,
    ) -> QueuedAction:
        """Classify ``change`` and append it at the tail of the queue."""
        return self.enqueue_many(
            [(change, performance_score)], status=status, scheduled_at=scheduled_at
        )[0]

    def enqueue_many(
        self,
        items: Iterable[tuple[ProposedChange, float | None]],
        *,
        status: ActionStatus = ActionStatus.PENDING,
        scheduled_at: datetime | None = None,
    ) -> list[QueuedAction]:
        """Append several changes in order as one atomic step."""
        if ActionStatus(status) not in ENQUEUE_STATUSES:
            raise ValidationError(f"Actions can only be enqueued as pending or approved, not {status}")

        actions = [
            QueuedAction(
                change=change,
                risk_level=self.classify(change, score),
                status=status,
                performance_score=score,
                scheduled_at=scheduled_at,
            )
            for change, score in items
        ]

        with self._lock:
            self._actions.extend(actions)

        for action in actions:
            self.logger.info(
                "action_enqueued",
                action_id=action.id,
                action_type=action.change.action_type,
                entity_id=action.change.entity_id,
                risk_level=action.risk_level,
                status=action.status,
            )
            self._publish(EventType.ACTION_ENQUEUED, action)
        return actions

    def approve(self, action_id: str) -> QueuedAction:
        with self._lock:
            action = self._transition(action_id, ActionStatus.APPROVED)
        self.logger.info("action_approved", action_id=action_id)
        self._publish(EventType.ACTION_APPROVED, action)
        return action

    def reject(self, action_id: str) -> QueuedAction:
        with self._lock:
            action = self._transition(action_id, ActionStatus.REJECTED)
        self.logger.info("action_rejected", action_id=action_id)
        self._publish(EventType.ACTION_REJECTED, action)
        return action

    def approve_all(self) -> list[QueuedAction]:
        """Approve every pending action; other entries are untouched."""
        return self._bulk_transition(ActionStatus.APPROVED, EventType.ACTION_APPROVED)

    def reject_all(self) -> list[QueuedAction]:
        """Reject every pending action; other entries are untouched."""
        return self._bulk_transition(ActionStatus.REJECTED, EventType.ACTION_REJECTED)

    def remove(self, action_id: str) -> QueuedAction:
        """Remove an entry in any state except executing."""
        with self._lock:
            action = self.get(action_id)
            if action.status == ActionStatus.EXECUTING:
                raise ActionInFlightError(
                    f"Action {action_id} is executing and cannot be removed",
                    action_id=action_id,
                )
            self._actions.remove(action)

        self.logger.info("action_removed", action_id=action_id, status=action.status)
        self._publish(EventType.ACTION_REMOVED, action)
        return action

    def cancel(self, action_id: str) -> QueuedAction:
        """Withdraw an entry that has not started executing yet."""
        with self._lock:
            action = self.get(action_id)
            if action.status == ActionStatus.EXECUTING:
                raise ActionInFlightError(
                    f"Action {action_id} is executing and cannot be cancelled",
                    action_id=action_id,
                )
            if action.status not in CANCELLABLE_STATUSES:
                raise InvalidTransitionError(
                    action_id, ActionStatus(action.status).value, "cancelled"
                )
            self._actions.remove(action)

        self.logger.info("action_cancelled", action_id=action_id)
        self._publish(EventType.ACTION_REMOVED, action, cancelled=True)
        return action

    def clear_completed(self) -> int:
        """Drop completed, rejected and failed entries. Returns how many."""
        with self._lock:
            before = len(self._actions)
            self._actions = [a for a in self._actions if a.status not in TERMINAL_STATUSES]
            removed = before - len(self._actions)

        self.logger.info("queue_cleared_completed", removed=removed)
        return removed

    def clear_all(self) -> int:
        """Drop every entry except those currently executing."""
        with self._lock:
            before = len(self._actions)
            self._actions = [a for a in self._actions if a.status == ActionStatus.EXECUTING]
            removed = before - len(self._actions)

        self.logger.info("queue_cleared", removed=removed, kept_executing=len(self._actions))
        return removed

    def get(self, action_id: str) -> QueuedAction:
        with self._lock:
            for action in self._actions:
                if action.id == action_id:
                    return action
        raise NotFoundError(f"Queued action not found: {action_id}")

    def list(self, status: ActionStatus | str | None = None) -> list[QueuedAction]:
        """Entries in queue order, optionally filtered by status."""
        with self._lock:
            if status is None:
                return list(self._actions)
            return [a for a in self._actions if a.status == status]

    @property
    def pending_count(self) -> int:
        """Entries still waiting to run (pending or approved)."""
        with self._lock:
            return len([a for a in self._actions if a.status in CANCELLABLE_STATUSES])

    @property
    def is_executing(self) -> bool:
        with self._lock:
            return any(a.status == ActionStatus.EXECUTING for a in self._actions)

    def __len__(self) -> int:
        return len(self._actions)

    # Executor hooks

    def snapshot_approved(self, now: datetime | None = None) -> list[QueuedAction]:
        """Approved entries that are due, in queue order."""
        now = as_naive_utc(now) or datetime.utcnow()
        with self._lock:
            return [
                a for a in self._actions
                if a.status == ActionStatus.APPROVED and a.is_due(now)
            ]

    def mark_executing(self, action_id: str) -> QueuedAction:
        with self._lock:
            return self._transition(action_id, ActionStatus.EXECUTING)

    def mark_completed(self, action_id: str) -> QueuedAction:
        with self._lock:
            action = self._transition(
                action_id, ActionStatus.COMPLETED, executed_at=datetime.utcnow()
            )
        self._publish(EventType.ACTION_EXECUTED, action)
        return action

    def mark_failed(self, action_id: str, error: str) -> QueuedAction:
        with self._lock:
            action = self._transition(
                action_id, ActionStatus.FAILED, executed_at=datetime.utcnow(), error=error
            )
        self._publish(EventType.ACTION_FAILED, action, error=error)
        return action

    def _transition(self, action_id: str, target: ActionStatus, **updates: Any) -> QueuedAction:
        action = self.get(action_id)
        check_transition(action_id, action.status, target)
        action.status = target
        for field, value in updates.items():
            setattr(action, field, value)
        return action

    def _bulk_transition(self, target: ActionStatus, event_type: EventType) -> list[QueuedAction]:
        with self._lock:
            affected = [a for a in self._actions if a.status == ActionStatus.PENDING]
            for action in affected:
                action.status = target

        self.logger.info("queue_bulk_update", status=target.value, affected=len(affected))
        for action in affected:
            self._publish(event_type, action)
        return affected

    def _publish(self, event_type: EventType, action: QueuedAction, **payload: Any) -> None:
        if self.events is not None:
            self.events.publish(
                event_type,
                subject_id=action.id,
                status=action.status,
                action_type=action.change.action_type,
                entity_id=action.change.entity_id,
                **payload,
            )
