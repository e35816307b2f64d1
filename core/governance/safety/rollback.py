"""Rollback Engine - Reverses successful changes recorded in the audit log."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import TYPE_CHECKING

from pydantic import Field

from common.logging import LoggerMixin
from common.models import BaseModel

from ..errors import RollbackNotAllowedError
from ..events import EventBus, EventType
from ..models import (
    ROLLBACK_PREFIX,
    ActionType,
    AuditLogEntry,
    AuditSource,
    AuditStatus,
    EntityType,
    ProposedChange,
)
from ..permissions import Permission, User, require
from .audit import AuditLog

if TYPE_CHECKING:
    from ..executor import Executor

INVERSE_ACTIONS: dict[str, str] = {
    ActionType.PAUSE_CAMPAIGN.value: ActionType.ENABLE_CAMPAIGN.value,
    ActionType.ENABLE_CAMPAIGN.value: ActionType.PAUSE_CAMPAIGN.value,
    ActionType.PAUSE_AD_GROUP.value: ActionType.ENABLE_AD_GROUP.value,
    ActionType.ENABLE_AD_GROUP.value: ActionType.PAUSE_AD_GROUP.value,
    ActionType.PAUSE_AD.value: ActionType.ENABLE_AD.value,
    ActionType.ENABLE_AD.value: ActionType.PAUSE_AD.value,
}

# Value changes are undone by writing the previous value back.
VALUE_RESTORE_ACTIONS = frozenset({
    ActionType.UPDATE_BUDGET.value,
    ActionType.SET_BUDGET.value,
    ActionType.ADJUST_BUDGET.value,
    ActionType.SCALE_BUDGET.value,
    ActionType.UPDATE_BID.value,
    ActionType.ADJUST_BID.value,
})


class RollbackResult(BaseModel):
    """Result of a rollback operation."""

    original_entry_id: str
    success: bool
    rollback_entry: AuditLogEntry
    error: str | None = Field(default=None)
    duration_seconds: float = Field(default=0.0)


def rollback_refusal(entry: AuditLogEntry) -> str | None:
    """Why ``entry`` cannot be reversed, or None when it can."""
    if entry.status != AuditStatus.SUCCESS:
        return "Only successful changes can be rolled back"
    if entry.action_type.startswith(ROLLBACK_PREFIX):
        return "Rollback entries cannot themselves be rolled back"
    if entry.entity_type == EntityType.KEYWORD or "keyword" in entry.action_type:
        return "Keyword changes cannot be rolled back"
    if entry.action_type in VALUE_RESTORE_ACTIONS:
        if entry.before_value is None:
            return "Cannot determine the previous value"
    elif entry.action_type not in INVERSE_ACTIONS:
        return f"Rollback not supported for action type: {entry.action_type}"
    return None


class RollbackEngine(LoggerMixin):
    """Reverses a successful audited change by applying its inverse.

    The inverse runs through the executor's single-call path, so it shares
    the mutation lock with queue runs. Guardrails are not re-evaluated: the
    inverse restores a state the account was already in.
    """

    def __init__(
        self,
        audit_log: AuditLog,
        executor: Executor,
        events: EventBus | None = None,
    ) -> None:
        """Initialize rollback engine.

        Args:
            audit_log: Source of entries and sink for rollback outcomes
            executor: Executor providing the single-call mutation path
            events: Bus for domain events
        """
        self.audit_log = audit_log
        self.executor = executor
        self.events = events
        self._lock = asyncio.Lock()

    def can_rollback(self, entry: AuditLogEntry) -> bool:
        return rollback_refusal(entry) is None

    def build_inverse(self, entry: AuditLogEntry) -> ProposedChange:
        """ProposedChange that moves the entity from ``after`` back to ``before``."""
        return ProposedChange(
            entity_type=entry.entity_type,
            entity_id=entry.entity_id,
            entity_name=entry.entity_name,
            action_type=INVERSE_ACTIONS.get(entry.action_type, entry.action_type),
            field_name=self._field_for(entry),
            current_value=entry.after_value,
            new_value=entry.before_value,
            account_id=entry.account_id,
            reason=f"Rollback of {entry.id}",
        )

    async def rollback(
        self,
        entry_id: str,
        user: User | None = None,
        timeout: float | None = None,
    ) -> RollbackResult:
        """Roll back an audited change.

        Args:
            entry_id: Audit entry to reverse
            user: Operator requesting the rollback
            timeout: Seconds allowed for the external call

        Returns:
            Rollback result carrying the new audit entry

        Raises:
            NotFoundError: unknown entry
            AuthorizationError: user lacks edit capability
            RollbackNotAllowedError: entry is not reversible
        """
        async with self._lock:
            if user is not None:
                require(user, Permission.EDIT, "roll back changes")

            entry = self.audit_log.get(entry_id)
            refusal = rollback_refusal(entry) or self._already_rolled_back(entry)
            if refusal:
                raise RollbackNotAllowedError(refusal, entry_id=entry_id)

            self.logger.info(
                "rollback_started",
                entry_id=entry_id,
                action_type=entry.action_type,
                entity_id=entry.entity_id,
            )

            start_time = datetime.utcnow()
            outcome, rollback_entry = await self.executor.execute_change(
                self.build_inverse(entry),
                action_type=f"{ROLLBACK_PREFIX}{entry.action_type}",
                source=AuditSource.ROLLBACK,
                rollback_of=entry.id,
                user_id=user.id if user else None,
                timeout=timeout,
            )
            duration = (datetime.utcnow() - start_time).total_seconds()

        self.logger.info(
            "rollback_completed",
            entry_id=entry_id,
            rollback_entry_id=rollback_entry.id,
            success=outcome.ok,
            duration=duration,
        )
        if self.events is not None:
            self.events.publish(
                EventType.ROLLED_BACK,
                subject_id=entry_id,
                rollback_entry_id=rollback_entry.id,
                success=outcome.ok,
            )

        return RollbackResult(
            original_entry_id=entry_id,
            success=outcome.ok,
            rollback_entry=rollback_entry,
            error=outcome.error,
            duration_seconds=duration,
        )

    def _already_rolled_back(self, entry: AuditLogEntry) -> str | None:
        earlier = self.audit_log.query(
            rollback_of=entry.id, status=AuditStatus.SUCCESS.value, limit=1
        )
        if earlier.total:
            return "Change has already been rolled back"
        return None

    @staticmethod
    def _field_for(entry: AuditLogEntry) -> str:
        action = entry.action_type
        if "budget" in action:
            return "budget"
        if "bid" in action:
            return "bid"
        return "status"
