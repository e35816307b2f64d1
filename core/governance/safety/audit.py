"""Audit Log - Append-only record of executed change outcomes."""

from __future__ import annotations

from typing import Any

from common.logging import LoggerMixin
from common.models import Page

from ..errors import NotFoundError
from ..models import (
    AuditLogEntry,
    AuditSource,
    AuditStatus,
    ProposedChange,
)
from ..persistence import AuditLogRepository, AuditQuery, InMemoryAuditLogRepository


class AuditLog(LoggerMixin):
    """Append-only audit trail of executor outcomes.

    Entries are frozen models and the log exposes no update or delete
    operation; reversing a change appends a new entry.
    """

    def __init__(self, repository: AuditLogRepository | None = None) -> None:
        """Initialize audit log.

        Args:
            repository: Persistence boundary; in-memory when omitted
        """
        self.repository = repository or InMemoryAuditLogRepository()

    def append(self, entry: AuditLogEntry) -> AuditLogEntry:
        """Append an entry to the log."""
        self.repository.add(entry)

        self.logger.info(
            f"audit_{AuditStatus(entry.status).value}",
            entry_id=entry.id,
            action_type=entry.action_type,
            entity_type=entry.entity_type,
            entity_id=entry.entity_id,
            error=entry.error_message,
        )
        return entry

    def record_outcome(
        self,
        change: ProposedChange,
        success: bool,
        error: str | None = None,
        action_type: str | None = None,
        source: AuditSource = AuditSource.QUEUE,
        queued_action_id: str | None = None,
        rollback_of: str | None = None,
        user_id: str | None = None,
    ) -> AuditLogEntry:
        """Append the outcome of executing ``change``.

        Args:
            change: Change that was sent to the mutation boundary
            success: Whether the mutation succeeded
            error: Failure reason
            action_type: Override for the recorded action type (rollbacks)
            source: What produced the outcome
            queued_action_id: Queue entry the change came from
            rollback_of: Audit entry this outcome reverses
            user_id: Operator on whose behalf the change ran

        Returns:
            Appended entry
        """
        entry = AuditLogEntry(
            action_type=action_type or change.action_type,
            entity_type=change.entity_type,
            entity_id=change.entity_id,
            entity_name=change.entity_name,
            before_value=change.current_value,
            after_value=change.new_value,
            status=AuditStatus.SUCCESS if success else AuditStatus.FAILED,
            error_message=None if success else (error or "Unknown error"),
            source=source,
            account_id=change.account_id,
            queued_action_id=queued_action_id,
            rollback_of=rollback_of,
            user_id=user_id,
        )
        return self.append(entry)

    def get(self, entry_id: str) -> AuditLogEntry:
        entry = self.repository.get(entry_id)
        if entry is None:
            raise NotFoundError(f"Audit entry not found: {entry_id}")
        return entry

    def query(self, query: AuditQuery | None = None, **filters: Any) -> Page[AuditLogEntry]:
        """Query entries, newest first.

        Either pass an AuditQuery or its fields as keyword arguments.
        """
        return self.repository.query(query or AuditQuery(**filters))

    def history_for(self, entity_id: str, limit: int = 100) -> list[AuditLogEntry]:
        """All recorded outcomes for one entity, newest first."""
        return self.query(entity_id=entity_id, limit=limit).items

    def get_stats(self, account_id: str | None = None) -> dict[str, Any]:
        """Get audit statistics."""
        total = self.query(account_id=account_id, limit=1).total
        succeeded = self.query(
            account_id=account_id, status=AuditStatus.SUCCESS.value, limit=1
        ).total
        return {
            "total_entries": total,
            "succeeded": succeeded,
            "failed": total - succeeded,
        }
