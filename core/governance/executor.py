"""Executor - Runs approved queue entries against the mutation boundary."""

from __future__ import annotations

import asyncio
from datetime import datetime
from uuid import uuid4

from pydantic import Field

from common.logging import LoggerMixin
from common.models import BaseModel

from .errors import ExecutionInProgressError, InvalidTransitionError, NotFoundError
from .models import ActionStatus, AuditLogEntry, AuditSource, ProposedChange
from .mutation import MutationBoundary, MutationResult
from .queue import ActionQueue
from .safety.audit import AuditLog

TIMEOUT_ERROR = "timeout"


class ActionResult(BaseModel):
    """Result of a single queued action's execution."""

    action_id: str = Field(description="Queued action ID")
    status: str = Field(description="completed, failed or skipped")
    success: bool = Field(default=False)
    error: str | None = Field(default=None)
    audit_entry_id: str | None = Field(default=None)

    started_at: datetime | None = Field(default=None)
    completed_at: datetime | None = Field(default=None)
    duration_ms: int | None = Field(default=None)


class ExecutionResult(BaseModel):
    """Result of one ``run()``."""

    execution_id: str = Field(default_factory=lambda: str(uuid4()))

    # Counts
    total_actions: int = Field(default=0)
    succeeded: int = Field(default=0)
    failed: int = Field(default=0)
    skipped: int = Field(default=0)

    # Results
    action_results: list[ActionResult] = Field(default_factory=list)

    # Timing
    started_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: datetime | None = Field(default=None)
    duration_ms: int | None = Field(default=None)

    status: str = Field(default="in_progress")


class Executor(LoggerMixin):
    """Sequential, single-flight executor of approved queue entries.

    Features:
    - Snapshot of approved, due entries at the start of a run
    - Per-action failure isolation (no retry)
    - Timeout per external call
    - One mutation in flight at a time, shared with rollbacks
    """

    def __init__(
        self,
        queue: ActionQueue,
        boundary: MutationBoundary,
        audit_log: AuditLog,
        default_timeout: float = 60.0,
    ) -> None:
        """Initialize executor.

        Args:
            queue: Queue whose approved entries are executed
            boundary: Mutation boundary for external calls
            audit_log: Log receiving one entry per attempted call
            default_timeout: Seconds allowed per external call
        """
        self.queue = queue
        self.boundary = boundary
        self.audit_log = audit_log
        self.default_timeout = default_timeout

        self._running = False
        self._mutation_lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._running

    async def run(self, timeout: float | None = None, user_id: str | None = None) -> ExecutionResult:
        """Execute every approved entry once, in queue order.

        Args:
            timeout: Seconds allowed per external call
            user_id: Operator who triggered the run

        Returns:
            Execution result

        Raises:
            ExecutionInProgressError: another run is in flight
        """
        # Check-and-set with no await in between
        if self._running:
            raise ExecutionInProgressError("An execution run is already in progress")
        self._running = True

        try:
            snapshot = self.queue.snapshot_approved()
            result = ExecutionResult(total_actions=len(snapshot))

            self.logger.info(
                "execution_started",
                execution_id=result.execution_id,
                action_count=len(snapshot),
            )

            for action in snapshot:
                action_result = await self._execute_action(action.id, timeout, user_id)
                result.action_results.append(action_result)

                if action_result.success:
                    result.succeeded += 1
                elif action_result.status == "skipped":
                    result.skipped += 1
                else:
                    result.failed += 1

            result.completed_at = datetime.utcnow()
            result.duration_ms = int(
                (result.completed_at - result.started_at).total_seconds() * 1000
            )
            result.status = "completed" if result.failed == 0 else "completed_with_errors"

            self.logger.info(
                "execution_complete",
                execution_id=result.execution_id,
                succeeded=result.succeeded,
                failed=result.failed,
                skipped=result.skipped,
            )
            return result
        finally:
            self._running = False

    async def _execute_action(
        self,
        action_id: str,
        timeout: float | None,
        user_id: str | None,
    ) -> ActionResult:
        """Execute a single queued action."""
        started_at = datetime.utcnow()
        try:
            action = self.queue.mark_executing(action_id)
        except (NotFoundError, InvalidTransitionError) as e:
            # Removed or changed after the snapshot was taken
            self.logger.info("action_skipped", action_id=action_id, reason=e.message)
            return ActionResult(action_id=action_id, status="skipped", error=e.message)

        outcome = await self._call(action.change, timeout)

        # The entry must leave executing before anything else can raise
        if outcome.ok:
            self.queue.mark_completed(action.id)
        else:
            self.queue.mark_failed(action.id, outcome.error or "Unknown error")
            self.logger.warning("action_failed", action_id=action.id, error=outcome.error)

        audit_entry_id = None
        try:
            entry = self.audit_log.record_outcome(
                action.change,
                success=outcome.ok,
                error=outcome.error,
                source=AuditSource.QUEUE,
                queued_action_id=action.id,
                user_id=user_id,
            )
            audit_entry_id = entry.id
        except Exception as e:
            self.logger.error(
                "audit_write_failed",
                action_id=action.id,
                success=outcome.ok,
                error=str(e),
            )

        completed_at = datetime.utcnow()
        return ActionResult(
            action_id=action.id,
            status=ActionStatus.COMPLETED.value if outcome.ok else ActionStatus.FAILED.value,
            success=outcome.ok,
            error=None if outcome.ok else outcome.error,
            audit_entry_id=audit_entry_id,
            started_at=started_at,
            completed_at=completed_at,
            duration_ms=int((completed_at - started_at).total_seconds() * 1000),
        )

    async def execute_change(
        self,
        change: ProposedChange,
        *,
        action_type: str | None = None,
        source: AuditSource = AuditSource.USER,
        rollback_of: str | None = None,
        user_id: str | None = None,
        timeout: float | None = None,
    ) -> tuple[MutationResult, AuditLogEntry]:
        """Execute one change outside the queue and audit the outcome.

        Used by rollbacks; shares the mutation lock with ``run()``.
        """
        outcome = await self._call(change, timeout)
        entry = self.audit_log.record_outcome(
            change,
            success=outcome.ok,
            error=outcome.error,
            action_type=action_type,
            source=source,
            rollback_of=rollback_of,
            user_id=user_id,
        )
        return outcome, entry

    async def _call(self, change: ProposedChange, timeout: float | None) -> MutationResult:
        """Call the boundary with the mutation lock held, bounded by ``timeout``."""
        timeout = self.default_timeout if timeout is None else timeout

        async with self._mutation_lock:
            try:
                return await asyncio.wait_for(self.boundary.execute(change), timeout)
            except asyncio.TimeoutError:
                self.logger.warning(
                    "mutation_timeout", entity_id=change.entity_id, timeout=timeout
                )
                return MutationResult(ok=False, error=TIMEOUT_ERROR)
            except Exception as e:
                self.logger.error(
                    "mutation_error",
                    entity_id=change.entity_id,
                    action_type=change.action_type,
                    error=str(e),
                )
                return MutationResult(ok=False, error=str(e) or type(e).__name__)
