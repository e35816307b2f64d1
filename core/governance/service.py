"""Governance service - single owner of queue, approvals, settings and audit state."""

from __future__ import annotations

import asyncio
from typing import Any

from pydantic import Field

from common.config import Settings, get_settings
from common.logging import LoggerMixin
from common.models import BaseModel, Page

from .errors import GuardrailBlockedError
from .events import EventBus, EventType
from .executor import ExecutionResult, Executor
from .models import ActionStatus, AuditLogEntry, ProposedChange, QueuedAction
from .mutation import HttpMutationClient, MutationBoundary
from .permissions import Permission, User, require
from .persistence import ApprovalRepository, AuditLogRepository, build_audit_repository
from .queue import ActionQueue
from .safe_apply import (
    ApplyEffect,
    ApplyMode,
    ApplyOptions,
    ExperimentRegistry,
    ExperimentTrial,
    SafeApplyNegotiator,
)
from .safety.approval_gate import (
    ApprovalRequest,
    ApprovalStatus,
    ApprovalWorkflow,
    ChangeRequest,
    ReviewDecision,
)
from .safety.audit import AuditLog
from .safety.guardrails import GuardrailPolicyEngine, GuardrailSettings, GuardrailSettingsStore
from .safety.rollback import RollbackEngine, RollbackResult, rollback_refusal


class EnqueueOutcome(BaseModel):
    """Queued action plus the guardrail warnings raised for it."""

    action: QueuedAction
    warnings: list[str] = Field(default_factory=list)


class ReviewOutcome(BaseModel):
    """Reviewed request plus the queue entries created from it."""

    request: ApprovalRequest
    enqueued: list[QueuedAction] = Field(default_factory=list)


class RollbackEligibility(BaseModel):
    entry_id: str
    can_rollback: bool
    reason: str | None = None


class GovernanceService(LoggerMixin):
    """Command/query facade over the governance core.

    Commands are serialized through one asyncio lock. ``run`` is the
    exception: it is long-running and guarded by the executor's own
    single-flight check, so the queue stays editable while it executes.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        boundary: MutationBoundary | None = None,
        audit_repository: AuditLogRepository | None = None,
        approval_repository: ApprovalRepository | None = None,
    ) -> None:
        """Initialize service.

        Args:
            settings: Application settings
            boundary: Mutation boundary; HTTP gateway client when omitted
            audit_repository: Audit persistence; chosen from settings when omitted
            approval_repository: Approval persistence; in-memory when omitted
        """
        self.settings = settings or get_settings()
        self.events = EventBus()

        self.guardrail_settings = GuardrailSettingsStore.from_config(self.settings)
        self.guardrails = GuardrailPolicyEngine()
        self.queue = ActionQueue(self.guardrail_settings, self.events)
        self.audit_log = AuditLog(audit_repository or build_audit_repository(self.settings))

        self.boundary = boundary or HttpMutationClient(
            endpoint=self.settings.mutation_endpoint,
            timeout_seconds=self.settings.mutation_timeout_seconds,
        )
        self.executor = Executor(
            self.queue,
            self.boundary,
            self.audit_log,
            default_timeout=self.settings.execution_timeout_seconds,
        )
        self.rollbacks = RollbackEngine(self.audit_log, self.executor, self.events)
        self.approvals = ApprovalWorkflow(
            approval_repository,
            expiry_days=self.settings.approval_expiry_days,
            events=self.events,
        )
        self.experiments = ExperimentRegistry()
        self.safe_apply = SafeApplyNegotiator(
            self.queue,
            self.guardrail_settings,
            self.approvals,
            experiments=self.experiments,
            guardrails=self.guardrails,
            approval_risk_threshold=self.settings.approval_risk_threshold,
            events=self.events,
        )

        self._lock = asyncio.Lock()

    async def close(self) -> None:
        close = getattr(self.boundary, "close", None)
        if close is not None:
            await close()

    # Queue commands

    async def enqueue(
        self,
        change: ProposedChange,
        user: User,
        performance_score: float | None = None,
    ) -> EnqueueOutcome:
        """Gate ``change`` through the guardrails and add it to the queue as pending."""
        async with self._lock:
            require(user, Permission.EDIT, "queue changes")
            verdict = self.guardrails.evaluate(
                change, self.guardrail_settings.current, performance_score
            )
            if verdict.blocked:
                raise GuardrailBlockedError(verdict, entity_id=change.entity_id)
            action = self.queue.enqueue(change, performance_score)
            return EnqueueOutcome(action=action, warnings=verdict.reasons)

    async def approve(self, action_id: str, user: User) -> QueuedAction:
        async with self._lock:
            require(user, Permission.EDIT, "approve queued actions")
            return self.queue.approve(action_id)

    async def reject(self, action_id: str, user: User) -> QueuedAction:
        async with self._lock:
            require(user, Permission.EDIT, "reject queued actions")
            return self.queue.reject(action_id)

    async def approve_all(self, user: User) -> list[QueuedAction]:
        async with self._lock:
            require(user, Permission.EDIT, "approve queued actions")
            return self.queue.approve_all()

    async def reject_all(self, user: User) -> list[QueuedAction]:
        async with self._lock:
            require(user, Permission.EDIT, "reject queued actions")
            return self.queue.reject_all()

    async def remove(self, action_id: str, user: User) -> QueuedAction:
        async with self._lock:
            require(user, Permission.EDIT, "remove queued actions")
            return self.queue.remove(action_id)

    async def cancel(self, action_id: str, user: User) -> QueuedAction:
        async with self._lock:
            require(user, Permission.EDIT, "cancel queued actions")
            return self.queue.cancel(action_id)

    async def clear_completed(self, user: User) -> int:
        async with self._lock:
            require(user, Permission.EDIT, "clear the queue")
            return self.queue.clear_completed()

    async def clear_all(self, user: User) -> int:
        async with self._lock:
            require(user, Permission.EDIT, "clear the queue")
            return self.queue.clear_all()

    async def run(self, user: User, timeout: float | None = None) -> ExecutionResult:
        """Execute every approved, due queue entry."""
        require(user, Permission.EDIT, "execute queued actions")
        return await self.executor.run(timeout=timeout, user_id=user.id)

    async def apply(
        self,
        changes: list[ProposedChange],
        mode: ApplyMode | str,
        user: User,
        options: ApplyOptions | None = None,
    ) -> ApplyEffect:
        """Safe-apply a batch of changes on behalf of ``user``."""
        async with self._lock:
            require(user, Permission.EDIT, "apply changes")
            options = (options or ApplyOptions()).model_copy(update={"requested_by": user})
            return self.safe_apply.apply(changes, mode, options)

    # Approval commands

    async def create_approval_request(
        self,
        change_request: ChangeRequest,
        user: User,
    ) -> ApprovalRequest:
        async with self._lock:
            require(user, Permission.ANALYZE, "request approval")
            return self.approvals.create(change_request, user)

    async def review_approval(
        self,
        request_id: str,
        decision: ReviewDecision | str,
        user: User,
        comments: str | None = None,
    ) -> ReviewOutcome:
        """Review a request; approved requests enqueue their proposed changes as approved."""
        async with self._lock:
            request = self.approvals.review(request_id, decision, user, comments)
            enqueued: list[QueuedAction] = []
            if request.status == ApprovalStatus.APPROVED and request.proposed_changes:
                enqueued = self.queue.enqueue_many(
                    [(c, None) for c in request.proposed_changes],
                    status=ActionStatus.APPROVED,
                )
                self.logger.info(
                    "approved_changes_enqueued", request_id=request_id, count=len(enqueued)
                )
            return ReviewOutcome(request=request, enqueued=enqueued)

    async def cancel_approval(self, request_id: str, user: User) -> ApprovalRequest:
        async with self._lock:
            return self.approvals.cancel(request_id, user)

    # Settings commands

    async def update_guardrail_settings(self, user: User, **changes: Any) -> GuardrailSettings:
        async with self._lock:
            require(user, Permission.ADMIN, "change guardrail settings")
            updated = self.guardrail_settings.update(**changes)
            self.events.publish(
                EventType.SETTINGS_UPDATED, subject_id="guardrails", changed=sorted(changes)
            )
            return updated

    async def reset_guardrail_settings(self, user: User) -> GuardrailSettings:
        async with self._lock:
            require(user, Permission.ADMIN, "reset guardrail settings")
            settings = self.guardrail_settings.reset()
            self.events.publish(EventType.SETTINGS_UPDATED, subject_id="guardrails", reset=True)
            return settings

    # Rollback

    async def rollback(self, entry_id: str, user: User) -> RollbackResult:
        return await self.rollbacks.rollback(entry_id, user=user)

    # Queries

    def list_queue(self, status: ActionStatus | str | None = None) -> list[QueuedAction]:
        return self.queue.list(status)

    def get_action(self, action_id: str) -> QueuedAction:
        return self.queue.get(action_id)

    def queue_summary(self) -> dict[str, Any]:
        actions = self.queue.list()
        return {
            "total": len(actions),
            "pending_count": self.queue.pending_count,
            "is_executing": self.queue.is_executing or self.executor.is_running,
            "by_status": {
                status.value: len([a for a in actions if a.status == status])
                for status in ActionStatus
            },
        }

    def list_approvals(self, **filters: Any) -> Page[ApprovalRequest]:
        return self.approvals.list(**filters)

    def pending_approvals(self) -> list[ApprovalRequest]:
        return self.approvals.pending()

    def get_approval(self, request_id: str) -> ApprovalRequest:
        return self.approvals.get(request_id)

    def approval_stats(self) -> dict[str, int]:
        return self.approvals.get_stats()

    def get_guardrail_settings(self) -> GuardrailSettings:
        return self.guardrail_settings.current

    def query_audit(self, **filters: Any) -> Page[AuditLogEntry]:
        return self.audit_log.query(**filters)

    def get_audit_entry(self, entry_id: str) -> AuditLogEntry:
        return self.audit_log.get(entry_id)

    def rollback_eligibility(self, entry_id: str) -> RollbackEligibility:
        reason = rollback_refusal(self.audit_log.get(entry_id))
        return RollbackEligibility(entry_id=entry_id, can_rollback=reason is None, reason=reason)

    def list_experiments(self) -> list[ExperimentTrial]:
        return self.experiments.list()

    def get_experiment(self, experiment_id: str) -> ExperimentTrial:
        return self.experiments.get(experiment_id)

    def stats(self) -> dict[str, Any]:
        return {
            "queue": self.queue_summary(),
            "approvals": self.approval_stats(),
            "audit": self.audit_log.get_stats(),
            "experiments": len(self.experiments.list()),
        }

