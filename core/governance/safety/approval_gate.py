"""Approval Gate - Persisted sign-off workflow for higher-impact change requests."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import Field, computed_field, model_validator

from common.logging import LoggerMixin
from common.models import BaseModel, Page

from ..errors import (
    InvalidTransitionError,
    NotFoundError,
    RequestExpiredError,
)
from ..events import EventBus, EventType
from ..models import ProposedChange, action_label
from ..permissions import Permission, User, require
from ..persistence import ApprovalQuery, ApprovalRepository, InMemoryApprovalRepository


class ApprovalStatus(str, Enum):
    """Stored status of an approval request. Expiry is derived, never stored."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


APPROVAL_TRANSITIONS: dict[str, frozenset[str]] = {
    ApprovalStatus.PENDING: frozenset(
        {ApprovalStatus.APPROVED, ApprovalStatus.REJECTED, ApprovalStatus.CANCELLED}
    ),
    ApprovalStatus.APPROVED: frozenset(),
    ApprovalStatus.REJECTED: frozenset(),
    ApprovalStatus.CANCELLED: frozenset(),
}


class Priority(str, Enum):
    """Review priority of an approval request."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


PRIORITY_ORDER = [Priority.LOW, Priority.MEDIUM, Priority.HIGH]


class ReviewDecision(str, Enum):
    """Reviewer verdict."""

    APPROVE = "approve"
    REJECT = "reject"


class UserRef(BaseModel):
    """Snapshot of the user that requested or reviewed a change."""

    id: str
    name: str = ""
    email: str | None = None

    @classmethod
    def of(cls, user: User) -> "UserRef":
        return cls(id=user.id, name=user.name, email=user.email)


class ChangeDetail(BaseModel):
    """One field change shown to the reviewer."""

    field: str
    current_value: Any = None
    new_value: Any = None
    display_label: str = ""


class ImpactEstimate(BaseModel):
    """Requester's estimate of a change's impact."""

    estimated_spend_change: float | None = Field(default=None)
    estimated_impact_percentage: float | None = Field(default=None)
    affected_entities: int = Field(default=1, ge=0)


class ChangeRequest(BaseModel):
    """Input for creating an approval request."""

    change_type: str = Field(min_length=1, description="e.g. budget_increase, bulk_edit")
    entity_type: str = Field(default="campaign")
    entity_id: str | None = Field(default=None)
    entity_name: str | None = Field(default=None)
    changes: list[ChangeDetail] = Field(default_factory=list)
    proposed_changes: list[ProposedChange] = Field(default_factory=list)
    reason: str = Field(min_length=1)
    impact: ImpactEstimate = Field(default_factory=ImpactEstimate)

    @model_validator(mode="after")
    def _derive_changes(self) -> "ChangeRequest":
        if not self.changes and self.proposed_changes:
            self.changes = [
                ChangeDetail(
                    field=c.field_name,
                    current_value=c.current_value,
                    new_value=c.new_value,
                    display_label=f"{action_label(c.action_type)}: {c.entity_name or c.entity_id}",
                )
                for c in self.proposed_changes
            ]
        if not self.changes:
            raise ValueError("an approval request needs at least one change")
        return self


class ApprovalRequest(BaseModel):
    """Persisted request for human sign-off."""

    id: str = Field(default_factory=lambda: f"approval-{uuid4()}")
    change_type: str
    entity_type: str
    entity_id: str | None = None
    entity_name: str | None = None
    requested_by: UserRef
    requested_at: datetime = Field(default_factory=datetime.utcnow)
    status: ApprovalStatus = Field(default=ApprovalStatus.PENDING)
    priority: Priority = Field(default=Priority.LOW)
    changes: list[ChangeDetail] = Field(default_factory=list)
    proposed_changes: list[ProposedChange] = Field(default_factory=list)
    reason: str
    impact: ImpactEstimate = Field(default_factory=ImpactEstimate)
    expires_at: datetime
    reviewed_by: UserRef | None = None
    reviewed_at: datetime | None = None
    review_comments: str | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        """Pending requests past ``expires_at`` count as expired."""
        now = now or datetime.utcnow()
        return self.status == ApprovalStatus.PENDING and now > self.expires_at

    @computed_field
    @property
    def expired(self) -> bool:
        return self.is_expired()


class PriorityPolicy(BaseModel):
    """Thresholds for the priority function.

    Priority is the maximum of the levels implied by the change type, the
    absolute impact percentage and the number of affected entities, so raising
    any input can only raise the result.
    """

    high_impact_percent: float = Field(default=50, gt=0)
    medium_impact_percent: float = Field(default=20, gt=0)
    high_entity_count: int = Field(default=10, ge=1)
    medium_entity_count: int = Field(default=3, ge=1)
    high_change_types: frozenset[str] = Field(
        default=frozenset({"bulk_edit", "pause_all_campaigns"})
    )
    medium_change_types: frozenset[str] = Field(
        default=frozenset({"budget_increase", "budget_decrease", "status_change", "bid_change"})
    )

    def priority(self, change_type: str, impact: ImpactEstimate) -> Priority:
        levels = [Priority.LOW]

        if change_type in self.high_change_types:
            levels.append(Priority.HIGH)
        elif change_type in self.medium_change_types:
            levels.append(Priority.MEDIUM)

        if impact.estimated_impact_percentage is not None:
            swing = abs(impact.estimated_impact_percentage)
            if swing > self.high_impact_percent:
                levels.append(Priority.HIGH)
            elif swing > self.medium_impact_percent:
                levels.append(Priority.MEDIUM)

        if impact.affected_entities >= self.high_entity_count:
            levels.append(Priority.HIGH)
        elif impact.affected_entities >= self.medium_entity_count:
            levels.append(Priority.MEDIUM)

        return max(levels, key=PRIORITY_ORDER.index)


class ApprovalWorkflow(LoggerMixin):
    """Sign-off workflow for higher-impact changes.

    Features:
    - Priority assignment from change sensitivity and impact
    - Lazy expiry (7 days by default)
    - Reviewer capability checks
    - Requester-or-reviewer cancellation
    """

    def __init__(
        self,
        repository: ApprovalRepository | None = None,
        priority_policy: PriorityPolicy | None = None,
        expiry_days: int = 7,
        events: EventBus | None = None,
    ) -> None:
        """Initialize approval workflow.

        Args:
            repository: Persistence boundary; in-memory when omitted
            priority_policy: Priority thresholds
            expiry_days: Days until a pending request expires
            events: Bus for domain events
        """
        self.repository = repository or InMemoryApprovalRepository()
        self.priority_policy = priority_policy or PriorityPolicy()
        self.expiry_days = expiry_days
        self.events = events
        self._lock = threading.RLock()

    def create(self, change_request: ChangeRequest, requester: User) -> ApprovalRequest:
        """Create and persist a pending approval request.

        Args:
            change_request: Requested change
            requester: User asking for sign-off

        Returns:
            Created approval request
        """
        now = datetime.utcnow()
        request = ApprovalRequest(
            change_type=change_request.change_type,
            entity_type=change_request.entity_type,
            entity_id=change_request.entity_id,
            entity_name=change_request.entity_name,
            requested_by=UserRef.of(requester),
            requested_at=now,
            priority=self.priority_policy.priority(
                change_request.change_type, change_request.impact
            ),
            changes=change_request.changes,
            proposed_changes=change_request.proposed_changes,
            reason=change_request.reason,
            impact=change_request.impact,
            expires_at=now + timedelta(days=self.expiry_days),
        )

        with self._lock:
            self.repository.add(request)

        self.logger.info(
            "approval_request_created",
            request_id=request.id,
            change_type=request.change_type,
            priority=request.priority,
            requested_by=requester.id,
        )
        self._publish(EventType.REQUEST_CREATED, request)
        return request

    def review(
        self,
        request_id: str,
        decision: ReviewDecision | str,
        reviewer: User,
        comments: str | None = None,
    ) -> ApprovalRequest:
        """Approve or reject a pending request.

        Raises:
            AuthorizationError: reviewer lacks approve capability
            NotFoundError: unknown request
            RequestExpiredError: request is past its expiry
            InvalidTransitionError: request is no longer pending
        """
        decision = ReviewDecision(decision)
        target = (
            ApprovalStatus.APPROVED
            if decision == ReviewDecision.APPROVE
            else ApprovalStatus.REJECTED
        )

        # Permission check and transition form one critical section
        with self._lock:
            require(reviewer, Permission.APPROVE, "review approval requests")
            request = self.get(request_id)
            self._check_transition(request, target)
            if request.is_expired():
                raise RequestExpiredError(
                    f"Approval request {request_id} expired at {request.expires_at.isoformat()}",
                    request_id=request_id,
                )

            request.status = target
            request.reviewed_by = UserRef.of(reviewer)
            request.reviewed_at = datetime.utcnow()
            request.review_comments = comments
            self.repository.save(request)

        self.logger.info(
            "approval_request_reviewed",
            request_id=request_id,
            decision=decision.value,
            reviewer=reviewer.id,
        )
        self._publish(EventType.REQUEST_REVIEWED, request, decision=decision.value)
        return request

    def cancel(self, request_id: str, user: User) -> ApprovalRequest:
        """Cancel a pending request (requester or approve-capable user only)."""
        with self._lock:
            request = self.get(request_id)
            if request.requested_by.id != user.id:
                require(user, Permission.APPROVE, "cancel another user's request")
            self._check_transition(request, ApprovalStatus.CANCELLED)

            request.status = ApprovalStatus.CANCELLED
            self.repository.save(request)

        self.logger.info("approval_request_cancelled", request_id=request_id, user=user.id)
        self._publish(EventType.REQUEST_CANCELLED, request)
        return request

    def get(self, request_id: str) -> ApprovalRequest:
        request = self.repository.get(request_id)
        if request is None:
            raise NotFoundError(f"Approval request not found: {request_id}")
        return request

    def list(self, query: ApprovalQuery | None = None, **filters: Any) -> Page[ApprovalRequest]:
        return self.repository.query(query or ApprovalQuery(**filters))

    def pending(self, include_expired: bool = False) -> list[ApprovalRequest]:
        """Pending requests, oldest first."""
        requests = [
            r for r in self.repository.all()
            if r.status == ApprovalStatus.PENDING and (include_expired or not r.is_expired())
        ]
        return sorted(requests, key=lambda r: r.requested_at)

    def get_stats(self) -> dict[str, int]:
        """Counts by status; ``expired`` counts pending requests past expiry."""
        requests = self.repository.all()
        now = datetime.utcnow()
        return {
            "total": len(requests),
            "pending": len([r for r in requests if r.status == ApprovalStatus.PENDING]),
            "approved": len([r for r in requests if r.status == ApprovalStatus.APPROVED]),
            "rejected": len([r for r in requests if r.status == ApprovalStatus.REJECTED]),
            "cancelled": len([r for r in requests if r.status == ApprovalStatus.CANCELLED]),
            "expired": len([r for r in requests if r.is_expired(now)]),
        }

    @staticmethod
    def _check_transition(request: ApprovalRequest, target: ApprovalStatus) -> None:
        if target not in APPROVAL_TRANSITIONS[ApprovalStatus(request.status)]:
            raise InvalidTransitionError(
                request.id, ApprovalStatus(request.status).value, target.value
            )

    def _publish(self, event_type: EventType, request: ApprovalRequest, **payload: Any) -> None:
        if self.events is not None:
            self.events.publish(
                event_type,
                subject_id=request.id,
                status=request.status,
                priority=request.priority,
                **payload,
            )
