"""Change Governance - Safe application of operator-proposed ad account changes.

This module provides the governance core:
- Queue: Forward-only lifecycle for proposed changes
- Executor: Serialized, single-flight execution with failure isolation
- Safe Apply: Direct, draft, scheduled and experiment modes
- Safety: Risk, guardrails, approvals, audit and rollback
- Service: Command/query facade owning all state
"""

from .errors import (
    ActionInFlightError,
    AuthorizationError,
    ExecutionInProgressError,
    GovernanceError,
    GuardrailBlockedError,
    InvalidTransitionError,
    NotFoundError,
    RequestExpiredError,
    RollbackNotAllowedError,
    ValidationError,
)
from .events import DomainEvent, EventBus, EventType
from .models import (
    ActionStatus,
    ActionType,
    AuditLogEntry,
    AuditSource,
    AuditStatus,
    EntityType,
    ProposedChange,
    QueuedAction,
    RiskLevel,
    action_label,
)
from .permissions import Permission, Role, User
from .queue import ActionQueue
from .executor import ExecutionResult, Executor
from .mutation import HttpMutationClient, MutationBoundary, MutationResult
from .safe_apply import (
    ApplyEffect,
    ApplyMode,
    ApplyOptions,
    ExperimentRegistry,
    ExperimentTrial,
    SafeApplyNegotiator,
)
from .service import GovernanceService

__all__ = [
    # Errors
    "GovernanceError",
    "ValidationError",
    "NotFoundError",
    "InvalidTransitionError",
    "AuthorizationError",
    "RequestExpiredError",
    "GuardrailBlockedError",
    "ExecutionInProgressError",
    "ActionInFlightError",
    "RollbackNotAllowedError",
    # Events
    "DomainEvent",
    "EventBus",
    "EventType",
    # Models
    "ActionStatus",
    "ActionType",
    "AuditLogEntry",
    "AuditSource",
    "AuditStatus",
    "EntityType",
    "ProposedChange",
    "QueuedAction",
    "RiskLevel",
    "action_label",
    # Permissions
    "Permission",
    "Role",
    "User",
    # Queue and execution
    "ActionQueue",
    "Executor",
    "ExecutionResult",
    "HttpMutationClient",
    "MutationBoundary",
    "MutationResult",
    # Safe apply
    "ApplyEffect",
    "ApplyMode",
    "ApplyOptions",
    "ExperimentRegistry",
    "ExperimentTrial",
    "SafeApplyNegotiator",
    # Service
    "GovernanceService",
]
