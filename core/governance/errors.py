"""Typed errors raised by the governance core."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .safety.guardrails import GuardrailVerdict


class GovernanceError(Exception):
    """Base class for all governance failures.

    ``code`` is a stable machine-readable identifier surfaced by the API layer.
    """

    code = "governance_error"

    def __init__(self, message: str, **details: Any) -> None:
        self.message = message
        self.details = details
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, **self.details}


class ValidationError(GovernanceError):
    """Raised when a command is rejected before any state is created."""

    code = "validation_error"


class NotFoundError(GovernanceError):
    """Raised when a queued action, request or audit entry does not exist."""

    code = "not_found"


class InvalidTransitionError(GovernanceError):
    """Raised when a lifecycle transition is not allowed."""

    code = "invalid_transition"

    def __init__(self, entity_id: str, current: str, target: str) -> None:
        super().__init__(
            f"Cannot move {entity_id} from {current} to {target}",
            entity_id=entity_id,
            current=current,
            target=target,
        )
        self.entity_id = entity_id
        self.current = current
        self.target = target


class AuthorizationError(GovernanceError):
    """Raised when the caller lacks the capability for a command."""

    code = "forbidden"


class RequestExpiredError(GovernanceError):
    """Raised when reviewing an approval request past its expiry."""

    code = "request_expired"


class GuardrailBlockedError(GovernanceError):
    """Raised when a guardrail blocks a proposed change outright."""

    code = "guardrail_blocked"

    def __init__(self, verdict: GuardrailVerdict, entity_id: str | None = None) -> None:
        super().__init__(verdict.reason, entity_id=entity_id, reasons=list(verdict.reasons))
        self.verdict = verdict


class ExecutionInProgressError(GovernanceError):
    """Raised when ``run()`` is invoked while another run is in flight."""

    code = "execution_in_progress"


class ActionInFlightError(GovernanceError):
    """Raised when removing or cancelling an action that is executing."""

    code = "action_in_flight"


class RollbackNotAllowedError(GovernanceError):
    """Raised when an audit entry cannot be reversed."""

    code = "rollback_not_allowed"
