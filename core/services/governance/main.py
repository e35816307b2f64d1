"""Change Governance Service - Command/query API over the governance core."""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse
from pydantic import Field

from common import get_logger, get_settings, operator_context, setup_logging
from common.models import BaseRequest, BaseResponse, HealthResponse, Page
from governance import (
    ActionInFlightError,
    AuthorizationError,
    ExecutionInProgressError,
    GovernanceError,
    GovernanceService,
    GuardrailBlockedError,
    InvalidTransitionError,
    NotFoundError,
    RequestExpiredError,
    RollbackNotAllowedError,
    ValidationError,
)
from governance.executor import ExecutionResult
from governance.models import ActionStatus, AuditLogEntry, ProposedChange, QueuedAction
from governance.permissions import Role, User
from governance.safe_apply import ApplyEffect, ApplyMode, ApplyOptions, ExperimentTrial
from governance.safety import (
    ApprovalRequest,
    ChangeRequest,
    GuardrailSettings,
    ReviewDecision,
    RollbackResult,
)
from governance.service import EnqueueOutcome, ReviewOutcome, RollbackEligibility

settings = get_settings()
logger = get_logger(__name__)

SERVICE_VERSION = "0.1.0"

ERROR_STATUS_CODES: dict[type[GovernanceError], int] = {
    ValidationError: 400,
    AuthorizationError: 403,
    NotFoundError: 404,
    InvalidTransitionError: 409,
    RequestExpiredError: 409,
    ExecutionInProgressError: 409,
    ActionInFlightError: 409,
    RollbackNotAllowedError: 409,
    GuardrailBlockedError: 422,
}


class EnqueueRequest(BaseRequest):
    """Request to queue a single change."""

    change: ProposedChange = Field(description="Change to queue")
    performance_score: float | None = Field(default=None, ge=0, le=100)


class ApplyRequest(BaseRequest):
    """Request to safe-apply a batch of changes."""

    changes: list[ProposedChange] = Field(description="Changes to apply")
    mode: ApplyMode = Field(default=ApplyMode.DIRECT)
    options: ApplyOptions = Field(default_factory=ApplyOptions)


class RunRequest(BaseRequest):
    """Request to execute approved queue entries."""

    timeout_seconds: float | None = Field(default=None, gt=0, description="Per-call timeout")


class CreateApprovalRequest(BaseRequest):
    """Request to open an approval request."""

    change: ChangeRequest = Field(description="Change needing sign-off")


class ReviewRequest(BaseRequest):
    """Request to approve or reject an approval request."""

    decision: ReviewDecision = Field(description="approve or reject")
    comments: str | None = Field(default=None)


class SettingsUpdateRequest(BaseRequest):
    """Partial update of guardrail settings."""

    changes: dict[str, Any] = Field(description="Fields to change")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    setup_logging(
        level=settings.log_level,
        format=settings.log_format,
        service_name=settings.service_name,
    )

    logger.info("starting_service", environment=settings.environment)
    app.state.service = GovernanceService(settings)

    yield

    await app.state.service.close()
    logger.info("shutting_down_service")


app = FastAPI(
    title="Change Governance Service",
    description="Guardrails, approvals and safe execution of ad account changes",
    version=SERVICE_VERSION,
    lifespan=lifespan,
)


def get_service(request: Request) -> GovernanceService:
    return request.app.state.service


def get_current_user(
    x_user_id: str = Header(default="anonymous"),
    x_user_role: Role = Header(default=Role.VIEWER),
    x_user_name: str | None = Header(default=None),
) -> User:
    """Caller identity resolved by the upstream auth layer."""
    return User(id=x_user_id, name=x_user_name or x_user_id, role=x_user_role)


@app.middleware("http")
async def bind_operator(request: Request, call_next):
    """Tag log lines emitted while handling the request with the caller."""
    with operator_context(
        request.headers.get("x-user-id", "anonymous"),
        request.headers.get("x-user-role"),
    ):
        return await call_next(request)


@app.exception_handler(GovernanceError)
async def governance_error_handler(request: Request, exc: GovernanceError) -> JSONResponse:
    status_code = next(
        (code for cls, code in ERROR_STATUS_CODES.items() if isinstance(exc, cls)),
        400,
    )
    logger.warning(
        "request_failed",
        path=request.url.path,
        code=exc.code,
        error=exc.message,
    )
    body = BaseResponse[dict[str, Any]](success=False, error=exc.message, data=exc.to_dict())
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


@app.get("/health", response_model=HealthResponse)
async def health_check(service: GovernanceService = Depends(get_service)) -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(
        status="healthy",
        service=settings.service_name,
        version=SERVICE_VERSION,
        checks={
            "queue_size": len(service.queue),
            "executing": service.executor.is_running,
        },
    )


# Queue


@app.get("/api/v1/queue", response_model=BaseResponse[list[QueuedAction]])
async def list_queue(
    status: ActionStatus | None = Query(default=None),
    service: GovernanceService = Depends(get_service),
) -> BaseResponse[list[QueuedAction]]:
    """List queued actions in queue order."""
    return BaseResponse.success_response(None, service.list_queue(status))


@app.get("/api/v1/queue/summary", response_model=BaseResponse[dict[str, Any]])
async def queue_summary(
    service: GovernanceService = Depends(get_service),
) -> BaseResponse[dict[str, Any]]:
    return BaseResponse.success_response(None, service.queue_summary())


@app.post("/api/v1/queue", response_model=BaseResponse[EnqueueOutcome])
async def enqueue_change(
    request: EnqueueRequest,
    user: User = Depends(get_current_user),
    service: GovernanceService = Depends(get_service),
) -> BaseResponse[EnqueueOutcome]:
    """Queue a single change as pending."""
    logger.info("enqueue_requested", entity_id=request.change.entity_id, user=user.id)
    outcome = await service.enqueue(request.change, user, request.performance_score)
    return BaseResponse.success_response(request.request_id, outcome)


@app.post("/api/v1/queue/approve-all", response_model=BaseResponse[list[QueuedAction]])
async def approve_all(
    user: User = Depends(get_current_user),
    service: GovernanceService = Depends(get_service),
) -> BaseResponse[list[QueuedAction]]:
    return BaseResponse.success_response(None, await service.approve_all(user))


@app.post("/api/v1/queue/reject-all", response_model=BaseResponse[list[QueuedAction]])
async def reject_all(
    user: User = Depends(get_current_user),
    service: GovernanceService = Depends(get_service),
) -> BaseResponse[list[QueuedAction]]:
    return BaseResponse.success_response(None, await service.reject_all(user))


@app.post("/api/v1/queue/clear-completed", response_model=BaseResponse[dict[str, int]])
async def clear_completed(
    user: User = Depends(get_current_user),
    service: GovernanceService = Depends(get_service),
) -> BaseResponse[dict[str, int]]:
    removed = await service.clear_completed(user)
    return BaseResponse.success_response(None, {"removed": removed})


@app.post("/api/v1/queue/clear-all", response_model=BaseResponse[dict[str, int]])
async def clear_all(
    user: User = Depends(get_current_user),
    service: GovernanceService = Depends(get_service),
) -> BaseResponse[dict[str, int]]:
    removed = await service.clear_all(user)
    return BaseResponse.success_response(None, {"removed": removed})


@app.get("/api/v1/queue/{action_id}", response_model=BaseResponse[QueuedAction])
async def get_action(
    action_id: str,
    service: GovernanceService = Depends(get_service),
) -> BaseResponse[QueuedAction]:
    return BaseResponse.success_response(None, service.get_action(action_id))


@app.post("/api/v1/queue/{action_id}/approve", response_model=BaseResponse[QueuedAction])
async def approve_action(
    action_id: str,
    user: User = Depends(get_current_user),
    service: GovernanceService = Depends(get_service),
) -> BaseResponse[QueuedAction]:
    return BaseResponse.success_response(None, await service.approve(action_id, user))


@app.post("/api/v1/queue/{action_id}/reject", response_model=BaseResponse[QueuedAction])
async def reject_action(
    action_id: str,
    user: User = Depends(get_current_user),
    service: GovernanceService = Depends(get_service),
) -> BaseResponse[QueuedAction]:
    return BaseResponse.success_response(None, await service.reject(action_id, user))


@app.post("/api/v1/queue/{action_id}/cancel", response_model=BaseResponse[QueuedAction])
async def cancel_action(
    action_id: str,
    user: User = Depends(get_current_user),
    service: GovernanceService = Depends(get_service),
) -> BaseResponse[QueuedAction]:
    return BaseResponse.success_response(None, await service.cancel(action_id, user))


@app.delete("/api/v1/queue/{action_id}", response_model=BaseResponse[QueuedAction])
async def remove_action(
    action_id: str,
    user: User = Depends(get_current_user),
    service: GovernanceService = Depends(get_service),
) -> BaseResponse[QueuedAction]:
    return BaseResponse.success_response(None, await service.remove(action_id, user))


# Execution and safe apply


@app.post("/api/v1/execute", response_model=BaseResponse[ExecutionResult])
async def execute_queue(
    request: RunRequest,
    user: User = Depends(get_current_user),
    service: GovernanceService = Depends(get_service),
) -> BaseResponse[ExecutionResult]:
    """Execute every approved, due queue entry."""
    logger.info("execution_requested", user=user.id)
    result = await service.run(user, timeout=request.timeout_seconds)
    return BaseResponse.success_response(request.request_id, result)


@app.post("/api/v1/apply", response_model=BaseResponse[ApplyEffect])
async def apply_changes(
    request: ApplyRequest,
    user: User = Depends(get_current_user),
    service: GovernanceService = Depends(get_service),
) -> BaseResponse[ApplyEffect]:
    """Safe-apply a batch of changes."""
    logger.info(
        "apply_requested",
        mode=request.mode,
        change_count=len(request.changes),
        user=user.id,
    )
    effect = await service.apply(request.changes, request.mode, user, request.options)
    return BaseResponse.success_response(request.request_id, effect)


@app.get("/api/v1/experiments", response_model=BaseResponse[list[ExperimentTrial]])
async def list_experiments(
    service: GovernanceService = Depends(get_service),
) -> BaseResponse[list[ExperimentTrial]]:
    return BaseResponse.success_response(None, service.list_experiments())


@app.get("/api/v1/experiments/{experiment_id}", response_model=BaseResponse[ExperimentTrial])
async def get_experiment(
    experiment_id: str,
    service: GovernanceService = Depends(get_service),
) -> BaseResponse[ExperimentTrial]:
    return BaseResponse.success_response(None, service.get_experiment(experiment_id))


# Approvals


@app.get("/api/v1/approvals", response_model=BaseResponse[Page[ApprovalRequest]])
async def list_approvals(
    status: str | None = Query(default=None),
    priority: str | None = Query(default=None),
    entity_type: str | None = Query(default=None),
    requested_by: str | None = Query(default=None),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    service: GovernanceService = Depends(get_service),
) -> BaseResponse[Page[ApprovalRequest]]:
    """List approval requests, newest first."""
    page = service.list_approvals(
        status=status,
        priority=priority,
        entity_type=entity_type,
        requested_by=requested_by,
        limit=limit,
        offset=offset,
    )
    return BaseResponse.success_response(None, page)


@app.get("/api/v1/approvals/pending", response_model=BaseResponse[list[ApprovalRequest]])
async def pending_approvals(
    service: GovernanceService = Depends(get_service),
) -> BaseResponse[list[ApprovalRequest]]:
    return BaseResponse.success_response(None, service.pending_approvals())


@app.get("/api/v1/approvals/stats", response_model=BaseResponse[dict[str, int]])
async def approval_stats(
    service: GovernanceService = Depends(get_service),
) -> BaseResponse[dict[str, int]]:
    return BaseResponse.success_response(None, service.approval_stats())


@app.post("/api/v1/approvals", response_model=BaseResponse[ApprovalRequest])
async def create_approval_request(
    request: CreateApprovalRequest,
    user: User = Depends(get_current_user),
    service: GovernanceService = Depends(get_service),
) -> BaseResponse[ApprovalRequest]:
    """Open an approval request."""
    approval = await service.create_approval_request(request.change, user)
    return BaseResponse.success_response(request.request_id, approval)


@app.get("/api/v1/approvals/{request_id}", response_model=BaseResponse[ApprovalRequest])
async def get_approval(
    request_id: str,
    service: GovernanceService = Depends(get_service),
) -> BaseResponse[ApprovalRequest]:
    return BaseResponse.success_response(None, service.get_approval(request_id))


@app.post("/api/v1/approvals/{request_id}/review", response_model=BaseResponse[ReviewOutcome])
async def review_approval(
    request_id: str,
    request: ReviewRequest,
    user: User = Depends(get_current_user),
    service: GovernanceService = Depends(get_service),
) -> BaseResponse[ReviewOutcome]:
    """Approve or reject a pending approval request."""
    logger.info(
        "processing_approval",
        request_id=request_id,
        decision=request.decision,
        reviewer=user.id,
    )
    outcome = await service.review_approval(request_id, request.decision, user, request.comments)
    return BaseResponse.success_response(request.request_id, outcome)


@app.post("/api/v1/approvals/{request_id}/cancel", response_model=BaseResponse[ApprovalRequest])
async def cancel_approval(
    request_id: str,
    user: User = Depends(get_current_user),
    service: GovernanceService = Depends(get_service),
) -> BaseResponse[ApprovalRequest]:
    return BaseResponse.success_response(None, await service.cancel_approval(request_id, user))


# Guardrail settings


@app.get("/api/v1/settings/guardrails", response_model=BaseResponse[GuardrailSettings])
async def get_guardrail_settings(
    service: GovernanceService = Depends(get_service),
) -> BaseResponse[GuardrailSettings]:
    return BaseResponse.success_response(None, service.get_guardrail_settings())


@app.patch("/api/v1/settings/guardrails", response_model=BaseResponse[GuardrailSettings])
async def update_guardrail_settings(
    request: SettingsUpdateRequest,
    user: User = Depends(get_current_user),
    service: GovernanceService = Depends(get_service),
) -> BaseResponse[GuardrailSettings]:
    """Partially update guardrail settings."""
    updated = await service.update_guardrail_settings(user, **request.changes)
    return BaseResponse.success_response(request.request_id, updated)


@app.post("/api/v1/settings/guardrails/reset", response_model=BaseResponse[GuardrailSettings])
async def reset_guardrail_settings(
    user: User = Depends(get_current_user),
    service: GovernanceService = Depends(get_service),
) -> BaseResponse[GuardrailSettings]:
    return BaseResponse.success_response(None, await service.reset_guardrail_settings(user))


# Audit log and rollback


@app.get("/api/v1/audit", response_model=BaseResponse[Page[AuditLogEntry]])
async def query_audit_log(
    account_id: str | None = Query(default=None),
    status: str | None = Query(default=None),
    entity_type: str | None = Query(default=None),
    action_type: str | None = Query(default=None),
    entity_id: str | None = Query(default=None),
    start_time: datetime | None = Query(default=None, description="Entries at or after"),
    end_time: datetime | None = Query(default=None, description="Entries at or before"),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    service: GovernanceService = Depends(get_service),
) -> BaseResponse[Page[AuditLogEntry]]:
    """Query audit entries, newest first."""
    page = service.query_audit(
        account_id=account_id,
        status=status,
        entity_type=entity_type,
        action_type=action_type,
        entity_id=entity_id,
        start_time=start_time,
        end_time=end_time,
        limit=limit,
        offset=offset,
    )
    return BaseResponse.success_response(None, page)


@app.get("/api/v1/audit/{entry_id}", response_model=BaseResponse[AuditLogEntry])
async def get_audit_entry(
    entry_id: str,
    service: GovernanceService = Depends(get_service),
) -> BaseResponse[AuditLogEntry]:
    return BaseResponse.success_response(None, service.get_audit_entry(entry_id))


@app.get(
    "/api/v1/audit/{entry_id}/rollback",
    response_model=BaseResponse[RollbackEligibility],
)
async def rollback_eligibility(
    entry_id: str,
    service: GovernanceService = Depends(get_service),
) -> BaseResponse[RollbackEligibility]:
    return BaseResponse.success_response(None, service.rollback_eligibility(entry_id))


@app.post("/api/v1/audit/{entry_id}/rollback", response_model=BaseResponse[RollbackResult])
async def rollback_entry(
    entry_id: str,
    user: User = Depends(get_current_user),
    service: GovernanceService = Depends(get_service),
) -> BaseResponse[RollbackResult]:
    """Reverse an audited change."""
    logger.info("rollback_requested", entry_id=entry_id, user=user.id)
    return BaseResponse.success_response(None, await service.rollback(entry_id, user))


@app.get("/api/v1/stats", response_model=BaseResponse[dict[str, Any]])
async def get_stats(
    service: GovernanceService = Depends(get_service),
) -> BaseResponse[dict[str, Any]]:
    return BaseResponse.success_response(None, service.stats())


def main() -> None:
    """Run the service."""
    import uvicorn

    uvicorn.run(
        "services.governance.main:app",
        host=settings.host,
        port=settings.port,
        workers=settings.workers,
        reload=settings.debug,
    )


if __name__ == "__main__":
    main()
