"""Persistence boundary for audit log entries and approval requests.

The repositories here are the in-process implementations; a database-backed
store only needs to satisfy the same protocols.
"""

from __future__ import annotations

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Iterable, Protocol, TypeVar

from pydantic import Field, field_validator

from common.logging import LoggerMixin
from common.models import BaseModel, Page

from .errors import ValidationError
from .models import AuditLogEntry, as_naive_utc

if TYPE_CHECKING:
    from .safety.approval_gate import ApprovalRequest

T = TypeVar("T")


class AuditQuery(BaseModel):
    """Filters for audit log queries."""

    account_id: str | None = None
    status: str | None = None
    entity_type: str | None = None
    action_type: str | None = None
    entity_id: str | None = None
    rollback_of: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    limit: int = Field(default=20, ge=1, le=100)
    offset: int = Field(default=0, ge=0)

    @field_validator("start_time", "end_time")
    @classmethod
    def _normalize_time(cls, value):
        return as_naive_utc(value)

    def matches(self, entry: AuditLogEntry) -> bool:
        if self.account_id and entry.account_id != self.account_id:
            return False
        if self.status and entry.status != self.status:
            return False
        if self.entity_type and entry.entity_type != self.entity_type:
            return False
        if self.action_type and entry.action_type != self.action_type:
            return False
        if self.entity_id and entry.entity_id != self.entity_id:
            return False
        if self.rollback_of and entry.rollback_of != self.rollback_of:
            return False
        if self.start_time and entry.created_at < self.start_time:
            return False
        if self.end_time and entry.created_at > self.end_time:
            return False
        return True


class ApprovalQuery(BaseModel):
    """Filters for approval request queries."""

    status: str | None = None
    priority: str | None = None
    entity_type: str | None = None
    requested_by: str | None = None
    limit: int = Field(default=20, ge=1, le=100)
    offset: int = Field(default=0, ge=0)

    def matches(self, request: ApprovalRequest) -> bool:
        if self.status and request.status != self.status:
            return False
        if self.priority and request.priority != self.priority:
            return False
        if self.entity_type and request.entity_type != self.entity_type:
            return False
        if self.requested_by and request.requested_by.id != self.requested_by:
            return False
        return True


def paginate(
    items: Iterable[T],
    predicate: Callable[[T], bool],
    limit: int,
    offset: int,
) -> Page[T]:
    """Filter ``items`` and slice one page out of the result."""
    matched = [item for item in items if predicate(item)]
    page = matched[offset:offset + limit]
    return Page(
        items=page,
        total=len(matched),
        limit=limit,
        offset=offset,
        has_more=offset + len(page) < len(matched),
    )


class AuditLogRepository(Protocol):
    """Append-only storage for audit entries."""

    def add(self, entry: AuditLogEntry) -> None: ...

    def get(self, entry_id: str) -> AuditLogEntry | None: ...

    def query(self, query: AuditQuery) -> Page[AuditLogEntry]: ...


class ApprovalRepository(Protocol):
    """Storage for approval requests."""

    def add(self, request: ApprovalRequest) -> None: ...

    def get(self, request_id: str) -> ApprovalRequest | None: ...

    def save(self, request: ApprovalRequest) -> None: ...

    def all(self) -> list[ApprovalRequest]: ...

    def query(self, query: ApprovalQuery) -> Page[ApprovalRequest]: ...


class InMemoryAuditLogRepository:
    """Audit repository kept in process memory. Entries are never replaced."""

    def __init__(self) -> None:
        self._entries: list[AuditLogEntry] = []
        self._index: dict[str, AuditLogEntry] = {}
        self._lock = threading.Lock()

    def add(self, entry: AuditLogEntry) -> None:
        with self._lock:
            if entry.id in self._index:
                raise ValidationError(f"Audit entry already exists: {entry.id}")
            self._entries.append(entry)
            self._index[entry.id] = entry

    def get(self, entry_id: str) -> AuditLogEntry | None:
        return self._index.get(entry_id)

    def query(self, query: AuditQuery) -> Page[AuditLogEntry]:
        # Most recent first
        return paginate(reversed(self._entries), query.matches, query.limit, query.offset)

    def __len__(self) -> int:
        return len(self._entries)


class JsonlAuditLogRepository(InMemoryAuditLogRepository, LoggerMixin):
    """Audit repository mirrored to one JSONL file per day.

    Existing files are loaded on start-up so the history survives restarts.
    """

    def __init__(self, storage_path: Path | str) -> None:
        super().__init__()
        self.storage_path = Path(storage_path)
        self.storage_path.mkdir(parents=True, exist_ok=True)
        self._load()

    def add(self, entry: AuditLogEntry) -> None:
        super().add(entry)
        self._write_to_file(entry)

    def _write_to_file(self, entry: AuditLogEntry) -> None:
        date_str = entry.created_at.strftime("%Y-%m-%d")
        file_path = self.storage_path / f"audit_{date_str}.jsonl"

        with open(file_path, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry.model_dump(mode="json")) + "\n")

    def _load(self) -> None:
        loaded: list[AuditLogEntry] = []
        for file_path in sorted(self.storage_path.glob("audit_*.jsonl")):
            with open(file_path, encoding="utf-8") as f:
                for line_no, line in enumerate(f, start=1):
                    if not line.strip():
                        continue
                    try:
                        loaded.append(AuditLogEntry.model_validate(json.loads(line)))
                    except ValueError as e:
                        self.logger.warning(
                            "audit_line_skipped",
                            file=file_path.name,
                            line=line_no,
                            error=str(e),
                        )

        for entry in sorted(loaded, key=lambda e: e.created_at):
            super().add(entry)

        if loaded:
            self.logger.info("audit_log_loaded", entries=len(loaded))


class InMemoryApprovalRepository:
    """Approval request repository kept in process memory."""

    def __init__(self) -> None:
        self._requests: dict[str, ApprovalRequest] = {}
        self._lock = threading.Lock()

    def add(self, request: ApprovalRequest) -> None:
        with self._lock:
            if request.id in self._requests:
                raise ValidationError(f"Approval request already exists: {request.id}")
            self._requests[request.id] = request

    def get(self, request_id: str) -> ApprovalRequest | None:
        return self._requests.get(request_id)

    def save(self, request: ApprovalRequest) -> None:
        with self._lock:
            self._requests[request.id] = request

    def all(self) -> list[ApprovalRequest]:
        return sorted(self._requests.values(), key=lambda r: r.requested_at, reverse=True)

    def query(self, query: ApprovalQuery) -> Page[ApprovalRequest]:
        return paginate(self.all(), query.matches, query.limit, query.offset)


def build_audit_repository(config: Any) -> AuditLogRepository:
    """Pick the audit repository implied by application settings."""
    if config.audit_file_logging:
        return JsonlAuditLogRepository(config.audit_log_path)
    return InMemoryAuditLogRepository()
