"""Unit tests for the audit and approval repositories."""

import json
from datetime import datetime

import pytest

from common.config import Settings
from governance.errors import ValidationError
from governance.models import AuditLogEntry, AuditStatus
from governance.persistence import (
    ApprovalQuery,
    AuditQuery,
    InMemoryApprovalRepository,
    InMemoryAuditLogRepository,
    JsonlAuditLogRepository,
    build_audit_repository,
)
from governance.permissions import User
from governance.safety.approval_gate import ApprovalRequest, ChangeDetail, UserRef


def make_entry(**overrides):
    data = {
        "action_type": "set_budget",
        "entity_type": "campaign",
        "entity_id": "cmp-1",
        "before_value": 50,
        "after_value": 100,
        "status": AuditStatus.SUCCESS,
        "account_id": "acct-1",
    }
    data.update(overrides)
    return AuditLogEntry(**data)


def make_request(**overrides):
    data = {
        "change_type": "budget_increase",
        "entity_type": "campaign",
        "requested_by": UserRef(id="u-analyst", name="Ari Analyst"),
        "changes": [ChangeDetail(field="budget", current_value=100, new_value=120, display_label="Budget")],
        "reason": "Seasonal demand",
        "expires_at": datetime(2030, 1, 1),
    }
    data.update(overrides)
    return ApprovalRequest(**data)


class TestInMemoryAuditLogRepository:
    """Tests for the in-memory audit repository."""

    def test_duplicate_id_rejected(self):
        repo = InMemoryAuditLogRepository()
        entry = make_entry()
        repo.add(entry)

        with pytest.raises(ValidationError):
            repo.add(entry)
        assert len(repo) == 1

    def test_query_filters(self):
        repo = InMemoryAuditLogRepository()
        repo.add(make_entry(entity_type="ad_group", entity_id="ag-1", action_type="pause_ad_group"))
        repo.add(make_entry(status=AuditStatus.FAILED, error_message="boom"))
        repo.add(make_entry(account_id="acct-2"))

        assert repo.query(AuditQuery(entity_type="ad_group")).total == 1
        assert repo.query(AuditQuery(status="failed")).total == 1
        assert repo.query(AuditQuery(account_id="acct-2")).total == 1
        assert repo.query(AuditQuery(entity_id="cmp-1")).total == 2

    def test_query_time_window(self):
        repo = InMemoryAuditLogRepository()
        repo.add(make_entry(created_at=datetime(2024, 1, 1)))
        repo.add(make_entry(created_at=datetime(2024, 2, 1)))
        repo.add(make_entry(created_at=datetime(2024, 3, 1)))

        page = repo.query(
            AuditQuery(start_time=datetime(2024, 1, 15), end_time=datetime(2024, 2, 15))
        )

        assert page.total == 1
        assert page.items[0].created_at == datetime(2024, 2, 1)

    def test_limit_bounds(self):
        with pytest.raises(ValueError):
            AuditQuery(limit=0)
        with pytest.raises(ValueError):
            AuditQuery(limit=101)


class TestJsonlAuditLogRepository:
    """Tests for the JSONL-backed audit repository."""

    def test_writes_one_file_per_day(self, tmp_path):
        repo = JsonlAuditLogRepository(tmp_path)
        repo.add(make_entry(created_at=datetime(2024, 5, 1, 10)))
        repo.add(make_entry(created_at=datetime(2024, 5, 1, 11)))
        repo.add(make_entry(created_at=datetime(2024, 5, 2, 9)))

        assert sorted(p.name for p in tmp_path.iterdir()) == [
            "audit_2024-05-01.jsonl",
            "audit_2024-05-02.jsonl",
        ]
        lines = (tmp_path / "audit_2024-05-01.jsonl").read_text().splitlines()
        assert len(lines) == 2
        assert json.loads(lines[0])["action_type"] == "set_budget"

    def test_history_survives_restart(self, tmp_path):
        first = JsonlAuditLogRepository(tmp_path)
        older = make_entry(created_at=datetime(2024, 5, 1))
        newer = make_entry(created_at=datetime(2024, 5, 2), entity_id="cmp-2")
        first.add(older)
        first.add(newer)

        reloaded = JsonlAuditLogRepository(tmp_path)

        assert len(reloaded) == 2
        assert reloaded.get(older.id) == older
        assert [e.id for e in reloaded.query(AuditQuery()).items] == [newer.id, older.id]

    def test_corrupt_line_is_skipped(self, tmp_path):
        entry = make_entry(created_at=datetime(2024, 5, 1))
        path = tmp_path / "audit_2024-05-01.jsonl"
        path.write_text(
            json.dumps(entry.model_dump(mode="json")) + "\n{not json\n\n",
            encoding="utf-8",
        )

        repo = JsonlAuditLogRepository(tmp_path)

        assert len(repo) == 1
        assert repo.get(entry.id) is not None


class TestApprovalRepository:
    """Tests for the in-memory approval repository."""

    def test_add_get_save(self):
        repo = InMemoryApprovalRepository()
        request = make_request()
        repo.add(request)

        request.status = "approved"
        repo.save(request)

        assert repo.get(request.id).status == "approved"

    def test_duplicate_rejected(self):
        repo = InMemoryApprovalRepository()
        request = make_request()
        repo.add(request)

        with pytest.raises(ValidationError):
            repo.add(request)

    def test_query_newest_first(self):
        repo = InMemoryApprovalRepository()
        old = make_request(requested_at=datetime(2024, 1, 1))
        new = make_request(requested_at=datetime(2024, 6, 1), priority="high")
        repo.add(old)
        repo.add(new)

        assert [r.id for r in repo.all()] == [new.id, old.id]
        assert repo.query(ApprovalQuery(priority="high")).items == [new]
        assert repo.query(ApprovalQuery(requested_by="u-analyst")).total == 2
        assert repo.query(ApprovalQuery(requested_by="someone-else")).total == 0


class TestBuildAuditRepository:
    """Tests for picking a repository from settings."""

    def test_in_memory_by_default(self):
        settings = Settings(_env_file=None)

        repo = build_audit_repository(settings)

        assert isinstance(repo, InMemoryAuditLogRepository)
        assert not isinstance(repo, JsonlAuditLogRepository)

    def test_file_logging(self, tmp_path):
        settings = Settings(
            audit_file_logging=True, audit_log_path=str(tmp_path / "audit"), _env_file=None
        )

        repo = build_audit_repository(settings)

        assert isinstance(repo, JsonlAuditLogRepository)
        assert (tmp_path / "audit").is_dir()

    def test_user_ref_from_user(self):
        ref = UserRef.of(User(id="u-1", name="Sam", email="sam@example.com"))

        assert ref.model_dump() == {"id": "u-1", "name": "Sam", "email": "sam@example.com"}
