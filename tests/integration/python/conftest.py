"""Pytest configuration for API integration tests."""

from typing import Generator

import pytest
from fastapi.testclient import TestClient

from common.config import Settings
from governance.service import GovernanceService
from services.governance.main import app, get_service


def headers_for(role: str, user_id: str | None = None) -> dict[str, str]:
    """Identity headers the upstream auth layer would attach."""
    return {"X-User-Id": user_id or f"u-{role}", "X-User-Role": role}


@pytest.fixture
def service(stub_boundary) -> GovernanceService:
    """Governance service wired to the stub mutation boundary."""
    return GovernanceService(Settings(_env_file=None), boundary=stub_boundary)


@pytest.fixture
def client(service) -> Generator[TestClient, None, None]:
    """Test client whose routes resolve to ``service``."""
    app.dependency_overrides[get_service] = lambda: service
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def viewer_headers() -> dict[str, str]:
    return headers_for("viewer")


@pytest.fixture
def analyst_headers() -> dict[str, str]:
    return headers_for("analyst")


@pytest.fixture
def manager_headers() -> dict[str, str]:
    return headers_for("manager")


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return headers_for("admin")
