"""Shared fixtures for governance tests."""

import asyncio
from typing import Any, Callable

import pytest

from governance.models import ProposedChange
from governance.mutation import MutationResult
from governance.permissions import Role, User


class StubBoundary:
    """Mutation boundary double that records calls and in-flight concurrency."""

    def __init__(self) -> None:
        self.calls: list[ProposedChange] = []
        self.fail_ids: set[str] = set()
        self.raise_ids: set[str] = set()
        self.delay = 0.0
        self.in_flight = 0
        self.max_in_flight = 0
        self.on_call: Callable[[ProposedChange], None] | None = None

    async def execute(self, change: ProposedChange) -> MutationResult:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            self.calls.append(change)
            if self.on_call is not None:
                self.on_call(change)
            if change.entity_id in self.raise_ids:
                raise ConnectionError("gateway unreachable")
            if change.entity_id in self.fail_ids:
                return MutationResult(ok=False, error="Gateway rejected change")
            return MutationResult(ok=True)
        finally:
            self.in_flight -= 1


def _make_change(**overrides: Any) -> ProposedChange:
    data: dict[str, Any] = {
        "entity_type": "campaign",
        "entity_id": "cmp-1",
        "entity_name": "Brand Search",
        "action_type": "pause_campaign",
        "field_name": "status",
        "current_value": "ENABLED",
        "new_value": "PAUSED",
        "account_id": "acct-1",
    }
    data.update(overrides)
    return ProposedChange(**data)


def _budget_change(current: float, new: float, **overrides: Any) -> ProposedChange:
    return _make_change(
        action_type="set_budget",
        field_name="budget",
        current_value=current,
        new_value=new,
        **overrides,
    )


@pytest.fixture
def make_change():
    return _make_change


@pytest.fixture
def budget_change():
    return _budget_change


@pytest.fixture
def stub_boundary():
    return StubBoundary()


@pytest.fixture
def viewer():
    return User(id="u-viewer", name="Vera Viewer", role=Role.VIEWER)


@pytest.fixture
def analyst():
    return User(id="u-analyst", name="Ari Analyst", role=Role.ANALYST)


@pytest.fixture
def manager():
    return User(id="u-manager", name="Mo Manager", role=Role.MANAGER)


@pytest.fixture
def admin():
    return User(id="u-admin", name="Ada Admin", role=Role.ADMIN)
