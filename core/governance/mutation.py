"""Mutation boundary - the only place changes leave the service for the ad platform."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Protocol

import httpx
from pydantic import Field

from common.logging import LoggerMixin
from common.models import BaseModel

from .models import ROLLBACK_PREFIX, ActionType, ProposedChange, to_number

MICROS = 1_000_000


class MutationResult(BaseModel):
    """Outcome reported by the mutation boundary."""

    ok: bool
    error: str | None = Field(default=None)
    output: dict[str, Any] = Field(default_factory=dict)


class MutationBoundary(Protocol):
    """Applies one ProposedChange to the external account.

    Implementations may raise; the executor treats an exception as a failed
    mutation.
    """

    async def execute(self, change: ProposedChange) -> MutationResult: ...


class MutationRejected(Exception):
    """Raised by a handler when a change cannot be translated into a request."""


def to_micros(value: Any) -> int:
    """Convert a currency amount to integer micros."""
    amount = to_number(value)
    if amount is None:
        raise MutationRejected(f"Not a monetary amount: {value!r}")
    return round(amount * MICROS)


class HttpMutationClient(LoggerMixin):
    """Mutation boundary backed by the ad platform gateway's REST API.

    Status changes, budgets, bids and negative keywords each map onto their
    own endpoint; budgets and bids are sent in micros.
    """

    def __init__(
        self,
        endpoint: str = "http://localhost:8020/api/v1",
        timeout_seconds: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize mutation client.

        Args:
            endpoint: Gateway base URL
            timeout_seconds: HTTP timeout per request
            client: Pre-built client (tests inject a MockTransport here)
        """
        self.endpoint = endpoint.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._client = client
        self._handlers: dict[str, Callable[[ProposedChange], Awaitable[dict[str, Any]]]] = {}

        self._setup_handlers()

    def _setup_handlers(self) -> None:
        status_actions = [
            ActionType.PAUSE_CAMPAIGN, ActionType.ENABLE_CAMPAIGN,
            ActionType.PAUSE_AD_GROUP, ActionType.ENABLE_AD_GROUP,
            ActionType.PAUSE_KEYWORD, ActionType.ENABLE_KEYWORD,
            ActionType.PAUSE_AD, ActionType.ENABLE_AD,
        ]
        budget_actions = [
            ActionType.UPDATE_BUDGET, ActionType.SET_BUDGET,
            ActionType.ADJUST_BUDGET, ActionType.SCALE_BUDGET,
        ]

        self._handlers = {a.value: self._execute_status_change for a in status_actions}
        self._handlers.update({a.value: self._execute_budget_change for a in budget_actions})
        self._handlers.update({
            ActionType.UPDATE_BID.value: self._execute_bid_change,
            ActionType.ADJUST_BID.value: self._execute_bid_change,
            ActionType.ADD_NEGATIVES.value: self._execute_add_negatives,
            ActionType.BULK_EDIT.value: self._execute_bulk_edit,
            ActionType.PAUSE_ALL_CAMPAIGNS.value: self._execute_pause_all,
        })

    async def _get_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout_seconds))
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def execute(self, change: ProposedChange) -> MutationResult:
        """Send ``change`` to the gateway."""
        action_type = change.action_type
        if action_type.startswith(ROLLBACK_PREFIX):
            action_type = action_type[len(ROLLBACK_PREFIX):]

        handler = self._handlers.get(action_type)
        if handler is None:
            return MutationResult(ok=False, error=f"No handler for action type: {action_type}")

        try:
            output = await handler(change)
        except MutationRejected as e:
            return MutationResult(ok=False, error=str(e))
        except httpx.HTTPStatusError as e:
            self.logger.warning(
                "mutation_rejected_by_gateway",
                entity_id=change.entity_id,
                status_code=e.response.status_code,
            )
            return MutationResult(
                ok=False, error=f"Gateway returned {e.response.status_code}: {e.response.text}"
            )
        except httpx.HTTPError as e:
            self.logger.warning("mutation_transport_error", entity_id=change.entity_id, error=str(e))
            return MutationResult(ok=False, error=str(e) or type(e).__name__)

        return MutationResult(ok=True, output=output)

    def _entity_path(self, change: ProposedChange) -> str:
        if not change.account_id:
            raise MutationRejected("account_id is required")

        base = f"{self.endpoint}/accounts/{change.account_id}"
        if change.entity_type == "campaign":
            return f"{base}/campaigns/{change.entity_id}"
        if change.entity_type == "ad_group":
            return f"{base}/ad-groups/{change.entity_id}"
        if change.entity_type == "keyword":
            if not change.ad_group_id:
                raise MutationRejected("Keyword changes require ad_group_id")
            return f"{base}/ad-groups/{change.ad_group_id}/keywords/{change.entity_id}"
        return f"{base}/ads/{change.entity_id}"

    async def _post(self, url: str, payload: dict[str, Any]) -> dict[str, Any]:
        client = await self._get_client()
        response = await client.post(url, json=payload)
        response.raise_for_status()
        return response.json() if response.content else {}

    # Action handlers

    async def _execute_status_change(self, change: ProposedChange) -> dict[str, Any]:
        """Pause or enable an entity."""
        if isinstance(change.new_value, str) and change.new_value:
            status = change.new_value.upper()
        else:
            status = "PAUSED" if change.is_pause else "ENABLED"
        return await self._post(f"{self._entity_path(change)}/status", {"status": status})

    async def _execute_budget_change(self, change: ProposedChange) -> dict[str, Any]:
        """Set a campaign's daily budget."""
        return await self._post(
            f"{self._entity_path(change)}/budget",
            {"amount_micros": to_micros(change.new_value)},
        )

    async def _execute_bid_change(self, change: ProposedChange) -> dict[str, Any]:
        """Set the CPC bid of an ad group or keyword."""
        return await self._post(
            f"{self._entity_path(change)}/bid",
            {"cpc_bid_micros": to_micros(change.new_value)},
        )

    async def _execute_add_negatives(self, change: ProposedChange) -> dict[str, Any]:
        """Attach negative keywords to a campaign or ad group."""
        raw = change.new_value if isinstance(change.new_value, str) else ""
        keywords = [k.strip() for k in raw.split(",") if k.strip()]
        if not keywords:
            raise MutationRejected("No negative keywords supplied")
        return await self._post(
            f"{self._entity_path(change)}/negative-keywords", {"keywords": keywords}
        )

    async def _execute_bulk_edit(self, change: ProposedChange) -> dict[str, Any]:
        """Generic field update."""
        return await self._post(
            f"{self._entity_path(change)}/fields",
            {"field": change.field_name, "value": change.new_value},
        )

    async def _execute_pause_all(self, change: ProposedChange) -> dict[str, Any]:
        """Pause every campaign in the account."""
        if not change.account_id:
            raise MutationRejected("account_id is required")
        return await self._post(
            f"{self.endpoint}/accounts/{change.account_id}/campaigns/pause-all", {}
        )
