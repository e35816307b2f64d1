"""Unit tests for the HTTP mutation client."""

import json

import httpx
import pytest

from governance.mutation import HttpMutationClient, MutationRejected, to_micros

ENDPOINT = "http://gateway.test/api/v1"


class Recorder:
    """MockTransport handler that records requests and replays one response."""

    def __init__(self, status_code=200, body=None):
        self.requests: list[httpx.Request] = []
        self.status_code = status_code
        self.body = body if body is not None else {"ok": True}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json=self.body)

    @property
    def last_json(self):
        return json.loads(self.requests[-1].content)


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def client(recorder):
    transport = httpx.MockTransport(recorder)
    return HttpMutationClient(ENDPOINT, client=httpx.AsyncClient(transport=transport))


class TestToMicros:
    """Tests for currency conversion."""

    def test_converts_amounts(self):
        assert to_micros(12.5) == 12_500_000
        assert to_micros("$1,000") == 1_000_000_000
        assert to_micros(0.01) == 10_000

    def test_rejects_non_numbers(self):
        with pytest.raises(MutationRejected):
            to_micros("lots")


class TestHttpMutationClient:
    """Tests for request translation and error mapping."""

    @pytest.mark.asyncio
    async def test_pause_campaign(self, client, recorder, make_change):
        result = await client.execute(make_change())

        request = recorder.requests[-1]
        assert result.ok is True
        assert result.output == {"ok": True}
        assert request.method == "POST"
        assert str(request.url) == f"{ENDPOINT}/accounts/acct-1/campaigns/cmp-1/status"
        assert recorder.last_json == {"status": "PAUSED"}

    @pytest.mark.asyncio
    async def test_budget_sent_in_micros(self, client, recorder, budget_change):
        await client.execute(budget_change(50, 75.5))

        assert str(recorder.requests[-1].url).endswith("/campaigns/cmp-1/budget")
        assert recorder.last_json == {"amount_micros": 75_500_000}

    @pytest.mark.asyncio
    async def test_keyword_bid_path(self, client, recorder, make_change):
        change = make_change(
            entity_type="keyword",
            entity_id="kw-9",
            action_type="update_bid",
            field_name="bid",
            current_value=1.0,
            new_value=1.25,
            ad_group_id="ag-3",
        )

        result = await client.execute(change)

        assert result.ok is True
        assert str(recorder.requests[-1].url) == (
            f"{ENDPOINT}/accounts/acct-1/ad-groups/ag-3/keywords/kw-9/bid"
        )
        assert recorder.last_json == {"cpc_bid_micros": 1_250_000}

    @pytest.mark.asyncio
    async def test_keyword_without_ad_group(self, client, recorder, make_change):
        change = make_change(entity_type="keyword", entity_id="kw-9", action_type="pause_keyword")

        result = await client.execute(change)

        assert result.ok is False
        assert result.error == "Keyword changes require ad_group_id"
        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_account_required(self, client, make_change):
        result = await client.execute(make_change(account_id=None))

        assert result.ok is False
        assert result.error == "account_id is required"

    @pytest.mark.asyncio
    async def test_negative_keywords_split(self, client, recorder, make_change):
        change = make_change(
            action_type="add_negatives",
            field_name="negative_keywords",
            current_value=None,
            new_value="free, cheap ,,jobs",
        )

        await client.execute(change)

        assert str(recorder.requests[-1].url).endswith("/campaigns/cmp-1/negative-keywords")
        assert recorder.last_json == {"keywords": ["free", "cheap", "jobs"]}

    @pytest.mark.asyncio
    async def test_gateway_error_is_failed_result(self, make_change):
        recorder = Recorder(status_code=500, body={"detail": "upstream down"})
        client = HttpMutationClient(
            ENDPOINT, client=httpx.AsyncClient(transport=httpx.MockTransport(recorder))
        )

        result = await client.execute(make_change())

        assert result.ok is False
        assert result.error.startswith("Gateway returned 500")

    @pytest.mark.asyncio
    async def test_transport_error_is_failed_result(self, make_change):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = HttpMutationClient(
            ENDPOINT, client=httpx.AsyncClient(transport=httpx.MockTransport(refuse))
        )

        result = await client.execute(make_change())

        assert result.ok is False
        assert "connection refused" in result.error

    @pytest.mark.asyncio
    async def test_unknown_action(self, client, recorder, make_change):
        result = await client.execute(make_change(action_type="rename_campaign"))

        assert result.ok is False
        assert result.error == "No handler for action type: rename_campaign"
        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_rollback_prefix_uses_base_handler(self, client, recorder, make_change):
        change = make_change(
            action_type="rollback_set_budget",
            field_name="budget",
            current_value=100,
            new_value=50,
        )

        result = await client.execute(change)

        assert result.ok is True
        assert recorder.last_json == {"amount_micros": 50_000_000}

    @pytest.mark.asyncio
    async def test_close_releases_client(self, client):
        await client.close()

        assert client._client is None
