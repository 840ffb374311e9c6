import asyncio
from typing import Any, Dict, List

import aiohttp
import pytest

from async_crm_sync.classifier import classify
from async_crm_sync.credentials import StaticTokenProvider
from async_crm_sync.crm_client import CrmClient
from async_crm_sync.errors import CrmApiError
from async_crm_sync.models import ErrorCategory


class DummyResponse:
    def __init__(self, status: int, body: Any):
        self.status = status
        self._body = body

    async def json(self, content_type=None):
        if isinstance(self._body, Exception):
            raise self._body
        return self._body

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class DummySession:
    def __init__(self, responses: List[Any]):
        self.responses = responses
        self.requests: List[Dict[str, Any]] = []

    def request(self, method, url, headers=None, **kwargs):
        self.requests.append({"method": method, "url": url, "headers": headers, **kwargs})
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


def make_client(responses, token="tok-1"):
    session = DummySession(responses)
    client = CrmClient(
        "https://crm.example.com/v2/",
        StaticTokenProvider({"crm": token}),
        session_factory=lambda: session,
    )
    return client, session


@pytest.mark.asyncio
async def test_upsert_success():
    body = {"data": [{"status": "success", "action": "insert", "details": {"id": 4150868000000624001}}]}
    client, session = make_client([DummyResponse(201, body)])

    result = await client.create_or_update("Leads", {"Last_Name": "Rossi"})

    assert result == {"external_id": "4150868000000624001", "action": "insert"}
    request = session.requests[0]
    assert request["method"] == "POST"
    assert request["url"] == "https://crm.example.com/v2/Leads/upsert"
    assert request["json"] == {"data": [{"Last_Name": "Rossi"}]}
    assert request["headers"] == {"Authorization": "Zoho-oauthtoken tok-1"}


@pytest.mark.asyncio
async def test_http_error_carries_status():
    client, _ = make_client([DummyResponse(429, {"code": "TOO_MANY_REQUESTS", "message": "limit hit"})])
    with pytest.raises(CrmApiError) as excinfo:
        await client.create_or_update("Leads", {})
    assert excinfo.value.status == 429
    assert excinfo.value.code == "TOO_MANY_REQUESTS"
    assert classify(excinfo.value).category is ErrorCategory.RATE_LIMIT


@pytest.mark.asyncio
async def test_non_json_error_body():
    client, _ = make_client([DummyResponse(503, ValueError("not json"))])
    with pytest.raises(CrmApiError, match="CRM API error 503: no details") as excinfo:
        await client.create_or_update("Leads", {})
    assert classify(excinfo.value).category is ErrorCategory.REMOTE_SERVER_ERROR


@pytest.mark.asyncio
async def test_record_level_rejection_names_field():
    body = {
        "data": [
            {"status": "error", "code": "INVALID_DATA", "message": "invalid data", "details": {"api_name": "Email"}}
        ]
    }
    client, _ = make_client([DummyResponse(200, body)])
    with pytest.raises(CrmApiError, match=r"invalid data \(field Email\)") as excinfo:
        await client.create_or_update("Leads", {"Email": "x"})
    assert classify(excinfo.value).category is ErrorCategory.FIELD_MAPPING


@pytest.mark.asyncio
async def test_empty_upsert_response():
    client, _ = make_client([DummyResponse(200, {"data": []})])
    with pytest.raises(CrmApiError, match="empty upsert response"):
        await client.create_or_update("Leads", {})


@pytest.mark.asyncio
async def test_missing_token():
    client, session = make_client([], token=None)
    with pytest.raises(CrmApiError) as excinfo:
        await client.create_or_update("Leads", {})
    assert session.requests == []
    assert classify(excinfo.value).category is ErrorCategory.CREDENTIAL_INVALID


@pytest.mark.asyncio
async def test_transport_errors_are_wrapped():
    client, _ = make_client([aiohttp.ClientConnectionError("refused"), asyncio.TimeoutError()])
    with pytest.raises(CrmApiError, match="Network connection error") as excinfo:
        await client.create_or_update("Leads", {})
    assert classify(excinfo.value).category is ErrorCategory.NETWORK
    with pytest.raises(CrmApiError, match="timeout") as excinfo:
        await client.create_or_update("Leads", {})
    assert classify(excinfo.value).category is ErrorCategory.NETWORK


@pytest.mark.asyncio
async def test_get_module_fields():
    body = {
        "fields": [
            {"api_name": "Email", "field_label": "Email", "data_type": "email", "length": 100},
            {"api_name": "Hobbies", "field_label": "Hobbies", "data_type": "multiselectpicklist", "custom_field": True},
            {"field_label": "broken"},
        ]
    }
    client, session = make_client([DummyResponse(200, body)])
    fields = await client.get_module_fields("Leads")
    assert [f.api_name for f in fields] == ["Email", "Hobbies"]
    assert fields[0].max_length == 100
    assert fields[1].is_custom_field is True
    assert fields[1].max_length is None
    assert session.requests[0]["params"] == {"module": "Leads"}
