import orjson
import pytest
from websockets.datastructures import Headers
from websockets.http11 import Request

from dmrelay.core.store import HISTORY_LIMIT
from dmrelay.server.history import HistoryEndpoint


def _request(path, origin=None):
    headers = Headers()
    if origin:
        headers["Origin"] = origin
    return Request(path=path, headers=headers)


@pytest.mark.asyncio
async def test_non_history_paths_fall_through(messages):
    endpoint = HistoryEndpoint(messages, ["http://localhost:8000"])
    assert await endpoint(None, _request("/")) is None
    assert await endpoint(None, _request("/chat")) is None


@pytest.mark.asyncio
async def test_history_returns_newest_first_capped(messages):
    for i in range(HISTORY_LIMIT + 3):
        await messages.insert("alice", "bob", f"m{i}")
    await messages.insert("carol", "dave", "other")

    resp = await HistoryEndpoint(messages)(None, _request("/api/conversations/bob"))
    assert resp.status_code == 200
    assert resp.headers["Content-Type"] == "application/json"
    body = orjson.loads(resp.body)
    assert len(body) == HISTORY_LIMIT
    assert body[0]["message"] == f"m{HISTORY_LIMIT + 2}"
    assert [r["timestamp"] for r in body] == sorted((r["timestamp"] for r in body), reverse=True)


@pytest.mark.asyncio
async def test_history_empty_list(messages):
    resp = await HistoryEndpoint(messages)(None, _request("/api/conversations/nobody"))
    assert resp.status_code == 200
    assert orjson.loads(resp.body) == []


@pytest.mark.asyncio
async def test_history_url_encoded_username_and_query(messages):
    await messages.insert("jane doe", "bob", "hi")
    resp = await HistoryEndpoint(messages)(None, _request("/api/conversations/jane%20doe?x=1"))
    assert [r["sender"] for r in orjson.loads(resp.body)] == ["jane doe"]


@pytest.mark.asyncio
async def test_history_store_failure_is_500(messages, db):
    await db.close()
    resp = await HistoryEndpoint(messages)(None, _request("/api/conversations/alice"))
    assert resp.status_code == 500
    assert orjson.loads(resp.body) == {"error": "Internal server error"}


@pytest.mark.asyncio
async def test_history_missing_username_is_404(messages):
    resp = await HistoryEndpoint(messages)(None, _request("/api/conversations/"))
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_cors_headers(messages):
    endpoint = HistoryEndpoint(messages, ["http://localhost:8000"])
    allowed = await endpoint(None, _request("/api/conversations/a", origin="http://localhost:8000"))
    assert allowed.headers["Access-Control-Allow-Origin"] == "http://localhost:8000"
    assert allowed.headers["Access-Control-Allow-Credentials"] == "true"

    other = await endpoint(None, _request("/api/conversations/a", origin="http://evil.example"))
    assert "Access-Control-Allow-Origin" not in other.headers

    open_endpoint = HistoryEndpoint(messages, None)
    anyone = await open_endpoint(None, _request("/api/conversations/a", origin="http://evil.example"))
    assert anyone.headers["Access-Control-Allow-Origin"] == "*"
