from __future__ import annotations

import asyncio
import json
from typing import Any, Callable

import httpx
import pytest

from shortcut_mcp.client import ShortcutApiError, ShortcutClient

BASE_URL = "https://shortcut.test/api/v3"


class Recorder:
    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]):
        self.handler = handler
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)


def _run(recorder: Recorder, fn: Callable[[ShortcutClient], Any]) -> Any:
    async def go() -> Any:
        client = ShortcutClient(
            "secret-token", base_url=BASE_URL, transport=httpx.MockTransport(recorder)
        )
        try:
            return await fn(client)
        finally:
            await client.aclose()

    return asyncio.run(go())


def test_token_is_required():
    with pytest.raises(ValueError):
        ShortcutClient("")


def test_search_sends_query_and_parses_page():
    recorder = Recorder(
        lambda request: httpx.Response(
            200,
            json={
                "data": [{"id": 1}, {"id": 2}],
                "total": 40,
                "next": "/api/v3/search/stories?query=type%3Abug&next=abc123",
            },
        )
    )

    page = _run(recorder, lambda client: client.search("stories", "type:bug owner:me"))

    request = recorder.requests[0]
    assert request.method == "GET"
    assert request.url.path == "/api/v3/search/stories"
    assert request.url.params["query"] == "type:bug owner:me"
    assert request.url.params["page_size"] == "25"
    assert request.url.params["detail"] == "slim"
    assert "next" not in request.url.params
    assert request.headers["Shortcut-Token"] == "secret-token"
    assert [item["id"] for item in page.items] == [1, 2]
    assert page.total == 40
    assert page.next_page_token == "abc123"


def test_search_passes_next_page_token():
    recorder = Recorder(lambda request: httpx.Response(200, json={"data": [], "total": 0}))

    page = _run(
        recorder, lambda client: client.search("epics", "", next_page_token="abc123")
    )

    assert recorder.requests[0].url.params["next"] == "abc123"
    assert page.items == []
    assert page.next_page_token is None


def test_get_entity_returns_none_on_404():
    recorder = Recorder(lambda request: httpx.Response(404, json={"message": "missing"}))

    entity = _run(recorder, lambda client: client.get_entity("epics", 7))

    assert entity is None
    assert recorder.requests[0].url.path == "/api/v3/epics/7"


def test_http_error_status_raises():
    recorder = Recorder(lambda request: httpx.Response(500, text="oops"))

    with pytest.raises(ShortcutApiError) as excinfo:
        _run(recorder, lambda client: client.list_entities("users"))

    assert excinfo.value.code == "http_error"
    assert excinfo.value.status_code == 500
    assert "oops" in excinfo.value.message


def test_transport_error_raises_unavailable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ShortcutApiError) as excinfo:
        _run(Recorder(handler), lambda client: client.get_entity("stories", 1))

    assert excinfo.value.code == "unavailable"


def test_invalid_json_raises():
    recorder = Recorder(lambda request: httpx.Response(200, text="not json"))

    with pytest.raises(ShortcutApiError) as excinfo:
        _run(recorder, lambda client: client.get_entity("stories", 1))

    assert excinfo.value.code == "invalid_response"


def test_list_entities_paths():
    recorder = Recorder(lambda request: httpx.Response(200, json=[{"id": "t1"}]))

    async def list_all(client: ShortcutClient) -> list[Any]:
        return [await client.list_entities(kind) for kind in ("users", "workflows", "teams")]

    _run(recorder, list_all)

    assert [r.url.path for r in recorder.requests] == [
        "/api/v3/members",
        "/api/v3/workflows",
        "/api/v3/groups",
    ]


def test_list_entities_rejects_unknown_kind():
    recorder = Recorder(lambda request: httpx.Response(200, json=[]))

    with pytest.raises(ValueError):
        _run(recorder, lambda client: client.list_entities("epics"))


def test_current_user_is_memoised():
    recorder = Recorder(
        lambda request: httpx.Response(200, json={"id": "u1", "mention_name": "alice"})
    )

    async def twice(client: ShortcutClient) -> list[Any]:
        return [await client.get_current_user(), await client.get_current_user()]

    first, second = _run(recorder, twice)

    assert first == second == {"id": "u1", "mention_name": "alice"}
    assert len(recorder.requests) == 1
    assert recorder.requests[0].url.path == "/api/v3/member"


def test_update_entity_sends_put_with_payload():
    recorder = Recorder(lambda request: httpx.Response(200, json={"id": 5, "app_url": "u"}))

    _run(recorder, lambda client: client.update_entity("stories", 5, {"epic_id": None}))

    request = recorder.requests[0]
    assert request.method == "PUT"
    assert request.url.path == "/api/v3/stories/5"
    assert json.loads(request.content) == {"epic_id": None}
