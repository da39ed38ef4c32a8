from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest

from shortcut_mcp.cache import ReferenceCaches
from shortcut_mcp.client import EntityNotFoundError, SearchPage, ShortcutApiError
from shortcut_mcp.dates import DateExpressionError
from shortcut_mcp.formatting import to_result
from shortcut_mcp.hydrate import UNKNOWN_NAME, EntityResolver
from shortcut_mcp.tools import ShortcutTools

CURRENT_USER = {"id": "u1", "mention_name": "alice"}


class FakeClient:
    def __init__(self):
        self.calls: list[tuple[str, Any]] = []
        self.current_user: dict[str, Any] | None = dict(CURRENT_USER)
        self.lists: dict[str, list[dict[str, Any]]] = {
            "users": [{"id": "u1", "profile": {"name": "Alice", "mention_name": "alice"}}],
            "teams": [{"id": "team-1", "name": "Mobile Team", "mention_name": "mobile"}],
            "workflows": [
                {"id": 500, "name": "Engineering", "default_state_id": 501, "states": []}
            ],
        }
        self.entities: dict[tuple[str, Any], dict[str, Any]] = {}
        self.list_errors: dict[str, Exception] = {}
        self.page = SearchPage()

    async def get_current_user(self) -> dict[str, Any] | None:
        self.calls.append(("get_current_user", None))
        return self.current_user

    async def list_entities(self, kind: str) -> list[dict[str, Any]]:
        self.calls.append(("list_entities", kind))
        if kind in self.list_errors:
            raise self.list_errors[kind]
        return self.lists.get(kind, [])

    async def get_entity(self, kind: str, entity_id: Any) -> dict[str, Any] | None:
        self.calls.append(("get_entity", (kind, entity_id)))
        return self.entities.get((kind, entity_id))

    async def search(
        self, kind: str, query: str, page_size: int = 25, next_page_token: str | None = None
    ) -> SearchPage:
        self.calls.append(("search", (kind, query, next_page_token)))
        return self.page

    async def create_entity(self, kind: str, payload: dict[str, Any]) -> dict[str, Any]:
        self.calls.append(("create_entity", (kind, payload)))
        return {"id": 42, **payload}

    async def update_entity(
        self, kind: str, entity_id: Any, payload: dict[str, Any]
    ) -> dict[str, Any]:
        self.calls.append(("update_entity", (kind, entity_id, payload)))
        return {"id": entity_id, "app_url": f"https://app.shortcut.com/story/{entity_id}"}

    async def create_story_comment(self, story_id: int, text: str) -> dict[str, Any]:
        self.calls.append(("create_story_comment", (story_id, text)))
        return {"id": 9, "app_url": "https://app.shortcut.com/comment/9"}

    async def list_iteration_stories(self, iteration_id: int) -> list[dict[str, Any]]:
        self.calls.append(("list_iteration_stories", iteration_id))
        return [self.entities[("stories", 1)]] if ("stories", 1) in self.entities else []

    def called(self, name: str) -> list[Any]:
        return [args for call, args in self.calls if call == name]


def _tools(client: FakeClient) -> ShortcutTools:
    return ShortcutTools(client, EntityResolver(client, ReferenceCaches()))


def _payload(text: str) -> dict[str, Any]:
    return json.loads(text.split("<json>\n", 1)[1].split("\n</json>", 1)[0])


def test_to_result_layout():
    text = to_result("Result:", {"a": 1}, "tok")

    assert text == 'Result:\n\n<json>\n{\n  "a": 1\n}\n</json>\n\n<next-page-token>tok</next-page-token>'
    assert to_result("Done.") == "Done."


def test_search_stories_resolves_me_and_team():
    client = FakeClient()
    client.page = SearchPage(items=[{"id": 1, "owner_ids": ["u1"]}], total=3, next_page_token="tok")

    text = asyncio.run(
        _tools(client).search_stories({"owner": "me", "team": "mobile team", "is_done": False})
    )

    assert client.called("search") == [("stories", "owner:alice group:team-1 !is:done", None)]
    assert text.startswith("Result (1 shown of 3 total stories found):")
    assert text.endswith("<next-page-token>tok</next-page-token>")
    payload = _payload(text)
    assert payload["stories"][0]["owner_names"] == ["@alice"]
    assert payload["relatedEntities"]["users"][0]["mention_name"] == "alice"


def test_search_passes_page_token_and_negation():
    client = FakeClient()

    text = asyncio.run(
        _tools(client).search_epics({"state": "done"}, negate=["state"], next_page_token="abc")
    )

    assert client.called("search") == [("epics", "!state:done", "abc")]
    assert text == "Result: No epics found."


def test_invalid_date_fails_before_any_call():
    client = FakeClient()

    with pytest.raises(DateExpressionError):
        asyncio.run(
            _tools(client).search_stories({"owner": "me", "created": "today..2024-01-01"})
        )

    assert client.calls == []


def test_get_story_not_found_raises():
    client = FakeClient()

    with pytest.raises(EntityNotFoundError) as excinfo:
        asyncio.run(_tools(client).get_story(9))

    assert excinfo.value.message == "Failed to retrieve Shortcut story with public ID: 9"


def test_get_story_marks_missing_epic():
    client = FakeClient()
    client.entities[("stories", 1)] = {"id": 1, "name": "Login", "epic_id": 7, "group_id": "team-1"}

    text = asyncio.run(_tools(client).get_story(1))

    assert text.startswith("Story: sc-1\n\n<json>")
    payload = _payload(text)
    assert payload["story"]["team_id"] == "team-1"
    assert payload["story"]["team_name"] == "Mobile Team"
    assert payload["story"]["epic_name"] == UNKNOWN_NAME
    assert payload["relatedEntities"]["epics"] == [
        {"id": 7, "name": UNKNOWN_NAME, "not_found": True}
    ]


def test_branch_name_uses_mention_and_slug():
    client = FakeClient()
    client.entities[("stories", 123)] = {"id": 123, "name": "Fix the Login Bug!"}

    text = asyncio.run(_tools(client).get_story_branch_name(123))

    assert text == "Branch name for story sc-123: alice/sc-123/fix-the-login-bug"


def test_branch_name_is_truncated():
    client = FakeClient()
    client.entities[("stories", 1)] = {"id": 1, "name": "word " * 30}

    text = asyncio.run(_tools(client).get_story_branch_name(1))
    branch = text.rsplit(": ", 1)[1]

    assert len(branch) == 50
    assert branch.startswith("alice/sc-1/word-word")


def test_create_story_requires_team_or_workflow():
    with pytest.raises(ValueError):
        asyncio.run(_tools(FakeClient()).create_story("New story"))


def test_create_story_rejects_unknown_type():
    with pytest.raises(ValueError):
        asyncio.run(_tools(FakeClient()).create_story("New story", story_type="epic", workflow=500))


def test_create_story_uses_team_default_workflow_state():
    client = FakeClient()
    client.entities[("teams", "team-1")] = {"id": "team-1", "workflow_ids": [500]}
    client.entities[("workflows", 500)] = {"id": 500, "default_state_id": 501}

    text = asyncio.run(_tools(client).create_story("New story", team="team-1", owner="u1"))

    assert text == "Created story: sc-42"
    kind, payload = client.called("create_entity")[0]
    assert kind == "stories"
    assert payload == {
        "name": "New story",
        "story_type": "feature",
        "owner_ids": ["u1"],
        "workflow_state_id": 501,
        "group_id": "team-1",
    }


def test_update_story_maps_and_clears_fields():
    client = FakeClient()
    client.entities[("stories", 5)] = {"id": 5}

    text = asyncio.run(_tools(client).update_story(5, {"type": "bug", "epic": None}))

    assert client.called("update_entity") == [
        ("stories", 5, {"story_type": "bug", "epic_id": None})
    ]
    assert "sc-5" in text


def test_update_story_rejects_unknown_fields():
    client = FakeClient()
    client.entities[("stories", 5)] = {"id": 5}

    with pytest.raises(ValueError, match="Unknown story fields: team"):
        asyncio.run(_tools(client).update_story(5, {"epic": None, "team": None}))

    assert client.called("update_entity") == []
    assert client.called("get_entity") == []


def test_update_story_without_fields_raises():
    client = FakeClient()
    client.entities[("stories", 5)] = {"id": 5}

    with pytest.raises(ValueError):
        asyncio.run(_tools(client).update_story(5, {}))


def test_assign_and_unassign_current_user():
    client = FakeClient()
    client.entities[("stories", 5)] = {"id": 5, "owner_ids": ["u9"]}
    tools = _tools(client)

    asyncio.run(tools.assign_current_user(5))
    assert client.called("update_entity")[-1] == ("stories", 5, {"owner_ids": ["u9", "u1"]})

    client.entities[("stories", 5)] = {"id": 5, "owner_ids": ["u9", "u1"]}
    asyncio.run(tools.unassign_current_user(5))
    assert client.called("update_entity")[-1] == ("stories", 5, {"owner_ids": ["u9"]})


def test_already_owner_is_not_updated():
    client = FakeClient()
    client.entities[("stories", 5)] = {"id": 5, "owner_ids": ["u1"]}

    text = asyncio.run(_tools(client).assign_current_user(5))

    assert "already an owner" in text
    assert client.called("update_entity") == []


def test_missing_current_user_raises():
    client = FakeClient()
    client.current_user = None

    with pytest.raises(ShortcutApiError):
        asyncio.run(_tools(client).get_current_user())


def test_get_team_not_found_returns_text():
    text = asyncio.run(_tools(FakeClient()).get_team("nope"))

    assert text == "Team with public ID: nope not found."


def test_list_teams_propagates_refill_failure():
    client = FakeClient()
    client.list_errors["teams"] = ShortcutApiError("unavailable", "down")

    with pytest.raises(ShortcutApiError):
        asyncio.run(_tools(client).list_teams())


def test_current_user_teams_filters_membership():
    client = FakeClient()
    client.lists["teams"] = [
        {"id": "team-1", "name": "Mobile", "member_ids": ["u1"]},
        {"id": "team-2", "name": "Web", "member_ids": ["u2"]},
    ]

    text = asyncio.run(_tools(client).get_current_user_teams())

    assert text.startswith("Current user belongs to 1 teams:")
    assert [team["id"] for team in _payload(text)["teams"]] == ["team-1"]


def test_default_workflow_falls_back_to_workspace():
    text = asyncio.run(_tools(FakeClient()).get_default_workflow("missing-team"))

    assert text.startswith("Workspace default workflow:")
    assert _payload(text)["workflow"]["name"] == "Engineering"


def test_iteration_stories_empty():
    text = asyncio.run(_tools(FakeClient()).get_iteration_stories(3))

    assert text == "Result: No stories found in iteration 3."


def test_refresh_cache_reports_all_kinds():
    client = FakeClient()

    health = asyncio.run(_tools(client).refresh_cache())

    assert health["users"]["size"] == 1
    assert health["teams"]["stale"] is False
    assert sorted(client.called("list_entities")) == ["teams", "users", "workflows"]
