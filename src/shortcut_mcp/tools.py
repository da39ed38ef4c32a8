"""
Tool handlers for Shortcut entities.

Each handler compiles its query, calls the API, hydrates what comes back and
renders text. Failures of the primary call propagate to the caller; failures
while hydrating related entities are absorbed by the resolver.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Collection
from typing import Any

from .client import EntityNotFoundError, ShortcutApiError, ShortcutClient
from .formatting import to_result
from .hydrate import SINGULAR, EntityResolver
from .query import (
    SEARCH_FIELDS,
    compile_query,
    needs_current_user,
    needs_team_ids,
    validate_params,
)

logger = logging.getLogger(__name__)

STORY_TYPES = ("feature", "bug", "chore")
BRANCH_NAME_MAX_LENGTH = 50

# Tool argument name -> story API field name, where they differ.
STORY_UPDATE_FIELDS = {
    "name": "name",
    "description": "description",
    "type": "story_type",
    "epic": "epic_id",
    "estimate": "estimate",
    "iteration": "iteration_id",
    "owner_ids": "owner_ids",
    "workflow_state_id": "workflow_state_id",
    "labels": "labels",
    "custom_fields": "custom_fields",
    "team_id": "group_id",
    "project_id": "project_id",
    "deadline": "deadline",
    "follower_ids": "follower_ids",
    "requested_by_id": "requested_by_id",
    "archived": "archived",
}


def _story_ref(story_id: int) -> str:
    return f"sc-{story_id}"


def _branch_slug(name: str) -> str:
    slug = re.sub(r"\s+", "-", name.lower())
    return re.sub(r"[^\w-]", "", slug)


class ShortcutTools:
    """Handlers behind every registered tool."""

    def __init__(self, client: ShortcutClient, resolver: EntityResolver):
        self._client = client
        self._resolver = resolver

    async def _current_user(self) -> dict[str, Any]:
        user = await self._client.get_current_user()
        if not user:
            raise ShortcutApiError("not_found", "Failed to retrieve current user.")
        return user

    async def _team_ids(self) -> dict[str, str]:
        teams = await self._resolver.reference_values("teams")
        by_name: dict[str, str] = {}
        for team in teams:
            for label in (team.get("name"), team.get("mention_name")):
                if label:
                    by_name.setdefault(str(label).strip().lower(), team["id"])
        return by_name

    async def _compile(
        self, kind: str, params: dict[str, Any], negate: Collection[str] | None
    ) -> str:
        fields = SEARCH_FIELDS[kind]
        validate_params(params, fields)
        current_user = (
            await self._client.get_current_user() if needs_current_user(params, fields) else None
        )
        team_ids = await self._team_ids() if needs_team_ids(params, fields) else None
        return compile_query(
            params, fields, current_user=current_user, negate=negate or (), team_ids=team_ids
        )

    async def _search(
        self,
        kind: str,
        params: dict[str, Any],
        negate: Collection[str] | None = None,
        next_page_token: str | None = None,
    ) -> str:
        query = await self._compile(kind, params, negate)
        page = await self._client.search(kind, query, next_page_token=next_page_token)
        if not page.items:
            return to_result(f"Result: No {kind} found.")

        hydrated = await self._resolver.resolve_many(kind, page.items)
        return to_result(
            f"Result ({len(page.items)} shown of {page.total} total {kind} found):",
            hydrated.to_dict(),
            page.next_page_token,
        )

    async def _require(self, kind: str, entity_id: Any) -> dict[str, Any]:
        entity = await self._client.get_entity(kind, entity_id)
        if entity is None:
            raise EntityNotFoundError(SINGULAR[kind], entity_id)
        return entity

    async def _get(self, kind: str, entity_id: Any, title: str, full: bool) -> str:
        entity = await self._require(kind, entity_id)
        hydrated = await self._resolver.resolve_one(kind, entity, full=full)
        return to_result(title, hydrated.to_dict())

    # Stories

    async def search_stories(
        self,
        params: dict[str, Any],
        negate: Collection[str] | None = None,
        next_page_token: str | None = None,
    ) -> str:
        return await self._search("stories", params, negate, next_page_token)

    async def get_story(self, story_id: int, full: bool = False) -> str:
        return await self._get("stories", story_id, f"Story: {_story_ref(story_id)}", full)

    async def get_story_branch_name(self, story_id: int) -> str:
        user = await self._current_user()
        story = await self._require("stories", story_id)
        branch = story.get("formatted_vcs_branch_name") or (
            f"{user.get('mention_name')}/{_story_ref(story_id)}/"
            f"{_branch_slug(story.get('name') or '')}"
        )[:BRANCH_NAME_MAX_LENGTH]
        return to_result(f"Branch name for story {_story_ref(story_id)}: {branch}")

    async def create_story(
        self,
        name: str,
        description: str | None = None,
        story_type: str = "feature",
        owner: str | None = None,
        epic: int | None = None,
        iteration: int | None = None,
        team: str | None = None,
        workflow: int | None = None,
    ) -> str:
        if story_type not in STORY_TYPES:
            raise ValueError(f"Story type must be one of: {', '.join(STORY_TYPES)}")
        if not workflow and not team:
            raise ValueError("Team or Workflow has to be specified")

        if not workflow and team:
            team_entity = await self._require("teams", team)
            workflow_ids = team_entity.get("workflow_ids") or []
            workflow = team_entity.get("default_workflow_id") or (
                workflow_ids[0] if workflow_ids else None
            )
        if not workflow:
            raise ValueError("Failed to find workflow for team")

        workflow_entity = await self._require("workflows", workflow)
        payload: dict[str, Any] = {
            "name": name,
            "story_type": story_type,
            "owner_ids": [owner] if owner else [],
            "workflow_state_id": workflow_entity.get("default_state_id"),
        }
        if description is not None:
            payload["description"] = description
        if epic is not None:
            payload["epic_id"] = epic
        if iteration is not None:
            payload["iteration_id"] = iteration
        if team:
            payload["group_id"] = team

        story = await self._client.create_entity("stories", payload)
        logger.info("Created story %s", story.get("id"))
        return to_result(f"Created story: {_story_ref(story['id'])}")

    async def update_story(self, story_id: int, updates: dict[str, Any]) -> str:
        """Apply the given updates; a key mapped to None unsets that field."""
        unknown = sorted(set(updates) - set(STORY_UPDATE_FIELDS))
        if unknown:
            raise ValueError(
                f"Unknown story fields: {', '.join(unknown)}. "
                f"Accepted fields: {', '.join(STORY_UPDATE_FIELDS)}"
            )
        await self._require("stories", story_id)
        payload = {STORY_UPDATE_FIELDS[key]: value for key, value in updates.items()}
        if not payload:
            raise ValueError("No story fields to update")
        story = await self._client.update_entity("stories", story_id, payload)
        return to_result(
            f"Updated story {_story_ref(story_id)}. Story URL: {story.get('app_url')}"
        )

    async def create_story_comment(self, story_id: int, text: str) -> str:
        if not text:
            raise ValueError("Story comment text is required")
        await self._require("stories", story_id)
        comment = await self._client.create_story_comment(story_id, text)
        return to_result(
            f"Created comment on story {_story_ref(story_id)}. "
            f"Comment URL: {comment.get('app_url')}."
        )

    async def assign_current_user(self, story_id: int) -> str:
        story = await self._require("stories", story_id)
        user = await self._current_user()
        owner_ids = list(story.get("owner_ids") or [])
        if user["id"] in owner_ids:
            return to_result(f"Current user is already an owner of story {_story_ref(story_id)}")
        await self._client.update_entity(
            "stories", story_id, {"owner_ids": owner_ids + [user["id"]]}
        )
        return to_result(f"Assigned current user as owner of story {_story_ref(story_id)}")

    async def unassign_current_user(self, story_id: int) -> str:
        story = await self._require("stories", story_id)
        user = await self._current_user()
        owner_ids = list(story.get("owner_ids") or [])
        if user["id"] not in owner_ids:
            return to_result(f"Current user is not an owner of story {_story_ref(story_id)}")
        await self._client.update_entity(
            "stories",
            story_id,
            {"owner_ids": [owner_id for owner_id in owner_ids if owner_id != user["id"]]},
        )
        return to_result(f"Unassigned current user as owner of story {_story_ref(story_id)}")

    # Epics

    async def search_epics(
        self,
        params: dict[str, Any],
        negate: Collection[str] | None = None,
        next_page_token: str | None = None,
    ) -> str:
        return await self._search("epics", params, negate, next_page_token)

    async def get_epic(self, epic_id: int, full: bool = False) -> str:
        return await self._get("epics", epic_id, f"Epic: {epic_id}", full)

    async def create_epic(self, name: str, team_id: str, description: str | None = None) -> str:
        payload: dict[str, Any] = {"name": name, "group_id": team_id}
        if description is not None:
            payload["description"] = description
        epic = await self._client.create_entity("epics", payload)
        return to_result(f"Epic created with ID: {epic['id']}.")

    # Iterations

    async def search_iterations(
        self,
        params: dict[str, Any],
        negate: Collection[str] | None = None,
        next_page_token: str | None = None,
    ) -> str:
        return await self._search("iterations", params, negate, next_page_token)

    async def get_iteration(self, iteration_id: int, full: bool = False) -> str:
        return await self._get("iterations", iteration_id, f"Iteration: {iteration_id}", full)

    async def get_iteration_stories(self, iteration_id: int) -> str:
        stories = await self._client.list_iteration_stories(iteration_id)
        if not stories:
            return to_result(f"Result: No stories found in iteration {iteration_id}.")
        hydrated = await self._resolver.resolve_many("stories", stories)
        return to_result(f"Result ({len(stories)} stories found):", hydrated.to_dict())

    # Objectives

    async def search_objectives(
        self,
        params: dict[str, Any],
        negate: Collection[str] | None = None,
        next_page_token: str | None = None,
    ) -> str:
        return await self._search("objectives", params, negate, next_page_token)

    async def get_objective(self, objective_id: int, full: bool = False) -> str:
        return await self._get("objectives", objective_id, f"Objective: {objective_id}", full)

    # Teams

    async def get_team(self, team_id: str, full: bool = False) -> str:
        team = await self._client.get_entity("teams", team_id)
        if team is None:
            return to_result(f"Team with public ID: {team_id} not found.")
        hydrated = await self._resolver.resolve_one("teams", team, full=full)
        return to_result(f"Team: {team['id']}", hydrated.to_dict())

    async def list_teams(self) -> str:
        teams = await self._resolver.reference_values("teams", strict=True)
        if not teams:
            return to_result("No teams found.")
        hydrated = await self._resolver.resolve_many("teams", teams)
        return to_result(
            f"Result (first {len(teams)} shown of {len(teams)} total teams found):",
            hydrated.to_dict(),
        )

    # Workflows

    async def get_workflow(self, workflow_id: int, full: bool = False) -> str:
        workflow = await self._client.get_entity("workflows", workflow_id)
        if workflow is None:
            return to_result(f"Workflow with public ID: {workflow_id} not found.")
        hydrated = await self._resolver.resolve_one("workflows", workflow, full=full)
        return to_result(f"Workflow: {workflow['id']}", hydrated.to_dict())

    async def list_workflows(self) -> str:
        workflows = await self._resolver.reference_values("workflows", strict=True)
        if not workflows:
            return to_result("No workflows found.")
        hydrated = await self._resolver.resolve_many("workflows", workflows)
        return to_result(
            f"Result (first {len(workflows)} shown of {len(workflows)} total workflows found):",
            hydrated.to_dict(),
        )

    async def get_default_workflow(self, team_id: str | None = None) -> str:
        if team_id:
            try:
                team = await self._client.get_entity("teams", team_id)
            except ShortcutApiError as exc:
                logger.warning("Could not load team %s, using workspace default: %s", team_id, exc.message)
                team = None
            workflow_ids = (team or {}).get("workflow_ids") or []
            default_id = (team or {}).get("default_workflow_id") or (
                workflow_ids[0] if workflow_ids else None
            )
            if default_id is not None:
                workflows = await self._resolver.reference_map("workflows", [default_id])
                workflow = workflows.get(default_id) or await self._require("workflows", default_id)
                hydrated = await self._resolver.resolve_one("workflows", workflow)
                return to_result(
                    f"Default workflow for team {team_id}:", hydrated.to_dict()
                )

        workflows = await self._resolver.reference_values("workflows", strict=True)
        if not workflows:
            return to_result("No default workflow found.")
        hydrated = await self._resolver.resolve_one("workflows", workflows[0])
        return to_result("Workspace default workflow:", hydrated.to_dict())

    # Users

    async def get_current_user(self) -> str:
        user = await self._current_user()
        return to_result("Current user:", user)

    async def get_current_user_teams(self) -> str:
        user = await self._current_user()
        teams = await self._resolver.reference_values("teams", strict=True)
        mine = [team for team in teams if user["id"] in (team.get("member_ids") or [])]
        if not mine:
            return to_result("Current user does not belong to any teams.")
        hydrated = await self._resolver.resolve_many("teams", mine)
        return to_result(f"Current user belongs to {len(mine)} teams:", hydrated.to_dict())

    async def list_users(self) -> str:
        users = await self._resolver.reference_values("users", strict=True)
        hydrated = await self._resolver.resolve_many("users", users)
        return to_result(f"Found {len(users)} users:", hydrated.to_dict())

    # Cache

    async def refresh_cache(self) -> dict[str, Any]:
        return await self._resolver.refresh()
