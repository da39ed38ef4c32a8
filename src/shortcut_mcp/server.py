"""
MCP server exposing Shortcut stories, epics, iterations, objectives, teams,
workflows and users as tools.
"""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any, Literal

from mcp.server.fastmcp import FastMCP

from .cache import ReferenceCaches
from .client import ShortcutClient
from .hydrate import EntityResolver
from .tools import ShortcutTools

logger = logging.getLogger(__name__)

READONLY = os.getenv("SHORTCUT_READONLY", "0").strip().lower() in {"1", "true", "yes"}

DateExpression = str
StoryType = Literal["feature", "bug", "chore"]
EntityState = Literal["unstarted", "started", "done"]


@asynccontextmanager
async def _lifespan(server: FastMCP) -> AsyncIterator[None]:
    """Close the HTTP client when the server stops."""
    try:
        yield
    finally:
        await _shutdown()


mcp = FastMCP(
    "Shortcut",
    instructions=(
        "Shortcut project management tools. "
        "Search tools take structured filters that are compiled into Shortcut's "
        "search syntax; results include the entities they reference "
        "(users, teams, workflows, epics, iterations, objectives) under relatedEntities. "
        "Dates accept YYYY-MM-DD, today, yesterday, tomorrow or ranges such as "
        "2023-01-01..* and *..today; keywords cannot be mixed with literal dates in a range."
    ),
    lifespan=_lifespan,
)

_client: ShortcutClient | None = None
_caches: ReferenceCaches | None = None
_tools: ShortcutTools | None = None


def get_client() -> ShortcutClient:
    global _client
    if _client is None:
        token = os.getenv("SHORTCUT_API_TOKEN", "")
        if not token:
            raise ValueError("SHORTCUT_API_TOKEN must be set")
        _client = ShortcutClient(token)
    return _client


def get_caches() -> ReferenceCaches:
    global _caches
    if _caches is None:
        _caches = ReferenceCaches()
    return _caches


def get_tools() -> ShortcutTools:
    global _tools
    if _tools is None:
        client = get_client()
        _tools = ShortcutTools(client, EntityResolver(client, get_caches()))
    return _tools


async def _shutdown() -> None:
    global _client, _tools
    if _client is not None:
        await _client.aclose()
    _client = None
    _tools = None


def write_tool() -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Register a tool that changes data, unless the server is read-only."""
    if READONLY:
        return lambda fn: fn
    return mcp.tool()


def _params(**kwargs: Any) -> dict[str, Any]:
    return {key: value for key, value in kwargs.items() if value is not None}


@mcp.tool()
async def stories_search(
    id: int | None = None,
    name: str | None = None,
    title: str | None = None,
    description: str | None = None,
    comment: str | None = None,
    type: StoryType | None = None,
    estimate: int | None = None,
    branch: str | None = None,
    commit: str | None = None,
    pr: int | None = None,
    project: int | None = None,
    epic: int | None = None,
    objective: int | None = None,
    state: str | None = None,
    label: str | None = None,
    owner: str | None = None,
    requester: str | None = None,
    team: str | None = None,
    skill_set: str | None = None,
    product_area: str | None = None,
    technical_area: str | None = None,
    priority: str | None = None,
    severity: str | None = None,
    is_done: bool | None = None,
    is_started: bool | None = None,
    is_unstarted: bool | None = None,
    is_unestimated: bool | None = None,
    is_overdue: bool | None = None,
    is_archived: bool | None = False,
    is_blocker: bool | None = None,
    is_blocked: bool | None = None,
    has_comment: bool | None = None,
    has_label: bool | None = None,
    has_deadline: bool | None = None,
    has_owner: bool | None = None,
    has_pr: bool | None = None,
    has_commit: bool | None = None,
    has_branch: bool | None = None,
    has_epic: bool | None = None,
    has_task: bool | None = None,
    has_attachment: bool | None = None,
    created: DateExpression | None = None,
    updated: DateExpression | None = None,
    completed: DateExpression | None = None,
    due: DateExpression | None = None,
    negate: list[str] | None = None,
    next_page_token: str | None = None,
) -> str:
    """Find Shortcut stories.

    Args:
        owner: Owner mention name, or "me" for the current user.
        requester: Requester mention name, or "me" for the current user.
        team: Team name or mention name.
        is_*: True to match only stories in that state, False to exclude them.
        has_*: True to match only stories having it, False to match those without.
        created: Date, keyword (today/yesterday/tomorrow) or range like 2023-01-01..*.
        negate: Names of filters above to invert, e.g. ["state", "label"].
        next_page_token: Token from a previous result to fetch the next page;
            pass the same filters again.
    """
    params = _params(
        id=id, name=name, title=title, description=description, comment=comment,
        type=type, estimate=estimate, branch=branch, commit=commit, pr=pr,
        project=project, epic=epic, objective=objective, state=state, label=label,
        owner=owner, requester=requester, team=team, skill_set=skill_set,
        product_area=product_area, technical_area=technical_area, priority=priority,
        severity=severity, is_done=is_done, is_started=is_started,
        is_unstarted=is_unstarted, is_unestimated=is_unestimated, is_overdue=is_overdue,
        is_archived=is_archived, is_blocker=is_blocker, is_blocked=is_blocked,
        has_comment=has_comment, has_label=has_label, has_deadline=has_deadline,
        has_owner=has_owner, has_pr=has_pr, has_commit=has_commit, has_branch=has_branch,
        has_epic=has_epic, has_task=has_task, has_attachment=has_attachment,
        created=created, updated=updated, completed=completed, due=due,
    )
    return await get_tools().search_stories(params, negate, next_page_token)


@mcp.tool()
async def stories_get_by_id(story_public_id: int, full: bool = False) -> str:
    """Get a Shortcut story by public ID.

    Args:
        story_public_id: The public ID of the story.
        full: True for every story field, False for a slim version.
    """
    return await get_tools().get_story(story_public_id, full)


@mcp.tool()
async def stories_get_branch_name(story_public_id: int) -> str:
    """Get a valid git branch name for a story."""
    return await get_tools().get_story_branch_name(story_public_id)


@write_tool()
async def stories_create(
    name: str,
    description: str | None = None,
    type: StoryType = "feature",
    owner: str | None = None,
    epic: int | None = None,
    iteration: int | None = None,
    team: str | None = None,
    workflow: int | None = None,
) -> str:
    """Create a new Shortcut story.

    Either a team or a workflow is required. With only a team, the team's
    default workflow is used. The story starts in the workflow's default state.
    """
    return await get_tools().create_story(
        name, description, type, owner, epic, iteration, team, workflow
    )


@write_tool()
async def stories_update(
    story_public_id: int,
    name: str | None = None,
    description: str | None = None,
    type: StoryType | None = None,
    epic: int | None = None,
    estimate: int | None = None,
    iteration: int | None = None,
    owner_ids: list[str] | None = None,
    workflow_state_id: int | None = None,
    labels: list[dict[str, str]] | None = None,
    team_id: str | None = None,
    project_id: int | None = None,
    deadline: str | None = None,
    follower_ids: list[str] | None = None,
    requested_by_id: str | None = None,
    archived: bool | None = None,
    clear_fields: list[str] | None = None,
) -> str:
    """Update an existing Shortcut story. Only provided fields change.

    Args:
        clear_fields: Names of the arguments above to unset, e.g.
            ["epic", "iteration", "deadline", "team_id"]. Unknown names fail the call.
    """
    updates = _params(
        name=name, description=description, type=type, epic=epic, estimate=estimate,
        iteration=iteration, owner_ids=owner_ids, workflow_state_id=workflow_state_id,
        labels=labels, team_id=team_id, project_id=project_id, deadline=deadline,
        follower_ids=follower_ids, requested_by_id=requested_by_id, archived=archived,
    )
    for field_name in clear_fields or []:
        updates[field_name] = None
    return await get_tools().update_story(story_public_id, updates)


@write_tool()
async def stories_create_comment(story_public_id: int, text: str) -> str:
    """Create a comment on a story."""
    return await get_tools().create_story_comment(story_public_id, text)


@write_tool()
async def stories_assign_current_user(story_public_id: int) -> str:
    """Assign the current user as an owner of a story."""
    return await get_tools().assign_current_user(story_public_id)


@write_tool()
async def stories_unassign_current_user(story_public_id: int) -> str:
    """Remove the current user from the owners of a story."""
    return await get_tools().unassign_current_user(story_public_id)


@mcp.tool()
async def epics_search(
    id: int | None = None,
    name: str | None = None,
    description: str | None = None,
    state: EntityState | None = None,
    objective: int | None = None,
    owner: str | None = None,
    requester: str | None = None,
    team: str | None = None,
    comment: str | None = None,
    is_unstarted: bool | None = None,
    is_started: bool | None = None,
    is_done: bool | None = None,
    is_archived: bool | None = False,
    is_overdue: bool | None = None,
    has_owner: bool | None = None,
    has_comment: bool | None = None,
    has_deadline: bool | None = None,
    has_label: bool | None = None,
    created: DateExpression | None = None,
    updated: DateExpression | None = None,
    completed: DateExpression | None = None,
    due: DateExpression | None = None,
    negate: list[str] | None = None,
    next_page_token: str | None = None,
) -> str:
    """Find Shortcut epics. Filters behave as in stories_search."""
    params = _params(
        id=id, name=name, description=description, state=state, objective=objective,
        owner=owner, requester=requester, team=team, comment=comment,
        is_unstarted=is_unstarted, is_started=is_started, is_done=is_done,
        is_archived=is_archived, is_overdue=is_overdue, has_owner=has_owner,
        has_comment=has_comment, has_deadline=has_deadline, has_label=has_label,
        created=created, updated=updated, completed=completed, due=due,
    )
    return await get_tools().search_epics(params, negate, next_page_token)


@mcp.tool()
async def epics_get_by_id(epic_public_id: int, full: bool = False) -> str:
    """Get a Shortcut epic by public ID."""
    return await get_tools().get_epic(epic_public_id, full)


@write_tool()
async def epics_create(name: str, team_id: str, description: str | None = None) -> str:
    """Create a new Shortcut epic in a team."""
    return await get_tools().create_epic(name, team_id, description)


@mcp.tool()
async def iterations_search(
    id: int | None = None,
    name: str | None = None,
    description: str | None = None,
    state: str | None = None,
    team: str | None = None,
    created: DateExpression | None = None,
    updated: DateExpression | None = None,
    start_date: DateExpression | None = None,
    end_date: DateExpression | None = None,
    negate: list[str] | None = None,
    next_page_token: str | None = None,
) -> str:
    """Find Shortcut iterations. Filters behave as in stories_search."""
    params = _params(
        id=id, name=name, description=description, state=state, team=team,
        created=created, updated=updated, start_date=start_date, end_date=end_date,
    )
    return await get_tools().search_iterations(params, negate, next_page_token)


@mcp.tool()
async def iterations_get_by_id(iteration_public_id: int, full: bool = False) -> str:
    """Get a Shortcut iteration by public ID."""
    return await get_tools().get_iteration(iteration_public_id, full)


@mcp.tool()
async def iterations_get_stories(iteration_public_id: int) -> str:
    """List the stories in an iteration."""
    return await get_tools().get_iteration_stories(iteration_public_id)


@mcp.tool()
async def objectives_search(
    id: int | None = None,
    name: str | None = None,
    description: str | None = None,
    state: EntityState | None = None,
    owner: str | None = None,
    requester: str | None = None,
    team: str | None = None,
    is_unstarted: bool | None = None,
    is_started: bool | None = None,
    is_done: bool | None = None,
    is_archived: bool | None = None,
    has_owner: bool | None = None,
    created: DateExpression | None = None,
    updated: DateExpression | None = None,
    completed: DateExpression | None = None,
    negate: list[str] | None = None,
    next_page_token: str | None = None,
) -> str:
    """Find Shortcut objectives. Filters behave as in stories_search."""
    params = _params(
        id=id, name=name, description=description, state=state, owner=owner,
        requester=requester, team=team, is_unstarted=is_unstarted,
        is_started=is_started, is_done=is_done, is_archived=is_archived,
        has_owner=has_owner, created=created, updated=updated, completed=completed,
    )
    return await get_tools().search_objectives(params, negate, next_page_token)


@mcp.tool()
async def objectives_get_by_id(objective_public_id: int, full: bool = False) -> str:
    """Get a Shortcut objective by public ID."""
    return await get_tools().get_objective(objective_public_id, full)


@mcp.tool()
async def teams_get_by_id(team_public_id: str, full: bool = False) -> str:
    """Get a Shortcut team by public ID."""
    return await get_tools().get_team(team_public_id, full)


@mcp.tool()
async def teams_list() -> str:
    """List all Shortcut teams."""
    return await get_tools().list_teams()


@mcp.tool()
async def workflows_get_by_id(workflow_public_id: int, full: bool = False) -> str:
    """Get a Shortcut workflow by public ID."""
    return await get_tools().get_workflow(workflow_public_id, full)


@mcp.tool()
async def workflows_list() -> str:
    """List all Shortcut workflows."""
    return await get_tools().list_workflows()


@mcp.tool()
async def workflows_get_default(team_public_id: str | None = None) -> str:
    """Get the default workflow of a team, or of the workspace when no team is given."""
    return await get_tools().get_default_workflow(team_public_id)


@mcp.tool()
async def users_get_current() -> str:
    """Get the current user."""
    return await get_tools().get_current_user()


@mcp.tool()
async def users_get_current_teams() -> str:
    """Get the teams the current user belongs to."""
    return await get_tools().get_current_user_teams()


@mcp.tool()
async def users_list() -> str:
    """List all workspace members."""
    return await get_tools().list_users()


@mcp.tool()
async def refresh_cache() -> dict[str, Any]:
    """Force reload of the user, workflow and team caches and return their state."""
    return await get_tools().refresh_cache()


@mcp.tool()
def get_cache_health() -> dict[str, Any]:
    """Return size, age and staleness of the reference caches."""
    return get_caches().describe()


def main() -> None:
    mcp.run()
