"""
Search query compiler.

Turns the structured parameters of a search tool into Shortcut's text query
grammar (`[!]operator:value` clauses joined by spaces). Each searchable entity
type declares its supported fields in a table; one routine compiles them all.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Collection, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .dates import date_clause, validate_date_expression

logger = logging.getLogger(__name__)

CURRENT_USER_KEYWORD = "me"

_WHITESPACE = re.compile(r"\s")


class ClauseKind(Enum):
    VALUE = "value"
    FLAG = "flag"
    DATE = "date"
    USER = "user"
    TEAM = "team"


@dataclass(frozen=True)
class Field:
    operator: str
    kind: ClauseKind = ClauseKind.VALUE


def _value(operator: str) -> Field:
    return Field(operator, ClauseKind.VALUE)


def _is(predicate: str) -> Field:
    return Field(f"is:{predicate}", ClauseKind.FLAG)


def _has(predicate: str) -> Field:
    return Field(f"has:{predicate}", ClauseKind.FLAG)


def _date(operator: str) -> Field:
    return Field(operator, ClauseKind.DATE)


STORY_FIELDS: dict[str, Field] = {
    "id": _value("id"),
    "name": _value("name"),
    "title": _value("title"),
    "description": _value("description"),
    "comment": _value("comment"),
    "type": _value("type"),
    "estimate": _value("estimate"),
    "branch": _value("branch"),
    "commit": _value("commit"),
    "pr": _value("pr"),
    "project": _value("project"),
    "epic": _value("epic"),
    "objective": _value("objective"),
    "state": _value("state"),
    "label": _value("label"),
    "owner": Field("owner", ClauseKind.USER),
    "requester": Field("requester", ClauseKind.USER),
    "team": Field("team", ClauseKind.TEAM),
    "skill_set": _value("skill-set"),
    "product_area": _value("product-area"),
    "technical_area": _value("technical-area"),
    "priority": _value("priority"),
    "severity": _value("severity"),
    "is_done": _is("done"),
    "is_started": _is("started"),
    "is_unstarted": _is("unstarted"),
    "is_unestimated": _is("unestimated"),
    "is_overdue": _is("overdue"),
    "is_archived": _is("archived"),
    "is_blocker": _is("blocker"),
    "is_blocked": _is("blocked"),
    "has_comment": _has("comment"),
    "has_label": _has("label"),
    "has_deadline": _has("deadline"),
    "has_owner": _has("owner"),
    "has_pr": _has("pr"),
    "has_commit": _has("commit"),
    "has_branch": _has("branch"),
    "has_epic": _has("epic"),
    "has_task": _has("task"),
    "has_attachment": _has("attachment"),
    "created": _date("created"),
    "updated": _date("updated"),
    "completed": _date("completed"),
    "due": _date("due"),
}

EPIC_FIELDS: dict[str, Field] = {
    "id": _value("id"),
    "name": _value("name"),
    "description": _value("description"),
    "state": _value("state"),
    "objective": _value("objective"),
    "owner": Field("owner", ClauseKind.USER),
    "requester": Field("requester", ClauseKind.USER),
    "team": Field("team", ClauseKind.TEAM),
    "comment": _value("comment"),
    "is_unstarted": _is("unstarted"),
    "is_started": _is("started"),
    "is_done": _is("done"),
    "is_archived": _is("archived"),
    "is_overdue": _is("overdue"),
    "has_owner": _has("owner"),
    "has_comment": _has("comment"),
    "has_deadline": _has("deadline"),
    "has_label": _has("label"),
    "created": _date("created"),
    "updated": _date("updated"),
    "completed": _date("completed"),
    "due": _date("due"),
}

ITERATION_FIELDS: dict[str, Field] = {
    "id": _value("id"),
    "name": _value("title"),
    "description": _value("description"),
    "state": _value("state"),
    "team": Field("team", ClauseKind.TEAM),
    "created": _date("created"),
    "updated": _date("updated"),
    "start_date": _date("start_date"),
    "end_date": _date("end_date"),
}

OBJECTIVE_FIELDS: dict[str, Field] = {
    "id": _value("id"),
    "name": _value("name"),
    "description": _value("description"),
    "state": _value("state"),
    "owner": Field("owner", ClauseKind.USER),
    "requester": Field("requester", ClauseKind.USER),
    "team": Field("team", ClauseKind.TEAM),
    "is_unstarted": _is("unstarted"),
    "is_started": _is("started"),
    "is_done": _is("done"),
    "is_archived": _is("archived"),
    "has_owner": _has("owner"),
    "created": _date("created"),
    "updated": _date("updated"),
    "completed": _date("completed"),
}

SEARCH_FIELDS: dict[str, dict[str, Field]] = {
    "stories": STORY_FIELDS,
    "epics": EPIC_FIELDS,
    "iterations": ITERATION_FIELDS,
    "objectives": OBJECTIVE_FIELDS,
}


def _format_value(value: Any) -> str:
    text = str(value)
    if _WHITESPACE.search(text):
        return f'"{text}"'
    return text


def _is_absent(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _mention_name(user: Mapping[str, Any] | None) -> str | None:
    if not user:
        return None
    name = user.get("mention_name")
    if name is None:
        name = (user.get("profile") or {}).get("mention_name")
    return name or None


def _render(
    field: Field,
    value: Any,
    negated: bool,
    current_user: Mapping[str, Any] | None,
    team_ids: Mapping[str, str] | None,
) -> str:
    if field.kind is ClauseKind.FLAG:
        positive = bool(value) != negated
        return field.operator if positive else f"!{field.operator}"

    prefix = "!" if negated else ""

    if field.kind is ClauseKind.DATE:
        return date_clause(field.operator, str(value), negate=negated)

    if field.kind is ClauseKind.USER and value == CURRENT_USER_KEYWORD:
        value = _mention_name(current_user) or value

    if field.kind is ClauseKind.TEAM and team_ids:
        team_id = team_ids.get(str(value).strip().lower())
        if team_id:
            return f"{prefix}group:{team_id}"

    return f"{prefix}{field.operator}:{_format_value(value)}"


def compile_query(
    params: Mapping[str, Any],
    fields: Mapping[str, Field],
    current_user: Mapping[str, Any] | None = None,
    negate: Collection[str] = (),
    team_ids: Mapping[str, str] | None = None,
) -> str:
    """Compile search parameters into a Shortcut query string.

    Args:
        params: Field name -> value. Unknown names and absent values are skipped.
        fields: Supported-field table for the entity type being searched.
        current_user: Member info used to resolve "me" in owner/requester.
        negate: Field names whose clause is inverted with a "!" prefix.
        team_ids: Lower-cased team name -> team id, resolves team names to
            `group:<id>` clauses.

    Returns:
        Space-joined clauses in field-table order; "" when nothing is set.

    Raises:
        DateExpressionError: when a date field holds an invalid expression.
    """
    negated = set(negate)
    clauses: list[str] = []
    for name, field in fields.items():
        if name not in params:
            continue
        value = params[name]
        if _is_absent(value):
            continue
        clauses.append(_render(field, value, name in negated, current_user, team_ids))

    query = " ".join(clauses)
    logger.debug("Compiled search query: %r", query)
    return query


def validate_params(params: Mapping[str, Any], fields: Mapping[str, Field]) -> None:
    """Reject invalid date expressions before any lookup needed to compile."""
    for name, field in fields.items():
        if field.kind is ClauseKind.DATE and not _is_absent(params.get(name)):
            validate_date_expression(str(params[name]))


def needs_current_user(params: Mapping[str, Any], fields: Mapping[str, Field]) -> bool:
    return any(
        field.kind is ClauseKind.USER and params.get(name) == CURRENT_USER_KEYWORD
        for name, field in fields.items()
    )


def needs_team_ids(params: Mapping[str, Any], fields: Mapping[str, Field]) -> bool:
    return any(
        field.kind is ClauseKind.TEAM and not _is_absent(params.get(name))
        for name, field in fields.items()
    )
