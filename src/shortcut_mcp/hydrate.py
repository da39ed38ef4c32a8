"""
Entity hydration: resolve ids embedded in primary entities into related entities.

Users, workflows and teams come from the reference caches (one refill per
stale cache per call). Epics, iterations and objectives have no cheap bulk
list, so each referenced id is fetched on its own and a failed or missing
fetch is recorded as an explicit unknown marker. References of related
epics (objectives) and teams (members, workflows) are resolved in a second
round.

Resolution produces a ResolvedRefs map first; both the full and the simplified
result shapes are built from it without touching the network again.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from .cache import ReferenceCaches
from .client import ShortcutApiError
from .results import Failure, Found, Lookup, NotFound

logger = logging.getLogger(__name__)

UNKNOWN_NAME = "[Unknown]"

CACHED_KINDS = ReferenceCaches.KINDS
FETCHED_KINDS = ("epics", "iterations", "objectives")

SINGULAR = {
    "stories": "story",
    "epics": "epic",
    "iterations": "iteration",
    "objectives": "objective",
    "teams": "team",
    "workflows": "workflow",
    "users": "user",
}

RENAMED_KEYS = {
    "group_id": "team_id",
    "group_ids": "team_ids",
    "milestone_id": "objective_id",
}
DROPPED_KEYS = frozenset({"entity_type"})


class ShortcutApi(Protocol):
    async def list_entities(self, kind: str) -> list[dict[str, Any]]: ...

    async def get_entity(self, kind: str, entity_id: Any) -> dict[str, Any] | None: ...


@dataclass(frozen=True)
class Reference:
    attribute: str
    kind: str
    name_field: str
    many: bool = False


_OWNERS = Reference("owner_ids", "users", "owner_names", many=True)
_REQUESTER = Reference("requested_by_id", "users", "requester_name")
_FOLLOWERS = Reference("follower_ids", "users", "follower_names", many=True)
_TEAM = Reference("group_id", "teams", "team_name")
_TEAMS = Reference("group_ids", "teams", "team_names", many=True)

REFERENCES: dict[str, tuple[Reference, ...]] = {
    "stories": (
        _OWNERS,
        _REQUESTER,
        _FOLLOWERS,
        Reference("workflow_id", "workflows", "workflow_name"),
        _TEAM,
        Reference("epic_id", "epics", "epic_name"),
        Reference("iteration_id", "iterations", "iteration_name"),
    ),
    "epics": (
        _OWNERS,
        _REQUESTER,
        _FOLLOWERS,
        _TEAM,
        _TEAMS,
        Reference("milestone_id", "objectives", "objective_name"),
        Reference("objective_ids", "objectives", "objective_names", many=True),
    ),
    "iterations": (_FOLLOWERS, _TEAMS),
    "objectives": (),
    "teams": (
        Reference("member_ids", "users", "member_names", many=True),
        Reference("workflow_ids", "workflows", "workflow_names", many=True),
    ),
    "workflows": (),
    "users": (),
}

# References followed from related entities, one level past the primary.
SECONDARY_REFERENCES: dict[str, tuple[Reference, ...]] = {
    "epics": (
        Reference("milestone_id", "objectives", "objective_name"),
        Reference("objective_ids", "objectives", "objective_names", many=True),
    ),
    "teams": REFERENCES["teams"],
}

SIMPLIFIED_FIELDS: dict[str, tuple[str, ...]] = {
    "stories": (
        "id", "name", "app_url", "archived", "story_type", "workflow_id",
        "workflow_state_id", "group_id", "epic_id", "iteration_id", "parent_story_id",
        "owner_ids", "requested_by_id", "follower_ids", "estimate", "deadline",
        "started", "completed", "blocked", "blocker", "description", "labels",
        "comments", "tasks", "external_links",
    ),
    "epics": (
        "id", "name", "app_url", "archived", "state", "group_id", "group_ids",
        "milestone_id", "objective_ids", "owner_ids", "requested_by_id",
        "follower_ids", "deadline", "started", "completed", "description", "comments",
    ),
    "iterations": (
        "id", "name", "app_url", "status", "start_date", "end_date", "group_ids",
        "follower_ids", "description",
    ),
    "objectives": (
        "id", "name", "app_url", "archived", "state", "started", "completed",
        "description", "categories",
    ),
    "teams": (
        "id", "name", "mention_name", "archived", "description", "member_ids",
        "workflow_ids", "default_workflow_id",
    ),
    "workflows": ("id", "name", "description", "default_state_id", "states"),
}


def _unknown(entity_id: Any) -> dict[str, Any]:
    return {"id": entity_id, "name": UNKNOWN_NAME, "not_found": True}


def _rename(entity: dict[str, Any]) -> dict[str, Any]:
    return {
        RENAMED_KEYS.get(key, key): value
        for key, value in entity.items()
        if key not in DROPPED_KEYS
    }


def _simplify_value(key: str, value: Any) -> Any:
    if not isinstance(value, list):
        return value
    if key in ("labels", "categories"):
        return [item.get("name") for item in value if isinstance(item, dict)]
    if key == "comments":
        return [
            {"id": c.get("id"), "author_id": c.get("author_id"), "text": c.get("text")}
            for c in value
            if isinstance(c, dict) and not c.get("deleted")
        ]
    if key == "tasks":
        return [
            {"id": t.get("id"), "description": t.get("description"), "complete": t.get("complete")}
            for t in value
            if isinstance(t, dict)
        ]
    if key == "states":
        return [
            {"id": s.get("id"), "name": s.get("name"), "type": s.get("type")}
            for s in value
            if isinstance(s, dict)
        ]
    return value


def _simplify_user(user: dict[str, Any]) -> dict[str, Any]:
    profile = user.get("profile") or {}
    return {
        "id": user.get("id"),
        "name": profile.get("name", user.get("name")),
        "mention_name": profile.get("mention_name", user.get("mention_name")),
        "role": user.get("role"),
        "disabled": user.get("disabled"),
    }


def shape_entity(kind: str, entity: dict[str, Any], full: bool) -> dict[str, Any]:
    """Return the full (all remote fields) or simplified form of an entity."""
    if full:
        return _rename(entity)
    if kind == "users":
        return _simplify_user(entity)
    keys = SIMPLIFIED_FIELDS.get(kind)
    if keys is None:
        return _rename(entity)
    return _rename({key: _simplify_value(key, entity[key]) for key in keys if key in entity})


def display_name(kind: str, entity: dict[str, Any]) -> str:
    if kind == "users":
        profile = entity.get("profile") or {}
        mention = profile.get("mention_name", entity.get("mention_name"))
        return f"@{mention}" if mention else str(entity.get("id"))
    return str(entity.get("name") or entity.get("id"))


def _ids(entity: dict[str, Any], ref: Reference) -> list[Any]:
    value = entity.get(ref.attribute)
    if ref.many:
        return [v for v in (value or []) if v is not None and v != ""]
    if value is None or value == "":
        return []
    return [value]


@dataclass
class ResolvedRefs:
    """Every referenced id, by kind, in first-seen order, with its lookup outcome."""

    lookups: dict[str, dict[Any, Lookup]] = field(default_factory=dict)

    def get(self, kind: str, entity_id: Any) -> Lookup:
        return self.lookups.get(kind, {}).get(entity_id, NotFound(entity_id))

    def name_of(self, kind: str, entity_id: Any) -> str:
        lookup = self.get(kind, entity_id)
        if isinstance(lookup, Found):
            return display_name(kind, lookup.value)
        return UNKNOWN_NAME


@dataclass
class HydratedResult:
    key: str
    primary: dict[str, Any] | list[dict[str, Any]]
    related: dict[str, list[dict[str, Any]]]
    refs: ResolvedRefs

    def to_dict(self) -> dict[str, Any]:
        return {self.key: self.primary, "relatedEntities": self.related}


def collect_ids(kind: str, primaries: Iterable[dict[str, Any]]) -> dict[str, list[Any]]:
    """Gather distinct referenced ids per related kind, first-seen order."""
    collected: dict[str, dict[Any, None]] = {}
    for entity in primaries:
        for ref in REFERENCES.get(kind, ()):
            bucket = collected.setdefault(ref.kind, {})
            for entity_id in _ids(entity, ref):
                bucket.setdefault(entity_id, None)
    return {related_kind: list(ids) for related_kind, ids in collected.items()}


def collect_secondary_ids(refs: ResolvedRefs) -> dict[str, list[Any]]:
    """Ids referenced by found related entities that are not resolved yet."""
    collected: dict[str, dict[Any, None]] = {}
    for kind, references in SECONDARY_REFERENCES.items():
        for lookup in refs.lookups.get(kind, {}).values():
            if not isinstance(lookup, Found):
                continue
            for ref in references:
                known = refs.lookups.get(ref.kind, {})
                for entity_id in _ids(lookup.value, ref):
                    if entity_id not in known:
                        collected.setdefault(ref.kind, {}).setdefault(entity_id, None)
    return {related_kind: list(ids) for related_kind, ids in collected.items()}


def related_kinds(kind: str) -> list[str]:
    """Kinds that can appear under relatedEntities for a primary of `kind`."""
    kinds = [ref.kind for ref in REFERENCES.get(kind, ())]
    for direct in list(kinds):
        kinds.extend(ref.kind for ref in SECONDARY_REFERENCES.get(direct, ()))
    return list(dict.fromkeys(kinds))


def _workflow_state_name(
    entity: dict[str, Any], refs: ResolvedRefs, workflows: Sequence[dict[str, Any]]
) -> str | None:
    state_id = entity.get("workflow_state_id")
    if state_id is None:
        return None
    candidates: list[dict[str, Any]] = []
    lookup = refs.get("workflows", entity.get("workflow_id"))
    if isinstance(lookup, Found):
        candidates.append(lookup.value)
    candidates.extend(workflows)
    for workflow in candidates:
        for state in workflow.get("states") or []:
            if state.get("id") == state_id:
                return state.get("name") or UNKNOWN_NAME
    return UNKNOWN_NAME


def decorate(
    kind: str,
    entity: dict[str, Any],
    refs: ResolvedRefs,
    full: bool,
    workflows: Sequence[dict[str, Any]] = (),
) -> dict[str, Any]:
    """Shape a primary entity and set resolved names beside its ids."""
    shaped = shape_entity(kind, entity, full)
    for ref in REFERENCES.get(kind, ()):
        if ref.attribute not in entity:
            continue
        names = [refs.name_of(ref.kind, entity_id) for entity_id in _ids(entity, ref)]
        if ref.many:
            shaped[ref.name_field] = names
        else:
            shaped[ref.name_field] = names[0] if names else None
    if kind == "stories" and "workflow_state_id" in entity:
        shaped["workflow_state_name"] = _workflow_state_name(entity, refs, workflows)
    return shaped


def build_result(
    kind: str,
    primaries: Sequence[dict[str, Any]],
    refs: ResolvedRefs,
    *,
    full: bool = False,
    mark_unknown: bool = False,
    single: bool = False,
    workflows: Sequence[dict[str, Any]] = (),
) -> HydratedResult:
    """Assemble a HydratedResult from already-resolved references."""
    shaped = [decorate(kind, entity, refs, full, workflows) for entity in primaries]

    related: dict[str, list[dict[str, Any]]] = {}
    for related_kind in related_kinds(kind):
        related.setdefault(related_kind, [])
    for related_kind, lookups in refs.lookups.items():
        entries = related.setdefault(related_kind, [])
        for entity_id, lookup in lookups.items():
            if isinstance(lookup, Found):
                entries.append(shape_entity(related_kind, lookup.value, full=False))
            elif related_kind in FETCHED_KINDS or mark_unknown:
                entries.append(_unknown(entity_id))

    if single:
        return HydratedResult(SINGULAR.get(kind, kind), shaped[0], related, refs)
    return HydratedResult(kind, shaped, related, refs)


class EntityResolver:
    """Hydrates primary entities using the reference caches and the API."""

    def __init__(self, api: ShortcutApi, caches: ReferenceCaches):
        self._api = api
        self._caches = caches

    @property
    def caches(self) -> ReferenceCaches:
        return self._caches

    async def _refill(self, kind: str) -> None:
        entities = await self._api.list_entities(kind)
        cache = self._caches.for_kind(kind)
        cache.refill_all((entity["id"], entity) for entity in entities if "id" in entity)
        if len(cache) < len(entities):
            logger.warning(
                "Skipped %d %s entries without an id", len(entities) - len(cache), kind
            )
        logger.info("Refilled %s cache with %d entries", kind, len(cache))

    async def _ensure_fresh(self, kind: str, strict: bool = False) -> None:
        if not self._caches.for_kind(kind).is_stale:
            return
        if strict:
            await self._refill(kind)
            return
        try:
            await self._refill(kind)
        except Exception:
            logger.exception("Refill of %s cache failed, serving stale data", kind)

    async def _fetch(self, kind: str, entity_id: Any) -> Lookup:
        try:
            entity = await self._api.get_entity(kind, entity_id)
        except ShortcutApiError as exc:
            logger.warning("Failed to fetch %s %s during hydration: %s", kind, entity_id, exc.message)
            return Failure(entity_id, exc.message)
        except Exception as exc:
            logger.exception("Unexpected error fetching %s %s during hydration", kind, entity_id)
            return Failure(entity_id, str(exc))
        if entity is None:
            return NotFound(entity_id)
        return Found(entity)

    async def _resolve_round(
        self, ids_by_kind: dict[str, list[Any]], refs: ResolvedRefs, checked: set[str]
    ) -> None:
        cached = [kind for kind in CACHED_KINDS if ids_by_kind.get(kind)]
        # All refill decisions and refills complete before any cache read below.
        to_check = [kind for kind in cached if kind not in checked]
        checked.update(to_check)
        await asyncio.gather(*(self._ensure_fresh(kind) for kind in to_check))

        for kind in cached:
            cache = self._caches.for_kind(kind)
            lookups = refs.lookups.setdefault(kind, {})
            for entity_id in ids_by_kind[kind]:
                if entity_id in lookups:
                    continue
                value = cache.get(entity_id)
                lookups[entity_id] = NotFound(entity_id) if value is None else Found(value)

        fetch_jobs = [
            (kind, entity_id)
            for kind in FETCHED_KINDS
            for entity_id in ids_by_kind.get(kind, ())
            if entity_id not in refs.lookups.get(kind, {})
        ]
        outcomes = await asyncio.gather(
            *(self._fetch(kind, entity_id) for kind, entity_id in fetch_jobs)
        )
        for (kind, entity_id), outcome in zip(fetch_jobs, outcomes):
            refs.lookups.setdefault(kind, {})[entity_id] = outcome

    async def resolve_refs(self, ids_by_kind: dict[str, list[Any]]) -> ResolvedRefs:
        """Resolve the given ids, then the references of the related entities found.

        Each cache is checked for staleness at most once per call.
        """
        refs = ResolvedRefs()
        checked: set[str] = set()
        await self._resolve_round(ids_by_kind, refs, checked)
        secondary = collect_secondary_ids(refs)
        if secondary:
            await self._resolve_round(secondary, refs, checked)
        return refs

    async def resolve_many(
        self,
        kind: str,
        primaries: Sequence[dict[str, Any]],
        full: bool = False,
        mark_unknown: bool = False,
    ) -> HydratedResult:
        refs = await self.resolve_refs(collect_ids(kind, primaries))
        return build_result(
            kind,
            primaries,
            refs,
            full=full,
            mark_unknown=mark_unknown,
            workflows=self._caches.workflows.values(),
        )

    async def resolve_one(
        self,
        kind: str,
        primary: dict[str, Any],
        full: bool = False,
        mark_unknown: bool = False,
    ) -> HydratedResult:
        refs = await self.resolve_refs(collect_ids(kind, [primary]))
        return build_result(
            kind,
            [primary],
            refs,
            full=full,
            mark_unknown=mark_unknown,
            single=True,
            workflows=self._caches.workflows.values(),
        )

    async def reference_values(self, kind: str, strict: bool = False) -> list[dict[str, Any]]:
        """All cached entities of a kind; `strict` propagates a failed refill."""
        await self._ensure_fresh(kind, strict=strict)
        return self._caches.for_kind(kind).values()

    async def reference_map(self, kind: str, ids: Iterable[Any]) -> dict[Any, dict[str, Any]]:
        await self._ensure_fresh(kind)
        cache = self._caches.for_kind(kind)
        found: dict[Any, dict[str, Any]] = {}
        for entity_id in dict.fromkeys(ids):
            value = cache.get(entity_id)
            if value is not None:
                found[entity_id] = value
        return found

    async def refresh(self, kinds: Iterable[str] | None = None) -> dict[str, Any]:
        """Force a refill regardless of staleness; errors propagate."""
        for kind in kinds or CACHED_KINDS:
            await self._refill(kind)
        return self._caches.describe()
