"""
Shortcut REST API client.

Thin async wrapper around the v3 REST API: bulk lists for reference data,
single-entity fetches, search endpoints and the few writes the tools need.
Every failure surfaces as ShortcutApiError with a short machine-readable code.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any

import httpx

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.app.shortcut.com/api/v3"
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_PAGE_SIZE = 25

LIST_PATHS = {
    "users": "/members",
    "workflows": "/workflows",
    "teams": "/groups",
}

ENTITY_PATHS = {
    "stories": "/stories",
    "epics": "/epics",
    "iterations": "/iterations",
    "objectives": "/objectives",
    "users": "/members",
    "workflows": "/workflows",
    "teams": "/groups",
}

SEARCH_PATHS = {
    "stories": "/search/stories",
    "epics": "/search/epics",
    "iterations": "/search/iterations",
    "objectives": "/search/objectives",
}


class ShortcutApiError(RuntimeError):
    """Raised when a Shortcut API call fails."""

    def __init__(self, code: str, message: str, status_code: int | None = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code


class EntityNotFoundError(ShortcutApiError):
    """Raised when the entity a tool call is about does not exist."""

    def __init__(self, kind: str, entity_id: Any):
        super().__init__(
            "not_found",
            f"Failed to retrieve Shortcut {kind} with public ID: {entity_id}",
            status_code=404,
        )
        self.kind = kind
        self.entity_id = entity_id


@dataclass
class SearchPage:
    items: list[dict[str, Any]] = field(default_factory=list)
    total: int = 0
    next_page_token: str | None = None


def _next_page_token(next_url: str | None) -> str | None:
    """Extract the `next` cursor from the URL Shortcut returns for the next page."""
    if not next_url:
        return None
    return httpx.URL(next_url).params.get("next")


class ShortcutClient:
    """Async Shortcut API client authenticated with an API token."""

    def __init__(
        self,
        token: str,
        base_url: str | None = None,
        timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if not token:
            raise ValueError("A Shortcut API token is required")
        self._base_url = (
            base_url or os.getenv("SHORTCUT_API_URL", DEFAULT_API_URL)
        ).rstrip("/")
        self._timeout_seconds = timeout_seconds or float(
            os.getenv("SHORTCUT_HTTP_TIMEOUT_SECONDS", str(DEFAULT_TIMEOUT_SECONDS))
        )
        self._http = httpx.AsyncClient(
            base_url=self._base_url,
            headers={
                "Content-Type": "application/json",
                "Shortcut-Token": token,
            },
            timeout=httpx.Timeout(self._timeout_seconds),
            transport=transport,
        )
        self._current_user: dict[str, Any] | None = None

    @property
    def base_url(self) -> str:
        return self._base_url

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        allow_missing: bool = False,
    ) -> Any:
        try:
            response = await self._http.request(method, path, params=params, json=json)
        except httpx.HTTPError as exc:
            raise ShortcutApiError(
                "unavailable", f"Shortcut API request {method} {path} failed: {exc}"
            ) from exc

        if allow_missing and response.status_code == 404:
            return None

        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            detail = response.text.strip()
            raise ShortcutApiError(
                "http_error",
                f"Shortcut API returned {response.status_code} for {method} {path}"
                + (f": {detail}" if detail else ""),
                status_code=response.status_code,
            ) from exc

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise ShortcutApiError(
                "invalid_response", f"Shortcut API returned invalid JSON for {method} {path}"
            ) from exc

    @staticmethod
    def _path(paths: dict[str, str], kind: str) -> str:
        try:
            return paths[kind]
        except KeyError:
            raise ValueError(f"Unsupported entity kind: {kind}") from None

    async def list_entities(self, kind: str) -> list[dict[str, Any]]:
        data = await self._request("GET", self._path(LIST_PATHS, kind))
        if not isinstance(data, list):
            raise ShortcutApiError("invalid_response", f"Expected a list of {kind}")
        return data

    async def get_entity(self, kind: str, entity_id: Any) -> dict[str, Any] | None:
        path = f"{self._path(ENTITY_PATHS, kind)}/{entity_id}"
        return await self._request("GET", path, allow_missing=True)

    async def search(
        self,
        kind: str,
        query: str,
        page_size: int = DEFAULT_PAGE_SIZE,
        next_page_token: str | None = None,
    ) -> SearchPage:
        params: dict[str, Any] = {"query": query, "page_size": page_size, "detail": "slim"}
        if next_page_token:
            params["next"] = next_page_token
        data = await self._request("GET", self._path(SEARCH_PATHS, kind), params=params)
        if not isinstance(data, dict) or not isinstance(data.get("data"), list):
            raise ShortcutApiError(
                "invalid_response", f"Failed to search for {kind} matching your query: {query!r}"
            )
        return SearchPage(
            items=data["data"],
            total=int(data.get("total") or 0),
            next_page_token=_next_page_token(data.get("next")),
        )

    async def get_current_user(self) -> dict[str, Any] | None:
        if self._current_user is None:
            self._current_user = await self._request("GET", "/member", allow_missing=True)
        return self._current_user

    async def create_entity(self, kind: str, payload: dict[str, Any]) -> dict[str, Any]:
        created = await self._request("POST", self._path(ENTITY_PATHS, kind), json=payload)
        if not created:
            raise ShortcutApiError("invalid_response", f"Failed to create the {kind} entity")
        return created

    async def update_entity(
        self, kind: str, entity_id: Any, payload: dict[str, Any]
    ) -> dict[str, Any]:
        path = f"{self._path(ENTITY_PATHS, kind)}/{entity_id}"
        updated = await self._request("PUT", path, json=payload)
        if not updated:
            raise ShortcutApiError("invalid_response", f"Failed to update {kind} {entity_id}")
        return updated

    async def create_story_comment(self, story_id: int, text: str) -> dict[str, Any]:
        comment = await self._request("POST", f"/stories/{story_id}/comments", json={"text": text})
        if not comment:
            raise ShortcutApiError("invalid_response", f"Failed to comment on story {story_id}")
        return comment

    async def list_iteration_stories(self, iteration_id: int) -> list[dict[str, Any]]:
        data = await self._request(
            "GET",
            f"/iterations/{iteration_id}/stories",
            params={"includes_description": "false"},
        )
        return data or []
