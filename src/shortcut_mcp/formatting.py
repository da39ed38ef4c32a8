"""Text rendering of tool results."""

from __future__ import annotations

import json
from typing import Any


def to_result(message: str, data: Any = None, next_page_token: str | None = None) -> str:
    """Render a message, an optional JSON payload and an optional page token."""
    parts = [message]
    if data is not None:
        parts.append(f"<json>\n{json.dumps(data, indent=2, default=str)}\n</json>")
    if next_page_token:
        parts.append(f"<next-page-token>{next_page_token}</next-page-token>")
    return "\n\n".join(parts)
