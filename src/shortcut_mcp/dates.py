"""
Date and date-range expressions for Shortcut search operators.

Shortcut accepts a literal date, one of the keywords today/yesterday/tomorrow,
or a range `A..B` where either side may be `*` for an open bound. Keywords are
resolved server-side and cannot be ordered against literal dates, so ranges
mixing the two are rejected here instead of being sent.
"""

from __future__ import annotations

import re
from datetime import date

RELATIVE_KEYWORDS = frozenset({"today", "yesterday", "tomorrow"})
OPEN_BOUND = "*"
RANGE_SEPARATOR = ".."

_LITERAL_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class DateExpressionError(ValueError):
    """Raised when a date expression cannot be sent as a search operator."""


def _bound_kind(bound: str, raw: str) -> str:
    if bound == OPEN_BOUND:
        return "open"
    if bound in RELATIVE_KEYWORDS:
        return "keyword"
    if _LITERAL_DATE.match(bound):
        try:
            date.fromisoformat(bound)
        except ValueError as exc:
            raise DateExpressionError(f"Invalid date '{bound}' in '{raw}'") from exc
        return "literal"
    raise DateExpressionError(
        f"Invalid date expression '{raw}': expected YYYY-MM-DD, "
        "today, yesterday, tomorrow or a range A..B"
    )


def validate_date_expression(raw: str) -> str:
    """Validate a date expression and return it ready for a search clause.

    Raises:
        DateExpressionError: for malformed dates, `*` outside a range, `*..*`,
            or a range mixing a relative keyword with a literal date.
    """
    expression = (raw or "").strip()
    if not expression:
        raise DateExpressionError("Date expression cannot be empty")

    if RANGE_SEPARATOR not in expression:
        if _bound_kind(expression, raw) == "open":
            raise DateExpressionError(f"'{OPEN_BOUND}' is only valid as a range bound")
        return expression

    start, sep, end = expression.partition(RANGE_SEPARATOR)
    if RANGE_SEPARATOR in end:
        raise DateExpressionError(f"Invalid date range '{raw}': more than one '..'")

    kinds = {_bound_kind(start, raw), _bound_kind(end, raw)}
    if kinds == {"open"}:
        raise DateExpressionError(f"Invalid date range '{raw}': both bounds are open")
    if kinds == {"keyword", "literal"}:
        raise DateExpressionError(
            f"Invalid date range '{raw}': relative keywords cannot be combined "
            "with literal dates"
        )
    return f"{start}{sep}{end}"


def date_clause(operator: str, raw: str, negate: bool = False) -> str:
    """Render `[!]operator:expression` for a validated date expression."""
    prefix = "!" if negate else ""
    return f"{prefix}{operator}:{validate_date_expression(raw)}"
