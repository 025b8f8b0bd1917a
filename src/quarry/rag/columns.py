"""Column-name heuristics for totals and period columns.

A sheet often carries both period columns (Jan..Dec, Q1..Q4) and a Total
column that already sums them. Answers must use one or the other, never
both; these helpers tell the prompt and the rule checker which is which.
"""

from __future__ import annotations

import re

from quarry.db.models import DataFrameHandle

_TOTAL_CANDIDATE_RE = re.compile(r"total|sales|amount|price|sum|revenue", re.IGNORECASE)

_PERIOD_RE = re.compile(
    r"^(?:"
    r"jan(?:uary)?|feb(?:ruary)?|mar(?:ch)?|apr(?:il)?|may|june?|july?|aug(?:ust)?"
    r"|sep(?:t(?:ember)?)?|oct(?:ober)?|nov(?:ember)?|dec(?:ember)?"
    r"|q[1-4]"
    r")(?:[\s\-_'/.]*\d{2,4})?$",
    re.IGNORECASE,
)

_TOTAL_PREFIX_RE = re.compile(r"^(?:total|ttl|grand[\s_-]*total)\b", re.IGNORECASE)

# Row labels that mark an aggregate row rather than a data row.
SUBTOTAL_ROW_RE = re.compile(r"\b(?:sub[\s-]?total|grand[\s-]?total|total|ttl)\b", re.IGNORECASE)


def period_columns(columns: list[str]) -> list[str]:
    """Columns named for a month or quarter (optionally with a year)."""
    return [c for c in columns if _PERIOD_RE.match(str(c).strip())]


def total_candidates(columns: list[str]) -> list[str]:
    """Columns whose names suggest an amount worth totalling, in column order."""
    periods = set(period_columns(columns))
    return [
        c for c in columns if c not in periods and _TOTAL_CANDIDATE_RE.search(str(c))
    ]


def preferred_total_column(columns: list[str]) -> str | None:
    """Pick exactly one total column, or None if there is no candidate.

    Preference: a column named exactly "Total", then one starting with
    Total/TTL/Grand Total, then any name containing "total", then the first
    remaining candidate.
    """
    candidates = total_candidates(columns)
    if not candidates:
        return None
    for c in candidates:
        if str(c).strip().lower() == "total":
            return c
    for c in candidates:
        if _TOTAL_PREFIX_RE.match(str(c).strip()):
            return c
    for c in candidates:
        if "total" in str(c).lower():
            return c
    return candidates[0]


def is_subtotal_label(value: object) -> bool:
    """True for row labels such as "Atlanta Region Total" or "Grand Total"."""
    return isinstance(value, str) and bool(SUBTOTAL_ROW_RE.search(value))


def subtotal_labels(handle: DataFrameHandle) -> dict[str, list[str]]:
    """Aggregate-row labels visible in the handle's sample values, by column."""
    found: dict[str, list[str]] = {}

    def _note(column: str, value: object) -> None:
        if is_subtotal_label(value):
            labels = found.setdefault(column, [])
            if value not in labels:
                labels.append(value)

    for column in handle.columns:
        for value in handle.schema_stats.get(column, {}).get("sample_values") or []:
            _note(column, value)
    for row in handle.sample_rows:
        for column, value in row.items():
            _note(column, value)
    return found
