"""Newest-first ordering policies for listed pages.

The upstream does not promise any order, so pages are always re-sorted
locally. A policy maps an item to its sort timestamp; resource versions
break ties.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from functools import cmp_to_key
from typing import Any

SortPolicy = Callable[[dict[str, Any]], float]


def to_millis(value: Any) -> float:
    """Milliseconds since the epoch for an RFC 3339 string or datetime, else 0."""
    if not value:
        return 0.0
    if isinstance(value, datetime):
        return value.timestamp() * 1000
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp() * 1000
        except ValueError:
            return 0.0
    return 0.0


def _metadata(item: dict[str, Any]) -> dict[str, Any]:
    md = item.get("metadata") if isinstance(item, dict) else None
    return md if isinstance(md, dict) else {}


def _resource_version(item: dict[str, Any]) -> str:
    rv = _metadata(item).get("resourceVersion")
    return str(rv) if rv not in (None, "") else "0"


def creation_timestamp(item: dict[str, Any]) -> float:
    return to_millis(_metadata(item).get("creationTimestamp"))


def event_timestamp(item: dict[str, Any]) -> float:
    """events.k8s.io/v1 ordering: latest of eventTime, series.lastObservedTime, creationTimestamp."""
    series = item.get("series") if isinstance(item.get("series"), dict) else {}
    return max(
        to_millis(item.get("eventTime")),
        to_millis(series.get("lastObservedTime")),
        creation_timestamp(item),
    )


def compare_resource_versions(a: str, b: str) -> int:
    # numeric when both are integers, plain string order otherwise
    try:
        left, right = int(a), int(b)
    except ValueError:
        return (a > b) - (a < b)
    return (left > right) - (left < right)


def sort_newest_first(items: list[dict[str, Any]], policy: SortPolicy = creation_timestamp) -> list[dict[str, Any]]:
    def compare(a: dict[str, Any], b: dict[str, Any]) -> int:
        ta, tb = policy(a), policy(b)
        if ta != tb:
            return -1 if ta > tb else 1
        return -compare_resource_versions(_resource_version(a), _resource_version(b))

    return sorted(items, key=cmp_to_key(compare))
