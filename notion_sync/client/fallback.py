"""
Fallback strategy selection for failed database queries.
"""

from typing import Any

from notion_sync.models import ErrorKind, FallbackStrategy

SMALL_DATABASE_THRESHOLD = 100
MEDIUM_DATABASE_THRESHOLD = 1000

PAGINATED_PAGE_SIZE = 25
PAGINATED_MAX_PAGES = 20
PAGINATED_PAGE_DELAY = 0.5

CONSERVATIVE_PAGE_SIZE = 25
THROTTLE_DELAY = 2.0
THROTTLED_CONCURRENCY = 1

TIMESTAMP_KEYS = ("timestamp", "last_edited_time", "created_time")


def select_fallback_strategy(kind: ErrorKind | None, estimated_size: int) -> FallbackStrategy:
    """
    Pick the fallback for a failed query.

    Filter errors degrade according to database size: small databases are
    simply fetched whole, medium ones are retried with the timestamp
    condition removed, large ones are walked page by page.
    """
    if kind == ErrorKind.FILTER_ERROR:
        if estimated_size < SMALL_DATABASE_THRESHOLD:
            return FallbackStrategy.FULL_SYNC
        if estimated_size < MEDIUM_DATABASE_THRESHOLD:
            return FallbackStrategy.SIMPLIFIED_FILTER
        return FallbackStrategy.PAGINATED_SYNC
    if kind == ErrorKind.RATE_LIMIT_ERROR:
        return FallbackStrategy.THROTTLED_SYNC
    if kind == ErrorKind.NETWORK_ERROR:
        return FallbackStrategy.RETRY_WITH_BACKOFF
    if kind == ErrorKind.AUTH_ERROR:
        return FallbackStrategy.ABORT_SYNC
    return FallbackStrategy.CONSERVATIVE_SYNC


def _is_timestamp_condition(condition: Any) -> bool:
    return isinstance(condition, dict) and any(key in condition for key in TIMESTAMP_KEYS)


def simplify_filter(filter_: dict[str, Any] | None) -> dict[str, Any] | None:
    """
    Remove timestamp conditions from a query filter.

    The result always matches a superset of the original: dropping a branch
    of an `and` widens it, while an `or` with a timestamp branch is dropped
    as a whole. Returns None when nothing is left.
    """
    if not filter_ or _is_timestamp_condition(filter_):
        return None

    if "and" in filter_:
        kept = []
        for condition in filter_.get("and") or []:
            if _is_timestamp_condition(condition):
                continue
            if isinstance(condition, dict) and ("and" in condition or "or" in condition):
                condition = simplify_filter(condition)
                if condition is None:
                    continue
            kept.append(condition)
        if not kept:
            return None
        if len(kept) == 1:
            return kept[0]
        return {"and": kept}

    if "or" in filter_:
        for condition in filter_.get("or") or []:
            if _is_timestamp_condition(condition):
                return None
            if isinstance(condition, dict) and ("and" in condition or "or" in condition):
                if simplify_filter(condition) != condition:
                    return None
        return filter_

    return filter_
