"""
Tests for fallback strategy selection and filter simplification.
"""

import pytest

from notion_sync.client.fallback import select_fallback_strategy, simplify_filter
from notion_sync.models import ErrorKind, FallbackStrategy

TIME_CONDITION = {
    "timestamp": "last_edited_time",
    "last_edited_time": {"after": "2024-01-01T00:00:00.000Z"},
}
STATUS_CONDITION = {"property": "Status", "select": {"equals": "Done"}}
TAG_CONDITION = {"property": "Tags", "multi_select": {"contains": "a"}}


class TestSelectFallbackStrategy:
    """Tests for select_fallback_strategy."""

    @pytest.mark.parametrize(
        "size, expected",
        [
            (50, FallbackStrategy.FULL_SYNC),
            (99, FallbackStrategy.FULL_SYNC),
            (100, FallbackStrategy.SIMPLIFIED_FILTER),
            (500, FallbackStrategy.SIMPLIFIED_FILTER),
            (1000, FallbackStrategy.PAGINATED_SYNC),
            (5000, FallbackStrategy.PAGINATED_SYNC),
        ],
    )
    def test_filter_error_by_size(self, size: int, expected: FallbackStrategy) -> None:
        """Filter errors degrade according to database size."""
        assert select_fallback_strategy(ErrorKind.FILTER_ERROR, size) == expected

    def test_other_kinds(self) -> None:
        """Non-filter kinds map to a fixed strategy regardless of size."""
        assert (
            select_fallback_strategy(ErrorKind.RATE_LIMIT_ERROR, 10)
            == FallbackStrategy.THROTTLED_SYNC
        )
        assert (
            select_fallback_strategy(ErrorKind.NETWORK_ERROR, 10)
            == FallbackStrategy.RETRY_WITH_BACKOFF
        )
        assert select_fallback_strategy(ErrorKind.AUTH_ERROR, 10) == FallbackStrategy.ABORT_SYNC
        assert (
            select_fallback_strategy(ErrorKind.SERVER_ERROR, 10)
            == FallbackStrategy.CONSERVATIVE_SYNC
        )
        assert select_fallback_strategy(None, 10) == FallbackStrategy.CONSERVATIVE_SYNC


class TestSimplifyFilter:
    """Tests for simplify_filter."""

    def test_timestamp_only_filter_removed(self) -> None:
        """A bare timestamp condition simplifies to no filter."""
        assert simplify_filter(TIME_CONDITION) is None

    def test_property_filter_kept(self) -> None:
        """Property-only filters are unchanged."""
        assert simplify_filter(STATUS_CONDITION) == STATUS_CONDITION

    def test_and_keeps_property_conditions(self) -> None:
        """Timestamp branches of an `and` are dropped."""
        filter_ = {"and": [TIME_CONDITION, STATUS_CONDITION, TAG_CONDITION]}
        assert simplify_filter(filter_) == {"and": [STATUS_CONDITION, TAG_CONDITION]}

    def test_and_with_single_survivor_unwrapped(self) -> None:
        """A single remaining condition is returned on its own."""
        assert simplify_filter({"and": [TIME_CONDITION, STATUS_CONDITION]}) == STATUS_CONDITION

    def test_or_with_timestamp_dropped(self) -> None:
        """An `or` containing a timestamp branch is removed as a whole."""
        assert simplify_filter({"or": [TIME_CONDITION, STATUS_CONDITION]}) is None

    def test_empty(self) -> None:
        """No filter in, no filter out."""
        assert simplify_filter(None) is None
        assert simplify_filter({}) is None
