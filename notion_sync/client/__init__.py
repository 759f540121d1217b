from notion_sync.client.errors import RETRY_POLICIES, RetryPolicy, classify_error
from notion_sync.client.fallback import select_fallback_strategy, simplify_filter
from notion_sync.client.notion_client import (
    NotionClient,
    format_timestamp_for_api,
    is_valid_filter,
)

__all__ = [
    "NotionClient",
    "RETRY_POLICIES",
    "RetryPolicy",
    "classify_error",
    "format_timestamp_for_api",
    "is_valid_filter",
    "select_fallback_strategy",
    "simplify_filter",
]
