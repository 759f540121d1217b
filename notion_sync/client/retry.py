"""
Retry with backoff for ApiResult-returning calls.
"""

import asyncio
import logging
from typing import Awaitable, Callable

from notion_sync.client.errors import get_retry_policy
from notion_sync.metrics import metrics
from notion_sync.models import ApiResult

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[None]]


async def retry_with_backoff(
    func: Callable[[], Awaitable[ApiResult]],
    sleep: SleepFunc = asyncio.sleep,
    operation: str = "request",
) -> ApiResult:
    """
    Call `func` until it succeeds or its error kind's retry budget is spent.

    The policy is looked up from the kind of each failure, so a request that
    fails with a network error and then a client error stops at the client
    error. The returned result carries the number of retries performed.

    Args:
        func: Zero-argument coroutine factory producing an ApiResult
        sleep: Awaitable sleep, injectable for tests
        operation: Label used in log lines
    """
    retries = 0
    while True:
        result = await func()
        if result.ok:
            result.retry_count = retries
            return result

        policy = get_retry_policy(result.error_kind)
        if not policy.should_retry or retries >= policy.max_retries:
            result.retry_count = retries
            if retries:
                logger.warning(
                    "%s failed after %d retries: %s (%s)",
                    operation,
                    retries,
                    result.error_message,
                    result.error_kind.value if result.error_kind else "?",
                )
            return result

        retries += 1
        delay = policy.delay_for(retries)
        kind = result.error_kind.value if result.error_kind else "UNKNOWN_ERROR"
        logger.info(
            "%s failed with %s, retry %d/%d in %.1fs",
            operation,
            kind,
            retries,
            policy.max_retries,
            delay,
        )
        metrics.record_retry(kind)
        await sleep(delay)
