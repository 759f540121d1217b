"""
Request merging: concurrent identical GETs share one in-flight request.
"""

import asyncio
import logging
from typing import Awaitable, Callable

from notion_sync.models import ApiResult

logger = logging.getLogger(__name__)


class RequestMerger:
    """Deduplicates concurrent requests for the same key."""

    def __init__(self) -> None:
        self._in_flight: dict[str, asyncio.Future[ApiResult]] = {}
        self.merged = 0

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def run(self, key: str, func: Callable[[], Awaitable[ApiResult]]) -> ApiResult:
        """
        Run `func` unless a request with the same key is already running,
        in which case wait for that one's result.
        """
        existing = self._in_flight.get(key)
        if existing is not None:
            self.merged += 1
            logger.debug("Merged duplicate request %s", key)
            return await asyncio.shield(existing)

        future: asyncio.Future[ApiResult] = asyncio.get_running_loop().create_future()
        self._in_flight[key] = future
        try:
            result = await func()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # Mark retrieved so an unawaited future does not log a warning
            future.exception()
            raise
        else:
            future.set_result(result)
            return result
        finally:
            self._in_flight.pop(key, None)
