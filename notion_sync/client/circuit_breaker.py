"""
Circuit breaker for the remote API host.

After `failure_threshold` consecutive host failures (network errors and
5xx responses) requests are rejected without being sent for
`recovery_timeout` seconds. Then trial requests are let through
(HALF_OPEN): `success_threshold` successes close the circuit again, a
single failure re-opens it.

Usage:
    breaker = CircuitBreaker("api.notion.com")
    result = await breaker.guard(lambda: send_request())
"""

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

from rich.console import Console

from notion_sync.client.errors import counts_against_host
from notion_sync.config import settings
from notion_sync.exceptions import NotionSyncError
from notion_sync.metrics import metrics
from notion_sync.models import ApiResult

console = Console()


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(NotionSyncError):
    """A request was rejected because the host's circuit is open."""

    def __init__(self, host: str, retry_after: float) -> None:
        self.host = host
        self.retry_after = retry_after
        super().__init__(f"Circuit open for '{host}', next attempt in {retry_after:.1f}s")


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5
    recovery_timeout: float = 60.0
    success_threshold: int = 2

    @classmethod
    def from_settings(cls) -> "CircuitBreakerConfig":
        return cls(
            failure_threshold=settings.circuit_breaker_failure_threshold,
            recovery_timeout=settings.circuit_breaker_recovery_timeout,
            success_threshold=settings.circuit_breaker_success_threshold,
        )


class CircuitBreaker:
    """Failure counter and gate for one host."""

    def __init__(
        self,
        host: str,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.host = host
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._lock = asyncio.Lock()

        self.state = CircuitState.CLOSED
        self.failures = 0
        self.successes = 0
        self.opened_at: float | None = None

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    @property
    def retry_after(self) -> float:
        """Seconds until an open circuit lets a trial request through."""
        if self.opened_at is None:
            return 0.0
        return max(0.0, self.config.recovery_timeout - (self._clock() - self.opened_at))

    def _set_state(self, state: CircuitState) -> None:
        previous = self.state
        self.state = state
        self.successes = 0
        if state == CircuitState.OPEN:
            self.opened_at = self._clock()
        elif state == CircuitState.CLOSED:
            self.failures = 0
            self.opened_at = None

        colour = "red" if state == CircuitState.OPEN else "yellow"
        console.print(
            f"[{colour}]Circuit '{self.host}': {previous.value} -> {state.value}[/{colour}]"
        )
        metrics.record_circuit_breaker_state(self.host, state.value)

    async def before_call(self) -> None:
        """
        Let a request through or reject it.

        Raises:
            CircuitOpenError: While the circuit is open
        """
        async with self._lock:
            if self.state != CircuitState.OPEN:
                return
            remaining = self.retry_after
            if remaining > 0:
                raise CircuitOpenError(self.host, remaining)
            self._set_state(CircuitState.HALF_OPEN)

    async def record_failure(self) -> None:
        async with self._lock:
            self.failures += 1
            self.successes = 0
            metrics.record_circuit_breaker_failure(self.host)

            if self.state == CircuitState.HALF_OPEN:
                self._set_state(CircuitState.OPEN)
            elif self.state == CircuitState.CLOSED and self.failures >= self.config.failure_threshold:
                self._set_state(CircuitState.OPEN)

    async def record_success(self) -> None:
        async with self._lock:
            if self.state == CircuitState.HALF_OPEN:
                self.successes += 1
                if self.successes >= self.config.success_threshold:
                    self._set_state(CircuitState.CLOSED)
            elif self.state == CircuitState.CLOSED:
                self.failures = 0

    async def record(self, result: ApiResult) -> None:
        """Feed a request outcome; failures that are not the host's fault are ignored."""
        if result.ok:
            await self.record_success()
        elif counts_against_host(result.error_kind):
            await self.record_failure()

    async def guard(self, func: Callable[[], Awaitable[ApiResult]]) -> ApiResult:
        """
        Run one request through the breaker.

        Raises:
            CircuitOpenError: If the circuit is open
        """
        await self.before_call()
        result = await func()
        await self.record(result)
        return result

    def get_status(self) -> dict[str, Any]:
        return {
            "host": self.host,
            "state": self.state.value,
            "failures": self.failures,
            "retry_after": self.retry_after if self.is_open else None,
        }
