"""
Prometheus metrics for the sync engine.

Every record_* call feeds two places: the Prometheus registry, scraped from
the scheduler's /metrics endpoint, and a set of in-process tallies that the
CLI prints after a one-off command (`notion-sync sync --stats`).

Usage:
    from notion_sync.metrics import metrics

    metrics.record_http_request(endpoint="databases", status=200, duration=0.5)

    async with metrics.track_sync(database_id, "incremental"):
        ...

    await metrics.start_server(port=9090)
"""

import time
from collections import Counter as Tally
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import aiohttp.web as web
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
from rich.console import Console

console = Console()

PREFIX = "notion_sync"

CIRCUIT_STATE_VALUES = {"closed": 0, "open": 1, "half_open": 2}


class MetricsCollector:
    """Owns a private Prometheus registry plus plain in-memory tallies."""

    def __init__(self, enabled: bool = True) -> None:
        self.enabled = enabled
        self.registry = CollectorRegistry()
        self._runner: web.AppRunner | None = None

        self.totals: Tally[str] = Tally()
        self.http_seconds = 0.0
        self.active = 0
        self.by_label: dict[str, Tally[str]] = {
            "pages_planned": Tally(),
            "fallbacks": Tally(),
            "queue_batches": Tally(),
        }

        self.http_requests = self._counter(
            "http_requests_total", "HTTP requests sent to the API", ["endpoint", "status"]
        )
        self.http_duration = Histogram(
            f"{PREFIX}_http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["endpoint"],
            buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
            registry=self.registry,
        )
        self.api_errors = self._counter("api_errors_total", "Classified API errors", ["error_kind"])
        self.retries = self._counter("retries_total", "Retry attempts", ["error_kind"])
        self.fallbacks = self._counter(
            "fallbacks_total", "Fallback strategy activations", ["strategy", "outcome"]
        )
        self.cache_lookups = self._counter("cache_requests_total", "Cache lookups", ["tier", "result"])
        self.pages_planned = self._counter(
            "pages_planned_total", "Pages classified by the planner", ["classification"]
        )
        self.queue_batches = self._counter(
            "queue_batches_total", "Queue batches executed", ["operation", "outcome"]
        )
        self.sync_runs = self._counter(
            "sync_runs_total", "Sync runs", ["database", "sync_mode", "status"]
        )
        self.sync_duration = Histogram(
            f"{PREFIX}_sync_duration_seconds",
            "Sync run duration in seconds",
            ["database", "sync_mode"],
            buckets=(1, 5, 10, 30, 60, 120, 300, 600),
            registry=self.registry,
        )
        self.active_syncs = Gauge(
            f"{PREFIX}_active_syncs", "Sync runs in progress", registry=self.registry
        )
        self.circuit_state = Gauge(
            f"{PREFIX}_circuit_breaker_state",
            "Circuit breaker state (0=closed, 1=open, 2=half-open)",
            ["host"],
            registry=self.registry,
        )
        self.circuit_failures = self._counter(
            "circuit_breaker_failures_total", "Failures counted by the circuit breaker", ["host"]
        )

    def _counter(self, name: str, documentation: str, labels: list[str]) -> Counter:
        return Counter(f"{PREFIX}_{name}", documentation, labels, registry=self.registry)

    # ========== API traffic ==========

    def record_http_request(self, endpoint: str, status: int, duration: float) -> None:
        if not self.enabled:
            return
        self.totals["http_requests"] += 1
        self.http_seconds += duration
        self.http_requests.labels(endpoint=endpoint, status=str(status)).inc()
        self.http_duration.labels(endpoint=endpoint).observe(duration)

    def record_api_error(self, error_kind: str) -> None:
        if not self.enabled:
            return
        self.totals["http_errors"] += 1
        self.api_errors.labels(error_kind=error_kind).inc()

    def record_retry(self, error_kind: str) -> None:
        if not self.enabled:
            return
        self.totals["retries"] += 1
        self.retries.labels(error_kind=error_kind).inc()

    def record_fallback(self, strategy: str, success: bool) -> None:
        if not self.enabled:
            return
        self.by_label["fallbacks"][strategy] += 1
        self.fallbacks.labels(strategy=strategy, outcome="success" if success else "failure").inc()

    def record_cache_lookup(self, tier: str, hit: bool) -> None:
        if not self.enabled:
            return
        self.totals["cache_hits" if hit else "cache_misses"] += 1
        self.cache_lookups.labels(tier=tier, result="hit" if hit else "miss").inc()

    # ========== Planning and queue ==========

    def record_pages_planned(self, classification: str, count: int) -> None:
        """Add `count` pages to a planner bucket (new, changed, skipped)."""
        if not self.enabled or count <= 0:
            return
        self.by_label["pages_planned"][classification] += count
        self.pages_planned.labels(classification=classification).inc(count)

    def record_queue_batch(self, operation: str, outcome: str) -> None:
        if not self.enabled:
            return
        self.by_label["queue_batches"][f"{operation}:{outcome}"] += 1
        self.queue_batches.labels(operation=operation, outcome=outcome).inc()

    # ========== Sync runs ==========

    @asynccontextmanager
    async def track_sync(self, database: str, sync_mode: str = "incremental") -> AsyncIterator[None]:
        """
        Time a sync run and count it as success or error.

        Exceptions are counted and re-raised.
        """
        started = time.monotonic()
        self.totals["sync_runs"] += 1
        self.active += 1
        self.active_syncs.inc()
        status = "error"
        try:
            yield
            status = "success"
        finally:
            self.active -= 1
            self.active_syncs.dec()
            if status == "error":
                self.totals["sync_errors"] += 1
            if self.enabled:
                self.sync_duration.labels(database=database, sync_mode=sync_mode).observe(
                    time.monotonic() - started
                )
                self.sync_runs.labels(database=database, sync_mode=sync_mode, status=status).inc()

    # ========== Circuit breaker ==========

    def record_circuit_breaker_state(self, host: str, state: str) -> None:
        if self.enabled:
            self.circuit_state.labels(host=host).set(CIRCUIT_STATE_VALUES.get(state, 0))

    def record_circuit_breaker_failure(self, host: str) -> None:
        if self.enabled:
            self.circuit_failures.labels(host=host).inc()

    # ========== Exposition ==========

    async def start_server(self, port: int = 9090) -> None:
        """Serve /metrics and /health on `port` until stop_server() is called."""
        if not self.enabled:
            console.print("[yellow]Metrics disabled, metrics server not started[/yellow]")
            return

        async def scrape(request: web.Request) -> web.Response:
            return web.Response(
                body=generate_latest(self.registry),
                headers={"Content-Type": CONTENT_TYPE_LATEST},
            )

        async def health(request: web.Request) -> web.Response:
            return web.Response(text="OK")

        app = web.Application()
        app.router.add_get("/metrics", scrape)
        app.router.add_get("/health", health)

        self._runner = web.AppRunner(app)
        await self._runner.setup()
        await web.TCPSite(self._runner, "0.0.0.0", port).start()
        console.print(f"[green]Metrics server listening on port {port}[/green]")

    async def stop_server(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

    def get_simple_metrics(self) -> dict[str, Any]:
        """In-process tallies as a plain dict."""
        return {
            "http_requests_total": self.totals["http_requests"],
            "http_errors_total": self.totals["http_errors"],
            "http_avg_duration_seconds": self.http_seconds / max(self.totals["http_requests"], 1),
            "retries_total": self.totals["retries"],
            "fallbacks_by_strategy": dict(self.by_label["fallbacks"]),
            "cache_hits_total": self.totals["cache_hits"],
            "cache_misses_total": self.totals["cache_misses"],
            "pages_planned": dict(self.by_label["pages_planned"]),
            "queue_batches": dict(self.by_label["queue_batches"]),
            "sync_runs_total": self.totals["sync_runs"],
            "sync_errors_total": self.totals["sync_errors"],
            "active_syncs": self.active,
        }


metrics = MetricsCollector()
