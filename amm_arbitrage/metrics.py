"""
Prometheus metrics for the arbitrage agent.

Each AgentMetrics owns a private CollectorRegistry, so several agents (or
tests) in one process never collide on metric names.
"""

import threading
from typing import Any, Dict, Optional

from aiohttp import web
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from .utils import get_current_timestamp, get_logger

logger = get_logger(__name__)


class AgentMetrics:
    """
    Agent counters:
    - Scan cycles and scan errors
    - Opportunities found
    - Oracle verdicts
    - Executions by result
    - Scan duration
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        self._initialize_metrics()

        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None
        self._lock = threading.RLock()

    def _initialize_metrics(self):
        self.scans_total = Counter(
            "amm_arbitrage_scans_total",
            "Total number of completed scan cycles",
            registry=self.registry,
        )

        self.scan_errors_total = Counter(
            "amm_arbitrage_scan_errors_total",
            "Scan cycles that recorded an error",
            ["stage"],
            registry=self.registry,
        )

        self.opportunities_total = Counter(
            "amm_arbitrage_opportunities_total",
            "Viable opportunities found across all scans",
            registry=self.registry,
        )

        self.oracle_verdicts_total = Counter(
            "amm_arbitrage_oracle_verdicts_total",
            "Advisory oracle verdicts",
            ["verdict"],
            registry=self.registry,
        )

        self.executions_total = Counter(
            "amm_arbitrage_executions_total",
            "Execution attempts by result",
            ["result"],
            registry=self.registry,
        )

        self.scan_duration_seconds = Histogram(
            "amm_arbitrage_scan_duration_seconds",
            "Wall time of one scan cycle",
            buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
            registry=self.registry,
        )

        self.last_scan_timestamp = Gauge(
            "amm_arbitrage_last_scan_timestamp_seconds",
            "Unix time of the last completed scan",
            registry=self.registry,
        )

    # === RECORDING ===

    def record_scan(self, duration_seconds: float, opportunities: int):
        with self._lock:
            self.scans_total.inc()
            self.scan_duration_seconds.observe(duration_seconds)
            if opportunities:
                self.opportunities_total.inc(opportunities)
            self.last_scan_timestamp.set(get_current_timestamp())

    def record_scan_error(self, stage: str):
        with self._lock:
            self.scan_errors_total.labels(stage=stage).inc()

    def record_verdict(self, execute: bool):
        with self._lock:
            verdict = "execute" if execute else "skip"
            self.oracle_verdicts_total.labels(verdict=verdict).inc()

    def record_execution(self, result: str):
        """result: success, failed, refused or preflight_failed"""
        with self._lock:
            self.executions_total.labels(result=result).inc()

    def render(self) -> str:
        """Prometheus text exposition of every metric."""
        return generate_latest(self.registry).decode("utf-8")

    def snapshot(self) -> Dict[str, Any]:
        """Current sample values keyed by sample name (and labels)."""
        samples: Dict[str, Any] = {}
        for family in self.registry.collect():
            for sample in family.samples:
                if sample.name.endswith("_created"):
                    continue
                key = sample.name
                if sample.labels:
                    labels = ",".join(f"{k}={v}" for k, v in sorted(sample.labels.items()))
                    key = f"{key}{{{labels}}}"
                samples[key] = sample.value
        return samples

    # === SERVER MANAGEMENT ===

    async def start_server(self, port: int, host: str = "0.0.0.0", path: str = "/metrics"):
        """Serve the metrics over HTTP on the running event loop."""
        app = web.Application()
        app.router.add_get(path, self._metrics_handler)
        app.router.add_get("/health", self._health_handler)

        self._runner = web.AppRunner(app)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, host, port)
        await self._site.start()
        logger.info("Metrics server listening on http://%s:%d%s", host, port, path)

    async def stop_server(self):
        if self._site:
            await self._site.stop()
            self._site = None
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        logger.info("Metrics server stopped")

    async def _metrics_handler(self, request):
        # aiohttp sets the charset itself
        content_type = CONTENT_TYPE_LATEST.split(";")[0]
        return web.Response(text=self.render(), content_type=content_type)

    async def _health_handler(self, request):
        return web.json_response({"status": "healthy", "service": "arb_agent_metrics"})
