"""
Prometheus metrics collection and HTTP exposition.

Module-level metric objects are shared by every component. Services record
their own values through
[BaseService.set_gauge()][obscur.core.base_service.BaseService.set_gauge]
and [inc_counter()][obscur.core.base_service.BaseService.inc_counter];
the relay pool and retry manager update the transport metrics directly.

Architecture:
    SERVICE_INFO:               Static metadata set once at startup.
    SERVICE_GAUGE:              Point-in-time service values.
    SERVICE_COUNTER:            Cumulative service totals.
    CYCLE_DURATION_SECONDS:     Housekeeping cycle latency histogram.
    RELAY_CONNECTIONS:          Relay connections per connection status.
    CIRCUIT_BREAKERS:           Circuit breakers per breaker state.
    PUBLISH_LATENCY_SECONDS:    Time from EVENT to OK per relay.

The [MetricsServer][obscur.core.metrics.MetricsServer] serves the registry
over aiohttp for scraping; it is only started when
[MetricsConfig][obscur.core.metrics.MetricsConfig] enables it.
"""

from __future__ import annotations

from aiohttp import web
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)
from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class MetricsConfig(BaseModel):
    """Configuration for the Prometheus metrics endpoint.

    Disabled by default: an embedded messaging engine should not open a
    listening port unless asked to.
    """

    enabled: bool = Field(default=False, description="Enable metrics collection")
    port: int = Field(default=8000, ge=1024, le=65535, description="Metrics HTTP port")
    host: str = Field(default="127.0.0.1", description="Metrics HTTP bind address")
    path: str = Field(default="/metrics", description="Metrics endpoint path")


# ---------------------------------------------------------------------------
# Service metrics
# ---------------------------------------------------------------------------

SERVICE_INFO = Info(
    "obscur_service",
    "Service information and metadata",
)

CYCLE_DURATION_SECONDS = Histogram(
    "obscur_cycle_duration_seconds",
    "Duration of a housekeeping cycle in seconds",
    ["service"],
    buckets=(0.05, 0.1, 0.5, 1, 2.5, 5, 10, 30, 60),
)

SERVICE_GAUGE = Gauge(
    "obscur_service_gauge",
    "Service gauge values (point-in-time state)",
    ["service", "name"],
)

SERVICE_COUNTER = Counter(
    "obscur_service_counter",
    "Service counter values (cumulative totals)",
    ["service", "name"],
)


# ---------------------------------------------------------------------------
# Transport metrics
# ---------------------------------------------------------------------------

RELAY_CONNECTIONS = Gauge(
    "obscur_relay_connections",
    "Relay connections by connection status",
    ["status"],
)

CIRCUIT_BREAKERS = Gauge(
    "obscur_circuit_breakers",
    "Relay circuit breakers by state",
    ["state"],
)

PUBLISH_LATENCY_SECONDS = Histogram(
    "obscur_publish_latency_seconds",
    "Seconds between sending an EVENT and receiving its OK",
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)


# ---------------------------------------------------------------------------
# HTTP Server
# ---------------------------------------------------------------------------


class MetricsServer:
    """Async HTTP server exposing a Prometheus-compatible endpoint.

    Example:
        server = MetricsServer(MetricsConfig(enabled=True, port=8001))
        await server.start()
        # ... engine runs ...
        await server.stop()
    """

    def __init__(self, config: MetricsConfig) -> None:
        self._config = config
        self._runner: web.AppRunner | None = None

    @property
    def is_running(self) -> bool:
        return self._runner is not None

    async def start(self) -> None:
        """Start serving scrape requests; no-op when metrics are disabled.

        Raises:
            OSError: If the port is already in use or binding fails.
        """
        if not self._config.enabled or self._runner is not None:
            return

        app = web.Application()
        app.router.add_get(self._config.path, self._handle_metrics)

        runner = web.AppRunner(app, access_log=None)
        await runner.setup()
        site = web.TCPSite(runner, self._config.host, self._config.port)
        await site.start()
        self._runner = runner

    async def stop(self) -> None:
        """Stop the HTTP server. Safe to call when it never started."""
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

    @staticmethod
    async def _handle_metrics(_request: web.Request) -> web.Response:
        return web.Response(
            body=generate_latest(),
            headers={"Content-Type": CONTENT_TYPE_LATEST},
        )


async def start_metrics_server(config: MetricsConfig | None = None) -> MetricsServer:
    """Create and start a metrics server; the caller must ``stop()`` it."""
    server = MetricsServer(config or MetricsConfig())
    await server.start()
    return server
