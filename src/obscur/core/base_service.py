"""
Abstract base class for long-running obscur services.

``BaseService[ConfigT]`` provides the standard lifecycle shared by the DM
controller and the group membership service: structured logging via
[Logger][obscur.core.logger.Logger], graceful shutdown via
``asyncio.Event``, interval-based housekeeping cycles with
[run_forever()][obscur.core.base_service.BaseService.run_forever],
consecutive failure limits, and Prometheus metrics tracking.

Services never own infrastructure. The relay pool, retry manager, message
store and cache are reached through the
[EngineContext][obscur.core.context.EngineContext] passed to the
constructor, so two services of the same process share one set of circuit
breakers and one offline queue.

See Also:
    [EngineContext][obscur.core.context.EngineContext]: Process-wide
        component container injected into every service.
    [BaseServiceConfig][obscur.core.base_service.BaseServiceConfig]: Base
        configuration model for all services.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from types import TracebackType
from typing import TYPE_CHECKING, Any, ClassVar, Generic, Self, TypeVar, cast

from pydantic import BaseModel, Field

from obscur.models.constants import ServiceName

from .logger import Logger
from .metrics import (
    CYCLE_DURATION_SECONDS,
    SERVICE_COUNTER,
    SERVICE_GAUGE,
    SERVICE_INFO,
    MetricsConfig,
)
from .yaml import load_yaml


if TYPE_CHECKING:
    from .context import EngineContext


# ---------------------------------------------------------------------------
# Base Configuration
# ---------------------------------------------------------------------------


class BaseServiceConfig(BaseModel):
    """Base configuration shared by all services that run in a loop.

    Subclass this to add service-specific fields. The fields defined here
    control the
    [run_forever()][obscur.core.base_service.BaseService.run_forever]
    cycle interval, failure tolerance, and Prometheus metrics exposition.
    """

    interval: float = Field(
        default=30.0,
        ge=1.0,
        description="Seconds between housekeeping cycles",
    )
    max_consecutive_failures: int = Field(
        default=5,
        ge=0,
        description="Stop after this many consecutive errors (0 = unlimited)",
    )
    metrics: MetricsConfig = Field(
        default_factory=MetricsConfig,
        description="Prometheus metrics configuration",
    )


ConfigT = TypeVar("ConfigT", bound=BaseServiceConfig)


class BaseService(ABC, Generic[ConfigT]):
    """Abstract base class for all obscur services.

    Subclasses must set ``SERVICE_NAME`` and ``CONFIG_CLASS`` and implement
    [run()][obscur.core.base_service.BaseService.run] with one bounded
    housekeeping cycle.

    Attributes:
        SERVICE_NAME: Unique service identifier used in logging and metrics.
        CONFIG_CLASS: Pydantic model class used by the factory methods.
        _context: Shared [EngineContext][obscur.core.context.EngineContext].
        _config: Typed service configuration (defaults from ``CONFIG_CLASS``).
        _logger: [Logger][obscur.core.logger.Logger] named after the service.
        _shutdown_event: Clear while running; set once shutdown is requested.

    Note:
        The lifecycle pattern is ``async with context:`` then
        ``async with service:`` then
        [run_forever()][obscur.core.base_service.BaseService.run_forever]
        (or individual operations such as ``send_dm`` from an embedding
        application).
    """

    SERVICE_NAME: ClassVar[ServiceName]
    CONFIG_CLASS: ClassVar[type[BaseModel]]

    def __init__(self, context: EngineContext, config: ConfigT | None = None) -> None:
        self._context = context
        self._config: ConfigT = (
            config if config is not None else cast("ConfigT", self.CONFIG_CLASS())
        )
        self._logger = Logger(self.SERVICE_NAME)
        self._shutdown_event = asyncio.Event()

    @property
    def config(self) -> ConfigT:
        """The typed service configuration (read-only)."""
        return self._config

    @property
    def context(self) -> EngineContext:
        return self._context

    @abstractmethod
    async def run(self) -> None:
        """Execute one housekeeping cycle.

        Called repeatedly by
        [run_forever()][obscur.core.base_service.BaseService.run_forever].
        Implementations should perform a bounded unit of work and return.
        """
        ...

    def request_shutdown(self) -> None:
        """Request a graceful shutdown; safe to call from signal handlers."""
        self._shutdown_event.set()

    @property
    def is_running(self) -> bool:
        """Whether the service is still active (shutdown not yet requested)."""
        return not self._shutdown_event.is_set()

    async def wait(self, timeout: float) -> bool:  # noqa: ASYNC109
        """Wait for a shutdown signal or *timeout* seconds.

        Returns:
            True if shutdown was requested during the wait.
        """
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=timeout)
            return True
        except TimeoutError:
            return False

    async def run_forever(self) -> None:
        """Run housekeeping cycles until shutdown or too many failures.

        Repeatedly calls [run()][obscur.core.base_service.BaseService.run],
        sleeping ``config.interval`` seconds between cycles through
        [wait()][obscur.core.base_service.BaseService.wait] so a shutdown
        request interrupts the sleep. ``max_consecutive_failures == 0``
        disables the failure limit.

        Metrics: ``cycles_success``, ``cycles_failed`` and
        ``errors_{ExceptionType}`` counters, ``consecutive_failures`` and
        ``last_cycle_timestamp`` gauges, and the cycle duration histogram.
        ``CancelledError``, ``KeyboardInterrupt`` and ``SystemExit`` always
        propagate.
        """
        interval = self._config.interval
        max_consecutive_failures = self._config.max_consecutive_failures
        metrics_enabled = self._config.metrics.enabled

        if metrics_enabled:
            SERVICE_INFO.info({"service": self.SERVICE_NAME})

        self._logger.info(
            "run_forever_started",
            interval=interval,
            max_consecutive_failures=max_consecutive_failures,
        )

        consecutive_failures = 0

        while self.is_running:
            cycle_start = time.monotonic()

            try:
                await self.run()

                duration = time.monotonic() - cycle_start
                self.inc_counter("cycles_success")
                if metrics_enabled:
                    CYCLE_DURATION_SECONDS.labels(service=self.SERVICE_NAME).observe(duration)
                self.set_gauge("last_cycle_timestamp", time.time())
                self.set_gauge("consecutive_failures", 0)

                consecutive_failures = 0
                self._logger.debug("cycle_completed", next_cycle_s=interval)

            except (asyncio.CancelledError, KeyboardInterrupt, SystemExit):
                raise

            except Exception as e:  # Intentionally broad: top-level error boundary for run_forever
                consecutive_failures += 1

                self.inc_counter("cycles_failed")
                self.set_gauge("consecutive_failures", consecutive_failures)
                self.inc_counter(f"errors_{type(e).__name__}")

                self._logger.error(
                    "run_cycle_error",
                    error=str(e),
                    consecutive_failures=consecutive_failures,
                )

                if 0 < max_consecutive_failures <= consecutive_failures:
                    self._logger.critical(
                        "max_consecutive_failures_reached",
                        failures=consecutive_failures,
                        limit=max_consecutive_failures,
                    )
                    break

            if await self.wait(interval):
                break

        self._logger.info("run_forever_stopped")

    # -------------------------------------------------------------------------
    # Factory Methods
    # -------------------------------------------------------------------------

    @classmethod
    def from_yaml(cls, config_path: str, context: EngineContext, **kwargs: Any) -> Self:
        """Create a service from a YAML configuration file."""
        return cls.from_dict(load_yaml(config_path), context=context, **kwargs)

    @classmethod
    def from_dict(cls, data: dict[str, Any], context: EngineContext, **kwargs: Any) -> Self:
        """Create a service by parsing *data* into ``CONFIG_CLASS``."""
        config = cast("ConfigT", cls.CONFIG_CLASS(**data))
        return cls(context=context, config=config, **kwargs)

    # -------------------------------------------------------------------------
    # Context Manager
    # -------------------------------------------------------------------------

    async def __aenter__(self) -> Self:
        self._shutdown_event.clear()
        self._logger.info("service_started")
        return self

    async def __aexit__(
        self,
        _exc_type: type[BaseException] | None,
        _exc_val: BaseException | None,
        _exc_tb: TracebackType | None,
    ) -> None:
        self._shutdown_event.set()
        self._logger.info("service_stopped")

    # -------------------------------------------------------------------------
    # Custom Metrics
    # -------------------------------------------------------------------------

    def set_gauge(self, name: str, value: float) -> None:
        """Set a named gauge for this service; no-op when metrics are disabled."""
        if not self._config.metrics.enabled:
            return
        SERVICE_GAUGE.labels(service=self.SERVICE_NAME, name=name).set(value)

    def inc_counter(self, name: str, value: float = 1) -> None:
        """Increment a named counter for this service; no-op when metrics are disabled."""
        if not self._config.metrics.enabled:
            return
        SERVICE_COUNTER.labels(service=self.SERVICE_NAME, name=name).inc(value)
