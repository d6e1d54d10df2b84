"""Collection loop: adaptive rediscovery plus scrape-driven sampling."""

from __future__ import annotations

import enum
import logging
import threading
import time
from typing import Any, Callable

from ..config import SchedulerConfig
from ..errors import DeviceQueryError
from ..exporter.prometheus import ScrapeGate
from ..registry import MetricRegistry
from .base import MetricSample
from .device import DeviceHandle
from .discovery import discover
from .sampler import DeviceSampler

logger = logging.getLogger(__name__)


def next_refresh_interval(
    previous: float,
    count_changed: bool,
    initial: float = 30.0,
    maximum: float = 3600.0,
) -> float:
    """Interval until the next discovery.

    Doubles while the device count holds steady, capped at *maximum*, and
    drops back to *initial* as soon as the count changes.
    """
    if count_changed:
        return initial
    return min(previous * 2, maximum)


class Phase(enum.Enum):
    DISCOVERY = "discovery"
    SAMPLING = "sampling"


class CollectionLoop:
    """Alternates between discovering devices and sampling them on demand.

    In the discovery phase every device is enumerated from scratch and the
    refresh interval is adjusted. The sampling phase then answers scrape
    requests from the :class:`ScrapeGate` until the interval has elapsed.

    Usage::

        loop = CollectionLoop(NvmlQuery(), registry, gate)
        loop.run()  # returns after stop(), raises on a fatal error
    """

    def __init__(
        self,
        query: Any,
        registry: MetricRegistry,
        gate: ScrapeGate,
        config: SchedulerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._query = query
        self._registry = registry
        self._gate = gate
        self._config = config or SchedulerConfig()
        self._clock = clock
        self._sampler = DeviceSampler(registry)
        self._sinks: list[Callable[[list[MetricSample]], None]] = []
        self._stop_event = threading.Event()

        self._phase = Phase.DISCOVERY
        self._devices: list[DeviceHandle] = []
        self._device_count = 0
        self._refresh_interval = self._config.initial_interval_seconds
        self._deadline = 0.0

    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def devices(self) -> list[DeviceHandle]:
        return list(self._devices)

    @property
    def refresh_interval(self) -> float:
        return self._refresh_interval

    @property
    def deadline(self) -> float:
        return self._deadline

    def add_sink(self, sink: Callable[[list[MetricSample]], None]) -> None:
        """Register a callback to receive the registry snapshot after each pass."""
        self._sinks.append(sink)

    def discover(self) -> None:
        """Run the discovery phase and switch to sampling."""
        devices = discover(self._query)
        changed = len(devices) != self._device_count
        self._refresh_interval = next_refresh_interval(
            self._refresh_interval,
            changed,
            initial=self._config.initial_interval_seconds,
            maximum=self._config.max_interval_seconds,
        )
        if changed:
            logger.info("Found %d GPU(s) (was %d)", len(devices), self._device_count)
        self._device_count = len(devices)
        self._devices = devices
        self._deadline = self._clock() + self._refresh_interval
        self._phase = Phase.SAMPLING
        logger.debug("Next discovery in %.0fs", self._refresh_interval)

    def collect_once(self) -> None:
        """Update every device in enumeration order, then feed the sinks."""
        for handle in self._devices:
            try:
                self._sampler.update(handle)
            except DeviceQueryError:
                if self._config.fail_fast:
                    raise
                logger.exception("Skipping %s for this pass", handle.identity.uuid)

        if not self._sinks:
            return
        samples = self._registry.samples()
        for sink in self._sinks:
            try:
                sink(samples)
            except Exception:
                logger.exception("Sink failed")

    def step(self) -> Phase:
        """Advance the state machine by one transition or one served scrape."""
        if self._phase is Phase.DISCOVERY:
            self.discover()
            return self._phase

        remaining = self._deadline - self._clock()
        if remaining <= 0:
            self._phase = Phase.DISCOVERY
            return self._phase

        if self._gate.wait(timeout=remaining):
            self.collect_once()
            self._gate.release()
        return self._phase

    def run(self) -> None:
        """Loop until :meth:`stop` is called or a fatal error propagates."""
        logger.info(
            "Collection loop started (refresh interval %.0fs..%.0fs)",
            self._config.initial_interval_seconds,
            self._config.max_interval_seconds,
        )
        try:
            while not self._stop_event.is_set() and not self._gate.closed:
                self.step()
        finally:
            self._gate.close()
            logger.info("Collection loop stopped")

    def stop(self) -> None:
        """Stop the loop at its next wake-up."""
        self._stop_event.set()
        self._gate.close()
