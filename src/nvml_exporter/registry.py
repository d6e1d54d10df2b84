"""Metric registry shared by the collection loop and the HTTP responder.

The registry is an explicit object: build one at startup and pass it to
whoever needs it. Every series is keyed by ``(metric name, label tuple)``.
Gauges are last-write-wins, counters only accept non-negative increments.
All reads and writes serialize on one lock, so a scrape always sees a
consistent snapshot.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from typing import Union

from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily, Metric

from .collector.base import MetricSample
from .errors import RegistryError

GAUGE = "gauge"
COUNTER = "counter"

DEVICE_LABELS = ("uuid", "name", "pci")
FAN_LABELS = DEVICE_LABELS + ("fan",)


@dataclass(frozen=True)
class MetricDefinition:
    """Name, kind and label schema of one metric family."""

    name: str
    kind: str
    documentation: str
    unit: str
    labelnames: tuple[str, ...] = DEVICE_LABELS


# Metric names and labels are the contract scrapers depend on; keep them stable.
CATALOG: tuple[MetricDefinition, ...] = (
    MetricDefinition("memory_free_bytes", GAUGE, "Free Memory", "bytes"),
    MetricDefinition("memory_used_bytes", GAUGE, "Used Memory", "bytes"),
    MetricDefinition("memory_total_bytes", GAUGE, "Total Memory", "bytes"),
    MetricDefinition("fan_speed", GAUGE, "Fan speed (0-1)", "1", FAN_LABELS),
    MetricDefinition("temp", GAUGE, "GPU temperature (degrees Celsius)", "Cel"),
    MetricDefinition(
        "performance_state",
        GAUGE,
        "Performance State (between 15 (low) and 0 (high))",
        "1",
    ),
    MetricDefinition("power_usage_current_mw", GAUGE, "Current power usage (mW)", "mW"),
    MetricDefinition("power_usage_max_mw", GAUGE, "Enforced power limit (mW)", "mW"),
    MetricDefinition("power_used_total_mj", COUNTER, "Energy used in total (mJ)", "mJ"),
    MetricDefinition("pci_replay", COUNTER, "PCIe replay counter", "1"),
)


class GaugeHandle:
    """One gauge series."""

    def __init__(self, lock: threading.RLock) -> None:
        self._lock = lock
        self._value: float = 0.0

    def set(self, value: float) -> None:
        with self._lock:
            self._value = value

    def get(self) -> float:
        with self._lock:
            return self._value


class CounterHandle:
    """One counter series; starts at zero and only moves up."""

    def __init__(self, lock: threading.RLock) -> None:
        self._lock = lock
        self._value: int = 0

    def get(self) -> int:
        with self._lock:
            return self._value

    def increment_by(self, delta: int) -> None:
        if delta < 0:
            raise ValueError(f"counters can only be incremented by non-negative amounts, got {delta}")
        with self._lock:
            self._value += delta


SeriesHandle = Union[GaugeHandle, CounterHandle]


class MetricRegistry:
    """Process-wide set of named metric series."""

    def __init__(
        self,
        definitions: Iterable[MetricDefinition] = CATALOG,
        namespace: str = "nvml",
    ) -> None:
        self._lock = threading.RLock()
        self._namespace = namespace
        self._definitions: dict[str, MetricDefinition] = {}
        self._series: dict[str, dict[tuple[str, ...], SeriesHandle]] = {}
        for definition in definitions:
            self.declare(definition)

    def declare(self, definition: MetricDefinition) -> None:
        """Add a metric family; redeclaring an existing name is an error."""
        if definition.kind not in (GAUGE, COUNTER):
            raise RegistryError(f"unsupported metric kind {definition.kind!r}")
        with self._lock:
            if definition.name in self._definitions:
                raise RegistryError(f"metric {definition.name!r} already declared")
            self._definitions[definition.name] = definition
            self._series[definition.name] = {}

    @property
    def definitions(self) -> list[MetricDefinition]:
        with self._lock:
            return list(self._definitions.values())

    def full_name(self, name: str) -> str:
        """Exposed metric name, with the namespace prefix."""
        return f"{self._namespace}_{name}" if self._namespace else name

    def _get_or_create(self, name: str, kind: str, labels: Iterable[object]) -> SeriesHandle:
        label_values = tuple(str(value) for value in labels)
        with self._lock:
            definition = self._definitions.get(name)
            if definition is None:
                raise RegistryError(f"unknown metric {name!r}")
            if definition.kind != kind:
                raise RegistryError(f"metric {name!r} is a {definition.kind}, not a {kind}")
            if len(label_values) != len(definition.labelnames):
                raise RegistryError(
                    f"metric {name!r} takes labels {definition.labelnames}, got {label_values}"
                )
            series = self._series[name]
            handle = series.get(label_values)
            if handle is None:
                handle = GaugeHandle(self._lock) if kind == GAUGE else CounterHandle(self._lock)
                series[label_values] = handle
            return handle

    def get_or_create_gauge(self, name: str, labels: Iterable[object]) -> GaugeHandle:
        return self._get_or_create(name, GAUGE, labels)  # type: ignore[return-value]

    def get_or_create_counter(self, name: str, labels: Iterable[object]) -> CounterHandle:
        return self._get_or_create(name, COUNTER, labels)  # type: ignore[return-value]

    def series(self, name: str) -> dict[tuple[str, ...], float]:
        """Current values of every series of *name*, keyed by label tuple."""
        with self._lock:
            if name not in self._series:
                raise RegistryError(f"unknown metric {name!r}")
            return {labels: handle.get() for labels, handle in self._series[name].items()}

    def get_sample_value(self, name: str, labels: Iterable[object]) -> float | None:
        """Value of one series, or None if it was never created."""
        label_values = tuple(str(value) for value in labels)
        return self.series(name).get(label_values)

    def _snapshot(self) -> list[tuple[MetricDefinition, list[tuple[tuple[str, ...], float]]]]:
        with self._lock:
            return [
                (definition, [(labels, handle.get()) for labels, handle in self._series[name].items()])
                for name, definition in self._definitions.items()
            ]

    def samples(self) -> list[MetricSample]:
        """Flatten the registry into :class:`MetricSample` records."""
        now = time.time()
        out: list[MetricSample] = []
        for definition, rows in self._snapshot():
            for labels, value in rows:
                out.append(MetricSample(
                    name=self.full_name(definition.name),
                    value=value,
                    unit=definition.unit,
                    timestamp=now,
                    labels=dict(zip(definition.labelnames, labels)),
                    description=definition.documentation,
                    kind=definition.kind,
                ))
        return out

    def collect(self) -> Iterator[Metric]:
        """Yield ``prometheus_client`` metric families for exposition."""
        for definition, rows in self._snapshot():
            family_cls = GaugeMetricFamily if definition.kind == GAUGE else CounterMetricFamily
            family = family_cls(
                self.full_name(definition.name),
                definition.documentation,
                labels=list(definition.labelnames),
            )
            for labels, value in rows:
                family.add_metric(list(labels), value)
            yield family
