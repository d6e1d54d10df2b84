"""Per-device sampler: reads every telemetry field and writes the registry."""

from __future__ import annotations

import logging

from ..registry import MetricRegistry
from .device import DeviceHandle
from .nvml import PerformanceState

logger = logging.getLogger(__name__)

PERFORMANCE_STATE_VALUES: dict[PerformanceState, int] = {
    PerformanceState.P0: 0,
    PerformanceState.P1: 1,
    PerformanceState.P2: 2,
    PerformanceState.P3: 3,
    PerformanceState.P4: 4,
    PerformanceState.P5: 5,
    PerformanceState.P6: 6,
    PerformanceState.P7: 7,
    PerformanceState.P8: 8,
    PerformanceState.P9: 9,
    PerformanceState.P10: 10,
    PerformanceState.P11: 11,
    PerformanceState.P12: 12,
    PerformanceState.P13: 13,
    PerformanceState.P14: 14,
    PerformanceState.P15: 15,
    PerformanceState.UNKNOWN: -1,
}


def performance_state_value(state: PerformanceState) -> int:
    """Map a performance state to 0 (highest) .. 15 (lowest), -1 if unknown."""
    return PERFORMANCE_STATE_VALUES[state]


class DeviceSampler:
    """Publishes one full read of a device into a :class:`MetricRegistry`.

    A failed read raises :class:`~nvml_exporter.errors.DeviceQueryError`
    and abandons the rest of the pass. Values written earlier in the same
    pass stay in the registry; a series is only created once its value
    has been read.
    """

    def __init__(self, registry: MetricRegistry) -> None:
        self._registry = registry
        # last hardware counter reading per (metric, labels)
        self._last_readings: dict[tuple[str, tuple[str, ...]], int] = {}

    def update(self, handle: DeviceHandle) -> None:
        device = handle.device
        labels = handle.labels
        gauge = self._registry.get_or_create_gauge

        meminfo = device.memory_info()
        gauge("memory_free_bytes", labels).set(meminfo.free)
        gauge("memory_used_bytes", labels).set(meminfo.used)
        gauge("memory_total_bytes", labels).set(meminfo.total)

        for fan in range(handle.fan_count):
            speed = device.fan_speed(fan)
            gauge("fan_speed", labels + (str(fan),)).set(speed / 100)

        temperature = device.temperature()
        gauge("temp", labels).set(temperature)

        pstate = performance_state_value(device.performance_state())
        gauge("performance_state", labels).set(pstate)

        power = int(device.power_usage())
        gauge("power_usage_current_mw", labels).set(power)

        power_limit = int(device.enforced_power_limit())
        gauge("power_usage_max_mw", labels).set(power_limit)

        energy = device.total_energy_consumption()
        self._reconcile_counter("power_used_total_mj", labels, energy)
        replay = device.pcie_replay_counter()
        self._reconcile_counter("pci_replay", labels, replay)

    def _reconcile_counter(self, name: str, labels: tuple[str, ...], current: int) -> None:
        """Advance a registry counter by the hardware growth since the last read.

        With no previous reading the delta is taken against the registry
        value, which starts at zero, so the first reading is applied in full.
        A reading below the previous one (driver reload, device reset) means
        the hardware counter restarted from zero; the whole new reading is
        added and tracking re-baselines on it.
        """
        current = int(current)
        counter = self._registry.get_or_create_counter(name, labels)
        key = (name, labels)
        previous = self._last_readings.get(key)
        if previous is None:
            delta = max(current - counter.get(), 0)
        elif current < previous:
            logger.warning(
                "%s went backwards for %s (%d -> %d); treating it as a counter reset",
                name,
                labels[0],
                previous,
                current,
            )
            delta = current
        else:
            delta = current - previous
        counter.increment_by(delta)
        self._last_readings[key] = current
