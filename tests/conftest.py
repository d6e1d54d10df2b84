"""Shared fixtures: in-memory stand-ins for NVML devices."""

from __future__ import annotations

import time

import pytest

from nvml_exporter.collector.nvml import MemoryInfo, PerformanceState
from nvml_exporter.errors import DeviceQueryError
from nvml_exporter.registry import MetricRegistry


class FakeDevice:
    """Device with fixed readings.

    Counter and temperature readings may be sequences; each read consumes
    the next value and the last one repeats. Fields named in *failing*
    raise DeviceQueryError.
    """

    def __init__(
        self,
        uuid="GPU-0",
        name="Tesla T4",
        pci="00000000:01:00.0",
        memory=(1000, 3000, 4000),
        fans=(73,),
        temperature=61,
        pstate=PerformanceState.P2,
        power=52000,
        power_limit=70000,
        energy=(100,),
        replay=(0,),
        failing=(),
        delay=0.0,
    ):
        self._uuid = uuid
        self._name = name
        self._pci = pci
        self.memory = MemoryInfo(*memory)
        self.fans = list(fans)
        self.temperatures = _as_list(temperature)
        self.pstate = pstate
        self.power = power
        self.power_limit = power_limit
        self.energy = _as_list(energy)
        self.replay = _as_list(replay)
        self.failing = set(failing)
        self.delay = delay
        self.reads: dict[str, int] = {}

    def _read(self, field, values=None):
        if field in self.failing:
            raise DeviceQueryError(f"{field} not supported")
        count = self.reads.get(field, 0)
        self.reads[field] = count + 1
        if values is not None:
            return values[min(count, len(values) - 1)]
        return None

    def uuid(self):
        self._read("uuid")
        return self._uuid

    def name(self):
        self._read("name")
        return self._name

    def pci_bus_id(self):
        self._read("pci_bus_id")
        return self._pci

    def memory_info(self):
        self._read("memory_info")
        return self.memory

    def fan_speed(self, fan):
        self._read("fan_speed")
        if fan >= len(self.fans):
            raise DeviceQueryError(f"no fan {fan}")
        return self.fans[fan]

    def temperature(self):
        value = self._read("temperature", self.temperatures)
        if self.delay:
            time.sleep(self.delay)
        return value

    def performance_state(self):
        self._read("performance_state")
        return self.pstate

    def power_usage(self):
        self._read("power_usage")
        return self.power

    def enforced_power_limit(self):
        self._read("enforced_power_limit")
        return self.power_limit

    def total_energy_consumption(self):
        return self._read("total_energy_consumption", self.energy)

    def pcie_replay_counter(self):
        return self._read("pcie_replay_counter", self.replay)

    def __repr__(self):
        return f"FakeDevice({self._uuid!r})"


def _as_list(value):
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


class FakeQuery:
    """Device-query stand-in; each init() moves to the next topology.

    The last topology repeats once the list is exhausted.
    """

    def __init__(self, *topologies, fail_init=False, fail_count=False):
        self.topologies = [list(t) for t in topologies] or [[]]
        self.fail_init = fail_init
        self.fail_count = fail_count
        self.init_calls = 0
        self._current: list = []

    def init(self):
        if self.fail_init:
            raise DeviceQueryError("NVML_ERROR_DRIVER_NOT_LOADED")
        self._current = self.topologies[min(self.init_calls, len(self.topologies) - 1)]
        self.init_calls += 1

    def device_count(self):
        if self.fail_count:
            raise DeviceQueryError("NVML_ERROR_UNKNOWN")
        return len(self._current)

    def device_by_index(self, index):
        return self._current[index]

    def shutdown(self):
        pass


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def registry():
    return MetricRegistry()


@pytest.fixture
def two_devices():
    return [
        FakeDevice(
            uuid="GPU-aaaa",
            name="NVIDIA A100",
            pci="00000000:01:00.0",
            memory=(10_000, 30_000, 40_000),
            fans=(73, 40),
            temperature=55,
            pstate=PerformanceState.P0,
            power=250_000,
            power_limit=400_000,
            energy=(5_000,),
            replay=(2,),
        ),
        FakeDevice(
            uuid="GPU-bbbb",
            name="NVIDIA A100",
            pci="00000000:02:00.0",
            memory=(20_000, 20_000, 40_000),
            fans=(55,),
            temperature=48,
            pstate=PerformanceState.P8,
            power=90_000,
            power_limit=400_000,
            energy=(7_000,),
            replay=(0,),
        ),
    ]
