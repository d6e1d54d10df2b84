"""Device-query interface backed by NVML through ``pynvml``.

Every NVML call goes through :func:`_nvml_call`, which turns
``pynvml.NVMLError`` into :class:`DeviceQueryError` so callers only deal
with the exporter's own exception types.
"""

from __future__ import annotations

import enum
import logging
from typing import Any, NamedTuple

import pynvml

from ..errors import DeviceQueryError

logger = logging.getLogger(__name__)


class PerformanceState(enum.Enum):
    """GPU performance state; P0 is maximum performance, P15 minimum."""

    P0 = "P0"
    P1 = "P1"
    P2 = "P2"
    P3 = "P3"
    P4 = "P4"
    P5 = "P5"
    P6 = "P6"
    P7 = "P7"
    P8 = "P8"
    P9 = "P9"
    P10 = "P10"
    P11 = "P11"
    P12 = "P12"
    P13 = "P13"
    P14 = "P14"
    P15 = "P15"
    UNKNOWN = "unknown"

    @classmethod
    def from_nvml(cls, value: int) -> PerformanceState:
        """Convert an ``NVML_PSTATE_*`` integer; anything outside 0..15 is UNKNOWN."""
        if isinstance(value, int) and 0 <= value <= 15:
            return cls(f"P{value}")
        return cls.UNKNOWN


class MemoryInfo(NamedTuple):
    free: int
    used: int
    total: int


def _nvml_call(name: str, *args: Any) -> Any:
    """Call ``pynvml.<name>(*args)``, translating NVML failures."""
    func = getattr(pynvml, name)
    try:
        return func(*args)
    except pynvml.NVMLError as exc:
        raise DeviceQueryError(f"{name} failed: {exc}") from exc


def _text(value: Any) -> str:
    # older pynvml releases return bytes for string queries
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


class NvmlDevice:
    """One physical GPU as seen through an NVML device handle.

    Each read is a separate NVML call and may fail independently.
    """

    def __init__(self, handle: Any, index: int) -> None:
        self._handle = handle
        self.index = index

    def uuid(self) -> str:
        return _text(_nvml_call("nvmlDeviceGetUUID", self._handle))

    def name(self) -> str:
        return _text(_nvml_call("nvmlDeviceGetName", self._handle))

    def pci_bus_id(self) -> str:
        info = _nvml_call("nvmlDeviceGetPciInfo", self._handle)
        return _text(info.busId)

    def memory_info(self) -> MemoryInfo:
        info = _nvml_call("nvmlDeviceGetMemoryInfo", self._handle)
        return MemoryInfo(free=int(info.free), used=int(info.used), total=int(info.total))

    def fan_speed(self, fan: int) -> int:
        """Fan speed in percent of maximum for sensor *fan*."""
        return int(_nvml_call("nvmlDeviceGetFanSpeed_v2", self._handle, fan))

    def temperature(self) -> int:
        """GPU die temperature in degrees Celsius."""
        return int(_nvml_call("nvmlDeviceGetTemperature", self._handle, pynvml.NVML_TEMPERATURE_GPU))

    def performance_state(self) -> PerformanceState:
        return PerformanceState.from_nvml(_nvml_call("nvmlDeviceGetPerformanceState", self._handle))

    def power_usage(self) -> int:
        """Current board power draw in milliwatts."""
        return int(_nvml_call("nvmlDeviceGetPowerUsage", self._handle))

    def enforced_power_limit(self) -> int:
        """Enforced power limit in milliwatts."""
        return int(_nvml_call("nvmlDeviceGetEnforcedPowerLimit", self._handle))

    def total_energy_consumption(self) -> int:
        """Energy consumed since the driver was last reloaded, in millijoules."""
        return int(_nvml_call("nvmlDeviceGetTotalEnergyConsumption", self._handle))

    def pcie_replay_counter(self) -> int:
        return int(_nvml_call("nvmlDeviceGetPcieReplayCounter", self._handle))

    def __repr__(self) -> str:
        return f"NvmlDevice(index={self.index})"


class NvmlQuery:
    """Owns the NVML session used to enumerate devices.

    :meth:`init` always starts a fresh session, shutting down the previous
    one first, so devices that appeared or vanished since the last call are
    picked up.
    """

    def __init__(self) -> None:
        self._initialized = False

    def init(self) -> None:
        if self._initialized:
            self.shutdown()
        _nvml_call("nvmlInit")
        self._initialized = True
        logger.debug("NVML initialized (driver %s)", self._driver_version())

    def _driver_version(self) -> str:
        try:
            return _text(_nvml_call("nvmlSystemGetDriverVersion"))
        except DeviceQueryError:
            return "unknown"

    def device_count(self) -> int:
        return int(_nvml_call("nvmlDeviceGetCount"))

    def device_by_index(self, index: int) -> NvmlDevice:
        return NvmlDevice(_nvml_call("nvmlDeviceGetHandleByIndex", index), index)

    def shutdown(self) -> None:
        if not self._initialized:
            return
        self._initialized = False
        try:
            _nvml_call("nvmlShutdown")
        except DeviceQueryError:
            logger.warning("NVML shutdown failed", exc_info=True)
