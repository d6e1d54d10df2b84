"""Device handles: one physical GPU plus its cached identity and fan count."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from ..errors import DeviceQueryError, IdentityReadError

logger = logging.getLogger(__name__)

MAX_FAN_PROBE = 10_000


@dataclass(frozen=True)
class DeviceIdentity:
    """Labels shared by every metric series of one device."""

    uuid: str
    name: str
    pci_bus_id: str

    @property
    def labels(self) -> tuple[str, str, str]:
        return (self.uuid, self.name, self.pci_bus_id)


def probe_fan_count(device: Any, limit: int = MAX_FAN_PROBE) -> int:
    """Count addressable fan sensors.

    Indices are probed from 0 upward; the count is the first index whose
    read fails, or *limit* if that many reads succeed.
    """
    for index in range(limit):
        try:
            device.fan_speed(index)
        except DeviceQueryError:
            return index
    return limit


class DeviceHandle:
    """A discovered device with identity and capabilities read once."""

    def __init__(self, device: Any, identity: DeviceIdentity, fan_count: int) -> None:
        self.device = device
        self.identity = identity
        self.fan_count = fan_count

    @classmethod
    def from_device(cls, device: Any) -> DeviceHandle:
        """Read identity and probe fans; raise IdentityReadError if identity is unreadable."""
        try:
            identity = DeviceIdentity(
                uuid=device.uuid(),
                name=device.name(),
                pci_bus_id=device.pci_bus_id(),
            )
        except DeviceQueryError as exc:
            raise IdentityReadError(f"cannot read identity of {device!r}: {exc}") from exc

        fan_count = probe_fan_count(device)
        logger.debug("Device %s (%s) has %d fan(s)", identity.uuid, identity.name, fan_count)
        return cls(device, identity, fan_count)

    @property
    def labels(self) -> tuple[str, str, str]:
        return self.identity.labels

    def __repr__(self) -> str:
        return f"DeviceHandle({self.identity.uuid!r}, fans={self.fan_count})"
