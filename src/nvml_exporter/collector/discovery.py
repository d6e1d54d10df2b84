"""Topology discovery: enumerate every GPU present right now."""

from __future__ import annotations

import logging
from typing import Any

from ..errors import DeviceQueryError, DiscoveryError
from .device import DeviceHandle

logger = logging.getLogger(__name__)


def discover(query: Any) -> list[DeviceHandle]:
    """Re-initialize *query* and build a handle for each device.

    Discovery is all-or-nothing: any failure raises :class:`DiscoveryError`
    (or its subclass :class:`IdentityReadError`) and no handles are returned.
    """
    try:
        query.init()
        count = query.device_count()
        devices = [query.device_by_index(index) for index in range(count)]
    except DeviceQueryError as exc:
        raise DiscoveryError(f"device enumeration failed: {exc}") from exc

    handles = [DeviceHandle.from_device(device) for device in devices]
    for index, handle in enumerate(handles):
        logger.debug("GPU %d: %s %s (%s)", index, handle.identity.name, handle.identity.uuid,
                     handle.identity.pci_bus_id)
    return handles
