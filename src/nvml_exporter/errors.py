"""Exception types raised by nvml_exporter."""

from __future__ import annotations


class ExporterError(Exception):
    """Base class for all exporter errors."""


class ConfigError(ExporterError):
    """Invalid configuration file or command line value."""


class DeviceQueryError(ExporterError):
    """A read against the device-query library failed."""


class DiscoveryError(ExporterError):
    """Device enumeration could not complete."""


class IdentityReadError(DiscoveryError):
    """A device's uuid, name or PCI bus id could not be read."""


class RegistryError(ExporterError):
    """A metric was requested with an unknown name, wrong kind or bad labels."""


class ScrapeAbortedError(ExporterError):
    """The collection loop stopped while a scrape was waiting on it."""
