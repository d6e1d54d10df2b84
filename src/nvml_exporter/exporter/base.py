"""Base interface for push exporters fed by the collection loop."""

from __future__ import annotations

import abc

from ..collector.base import MetricSample


class BaseExporter(abc.ABC):
    """Abstract base for exporters that receive registry snapshots."""

    @abc.abstractmethod
    def export(self, samples: list[MetricSample]) -> None:
        """Export one snapshot of the registry."""

    @abc.abstractmethod
    def shutdown(self) -> None:
        """Flush and release resources."""
