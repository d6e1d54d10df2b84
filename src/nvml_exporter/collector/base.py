"""Plain data types shared by the registry and its sinks."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class MetricSample:
    """A single metric data point taken from the registry."""

    name: str
    value: float
    unit: str
    timestamp: float
    labels: dict[str, str]
    description: str = ""
    kind: str = "gauge"
