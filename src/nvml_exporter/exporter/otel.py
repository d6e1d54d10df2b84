"""OpenTelemetry exporter – pushes GPU metrics via OTLP/HTTP."""

from __future__ import annotations

import logging
from typing import Any

from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import MetricReader, PeriodicExportingMetricReader
from opentelemetry.sdk.resources import SERVICE_NAME, Resource

from ..collector.base import MetricSample
from ..config import OtelExporterConfig
from ..registry import COUNTER
from .base import BaseExporter

logger = logging.getLogger(__name__)


class OtelExporter(BaseExporter):
    """Mirrors registry snapshots into an OpenTelemetry meter.

    Gauges are recorded as-is. Counters are recorded as increments since the
    previous snapshot, so the OTel sum matches the registry counter. The
    SDK's ``PeriodicExportingMetricReader`` flushes to the configured
    OTLP/HTTP endpoint; pass *reader* to use a different reader.
    """

    def __init__(self, config: OtelExporterConfig, reader: MetricReader | None = None) -> None:
        self._config = config
        resource = Resource.create({SERVICE_NAME: config.service_name})

        if reader is None:
            exporter_kwargs: dict[str, Any] = {
                "endpoint": f"{config.endpoint.rstrip('/')}/v1/metrics",
            }
            if config.headers:
                exporter_kwargs["headers"] = config.headers
            reader = PeriodicExportingMetricReader(
                OTLPMetricExporter(**exporter_kwargs),
                export_interval_millis=config.export_interval_ms,
            )

        self._provider = MeterProvider(resource=resource, metric_readers=[reader])
        self._meter = self._provider.get_meter("nvml_exporter")
        self._instruments: dict[str, Any] = {}
        self._last_counts: dict[tuple[str, tuple[tuple[str, str], ...]], float] = {}

        logger.info(
            "OtelExporter initialized → %s (service=%s)",
            config.endpoint,
            config.service_name,
        )

    def _get_instrument(self, sample: MetricSample) -> Any:
        if sample.name not in self._instruments:
            if sample.kind == COUNTER:
                instrument = self._meter.create_counter(
                    name=sample.name,
                    unit=sample.unit,
                    description=sample.description,
                )
            else:
                instrument = self._meter.create_gauge(
                    name=sample.name,
                    unit=sample.unit,
                    description=sample.description,
                )
            self._instruments[sample.name] = instrument
        return self._instruments[sample.name]

    def export(self, samples: list[MetricSample]) -> None:
        for s in samples:
            instrument = self._get_instrument(s)
            if s.kind == COUNTER:
                key = (s.name, tuple(sorted(s.labels.items())))
                delta = s.value - self._last_counts.get(key, 0)
                self._last_counts[key] = s.value
                if delta > 0:
                    instrument.add(delta, attributes=s.labels)
            else:
                instrument.set(s.value, attributes=s.labels)

    def shutdown(self) -> None:
        self._provider.shutdown()
        logger.info("OtelExporter shut down")
