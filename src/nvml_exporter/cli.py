"""CLI interface for nvml_exporter."""

from __future__ import annotations

import argparse
import logging
import signal
from typing import Any

from . import __version__
from .collector.manager import CollectionLoop
from .collector.nvml import NvmlQuery
from .config import load_config, parse_listen_address
from .errors import ConfigError, ExporterError
from .exporter.prometheus import MetricsServer, ScrapeGate
from .registry import MetricRegistry

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nvml-exporter",
        description="Export NVIDIA GPU telemetry from NVML as Prometheus metrics",
    )
    parser.add_argument(
        "--listen", "-l",
        default=None,
        help="Listen address/port (default: [::]:9144)",
    )
    parser.add_argument("--config", "-c", default=None, help="Path to nvml_exporter.yaml")
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        type=str.upper,
        help="Logging level (default: from config, INFO)",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv: list[str] | None = None) -> int:
    """Entry point for the nvml-exporter CLI."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    args = build_parser().parse_args(argv)

    overrides: dict[str, Any] = {}
    if args.listen:
        overrides["listen"] = args.listen
    try:
        cfg = load_config(args.config, overrides=overrides)
        host, port = parse_listen_address(cfg.listen)
    except ConfigError as exc:
        logger.error("Configuration error: %s", exc)
        return 1
    logging.getLogger().setLevel(args.log_level or cfg.log_level.upper())

    registry = MetricRegistry(namespace=cfg.namespace)
    gate = ScrapeGate()
    query = NvmlQuery()
    loop = CollectionLoop(query, registry, gate, cfg.scheduler)

    exporters = []
    if cfg.otel.enabled:
        from .exporter.otel import OtelExporter
        otel_exp = OtelExporter(cfg.otel)
        exporters.append(otel_exp)
        loop.add_sink(otel_exp.export)

    def _handle_signal(_sig: int, _frame: object) -> None:
        loop.stop()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    server = MetricsServer(registry, gate, host, port)
    try:
        server.start()
    except OSError as exc:
        logger.error("Cannot listen on %s: %s", cfg.listen, exc)
        for exp in exporters:
            exp.shutdown()
        return 1

    try:
        loop.run()
    except ExporterError as exc:
        logger.error("Fatal error: %s", exc)
        return 1
    finally:
        server.stop()
        for exp in exporters:
            exp.shutdown()
        query.shutdown()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
