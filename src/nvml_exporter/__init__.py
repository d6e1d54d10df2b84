"""Prometheus exporter for NVIDIA GPU telemetry read through NVML."""

__version__ = "0.1.0"
