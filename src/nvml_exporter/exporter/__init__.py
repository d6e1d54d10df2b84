"""Sinks that publish the metric registry."""
