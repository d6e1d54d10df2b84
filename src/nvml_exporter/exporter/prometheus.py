"""Prometheus HTTP endpoint with a scrape-triggered update barrier.

Each scrape wakes the collection loop through a :class:`ScrapeGate` and
waits until a full sampling pass has finished before the registry is
serialized, so a response never carries values older than its request.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from typing import Any

from prometheus_client import start_http_server
from prometheus_client.core import CollectorRegistry, Metric

from ..errors import ScrapeAbortedError
from ..registry import MetricRegistry

logger = logging.getLogger(__name__)


class ScrapeGate:
    """Request/response barrier between HTTP threads and the collection loop.

    The HTTP side calls :meth:`request`; the collection side calls
    :meth:`wait`, runs a pass, then :meth:`release`. Concurrent requests are
    served one at a time, each with its own pass.
    """

    def __init__(self) -> None:
        self._serial = threading.Lock()
        self._cond = threading.Condition()
        self._pending = False
        self._done = False
        self._closed = False

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def request(self, timeout: float | None = None) -> None:
        """Ask for a sampling pass and block until it has completed.

        Raises :class:`ScrapeAbortedError` if the gate is closed before the
        pass finishes, or :class:`TimeoutError` if *timeout* expires.
        """
        with self._serial:
            with self._cond:
                if self._closed:
                    raise ScrapeAbortedError("collection loop is not running")
                self._pending = True
                self._done = False
                self._cond.notify_all()
                finished = self._cond.wait_for(lambda: self._done or self._closed, timeout)
                if not finished:
                    self._pending = False
                    raise TimeoutError("sampling pass did not complete in time")
                if not self._done:
                    raise ScrapeAbortedError("collection loop stopped during the scrape")

    def wait(self, timeout: float | None = None) -> bool:
        """Block until a request is pending; False on timeout or once closed."""
        with self._cond:
            self._cond.wait_for(lambda: self._pending or self._closed, timeout)
            if self._closed or not self._pending:
                return False
            self._pending = False
            return True

    def release(self) -> None:
        """Let the waiting request respond."""
        with self._cond:
            self._done = True
            self._cond.notify_all()

    def close(self) -> None:
        """Fail pending and future requests and wake the collection side."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()


class ScrapeCollector:
    """``prometheus_client`` collector that syncs with the loop before reading."""

    def __init__(self, registry: MetricRegistry, gate: ScrapeGate) -> None:
        self._registry = registry
        self._gate = gate

    def collect(self) -> Iterator[Metric]:
        self._gate.request()
        yield from self._registry.collect()


class MetricsServer:
    """Serves the registry over HTTP on *host*:*port*."""

    def __init__(self, registry: MetricRegistry, gate: ScrapeGate, host: str, port: int) -> None:
        self._host = host
        self._port = port
        # Separate exposition registry; no describe() so register() never scrapes.
        self._exposition = CollectorRegistry(auto_describe=False)
        self._exposition.register(ScrapeCollector(registry, gate))
        self._server: Any = None
        self._thread: threading.Thread | None = None

    @property
    def exposition_registry(self) -> CollectorRegistry:
        return self._exposition

    @property
    def port(self) -> int:
        """Bound port; differs from the requested one when that was 0."""
        if self._server is not None:
            return self._server.server_address[1]
        return self._port

    def start(self) -> None:
        if self._server is not None:
            return
        self._server, self._thread = start_http_server(
            self._port, addr=self._host, registry=self._exposition
        )
        logger.info("Serving metrics on %s:%d", self._host, self._port)

    def stop(self) -> None:
        if self._server is None:
            return
        self._server.shutdown()
        self._server.server_close()
        if self._thread is not None:
            self._thread.join(timeout=5)
        self._server = None
        self._thread = None
        logger.info("Metrics server stopped")
