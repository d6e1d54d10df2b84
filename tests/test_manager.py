"""Tests for the adaptive collection loop."""

import threading

import pytest

from nvml_exporter.collector.manager import CollectionLoop, Phase, next_refresh_interval
from nvml_exporter.config import SchedulerConfig
from nvml_exporter.errors import DeviceQueryError, DiscoveryError, ScrapeAbortedError
from nvml_exporter.exporter.prometheus import ScrapeGate

from conftest import FakeClock, FakeDevice, FakeQuery


def _request_in_thread(gate):
    """Issue a scrape request from a background thread; collect its outcome."""
    outcome = {}

    def _run():
        try:
            gate.request(timeout=5)
            outcome["ok"] = True
        except Exception as exc:  # noqa: BLE001
            outcome["error"] = exc

    thread = threading.Thread(target=_run, daemon=True)
    thread.start()
    return thread, outcome


class TestNextRefreshInterval:
    def test_doubles_until_cap(self):
        interval = 30.0
        seen = [interval]
        for _ in range(8):
            interval = next_refresh_interval(interval, count_changed=False)
            seen.append(interval)
        assert seen == [30, 60, 120, 240, 480, 960, 1920, 3600, 3600]

    def test_change_resets(self):
        assert next_refresh_interval(1920, count_changed=True) == 30

    def test_custom_bounds(self):
        assert next_refresh_interval(5, False, initial=5, maximum=8) == 8
        assert next_refresh_interval(8, True, initial=5, maximum=8) == 5


class TestDiscoveryPhase:
    def test_interval_follows_device_count(self, registry, two_devices):
        third = FakeDevice(uuid="GPU-cccc", pci="00000000:03:00.0")
        query = FakeQuery(
            two_devices,
            two_devices,
            two_devices,
            two_devices + [third],
            two_devices + [third],
            [],
        )
        loop = CollectionLoop(query, registry, ScrapeGate(), clock=FakeClock())

        intervals = []
        for _ in range(6):
            loop.discover()
            intervals.append(loop.refresh_interval)
        assert intervals == [30, 60, 120, 30, 60, 30]

    def test_empty_topology_counts_as_unchanged(self, registry):
        loop = CollectionLoop(FakeQuery([]), registry, ScrapeGate(), clock=FakeClock())
        loop.discover()
        assert loop.refresh_interval == 60
        assert loop.devices == []

    def test_deadline_and_phase(self, registry, two_devices):
        clock = FakeClock(1000.0)
        loop = CollectionLoop(FakeQuery(two_devices), registry, ScrapeGate(), clock=clock)
        assert loop.phase is Phase.DISCOVERY

        assert loop.step() is Phase.SAMPLING
        assert loop.deadline == 1030.0
        assert [h.identity.uuid for h in loop.devices] == ["GPU-aaaa", "GPU-bbbb"]

        clock.now = 1030.0
        assert loop.step() is Phase.DISCOVERY
        assert loop.step() is Phase.SAMPLING
        assert loop.refresh_interval == 60
        assert loop.deadline == 1090.0

    def test_configured_bounds(self, registry):
        config = SchedulerConfig(initial_interval_seconds=5, max_interval_seconds=10)
        loop = CollectionLoop(FakeQuery([]), registry, ScrapeGate(), config, clock=FakeClock())
        for _ in range(3):
            loop.discover()
        assert loop.refresh_interval == 10

    def test_discovery_failure_propagates(self, registry):
        loop = CollectionLoop(FakeQuery(fail_init=True), registry, ScrapeGate(), clock=FakeClock())
        with pytest.raises(DiscoveryError):
            loop.step()


class TestSamplingPhase:
    def test_scrape_triggers_one_pass(self, registry, two_devices):
        gate = ScrapeGate()
        loop = CollectionLoop(FakeQuery(two_devices), registry, gate, clock=FakeClock())
        loop.step()

        thread, outcome = _request_in_thread(gate)
        assert loop.step() is Phase.SAMPLING
        thread.join(timeout=5)

        assert outcome == {"ok": True}
        assert two_devices[0].reads["memory_info"] == 1
        assert two_devices[1].reads["memory_info"] == 1
        assert len(registry.series("temp")) == 2

    def test_wait_times_out_without_scrape(self, registry, two_devices):
        clock = FakeClock()
        loop = CollectionLoop(FakeQuery(two_devices), registry, ScrapeGate(), clock=clock)
        loop.step()
        # pretend only a moment is left before the deadline
        clock.now = loop.deadline - 0.01
        assert loop.step() is Phase.SAMPLING
        assert "memory_info" not in two_devices[0].reads

    def test_fail_fast_stops_loop_and_aborts_scrape(self, registry, two_devices):
        two_devices[1].failing.add("temperature")
        gate = ScrapeGate()
        loop = CollectionLoop(FakeQuery(two_devices), registry, gate)

        thread, outcome = _request_in_thread(gate)
        with pytest.raises(DeviceQueryError):
            loop.run()
        thread.join(timeout=5)

        assert isinstance(outcome["error"], ScrapeAbortedError)
        assert gate.closed

    def test_skip_mode_continues(self, registry, two_devices):
        two_devices[0].failing.add("temperature")
        gate = ScrapeGate()
        config = SchedulerConfig(fail_fast=False)
        loop = CollectionLoop(FakeQuery(two_devices), registry, gate, config, clock=FakeClock())
        loop.step()

        thread, outcome = _request_in_thread(gate)
        loop.step()
        thread.join(timeout=5)

        assert outcome == {"ok": True}
        assert list(registry.series("temp")) == [loop.devices[1].labels]

    def test_skipped_device_exposes_no_unread_series(self, registry, two_devices):
        two_devices[0].failing.add("temperature")
        gate = ScrapeGate()
        config = SchedulerConfig(fail_fast=False)
        loop = CollectionLoop(FakeQuery(two_devices), registry, gate, config, clock=FakeClock())
        loop.step()

        thread, outcome = _request_in_thread(gate)
        loop.step()
        thread.join(timeout=5)
        assert outcome == {"ok": True}

        exposed = {}
        for family in registry.collect():
            exposed[family.name] = {s.labels["uuid"]: s.value for s in family.samples}
        # fields read before the failure are published
        assert exposed["nvml_memory_used_bytes"]["GPU-aaaa"] == 30_000
        # fields never read are absent rather than zero
        assert exposed["nvml_temp"] == {"GPU-bbbb": 48}
        assert exposed["nvml_performance_state"] == {"GPU-bbbb": 8}
        assert exposed["nvml_power_usage_current_mw"] == {"GPU-bbbb": 90_000}
        assert "GPU-aaaa" not in exposed["nvml_pci_replay"]

    def test_sinks_receive_snapshot(self, registry, two_devices):
        loop = CollectionLoop(FakeQuery(two_devices), registry, ScrapeGate(), clock=FakeClock())
        received = []
        loop.add_sink(received.append)
        loop.add_sink(lambda samples: 1 / 0)

        loop.discover()
        loop.collect_once()

        assert len(received) == 1
        names = {s.name for s in received[0]}
        assert {"nvml_temp", "nvml_fan_speed", "nvml_pci_replay"} <= names

    def test_stop_ends_run(self, registry, two_devices):
        gate = ScrapeGate()
        loop = CollectionLoop(FakeQuery(two_devices), registry, gate)
        errors = []

        def _run():
            try:
                loop.run()
            except Exception as exc:  # noqa: BLE001
                errors.append(exc)

        thread = threading.Thread(target=_run, daemon=True)
        thread.start()
        gate.request(timeout=5)
        loop.stop()
        thread.join(timeout=5)

        assert not thread.is_alive()
        assert errors == []
        with pytest.raises(ScrapeAbortedError):
            gate.request(timeout=1)
