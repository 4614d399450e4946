"""Tests for the scanning worker."""

from __future__ import annotations

from collections import deque
from typing import Callable, Optional

import pytest

from ruuvi_relay.adapters.ble import AdapterError
from ruuvi_relay.channels import ControlChannel, EventKind, ReadingQueue, ScannerEvent, SignalKind
from ruuvi_relay.core.models import Advertisement, BindingPolicy, RuntimeSettings, WorkerState
from ruuvi_relay.decoder import decode
from ruuvi_relay.registry import BindingTable, LivenessRegistry
from ruuvi_relay.scanner import ScanningWorker

TAG_A = "C8:25:2D:8E:9C:01"
TAG_B = "C8:25:2D:8E:9C:02"


class _FakeAdapter:
    def __init__(self, index: int, bank: "_AdapterBank") -> None:
        self.index = index
        self._bank = bank
        self.opened = False
        self.closed = False

    def open(self) -> None:
        if self._bank.open_failures:
            self._bank.open_failures -= 1
            if self._bank.on_open_failure is not None:
                self._bank.on_open_failure()
            raise AdapterError("hci down")
        self.opened = True

    def poll(self, timeout: float):
        if self._bank.poll_errors:
            self._bank.poll_errors -= 1
            raise AdapterError("org.bluez.Error.NotReady")
        if self._bank.batches:
            return self._bank.batches.popleft()
        return []

    def close(self) -> None:
        self.closed = True


class _AdapterBank:
    def __init__(self) -> None:
        self.created: list[_FakeAdapter] = []
        self.batches: deque[list[Advertisement]] = deque()
        self.open_failures = 0
        self.poll_errors = 0
        self.on_open_failure: Optional[Callable[[], None]] = None

    def __call__(self, index: int) -> _FakeAdapter:
        adapter = _FakeAdapter(index, self)
        self.created.append(adapter)
        return adapter

    def live(self) -> list[_FakeAdapter]:
        return [adapter for adapter in self.created if adapter.opened and not adapter.closed]


def _build(clock, *, policy: Optional[BindingPolicy] = None, paused: bool = False):
    bank = _AdapterBank()
    control = ControlChannel()
    readings = ReadingQueue()
    registry = LivenessRegistry()
    bindings = BindingTable(policy or BindingPolicy())
    fatal: list[tuple[str, BaseException]] = []
    worker = ScanningWorker(
        adapter_factory=bank,
        decoder=decode,
        bindings=bindings,
        registry=registry,
        readings=readings,
        control=control,
        report_fatal=lambda component, exc: fatal.append((component, exc)),
        poll_interval=0.01,
        retry_attempts=2,
        paused=paused,
        clock=clock,
    )
    return worker, bank, control, readings, registry, bindings, fatal


def test_open_reports_started(clock):
    worker, bank, control, *_ = _build(clock)

    worker.open()

    assert worker.state is WorkerState.RUNNING
    assert control.poll_events() == [ScannerEvent(EventKind.STARTED)]
    assert len(bank.live()) == 1


def test_accepted_readings_update_registry_and_queue(clock, ruuvi_payload):
    worker, bank, _, readings, registry, _, _ = _build(clock)
    worker.open()
    bank.batches.append(
        [
            Advertisement(TAG_A, ruuvi_payload(sequence=1)),
            Advertisement(TAG_A, b"\x4c\x00\x02\x15"),
            Advertisement(TAG_B, ruuvi_payload(sequence=9)),
        ]
    )

    worker.step()

    queued = readings.drain()
    assert [reading.address for reading in queued] == [TAG_A, TAG_B]
    assert registry.get(TAG_A).seen_at == clock.now
    assert registry.get(TAG_B).measurement.measurement_sequence_number == 9


def test_denied_devices_are_dropped_until_policy_allows(clock, ruuvi_payload, caplog):
    worker, bank, _, readings, registry, bindings, _ = _build(
        clock, policy=BindingPolicy.build(deny=[TAG_A])
    )
    worker.open()

    bank.batches.extend(
        [
            [Advertisement(TAG_A, ruuvi_payload(sequence=1))],
            [Advertisement(TAG_A, ruuvi_payload(sequence=2))],
        ]
    )
    with caplog.at_level("INFO", logger="ruuvi_relay.scanner"):
        worker.step()
        worker.step()

    assert readings.empty()
    assert registry.get(TAG_A) is None
    assert caplog.text.count("Ignoring beacon from C8:25:2D:8E:9C:01") == 1

    bindings.replace(BindingPolicy.build())
    bank.batches.append([Advertisement(TAG_A, ruuvi_payload(sequence=3))])
    worker.step()

    assert [reading.address for reading in readings.drain()] == [TAG_A]


def test_pause_stops_queue_and_registry_updates(clock, ruuvi_payload):
    worker, bank, control, readings, registry, _, _ = _build(clock)
    worker.open()

    control.send(SignalKind.PAUSE)
    control.send(SignalKind.PAUSE)
    bank.batches.append([Advertisement(TAG_A, ruuvi_payload())])
    worker.step()

    assert worker.state is WorkerState.PAUSED
    assert readings.empty()
    assert registry.get(TAG_A) is None

    control.send(SignalKind.COLLECT)
    bank.batches.append([Advertisement(TAG_A, ruuvi_payload())])
    worker.step()

    assert worker.state is WorkerState.RUNNING
    assert readings.qsize() == 1


def test_starts_paused_when_not_collecting(clock):
    worker, *_ = _build(clock, paused=True)

    worker.open()

    assert worker.state is WorkerState.PAUSED


def test_reset_replaces_adapter_and_acknowledges(clock):
    worker, bank, control, *_ = _build(clock)
    worker.open()
    control.poll_events()
    first = bank.created[0]

    signal = control.send(SignalKind.RESET)
    worker.step()

    assert first.closed
    assert len(bank.live()) == 1
    assert bank.live()[0] is not first
    assert control.poll_events() == [ScannerEvent(EventKind.RESET_COMPLETE, seq=signal.seq)]
    assert worker.state is WorkerState.RUNNING


def test_queued_resets_collapse_into_one_restart(clock):
    worker, bank, control, *_ = _build(clock)
    worker.open()
    control.poll_events()

    first = control.send(SignalKind.RESET)
    second = control.send(SignalKind.RESET)
    worker.step()

    assert len(bank.created) == 2
    assert [event.seq for event in control.poll_events()] == [first.seq, second.seq]


def test_reset_keeps_paused_state(clock):
    worker, _, control, *_ = _build(clock, paused=True)
    worker.open()

    control.send(SignalKind.RESET)
    worker.step()

    assert worker.state is WorkerState.PAUSED


def test_poll_error_triggers_internal_restart(clock):
    worker, bank, control, *_ = _build(clock)
    worker.open()
    control.poll_events()
    bank.poll_errors = 1

    worker.step()

    events = control.poll_events()
    assert [event.kind for event in events] == [EventKind.RESTARTED]
    assert "NotReady" in events[0].detail
    assert len(bank.live()) == 1
    assert bank.created[0].closed


def test_reopen_failure_after_retries_is_raised(clock):
    worker, bank, control, *_ = _build(clock)
    worker.open()
    bank.poll_errors = 1
    bank.open_failures = 2

    with pytest.raises(AdapterError, match="Unable to reopen"):
        worker.step()


def test_stop_during_reopen_retry_shuts_down_cleanly(clock):
    worker, bank, control, *_ = _build(clock)
    worker.open()
    control.poll_events()
    bank.poll_errors = 1
    bank.open_failures = 2
    bank.on_open_failure = worker.stop

    worker.step()
    worker.step()

    assert worker.state is WorkerState.STOPPED
    assert bank.live() == []
    assert control.poll_events() == [ScannerEvent(EventKind.STOPPED)]


def test_config_update_switches_adapter_index(clock):
    worker, bank, control, *_ = _build(clock)
    worker.open()

    control.send(SignalKind.CONFIG_UPDATE, settings=RuntimeSettings(adapter_index=1))
    worker.step()

    assert worker.adapter_index == 1
    assert [adapter.index for adapter in bank.live()] == [1]


def test_shutdown_releases_adapter_and_stops(clock):
    worker, bank, control, *_ = _build(clock)
    worker.open()
    control.poll_events()

    signal = control.send(SignalKind.SHUTDOWN)
    worker.step()

    assert worker.state is WorkerState.STOPPED
    assert bank.live() == []
    assert control.poll_events() == [ScannerEvent(EventKind.STOPPED, seq=signal.seq)]


def test_initial_open_failure_is_reported_as_fatal(clock):
    worker, bank, _, _, _, _, fatal = _build(clock)
    bank.open_failures = 1

    worker.start()
    worker.join(timeout=2.0)

    assert not worker.is_alive()
    assert fatal and fatal[0][0] == "scanner"
    assert isinstance(fatal[0][1], AdapterError)


def test_thread_runs_until_shutdown(clock, ruuvi_payload):
    worker, bank, control, readings, _, _, fatal = _build(clock)
    bank.batches.append([Advertisement(TAG_A, ruuvi_payload())])

    worker.start()
    started = control.wait_for(EventKind.STARTED, None, timeout=2.0)
    signal = control.send(SignalKind.SHUTDOWN)
    stopped = control.wait_for(EventKind.STOPPED, signal.seq, timeout=2.0)
    worker.join(timeout=2.0)

    assert started is not None
    assert stopped is not None
    assert not worker.is_alive()
    assert fatal == []
    assert readings.qsize() == 1
