"""Tests for the relay worker's RunMode state machine and publish cadence."""

import json

import pytest

from ruuvi_relay import constants
from ruuvi_relay.channels import ControlChannel, EventKind, ReadingQueue, ScannerEvent, SignalKind
from ruuvi_relay.core.models import BindingPolicy, RunMode, RuntimeSettings, SessionState
from ruuvi_relay.health import HealthReporter
from ruuvi_relay.registry import BindingTable, LivenessRegistry
from ruuvi_relay.relay import AcknowledgementTimeout, RelayWorker
from ruuvi_relay.session import SessionError

TAG_A = "C8:25:2D:8E:9C:01"
TAG_B = "C8:25:2D:8E:9C:02"
ID_A = "C8252D8E9C01"
ID_B = "C8252D8E9C02"
COMMAND_TOPIC = "/devices/gw-01/commands"
CONFIG_TOPIC = "/devices/gw-01/config"


class _AutoAckChannel(ControlChannel):
    """Control channel whose scanner end answers immediately."""

    _ANSWERS = {SignalKind.RESET: EventKind.RESET_COMPLETE, SignalKind.SHUTDOWN: EventKind.STOPPED}

    def __init__(self) -> None:
        super().__init__()
        self.sent = []

    def send(self, kind, *, settings=None):
        signal = super().send(kind, settings=settings)
        self.sent.append(signal)
        answer = self._ANSWERS.get(kind)
        if answer is not None:
            self.acknowledge(ScannerEvent(answer, seq=signal.seq))
        return signal


class _FakeSession:
    def __init__(self) -> None:
        self.connected = True
        self.fail_events = False
        self.events: list[tuple[str, bytes, object]] = []
        self.states: list[dict] = []
        self.inbound: list[tuple[str, bytes]] = []
        self.resets = 0
        self.closed_with: list[bool] = []

    @property
    def state(self):
        return SessionState.CONNECTED if self.connected else SessionState.DISCONNECTED

    @property
    def is_connected(self):
        return self.connected

    def maintain(self):
        return self.connected

    def poll_messages(self):
        messages, self.inbound = self.inbound, []
        return messages

    def publish_events(self, identity, payload, *, subfolder=None):
        if self.fail_events:
            raise SessionError("publish not acknowledged")
        self.events.append((identity, payload, subfolder))

    def publish_state(self, document):
        self.states.append(dict(document))

    def reset(self):
        self.resets += 1

    def close(self, *, detach=True):
        self.closed_with.append(detach)
        self.connected = False

    def sequences(self, identity=None):
        published = []
        for event_identity, payload, _ in self.events:
            if identity is not None and event_identity != identity:
                continue
            decoded = json.loads(payload)
            batch = decoded if isinstance(decoded, list) else [decoded]
            published.append([item["data"]["measurement_sequence_number"] for item in batch])
        return published


def _document(**overrides):
    document = {
        "collecting": True,
        "collection_size": 0,
        "event_subfolder": None,
        "stuck_data_threshold": 180.0,
        "no_beacons_threshold": 58.0,
        "policy": "denylist",
        "default_identity": None,
        "devices": {},
        "deny": [],
        "bluetooth": {"adapter_index": 0},
    }
    document.update(overrides)
    return document


def _build(
    clock,
    *,
    settings=None,
    collecting=True,
    control=None,
    policy=None,
    ack_timeout=1.0,
    health=None,
):
    session = _FakeSession()
    readings = ReadingQueue()
    registry = LivenessRegistry()
    control = control or _AutoAckChannel()
    settings = settings or RuntimeSettings(no_beacons_threshold=0.0)
    fatal = []
    relay = RelayWorker(
        session=session,
        readings=readings,
        control=control,
        registry=registry,
        bindings=BindingTable(policy or BindingPolicy()),
        document=_document(
            collecting=collecting,
            collection_size=settings.collection_size,
            no_beacons_threshold=settings.no_beacons_threshold,
        ),
        settings=settings,
        gateway_id="gw-01",
        report_fatal=lambda component, exc: fatal.append((component, exc)),
        collecting=collecting,
        ack_timeout=ack_timeout,
        clock=clock,
        health=health,
    )
    return relay, session, readings, registry, control


def test_publishes_once_collection_is_full(clock, make_reading):
    relay, session, readings, _, _ = _build(
        clock, settings=RuntimeSettings(collection_size=3, no_beacons_threshold=0.0)
    )

    readings.put(make_reading(sequence=1))
    readings.put(make_reading(sequence=2))
    relay.step()
    assert session.events == []
    assert len(relay.buffered(ID_A)) == 2

    readings.put(make_reading(sequence=3))
    relay.step()

    assert session.sequences() == [[1, 2, 3]]
    assert relay.buffered(ID_A) == []


def test_collection_size_zero_publishes_each_reading(clock, make_reading):
    relay, session, readings, _, _ = _build(clock)

    readings.put(make_reading(sequence=1))
    readings.put(make_reading(sequence=2))
    relay.step()

    assert session.sequences() == [[1], [2]]
    identity, payload, _ = session.events[0]
    assert identity == ID_A
    assert isinstance(json.loads(payload), dict)


def test_buffers_are_kept_per_device_in_arrival_order(clock, make_reading):
    relay, session, readings, _, _ = _build(
        clock, settings=RuntimeSettings(collection_size=2, no_beacons_threshold=0.0)
    )

    for address, sequence in ((TAG_A, 1), (TAG_B, 1), (TAG_A, 2), (TAG_B, 2)):
        readings.put(make_reading(address, sequence=sequence))
    relay.step()

    assert session.sequences(ID_A) == [[1, 2]]
    assert session.sequences(ID_B) == [[1, 2]]


def test_routes_through_device_bindings(clock, make_reading):
    relay, session, readings, _, _ = _build(
        clock,
        policy=BindingPolicy.build(devices={TAG_A: "tag-kitchen"}, deny=[TAG_B]),
        settings=RuntimeSettings(event_subfolder="ruuvi", no_beacons_threshold=0.0),
    )

    readings.put(make_reading(TAG_A))
    readings.put(make_reading(TAG_B))
    relay.step()

    assert [(identity, subfolder) for identity, _, subfolder in session.events] == [
        ("tag-kitchen", "ruuvi")
    ]


def test_failed_publish_keeps_buffer_and_backlog(clock, make_reading):
    relay, session, readings, _, _ = _build(clock)
    session.fail_events = True

    for sequence in (1, 2, 3):
        readings.put(make_reading(sequence=sequence))
    relay.step()

    assert session.events == []
    assert [r.measurement.measurement_sequence_number for r in relay.buffered(ID_A)] == [1]
    assert readings.qsize() == 2

    session.fail_events = False
    relay.step()

    assert session.sequences() == [[1], [2], [3]]


def test_nothing_is_published_while_disconnected(clock, make_reading):
    relay, session, readings, _, _ = _build(clock)
    session.connected = False

    readings.put(make_reading(sequence=1))
    relay.step()
    assert session.events == []

    session.connected = True
    relay.step()
    assert session.sequences() == [[1]]


def test_pause_and_collect_are_idempotent(clock):
    control = ControlChannel()
    relay, _, _, _, _ = _build(clock, control=control)

    relay.pause()
    relay.pause()
    assert relay.mode is RunMode.PAUSED

    relay.collect()
    relay.collect()
    assert relay.mode is RunMode.COLLECTING

    kinds = []
    while (signal := control.receive_nowait()) is not None:
        kinds.append(signal.kind)
    assert kinds == [SignalKind.PAUSE, SignalKind.COLLECT]


def test_reset_restores_prior_mode(clock):
    relay, session, _, _, control = _build(clock, collecting=False)

    relay.reset("remote command")

    assert relay.mode is RunMode.PAUSED
    assert session.resets == 1
    assert [signal.kind for signal in control.sent] == [SignalKind.RESET]


def test_reset_without_acknowledgement_times_out(clock):
    relay, session, _, _, _ = _build(clock, control=ControlChannel(), ack_timeout=0.05)

    with pytest.raises(AcknowledgementTimeout):
        relay.reset("remote command")
    assert session.resets == 0


def test_reset_is_ignored_while_shutting_down(clock):
    relay, session, _, _, _ = _build(clock)

    relay.shutdown()
    relay.reset("late watchdog")

    assert session.resets == 0
    assert relay.mode is RunMode.SHUTTING_DOWN


def test_no_beacons_watchdog_resets_only_while_collecting(clock):
    relay, session, _, _, _ = _build(clock, settings=RuntimeSettings(no_beacons_threshold=58.0))

    clock.advance(57.0)
    relay.step()
    assert session.resets == 0

    clock.advance(1.0)
    relay.step()
    assert session.resets == 1
    assert relay.mode is RunMode.COLLECTING

    relay.pause()
    clock.advance(120.0)
    relay.step()
    assert session.resets == 1


def test_stuck_data_watchdog_triggers_reset(clock, make_reading):
    relay, session, _, registry, _ = _build(clock)

    registry.record(make_reading(sequence=7), clock.now)
    clock.advance(180.0)
    registry.record(make_reading(sequence=7), clock.now)
    relay.step()

    assert session.resets == 1


def test_scanner_restart_rearms_watchdogs(clock):
    relay, session, _, _, control = _build(clock, settings=RuntimeSettings(no_beacons_threshold=58.0))

    clock.advance(50.0)
    control.acknowledge(ScannerEvent(EventKind.RESTARTED, detail="NotReady"))
    relay.step()
    clock.advance(50.0)
    relay.step()

    assert session.resets == 0


def test_remote_commands_drive_run_mode(clock):
    relay, session, _, _, _ = _build(clock)

    session.inbound.append((COMMAND_TOPIC, b'{"command": "pause"}'))
    relay.step()
    assert relay.mode is RunMode.PAUSED

    relay.handle_message(COMMAND_TOPIC + "/gateway", b'{"command": "collect"}')
    assert relay.mode is RunMode.COLLECTING

    relay.handle_message(COMMAND_TOPIC, b'{"command": "reboot"}')
    relay.handle_message(COMMAND_TOPIC, b"not json")
    relay.handle_message("/devices/other/commands", b'{"command": "pause"}')
    assert relay.mode is RunMode.COLLECTING

    relay.handle_message(COMMAND_TOPIC, b'{"command": "reset"}')
    assert session.resets == 1


def test_remote_shutdown_command_finishes_worker(clock):
    relay, session, _, _, _ = _build(clock)

    session.inbound.append((COMMAND_TOPIC, b'{"command": "shutdown"}'))
    relay.step()

    assert relay.finished
    assert relay.exit_code == constants.EXIT_OK
    assert session.closed_with == [True]


def test_remote_config_is_merged_and_applied_once(clock):
    relay, _, _, _, control = _build(clock)

    relay.handle_message(CONFIG_TOPIC, b'{"collection_size": 5, "bluetooth": {"adapter_index": 1}}')

    assert relay.settings.collection_size == 5
    assert relay.document["collection_size"] == 5
    updates = [signal for signal in control.sent if signal.kind is SignalKind.CONFIG_UPDATE]
    assert len(updates) == 1
    assert updates[0].settings.adapter_index == 1

    relay.handle_message(CONFIG_TOPIC, b'{"collection_size": 5}')
    relay.handle_message(CONFIG_TOPIC, b"")
    relay.handle_message(CONFIG_TOPIC, b'{"collection_size": -3}')

    assert len([s for s in control.sent if s.kind is SignalKind.CONFIG_UPDATE]) == 1
    assert relay.settings.collection_size == 5


def test_remote_config_can_pause_collection(clock):
    relay, _, _, _, _ = _build(clock)

    relay.handle_message(CONFIG_TOPIC, b'{"collecting": false}')

    assert relay.mode is RunMode.PAUSED
    assert relay.state_document()["collecting"] is False


def test_partial_config_keeps_commanded_pause(clock):
    relay, session, _, _, control = _build(clock)

    relay.handle_message(COMMAND_TOPIC, b'{"command": "pause"}')
    relay.handle_message(CONFIG_TOPIC, b'{"collection_size": 3}')

    assert relay.mode is RunMode.PAUSED
    assert relay.settings.collection_size == 3
    assert relay.document["collecting"] is False
    assert [signal.kind for signal in control.sent] == [
        SignalKind.PAUSE,
        SignalKind.CONFIG_UPDATE,
    ]

    relay.handle_message(CONFIG_TOPIC, b'{"collecting": true}')

    assert relay.mode is RunMode.COLLECTING
    assert control.sent[-1].kind is SignalKind.COLLECT


def test_partial_config_keeps_commanded_collect(clock):
    relay, _, _, _, _ = _build(clock, collecting=False)

    relay.handle_message(COMMAND_TOPIC, b'{"command": "collect"}')
    relay.handle_message(CONFIG_TOPIC, b'{"no_beacons_threshold": 120}')

    assert relay.mode is RunMode.COLLECTING
    assert relay.settings.no_beacons_threshold == 120.0


def test_state_is_republished_after_reconnect(clock):
    relay, session, _, _, _ = _build(clock)

    relay.step()
    relay.step()
    assert len(session.states) == 1

    session.connected = False
    relay.step()
    session.connected = True
    relay.step()

    assert len(session.states) == 2
    assert session.states[-1]["collecting"] is True


def test_paused_state_is_repeated_periodically(clock):
    relay, session, _, _, _ = _build(clock, collecting=False)

    relay.step()
    clock.advance(239.0)
    relay.step()
    assert len(session.states) == 1

    clock.advance(1.0)
    relay.step()

    assert len(session.states) == 2
    assert session.states[-1]["collecting"] is False


def test_shutdown_flushes_partial_buffers(clock, make_reading):
    relay, session, readings, _, control = _build(
        clock, settings=RuntimeSettings(collection_size=5, no_beacons_threshold=0.0)
    )
    readings.put(make_reading(sequence=1))
    relay.step()
    readings.put(make_reading(sequence=2))

    relay.shutdown()

    assert session.sequences() == [[1, 2]]
    assert session.closed_with == [True]
    assert relay.exit_code == constants.EXIT_OK
    assert control.sent[-1].kind is SignalKind.SHUTDOWN


def test_local_shutdown_request_ends_run_loop(clock):
    relay, session, _, _, _ = _build(clock)

    relay.request_shutdown()
    relay.run()

    assert relay.finished
    assert relay.exit_code == constants.EXIT_OK


def test_abort_closes_without_detaching(clock):
    relay, session, _, _, control = _build(clock)

    relay.request_abort()
    relay.step()

    assert relay.finished
    assert relay.exit_code == constants.EXIT_FATAL
    assert session.closed_with == [False]
    assert control.sent == []


def test_health_reflects_run_mode(clock):
    health = HealthReporter()
    relay, _, _, _, _ = _build(clock, health=health)

    relay.step()
    relay.pause()

    snapshot = health.snapshot()
    assert snapshot["agentState"]["state"] == "paused"
    assert {item["name"] for item in snapshot["components"]} == {"session"}
