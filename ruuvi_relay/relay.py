"""Relay worker: reading queue -> collection buffers -> cloud session.

The relay worker owns the RunMode. Remote commands, remote configuration and
watchdog verdicts all funnel through the same methods here, so a reset
forced by a watchdog is indistinguishable from one requested remotely.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from . import constants
from .channels import ControlChannel, EventKind, ReadingQueue, SignalKind
from .commands import (
    Command,
    CommandProcessingError,
    ConfigUpdate,
    TopicKind,
    classify_topic,
    merge_config_document,
    parse_command,
    parse_config_document,
)
from .core.models import Reading, RunMode, RuntimeSettings
from .health import HealthReporter
from .registry import BindingTable, LivenessRegistry
from .session import SessionError, SessionManager, encode_readings
from .watchdog import WatchdogSet

LOGGER = logging.getLogger(__name__)

FatalReporter = Callable[[str, BaseException], None]

_MAX_DRAIN_PER_STEP = 1000


class AcknowledgementTimeout(RuntimeError):
    """Raised when the scanning worker does not answer a control signal in time."""


class CollectionBuffer:
    """Readings awaiting publish under one cloud identity.

    The buffer is only cleared by the caller once a publish is confirmed.
    """

    def __init__(self, identity: str) -> None:
        self.identity = identity
        self._readings: List[Reading] = []

    def append(self, reading: Reading) -> None:
        self._readings.append(reading)

    def readings(self) -> List[Reading]:
        return list(self._readings)

    def is_full(self, collection_size: int) -> bool:
        return len(self._readings) >= max(1, collection_size)

    def clear(self) -> None:
        self._readings.clear()

    def __len__(self) -> int:
        return len(self._readings)


class RelayWorker(threading.Thread):
    """Owns the cloud session and the RunMode state machine."""

    def __init__(
        self,
        *,
        session: SessionManager,
        readings: ReadingQueue,
        control: ControlChannel,
        registry: LivenessRegistry,
        bindings: BindingTable,
        document: Dict[str, Any],
        settings: RuntimeSettings,
        gateway_id: str,
        report_fatal: FatalReporter,
        collecting: bool = True,
        ack_timeout: float = 10.0,
        paused_state_interval: float = 240.0,
        loop_interval: float = 0.1,
        clock: Callable[[], float] = time.monotonic,
        health: Optional[HealthReporter] = None,
    ) -> None:
        super().__init__(name="relay", daemon=True)
        self._session = session
        self._readings = readings
        self._control = control
        self._registry = registry
        self._bindings = bindings
        self._document = dict(document)
        self._document["collecting"] = collecting
        self._settings = settings
        self._gateway_id = gateway_id
        self._report_fatal = report_fatal
        self.ack_timeout = ack_timeout
        self.paused_state_interval = paused_state_interval
        self.loop_interval = loop_interval
        self._clock = clock
        self._health = health

        self._mode = RunMode.COLLECTING if collecting else RunMode.PAUSED
        self._buffers: Dict[str, CollectionBuffer] = {}
        self._watchdogs = WatchdogSet(settings, now=clock())
        self._state_dirty = True
        self._was_connected = False
        self._last_state_published_at: Optional[float] = None
        self._shutdown_requested = threading.Event()
        self._abort_requested = threading.Event()
        self._wake = threading.Event()
        self._finished = False
        self.exit_code: Optional[int] = None

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    @property
    def mode(self) -> RunMode:
        return self._mode

    @property
    def settings(self) -> RuntimeSettings:
        return self._settings

    @property
    def document(self) -> Dict[str, Any]:
        return dict(self._document)

    @property
    def finished(self) -> bool:
        return self._finished

    def buffered(self, identity: str) -> List[Reading]:
        buffer = self._buffers.get(identity)
        return buffer.readings() if buffer else []

    # ------------------------------------------------------------------
    # Thread
    # ------------------------------------------------------------------
    def request_abort(self) -> None:
        """Stop without the shutdown handshake after another component failed."""
        self._abort_requested.set()
        self._wake.set()

    def request_shutdown(self) -> None:
        """Ask for a local Shutdown (thread-safe, e.g. from a signal handler)."""
        self._shutdown_requested.set()
        self._wake.set()

    def run(self) -> None:
        self._set_agent_state()
        try:
            while not self._finished:
                self.step()
                if self._finished:
                    break
                self._wake.wait(self.loop_interval)
                self._wake.clear()
        except Exception as exc:
            LOGGER.exception("Relay worker failed")
            self._finished = True
            self._report_fatal("relay", exc)

    def step(self) -> None:
        """Run one loop iteration of the relay worker."""
        if self._finished:
            return

        if self._abort_requested.is_set():
            self._abort()
            return

        if self._shutdown_requested.is_set():
            self.shutdown()
            return

        connected = self._session.maintain()
        if connected and not self._was_connected:
            self._state_dirty = True
        self._was_connected = connected
        self._report_component("session", connected, self._session.state.value)

        if connected:
            for topic, payload in self._session.poll_messages():
                self.handle_message(topic, payload)
                if self._finished:
                    return

        self._process_scanner_events()
        self._drain_and_publish(connected)

        now = self._clock()
        reason = self._watchdogs.evaluate(self._registry, now, self._mode)
        if reason:
            LOGGER.warning("Watchdog triggered: %s", reason)
            self.reset(reason)

        self._publish_state_if_due(now)

    # ------------------------------------------------------------------
    # Inbound messages
    # ------------------------------------------------------------------
    def handle_message(self, topic: str, payload: bytes) -> None:
        kind = classify_topic(topic, self._gateway_id)
        if kind is None:
            LOGGER.debug("Ignoring message on unexpected topic %s", topic)
            return

        if kind is TopicKind.COMMAND:
            try:
                command = parse_command(payload)
            except CommandProcessingError as exc:
                LOGGER.warning("Ignoring remote command on %s: %s", topic, exc)
                return
            self.dispatch(command)
            return

        try:
            document = parse_config_document(payload)
            if document is None:
                LOGGER.debug("Empty configuration received; keeping active configuration")
                return
            update = merge_config_document(self._document, document)
        except CommandProcessingError as exc:
            LOGGER.warning("Ignoring remote configuration: %s", exc)
            return

        if update.document == self._document:
            LOGGER.debug("Remote configuration unchanged")
            return
        self.apply_config(update)

    def dispatch(self, command: Command) -> None:
        if command is Command.PAUSE:
            LOGGER.warning("Remote command received: pause collecting beacons")
            self.pause()
        elif command is Command.COLLECT:
            LOGGER.info("Remote command received: collect beacons")
            self.collect()
        elif command is Command.RESET:
            LOGGER.warning("Remote command received: reset")
            self.reset("remote command")
        elif command is Command.SHUTDOWN:
            LOGGER.warning("Remote command received: shutdown")
            self.shutdown()

    # ------------------------------------------------------------------
    # RunMode transitions
    # ------------------------------------------------------------------
    def pause(self) -> None:
        if self._mode in (RunMode.PAUSED, RunMode.SHUTTING_DOWN):
            return
        self._mode = RunMode.PAUSED
        self._document["collecting"] = False
        self._control.send(SignalKind.PAUSE)
        self._state_dirty = True
        self._set_agent_state()

    def collect(self) -> None:
        if self._mode in (RunMode.COLLECTING, RunMode.SHUTTING_DOWN):
            return
        self._mode = RunMode.COLLECTING
        self._document["collecting"] = True
        self._control.send(SignalKind.COLLECT)
        self._watchdogs.clear(self._clock())
        self._state_dirty = True
        self._set_agent_state()

    def reset(self, reason: str) -> None:
        """Restart the scanner's adapter and this worker's session.

        Raises:
            AcknowledgementTimeout: If the scanner does not confirm in time.
        """
        if self._mode is RunMode.SHUTTING_DOWN:
            LOGGER.info("Ignoring reset (%s) while shutting down", reason)
            return
        if self._mode is RunMode.RESETTING:
            return

        prior = self._mode
        self._mode = RunMode.RESETTING
        self._set_agent_state()
        LOGGER.warning("Resetting gateway: %s", reason)

        signal = self._control.send(SignalKind.RESET)
        event = self._control.wait_for(EventKind.RESET_COMPLETE, signal.seq, self.ack_timeout)
        if event is None:
            raise AcknowledgementTimeout(
                f"Scanner did not acknowledge reset within {self.ack_timeout:.1f}s"
            )

        self._session.reset()
        self._watchdogs.clear(self._clock())
        self._mode = prior
        self._state_dirty = True
        self._set_agent_state()
        LOGGER.info("Reset complete; resuming %s", prior.value)

    def shutdown(self) -> None:
        """Stop the scanner, flush what can be flushed and close the session.

        Raises:
            AcknowledgementTimeout: If the scanner does not stop in time.
        """
        if self._mode is RunMode.SHUTTING_DOWN:
            return

        self._mode = RunMode.SHUTTING_DOWN
        self._set_agent_state()
        LOGGER.warning("Shutting down")

        signal = self._control.send(SignalKind.SHUTDOWN)
        event = self._control.wait_for(EventKind.STOPPED, signal.seq, self.ack_timeout)
        if event is None:
            raise AcknowledgementTimeout(
                f"Scanner did not stop within {self.ack_timeout:.1f}s"
            )

        self._flush_remaining()
        self._session.close()
        self._finished = True
        self.exit_code = constants.EXIT_OK
        LOGGER.info("Relay worker stopped")

    def _abort(self) -> None:
        LOGGER.warning("Aborting relay worker")
        self._mode = RunMode.SHUTTING_DOWN
        self._session.close(detach=False)
        self._finished = True
        self.exit_code = constants.EXIT_FATAL

    def apply_config(self, update: ConfigUpdate) -> None:
        LOGGER.info("Applying remote configuration")
        self._document = update.document
        self._settings = update.settings
        self._bindings.replace(update.policy)
        self._watchdogs.apply(update.settings)
        self._control.send(SignalKind.CONFIG_UPDATE, settings=update.settings)

        # the active document tracks RunMode, so a partial update keeps the current mode
        if update.collecting and self._mode is RunMode.PAUSED:
            self.collect()
        elif not update.collecting and self._mode is RunMode.COLLECTING:
            self.pause()
        self._state_dirty = True

    # ------------------------------------------------------------------
    # Scanner events
    # ------------------------------------------------------------------
    def _process_scanner_events(self) -> None:
        for event in self._control.poll_events():
            if event.kind is EventKind.STARTED:
                self._report_component("scanner", True, "scanning")
            elif event.kind is EventKind.RESTARTED:
                LOGGER.warning("Scanner restarted its adapter: %s", event.detail)
                self._watchdogs.clear(self._clock())
                self._report_component("scanner", True, f"restarted: {event.detail}")
            else:
                LOGGER.debug("Ignoring late scanner event %s (seq=%s)", event.kind.value, event.seq)

    # ------------------------------------------------------------------
    # Drain and publish
    # ------------------------------------------------------------------
    def _drain_and_publish(self, connected: bool) -> None:
        size = self._settings.collection_size

        # full buffers left over from failed publishes go first
        for buffer in list(self._buffers.values()):
            if buffer.is_full(size) and not self._flush(buffer, connected):
                return

        for _ in range(_MAX_DRAIN_PER_STEP):
            reading = self._readings.get_nowait()
            if reading is None:
                return

            identity = self._bindings.route(reading.address)
            if identity is None:
                LOGGER.debug("Dropping queued reading from %s (device policy)", reading.address)
                continue

            buffer = self._buffers.get(identity)
            if buffer is None:
                buffer = self._buffers[identity] = CollectionBuffer(identity)
            buffer.append(reading)

            # a failing full buffer leaves the backlog in the reading queue
            if buffer.is_full(size) and not self._flush(buffer, connected):
                return

    def _flush(self, buffer: CollectionBuffer, connected: bool) -> bool:
        if not connected or not len(buffer):
            return False

        readings = buffer.readings()
        payload = encode_readings([reading.as_dict() for reading in readings])
        try:
            self._session.publish_events(
                buffer.identity, payload, subfolder=self._settings.event_subfolder
            )
        except SessionError as exc:
            LOGGER.warning(
                "Publishing %d reading(s) for %s failed, will retry: %s",
                len(readings),
                buffer.identity,
                exc,
            )
            return False

        buffer.clear()
        LOGGER.debug("Published %d reading(s) for %s", len(readings), buffer.identity)
        return True

    def _flush_remaining(self) -> None:
        while True:
            drained = self._readings.drain()
            if not drained:
                break
            for reading in drained:
                identity = self._bindings.route(reading.address)
                if identity is None:
                    continue
                buffer = self._buffers.get(identity)
                if buffer is None:
                    buffer = self._buffers[identity] = CollectionBuffer(identity)
                buffer.append(reading)

        connected = self._session.is_connected
        for buffer in self._buffers.values():
            if len(buffer) and not self._flush(buffer, connected):
                LOGGER.warning(
                    "Discarding %d unpublished reading(s) for %s on shutdown",
                    len(buffer),
                    buffer.identity,
                )

    # ------------------------------------------------------------------
    # State reporting
    # ------------------------------------------------------------------
    def state_document(self) -> Dict[str, Any]:
        document = dict(self._document)
        document["collecting"] = self._mode is RunMode.COLLECTING
        return document

    def _publish_state_if_due(self, now: float) -> None:
        if (
            self._mode is RunMode.PAUSED
            and self._last_state_published_at is not None
            and now - self._last_state_published_at >= self.paused_state_interval
        ):
            LOGGER.warning("Beacon collection is paused")
            self._state_dirty = True

        if not self._state_dirty or not self._session.is_connected:
            return

        try:
            self._session.publish_state(self.state_document())
        except SessionError as exc:
            LOGGER.warning("Publishing gateway state failed: %s", exc)
            return

        self._state_dirty = False
        self._last_state_published_at = now

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------
    def _set_agent_state(self) -> None:
        if self._health is not None:
            self._health.set_agent_state(
                self._mode.value, healthy=self._mode is not RunMode.RESETTING
            )

    def _report_component(self, name: str, healthy: bool, detail: str) -> None:
        if self._health is not None:
            self._health.update(name, healthy, detail)
