"""Channels connecting the scanning worker and the relay worker.

Readings flow scanner -> relay through an unbounded queue so that the scan
loop is never throttled by publish cadence. Control signals flow relay ->
scanner, and lifecycle acknowledgements flow back the other way.
"""

from __future__ import annotations

import itertools
import logging
import queue
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from .core.models import Reading, RuntimeSettings

LOGGER = logging.getLogger(__name__)


class ReadingQueue:
    """Unbounded multi-producer, single-consumer queue of readings."""

    def __init__(self) -> None:
        self._queue: "queue.SimpleQueue[Reading]" = queue.SimpleQueue()

    def put(self, reading: Reading) -> None:
        self._queue.put_nowait(reading)

    def get_nowait(self) -> Optional[Reading]:
        try:
            return self._queue.get_nowait()
        except queue.Empty:
            return None

    def drain(self, limit: Optional[int] = None) -> List[Reading]:
        """Return up to ``limit`` readings in arrival order without blocking."""
        drained: List[Reading] = []
        while limit is None or len(drained) < limit:
            reading = self.get_nowait()
            if reading is None:
                break
            drained.append(reading)
        return drained

    def qsize(self) -> int:
        return self._queue.qsize()

    def empty(self) -> bool:
        return self._queue.empty()


class SignalKind(str, Enum):
    PAUSE = "pause"
    COLLECT = "collect"
    RESET = "reset"
    SHUTDOWN = "shutdown"
    CONFIG_UPDATE = "config_update"


class EventKind(str, Enum):
    STARTED = "started"
    RESET_COMPLETE = "reset_complete"
    RESTARTED = "restarted"
    STOPPED = "stopped"


@dataclass(frozen=True, slots=True)
class ControlSignal:
    kind: SignalKind
    seq: int
    settings: Optional[RuntimeSettings] = None


@dataclass(frozen=True, slots=True)
class ScannerEvent:
    kind: EventKind
    seq: Optional[int] = None
    detail: Optional[str] = None


class ControlChannel:
    """Bidirectional control path between the relay and the scanner.

    Every signal carries a sequence number; acknowledgements echo it back so
    a late answer to an abandoned request is never mistaken for a fresh one.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._signals: "queue.SimpleQueue[ControlSignal]" = queue.SimpleQueue()
        self._events: "queue.SimpleQueue[ScannerEvent]" = queue.SimpleQueue()
        self._sequence = itertools.count(1)
        self._sequence_lock = threading.Lock()
        self._clock = clock

    # relay -> scanner --------------------------------------------------
    def send(
        self, kind: SignalKind, *, settings: Optional[RuntimeSettings] = None
    ) -> ControlSignal:
        with self._sequence_lock:
            seq = next(self._sequence)
        signal = ControlSignal(kind=kind, seq=seq, settings=settings)
        self._signals.put_nowait(signal)
        LOGGER.debug("Control signal sent: %s (seq=%d)", kind.value, seq)
        return signal

    def receive_nowait(self) -> Optional[ControlSignal]:
        try:
            return self._signals.get_nowait()
        except queue.Empty:
            return None

    # scanner -> relay --------------------------------------------------
    def acknowledge(self, event: ScannerEvent) -> None:
        self._events.put_nowait(event)

    def poll_events(self) -> List[ScannerEvent]:
        events: List[ScannerEvent] = []
        while True:
            try:
                events.append(self._events.get_nowait())
            except queue.Empty:
                return events

    def wait_for(
        self, kind: EventKind, seq: Optional[int], timeout: float
    ) -> Optional[ScannerEvent]:
        """Block up to ``timeout`` seconds for the acknowledgement of ``seq``.

        Unrelated events received while waiting are discarded.
        """
        deadline = self._clock() + timeout
        while True:
            remaining = deadline - self._clock()
            if remaining <= 0:
                return None
            try:
                event = self._events.get(timeout=remaining)
            except queue.Empty:
                return None
            if event.kind is kind and event.seq == seq:
                return event
            LOGGER.debug(
                "Discarding scanner event %s (seq=%s) while awaiting %s (seq=%s)",
                event.kind.value,
                event.seq,
                kind.value,
                seq,
            )
