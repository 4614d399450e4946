"""Scanning worker: BLE adapter -> decoder -> policy filter -> reading queue."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, List, Optional, Set

from .adapters.ble import AdapterError
from .channels import ControlChannel, ControlSignal, EventKind, ReadingQueue, ScannerEvent, SignalKind
from .core.models import WorkerState
from .core.protocols import AdapterFactory, BLEAdapter, Decoder
from .decoder import DecodeError
from .registry import BindingTable, LivenessRegistry

LOGGER = logging.getLogger(__name__)

FatalReporter = Callable[[str, BaseException], None]


class ScanningWorker(threading.Thread):
    """Owns the BLE adapter and feeds decoded readings to the relay worker.

    The worker is driven exclusively by control signals; its own state moves
    between ``RUNNING``, ``PAUSED`` and ``RESETTING`` and ends in ``STOPPED``.
    """

    def __init__(
        self,
        *,
        adapter_factory: AdapterFactory,
        decoder: Decoder,
        bindings: BindingTable,
        registry: LivenessRegistry,
        readings: ReadingQueue,
        control: ControlChannel,
        report_fatal: FatalReporter,
        adapter_index: int = 0,
        poll_interval: float = 0.1,
        retry_attempts: int = 3,
        paused: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(name="scanner", daemon=True)
        self._adapter_factory = adapter_factory
        self._decoder = decoder
        self._bindings = bindings
        self._registry = registry
        self._readings = readings
        self._control = control
        self._report_fatal = report_fatal
        self.adapter_index = adapter_index
        self.poll_interval = poll_interval
        self.retry_attempts = max(1, retry_attempts)
        self._clock = clock

        self._adapter: Optional[BLEAdapter] = None
        self._state = WorkerState.IDLE
        self._resume_state = WorkerState.PAUSED if paused else WorkerState.RUNNING
        self._stop_event = threading.Event()
        self._dropped: Set[str] = set()
        self._dropped_generation = -1

    @property
    def state(self) -> WorkerState:
        return self._state

    def stop(self) -> None:
        """Ask the worker to release its adapter and exit (thread-safe)."""
        self._stop_event.set()

    def run(self) -> None:
        try:
            self.open()
            while self._state is not WorkerState.STOPPED:
                self.step()
        except Exception as exc:
            LOGGER.exception("Scanning worker failed")
            self._state = WorkerState.STOPPED
            self._report_fatal("scanner", exc)
        finally:
            self._close_adapter()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def open(self) -> None:
        """Open the adapter for the first time.

        Raises:
            AdapterError: If the adapter cannot be initialised.
        """
        self._adapter = self._adapter_factory(self.adapter_index)
        try:
            self._adapter.open()
        except AdapterError:
            self._adapter = None
            raise
        self._state = self._resume_state
        self._control.acknowledge(ScannerEvent(EventKind.STARTED))
        LOGGER.info("Scanning worker started (%s)", self._state.value)

    def step(self) -> None:
        """Run one loop iteration: apply pending signals, then poll once."""
        if self._stop_event.is_set():
            self._shutdown(None)
            return

        self._apply_signals(self._pending_signals())
        if self._state is WorkerState.STOPPED:
            return
        if self._stop_event.is_set():
            self._shutdown(None)
            return

        self._poll_once()

    def _pending_signals(self) -> List[ControlSignal]:
        signals: List[ControlSignal] = []
        while True:
            signal = self._control.receive_nowait()
            if signal is None:
                return signals
            signals.append(signal)

    def _apply_signals(self, signals: List[ControlSignal]) -> None:
        resets: List[int] = []
        for signal in signals:
            if signal.kind is SignalKind.SHUTDOWN:
                self._complete_resets(resets)
                self._shutdown(signal.seq)
                return
            if signal.kind is SignalKind.RESET:
                resets.append(signal.seq)
            elif signal.kind is SignalKind.PAUSE:
                self._set_paused(True)
            elif signal.kind is SignalKind.COLLECT:
                self._set_paused(False)
            elif signal.kind is SignalKind.CONFIG_UPDATE and signal.settings:
                if signal.settings.adapter_index != self.adapter_index:
                    LOGGER.info(
                        "Switching Bluetooth adapter index %d -> %d",
                        self.adapter_index,
                        signal.settings.adapter_index,
                    )
                    self.adapter_index = signal.settings.adapter_index
                    self._restart_adapter()

        self._complete_resets(resets)

    def _complete_resets(self, seqs: List[int]) -> None:
        # queued resets collapse into one adapter restart
        if not seqs:
            return
        LOGGER.warning("Resetting Bluetooth scanner")
        self._restart_adapter()
        for seq in seqs:
            self._control.acknowledge(ScannerEvent(EventKind.RESET_COMPLETE, seq=seq))

    def _set_paused(self, paused: bool) -> None:
        target = WorkerState.PAUSED if paused else WorkerState.RUNNING
        self._resume_state = target
        if self._state is target:
            return
        self._state = target
        LOGGER.info("Beacon scanning %s", "paused" if paused else "resumed")

    def _shutdown(self, seq: Optional[int]) -> None:
        if self._state is WorkerState.STOPPED:
            return
        self._close_adapter()
        self._state = WorkerState.STOPPED
        self._control.acknowledge(ScannerEvent(EventKind.STOPPED, seq=seq))
        LOGGER.info("Scanning worker stopped")

    def _restart_adapter(self) -> None:
        """Release the adapter and reserve a fresh one.

        Returns without an adapter when :meth:`stop` is called between retries.

        Raises:
            AdapterError: When every reopen attempt fails.
        """
        self._state = WorkerState.RESETTING
        self._close_adapter()

        last_error: Optional[AdapterError] = None
        for attempt in range(1, self.retry_attempts + 1):
            adapter = self._adapter_factory(self.adapter_index)
            try:
                adapter.open()
            except AdapterError as exc:
                last_error = exc
                LOGGER.warning(
                    "Reopening Bluetooth adapter failed (attempt %d/%d): %s",
                    attempt,
                    self.retry_attempts,
                    exc,
                )
                adapter.close()
                if self._stop_event.wait(self.poll_interval * attempt):
                    LOGGER.info("Stop requested; abandoning Bluetooth adapter reopen")
                    return
                continue

            self._adapter = adapter
            self._state = self._resume_state
            return

        raise AdapterError(
            f"Unable to reopen Bluetooth adapter {self.adapter_index}: {last_error}"
        )

    def _close_adapter(self) -> None:
        adapter, self._adapter = self._adapter, None
        if adapter is not None:
            adapter.close()

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------
    def _poll_once(self) -> None:
        if self._adapter is None:
            raise AdapterError("No Bluetooth adapter reserved for use")

        try:
            advertisements = self._adapter.poll(self.poll_interval)
        except AdapterError as exc:
            LOGGER.warning("Bluetooth poll failed, restarting adapter: %s", exc)
            self._restart_adapter()
            if self._adapter is not None:
                self._control.acknowledge(ScannerEvent(EventKind.RESTARTED, detail=str(exc)))
            return

        if self._state is not WorkerState.RUNNING:
            return

        policy, generation = self._bindings.current()
        if generation != self._dropped_generation:
            self._dropped.clear()
            self._dropped_generation = generation

        for advertisement in advertisements:
            try:
                reading = self._decoder(advertisement.payload, advertisement.address)
            except DecodeError as exc:
                LOGGER.debug("Dropping advertisement from %s: %s", advertisement.address, exc)
                continue

            if not policy.permits(reading.address):
                if reading.address not in self._dropped:
                    self._dropped.add(reading.address)
                    LOGGER.info("Ignoring beacon from %s (device policy)", reading.address)
                continue

            self._registry.record(reading, self._clock())
            self._readings.put(reading)
