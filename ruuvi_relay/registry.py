"""Shared state crossing the worker thread boundary.

Only two structures are shared outside the channels: the liveness registry
(written by the scanner, read by the relay's watchdogs) and the binding
table (written by the relay on config updates, read by the scanner's filter).
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Dict, List, Optional

from .core.models import BindingPolicy, Measurement, Reading


@dataclass(frozen=True, slots=True)
class LivenessEntry:
    """Last observation of one device.

    ``seen_at`` and ``changed_at`` are monotonic timestamps; ``changed_at`` is
    when the measurement last differed from the one before it.
    """

    address: str
    seen_at: float
    measurement: Measurement
    updates: int
    changed_at: float


class _DeviceSlot:
    __slots__ = ("lock", "entry")

    def __init__(self, entry: LivenessEntry) -> None:
        self.lock = threading.Lock()
        self.entry = entry


class LivenessRegistry:
    """Per-device last-seen bookkeeping with per-device locking.

    Entries are created on the first reading from a device and are never
    removed while the process runs.
    """

    def __init__(self) -> None:
        self._slots: Dict[str, _DeviceSlot] = {}
        self._lock = threading.Lock()

    def record(self, reading: Reading, seen_at: float) -> LivenessEntry:
        slot = self._slots.get(reading.address)
        if slot is None:
            with self._lock:
                slot = self._slots.get(reading.address)
                if slot is None:
                    entry = LivenessEntry(
                        address=reading.address,
                        seen_at=seen_at,
                        measurement=reading.measurement,
                        updates=1,
                        changed_at=seen_at,
                    )
                    self._slots[reading.address] = _DeviceSlot(entry)
                    return entry

        with slot.lock:
            previous = slot.entry
            entry = LivenessEntry(
                address=reading.address,
                seen_at=seen_at,
                measurement=reading.measurement,
                updates=previous.updates + 1,
                changed_at=(
                    previous.changed_at
                    if previous.measurement == reading.measurement
                    else seen_at
                ),
            )
            slot.entry = entry
        return entry

    def get(self, address: str) -> Optional[LivenessEntry]:
        slot = self._slots.get(address)
        if slot is None:
            return None
        with slot.lock:
            return slot.entry

    def snapshot(self) -> List[LivenessEntry]:
        with self._lock:
            slots = list(self._slots.values())
        entries: List[LivenessEntry] = []
        for slot in slots:
            with slot.lock:
                entries.append(slot.entry)
        return entries

    def latest_seen_at(self) -> Optional[float]:
        entries = self.snapshot()
        if not entries:
            return None
        return max(entry.seen_at for entry in entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._slots)


class BindingTable:
    """Single-writer, many-reader holder of the active binding policy.

    The policy object is immutable; updates swap the reference so readers
    always see a complete table. ``generation`` increments on every swap.
    """

    def __init__(self, policy: Optional[BindingPolicy] = None) -> None:
        self._lock = threading.Lock()
        self._policy = policy or BindingPolicy()
        self._generation = 0

    @property
    def policy(self) -> BindingPolicy:
        with self._lock:
            return self._policy

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    def current(self) -> tuple[BindingPolicy, int]:
        with self._lock:
            return self._policy, self._generation

    def replace(self, policy: BindingPolicy) -> int:
        with self._lock:
            self._policy = policy
            self._generation += 1
            return self._generation

    def permits(self, address: str) -> bool:
        return self.policy.permits(address)

    def route(self, address: str) -> Optional[str]:
        return self.policy.route(address)
