"""Liveness watchdogs evaluated by the relay worker.

Both watchdogs read the liveness registry and return a reason string when a
reset should be forced. All timestamps are monotonic seconds.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from .core.models import RunMode, RuntimeSettings
from .registry import LivenessEntry, LivenessRegistry

LOGGER = logging.getLogger(__name__)


class StuckDataWatchdog:
    """Detects a tag whose measurement has not changed for ``threshold`` seconds.

    Tags increment their measurement sequence number with every
    advertisement, so identical measurements observed over a long window mean
    the BLE stack is replaying a cached advertisement.
    """

    def __init__(self, threshold: float, *, armed_at: float = 0.0) -> None:
        self.threshold = threshold
        self._armed_at = armed_at

    def clear(self, now: float) -> None:
        self._armed_at = now

    def evaluate(self, entries: Iterable[LivenessEntry]) -> Optional[str]:
        for entry in entries:
            # the window only counts observations made after the last clear
            window_start = max(entry.changed_at, self._armed_at)
            if entry.seen_at - window_start >= self.threshold:
                return (
                    f"stuck data from {entry.address}: measurement unchanged for "
                    f"{entry.seen_at - window_start:.0f}s"
                )
        return None


class NoBeaconsWatchdog:
    """Detects that no tag at all has been heard for ``threshold`` seconds.

    A threshold of zero disables the check.
    """

    def __init__(self, threshold: float, *, armed_at: float = 0.0) -> None:
        self.threshold = threshold
        self._armed_at = armed_at

    def clear(self, now: float) -> None:
        self._armed_at = now

    def evaluate(self, latest_seen_at: Optional[float], now: float) -> Optional[str]:
        if self.threshold <= 0:
            return None

        last_activity = self._armed_at
        if latest_seen_at is not None:
            last_activity = max(last_activity, latest_seen_at)

        silence = now - last_activity
        if silence >= self.threshold:
            return f"no beacons received for {silence:.0f}s"
        return None


class WatchdogSet:
    """Both watchdogs, suspended unless the gateway is collecting."""

    def __init__(self, settings: RuntimeSettings, *, now: float) -> None:
        self.stuck_data = StuckDataWatchdog(settings.stuck_data_threshold, armed_at=now)
        self.no_beacons = NoBeaconsWatchdog(settings.no_beacons_threshold, armed_at=now)

    def apply(self, settings: RuntimeSettings) -> None:
        self.stuck_data.threshold = settings.stuck_data_threshold
        self.no_beacons.threshold = settings.no_beacons_threshold

    def clear(self, now: float) -> None:
        self.stuck_data.clear(now)
        self.no_beacons.clear(now)

    def evaluate(
        self, registry: LivenessRegistry, now: float, mode: RunMode
    ) -> Optional[str]:
        if mode is not RunMode.COLLECTING:
            return None

        entries = registry.snapshot()
        reason = self.stuck_data.evaluate(entries)
        if reason:
            return reason

        latest = max((entry.seen_at for entry in entries), default=None)
        return self.no_beacons.evaluate(latest, now)
