"""BLE adapter encapsulating bleak scanner usage.

bleak is asyncio based; the scanning worker is a plain thread. Each adapter
instance owns a private event loop which only runs while the worker polls,
so BlueZ callbacks are processed during the poll interval.
"""

from __future__ import annotations

import asyncio
import logging
import sys
import threading
from collections import deque
from typing import Any, Deque, List, Optional

from bleak import BleakScanner
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError

from .. import constants
from ..config import BluetoothConfig
from ..core.models import Advertisement

LOGGER = logging.getLogger(__name__)

_MAX_PENDING_ADVERTISEMENTS = 4096


class AdapterError(RuntimeError):
    """Raised when the BLE adapter cannot be opened or polled."""


class BleakAdapter:
    """Thread-owned wrapper over ``bleak.BleakScanner``."""

    def __init__(
        self,
        adapter_index: int = 0,
        *,
        scanning_mode: str = "passive",
        manufacturer_id: int = constants.RUUVI_MANUFACTURER_ID,
    ) -> None:
        self.adapter_index = adapter_index
        self.scanning_mode = scanning_mode
        self.manufacturer_id = manufacturer_id

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._scanner: Optional[BleakScanner] = None
        self._pending: Deque[Advertisement] = deque(maxlen=_MAX_PENDING_ADVERTISEMENTS)
        self._pending_lock = threading.Lock()

    @classmethod
    def from_config(cls, config: BluetoothConfig, adapter_index: int) -> "BleakAdapter":
        return cls(adapter_index, scanning_mode=config.scanning_mode)

    @property
    def adapter_name(self) -> str:
        return f"hci{self.adapter_index}"

    @property
    def is_open(self) -> bool:
        return self._scanner is not None

    def open(self) -> None:
        if self._scanner is not None:
            return

        loop = asyncio.new_event_loop()
        kwargs: dict[str, Any] = {
            "detection_callback": self._detection_callback,
            "scanning_mode": self.scanning_mode,
            "adapter": self.adapter_name,
        }
        if self.scanning_mode == "passive" and sys.platform.startswith("linux"):
            kwargs["bluez"] = self._bluez_passive_args()

        async def _start() -> BleakScanner:
            scanner = BleakScanner(**kwargs)
            await scanner.start()
            return scanner

        try:
            self._scanner = loop.run_until_complete(_start())
        except (BleakError, OSError, ValueError) as exc:
            loop.close()
            raise AdapterError(
                f"Unable to start scanning on adapter {self.adapter_name}: {exc}"
            ) from exc

        self._loop = loop
        LOGGER.info(
            "Started %s Bluetooth scan on adapter %s",
            self.scanning_mode,
            self.adapter_name,
        )

    def poll(self, timeout: float) -> List[Advertisement]:
        if self._scanner is None or self._loop is None:
            raise AdapterError("No Bluetooth adapter reserved for use")

        try:
            self._loop.run_until_complete(asyncio.sleep(timeout))
        except (BleakError, OSError) as exc:
            raise AdapterError(f"Bluetooth adapter poll failed: {exc}") from exc

        with self._pending_lock:
            advertisements = list(self._pending)
            self._pending.clear()
        return advertisements

    def close(self) -> None:
        scanner, loop = self._scanner, self._loop
        self._scanner = None
        self._loop = None
        with self._pending_lock:
            self._pending.clear()

        if loop is None:
            return

        try:
            if scanner is not None:
                loop.run_until_complete(scanner.stop())
                LOGGER.info("Stopped Bluetooth scan on adapter %s", self.adapter_name)
        except (BleakError, OSError) as exc:
            LOGGER.warning(
                "Error while releasing Bluetooth adapter %s: %s", self.adapter_name, exc
            )
        finally:
            loop.close()

    def _bluez_passive_args(self) -> dict[str, Any]:
        # BlueZ only scans passively through an advertisement monitor pattern
        from bleak.assigned_numbers import AdvertisementDataType
        from bleak.backends.bluezdbus.advertisement_monitor import OrPattern

        company_id = self.manufacturer_id.to_bytes(2, "little")
        return {
            "or_patterns": [
                OrPattern(0, AdvertisementDataType.MANUFACTURER_SPECIFIC_DATA, company_id)
            ]
        }

    def _detection_callback(
        self, device: BLEDevice, advertisement: AdvertisementData
    ) -> None:
        data = advertisement.manufacturer_data.get(self.manufacturer_id)
        if data is None:
            return

        payload = self.manufacturer_id.to_bytes(2, "little") + bytes(data)
        with self._pending_lock:
            self._pending.append(
                Advertisement(
                    address=device.address,
                    payload=payload,
                    rssi=advertisement.rssi,
                )
            )
