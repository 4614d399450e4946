"""Decoder for Ruuvi tag manufacturer data (data format 5, "RAWv2").

Layout reference: https://docs.ruuvi.com/communication/bluetooth-advertisements/data-format-5-rawv2
"""

from __future__ import annotations

import logging
import struct
from datetime import datetime, timezone
from typing import Callable, Optional

from . import constants
from .core.models import Acceleration, Measurement, Reading
from .core.utils import normalize_address

LOGGER = logging.getLogger(__name__)

DATA_FORMAT_5 = 5

# company id (2, little-endian) + format byte + 17 bytes of measurements
_MIN_PAYLOAD_LENGTH = 20
_COMPANY_ID = struct.pack("<H", constants.RUUVI_MANUFACTURER_ID)
_FORMAT_5 = struct.Struct(">hHHhhhHBH")

_INVALID_SIGNED = -32768
_INVALID_UNSIGNED = 0xFFFF


class DecodeError(RuntimeError):
    """Raised when an advertisement is not a decodable Ruuvi payload."""


def decode(
    raw: bytes,
    address: str,
    *,
    now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
) -> Reading:
    """Decode manufacturer data (including its company id) into a reading."""

    if len(raw) < 3 or raw[:2] != _COMPANY_ID:
        raise DecodeError("Not a Ruuvi manufacturer payload")

    data_format = raw[2]
    if data_format != DATA_FORMAT_5:
        raise DecodeError(f"Ruuvi data format {data_format} is not supported")

    if len(raw) < _MIN_PAYLOAD_LENGTH:
        raise DecodeError(
            f"Truncated data format 5 payload ({len(raw)} of {_MIN_PAYLOAD_LENGTH} bytes)"
        )

    try:
        canonical = normalize_address(address)
    except ValueError as exc:
        raise DecodeError(str(exc)) from exc

    (
        temperature,
        humidity,
        pressure,
        acc_x,
        acc_y,
        acc_z,
        power_info,
        movement,
        sequence,
    ) = _FORMAT_5.unpack_from(raw, 3)

    measurement = Measurement(
        temperature=_scaled(temperature, _INVALID_SIGNED, 0.005, digits=3),
        humidity=_scaled(humidity, _INVALID_UNSIGNED, 0.0025, digits=4),
        atmospheric_pressure=_pressure(pressure),
        acceleration=_acceleration(acc_x, acc_y, acc_z),
        battery=_battery(power_info),
        tx_power=_tx_power(power_info),
        movement_counter=None if movement == 0xFF else movement,
        measurement_sequence_number=None if sequence == _INVALID_UNSIGNED else sequence,
    )
    return Reading(address=canonical, measurement=measurement, observed_at=now())


def _scaled(value: int, invalid: int, factor: float, *, digits: int) -> Optional[float]:
    if value == invalid:
        return None
    return round(value * factor, digits)


def _pressure(value: int) -> Optional[float]:
    if value == _INVALID_UNSIGNED:
        return None
    return round((value + 50000) / 100.0, 2)


def _acceleration(x: int, y: int, z: int) -> Optional[Acceleration]:
    if _INVALID_SIGNED in (x, y, z):
        return None
    return Acceleration(x=x, y=y, z=z)


def _battery(power_info: int) -> Optional[int]:
    voltage = power_info >> 5
    if voltage == 0x7FF:
        return None
    return voltage + 1600


def _tx_power(power_info: int) -> Optional[int]:
    power = power_info & 0x1F
    if power == 0x1F:
        return None
    return power * 2 - 40
