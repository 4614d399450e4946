import struct
from datetime import datetime, timezone

import pytest

from ruuvi_relay.core.models import Acceleration, Measurement, Reading


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_reading():
    def factory(
        address: str = "C8:25:2D:8E:9C:01",
        *,
        temperature: float = 21.5,
        sequence: int = 1,
    ) -> Reading:
        measurement = Measurement(
            temperature=temperature,
            humidity=45.0,
            atmospheric_pressure=1002.5,
            acceleration=Acceleration(x=4, y=-4, z=1036),
            battery=2977,
            tx_power=4,
            movement_counter=66,
            measurement_sequence_number=sequence,
        )
        return Reading(
            address=address,
            measurement=measurement,
            observed_at=datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
        )

    return factory


@pytest.fixture
def ruuvi_payload():
    """Build manufacturer data (company id included) in data format 5."""

    def factory(
        *,
        temperature: int = 4892,
        humidity: int = 21840,
        pressure: int = 52500,
        acceleration: tuple[int, int, int] = (4, -4, 1036),
        power_info: int = (1377 << 5) | 22,
        movement: int = 66,
        sequence: int = 205,
        data_format: int = 5,
    ) -> bytes:
        body = struct.pack(
            ">hHHhhhHBH",
            temperature,
            humidity,
            pressure,
            *acceleration,
            power_info,
            movement,
            sequence,
        )
        # trailing MAC bytes as broadcast by the tag
        return b"\x99\x04" + bytes([data_format]) + body + bytes.fromhex("c8252d8e9c01")

    return factory
