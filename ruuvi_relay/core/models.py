"""Domain models shared by the scanning and relay workers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterable, Mapping, Optional

from .utils import normalize_address


class RunMode(str, Enum):
    """Process-wide collection mode, owned by the relay worker."""

    COLLECTING = "collecting"
    PAUSED = "paused"
    RESETTING = "resetting"
    SHUTTING_DOWN = "shutting_down"


class SessionState(str, Enum):
    """Lifecycle of the cloud session."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RENEWING = "renewing"


class WorkerState(str, Enum):
    """Per-worker lifecycle, driven by control signals."""

    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    RESETTING = "resetting"
    STOPPED = "stopped"


class PolicyMode(str, Enum):
    ALLOWLIST = "allowlist"
    DENYLIST = "denylist"


@dataclass(frozen=True, slots=True)
class Acceleration:
    x: int
    y: int
    z: int


@dataclass(frozen=True, slots=True)
class Measurement:
    """Decoded sensor values of one advertisement.

    Compared by value; the watchdog treats two equal measurements from the
    same tag as a sign that the BLE stack is replaying stale data.
    """

    temperature: Optional[float]
    humidity: Optional[float]
    atmospheric_pressure: Optional[float]
    acceleration: Optional[Acceleration]
    battery: Optional[int]
    tx_power: Optional[int]
    movement_counter: Optional[int]
    measurement_sequence_number: Optional[int]

    def as_dict(self) -> Dict[str, Any]:
        acceleration = None
        if self.acceleration is not None:
            acceleration = {
                "x": self.acceleration.x,
                "y": self.acceleration.y,
                "z": self.acceleration.z,
            }
        return {
            "temperature": self.temperature,
            "humidity": self.humidity,
            "atmospheric_pressure": self.atmospheric_pressure,
            "acceleration": acceleration,
            "battery": self.battery,
            "tx_power": self.tx_power,
            "movement_counter": self.movement_counter,
            "measurement_sequence_number": self.measurement_sequence_number,
        }


@dataclass(frozen=True, slots=True)
class Advertisement:
    """Raw manufacturer data captured by the BLE adapter."""

    address: str
    payload: bytes
    rssi: Optional[int] = None


@dataclass(frozen=True, slots=True)
class Reading:
    """One decoded observation of a tag."""

    address: str
    measurement: Measurement
    observed_at: datetime

    def as_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "timestamp": self.observed_at.isoformat(),
            "data": self.measurement.as_dict(),
        }


@dataclass(frozen=True, slots=True)
class DeviceBinding:
    """Maps a hardware address to its cloud identity and policy membership."""

    address: str
    identity: Optional[str] = None
    allowed: bool = True


@dataclass(frozen=True, slots=True)
class BindingPolicy:
    """Immutable snapshot of the device binding table.

    In allowlist mode only devices bound with ``allowed=True`` pass. In
    denylist mode every device passes unless explicitly denied, and unbound
    devices are routed under the default identity.
    """

    mode: PolicyMode = PolicyMode.DENYLIST
    bindings: Mapping[str, DeviceBinding] = field(
        default_factory=lambda: MappingProxyType({})
    )
    default_identity: Optional[str] = None

    @classmethod
    def build(
        cls,
        *,
        mode: PolicyMode | str = PolicyMode.DENYLIST,
        devices: Optional[Mapping[str, str]] = None,
        deny: Iterable[str] = (),
        default_identity: Optional[str] = None,
    ) -> "BindingPolicy":
        bindings: Dict[str, DeviceBinding] = {}
        for address, identity in (devices or {}).items():
            canonical = normalize_address(address)
            bindings[canonical] = DeviceBinding(
                address=canonical, identity=(identity or "").strip() or None
            )
        for address in deny:
            canonical = normalize_address(address)
            existing = bindings.get(canonical)
            bindings[canonical] = DeviceBinding(
                address=canonical,
                identity=existing.identity if existing else None,
                allowed=False,
            )
        return cls(
            mode=PolicyMode(mode),
            bindings=MappingProxyType(bindings),
            default_identity=(default_identity or "").strip() or None,
        )

    def permits(self, address: str) -> bool:
        binding = self.bindings.get(address)
        if self.mode is PolicyMode.ALLOWLIST:
            return binding is not None and binding.allowed
        return binding is None or binding.allowed

    def route(self, address: str) -> Optional[str]:
        """Return the cloud identity readings from ``address`` publish under."""
        if not self.permits(address):
            return None
        binding = self.bindings.get(address)
        if binding is not None and binding.identity:
            return binding.identity
        if self.default_identity:
            return self.default_identity
        return address.replace(":", "")


@dataclass(frozen=True, slots=True)
class RuntimeSettings:
    """Mutable-by-replacement settings the relay applies each iteration."""

    collection_size: int = 0
    stuck_data_threshold: float = 180.0
    no_beacons_threshold: float = 58.0
    event_subfolder: Optional[str] = None
    adapter_index: int = 0
