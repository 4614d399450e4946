"""Adapter modules for external integrations."""

from .ble import AdapterError, BleakAdapter
from .mqtt import MQTTClient, MQTTConnectionError

__all__ = [
    "AdapterError",
    "BleakAdapter",
    "MQTTClient",
    "MQTTConnectionError",
]
