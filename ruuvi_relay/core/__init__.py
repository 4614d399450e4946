"""Core primitives for ruuvi-relay."""

from .models import (
    Acceleration,
    Advertisement,
    BindingPolicy,
    DeviceBinding,
    Measurement,
    PolicyMode,
    Reading,
    RunMode,
    RuntimeSettings,
    SessionState,
    WorkerState,
)
from .protocols import AdapterFactory, BLEAdapter, Decoder, MessagingClient, Signer
from .utils import deep_merge, normalize_address

__all__ = [
    "Acceleration",
    "AdapterFactory",
    "Advertisement",
    "BLEAdapter",
    "BindingPolicy",
    "Decoder",
    "DeviceBinding",
    "Measurement",
    "MessagingClient",
    "PolicyMode",
    "Reading",
    "RunMode",
    "RuntimeSettings",
    "SessionState",
    "Signer",
    "WorkerState",
    "deep_merge",
    "normalize_address",
]
