"""Protocol definitions for the external collaborators of the gateway."""

from __future__ import annotations

from typing import Any, Callable, Mapping, Optional, Protocol, Sequence

from .models import Advertisement, Reading


class BLEAdapter(Protocol):
    """Minimal contract for a BLE adapter handle owned by the scanning worker."""

    def open(self) -> None:
        """Reserve the adapter and start scanning.

        Raises:
            AdapterError: If the adapter cannot be initialised.
        """
        ...

    def poll(self, timeout: float) -> Sequence[Advertisement]:
        """Wait up to ``timeout`` seconds and return advertisements seen since the last poll."""
        ...

    def close(self) -> None:
        """Stop scanning and release the adapter. Safe to call repeatedly."""
        ...


AdapterFactory = Callable[[int], BLEAdapter]


class Decoder(Protocol):
    def __call__(self, raw: bytes, address: str) -> Reading:
        """Decode raw manufacturer data, raising ``DecodeError`` on rejection."""
        ...


class MessagingClient(Protocol):
    """Wire-level session used by the session manager."""

    def connect(self, username: str, password: str, timeout: float = 30.0) -> None: ...

    def disconnect(self, timeout: float = 5.0) -> None: ...

    def publish(
        self,
        topic: str,
        payload: bytes,
        qos: int = 1,
        retain: bool = False,
        *,
        timeout: Optional[float] = None,
    ) -> None: ...

    def subscribe(self, topic: str, qos: int = 1) -> None: ...

    def drain_messages(self) -> list[tuple[str, bytes]]: ...

    def is_connected(self) -> bool: ...


class Signer(Protocol):
    def sign(self, claims: Mapping[str, Any]) -> str:
        """Return a bearer token for the given claims."""
        ...
