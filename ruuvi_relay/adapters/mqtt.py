"""MQTT adapter encapsulating paho-mqtt client usage."""

from __future__ import annotations

import logging
import queue
import threading
from typing import Optional

import paho.mqtt.client as mqtt

from ..config import CloudConfig

LOGGER = logging.getLogger(__name__)


class MQTTConnectionError(RuntimeError):
    """Raised when the MQTT client fails to connect, publish or subscribe."""


def _reason_value(reason_code) -> int:
    return int(getattr(reason_code, "value", reason_code) or 0)


class MQTTClient:
    """Blocking wrapper over the threaded paho-mqtt client.

    Inbound messages are queued by the paho network thread and drained by
    the relay worker on its own cadence.
    """

    def __init__(
        self,
        config: CloudConfig,
        *,
        client_id: str,
        keepalive: Optional[int] = None,
    ) -> None:
        self.config = config
        self.client_id = client_id
        self.keepalive = keepalive if keepalive is not None else config.keepalive_seconds

        self._client: Optional[mqtt.Client] = None
        self._connected_event = threading.Event()
        self._disconnect_event = threading.Event()
        self._last_connect_rc: Optional[int] = None
        self._connected: bool = False
        self._inbound: "queue.SimpleQueue[tuple[str, bytes]]" = queue.SimpleQueue()

    def connect(self, username: str, password: str, timeout: float = 30.0) -> None:
        """Connect to the MQTT broker and wait for acknowledgement."""

        if self._client is not None:
            LOGGER.debug("Releasing previous MQTT client before reconnecting")
            self.disconnect(timeout=1.0)

        self._connected_event.clear()
        self._disconnect_event.clear()
        self._last_connect_rc = None

        client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.client_id,
            protocol=mqtt.MQTTv311,
        )
        client.enable_logger(LOGGER)
        client.username_pw_set(username, password)

        if self.config.tls:
            ca_certs = str(self.config.ca_certs) if self.config.ca_certs else None
            client.tls_set(ca_certs=ca_certs)

        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message

        self._client = client

        LOGGER.info(
            "Connecting to MQTT broker %s:%s",
            self.config.broker_host,
            self.config.broker_port,
        )

        client.connect_async(
            self.config.broker_host, self.config.broker_port, self.keepalive
        )
        client.loop_start()

        if not self._connected_event.wait(timeout):
            client.loop_stop()
            self._client = None
            raise MQTTConnectionError("Timed out connecting to MQTT broker")

        if self._last_connect_rc is None or self._last_connect_rc != 0:
            client.loop_stop()
            self._client = None
            raise MQTTConnectionError(
                f"MQTT broker rejected connection (rc={self._last_connect_rc})"
            )

    def disconnect(self, timeout: float = 5.0) -> None:
        """Gracefully disconnect from the broker."""

        client, self._client = self._client, None
        if not client:
            return

        # a dropped connection produces no further on_disconnect to wait for
        was_connected = self._connected
        try:
            client.disconnect()
            if was_connected:
                self._disconnect_event.wait(timeout)
        finally:
            client.loop_stop()
            self._connected = False

    def publish(
        self,
        topic: str,
        payload: bytes,
        qos: int = 1,
        retain: bool = False,
        *,
        timeout: Optional[float] = None,
    ) -> None:
        """Publish and, when ``timeout`` is given, wait for the broker acknowledgement."""

        if not self._client:
            raise MQTTConnectionError("MQTT client not connected")

        info = self._client.publish(topic, payload, qos=qos, retain=retain)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise MQTTConnectionError(f"Publish failed with rc={info.rc}")

        if timeout is None:
            return

        try:
            info.wait_for_publish(timeout=timeout)
        except (RuntimeError, ValueError) as exc:
            raise MQTTConnectionError(f"Publish to {topic} failed: {exc}") from exc
        if not info.is_published():
            raise MQTTConnectionError(
                f"Publish to {topic} not acknowledged within {timeout:.1f}s"
            )

    def subscribe(self, topic: str, qos: int = 1) -> None:
        if not self._client:
            raise MQTTConnectionError("MQTT client not connected")
        result, _ = self._client.subscribe(topic, qos=qos)
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise MQTTConnectionError(f"Subscribe failed with rc={result}")

    def drain_messages(self) -> list[tuple[str, bytes]]:
        messages: list[tuple[str, bytes]] = []
        while True:
            try:
                messages.append(self._inbound.get_nowait())
            except queue.Empty:
                return messages

    def is_connected(self) -> bool:
        return self._connected

    # ------------------------------------------------------------------
    # Callbacks invoked from the paho network thread
    # ------------------------------------------------------------------
    def _on_connect(self, client: mqtt.Client, userdata, flags, reason_code, properties=None) -> None:
        rc = _reason_value(reason_code)
        self._last_connect_rc = rc
        if rc == 0:
            LOGGER.info("Connected to MQTT broker")
            self._connected = True
        else:
            LOGGER.error("MQTT connection failed with rc=%s", rc)
            self._connected = False
        self._connected_event.set()

    def _on_disconnect(
        self, client: mqtt.Client, userdata, flags, reason_code, properties=None
    ) -> None:
        if self._client is not None and client is not self._client:
            return
        rc = _reason_value(reason_code)
        LOGGER.info("Disconnected from MQTT broker (rc=%s)", rc)
        self._connected = False
        self._disconnect_event.set()

    def _on_message(
        self, client: mqtt.Client, userdata, message: mqtt.MQTTMessage
    ) -> None:
        self._inbound.put_nowait((message.topic, bytes(message.payload)))
