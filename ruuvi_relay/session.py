"""Cloud session management for the relay worker.

The session manager never sleeps: reconnect backoff is expressed as a
deadline that ``maintain`` checks on every relay iteration, so command
handling keeps its cadence while the broker is unreachable.
"""

from __future__ import annotations

import json
import logging
import random
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Set

from . import constants
from .adapters.mqtt import MQTTConnectionError
from .config import CloudConfig, ResilienceConfig
from .core.models import SessionState
from .core.protocols import MessagingClient
from .token_manager import TokenError, TokenManager

LOGGER = logging.getLogger(__name__)


class SessionError(RuntimeError):
    """Raised when a session operation fails transiently."""


class SessionFatalError(SessionError):
    """Raised when the session cannot be (re)established within the configured attempts."""


class SessionManager:
    """Owns the messaging client, its credentials and the gateway topics."""

    def __init__(
        self,
        *,
        client: MessagingClient,
        token_manager: TokenManager,
        cloud: CloudConfig,
        resilience: ResilienceConfig,
        clock: Callable[[], float] = time.monotonic,
        uniform: Callable[[float, float], float] = random.uniform,
        connect_timeout: float = 30.0,
    ) -> None:
        self._client = client
        self._token_manager = token_manager
        self._cloud = cloud
        self._resilience = resilience
        self._clock = clock
        self._uniform = uniform
        self._connect_timeout = connect_timeout

        self._state = SessionState.DISCONNECTED
        self._attempt = 0
        self._next_attempt_at: Optional[float] = None
        self._delay = max(0.5, resilience.reconnect_initial_seconds)
        self._ever_connected = False
        self._attached: Set[str] = set()

        gateway = cloud.gateway_id
        self.config_topic = constants.CONFIG_TOPIC_TEMPLATE.format(gateway=gateway)
        self.state_topic = constants.STATE_TOPIC_TEMPLATE.format(gateway=gateway)
        self.command_topic = constants.COMMAND_TOPIC_TEMPLATE.format(gateway=gateway)

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is SessionState.CONNECTED and self._client.is_connected()

    @property
    def attached_identities(self) -> Set[str]:
        return set(self._attached)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def maintain(self) -> bool:
        """Advance the session state machine. Returns whether it is connected.

        Raises:
            SessionFatalError: When reconnect attempts are exhausted.
        """
        now = self._clock()

        if self._state is SessionState.CONNECTED and not self._client.is_connected():
            LOGGER.warning("MQTT session lost; reconnecting")
            # the dropped client's network loop must stop before a new one starts
            self._disconnect_client()
            self._state = SessionState.DISCONNECTED
            self._next_attempt_at = now

        if self._state is SessionState.CONNECTED and self._token_manager.renewal_due():
            self._renew()
            return self.is_connected

        if self._state is SessionState.DISCONNECTED and (
            self._next_attempt_at is None or now >= self._next_attempt_at
        ):
            self._attempt_connect(fresh_token=self._token_manager.renewal_due())

        return self.is_connected

    def reset(self) -> None:
        """Tear down the session and reconnect with a freshly signed token."""
        LOGGER.info("Resetting MQTT session")
        self._teardown()
        self._attempt = 0
        self._delay = max(0.5, self._resilience.reconnect_initial_seconds)
        self._attempt_connect(fresh_token=True)

    def close(self, *, detach: bool = True) -> None:
        if detach and self.is_connected:
            self.detach_all()
        self._teardown()

    def _renew(self) -> None:
        LOGGER.info("JWT token nearing expiry; renewing MQTT session")
        self._state = SessionState.RENEWING
        self._disconnect_client()
        self._attempt_connect(fresh_token=True)

    def _teardown(self) -> None:
        self._disconnect_client()
        self._state = SessionState.DISCONNECTED
        self._next_attempt_at = None

    def _disconnect_client(self) -> None:
        try:
            self._client.disconnect()
        except MQTTConnectionError as exc:
            LOGGER.debug("Ignoring disconnect failure: %s", exc)

    def _attempt_connect(self, *, fresh_token: bool) -> None:
        self._state = SessionState.CONNECTING
        self._attempt += 1
        LOGGER.debug("MQTT connection attempt %d", self._attempt)

        try:
            if fresh_token or self._token_manager.current is None:
                self._token_manager.issue_token()
            username, password = self._token_manager.get_mqtt_credentials()
            self._client.connect(username, password, timeout=self._connect_timeout)
            self._client.subscribe(self.config_topic, qos=1)
            self._client.subscribe(f"{self.command_topic}/#", qos=1)
        except (MQTTConnectionError, TokenError) as exc:
            self._on_connect_failed(exc)
            return

        self._state = SessionState.CONNECTED
        self._attempt = 0
        self._next_attempt_at = None
        self._delay = max(0.5, self._resilience.reconnect_initial_seconds)
        LOGGER.info("MQTT session established")

        if self._ever_connected:
            self._reattach_all()
        self._ever_connected = True

    def _on_connect_failed(self, exc: Exception) -> None:
        self._disconnect_client()
        self._state = SessionState.DISCONNECTED

        if self._attempt >= self._resilience.reconnect_max_attempts:
            raise SessionFatalError(
                f"Unable to establish MQTT session after {self._attempt} attempts: {exc}"
            ) from exc

        delay = self._delay
        jitter_ratio = max(0.0, min(1.0, self._resilience.reconnect_jitter_ratio))
        wait_for = delay
        if jitter_ratio > 0.0:
            jitter = delay * jitter_ratio
            wait_for = self._uniform(max(0.1, delay - jitter), delay + jitter)

        self._next_attempt_at = self._clock() + wait_for
        max_delay = max(delay, self._resilience.reconnect_max_seconds)
        self._delay = min(delay * 2, max_delay)

        LOGGER.warning(
            "Connection attempt %d failed: %s, retrying in %.1fs",
            self._attempt,
            exc,
            wait_for,
        )

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------
    def publish_events(
        self, identity: str, payload: bytes, *, subfolder: Optional[str] = None
    ) -> None:
        """Publish telemetry for ``identity``, attaching it to the gateway first.

        Raises:
            SessionError: When the message is not confirmed by the broker.
        """
        self.attach(identity)
        topic = constants.EVENT_TOPIC_TEMPLATE.format(device=identity)
        if subfolder:
            topic = f"{topic}/{subfolder}"
        self._publish(topic, payload)

    def publish_state(self, document: Mapping[str, Any]) -> None:
        payload = json.dumps(document, sort_keys=True).encode("utf-8")
        self._publish(self.state_topic, payload)

    def attach(self, identity: str) -> None:
        if identity in self._attached:
            return
        try:
            self._publish(constants.ATTACH_TOPIC_TEMPLATE.format(device=identity), b"{}")
        except SessionError:
            LOGGER.warning(
                "Attaching %s to gateway failed (possibly not bound)", identity
            )
            raise
        self._attached.add(identity)
        LOGGER.info("Device %s attached to gateway", identity)

    def detach_all(self) -> None:
        for identity in sorted(self._attached):
            try:
                self._publish(
                    constants.DETACH_TOPIC_TEMPLATE.format(device=identity), b"{}"
                )
                LOGGER.info("Device %s detached from gateway", identity)
            except SessionError as exc:
                LOGGER.warning("Detaching %s from gateway failed: %s", identity, exc)
        self._attached.clear()

    def _reattach_all(self) -> None:
        for identity in sorted(self._attached):
            try:
                self._publish(
                    constants.ATTACH_TOPIC_TEMPLATE.format(device=identity), b"{}"
                )
                LOGGER.info("Device %s reattached to gateway", identity)
            except SessionError as exc:
                # forgotten identities are attached again on their next publish
                self._attached.discard(identity)
                LOGGER.warning("Reattaching %s to gateway failed: %s", identity, exc)

    def _publish(self, topic: str, payload: bytes) -> None:
        if self._state is not SessionState.CONNECTED:
            raise SessionError(f"Cannot publish to {topic}: session {self._state.value}")
        try:
            self._client.publish(
                topic,
                payload,
                qos=1,
                timeout=self._resilience.publish_timeout_seconds,
            )
        except MQTTConnectionError as exc:
            raise SessionError(str(exc)) from exc

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------
    def poll_messages(self) -> List[tuple[str, bytes]]:
        return self._client.drain_messages()


def encode_readings(readings: List[Dict[str, Any]]) -> bytes:
    """Serialise one reading as an object, or several as a JSON array."""
    body: Any = readings[0] if len(readings) == 1 else readings
    return json.dumps(body).encode("utf-8")
