"""Supervisor wiring the scanning and relay workers together."""

from __future__ import annotations

import logging
import signal
import threading
import time
from typing import Callable, Optional

from . import constants
from .adapters.ble import BleakAdapter
from .adapters.mqtt import MQTTClient
from .channels import ControlChannel, ReadingQueue
from .commands import initial_document
from .config import GatewayConfig, load_config
from .core.protocols import AdapterFactory, Decoder, MessagingClient
from .decoder import decode
from .health import HealthReporter, HealthServer, HealthServerThread
from .logging import configure_logging
from .registry import BindingTable, LivenessRegistry
from .relay import RelayWorker
from .scanner import ScanningWorker
from .session import SessionManager
from .token_manager import JwtSigner, TokenError, TokenManager

LOGGER = logging.getLogger(__name__)

_POLL_SECONDS = 0.2


class GatewayConfigurationError(RuntimeError):
    """Raised when the configuration is not sufficient to start the gateway."""


class WorkerFatalError(RuntimeError):
    """Unrecoverable failure reported by a worker."""

    def __init__(self, component: str, cause: BaseException) -> None:
        super().__init__(f"{component} failed: {cause}")
        self.component = component
        self.cause = cause


class GatewayApp:
    """Starts both workers, propagates fatal failures and maps them to exit codes."""

    def __init__(
        self,
        config: Optional[GatewayConfig] = None,
        *,
        adapter_factory: Optional[AdapterFactory] = None,
        decoder: Decoder = decode,
        client: Optional[MessagingClient] = None,
        signer=None,
        health: Optional[HealthReporter] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or load_config()
        cloud = self._config.cloud
        missing = [
            name
            for name in ("project_id", "region", "registry", "gateway_id")
            if not getattr(cloud, name)
        ]
        if missing:
            raise GatewayConfigurationError(
                f"Missing [cloud] settings: {', '.join(missing)}"
            )

        if signer is None:
            if self._config.identity.private_key is None:
                raise GatewayConfigurationError("Missing [identity] private_key")
            signer = JwtSigner.from_pem_file(
                self._config.identity.private_key, self._config.identity.algorithm
            )

        if adapter_factory is None:
            bluetooth = self._config.bluetooth

            def adapter_factory(index: int) -> BleakAdapter:
                return BleakAdapter.from_config(bluetooth, index)

        self._health = health or HealthReporter()
        self._fatal: Optional[WorkerFatalError] = None
        self._fatal_lock = threading.Lock()
        self._done = threading.Event()

        readings = ReadingQueue()
        control = ControlChannel()
        registry = LivenessRegistry()
        collect = self._config.collect
        bindings = BindingTable(collect.binding_policy())
        settings = self._config.runtime_settings()

        token_manager = TokenManager(
            signer,
            audience=cloud.project_id,
            lifetime_seconds=self._config.identity.token_lifetime_seconds,
            safety_margin_seconds=self._config.identity.renewal_margin_seconds,
        )
        session = SessionManager(
            client=client or MQTTClient(cloud, client_id=cloud.client_id),
            token_manager=token_manager,
            cloud=cloud,
            resilience=self._config.resilience,
            clock=clock,
        )

        self.scanner = ScanningWorker(
            adapter_factory=adapter_factory,
            decoder=decoder,
            bindings=bindings,
            registry=registry,
            readings=readings,
            control=control,
            report_fatal=self.report_fatal,
            adapter_index=settings.adapter_index,
            poll_interval=self._config.bluetooth.poll_interval_seconds,
            retry_attempts=self._config.bluetooth.adapter_retry_attempts,
            paused=not collect.collecting,
            clock=clock,
        )
        self.relay = RelayWorker(
            session=session,
            readings=readings,
            control=control,
            registry=registry,
            bindings=bindings,
            document=initial_document(self._config),
            settings=settings,
            gateway_id=cloud.gateway_id,
            report_fatal=self.report_fatal,
            collecting=collect.collecting,
            ack_timeout=self._config.watchdog.ack_timeout_seconds,
            paused_state_interval=self._config.resilience.paused_state_interval_seconds,
            loop_interval=self._config.bluetooth.poll_interval_seconds,
            clock=clock,
            health=self._health,
        )

    @property
    def fatal_error(self) -> Optional[WorkerFatalError]:
        return self._fatal

    def report_fatal(self, component: str, exc: BaseException) -> None:
        """Record the first fatal failure and wake the supervisor (thread-safe)."""
        with self._fatal_lock:
            if self._fatal is None:
                self._fatal = WorkerFatalError(component, exc)
                LOGGER.error("Fatal error in %s: %s", component, exc)
            else:
                LOGGER.debug("Additional failure in %s after fatal error: %s", component, exc)
        self._health.update(component, False, str(exc))
        self._done.set()

    def request_shutdown(self) -> None:
        LOGGER.info("ruuvi-relay received shutdown signal")
        self.relay.request_shutdown()

    def run(self) -> int:
        LOGGER.info("ruuvi-relay starting with config: %s", self._config.path)
        health_thread = self._start_health_server()
        self._install_signal_handlers()

        self.scanner.start()
        self.relay.start()

        while not self._done.wait(_POLL_SECONDS):
            if not self.relay.is_alive():
                break

        if self._fatal is not None:
            self.scanner.stop()
            self.relay.request_abort()

        join_timeout = self._config.watchdog.ack_timeout_seconds + 5.0
        self.relay.join(join_timeout)
        self.scanner.stop()
        self.scanner.join(join_timeout)

        if health_thread is not None:
            health_thread.shutdown()

        if self._fatal is not None:
            LOGGER.error("ruuvi-relay exiting after fatal error: %s", self._fatal)
            return constants.EXIT_FATAL
        if self.relay.exit_code is None:
            LOGGER.error("Relay worker exited without completing shutdown")
            return constants.EXIT_FATAL

        LOGGER.info("ruuvi-relay stopped")
        return self.relay.exit_code

    def _start_health_server(self) -> Optional[HealthServerThread]:
        resilience = self._config.resilience
        if not resilience.health_enabled or resilience.health_port <= 0:
            return None

        thread = HealthServerThread(
            HealthServer(self._health, resilience.health_host, resilience.health_port)
        )
        try:
            thread.start_and_wait()
        except OSError as exc:
            LOGGER.warning("Health endpoint unavailable: %s", exc)
            return None
        return thread

    def _install_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return

        def _handler(signum, frame) -> None:
            self.request_shutdown()

        for signum in (signal.SIGINT, signal.SIGTERM):
            signal.signal(signum, _handler)

    @classmethod
    def start(cls, config: Optional[GatewayConfig] = None) -> int:
        config = config or load_config()
        configure_logging(
            config.logging.level,
            log_path=config.logging.path,
            log_network=config.logging.log_network,
        )
        try:
            instance = cls(config)
        except (GatewayConfigurationError, TokenError) as exc:
            LOGGER.error("Unable to start ruuvi-relay: %s", exc)
            return constants.EXIT_FATAL
        return instance.run()
