"""Configuration loader for ruuvi-relay."""

from __future__ import annotations

import logging
from configparser import ConfigParser
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from . import constants
from .core.models import BindingPolicy, PolicyMode, RuntimeSettings

LOGGER = logging.getLogger(__name__)

DEFAULT_STUCK_DATA_THRESHOLD_SECONDS = 180.0
MIN_STUCK_DATA_THRESHOLD_SECONDS = 1.0
DEFAULT_NO_BEACONS_THRESHOLD_SECONDS = 58.0


@dataclass(slots=True)
class CloudConfig:
    broker_host: str = constants.DEFAULT_BROKER_HOST
    broker_port: int = constants.DEFAULT_BROKER_PORT
    project_id: str = ""
    region: str = ""
    registry: str = ""
    gateway_id: str = ""
    keepalive_seconds: int = 300
    tls: bool = True
    ca_certs: Optional[Path] = None

    @property
    def client_id(self) -> str:
        return constants.CLIENT_ID_TEMPLATE.format(
            project=self.project_id,
            region=self.region,
            registry=self.registry,
            gateway=self.gateway_id,
        )


@dataclass(slots=True)
class IdentityConfig:
    private_key: Optional[Path] = None
    algorithm: str = "RS256"
    token_lifetime_seconds: int = 3600
    renewal_margin_seconds: int = 60


@dataclass(slots=True)
class BluetoothConfig:
    adapter_index: int = 0
    scanning_mode: str = "passive"
    poll_interval_seconds: float = 0.1
    adapter_retry_attempts: int = 3


@dataclass(slots=True)
class CollectConfig:
    collecting: bool = True
    collection_size: int = 0
    event_subfolder: Optional[str] = None
    policy: str = PolicyMode.DENYLIST.value
    default_identity: Optional[str] = None
    devices: Dict[str, str] = field(default_factory=dict)
    deny: List[str] = field(default_factory=list)

    def binding_policy(self) -> BindingPolicy:
        return BindingPolicy.build(
            mode=self.policy,
            devices=self.devices,
            deny=self.deny,
            default_identity=self.default_identity,
        )


@dataclass(slots=True)
class WatchdogConfig:
    stuck_data_threshold_seconds: float = DEFAULT_STUCK_DATA_THRESHOLD_SECONDS
    no_beacons_threshold_seconds: float = DEFAULT_NO_BEACONS_THRESHOLD_SECONDS
    ack_timeout_seconds: float = 10.0


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = constants.DEFAULT_LOG_PATH
    log_network: bool = False


@dataclass(slots=True)
class ResilienceConfig:
    reconnect_initial_seconds: float = 1.0
    reconnect_max_seconds: float = 30.0
    reconnect_jitter_ratio: float = 0.5
    reconnect_max_attempts: int = 10
    publish_timeout_seconds: float = 10.0
    paused_state_interval_seconds: float = 240.0
    health_enabled: bool = False
    health_host: str = "127.0.0.1"
    health_port: int = 0


@dataclass(slots=True)
class GatewayConfig:
    cloud: CloudConfig
    identity: IdentityConfig
    bluetooth: BluetoothConfig
    collect: CollectConfig
    watchdog: WatchdogConfig
    logging: LoggingConfig
    resilience: ResilienceConfig
    raw: ConfigParser
    path: Path

    def runtime_settings(self) -> RuntimeSettings:
        return RuntimeSettings(
            collection_size=self.collect.collection_size,
            stuck_data_threshold=self.watchdog.stuck_data_threshold_seconds,
            no_beacons_threshold=self.watchdog.no_beacons_threshold_seconds,
            event_subfolder=self.collect.event_subfolder,
            adapter_index=self.bluetooth.adapter_index,
        )


def sanitize_stuck_data_threshold(value: float) -> float:
    """Clamp a stuck-data window, falling back to the default below one second."""

    if value < MIN_STUCK_DATA_THRESHOLD_SECONDS:
        LOGGER.warning(
            "Stuck data threshold must be at least %.0f second(s); defaulting to %.0f seconds",
            MIN_STUCK_DATA_THRESHOLD_SECONDS,
            DEFAULT_STUCK_DATA_THRESHOLD_SECONDS,
        )
        return DEFAULT_STUCK_DATA_THRESHOLD_SECONDS
    return float(value)


def _parse_list(value: str, *, default: Iterable[str] = ()) -> List[str]:
    if not value:
        return list(default)
    return [item.strip() for item in value.split(",") if item.strip()]


def _optional_path(value: Optional[str]) -> Optional[Path]:
    if not value:
        return None
    return Path(value).expanduser()


def load_config(path: Optional[Path] = None) -> GatewayConfig:
    """Load configuration from disk, applying defaults where necessary."""

    config_path = path or constants.DEFAULT_CONFIG_PATH
    # MAC addresses are used as keys in [devices], so ":" cannot be a delimiter
    parser = ConfigParser(delimiters=("=",))
    parser.read_dict(
        {
            "cloud": {
                "broker_host": constants.DEFAULT_BROKER_HOST,
                "broker_port": str(constants.DEFAULT_BROKER_PORT),
                "keepalive_seconds": "300",
                "tls": "true",
            },
            "identity": {
                "algorithm": "RS256",
                "token_lifetime_seconds": "3600",
                "renewal_margin_seconds": "60",
            },
            "bluetooth": {
                "adapter_index": "0",
                "scanning_mode": "passive",
                "poll_interval_seconds": "0.1",
                "adapter_retry_attempts": "3",
            },
            "collect": {
                "collecting": "true",
                "collection_size": "0",
                "policy": PolicyMode.DENYLIST.value,
            },
            "devices": {},
            "watchdog": {
                "stuck_data_threshold_seconds": str(DEFAULT_STUCK_DATA_THRESHOLD_SECONDS),
                "no_beacons_threshold_seconds": str(DEFAULT_NO_BEACONS_THRESHOLD_SECONDS),
                "ack_timeout_seconds": "10.0",
            },
            "logging": {
                "level": "INFO",
                "path": str(constants.DEFAULT_LOG_PATH),
                "log_network": "false",
            },
            "resilience": {
                "reconnect_initial_seconds": "1.0",
                "reconnect_max_seconds": "30.0",
                "reconnect_jitter_ratio": "0.5",
                "reconnect_max_attempts": "10",
                "publish_timeout_seconds": "10.0",
                "paused_state_interval_seconds": "240",
                "health_enabled": "false",
                "health_host": "127.0.0.1",
                "health_port": "0",
            },
        }
    )

    if config_path.exists():
        parser.read(config_path)

    broker_host_value = parser.get("cloud", "broker_host")
    broker_port_value = parser.getint(
        "cloud", "broker_port", fallback=constants.DEFAULT_BROKER_PORT
    )

    if ":" in broker_host_value:
        host_part, port_part = broker_host_value.rsplit(":", 1)
        try:
            parsed_port = int(port_part)
        except ValueError:
            pass
        else:
            broker_host_value = host_part
            broker_port_value = parsed_port
            parser.set("cloud", "broker_host", host_part)
            parser.set("cloud", "broker_port", str(parsed_port))

    cloud = CloudConfig(
        broker_host=broker_host_value,
        broker_port=broker_port_value,
        project_id=parser.get("cloud", "project_id", fallback="").strip(),
        region=parser.get("cloud", "region", fallback="").strip(),
        registry=parser.get("cloud", "registry", fallback="").strip(),
        gateway_id=parser.get("cloud", "gateway_id", fallback="").strip(),
        keepalive_seconds=max(
            5, parser.getint("cloud", "keepalive_seconds", fallback=300)
        ),
        tls=parser.getboolean("cloud", "tls", fallback=True),
        ca_certs=_optional_path(parser.get("cloud", "ca_certs", fallback=None)),
    )

    identity = IdentityConfig(
        private_key=_optional_path(parser.get("identity", "private_key", fallback=None)),
        algorithm=parser.get("identity", "algorithm", fallback="RS256").strip().upper(),
        token_lifetime_seconds=max(
            60, parser.getint("identity", "token_lifetime_seconds", fallback=3600)
        ),
        renewal_margin_seconds=max(
            0, parser.getint("identity", "renewal_margin_seconds", fallback=60)
        ),
    )

    bluetooth = BluetoothConfig(
        adapter_index=max(0, parser.getint("bluetooth", "adapter_index", fallback=0)),
        scanning_mode=parser.get("bluetooth", "scanning_mode", fallback="passive")
        .strip()
        .lower(),
        poll_interval_seconds=max(
            0.01,
            parser.getfloat("bluetooth", "poll_interval_seconds", fallback=0.1),
        ),
        adapter_retry_attempts=max(
            1, parser.getint("bluetooth", "adapter_retry_attempts", fallback=3)
        ),
    )

    policy_value = parser.get("collect", "policy", fallback=PolicyMode.DENYLIST.value)
    try:
        policy = PolicyMode(policy_value.strip().lower()).value
    except ValueError:
        LOGGER.warning("Unknown device policy %r; using denylist", policy_value)
        policy = PolicyMode.DENYLIST.value

    collect = CollectConfig(
        collecting=parser.getboolean("collect", "collecting", fallback=True),
        collection_size=max(
            0, parser.getint("collect", "collection_size", fallback=0)
        ),
        event_subfolder=parser.get("collect", "event_subfolder", fallback="").strip()
        or None,
        policy=policy,
        default_identity=parser.get("collect", "default_identity", fallback="").strip()
        or None,
        devices={
            key: value.strip()
            for key, value in parser.items("devices")
            if key not in parser.defaults()
        },
        deny=_parse_list(parser.get("collect", "deny", fallback="")),
    )

    watchdog = WatchdogConfig(
        stuck_data_threshold_seconds=sanitize_stuck_data_threshold(
            parser.getfloat(
                "watchdog",
                "stuck_data_threshold_seconds",
                fallback=DEFAULT_STUCK_DATA_THRESHOLD_SECONDS,
            )
        ),
        no_beacons_threshold_seconds=max(
            0.0,
            parser.getfloat(
                "watchdog",
                "no_beacons_threshold_seconds",
                fallback=DEFAULT_NO_BEACONS_THRESHOLD_SECONDS,
            ),
        ),
        ack_timeout_seconds=max(
            0.1, parser.getfloat("watchdog", "ack_timeout_seconds", fallback=10.0)
        ),
    )

    logging_config = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO"),
        path=_optional_path(
            parser.get("logging", "path", fallback=str(constants.DEFAULT_LOG_PATH))
        ),
        log_network=parser.getboolean("logging", "log_network", fallback=False),
    )

    resilience = ResilienceConfig(
        reconnect_initial_seconds=parser.getfloat(
            "resilience", "reconnect_initial_seconds", fallback=1.0
        ),
        reconnect_max_seconds=parser.getfloat(
            "resilience", "reconnect_max_seconds", fallback=30.0
        ),
        reconnect_jitter_ratio=max(
            0.0,
            min(
                1.0,
                parser.getfloat("resilience", "reconnect_jitter_ratio", fallback=0.5),
            ),
        ),
        reconnect_max_attempts=max(
            1, parser.getint("resilience", "reconnect_max_attempts", fallback=10)
        ),
        publish_timeout_seconds=max(
            0.1,
            parser.getfloat("resilience", "publish_timeout_seconds", fallback=10.0),
        ),
        paused_state_interval_seconds=max(
            1.0,
            parser.getfloat(
                "resilience", "paused_state_interval_seconds", fallback=240.0
            ),
        ),
        health_enabled=parser.getboolean(
            "resilience", "health_enabled", fallback=False
        ),
        health_host=parser.get("resilience", "health_host", fallback="127.0.0.1"),
        health_port=parser.getint("resilience", "health_port", fallback=0),
    )

    return GatewayConfig(
        cloud=cloud,
        identity=identity,
        bluetooth=bluetooth,
        collect=collect,
        watchdog=watchdog,
        logging=logging_config,
        resilience=resilience,
        raw=parser,
        path=config_path,
    )
