"""Remote command and remote configuration payload handling.

Commands arrive on ``/devices/<gateway>/commands[/<subfolder>]`` as
``{"command": "pause" | "collect" | "reset" | "shutdown"}``. Configuration
arrives on ``/devices/<gateway>/config`` as a (partial) collect document which
is deep-merged over the active one.
"""

from __future__ import annotations

import copy
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from . import constants
from .config import GatewayConfig, sanitize_stuck_data_threshold
from .core.models import BindingPolicy, PolicyMode, RuntimeSettings
from .core.utils import deep_merge

LOGGER = logging.getLogger(__name__)


class CommandProcessingError(RuntimeError):
    """Raised when an individual remote message cannot be processed."""

    def __init__(self, message: str, *, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.code = code


class Command(str, Enum):
    PAUSE = "pause"
    COLLECT = "collect"
    RESET = "reset"
    SHUTDOWN = "shutdown"


class TopicKind(str, Enum):
    CONFIG = "config"
    COMMAND = "command"


@dataclass(frozen=True, slots=True)
class ConfigUpdate:
    """Validated result of merging a remote config document."""

    document: Dict[str, Any]
    collecting: bool
    settings: RuntimeSettings
    policy: BindingPolicy


def classify_topic(topic: str, gateway_id: str) -> Optional[TopicKind]:
    if topic == constants.CONFIG_TOPIC_TEMPLATE.format(gateway=gateway_id):
        return TopicKind.CONFIG

    command_root = constants.COMMAND_TOPIC_TEMPLATE.format(gateway=gateway_id)
    if topic == command_root or topic.startswith(command_root + "/"):
        return TopicKind.COMMAND
    return None


def _decode_json(raw_payload: bytes) -> Any:
    try:
        decoded = raw_payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise CommandProcessingError(
            "Payload is not valid UTF-8", code="invalid_encoding"
        ) from exc

    try:
        return json.loads(decoded)
    except json.JSONDecodeError as exc:
        raise CommandProcessingError(
            "Payload is not valid JSON", code="invalid_json"
        ) from exc


def parse_command(raw_payload: bytes) -> Command:
    data = _decode_json(raw_payload)
    if not isinstance(data, dict):
        raise CommandProcessingError(
            "Command payload must be a JSON object", code="invalid_payload"
        )

    command_field = str(data.get("command") or "").strip().lower()
    if not command_field:
        raise CommandProcessingError("Missing command in payload", code="invalid_payload")

    try:
        return Command(command_field)
    except ValueError as exc:
        raise CommandProcessingError(
            f"Unsupported command {command_field!r}", code="unsupported_command"
        ) from exc


def parse_config_document(raw_payload: bytes) -> Optional[Dict[str, Any]]:
    """Decode a config payload. An empty payload means "no configuration"."""

    if not raw_payload.strip():
        return None
    data = _decode_json(raw_payload)
    if not isinstance(data, dict):
        raise CommandProcessingError(
            "Config payload must be a JSON object", code="invalid_payload"
        )
    return data


def initial_document(config: GatewayConfig) -> Dict[str, Any]:
    """Build the collect document equivalent to the local configuration."""

    return {
        "collecting": config.collect.collecting,
        "collection_size": config.collect.collection_size,
        "event_subfolder": config.collect.event_subfolder,
        "stuck_data_threshold": config.watchdog.stuck_data_threshold_seconds,
        "no_beacons_threshold": config.watchdog.no_beacons_threshold_seconds,
        "policy": config.collect.policy,
        "default_identity": config.collect.default_identity,
        "devices": dict(config.collect.devices),
        "deny": list(config.collect.deny),
        "bluetooth": {"adapter_index": config.bluetooth.adapter_index},
    }


def merge_config_document(
    active: Dict[str, Any], update: Dict[str, Any]
) -> ConfigUpdate:
    """Merge ``update`` over ``active`` and validate the result.

    ``active`` is left untouched; nothing is applied when validation fails.
    """

    merged = copy.deepcopy(active)
    deep_merge(merged, update)
    # device maps are replaced, not merged, so bindings can be removed remotely
    if "devices" in update:
        merged["devices"] = copy.deepcopy(update.get("devices") or {})
    if "deny" in update:
        merged["deny"] = copy.deepcopy(update.get("deny") or [])
    return build_config_update(merged)


def build_config_update(document: Dict[str, Any]) -> ConfigUpdate:
    try:
        collection_size = int(document.get("collection_size") or 0)
        stuck_threshold = float(document.get("stuck_data_threshold"))
        no_beacons_threshold = float(document.get("no_beacons_threshold"))
        bluetooth = document.get("bluetooth") or {}
        adapter_index = int(bluetooth.get("adapter_index") or 0)
    except (TypeError, ValueError, AttributeError) as exc:
        raise CommandProcessingError(
            f"Invalid numeric value in config: {exc}", code="invalid_config"
        ) from exc

    if collection_size < 0 or adapter_index < 0 or no_beacons_threshold < 0:
        raise CommandProcessingError(
            "Config values must not be negative", code="invalid_config"
        )

    devices = document.get("devices") or {}
    deny = document.get("deny") or []
    if not isinstance(devices, dict) or not isinstance(deny, list):
        raise CommandProcessingError(
            "devices must be an object and deny a list", code="invalid_config"
        )

    try:
        policy = BindingPolicy.build(
            mode=PolicyMode(str(document.get("policy") or PolicyMode.DENYLIST.value).lower()),
            devices={str(key): str(value or "") for key, value in devices.items()},
            deny=[str(item) for item in deny],
            default_identity=str(document.get("default_identity") or "") or None,
        )
    except ValueError as exc:
        raise CommandProcessingError(
            f"Invalid device policy: {exc}", code="invalid_config"
        ) from exc

    subfolder = str(document.get("event_subfolder") or "").strip("/ ") or None
    stuck_threshold = sanitize_stuck_data_threshold(stuck_threshold)
    document["stuck_data_threshold"] = stuck_threshold

    settings = RuntimeSettings(
        collection_size=collection_size,
        stuck_data_threshold=stuck_threshold,
        no_beacons_threshold=no_beacons_threshold,
        event_subfolder=subfolder,
        adapter_index=adapter_index,
    )
    return ConfigUpdate(
        document=document,
        collecting=bool(document.get("collecting", True)),
        settings=settings,
        policy=policy,
    )
