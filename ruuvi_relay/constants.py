"""Constants used across the ruuvi-relay package."""

from __future__ import annotations

from pathlib import Path

APP_NAME = "ruuvi-relay"
DEFAULT_CONFIG_FILENAME = f"{APP_NAME}.cfg"
DEFAULT_CONFIG_PATH = Path.home() / ".config" / APP_NAME / DEFAULT_CONFIG_FILENAME
DEFAULT_LOG_PATH = Path.home() / ".local" / "share" / APP_NAME / f"{APP_NAME}.log"

DEFAULT_BROKER_HOST = "mqtt.googleapis.com"
DEFAULT_BROKER_PORT = 8883

# Ruuvi Innovations company identifier, little-endian on the air.
RUUVI_MANUFACTURER_ID = 0x0499

CLIENT_ID_TEMPLATE = "projects/{project}/locations/{region}/registries/{registry}/devices/{gateway}"
CONFIG_TOPIC_TEMPLATE = "/devices/{gateway}/config"
STATE_TOPIC_TEMPLATE = "/devices/{gateway}/state"
COMMAND_TOPIC_TEMPLATE = "/devices/{gateway}/commands"
EVENT_TOPIC_TEMPLATE = "/devices/{device}/events"
ATTACH_TOPIC_TEMPLATE = "/devices/{device}/attach"
DETACH_TOPIC_TEMPLATE = "/devices/{device}/detach"

EXIT_OK = 0
EXIT_FATAL = 1
