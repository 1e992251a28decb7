"""
Device client configuration.

Single source for runtime configuration. Values come from environment
variables, optionally loaded from standard env files, and may be overridden
by command-line flags.

Priority (lowest -> highest):
1) /etc/iotcore/device.env (system install)
2) ~/.config/iotcore-device/.env (user install)
3) ./.env (project override)
4) process environment variables
5) explicit overrides (CLI flags)
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from importlib.metadata import PackageNotFoundError, version as _pkg_version
from pathlib import Path
from typing import Iterable, Mapping, Optional

from dotenv import load_dotenv

from iotcore_device_client.credentials import DEFAULT_TTL_S, JWT_MAX_SIZE
from iotcore_device_client.key_store import (
    DEFAULT_PRIVATE_KEY_FILENAME,
    PRIVATE_KEY_BUFFER_SIZE,
    KeyAlgorithm,
)
from iotcore_device_client.mqtt_transport import DEFAULT_HOST, DEFAULT_PORT, DEFAULT_USERNAME
from iotcore_device_client.topics import QoS, TopicError, parse_qos, validate_topic, validate_topic_filter

REQUIRED = {
    "IOTC_PROJECT_ID": "-p --project-id",
    "IOTC_DEVICE_PATH": "-d --device-path",
    "IOTC_PUBLISH_TOPIC": "-t --publish-topic",
}


class ConfigError(ValueError):
    """Raised when configuration is missing or invalid."""


def _package_version() -> str:
    try:
        return _pkg_version("iotcore-device-client")
    except PackageNotFoundError:
        return "0.0.0+dev"


def _env_paths() -> Iterable[Path]:
    # 1) system install
    yield Path("/etc/iotcore/device.env")

    # 2) user config dir
    if sys.platform == "win32":
        base = Path(os.environ.get("APPDATA", str(Path.home())))
    else:
        base = Path(os.environ.get("XDG_CONFIG_HOME", str(Path.home() / ".config")))
    yield base / "iotcore-device" / ".env"

    # 3) project override
    yield Path(".env")


class _Source:
    """Env lookup with CLI overrides layered on top."""

    def __init__(self, overrides: Optional[Mapping[str, Optional[str]]]) -> None:
        self._overrides = {k: v for k, v in (overrides or {}).items() if v not in (None, "")}

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        if key in self._overrides:
            return str(self._overrides[key])
        v = os.getenv(key)
        if v is None or v == "":
            return default
        return v


def _parse_int(key: str, raw: str) -> int:
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"Invalid integer for {key}: {raw!r}") from exc


def _parse_bool(key: str, raw: str) -> bool:
    v = raw.strip().lower()
    if v in ("1", "true", "yes", "on"):
        return True
    if v in ("0", "false", "no", "off"):
        return False
    raise ConfigError(f"Invalid boolean for {key}: {raw!r}")


def _non_negative(src: _Source, key: str, default: int) -> int:
    value = _parse_int(key, src.get(key, str(default)))
    if value < 0:
        raise ConfigError(f"{key} must be >= 0")
    return value


def _positive(src: _Source, key: str, default: int) -> int:
    value = _parse_int(key, src.get(key, str(default)))
    if value <= 0:
        raise ConfigError(f"{key} must be > 0")
    return value


def _qos(src: _Source, key: str, default: QoS) -> QoS:
    try:
        return parse_qos(src.get(key, str(int(default))))
    except TopicError as exc:
        raise ConfigError(f"{key}: {exc}") from exc


@dataclass(frozen=True, slots=True)
class DeviceConfig:
    project_id: str
    device_path: str
    publish_topic: str
    publish_message: str
    subscribe_topic: str
    publish_qos: QoS
    subscribe_qos: QoS
    private_key_file: str
    private_key_max_bytes: int
    key_algorithm: KeyAlgorithm
    mqtt_host: str
    mqtt_port: int
    mqtt_username: str
    tls: bool
    ca_certs: Optional[str]
    connect_timeout_s: int
    keepalive_s: int
    jwt_ttl_s: int
    jwt_refresh_margin_s: int
    jwt_max_bytes: int
    publish_interval_s: int  # 0 disables the recurring publish
    publish_count: int  # 0 publishes until shutdown is requested
    version: str


def load_config(
    *,
    dotenv_enabled: bool = True,
    overrides: Optional[Mapping[str, Optional[str]]] = None,
) -> DeviceConfig:
    """
    Load config by reading env files and then validating environment
    variables, with overrides (keyed by env var name) taking precedence.

    Returns an immutable DeviceConfig. Raises ConfigError on failure.
    """
    if dotenv_enabled:
        for p in _env_paths():
            if p.is_file():
                # do not override existing env vars; later files can fill missing
                load_dotenv(p, override=False)

    src = _Source(overrides)

    missing = [f"{key} ({flag}) is required" for key, flag in REQUIRED.items() if not src.get(key)]
    if missing:
        raise ConfigError("Missing required configuration: " + "; ".join(missing))

    project_id = src.get("IOTC_PROJECT_ID")
    device_path = src.get("IOTC_DEVICE_PATH")
    publish_topic = src.get("IOTC_PUBLISH_TOPIC")
    subscribe_topic = src.get("IOTC_SUBSCRIBE_TOPIC", publish_topic)
    try:
        validate_topic(publish_topic)
        validate_topic_filter(subscribe_topic)
    except TopicError as exc:
        raise ConfigError(str(exc)) from exc

    mqtt_port = _parse_int("MQTT_PORT", src.get("MQTT_PORT", str(DEFAULT_PORT)))
    if not (1 <= mqtt_port <= 65535):
        raise ConfigError(f"MQTT_PORT out of range: {mqtt_port}")

    algorithm_raw = src.get("IOTC_KEY_ALGORITHM", KeyAlgorithm.ES256.value).upper()
    try:
        key_algorithm = KeyAlgorithm(algorithm_raw)
    except ValueError as exc:
        raise ConfigError(f"Unsupported IOTC_KEY_ALGORITHM: {algorithm_raw!r}") from exc

    return DeviceConfig(
        project_id=project_id,
        device_path=device_path,
        publish_topic=publish_topic,
        publish_message=src.get("IOTC_PUBLISH_MESSAGE", "Message"),
        subscribe_topic=subscribe_topic,
        publish_qos=_qos(src, "IOTC_PUBLISH_QOS", QoS.AT_LEAST_ONCE),
        subscribe_qos=_qos(src, "IOTC_SUBSCRIBE_QOS", QoS.EXACTLY_ONCE),
        private_key_file=src.get("IOTC_PRIVATE_KEY_FILE", DEFAULT_PRIVATE_KEY_FILENAME),
        private_key_max_bytes=_positive(src, "IOTC_PRIVATE_KEY_MAX_BYTES", PRIVATE_KEY_BUFFER_SIZE),
        key_algorithm=key_algorithm,
        mqtt_host=src.get("MQTT_HOST", DEFAULT_HOST),
        mqtt_port=mqtt_port,
        mqtt_username=src.get("IOTC_MQTT_USERNAME", DEFAULT_USERNAME),
        tls=_parse_bool("IOTC_TLS", src.get("IOTC_TLS", "1")),
        ca_certs=src.get("IOTC_CA_CERTS"),
        connect_timeout_s=_positive(src, "IOTC_CONNECT_TIMEOUT", 10),
        keepalive_s=_positive(src, "IOTC_KEEPALIVE", 20),
        jwt_ttl_s=_positive(src, "IOTC_JWT_TTL", DEFAULT_TTL_S),
        jwt_refresh_margin_s=_non_negative(src, "IOTC_JWT_REFRESH_MARGIN", 60),
        jwt_max_bytes=_positive(src, "IOTC_JWT_MAX_BYTES", JWT_MAX_SIZE),
        publish_interval_s=_non_negative(src, "IOTC_PUBLISH_INTERVAL", 0),
        publish_count=_non_negative(src, "IOTC_PUBLISH_COUNT", 0),
        version=_package_version(),
    )
