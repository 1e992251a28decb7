"""
IoT Core device client entrypoint.

CLI:
  iotcore-device run       -> connect, publish, stay connected until stopped
  iotcore-device --version
"""

from __future__ import annotations

import argparse
import logging
import signal
import threading
from dataclasses import dataclass
from importlib.metadata import PackageNotFoundError, version as pkg_version
from typing import Optional


def _configure_logging() -> None:
    """
    Single log level for all scopes.
    Uses IOTC_LOG_LEVEL env, else INFO.
    """
    from iotcore_device_client.log_config import apply_log_level, level_from_env

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    apply_log_level(level_from_env())


_configure_logging()
logger = logging.getLogger(__name__)


def get_version_string() -> str:
    try:
        return pkg_version("iotcore-device-client")
    except PackageNotFoundError:
        return "0.0.0+dev"


@dataclass
class Runtime:
    shutdown: threading.Event


def _install_signal_handlers(rt: Runtime) -> None:
    def _handler(signum: int, frame) -> None:  # frame is unused, keep signature
        logger.info("Received signal %s; requesting shutdown", signum)
        rt.shutdown.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def run_device(overrides: Optional[dict[str, Optional[str]]] = None) -> int:
    """
    Runtime mode: load config, connect, block until the connection stops.
    Returns process exit code.
    """
    from iotcore_device_client.client import DeviceClient
    from iotcore_device_client.config import ConfigError, load_config

    try:
        cfg = load_config(overrides=overrides)
    except ConfigError as exc:
        logger.error("%s", exc)
        return 1

    rt = Runtime(shutdown=threading.Event())
    _install_signal_handlers(rt)

    logger.info("============================================================")
    logger.info("IoT Core device client")
    logger.info("Version: %s", get_version_string())
    logger.info("Project: %s", cfg.project_id)
    logger.info("Device: %s", cfg.device_path)
    logger.info("Broker: %s:%d", cfg.mqtt_host, cfg.mqtt_port)
    logger.info("============================================================")

    return DeviceClient(cfg, shutdown=rt.shutdown).run()


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="iotcore-device")
    p.add_argument("--version", action="version", version=get_version_string())

    sub = p.add_subparsers(dest="cmd", required=True)

    run = sub.add_parser("run", help="Connect and run until stopped")
    run.add_argument("-p", "--project-id", help="Cloud project id (IOTC_PROJECT_ID)")
    run.add_argument("-d", "--device-path", help="Full device path, used as client id (IOTC_DEVICE_PATH)")
    run.add_argument("-t", "--publish-topic", help="Topic to publish to (IOTC_PUBLISH_TOPIC)")
    run.add_argument("-m", "--publish-message", help="Message payload (IOTC_PUBLISH_MESSAGE)")
    run.add_argument("-f", "--private-key", metavar="PATH", help="PEM private key file (IOTC_PRIVATE_KEY_FILE)")
    run.add_argument("--host", help="Broker host (MQTT_HOST)")
    run.add_argument("--port", help="Broker port (MQTT_PORT)")

    return p


def _overrides(args: argparse.Namespace) -> dict[str, Optional[str]]:
    return {
        "IOTC_PROJECT_ID": args.project_id,
        "IOTC_DEVICE_PATH": args.device_path,
        "IOTC_PUBLISH_TOPIC": args.publish_topic,
        "IOTC_PUBLISH_MESSAGE": args.publish_message,
        "IOTC_PRIVATE_KEY_FILE": args.private_key,
        "MQTT_HOST": args.host,
        "MQTT_PORT": args.port,
    }


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)

    if args.cmd == "run":
        raise SystemExit(run_device(_overrides(args)))

    raise SystemExit(2)


if __name__ == "__main__":
    main()
