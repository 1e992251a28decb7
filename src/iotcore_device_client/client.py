"""
Device client aggregate.

Holds every piece of per-process state (key, credential issuer, transport
context, connection manager, router) and runs the start-up pipeline:

    load key -> issue JWT -> init transport -> create context -> connect
    -> run event loop -> destroy context -> shut transport down
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

from iotcore_device_client.config import DeviceConfig
from iotcore_device_client.connection import ConnectionManager
from iotcore_device_client.credentials import Credential, CredentialError, CredentialIssuer, Identity
from iotcore_device_client.key_store import KeyLoadError, PrivateKey, load_private_key
from iotcore_device_client.mqtt_transport import PahoTransport
from iotcore_device_client.router import MessageRouter, log_message
from iotcore_device_client.scheduler import TaskHandle
from iotcore_device_client.topics import Message
from iotcore_device_client.transport import ContextHandle, Timeouts, Transport, TransportError

logger = logging.getLogger(__name__)

SHUTDOWN_POLL_S = 0.5


def build_transport(cfg: DeviceConfig) -> PahoTransport:
    return PahoTransport(
        cfg.mqtt_host,
        cfg.mqtt_port,
        username=cfg.mqtt_username,
        tls=cfg.tls,
        ca_certs=cfg.ca_certs,
    )


class DeviceClient:
    """
    One device, one connection. run() blocks until the connection is closed
    gracefully or fails fatally and returns the process exit code.

    shutdown is polled from the event loop; setting it (e.g. from a signal
    handler) closes the connection gracefully.
    """

    def __init__(
        self,
        cfg: DeviceConfig,
        *,
        transport: Optional[Transport] = None,
        router: Optional[MessageRouter] = None,
        shutdown: Optional[threading.Event] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cfg = cfg
        self.transport: Transport = transport if transport is not None else build_transport(cfg)
        self.router = router or MessageRouter(default_handler=log_message)
        self.shutdown_event = shutdown or threading.Event()
        self.clock = clock
        self.identity = Identity(project_id=cfg.project_id, device_path=cfg.device_path)

        self.key: Optional[PrivateKey] = None
        self.issuer: Optional[CredentialIssuer] = None
        self.context: Optional[ContextHandle] = None
        self.manager: Optional[ConnectionManager] = None
        self.shutdown_watch_task: Optional[TaskHandle] = None
        self.published = 0

    def run(self) -> int:
        try:
            self.key = load_private_key(
                self.cfg.private_key_file,
                self.cfg.private_key_max_bytes,
                algorithm=self.cfg.key_algorithm,
            )
        except KeyLoadError as exc:
            logger.error("Error loading IoT Core private key: %s", exc)
            return 1

        self.issuer = CredentialIssuer(
            self.key,
            self.identity,
            self.cfg.jwt_ttl_s,
            clock=self.clock,
            max_token_size=self.cfg.jwt_max_bytes,
        )
        try:
            credential = self.issuer.issue()
        except CredentialError as exc:
            logger.error("Failed to create JWT: %s", exc)
            return 1

        try:
            self.transport.initialize()
        except TransportError as exc:
            logger.error("Failed to initialize transport: %s", exc)
            return 1

        try:
            try:
                self.context = self.transport.create_context()
            except TransportError as exc:
                logger.error("Failed to create context: %s", exc)
                return 1
            try:
                return self._run_connection(credential)
            finally:
                self.transport.destroy_context(self.context)
                self.context = None
        finally:
            self.transport.shutdown()

    def _run_connection(self, credential: Credential) -> int:
        self.manager = ConnectionManager(
            self.transport,
            self.context,
            self.issuer,
            timeouts=Timeouts(
                connect_s=self.cfg.connect_timeout_s,
                keepalive_s=self.cfg.keepalive_s,
            ),
            refresh_margin_s=self.cfg.jwt_refresh_margin_s,
            on_open=self._on_open,
        )
        # Lives for the whole run, across reconnects; not a publish task.
        self.shutdown_watch_task = self.transport.schedule_recurring(
            self.context, SHUTDOWN_POLL_S, self._check_shutdown
        )
        try:
            try:
                self.manager.connect(credential)
            except TransportError as exc:
                logger.error("Failed to start connection: %s", exc)
                return 1
            self.transport.run_event_loop_blocking()
        finally:
            self.transport.cancel_timed_task(self.shutdown_watch_task)
            self.shutdown_watch_task = None

        if self.manager.failure is not None:
            logger.error("Stopped after failure: %s", self.manager.failure)
        else:
            logger.info("Stopped (published %d messages, %d reconnects)", self.published, self.manager.reconnect_count)
        return self.manager.exit_code

    def _on_open(self, manager: ConnectionManager) -> None:
        manager.subscribe(self.cfg.subscribe_topic, self.cfg.subscribe_qos, self.router)
        self.publish_once()
        if self.cfg.publish_interval_s > 0 and not manager.stopped:
            manager.schedule_delayed_publish(self.cfg.publish_interval_s, self._on_publish_timer)

    def _on_publish_timer(self, handle: TaskHandle) -> None:
        self.publish_once()

    def publish_once(self) -> None:
        manager = self.manager
        if manager is None or manager.stopped:
            return
        message = Message(self.cfg.publish_topic, self.cfg.publish_message, self.cfg.publish_qos)
        manager.publish(message)
        self.published += 1
        if self.cfg.publish_count and self.published >= self.cfg.publish_count:
            logger.info("Published %d messages; shutting down", self.published)
            manager.shutdown()

    def _check_shutdown(self, handle: TaskHandle) -> None:
        if self.shutdown_event.is_set() and self.manager is not None and not self.manager.stopped:
            logger.info("Shutdown requested")
            self.manager.shutdown()
