"""
paho-mqtt implementation of the transport surface.

Runs a single-threaded event loop: each step calls Client.loop() for socket
I/O, then delivers the callbacks paho raised during that step (in order),
then fires due timed tasks. paho callbacks are queued rather than handled
inline so that the connection manager can reconnect from a close
notification without re-entering paho.
"""

from __future__ import annotations

import itertools
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Union

import paho.mqtt.client as mqtt

from iotcore_device_client.credentials import Credential, Identity
from iotcore_device_client.scheduler import TaskHandle, TimedTaskScheduler
from iotcore_device_client.topics import QoS
from iotcore_device_client.transport import (
    REASON_OK,
    ConnectionEvent,
    ConnectionState,
    ContextHandle,
    MessageCallback,
    PublishCallback,
    StateCallback,
    SubscriptionEvent,
    SubscriptionEventKind,
    TimedAction,
    Timeouts,
    TransportError,
)

logger = logging.getLogger(__name__)

DEFAULT_HOST = "mqtt.googleapis.com"
DEFAULT_PORT = 8883
DEFAULT_USERNAME = "unused"


def _code(reason_code: Any) -> int:
    """paho 2 passes ReasonCode objects; plain ints are accepted too."""
    return int(getattr(reason_code, "value", reason_code))


def _describe(reason_code: Any) -> str:
    if _code(reason_code) == REASON_OK:
        return "ok"
    return str(reason_code)


@dataclass
class _Context:
    handle: ContextHandle
    client: Optional[mqtt.Client] = None
    state_callback: Optional[StateCallback] = None
    opened: bool = False
    attempt_failed: bool = False
    subscriptions: dict[str, MessageCallback] = field(default_factory=dict)
    pending_subscribes: dict[int, str] = field(default_factory=dict)
    publish_callbacks: dict[int, PublishCallback] = field(default_factory=dict)


class PahoTransport:
    def __init__(
        self,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        *,
        username: str = DEFAULT_USERNAME,
        tls: bool = True,
        ca_certs: Optional[str] = None,
        loop_timeout_s: float = 0.1,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.tls = tls
        self.ca_certs = ca_certs
        self.loop_timeout_s = loop_timeout_s

        self._scheduler = TimedTaskScheduler(clock)
        self._contexts: dict[ContextHandle, _Context] = {}
        self._handles = itertools.count(1)
        self._pending: deque[Callable[[], None]] = deque()
        self._initialized = False
        self._stopped = False

    # -------------------------
    # Library / context
    # -------------------------
    def initialize(self) -> None:
        self._initialized = True
        self._stopped = False
        logger.debug("Transport initialized for %s:%d", self.host, self.port)

    def create_context(self) -> ContextHandle:
        if not self._initialized:
            raise TransportError("transport not initialized")
        handle = next(self._handles)
        self._contexts[handle] = _Context(handle)
        return handle

    def destroy_context(self, ctx: ContextHandle) -> None:
        c = self._contexts.pop(ctx, None)
        if c is None or c.client is None:
            return
        try:
            if c.client.is_connected():
                c.client.disconnect()
        except Exception:
            logger.exception("Error disconnecting context %d", ctx)

    def shutdown(self) -> None:
        for ctx in list(self._contexts):
            self.destroy_context(ctx)
        self._scheduler.clear()
        self._pending.clear()
        self._initialized = False

    def _context(self, ctx: ContextHandle) -> _Context:
        c = self._contexts.get(ctx)
        if c is None:
            raise TransportError(f"unknown context {ctx}")
        return c

    def _connected_client(self, ctx: ContextHandle) -> mqtt.Client:
        c = self._context(ctx)
        if c.client is None:
            raise TransportError(f"context {ctx} has no connection")
        return c.client

    # -------------------------
    # Connection
    # -------------------------
    def _new_client(self, ctx: ContextHandle, identity: Identity) -> mqtt.Client:
        client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=identity.client_id,
            protocol=mqtt.MQTTv311,
            userdata=ctx,
        )
        if self.tls:
            client.tls_set(ca_certs=self.ca_certs)
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        client.on_subscribe = self._on_subscribe
        client.on_publish = self._on_publish
        return client

    def connect(
        self,
        ctx: ContextHandle,
        credential: Credential,
        identity: Identity,
        timeouts: Timeouts,
        state_callback: StateCallback,
    ) -> None:
        c = self._context(ctx)
        if c.client is None:
            c.client = self._new_client(ctx, identity)
        c.state_callback = state_callback
        c.opened = False
        c.attempt_failed = False

        client = c.client
        client.username_pw_set(self.username, credential.token)
        client.connect_timeout = float(timeouts.connect_s)

        self._emit_state(c, ConnectionEvent(ConnectionState.CONNECTING))
        # Blocks on DNS and the TCP/TLS handshake; only CONNACK arrives
        # through loop().
        try:
            client.connect(self.host, self.port, keepalive=timeouts.keepalive_s)
        except (OSError, ValueError) as exc:
            logger.error("MQTT connect to %s:%d failed: %s", self.host, self.port, exc)
            c.attempt_failed = True
            self._emit_state(
                c,
                ConnectionEvent(ConnectionState.OPEN_FAILED, reason_code=-1, reason=str(exc)),
            )

    def disconnect(self, ctx: ContextHandle) -> None:
        self._connected_client(ctx).disconnect()

    def _emit_state(self, c: _Context, event: ConnectionEvent) -> None:
        callback = c.state_callback
        if callback is None:
            return
        self._pending.append(lambda: callback(c.handle, event))

    def _on_connect(self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any, properties: Any) -> None:
        c = self._contexts.get(userdata)
        if c is None:
            return
        code = _code(reason_code)
        if code != REASON_OK:
            c.attempt_failed = True
            self._emit_state(
                c,
                ConnectionEvent(ConnectionState.OPEN_FAILED, reason_code=code, reason=str(reason_code)),
            )
            return
        c.opened = True
        self._emit_state(c, ConnectionEvent(ConnectionState.OPEN))

    def _on_disconnect(
        self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any, properties: Any
    ) -> None:
        c = self._contexts.get(userdata)
        if c is None:
            return
        code = _code(reason_code)
        if not c.opened:
            if c.attempt_failed:
                return
            c.attempt_failed = True
            state = ConnectionState.OPEN_FAILED
            if code == REASON_OK:
                code = -1
        else:
            c.opened = False
            state = ConnectionState.CLOSED
        self._emit_state(c, ConnectionEvent(state, reason_code=code, reason=_describe(reason_code)))

    # -------------------------
    # Publish / subscribe
    # -------------------------
    def publish(
        self,
        ctx: ContextHandle,
        topic: str,
        payload: Union[bytes, str],
        qos: QoS,
        callback: Optional[PublishCallback] = None,
    ) -> int:
        c = self._context(ctx)
        client = self._connected_client(ctx)
        info = client.publish(topic, payload=payload, qos=int(qos))
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            logger.warning("Publish to %s queued with rc=%s", topic, info.rc)
        if callback is not None:
            c.publish_callbacks[info.mid] = callback
        return info.mid

    def _on_publish(self, client: mqtt.Client, userdata: Any, mid: int, reason_code: Any, properties: Any) -> None:
        c = self._contexts.get(userdata)
        if c is None:
            return

        # qos 0 acks can arrive from inside publish(), before the mid is recorded
        def _deliver() -> None:
            callback = c.publish_callbacks.pop(mid, None)
            if callback is not None:
                callback(mid)

        self._pending.append(_deliver)

    def subscribe(
        self,
        ctx: ContextHandle,
        topic: str,
        qos: QoS,
        message_callback: MessageCallback,
    ) -> int:
        c = self._context(ctx)
        client = self._connected_client(ctx)
        c.subscriptions[topic] = message_callback
        result, mid = client.subscribe(topic, qos=int(qos))
        if result != mqtt.MQTT_ERR_SUCCESS:
            logger.warning("Subscribe to %s returned rc=%s", topic, result)
        c.pending_subscribes[mid] = topic
        return mid

    def _on_subscribe(
        self, client: mqtt.Client, userdata: Any, mid: int, reason_code_list: Any, properties: Any
    ) -> None:
        c = self._contexts.get(userdata)
        if c is None:
            return
        topic = c.pending_subscribes.pop(mid, None)
        if topic is None:
            return
        callback = c.subscriptions.get(topic)
        if callback is None:
            return
        granted = _code(reason_code_list[0]) if reason_code_list else 0
        kind = SubscriptionEventKind.SUBACK if granted < 0x80 else SubscriptionEventKind.SUBSCRIBE_FAILED
        event = SubscriptionEvent(kind=kind, topic=topic, qos=granted)
        self._pending.append(lambda: callback(event))

    def _on_message(self, client: mqtt.Client, userdata: Any, msg: mqtt.MQTTMessage) -> None:
        c = self._contexts.get(userdata)
        if c is None:
            return
        for topic_filter, callback in c.subscriptions.items():
            if mqtt.topic_matches_sub(topic_filter, msg.topic):
                event = SubscriptionEvent(
                    kind=SubscriptionEventKind.MESSAGE,
                    topic=msg.topic,
                    payload=bytes(msg.payload),
                    qos=msg.qos,
                )
                self._pending.append(lambda cb=callback, ev=event: cb(ev))
                return
        logger.warning("Message on unsubscribed topic: %s", msg.topic)

    # -------------------------
    # Timed tasks
    # -------------------------
    def schedule_recurring(
        self,
        ctx: ContextHandle,
        interval_s: float,
        action: TimedAction,
        repetitions: Optional[int] = None,
    ) -> TaskHandle:
        self._context(ctx)
        return self._scheduler.schedule_recurring(interval_s, action, repetitions=repetitions)

    def cancel_timed_task(self, handle: Optional[TaskHandle]) -> None:
        self._scheduler.cancel(handle)

    # -------------------------
    # Event loop
    # -------------------------
    def stop_event_loop(self) -> None:
        self._stopped = True

    def run_event_loop_blocking(self) -> None:
        """Process I/O, callbacks and timed tasks until stop_event_loop()."""
        logger.debug("Event loop started")
        self._dispatch_pending()
        while not self._stopped:
            self.step()
        logger.debug("Event loop stopped")

    def step(self) -> None:
        timeout = self.loop_timeout_s
        until_next = self._scheduler.seconds_until_next()
        if until_next is not None:
            timeout = min(timeout, until_next)

        polled = False
        for c in list(self._contexts.values()):
            if c.client is None:
                continue
            rc = c.client.loop(timeout=timeout)
            if rc != mqtt.MQTT_ERR_NO_CONN:
                polled = True
        if not polled and timeout > 0:
            time.sleep(timeout)

        self._dispatch_pending()
        if not self._stopped:
            self._scheduler.run_due()
            self._dispatch_pending()

    def _dispatch_pending(self) -> None:
        while self._pending and not self._stopped:
            callback = self._pending.popleft()
            try:
                callback()
            except Exception:
                logger.exception("Transport callback failed")
