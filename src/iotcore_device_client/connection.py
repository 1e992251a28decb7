"""
Connection lifecycle state machine.

State changes only on transport notifications:

    DISCONNECTED -> CONNECTING -> OPEN -> CLOSED (ok)        stop loop
                               |       -> CLOSED (other)     reconnect
                               -> OPEN_FAILED                stop loop

A close always cancels the delayed publish task before anything else happens,
so no task outlives the connection it was scheduled for. Reconnects are
immediate and unbounded; the credential is reissued only when it has expired.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional, Union

from iotcore_device_client.credentials import Credential, CredentialError, CredentialIssuer, Identity
from iotcore_device_client.scheduler import TaskHandle
from iotcore_device_client.topics import Message, QoS
from iotcore_device_client.transport import (
    ConnectionEvent,
    ConnectionState,
    ContextHandle,
    MessageCallback,
    PublishCallback,
    TimedAction,
    Timeouts,
    Transport,
)

logger = logging.getLogger(__name__)


class ConnectFailure(Exception):
    """The broker rejected or could not be reached on a connection attempt."""

    def __init__(self, event: ConnectionEvent) -> None:
        super().__init__(f"connection failed: {event.reason} (code {event.reason_code})")
        self.event = event


class ConnectionManager:
    """
    Owns the single logical connection for one transport context.

    on_open is called on every transition into OPEN, including after a
    reconnect; subscriptions do not survive a new MQTT session.
    """

    def __init__(
        self,
        transport: Transport,
        ctx: ContextHandle,
        issuer: CredentialIssuer,
        *,
        timeouts: Optional[Timeouts] = None,
        refresh_margin_s: float = 0,
        on_open: Optional[Callable[["ConnectionManager"], None]] = None,
    ) -> None:
        self.transport = transport
        self.ctx = ctx
        self.issuer = issuer
        self.timeouts = timeouts or Timeouts()
        self.refresh_margin_s = refresh_margin_s
        self.on_open = on_open

        self.state = ConnectionState.DISCONNECTED
        self.credential: Optional[Credential] = None
        self.delayed_publish_task: Optional[TaskHandle] = None
        self.reconnect_count = 0
        self.failure: Optional[Exception] = None
        self.stopped = False
        self.connect_requested = False

    @property
    def identity(self) -> Identity:
        return self.issuer.identity

    @property
    def exit_code(self) -> int:
        return 1 if self.failure is not None else 0

    # -------------------------
    # Credential
    # -------------------------
    def _current_credential(self) -> Credential:
        cred = self.credential
        if cred is None or cred.is_expired(self.issuer.clock(), self.refresh_margin_s):
            if cred is not None:
                logger.info("JWT expired or near expiry; issuing a new one")
            cred = self.issuer.issue()
            self.credential = cred
        return cred

    # -------------------------
    # Lifecycle
    # -------------------------
    def connect(self, credential: Optional[Credential] = None) -> bool:
        """
        Request the initial connection. Completion is reported only through
        on_state_changed. Raises CredentialError if a credential is needed
        and cannot be issued.

        Only one attempt is ever in flight: once requested, further calls are
        refused and return False. Reconnects are driven by close
        notifications, not by callers.
        """
        if self.connect_requested or self.stopped or self.state is not ConnectionState.DISCONNECTED:
            logger.warning("Connect ignored; connection is %s", self.state.value)
            return False
        if credential is not None:
            self.credential = credential
        self._connect()
        self.connect_requested = True
        return True

    def _connect(self) -> None:
        cred = self._current_credential()
        logger.info("Connecting as %s", self.identity.client_id)
        self.transport.connect(
            self.ctx,
            cred,
            self.identity,
            self.timeouts,
            self.on_state_changed,
        )

    def on_state_changed(self, ctx: ContextHandle, event: ConnectionEvent) -> None:
        previous = self.state
        self.state = event.state
        logger.debug("Connection state %s -> %s", previous.value, event.state.value)

        if event.state is ConnectionState.CONNECTING:
            return

        if event.state is ConnectionState.OPEN:
            logger.info("Connected to broker")
            if self.on_open is not None:
                try:
                    self.on_open(self)
                except Exception:
                    logger.exception("on_open hook failed")
            return

        if event.state is ConnectionState.OPEN_FAILED:
            logger.error("Connection has failed, reason %s (code %s)", event.reason, event.reason_code)
            self.failure = ConnectFailure(event)
            self._stop()
            return

        if event.state is ConnectionState.CLOSED:
            self.cancel_delayed_publish()
            if event.is_ok or self.stopped:
                logger.info("Connection closed")
                self._stop()
                return

            logger.warning("Connection closed - reason %s (code %s); reconnecting", event.reason, event.reason_code)
            self.reconnect_count += 1
            try:
                self._connect()
            except CredentialError as exc:
                logger.error("Could not reissue credential for reconnect: %s", exc)
                self.failure = exc
                self._stop()
            return

        logger.warning("Unexpected connection state %s", event.state)

    def shutdown(self) -> None:
        """Graceful stop: close the connection if open, else stop the loop."""
        if self.stopped:
            return
        self.stopped = True
        if self.state is ConnectionState.OPEN:
            logger.info("Disconnecting")
            self.transport.disconnect(self.ctx)
            return
        self.cancel_delayed_publish()
        self.transport.stop_event_loop()

    def _stop(self) -> None:
        self.stopped = True
        self.transport.stop_event_loop()

    # -------------------------
    # Publish / subscribe
    # -------------------------
    def publish(self, message: Message, callback: Optional[PublishCallback] = None) -> int:
        logger.info('Publishing msg "%s" to topic: "%s"', message.payload.decode("utf-8", errors="replace"), message.topic)
        return self.transport.publish(self.ctx, message.topic, message.payload, message.qos, callback)

    def subscribe(self, topic: str, qos: Union[QoS, int], callback: MessageCallback) -> int:
        logger.info("Subscribing to %s (qos=%d)", topic, int(qos))
        return self.transport.subscribe(self.ctx, topic, QoS(qos), callback)

    # -------------------------
    # Delayed publish task
    # -------------------------
    def schedule_delayed_publish(
        self,
        interval_s: float,
        action: TimedAction,
        repetitions: Optional[int] = None,
    ) -> TaskHandle:
        if self.delayed_publish_task is not None:
            logger.warning("Delayed publish task already live; replacing it")
            self.cancel_delayed_publish()
        self.delayed_publish_task = self.transport.schedule_recurring(
            self.ctx, interval_s, action, repetitions
        )
        return self.delayed_publish_task

    def cancel_delayed_publish(self) -> None:
        if self.delayed_publish_task is None:
            return
        self.transport.cancel_timed_task(self.delayed_publish_task)
        self.delayed_publish_task = None
