"""
Transport capability surface consumed by the connection manager.

The transport owns the socket, the MQTT framing and the blocking event loop.
Everything it reports back (connection state changes, inbound messages,
publish acknowledgements) is delivered as a callback on that loop, in the
order the underlying transitions happened.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Protocol, Union

from iotcore_device_client.credentials import Credential, Identity
from iotcore_device_client.scheduler import TaskHandle
from iotcore_device_client.topics import QoS

ContextHandle = int

REASON_OK = 0


class TransportError(RuntimeError):
    """Raised for transport misuse: uninitialized library, unknown context."""


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    OPEN_FAILED = "open_failed"
    CLOSED = "closed"


@dataclass(frozen=True, slots=True)
class ConnectionEvent:
    state: ConnectionState
    reason_code: int = REASON_OK
    reason: str = "ok"

    @property
    def is_ok(self) -> bool:
        return self.reason_code == REASON_OK


class SubscriptionEventKind(str, Enum):
    MESSAGE = "message"
    SUBACK = "suback"
    SUBSCRIBE_FAILED = "subscribe_failed"


@dataclass(frozen=True, slots=True)
class SubscriptionEvent:
    kind: SubscriptionEventKind
    topic: str
    payload: bytes = b""
    qos: int = 0


@dataclass(frozen=True, slots=True)
class Timeouts:
    connect_s: int = 10
    keepalive_s: int = 20


StateCallback = Callable[[ContextHandle, ConnectionEvent], None]
MessageCallback = Callable[[SubscriptionEvent], None]
PublishCallback = Callable[[int], None]
TimedAction = Callable[[TaskHandle], None]


class Transport(Protocol):
    def initialize(self) -> None: ...

    def create_context(self) -> ContextHandle: ...

    def connect(
        self,
        ctx: ContextHandle,
        credential: Credential,
        identity: Identity,
        timeouts: Timeouts,
        state_callback: StateCallback,
    ) -> None: ...

    def publish(
        self,
        ctx: ContextHandle,
        topic: str,
        payload: Union[bytes, str],
        qos: QoS,
        callback: Optional[PublishCallback] = None,
    ) -> int: ...

    def subscribe(
        self,
        ctx: ContextHandle,
        topic: str,
        qos: QoS,
        message_callback: MessageCallback,
    ) -> int: ...

    def schedule_recurring(
        self,
        ctx: ContextHandle,
        interval_s: float,
        action: TimedAction,
        repetitions: Optional[int] = None,
    ) -> TaskHandle: ...

    def cancel_timed_task(self, handle: Optional[TaskHandle]) -> None: ...

    def disconnect(self, ctx: ContextHandle) -> None: ...

    def run_event_loop_blocking(self) -> None: ...

    def stop_event_loop(self) -> None: ...

    def destroy_context(self, ctx: ContextHandle) -> None: ...

    def shutdown(self) -> None: ...
