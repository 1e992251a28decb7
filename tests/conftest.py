"""
Pytest configuration and shared fixtures
"""
import itertools
import os
import sys

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from iotcore_device_client.config import DeviceConfig  # noqa: E402
from iotcore_device_client.credentials import Identity  # noqa: E402
from iotcore_device_client.key_store import KeyAlgorithm  # noqa: E402
from iotcore_device_client.scheduler import TaskHandle  # noqa: E402
from iotcore_device_client.topics import QoS  # noqa: E402
from iotcore_device_client.transport import ConnectionEvent, ConnectionState  # noqa: E402


class FakeTransport:
    """
    Scripted stand-in for the paho transport.

    connect() reports CONNECTING synchronously; tests push the rest of the
    transitions with deliver(). run_event_loop_blocking() runs the steps in
    `script` until the loop is stopped.
    """

    def __init__(self):
        self.calls = []
        self.connect_calls = []
        self.published = []
        self.subscribed = []
        self.tasks = {}
        self.cancelled = []
        self.destroyed = []
        self.state_callback = None
        self.stop_calls = 0
        self.stopped = False
        self.shutdown_calls = 0
        self.graceful_disconnect = True
        self.script = []
        self._ids = itertools.count(1)

    def initialize(self):
        self.calls.append("initialize")

    def create_context(self):
        self.calls.append("create_context")
        return 1

    def connect(self, ctx, credential, identity, timeouts, state_callback):
        self.calls.append("connect")
        self.connect_calls.append((ctx, credential, identity, timeouts))
        self.state_callback = state_callback
        state_callback(ctx, ConnectionEvent(ConnectionState.CONNECTING))

    def deliver(self, state, reason_code=0, reason="ok"):
        self.state_callback(1, ConnectionEvent(state, reason_code=reason_code, reason=reason))

    def publish(self, ctx, topic, payload, qos, callback=None):
        self.calls.append("publish")
        self.published.append((ctx, topic, payload, qos))
        return len(self.published)

    def subscribe(self, ctx, topic, qos, message_callback):
        self.calls.append("subscribe")
        self.subscribed.append((ctx, topic, qos, message_callback))
        return len(self.subscribed)

    def schedule_recurring(self, ctx, interval_s, action, repetitions=None):
        handle = TaskHandle(next(self._ids))
        self.calls.append("schedule")
        self.tasks[handle] = (interval_s, action)
        return handle

    def cancel_timed_task(self, handle):
        self.calls.append("cancel")
        self.cancelled.append(handle)
        self.tasks.pop(handle, None)

    def fire(self, handle):
        self.tasks[handle][1](handle)

    def disconnect(self, ctx):
        self.calls.append("disconnect")
        if self.graceful_disconnect:
            self.deliver(ConnectionState.CLOSED)

    def run_event_loop_blocking(self):
        self.calls.append("run")
        while self.script and not self.stopped:
            self.script.pop(0)(self)

    def stop_event_loop(self):
        self.calls.append("stop")
        self.stop_calls += 1
        self.stopped = True

    def destroy_context(self, ctx):
        self.calls.append("destroy_context")
        self.destroyed.append(ctx)

    def shutdown(self):
        self.calls.append("shutdown")
        self.shutdown_calls += 1


@pytest.fixture
def fake_transport():
    return FakeTransport()


@pytest.fixture
def ec_key_pem():
    """PEM (SEC1) encoded P-256 private key, well under the 256-byte buffer."""
    key = ec.generate_private_key(ec.SECP256R1())
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.TraditionalOpenSSL,
        serialization.NoEncryption(),
    )


@pytest.fixture
def key_file(tmp_path, ec_key_pem):
    path = tmp_path / "ec_private.pem"
    path.write_bytes(ec_key_pem)
    return path


@pytest.fixture
def identity():
    return Identity(project_id="p1", device_path="d1")


@pytest.fixture
def make_config(key_file):
    """Build a DeviceConfig with test defaults; keyword args override fields."""

    def _make(**overrides):
        values = dict(
            project_id="p1",
            device_path="d1",
            publish_topic="Channel",
            publish_message="Message",
            subscribe_topic="Channel",
            publish_qos=QoS.AT_LEAST_ONCE,
            subscribe_qos=QoS.EXACTLY_ONCE,
            private_key_file=str(key_file),
            private_key_max_bytes=256,
            key_algorithm=KeyAlgorithm.ES256,
            mqtt_host="localhost",
            mqtt_port=8883,
            mqtt_username="unused",
            tls=True,
            ca_certs=None,
            connect_timeout_s=10,
            keepalive_s=20,
            jwt_ttl_s=3600,
            jwt_refresh_margin_s=60,
            jwt_max_bytes=1024,
            publish_interval_s=0,
            publish_count=0,
            version="1.0.0-test",
        )
        values.update(overrides)
        return DeviceConfig(**values)

    return _make
