from __future__ import annotations

import threading

from iotcore_device_client.client import SHUTDOWN_POLL_S, DeviceClient
from iotcore_device_client.router import MessageRouter
from iotcore_device_client.topics import QoS
from iotcore_device_client.transport import (
    ConnectionState,
    SubscriptionEvent,
    SubscriptionEventKind,
)


def _publish_task(client):
    return client.manager.delayed_publish_task


def test_scenario_a_publish_then_graceful_close(make_config, fake_transport):
    client = DeviceClient(make_config(), transport=fake_transport)
    fake_transport.script = [
        lambda t: t.deliver(ConnectionState.OPEN),
        lambda t: t.deliver(ConnectionState.CLOSED),
    ]

    code = client.run()

    assert code == 0
    assert fake_transport.published == [(1, "Channel", b"Message", QoS.AT_LEAST_ONCE)]
    assert fake_transport.subscribed[0][1:3] == ("Channel", QoS.EXACTLY_ONCE)
    assert len(fake_transport.connect_calls) == 1
    assert fake_transport.stop_calls == 1
    credential = fake_transport.connect_calls[0][1]
    assert credential.expires_at - credential.issued_at == 3600


def test_scenario_a_resource_lifecycle_order(make_config, fake_transport):
    client = DeviceClient(make_config(), transport=fake_transport)
    fake_transport.script = [
        lambda t: t.deliver(ConnectionState.OPEN),
        lambda t: t.deliver(ConnectionState.CLOSED),
    ]

    client.run()

    calls = fake_transport.calls
    assert calls[:2] == ["initialize", "create_context"]
    assert calls[-2:] == ["destroy_context", "shutdown"]
    assert calls.index("connect") < calls.index("run")


def test_scenario_b_missing_key_exits_before_connect(make_config, fake_transport, tmp_path):
    client = DeviceClient(
        make_config(private_key_file=str(tmp_path / "absent.pem")),
        transport=fake_transport,
    )

    assert client.run() == 1
    assert fake_transport.calls == []


def test_oversized_key_exits_before_connect(make_config, fake_transport):
    client = DeviceClient(make_config(private_key_max_bytes=64), transport=fake_transport)

    assert client.run() == 1
    assert fake_transport.calls == []


def test_unusable_key_exits_before_connect(make_config, fake_transport, tmp_path):
    bad = tmp_path / "bad.pem"
    bad.write_bytes(b"k" * 64)
    client = DeviceClient(make_config(private_key_file=str(bad)), transport=fake_transport)

    assert client.run() == 1
    assert fake_transport.calls == []


def test_scenario_c_network_error_reconnects_once(make_config, fake_transport):
    client = DeviceClient(make_config(publish_interval_s=5), transport=fake_transport)
    seen = {}

    def drop(t):
        seen["task"] = _publish_task(client)
        t.deliver(ConnectionState.CLOSED, reason_code=7, reason="network-error")

    fake_transport.script = [
        lambda t: t.deliver(ConnectionState.OPEN),
        drop,
        lambda t: t.deliver(ConnectionState.OPEN),
        lambda t: t.deliver(ConnectionState.CLOSED),
    ]

    assert client.run() == 0
    assert seen["task"] is not None
    assert seen["task"] in fake_transport.cancelled
    assert len(fake_transport.connect_calls) == 2
    assert client.manager.reconnect_count == 1
    # subscribed and published again on the new session
    assert len(fake_transport.subscribed) == 2
    assert len(fake_transport.published) == 2


def test_initial_connect_failure_exits_nonzero(make_config, fake_transport):
    client = DeviceClient(make_config(), transport=fake_transport)
    fake_transport.script = [
        lambda t: t.deliver(ConnectionState.OPEN_FAILED, reason_code=5, reason="not authorized"),
    ]

    assert client.run() == 1
    assert fake_transport.published == []
    assert fake_transport.calls[-2:] == ["destroy_context", "shutdown"]


def test_recurring_publish_until_count_reached(make_config, fake_transport):
    client = DeviceClient(make_config(publish_interval_s=5, publish_count=3), transport=fake_transport)

    def tick(t):
        t.fire(_publish_task(client))

    fake_transport.script = [lambda t: t.deliver(ConnectionState.OPEN), tick, tick, tick]

    assert client.run() == 0
    assert len(fake_transport.published) == 3
    assert "disconnect" in fake_transport.calls
    assert fake_transport.stop_calls == 1
    assert client.manager.delayed_publish_task is None


def test_shutdown_event_closes_connection(make_config, fake_transport):
    shutdown = threading.Event()
    client = DeviceClient(make_config(), transport=fake_transport, shutdown=shutdown)

    def request_stop(t):
        shutdown.set()
        for handle, (interval, action) in list(t.tasks.items()):
            if interval == SHUTDOWN_POLL_S:
                action(handle)

    fake_transport.script = [lambda t: t.deliver(ConnectionState.OPEN), request_stop]

    assert client.run() == 0
    assert "disconnect" in fake_transport.calls
    assert fake_transport.stop_calls == 1


def test_shutdown_watch_survives_reconnect_and_is_cancelled_at_exit(make_config, fake_transport):
    client = DeviceClient(make_config(publish_interval_s=5), transport=fake_transport)
    seen = {}

    def drop(t):
        seen["watch"] = client.shutdown_watch_task
        seen["publish"] = _publish_task(client)
        t.deliver(ConnectionState.CLOSED, reason_code=7, reason="network-error")
        seen["live_after_drop"] = client.shutdown_watch_task in t.tasks

    fake_transport.script = [
        lambda t: t.deliver(ConnectionState.OPEN),
        drop,
        lambda t: t.deliver(ConnectionState.CLOSED),
    ]

    assert client.run() == 0
    assert seen["watch"] != seen["publish"]
    assert seen["live_after_drop"]
    assert seen["watch"] in fake_transport.cancelled
    assert seen["watch"] not in fake_transport.tasks
    assert client.shutdown_watch_task is None


def test_inbound_messages_reach_router(make_config, fake_transport):
    received = []
    router = MessageRouter()
    router.add_handler("Channel", lambda t, p: received.append((t, p)))
    client = DeviceClient(make_config(), transport=fake_transport, router=router)

    def inbound(t):
        callback = t.subscribed[0][3]
        callback(SubscriptionEvent(kind=SubscriptionEventKind.SUBACK, topic="Channel", qos=2))
        callback(SubscriptionEvent(kind=SubscriptionEventKind.MESSAGE, topic="Channel", payload=b"hi", qos=2))

    fake_transport.script = [
        lambda t: t.deliver(ConnectionState.OPEN),
        inbound,
        lambda t: t.deliver(ConnectionState.CLOSED),
    ]

    assert client.run() == 0
    assert received == [("Channel", b"hi")]
