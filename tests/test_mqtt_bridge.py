"""Tests for MQTTBridge state handling, subscriptions and reconnects."""

import asyncio
import time
from types import SimpleNamespace
from unittest.mock import MagicMock

import paho.mqtt.client as mqtt
import pytest

from ws_mqtt_gateway.mqtt_bridge import (
    AsyncMQTTBridge,
    BusConnectionState,
    BusEvent,
    BusStateChange,
    ExponentialBackoff,
    MQTTBridge,
    PublishError,
)
from ws_mqtt_gateway.topics import InvalidTopicError


@pytest.fixture
def events():
    return []


@pytest.fixture
def bridge(events):
    """MQTTBridge with a mocked paho client."""
    b = MQTTBridge(host="broker.test", on_event=events.append)
    client = MagicMock()
    client.subscribe.return_value = (mqtt.MQTT_ERR_SUCCESS, 1)
    client.publish.return_value = MagicMock(rc=mqtt.MQTT_ERR_SUCCESS)
    b._client = client
    return b


def connect(bridge: MQTTBridge) -> None:
    bridge._on_connect(bridge._client, None, {}, 0, None)


def wait_for(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class TestExponentialBackoff:

    def test_doubles_up_to_cap(self) -> None:
        backoff = ExponentialBackoff(initial=1.0, maximum=8.0)
        assert [backoff.next_delay() for _ in range(6)] == [1.0, 2.0, 4.0, 8.0, 8.0, 8.0]

    def test_reset(self) -> None:
        backoff = ExponentialBackoff(initial=0.5, maximum=4.0)
        backoff.next_delay()
        backoff.next_delay()
        backoff.reset()
        assert backoff.next_delay() == 0.5

    def test_fixed_delay(self) -> None:
        backoff = ExponentialBackoff(initial=2.0, maximum=2.0, factor=1.0)
        assert [backoff.next_delay() for _ in range(3)] == [2.0, 2.0, 2.0]

    @pytest.mark.parametrize("args", [(0, 1), (2, 1), (1, 2, 0.5)])
    def test_invalid_arguments(self, args) -> None:
        with pytest.raises(ValueError):
            ExponentialBackoff(*args)


class TestPublish:

    def test_publish_fails_when_disconnected(self, bridge) -> None:
        assert bridge.state is BusConnectionState.DISCONNECTED
        with pytest.raises(PublishError):
            bridge.publish("sensor/LED", '{"GPIO23": "on"}', qos=1)
        bridge._client.publish.assert_not_called()

    def test_publish_when_connected(self, bridge) -> None:
        connect(bridge)
        bridge.publish("sensor/LED", '{"GPIO23": "on"}', qos=1)
        bridge._client.publish.assert_called_once_with(
            "sensor/LED", '{"GPIO23": "on"}', qos=1, retain=False
        )
        assert bridge.get_stats()["messages_sent"] == 1

    def test_publish_rejected_by_client(self, bridge) -> None:
        connect(bridge)
        bridge._client.publish.return_value = MagicMock(rc=mqtt.MQTT_ERR_NO_CONN)
        with pytest.raises(PublishError):
            bridge.publish("sensor/LED", "x")

    def test_publish_invalid_topic(self, bridge) -> None:
        connect(bridge)
        with pytest.raises(PublishError):
            bridge.publish("esp32/+/light", "x")
        bridge._client.publish.assert_not_called()

    def test_publish_fails_after_disconnect(self, bridge) -> None:
        connect(bridge)
        bridge._on_disconnect(bridge._client, None, {}, 7, None)
        assert bridge.state is BusConnectionState.DISCONNECTED
        with pytest.raises(PublishError):
            bridge.publish("ghost/move/1", "left", qos=1)
        bridge._client.publish.assert_not_called()


class TestSubscriptions:

    def test_subscribe_is_queued_while_disconnected(self, bridge) -> None:
        bridge.subscribe("esp32/+/light")
        bridge._client.subscribe.assert_not_called()
        assert bridge.subscriptions == {"esp32/+/light": 0}

    def test_queued_subscriptions_replayed_on_connect(self, bridge) -> None:
        bridge.subscribe("esp32/+/light")
        bridge.subscribe("ghost/move/#", qos=1)
        connect(bridge)

        subscribed = {c.args[0]: c.kwargs["qos"] for c in bridge._client.subscribe.call_args_list}
        assert subscribed == {"esp32/+/light": 0, "ghost/move/#": 1}

    def test_subscriptions_replayed_on_every_reconnect(self, bridge) -> None:
        bridge.subscribe("status/led")
        connect(bridge)
        bridge._on_disconnect(bridge._client, None, {}, 7, None)
        connect(bridge)

        topics = [c.args[0] for c in bridge._client.subscribe.call_args_list]
        assert topics == ["status/led", "status/led"]

    def test_subscribe_when_connected_is_immediate(self, bridge) -> None:
        connect(bridge)
        bridge.subscribe("esp32/+/touch")
        bridge._client.subscribe.assert_called_once_with("esp32/+/touch", qos=0)

    def test_invalid_filter_is_rejected(self, bridge) -> None:
        with pytest.raises(InvalidTopicError):
            bridge.subscribe("a/#/b")
        assert bridge.subscriptions == {}


class TestEvents:

    def test_connect_and_disconnect_emit_state_changes(self, bridge, events) -> None:
        connect(bridge)
        bridge._on_disconnect(bridge._client, None, {}, 7, None)

        assert events == [
            BusStateChange(BusConnectionState.CONNECTED),
            BusStateChange(BusConnectionState.DISCONNECTED, "7"),
        ]

    def test_refused_connack_keeps_state(self, bridge, events) -> None:
        bridge.subscribe("status/led")
        bridge._on_connect(bridge._client, None, {}, 5, None)

        assert bridge.state is BusConnectionState.DISCONNECTED
        bridge._client.subscribe.assert_not_called()
        assert events == []

    def test_message_emits_bus_event(self, bridge, events) -> None:
        bridge._on_message(bridge._client, None, SimpleNamespace(topic="esp32/1/light", payload=b"42"))
        assert events == [BusEvent("esp32/1/light", b"42")]
        assert bridge.get_stats()["messages_received"] == 1

    def test_callback_errors_do_not_escape(self, bridge) -> None:
        bridge.on_event = MagicMock(side_effect=RuntimeError("boom"))
        bridge._on_message(bridge._client, None, SimpleNamespace(topic="t", payload=b"x"))


class TestNetworkLoop:

    def test_retries_until_connected_then_stops(self, events) -> None:
        b = MQTTBridge(
            host="broker.test",
            reconnect_min_delay=0.01,
            reconnect_max_delay=0.02,
            on_event=events.append,
        )
        client = MagicMock()
        client.subscribe.return_value = (mqtt.MQTT_ERR_SUCCESS, 1)
        client.connect.side_effect = [ConnectionRefusedError(), ConnectionRefusedError(), None]

        def fake_loop(timeout=0.1):
            if not b.connected:
                b._on_connect(client, None, {}, 0, None)
            time.sleep(0.005)
            return mqtt.MQTT_ERR_SUCCESS

        client.loop.side_effect = fake_loop
        b._client = client
        b.subscribe("status/led")

        b.start()
        try:
            assert wait_for(lambda: b.connected)
        finally:
            b.stop()

        assert client.connect.call_count == 3
        assert b.get_stats()["reconnect_attempts"] == 2
        client.subscribe.assert_called_with("status/led", qos=0)
        client.disconnect.assert_called_once()
        assert b.state is BusConnectionState.DISCONNECTED
        states = [e.state for e in events if isinstance(e, BusStateChange)]
        assert states[0] is BusConnectionState.CONNECTING
        assert BusConnectionState.CONNECTED in states
        assert states[-1] is BusConnectionState.DISCONNECTED

    def test_lost_connection_triggers_reconnect(self, events) -> None:
        b = MQTTBridge(
            host="broker.test",
            reconnect_min_delay=0.01,
            reconnect_max_delay=0.02,
            on_event=events.append,
        )
        client = MagicMock()
        client.subscribe.return_value = (mqtt.MQTT_ERR_SUCCESS, 1)
        loops = {"count": 0}

        def fake_loop(timeout=0.1):
            loops["count"] += 1
            if loops["count"] == 1:
                b._on_connect(client, None, {}, 0, None)
                return mqtt.MQTT_ERR_SUCCESS
            if loops["count"] == 2:
                return mqtt.MQTT_ERR_CONN_LOST
            if not b.connected:
                b._on_connect(client, None, {}, 0, None)
            time.sleep(0.005)
            return mqtt.MQTT_ERR_SUCCESS

        client.loop.side_effect = fake_loop
        b._client = client

        b.start()
        try:
            assert wait_for(lambda: client.connect.call_count >= 2 and b.connected)
        finally:
            b.stop()

        assert b.get_stats()["reconnect_attempts"] >= 1


class TestAsyncBridge:

    @pytest.mark.asyncio
    async def test_events_are_delivered_to_event_loop(self) -> None:
        bridge = AsyncMQTTBridge(host="broker.test")
        bridge._loop = asyncio.get_running_loop()
        stream = bridge.events()

        bridge._bridge._on_message(None, None, SimpleNamespace(topic="esp32/1/light", payload=b"42"))

        event = await asyncio.wait_for(stream.__anext__(), timeout=1.0)
        assert event == BusEvent("esp32/1/light", b"42")

    @pytest.mark.asyncio
    async def test_publish_while_disconnected_raises(self) -> None:
        bridge = AsyncMQTTBridge(host="broker.test")
        with pytest.raises(PublishError):
            await bridge.publish("sensor/LED", "{}", qos=1)
        assert bridge.state is BusConnectionState.DISCONNECTED
        assert bridge.connected is False

    @pytest.mark.asyncio
    async def test_stop_ends_event_stream(self) -> None:
        bridge = AsyncMQTTBridge(host="broker.test")
        await bridge.stop()
        assert [event async for event in bridge.events()] == []
