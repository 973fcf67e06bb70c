"""
MQTT Bridge for ESP32 communication.

Handles:
- One logical connection to the MQTT broker (paho-mqtt)
- Reconnection with capped exponential backoff, retried forever
- Subscription registry replayed on every (re)connection
- Publishing only while connected, failures reported as PublishError
- Event stream of received messages and connection state changes
"""

import asyncio
import functools
import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Callable, Dict, Optional, Union

import paho.mqtt.client as mqtt

from .topics import validate_topic_filter, validate_topic_name

logger = logging.getLogger(__name__)


class BusConnectionState(str, Enum):
    """Connection state of the MQTT client."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass(frozen=True)
class BusEvent:
    """Message delivered by the broker on a subscribed topic."""
    topic: str
    payload: bytes


@dataclass(frozen=True)
class BusStateChange:
    """Emitted whenever BusConnectionState changes."""
    state: BusConnectionState
    reason: Optional[str] = None


BridgeEvent = Union[BusEvent, BusStateChange]


class PublishError(Exception):
    """Raised when a publish cannot be handed to the broker."""


class ExponentialBackoff:
    """
    Reconnect delay policy.

    Delays start at `initial` and are multiplied by `factor` after each
    attempt, capped at `maximum`. factor=1.0 gives a fixed delay.
    """

    def __init__(self, initial: float = 1.0, maximum: float = 30.0, factor: float = 2.0):
        if initial <= 0:
            raise ValueError("initial delay must be positive")
        if maximum < initial:
            raise ValueError("maximum delay must be >= initial delay")
        if factor < 1.0:
            raise ValueError("factor must be >= 1.0")
        self.initial = initial
        self.maximum = maximum
        self.factor = factor
        self._current = initial

    def next_delay(self) -> float:
        """Delay before the next attempt; advances the policy."""
        delay = self._current
        self._current = min(self._current * self.factor, self.maximum)
        return delay

    def reset(self) -> None:
        self._current = self.initial


class MQTTBridge:
    """
    MQTT connection owner.

    A background thread pumps the paho network loop. When the connection
    drops (or cannot be established) the thread waits for the backoff delay
    and connects again, until stop() is called. Subscriptions are tracked
    here and re-sent after every CONNACK rather than relying on a
    persistent broker session.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 1883,
        client_id: Optional[str] = None,
        keepalive: int = 60,
        reconnect_min_delay: float = 1.0,
        reconnect_max_delay: float = 30.0,
        loop_timeout: float = 0.1,
        on_event: Optional[Callable[[BridgeEvent], None]] = None,
    ):
        """
        Initialize MQTT bridge.

        Args:
            host: MQTT broker host
            port: MQTT broker port
            client_id: MQTT client id (generated if not given)
            keepalive: Keepalive interval in seconds
            reconnect_min_delay: First reconnect delay in seconds
            reconnect_max_delay: Upper bound for reconnect delay
            loop_timeout: Timeout of one paho network loop iteration
            on_event: Callback for BusEvent / BusStateChange, called from
                the network thread
        """
        self.host = host
        self.port = port
        self.client_id = client_id or f"ws_mqtt_gateway_{int(time.time())}"
        self.keepalive = keepalive
        self.loop_timeout = loop_timeout
        self.on_event = on_event

        self._backoff = ExponentialBackoff(reconnect_min_delay, reconnect_max_delay)

        # MQTT client
        self._client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.client_id,
        )
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_message = self._on_message

        # State
        self._lock = threading.Lock()
        self._state = BusConnectionState.DISCONNECTED
        self._subscriptions: Dict[str, int] = {}
        self._running = False
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

        # Statistics
        self._messages_sent = 0
        self._messages_received = 0
        self._last_send_time: Optional[float] = None
        self._reconnect_attempts = 0

    def start(self) -> None:
        """Start connecting in the background. Returns immediately."""
        if self._running:
            return

        self._running = True
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._network_loop,
            name="mqtt-network",
            daemon=True,
        )
        self._thread.start()
        logger.info(f"MQTT bridge started, broker {self.host}:{self.port}")

    def stop(self) -> None:
        """Stop reconnecting and disconnect from the broker."""
        if not self._running:
            return

        self._running = False
        self._stop_event.set()

        if self.connected:
            try:
                self._client.disconnect()
            except Exception as e:
                logger.warning(f"Error while disconnecting from MQTT broker: {e}")

        if self._thread:
            self._thread.join(timeout=2.0)
            self._thread = None

        self._set_state(BusConnectionState.DISCONNECTED, "shutdown")
        logger.info("MQTT bridge stopped")

    def _network_loop(self) -> None:
        """Connect, pump the network loop, back off, repeat."""
        while not self._stop_event.is_set():
            self._set_state(BusConnectionState.CONNECTING)
            reason = "connection lost"
            try:
                logger.info(f"Connecting to MQTT broker at {self.host}:{self.port}")
                self._client.connect(self.host, self.port, keepalive=self.keepalive)

                while not self._stop_event.is_set():
                    rc = self._client.loop(timeout=self.loop_timeout)
                    if rc != mqtt.MQTT_ERR_SUCCESS:
                        reason = mqtt.error_string(rc)
                        break
            except Exception as e:
                reason = str(e) or type(e).__name__
                logger.error(f"MQTT connection error: {reason}")

            if self._stop_event.is_set():
                self._set_state(BusConnectionState.DISCONNECTED, "shutdown")
                break
            self._set_state(BusConnectionState.DISCONNECTED, reason)

            delay = self._backoff.next_delay()
            self._reconnect_attempts += 1
            logger.info(f"Reconnecting to MQTT broker in {delay:.1f}s...")
            self._stop_event.wait(delay)

    def _set_state(self, state: BusConnectionState, reason: Optional[str] = None) -> bool:
        with self._lock:
            if self._state is state:
                return False
            self._state = state
        self._emit(BusStateChange(state, reason))
        return True

    def _emit(self, event: BridgeEvent) -> None:
        if not self.on_event:
            return
        try:
            self.on_event(event)
        except Exception as e:
            logger.error(f"Error in MQTT event callback: {e}")

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        """MQTT connection callback."""
        if reason_code != 0:
            logger.error(f"MQTT connection refused: {reason_code}")
            return

        with self._lock:
            changed = self._state is not BusConnectionState.CONNECTED
            self._state = BusConnectionState.CONNECTED
            subscriptions = list(self._subscriptions.items())

        self._backoff.reset()
        logger.info("Connected to MQTT broker")

        for topic_filter, qos in subscriptions:
            result, _ = client.subscribe(topic_filter, qos=qos)
            if result == mqtt.MQTT_ERR_SUCCESS:
                logger.info(f"Subscribed to {topic_filter}")
            else:
                logger.warning(f"Subscribe to {topic_filter} failed: {mqtt.error_string(result)}")

        if changed:
            self._emit(BusStateChange(BusConnectionState.CONNECTED))

    def _on_disconnect(self, client, userdata, flags, reason_code, properties):
        """MQTT disconnection callback."""
        if reason_code != 0:
            logger.warning(f"Unexpected MQTT disconnection: {reason_code}")
        else:
            logger.info("Disconnected from MQTT broker")
        self._set_state(BusConnectionState.DISCONNECTED, str(reason_code))

    def _on_message(self, client, userdata, msg):
        """MQTT message callback."""
        self._messages_received += 1
        self._emit(BusEvent(topic=msg.topic, payload=bytes(msg.payload)))

    def subscribe(self, topic_filter: str, qos: int = 0) -> None:
        """
        Register interest in a topic filter.

        Sent right away when connected; otherwise it goes out with the
        replay on the next CONNACK.

        Raises:
            InvalidTopicError: if the filter is malformed
        """
        validate_topic_filter(topic_filter)
        with self._lock:
            self._subscriptions[topic_filter] = qos
            connected = self._state is BusConnectionState.CONNECTED

        if not connected:
            logger.info(f"Subscription to {topic_filter} queued until connected")
            return

        result, _ = self._client.subscribe(topic_filter, qos=qos)
        if result == mqtt.MQTT_ERR_SUCCESS:
            logger.info(f"Subscribed to {topic_filter}")
        else:
            logger.warning(
                f"Subscribe to {topic_filter} failed ({mqtt.error_string(result)}), "
                "will retry on reconnect"
            )

    def publish(self, topic: str, payload: Union[str, bytes], qos: int = 0, retain: bool = False) -> None:
        """
        Publish a message.

        Raises:
            PublishError: if not connected, the topic is invalid, or paho
                rejects the message
        """
        try:
            validate_topic_name(topic)
        except ValueError as e:
            raise PublishError(str(e)) from e

        if self.state is not BusConnectionState.CONNECTED:
            raise PublishError("not connected to MQTT broker")

        try:
            info = self._client.publish(topic, payload, qos=qos, retain=retain)
        except ValueError as e:
            raise PublishError(str(e)) from e

        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise PublishError(mqtt.error_string(info.rc))

        self._messages_sent += 1
        self._last_send_time = time.time()
        logger.debug(f"Published to {topic}: {payload!r}")

    @property
    def state(self) -> BusConnectionState:
        with self._lock:
            return self._state

    @property
    def connected(self) -> bool:
        """Check if connected to MQTT broker."""
        return self.state is BusConnectionState.CONNECTED

    @property
    def subscriptions(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._subscriptions)

    def get_stats(self) -> dict:
        """Get bridge statistics."""
        return {
            "connected": self.connected,
            "state": self.state.value,
            "messages_sent": self._messages_sent,
            "messages_received": self._messages_received,
            "last_send_time": self._last_send_time,
            "reconnect_attempts": self._reconnect_attempts,
            "subscriptions": sorted(self.subscriptions),
        }


class AsyncMQTTBridge:
    """
    Async wrapper for MQTTBridge.

    Events raised on the paho network thread are handed to the event loop
    with call_soon_threadsafe and read back through events().
    """

    def __init__(self, **kwargs):
        """Initialize with same arguments as MQTTBridge (except on_event)."""
        self._bridge = MQTTBridge(on_event=self._on_bridge_event, **kwargs)
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: asyncio.Queue = asyncio.Queue()

    async def start(self) -> None:
        """Start the MQTT bridge."""
        self._loop = asyncio.get_running_loop()
        self._bridge.start()

    async def stop(self) -> None:
        """Stop the MQTT bridge and end the event stream."""
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._bridge.stop)
        self._queue.put_nowait(None)

    def _on_bridge_event(self, event: BridgeEvent) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._queue.put_nowait, event)

    async def events(self) -> AsyncIterator[BridgeEvent]:
        """Yield bus events until stop() is called."""
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event

    async def publish(self, topic: str, payload: Union[str, bytes], qos: int = 0, retain: bool = False) -> None:
        """Publish a message; raises PublishError on failure."""
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            None, functools.partial(self._bridge.publish, topic, payload, qos, retain)
        )

    async def subscribe(self, topic_filter: str, qos: int = 0) -> None:
        """Register a subscription."""
        self._bridge.subscribe(topic_filter, qos)

    @property
    def state(self) -> BusConnectionState:
        return self._bridge.state

    @property
    def connected(self) -> bool:
        """Check if connected."""
        return self._bridge.connected

    def get_stats(self) -> dict:
        """Get statistics."""
        return self._bridge.get_stats()
