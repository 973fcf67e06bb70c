"""
Message dispatcher.

Routes one inbound event to a list of effects. Routing is pure: no I/O
happens here, the gateway runtime executes the returned effects.

Events:
    ClientMessage     raw text frame from one browser connection
    BusEvent          message delivered by the MQTT broker
    ConnectionClosed  a browser connection went away

Effects:
    Publish / Subscribe   go to the MQTT bridge
    Broadcast             goes to every connected browser
    Reply                 goes to one browser connection
    Unregister            drops a connection from the registry
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, List, Tuple, Union

from . import messages
from .messages import InboundMessage, MessageParseError, MessageType, utc_timestamp
from .mqtt_bridge import BusConnectionState, BusEvent
from .topics import CONTROL_TOPIC, InvalidTopicError, validate_topic_filter, validate_topic_name

logger = logging.getLogger(__name__)

# Payload published when a shake turns the LED on
SHAKE_LED_PAYLOAD = {"GPIO23": "on"}
SHAKE_ACTION = "LED turned on by shake"

# At-least-once for everything the browser asks us to publish
CLIENT_PUBLISH_QOS = 1


@dataclass(frozen=True)
class ClientMessage:
    connection_id: str
    raw: str


@dataclass(frozen=True)
class ConnectionClosed:
    connection_id: str


InboundEvent = Union[ClientMessage, BusEvent, ConnectionClosed]


@dataclass(frozen=True)
class Broadcast:
    message: dict


@dataclass(frozen=True)
class Reply:
    connection_id: str
    message: dict


@dataclass(frozen=True)
class Publish:
    """Publish to the bus; `on_success` effects run only if the publish went out."""
    topic: str
    payload: str
    qos: int = 0
    on_success: Tuple[Any, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class Subscribe:
    topic_filter: str


@dataclass(frozen=True)
class Unregister:
    connection_id: str


Effect = Union[Broadcast, Reply, Publish, Subscribe, Unregister]


def _compact_json(payload: Any) -> str:
    # Compact separators, the ESP32 firmware compares the raw bytes
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def _payload_text(payload: Any) -> str:
    if isinstance(payload, str):
        return payload
    return _compact_json(payload)


def led_control_effects(payload: Any, timestamp: str, control_topic: str = CONTROL_TOPIC) -> List[Effect]:
    """Publish an LED command and confirm it to every client once it is sent."""
    return [
        Publish(
            topic=control_topic,
            payload=_compact_json(payload),
            qos=CLIENT_PUBLISH_QOS,
            on_success=(Broadcast(messages.led_command_sent(payload, timestamp)),),
        )
    ]


def _dispatch_client_message(
    event: ClientMessage,
    bus_state: BusConnectionState,
    now: Callable[[], str],
    control_topic: str,
) -> List[Effect]:
    origin = event.connection_id

    try:
        msg = InboundMessage.from_json(event.raw)
    except MessageParseError as e:
        logger.warning(f"Invalid message from {origin}: {e}")
        return [Reply(origin, messages.error_message(str(e)))]

    msg_type = msg.known_type
    logger.info(f"Message from {origin}: {msg.type}")

    if msg_type is MessageType.LED_CONTROL:
        if msg.payload is None:
            return [Reply(origin, messages.error_message("led_control requires a payload"))]
        return led_control_effects(msg.payload, now(), control_topic)

    if msg_type is MessageType.GET_STATUS:
        connected = bus_state is BusConnectionState.CONNECTED
        return [Reply(origin, messages.status_response(connected, now()))]

    if msg_type is MessageType.SHAKE_DETECTED:
        timestamp = now()
        effects = led_control_effects(SHAKE_LED_PAYLOAD, timestamp, control_topic)
        effects.append(Broadcast(messages.shake_event(timestamp, SHAKE_ACTION)))
        return effects

    if msg_type is MessageType.SUBSCRIBE:
        if not msg.topic:
            return [Reply(origin, messages.error_message("subscribe requires a topic"))]
        try:
            validate_topic_filter(msg.topic)
        except InvalidTopicError as e:
            return [Reply(origin, messages.error_message(str(e)))]
        return [Subscribe(msg.topic)]

    if msg_type is MessageType.PUBLISH:
        if not msg.topic or msg.payload is None:
            return [Reply(origin, messages.error_message("publish requires a topic and a payload"))]
        try:
            validate_topic_name(msg.topic)
        except InvalidTopicError as e:
            return [Reply(origin, messages.error_message(str(e)))]
        return [Publish(msg.topic, _payload_text(msg.payload), qos=CLIENT_PUBLISH_QOS)]

    return [Reply(origin, messages.unknown_type_message(msg.type))]


def dispatch(
    event: InboundEvent,
    bus_state: BusConnectionState,
    now: Callable[[], str] = utc_timestamp,
    control_topic: str = CONTROL_TOPIC,
) -> List[Effect]:
    """
    Route one inbound event.

    Args:
        event: ClientMessage, BusEvent or ConnectionClosed
        bus_state: Current MQTT connection state (answers get_status)
        now: Timestamp source for outbound envelopes
        control_topic: Topic LED commands are published to

    Returns:
        Effects to execute, in order
    """
    if isinstance(event, ClientMessage):
        return _dispatch_client_message(event, bus_state, now, control_topic)

    if isinstance(event, BusEvent):
        payload = event.payload.decode("utf-8", errors="replace")
        return [Broadcast(messages.mqtt_message(event.topic, payload, now()))]

    if isinstance(event, ConnectionClosed):
        return [Unregister(event.connection_id)]

    raise TypeError(f"Unsupported event: {event!r}")
