"""
Message envelopes for browser <-> gateway communication.

Every frame on the WebSocket is a JSON object with a `type` field:

    {"type": "led_control", "payload": {"GPIO23": "on"}}
    {"type": "publish", "topic": "ghost/move/1", "payload": "left"}

Inbound frames are parsed into InboundMessage; outbound envelopes are
plain dicts built by the helpers below.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class MessageType(str, Enum):
    """Inbound message types handled by the dispatcher."""
    LED_CONTROL = "led_control"
    GET_STATUS = "get_status"
    SHAKE_DETECTED = "shake_detected"
    SUBSCRIBE = "subscribe"
    PUBLISH = "publish"


class OutboundType(str, Enum):
    """Envelope types sent from the gateway to browsers."""
    WELCOME = "welcome"
    ERROR = "error"
    STATUS_RESPONSE = "status_response"
    LED_COMMAND_SENT = "led_command_sent"
    SHAKE_EVENT = "shake_event"
    MQTT_MESSAGE = "mqtt_message"


INVALID_JSON = "Invalid JSON format"


class MessageParseError(ValueError):
    """Raised when a frame is not a well-formed envelope."""


def utc_timestamp() -> str:
    """Current time as ISO-8601 UTC with millisecond precision, e.g. 2024-05-01T12:00:00.000Z."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass
class InboundMessage:
    """
    Envelope received from a browser.

    Attributes:
        type: Message type string (not necessarily a known MessageType)
        payload: Arbitrary JSON value, None when absent
        topic: MQTT topic for subscribe/publish, None when absent
    """
    type: str
    payload: Any = None
    topic: Optional[str] = None

    @classmethod
    def from_json(cls, data: str) -> 'InboundMessage':
        """
        Parse from a JSON text frame.

        Raises:
            MessageParseError: if the frame is not a JSON object with a string `type`
        """
        try:
            d = json.loads(data)
        except (json.JSONDecodeError, TypeError) as e:
            raise MessageParseError(INVALID_JSON) from e

        if not isinstance(d, dict):
            raise MessageParseError("Message must be a JSON object")

        msg_type = d.get("type")
        if not isinstance(msg_type, str) or not msg_type:
            raise MessageParseError("Message is missing a string 'type' field")

        topic = d.get("topic")
        if topic is not None and not isinstance(topic, str):
            raise MessageParseError("'topic' must be a string")

        return cls(type=msg_type, payload=d.get("payload"), topic=topic)

    @property
    def known_type(self) -> Optional[MessageType]:
        """The MessageType for this envelope, or None if unrecognized."""
        try:
            return MessageType(self.type)
        except ValueError:
            return None


def encode(message: Dict[str, Any]) -> str:
    """Serialize an outbound envelope."""
    return json.dumps(message, ensure_ascii=False)


def welcome_message(timestamp: str) -> Dict[str, Any]:
    return {
        "type": OutboundType.WELCOME.value,
        "message": "Connected to WebSocket server",
        "timestamp": timestamp,
    }


def error_message(message: str) -> Dict[str, Any]:
    return {"type": OutboundType.ERROR.value, "message": message}


def unknown_type_message(msg_type: str) -> Dict[str, Any]:
    return error_message(f"Unknown message type: {msg_type}")


def status_response(connected: bool, timestamp: str) -> Dict[str, Any]:
    return {
        "type": OutboundType.STATUS_RESPONSE.value,
        "status": {
            "connected": connected,
            "timestamp": timestamp,
        },
    }


def led_command_sent(payload: Any, timestamp: str) -> Dict[str, Any]:
    return {
        "type": OutboundType.LED_COMMAND_SENT.value,
        "payload": payload,
        "timestamp": timestamp,
    }


def shake_event(timestamp: str, action: str) -> Dict[str, Any]:
    return {
        "type": OutboundType.SHAKE_EVENT.value,
        "timestamp": timestamp,
        "action": action,
    }


def mqtt_message(topic: str, payload: str, timestamp: str) -> Dict[str, Any]:
    return {
        "type": OutboundType.MQTT_MESSAGE.value,
        "topic": topic,
        "payload": payload,
        "timestamp": timestamp,
    }
