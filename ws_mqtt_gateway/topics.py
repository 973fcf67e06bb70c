"""
MQTT topic helpers.

Handles:
- Fixed topics shared with the ESP32 firmware
- Default subscription set
- Topic name and topic filter validation (`+` / `#` wildcards)
"""

from typing import Tuple

# ESP32 listens here for LED commands, e.g. {"GPIO23": "on"}
CONTROL_TOPIC = "sensor/LED"
# ESP32 reports LED state here
STATUS_TOPIC = "status/led"

DEFAULT_SUBSCRIPTIONS: Tuple[str, ...] = (
    STATUS_TOPIC,
    "esp32/+/light",
    "ghost/move/#",
    "esp32/+/touch",
)

SINGLE_LEVEL_WILDCARD = "+"
MULTI_LEVEL_WILDCARD = "#"

# MQTT limits topic strings to 65535 bytes of UTF-8
MAX_TOPIC_BYTES = 65535


class InvalidTopicError(ValueError):
    """Raised for topic names or filters the broker would reject."""


def _check_common(topic: str) -> None:
    if not isinstance(topic, str) or not topic:
        raise InvalidTopicError("topic must be a non-empty string")
    if len(topic.encode("utf-8")) > MAX_TOPIC_BYTES:
        raise InvalidTopicError("topic exceeds 65535 bytes")
    if "\x00" in topic:
        raise InvalidTopicError("topic must not contain NUL characters")


def validate_topic_name(topic: str) -> str:
    """
    Validate a topic used for publishing.

    Publish topics are concrete: wildcards are not allowed anywhere.

    Returns:
        The topic, unchanged
    """
    _check_common(topic)
    if SINGLE_LEVEL_WILDCARD in topic or MULTI_LEVEL_WILDCARD in topic:
        raise InvalidTopicError(f"wildcards are not allowed in publish topic: {topic}")
    return topic


def validate_topic_filter(topic_filter: str) -> str:
    """
    Validate a subscription filter.

    Rules:
    - `+` must occupy a whole level (`esp32/+/light`)
    - `#` must occupy the whole last level (`ghost/move/#` or `#`)

    Returns:
        The filter, unchanged
    """
    _check_common(topic_filter)
    levels = topic_filter.split("/")
    for index, level in enumerate(levels):
        if MULTI_LEVEL_WILDCARD in level:
            if level != MULTI_LEVEL_WILDCARD or index != len(levels) - 1:
                raise InvalidTopicError(
                    f"'#' must be the whole last level of the filter: {topic_filter}"
                )
        if SINGLE_LEVEL_WILDCARD in level and level != SINGLE_LEVEL_WILDCARD:
            raise InvalidTopicError(
                f"'+' must occupy a whole level of the filter: {topic_filter}"
            )
    return topic_filter


def is_high_rate_topic(topic: str) -> bool:
    """Light sensors report several times a second; their traffic is logged tersely."""
    return topic.endswith("/light")
