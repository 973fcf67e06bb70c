import sys
from pathlib import Path

import pytest

# Make the package importable without installing it
_PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(_PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(_PROJECT_ROOT))

from ws_mqtt_gateway.mqtt_bridge import BusConnectionState, PublishError
from ws_mqtt_gateway.topics import validate_topic_filter


class FakeWebSocket:
    """Stands in for a FastAPI WebSocket inside ClientConnection."""

    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail
        self.closed_with = None

    async def send_text(self, text: str) -> None:
        if self.fail:
            raise RuntimeError("socket is gone")
        self.sent.append(text)

    async def close(self, code: int = 1000) -> None:
        self.closed_with = code


class FakeBus:
    """In-memory replacement for AsyncMQTTBridge."""

    def __init__(self, state: BusConnectionState = BusConnectionState.CONNECTED, events=()):
        self.state = state
        self.published = []
        self.subscribed = []
        self.started = False
        self.stopped = False
        self._events = list(events)

    @property
    def connected(self) -> bool:
        return self.state is BusConnectionState.CONNECTED

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.stopped = True

    async def publish(self, topic, payload, qos=0, retain=False) -> None:
        if self.state is not BusConnectionState.CONNECTED:
            raise PublishError("not connected to MQTT broker")
        self.published.append((topic, payload, qos))

    async def subscribe(self, topic_filter, qos=0) -> None:
        validate_topic_filter(topic_filter)
        self.subscribed.append(topic_filter)

    async def events(self):
        for event in self._events:
            yield event

    def get_stats(self) -> dict:
        return {"connected": self.connected}


@pytest.fixture
def fake_bus():
    return FakeBus()
