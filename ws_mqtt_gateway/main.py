#!/usr/bin/env python3
"""
WebSocket MQTT Gateway - Main Entry Point

This server accepts browser WebSocket connections and:
- Publishes LED / device commands to MQTT for the ESP32 boards
- Answers status queries locally
- Broadcasts every MQTT message it receives to all browsers

Configuration comes from environment variables (see config.py), with
command line flags taking precedence.

Usage:
    export MQTT_BROKER=mqtt://localhost:1883
    python -m ws_mqtt_gateway.main --port 8080
"""

import asyncio
import logging
import signal
import sys
from typing import Iterable, Optional

import uvicorn

from .config import ConfigError, GatewayConfig, load_config
from .dispatcher import (
    Broadcast,
    ClientMessage,
    ConnectionClosed,
    Effect,
    InboundEvent,
    Publish,
    Reply,
    Subscribe,
    Unregister,
    dispatch,
)
from .mqtt_bridge import AsyncMQTTBridge, BusConnectionState, BusEvent, BusStateChange, PublishError
from .registry import ClientRegistry
from .topics import is_high_rate_topic
from .ws_server import WebSocketServer

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class ServerGateway:
    """
    Main server gateway integrating WebSocket and MQTT.

    Architecture:
        Browser -> WebSocket -> dispatch -> MQTT (sensor/LED, ...)
        MQTT (esp32/+/light, ...) -> dispatch -> broadcast -> all browsers
    """

    def __init__(
        self,
        config: GatewayConfig,
        registry: Optional[ClientRegistry] = None,
        mqtt_bridge=None,
    ):
        """
        Initialize server gateway.

        Args:
            config: Gateway configuration
            registry: Client registry (a new one by default)
            mqtt_bridge: Bus adapter (an AsyncMQTTBridge by default)
        """
        self.config = config
        self.registry = registry if registry is not None else ClientRegistry(send_timeout=config.send_timeout)
        self.mqtt_bridge = mqtt_bridge if mqtt_bridge is not None else AsyncMQTTBridge(
            host=config.mqtt_host,
            port=config.mqtt_port,
            client_id=config.mqtt_client_id,
            keepalive=config.mqtt_keepalive,
            reconnect_min_delay=config.reconnect_min_delay,
            reconnect_max_delay=config.reconnect_max_delay,
        )

        self.ws_server = WebSocketServer(
            registry=self.registry,
            on_message=self.handle_client_message,
            on_disconnected=self._on_client_disconnected,
            get_status=self.get_stats,
            web_root=config.web_root,
        )

        # State
        self._running = False
        self._bus_task: Optional[asyncio.Task] = None

        # Statistics
        self._publish_failures = 0

    async def start(self) -> None:
        """Start all server components."""
        logger.info("Starting Server Gateway...")

        for topic_filter in self.config.subscriptions:
            await self.mqtt_bridge.subscribe(topic_filter)

        await self.mqtt_bridge.start()
        self._bus_task = asyncio.create_task(self._consume_bus_events())

        self._running = True
        logger.info(
            f"Server Gateway started on {self.config.ws_host}:{self.config.ws_port}, "
            f"broker {self.config.broker_url}"
        )

    async def stop(self) -> None:
        """Close every client, then disconnect from the broker."""
        logger.info("Stopping Server Gateway...")
        self._running = False

        await self.registry.close_all()

        await self.mqtt_bridge.stop()
        if self._bus_task:
            try:
                await asyncio.wait_for(self._bus_task, timeout=2.0)
            except asyncio.TimeoutError:
                self._bus_task.cancel()
            self._bus_task = None

        logger.info("Server Gateway stopped")

    @property
    def bus_state(self) -> BusConnectionState:
        return self.mqtt_bridge.state

    async def handle_event(self, event: InboundEvent) -> None:
        """Dispatch one event and execute the resulting effects."""
        effects = dispatch(event, self.bus_state, control_topic=self.config.control_topic)
        await self.apply_effects(effects)

    async def handle_client_message(self, connection_id: str, raw: str) -> None:
        await self.handle_event(ClientMessage(connection_id, raw))

    async def handle_bus_event(self, event: BusEvent) -> None:
        if is_high_rate_topic(event.topic):
            logger.debug(f"MQTT {event.topic}")
        else:
            logger.info(f"MQTT {event.topic}: {event.payload.decode('utf-8', errors='replace')}")
        await self.handle_event(event)

    async def _on_client_disconnected(self, connection_id: str) -> None:
        await self.handle_event(ConnectionClosed(connection_id))

    async def apply_effects(self, effects: Iterable[Effect]) -> None:
        """
        Execute effects in order.

        Failures stay local: a failed publish is logged and its follow-up
        effects are skipped, failed sends are handled by the registry.
        """
        for effect in effects:
            if isinstance(effect, Publish):
                try:
                    await self.mqtt_bridge.publish(effect.topic, effect.payload, qos=effect.qos)
                except PublishError as e:
                    self._publish_failures += 1
                    logger.error(f"Publish to {effect.topic} failed: {e}")
                    continue
                logger.info(f"Published to {effect.topic}: {effect.payload}")
                await self.apply_effects(effect.on_success)

            elif isinstance(effect, Broadcast):
                await self.registry.broadcast(effect.message)

            elif isinstance(effect, Reply):
                await self.registry.send(effect.connection_id, effect.message)

            elif isinstance(effect, Subscribe):
                try:
                    await self.mqtt_bridge.subscribe(effect.topic_filter)
                except ValueError as e:
                    logger.warning(f"Subscribe to {effect.topic_filter} rejected: {e}")

            elif isinstance(effect, Unregister):
                self.registry.unregister(effect.connection_id)

            else:
                logger.error(f"Unknown effect: {effect!r}")

    async def _consume_bus_events(self) -> None:
        """Forward bus messages to clients until the bridge stops."""
        async for event in self.mqtt_bridge.events():
            try:
                if isinstance(event, BusStateChange):
                    self._on_bus_state_change(event)
                else:
                    await self.handle_bus_event(event)
            except Exception as e:
                logger.error(f"Error handling bus event {event!r}: {e}")

    def _on_bus_state_change(self, change: BusStateChange) -> None:
        if change.state is BusConnectionState.DISCONNECTED and change.reason:
            logger.warning(f"MQTT {change.state.value}: {change.reason}")
        else:
            logger.info(f"MQTT {change.state.value}")

    def get_app(self):
        """Get the FastAPI application for uvicorn."""
        return self.ws_server.app

    def get_stats(self) -> dict:
        """Get server statistics."""
        return {
            "mqtt_connected": self.bus_state is BusConnectionState.CONNECTED,
            "publish_failures": self._publish_failures,
            "ws_server": self.ws_server.get_stats(),
            "registry": self.registry.get_stats(),
            "mqtt_bridge": self.mqtt_bridge.get_stats(),
        }


async def run_server(server: uvicorn.Server) -> None:
    """Run the server with uvicorn."""
    await server.serve()


def build_server(gateway: ServerGateway) -> uvicorn.Server:
    config = uvicorn.Config(
        gateway.get_app(),
        host=gateway.config.ws_host,
        port=gateway.config.ws_port,
        log_level=gateway.config.log_level.lower(),
        access_log=True,
    )
    return uvicorn.Server(config)


async def shutdown(gateway: ServerGateway, server: uvicorn.Server, server_task: asyncio.Task,
                   timeout: float = 10.0) -> None:
    """
    Stop accepting, close clients, then disconnect from the broker.

    uvicorn closes its listener before serve() returns, so the gateway is
    only stopped once the server task is done. A server that does not stop
    within the timeout is cancelled.
    """
    server.should_exit = True
    if not server_task.done():
        try:
            await asyncio.wait_for(server_task, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Server did not stop within {timeout}s, cancelled")
        except Exception as e:
            logger.error(f"Server error during shutdown: {e}")

    await gateway.stop()


async def main_async(config: GatewayConfig) -> None:
    """Async main entry point."""
    gateway = ServerGateway(config)
    server = build_server(gateway)

    # Setup signal handlers
    loop = asyncio.get_running_loop()

    shutdown_event = asyncio.Event()

    def signal_handler():
        logger.info("Shutdown signal received")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await gateway.start()

        # Run server until shutdown
        server_task = asyncio.create_task(run_server(server))
        shutdown_task = asyncio.create_task(shutdown_event.wait())

        done, pending = await asyncio.wait(
            [server_task, shutdown_task],
            return_when=asyncio.FIRST_COMPLETED,
        )

        await shutdown(gateway, server, server_task)

        for task in pending:
            if task is server_task:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    except Exception as e:
        logger.error(f"Server error: {e}")
        await gateway.stop()


def main() -> None:
    """Main entry point."""
    try:
        config = load_config()
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    logging.getLogger().setLevel(config.log_level)

    try:
        asyncio.run(main_async(config))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(0)


if __name__ == "__main__":
    main()
