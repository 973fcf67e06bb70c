"""
Gateway configuration.

Environment Variables:
    WS_HOST: WebSocket listener bind address (default: 0.0.0.0)
    WS_PORT: WebSocket listener port (default: 8080)
    MQTT_BROKER: Broker URL, e.g. mqtt://localhost:1883 (overrides host/port)
    MQTT_HOST: MQTT broker host (default: localhost)
    MQTT_PORT: MQTT broker port (default: 1883)
    MQTT_CLIENT_ID: MQTT client id (default: generated)
    MQTT_KEEPALIVE: Keepalive in seconds (default: 60)
    MQTT_CONTROL_TOPIC: Topic for LED commands (default: sensor/LED)
    MQTT_SUBSCRIPTIONS: Comma-separated topic filters subscribed at startup
    RECONNECT_MIN_S: First reconnect delay in seconds (default: 1)
    RECONNECT_MAX_S: Maximum reconnect delay in seconds (default: 30)
    SEND_TIMEOUT_S: Seconds before a stalled browser is dropped (default: 5)
    WEB_ROOT: Directory of static web assets to serve (optional)
    LOG_LEVEL: Logging level (default: INFO)
"""

import argparse
import os
from dataclasses import dataclass, field
from typing import Mapping, Optional, Sequence, Tuple
from urllib.parse import urlparse

from .topics import CONTROL_TOPIC, DEFAULT_SUBSCRIPTIONS

DEFAULT_MQTT_PORT = 1883


class ConfigError(ValueError):
    """Raised for unusable configuration values."""


def parse_broker_url(url: str) -> Tuple[str, int]:
    """
    Split an mqtt://host:port URL into (host, port).

    A bare host:port is accepted as well.
    """
    if "://" not in url:
        url = f"mqtt://{url}"
    parsed = urlparse(url)
    if parsed.scheme not in ("mqtt", "tcp"):
        raise ConfigError(f"Unsupported broker URL scheme: {parsed.scheme}")
    if not parsed.hostname:
        raise ConfigError(f"Broker URL has no host: {url}")
    try:
        port = parsed.port or DEFAULT_MQTT_PORT
    except ValueError as e:
        raise ConfigError(f"Invalid broker port in {url}") from e
    return parsed.hostname, port


def _split_topics(value: str) -> Tuple[str, ...]:
    return tuple(t.strip() for t in value.split(",") if t.strip())


@dataclass
class GatewayConfig:
    """Runtime settings for the gateway."""
    ws_host: str = "0.0.0.0"
    ws_port: int = 8080
    mqtt_host: str = "localhost"
    mqtt_port: int = DEFAULT_MQTT_PORT
    mqtt_client_id: Optional[str] = None
    mqtt_keepalive: int = 60
    control_topic: str = CONTROL_TOPIC
    subscriptions: Tuple[str, ...] = field(default_factory=lambda: DEFAULT_SUBSCRIPTIONS)
    reconnect_min_delay: float = 1.0
    reconnect_max_delay: float = 30.0
    send_timeout: float = 5.0
    web_root: Optional[str] = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'GatewayConfig':
        """Load configuration from environment variables."""
        env = os.environ if environ is None else environ
        try:
            config = cls(
                ws_host=env.get("WS_HOST", "0.0.0.0"),
                ws_port=int(env.get("WS_PORT", "8080")),
                mqtt_host=env.get("MQTT_HOST", "localhost"),
                mqtt_port=int(env.get("MQTT_PORT", str(DEFAULT_MQTT_PORT))),
                mqtt_client_id=env.get("MQTT_CLIENT_ID") or None,
                mqtt_keepalive=int(env.get("MQTT_KEEPALIVE", "60")),
                control_topic=env.get("MQTT_CONTROL_TOPIC", CONTROL_TOPIC),
                reconnect_min_delay=float(env.get("RECONNECT_MIN_S", "1")),
                reconnect_max_delay=float(env.get("RECONNECT_MAX_S", "30")),
                send_timeout=float(env.get("SEND_TIMEOUT_S", "5")),
                web_root=env.get("WEB_ROOT") or None,
                log_level=env.get("LOG_LEVEL", "INFO").upper(),
            )
        except ValueError as e:
            raise ConfigError(f"Invalid numeric setting: {e}") from e

        if env.get("MQTT_BROKER"):
            config.mqtt_host, config.mqtt_port = parse_broker_url(env["MQTT_BROKER"])
        if env.get("MQTT_SUBSCRIPTIONS") is not None:
            config.subscriptions = _split_topics(env["MQTT_SUBSCRIPTIONS"])

        config.validate()
        return config

    def apply_args(self, args: argparse.Namespace) -> 'GatewayConfig':
        """Override settings with command line flags that were given."""
        if args.host is not None:
            self.ws_host = args.host
        if args.port is not None:
            self.ws_port = args.port
        if args.broker is not None:
            self.mqtt_host, self.mqtt_port = parse_broker_url(args.broker)
        if args.web_root is not None:
            self.web_root = args.web_root
        if args.log_level is not None:
            self.log_level = args.log_level.upper()
        self.validate()
        return self

    def validate(self) -> None:
        if not 0 < self.ws_port < 65536:
            raise ConfigError(f"WS_PORT out of range: {self.ws_port}")
        if not 0 < self.mqtt_port < 65536:
            raise ConfigError(f"MQTT_PORT out of range: {self.mqtt_port}")
        if self.reconnect_min_delay <= 0 or self.reconnect_max_delay < self.reconnect_min_delay:
            raise ConfigError("Reconnect delays must satisfy 0 < RECONNECT_MIN_S <= RECONNECT_MAX_S")
        if self.send_timeout <= 0:
            raise ConfigError(f"SEND_TIMEOUT_S must be positive: {self.send_timeout}")

    @property
    def broker_url(self) -> str:
        return f"mqtt://{self.mqtt_host}:{self.mqtt_port}"


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="WebSocket <-> MQTT gateway for browser clients and ESP32 devices"
    )
    parser.add_argument("--host", default=None, help="WebSocket bind address (WS_HOST)")
    parser.add_argument("--port", type=int, default=None, help="WebSocket port (WS_PORT)")
    parser.add_argument("--broker", default=None, help="MQTT broker URL, e.g. mqtt://localhost:1883")
    parser.add_argument("--web-root", default=None, help="Directory of static web assets (WEB_ROOT)")
    parser.add_argument("--log-level", default=None, help="Logging level (LOG_LEVEL)")
    return parser


def load_config(argv: Optional[Sequence[str]] = None) -> GatewayConfig:
    """Environment first, then command line overrides."""
    args = build_arg_parser().parse_args(argv)
    return GatewayConfig.from_env().apply_args(args)
