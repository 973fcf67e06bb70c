"""Tests for environment / CLI configuration."""

import pytest

from ws_mqtt_gateway.config import (
    ConfigError,
    GatewayConfig,
    build_arg_parser,
    parse_broker_url,
)
from ws_mqtt_gateway.topics import DEFAULT_SUBSCRIPTIONS


def test_defaults_from_empty_environment() -> None:
    config = GatewayConfig.from_env({})
    assert config.ws_port == 8080
    assert (config.mqtt_host, config.mqtt_port) == ("localhost", 1883)
    assert config.control_topic == "sensor/LED"
    assert config.subscriptions == DEFAULT_SUBSCRIPTIONS
    assert config.web_root is None


def test_environment_overrides() -> None:
    config = GatewayConfig.from_env({
        "WS_PORT": "9000",
        "MQTT_HOST": "broker.lan",
        "MQTT_PORT": "1884",
        "MQTT_SUBSCRIPTIONS": "esp32/+/light, status/led ,",
        "RECONNECT_MIN_S": "0.5",
        "RECONNECT_MAX_S": "10",
        "SEND_TIMEOUT_S": "0.5",
        "LOG_LEVEL": "debug",
    })
    assert config.ws_port == 9000
    assert (config.mqtt_host, config.mqtt_port) == ("broker.lan", 1884)
    assert config.subscriptions == ("esp32/+/light", "status/led")
    assert config.reconnect_min_delay == 0.5
    assert config.send_timeout == 0.5
    assert config.log_level == "DEBUG"


def test_broker_url_wins_over_host_and_port() -> None:
    config = GatewayConfig.from_env({"MQTT_HOST": "ignored", "MQTT_BROKER": "mqtt://10.0.0.5:1999"})
    assert (config.mqtt_host, config.mqtt_port) == ("10.0.0.5", 1999)
    assert config.broker_url == "mqtt://10.0.0.5:1999"


@pytest.mark.parametrize(
    "url, expected",
    [
        ("mqtt://localhost:1883", ("localhost", 1883)),
        ("mqtt://broker", ("broker", 1883)),
        ("broker.lan:1884", ("broker.lan", 1884)),
    ],
)
def test_parse_broker_url(url, expected) -> None:
    assert parse_broker_url(url) == expected


@pytest.mark.parametrize("url", ["http://broker:1883", "mqtt://", "mqtt://broker:notaport"])
def test_parse_broker_url_rejects(url) -> None:
    with pytest.raises(ConfigError):
        parse_broker_url(url)


@pytest.mark.parametrize(
    "env",
    [
        {"WS_PORT": "abc"},
        {"WS_PORT": "70000"},
        {"RECONNECT_MIN_S": "5", "RECONNECT_MAX_S": "1"},
        {"SEND_TIMEOUT_S": "0"},
    ],
)
def test_invalid_environment(env) -> None:
    with pytest.raises(ConfigError):
        GatewayConfig.from_env(env)


def test_cli_flags_override_environment() -> None:
    args = build_arg_parser().parse_args(["--port", "8181", "--broker", "mqtt://pi.local:1883"])
    config = GatewayConfig.from_env({"WS_PORT": "9000"}).apply_args(args)
    assert config.ws_port == 8181
    assert config.mqtt_host == "pi.local"
