"""
WebSocket MQTT Gateway - browser clients <-> ESP32 devices.

This module runs next to the MQTT broker and:
- Accepts WebSocket connections from browsers
- Forwards browser commands to MQTT topics
- Broadcasts every MQTT message it receives to all browsers
"""

__version__ = "1.0.0"
