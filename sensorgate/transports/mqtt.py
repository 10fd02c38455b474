"""MQTT bridge: publishes decoded topics and receives backend commands."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import Any

import paho.mqtt.client as mqtt

from sensorgate.core.errors import TransportError
from sensorgate.core.model import MqttSettings

CommandHandler = Callable[[Any], None]
LOGGER = logging.getLogger(__name__)


class MqttBridge:
    """Thin wrapper around a paho client running its own network thread.

    ``on_command`` is called from the paho thread with the parsed JSON payload of each
    message on the command topic; callers hand it over to their event loop.
    """

    def __init__(
        self,
        settings: MqttSettings,
        on_command: CommandHandler,
        *,
        client: mqtt.Client | None = None,
    ) -> None:
        self.settings = settings
        self.on_command = on_command
        self._client = client or mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=settings.client_id,
        )
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_message = self._on_message
        if settings.ca_certs or settings.certfile:
            self._client.tls_set(
                ca_certs=settings.ca_certs,
                certfile=settings.certfile,
                keyfile=settings.keyfile,
            )

    def start(self) -> None:
        LOGGER.info("Connecting to MQTT broker %s:%d", self.settings.host, self.settings.port)
        try:
            self._client.connect_async(self.settings.host, self.settings.port)
        except (OSError, ValueError) as exc:
            raise TransportError(f"Could not connect to MQTT broker: {exc}") from exc
        self._client.loop_start()

    def stop(self) -> None:
        self._client.disconnect()
        self._client.loop_stop()

    def publish(self, topic: str, payload: dict[str, Any]) -> None:
        result = self._client.publish(topic, json.dumps(payload))
        if result.rc != mqtt.MQTT_ERR_SUCCESS:
            LOGGER.error("Publish to %s failed: %s", topic, mqtt.error_string(result.rc))
            return
        LOGGER.debug("Published %s: %s", topic, payload)

    def _on_connect(
        self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any, properties: Any = None
    ) -> None:
        if reason_code.is_failure:
            LOGGER.error("MQTT connection refused: %s", reason_code)
            return
        LOGGER.info("Connected to MQTT broker")
        client.subscribe(self.settings.command_topic)

    def _on_disconnect(
        self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any, properties: Any = None
    ) -> None:
        if reason_code.is_failure:
            LOGGER.warning("Disconnected from MQTT broker: %s. Reconnecting...", reason_code)

    def _on_message(self, client: mqtt.Client, userdata: Any, message: Any) -> None:
        try:
            payload = json.loads(message.payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            LOGGER.error("Bad input JSON string received via MQTT: %r", message.payload)
            return
        self.on_command(payload)
