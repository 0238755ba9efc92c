"""MQTT transport for alarm telemetry and remote ring commands.

Topics hang off ``MqttConfig.topic_base``:

- ``<base>/telemetry/<event>``: one JSON document per telemetry event
- ``<base>/alarm/command``: ``stop`` or ``snooze`` for the ringing alarm,
  either as a bare word or as ``{"command": "..."}``
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from typing import Any, Literal

import paho.mqtt.client as mqtt

from .config import MqttConfig

AlarmCommand = Literal["stop", "snooze"]
ALARM_COMMANDS: frozenset[str] = frozenset({"stop", "snooze"})

CommandHandler = Callable[[AlarmCommand], None]


def parse_command(payload: str) -> AlarmCommand | None:
    text = payload.strip()
    if text.startswith("{"):
        try:
            text = str(json.loads(text).get("command", ""))
        except (ValueError, AttributeError):
            return None
    command = text.strip().lower()
    if command in ALARM_COMMANDS:
        return command  # type: ignore[return-value]
    return None


class AlarmMqtt:
    """Telemetry publisher and command listener for one alarm device.

    Without a configured host every method is a no-op, so the alarm keeps
    working offline. Command handlers run on the paho network thread.
    """

    def __init__(self, config: MqttConfig, logger: logging.Logger | None = None) -> None:
        self.config = config
        self.topic_base = config.topic_base.rstrip("/")
        self._logger = logger or logging.getLogger(__name__)
        self._client: mqtt.Client | None = None
        self._command_handler: CommandHandler | None = None
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return bool(self.config.host)

    @property
    def command_topic(self) -> str:
        return f"{self.topic_base}/alarm/command"

    def telemetry_topic(self, event: str) -> str:
        return f"{self.topic_base}/telemetry/{event}"

    def connect(self) -> bool:
        """Start the network loop; returns whether a client is running."""
        if not self.config.host:
            self._logger.debug("[mqtt] MQTT host not configured; alarm telemetry stays local")
            return False
        with self._lock:
            if self._client is not None:
                return True
            client = mqtt.Client(
                callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
                client_id=f"daybreak-{self.topic_base.replace('/', '-')}",
                clean_session=True,
            )
            if self.config.username:
                client.username_pw_set(self.config.username, self.config.password or "")
            client.on_connect = self._on_connect
            client.message_callback_add(self.command_topic, self._on_command)
            try:
                client.connect(self.config.host, self.config.port, keepalive=30)
            except Exception as exc:
                self._logger.warning("[mqtt] Failed to connect to %s:%s: %s", self.config.host, self.config.port, exc)
                return False
            client.loop_start()
            self._client = client
            return True

    def disconnect(self) -> None:
        with self._lock:
            client = self._client
            self._client = None
        if client:
            client.loop_stop()
            client.disconnect()

    def is_connected(self) -> bool:
        client = self._client
        try:
            return bool(client and client.is_connected())
        except Exception:
            return False

    def publish_event(self, event: str, payload: dict[str, Any]) -> None:
        client = self._client
        if not client:
            return
        try:
            client.publish(self.telemetry_topic(event), payload=json.dumps(payload, default=str), qos=0, retain=False)
        except Exception as exc:
            self._logger.debug("[mqtt] Failed to publish %s: %s", event, exc)

    def subscribe_commands(self, handler: CommandHandler) -> bool:
        """Route stop/snooze commands to ``handler``; returns False when MQTT is off.

        The subscription is (re)issued on every connect, so it survives broker
        reconnects and works when called before the first CONNACK.
        """
        self._command_handler = handler
        client = self._client
        if client is None:
            return False
        if client.is_connected():
            self._subscribe(client)
        return True

    def clear_commands(self) -> None:
        self._command_handler = None

    def _subscribe(self, client: mqtt.Client) -> None:
        result, _mid = client.subscribe(self.command_topic, qos=1)
        if result != mqtt.MQTT_ERR_SUCCESS:
            self._logger.warning("[mqtt] Failed to subscribe to %s (rc=%s)", self.command_topic, result)

    def _on_connect(self, client, _userdata, _flags, reason_code, _properties=None):  # type: ignore[no-untyped-def]
        if reason_code != 0:
            self._logger.warning("[mqtt] Broker refused connection: %s", reason_code)
            return
        if self._command_handler is not None:
            self._subscribe(client)

    def _on_command(self, _client, _userdata, message):  # type: ignore[no-untyped-def]
        payload = message.payload.decode("utf-8", errors="ignore")
        command = parse_command(payload)
        handler = self._command_handler
        if command is None or handler is None:
            self._logger.debug("[mqtt] Ignoring alarm command %r", payload)
            return
        try:
            handler(command)
        except Exception as exc:
            self._logger.error("[mqtt] Alarm command handler failed for %r: %s", command, exc, exc_info=True)
