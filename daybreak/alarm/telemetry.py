"""Fire-and-forget diagnostics for resolution, playback, dismissal and generation.

Every public method returns immediately and never raises: a broken sink is
logged at debug level and otherwise ignored, so telemetry cannot change the
outcome of an alarm.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from typing import Any

from daybreak.utils import now, serialize_dt

from .mqtt import AlarmMqtt

LOGGER = logging.getLogger("daybreak.telemetry")


class Telemetry:
    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or LOGGER

    def audio_file_resolution(
        self,
        *,
        found: bool,
        path: str | None,
        strategy: str,
        context: dict[str, Any] | None = None,
    ) -> None:
        self.record(
            "audio_file_resolution",
            {"found": found, "path": path, "strategy": strategy, "context": context or {}},
        )

    def playback_error(self, *, category: str, context: dict[str, Any] | None = None) -> None:
        self.record("playback_error", {"error_category": category, "context": context or {}})

    def dismissal_success(self, *, method: str, audio_played: bool, context: dict[str, Any] | None = None) -> None:
        self.record(
            "dismissal_success",
            {"method": method, "audio_played": audio_played, "context": context or {}},
        )

    def generation_result(
        self,
        *,
        success: bool,
        attempts: int,
        category: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        self.record(
            "generation_result",
            {"success": success, "attempts": attempts, "error_category": category, "context": context or {}},
        )

    def record(self, event: str, payload: dict[str, Any]) -> None:
        stamped = {"event": event, "timestamp": serialize_dt(now()), **payload}
        try:
            self.emit(event, stamped)
        except Exception as exc:
            self._logger.debug("[telemetry] Failed to record %s: %s", event, exc)

    def emit(self, event: str, payload: dict[str, Any]) -> None:
        raise NotImplementedError


class NullTelemetry(Telemetry):
    def emit(self, event: str, payload: dict[str, Any]) -> None:
        return


class LoggingTelemetry(Telemetry):
    """Write each event as one JSON line at INFO."""

    def emit(self, event: str, payload: dict[str, Any]) -> None:
        self._logger.info("[telemetry] %s %s", event, json.dumps(payload, sort_keys=True, default=str))


class MqttTelemetry(Telemetry):
    """Forward events to the device's MQTT telemetry topics."""

    def __init__(self, mqtt: AlarmMqtt, logger: logging.Logger | None = None) -> None:
        super().__init__(logger)
        self._mqtt = mqtt

    def emit(self, event: str, payload: dict[str, Any]) -> None:
        self._mqtt.publish_event(event, payload)


class FanoutTelemetry(Telemetry):
    def __init__(self, sinks: Iterable[Telemetry], logger: logging.Logger | None = None) -> None:
        super().__init__(logger)
        self._sinks = list(sinks)

    def record(self, event: str, payload: dict[str, Any]) -> None:
        for sink in self._sinks:
            sink.record(event, payload)

    def emit(self, event: str, payload: dict[str, Any]) -> None:
        for sink in self._sinks:
            sink.emit(event, payload)
