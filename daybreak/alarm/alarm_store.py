"""Alarm persistence."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Protocol

from .models import Alarm

LOGGER = logging.getLogger("daybreak.alarm_store")


class AlarmStore(Protocol):
    async def get(self, alarm_id: str) -> Alarm | None: ...

    async def list_alarms(self) -> list[Alarm]: ...

    async def save(self, alarm: Alarm) -> None: ...


class JsonAlarmStore:
    """Alarms kept in a single JSON file; writes are serialized and atomic."""

    def __init__(self, path: Path, logger: logging.Logger | None = None) -> None:
        self._path = path
        self._logger = logger or LOGGER
        self._lock = asyncio.Lock()
        self._alarms: dict[str, Alarm] | None = None

    async def get(self, alarm_id: str) -> Alarm | None:
        async with self._lock:
            return self._load().get(alarm_id)

    async def list_alarms(self) -> list[Alarm]:
        async with self._lock:
            return sorted(self._load().values(), key=lambda alarm: alarm.fire_time)

    async def save(self, alarm: Alarm) -> None:
        async with self._lock:
            alarms = self._load()
            alarms[alarm.alarm_id] = alarm
            self._persist(alarms)

    async def delete(self, alarm_id: str) -> bool:
        async with self._lock:
            alarms = self._load()
            if alarms.pop(alarm_id, None) is None:
                return False
            self._persist(alarms)
            return True

    def _load(self) -> dict[str, Alarm]:
        if self._alarms is not None:
            return self._alarms
        alarms: dict[str, Alarm] = {}
        if self._path.exists():
            try:
                data = json.loads(self._path.read_text(encoding="utf-8"))
            except (json.JSONDecodeError, OSError) as exc:
                self._logger.warning("Failed to load alarms file %s: %s", self._path, exc)
                data = {}
            for item in data.get("alarms", []):
                try:
                    alarm = Alarm.from_dict(item)
                except Exception:
                    self._logger.debug("Skipping invalid alarm entry: %s", item, exc_info=True)
                    continue
                alarms[alarm.alarm_id] = alarm
        self._alarms = alarms
        return alarms

    def _persist(self, alarms: dict[str, Alarm]) -> None:
        payload = {"alarms": [alarm.to_dict() for alarm in alarms.values()]}
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        tmp_path.replace(self._path)
