"""Content-addressed audio cache keyed by alarm, intent and voice."""

from __future__ import annotations

import asyncio
import json
import logging
import shutil
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Protocol

from daybreak.utils import deserialize_dt, now, serialize_dt

from .audio_storage import TMP_SUFFIX, safe_component

LOGGER = logging.getLogger("daybreak.content_store")

MANIFEST_NAME = "index.json"


class ContentStore(Protocol):
    async def lookup(self, alarm_id: str, intent_id: str | None, voice_id: str) -> Path | None: ...


@dataclass(frozen=True)
class CacheEntry:
    alarm_id: str
    intent_id: str | None
    voice_id: str
    path: str
    created_at: datetime

    def is_expired(self, at: datetime, ttl: timedelta) -> bool:
        return at - self.created_at > ttl

    def to_dict(self) -> dict[str, Any]:
        return {
            "alarm_id": self.alarm_id,
            "intent_id": self.intent_id,
            "voice_id": self.voice_id,
            "path": self.path,
            "created_at": serialize_dt(self.created_at),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> CacheEntry:
        return cls(
            alarm_id=payload["alarm_id"],
            intent_id=payload.get("intent_id"),
            voice_id=payload["voice_id"],
            path=payload["path"],
            created_at=deserialize_dt(payload.get("created_at")) or now(),
        )


def cache_key(alarm_id: str, intent_id: str | None, voice_id: str) -> str:
    return f"{alarm_id}:{intent_id or '-'}:{voice_id}"


class AudioCache:
    """JSON-indexed copies of generated audio.

    Entries expire after ``ttl`` and are dropped as soon as their file is
    found missing, so a lookup never returns a path that was known stale.
    """

    def __init__(
        self,
        cache_dir: Path,
        ttl: timedelta = timedelta(hours=72),
        logger: logging.Logger | None = None,
    ) -> None:
        self.cache_dir = cache_dir
        self.ttl = ttl
        self.manifest_path = cache_dir / MANIFEST_NAME
        self._logger = logger or LOGGER
        self._entries: dict[str, CacheEntry] | None = None
        self._lock = asyncio.Lock()

    async def lookup(self, alarm_id: str, intent_id: str | None, voice_id: str) -> Path | None:
        key = cache_key(alarm_id, intent_id, voice_id)
        async with self._lock:
            entries = self._load()
            entry = entries.get(key)
            if entry is None:
                return None
            path = Path(entry.path)
            if entry.is_expired(now(), self.ttl) or not path.is_file():
                self._logger.debug("Dropping stale cache entry %s (%s)", key, path)
                entries.pop(key, None)
                path.unlink(missing_ok=True)
                self._persist(entries)
                return None
            return path

    async def put(self, alarm_id: str, intent_id: str | None, voice_id: str, source: Path) -> Path:
        """Copy ``source`` into the cache and index it, replacing any earlier copy."""
        destination = self.cache_dir / f"{safe_component(alarm_id)}_{uuid.uuid4().hex}{source.suffix.lower()}"
        await asyncio.to_thread(_copy_atomic, source, destination)
        key = cache_key(alarm_id, intent_id, voice_id)
        async with self._lock:
            entries = self._load()
            previous = entries.get(key)
            entries[key] = CacheEntry(
                alarm_id=alarm_id,
                intent_id=intent_id,
                voice_id=voice_id,
                path=str(destination),
                created_at=now(),
            )
            self._persist(entries)
        if previous and previous.path != str(destination):
            Path(previous.path).unlink(missing_ok=True)
        return destination

    async def prune(self, at: datetime | None = None) -> int:
        """Remove expired entries and entries whose file has vanished."""
        moment = at or now()
        removed = 0
        async with self._lock:
            entries = self._load()
            for key, entry in list(entries.items()):
                path = Path(entry.path)
                if entry.is_expired(moment, self.ttl) or not path.is_file():
                    entries.pop(key)
                    path.unlink(missing_ok=True)
                    removed += 1
            if removed:
                self._persist(entries)
        if removed:
            self._logger.info("Pruned %d cached audio entr%s", removed, "y" if removed == 1 else "ies")
        return removed

    def _load(self) -> dict[str, CacheEntry]:
        if self._entries is not None:
            return self._entries
        entries: dict[str, CacheEntry] = {}
        if self.manifest_path.exists():
            try:
                data = json.loads(self.manifest_path.read_text(encoding="utf-8"))
            except (json.JSONDecodeError, OSError) as exc:
                self._logger.warning("Failed to load audio cache index %s: %s", self.manifest_path, exc)
                data = {}
            for key, item in (data.get("entries") or {}).items():
                try:
                    entries[key] = CacheEntry.from_dict(item)
                except (KeyError, TypeError):
                    self._logger.debug("Skipping invalid cache entry %s: %s", key, item)
        self._entries = entries
        return entries

    def _persist(self, entries: dict[str, CacheEntry]) -> None:
        payload = {"entries": {key: entry.to_dict() for key, entry in entries.items()}}
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        tmp_path = self.manifest_path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        tmp_path.replace(self.manifest_path)


def _copy_atomic(source: Path, destination: Path) -> None:
    destination.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = destination.with_name(destination.name + TMP_SUFFIX)
    try:
        shutil.copyfile(source, tmp_path)
        tmp_path.replace(destination)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
