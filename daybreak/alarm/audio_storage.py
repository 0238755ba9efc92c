"""Durable per-alarm audio files."""

from __future__ import annotations

import asyncio
import logging
import os
import uuid
from pathlib import Path

LOGGER = logging.getLogger("daybreak.audio_storage")

TMP_SUFFIX = ".partial"
AUDIO_EXTENSIONS = {".mp3", ".wav", ".m4a", ".aac", ".ogg"}


class AudioStorage:
    """Write synthesized audio under an app-private directory.

    Filenames are ``<alarm_id>_<random hex><ext>``: opaque, never derived
    from script text, and still discoverable by a filename scan for the alarm.
    A path is only returned once the bytes are on disk at full length.
    """

    def __init__(self, root: Path, logger: logging.Logger | None = None) -> None:
        self.root = root
        self._logger = logger or LOGGER

    def ensure_dir(self) -> Path:
        self.root.mkdir(parents=True, exist_ok=True)
        return self.root

    async def write_audio(self, alarm_id: str, data: bytes, extension: str = ".mp3") -> Path:
        if not data:
            raise ValueError("Refusing to store empty audio")
        safe_id = safe_component(alarm_id)
        if not extension.startswith("."):
            extension = f".{extension}"
        destination = self.root / f"{safe_id}_{uuid.uuid4().hex}{extension.lower()}"
        await asyncio.to_thread(self._write_atomic, destination, data)
        self._logger.debug("Stored %d bytes of audio for alarm %s at %s", len(data), alarm_id, destination)
        return destination

    def _write_atomic(self, destination: Path, data: bytes) -> None:
        self.ensure_dir()
        tmp_path = destination.with_name(destination.name + TMP_SUFFIX)
        try:
            with tmp_path.open("wb") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            tmp_path.replace(destination)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise
        written = destination.stat().st_size
        if written != len(data):
            destination.unlink(missing_ok=True)
            raise OSError(f"Short audio write for {destination.name}: {written} of {len(data)} bytes")

    def discard(self, path: str | Path | None) -> bool:
        """Delete a previously stored file; only paths inside ``root`` are touched."""
        if not path:
            return False
        candidate = Path(path)
        try:
            candidate.resolve().relative_to(self.root.resolve())
        except ValueError:
            self._logger.debug("Not discarding %s: outside %s", candidate, self.root)
            return False
        try:
            candidate.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            self._logger.warning("Failed to remove stale audio %s: %s", candidate, exc)
            return False
        return True


def safe_component(value: str) -> str:
    cleaned = "".join(ch if ch.isalnum() or ch in "-_" else "-" for ch in value.strip())
    return cleaned or "alarm"
