"""Shared test fixtures for the Daybreak test suite.

This module provides reusable fakes for the pipeline's collaborators:
- Telemetry recording
- Script and speech providers with scripted failures
- Audio player and speech recognizer doubles
- Alarm factories and a recording sleep for backoff assertions
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from unittest.mock import Mock

import pytest
from daybreak.alarm.dismissal import RecognitionResult
from daybreak.alarm.models import Alarm, GeneratedContent
from daybreak.alarm.telemetry import Telemetry

# ============================================================================
# Pytest Configuration
# ============================================================================


@pytest.fixture(scope="session")
def anyio_backend():
    """Configure anyio backend for async tests."""
    return "asyncio"


# ============================================================================
# Logging / Telemetry Fixtures
# ============================================================================


@pytest.fixture
def mock_logger():
    """Create a mock logger restricted to real logger methods."""
    return Mock(spec=logging.Logger)


class RecordingTelemetry(Telemetry):
    def __init__(self) -> None:
        super().__init__()
        self.events: list[tuple[str, dict[str, Any]]] = []

    def emit(self, event: str, payload: dict[str, Any]) -> None:
        self.events.append((event, payload))

    def of(self, event: str) -> list[dict[str, Any]]:
        return [payload for name, payload in self.events if name == event]


@pytest.fixture
def telemetry():
    return RecordingTelemetry()


# ============================================================================
# Timing
# ============================================================================


class RecordingSleep:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)
        await asyncio.sleep(0)


@pytest.fixture
def sleep():
    return RecordingSleep()


# ============================================================================
# Alarm Fixtures
# ============================================================================

FIRE_TIME = datetime(2026, 10, 20, 6, 30).astimezone()


def build_alarm(alarm_id: str = "alarm-1", **overrides: Any) -> Alarm:
    values: dict[str, Any] = {
        "alarm_id": alarm_id,
        "fire_time": FIRE_TIME,
        "label": "Gym",
        "tone": "energetic",
        "voice_id": "voice-a",
        "mission": "Run 5k before work",
    }
    values.update(overrides)
    return Alarm(**values)


def build_content(audio_ref: str | None, **overrides: Any) -> GeneratedContent:
    values: dict[str, Any] = {
        "text": "Rise and shine!",
        "audio_asset_ref": audio_ref,
        "voice_id": "voice-a",
        "intent_id": None,
        "created_at": FIRE_TIME - timedelta(hours=8),
    }
    values.update(overrides)
    return GeneratedContent(**values)


@pytest.fixture
def make_alarm():
    return build_alarm


def write_audio(path: Path, size: int = 64) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"\xff\xfb" + b"\x00" * (size - 2))
    return path


# ============================================================================
# Collaborator Doubles
# ============================================================================


class FakeScriptGenerator:
    def __init__(self, script: str = "Good morning! Time to run.", error: BaseException | None = None) -> None:
        self.script = script
        self.error = error
        self.calls: list[tuple[str, str, dict[str, str]]] = []

    async def generate_script(self, mission: str, tone: str, context: dict[str, str]) -> str:
        self.calls.append((mission, tone, context))
        if self.error is not None:
            raise self.error
        return self.script


class FakeSynthesizer:
    """Returns or raises the scripted results in order; the last one repeats."""

    audio_extension = ".mp3"

    def __init__(self, results: Iterable[bytes | BaseException] = (b"ID3audio-bytes",)) -> None:
        self.results = list(results)
        self.calls: list[tuple[str, str]] = []

    async def synthesize(self, text: str, voice_id: str) -> bytes:
        self.calls.append((text, voice_id))
        index = min(len(self.calls) - 1, len(self.results) - 1)
        result = self.results[index]
        if isinstance(result, BaseException):
            raise result
        return result


class FakePlayer:
    """Audio player double.

    ``failures`` are raised by successive ``start`` calls. ``crashes`` are
    raised by ``wait`` after successive successful starts, like a player
    process that dies while the alarm is ringing.
    """

    def __init__(self, failures: Iterable[BaseException] = (), crashes: Iterable[BaseException] = ()) -> None:
        self.failures = list(failures)
        self.crashes = list(crashes)
        self.started: list[Path] = []
        self.stop_calls = 0
        self.playing = False
        self._crash: BaseException | None = None
        self._stopped = asyncio.Event()

    async def start(self, path: Path) -> None:
        self.started.append(path)
        if self.failures:
            raise self.failures.pop(0)
        self._crash = self.crashes.pop(0) if self.crashes else None
        self._stopped = asyncio.Event()
        self.playing = True

    async def wait(self) -> None:
        if self._crash is not None:
            error, self._crash = self._crash, None
            self.playing = False
            raise error
        await self._stopped.wait()

    async def stop(self) -> None:
        self.stop_calls += 1
        self.playing = False
        self._stopped.set()


class FakeRecognizer:
    """Speech recognizer double; ``results`` may hold RecognitionResults, exceptions or None (hang)."""

    def __init__(
        self,
        results: Iterable[RecognitionResult | BaseException | None] = (),
        *,
        granted: bool = True,
        grant_on_request: bool = False,
    ) -> None:
        self.results = list(results)
        self.granted = granted
        self.grant_on_request = grant_on_request
        self.dismiss_phrases = ("wake up", "i'm awake")
        self.listen_calls = 0
        self.stop_calls = 0
        self.permission_requests = 0

    async def permission_granted(self) -> bool:
        return self.granted

    async def request_permission(self) -> bool:
        self.permission_requests += 1
        if self.grant_on_request:
            self.granted = True
        return self.granted

    async def listen(self) -> RecognitionResult:
        self.listen_calls += 1
        result = self.results.pop(0) if self.results else RecognitionResult(text="", matched=False)
        if result is None:
            await asyncio.Event().wait()
        if isinstance(result, BaseException):
            raise result
        assert isinstance(result, RecognitionResult)
        return result

    async def stop(self) -> None:
        self.stop_calls += 1


class FakeContentStore:
    def __init__(self, mapping: dict[tuple[str, str | None, str], Path] | None = None) -> None:
        self.mapping = mapping or {}
        self.calls: list[tuple[str, str | None, str]] = []

    async def lookup(self, alarm_id: str, intent_id: str | None, voice_id: str) -> Path | None:
        self.calls.append((alarm_id, intent_id, voice_id))
        return self.mapping.get((alarm_id, intent_id, voice_id))
