"""Generate an alarm's script and speech ahead of time.

The script is requested once; without text there is nothing to speak, so a
script failure ends the run immediately. Speech synthesis is retried with
the shared backoff policy, and the resulting bytes are written to durable
storage before any ``GeneratedContent`` refers to them. When synthesis runs
out of attempts the caller gets the script back without audio and decides
what to do; nothing here substitutes a fallback sound.
"""

from __future__ import annotations

import asyncio
import contextlib
import io
import logging
import wave
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from .alarm_store import AlarmStore
from .audio_storage import AudioStorage
from .backoff import GENERATION_BACKOFF, MANUAL_RETRY_BACKOFF, BackoffPolicy, RetryAttempt, Sleep, run_with_retry
from .content_store import AudioCache
from .errors import (
    NOT_CONNECTED_TO_INTERNET,
    Classification,
    GenerationInProgress,
    RetryExhausted,
    ScriptGenerationError,
    SpeechSynthesisError,
    classify_error,
)
from .models import Alarm, GeneratedContent, Tone
from .telemetry import NullTelemetry, Telemetry

LOGGER = logging.getLogger("daybreak.generation")

SCRIPT_FAILED_MESSAGE = "We couldn't write your wake-up script. Please try again."


class ScriptGenerator(Protocol):
    async def generate_script(self, mission: str, tone: Tone, context: dict[str, str]) -> str: ...


class SpeechSynthesizer(Protocol):
    audio_extension: str

    async def synthesize(self, text: str, voice_id: str) -> bytes: ...


@dataclass(frozen=True)
class GenerationRequest:
    alarm_id: str
    mission: str
    tone: Tone
    voice_id: str
    intent_id: str | None = None
    context: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_alarm(
        cls,
        alarm: Alarm,
        *,
        default_voice: str,
        intent_id: str | None = None,
        context: dict[str, str] | None = None,
    ) -> GenerationRequest:
        details = {"label": alarm.label, "wake_time": alarm.fire_time.strftime("%H:%M")}
        details.update(context or {})
        return cls(
            alarm_id=alarm.alarm_id,
            mission=alarm.mission,
            tone=alarm.tone,
            voice_id=alarm.voice_id or default_voice,
            intent_id=intent_id,
            context=details,
        )


@dataclass(frozen=True)
class GenerationOutcome:
    request: GenerationRequest
    script: str | None
    content: GeneratedContent | None
    attempts: int
    error: BaseException | None = None
    classification: Classification | None = None
    message: str | None = None

    @property
    def script_ready(self) -> bool:
        return self.script is not None

    @property
    def audio_ready(self) -> bool:
        return self.content is not None and self.content.has_audio


class GenerationOrchestrator:
    def __init__(
        self,
        *,
        script_generator: ScriptGenerator,
        synthesizer: SpeechSynthesizer,
        storage: AudioStorage,
        content_store: AudioCache | None = None,
        telemetry: Telemetry | None = None,
        policy: BackoffPolicy = GENERATION_BACKOFF,
        manual_policy: BackoffPolicy = MANUAL_RETRY_BACKOFF,
        sleep: Sleep = asyncio.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        self._scripts = script_generator
        self._synthesizer = synthesizer
        self._storage = storage
        self._content_store = content_store
        self._telemetry = telemetry or NullTelemetry()
        self.policy = policy
        self.manual_policy = manual_policy
        self._sleep = sleep
        self._logger = logger or LOGGER
        self._in_flight: set[str] = set()

    def is_generating(self, alarm_id: str) -> bool:
        return alarm_id in self._in_flight

    async def generate(self, request: GenerationRequest) -> GenerationOutcome:
        with self._claim(request.alarm_id):
            try:
                script = (await self._scripts.generate_script(request.mission, request.tone, request.context)).strip()
                if not script:
                    raise ScriptGenerationError("Script provider returned empty text")
            except Exception as exc:
                verdict = classify_error(exc)
                self._logger.error("Script generation failed for alarm %s: %s", request.alarm_id, exc)
                self._telemetry.generation_result(
                    success=False,
                    attempts=0,
                    category=verdict.category,
                    context={"alarm_id": request.alarm_id, "stage": "script"},
                )
                return GenerationOutcome(
                    request=request,
                    script=None,
                    content=None,
                    attempts=0,
                    error=exc,
                    classification=verdict,
                    message=SCRIPT_FAILED_MESSAGE,
                )
            self._logger.info("Generated %d-character script for alarm %s", len(script), request.alarm_id)
            return await self._synthesize_and_store(request, script, self.policy, manual=False)

    async def retry_audio(self, request: GenerationRequest, script: str) -> GenerationOutcome:
        """Re-run synthesis and storage for a script the user already has."""
        with self._claim(request.alarm_id):
            return await self._synthesize_and_store(request, script, self.manual_policy, manual=True)

    async def apply_to_alarm(self, alarm: Alarm, content: GeneratedContent, store: AlarmStore) -> Alarm:
        """Swap ``content`` into ``alarm``, persist it, then discard the superseded audio.

        The old file is removed only after the saved alarm stops pointing at it.
        """
        previous = alarm.generated_content
        alarm.generated_content = content
        await store.save(alarm)
        if previous and previous.audio_asset_ref and previous.audio_asset_ref != content.audio_asset_ref:
            if self._storage.discard(previous.audio_asset_ref):
                self._logger.debug("Discarded superseded audio for alarm %s", alarm.alarm_id)
        return alarm

    @contextlib.contextmanager
    def _claim(self, alarm_id: str) -> Iterator[None]:
        if alarm_id in self._in_flight:
            raise GenerationInProgress(f"Alarm {alarm_id} is already generating")
        self._in_flight.add(alarm_id)
        try:
            yield
        finally:
            self._in_flight.discard(alarm_id)

    async def _synthesize_and_store(
        self,
        request: GenerationRequest,
        script: str,
        policy: BackoffPolicy,
        *,
        manual: bool,
    ) -> GenerationOutcome:
        stage = "manual_retry" if manual else "speech"
        attempts_used = 0

        async def _attempt(attempt: RetryAttempt) -> bytes:
            nonlocal attempts_used
            attempts_used = attempt.index
            self._logger.debug(
                "Synthesizing speech for alarm %s (attempt %d/%d)", request.alarm_id, attempt.index, policy.max_attempts
            )
            audio = await self._synthesizer.synthesize(script, request.voice_id)
            if not audio:
                raise SpeechSynthesisError("Cannot parse response: speech provider returned no audio")
            return audio

        try:
            audio = await run_with_retry(
                _attempt,
                policy=policy,
                label=f"Speech synthesis for alarm {request.alarm_id}",
                sleep=self._sleep,
                logger=self._logger,
            )
        except RetryExhausted as exc:
            self._telemetry.generation_result(
                success=False,
                attempts=exc.attempts,
                category=exc.classification.category,
                context={"alarm_id": request.alarm_id, "stage": stage},
            )
            return GenerationOutcome(
                request=request,
                script=script,
                content=None,
                attempts=exc.attempts,
                error=exc.last_error,
                classification=exc.classification,
                message=audio_failure_message(exc.classification, exc.last_error, manual=manual),
            )

        try:
            path = await self._storage.write_audio(request.alarm_id, audio, self._synthesizer.audio_extension)
        except (OSError, ValueError) as exc:
            self._logger.error("Failed to store audio for alarm %s: %s", request.alarm_id, exc)
            verdict = classify_error(exc)
            self._telemetry.generation_result(
                success=False,
                attempts=attempts_used,
                category=verdict.category,
                context={"alarm_id": request.alarm_id, "stage": "storage"},
            )
            return GenerationOutcome(
                request=request,
                script=script,
                content=None,
                attempts=attempts_used,
                error=exc,
                classification=verdict,
                message="Script generated successfully! The audio could not be saved on this device.",
            )

        content = GeneratedContent(
            text=script,
            audio_asset_ref=str(path),
            voice_id=request.voice_id,
            intent_id=request.intent_id,
            duration_seconds=wav_duration(audio),
        )
        await self._register(request, path)
        self._telemetry.generation_result(
            success=True,
            attempts=attempts_used,
            context={"alarm_id": request.alarm_id, "stage": stage, "path": str(path)},
        )
        self._logger.info("Audio for alarm %s stored at %s", request.alarm_id, path)
        return GenerationOutcome(request=request, script=script, content=content, attempts=attempts_used)

    async def _register(self, request: GenerationRequest, path: Path) -> None:
        if self._content_store is None:
            return
        try:
            await self._content_store.put(request.alarm_id, request.intent_id, request.voice_id, path)
        except OSError as exc:
            self._logger.warning("Could not cache audio for alarm %s: %s", request.alarm_id, exc)


def audio_failure_message(classification: Classification, error: BaseException, *, manual: bool) -> str:
    prefix = "Script generated successfully!"
    if getattr(error, "code", None) == NOT_CONNECTED_TO_INTERNET or "no internet" in str(error).lower():
        detail = "Audio generation failed because there is no internet connection."
    elif classification.category == "network_transient":
        detail = "Audio generation failed due to network issues."
    elif classification.category == "parse_or_protocol":
        detail = "The voice service is currently experiencing issues."
    else:
        detail = f"Audio generation failed: {error}"
    if manual:
        return f"{prefix} {detail} Please check your internet connection and try again."
    return f"{prefix} {detail} You can retry the audio or keep a standard alarm sound."


def wav_duration(data: bytes) -> float | None:
    """Duration of RIFF/WAVE audio, or None for other formats."""
    if not data.startswith(b"RIFF"):
        return None
    try:
        with wave.open(io.BytesIO(data), "rb") as wav_file:
            rate = wav_file.getframerate()
            return wav_file.getnframes() / rate if rate else None
    except (wave.Error, EOFError):
        return None
