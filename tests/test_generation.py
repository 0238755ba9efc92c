"""Tests for the generation orchestrator."""

from __future__ import annotations

import asyncio
import io
import wave
from pathlib import Path

import pytest
from conftest import FakeScriptGenerator, FakeSynthesizer, build_alarm, build_content, write_audio
from daybreak.alarm.alarm_store import JsonAlarmStore
from daybreak.alarm.audio_storage import AudioStorage
from daybreak.alarm.backoff import BackoffPolicy
from daybreak.alarm.content_store import AudioCache
from daybreak.alarm.errors import (
    NOT_CONNECTED_TO_INTERNET,
    Classification,
    GenerationInProgress,
    ScriptGenerationError,
    SpeechSynthesisError,
)
from daybreak.alarm.generation import (
    SCRIPT_FAILED_MESSAGE,
    GenerationOrchestrator,
    GenerationRequest,
    audio_failure_message,
    wav_duration,
)

pytestmark = pytest.mark.anyio


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def request_():
    return GenerationRequest(
        alarm_id="alarm-1",
        mission="Run 5k",
        tone="energetic",
        voice_id="voice-a",
        intent_id="intent-9",
    )


def _orchestrator(tmp_path: Path, scripts, synthesizer, sleep, telemetry=None, cache=None):
    return GenerationOrchestrator(
        script_generator=scripts,
        synthesizer=synthesizer,
        storage=AudioStorage(tmp_path / "audio"),
        content_store=cache,
        telemetry=telemetry,
        sleep=sleep,
    )


# ============================================================================
# Primary flow
# ============================================================================


class TestGenerate:
    async def test_script_failure_skips_synthesis(self, tmp_path, request_, sleep, telemetry) -> None:
        scripts = FakeScriptGenerator(error=ScriptGenerationError("LLM down"))
        synthesizer = FakeSynthesizer()
        orchestrator = _orchestrator(tmp_path, scripts, synthesizer, sleep, telemetry)

        outcome = await orchestrator.generate(request_)

        assert synthesizer.calls == []
        assert sleep.calls == []
        assert outcome.script is None
        assert outcome.content is None
        assert outcome.message == SCRIPT_FAILED_MESSAGE
        assert telemetry.of("generation_result")[0]["context"]["stage"] == "script"

    async def test_empty_script_counts_as_failure(self, tmp_path, request_, sleep) -> None:
        synthesizer = FakeSynthesizer()
        orchestrator = _orchestrator(tmp_path, FakeScriptGenerator(script="   "), synthesizer, sleep)

        outcome = await orchestrator.generate(request_)

        assert outcome.script_ready is False
        assert synthesizer.calls == []

    async def test_two_failures_then_success(self, tmp_path, request_, sleep, telemetry) -> None:
        synthesizer = FakeSynthesizer([TimeoutError("timed out"), ConnectionResetError("connection lost"), b"ID3-final"])
        orchestrator = _orchestrator(tmp_path, FakeScriptGenerator(), synthesizer, sleep, telemetry)

        outcome = await orchestrator.generate(request_)

        assert len(synthesizer.calls) == 3
        assert sleep.calls == [1.0, 2.0]
        assert outcome.audio_ready
        assert outcome.attempts == 3
        path = Path(outcome.content.audio_asset_ref)
        assert path.is_file()
        assert path.stat().st_size > 0
        assert path.read_bytes() == b"ID3-final"
        assert path.name.startswith("alarm-1_")
        assert path.suffix == ".mp3"
        assert outcome.content.intent_id == "intent-9"
        assert outcome.content.voice_id == "voice-a"
        assert telemetry.of("generation_result")[-1]["success"] is True
        assert telemetry.of("generation_result")[-1]["attempts"] == 3

    async def test_exhaustion_returns_script_without_audio(self, tmp_path, request_, sleep) -> None:
        synthesizer = FakeSynthesizer([TimeoutError("timed out")])
        orchestrator = _orchestrator(tmp_path, FakeScriptGenerator("Up and at 'em"), synthesizer, sleep)

        outcome = await orchestrator.generate(request_)

        assert len(synthesizer.calls) == 3
        assert sleep.calls == [1.0, 2.0]
        assert outcome.script == "Up and at 'em"
        assert outcome.audio_ready is False
        assert outcome.classification.category == "network_transient"
        assert outcome.message.startswith("Script generated successfully!")
        assert not (tmp_path / "audio").exists() or not any((tmp_path / "audio").iterdir())

    async def test_unknown_synthesis_error_not_retried(self, tmp_path, request_, sleep) -> None:
        synthesizer = FakeSynthesizer([SpeechSynthesisError("invalid voice", status_code=400)])
        orchestrator = _orchestrator(tmp_path, FakeScriptGenerator(), synthesizer, sleep)

        outcome = await orchestrator.generate(request_)

        assert len(synthesizer.calls) == 1
        assert sleep.calls == []
        assert outcome.attempts == 1
        assert outcome.classification.retryable is False

    async def test_empty_audio_is_retried_as_protocol_error(self, tmp_path, request_, sleep) -> None:
        synthesizer = FakeSynthesizer([b"", b"ID3-ok"])
        orchestrator = _orchestrator(tmp_path, FakeScriptGenerator(), synthesizer, sleep)

        outcome = await orchestrator.generate(request_)

        assert outcome.audio_ready
        assert len(synthesizer.calls) == 2

    async def test_audio_registered_in_cache(self, tmp_path, request_, sleep) -> None:
        cache = AudioCache(tmp_path / "cache")
        orchestrator = _orchestrator(tmp_path, FakeScriptGenerator(), FakeSynthesizer(), sleep, cache=cache)

        outcome = await orchestrator.generate(request_)

        cached = await cache.lookup("alarm-1", "intent-9", "voice-a")
        assert cached is not None
        assert cached != Path(outcome.content.audio_asset_ref)
        assert cached.read_bytes() == Path(outcome.content.audio_asset_ref).read_bytes()

    async def test_concurrent_generation_for_same_alarm_rejected(self, tmp_path, request_) -> None:
        gate = asyncio.Event()

        class SlowScripts(FakeScriptGenerator):
            async def generate_script(self, mission, tone, context):
                await gate.wait()
                return "hello"

        orchestrator = _orchestrator(tmp_path, SlowScripts(), FakeSynthesizer(), asyncio.sleep)
        first = asyncio.create_task(orchestrator.generate(request_))
        await asyncio.sleep(0)
        assert orchestrator.is_generating("alarm-1")

        with pytest.raises(GenerationInProgress):
            await orchestrator.generate(request_)

        gate.set()
        outcome = await first
        assert outcome.audio_ready
        assert not orchestrator.is_generating("alarm-1")


# ============================================================================
# Manual retry
# ============================================================================


class TestRetryAudio:
    async def test_manual_retry_uses_five_attempts(self, tmp_path, request_, sleep) -> None:
        scripts = FakeScriptGenerator()
        synthesizer = FakeSynthesizer([TimeoutError("timed out")])
        orchestrator = _orchestrator(tmp_path, scripts, synthesizer, sleep)

        outcome = await orchestrator.retry_audio(request_, "Known script")

        assert scripts.calls == []
        assert len(synthesizer.calls) == 5
        assert sleep.calls == [1.0, 2.0, 4.0, 8.0]
        assert outcome.script == "Known script"
        assert "try again" in outcome.message

    async def test_manual_retry_success(self, tmp_path, request_, sleep) -> None:
        synthesizer = FakeSynthesizer([ConnectionResetError("connection lost")] * 4 + [b"ID3-late"])
        orchestrator = _orchestrator(tmp_path, FakeScriptGenerator(), synthesizer, sleep)

        outcome = await orchestrator.retry_audio(request_, "Known script")

        assert outcome.audio_ready
        assert outcome.content.text == "Known script"
        assert outcome.attempts == 5

    async def test_caps_are_configurable(self, tmp_path, request_, sleep) -> None:
        orchestrator = GenerationOrchestrator(
            script_generator=FakeScriptGenerator(),
            synthesizer=FakeSynthesizer([TimeoutError()]),
            storage=AudioStorage(tmp_path / "audio"),
            policy=BackoffPolicy(max_attempts=2),
            manual_policy=BackoffPolicy(max_attempts=4),
            sleep=sleep,
        )

        first = await orchestrator.generate(request_)
        second = await orchestrator.retry_audio(request_, first.script)

        assert first.attempts == 2
        assert second.attempts == 4


# ============================================================================
# Applying content to an alarm
# ============================================================================


class TestApplyToAlarm:
    async def test_replaces_content_and_discards_old_audio(self, tmp_path, sleep) -> None:
        orchestrator = _orchestrator(tmp_path, FakeScriptGenerator(), FakeSynthesizer(), sleep)
        old = write_audio(tmp_path / "audio" / "alarm-1_old.mp3")
        new = write_audio(tmp_path / "audio" / "alarm-1_new.mp3")
        store = JsonAlarmStore(tmp_path / "alarms.json")
        alarm = build_alarm(generated_content=build_content(str(old)))

        updated = await orchestrator.apply_to_alarm(alarm, build_content(str(new)), store)

        saved = await store.get("alarm-1")
        assert saved is not None
        assert saved.generated_content.audio_asset_ref == str(new)
        assert updated.generated_content.audio_asset_ref == str(new)
        assert not old.exists()
        assert new.exists()

    async def test_keeps_audio_outside_storage(self, tmp_path, sleep) -> None:
        orchestrator = _orchestrator(tmp_path, FakeScriptGenerator(), FakeSynthesizer(), sleep)
        outside = write_audio(tmp_path / "shared" / "alarm-1.mp3")
        store = JsonAlarmStore(tmp_path / "alarms.json")
        alarm = build_alarm(generated_content=build_content(str(outside)))

        await orchestrator.apply_to_alarm(alarm, build_content(None), store)

        saved = await store.get("alarm-1")
        assert saved is not None
        assert saved.generated_content.audio_asset_ref is None
        assert outside.exists()

    async def test_same_file_is_not_discarded(self, tmp_path, sleep) -> None:
        orchestrator = _orchestrator(tmp_path, FakeScriptGenerator(), FakeSynthesizer(), sleep)
        audio = write_audio(tmp_path / "audio" / "alarm-1_same.mp3")
        store = JsonAlarmStore(tmp_path / "alarms.json")
        alarm = build_alarm(generated_content=build_content(str(audio)))

        await orchestrator.apply_to_alarm(alarm, build_content(str(audio), text="New words"), store)

        assert audio.exists()
        assert (await store.get("alarm-1")).generated_content.text == "New words"


# ============================================================================
# Helpers
# ============================================================================


class TestHelpers:
    def test_request_from_alarm(self) -> None:
        alarm = build_alarm(voice_id=None)
        request = GenerationRequest.from_alarm(alarm, default_voice="fallback", context={"weather": "rain"})
        assert request.voice_id == "fallback"
        assert request.context["wake_time"] == "06:30"
        assert request.context["weather"] == "rain"
        assert request.tone == "energetic"

    def test_failure_message_no_internet(self) -> None:
        error = OSError("offline")
        error.code = NOT_CONNECTED_TO_INTERNET  # type: ignore[attr-defined]
        message = audio_failure_message(Classification(True, "network_transient"), error, manual=False)
        assert "no internet connection" in message

    def test_failure_message_service_issue(self) -> None:
        message = audio_failure_message(Classification(True, "parse_or_protocol"), ValueError("bad"), manual=True)
        assert "experiencing issues" in message
        assert message.endswith("try again.")

    def test_wav_duration(self) -> None:
        buffer = io.BytesIO()
        with wave.open(buffer, "wb") as wav_file:
            wav_file.setnchannels(1)
            wav_file.setsampwidth(2)
            wav_file.setframerate(16000)
            wav_file.writeframes(b"\x00\x00" * 8000)
        assert wav_duration(buffer.getvalue()) == pytest.approx(0.5)
        assert wav_duration(b"ID3notwav") is None
