"""End-to-end tests for the wake-up service."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from pathlib import Path

import pytest
from conftest import (
    FIRE_TIME,
    FakePlayer,
    FakeScriptGenerator,
    FakeSynthesizer,
    build_alarm,
    build_content,
    write_audio,
)
from daybreak.alarm.alarm_store import JsonAlarmStore
from daybreak.alarm.audio import FilePlayer
from daybreak.alarm.audio_storage import AudioStorage
from daybreak.alarm.config import DEFAULT_DISMISS_PHRASES, DaybreakConfig
from daybreak.alarm.content_store import AudioCache
from daybreak.alarm.elevenlabs import ElevenLabsSynthesizer
from daybreak.alarm.generation import GenerationOrchestrator
from daybreak.alarm.resolution import AudioResolutionCascade
from daybreak.alarm.service import UnknownAlarm, WakeupService
from daybreak.alarm.wyoming import WyomingSynthesizer

pytestmark = pytest.mark.anyio


# ============================================================================
# Fixtures
# ============================================================================


class Harness:
    def __init__(self, tmp_path, *, scripts=None, synthesizer=None, sleep=None, telemetry=None) -> None:
        self.audio_dir = tmp_path / "audio"
        self.cache_dir = tmp_path / "cache"
        self.scripts = scripts or FakeScriptGenerator()
        self.synthesizer = synthesizer or FakeSynthesizer()
        self.players: list[FakePlayer] = []
        self.store = JsonAlarmStore(tmp_path / "alarms.json")
        storage = AudioStorage(self.audio_dir)
        cache = AudioCache(self.cache_dir)
        self.service = WakeupService(
            store=self.store,
            orchestrator=GenerationOrchestrator(
                script_generator=self.scripts,
                synthesizer=self.synthesizer,
                storage=storage,
                content_store=cache,
                telemetry=telemetry,
                sleep=sleep or asyncio.sleep,
            ),
            resolver=AudioResolutionCascade(
                content_store=cache,
                scan_directories=[self.cache_dir, self.audio_dir],
                telemetry=telemetry,
                base_dir=self.audio_dir,
            ),
            storage=storage,
            player_factory=self._player,
            cache=cache,
            telemetry=telemetry,
            default_voice="voice-default",
            sleep=sleep or asyncio.sleep,
        )

    def _player(self) -> FakePlayer:
        player = FakePlayer()
        self.players.append(player)
        return player


async def _stop_when_playing(session, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() <= deadline:
        if session.phase == "playing" and session.audio_played:
            await session.stop()
            return
        await asyncio.sleep(0.01)
    raise AssertionError("alarm never reached playing")


# ============================================================================
# Ringing
# ============================================================================


class TestRing:
    async def test_scan_recovers_audio_when_reference_is_stale(self, tmp_path, telemetry) -> None:
        harness = Harness(tmp_path, telemetry=telemetry)
        cached = write_audio(harness.cache_dir / "alarm-1_v2.mp3")
        alarm = build_alarm(generated_content=build_content(str(tmp_path / "gone" / "alarm-1.mp3")))
        await harness.store.save(alarm)
        stoppers: list[asyncio.Task[None]] = []

        outcome = await harness.service.ring(
            "alarm-1",
            on_session=lambda session: stoppers.append(asyncio.create_task(_stop_when_playing(session))),
        )
        await asyncio.gather(*stoppers)

        assert outcome.reason == "stopped"
        assert outcome.method == "manual"
        assert outcome.audio_played is True
        assert outcome.resolution.strategy == "filesystem_scan"
        assert outcome.resolution.path == cached
        assert harness.players[0].started == [cached]
        strategies = [report["strategy"] for report in telemetry.of("audio_file_resolution")]
        assert strategies == ["direct", "content_store_lookup", "filesystem_scan"]
        assert telemetry.of("dismissal_success")[0]["audio_played"] is True

    async def test_ring_without_audio_explains(self, tmp_path) -> None:
        harness = Harness(tmp_path)
        await harness.store.save(build_alarm())

        outcome = await harness.service.ring("alarm-1")

        assert outcome.reason == "audio_not_found"
        assert outcome.message
        assert harness.players[0].started == []

    async def test_snooze_is_persisted(self, tmp_path) -> None:
        harness = Harness(tmp_path)
        audio = write_audio(harness.audio_dir / "alarm-1_x.mp3")
        await harness.store.save(build_alarm(generated_content=build_content(str(audio))))
        tasks: list[asyncio.Task] = []

        async def _snooze(session) -> None:
            loop = asyncio.get_running_loop()
            deadline = loop.time() + 2.0
            while loop.time() <= deadline:
                if session.phase == "playing":
                    break
                await asyncio.sleep(0.01)
            await session.snooze(FIRE_TIME)

        outcome = await harness.service.ring(
            "alarm-1", on_session=lambda session: tasks.append(asyncio.create_task(_snooze(session)))
        )
        await asyncio.gather(*tasks)

        assert outcome.reason == "snoozed"
        stored = await harness.store.get("alarm-1")
        assert stored.fire_time == FIRE_TIME + timedelta(minutes=5)
        assert stored.snooze.current_count == 1

    async def test_unknown_alarm(self, tmp_path) -> None:
        with pytest.raises(UnknownAlarm):
            await Harness(tmp_path).service.ring("missing")


# ============================================================================
# Generation
# ============================================================================


class TestGenerate:
    async def test_generate_commits_content(self, tmp_path) -> None:
        harness = Harness(tmp_path)
        await harness.store.save(build_alarm(voice_id=None))

        outcome = await harness.service.generate("alarm-1", intent_id="intent-1")

        stored = await harness.store.get("alarm-1")
        assert outcome.audio_ready
        assert stored.generated_content == outcome.content
        assert stored.generated_content.voice_id == "voice-default"
        assert harness.synthesizer.calls[0][1] == "voice-default"

    async def test_regenerate_discards_previous_audio(self, tmp_path) -> None:
        harness = Harness(tmp_path)
        await harness.store.save(build_alarm())

        first = await harness.service.generate("alarm-1")
        second = await harness.service.generate("alarm-1")

        assert not Path(first.content.audio_asset_ref).exists()
        assert Path(second.content.audio_asset_ref).exists()

    async def test_failed_audio_keeps_script_for_retry(self, tmp_path, sleep) -> None:
        synthesizer = FakeSynthesizer([TimeoutError("timed out")] * 3 + [b"ID3-retry"])
        harness = Harness(tmp_path, synthesizer=synthesizer, sleep=sleep)
        await harness.store.save(build_alarm())

        failed = await harness.service.generate("alarm-1")
        stored = await harness.store.get("alarm-1")
        assert failed.audio_ready is False
        assert stored.generated_content.text == failed.script
        assert stored.generated_content.has_audio is False

        retried = await harness.service.retry_audio("alarm-1")

        assert retried.audio_ready
        assert harness.scripts.calls and len(harness.scripts.calls) == 1
        stored = await harness.store.get("alarm-1")
        assert stored.generated_content.has_audio

    async def test_failed_audio_leaves_existing_audio_alone(self, tmp_path, sleep) -> None:
        harness = Harness(tmp_path, synthesizer=FakeSynthesizer([TimeoutError()]), sleep=sleep)
        audio = write_audio(harness.audio_dir / "alarm-1_old.mp3")
        existing = build_content(str(audio))
        await harness.store.save(build_alarm(generated_content=existing))

        await harness.service.generate("alarm-1")

        assert (await harness.store.get("alarm-1")).generated_content == existing
        assert audio.exists()

    async def test_retry_without_script_rejected(self, tmp_path) -> None:
        harness = Harness(tmp_path)
        await harness.store.save(build_alarm())
        with pytest.raises(ValueError):
            await harness.service.retry_audio("alarm-1")


# ============================================================================
# Maintenance
# ============================================================================


class TestMaintenance:
    async def test_pregenerate_only_due_alarms_missing_content(self, tmp_path) -> None:
        harness = Harness(tmp_path)
        at = FIRE_TIME - timedelta(hours=2)
        await harness.store.save(build_alarm("due"))
        await harness.store.save(build_alarm("later", fire_time=FIRE_TIME + timedelta(days=2)))
        await harness.store.save(build_alarm("off", enabled=False))
        await harness.store.save(build_alarm("ready", generated_content=build_content("ready.mp3")))

        outcomes = await harness.service.pregenerate_upcoming(at)

        assert [outcome.request.alarm_id for outcome in outcomes] == ["due"]
        assert (await harness.store.get("due")).generated_content is not None

    async def test_clear_expired_content(self, tmp_path) -> None:
        harness = Harness(tmp_path)
        stale_audio = write_audio(harness.audio_dir / "old_1.mp3")
        await harness.store.save(build_alarm("old", generated_content=build_content(str(stale_audio))))
        fresh = build_content("new.mp3", created_at=FIRE_TIME + timedelta(days=5))
        await harness.store.save(build_alarm("new", generated_content=fresh))

        cleared = await harness.service.clear_expired_content(FIRE_TIME + timedelta(days=7))

        assert cleared == 1
        assert (await harness.store.get("old")).generated_content is None
        assert (await harness.store.get("new")).generated_content == fresh
        assert not stale_audio.exists()


# ============================================================================
# Configuration wiring
# ============================================================================


class TestFromConfig:
    def test_elevenlabs_selected_when_key_present(self, tmp_path) -> None:
        config = DaybreakConfig.from_env(
            {"DAYBREAK_DATA_DIR": str(tmp_path), "DAYBREAK_HOSTNAME": "bedroom", "ELEVENLABS_API_KEY": "key"}
        )
        service = WakeupService.from_config(config)
        assert isinstance(service.orchestrator._synthesizer, ElevenLabsSynthesizer)
        assert service.default_voice == config.elevenlabs.default_voice

    def test_wyoming_fallback_and_session_wiring(self, tmp_path) -> None:
        config = DaybreakConfig.from_env(
            {"DAYBREAK_DATA_DIR": str(tmp_path), "DAYBREAK_HOSTNAME": "bedroom", "DAYBREAK_TTS_PROVIDER": "wyoming"}
        )
        service = WakeupService.from_config(config)
        assert isinstance(service.orchestrator._synthesizer, WyomingSynthesizer)

        session = service.create_session(build_alarm())
        assert isinstance(session._player, FilePlayer)
        assert session.dismissal.phrases == list(DEFAULT_DISMISS_PHRASES)
        assert session.dismissal.max_attempts == 3
