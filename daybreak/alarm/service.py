"""Wire the alarm pipeline together for the CLI and long-running hosts."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from daybreak.utils import now

from .alarm_store import AlarmStore, JsonAlarmStore
from .audio import FilePlayer
from .audio_storage import AudioStorage
from .backoff import BackoffPolicy, Sleep
from .config import DaybreakConfig, DismissalConfig, GenerationConfig, PlaybackSettings
from .content_store import AudioCache
from .dismissal import DismissalController, SpeechRecognizer
from .elevenlabs import ElevenLabsSynthesizer
from .errors import GenerationInProgress
from .generation import GenerationOrchestrator, GenerationOutcome, GenerationRequest, SpeechSynthesizer
from .llm import build_script_provider
from .models import Alarm, GeneratedContent
from .playback import AlarmSession, AudioPlayer, SessionOutcome
from .resolution import AudioResolutionCascade
from .speech import WyomingSpeechRecognizer
from .telemetry import NullTelemetry, Telemetry
from .wyoming import WyomingSynthesizer

LOGGER = logging.getLogger("daybreak.service")


class UnknownAlarm(LookupError):
    pass


class WakeupService:
    def __init__(
        self,
        *,
        store: AlarmStore,
        orchestrator: GenerationOrchestrator,
        resolver: AudioResolutionCascade,
        storage: AudioStorage,
        player_factory: Callable[[], AudioPlayer],
        recognizer_factory: Callable[[], SpeechRecognizer | None] | None = None,
        cache: AudioCache | None = None,
        telemetry: Telemetry | None = None,
        default_voice: str = "",
        generation: GenerationConfig | None = None,
        playback: PlaybackSettings | None = None,
        dismissal: DismissalConfig | None = None,
        sleep: Sleep = asyncio.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.orchestrator = orchestrator
        self.resolver = resolver
        self.storage = storage
        self.cache = cache
        self._player_factory = player_factory
        self._recognizer_factory = recognizer_factory
        self._telemetry = telemetry or NullTelemetry()
        self.default_voice = default_voice
        self.generation = generation or GenerationConfig()
        self.playback = playback or PlaybackSettings()
        self.dismissal = dismissal or DismissalConfig()
        self._sleep = sleep
        self._logger = logger or LOGGER

    @classmethod
    def from_config(cls, config: DaybreakConfig, *, telemetry: Telemetry | None = None) -> WakeupService:
        telemetry = telemetry or NullTelemetry()
        storage_cfg = config.storage
        storage = AudioStorage(storage_cfg.audio_dir)
        cache = AudioCache(storage_cfg.cache_dir, ttl=timedelta(hours=storage_cfg.cache_ttl_hours))
        synthesizer: SpeechSynthesizer
        if config.tts_provider == "elevenlabs" and config.elevenlabs.api_key:
            synthesizer = ElevenLabsSynthesizer(config.elevenlabs)
            default_voice = config.elevenlabs.default_voice
        else:
            synthesizer = WyomingSynthesizer(config.tts_endpoint)
            default_voice = config.tts_endpoint.model or ""
        gen = config.generation
        orchestrator = GenerationOrchestrator(
            script_generator=build_script_provider(config.llm),
            synthesizer=synthesizer,
            storage=storage,
            content_store=cache,
            telemetry=telemetry,
            policy=BackoffPolicy(gen.backoff_base, gen.backoff_max, gen.max_attempts),
            manual_policy=BackoffPolicy(gen.backoff_base, gen.backoff_max, gen.manual_retry_attempts),
        )
        resolver = AudioResolutionCascade(
            content_store=cache,
            scan_directories=[storage_cfg.cache_dir, storage_cfg.audio_dir],
            telemetry=telemetry,
            base_dir=storage_cfg.audio_dir,
        )
        dismissal = config.dismissal

        def _recognizer() -> SpeechRecognizer:
            return WyomingSpeechRecognizer(
                endpoint=config.stt_endpoint,
                mic=config.mic,
                phrases=dismissal.phrases,
                threshold=dismissal.match_threshold,
                listen_seconds=dismissal.listen_seconds,
            )

        return cls(
            store=JsonAlarmStore(storage_cfg.alarms_file),
            orchestrator=orchestrator,
            resolver=resolver,
            storage=storage,
            cache=cache,
            player_factory=lambda: FilePlayer(config.playback.player),
            recognizer_factory=_recognizer,
            telemetry=telemetry,
            default_voice=default_voice,
            generation=gen,
            playback=config.playback,
            dismissal=dismissal,
        )

    async def generate(self, alarm_id: str, *, intent_id: str | None = None) -> GenerationOutcome:
        alarm = await self._require(alarm_id)
        request = GenerationRequest.from_alarm(alarm, default_voice=self.default_voice, intent_id=intent_id)
        outcome = await self.orchestrator.generate(request)
        if outcome.content is not None:
            await self.orchestrator.apply_to_alarm(alarm, outcome.content, self.store)
        elif outcome.script is not None and not _has_audio(alarm):
            # Keep the script so a manual audio retry can reuse it.
            await self.orchestrator.apply_to_alarm(
                alarm,
                GeneratedContent(
                    text=outcome.script,
                    audio_asset_ref=None,
                    voice_id=request.voice_id,
                    intent_id=intent_id,
                ),
                self.store,
            )
        return outcome

    async def retry_audio(self, alarm_id: str) -> GenerationOutcome:
        alarm = await self._require(alarm_id)
        content = alarm.generated_content
        if content is None or not content.text:
            raise ValueError(f"Alarm {alarm_id} has no script to synthesize; generate it first")
        request = GenerationRequest.from_alarm(
            alarm,
            default_voice=content.voice_id or self.default_voice,
            intent_id=content.intent_id,
        )
        outcome = await self.orchestrator.retry_audio(request, content.text)
        if outcome.content is not None:
            await self.orchestrator.apply_to_alarm(alarm, outcome.content, self.store)
        return outcome

    def create_session(self, alarm: Alarm) -> AlarmSession:
        recognizer = self._recognizer_factory() if self._recognizer_factory else None
        dismissal = DismissalController(
            recognizer,
            max_attempts=self.dismissal.max_voice_attempts,
            listen_timeout=self.dismissal.listen_timeout,
        )
        return AlarmSession(
            alarm,
            resolver=self.resolver,
            player=self._player_factory(),
            dismissal=dismissal,
            telemetry=self._telemetry,
            policy=BackoffPolicy(self.playback.backoff_base, self.playback.backoff_max, self.playback.max_attempts),
            ring_timeout=self.playback.ring_timeout or None,
            sleep=self._sleep,
        )

    async def ring(
        self,
        alarm_id: str,
        *,
        on_session: Callable[[AlarmSession], None] | None = None,
    ) -> SessionOutcome:
        alarm = await self._require(alarm_id)
        session = self.create_session(alarm)
        if on_session is not None:
            on_session(session)
        outcome = await session.run()
        if outcome.updated_alarm is not None:
            await self.store.save(outcome.updated_alarm)
        if outcome.message:
            self._logger.warning("Alarm %s: %s", alarm_id, outcome.message)
        return outcome

    async def pregenerate_upcoming(
        self,
        at: datetime | None = None,
        window: timedelta | None = None,
    ) -> list[GenerationOutcome]:
        """Generate audio for enabled alarms firing soon whose content is missing or stale."""
        moment = at or now()
        horizon = moment + (window or timedelta(hours=self.generation.pregenerate_window_hours))
        ttl = timedelta(days=self.generation.content_ttl_days)
        outcomes: list[GenerationOutcome] = []
        for alarm in await self.store.list_alarms():
            if not alarm.enabled or not (moment <= alarm.fire_time <= horizon):
                continue
            if not alarm.needs_content(moment, ttl):
                continue
            self._logger.info("Pre-generating audio for alarm %s firing at %s", alarm.alarm_id, alarm.fire_time)
            try:
                outcomes.append(await self.generate(alarm.alarm_id))
            except GenerationInProgress:
                self._logger.debug("Alarm %s already generating; skipping", alarm.alarm_id)
        return outcomes

    async def clear_expired_content(self, at: datetime | None = None) -> int:
        moment = at or now()
        ttl = timedelta(days=self.generation.content_ttl_days)
        cleared = 0
        for alarm in await self.store.list_alarms():
            content = alarm.generated_content
            if content is None or not content.is_expired(moment, ttl):
                continue
            alarm.generated_content = None
            await self.store.save(alarm)
            if content.audio_asset_ref:
                self.storage.discard(content.audio_asset_ref)
            cleared += 1
        if self.cache is not None:
            await self.cache.prune(moment)
        if cleared:
            self._logger.info("Cleared expired content from %d alarm(s)", cleared)
        return cleared

    async def _require(self, alarm_id: str) -> Alarm:
        alarm = await self.store.get(alarm_id)
        if alarm is None:
            raise UnknownAlarm(f"No alarm with id {alarm_id!r}")
        return alarm


def _has_audio(alarm: Alarm) -> bool:
    return alarm.generated_content is not None and alarm.generated_content.has_audio
