"""Configuration helpers for the Daybreak alarm pipeline."""

from __future__ import annotations

import os
import shlex
import socket
from dataclasses import dataclass
from pathlib import Path

from daybreak.utils import parse_bool, parse_float, parse_int, split_csv


def _strip_or_none(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


DEFAULT_DATA_DIR = Path.home() / ".local" / "share" / "daybreak"

DEFAULT_DISMISS_PHRASES: tuple[str, ...] = (
    "wake up",
    "get up",
    "i'm awake",
    "i'm up",
    "stop alarm",
    "turn off",
    "dismiss",
    "good morning",
    "let's go",
    "ready",
)

LLM_PROVIDERS = {"openai", "grok", "gemini"}
TTS_PROVIDERS = {"elevenlabs", "wyoming"}

GROK_BASE_URL = "https://api.x.ai/v1"


@dataclass(frozen=True)
class WyomingEndpoint:
    host: str
    port: int
    model: str | None = None


@dataclass(frozen=True)
class MicConfig:
    command: list[str]
    rate: int
    width: int
    channels: int
    chunk_ms: int

    @property
    def bytes_per_chunk(self) -> int:
        samples = int(self.rate * (self.chunk_ms / 1000))
        return samples * self.width * self.channels


@dataclass(frozen=True)
class GenerationConfig:
    """Retry caps for script/speech generation.

    The primary flow and the user-invoked retry keep separate caps.
    """

    max_attempts: int = 3
    manual_retry_attempts: int = 5
    backoff_base: float = 1.0
    backoff_max: float = 8.0
    content_ttl_days: int = 7
    pregenerate_window_hours: int = 24


@dataclass(frozen=True)
class PlaybackSettings:
    max_attempts: int = 3
    backoff_base: float = 1.0
    backoff_max: float = 8.0
    ring_timeout: float = 600.0
    player: str = "auto"


@dataclass(frozen=True)
class DismissalConfig:
    max_voice_attempts: int = 3
    listen_timeout: float = 10.0
    listen_seconds: float = 4.0
    phrases: tuple[str, ...] = DEFAULT_DISMISS_PHRASES
    match_threshold: float = 0.8


@dataclass(frozen=True)
class StorageConfig:
    audio_dir: Path
    cache_dir: Path
    alarms_file: Path
    cache_ttl_hours: int = 72

    @classmethod
    def under(cls, data_dir: Path, cache_ttl_hours: int = 72) -> StorageConfig:
        return cls(
            audio_dir=data_dir / "audio",
            cache_dir=data_dir / "cache",
            alarms_file=data_dir / "alarms.json",
            cache_ttl_hours=cache_ttl_hours,
        )


@dataclass(frozen=True)
class LLMConfig:
    provider: str
    openai_model: str
    openai_api_key: str | None
    openai_base_url: str
    openai_timeout: int
    gemini_model: str
    gemini_api_key: str | None
    gemini_base_url: str
    gemini_timeout: int


@dataclass(frozen=True)
class ElevenLabsConfig:
    api_key: str | None
    base_url: str = "https://api.elevenlabs.io/v1"
    model_id: str = "eleven_monolingual_v1"
    default_voice: str = "21m00Tcm4TlvDq8ikWAM"
    timeout: float = 30.0
    stability: float = 0.5
    similarity_boost: float = 0.75


@dataclass(frozen=True)
class MqttConfig:
    host: str | None
    port: int
    username: str | None
    password: str | None
    topic_base: str


@dataclass(frozen=True)
class DaybreakConfig:
    generation: GenerationConfig
    playback: PlaybackSettings
    dismissal: DismissalConfig
    storage: StorageConfig
    llm: LLMConfig
    tts_provider: str
    elevenlabs: ElevenLabsConfig
    tts_endpoint: WyomingEndpoint
    stt_endpoint: WyomingEndpoint
    mic: MicConfig
    mqtt: MqttConfig

    @staticmethod
    def from_env(env: dict[str, str] | None = None) -> DaybreakConfig:
        source = os.environ if env is None else env
        hostname = source.get("DAYBREAK_HOSTNAME") or socket.gethostname()

        data_dir = Path(source.get("DAYBREAK_DATA_DIR") or DEFAULT_DATA_DIR).expanduser()
        storage = StorageConfig.under(
            data_dir,
            cache_ttl_hours=parse_int(source.get("DAYBREAK_CACHE_TTL_HOURS"), 72),
        )

        generation = GenerationConfig(
            max_attempts=max(1, parse_int(source.get("DAYBREAK_GENERATION_ATTEMPTS"), 3)),
            manual_retry_attempts=max(1, parse_int(source.get("DAYBREAK_MANUAL_RETRY_ATTEMPTS"), 5)),
            backoff_base=parse_float(source.get("DAYBREAK_BACKOFF_BASE_SECONDS"), 1.0),
            backoff_max=parse_float(source.get("DAYBREAK_BACKOFF_MAX_SECONDS"), 8.0),
            content_ttl_days=parse_int(source.get("DAYBREAK_CONTENT_TTL_DAYS"), 7),
            pregenerate_window_hours=parse_int(source.get("DAYBREAK_PREGENERATE_WINDOW_HOURS"), 24),
        )

        playback = PlaybackSettings(
            max_attempts=max(1, parse_int(source.get("DAYBREAK_PLAYBACK_ATTEMPTS"), 3)),
            backoff_base=parse_float(source.get("DAYBREAK_BACKOFF_BASE_SECONDS"), 1.0),
            backoff_max=parse_float(source.get("DAYBREAK_BACKOFF_MAX_SECONDS"), 8.0),
            ring_timeout=parse_float(source.get("DAYBREAK_RING_TIMEOUT_SECONDS"), 600.0),
            player=(source.get("DAYBREAK_AUDIO_PLAYER") or "auto").strip(),
        )

        phrases = tuple(phrase.lower() for phrase in split_csv(source.get("DAYBREAK_DISMISS_PHRASES")))
        dismissal = DismissalConfig(
            max_voice_attempts=max(1, parse_int(source.get("DAYBREAK_VOICE_ATTEMPTS"), 3)),
            listen_timeout=parse_float(source.get("DAYBREAK_LISTEN_TIMEOUT_SECONDS"), 10.0),
            listen_seconds=parse_float(source.get("DAYBREAK_LISTEN_SECONDS"), 4.0),
            phrases=phrases or DEFAULT_DISMISS_PHRASES,
            match_threshold=parse_float(source.get("DAYBREAK_MATCH_THRESHOLD"), 0.8),
        )

        provider = _normalize_choice(source.get("DAYBREAK_LLM_PROVIDER"), LLM_PROVIDERS, "openai")
        if provider == "grok":
            openai_base_url = source.get("GROK_BASE_URL", GROK_BASE_URL)
            openai_model = source.get("GROK_MODEL", "grok-3-mini")
            openai_api_key = _strip_or_none(source.get("GROK_API_KEY"))
        else:
            openai_base_url = source.get("OPENAI_BASE_URL", "https://api.openai.com/v1")
            openai_model = source.get("OPENAI_MODEL", "gpt-4o-mini")
            openai_api_key = _strip_or_none(source.get("OPENAI_API_KEY"))
        llm = LLMConfig(
            provider=provider,
            openai_model=openai_model,
            openai_api_key=openai_api_key,
            openai_base_url=openai_base_url,
            openai_timeout=parse_int(source.get("OPENAI_TIMEOUT_SECONDS"), 30),
            gemini_model=source.get("GEMINI_MODEL", "gemini-1.5-flash-latest"),
            gemini_api_key=_strip_or_none(source.get("GEMINI_API_KEY")),
            gemini_base_url=source.get("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta"),
            gemini_timeout=parse_int(source.get("GEMINI_TIMEOUT_SECONDS"), 30),
        )

        elevenlabs = ElevenLabsConfig(
            api_key=_strip_or_none(source.get("ELEVENLABS_API_KEY")),
            base_url=source.get("ELEVENLABS_BASE_URL", "https://api.elevenlabs.io/v1"),
            model_id=source.get("ELEVENLABS_MODEL", "eleven_monolingual_v1"),
            default_voice=source.get("ELEVENLABS_VOICE_ID", "21m00Tcm4TlvDq8ikWAM"),
            timeout=parse_float(source.get("ELEVENLABS_TIMEOUT_SECONDS"), 30.0),
        )

        tts_endpoint = WyomingEndpoint(
            host=source.get("WYOMING_PIPER_HOST", "127.0.0.1"),
            port=parse_int(source.get("WYOMING_PIPER_PORT"), 10200),
            model=None,
        )
        stt_endpoint = WyomingEndpoint(
            host=source.get("WYOMING_WHISPER_HOST", "127.0.0.1"),
            port=parse_int(source.get("WYOMING_WHISPER_PORT"), 10300),
            model=source.get("DAYBREAK_STT_MODEL"),
        )

        mic = MicConfig(
            command=shlex.split(source.get("DAYBREAK_MIC_CMD", "arecord -q -t raw -f S16_LE -c 1 -r 16000 -")),
            rate=parse_int(source.get("DAYBREAK_MIC_RATE"), 16000),
            width=parse_int(source.get("DAYBREAK_MIC_WIDTH"), 2),
            channels=parse_int(source.get("DAYBREAK_MIC_CHANNELS"), 1),
            chunk_ms=parse_int(source.get("DAYBREAK_MIC_CHUNK_MS"), 30),
        )

        topic_base = source.get("DAYBREAK_TOPIC_BASE") or f"daybreak/{hostname}"
        mqtt = MqttConfig(
            host=_strip_or_none(source.get("MQTT_HOST")),
            port=parse_int(source.get("MQTT_PORT"), 1883),
            username=_strip_or_none(source.get("MQTT_USER") or source.get("MQTT_USERNAME")),
            password=_strip_or_none(source.get("MQTT_PASS") or source.get("MQTT_PASSWORD")),
            topic_base=topic_base.rstrip("/"),
        )

        return DaybreakConfig(
            generation=generation,
            playback=playback,
            dismissal=dismissal,
            storage=storage,
            llm=llm,
            tts_provider=_normalize_choice(source.get("DAYBREAK_TTS_PROVIDER"), TTS_PROVIDERS, "elevenlabs"),
            elevenlabs=elevenlabs,
            tts_endpoint=tts_endpoint,
            stt_endpoint=stt_endpoint,
            mic=mic,
            mqtt=mqtt,
        )


def _normalize_choice(value: str | None, allowed: set[str], default: str) -> str:
    if not value:
        return default
    lowered = value.strip().lower()
    if lowered in allowed:
        return lowered
    return default


def debug_enabled(env: dict[str, str] | None = None) -> bool:
    """Whether DAYBREAK_DEBUG asks for verbose logging."""
    source = os.environ if env is None else env
    return parse_bool(source.get("DAYBREAK_DEBUG"), False)
