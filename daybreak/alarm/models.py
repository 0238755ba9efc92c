"""Alarm records and the value types passed between pipeline stages."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Literal

from daybreak.utils import deserialize_dt, now, serialize_dt

from .errors import Classification

Tone = Literal["gentle", "energetic", "tough_love", "storyteller"]
AlarmPhase = Literal["awaiting_audio", "playing", "dismissed"]
ResolutionStrategy = Literal["direct", "content_store_lookup", "filesystem_scan"]

TONES: tuple[Tone, ...] = ("gentle", "energetic", "tough_love", "storyteller")
CONTENT_TTL = timedelta(days=7)


def _normalize_tone(value: Any) -> Tone:
    if isinstance(value, str):
        lowered = value.strip().lower().replace("-", "_").replace(" ", "_")
        for tone in TONES:
            if tone == lowered:
                return tone
    return "gentle"


@dataclass
class SnoozePolicy:
    max_count: int = 3
    duration_seconds: int = 300
    current_count: int = 0

    @property
    def can_snooze(self) -> bool:
        return self.current_count < self.max_count

    def snoozed(self) -> SnoozePolicy:
        if not self.can_snooze:
            raise ValueError("Snooze limit reached")
        return replace(self, current_count=self.current_count + 1)

    def reset(self) -> SnoozePolicy:
        return replace(self, current_count=0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_count": self.max_count,
            "duration_seconds": self.duration_seconds,
            "current_count": self.current_count,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> SnoozePolicy:
        if not payload:
            return cls()
        return cls(
            max_count=int(payload.get("max_count", 3)),
            duration_seconds=int(payload.get("duration_seconds", 300)),
            current_count=int(payload.get("current_count", 0)),
        )


@dataclass(frozen=True)
class GeneratedContent:
    """Script plus a reference to the audio synthesized from it.

    ``audio_asset_ref`` is only ever set once the bytes it points to have been
    written and verified.
    """

    text: str
    audio_asset_ref: str | None
    voice_id: str
    intent_id: str | None = None
    created_at: datetime = field(default_factory=now)
    duration_seconds: float | None = None

    @property
    def has_audio(self) -> bool:
        return bool(self.audio_asset_ref)

    def is_expired(self, at: datetime | None = None, ttl: timedelta = CONTENT_TTL) -> bool:
        return (at or now()) - self.created_at > ttl

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "audio_asset_ref": self.audio_asset_ref,
            "voice_id": self.voice_id,
            "intent_id": self.intent_id,
            "created_at": serialize_dt(self.created_at),
            "duration_seconds": self.duration_seconds,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> GeneratedContent:
        duration = payload.get("duration_seconds")
        return cls(
            text=payload.get("text") or "",
            audio_asset_ref=payload.get("audio_asset_ref"),
            voice_id=payload.get("voice_id") or "",
            intent_id=payload.get("intent_id"),
            created_at=deserialize_dt(payload.get("created_at")) or now(),
            duration_seconds=float(duration) if duration is not None else None,
        )


@dataclass
class Alarm:
    alarm_id: str
    fire_time: datetime
    label: str = ""
    tone: Tone = "gentle"
    voice_id: str | None = None
    mission: str = ""
    enabled: bool = True
    snooze: SnoozePolicy = field(default_factory=SnoozePolicy)
    generated_content: GeneratedContent | None = None

    def needs_content(self, at: datetime | None = None, ttl: timedelta = CONTENT_TTL) -> bool:
        content = self.generated_content
        if content is None or not content.has_audio:
            return True
        return content.is_expired(at, ttl)

    def to_dict(self) -> dict[str, Any]:
        return {
            "alarm_id": self.alarm_id,
            "fire_time": serialize_dt(self.fire_time),
            "label": self.label,
            "tone": self.tone,
            "voice_id": self.voice_id,
            "mission": self.mission,
            "enabled": self.enabled,
            "snooze": self.snooze.to_dict(),
            "generated_content": self.generated_content.to_dict() if self.generated_content else None,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Alarm:
        fire_time = deserialize_dt(payload.get("fire_time"))
        if fire_time is None:
            raise ValueError(f"Alarm {payload.get('alarm_id')!r} has no valid fire_time")
        content = payload.get("generated_content")
        return cls(
            alarm_id=payload["alarm_id"],
            fire_time=fire_time,
            label=payload.get("label") or "",
            tone=_normalize_tone(payload.get("tone")),
            voice_id=payload.get("voice_id"),
            mission=payload.get("mission") or "",
            enabled=bool(payload.get("enabled", True)),
            snooze=SnoozePolicy.from_dict(payload.get("snooze")),
            generated_content=GeneratedContent.from_dict(content) if isinstance(content, dict) else None,
        )


@dataclass(frozen=True)
class ResolutionResult:
    path: Path | None
    strategy: ResolutionStrategy | None
    classification: Classification | None = None

    @property
    def found(self) -> bool:
        return self.path is not None

    @classmethod
    def found_at(cls, path: Path, strategy: ResolutionStrategy) -> ResolutionResult:
        return cls(path=path, strategy=strategy)

    @classmethod
    def not_found(cls, classification: Classification | None = None) -> ResolutionResult:
        return cls(path=None, strategy=None, classification=classification)


@dataclass
class DismissalState:
    max_attempts: int = 3
    attempts: int = 0
    last_utterance: str | None = None
    dismissed: bool = False
    manual_required: bool = False

    @property
    def attempts_remaining(self) -> int:
        return max(0, self.max_attempts - self.attempts)

    @property
    def voice_available(self) -> bool:
        return not self.dismissed and not self.manual_required and self.attempts < self.max_attempts
