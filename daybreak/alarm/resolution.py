"""Find a playable audio file for an alarm that is about to ring.

Strategies run in a fixed order, most precise first:

1. ``direct``: the path recorded on the alarm's generated content
2. ``content_store_lookup``: the audio cache, keyed by alarm/intent/voice
3. ``filesystem_scan``: any audio file in the known directories whose name
   carries the alarm id

Every candidate, whichever strategy produced it, must exist and be non-empty
before it is accepted. Each attempted strategy is reported to telemetry.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .audio_storage import AUDIO_EXTENSIONS, TMP_SUFFIX
from .content_store import ContentStore
from .errors import classify_error
from .models import Alarm, GeneratedContent, ResolutionResult, ResolutionStrategy
from .telemetry import NullTelemetry, Telemetry

LOGGER = logging.getLogger("daybreak.resolution")


@dataclass(frozen=True)
class ResolutionContext:
    alarm_id: str
    content: GeneratedContent | None = None
    voice_id: str | None = None
    intent_id: str | None = None

    @classmethod
    def from_alarm(cls, alarm: Alarm) -> ResolutionContext:
        content = alarm.generated_content
        return cls(
            alarm_id=alarm.alarm_id,
            content=content,
            voice_id=(content.voice_id if content and content.voice_id else alarm.voice_id),
            intent_id=content.intent_id if content else None,
        )

    def telemetry_context(self, **extra: Any) -> dict[str, Any]:
        return {"alarm_id": self.alarm_id, "intent_id": self.intent_id, **extra}


StrategyFn = Callable[[ResolutionContext], Awaitable[ResolutionResult]]


class AudioResolutionCascade:
    def __init__(
        self,
        *,
        content_store: ContentStore | None = None,
        scan_directories: Sequence[Path] = (),
        telemetry: Telemetry | None = None,
        base_dir: Path | None = None,
        strategies: Sequence[tuple[ResolutionStrategy, StrategyFn]] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._content_store = content_store
        self._scan_directories = list(scan_directories)
        self._telemetry = telemetry or NullTelemetry()
        self._base_dir = base_dir
        self._logger = logger or LOGGER
        self.strategies: list[tuple[ResolutionStrategy, StrategyFn]] = (
            list(strategies)
            if strategies is not None
            else [
                ("direct", self._direct),
                ("content_store_lookup", self._content_store_lookup),
                ("filesystem_scan", self._filesystem_scan),
            ]
        )

    async def resolve(self, alarm: Alarm) -> ResolutionResult:
        return await self.resolve_context(ResolutionContext.from_alarm(alarm))

    async def resolve_context(self, context: ResolutionContext) -> ResolutionResult:
        total = len(self.strategies)
        for index, (name, strategy) in enumerate(self.strategies, start=1):
            fallbacks_remaining = index < total
            try:
                candidate = await strategy(context)
            except Exception as exc:
                verdict = classify_error(exc, fallbacks_remaining=fallbacks_remaining)
                self._logger.warning(
                    "Audio resolution strategy %s failed for alarm %s (%s): %s",
                    name,
                    context.alarm_id,
                    verdict.category,
                    exc,
                )
                self._report(context, name, None, reason="error", error=str(exc), category=verdict.category)
                continue

            path = candidate.path
            if path is None:
                self._report(context, name, None, reason="no_candidate")
                continue
            if not await asyncio.to_thread(is_playable_file, path):
                self._logger.info("Alarm %s: %s candidate %s failed existence check", context.alarm_id, name, path)
                self._report(context, name, path, reason="missing_file")
                continue

            self._logger.info("Alarm %s: resolved audio via %s -> %s", context.alarm_id, name, path)
            self._report(context, name, path, found=True)
            return ResolutionResult.found_at(path, name)

        self._logger.error("Alarm %s: no playable audio found after %d strategies", context.alarm_id, total)
        return ResolutionResult.not_found(classify_error(FileNotFoundError(context.alarm_id)))

    def _report(
        self,
        context: ResolutionContext,
        strategy: ResolutionStrategy,
        path: Path | None,
        *,
        found: bool = False,
        **extra: Any,
    ) -> None:
        self._telemetry.audio_file_resolution(
            found=found,
            path=str(path) if path is not None else None,
            strategy=strategy,
            context=context.telemetry_context(**extra),
        )

    async def _direct(self, context: ResolutionContext) -> ResolutionResult:
        ref = context.content.audio_asset_ref if context.content else None
        if not ref:
            return ResolutionResult.not_found()
        path = Path(ref).expanduser()
        if not path.is_absolute() and self._base_dir is not None:
            path = self._base_dir / path
        return ResolutionResult.found_at(path, "direct")

    async def _content_store_lookup(self, context: ResolutionContext) -> ResolutionResult:
        if self._content_store is None or not context.voice_id:
            return ResolutionResult.not_found()
        path = await self._content_store.lookup(context.alarm_id, context.intent_id, context.voice_id)
        if path is None:
            return ResolutionResult.not_found()
        return ResolutionResult.found_at(Path(path), "content_store_lookup")

    async def _filesystem_scan(self, context: ResolutionContext) -> ResolutionResult:
        path = await asyncio.to_thread(scan_for_alarm_audio, self._scan_directories, context.alarm_id)
        if path is None:
            return ResolutionResult.not_found()
        return ResolutionResult.found_at(path, "filesystem_scan")


def is_playable_file(path: Path) -> bool:
    try:
        return path.is_file() and path.stat().st_size > 0
    except OSError:
        return False


def scan_for_alarm_audio(directories: Sequence[Path], alarm_id: str) -> Path | None:
    """Return the newest non-empty audio file whose name contains ``alarm_id``."""
    if not alarm_id:
        return None
    for directory in directories:
        if not directory.is_dir():
            continue
        matches: list[tuple[float, str, Path]] = []
        for entry in directory.iterdir():
            name = entry.name
            if alarm_id not in name or name.endswith(TMP_SUFFIX):
                continue
            if entry.suffix.lower() not in AUDIO_EXTENSIONS:
                continue
            try:
                stat = entry.stat()
            except OSError:
                continue
            if not entry.is_file() or stat.st_size <= 0:
                continue
            matches.append((-stat.st_mtime, name, entry))
        if matches:
            matches.sort()
            return matches[0][2]
    return None
