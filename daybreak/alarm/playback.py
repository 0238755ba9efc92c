"""The ringing-alarm session: ``awaiting_audio -> playing -> dismissed``.

A session is created each time an alarm fires and thrown away once it is
dismissed. Entering ``awaiting_audio`` resolves the audio file; a miss ends
the session with an explanation instead of leaving a silent alarm running.
Playback gets its own bounded retry, which also covers a player that dies
after it started. Stop, snooze and a matched voice phrase
end the session from any phase.

All phase changes happen under one ``asyncio.Lock`` and the terminal
transition is applied exactly once, so a user action racing a playback
failure yields a single outcome. Ending the session cancels the driver task
(including any backoff sleep) and the listening window, then releases the
player.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Literal, Protocol

from daybreak.utils import now

from .backoff import PLAYBACK_BACKOFF, BackoffPolicy, RetryAttempt, Sleep, run_with_retry
from .dismissal import DismissalController, VoiceAttemptResult
from .errors import Classification, RetryExhausted
from .models import Alarm, AlarmPhase, ResolutionResult
from .resolution import AudioResolutionCascade
from .telemetry import NullTelemetry, Telemetry

LOGGER = logging.getLogger("daybreak.playback")

EndReason = Literal[
    "stopped",
    "snoozed",
    "voice_dismissed",
    "ring_timeout",
    "audio_not_found",
    "playback_failed",
]
DismissMethod = Literal["manual", "snooze", "voice", "timeout", "error"]

NO_AUDIO_MESSAGE = "Your wake-up message couldn't be found on this device, so the alarm was turned off."
PLAYBACK_FAILED_MESSAGE = "Your wake-up message couldn't be played, so the alarm was turned off."
SNOOZE_LIMIT_MESSAGE = "Snooze limit reached. The alarm has been turned off."

_TRANSITIONS: dict[AlarmPhase, set[AlarmPhase]] = {
    "awaiting_audio": {"playing", "dismissed"},
    "playing": {"dismissed"},
    "dismissed": set(),
}


class AudioPlayer(Protocol):
    async def start(self, path: Path) -> None: ...

    async def wait(self) -> None: ...

    async def stop(self) -> None: ...


@dataclass(frozen=True)
class SessionOutcome:
    alarm_id: str
    reason: EndReason
    method: DismissMethod
    audio_played: bool
    message: str | None = None
    resolution: ResolutionResult | None = None
    updated_alarm: Alarm | None = None

    @property
    def snoozed_until(self) -> datetime | None:
        if self.reason != "snoozed" or self.updated_alarm is None:
            return None
        return self.updated_alarm.fire_time


class AlarmSession:
    def __init__(
        self,
        alarm: Alarm,
        *,
        resolver: AudioResolutionCascade,
        player: AudioPlayer,
        dismissal: DismissalController | None = None,
        telemetry: Telemetry | None = None,
        policy: BackoffPolicy = PLAYBACK_BACKOFF,
        ring_timeout: float | None = 600.0,
        sleep: Sleep = asyncio.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        self.alarm = alarm
        self._resolver = resolver
        self._player = player
        self.dismissal = dismissal or DismissalController(None)
        self._telemetry = telemetry or NullTelemetry()
        self._policy = policy
        self._ring_timeout = ring_timeout
        self._sleep = sleep
        self._logger = logger or LOGGER
        self.phase: AlarmPhase = "awaiting_audio"
        self.history: list[AlarmPhase] = ["awaiting_audio"]
        self.resolution: ResolutionResult | None = None
        self._lock = asyncio.Lock()
        self._done = asyncio.Event()
        self._outcome: SessionOutcome | None = None
        self._drive_task: asyncio.Task[None] | None = None
        self._timeout_task: asyncio.Task[None] | None = None
        self._audio_played = False

    @property
    def outcome(self) -> SessionOutcome | None:
        return self._outcome

    @property
    def audio_played(self) -> bool:
        return self._audio_played

    async def start(self) -> None:
        if self._drive_task is not None:
            raise RuntimeError(f"Session for alarm {self.alarm.alarm_id} already started")
        self.dismissal.reset()
        self._logger.info("Alarm %s firing (%s)", self.alarm.alarm_id, self.alarm.label or "no label")
        self._drive_task = asyncio.create_task(self._drive(), name=f"alarm-session-{self.alarm.alarm_id}")
        if self._ring_timeout:
            self._timeout_task = asyncio.create_task(self._auto_dismiss(self._ring_timeout))

    async def wait(self) -> SessionOutcome:
        await self._done.wait()
        assert self._outcome is not None
        return self._outcome

    async def run(self) -> SessionOutcome:
        await self.start()
        return await self.wait()

    async def stop(self) -> SessionOutcome:
        self.dismissal.dismiss_manually()
        return await self._finish(
            "stopped",
            "manual",
            updated_alarm=replace(self.alarm, snooze=self.alarm.snooze.reset()),
        )

    async def snooze(self, at: datetime | None = None) -> SessionOutcome:
        policy = self.alarm.snooze
        if not policy.can_snooze:
            self._logger.info(
                "Alarm %s cannot snooze again (%d/%d)", self.alarm.alarm_id, policy.current_count, policy.max_count
            )
            return await self._finish(
                "stopped",
                "manual",
                message=SNOOZE_LIMIT_MESSAGE,
                updated_alarm=replace(self.alarm, snooze=policy.reset()),
            )
        moment = at or now()
        snoozed = replace(
            self.alarm,
            fire_time=moment + timedelta(seconds=policy.duration_seconds),
            snooze=policy.snoozed(),
        )
        return await self._finish("snoozed", "snooze", updated_alarm=snoozed)

    async def voice_dismiss(self) -> VoiceAttemptResult:
        if self.phase == "dismissed":
            return VoiceAttemptResult("cancelled", self.dismissal.state.attempts)
        result = await self.dismissal.attempt_voice()
        if result.outcome == "dismissed":
            await self._finish(
                "voice_dismissed",
                "voice",
                updated_alarm=replace(self.alarm, snooze=self.alarm.snooze.reset()),
            )
        return result

    async def _drive(self) -> None:
        try:
            result = await self._resolver.resolve(self.alarm)
            self.resolution = result
            if not result.found or result.path is None:
                await self._finish("audio_not_found", "error", message=NO_AUDIO_MESSAGE)
                return

            async with self._lock:
                if self.phase != "awaiting_audio":
                    return
                self._set_phase("playing")

            path = result.path

            async def _play_once(attempt: RetryAttempt) -> None:
                self._logger.debug("Starting playback of %s (attempt %d)", path, attempt.index)
                try:
                    await self._player.start(path)
                    self._audio_played = True
                    # A player dying mid-ring raises here and goes back through the retry loop.
                    await self._player.wait()
                except BaseException:
                    with contextlib.suppress(Exception):
                        await self._player.stop()
                    raise

            try:
                await run_with_retry(
                    _play_once,
                    policy=self._policy,
                    label=f"Playback for alarm {self.alarm.alarm_id}",
                    sleep=self._sleep,
                    logger=self._logger,
                    on_failure=self._report_playback_failure,
                )
            except RetryExhausted:
                await self._finish("playback_failed", "error", message=PLAYBACK_FAILED_MESSAGE)
        except Exception as exc:
            self._logger.exception("Alarm session %s failed unexpectedly: %s", self.alarm.alarm_id, exc)
            self._telemetry.playback_error(
                category="unknown",
                context={"alarm_id": self.alarm.alarm_id, "error": str(exc)},
            )
            await self._finish("playback_failed", "error", message=PLAYBACK_FAILED_MESSAGE)

    async def _auto_dismiss(self, timeout: float) -> None:
        await asyncio.sleep(timeout)
        self._logger.info("Alarm %s rang for %.0fs without dismissal; stopping", self.alarm.alarm_id, timeout)
        await self._finish("ring_timeout", "timeout")

    def _report_playback_failure(self, attempt: RetryAttempt, error: BaseException, verdict: Classification) -> None:
        self._telemetry.playback_error(
            category=verdict.category,
            context={
                "alarm_id": self.alarm.alarm_id,
                "attempt": attempt.index,
                "path": str(self.resolution.path) if self.resolution and self.resolution.path else None,
                "error": str(error),
            },
        )

    def _set_phase(self, phase: AlarmPhase) -> None:
        if phase not in _TRANSITIONS[self.phase]:
            raise RuntimeError(f"Invalid alarm phase transition {self.phase} -> {phase}")
        self._logger.debug("Alarm %s: %s -> %s", self.alarm.alarm_id, self.phase, phase)
        self.phase = phase
        self.history.append(phase)

    async def _finish(
        self,
        reason: EndReason,
        method: DismissMethod,
        *,
        message: str | None = None,
        updated_alarm: Alarm | None = None,
    ) -> SessionOutcome:
        async with self._lock:
            if self._outcome is not None:
                return self._outcome
            self._set_phase("dismissed")
            current = asyncio.current_task()
            pending = [
                task
                for task in (self._drive_task, self._timeout_task)
                if task is not None and task is not current and not task.done()
            ]
            for task in pending:
                task.cancel()
            self._outcome = SessionOutcome(
                alarm_id=self.alarm.alarm_id,
                reason=reason,
                method=method,
                audio_played=self._audio_played,
                message=message,
                resolution=self.resolution,
                updated_alarm=updated_alarm,
            )

        for task in pending:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self._release()

        outcome = self._outcome
        if method == "error":
            self._logger.warning("Alarm %s ended: %s", self.alarm.alarm_id, reason)
        else:
            self._logger.info("Alarm %s dismissed via %s", self.alarm.alarm_id, method)
            self._telemetry.dismissal_success(
                method=method,
                audio_played=outcome.audio_played,
                context={"alarm_id": self.alarm.alarm_id, "reason": reason},
            )
        self._done.set()
        return outcome

    async def _release(self) -> None:
        try:
            await self._player.stop()
        except Exception as exc:
            self._logger.warning("Failed to stop audio player for alarm %s: %s", self.alarm.alarm_id, exc)
        await self.dismissal.cancel()
