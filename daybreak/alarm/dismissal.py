"""Manual and voice dismissal for a ringing alarm.

Manual dismissal always works. Voice dismissal needs microphone permission,
gets a bounded listening window per attempt, and is capped: once the last
attempt fails the user is pointed at the manual path and no further
listening is started.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Literal, Protocol

from .models import DismissalState

LOGGER = logging.getLogger("daybreak.dismissal")

VoiceOutcome = Literal["dismissed", "retry", "manual_required", "permission_required", "busy", "cancelled"]

MANUAL_INSTRUCTIONS = "Voice dismissal isn't working right now. Press Stop to turn off the alarm."
PERMISSION_INSTRUCTIONS = (
    "Microphone access is needed to dismiss by voice. Allow microphone access, or press Stop to turn off the alarm."
)


@dataclass(frozen=True)
class RecognitionResult:
    text: str
    matched: bool


class SpeechRecognizer(Protocol):
    dismiss_phrases: Sequence[str]

    async def permission_granted(self) -> bool: ...

    async def request_permission(self) -> bool: ...

    async def listen(self) -> RecognitionResult: ...

    async def stop(self) -> None: ...


@dataclass(frozen=True)
class VoiceAttemptResult:
    outcome: VoiceOutcome
    attempts: int
    text: str | None = None
    message: str | None = None


class DismissalController:
    def __init__(
        self,
        recognizer: SpeechRecognizer | None,
        *,
        max_attempts: int = 3,
        listen_timeout: float = 10.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self._recognizer = recognizer
        self.max_attempts = max_attempts
        self.listen_timeout = listen_timeout
        self._logger = logger or LOGGER
        self.state = DismissalState(max_attempts=max_attempts)
        self._lock = asyncio.Lock()
        self._listen_task: asyncio.Task[RecognitionResult] | None = None
        self._closed = False

    @property
    def phrases(self) -> list[str]:
        if self._recognizer is None:
            return []
        return list(self._recognizer.dismiss_phrases)

    @property
    def listening(self) -> bool:
        return self._listen_task is not None and not self._listen_task.done()

    def reset(self) -> None:
        """Start a fresh firing session."""
        self.state = DismissalState(max_attempts=self.max_attempts)
        self._closed = False

    def dismiss_manually(self) -> None:
        self.state.dismissed = True

    async def cancel(self) -> None:
        """End any listening window; further voice attempts report ``cancelled``."""
        self._closed = True
        task = self._listen_task
        if task and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def attempt_voice(self) -> VoiceAttemptResult:
        if self._closed or self.state.dismissed:
            return VoiceAttemptResult("cancelled", self.state.attempts)
        if self._recognizer is None:
            self.state.manual_required = True
            return VoiceAttemptResult("manual_required", self.state.attempts, message=MANUAL_INSTRUCTIONS)
        if self._lock.locked():
            return VoiceAttemptResult("busy", self.state.attempts)

        async with self._lock:
            if not self.state.voice_available:
                self.state.manual_required = True
                return VoiceAttemptResult("manual_required", self.state.attempts, message=MANUAL_INSTRUCTIONS)
            if not await self._ensure_permission():
                return VoiceAttemptResult("permission_required", self.state.attempts, message=PERMISSION_INSTRUCTIONS)

            self.state.attempts += 1
            result = await self._listen_once()
            if self._closed:
                return VoiceAttemptResult("cancelled", self.state.attempts)

            if result is not None:
                self.state.last_utterance = result.text or None
            if result is not None and result.matched:
                self.state.dismissed = True
                self._logger.info("Voice dismissal matched on attempt %d: %r", self.state.attempts, result.text)
                return VoiceAttemptResult("dismissed", self.state.attempts, text=result.text)

            heard = result.text if result else None
            if self.state.attempts >= self.max_attempts:
                self.state.manual_required = True
                self._logger.info("Voice dismissal failed %d times; manual dismissal required", self.state.attempts)
                return VoiceAttemptResult("manual_required", self.state.attempts, text=heard, message=MANUAL_INSTRUCTIONS)
            remaining = self.state.attempts_remaining
            hint = self.phrases[0] if self.phrases else "wake up"
            return VoiceAttemptResult(
                "retry",
                self.state.attempts,
                text=heard,
                message=f"Didn't catch that. Try saying \"{hint}\". {remaining} attempt(s) left.",
            )

    async def _ensure_permission(self) -> bool:
        assert self._recognizer is not None
        try:
            if await self._recognizer.permission_granted():
                return True
            return await self._recognizer.request_permission()
        except Exception as exc:
            self._logger.warning("Speech permission check failed: %s", exc)
            return False

    async def _listen_once(self) -> RecognitionResult | None:
        assert self._recognizer is not None
        task = asyncio.create_task(self._recognizer.listen())
        self._listen_task = task
        try:
            done, _pending = await asyncio.wait({task}, timeout=self.listen_timeout)
            if task not in done:
                self._logger.info("Listening window of %.1fs elapsed without a result", self.listen_timeout)
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
                return None
            if task.cancelled():
                return None
            error = task.exception()
            if error is not None:
                self._logger.warning("Speech recognition failed: %s", error)
                return None
            return task.result()
        finally:
            self._listen_task = None
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
            try:
                await self._recognizer.stop()
            except Exception as exc:
                self._logger.debug("Failed to stop speech recognizer: %s", exc)
