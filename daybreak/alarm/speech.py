"""Voice dismissal: microphone capture, Wyoming transcription and phrase matching."""

from __future__ import annotations

import logging
import os
import re
import shutil
from collections.abc import Callable, Iterable, Sequence

from .audio import ArecordStream
from .config import DEFAULT_DISMISS_PHRASES, MicConfig, WyomingEndpoint
from .dismissal import RecognitionResult
from .wyoming import transcribe_audio

_NON_WORD = re.compile(r"[^a-z0-9' ]+")


def normalize_utterance(text: str) -> str:
    lowered = text.lower().replace("’", "'")
    return " ".join(_NON_WORD.sub(" ", lowered).split())


def levenshtein(a: str, b: str) -> int:
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            cost = 0 if char_a == char_b else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def similarity(a: str, b: str) -> float:
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return 1.0 - levenshtein(a, b) / longest


def match_dismiss_phrase(text: str, phrases: Iterable[str], threshold: float = 0.8) -> str | None:
    """Return the dismiss phrase heard in ``text``, if any.

    Exact phrase matches (on word boundaries) win; otherwise each window of
    words the same length as a phrase is compared by edit-distance similarity.
    """

    spoken = normalize_utterance(text)
    if not spoken:
        return None
    candidates = [(phrase, normalize_utterance(phrase)) for phrase in phrases]
    padded = f" {spoken} "
    for phrase, normalized in candidates:
        if normalized and f" {normalized} " in padded:
            return phrase

    words = spoken.split()
    for phrase, normalized in candidates:
        size = len(normalized.split())
        if size == 0 or size > len(words):
            continue
        for start in range(len(words) - size + 1):
            window = " ".join(words[start : start + size])
            if similarity(window, normalized) >= threshold:
                return phrase
    return None


class WyomingSpeechRecognizer:
    """Record a short clip from the microphone and transcribe it with Wyoming STT."""

    def __init__(
        self,
        *,
        endpoint: WyomingEndpoint,
        mic: MicConfig,
        phrases: Sequence[str] = DEFAULT_DISMISS_PHRASES,
        threshold: float = 0.8,
        listen_seconds: float = 4.0,
        language: str | None = None,
        timeout: float | None = 10.0,
        stream_factory: Callable[[list[str], int], ArecordStream] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.endpoint = endpoint
        self.mic = mic
        self.dismiss_phrases = tuple(phrases)
        self.threshold = threshold
        self.listen_seconds = listen_seconds
        self.language = language
        self.timeout = timeout
        self._logger = logger or logging.getLogger(__name__)
        self._stream_factory = stream_factory or (lambda command, size: ArecordStream(command, size, self._logger))
        self._stream: ArecordStream | None = None

    async def permission_granted(self) -> bool:
        if not self.mic.command:
            return False
        binary = self.mic.command[0]
        if os.path.isabs(binary):
            return os.access(binary, os.X_OK)
        return shutil.which(binary) is not None

    async def request_permission(self) -> bool:
        # No interactive grant on Linux; capture is possible or it is not.
        return await self.permission_granted()

    async def listen(self) -> RecognitionResult:
        chunk_count = max(1, int(self.listen_seconds * 1000 / max(1, self.mic.chunk_ms)))
        stream = self._stream_factory(self.mic.command, self.mic.bytes_per_chunk)
        self._stream = stream
        chunks: list[bytes] = []
        await stream.start()
        try:
            for _ in range(chunk_count):
                chunks.append(await stream.read_chunk())
        finally:
            await stream.stop()
            self._stream = None

        text = (
            await transcribe_audio(
                b"".join(chunks),
                endpoint=self.endpoint,
                mic=self.mic,
                language=self.language,
                timeout=self.timeout,
                logger=self._logger,
            )
            or ""
        ).strip()
        phrase = match_dismiss_phrase(text, self.dismiss_phrases, self.threshold)
        self._logger.debug("Heard %r (dismiss phrase: %s)", text, phrase)
        return RecognitionResult(text=text, matched=phrase is not None)

    async def stop(self) -> None:
        stream = self._stream
        self._stream = None
        if stream is not None:
            await stream.stop()
