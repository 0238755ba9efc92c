"""Shared helpers for talking to Wyoming STT/TTS services."""

from __future__ import annotations

import io
import logging
import wave

from wyoming.asr import Transcribe, Transcript
from wyoming.audio import AudioChunk, AudioStart, AudioStop
from wyoming.client import AsyncTcpClient
from wyoming.tts import Synthesize, SynthesizeVoice

from daybreak.utils import await_with_timeout, chunk_bytes

from .config import MicConfig, WyomingEndpoint
from .errors import SpeechSynthesisError

LoggerLike = logging.Logger | None


async def transcribe_audio(
    audio_bytes: bytes,
    *,
    endpoint: WyomingEndpoint,
    mic: MicConfig,
    language: str | None = None,
    timeout: float | None = None,
    logger: LoggerLike = None,
) -> str | None:
    """Send PCM audio to a Wyoming STT endpoint and return the transcript text."""

    client = AsyncTcpClient(endpoint.host, endpoint.port)
    await await_with_timeout(client.connect(), timeout)
    try:
        await await_with_timeout(
            client.write_event(Transcribe(name=endpoint.model, language=language).event()),
            timeout,
        )
        await await_with_timeout(
            client.write_event(AudioStart(rate=mic.rate, width=mic.width, channels=mic.channels).event()),
            timeout,
        )
        for chunk in chunk_bytes(audio_bytes, mic.bytes_per_chunk):
            await await_with_timeout(
                client.write_event(
                    AudioChunk(rate=mic.rate, width=mic.width, channels=mic.channels, audio=chunk).event()
                ),
                timeout,
            )
        await await_with_timeout(client.write_event(AudioStop().event()), timeout)
        while True:
            event = await await_with_timeout(client.read_event(), timeout)
            if event is None:
                if logger:
                    logger.debug("Wyoming STT connection closed before transcript returned")
                return None
            if Transcript.is_type(event.type):
                return Transcript.from_event(event).text
    finally:
        await client.disconnect()


async def synthesize_speech(
    text: str,
    *,
    endpoint: WyomingEndpoint,
    voice_name: str | None = None,
    timeout: float | None = None,
) -> bytes:
    """Synthesize ``text`` via Wyoming TTS and return it as a WAV file."""

    client = AsyncTcpClient(endpoint.host, endpoint.port)
    await await_with_timeout(client.connect(), timeout)
    rate = width = channels = None
    frames = bytearray()
    try:
        voice = SynthesizeVoice(name=voice_name) if voice_name else None
        await await_with_timeout(client.write_event(Synthesize(text=text, voice=voice).event()), timeout)
        while True:
            event = await await_with_timeout(client.read_event(), timeout)
            if event is None:
                break
            if AudioStart.is_type(event.type):
                start = AudioStart.from_event(event)
                rate, width, channels = start.rate, start.width, start.channels
            elif AudioChunk.is_type(event.type):
                chunk = AudioChunk.from_event(event)
                if rate is None:
                    rate, width, channels = chunk.rate, chunk.width, chunk.channels
                frames.extend(chunk.audio)
            elif AudioStop.is_type(event.type):
                break
    finally:
        await client.disconnect()

    if not frames or rate is None or width is None or channels is None:
        raise SpeechSynthesisError("Cannot parse response: Wyoming TTS returned no audio")
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wav_file:
        wav_file.setnchannels(channels)
        wav_file.setsampwidth(width)
        wav_file.setframerate(rate)
        wav_file.writeframes(bytes(frames))
    return buffer.getvalue()


class WyomingSynthesizer:
    """Speech synthesis backed by a local Wyoming (piper) server."""

    audio_extension = ".wav"

    def __init__(self, endpoint: WyomingEndpoint, timeout: float = 30.0) -> None:
        self.endpoint = endpoint
        self.timeout = timeout

    async def synthesize(self, text: str, voice_id: str) -> bytes:
        return await synthesize_speech(
            text,
            endpoint=self.endpoint,
            voice_name=voice_id or None,
            timeout=self.timeout,
        )
