"""Tests for Wyoming STT/TTS helper functions."""

from __future__ import annotations

import io
import wave
from unittest.mock import AsyncMock, patch

import pytest
from daybreak.alarm.config import MicConfig, WyomingEndpoint
from daybreak.alarm.errors import SpeechSynthesisError
from daybreak.alarm.wyoming import WyomingSynthesizer, synthesize_speech, transcribe_audio
from wyoming.asr import Transcript
from wyoming.audio import AudioChunk, AudioStart, AudioStop

pytestmark = pytest.mark.anyio


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def mic():
    """Standard 16kHz mono mic configuration."""
    return MicConfig(command=["arecord"], rate=16000, width=2, channels=1, chunk_ms=30)


@pytest.fixture
def endpoint():
    return WyomingEndpoint(host="localhost", port=10300, model="whisper-base")


@pytest.fixture
def mock_client():
    """Create a mock AsyncTcpClient with async connect/disconnect/read/write."""
    client = AsyncMock()
    client.connect = AsyncMock()
    client.disconnect = AsyncMock()
    client.write_event = AsyncMock()
    client.read_event = AsyncMock(return_value=None)
    return client


@pytest.fixture
def patch_tcp_client(mock_client):
    """Patch AsyncTcpClient to return mock_client and yield (constructor_mock, client)."""
    with patch("daybreak.alarm.wyoming.AsyncTcpClient") as ctor:
        ctor.return_value = mock_client
        yield ctor, mock_client


# ============================================================================
# transcribe_audio
# ============================================================================


class TestTranscribeAudio:
    async def test_returns_transcript(self, patch_tcp_client, endpoint, mic):
        ctor, client = patch_tcp_client
        client.read_event.side_effect = [Transcript(text="I'm awake").event()]

        text = await transcribe_audio(b"\x00" * 1920, endpoint=endpoint, mic=mic)

        assert text == "I'm awake"
        ctor.assert_called_once_with("localhost", 10300)
        client.disconnect.assert_awaited_once()
        # Transcribe, AudioStart, two chunks, AudioStop
        assert client.write_event.await_count == 5

    async def test_connection_closed_returns_none(self, patch_tcp_client, endpoint, mic, mock_logger):
        _ctor, client = patch_tcp_client
        assert await transcribe_audio(b"\x00" * 960, endpoint=endpoint, mic=mic, logger=mock_logger) is None
        mock_logger.debug.assert_called()
        client.disconnect.assert_awaited_once()


# ============================================================================
# synthesize_speech
# ============================================================================


class TestSynthesizeSpeech:
    async def test_collects_chunks_into_wav(self, patch_tcp_client, endpoint):
        _ctor, client = patch_tcp_client
        client.read_event.side_effect = [
            AudioStart(rate=22050, width=2, channels=1).event(),
            AudioChunk(rate=22050, width=2, channels=1, audio=b"\x01\x00" * 100).event(),
            AudioChunk(rate=22050, width=2, channels=1, audio=b"\x02\x00" * 100).event(),
            AudioStop().event(),
        ]

        data = await synthesize_speech("Good morning", endpoint=endpoint, voice_name="amy")

        with wave.open(io.BytesIO(data), "rb") as wav_file:
            assert wav_file.getframerate() == 22050
            assert wav_file.getnframes() == 200
        client.disconnect.assert_awaited_once()

    async def test_no_audio_raises_parse_error(self, patch_tcp_client, endpoint):
        _ctor, client = patch_tcp_client
        client.read_event.side_effect = [AudioStop().event()]
        with pytest.raises(SpeechSynthesisError, match="Cannot parse response"):
            await synthesize_speech("Hi", endpoint=endpoint)

    async def test_synthesizer_uses_voice_id(self, endpoint):
        synthesizer = WyomingSynthesizer(endpoint, timeout=5)
        with patch("daybreak.alarm.wyoming.synthesize_speech", new=AsyncMock(return_value=b"RIFF")) as synth:
            assert await synthesizer.synthesize("Hi", "amy") == b"RIFF"
        synth.assert_awaited_once_with("Hi", endpoint=endpoint, voice_name="amy", timeout=5)
        assert synthesizer.audio_extension == ".wav"
