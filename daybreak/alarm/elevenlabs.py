"""ElevenLabs text-to-speech client."""

from __future__ import annotations

from dataclasses import dataclass, field

import httpx

from .config import ElevenLabsConfig
from .errors import SpeechSynthesisError


@dataclass(slots=True)
class ElevenLabsSynthesizer:
    config: ElevenLabsConfig
    transport: httpx.AsyncBaseTransport | None = None
    audio_extension: str = ".mp3"
    _client: httpx.AsyncClient = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if not self.config.api_key:
            raise ValueError("ELEVENLABS_API_KEY is not set")
        self._client = httpx.AsyncClient(
            base_url=self.config.base_url.rstrip("/"),
            headers={
                "xi-api-key": self.config.api_key,
                "Accept": "audio/mpeg",
                "Content-Type": "application/json",
            },
            timeout=self.config.timeout,
            transport=self.transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def synthesize(self, text: str, voice_id: str) -> bytes:
        voice = voice_id or self.config.default_voice
        payload = {
            "text": text,
            "model_id": self.config.model_id,
            "voice_settings": {
                "stability": self.config.stability,
                "similarity_boost": self.config.similarity_boost,
            },
        }
        try:
            response = await self._client.post(f"/text-to-speech/{voice}", json=payload)
        except httpx.HTTPError as exc:
            raise SpeechSynthesisError(f"ElevenLabs request failed: {exc}") from exc

        if response.status_code >= 400:
            detail = _error_detail(response)
            raise SpeechSynthesisError(
                f"ElevenLabs HTTP error: {response.status_code}{f' ({detail})' if detail else ''}",
                status_code=response.status_code,
            )
        content_type = response.headers.get("content-type", "")
        if content_type and not content_type.startswith("audio/"):
            raise SpeechSynthesisError(
                f"Cannot parse response: expected audio, got {content_type}",
                status_code=response.status_code,
            )
        if not response.content:
            raise SpeechSynthesisError("Cannot parse response: empty audio body", status_code=response.status_code)
        return response.content


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text.strip()[:200]
    detail = body.get("detail") if isinstance(body, dict) else None
    if isinstance(detail, dict):
        return str(detail.get("message") or detail.get("status") or "")
    return str(detail or "")
