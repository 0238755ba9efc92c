"""Wake-up script providers built on chat-completion style LLM APIs."""

from __future__ import annotations

import asyncio
import json
import logging
import urllib.error
import urllib.parse
import urllib.request

from .config import LLMConfig
from .errors import ScriptGenerationError
from .models import Tone

TONE_PROMPTS: dict[Tone, str] = {
    "gentle": "Speak warmly and calmly, like a kind friend easing the listener into the day.",
    "energetic": "Be upbeat and high-energy, like a coach firing the listener up before a big game.",
    "tough_love": "Be blunt and direct, like a drill sergeant who genuinely cares. No excuses, no snoozing.",
    "storyteller": "Frame the morning as the opening scene of an adventure the listener is about to live.",
}

SYSTEM_PROMPT = (
    "You write short spoken wake-up messages for an alarm clock. {tone} "
    "Address the listener directly, keep it under 120 words, and reply with plain "
    "spoken text only: no stage directions, no emoji, no markdown."
)


def build_prompts(mission: str, tone: Tone, context: dict[str, str]) -> tuple[str, str]:
    system = SYSTEM_PROMPT.format(tone=TONE_PROMPTS.get(tone, TONE_PROMPTS["gentle"]))
    lines = []
    if label := context.get("label"):
        lines.append(f"Alarm: {label}")
    if wake_time := context.get("wake_time"):
        lines.append(f"Wake time: {wake_time}")
    for key, value in sorted(context.items()):
        if key not in {"label", "wake_time"} and value:
            lines.append(f"{key.replace('_', ' ').capitalize()}: {value}")
    lines.append(f"Today's mission: {mission.strip() or 'get up and make today count'}")
    return system, "\n".join(lines)


class ScriptProvider:
    async def generate_script(self, mission: str, tone: Tone, context: dict[str, str]) -> str:
        raise NotImplementedError


class OpenAIScriptProvider(ScriptProvider):
    """Call OpenAI-compatible chat completion endpoints (OpenAI, Grok)."""

    def __init__(self, config: LLMConfig, logger: logging.Logger | None = None) -> None:
        self.config = config
        self._logger = logger or logging.getLogger(__name__)

    async def generate_script(self, mission: str, tone: Tone, context: dict[str, str]) -> str:
        payload = self._build_payload(mission, tone, context)
        try:
            return await asyncio.to_thread(self._call_api, payload)
        except ScriptGenerationError:
            raise
        except Exception as exc:
            raise ScriptGenerationError(f"{self.config.provider} script request failed: {exc}") from exc

    def _build_payload(self, mission: str, tone: Tone, context: dict[str, str]) -> dict:
        system, user = build_prompts(mission, tone, context)
        return {
            "model": self.config.openai_model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            "temperature": 0.7,
            "max_tokens": 200,
        }

    def _call_api(self, payload: dict) -> str:
        if not self.config.openai_api_key:
            raise ScriptGenerationError(f"API key for {self.config.provider} is not set")

        request = urllib.request.Request(
            url=f"{self.config.openai_base_url.rstrip('/')}/chat/completions",
            data=json.dumps(payload).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self.config.openai_api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self.config.openai_timeout) as response:
                body = response.read().decode("utf-8")
        except urllib.error.HTTPError as exc:
            raise ScriptGenerationError(f"{self.config.provider} HTTP error: {exc.code}") from exc

        parsed = json.loads(body)
        choices = parsed.get("choices") or []
        if not choices:
            raise ScriptGenerationError("LLM response missing choices")
        content = (choices[0].get("message") or {}).get("content")
        if not content or not str(content).strip():
            raise ScriptGenerationError("LLM response missing content")
        return str(content).strip()


class GeminiScriptProvider(ScriptProvider):
    """Call Google Gemini (Generative Language) models."""

    def __init__(self, config: LLMConfig, logger: logging.Logger | None = None) -> None:
        self.config = config
        self._logger = logger or logging.getLogger(__name__)

    async def generate_script(self, mission: str, tone: Tone, context: dict[str, str]) -> str:
        payload = self._build_payload(mission, tone, context)
        try:
            return await asyncio.to_thread(self._call_api, payload)
        except ScriptGenerationError:
            raise
        except Exception as exc:
            raise ScriptGenerationError(f"gemini script request failed: {exc}") from exc

    def _build_payload(self, mission: str, tone: Tone, context: dict[str, str]) -> dict:
        system, user = build_prompts(mission, tone, context)
        return {
            "contents": [{"role": "user", "parts": [{"text": user}]}],
            "system_instruction": {"parts": [{"text": system}]},
            "generationConfig": {"temperature": 0.7, "maxOutputTokens": 200},
        }

    def _call_api(self, payload: dict) -> str:
        if not self.config.gemini_api_key:
            raise ScriptGenerationError("GEMINI_API_KEY is not set")
        model = (self.config.gemini_model or "").strip()
        if not model:
            raise ScriptGenerationError("GEMINI_MODEL is not set")
        endpoint = f"{self.config.gemini_base_url.rstrip('/')}/models/{model}:generateContent"
        url = f"{endpoint}?{urllib.parse.urlencode({'key': self.config.gemini_api_key})}"

        request = urllib.request.Request(
            url=url,
            data=json.dumps(payload).encode("utf-8"),
            headers={
                "Content-Type": "application/json",
                "x-goog-api-key": self.config.gemini_api_key,
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self.config.gemini_timeout) as response:
                body = response.read().decode("utf-8")
        except urllib.error.HTTPError as exc:
            raise ScriptGenerationError(f"Gemini HTTP error: {exc.code}") from exc

        parsed = json.loads(body)
        for candidate in parsed.get("candidates") or []:
            content = candidate.get("content") or {}
            if not isinstance(content, dict):
                continue
            for part in content.get("parts") or []:
                if isinstance(part, dict):
                    text = part.get("text")
                    if isinstance(text, str) and text.strip():
                        return text.strip()

        prompt_feedback = parsed.get("promptFeedback")
        if isinstance(prompt_feedback, dict) and prompt_feedback.get("blockReason"):
            raise ScriptGenerationError(f"Gemini blocked prompt: {prompt_feedback['blockReason']}")
        raise ScriptGenerationError("LLM response missing content")


def build_script_provider(config: LLMConfig, logger: logging.Logger | None = None) -> ScriptProvider:
    if config.provider == "gemini":
        return GeminiScriptProvider(config, logger)
    return OpenAIScriptProvider(config, logger)
