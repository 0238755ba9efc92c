"""
Alarm content delivery and playback pipeline

This package provides:

- Generation: script + speech synthesis with bounded, classified retries
- Storage: durable per-alarm audio files and a JSON content cache
- Resolution: ordered fallback strategies to find playable audio at ring time
- Playback: the ringing session state machine (awaiting audio, playing, dismissed)
- Dismissal: manual stop plus capped voice-phrase dismissal
- Telemetry: structured, fire-and-forget diagnostics over logging and MQTT

Key modules:
- config: Configuration management from environment variables
- errors: Failure classification and exception types
- backoff: Exponential backoff policy and the shared retry loop
- service: Composition root used by the CLI
"""

from __future__ import annotations

__all__ = [
    "config",
    "errors",
    "backoff",
    "generation",
    "resolution",
    "playback",
    "dismissal",
    "telemetry",
    "service",
]
