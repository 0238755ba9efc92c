"""Failure classification and exception types for the alarm pipeline.

``classify_error`` is the single place that decides whether a failure is
worth another attempt. It accepts exceptions, raw platform error codes and
provider message strings, and always returns a verdict: anything it does not
recognize is ``unknown`` and never retried.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Literal

import httpx

ErrorCategory = Literal["network_transient", "parse_or_protocol", "not_found", "playback_failed", "unknown"]

# Platform networking codes surfaced by mobile clients and proxies.
TIMED_OUT = -1001
NETWORK_CONNECTION_LOST = -1005
NOT_CONNECTED_TO_INTERNET = -1009
CANNOT_PARSE_RESPONSE = -1017

_NETWORK_CODES = {TIMED_OUT, NETWORK_CONNECTION_LOST, NOT_CONNECTED_TO_INTERNET}
_NETWORK_CODE_RANGE = range(-1050, -1017)

_PARSE_WORDING = ("cannot parse response", "could not parse", "malformed", "invalid json", "unexpected response")
_NETWORK_WORDING = (
    "connection lost",
    "network connection",
    "no internet",
    "not connected to the internet",
    "timeout",
    "timed out",
    "server error",
    "connection reset",
    "connection refused",
)
_NOT_FOUND_WORDING = ("not found", "no such file")


@dataclass(frozen=True)
class Classification:
    retryable: bool
    category: ErrorCategory


UNKNOWN = Classification(retryable=False, category="unknown")


class AlarmPipelineError(RuntimeError):
    """Base class for alarm pipeline failures."""


class ScriptGenerationError(AlarmPipelineError):
    """The script provider could not produce text."""


class SpeechSynthesisError(AlarmPipelineError):
    """The speech provider rejected or failed a synthesis request."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PlaybackError(AlarmPipelineError):
    """An audio file could not be loaded or played."""


class GenerationInProgress(AlarmPipelineError):
    """Another generation run already owns this alarm."""


class RetryExhausted(AlarmPipelineError):
    """A retried operation ran out of attempts or hit a terminal failure."""

    def __init__(
        self,
        label: str,
        last_error: BaseException,
        classification: Classification,
        attempts: int,
    ) -> None:
        super().__init__(f"{label} failed after {attempts} attempt(s): {last_error}")
        self.label = label
        self.last_error = last_error
        self.classification = classification
        self.attempts = attempts


def classify_error(
    error: BaseException | int | str | None,
    *,
    fallbacks_remaining: bool = False,
) -> Classification:
    """Map a failure to a retry verdict and a stable category.

    ``fallbacks_remaining`` only affects ``not_found`` failures: a missing
    file is worth moving on for while another resolution strategy is left,
    and terminal once none are.
    """

    if error is None:
        return UNKNOWN
    if isinstance(error, bool):
        return UNKNOWN
    if isinstance(error, int):
        return _classify_code(error)
    if isinstance(error, str):
        return _classify_message(error, fallbacks_remaining=fallbacks_remaining)

    seen: set[int] = set()
    current: BaseException | None = error
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        verdict = _classify_exception(current, fallbacks_remaining=fallbacks_remaining)
        if verdict is not UNKNOWN:
            return verdict
        current = current.__cause__
    return UNKNOWN


def _classify_code(code: int) -> Classification:
    if code in _NETWORK_CODES or code in _NETWORK_CODE_RANGE:
        return Classification(retryable=True, category="network_transient")
    if code == CANNOT_PARSE_RESPONSE:
        return Classification(retryable=True, category="parse_or_protocol")
    if code == 408 or code == 429 or 500 <= code <= 599:
        return Classification(retryable=True, category="network_transient")
    return UNKNOWN


def _classify_message(message: str, *, fallbacks_remaining: bool) -> Classification:
    lowered = message.lower()
    if any(token in lowered for token in _PARSE_WORDING):
        return Classification(retryable=True, category="parse_or_protocol")
    if any(token in lowered for token in _NETWORK_WORDING):
        return Classification(retryable=True, category="network_transient")
    if any(token in lowered for token in _NOT_FOUND_WORDING):
        return Classification(retryable=fallbacks_remaining, category="not_found")
    return UNKNOWN


def _classify_exception(error: BaseException, *, fallbacks_remaining: bool) -> Classification:
    if isinstance(error, FileNotFoundError):
        return Classification(retryable=fallbacks_remaining, category="not_found")
    if isinstance(error, PlaybackError):
        return Classification(retryable=True, category="playback_failed")
    if isinstance(error, (httpx.RemoteProtocolError, httpx.DecodingError, json.JSONDecodeError)):
        return Classification(retryable=True, category="parse_or_protocol")
    if isinstance(error, (httpx.TimeoutException, httpx.NetworkError, TimeoutError, ConnectionError)):
        return Classification(retryable=True, category="network_transient")

    code = getattr(error, "code", None)
    if isinstance(code, int) and not isinstance(code, bool):
        verdict = _classify_code(code)
        if verdict is not UNKNOWN:
            return verdict
    status = _status_code(error)
    if status is not None:
        verdict = _classify_code(status)
        if verdict is not UNKNOWN:
            return verdict
    if isinstance(error, httpx.HTTPStatusError):
        # 4xx other than 408/429 means the request itself is wrong.
        return UNKNOWN
    return _classify_message(str(error), fallbacks_remaining=fallbacks_remaining)


def _status_code(error: BaseException) -> int | None:
    status = getattr(error, "status_code", None)
    if isinstance(status, int):
        return status
    response = getattr(error, "response", None)
    status = getattr(response, "status_code", None)
    if isinstance(status, int):
        return status
    return None
