"""Audio input/output helpers for ringing alarms."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import shutil
from asyncio.subprocess import Process
from pathlib import Path

from .errors import PlaybackError


class ArecordStream:
    """Capture PCM audio by shelling out to ``arecord`` (ALSA)."""

    def __init__(
        self,
        command: list[str],
        bytes_per_chunk: int,
        logger: logging.Logger | None = None,
    ) -> None:
        self.command = command
        self.bytes_per_chunk = bytes_per_chunk
        self._proc: Process | None = None
        self._logger = logger or logging.getLogger(__name__)

    @property
    def running(self) -> bool:
        return self._proc is not None

    async def start(self) -> None:
        if self._proc:
            return
        self._logger.debug("Starting microphone capture: %s", " ".join(self.command))
        self._proc = await asyncio.create_subprocess_exec(
            *self.command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

    async def read_chunk(self) -> bytes:
        if not self._proc or not self._proc.stdout:
            raise RuntimeError("Microphone stream is not running")
        try:
            return await self._proc.stdout.readexactly(self.bytes_per_chunk)
        except asyncio.IncompleteReadError as exc:
            message = "Microphone stream ended unexpectedly"
            stderr = await _read_stderr(self._proc)
            if stderr:
                message = f"{message} ({stderr})"
            raise RuntimeError(message) from exc

    async def stop(self) -> None:
        if not self._proc:
            return
        self._logger.debug("Stopping microphone capture")
        proc = self._proc
        self._proc = None
        await _terminate(proc)


class FilePlayer:
    """Play an audio file through the first available command-line player.

    With ``loop`` enabled the file is restarted each time the player exits
    cleanly, until ``stop`` is called. A player that exits non-zero within
    ``startup_grace`` seconds counts as a failed start; one that exits
    non-zero later surfaces as a ``PlaybackError`` from ``wait``.
    """

    def __init__(
        self,
        binary: str = "auto",
        *,
        loop: bool = True,
        startup_grace: float = 0.3,
        logger: logging.Logger | None = None,
    ) -> None:
        self.binary = binary or "auto"
        self.loop = loop
        self.startup_grace = startup_grace
        self._logger = logger or logging.getLogger(__name__)
        self._proc: Process | None = None
        self._supervisor: asyncio.Task[None] | None = None
        self._finished: asyncio.Future[None] | None = None
        self._stopping = False

    @property
    def playing(self) -> bool:
        return self._proc is not None or (self._supervisor is not None and not self._supervisor.done())

    async def start(self, path: Path) -> None:
        await self.stop()
        if not path.is_file():
            raise FileNotFoundError(f"Audio file not found: {path}")
        player = _determine_player(self.binary, path.suffix.lower(), self._logger)
        if player is None:
            raise PlaybackError("No audio player available (tried mpg123, ffplay, pw-play, paplay, aplay)")
        cmd = build_file_command(player, path)
        self._stopping = False
        # Tracked before the grace wait so stop() can reach it if start is cancelled.
        proc = self._proc = await self._spawn(cmd)
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.startup_grace)
        except asyncio.TimeoutError:
            self._watch(cmd)
            return
        self._proc = None
        if proc.returncode != 0:
            stderr = await _read_stderr(proc)
            detail = f": {stderr}" if stderr else ""
            raise PlaybackError(f"{player} exited with status {proc.returncode}{detail}")
        # Short clip finished inside the grace window.
        self._watch(cmd)

    async def wait(self) -> None:
        """Block until playback ends.

        Returns once ``stop`` is called or a non-looping clip finishes, and
        raises ``PlaybackError`` when the player dies mid-ring.
        """
        finished = self._finished
        if finished is None:
            return
        await asyncio.shield(finished)

    async def stop(self) -> None:
        self._stopping = True
        self._settle(None)
        supervisor = self._supervisor
        self._supervisor = None
        if supervisor and not supervisor.done():
            supervisor.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await supervisor
        proc = self._proc
        self._proc = None
        if proc is not None:
            self._logger.debug("Stopping playback")
            await _terminate(proc)

    async def _spawn(self, cmd: list[str]) -> Process:
        self._logger.debug("Starting playback: %s", " ".join(cmd))
        try:
            return await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise PlaybackError(f"Failed to launch {cmd[0]}: {exc}") from exc

    def _watch(self, cmd: list[str]) -> None:
        self._finished = asyncio.get_running_loop().create_future()
        self._supervisor = asyncio.create_task(self._supervise(cmd))

    async def _supervise(self, cmd: list[str]) -> None:
        error: PlaybackError | None = None
        while not self._stopping:
            proc = self._proc
            if proc is None:
                if not self.loop:
                    break
                try:
                    proc = self._proc = await self._spawn(cmd)
                except PlaybackError as exc:
                    error = exc
                    break
            returncode = await proc.wait()
            self._proc = None
            if returncode != 0:
                stderr = await _read_stderr(proc)
                detail = f": {stderr}" if stderr else ""
                self._logger.warning("Player %s exited with status %s mid-playback", cmd[0], returncode)
                error = PlaybackError(f"{cmd[0]} exited with status {returncode}{detail}")
                break
            if not self.loop:
                break
        self._settle(error)

    def _settle(self, error: PlaybackError | None) -> None:
        finished = self._finished
        if finished is None or finished.done():
            return
        if error is None:
            finished.set_result(None)
        else:
            finished.set_exception(error)


_PLAYERS_BY_EXTENSION: dict[str, list[str]] = {
    ".mp3": ["mpg123", "ffplay", "pw-play", "paplay"],
    ".wav": ["pw-play", "paplay", "aplay", "ffplay"],
}
_DEFAULT_PLAYERS = ["ffplay", "pw-play", "paplay"]


def _supported_player(binary: str) -> bool:
    if os.path.isabs(binary):
        return os.access(binary, os.X_OK)
    return shutil.which(binary) is not None


def _player_candidates(extension: str) -> list[str]:
    return _PLAYERS_BY_EXTENSION.get(extension, _DEFAULT_PLAYERS)


def _determine_player(preferred: str, extension: str, logger: logging.Logger) -> str | None:
    if preferred != "auto":
        if _supported_player(preferred):
            return preferred
        logger.warning("Requested audio player '%s' not found; falling back to auto-detection", preferred)
    for candidate in _player_candidates(extension):
        if _supported_player(candidate):
            return candidate
    return None


def build_file_command(player: str, path: Path) -> list[str]:
    name = os.path.basename(player)
    if name == "mpg123":
        return [player, "-q", str(path)]
    if name == "ffplay":
        return [player, "-nodisp", "-autoexit", "-loglevel", "error", str(path)]
    if name == "aplay":
        return [player, "-q", str(path)]
    return [player, str(path)]


async def _read_stderr(proc: Process) -> str:
    if not proc.stderr:
        return ""
    try:
        data = await asyncio.wait_for(proc.stderr.read(), timeout=0.5)
    except (asyncio.TimeoutError, RuntimeError):
        return ""
    return data.decode("utf-8", errors="ignore").strip()


async def _terminate(proc: Process) -> None:
    if proc.returncode is not None:
        return
    with contextlib.suppress(ProcessLookupError):
        proc.terminate()
    try:
        await asyncio.wait_for(proc.wait(), timeout=2)
    except asyncio.TimeoutError:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(proc.wait(), timeout=1)
