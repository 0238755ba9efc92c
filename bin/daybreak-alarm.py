#!/usr/bin/env python3
"""Daybreak alarm command line: generate, retry, ring and pre-generate alarm audio."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import uuid
from datetime import datetime

from daybreak.alarm.config import DaybreakConfig, debug_enabled
from daybreak.alarm.errors import GenerationInProgress
from daybreak.alarm.generation import GenerationOutcome
from daybreak.alarm.models import TONES, Alarm
from daybreak.alarm.mqtt import AlarmCommand, AlarmMqtt
from daybreak.alarm.playback import AlarmSession
from daybreak.alarm.service import UnknownAlarm, WakeupService
from daybreak.alarm.telemetry import FanoutTelemetry, LoggingTelemetry, MqttTelemetry, Telemetry

LOGGER = logging.getLogger("daybreak.cli")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Daybreak wake-up alarms")
    parser.add_argument("--log-level", default=None)
    sub = parser.add_subparsers(dest="command", required=True)

    add = sub.add_parser("add", help="create an alarm")
    add.add_argument("--time", required=True, help="ISO-8601 fire time, e.g. 2026-10-20T06:30")
    add.add_argument("--label", default="")
    add.add_argument("--tone", choices=TONES, default="gentle")
    add.add_argument("--mission", default="")
    add.add_argument("--voice", default=None)
    add.add_argument("--id", dest="alarm_id", default=None)

    generate = sub.add_parser("generate", help="generate script and audio for an alarm")
    generate.add_argument("alarm_id")
    generate.add_argument("--intent", default=None)

    retry = sub.add_parser("retry", help="retry audio for an alarm's existing script")
    retry.add_argument("alarm_id")

    ring = sub.add_parser("ring", help="ring an alarm now")
    ring.add_argument("alarm_id")
    ring.add_argument("--voice", action="store_true", help="listen for a dismiss phrase after playback starts")

    sub.add_parser("pregenerate", help="generate audio for alarms firing soon")
    return parser


def _print_outcome(outcome: GenerationOutcome) -> None:
    summary = {
        "alarm_id": outcome.request.alarm_id,
        "script_ready": outcome.script_ready,
        "audio_ready": outcome.audio_ready,
        "attempts": outcome.attempts,
        "audio": outcome.content.audio_asset_ref if outcome.content else None,
        "message": outcome.message,
    }
    print(json.dumps(summary, indent=2))


async def _voice_loop(session: AlarmSession) -> None:
    while session.phase != "dismissed":
        result = await session.voice_dismiss()
        if result.message:
            print(result.message)
        if result.outcome in {"dismissed", "manual_required", "permission_required", "cancelled"}:
            return


async def _ring(service: WakeupService, mqtt: AlarmMqtt, alarm_id: str, voice: bool) -> int:
    loop = asyncio.get_running_loop()
    sessions: list[AlarmSession] = []
    background: set[asyncio.Task] = set()

    def _spawn(coro) -> None:  # type: ignore[no-untyped-def]
        task = loop.create_task(coro)
        background.add(task)
        task.add_done_callback(background.discard)

    def _on_session(session: AlarmSession) -> None:
        sessions.append(session)
        if voice:
            _spawn(_voice_loop(session))

    def _handle_signal(signum: int) -> None:
        LOGGER.info("Received signal %s, stopping alarm", signum)
        if sessions:
            _spawn(sessions[0].stop())

    def _run_command(command: AlarmCommand) -> None:
        if not sessions:
            LOGGER.debug("Alarm command %s arrived before the alarm started ringing", command)
            return
        session = sessions[0]
        _spawn(session.stop() if command == "stop" else session.snooze())

    def _handle_command(command: AlarmCommand) -> None:
        loop.call_soon_threadsafe(_run_command, command)

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _handle_signal, sig)
    mqtt.subscribe_commands(_handle_command)

    try:
        outcome = await service.ring(alarm_id, on_session=_on_session)
    finally:
        mqtt.clear_commands()
    for task in list(background):
        task.cancel()
    print(
        json.dumps(
            {
                "alarm_id": outcome.alarm_id,
                "reason": outcome.reason,
                "method": outcome.method,
                "audio_played": outcome.audio_played,
                "strategy": outcome.resolution.strategy if outcome.resolution else None,
                "message": outcome.message,
                "snoozed_until": outcome.snoozed_until.isoformat() if outcome.snoozed_until else None,
            },
            indent=2,
        )
    )
    return 0 if outcome.method != "error" else 1


async def main() -> int:
    args = _build_parser().parse_args()
    default_level = "DEBUG" if debug_enabled() else "INFO"
    level_name = (args.log_level or default_level).upper()
    logging.basicConfig(level=getattr(logging, level_name, logging.INFO))

    config = DaybreakConfig.from_env()
    mqtt = AlarmMqtt(config.mqtt)
    mqtt_running = mqtt.connect()
    sinks: list[Telemetry] = [LoggingTelemetry()]
    if mqtt_running:
        sinks.append(MqttTelemetry(mqtt))
    service = WakeupService.from_config(config, telemetry=FanoutTelemetry(sinks))

    try:
        if args.command == "add":
            fire_time = datetime.fromisoformat(args.time)
            if fire_time.tzinfo is None:
                fire_time = fire_time.astimezone()
            alarm = Alarm(
                alarm_id=args.alarm_id or uuid.uuid4().hex[:12],
                fire_time=fire_time,
                label=args.label,
                tone=args.tone,
                voice_id=args.voice,
                mission=args.mission,
            )
            await service.store.save(alarm)
            print(alarm.alarm_id)
            return 0
        if args.command == "generate":
            outcome = await service.generate(args.alarm_id, intent_id=args.intent)
            _print_outcome(outcome)
            return 0 if outcome.audio_ready else 1
        if args.command == "retry":
            outcome = await service.retry_audio(args.alarm_id)
            _print_outcome(outcome)
            return 0 if outcome.audio_ready else 1
        if args.command == "ring":
            return await _ring(service, mqtt, args.alarm_id, args.voice)
        if args.command == "pregenerate":
            await service.clear_expired_content()
            for outcome in await service.pregenerate_upcoming():
                _print_outcome(outcome)
            return 0
    except (UnknownAlarm, GenerationInProgress, ValueError) as exc:
        LOGGER.error("%s", exc)
        return 2
    finally:
        mqtt.disconnect()
    return 0


if __name__ == "__main__":
    try:
        raise SystemExit(asyncio.run(main()))
    except KeyboardInterrupt:
        pass
