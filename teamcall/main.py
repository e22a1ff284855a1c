from __future__ import annotations

import argparse
import asyncio
import logging
import os
from typing import Optional

from .config import CoreConfig
from .errors import SignalingCoreError, TransportError
from .logging_config import setup_logging
from .net.membership import MembershipClient
from .net.ws_transport import WebSocketTransport
from .rtc import events
from .rtc.call import CallCoordinator
from .rtc.events import CoordinatorCallbacks, CoordinatorEvent, Severity
from .rtc.media import CallType, MediaCaptureManager, PlayerMediaDevices
from .rtc.meeting import MeetingCoordinator
from .rtc.sink import SinkRegistry


logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(prog="teamcall", description="headless call/meeting client")
	parser.add_argument(
		"--log-level",
		default=None,
		help="Logging level (debug, info, warning, error). Can also use TEAMCALL_LOG_LEVEL.",
	)
	parser.add_argument(
		"--server-url",
		default=None,
		help="WebSocket signaling URL (default: TEAMCALL_SIGNALING_URL)",
	)
	parser.add_argument(
		"--user",
		default=os.environ.get("TEAMCALL_USER", os.environ.get("USER", "")),
		help="Own participant id",
	)
	parser.add_argument(
		"--answer-timeout",
		type=float,
		default=None,
		help="Seconds to wait for an offer when answering",
	)

	sub = parser.add_subparsers(dest="command", required=True)
	call = sub.add_parser("call", help="Call a participant")
	call.add_argument("target")
	call.add_argument("--video", action="store_true", help="Video call (default: audio only)")

	sub.add_parser("answer", help="Wait for an incoming call and answer it")

	meeting = sub.add_parser("meeting", help="Join a meeting")
	meeting.add_argument("meeting_id")
	meeting.add_argument("--audio-only", action="store_true")
	return parser


async def _print_log(message: str) -> None:
	logger.info("%s", message)


async def _answer(coord: CallCoordinator, caller: str, call_type: CallType) -> None:
	try:
		await coord.answer_call(caller, call_type)
	except SignalingCoreError as e:
		# Already reported as a call-failed event.
		logger.warning("answer failed caller=%s error=%s", caller, e)


async def _run(args: argparse.Namespace, cfg: CoreConfig) -> int:
	transport = WebSocketTransport(cfg.signaling_url)
	try:
		await transport.connect()
		await transport.join_room(args.user)
	except TransportError as e:
		print(f"Failed to reach signaling server: {e}")
		return 2

	media = MediaCaptureManager(PlayerMediaDevices.from_config(cfg))
	sinks = SinkRegistry()
	done = asyncio.Event()
	call: Optional[CallCoordinator] = None
	pending: set = set()

	async def on_event(event: CoordinatorEvent) -> None:
		level = logging.WARNING if event.severity is not Severity.INFO else logging.INFO
		logger.log(level, "event name=%s peer=%s detail=%s", event.name, event.participant_id, {k: v for k, v in event.detail.items() if k != "track"})
		if event.name == events.REMOTE_TRACK and event.participant_id:
			await sinks.attach(event.participant_id, event.detail["track"])
		elif event.name == events.PARTICIPANT_LEFT:
			await sinks.detach(event.participant_id)
		elif event.name == events.INCOMING_CALL and call is not None and args.command == "answer":
			if not event.detail.get("busy"):
				task = asyncio.create_task(_answer(call, str(event.participant_id), CallType.parse(event.detail["callType"])))
				pending.add(task)
				task.add_done_callback(pending.discard)
		elif event.name in (events.ENDED, events.REJECTED, events.CALL_FAILED, events.LEFT):
			done.set()

	callbacks = CoordinatorCallbacks(on_event=on_event, on_log=_print_log)
	try:
		if args.command in ("call", "answer"):
			call = CallCoordinator(args.user, transport.scope(), media, config=cfg, callbacks=callbacks)
			call.start()
			try:
				if args.command == "call":
					await call.initiate_call(args.target, CallType.VIDEO if args.video else CallType.AUDIO)
				await done.wait()
			finally:
				await call.close()
			return 0

		membership = MembershipClient(cfg.api_base_url, token=cfg.api_token) if cfg.api_base_url else None
		meeting = MeetingCoordinator(
			args.user,
			transport.scope(),
			media,
			config=cfg,
			callbacks=callbacks,
			membership=membership,
		)
		try:
			await meeting.join(args.meeting_id, CallType.AUDIO if args.audio_only else CallType.VIDEO)
			await done.wait()
		finally:
			await meeting.leave()
			await meeting.drain()
			if membership is not None:
				await membership.aclose()
		return 0
	except SignalingCoreError as e:
		print(f"Call failed: {e}")
		return 1
	finally:
		await sinks.close()
		await transport.disconnect()


def main(argv: list[str] | None = None) -> int:
	args = _build_parser().parse_args(argv)

	setup_logging(args.log_level)

	cfg = CoreConfig.from_env()
	if args.server_url:
		cfg.signaling_url = args.server_url
	if args.answer_timeout is not None:
		cfg.answer_timeout_sec = args.answer_timeout
	if not args.user:
		print("A participant id is required (--user or TEAMCALL_USER)")
		return 2

	try:
		return asyncio.run(_run(args, cfg))
	except KeyboardInterrupt:
		return 130


if __name__ == "__main__":
	raise SystemExit(main())
