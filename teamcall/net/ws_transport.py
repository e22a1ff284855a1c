"""WebSocket signaling transport.

Speaks a JSON envelope to the relay:
  outbound  {"event": str, "to": str, "payload": {...}}
  inbound   {"event": str, "payload": {...}}
Room membership uses the `join-room` / `leave-room` control events.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional, Set

import websockets

from ..errors import TransportError
from . import protocol
from .transport import SignalingTransport


logger = logging.getLogger(__name__)


class WebSocketTransport(SignalingTransport):
	def __init__(self, url: str):
		super().__init__()
		self.url = url

		# websockets' protocol types moved between versions; keep runtime-safe.
		self._ws: Optional[Any] = None
		self._recv_task: Optional[asyncio.Task[None]] = None
		self._send_lock = asyncio.Lock()
		self._connected_evt = asyncio.Event()
		self._rooms: Set[str] = set()

	@property
	def is_connected(self) -> bool:
		return self._ws is not None and self._connected_evt.is_set()

	async def connect(self) -> None:
		if self._recv_task and not self._recv_task.done():
			return

		logger.info("signaling connect url=%s", self.url)
		try:
			self._ws = await websockets.connect(self.url)
		except (OSError, websockets.exceptions.WebSocketException) as e:
			logger.exception("signaling connect failed url=%s", self.url)
			raise TransportError(f"connect failed: {e}") from e
		self._connected_evt.set()
		self._recv_task = asyncio.create_task(self._recv_loop(), name="signaling-recv")

		# Re-enter rooms after a reconnect.
		for room in sorted(self._rooms):
			await self._send_raw({"event": protocol.JOIN_ROOM, "room": room})

	async def disconnect(self) -> None:
		logger.info("signaling disconnect")
		self._connected_evt.clear()
		if self._recv_task:
			self._recv_task.cancel()
			try:
				await self._recv_task
			except asyncio.CancelledError:
				pass
			self._recv_task = None

		if self._ws:
			try:
				await self._ws.close()
			except websockets.exceptions.WebSocketException:
				logger.debug("signaling close failed", exc_info=True)
		self._ws = None

	async def send(self, event: str, target: str, payload: Dict[str, Any]) -> None:
		if event in (protocol.OFFER, protocol.ANSWER, protocol.CALL_ANSWER):
			logger.info("signaling send event=%s to=%s", event, target)
		else:
			logger.debug("signaling send event=%s to=%s", event, target)
		await self._send_raw({"event": event, "to": target, "payload": payload})

	async def join_room(self, room: str) -> None:
		self._rooms.add(room)
		logger.info("signaling join room=%s", room)
		await self._send_raw({"event": protocol.JOIN_ROOM, "room": room})

	async def leave_room(self, room: str) -> None:
		self._rooms.discard(room)
		logger.info("signaling leave room=%s", room)
		if self.is_connected:
			await self._send_raw({"event": protocol.LEAVE_ROOM, "room": room})

	async def _send_raw(self, message: Dict[str, Any]) -> None:
		if not self._ws or not self._connected_evt.is_set():
			raise TransportError("signaling not connected", event=str(message.get("event")))
		raw = json.dumps(message, separators=(",", ":"), ensure_ascii=False)
		async with self._send_lock:
			try:
				await self._ws.send(raw)
			except websockets.exceptions.ConnectionClosed as e:
				raise TransportError(f"signaling connection closed: {e}", event=str(message.get("event"))) from e

	async def _recv_loop(self) -> None:
		assert self._ws is not None
		ws = self._ws
		logger.debug("signaling recv loop started")

		try:
			async for raw in ws:
				try:
					msg = json.loads(raw)
				except json.JSONDecodeError:
					logger.warning("signaling invalid json len=%s", len(raw))
					continue

				if not isinstance(msg, dict):
					logger.warning("signaling invalid message type=%s", type(msg).__name__)
					continue

				event = msg.get("event")
				if not isinstance(event, str):
					logger.warning("signaling message missing event keys=%s", sorted(msg.keys()))
					continue

				payload = msg.get("payload")
				if not isinstance(payload, dict):
					payload = {}

				logger.debug("signaling recv event=%s from=%s", event, payload.get("from"))
				await self.dispatch(event, payload)

		except asyncio.CancelledError:
			raise
		except websockets.exceptions.ConnectionClosed as e:
			logger.info("signaling connection closed code=%s", getattr(e, "code", None))
		except Exception:
			logger.exception("signaling recv loop crashed")
		finally:
			self._connected_evt.clear()
			logger.debug("signaling recv loop stopped")
			if self._ws is ws:
				self._ws = None
