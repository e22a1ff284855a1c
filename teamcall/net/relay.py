"""In-process signaling relay.

Mirrors the production relay: every connection sits in its own user room
(named by participant id) and may join further rooms; an event sent "to" a
room reaches every member except the sender. Call notifications are renamed
on delivery exactly like the server does (see `protocol.RELAY_RENAMES`).
Used by the loopback demo and the tests.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Set

from ..errors import TransportError
from . import protocol
from .transport import SignalingTransport


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RelayedEvent:
	sender: str
	event: str
	target: str
	payload: Dict[str, Any]


class InMemoryRelay:
	def __init__(self) -> None:
		self._rooms: Dict[str, Set["RelayTransport"]] = {}
		self._lock = asyncio.Lock()
		self.history: List[RelayedEvent] = []

	def connect(self, participant_id: str) -> "RelayTransport":
		endpoint = RelayTransport(self, participant_id)
		self._rooms.setdefault(participant_id, set()).add(endpoint)
		logger.debug("relay connect participant=%s", participant_id)
		return endpoint

	def disconnect(self, endpoint: "RelayTransport") -> None:
		for room in list(self._rooms):
			members = self._rooms[room]
			members.discard(endpoint)
			if not members:
				self._rooms.pop(room, None)

	def members(self, room: str) -> Set[str]:
		return {endpoint.participant_id for endpoint in self._rooms.get(room, set())}

	async def join(self, endpoint: "RelayTransport", room: str) -> None:
		async with self._lock:
			self._rooms.setdefault(room, set()).add(endpoint)

	async def leave(self, endpoint: "RelayTransport", room: str) -> None:
		async with self._lock:
			members = self._rooms.get(room)
			if not members:
				return
			members.discard(endpoint)
			if not members:
				self._rooms.pop(room, None)

	async def route(self, sender: "RelayTransport", event: str, target: str, payload: Dict[str, Any]) -> None:
		self.history.append(RelayedEvent(sender.participant_id, event, target, dict(payload)))
		async with self._lock:
			recipients = [endpoint for endpoint in self._rooms.get(target, set()) if endpoint is not sender]

		delivered_event = protocol.RELAY_RENAMES.get(event, event)
		delivered = dict(payload)
		delivered["from"] = sender.participant_id
		logger.debug(
			"relay route event=%s as=%s from=%s to=%s recipients=%s",
			event,
			delivered_event,
			sender.participant_id,
			target,
			len(recipients),
		)
		for endpoint in sorted(recipients, key=lambda e: e.participant_id):
			await endpoint.dispatch(delivered_event, dict(delivered))


class RelayTransport(SignalingTransport):
	"""A connection attached to an `InMemoryRelay`."""

	def __init__(self, relay: InMemoryRelay, participant_id: str):
		super().__init__()
		self.participant_id = participant_id
		self._relay = relay
		self._connected = True

	async def send(self, event: str, target: str, payload: Dict[str, Any]) -> None:
		if not self._connected:
			raise TransportError("relay endpoint disconnected", event=event)
		await self._relay.route(self, event, target, payload)

	async def join_room(self, room: str) -> None:
		if not self._connected:
			raise TransportError("relay endpoint disconnected", event=protocol.JOIN_ROOM)
		await self._relay.join(self, room)

	async def leave_room(self, room: str) -> None:
		await self._relay.leave(self, room)

	def disconnect(self) -> None:
		self._connected = False
		self._relay.disconnect(self)
