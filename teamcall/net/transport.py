"""Transport abstraction over the signaling relay.

A transport delivers inbound events to handlers registered by event name and
sends outbound events to a participant id or a room id. Handler tables are
per scope: each coordinator takes its own `scope()` of a shared connection so
two coordinators never overwrite each other's handlers.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..errors import TransportError


logger = logging.getLogger(__name__)


EventHandler = Callable[[Dict[str, Any]], Awaitable[None]]


class SignalingTransport:
	def __init__(self) -> None:
		self._handlers: Dict[str, EventHandler] = {}
		self._scopes: List["ScopedTransport"] = []

	def on(self, event: str, handler: EventHandler) -> None:
		if event in self._handlers:
			logger.warning("transport handler replaced event=%s", event)
		self._handlers[event] = handler

	def off(self, event: str) -> None:
		self._handlers.pop(event, None)

	def handles(self, event: str) -> bool:
		return event in self._handlers

	async def send(self, event: str, target: str, payload: Dict[str, Any]) -> None:
		raise NotImplementedError

	async def join_room(self, room: str) -> None:
		raise NotImplementedError

	async def leave_room(self, room: str) -> None:
		raise NotImplementedError

	def scope(self) -> "ScopedTransport":
		child = ScopedTransport(self)
		self._scopes.append(child)
		return child

	async def dispatch(self, event: str, payload: Dict[str, Any]) -> bool:
		"""Deliver one inbound event to this table and every live scope.

		Returns True if at least one handler received it.
		"""

		delivered = False
		handler = self._handlers.get(event)
		if handler is not None:
			delivered = True
			await handler(payload)
		for child in list(self._scopes):
			if await child.dispatch(event, payload):
				delivered = True
		if not delivered:
			logger.debug("transport event unhandled event=%s", event)
		return delivered

	def _drop_scope(self, child: "ScopedTransport") -> None:
		try:
			self._scopes.remove(child)
		except ValueError:
			pass


class ScopedTransport(SignalingTransport):
	"""Own handler table, parent's connection."""

	def __init__(self, parent: SignalingTransport) -> None:
		super().__init__()
		self._parent: Optional[SignalingTransport] = parent

	@property
	def closed(self) -> bool:
		return self._parent is None

	async def send(self, event: str, target: str, payload: Dict[str, Any]) -> None:
		if self._parent is None:
			raise TransportError("transport scope closed", event=event)
		await self._parent.send(event, target, payload)

	async def join_room(self, room: str) -> None:
		if self._parent is not None:
			await self._parent.join_room(room)

	async def leave_room(self, room: str) -> None:
		if self._parent is not None:
			await self._parent.leave_room(room)

	def close(self) -> None:
		self._handlers.clear()
		for child in list(self._scopes):
			child.close()
		if self._parent is not None:
			self._parent._drop_scope(self)
		self._parent = None
