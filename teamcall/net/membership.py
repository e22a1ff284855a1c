"""Meeting membership collaborator.

Records join/leave with the REST backend so the CRUD layer knows who is in a
meeting. The signaling core treats these calls as fire-and-forget: failures
are logged and never turn into call failures.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx


logger = logging.getLogger(__name__)


class MembershipClient:
	def __init__(
		self,
		base_url: str,
		*,
		token: Optional[str] = None,
		timeout: float = 5.0,
		transport: Optional[httpx.AsyncBaseTransport] = None,
	):
		headers = {"Authorization": f"Bearer {token}"} if token else {}
		self._client = httpx.AsyncClient(
			base_url=base_url.rstrip("/"),
			headers=headers,
			timeout=timeout,
			transport=transport,
		)

	async def join(self, meeting_id: str, user_id: str) -> bool:
		return await self._post(f"/meetings/{meeting_id}/join", meeting_id, user_id)

	async def leave(self, meeting_id: str, user_id: str) -> bool:
		return await self._post(f"/meetings/{meeting_id}/leave", meeting_id, user_id)

	async def aclose(self) -> None:
		await self._client.aclose()

	async def _post(self, path: str, meeting_id: str, user_id: str) -> bool:
		try:
			resp = await self._client.post(path, json={"userId": user_id})
			resp.raise_for_status()
		except httpx.HTTPError as e:
			logger.warning("membership update failed path=%s meeting=%s user=%s error=%s", path, meeting_id, user_id, e)
			return False
		logger.debug("membership updated path=%s meeting=%s user=%s", path, meeting_id, user_id)
		return True
