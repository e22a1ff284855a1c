"""Consumes remote tracks for the headless client.

Audio goes to the local speaker when ffmpeg can open an output device,
otherwise it is discarded. Video is always discarded (no UI here), but it
still has to be consumed so the receiver keeps decoding.
"""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import av
from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaBlackhole, MediaRecorder


logger = logging.getLogger(__name__)


def _audio_outputs() -> List[Tuple[str, str]]:
	if sys.platform.startswith("linux"):
		return [("pulse", "default"), ("alsa", "default")]
	return []


def _open_audio_output() -> Tuple[Any, str]:
	for backend, device in _audio_outputs():
		try:
			return MediaRecorder(device, format=backend), f"{backend}:{device}"
		except (av.error.FFmpegError, OSError, ValueError) as e:
			logger.debug("audio output unavailable backend=%s error=%s", backend, e)
	return MediaBlackhole(), "blackhole"


@dataclass
class RemoteMediaSink:
	"""One sink per remote participant."""

	participant_id: str
	_recorders: Dict[str, Any] = field(default_factory=dict)

	async def add(self, track: MediaStreamTrack) -> None:
		if track.kind in self._recorders:
			logger.debug("remote sink already has kind=%s peer=%s", track.kind, self.participant_id)
			return
		if track.kind == "audio":
			recorder, sink = _open_audio_output()
		else:
			recorder, sink = MediaBlackhole(), "blackhole"
		logger.info("remote sink peer=%s kind=%s sink=%s", self.participant_id, track.kind, sink)
		recorder.addTrack(track)
		await recorder.start()
		self._recorders[track.kind] = recorder

	async def stop(self) -> None:
		recorders, self._recorders = self._recorders, {}
		for kind, recorder in recorders.items():
			try:
				await recorder.stop()
			except (av.error.FFmpegError, OSError) as e:
				logger.warning("remote sink stop failed peer=%s kind=%s error=%s", self.participant_id, kind, e)


class SinkRegistry:
	def __init__(self) -> None:
		self._sinks: Dict[str, RemoteMediaSink] = {}

	async def attach(self, participant_id: str, track: MediaStreamTrack) -> None:
		sink = self._sinks.get(participant_id)
		if sink is None:
			sink = RemoteMediaSink(participant_id)
			self._sinks[participant_id] = sink
		await sink.add(track)

	async def detach(self, participant_id: Optional[str]) -> None:
		if participant_id is None:
			return
		sink = self._sinks.pop(participant_id, None)
		if sink is not None:
			await sink.stop()

	async def close(self) -> None:
		for pid in list(self._sinks):
			await self.detach(pid)
