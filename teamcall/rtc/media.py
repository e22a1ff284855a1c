"""Local capture devices.

MediaCaptureManager hands out a single LocalCapture (one microphone, at most
one camera) to every coordinator that asks for a compatible call type, and
stops the devices once the last holder releases it. Sessions never add the
capture tracks to a peer connection directly: they subscribe through the
capture's MediaRelay so one device feed fans out to every peer.
"""

from __future__ import annotations

import asyncio
import errno
import logging
import sys
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Tuple

import av
from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer, MediaRelay

from ..errors import DeviceError, DeviceErrorReason


logger = logging.getLogger(__name__)


class CallType(str, Enum):
	AUDIO = "audio"
	VIDEO = "video"

	@classmethod
	def parse(cls, value: Any) -> "CallType":
		try:
			return cls(str(value).lower())
		except ValueError:
			raise ValueError(f"unknown call type: {value!r}") from None


def _blank_frame(frame):
	"""Silence / black frame with the same shape and timing as `frame`."""
	if isinstance(frame, av.AudioFrame):
		blank = av.AudioFrame(format=frame.format.name, layout=frame.layout.name, samples=frame.samples)
		for plane in blank.planes:
			plane.update(bytes(plane.buffer_size))
		blank.sample_rate = frame.sample_rate
	elif isinstance(frame, av.VideoFrame):
		blank = av.VideoFrame(width=frame.width, height=frame.height, format="yuv420p")
		luma, *chroma = blank.planes
		luma.update(b"\x10" * luma.buffer_size)
		for plane in chroma:
			plane.update(b"\x80" * plane.buffer_size)
	else:
		return frame
	blank.pts = frame.pts
	blank.time_base = frame.time_base
	return blank


class CaptureTrack(MediaStreamTrack):
	"""Device track with a browser-style `enabled` switch.

	A disabled track keeps pulling from the device and sends silence (audio)
	or black frames (video), so peers stay negotiated while muted.
	"""

	def __init__(self, source: MediaStreamTrack, *, label: Optional[str] = None):
		super().__init__()
		self.kind = source.kind
		self.enabled = True
		self.label = label or f"{source.kind}:{source.id}"
		self._source = source

	@property
	def live(self) -> bool:
		return self.readyState == "live" and getattr(self._source, "readyState", "live") == "live"

	async def recv(self):  # type: ignore[override]
		frame = await self._source.recv()
		if self.enabled:
			return frame
		return _blank_frame(frame)

	def stop(self) -> None:  # type: ignore[override]
		try:
			self._source.stop()
		finally:
			super().stop()


@dataclass(eq=False)
class LocalCapture:
	call_type: CallType
	audio_track: Optional[CaptureTrack] = None
	video_track: Optional[CaptureTrack] = None
	owners: Set[Any] = field(default_factory=set, repr=False)
	relay: MediaRelay = field(default_factory=MediaRelay, repr=False)

	@property
	def all_live(self) -> bool:
		tracks = self.tracks()
		return bool(tracks) and all(t.live for t in tracks)

	def tracks(self) -> List[CaptureTrack]:
		return [t for t in (self.audio_track, self.video_track) if t is not None]

	def subscribe(self, track: CaptureTrack) -> MediaStreamTrack:
		"""Per-peer view of `track`; stopping it leaves the device running."""
		return self.relay.subscribe(track)

	def toggle_audio(self) -> bool:
		return self._toggle(self.audio_track)

	def toggle_video(self) -> bool:
		return self._toggle(self.video_track)

	@staticmethod
	def _toggle(track: Optional[CaptureTrack]) -> bool:
		if track is None:
			return False
		track.enabled = not track.enabled
		logger.info("local %s track enabled=%s", track.kind, track.enabled)
		return track.enabled


class MediaDevices:
	"""Device-media API: open the requested devices, return tracks by kind."""

	async def open(self, *, audio: bool, video: bool) -> Dict[str, MediaStreamTrack]:
		raise NotImplementedError


def device_error_from(exc: BaseException, *, kind: str) -> DeviceError:
	if isinstance(exc, DeviceError):
		return exc
	if isinstance(exc, PermissionError):
		reason = DeviceErrorReason.PERMISSION_DENIED
	elif isinstance(exc, FileNotFoundError):
		reason = DeviceErrorReason.NOT_FOUND
	elif getattr(exc, "errno", None) == errno.EBUSY:
		reason = DeviceErrorReason.IN_USE
	else:
		reason = DeviceErrorReason.CONSTRAINTS_UNSATISFIABLE
	return DeviceError(reason, f"{kind}: {exc}")


@dataclass(frozen=True)
class DeviceSpec:
	"""An ffmpeg capture source (`backend` is the ffmpeg format, e.g. "pulse")."""

	backend: str
	device: str
	options: Tuple[Tuple[str, str], ...] = ()


def _default_specs(kind: str, video_size: str) -> List[DeviceSpec]:
	video_opts = (("video_size", video_size), ("framerate", "30"))
	if sys.platform.startswith("linux"):
		if kind == "audio":
			# PulseAudio is typical on desktop Linux, ALSA otherwise.
			return [DeviceSpec("pulse", "default"), DeviceSpec("alsa", "default")]
		return [DeviceSpec("v4l2", "/dev/video0", video_opts)]
	if sys.platform == "darwin":
		if kind == "audio":
			return [DeviceSpec("avfoundation", "none:0")]
		return [DeviceSpec("avfoundation", "0:none", video_opts)]
	# Windows dshow needs a device name; nothing sensible to guess.
	return []


class PlayerMediaDevices(MediaDevices):
	"""Capture through ffmpeg via aiortc's MediaPlayer."""

	def __init__(
		self,
		*,
		audio: Optional[DeviceSpec] = None,
		video: Optional[DeviceSpec] = None,
		video_size: str = "640x480",
	):
		self._preferred = {"audio": audio, "video": video}
		self._video_size = video_size

	@classmethod
	def from_config(cls, cfg) -> "PlayerMediaDevices":
		audio = DeviceSpec(cfg.audio_format, cfg.audio_device or "default") if cfg.audio_format else None
		video = None
		if cfg.video_format and cfg.video_device:
			video = DeviceSpec(cfg.video_format, cfg.video_device, (("video_size", cfg.video_size),))
		return cls(audio=audio, video=video, video_size=cfg.video_size)

	async def open(self, *, audio: bool, video: bool) -> Dict[str, MediaStreamTrack]:
		return await asyncio.to_thread(self._open_sync, audio, video)

	def _candidates(self, kind: str) -> List[DeviceSpec]:
		preferred = self._preferred.get(kind)
		defaults = _default_specs(kind, self._video_size)
		if preferred is not None:
			return [preferred] + [d for d in defaults if d != preferred]
		return defaults

	def _open_sync(self, audio: bool, video: bool) -> Dict[str, MediaStreamTrack]:
		tracks: Dict[str, MediaStreamTrack] = {}
		try:
			if audio:
				tracks["audio"] = self._open_kind("audio")
			if video:
				tracks["video"] = self._open_kind("video")
		except DeviceError:
			for track in tracks.values():
				track.stop()
			raise
		return tracks

	def _open_kind(self, kind: str) -> MediaStreamTrack:
		candidates = self._candidates(kind)
		if not candidates:
			raise DeviceError(DeviceErrorReason.NOT_FOUND, f"{kind}: no capture device configured")

		last_error: Optional[BaseException] = None
		for spec in candidates:
			try:
				player = MediaPlayer(spec.device, format=spec.backend, options=dict(spec.options))
			except (av.error.FFmpegError, OSError, ValueError) as e:
				logger.debug("capture open failed kind=%s backend=%s device=%s error=%s", kind, spec.backend, spec.device, e)
				last_error = e
				continue
			track = getattr(player, kind)
			if track is None:
				last_error = FileNotFoundError(f"{spec.backend}:{spec.device} has no {kind} stream")
				continue
			logger.info("capture opened kind=%s backend=%s device=%s", kind, spec.backend, spec.device)
			return track

		assert last_error is not None
		raise device_error_from(last_error, kind=kind)


class MediaCaptureManager:
	def __init__(self, devices: MediaDevices):
		self._devices = devices
		self._current: Optional[LocalCapture] = None
		self._lock = asyncio.Lock()

	@property
	def current(self) -> Optional[LocalCapture]:
		return self._current

	@staticmethod
	def can_reuse(existing: Optional[LocalCapture], call_type: CallType) -> bool:
		"""True iff `existing` structurally satisfies `call_type` and every track is usable.

		Audio must be present, enabled and live. Video must be present (enabled
		and live) for video calls and absent for audio calls.
		"""
		if existing is None:
			return False
		audio = existing.audio_track
		if audio is None or not audio.enabled or not audio.live:
			return False
		video = existing.video_track
		if call_type is CallType.VIDEO:
			return video is not None and video.enabled and video.live
		return video is None

	async def acquire(self, call_type: CallType, owner: Any) -> LocalCapture:
		async with self._lock:
			current = self._current
			if current is not None:
				if self.can_reuse(current, call_type):
					current.owners.add(owner)
					logger.info("capture reused type=%s owners=%s", call_type.value, len(current.owners))
					return current
				others = current.owners - {owner}
				if others:
					raise DeviceError(
						DeviceErrorReason.IN_USE,
						f"{current.call_type.value} capture still held by {len(others)} other owner(s)",
					)
				logger.info("capture not reusable type=%s, reacquiring", call_type.value)
				self._stop(current)

			tracks = await self._devices.open(audio=True, video=call_type is CallType.VIDEO)
			try:
				capture = self._wrap(call_type, tracks)
			except DeviceError:
				for track in tracks.values():
					track.stop()
				raise
			capture.owners.add(owner)
			self._current = capture
			logger.info("capture acquired type=%s tracks=%s", call_type.value, [t.kind for t in capture.tracks()])
			return capture

	def release(self, capture: LocalCapture, owner: Any = None) -> bool:
		"""Drop `owner`; stop the devices once nobody holds the capture.

		Without an owner the capture is stopped unconditionally. Returns True if
		the tracks were stopped.
		"""
		if owner is not None:
			capture.owners.discard(owner)
			if capture.owners:
				logger.debug("capture still held owners=%s", len(capture.owners))
				return False
		self._stop(capture)
		return True

	def _stop(self, capture: LocalCapture) -> None:
		for track in capture.tracks():
			track.stop()
		capture.audio_track = None
		capture.video_track = None
		capture.owners.clear()
		if self._current is capture:
			self._current = None
		logger.info("capture released type=%s", capture.call_type.value)

	@staticmethod
	def _wrap(call_type: CallType, tracks: Dict[str, MediaStreamTrack]) -> LocalCapture:
		audio = tracks.get("audio")
		if audio is None:
			raise DeviceError(DeviceErrorReason.NOT_FOUND, "audio: no track")
		video = tracks.get("video")
		if call_type is CallType.VIDEO and video is None:
			raise DeviceError(DeviceErrorReason.NOT_FOUND, "video: no track")
		if call_type is CallType.AUDIO and video is not None:
			video.stop()
			video = None
		return LocalCapture(
			call_type=call_type,
			audio_track=CaptureTrack(audio),
			video_track=CaptureTrack(video) if video is not None else None,
		)
