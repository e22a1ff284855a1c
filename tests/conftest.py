from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import pytest
from aiortc import AudioStreamTrack, MediaStreamTrack, RTCSessionDescription, VideoStreamTrack

from teamcall.config import CoreConfig
from teamcall.rtc.events import CoordinatorCallbacks, CoordinatorEvent
from teamcall.rtc.media import MediaCaptureManager, MediaDevices


class FakePeerConnection:
    """Records what a PeerSession does to its peer connection.

    Fails loudly on the two things a session must never do: set the remote
    description twice, or apply a candidate before it is set.
    """

    def __init__(self) -> None:
        self.localDescription: Optional[RTCSessionDescription] = None
        self.remoteDescription: Optional[RTCSessionDescription] = None
        self.connectionState = "new"
        self.added_tracks: List[MediaStreamTrack] = []
        self.candidates: List[Any] = []
        self.events: List[tuple] = []
        self.close_calls = 0
        self._handlers: Dict[str, Callable[..., Any]] = {}

    def on(self, event: str):
        def decorator(fn):
            self._handlers[event] = fn
            return fn

        return decorator

    def addTrack(self, track: MediaStreamTrack) -> None:
        self.added_tracks.append(track)

    async def createOffer(self) -> RTCSessionDescription:
        await asyncio.sleep(0)
        return RTCSessionDescription(sdp=f"v=0 offer {id(self)}", type="offer")

    async def createAnswer(self) -> RTCSessionDescription:
        if self.remoteDescription is None:
            raise AssertionError("answer created without a remote offer")
        await asyncio.sleep(0)
        return RTCSessionDescription(sdp=f"v=0 answer {id(self)}", type="answer")

    async def setLocalDescription(self, desc: RTCSessionDescription) -> None:
        await asyncio.sleep(0)
        self.localDescription = desc

    async def setRemoteDescription(self, desc: RTCSessionDescription) -> None:
        if self.remoteDescription is not None:
            raise AssertionError("remote description set twice")
        await asyncio.sleep(0)
        self.remoteDescription = desc
        self.events.append(("remote", desc.type))

    async def addIceCandidate(self, candidate: Any) -> None:
        if self.remoteDescription is None:
            raise AssertionError("candidate applied before remote description")
        self.candidates.append(candidate)
        self.events.append(("candidate", candidate.port))

    async def close(self) -> None:
        self.close_calls += 1
        self.connectionState = "closed"

    async def fire(self, event: str, *args: Any) -> None:
        await self._handlers[event](*args)


class PeerConnectionFactory:
    def __init__(self) -> None:
        self.created: List[FakePeerConnection] = []

    def __call__(self) -> FakePeerConnection:
        pc = FakePeerConnection()
        self.created.append(pc)
        return pc

    @property
    def closed(self) -> List[FakePeerConnection]:
        return [pc for pc in self.created if pc.close_calls]


class FakeDevices(MediaDevices):
    def __init__(self, error: Optional[BaseException] = None) -> None:
        self.error = error
        self.opened: List[tuple] = []
        self.tracks: List[MediaStreamTrack] = []

    async def open(self, *, audio: bool, video: bool) -> Dict[str, MediaStreamTrack]:
        if self.error is not None:
            raise self.error
        self.opened.append((audio, video))
        tracks: Dict[str, MediaStreamTrack] = {}
        if audio:
            tracks["audio"] = AudioStreamTrack()
        if video:
            tracks["video"] = VideoStreamTrack()
        self.tracks.extend(tracks.values())
        return tracks


def make_candidate(port: int) -> Dict[str, Any]:
    return {
        "candidate": f"candidate:1 1 udp 2130706431 192.0.2.1 {port} typ host",
        "sdpMid": "0",
        "sdpMLineIndex": 0,
    }


@dataclass
class EventLog:
    events: List[CoordinatorEvent] = field(default_factory=list)
    lines: List[str] = field(default_factory=list)

    async def on_event(self, event: CoordinatorEvent) -> None:
        self.events.append(event)

    async def on_log(self, line: str) -> None:
        self.lines.append(line)

    def callbacks(self) -> CoordinatorCallbacks:
        return CoordinatorCallbacks(on_event=self.on_event, on_log=self.on_log)

    def names(self) -> List[str]:
        return [e.name for e in self.events]

    def named(self, name: str) -> List[CoordinatorEvent]:
        return [e for e in self.events if e.name == name]


@dataclass
class Participant:
    """Everything one client instance owns in a test."""

    user_id: str
    devices: FakeDevices
    media: MediaCaptureManager
    pcs: PeerConnectionFactory
    log: EventLog


@pytest.fixture
def pc_factory() -> PeerConnectionFactory:
    return PeerConnectionFactory()


@pytest.fixture
def devices() -> FakeDevices:
    return FakeDevices()


@pytest.fixture
def media(devices: FakeDevices) -> MediaCaptureManager:
    return MediaCaptureManager(devices)


@pytest.fixture
def fast_config() -> CoreConfig:
    return CoreConfig(ice_servers=[], answer_timeout_sec=0.05)


@pytest.fixture
def make_participant():
    def _make(user_id: str, error: Optional[BaseException] = None) -> Participant:
        devices = FakeDevices(error=error)
        return Participant(user_id, devices, MediaCaptureManager(devices), PeerConnectionFactory(), EventLog())

    return _make


@pytest.fixture
def settle():
    async def _settle(*coordinators, rounds: int = 10) -> None:
        for _ in range(rounds):
            for coordinator in coordinators:
                await coordinator.wait_idle()
            await asyncio.sleep(0)

    return _settle
