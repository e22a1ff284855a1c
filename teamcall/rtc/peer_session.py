"""One negotiated media connection to one remote participant.

Answering needs two things: the remote offer and local media. Under real
network timing the offer can arrive before the local side has finished
acquiring devices, so the two are tracked as independent triggers in an
`AnswerGate`; whichever fires second completes the handshake.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, List, Optional, Tuple

from aiortc import (
    MediaStreamTrack,
    RTCIceCandidate,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.rtcconfiguration import RTCConfiguration
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from ..errors import NegotiationInconsistency
from ..net.protocol import IceCandidateDict
from .media import CallType, LocalCapture


logger = logging.getLogger(__name__)


AsyncPeerCallback = Callable[..., Awaitable[None]]
PeerConnectionFactory = Callable[[], RTCPeerConnection]


def candidate_to_json(candidate: RTCIceCandidate) -> IceCandidateDict:
    return {
        "candidate": "candidate:" + candidate_to_sdp(candidate),
        "sdpMid": getattr(candidate, "sdpMid", None),
        "sdpMLineIndex": getattr(candidate, "sdpMLineIndex", None),
    }


def candidate_from_json(obj: Any) -> RTCIceCandidate:
    if not isinstance(obj, dict):
        raise ValueError("candidate is not an object")
    cand_sdp = obj.get("candidate")
    if not isinstance(cand_sdp, str) or not cand_sdp:
        raise ValueError("missing candidate")
    # Browsers send the full attribute value, aiortc parses what follows "candidate:".
    if cand_sdp.startswith("candidate:"):
        cand_sdp = cand_sdp[len("candidate:"):]
    # foundation component transport priority address port "typ" type
    if len(cand_sdp.split()) < 8:
        raise ValueError(f"truncated candidate: {cand_sdp!r}")
    try:
        cand = candidate_from_sdp(cand_sdp)
    except (IndexError, ValueError) as e:
        raise ValueError(f"unparsable candidate: {e}") from e
    cand.sdpMid = obj.get("sdpMid")
    cand.sdpMLineIndex = obj.get("sdpMLineIndex")
    return cand


class SessionState(str, Enum):
    IDLE = "idle"
    AWAITING_REMOTE = "awaiting-remote"
    HAVE_LOCAL_OFFER = "have-local-offer"
    HAVE_REMOTE_OFFER = "have-remote-offer"
    CONNECTED = "connected"
    ENDED = "ended"


class GateStage(Enum):
    WAITING = "waiting"
    OFFER_RECEIVED = "offer-received"
    MEDIA_READY = "media-ready"
    COMPLETE = "complete"


@dataclass
class AnswerGate:
    """Join of "offer received" and "local media ready"."""

    stage: GateStage = GateStage.WAITING
    offer: Optional[RTCSessionDescription] = None

    @property
    def has_offer(self) -> bool:
        return self.stage in (GateStage.OFFER_RECEIVED, GateStage.COMPLETE)

    def offer_received(self, offer: RTCSessionDescription) -> bool:
        """Record the offer; True if this completes the join."""
        self.offer = offer
        if self.stage is GateStage.MEDIA_READY:
            self.stage = GateStage.COMPLETE
            return True
        self.stage = GateStage.OFFER_RECEIVED
        return False

    def media_ready(self) -> bool:
        """Record local media; True if this completes the join."""
        if self.stage is GateStage.OFFER_RECEIVED:
            self.stage = GateStage.COMPLETE
            return True
        if self.stage is GateStage.WAITING:
            self.stage = GateStage.MEDIA_READY
        return False

    def take_offer(self) -> RTCSessionDescription:
        assert self.offer is not None
        offer, self.offer = self.offer, None
        return offer


@dataclass(eq=False)
class MediaStream:
    """Remote tracks received on one session."""

    id: str
    tracks: List[MediaStreamTrack] = field(default_factory=list)

    def add(self, track: MediaStreamTrack) -> None:
        self.tracks.append(track)

    def stop(self) -> None:
        for track in self.tracks:
            track.stop()
        self.tracks.clear()


@dataclass
class SessionCallbacks:
    on_log: Optional[AsyncPeerCallback] = None  # (msg: str)
    on_local_answer: Optional[AsyncPeerCallback] = None  # (peer_id: str, answer: RTCSessionDescription)
    on_local_candidate: Optional[AsyncPeerCallback] = None  # (peer_id: str, candidate: dict)
    on_connection_failure: Optional[AsyncPeerCallback] = None  # (peer_id: str, state: str)
    on_remote_track: Optional[AsyncPeerCallback] = None  # (peer_id: str, track: MediaStreamTrack)


class PeerSession:
    def __init__(
        self,
        participant_id: str,
        call_type: Optional[CallType] = None,
        *,
        callbacks: Optional[SessionCallbacks] = None,
        rtc_config: Optional[RTCConfiguration] = None,
        pc_factory: Optional[PeerConnectionFactory] = None,
    ):
        self.participant_id = participant_id
        self._call_type = call_type
        self._callbacks = callbacks or SessionCallbacks()
        if pc_factory is not None:
            self._pc = pc_factory()
        else:
            self._pc = RTCPeerConnection(configuration=rtc_config)

        self._state = SessionState.IDLE
        self._gate = AnswerGate()
        self._capture: Optional[LocalCapture] = None
        self._outbound: List[MediaStreamTrack] = []
        self._remote_stream: Optional[MediaStream] = MediaStream(id=participant_id)
        self._remote_description: Optional[RTCSessionDescription] = None
        self._pending_candidates: Deque[IceCandidateDict] = deque()
        self._offer_evt = asyncio.Event()
        self._lock = asyncio.Lock()

        @self._pc.on("icecandidate")
        async def on_icecandidate(event) -> None:
            candidate = getattr(event, "candidate", event)
            if candidate is None:
                return
            if self._callbacks.on_local_candidate:
                await self._callbacks.on_local_candidate(self.participant_id, candidate_to_json(candidate))

        @self._pc.on("connectionstatechange")
        async def on_connectionstatechange() -> None:
            state = self._pc.connectionState
            await self._log(f"pc[{self.participant_id}] connectionState={state}")
            if state in ("failed", "disconnected") and self._state is not SessionState.ENDED:
                if self._callbacks.on_connection_failure:
                    await self._callbacks.on_connection_failure(self.participant_id, state)

        @self._pc.on("track")
        async def on_track(track: MediaStreamTrack) -> None:
            if self._remote_stream is None:
                # Session already torn down.
                track.stop()
                return
            await self._log(f"pc[{self.participant_id}] remote track kind={track.kind}")
            self._remote_stream.add(track)
            if self._callbacks.on_remote_track:
                await self._callbacks.on_remote_track(self.participant_id, track)

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def call_type(self) -> Optional[CallType]:
        return self._call_type

    @property
    def ended(self) -> bool:
        return self._state is SessionState.ENDED

    @property
    def has_remote_description(self) -> bool:
        return self._remote_description is not None

    @property
    def remote_description(self) -> Optional[RTCSessionDescription]:
        return self._remote_description

    @property
    def received_offer(self) -> Optional[RTCSessionDescription]:
        """The remote offer, whether applied or still waiting for media."""
        remote = self._remote_description
        if remote is not None and remote.type == "offer":
            return remote
        return self._gate.offer

    @property
    def local_description(self) -> Optional[RTCSessionDescription]:
        return self._pc.localDescription

    @property
    def has_pending_offer(self) -> bool:
        return self._gate.stage is GateStage.OFFER_RECEIVED

    @property
    def local_tracks(self) -> list:
        """Capture tracks this session sends (shared with other sessions)."""
        return self._capture.tracks() if self._capture is not None else []

    @property
    def outbound_tracks(self) -> Tuple[MediaStreamTrack, ...]:
        return tuple(self._outbound)

    @property
    def remote_stream(self) -> Optional[MediaStream]:
        return self._remote_stream

    @property
    def pending_candidates(self) -> Tuple[IceCandidateDict, ...]:
        return tuple(self._pending_candidates)

    async def settled_state(self) -> SessionState:
        """State once any in-flight operation on this session has finished."""
        async with self._lock:
            return self._state

    def is_renegotiation(self, offer: RTCSessionDescription) -> bool:
        """A new offer on an already connected session (not a redelivery)."""
        if self._state is not SessionState.CONNECTED:
            return False
        return self._remote_description is None or self._remote_description.sdp != offer.sdp

    async def initiate(self, capture: LocalCapture) -> RTCSessionDescription:
        async with self._lock:
            if self._state is not SessionState.IDLE:
                raise RuntimeError(f"cannot initiate session with {self.participant_id} in state={self._state.value}")
            self._attach(capture)
            offer = await self._pc.createOffer()
            await self._pc.setLocalDescription(offer)
            self._state = SessionState.HAVE_LOCAL_OFFER
            await self._log(f"pc[{self.participant_id}] offer created")
            local = self._pc.localDescription
            assert local is not None
            return local

    async def receive_offer(self, offer: RTCSessionDescription) -> Optional[RTCSessionDescription]:
        """Handle an inbound offer.

        Returns the answer if local media was already attached, otherwise
        keeps the offer pending for `attach_and_answer`.
        """

        async with self._lock:
            if self._state in (SessionState.ENDED, SessionState.HAVE_LOCAL_OFFER, SessionState.CONNECTED):
                self._inconsistent("offer")
                return None
            completes = self._gate.offer_received(offer)
            self._offer_evt.set()
            if not completes:
                self._state = SessionState.HAVE_REMOTE_OFFER
                logger.debug("session offer pending peer=%s", self.participant_id)
                return None
            return await self._complete_answer()

    async def attach_and_answer(self, capture: LocalCapture) -> Optional[RTCSessionDescription]:
        """Attach local media; answer right away if an offer is already pending."""

        async with self._lock:
            if self._state not in (SessionState.IDLE, SessionState.HAVE_REMOTE_OFFER):
                logger.debug("session attach ignored peer=%s state=%s", self.participant_id, self._state.value)
                return None
            self._attach(capture)
            if not self._gate.media_ready():
                self._state = SessionState.AWAITING_REMOTE
                return None
            return await self._complete_answer()

    async def wait_for_offer(self, timeout: float) -> bool:
        """Wait up to `timeout` seconds for an offer. False on timeout or end."""
        if not self._gate.has_offer:
            try:
                await asyncio.wait_for(self._offer_evt.wait(), timeout)
            except asyncio.TimeoutError:
                return False
        return self._state is not SessionState.ENDED

    async def receive_answer(self, answer: RTCSessionDescription) -> bool:
        async with self._lock:
            if self._state is not SessionState.HAVE_LOCAL_OFFER:
                self._inconsistent("answer")
                return False
            await self._set_remote(answer)
            self._state = SessionState.CONNECTED
            await self._log(f"pc[{self.participant_id}] answer applied")
            return True

    async def receive_candidate(self, candidate: Any) -> bool:
        """Apply `candidate` now, or queue it until the remote description is set.

        Returns True only if it was applied.
        """

        async with self._lock:
            if self._state is SessionState.ENDED:
                self._inconsistent("ice-candidate")
                return False
            if not candidate or not isinstance(candidate, dict):
                logger.debug("session empty candidate peer=%s", self.participant_id)
                return False
            if self._remote_description is None:
                self._pending_candidates.append(candidate)
                logger.debug("session candidate queued peer=%s queued=%s", self.participant_id, len(self._pending_candidates))
                return False
            return await self._apply_candidate(candidate)

    async def end(self) -> bool:
        """Release everything this session owns. Idempotent; True on the first call."""

        async with self._lock:
            if self._state is SessionState.ENDED:
                return False
            for track in self._outbound:
                track.stop()
            self._outbound.clear()
            if self._remote_stream is not None:
                self._remote_stream.stop()
                self._remote_stream = None
            self._pending_candidates.clear()
            try:
                await self._pc.close()
            finally:
                self._capture = None
                self._state = SessionState.ENDED
                self._offer_evt.set()
            await self._log(f"pc[{self.participant_id}] ended")
            return True

    def _attach(self, capture: LocalCapture) -> None:
        if self._capture is not None:
            return
        if self._call_type is None:
            self._call_type = capture.call_type
        elif capture.call_type is not self._call_type:
            raise ValueError(
                f"{capture.call_type.value} capture cannot serve a {self._call_type.value} session"
            )
        for track in capture.tracks():
            proxy = capture.subscribe(track)
            self._pc.addTrack(proxy)
            self._outbound.append(proxy)
        self._capture = capture

    async def _complete_answer(self) -> RTCSessionDescription:
        await self._set_remote(self._gate.take_offer())
        answer = await self._pc.createAnswer()
        await self._pc.setLocalDescription(answer)
        local = self._pc.localDescription
        assert local is not None
        if self._callbacks.on_local_answer:
            await self._callbacks.on_local_answer(self.participant_id, local)
        self._state = SessionState.CONNECTED
        await self._log(f"pc[{self.participant_id}] answer sent")
        return local

    async def _set_remote(self, desc: RTCSessionDescription) -> None:
        if self._remote_description is not None:
            raise RuntimeError(f"remote description already set for {self.participant_id}")
        await self._pc.setRemoteDescription(desc)
        self._remote_description = desc
        while self._pending_candidates:
            await self._apply_candidate(self._pending_candidates.popleft())

    async def _apply_candidate(self, obj: IceCandidateDict) -> bool:
        try:
            cand = candidate_from_json(obj)
        except ValueError as e:
            logger.warning("session candidate dropped peer=%s error=%s", self.participant_id, e)
            return False
        await self._pc.addIceCandidate(cand)
        return True

    def _inconsistent(self, message_type: str) -> None:
        err = NegotiationInconsistency(self.participant_id, message_type, self._state.value)
        logger.warning("negotiation inconsistency: %s", err)

    async def _log(self, msg: str) -> None:
        logger.debug(msg)
        if self._callbacks.on_log:
            await self._callbacks.on_log(msg)
