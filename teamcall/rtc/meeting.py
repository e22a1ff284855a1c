"""Meeting coordinator (mesh: one PeerSession per remote participant)."""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Iterable, Optional, Set

from aiortc import MediaStreamTrack, RTCPeerConnection, RTCSessionDescription

from ..config import CoreConfig
from ..errors import ConnectionFailure, DeviceError, TransportError
from ..net import protocol
from ..net.membership import MembershipClient
from ..net.transport import SignalingTransport
from . import events
from .events import CoordinatorCallbacks, CoordinatorEvent, Severity
from .media import CallType, LocalCapture, MediaCaptureManager
from .peer_session import PeerSession, SessionCallbacks
from .sequencer import KeyedSequencer


logger = logging.getLogger(__name__)


class MeetingCoordinator:
    """Keeps one PeerSession per roster member, all fed from one local capture.

    Mute/video toggles flip the shared capture, so every peer sees the change
    at once.
    """

    def __init__(
        self,
        self_id: str,
        transport: SignalingTransport,
        media: MediaCaptureManager,
        *,
        config: Optional[CoreConfig] = None,
        callbacks: Optional[CoordinatorCallbacks] = None,
        membership: Optional[MembershipClient] = None,
        pc_factory: Optional[Callable[[], RTCPeerConnection]] = None,
    ):
        self.self_id = self_id
        self._transport = transport
        self._media = media
        self._config = config or CoreConfig()
        self._callbacks = callbacks or CoordinatorCallbacks()
        self._membership = membership
        self._pc_factory = pc_factory

        self._meeting_id: Optional[str] = None
        self._roster: Set[str] = set()
        # Left the meeting; their negotiation traffic is stale until they announce again.
        self._departed: Set[str] = set()
        self._sessions: Dict[str, PeerSession] = {}
        self._capture: Optional[LocalCapture] = None
        self._sequencer = KeyedSequencer("meeting")
        self._background: Set[asyncio.Task[Any]] = set()

    @property
    def meeting_id(self) -> Optional[str]:
        return self._meeting_id

    @property
    def roster(self) -> FrozenSet[str]:
        return frozenset(self._roster)

    @property
    def sessions(self) -> Dict[str, PeerSession]:
        return dict(self._sessions)

    @property
    def capture(self) -> Optional[LocalCapture]:
        return self._capture

    def _handlers(self) -> Dict[str, Callable[[Dict[str, Any]], Awaitable[None]]]:
        return {
            protocol.MEETING_JOIN: self._on_meeting_join,
            protocol.MEETING_PRESENT: self._on_meeting_present,
            protocol.MEETING_LEAVE: self._on_meeting_leave,
            protocol.OFFER: self._on_offer,
            protocol.ANSWER: self._on_answer,
            protocol.ICE_CANDIDATE: self._on_ice,
        }

    async def join(self, meeting_id: str, call_type: CallType = CallType.VIDEO) -> None:
        if self._meeting_id is not None:
            raise RuntimeError(f"already in meeting {self._meeting_id}")
        logger.info("meeting join id=%s self=%s type=%s", meeting_id, self.self_id, call_type.value)
        try:
            self._capture = await self._media.acquire(call_type, owner=self)
        except DeviceError as e:
            logger.warning("meeting join failed id=%s error=%s", meeting_id, e)
            await self._emit(events.CALL_FAILED, None, severity=Severity.ERROR, detail={"meetingId": meeting_id}, error=e)
            raise

        self._meeting_id = meeting_id
        for event, handler in self._handlers().items():
            self._transport.on(event, handler)
        try:
            await self._transport.join_room(meeting_id)
            await self._transport.send(
                protocol.MEETING_JOIN,
                meeting_id,
                protocol.make_meeting_announce(self.self_id, meeting_id),
            )
        except TransportError as e:
            logger.warning("meeting join failed id=%s error=%s", meeting_id, e)
            await self._reset(meeting_id)
            await self._emit(events.CALL_FAILED, None, severity=Severity.ERROR, detail={"meetingId": meeting_id}, error=e)
            raise
        self._record_membership("join", meeting_id)
        await self._log(f"Joined meeting {meeting_id}")

    async def leave(self) -> None:
        meeting_id = self._meeting_id
        if meeting_id is None:
            return
        logger.info("meeting leave id=%s sessions=%s", meeting_id, len(self._sessions))
        await self._send_quietly(
            protocol.MEETING_LEAVE,
            meeting_id,
            protocol.make_meeting_announce(self.self_id, meeting_id),
        )

        await self._reset(meeting_id)
        self._record_membership("leave", meeting_id)
        await self._emit(events.LEFT, None, detail={"meetingId": meeting_id})
        await self._log(f"Left meeting {meeting_id}")

    async def _reset(self, meeting_id: str) -> None:
        """Drop every session, the capture, the room and the handlers."""
        await self._sequencer.close()
        for pid in sorted(self._sessions):
            await self._remove_participant(pid)
        self._roster.clear()
        self._departed.clear()

        capture, self._capture = self._capture, None
        if capture is not None:
            self._media.release(capture, owner=self)

        try:
            await self._transport.leave_room(meeting_id)
        except TransportError as e:
            logger.warning("meeting leave room failed id=%s error=%s", meeting_id, e)
        for event in self._handlers():
            self._transport.off(event)
        self._meeting_id = None

    def sync_roster(self, participant_ids: Iterable[str]) -> None:
        """Reconcile against a full roster snapshot."""
        wanted = set(participant_ids) - {self.self_id}
        for pid in sorted(self._roster - wanted):
            self._sequencer.submit(pid, functools.partial(self._remove_participant, pid))
        for pid in sorted(wanted - self._roster):
            self._sequencer.submit(pid, functools.partial(self._add_participant, pid, announced=True))

    def toggle_mute(self) -> bool:
        if self._capture is None:
            return False
        return self._capture.toggle_audio()

    def toggle_video(self) -> bool:
        if self._capture is None:
            return False
        return self._capture.toggle_video()

    async def wait_idle(self) -> None:
        await self._sequencer.wait_idle()

    async def drain(self) -> None:
        """Wait for queued signaling and pending membership updates."""
        await self.wait_idle()
        if self._background:
            await asyncio.gather(*list(self._background))

    # Inbound signaling

    def _route(self, payload: Dict[str, Any], handler) -> None:
        if self._meeting_id is None or payload.get("meetingId") != self._meeting_id:
            return
        sender = protocol.sender_of(payload)
        if not sender or sender == self.self_id:
            return
        self._sequencer.submit(sender, functools.partial(handler, sender, payload))

    async def _on_meeting_join(self, payload: Dict[str, Any]) -> None:
        self._route(payload, self._handle_meeting_join)

    async def _on_meeting_present(self, payload: Dict[str, Any]) -> None:
        self._route(payload, self._handle_meeting_present)

    async def _on_meeting_leave(self, payload: Dict[str, Any]) -> None:
        self._route(payload, self._handle_meeting_leave)

    async def _on_offer(self, payload: Dict[str, Any]) -> None:
        self._route(payload, self._handle_offer)

    async def _on_answer(self, payload: Dict[str, Any]) -> None:
        self._route(payload, self._handle_answer)

    async def _on_ice(self, payload: Dict[str, Any]) -> None:
        self._route(payload, self._handle_ice)

    async def _handle_meeting_join(self, sender: str, payload: Dict[str, Any]) -> None:
        await self._add_participant(sender, announced=True)
        if self._meeting_id is not None:
            await self._send_quietly(
                protocol.MEETING_PRESENT,
                sender,
                protocol.make_meeting_present(self.self_id, sender, self._meeting_id),
            )

    async def _handle_meeting_present(self, sender: str, payload: Dict[str, Any]) -> None:
        await self._add_participant(sender, announced=True)

    async def _handle_meeting_leave(self, sender: str, payload: Dict[str, Any]) -> None:
        await self._remove_participant(sender)

    async def _handle_offer(self, sender: str, payload: Dict[str, Any]) -> None:
        try:
            offer = protocol.description_from_json(payload.get("offer"), "offer")
        except protocol.ProtocolError as e:
            logger.warning("meeting offer dropped from=%s error=%s", sender, e)
            return
        # An offer proves presence even if the roster event is still in flight.
        await self._add_participant(sender)
        session = self._sessions.get(sender)
        if session is None:
            return
        if session.is_renegotiation(offer):
            logger.info("meeting replacing session peer=%s", sender)
            await session.end()
            session = self._create_session(sender)
            self._sessions[sender] = session
            if self._capture is not None:
                await session.attach_and_answer(self._capture)
        await session.receive_offer(offer)

    async def _handle_answer(self, sender: str, payload: Dict[str, Any]) -> None:
        session = self._sessions.get(sender)
        if session is None:
            logger.warning("meeting answer from=%s without a session", sender)
            return
        try:
            answer = protocol.description_from_json(payload.get("answer"), "answer")
        except protocol.ProtocolError as e:
            logger.warning("meeting answer dropped from=%s error=%s", sender, e)
            return
        await session.receive_answer(answer)

    async def _handle_ice(self, sender: str, payload: Dict[str, Any]) -> None:
        session = self._sessions.get(sender)
        if session is None:
            logger.debug("meeting ice from=%s dropped, not in roster", sender)
            return
        await session.receive_candidate(payload.get("candidate"))

    # Roster <-> sessions

    async def _add_participant(self, peer_id: str, *, announced: bool = False) -> None:
        if announced:
            self._departed.discard(peer_id)
        elif peer_id in self._departed:
            logger.info("meeting ignoring stale signaling from departed peer=%s", peer_id)
            return
        if peer_id == self.self_id or peer_id in self._roster:
            return
        capture = self._capture
        if capture is None or self._meeting_id is None:
            return
        self._roster.add(peer_id)
        session = self._create_session(peer_id)
        self._sessions[peer_id] = session
        logger.info("meeting participant joined peer=%s roster=%s", peer_id, len(self._roster))
        await self._emit(events.PARTICIPANT_JOINED, peer_id)

        # Offerer rule: lexicographically smaller participant id offers.
        if self.self_id < peer_id:
            offer = await session.initiate(capture)
            await self._send_quietly(
                protocol.OFFER,
                peer_id,
                protocol.make_offer(self.self_id, peer_id, offer, self._meeting_id),
            )
        else:
            await session.attach_and_answer(capture)

    async def _remove_participant(self, peer_id: str) -> None:
        self._roster.discard(peer_id)
        self._departed.add(peer_id)
        session = self._sessions.pop(peer_id, None)
        if session is None:
            return
        await self._sequencer.discard(peer_id)
        await session.end()
        logger.info("meeting participant left peer=%s roster=%s", peer_id, len(self._roster))
        await self._emit(events.PARTICIPANT_LEFT, peer_id)

    def _create_session(self, peer_id: str) -> PeerSession:
        cb = SessionCallbacks(
            on_log=self._log,
            on_local_answer=self._send_answer,
            on_local_candidate=self._send_candidate,
            on_connection_failure=self._on_connection_failure,
            on_remote_track=self._on_remote_track,
        )
        call_type = self._capture.call_type if self._capture is not None else None
        session = PeerSession(
            peer_id,
            call_type,
            callbacks=cb,
            rtc_config=self._config.rtc_configuration(),
            pc_factory=self._pc_factory,
        )
        logger.debug("meeting created session peer=%s", peer_id)
        return session

    async def _send_answer(self, peer_id: str, answer: RTCSessionDescription) -> None:
        await self._transport.send(
            protocol.ANSWER,
            peer_id,
            protocol.make_answer(self.self_id, peer_id, answer, self._meeting_id),
        )

    async def _send_candidate(self, peer_id: str, candidate: protocol.IceCandidateDict) -> None:
        await self._transport.send(
            protocol.ICE_CANDIDATE,
            peer_id,
            protocol.make_ice(self.self_id, peer_id, candidate, self._meeting_id),
        )

    async def _send_quietly(self, event: str, target: str, payload: Dict[str, Any]) -> None:
        try:
            await self._transport.send(event, target, payload)
        except TransportError as e:
            logger.warning("meeting send failed event=%s to=%s error=%s", event, target, e)

    def _record_membership(self, action: str, meeting_id: str) -> None:
        if self._membership is None:
            return
        if action == "join":
            coro = self._membership.join(meeting_id, self.self_id)
        else:
            coro = self._membership.leave(meeting_id, self.self_id)
        task = asyncio.create_task(coro, name=f"membership-{action}-{meeting_id}")
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _on_connection_failure(self, peer_id: str, state: str) -> None:
        await self._emit(
            events.CONNECTION_ERROR,
            peer_id,
            severity=Severity.WARNING,
            detail={"state": state},
            error=ConnectionFailure(peer_id, state),
        )

    async def _on_remote_track(self, peer_id: str, track: MediaStreamTrack) -> None:
        await self._emit(events.REMOTE_TRACK, peer_id, detail={"kind": track.kind, "track": track})

    async def _emit(
        self,
        name: str,
        participant_id: Optional[str],
        *,
        severity: Severity = Severity.INFO,
        detail: Optional[Dict[str, Any]] = None,
        error: Optional[BaseException] = None,
    ) -> None:
        if self._callbacks.on_event:
            await self._callbacks.on_event(
                CoordinatorEvent(name, participant_id, severity, detail or {}, error)
            )

    async def _log(self, message: str) -> None:
        if self._callbacks.on_log:
            await self._callbacks.on_log(message)
