"""One-to-one call coordinator."""

from __future__ import annotations

import functools
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple

from aiortc import MediaStreamTrack, RTCPeerConnection, RTCSessionDescription

from ..config import CoreConfig
from ..errors import ConnectionFailure, SignalingTimeout, TransportError
from ..net import protocol
from ..net.transport import SignalingTransport
from . import events
from .events import CoordinatorCallbacks, CoordinatorEvent, Severity
from .media import CallType, LocalCapture, MediaCaptureManager
from .peer_session import PeerSession, SessionCallbacks, SessionState
from .sequencer import KeyedSequencer


logger = logging.getLogger(__name__)


class CallCoordinator:
    """Drives a single call with one remote participant.

    Handlers are registered on `start()` and removed on `close()`; use a
    transport scope of your own (`transport.scope()`), never one shared with
    another coordinator. Mute/video toggles assume no other coordinator toggles
    the same capture at the same time.
    """

    def __init__(
        self,
        self_id: str,
        transport: SignalingTransport,
        media: MediaCaptureManager,
        *,
        config: Optional[CoreConfig] = None,
        callbacks: Optional[CoordinatorCallbacks] = None,
        pc_factory: Optional[Callable[[], RTCPeerConnection]] = None,
    ):
        self.self_id = self_id
        self._transport = transport
        self._media = media
        self._config = config or CoreConfig()
        self._callbacks = callbacks or CoordinatorCallbacks()
        self._pc_factory = pc_factory

        self._peer_id: Optional[str] = None
        self._session: Optional[PeerSession] = None
        self._capture: Optional[LocalCapture] = None
        self._ringing: Dict[str, CallType] = {}
        # (peer, offer sdp) of torn-down sessions, so redelivered offers stay dead.
        self._finished_offers: Set[Tuple[str, str]] = set()
        self._sequencer = KeyedSequencer("call")
        self._started = False

    @property
    def peer_id(self) -> Optional[str]:
        return self._peer_id

    @property
    def session(self) -> Optional[PeerSession]:
        return self._session

    @property
    def capture(self) -> Optional[LocalCapture]:
        return self._capture

    @property
    def in_call(self) -> bool:
        return self._peer_id is not None

    def _handlers(self) -> Dict[str, Callable[[Dict[str, Any]], Awaitable[None]]]:
        return {
            protocol.INCOMING_CALL: self._on_incoming_call,
            protocol.OFFER: self._on_offer,
            protocol.ANSWER: self._on_answer,
            protocol.ICE_CANDIDATE: self._on_ice,
            protocol.CALL_ANSWERED: self._on_call_answered,
            protocol.CALL_REJECTED: self._on_call_rejected,
            protocol.CALL_ENDED: self._on_call_ended,
        }

    def start(self) -> None:
        if self._started:
            return
        for event, handler in self._handlers().items():
            self._transport.on(event, handler)
        self._started = True
        logger.debug("call coordinator started self=%s", self.self_id)

    async def close(self) -> None:
        if self._peer_id is not None:
            await self.end_call()
        for event in self._handlers():
            self._transport.off(event)
        await self._sequencer.close()
        self._started = False

    async def wait_idle(self) -> None:
        await self._sequencer.wait_idle()

    async def initiate_call(
        self,
        target: str,
        call_type: CallType,
        meeting_id: Optional[str] = None,
    ) -> RTCSessionDescription:
        if self._peer_id is not None:
            raise RuntimeError(f"call with {self._peer_id} already in progress")
        self._peer_id = target
        logger.info("call initiate to=%s type=%s", target, call_type.value)
        try:
            capture = await self._acquire(call_type)
            session = self._ensure_session(target, call_type)
            offer = await session.initiate(capture)
            # Ring first so the callee can render before the offer lands.
            await self._transport.send(
                protocol.CALL_INITIATE,
                target,
                protocol.make_call_initiate(self.self_id, target, call_type.value, meeting_id),
            )
            await self._transport.send(protocol.OFFER, target, protocol.make_offer(self.self_id, target, offer))
        except Exception as e:
            await self._fail(target, e)
            raise
        await self._log(f"Calling {target} ({call_type.value})")
        return offer

    async def answer_call(self, target: str, call_type: CallType) -> Optional[RTCSessionDescription]:
        """Answer `target`'s call, waiting (bounded) for its offer.

        Returns the answer, or None if the call was ended while waiting.
        Raises SignalingTimeout if no offer shows up in time.
        """

        if self._peer_id is not None and self._peer_id != target:
            raise RuntimeError(f"call with {self._peer_id} already in progress")
        self._peer_id = target
        self._ringing.pop(target, None)
        timeout = self._config.answer_timeout_sec
        logger.info("call answer to=%s type=%s", target, call_type.value)
        try:
            capture = await self._acquire(call_type)
            session = self._ensure_session(target, call_type)
            await session.attach_and_answer(capture)
            if not await session.wait_for_offer(timeout):
                if session.ended:
                    return None
                raise SignalingTimeout(target, timeout)
            # The offer job may still be finishing the answer; wait for it.
            state = await session.settled_state()
            if state is SessionState.ENDED:
                return None
            answer = session.local_description
            if state is not SessionState.CONNECTED or answer is None:
                raise RuntimeError(f"answer to {target} not completed state={state.value}")
            await self._transport.send(
                protocol.CALL_ANSWER,
                target,
                protocol.make_answer(self.self_id, target, answer),
            )
        except Exception as e:
            await self._fail(target, e)
            raise
        await self._log(f"Answered {target}")
        return answer

    async def reject_call(self, target: str) -> None:
        self._ringing.pop(target, None)
        await self._send_quietly(protocol.CALL_REJECT, target, protocol.make_hangup(self.self_id, target))
        if self._peer_id == target:
            await self._teardown()
        await self._log(f"Rejected {target}")

    async def end_call(self) -> None:
        peer = self._peer_id
        if peer is None:
            return
        await self._send_quietly(protocol.CALL_END, peer, protocol.make_hangup(self.self_id, peer))
        await self._teardown()
        await self._emit(events.ENDED, peer, detail={"local": True})

    def toggle_mute(self) -> bool:
        """Flip the microphone; returns the new `enabled` value."""
        if self._capture is None:
            return False
        return self._capture.toggle_audio()

    def toggle_video(self) -> bool:
        if self._capture is None:
            return False
        return self._capture.toggle_video()

    # Inbound signaling. Payloads carrying a meetingId belong to a meeting
    # coordinator sharing the connection.

    def _route(self, payload: Dict[str, Any], handler) -> None:
        sender = protocol.sender_of(payload)
        if not sender or payload.get("meetingId") is not None:
            return
        self._sequencer.submit(sender, functools.partial(handler, sender, payload))

    async def _on_incoming_call(self, payload: Dict[str, Any]) -> None:
        self._route(payload, self._handle_incoming_call)

    async def _on_offer(self, payload: Dict[str, Any]) -> None:
        self._route(payload, self._handle_offer)

    async def _on_answer(self, payload: Dict[str, Any]) -> None:
        self._route(payload, self._handle_answer)

    async def _on_ice(self, payload: Dict[str, Any]) -> None:
        self._route(payload, self._handle_ice)

    async def _on_call_answered(self, payload: Dict[str, Any]) -> None:
        self._route(payload, self._handle_call_answered)

    async def _on_call_rejected(self, payload: Dict[str, Any]) -> None:
        self._route(payload, self._handle_call_rejected)

    async def _on_call_ended(self, payload: Dict[str, Any]) -> None:
        self._route(payload, self._handle_call_ended)

    async def _handle_incoming_call(self, sender: str, payload: Dict[str, Any]) -> None:
        try:
            call_type = CallType.parse(payload.get("callType", CallType.AUDIO.value))
        except ValueError:
            logger.warning("incoming call with bad type from=%s type=%r", sender, payload.get("callType"))
            return
        busy = self._peer_id is not None and self._peer_id != sender
        self._ringing[sender] = call_type
        logger.info("incoming call from=%s type=%s busy=%s", sender, call_type.value, busy)
        await self._emit(events.INCOMING_CALL, sender, detail={"callType": call_type.value, "busy": busy})

    async def _handle_offer(self, sender: str, payload: Dict[str, Any]) -> None:
        try:
            offer = protocol.description_from_json(payload.get("offer"), "offer")
        except protocol.ProtocolError as e:
            logger.warning("offer dropped from=%s error=%s", sender, e)
            return
        if self._peer_id is not None and self._peer_id != sender:
            logger.warning("offer from=%s ignored, in call with %s", sender, self._peer_id)
            return
        if (sender, offer.sdp) in self._finished_offers:
            logger.info("offer from=%s ignored, call already ended", sender)
            return

        session = self._session
        if session is not None and session.is_renegotiation(offer):
            logger.info("call replacing session peer=%s", sender)
            self._remember_offer(session)
            await session.end()
            self._session = None
            session = None
        if session is None:
            self._peer_id = sender
            session = self._ensure_session(sender, self._ringing.get(sender))
            if self._capture is not None:
                await session.attach_and_answer(self._capture)
        await session.receive_offer(offer)

    async def _handle_answer(self, sender: str, payload: Dict[str, Any]) -> None:
        session = self._session if self._peer_id == sender else None
        if session is None:
            logger.warning("answer from=%s without a session", sender)
            return
        try:
            answer = protocol.description_from_json(payload.get("answer"), "answer")
        except protocol.ProtocolError as e:
            logger.warning("answer dropped from=%s error=%s", sender, e)
            return
        await session.receive_answer(answer)

    async def _handle_ice(self, sender: str, payload: Dict[str, Any]) -> None:
        if self._peer_id is not None and self._peer_id != sender:
            logger.debug("ice from=%s ignored, in call with %s", sender, self._peer_id)
            return
        session = self._session
        if session is None:
            # Candidates can beat the offer, but only for a call that is ringing.
            if sender != self._peer_id and sender not in self._ringing:
                logger.info("ice from=%s dropped, no call with that peer", sender)
                return
            self._peer_id = sender
            session = self._ensure_session(sender, self._ringing.get(sender))
        await session.receive_candidate(payload.get("candidate"))

    async def _handle_call_answered(self, sender: str, payload: Dict[str, Any]) -> None:
        if sender != self._peer_id:
            return
        await self._emit(events.ANSWERED, sender)

    async def _handle_call_rejected(self, sender: str, payload: Dict[str, Any]) -> None:
        if sender != self._peer_id:
            return
        await self._teardown()
        await self._emit(events.REJECTED, sender)

    async def _handle_call_ended(self, sender: str, payload: Dict[str, Any]) -> None:
        was_ringing = self._ringing.pop(sender, None) is not None
        if sender == self._peer_id:
            await self._teardown()
        elif not was_ringing:
            return
        await self._emit(events.ENDED, sender, detail={"local": False})

    # Session plumbing

    def _ensure_session(self, peer_id: str, call_type: Optional[CallType]) -> PeerSession:
        if self._session is not None and self._session.participant_id == peer_id:
            return self._session
        cb = SessionCallbacks(
            on_log=self._log,
            on_local_answer=self._send_answer,
            on_local_candidate=self._send_candidate,
            on_connection_failure=self._on_connection_failure,
            on_remote_track=self._on_remote_track,
        )
        self._session = PeerSession(
            peer_id,
            call_type,
            callbacks=cb,
            rtc_config=self._config.rtc_configuration(),
            pc_factory=self._pc_factory,
        )
        logger.debug("call created session peer=%s", peer_id)
        return self._session

    async def _acquire(self, call_type: CallType) -> LocalCapture:
        if self._capture is not None and MediaCaptureManager.can_reuse(self._capture, call_type):
            return self._capture
        if self._capture is not None:
            self._media.release(self._capture, owner=self)
            self._capture = None
        self._capture = await self._media.acquire(call_type, owner=self)
        return self._capture

    async def _teardown(self) -> None:
        peer, session, capture = self._peer_id, self._session, self._capture
        self._peer_id = None
        self._session = None
        self._capture = None
        if peer is not None:
            await self._sequencer.discard(peer)
            self._ringing.pop(peer, None)
        if session is not None:
            self._remember_offer(session)
            await session.end()
        if capture is not None:
            self._media.release(capture, owner=self)

    def _remember_offer(self, session: PeerSession) -> None:
        offer = session.received_offer
        if offer is not None:
            self._finished_offers.add((session.participant_id, offer.sdp))

    async def _fail(self, peer_id: str, error: Exception) -> None:
        logger.warning("call failed peer=%s error=%s", peer_id, error)
        await self._teardown()
        await self._emit(events.CALL_FAILED, peer_id, severity=Severity.ERROR, error=error)

    async def _send_answer(self, peer_id: str, answer: RTCSessionDescription) -> None:
        await self._transport.send(protocol.ANSWER, peer_id, protocol.make_answer(self.self_id, peer_id, answer))

    async def _send_candidate(self, peer_id: str, candidate: protocol.IceCandidateDict) -> None:
        await self._transport.send(
            protocol.ICE_CANDIDATE, peer_id, protocol.make_ice(self.self_id, peer_id, candidate)
        )

    async def _send_quietly(self, event: str, target: str, payload: Dict[str, Any]) -> None:
        try:
            await self._transport.send(event, target, payload)
        except TransportError as e:
            logger.warning("call send failed event=%s to=%s error=%s", event, target, e)

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
