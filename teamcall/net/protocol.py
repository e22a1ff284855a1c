"""Signaling protocol helpers.

The relay routes named events to a participant id or to a room id and
otherwise passes payloads through untouched. Payload keys follow the
browser client (camelCase, `from`/`to`).
"""

from __future__ import annotations

from typing import Any, Dict, Optional, TypedDict

from aiortc import RTCSessionDescription


# Outbound call events (the relay renames these for the callee)
CALL_INITIATE = "call-initiate"
CALL_ANSWER = "call-answer"
CALL_REJECT = "call-reject"
CALL_END = "call-end"

# Inbound call notifications
INCOMING_CALL = "incoming-call"
CALL_ANSWERED = "call-answered"
CALL_REJECTED = "call-rejected"
CALL_ENDED = "call-ended"

# Negotiation, both directions
OFFER = "offer"
ANSWER = "answer"
ICE_CANDIDATE = "ice-candidate"

# Meeting roster
MEETING_JOIN = "meeting-join"
MEETING_PRESENT = "meeting-present"
MEETING_LEAVE = "meeting-leave"

# Relay control
JOIN_ROOM = "join-room"
LEAVE_ROOM = "leave-room"

# How the relay renames call events on delivery.
RELAY_RENAMES = {
	CALL_INITIATE: INCOMING_CALL,
	CALL_ANSWER: CALL_ANSWERED,
	CALL_REJECT: CALL_REJECTED,
	CALL_END: CALL_ENDED,
}


class SessionDescriptionDict(TypedDict):
	sdp: str
	type: str


class IceCandidateDict(TypedDict, total=False):
	candidate: str
	sdpMid: Optional[str]
	sdpMLineIndex: Optional[int]


def description_to_json(desc: RTCSessionDescription) -> SessionDescriptionDict:
	return {"sdp": desc.sdp, "type": desc.type}


def description_from_json(obj: Any, expected_type: str) -> RTCSessionDescription:
	if not isinstance(obj, dict):
		raise ProtocolError(f"{expected_type} is not an object")
	sdp = obj.get("sdp")
	if not isinstance(sdp, str) or not sdp:
		raise ProtocolError(f"{expected_type} has no sdp")
	dtype = obj.get("type", expected_type)
	if dtype != expected_type:
		raise ProtocolError(f"expected {expected_type}, got {dtype}")
	return RTCSessionDescription(sdp=sdp, type=dtype)


def _with_meeting(payload: Dict[str, Any], meeting_id: Optional[str]) -> Dict[str, Any]:
	if meeting_id is not None:
		payload["meetingId"] = meeting_id
	return payload


def make_call_initiate(from_id: str, to_id: str, call_type: str, meeting_id: Optional[str] = None) -> Dict[str, Any]:
	return _with_meeting({"from": from_id, "to": to_id, "callType": call_type}, meeting_id)


def make_offer(from_id: str, to_id: str, offer: RTCSessionDescription, meeting_id: Optional[str] = None) -> Dict[str, Any]:
	return _with_meeting({"from": from_id, "to": to_id, "offer": description_to_json(offer)}, meeting_id)


def make_answer(from_id: str, to_id: str, answer: RTCSessionDescription, meeting_id: Optional[str] = None) -> Dict[str, Any]:
	return _with_meeting({"from": from_id, "to": to_id, "answer": description_to_json(answer)}, meeting_id)


def make_ice(from_id: str, to_id: str, candidate: IceCandidateDict, meeting_id: Optional[str] = None) -> Dict[str, Any]:
	return _with_meeting({"from": from_id, "to": to_id, "candidate": dict(candidate)}, meeting_id)


def make_hangup(from_id: str, to_id: str) -> Dict[str, Any]:
	return {"from": from_id, "to": to_id}


def make_meeting_announce(from_id: str, meeting_id: str) -> Dict[str, Any]:
	return {"from": from_id, "meetingId": meeting_id}


def make_meeting_present(from_id: str, to_id: str, meeting_id: str) -> Dict[str, Any]:
	return {"from": from_id, "to": to_id, "meetingId": meeting_id}


def sender_of(payload: Dict[str, Any]) -> str:
	return str(payload.get("from", "") or "")


class ProtocolError(ValueError):
	pass
