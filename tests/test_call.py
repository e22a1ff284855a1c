import asyncio

import pytest

from teamcall.errors import DeviceError, DeviceErrorReason, SignalingTimeout
from teamcall.net import protocol
from teamcall.net.relay import InMemoryRelay
from teamcall.rtc import events
from teamcall.rtc.call import CallCoordinator
from teamcall.rtc.events import Severity
from teamcall.rtc.media import CallType
from teamcall.rtc.peer_session import SessionState

from conftest import make_candidate


@pytest.fixture
def relay():
    return InMemoryRelay()


@pytest.fixture
def call_pair(relay, make_participant, fast_config):
    def _build(alice_error=None):
        alice = make_participant("alice", error=alice_error)
        bob = make_participant("bob")
        coordinators = []
        for p in (alice, bob):
            c = CallCoordinator(
                p.user_id,
                relay.connect(p.user_id).scope(),
                p.media,
                config=fast_config,
                callbacks=p.log.callbacks(),
                pc_factory=p.pcs,
            )
            c.start()
            coordinators.append(c)
        return alice, bob, coordinators[0], coordinators[1]

    return _build


@pytest.mark.asyncio
async def test_video_call_connects(call_pair, relay, settle) -> None:
    alice, bob, a, b = call_pair()

    await a.initiate_call("bob", CallType.VIDEO)
    await settle(a, b)

    ringing = bob.log.named(events.INCOMING_CALL)
    assert len(ringing) == 1
    assert ringing[0].participant_id == "alice"
    assert ringing[0].detail == {"callType": "video", "busy": False}
    assert b.session is not None and b.session.has_pending_offer

    answer = await b.answer_call("alice", CallType.VIDEO)
    await settle(a, b)

    assert answer is not None
    assert a.session.state is SessionState.CONNECTED
    assert b.session.state is SessionState.CONNECTED
    assert events.ANSWERED in alice.log.names()

    sent = [(e.sender, e.event) for e in relay.history]
    assert sent[:2] == [("alice", protocol.CALL_INITIATE), ("alice", protocol.OFFER)]
    assert ("bob", protocol.ANSWER) in sent
    assert ("bob", protocol.CALL_ANSWER) in sent
    assert len(alice.pcs.created) == 1
    assert len(bob.pcs.created) == 1


@pytest.mark.asyncio
async def test_answer_before_offer_arrives(call_pair, settle) -> None:
    alice, bob, a, b = call_pair()

    answering = asyncio.create_task(b.answer_call("alice", CallType.AUDIO))
    await asyncio.sleep(0)
    await a.initiate_call("bob", CallType.AUDIO)
    answer = await answering
    await settle(a, b)

    assert answer is not None
    assert b.session.state is SessionState.CONNECTED
    assert a.session.state is SessionState.CONNECTED
    assert bob.devices.opened == [(True, False)]


@pytest.mark.asyncio
async def test_answer_times_out_without_offer(call_pair) -> None:
    alice, bob, a, b = call_pair()

    with pytest.raises(SignalingTimeout) as info:
        await b.answer_call("alice", CallType.VIDEO)

    assert info.value.participant_id == "alice"
    failed = bob.log.named(events.CALL_FAILED)
    assert len(failed) == 1
    assert failed[0].severity is Severity.ERROR
    assert isinstance(failed[0].error, SignalingTimeout)
    assert b.session is None
    assert not b.in_call
    assert bob.media.current is None
    assert all(t.readyState == "ended" for t in bob.devices.tracks)
    assert bob.pcs.created[0].close_calls == 1


@pytest.mark.asyncio
async def test_reject_tears_down_caller(call_pair, settle) -> None:
    alice, bob, a, b = call_pair()
    await a.initiate_call("bob", CallType.VIDEO)
    await settle(a, b)

    await b.reject_call("alice")
    await settle(a, b)

    assert events.REJECTED in alice.log.names()
    assert not a.in_call
    assert alice.media.current is None
    assert alice.pcs.created[0].close_calls == 1
    assert not b.in_call


@pytest.mark.asyncio
async def test_end_call_reaches_peer(call_pair, settle) -> None:
    alice, bob, a, b = call_pair()
    await a.initiate_call("bob", CallType.VIDEO)
    await settle(a, b)
    await b.answer_call("alice", CallType.VIDEO)
    await settle(a, b)

    await a.end_call()
    await settle(a, b)

    assert alice.log.named(events.ENDED)[0].detail == {"local": True}
    assert bob.log.named(events.ENDED)[0].detail == {"local": False}
    assert not a.in_call and not b.in_call
    assert [pc.close_calls for pc in alice.pcs.created + bob.pcs.created] == [1, 1]
    assert alice.media.current is None and bob.media.current is None


@pytest.mark.asyncio
async def test_mute_keeps_tracks_live(call_pair, settle) -> None:
    alice, bob, a, b = call_pair()
    await a.initiate_call("bob", CallType.VIDEO)
    await settle(a, b)

    assert a.toggle_mute() is False
    assert a.toggle_video() is False
    assert a.capture.audio_track.enabled is False
    assert a.capture.all_live
    assert all(t.readyState == "live" for t in a.session.outbound_tracks)
    assert a.toggle_mute() is True


@pytest.mark.asyncio
async def test_device_error_fails_call(call_pair, relay) -> None:
    alice, bob, a, b = call_pair(alice_error=DeviceError(DeviceErrorReason.NOT_FOUND, "video"))

    with pytest.raises(DeviceError):
        await a.initiate_call("bob", CallType.VIDEO)

    failed = alice.log.named(events.CALL_FAILED)
    assert len(failed) == 1
    assert failed[0].error.reason is DeviceErrorReason.NOT_FOUND
    assert not a.in_call
    assert relay.history == []


@pytest.mark.asyncio
async def test_busy_flag_for_second_caller(call_pair, relay, make_participant, settle) -> None:
    alice, bob, a, b = call_pair()
    await a.initiate_call("bob", CallType.AUDIO)
    await settle(a, b)

    carol = relay.connect("carol")
    await carol.send(protocol.CALL_INITIATE, "bob", {"callType": "audio"})
    await settle(b)

    second = bob.log.named(events.INCOMING_CALL)[-1]
    assert second.participant_id == "carol"
    assert second.detail["busy"] is True
    assert b.peer_id == "alice"


@pytest.mark.asyncio
async def test_meeting_payloads_are_ignored(call_pair, relay, settle) -> None:
    alice, bob, a, b = call_pair()
    carol = relay.connect("carol")

    await carol.send(protocol.OFFER, "bob", {"offer": {"sdp": "v=0 x", "type": "offer"}, "meetingId": "m1"})
    await settle(b)

    assert b.session is None
    assert not b.in_call


@pytest.mark.asyncio
async def test_renegotiation_replaces_session(call_pair, relay, settle) -> None:
    alice, bob, a, b = call_pair()
    await a.initiate_call("bob", CallType.AUDIO)
    await settle(a, b)
    await b.answer_call("alice", CallType.AUDIO)
    await settle(a, b)
    first = b.session

    raw = relay.connect("alice")
    await raw.send(protocol.OFFER, "bob", {"offer": {"sdp": "v=0 renegotiated", "type": "offer"}})
    await settle(a, b)

    assert b.session is not first
    assert first.ended
    assert b.session.state is SessionState.CONNECTED
    assert b.session.remote_description.sdp == "v=0 renegotiated"
    assert b.capture.all_live


@pytest.mark.asyncio
async def test_close_unregisters_handlers(call_pair, relay, settle) -> None:
    alice, bob, a, b = call_pair()
    await b.close()

    await a.initiate_call("bob", CallType.AUDIO)
    await settle(a, b)

    assert bob.log.named(events.INCOMING_CALL) == []


@pytest.mark.asyncio
async def test_late_signaling_after_end_is_dropped(call_pair, relay, settle) -> None:
    alice, bob, a, b = call_pair()
    await a.initiate_call("bob", CallType.AUDIO)
    await settle(a, b)
    await b.answer_call("alice", CallType.AUDIO)
    await settle(a, b)
    offer = next(e.payload for e in relay.history if e.event == protocol.OFFER)

    await a.end_call()
    await settle(a, b)

    stale = relay.connect("alice")
    await stale.send(protocol.ICE_CANDIDATE, "bob", {"candidate": make_candidate(5555)})
    await stale.send(protocol.OFFER, "bob", offer)
    await settle(b)

    assert not b.in_call
    assert b.session is None
    assert len(bob.pcs.created) == 1

    await b.initiate_call("alice", CallType.AUDIO)
    assert b.peer_id == "alice"


@pytest.mark.asyncio
async def test_candidate_from_ringing_caller_is_kept(call_pair, relay, settle) -> None:
    alice, bob, a, b = call_pair()
    carol = relay.connect("carol")

    await carol.send(protocol.ICE_CANDIDATE, "bob", {"candidate": make_candidate(6001)})
    await settle(b)
    assert b.session is None

    await carol.send(protocol.CALL_INITIATE, "bob", {"callType": "audio"})
    await carol.send(protocol.ICE_CANDIDATE, "bob", {"candidate": make_candidate(6002)})
    await settle(b)

    assert b.peer_id == "carol"
    assert [c["candidate"].split()[5] for c in b.session.pending_candidates] == ["6002"]
