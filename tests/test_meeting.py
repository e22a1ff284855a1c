import random

import httpx
import pytest

from teamcall.errors import DeviceError, DeviceErrorReason, TransportError
from teamcall.net import protocol
from teamcall.net.membership import MembershipClient
from teamcall.net.relay import InMemoryRelay
from teamcall.rtc import events
from teamcall.rtc.call import CallCoordinator
from teamcall.rtc.media import CallType
from teamcall.rtc.meeting import MeetingCoordinator
from teamcall.rtc.peer_session import SessionState

from conftest import make_candidate


MEETING = "standup"


@pytest.fixture
def relay():
    return InMemoryRelay()


@pytest.fixture
def build_meeting(relay, fast_config):
    def _build(participant, membership=None):
        return MeetingCoordinator(
            participant.user_id,
            relay.connect(participant.user_id).scope(),
            participant.media,
            config=fast_config,
            callbacks=participant.log.callbacks(),
            membership=membership,
            pc_factory=participant.pcs,
        )

    return _build


@pytest.mark.asyncio
async def test_three_party_join_and_leave(make_participant, build_meeting, settle) -> None:
    alice, bob, carol = (make_participant(n) for n in ("alice", "bob", "carol"))
    a, b, c = (build_meeting(p) for p in (alice, bob, carol))

    await a.join(MEETING)
    await settle(a)
    await b.join(MEETING)
    await settle(a, b)
    await c.join(MEETING)
    await settle(a, b, c)

    assert a.roster == {"bob", "carol"}
    assert b.roster == {"alice", "carol"}
    assert c.roster == {"alice", "bob"}
    for coordinator in (a, b, c):
        assert all(s.state is SessionState.CONNECTED for s in coordinator.sessions.values())

    # The smaller id offers.
    assert a.sessions["bob"].local_description.type == "offer"
    assert c.sessions["bob"].local_description.type == "answer"

    await b.leave()
    await settle(a, c)

    assert a.roster == {"carol"}
    assert set(a.sessions) == {"carol"}
    assert len(alice.pcs.created) == 2
    assert len(alice.pcs.closed) == 1
    assert alice.devices.opened == [(True, True)]
    assert alice.media.current is a.capture
    assert a.capture.all_live
    assert bob.media.current is None
    assert events.LEFT in bob.log.names()
    assert [e.participant_id for e in alice.log.named(events.PARTICIPANT_LEFT)] == ["bob"]

    await c.leave()
    await settle(a)
    assert a.roster == frozenset()
    assert a.capture.all_live

    await a.leave()
    assert alice.media.current is None
    assert all(t.readyState == "ended" for t in alice.devices.tracks)
    assert len(alice.pcs.closed) == 2


@pytest.mark.asyncio
async def test_mute_applies_to_every_session(make_participant, build_meeting, settle) -> None:
    alice, bob, carol = (make_participant(n) for n in ("alice", "bob", "carol"))
    a, b, c = (build_meeting(p) for p in (alice, bob, carol))
    for coordinator in (a, b, c):
        await coordinator.join(MEETING)
        await settle(a, b, c)

    assert a.toggle_mute() is False

    sessions = a.sessions.values()
    assert len(sessions) == 2
    for session in sessions:
        audio = session.local_tracks[0]
        assert audio.kind == "audio"
        assert audio.enabled is False
        assert audio.readyState == "live"
        assert all(t.readyState == "live" for t in session.outbound_tracks)

    assert a.toggle_video() is False
    assert a.capture.video_track.enabled is False
    assert a.capture.all_live


@pytest.mark.asyncio
async def test_roster_matches_sessions(relay, make_participant, build_meeting, settle) -> None:
    alice = make_participant("alice")
    a = build_meeting(alice)
    await a.join(MEETING)

    pool = ["aaron", "bob", "carol", "dave", "erin"]
    endpoints = {pid: relay.connect(pid) for pid in pool}
    expected = set()
    ended = []
    rng = random.Random(7)

    for _ in range(60):
        pid = rng.choice(pool)
        before = a.sessions.get(pid)
        if pid in expected:
            await endpoints[pid].send(protocol.MEETING_LEAVE, MEETING, {"meetingId": MEETING})
            expected.discard(pid)
            ended.append(before)
        else:
            await endpoints[pid].send(protocol.MEETING_JOIN, MEETING, {"meetingId": MEETING})
            expected.add(pid)
        await settle(a)

        assert set(a.roster) == expected
        assert set(a.sessions) == expected

    assert all(s is not None and s.ended for s in ended)
    assert all(not s.ended for s in a.sessions.values())
    assert alice.devices.opened == [(True, True)]


@pytest.mark.asyncio
async def test_sync_roster_reconciles(relay, make_participant, build_meeting, settle) -> None:
    alice = make_participant("alice")
    a = build_meeting(alice)
    await a.join(MEETING)

    a.sync_roster(["alice", "bob", "carol"])
    await settle(a)
    assert a.roster == {"bob", "carol"}

    a.sync_roster(["carol", "dave"])
    await settle(a)
    assert a.roster == {"carol", "dave"}
    assert set(a.sessions) == {"carol", "dave"}


@pytest.mark.asyncio
async def test_answerer_waits_for_offer(relay, make_participant, build_meeting, settle) -> None:
    bob = make_participant("bob")
    b = build_meeting(bob)
    await b.join(MEETING)
    aaron = relay.connect("aaron")

    await aaron.send(protocol.MEETING_JOIN, MEETING, {"meetingId": MEETING})
    await settle(b)

    session = b.sessions["aaron"]
    assert session.state is SessionState.AWAITING_REMOTE

    await aaron.send(
        protocol.OFFER,
        "bob",
        {"offer": {"sdp": "v=0 aaron", "type": "offer"}, "meetingId": MEETING},
    )
    await settle(b)

    assert session.state is SessionState.CONNECTED


@pytest.mark.asyncio
async def test_other_meeting_is_ignored(relay, make_participant, build_meeting, settle) -> None:
    alice = make_participant("alice")
    a = build_meeting(alice)
    await a.join(MEETING)

    await relay.connect("bob").send(protocol.MEETING_JOIN, MEETING, {"meetingId": "retro"})
    await settle(a)

    assert a.roster == frozenset()


@pytest.mark.asyncio
async def test_join_device_error(make_participant, build_meeting, relay) -> None:
    alice = make_participant("alice", error=DeviceError(DeviceErrorReason.PERMISSION_DENIED))
    a = build_meeting(alice)

    with pytest.raises(DeviceError):
        await a.join(MEETING)

    assert a.meeting_id is None
    assert alice.log.named(events.CALL_FAILED)[0].detail == {"meetingId": MEETING}
    assert relay.history == []


@pytest.mark.asyncio
async def test_membership_recorded(make_participant, build_meeting) -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.url.path, request.headers.get("authorization")))
        return httpx.Response(204)

    membership = MembershipClient(
        "http://api.test", token="secret", transport=httpx.MockTransport(handler)
    )
    a = build_meeting(make_participant("alice"), membership=membership)

    await a.join(MEETING)
    await a.drain()
    await a.leave()
    await a.drain()
    await membership.aclose()

    assert seen == [
        (f"/meetings/{MEETING}/join", "Bearer secret"),
        (f"/meetings/{MEETING}/leave", "Bearer secret"),
    ]


@pytest.mark.asyncio
async def test_call_and_meeting_share_connection(relay, make_participant, fast_config, settle) -> None:
    alice, bob = make_participant("alice"), make_participant("bob")
    conn = relay.connect("alice")
    media = alice.media

    meeting = MeetingCoordinator(
        "alice", conn.scope(), media, config=fast_config,
        callbacks=alice.log.callbacks(), pc_factory=alice.pcs,
    )
    call = CallCoordinator(
        "alice", conn.scope(), media, config=fast_config,
        callbacks=alice.log.callbacks(), pc_factory=alice.pcs,
    )
    call.start()
    b = MeetingCoordinator(
        "bob", relay.connect("bob").scope(), bob.media, config=fast_config,
        callbacks=bob.log.callbacks(), pc_factory=bob.pcs,
    )

    await meeting.join(MEETING)
    await b.join(MEETING)
    await settle(meeting, call, b)

    assert meeting.sessions["bob"].state is SessionState.CONNECTED
    assert call.session is None

    carol = relay.connect("carol")
    await carol.send(protocol.CALL_INITIATE, "alice", {"callType": "video"})
    await carol.send(protocol.OFFER, "alice", {"offer": {"sdp": "v=0 carol", "type": "offer"}})
    await settle(meeting, call)
    await call.answer_call("carol", CallType.VIDEO)

    assert call.capture is meeting.capture
    assert alice.devices.opened == [(True, True)]

    await call.end_call()
    assert meeting.capture.all_live
    assert "carol" not in meeting.roster

    await meeting.leave()
    assert media.current is None


@pytest.mark.asyncio
async def test_stale_signaling_from_departed_peer(relay, make_participant, build_meeting, settle) -> None:
    alice, bob = make_participant("alice"), make_participant("bob")
    a, b = build_meeting(alice), build_meeting(bob)
    await a.join(MEETING)
    await b.join(MEETING)
    await settle(a, b)
    assert a.roster == {"bob"}

    await b.leave()
    await settle(a)

    stale = relay.connect("bob")
    await stale.send(
        protocol.ICE_CANDIDATE,
        "alice",
        {"candidate": make_candidate(7001), "meetingId": MEETING},
    )
    await stale.send(
        protocol.OFFER,
        "alice",
        {"offer": {"sdp": "v=0 stale", "type": "offer"}, "meetingId": MEETING},
    )
    await settle(a)

    assert a.roster == frozenset()
    assert a.sessions == {}
    assert len(alice.pcs.created) == 1

    # Announcing again brings the participant back.
    await b.join(MEETING)
    await settle(a, b)
    assert a.roster == {"bob"}
    assert a.sessions["bob"].state is SessionState.CONNECTED


@pytest.mark.asyncio
async def test_candidate_from_unknown_peer_does_not_join(relay, make_participant, build_meeting, settle) -> None:
    alice = make_participant("alice")
    a = build_meeting(alice)
    await a.join(MEETING)

    await relay.connect("bob").send(
        protocol.ICE_CANDIDATE,
        "alice",
        {"candidate": make_candidate(7002), "meetingId": MEETING},
    )
    await settle(a)

    assert a.roster == frozenset()
    assert alice.pcs.created == []


@pytest.mark.asyncio
async def test_join_over_dead_connection_rolls_back(relay, make_participant, fast_config) -> None:
    alice = make_participant("alice")
    conn = relay.connect("alice")
    scope = conn.scope()
    conn.disconnect()
    a = MeetingCoordinator(
        "alice", scope, alice.media, config=fast_config,
        callbacks=alice.log.callbacks(), pc_factory=alice.pcs,
    )

    with pytest.raises(TransportError):
        await a.join(MEETING)

    assert a.meeting_id is None
    assert a.capture is None
    assert alice.media.current is None
    assert all(t.readyState == "ended" for t in alice.devices.tracks)
    assert not scope.handles(protocol.OFFER)
    assert relay.members(MEETING) == set()
    assert isinstance(alice.log.named(events.CALL_FAILED)[0].error, TransportError)

    # Not stuck half-joined: a retry fails the same way instead of "already in meeting".
    with pytest.raises(TransportError):
        await a.join(MEETING)
