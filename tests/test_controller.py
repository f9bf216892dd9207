import asyncio

import pytest
from aiortc import VideoStreamTrack

from fakes import CountingCapture, FakeChannel, FakeRelay, LinkFactory, settle
from rtcall_comms.controller import SessionController
from rtcall_comms.errors import DeviceUnavailable, PermissionDenied, ChannelConnectFailure
from rtcall_comms.types import CallState, ChannelState, IceCandidate, PendingJoin

ROOM = "room_abc"
OFFER_SDP = {"type": "offer", "sdp": "v=0\r\nremote-offer\r\n"}
ANSWER_SDP = {"type": "answer", "sdp": "v=0\r\nremote-answer\r\n"}


def build(user_id="user_1", state=ChannelState.CONNECTED, capture=None, factory=None):
    channel = FakeChannel(state)
    capture = capture or CountingCapture()
    factory = factory or LinkFactory()
    controller = SessionController(ROOM, user_id, channel, capture, peer_link_factory=factory)
    return controller, channel, capture, factory


async def joined(user_id="user_1", **kwargs):
    controller, channel, capture, factory = build(user_id, **kwargs)
    await controller.start_call()
    await settle()
    assert controller.call_state is CallState.AWAITING_PEER
    return controller, channel, capture, factory


@pytest.mark.asyncio
async def test_start_call_joins_room_when_relay_is_up():
    controller, channel, capture, _ = build()
    try:
        await controller.start_call()
        await settle()
        assert channel.events("join-room") == [{"roomId": ROOM, "userId": "user_1"}]
        assert controller.call_state is CallState.AWAITING_PEER
        assert controller.session.pending_join is None
        assert controller.local_tracks is capture.tracks
    finally:
        await controller.close()


@pytest.mark.asyncio
async def test_join_is_queued_until_relay_connects():
    controller, channel, capture, _ = build(state=ChannelState.DISCONNECTED)
    try:
        await controller.start_call()
        await settle()
        assert channel.connect_requests == 1
        assert channel.state is ChannelState.CONNECTING
        assert channel.events("join-room") == []
        assert controller.call_state is CallState.JOINING_CHANNEL
        assert controller.session.pending_join == PendingJoin(ROOM, "user_1")

        # A second start before the flush replaces the queued join.
        await controller.start_call()
        assert capture.opens == 1

        channel.set_state(ChannelState.CONNECTED)
        await settle()
        assert channel.events("join-room") == [{"roomId": ROOM, "userId": "user_1"}]
        assert controller.session.pending_join is None
        assert controller.call_state is CallState.AWAITING_PEER
        assert controller.snapshot.connected is True
    finally:
        await controller.close()


@pytest.mark.asyncio
async def test_media_is_acquired_once_per_session():
    controller, _, capture, _ = build(state=ChannelState.DISCONNECTED)
    try:
        await controller.start_call()
        first = controller.local_tracks
        assert await capture.acquire() is first
        assert await capture.acquire() is first
        assert capture.opens == 1
    finally:
        await controller.close()


@pytest.mark.asyncio
async def test_capture_denied_fails_without_joining():
    capture = CountingCapture(error=PermissionDenied("camera blocked"))
    controller, channel, _, _ = build(state=ChannelState.CONNECTING, capture=capture)
    try:
        await controller.start_call()
        assert controller.call_state is CallState.FAILED
        assert controller.snapshot.failure == "capture_failed"

        channel.set_state(ChannelState.CONNECTED)
        await settle()
        assert channel.events("join-room") == []
        assert controller.call_state is CallState.FAILED
    finally:
        await controller.close()


@pytest.mark.asyncio
async def test_capture_can_be_retried_after_failure():
    capture = CountingCapture(error=DeviceUnavailable("no camera"))
    controller, channel, _, _ = build(capture=capture)
    try:
        await controller.start_call()
        assert controller.call_state is CallState.FAILED

        capture.error = None
        await controller.start_call()
        await settle()
        assert controller.call_state is CallState.AWAITING_PEER
        assert capture.opens == 2
        assert len(channel.events("join-room")) == 1
    finally:
        await controller.close()


@pytest.mark.asyncio
async def test_relay_exhaustion_fails_the_call_and_releases_media():
    controller, channel, capture, _ = build(state=ChannelState.DISCONNECTED)
    try:
        await controller.start_call()
        tracks = controller.local_tracks
        channel.set_state(ChannelState.FAILED, ChannelConnectFailure(5))
        await settle()
        assert controller.call_state is CallState.FAILED
        assert controller.snapshot.failure == "connection_failed"
        assert controller.session.pending_join is None
        assert controller.local_tracks is None
        assert all(t.readyState == "ended" for t in tracks.all())
    finally:
        await controller.close()


@pytest.mark.asyncio
async def test_stray_answer_is_discarded():
    controller, channel, _, factory = await joined()
    try:
        await channel.deliver("answer", {"answer": ANSWER_SDP, "from": "user_2"})
        assert factory.links == []
        assert controller.call_state is CallState.AWAITING_PEER
        assert controller.remote_user_id is None
    finally:
        await controller.close()


@pytest.mark.asyncio
async def test_answer_without_outstanding_offer_leaves_link_untouched():
    controller, channel, _, factory = await joined(user_id="user_2")
    try:
        await channel.deliver("room-users", {"users": ["user_1", "user_2"]})
        assert controller.call_state is CallState.NEGOTIATING
        await channel.deliver("answer", {"answer": ANSWER_SDP, "from": "user_1"})
        assert factory.links[0].remote == []
        assert controller.call_state is CallState.NEGOTIATING
    finally:
        await controller.close()


@pytest.mark.asyncio
async def test_incumbent_offers_to_new_participant():
    controller, channel, _, factory = await joined()
    try:
        await channel.deliver("user-connected", {"userId": "user_2"})
        assert controller.remote_user_id == "user_2"
        assert controller.call_state is CallState.NEGOTIATING
        assert len(factory.links) == 1
        link = factory.links[0]
        assert link.tracks is controller.local_tracks

        offers = channel.events("offer")
        assert len(offers) == 1
        assert offers[0]["to"] == "user_2"
        assert offers[0]["from"] == "user_1"
        assert offers[0]["roomId"] == ROOM
        assert offers[0]["offer"]["type"] == "offer"

        await channel.deliver("answer", {"answer": ANSWER_SDP, "from": "user_2"})
        assert link.remote == [ANSWER_SDP]
        assert controller.call_state is CallState.CONNECTED

        # A duplicated answer is absorbed.
        await channel.deliver("answer", {"answer": ANSWER_SDP, "from": "user_2"})
        assert link.remote == [ANSWER_SDP]
        assert controller.call_state is CallState.CONNECTED
    finally:
        await controller.close()


@pytest.mark.asyncio
async def test_newcomer_answers_offer_with_prepared_link():
    controller, channel, _, factory = await joined(user_id="user_2")
    try:
        await channel.deliver("room-users", {"users": ["user_1", "user_2"]})
        assert controller.remote_user_id == "user_1"
        assert len(factory.links) == 1
        assert channel.events("offer") == []

        await channel.deliver("offer", {"offer": OFFER_SDP, "from": "user_1", "roomId": ROOM})
        assert len(factory.links) == 1
        assert factory.links[0].remote == [OFFER_SDP]
        answers = channel.events("answer")
        assert len(answers) == 1
        assert answers[0]["to"] == "user_1"
        assert answers[0]["from"] == "user_2"
        assert answers[0]["roomId"] == ROOM
        assert answers[0]["answer"]["type"] == "answer"
        assert controller.call_state is CallState.CONNECTED
    finally:
        await controller.close()


@pytest.mark.asyncio
async def test_peer_present_and_offer_events_share_one_link():
    controller, channel, _, factory = await joined()
    try:
        await channel.deliver("user-connected", {"userId": "user_2"})
        await channel.deliver("user-connected", {"userId": "user_2"})
        await channel.deliver("room-users", {"users": ["user_1", "user_2"]})
        await channel.deliver("offer", {"offer": OFFER_SDP, "from": "user_2", "roomId": ROOM})
        await channel.deliver("offer", {"offer": OFFER_SDP, "from": "user_2", "roomId": ROOM})
        assert len(factory.links) == 1
        assert len(channel.events("offer")) == 1
    finally:
        await controller.close()


@pytest.mark.asyncio
async def test_offer_from_third_participant_is_rejected():
    controller, channel, _, factory = await joined()
    try:
        await channel.deliver("user-connected", {"userId": "user_2"})
        await channel.deliver("offer", {"offer": OFFER_SDP, "from": "user_3", "roomId": ROOM})
        assert controller.remote_user_id == "user_2"
        assert channel.events("answer") == []
        assert factory.links[0].remote == []
    finally:
        await controller.close()


@pytest.mark.asyncio
async def test_self_echo_causes_no_transition():
    controller, channel, _, factory = await joined()
    seen = []
    controller.add_listener(seen.append)
    try:
        await channel.deliver("user-connected", {"userId": "user_1"})
        await channel.deliver("room-users", {"users": ["user_1"]})
        await channel.deliver("offer", {"offer": OFFER_SDP, "from": "user_1", "roomId": ROOM})
        await channel.deliver("ice-candidate", {"candidate": {"candidate": "candidate:1"}, "from": "user_1"})
        await channel.deliver("user-disconnected", {"userId": "user_1"})
        assert seen == []
        assert factory.links == []
        assert controller.call_state is CallState.AWAITING_PEER
        assert controller.remote_user_id is None
    finally:
        await controller.close()


@pytest.mark.asyncio
async def test_departure_of_remote_tears_down():
    controller, channel, capture, factory = await joined()
    try:
        await channel.deliver("user-connected", {"userId": "user_2"})
        await channel.deliver("answer", {"answer": ANSWER_SDP, "from": "user_2"})
        assert controller.call_state is CallState.CONNECTED
        tracks = controller.local_tracks

        await channel.deliver("user-disconnected", {"userId": "user_3"})
        assert controller.call_state is CallState.CONNECTED

        await channel.deliver("user-disconnected", {"userId": "user_2"})
        assert controller.call_state is CallState.DISCONNECTED
        assert controller.remote_user_id is None
        assert controller.session.peer_link is None
        assert factory.links[0].close_calls == 1
        assert all(t.readyState == "ended" for t in tracks.all())
        assert capture.tracks is None
    finally:
        await controller.close()


@pytest.mark.asyncio
async def test_end_call_twice_is_same_as_once():
    controller, channel, _, factory = await joined()
    await channel.deliver("user-connected", {"userId": "user_2"})

    await controller.end_call()
    sent_after_first = list(channel.sent)
    snapshot_after_first = controller.snapshot
    await controller.end_call()

    assert channel.sent == sent_after_first
    assert controller.snapshot == snapshot_after_first
    assert factory.links[0].close_calls == 1
    assert channel.events("leave-room") == [{"roomId": ROOM, "userId": "user_1"}]
    assert channel.events("end-call") == [{"roomId": ROOM, "userId": "user_1"}]
    assert controller.call_state is CallState.DISCONNECTED
    await controller.close()


@pytest.mark.asyncio
async def test_end_call_when_idle_is_a_no_op():
    controller, channel, _, _ = build()
    await controller.end_call()
    assert controller.call_state is CallState.IDLE
    assert channel.sent == []
    await controller.close()


@pytest.mark.asyncio
async def test_media_arriving_after_teardown_is_released():
    gate = asyncio.Event()
    capture = CountingCapture(gate=gate)
    controller, channel, _, _ = build(capture=capture)
    try:
        start = asyncio.create_task(controller.start_call())
        await settle()
        assert controller.call_state is CallState.JOINING_CHANNEL

        await controller.end_call()
        gate.set()
        await start

        assert controller.call_state is CallState.DISCONNECTED
        assert controller.local_tracks is None
        assert channel.events("join-room") == []
        assert all(t.readyState == "ended" for t in capture.handed_out[0].all())
    finally:
        await controller.close()


@pytest.mark.asyncio
async def test_local_candidates_go_to_remote_only():
    controller, channel, _, factory = await joined()
    try:
        await channel.deliver("user-connected", {"userId": "user_2"})
        link = factory.links[0]
        link.on_ice_candidate(IceCandidate("candidate:1 1 udp 1 10.0.0.1 5000 typ host", "0", 0))
        await settle()
        sent = channel.events("ice-candidate")
        assert len(sent) == 1
        assert sent[0]["to"] == "user_2"
        assert sent[0]["from"] == "user_1"
        assert sent[0]["candidate"]["sdpMid"] == "0"

        # After teardown the old link has no remote to address.
        await controller.end_call()
        link.on_ice_candidate(IceCandidate("candidate:2 1 udp 1 10.0.0.1 5001 typ host", "0", 0))
        await settle()
        assert len(channel.events("ice-candidate")) == 1
    finally:
        await controller.close()


@pytest.mark.asyncio
async def test_inbound_candidates_need_a_link():
    controller, channel, _, factory = await joined()
    try:
        candidate = {"candidate": "candidate:1 1 udp 1 10.0.0.1 5000 typ host", "sdpMid": "0", "sdpMLineIndex": 0}
        await channel.deliver("ice-candidate", {"candidate": candidate, "from": "user_2"})
        assert factory.links == []
        assert controller.call_state is CallState.AWAITING_PEER

        await channel.deliver("user-connected", {"userId": "user_2"})
        await channel.deliver("ice-candidate", {"candidate": candidate, "from": "user_2"})
        applied = factory.links[0].candidates
        assert len(applied) == 1
        assert applied[0].sdp_mid == "0"
        assert applied[0].sdp_mline_index == 0
    finally:
        await controller.close()


@pytest.mark.asyncio
async def test_rejected_offer_fails_negotiation():
    controller, channel, _, factory = await joined(factory=LinkFactory(fail_remote=True))
    try:
        await channel.deliver("offer", {"offer": OFFER_SDP, "from": "user_2", "roomId": ROOM})
        assert controller.call_state is CallState.FAILED
        assert controller.snapshot.failure == "negotiation_failed"
        assert channel.events("answer") == []
        await settle()
        assert factory.links[0].close_calls == 1
    finally:
        await controller.close()


@pytest.mark.asyncio
async def test_malformed_offer_is_discarded():
    controller, channel, _, factory = await joined()
    try:
        await channel.deliver("offer", {"offer": {"type": "offer"}, "from": "user_2", "roomId": ROOM})
        assert factory.links == []
        assert controller.remote_user_id is None
        assert controller.call_state is CallState.AWAITING_PEER
    finally:
        await controller.close()


@pytest.mark.asyncio
async def test_transport_failure_fails_the_call():
    controller, channel, _, factory = await joined()
    try:
        await channel.deliver("user-connected", {"userId": "user_2"})
        factory.links[0].set_connection_state("failed")
        await settle()
        assert controller.call_state is CallState.FAILED
        assert controller.snapshot.failure == "negotiation_failed"
        assert factory.links[0].close_calls == 1
    finally:
        await controller.close()


@pytest.mark.asyncio
async def test_relay_reconnect_rejoins_room():
    controller, channel, _, _ = await joined()
    try:
        channel.set_state(ChannelState.DISCONNECTED)
        assert controller.snapshot.connected is False
        assert controller.session.pending_join == PendingJoin(ROOM, "user_1")

        channel.set_state(ChannelState.CONNECTED)
        await settle()
        assert len(channel.events("join-room")) == 2
        assert controller.session.pending_join is None
        assert controller.call_state is CallState.AWAITING_PEER
    finally:
        await controller.close()


@pytest.mark.asyncio
async def test_change_room_starts_a_fresh_session():
    controller, channel, _, factory = await joined()
    try:
        await channel.deliver("user-connected", {"userId": "user_2"})
        await controller.change_room("room_xyz")
        assert factory.links[0].close_calls == 1
        assert controller.session.room_id == "room_xyz"
        assert controller.call_state is CallState.IDLE
        assert controller.remote_user_id is None

        await controller.start_call()
        await settle()
        assert channel.events("join-room")[-1] == {"roomId": "room_xyz", "userId": "user_1"}
    finally:
        await controller.close()


@pytest.mark.asyncio
async def test_listeners_see_each_transition():
    controller, channel, _, _ = build(state=ChannelState.DISCONNECTED)
    states = []
    controller.add_listener(lambda snap: states.append(snap.call_state))
    try:
        await controller.start_call()
        channel.set_state(ChannelState.CONNECTED)
        await settle()
        assert CallState.JOINING_CHANNEL in states
        assert states[-1] is CallState.AWAITING_PEER
    finally:
        await controller.close()


@pytest.mark.asyncio
async def test_close_releases_everything():
    controller, channel, capture, factory = await joined()
    await channel.deliver("user-connected", {"userId": "user_2"})
    async with controller:
        pass
    assert channel.closed
    assert factory.links[0].close_calls == 1
    assert capture.tracks is None
    await controller.start_call()
    assert controller.call_state is CallState.DISCONNECTED


@pytest.mark.asyncio
async def test_two_participants_reach_connected():
    relay = FakeRelay()
    ch1, ch2 = relay.channel(), relay.channel()
    ch1.state = ch2.state = ChannelState.CONNECTED
    f1, f2 = LinkFactory(), LinkFactory()
    c1 = SessionController(ROOM, "user_1", ch1, CountingCapture(), peer_link_factory=f1)
    c2 = SessionController(ROOM, "user_2", ch2, CountingCapture(), peer_link_factory=f2)
    try:
        await c1.start_call()
        await settle()
        await c2.start_call()

        assert await c1.wait_for_state(CallState.CONNECTED, timeout=5)
        assert await c2.wait_for_state(CallState.CONNECTED, timeout=5)
        assert c1.remote_user_id == "user_2"
        assert c2.remote_user_id == "user_1"
        assert len(f1.links) == 1 and len(f2.links) == 1
        assert len(ch1.events("offer")) == 1
        assert ch2.events("offer") == []

        await c2.end_call()
        assert await c1.wait_for_state(CallState.DISCONNECTED, timeout=5)
        assert c1.remote_user_id is None
    finally:
        await c1.close()
        await c2.close()


@pytest.mark.asyncio
async def test_roster_side_never_offers_when_peer_rejoins():
    controller, channel, _, factory = await joined(user_id="user_2")
    try:
        await channel.deliver("room-users", {"users": ["user_1", "user_2"]})
        # user_1 lost its relay connection and joined again.
        await channel.deliver("user-connected", {"userId": "user_1"})
        assert channel.events("offer") == []
        assert len(factory.links) == 1
        assert controller.call_state is CallState.NEGOTIATING

        await channel.deliver("offer", {"offer": OFFER_SDP, "from": "user_1", "roomId": ROOM})
        assert len(channel.events("answer")) == 1
        assert controller.call_state is CallState.CONNECTED
    finally:
        await controller.close()


@pytest.mark.asyncio
async def test_no_peer_link_without_a_started_call():
    controller, channel, _, factory = build()
    try:
        controller.session.call_state = CallState.AWAITING_PEER
        await controller.handle_event({"event": "user-connected", "payload": {"userId": "user_2"}})
        assert factory.links == []
        assert controller.remote_user_id is None
        assert channel.events("offer") == []
    finally:
        await controller.close()


@pytest.mark.asyncio
async def test_end_call_after_departure_leaves_the_room():
    controller, channel, _, _ = await joined()
    try:
        await channel.deliver("user-connected", {"userId": "user_2"})
        await channel.deliver("user-disconnected", {"userId": "user_2"})
        assert controller.call_state is CallState.DISCONNECTED
        assert channel.events("leave-room") == []

        await controller.end_call()
        await controller.end_call()
        assert channel.events("leave-room") == [{"roomId": ROOM, "userId": "user_1"}]
        assert channel.events("end-call") == [{"roomId": ROOM, "userId": "user_1"}]
    finally:
        await controller.close()


@pytest.mark.asyncio
async def test_end_call_after_relay_drop_sends_nothing():
    controller, channel, _, _ = await joined()
    try:
        channel.set_state(ChannelState.DISCONNECTED)
        channel.set_state(ChannelState.CONNECTED)
        channel.sent.clear()
        # The relay forgot us; the re-join flush is still in flight.
        await controller.end_call()
        assert channel.events("leave-room") == []
    finally:
        await controller.close()


@pytest.mark.asyncio
async def test_wait_for_state_follows_notifications():
    controller, channel, _, _ = build(state=ChannelState.DISCONNECTED)
    try:
        assert await controller.wait_for_state(CallState.IDLE, timeout=0.01)
        assert await controller.wait_for_state(CallState.CONNECTED, timeout=0.01) is False

        waiter = asyncio.create_task(controller.wait_for_state(CallState.AWAITING_PEER, timeout=2))
        await controller.start_call()
        channel.set_state(ChannelState.CONNECTED)
        assert await waiter is True
        assert controller._listeners == []
    finally:
        await controller.close()


@pytest.mark.asyncio
async def test_remote_tracks_are_reported_and_cleared():
    controller, channel, _, factory = await joined()
    received = []
    controller.add_track_listener(received.append)
    try:
        await channel.deliver("user-connected", {"userId": "user_2"})
        track = VideoStreamTrack()
        factory.links[0].on_track(track)
        assert controller.remote_tracks == (track,)
        assert received == [track]

        await controller.end_call()
        assert controller.remote_tracks == ()
    finally:
        await controller.close()
