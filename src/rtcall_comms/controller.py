"""Session negotiation controller.

This module provides the SessionController class, which turns three
independently timed resources (the relay connection, local media capture
and the peer connection) into one call lifecycle for a room.  Every inbound
relay event goes through :meth:`SessionController.handle_event`, which looks
the event up in a transition table and rejects it when the call is in a
state that cannot accept it.  Public coroutines never raise call errors;
failures become observable state.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Set, Tuple

from aiortc import MediaStreamTrack, RTCConfiguration

from rtcall.logging import session_logger
from rtcall.metrics import (
    calls_started, joins_sent, call_state_changes, protocol_violations,
    dropped_candidates, negotiation_latency,
)

from .broker import RELAY_TOPIC
from .errors import CaptureFailure, NegotiationFailure, ProtocolViolation
from .media import MediaCapture, Tracks
from .peer_link import PeerLink, description_from_payload
from .session import Session
from .signaler import SignalingChannel
from .types import (
    ANSWER, END_CALL, ICE_CANDIDATE, JOIN_ROOM, LEAVE_ROOM, OFFER, ROOM_USERS,
    USER_CONNECTED, USER_DISCONNECTED,
    CAPTURE_FAILED, CONNECTION_FAILED, NEGOTIATION_FAILED,
    CallSnapshot, CallState, ChannelState, IceCandidate, message_sender,
)

logger = logging.getLogger(__name__)

PeerLinkFactory = Callable[[Optional[Tracks]], PeerLink]
SnapshotListener = Callable[[CallSnapshot], Any]
TrackListener = Callable[[MediaStreamTrack], Any]

_JOINED: FrozenSet[CallState] = frozenset({
    CallState.AWAITING_PEER, CallState.NEGOTIATING, CallState.CONNECTED,
})
_STARTABLE: FrozenSet[CallState] = frozenset({
    CallState.IDLE, CallState.DISCONNECTED, CallState.FAILED,
})
# The relay is still needed to reach (or finish negotiating with) the peer.
_NEEDS_RELAY: FrozenSet[CallState] = frozenset({
    CallState.JOINING_CHANNEL, CallState.AWAITING_PEER, CallState.NEGOTIATING,
})

# event -> (states that accept it, handler name)
_TRANSITIONS: Dict[str, Tuple[FrozenSet[CallState], str]] = {
    USER_CONNECTED: (frozenset({CallState.AWAITING_PEER, CallState.NEGOTIATING}), "_on_user_connected"),
    ROOM_USERS: (frozenset({CallState.AWAITING_PEER}), "_on_room_users"),
    OFFER: (_JOINED, "_on_offer"),
    ANSWER: (frozenset({CallState.NEGOTIATING, CallState.CONNECTED}), "_on_answer"),
    ICE_CANDIDATE: (_JOINED, "_on_remote_candidate"),
    USER_DISCONNECTED: (_JOINED, "_on_user_disconnected"),
}


class SessionController:
    """Owns one call session in a room and drives it through :class:`CallState`.

    The controller is the only writer of the session's media and peer-link
    lifecycle.  UIs read :attr:`snapshot` (or register a listener) and call
    :meth:`start_call` / :meth:`end_call`.

    Negotiation roles: the participant told about the other through
    ``user-connected`` was in the room first and sends the offer; the one
    that finds the other in the ``room-users`` roster prepares its peer link
    and waits for that offer.
    """

    def __init__(self, room_id: str, user_id: str, channel: SignalingChannel,
                 capture: MediaCapture, peer_link_factory: Optional[PeerLinkFactory] = None,
                 configuration: Optional[RTCConfiguration] = None):
        """Initialize the controller.

        :param room_id: Room to call in
        :type room_id: str
        :param user_id: Local participant id
        :type user_id: str
        :param channel: Relay connection shared by every session of this controller
        :type channel: SignalingChannel
        :param capture: Local media source
        :type capture: MediaCapture
        :param peer_link_factory: Builds a peer link bound to the given tracks
        :type peer_link_factory: Optional[PeerLinkFactory]
        :param configuration: ICE configuration for the default factory
        :type configuration: Optional[RTCConfiguration]
        """
        self.channel = channel
        self.capture = capture
        self._peer_link_factory = peer_link_factory or (lambda tracks: PeerLink(configuration, tracks))
        self.session = Session(room_id=room_id, local_user_id=user_id)
        self.log = session_logger(logger, room_id, user_id)

        self._listeners: List[SnapshotListener] = []
        self._track_listeners: List[TrackListener] = []
        self._remote_tracks: List[MediaStreamTrack] = []
        self._tasks: Set[asyncio.Task] = set()
        self._pump_task: Optional[asyncio.Task] = None
        self._offer_sent_at: Optional[float] = None
        self._closed = False

        self.channel.add_state_listener(self._on_channel_state)

    # ------------------------------------------------------------------
    # Projection
    # ------------------------------------------------------------------
    @property
    def snapshot(self) -> CallSnapshot:
        """Read-only view of the session for rendering."""
        s = self.session
        return CallSnapshot(
            connected=self.channel.is_connected(),
            remote_user_id=s.remote_user_id,
            call_state=s.call_state,
            failure=s.failure,
        )

    @property
    def call_state(self) -> CallState:
        return self.session.call_state

    @property
    def remote_user_id(self) -> Optional[str]:
        return self.session.remote_user_id

    @property
    def local_tracks(self) -> Optional[Tracks]:
        """Local tracks, for preview rendering only."""
        return self.session.media_tracks

    @property
    def remote_tracks(self) -> Tuple[MediaStreamTrack, ...]:
        """Tracks received from the remote participant, for rendering only."""
        return tuple(self._remote_tracks)

    def add_listener(self, callback: SnapshotListener) -> None:
        """Register a callback invoked with a fresh snapshot on every change."""
        if callback not in self._listeners:
            self._listeners.append(callback)

    def remove_listener(self, callback: SnapshotListener) -> None:
        try:
            self._listeners.remove(callback)
        except ValueError:
            pass

    def add_track_listener(self, callback: TrackListener) -> None:
        """Register a callback for remote tracks as they arrive."""
        if callback not in self._track_listeners:
            self._track_listeners.append(callback)

    async def wait_for_state(self, *states: CallState, timeout: float = 30.0) -> bool:
        """Wait until the call reaches one of ``states``.

        :return: True if reached within ``timeout``, False otherwise.
        :rtype: bool
        """
        if self.session.call_state in states:
            return True
        reached = asyncio.get_running_loop().create_future()

        def on_snapshot(snapshot: CallSnapshot) -> None:
            if snapshot.call_state in states and not reached.done():
                reached.set_result(True)

        self.add_listener(on_snapshot)
        try:
            return await asyncio.wait_for(reached, timeout)
        except asyncio.TimeoutError:
            return False
        finally:
            self.remove_listener(on_snapshot)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------
    async def start_call(self) -> None:
        """Start the call: acquire media, connect the relay, then join the room.

        Calling it again while the join is still queued replaces the queued
        request.  Calling it in any other active state does nothing.
        """
        s = self.session
        if self._closed:
            self.log.warning("start_call on a closed controller ignored")
            return
        if s.call_state is CallState.JOINING_CHANNEL:
            if s.pending_join is not None:
                s.pending_join = s.join_request()
            self.log.debug("start_call while joining; already in progress")
            return
        if s.call_state not in _STARTABLE:
            self.log.debug("start_call ignored in state %s", s.call_state.value)
            return

        s.epoch += 1
        epoch = s.epoch
        calls_started.inc()
        self._ensure_pump()
        s.media_requested = True
        self._set_call_state(CallState.JOINING_CHANNEL)
        if self.channel.state is not ChannelState.CONNECTED:
            self.channel.request_connect()
        await self._acquire_media(epoch)

    async def end_call(self) -> None:
        """Hang up and release everything.  A no-op when there is nothing to end.

        The room is left on the relay whenever it still holds our membership,
        including after the remote participant has already gone.
        """
        s = self.session
        if s.call_state in (CallState.IDLE, CallState.DISCONNECTED):
            if s.room_joined:
                await self._leave_room()
            else:
                self.log.debug("end_call with no active call")
            return
        link = self._detach()
        self._set_call_state(CallState.DISCONNECTED)
        if s.room_joined:
            await self._leave_room()
        await self._close_link(link)
        self.log.info("Call ended")

    async def _leave_room(self) -> None:
        s = self.session
        s.room_joined = False
        if not self.channel.is_connected():
            return
        body = {"roomId": s.room_id, "userId": s.local_user_id}
        await self.channel.send(LEAVE_ROOM, body)
        await self.channel.send(END_CALL, body)

    async def change_room(self, room_id: str) -> None:
        """End the current session and start a fresh, idle one for ``room_id``."""
        if room_id == self.session.room_id:
            return
        await self.end_call()
        self.channel.broker.clear()
        old = self.session
        user_id = old.local_user_id
        # Keep epochs increasing so completions from the old room stay stale.
        self.session = Session(room_id=room_id, local_user_id=user_id, epoch=old.epoch + 1)
        self.log = session_logger(logger, room_id, user_id)
        self.log.info("Switched to room %s", room_id)
        self._notify()

    async def close(self) -> None:
        """End the call, stop background work and close the relay connection."""
        if self._closed:
            return
        await self.end_call()
        self._closed = True
        self.channel.remove_state_listener(self._on_channel_state)
        tasks = [t for t in self._tasks if not t.done()]
        if self._pump_task and not self._pump_task.done():
            tasks.append(self._pump_task)
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._pump_task = None
        await self.channel.close()

    async def __aenter__(self) -> "SessionController":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Inbound relay events
    # ------------------------------------------------------------------
    async def handle_event(self, msg: Dict[str, Any]) -> None:
        """Apply one inbound relay event to the session.

        Self-echoes and events the current state does not accept are dropped
        without any state change.
        """
        s = self.session
        event = msg.get("event", "")
        payload = msg.get("payload") or {}
        if event not in _TRANSITIONS:
            self.log.debug("Ignoring relay event %r", event)
            return
        if message_sender(event, payload) == s.local_user_id:
            self.log.debug("Dropping self-echo %s", event)
            return

        allowed, handler = _TRANSITIONS[event]
        if s.call_state not in allowed:
            if event == ANSWER:
                protocol_violations.labels(kind=event).inc()
                self.log.warning("Discarding answer in state %s", s.call_state.value)
            elif event == ICE_CANDIDATE:
                dropped_candidates.labels(direction="inbound").inc()
                self.log.debug("Dropping candidate in state %s", s.call_state.value)
            else:
                self.log.debug("Ignoring %s in state %s", event, s.call_state.value)
            return

        epoch = s.epoch
        try:
            await getattr(self, handler)(payload)
        except ProtocolViolation as e:
            protocol_violations.labels(kind=event).inc()
            self.log.warning("Discarding %s: %s", event, e)
        except NegotiationFailure as e:
            if epoch == self.session.epoch:
                self.log.error("Negotiation failed: %s", e)
                self._fail(NEGOTIATION_FAILED)
        except Exception as e:
            self.log.error("Error handling %s: %s", event, e, exc_info=True)

    async def _on_user_connected(self, payload: Dict[str, Any]) -> None:
        s = self.session
        user_id = payload.get("userId")
        if not user_id:
            raise ProtocolViolation("user-connected without userId")
        if s.remote_user_id and user_id != s.remote_user_id:
            self.log.warning("Ignoring %s; already paired with %s", user_id, s.remote_user_id)
            return
        if s.awaiting_offer:
            self.log.debug("%s rejoined; still waiting for their offer", user_id)
            return
        if s.peer_link is not None:
            self.log.debug("Negotiation with %s already under way", user_id)
            return
        link = self._ensure_peer_link()
        self._set_remote(user_id)
        self._set_call_state(CallState.NEGOTIATING)
        await self._send_offer(link)

    async def _on_room_users(self, payload: Dict[str, Any]) -> None:
        s = self.session
        users = payload.get("users") or []
        others = [u for u in users if u and u != s.local_user_id]
        if not others:
            self.log.info("Alone in room %s, waiting for a peer", s.room_id)
            return
        if len(others) > 1:
            self.log.warning("Room has %d other participants; pairing with %s", len(others), others[0])
        self._ensure_peer_link()
        self._set_remote(others[0])
        s.awaiting_offer = True
        self._set_call_state(CallState.NEGOTIATING)
        self.log.info("Found %s in room, waiting for their offer", others[0])

    async def _on_offer(self, payload: Dict[str, Any]) -> None:
        s = self.session
        sender = payload.get("from")
        if not sender:
            raise ProtocolViolation("offer without sender")
        if s.remote_user_id and sender != s.remote_user_id:
            raise ProtocolViolation(f"offer from {sender} while paired with {s.remote_user_id}")
        room = payload.get("roomId")
        if room and room != s.room_id:
            raise ProtocolViolation(f"offer for room {room}")
        description_from_payload(payload.get("offer"), "offer")

        link = self._ensure_peer_link()
        self._set_remote(sender)
        if s.call_state is not CallState.CONNECTED:
            self._set_call_state(CallState.NEGOTIATING)

        epoch = s.epoch
        await link.set_remote_description(payload["offer"], "offer")
        if self._stale(epoch, link):
            return
        answer = await link.create_answer()
        if self._stale(epoch, link):
            return
        await link.set_local_description(answer)
        if self._stale(epoch, link):
            return
        await self.channel.send(ANSWER, {
            "answer": link.local_description or answer,
            "to": sender,
            "from": s.local_user_id,
            "roomId": s.room_id,
        })
        self.log.info("Answered offer from %s", sender)

    async def _on_answer(self, payload: Dict[str, Any]) -> None:
        s = self.session
        link = s.peer_link
        if link is None:
            raise ProtocolViolation("answer with no peer link")
        sender = payload.get("from")
        if sender != s.remote_user_id:
            raise ProtocolViolation(f"answer from {sender}, expected {s.remote_user_id}")
        if not s.offer_outstanding:
            raise ProtocolViolation("answer without an outstanding offer")

        epoch = s.epoch
        await link.set_remote_description(payload.get("answer"), "answer")
        if self._stale(epoch, link):
            return
        s.offer_outstanding = False
        if self._offer_sent_at is not None:
            negotiation_latency.observe(asyncio.get_running_loop().time() - self._offer_sent_at)
            self._offer_sent_at = None
        self.log.info("Applied answer from %s", sender)

    async def _on_remote_candidate(self, payload: Dict[str, Any]) -> None:
        s = self.session
        link = s.peer_link
        if link is None:
            dropped_candidates.labels(direction="inbound").inc()
            self.log.debug("Dropping candidate; no peer link yet")
            return
        sender = payload.get("from")
        if sender != s.remote_user_id:
            raise ProtocolViolation(f"candidate from {sender}, expected {s.remote_user_id}")
        raw = payload.get("candidate")
        if isinstance(raw, str):
            candidate = IceCandidate(candidate=raw)
        elif isinstance(raw, dict):
            candidate = IceCandidate.from_payload(raw)
        else:
            raise ProtocolViolation("candidate payload missing")
        await link.add_ice_candidate(candidate)

    async def _on_user_disconnected(self, payload: Dict[str, Any]) -> None:
        s = self.session
        user_id = payload.get("userId")
        if not user_id or user_id != s.remote_user_id:
            self.log.debug("Ignoring departure of %s", user_id)
            return
        self.log.info("%s left the room", user_id)
        link = self._detach()
        self._set_call_state(CallState.DISCONNECTED)
        await self._close_link(link)

    # ------------------------------------------------------------------
    # Media and join
    # ------------------------------------------------------------------
    async def _acquire_media(self, epoch: int) -> None:
        s = self.session
        try:
            tracks = await self.capture.acquire()
        except CaptureFailure as e:
            if epoch == self.session.epoch:
                self.log.error("Media capture failed: %s", e)
                self._fail(CAPTURE_FAILED)
            return
        except Exception as e:
            if epoch == self.session.epoch:
                self.log.error("Media capture failed: %s", e, exc_info=True)
                self._fail(CAPTURE_FAILED)
            return

        if epoch != self.session.epoch:
            self.log.info("Releasing media acquired after the session ended")
            tracks.stop()
            return

        s.media_tracks = tracks
        s.pending_join = s.join_request()
        if self.channel.is_connected():
            await self._flush_pending_join()
        else:
            self.log.info("Relay not connected yet; join for room %s queued", s.room_id)

    async def _flush_pending_join(self) -> None:
        s = self.session
        join = s.pending_join
        if join is None or not self.channel.is_connected():
            return
        epoch = s.epoch
        s.pending_join = None
        sent = await self.channel.send(JOIN_ROOM, {"roomId": join.room_id, "userId": join.user_id})
        if sent:
            s.room_joined = True
        if epoch != self.session.epoch:
            return
        if not sent:
            if s.pending_join is None:
                s.pending_join = join
            return
        joins_sent.inc()
        self.log.info("Joined room %s", join.room_id)
        if s.call_state is CallState.JOINING_CHANNEL:
            self._set_call_state(CallState.AWAITING_PEER)

    def _on_channel_state(self, state: ChannelState, error: Optional[BaseException]) -> None:
        s = self.session
        if state is ChannelState.CONNECTED:
            if s.pending_join is not None:
                self._spawn(self._flush_pending_join())
        elif state is ChannelState.DISCONNECTED:
            # Membership does not survive a relay reconnect.
            s.room_joined = False
            if s.call_state in _JOINED and s.pending_join is None:
                s.pending_join = s.join_request()
        elif state is ChannelState.FAILED:
            if s.call_state in _NEEDS_RELAY:
                self.log.error("Relay unavailable: %s", error)
                self._fail(CONNECTION_FAILED)
            elif s.call_state is CallState.CONNECTED:
                self.log.warning("Relay unavailable during an established call: %s", error)
        self._notify()

    # ------------------------------------------------------------------
    # Peer link
    # ------------------------------------------------------------------
    def _ensure_peer_link(self) -> PeerLink:
        s = self.session
        if s.peer_link is not None:
            return s.peer_link
        if not s.media_requested:
            raise ProtocolViolation("no peer link before start_call")
        link = self._peer_link_factory(s.media_tracks)
        link.on_track = self._on_remote_track
        link.on_ice_candidate = self._on_local_candidate
        link.on_connection_state_change = lambda state: self._on_link_state(link, state)
        s.peer_link = link
        self.log.info("Peer link created with %d local track(s)",
                      len(s.media_tracks.all()) if s.media_tracks else 0)
        return link

    async def _send_offer(self, link: PeerLink) -> None:
        s = self.session
        epoch = s.epoch
        offer = await link.create_offer()
        if self._stale(epoch, link):
            return
        await link.set_local_description(offer)
        if self._stale(epoch, link):
            return
        s.offer_outstanding = True
        self._offer_sent_at = asyncio.get_running_loop().time()
        await self.channel.send(OFFER, {
            "offer": link.local_description or offer,
            "to": s.remote_user_id,
            "from": s.local_user_id,
            "roomId": s.room_id,
        })
        self.log.info("Sent offer to %s", s.remote_user_id)

    def _on_local_candidate(self, candidate: IceCandidate) -> None:
        s = self.session
        if s.remote_user_id is None:
            dropped_candidates.labels(direction="outbound").inc()
            self.log.debug("Dropping local candidate; no remote participant yet")
            return
        self._spawn(self.channel.send(ICE_CANDIDATE, {
            "candidate": candidate.to_payload(),
            "to": s.remote_user_id,
            "from": s.local_user_id,
            "roomId": s.room_id,
        }))

    def _on_remote_track(self, track: MediaStreamTrack) -> None:
        self._remote_tracks.append(track)
        for listener in list(self._track_listeners):
            try:
                listener(track)
            except Exception as exc:
                self.log.error("Track listener error: %s", exc, exc_info=True)

    def _on_link_state(self, link: PeerLink, state: str) -> None:
        s = self.session
        if s.peer_link is not link:
            return
        if state == "connected" and s.call_state is CallState.NEGOTIATING:
            self._set_call_state(CallState.CONNECTED)
        elif state == "failed" and s.call_state in (CallState.NEGOTIATING, CallState.CONNECTED):
            self.log.error("Peer connection failed")
            self._fail(NEGOTIATION_FAILED)

    def _stale(self, epoch: int, link: PeerLink) -> bool:
        return epoch != self.session.epoch or self.session.peer_link is not link

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------
    def _detach(self) -> Optional[PeerLink]:
        """Clear every session resource in one step and return the link to close."""
        s = self.session
        s.epoch += 1
        link, s.peer_link = s.peer_link, None
        s.media_tracks = None
        s.media_requested = False
        s.pending_join = None
        s.offer_outstanding = False
        s.awaiting_offer = False
        self._offer_sent_at = None
        self._remote_tracks.clear()
        self.capture.release()
        self._set_remote(None)
        return link

    async def _close_link(self, link: Optional[PeerLink]) -> None:
        if link is None:
            return
        try:
            await link.close()
        except Exception as e:
            self.log.warning("Error closing peer link: %s", e)

    def _fail(self, reason: str) -> None:
        link = self._detach()
        self._set_call_state(CallState.FAILED, reason)
        if link is not None:
            self._spawn(self._close_link(link))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _set_call_state(self, state: CallState, failure: Optional[str] = None) -> None:
        s = self.session
        if s.call_state is state and s.failure == failure:
            return
        self.log.info("Call state %s -> %s%s", s.call_state.value, state.value,
                      f" ({failure})" if failure else "")
        s.call_state = state
        s.failure = failure if state is CallState.FAILED else None
        call_state_changes.labels(state=state.value).inc()
        self._notify()

    def _set_remote(self, user_id: Optional[str]) -> None:
        s = self.session
        if s.remote_user_id == user_id:
            return
        s.remote_user_id = user_id
        self._notify()

    def _notify(self) -> None:
        snapshot = self.snapshot
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as exc:
                self.log.error("Snapshot listener error: %s", exc, exc_info=True)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self.log.error("Background task failed: %s", task.exception())

    def _ensure_pump(self) -> None:
        if self._pump_task is None or self._pump_task.done():
            self._pump_task = asyncio.create_task(self._pump(), name="session-events")

    async def _pump(self) -> None:
        """Feed relay events to :meth:`handle_event` one at a time, in arrival order."""
        queue = self.channel.broker.topic_queue(RELAY_TOPIC)
        while True:
            msg = await queue.get()
            try:
                await self.handle_event(msg)
            finally:
                queue.task_done()


__all__ = ["SessionController", "PeerLinkFactory"]
