"""Shared types and constants for the call library.

This module defines the relay event names, the call and channel state
enums, and the small data structures passed between the signaling
channel, the peer link and the session controller.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


# ----------------------
# Relay protocol constants
# ----------------------

# Outbound
JOIN_ROOM = "join-room"
LEAVE_ROOM = "leave-room"
END_CALL = "end-call"

# Inbound membership
USER_CONNECTED = "user-connected"
USER_DISCONNECTED = "user-disconnected"
ROOM_USERS = "room-users"

# Both directions
OFFER = "offer"
ANSWER = "answer"
ICE_CANDIDATE = "ice-candidate"

INBOUND_EVENTS = frozenset({
    USER_CONNECTED, USER_DISCONNECTED, ROOM_USERS, OFFER, ANSWER, ICE_CANDIDATE,
})


# ----------------------
# States
# ----------------------

class CallState(Enum):
    """Session call states, the single field a UI renders."""
    IDLE = "idle"
    JOINING_CHANNEL = "joining_channel"
    AWAITING_PEER = "awaiting_peer"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"


class ChannelState(Enum):
    """Relay connection states."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


# Reasons surfaced alongside CallState.FAILED
CAPTURE_FAILED = "capture_failed"
CONNECTION_FAILED = "connection_failed"
NEGOTIATION_FAILED = "negotiation_failed"


# ----------------------
# Data types
# ----------------------

@dataclass(frozen=True)
class PendingJoin:
    """A room-join request waiting for the relay connection.

    :param room_id: Room to join
    :type room_id: str
    :param user_id: Local participant id announced to the room
    :type user_id: str
    """
    room_id: str
    user_id: str


@dataclass(frozen=True)
class CallSnapshot:
    """Read-only projection of a session for rendering.

    :param connected: Whether the relay connection is up
    :type connected: bool
    :param remote_user_id: The counterpart, if one has been discovered
    :type remote_user_id: Optional[str]
    :param call_state: Current call state
    :type call_state: CallState
    :param failure: Failure reason when ``call_state`` is ``FAILED``
    :type failure: Optional[str]
    """
    connected: bool
    remote_user_id: Optional[str]
    call_state: CallState
    failure: Optional[str] = None


@dataclass
class IceCandidate:
    """ICE candidate in the browser ``RTCIceCandidateInit`` shape.

    :param candidate: Candidate line, usually starting with ``candidate:``
    :type candidate: str
    :param sdp_mid: SDP media ID
    :type sdp_mid: Optional[str]
    :param sdp_mline_index: SDP media line index
    :type sdp_mline_index: Optional[int]
    """
    candidate: str
    sdp_mid: Optional[str] = None
    sdp_mline_index: Optional[int] = None

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "IceCandidate":
        """Build a candidate from a relay payload dict."""
        return cls(
            candidate=data.get("candidate") or "",
            sdp_mid=data.get("sdpMid"),
            sdp_mline_index=data.get("sdpMLineIndex"),
        )

    def to_payload(self) -> Dict[str, Any]:
        """Serialize to the relay payload dict."""
        return {
            "candidate": self.candidate,
            "sdpMid": self.sdp_mid,
            "sdpMLineIndex": self.sdp_mline_index,
        }


def message_sender(event: str, payload: Dict[str, Any]) -> Optional[str]:
    """Return the participant a relay message originates from.

    Membership events name the participant in ``userId``; negotiation events
    carry ``from``.  ``room-users`` has no single sender.
    """
    if event in (USER_CONNECTED, USER_DISCONNECTED):
        return payload.get("userId")
    return payload.get("from")
