"""Per-room session record owned by the session controller."""

from dataclasses import dataclass
from typing import Optional

from .media import Tracks
from .peer_link import PeerLink
from .types import CallState, PendingJoin


@dataclass
class Session:
    """Business state of one (room, local participant) pair.

    ``epoch`` increases on every start and teardown; an async operation that
    resumes with an older epoch belongs to a session that no longer exists.
    """
    room_id: str
    local_user_id: str
    remote_user_id: Optional[str] = None
    call_state: CallState = CallState.IDLE
    failure: Optional[str] = None
    media_requested: bool = False
    media_tracks: Optional[Tracks] = None
    peer_link: Optional[PeerLink] = None
    pending_join: Optional[PendingJoin] = None
    offer_outstanding: bool = False
    # Found the remote in the roster, so the remote sends the offer.
    awaiting_offer: bool = False
    # The relay holds our membership until leave-room or a relay reconnect.
    room_joined: bool = False
    epoch: int = 0

    def join_request(self) -> PendingJoin:
        return PendingJoin(room_id=self.room_id, user_id=self.local_user_id)
