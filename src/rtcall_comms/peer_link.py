"""One negotiated peer connection between the two participants.

This module provides the PeerLink class, a thin wrapper around
:class:`aiortc.RTCPeerConnection` that speaks the relay's JSON shapes
(``{"type", "sdp"}`` descriptions and ``RTCIceCandidateInit`` candidates),
reports aiortc failures as :class:`NegotiationFailure`, and forwards track,
candidate and connection-state events to plain callbacks.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceCandidate,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from .errors import NegotiationFailure, ProtocolViolation
from .media import Tracks
from .types import IceCandidate

logger = logging.getLogger(__name__)


def description_to_payload(desc: RTCSessionDescription) -> Dict[str, str]:
    """Serialize a session description for the relay."""
    return {"type": desc.type, "sdp": desc.sdp}


def description_from_payload(data: Any, expected_type: str) -> RTCSessionDescription:
    """Parse a relay session description.

    :raises ProtocolViolation: If the payload is not a description of ``expected_type``.
    """
    if not isinstance(data, dict) or not data.get("sdp"):
        raise ProtocolViolation(f"malformed {expected_type} description")
    desc_type = data.get("type") or expected_type
    if desc_type != expected_type:
        raise ProtocolViolation(f"expected {expected_type} description, got {desc_type}")
    return RTCSessionDescription(sdp=data["sdp"], type=desc_type)


class PeerLink:
    """A single RTCPeerConnection bound to the session's local tracks.

    Local tracks are attached once, at construction.  A link created before
    capture completes has no outbound tracks and stays that way.
    """

    def __init__(self, configuration: Optional[RTCConfiguration] = None, tracks: Optional[Tracks] = None):
        """Create the peer connection and attach ``tracks``.

        :param configuration: ICE server configuration
        :type configuration: Optional[RTCConfiguration]
        :param tracks: Local tracks to send, or None to only receive
        :type tracks: Optional[Tracks]
        """
        self.pc = RTCPeerConnection(configuration)
        self.tracks = tracks
        self.on_track: Optional[Callable[[MediaStreamTrack], Any]] = None
        self.on_ice_candidate: Optional[Callable[[IceCandidate], Any]] = None
        self.on_connection_state_change: Optional[Callable[[str], Any]] = None
        self._pending_candidates: List[RTCIceCandidate] = []
        self._remote_description_set = False
        self._closed = False

        if tracks:
            for track in tracks.all():
                self.pc.addTrack(track)
                logger.debug("Attached local %s track", track.kind)

        @self.pc.on("track")
        def on_track(track):
            logger.info("Remote %s track received", track.kind)
            if self.on_track:
                self.on_track(track)

        # aiortc bundles gathered candidates into the SDP; trickled ones land here.
        @self.pc.on("icecandidate")
        def on_ice_candidate(candidate):
            if candidate is None:
                logger.debug("ICE gathering complete")
                return
            if self.on_ice_candidate:
                self.on_ice_candidate(IceCandidate(
                    candidate="candidate:" + candidate_to_sdp(candidate),
                    sdp_mid=candidate.sdpMid,
                    sdp_mline_index=candidate.sdpMLineIndex,
                ))

        @self.pc.on("iceconnectionstatechange")
        def on_ice_state():
            logger.info("iceConnectionState -> %s", self.pc.iceConnectionState)

        @self.pc.on("connectionstatechange")
        def on_connection_state():
            logger.info("connectionState -> %s", self.pc.connectionState)
            if self.on_connection_state_change:
                self.on_connection_state_change(self.pc.connectionState)

    @property
    def connection_state(self) -> str:
        """The aiortc connection state (``new``, ``connecting``, ``connected`` ...)."""
        return self.pc.connectionState

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def remote_description_set(self) -> bool:
        return self._remote_description_set

    @property
    def local_description(self) -> Optional[Dict[str, str]]:
        """The applied local description, including gathered candidates."""
        desc = self.pc.localDescription
        return description_to_payload(desc) if desc else None

    async def create_offer(self) -> Dict[str, str]:
        """Generate an offer.

        Kinds with no local track get a receive-only transceiver so the
        offer still negotiates incoming media.

        :raises NegotiationFailure: If aiortc cannot produce the offer.
        """
        have = {t.kind for t in self.tracks.all()} if self.tracks else set()
        for kind in ("audio", "video"):
            if kind not in have and not any(t.kind == kind for t in self.pc.getTransceivers()):
                self.pc.addTransceiver(kind, direction="recvonly")
        try:
            offer = await self.pc.createOffer()
        except Exception as e:
            raise NegotiationFailure(f"createOffer failed: {e}") from e
        return description_to_payload(offer)

    async def create_answer(self) -> Dict[str, str]:
        """Generate an answer to the applied remote offer.

        :raises NegotiationFailure: If aiortc cannot produce the answer.
        """
        try:
            answer = await self.pc.createAnswer()
        except Exception as e:
            raise NegotiationFailure(f"createAnswer failed: {e}") from e
        return description_to_payload(answer)

    async def set_local_description(self, description: Dict[str, str]) -> None:
        """Apply a locally generated description.

        :raises NegotiationFailure: If aiortc rejects the description.
        """
        try:
            await self.pc.setLocalDescription(
                RTCSessionDescription(sdp=description["sdp"], type=description["type"])
            )
        except Exception as e:
            raise NegotiationFailure(f"setLocalDescription failed: {e}") from e

    async def set_remote_description(self, description: Dict[str, Any], expected_type: str) -> None:
        """Apply a description received from the remote participant.

        Candidates that arrived before the description are applied afterwards.

        :raises ProtocolViolation: If the payload is not a usable description.
        :raises NegotiationFailure: If aiortc rejects the description.
        """
        desc = description_from_payload(description, expected_type)
        try:
            await self.pc.setRemoteDescription(desc)
        except Exception as e:
            raise NegotiationFailure(f"setRemoteDescription({expected_type}) failed: {e}") from e
        self._remote_description_set = True

        pending, self._pending_candidates = self._pending_candidates, []
        if pending:
            logger.info("Applying %d candidate(s) received before the remote description", len(pending))
        for candidate in pending:
            try:
                await self.pc.addIceCandidate(candidate)
            except Exception as e:
                logger.debug("Failed to apply held ICE candidate: %s", e)

    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        """Apply a remote candidate, holding it until the remote description is set.

        An empty candidate string (end-of-candidates) is ignored.

        :raises ProtocolViolation: If the candidate line cannot be parsed.
        """
        line = candidate.candidate
        if not line:
            return
        # Some peers send the "candidate:" attribute prefix.
        if line.startswith("candidate:"):
            line = line[10:]
        try:
            parsed = candidate_from_sdp(line)
        except Exception as e:
            raise ProtocolViolation(f"unparseable ICE candidate: {e}") from e
        parsed.sdpMid = candidate.sdp_mid
        parsed.sdpMLineIndex = candidate.sdp_mline_index

        if not self._remote_description_set:
            self._pending_candidates.append(parsed)
            return
        try:
            await self.pc.addIceCandidate(parsed)
        except Exception as e:
            logger.warning("Failed to apply ICE candidate: %s", e)

    async def close(self) -> None:
        """Close the peer connection.  Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._pending_candidates.clear()
        await self.pc.close()


__all__ = ["PeerLink", "description_to_payload", "description_from_payload"]
