"""Helpers for aiortc peer connection configuration."""
from __future__ import annotations

from typing import Iterable, List, Optional

from aiortc import RTCConfiguration, RTCIceServer


def build_configuration(stun_urls: Iterable[str], turn_url: Optional[str] = None,
                        turn_user: Optional[str] = None,
                        turn_pass: Optional[str] = None) -> RTCConfiguration:
    """Create an :class:`RTCConfiguration` with optional TURN support."""
    ice_servers: List[RTCIceServer] = [RTCIceServer(url) for url in stun_urls]
    if turn_url:
        ice_servers.append(RTCIceServer(turn_url, turn_user, turn_pass))
    return RTCConfiguration(iceServers=ice_servers)


__all__ = ["build_configuration"]
