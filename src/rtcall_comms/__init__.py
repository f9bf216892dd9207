"""rtcall communication library.

Two-party calls over WebRTC, negotiated through a rendezvous relay.

Main exports:
    SessionController: Call state machine for one room
    SignalingChannel: Relay WebSocket client with bounded reconnection
    Broker: Inbound relay event routing
    PeerLink: One aiortc peer connection
    MediaCapture: Local track acquisition (device or synthetic)
"""

from .broker import Broker
from .controller import SessionController
from .errors import (
    CallError,
    CaptureFailure,
    ChannelConnectFailure,
    DeviceUnavailable,
    NegotiationFailure,
    PermissionDenied,
    ProtocolViolation,
)
from .media import DeviceMediaCapture, MediaCapture, SyntheticMediaCapture, Tracks
from .peer_link import PeerLink
from .session import Session
from .signaler import SignalingChannel
from .types import CallSnapshot, CallState, ChannelState, IceCandidate, PendingJoin

__all__ = [
    "SessionController",
    "SignalingChannel",
    "Broker",
    "PeerLink",
    "MediaCapture",
    "DeviceMediaCapture",
    "SyntheticMediaCapture",
    "Tracks",
    "Session",
    "CallSnapshot",
    "CallState",
    "ChannelState",
    "IceCandidate",
    "PendingJoin",
    "CallError",
    "CaptureFailure",
    "PermissionDenied",
    "DeviceUnavailable",
    "ChannelConnectFailure",
    "ProtocolViolation",
    "NegotiationFailure",
]
