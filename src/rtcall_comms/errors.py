"""Error taxonomy for the call library.

Components below the controller raise these; the controller converts them
into observable call state and never lets them cross its public methods.
"""

from typing import Optional


class CallError(Exception):
    """Base class for call library errors."""


class CaptureFailure(CallError):
    """Local media could not be acquired."""


class PermissionDenied(CaptureFailure):
    """The platform or user refused access to the capture device."""


class DeviceUnavailable(CaptureFailure):
    """The capture device is missing, busy or could not be opened."""


class ChannelConnectFailure(CallError):
    """The relay connection could not be established within the attempt budget.

    :param attempts: Number of connection attempts made
    :type attempts: int
    :param last_error: The error from the final attempt, if any
    :type last_error: Optional[BaseException]
    """

    def __init__(self, attempts: int, last_error: Optional[BaseException] = None):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"relay unreachable after {attempts} attempt(s): {last_error}")


class ProtocolViolation(CallError):
    """A relay message arrived that the current session cannot accept."""


class NegotiationFailure(CallError):
    """The peer connection rejected or failed to generate a session description."""


__all__ = [
    "CallError",
    "CaptureFailure",
    "PermissionDenied",
    "DeviceUnavailable",
    "ChannelConnectFailure",
    "ProtocolViolation",
    "NegotiationFailure",
]
