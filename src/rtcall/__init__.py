"""rtcall core package.

This package hosts the ambient pieces shared by the ``rtcall`` command
line tool and the :mod:`rtcall_comms` call library: environment driven
settings, logging setup, Prometheus metrics and small helpers.
"""

__version__ = "0.1.0"

__all__ = [
    "config",
    "logging",
    "metrics",
    "utils",
    "webrtc",
]
