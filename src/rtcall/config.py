"""Environment driven configuration helpers.

All settings for the call client are read from ``RTCALL_*`` environment
variables.  Command line flags in :mod:`rtcall.cli` override individual
fields after :meth:`Settings.from_env` has run.
"""
from __future__ import annotations

from dataclasses import dataclass, field
import os
from typing import List, Optional

from .utils import env_bool, env_list, random_user_id

DEFAULT_STUN_URLS = [
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
]


@dataclass
class Settings:
    """Runtime settings for a call participant."""

    # Relay / room
    relay_ws: Optional[str] = None
    room_id: Optional[str] = None
    user_id: str = field(default_factory=random_user_id)

    # Reconnection policy
    connect_attempts: int = 5
    backoff_max: float = 10.0

    # ICE
    stun_urls: List[str] = field(default_factory=lambda: list(DEFAULT_STUN_URLS))
    turn_url: Optional[str] = None
    turn_user: Optional[str] = None
    turn_pass: Optional[str] = None

    # Media
    media_source: str = "synthetic"
    video_device: Optional[str] = None
    audio_device: Optional[str] = None
    media_format: Optional[str] = None
    audio: bool = True

    # Logging
    log_level: str = "INFO"
    log_format: str = "text"
    log_file: Optional[str] = None

    # Metrics
    metrics_port: int = 0

    @classmethod
    def from_env(cls) -> "Settings":
        """Construct settings from environment variables.

        ``PORT`` takes priority over ``RTCALL_METRICS_PORT`` so the client can
        run on platforms that assign the listening port.
        """
        port = os.getenv("PORT")
        if port is not None:
            try:
                metrics_port = int(port)
            except ValueError:
                metrics_port = int(os.getenv("RTCALL_METRICS_PORT", "0"))
        else:
            metrics_port = int(os.getenv("RTCALL_METRICS_PORT", "0"))

        return cls(
            relay_ws=os.getenv("RTCALL_WS"),
            room_id=os.getenv("RTCALL_ROOM"),
            user_id=os.getenv("RTCALL_USER") or random_user_id(),
            connect_attempts=int(os.getenv("RTCALL_CONNECT_ATTEMPTS", "5")),
            backoff_max=float(os.getenv("RTCALL_BACKOFF_MAX", "10")),
            stun_urls=env_list("RTCALL_STUN_URLS", DEFAULT_STUN_URLS),
            turn_url=os.getenv("RTCALL_TURN_URL"),
            turn_user=os.getenv("RTCALL_TURN_USER"),
            turn_pass=os.getenv("RTCALL_TURN_PASS"),
            media_source=os.getenv("RTCALL_MEDIA", "synthetic").lower(),
            video_device=os.getenv("RTCALL_VIDEO_DEVICE"),
            audio_device=os.getenv("RTCALL_AUDIO_DEVICE"),
            media_format=os.getenv("RTCALL_MEDIA_FORMAT"),
            audio=env_bool("RTCALL_AUDIO", True),
            log_level=os.getenv("RTCALL_LOGLEVEL", "INFO"),
            log_format=os.getenv("RTCALL_LOG_FORMAT", "text").lower(),
            log_file=os.getenv("RTCALL_LOGFILE"),
            metrics_port=metrics_port,
        )

    def validate(self) -> List[str]:
        """Validate configuration settings and return list of errors.

        :return: List of validation error messages, empty if valid
        """
        errors = []
        if not self.relay_ws:
            errors.append("RTCALL_WS is required")
        elif not self.relay_ws.startswith(("ws://", "wss://")):
            errors.append("RTCALL_WS must start with ws:// or wss://")
        if not self.room_id:
            errors.append("RTCALL_ROOM is required")
        if not self.user_id:
            errors.append("RTCALL_USER must not be empty")
        if self.connect_attempts <= 0:
            errors.append("RTCALL_CONNECT_ATTEMPTS must be positive")
        if self.backoff_max <= 0:
            errors.append("RTCALL_BACKOFF_MAX must be positive")
        if self.media_source not in ("synthetic", "device"):
            errors.append("RTCALL_MEDIA must be 'synthetic' or 'device'")
        if self.media_source == "device" and not (self.video_device or self.audio_device):
            errors.append("RTCALL_MEDIA=device needs RTCALL_VIDEO_DEVICE or RTCALL_AUDIO_DEVICE")
        if self.turn_url and not (self.turn_user and self.turn_pass):
            errors.append("RTCALL_TURN_URL needs RTCALL_TURN_USER and RTCALL_TURN_PASS")
        if self.metrics_port < 0 or self.metrics_port > 65535:
            errors.append("Metrics port must be between 0 and 65535")
        if self.log_format not in ("text", "json"):
            errors.append("RTCALL_LOG_FORMAT must be 'text' or 'json'")
        if self.log_level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            errors.append("RTCALL_LOGLEVEL must be valid logging level")
        return errors


__all__ = ["Settings", "DEFAULT_STUN_URLS"]
