"""Local media capture for a call.

This module provides the MediaCapture interface used by the session
controller and two implementations: DeviceMediaCapture, which opens real
capture devices through aiortc's MediaPlayer (PyAV/FFmpeg), and
SyntheticMediaCapture, which produces silence and black frames for headless
runs and tests.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional

from aiortc import AudioStreamTrack, MediaStreamTrack, VideoStreamTrack
from aiortc.contrib.media import MediaPlayer
from av.error import FFmpegError

from .errors import DeviceUnavailable, PermissionDenied

logger = logging.getLogger(__name__)


@dataclass
class Tracks:
    """The local audio/video track set of one session.

    :param audio: Outbound audio track, if captured
    :type audio: Optional[MediaStreamTrack]
    :param video: Outbound video track, if captured
    :type video: Optional[MediaStreamTrack]
    """
    audio: Optional[MediaStreamTrack] = None
    video: Optional[MediaStreamTrack] = None

    def all(self) -> List[MediaStreamTrack]:
        """Return the tracks that are present."""
        return [t for t in (self.audio, self.video) if t is not None]

    def stop(self) -> None:
        """Stop every track.  Stopping an ended track is a no-op."""
        for track in self.all():
            track.stop()


class MediaCapture(ABC):
    """Acquires local tracks once and hands out the same set afterwards.

    Concurrent :meth:`acquire` calls share one in-flight acquisition.  After
    :meth:`release` the next :meth:`acquire` opens the source again.
    """

    def __init__(self):
        self._tracks: Optional[Tracks] = None
        self._pending: Optional[asyncio.Future] = None

    @property
    def tracks(self) -> Optional[Tracks]:
        """The currently held track set, if acquisition has completed."""
        return self._tracks

    async def acquire(self) -> Tracks:
        """Acquire local tracks, or return the ones already held.

        :return: The local track set.
        :rtype: Tracks
        :raises CaptureFailure: If the source cannot be opened.
        """
        if self._tracks is not None:
            return self._tracks
        if self._pending is None:
            self._pending = asyncio.ensure_future(self._open())
        pending = self._pending
        try:
            tracks = await asyncio.shield(pending)
        except Exception:
            if self._pending is pending:
                self._pending = None
            raise
        if self._pending is pending:
            self._pending = None
            self._tracks = tracks
        return tracks

    def release(self) -> None:
        """Stop and forget the held tracks.  Safe to call when nothing is held."""
        tracks, self._tracks = self._tracks, None
        self._pending = None
        if tracks is not None:
            tracks.stop()
            logger.info("Released local media (%d track(s))", len(tracks.all()))

    @abstractmethod
    async def _open(self) -> Tracks:
        """Open the underlying source.

        :raises CaptureFailure: If the source cannot be opened.
        """


class SyntheticMediaCapture(MediaCapture):
    """Silence and black video frames from aiortc's base stream tracks."""

    def __init__(self, audio: bool = True, video: bool = True):
        super().__init__()
        self.audio = audio
        self.video = video

    async def _open(self) -> Tracks:
        tracks = Tracks(
            audio=AudioStreamTrack() if self.audio else None,
            video=VideoStreamTrack() if self.video else None,
        )
        logger.info("Synthetic media ready (audio=%s, video=%s)", self.audio, self.video)
        return tracks


class DeviceMediaCapture(MediaCapture):
    """Capture devices opened through :class:`aiortc.contrib.media.MediaPlayer`.

    ``video_device`` and ``audio_device`` are FFmpeg input names such as
    ``/dev/video0`` or ``default``; ``fmt`` is the FFmpeg input format such as
    ``v4l2``, ``pulse`` or ``avfoundation``.
    """

    def __init__(self, video_device: Optional[str] = None, audio_device: Optional[str] = None,
                 fmt: Optional[str] = None, audio_fmt: Optional[str] = None,
                 options: Optional[Dict[str, str]] = None):
        super().__init__()
        self.video_device = video_device
        self.audio_device = audio_device
        self.fmt = fmt
        self.audio_fmt = audio_fmt or fmt
        self.options = options or {}

    @staticmethod
    def _close_player(player: Optional[MediaPlayer]) -> None:
        # A player closes its container once none of its tracks is running.
        if player is None:
            return
        for track in (player.audio, player.video):
            if track is not None:
                track.stop()

    def _open_players(self) -> Tracks:
        video_player = audio_player = None
        try:
            if self.video_device:
                video_player = MediaPlayer(self.video_device, format=self.fmt, options=self.options)
            if self.audio_device and self.audio_device != self.video_device:
                audio_player = MediaPlayer(self.audio_device, format=self.audio_fmt)
        except PermissionError as e:
            self._close_player(video_player)
            raise PermissionDenied(f"capture device access denied: {e}") from e
        except (FFmpegError, OSError) as e:
            self._close_player(video_player)
            raise DeviceUnavailable(f"capture device could not be opened: {e}") from e

        audio_source = audio_player or video_player
        tracks = Tracks(
            audio=audio_source.audio if audio_source else None,
            video=video_player.video if video_player else None,
        )
        if not tracks.all():
            self._close_player(video_player)
            self._close_player(audio_player)
            raise DeviceUnavailable("capture devices produced no audio or video stream")
        return tracks

    async def _open(self) -> Tracks:
        loop = asyncio.get_running_loop()
        # Opening a device blocks inside FFmpeg.
        tracks = await loop.run_in_executor(None, self._open_players)
        logger.info("Capture devices opened (video=%s, audio=%s)", self.video_device, self.audio_device)
        return tracks


__all__ = ["Tracks", "MediaCapture", "SyntheticMediaCapture", "DeviceMediaCapture"]
