import asyncio

import pytest
from aiortc import AudioStreamTrack, VideoStreamTrack

from rtcall_comms import media
from rtcall_comms.errors import DeviceUnavailable
from rtcall_comms.media import DeviceMediaCapture, SyntheticMediaCapture, Tracks


@pytest.mark.asyncio
async def test_synthetic_capture_hands_out_one_track_set():
    capture = SyntheticMediaCapture()
    first = await capture.acquire()
    second = await capture.acquire()
    assert first is second
    assert capture.tracks is first
    assert {t.kind for t in first.all()} == {"audio", "video"}
    capture.release()


@pytest.mark.asyncio
async def test_concurrent_acquire_shares_one_open():
    capture = SyntheticMediaCapture(audio=False)
    a, b = await asyncio.gather(capture.acquire(), capture.acquire())
    assert a is b
    assert a.audio is None
    assert a.video.kind == "video"
    capture.release()


@pytest.mark.asyncio
async def test_release_stops_tracks_and_allows_reacquire():
    capture = SyntheticMediaCapture()
    tracks = await capture.acquire()
    capture.release()
    assert capture.tracks is None
    assert all(t.readyState == "ended" for t in tracks.all())
    capture.release()

    again = await capture.acquire()
    assert again is not tracks
    assert all(t.readyState == "live" for t in again.all())
    capture.release()


def test_tracks_stop_is_repeatable():
    tracks = Tracks()
    assert tracks.all() == []
    tracks.stop()
    tracks.stop()


@pytest.mark.asyncio
async def test_missing_device_is_unavailable(tmp_path):
    capture = DeviceMediaCapture(video_device=str(tmp_path / "no-such-camera"))
    with pytest.raises(DeviceUnavailable):
        await capture.acquire()
    assert capture.tracks is None


@pytest.mark.asyncio
async def test_no_devices_configured_is_unavailable():
    capture = DeviceMediaCapture()
    with pytest.raises(DeviceUnavailable):
        await capture.acquire()


class _Player:
    def __init__(self, audio=None, video=None):
        self.audio = audio
        self.video = video


@pytest.mark.asyncio
async def test_failed_audio_open_releases_video_device(monkeypatch):
    camera = VideoStreamTrack()

    def open_player(file, format=None, options=None):
        if file == "/dev/video0":
            return _Player(video=camera)
        raise FileNotFoundError(2, "No such file or directory", file)

    monkeypatch.setattr(media, "MediaPlayer", open_player)
    capture = DeviceMediaCapture(video_device="/dev/video0", audio_device="missing-mic")
    with pytest.raises(DeviceUnavailable):
        await capture.acquire()
    assert camera.readyState == "ended"
    assert capture.tracks is None


@pytest.mark.asyncio
async def test_devices_without_usable_streams_are_released(monkeypatch):
    stray_audio, stray_video = AudioStreamTrack(), VideoStreamTrack()
    players = {"/dev/video0": _Player(audio=stray_audio), "mic": _Player(video=stray_video)}
    monkeypatch.setattr(media, "MediaPlayer", lambda file, format=None, options=None: players[file])

    capture = DeviceMediaCapture(video_device="/dev/video0", audio_device="mic")
    with pytest.raises(DeviceUnavailable):
        await capture.acquire()
    assert stray_audio.readyState == "ended"
    assert stray_video.readyState == "ended"
