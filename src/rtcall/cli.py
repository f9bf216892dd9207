"""rtcall: join a room on a rendezvous relay and hold a two-party WebRTC call.

What it does
------------
- Connects to the relay over WebSocket (bounded reconnection)
- Captures local media from devices, or synthetic silence/black frames
- Joins the room, negotiates with the other participant and keeps the call up
- Ends the call on SIGINT/SIGTERM, when the peer leaves, or on failure
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import Optional

from aiortc.contrib.media import MediaBlackhole

from rtcall_comms import (
    CallSnapshot,
    CallState,
    DeviceMediaCapture,
    MediaCapture,
    SessionController,
    SignalingChannel,
    SyntheticMediaCapture,
)

from .config import Settings
from .logging import setup_logging
from .metrics import start_metrics_server
from .webrtc import build_configuration


def build_capture(settings: Settings) -> MediaCapture:
    """Create the media source selected by ``settings.media_source``."""
    if settings.media_source == "device":
        return DeviceMediaCapture(
            video_device=settings.video_device,
            audio_device=settings.audio_device if settings.audio else None,
            fmt=settings.media_format,
        )
    return SyntheticMediaCapture(audio=settings.audio)


async def run_call(settings: Settings, logger: logging.Logger) -> int:
    """Hold one call until it ends.

    :return: Process exit code, 1 if the call failed.
    """
    channel = SignalingChannel(
        settings.relay_ws,
        max_attempts=settings.connect_attempts,
        backoff_max=settings.backoff_max,
    )
    controller = SessionController(
        settings.room_id,
        settings.user_id,
        channel,
        build_capture(settings),
        configuration=build_configuration(
            settings.stun_urls, settings.turn_url, settings.turn_user, settings.turn_pass
        ),
    )

    done = asyncio.Event()
    final: Optional[CallSnapshot] = None
    sink = MediaBlackhole()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, done.set)
        except (NotImplementedError, RuntimeError):
            pass

    def on_snapshot(snapshot: CallSnapshot) -> None:
        nonlocal final
        logger.info("relay=%s remote=%s state=%s%s",
                    "up" if snapshot.connected else "down",
                    snapshot.remote_user_id or "-",
                    snapshot.call_state.value,
                    f" ({snapshot.failure})" if snapshot.failure else "")
        if snapshot.call_state in (CallState.FAILED, CallState.DISCONNECTED):
            final = snapshot
            done.set()

    def on_track(track) -> None:
        logger.info("Receiving remote %s", track.kind)
        sink.addTrack(track)

    controller.add_listener(on_snapshot)
    controller.add_track_listener(on_track)

    logger.info("Calling in room %s as %s", settings.room_id, settings.user_id)
    async with controller:
        await sink.start()
        await controller.start_call()
        await done.wait()
    await sink.stop()

    if final is not None and final.call_state is CallState.FAILED:
        logger.error("Call failed: %s", final.failure)
        return 1
    return 0


async def main() -> int:
    """Main entry point for the rtcall client."""
    p = argparse.ArgumentParser("rtcall", description="Two-party WebRTC call through a rendezvous relay")
    p.add_argument("--ws", default=None, help="Relay URL, ws://host:port/path")
    p.add_argument("--room", default=None, help="Room to join")
    p.add_argument("--user", default=None, help="Participant id (random when omitted)")
    p.add_argument("--media", choices=["synthetic", "device"], default=None, help="Local media source")
    p.add_argument("--video-device", default=None, help="FFmpeg video input, e.g. /dev/video0")
    p.add_argument("--audio-device", default=None, help="FFmpeg audio input, e.g. default")
    p.add_argument("--format", dest="media_format", default=None, help="FFmpeg input format, e.g. v4l2")
    p.add_argument("--no-audio", dest="audio", action="store_false", help="Do not send audio")
    p.add_argument("--metrics-port", type=int, help="Prometheus metrics port (0 disables)")
    p.add_argument("--loglevel", default=None, help="Logging level")
    p.add_argument("--healthcheck", action="store_true", help="Validate configuration and exit")
    p.set_defaults(audio=None)

    args = p.parse_args()

    settings = Settings.from_env()
    overrides = {
        "room_id": args.room,
        "user_id": args.user,
        "media_source": args.media,
        "video_device": args.video_device,
        "audio_device": args.audio_device,
        "media_format": args.media_format,
        "audio": args.audio,
        "metrics_port": args.metrics_port,
    }
    for name, value in overrides.items():
        if value is not None:
            setattr(settings, name, value)
    if args.ws:
        settings.relay_ws = args.ws
    if args.loglevel:
        settings.log_level = args.loglevel

    errors = settings.validate()
    if args.healthcheck or errors:
        if errors:
            print("Configuration validation failed:", file=sys.stderr)
            for error in errors:
                print(f"  - {error}", file=sys.stderr)
            return 1
        print("ok")
        return 0

    setup_logging(settings.log_level, settings.log_format, settings.log_file)
    logger = logging.getLogger("rtcall")

    metrics_server = None
    if settings.metrics_port:
        metrics_server, _ = start_metrics_server(settings.metrics_port, logger)

    try:
        return await run_call(settings, logger)
    finally:
        if metrics_server and hasattr(metrics_server, "shutdown"):
            try:
                metrics_server.shutdown()
                logger.info("Metrics server shut down")
            except Exception as e:
                logger.error("Error shutting down metrics server: %s", e)


def cli() -> None:
    """Synchronous console entrypoint wrapper for packaging."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
