"""WebSocket client for the rendezvous relay with bounded reconnection.

This module provides the SignalingChannel class that keeps one logical
connection to the relay, reports connectivity transitions to listeners,
routes inbound frames through a Broker and sends outbound frames
immediately.  Outbound messages are never queued: a send while the relay
is unreachable is dropped, and it is up to the session controller to
decide what must be replayed once the channel is back.
"""

import asyncio
import contextlib
import json
import logging
import random
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse, parse_qs, urlencode, urlunparse

import websockets

from rtcall.metrics import channel_reconnects

from .broker import Broker
from .errors import ChannelConnectFailure
from .types import ChannelState

logger = logging.getLogger(__name__)

StateListener = Callable[[ChannelState, Optional[BaseException]], Any]


def _redact_url(url: str) -> str:
    """Mask a ``token`` query parameter before the URL is logged."""
    try:
        parsed = urlparse(url)
        qs = parse_qs(parsed.query)
        if "token" in qs:
            qs["token"] = ["***"]
        safe_q = urlencode(qs, doseq=True)
        return urlunparse((parsed.scheme, parsed.netloc, parsed.path, parsed.params, safe_q, parsed.fragment))
    except ValueError:
        return url


class SignalingChannel:
    """Relay connection with a fixed reconnection budget.

    Connectivity moves through :class:`ChannelState`.  A connect cycle makes up
    to ``max_attempts`` attempts with exponential backoff and jitter, then
    settles in ``FAILED`` and reports a :class:`ChannelConnectFailure` to the
    state listeners.  Losing an established connection starts a new cycle.
    """

    def __init__(self, url: str, max_attempts: int = 5, backoff_base: float = 1.0,
                 backoff_max: float = 10.0, **wsopts):
        """Initialize the signaling channel.

        :param url: WebSocket URL of the relay
        :type url: str
        :param max_attempts: Connection attempts per connect cycle
        :type max_attempts: int
        :param backoff_base: First retry delay in seconds
        :type backoff_base: float
        :param backoff_max: Upper bound for a retry delay in seconds
        :type backoff_max: float
        :param wsopts: Additional WebSocket connection options
        :type wsopts: Any
        """
        self.url = url
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.wsopts = dict(
            ping_interval=30,
            ping_timeout=60,
            max_queue=1024,
            max_size=10_000_000,
            **wsopts
        )
        self.ws = None
        self.broker = Broker()
        self.last_error: Optional[BaseException] = None
        self._state = ChannelState.DISCONNECTED
        self._state_listeners: List[StateListener] = []
        self._connect_task: Optional[asyncio.Task] = None
        self._read_task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def state(self) -> ChannelState:
        """Current connectivity state."""
        return self._state

    def is_connected(self) -> bool:
        """Check if the relay connection is up.

        :return: True if connected, False otherwise.
        :rtype: bool
        """
        return self._state is ChannelState.CONNECTED and self.ws is not None

    def add_state_listener(self, callback: StateListener) -> None:
        """Register a callback for connectivity transitions.

        The callback receives the new state and, for ``FAILED``, the
        :class:`ChannelConnectFailure` that caused it.
        """
        if callback not in self._state_listeners:
            self._state_listeners.append(callback)

    def remove_state_listener(self, callback: StateListener) -> None:
        """Remove a previously registered state callback."""
        with contextlib.suppress(ValueError):
            self._state_listeners.remove(callback)

    def _set_state(self, state: ChannelState, error: Optional[BaseException] = None) -> None:
        if state is self._state:
            return
        logger.info("Relay channel %s -> %s", self._state.value, state.value)
        self._state = state
        for listener in list(self._state_listeners):
            try:
                listener(state, error)
            except Exception as exc:
                logger.error("Channel state listener error: %s", exc, exc_info=True)

    def request_connect(self) -> asyncio.Task:
        """Start a connect cycle in the background unless one is already running.

        :return: The task driving the current connect cycle.
        :rtype: asyncio.Task
        """
        if self._connect_task and not self._connect_task.done():
            return self._connect_task
        self._connect_task = asyncio.create_task(self.connect(), name="relay-connect")
        self._connect_task.add_done_callback(self._consume_connect_result)
        return self._connect_task

    @staticmethod
    def _consume_connect_result(task: asyncio.Task) -> None:
        # Failures are reported through the state listeners.
        if not task.cancelled():
            task.exception()

    async def connect(self) -> "SignalingChannel":
        """Connect to the relay with bounded exponential backoff.

        :return: Self for method chaining.
        :rtype: SignalingChannel
        :raises ChannelConnectFailure: If every attempt in the budget fails.
        """
        if self.is_connected():
            return self

        self._closed = False
        self._set_state(ChannelState.CONNECTING)
        backoff = self.backoff_base
        last_error: Optional[BaseException] = None

        for attempt in range(1, self.max_attempts + 1):
            if self._closed:
                return self
            if attempt > 1:
                channel_reconnects.inc()
            try:
                ws = await websockets.connect(self.url, **self.wsopts)
            except Exception as e:
                last_error = e
                if attempt == self.max_attempts:
                    break
                jitter = random.uniform(0, max(0.25, backoff * 0.25))
                delay = min(backoff + jitter, self.backoff_max)
                logger.error("Relay connect error (attempt %d/%d): %s - retrying in %.2fs",
                             attempt, self.max_attempts, e, delay)
                await asyncio.sleep(delay)
                backoff = min(backoff * 2, self.backoff_max)
                continue

            if self._closed:
                with contextlib.suppress(Exception):
                    await ws.close()
                return self

            self.ws = ws
            self.last_error = None
            logger.info("Relay connected: %s", _redact_url(self.url))
            self._read_task = asyncio.create_task(self._read_loop(ws), name="relay-read")
            self._set_state(ChannelState.CONNECTED)
            return self

        failure = ChannelConnectFailure(self.max_attempts, last_error)
        self.last_error = failure
        logger.error("Giving up on relay %s: %s", _redact_url(self.url), failure)
        self._set_state(ChannelState.FAILED, failure)
        raise failure

    async def send(self, event: str, payload: Dict[str, Any]) -> bool:
        """Send one event to the relay right away.

        :param event: Relay event name
        :type event: str
        :param payload: Event payload
        :type payload: Dict[str, Any]
        :return: True if the frame was handed to the socket, False if dropped.
        :rtype: bool
        """
        ws = self.ws
        if ws is None or self._state is not ChannelState.CONNECTED:
            logger.warning("Relay not connected, dropping %s", event)
            return False
        try:
            await ws.send(json.dumps({"event": event, "payload": payload}, ensure_ascii=False))
        except websockets.ConnectionClosed as e:
            logger.warning("Send of %s failed, relay closed: %s", event, e)
            return False
        return True

    async def _read_loop(self, ws) -> None:
        """Read frames from ``ws`` and route them through the broker.

        When the connection ends without :meth:`close` having been called, a
        new bounded connect cycle is started.
        """
        try:
            async for raw in ws:
                try:
                    msg = json.loads(raw)
                except ValueError:
                    logger.debug("Received non-JSON: %r", raw)
                    continue
                if not isinstance(msg, dict):
                    logger.debug("Received non-object frame: %r", msg)
                    continue
                self.broker.publish(msg)
        except websockets.ConnectionClosed as e:
            logger.warning("Relay closed: %s", e)
        except asyncio.CancelledError:
            logger.info("Relay read loop cancelled")
            raise
        finally:
            if self.ws is ws:
                self.ws = None
                if not self._closed:
                    self._set_state(ChannelState.DISCONNECTED)
                    logger.info("Relay connection lost, reconnecting")
                    self.request_connect()

    async def close(self) -> None:
        """Close the relay connection and stop any connect cycle.

        Safe to call more than once.
        """
        self._closed = True
        tasks = [t for t in (self._connect_task, self._read_task) if t and not t.done()]
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._connect_task = None
        self._read_task = None
        if self.ws:
            with contextlib.suppress(Exception):
                await self.ws.close()
            self.ws = None
        self._set_state(ChannelState.DISCONNECTED)


__all__ = ["SignalingChannel"]
