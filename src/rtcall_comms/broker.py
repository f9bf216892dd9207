"""Message broker for routing inbound relay events to topic queues.

The relay delivers JSON frames of the form ``{"event": ..., "payload": {...}}``.
The Broker normalizes them and queues the ones the session controller
understands on the ``relay`` topic, in arrival order.  Everything else is
logged and discarded.
"""

import asyncio
import logging
from typing import Any, Dict

from .types import INBOUND_EVENTS

logger = logging.getLogger(__name__)

RELAY_TOPIC = "relay"


class Broker:
    """Routes decoded relay frames to per-topic asyncio queues.

    A single topic is used for all session events so that the controller
    sees them in exactly the order the relay delivered them.
    """

    def __init__(self, maxsize: int = 512):
        """Initialize the broker with empty topic collections.

        :param maxsize: Maximum size of each topic queue.
        :type maxsize: int
        """
        self.maxsize = maxsize
        self.queues: Dict[str, asyncio.Queue] = {}

    def topic_queue(self, topic: str) -> asyncio.Queue:
        """Get or create a queue for the specified topic.

        :param topic: The topic name for the queue.
        :type topic: str
        :return: The asyncio Queue for the topic.
        :rtype: asyncio.Queue
        """
        if topic not in self.queues:
            self.queues[topic] = asyncio.Queue(maxsize=self.maxsize)
        return self.queues[topic]

    def publish(self, msg: Dict[str, Any]) -> bool:
        """Route an incoming message to its topic queue.

        Frames without a ``payload`` object are accepted with their remaining
        top-level keys as the payload, since some relays flatten the envelope.

        :param msg: Decoded relay frame, expected to have an ``event`` key.
        :type msg: Dict[str, Any]
        :return: True if the message was queued, False if it was discarded.
        :rtype: bool
        """
        ev = msg.get("event", "")
        payload = msg.get("payload")
        if not isinstance(payload, dict):
            payload = {k: v for k, v in msg.items() if k != "event"}

        if ev not in INBOUND_EVENTS:
            logger.debug("Discarding unknown relay event %r", ev)
            return False

        try:
            self.topic_queue(RELAY_TOPIC).put_nowait({"event": ev, "payload": payload})
        except asyncio.QueueFull:
            logger.warning("Relay queue full, dropping %s", ev)
            return False
        return True

    def clear(self) -> None:
        """Drop everything still queued on every topic."""
        for queue in self.queues.values():
            while not queue.empty():
                queue.get_nowait()
                queue.task_done()
