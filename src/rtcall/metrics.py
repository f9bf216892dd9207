"""Prometheus metrics for the call client.

Centralized metric definitions shared by the signaling channel and the
session controller.
"""

import logging
from typing import Any, Tuple
from prometheus_client import start_http_server, Counter, Histogram

# Counters are process wide; label values stay low cardinality.
calls_started = Counter("rtcall_calls_started_total", "start_call invocations that began a session")
joins_sent = Counter("rtcall_joins_sent_total", "join-room messages sent to the relay")
call_state_changes = Counter("rtcall_call_state_changes_total", "Call state transitions", ["state"])
channel_reconnects = Counter("rtcall_channel_reconnects_total", "Relay connect attempts after the first")
protocol_violations = Counter("rtcall_protocol_violations_total", "Discarded out-of-protocol messages", ["kind"])
dropped_candidates = Counter("rtcall_dropped_candidates_total", "ICE candidates dropped", ["direction"])
negotiation_latency = Histogram("rtcall_negotiation_latency_seconds", "Offer/answer round time")


def start_metrics_server(port: int, logger: logging.Logger, addr: str = "0.0.0.0") -> Tuple[Any, Any]:
    """Expose the registry over HTTP for Prometheus to scrape.

    A bind failure is logged and the call runs on without metrics.

    :return: ``(server, thread)``, or ``(None, None)`` if the server did not start.
    """
    try:
        started = start_http_server(port, addr=addr)
    except OSError as e:
        logger.error("Metrics endpoint %s:%d unavailable: %s", addr, port, e)
        return None, None
    # Older prometheus_client releases return None instead of the pair.
    server, thread = started if isinstance(started, tuple) else (started, None)
    logger.info("Serving metrics on %s:%d", addr, port)
    return server, thread
