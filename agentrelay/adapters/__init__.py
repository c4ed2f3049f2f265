"""Adapters package - Bridge between the orchestrator and a transport.

This package contains the canonical event model, the event bus, and
the transport bridge that turns canonical events into the messages a
remote operator sees.
"""
from __future__ import annotations

__all__ = [
    "EventBus",
    "Subscription",
    "Transport",
    "TransportBridge",
    "ConsoleTransport",
]

from agentrelay.adapters.event_bus import EventBus, Subscription
from agentrelay.adapters.transport import ConsoleTransport, Transport, TransportBridge
