"""
Live status streaming to connected observers.
"""

from swap_engine.streaming.hub import BroadcastHub, Sink, Subscription

__all__ = ["BroadcastHub", "Sink", "Subscription"]
