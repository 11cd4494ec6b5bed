"""
Append-only audit logging.
"""

from chatforum.kernel.events.event_store import EventStore

__all__ = ["EventStore"]
