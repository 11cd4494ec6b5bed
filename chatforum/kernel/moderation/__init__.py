"""
Moderation persistence - punishment records.
"""

from chatforum.kernel.moderation.punishment_store import PunishmentStore

__all__ = ["PunishmentStore"]
