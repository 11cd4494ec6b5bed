"""
Presence registry: who is online right now.

Maps a user id to the one live connection that currently owns it. The
registry is in-memory only and starts empty on every process start.
Each method runs without suspending, so every mutation is atomic with
respect to the event loop; sequences of calls are not.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from chatforum.logging_config import get_logger

logger = get_logger(__name__)


class RegisterResult(str, Enum):
    OK = "ok"
    CONFLICT = "conflict"
    REFUSED = "refused"  # a moderation action revoked admission meanwhile


@dataclass
class PresenceEntry:
    """One identity owning one live connection."""

    user_id: int
    display_name: str
    handle: Any
    released: asyncio.Event = field(default_factory=asyncio.Event, repr=False, compare=False)


class PresenceRegistry:
    """
    In-memory user_id -> connection mapping.

    Handles are opaque transport objects. The registry never checks that
    a handle is still open; the transport layer is the authority on that.
    """

    def __init__(self) -> None:
        self._entries: Dict[int, PresenceEntry] = {}
        self._epochs: Dict[int, int] = {}

    def admission_epoch(self, user_id: int) -> int:
        """Counter bumped by revoke_admissions; snapshot it before validating a connection."""
        return self._epochs.get(user_id, 0)

    def revoke_admissions(self, user_id: int) -> None:
        """Make every admission of user_id that started before now fail to register."""
        self._epochs[user_id] = self._epochs.get(user_id, 0) + 1

    def register(
        self,
        user_id: int,
        display_name: str,
        handle: Any,
        epoch: Optional[int] = None,
    ) -> RegisterResult:
        """
        Claim user_id for handle. Never overwrites an existing entry.

        With epoch, the claim is refused when revoke_admissions ran for
        user_id after that epoch was read.
        """
        if epoch is not None and epoch != self.admission_epoch(user_id):
            return RegisterResult.REFUSED
        if user_id in self._entries:
            return RegisterResult.CONFLICT
        self._entries[user_id] = PresenceEntry(user_id, display_name, handle)
        return RegisterResult.OK

    def unregister(self, user_id: int) -> None:
        """Remove the entry for user_id, whatever handle owns it. No-op if absent."""
        entry = self._entries.pop(user_id, None)
        if entry is not None:
            entry.released.set()

    def unregister_handle(self, user_id: int, handle: Any) -> bool:
        """Remove the entry only if it still belongs to handle."""
        entry = self._entries.get(user_id)
        if entry is None or entry.handle is not handle:
            return False
        del self._entries[user_id]
        entry.released.set()
        return True

    def lookup_handle(self, user_id: int) -> Optional[Any]:
        entry = self._entries.get(user_id)
        return entry.handle if entry else None

    def lookup(self, user_id: int) -> Optional[PresenceEntry]:
        return self._entries.get(user_id)

    def is_online(self, user_id: int) -> bool:
        return user_id in self._entries

    def list_display_names(self) -> Set[str]:
        return {entry.display_name for entry in self._entries.values()}

    def sorted_display_names(self) -> List[str]:
        """Display names in a stable order for the presence broadcast."""
        return sorted(self.list_display_names(), key=str.lower)

    def entries(self) -> List[PresenceEntry]:
        return list(self._entries.values())

    async def wait_released(self, user_id: int, handle: Any, timeout: float) -> bool:
        """
        Wait until handle no longer owns user_id.

        Returns True as soon as the entry is gone (or already belongs to
        someone else), False if it is still held after timeout seconds.
        """
        entry = self._entries.get(user_id)
        if entry is None or entry.handle is not handle:
            return True
        try:
            await asyncio.wait_for(entry.released.wait(), timeout)
        except asyncio.TimeoutError:
            logger.debug("Presence entry for user %s not released after %.3fs", user_id, timeout)
            return False
        return True

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._entries
