"""
Presence listing.
"""

from fastapi import APIRouter

from chatforum.api.deps import CurrentUser, Hub
from chatforum.schemas.moderation import PresenceResponse

router = APIRouter()


@router.get("", response_model=PresenceResponse)
async def list_online(user: CurrentUser, hub: Hub):
    """Display names currently online."""
    names = hub.registry.sorted_display_names()
    return PresenceResponse(online=names, count=len(names))
