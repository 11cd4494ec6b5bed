"""
API v1 routes.
"""

from fastapi import APIRouter

from chatforum.api.v1 import admin, auth, presence

router = APIRouter()

router.include_router(auth.router, prefix="/auth", tags=["Authentication"])
router.include_router(admin.router, prefix="/admin", tags=["Moderation"])
router.include_router(presence.router, prefix="/presence", tags=["Presence"])
