"""Give an existing user the admin role.

Usage: python scripts/grant_admin.py <username>
"""
import asyncio
import sys

sys.path.insert(0, ".")

from chatforum.database import async_session_maker, close_db, init_db
from chatforum.kernel.identity.identity_service import IdentityService
from chatforum.kernel.models.user import RoleName


async def main(username: str) -> int:
    await init_db()
    async with async_session_maker() as session:
        service = IdentityService(session)
        user = await service.get_user_by_username(username)
        if not user:
            print(f"No user named {username!r}")
            return 1
        await service.grant_role(user.id, RoleName.ADMIN)
        await session.commit()
        print(f"{user.username} (id {user.id}) is now an admin")
    await close_db()
    return 0


if __name__ == "__main__":
    if len(sys.argv) != 2:
        print(__doc__)
        sys.exit(2)
    sys.exit(asyncio.run(main(sys.argv[1])))
