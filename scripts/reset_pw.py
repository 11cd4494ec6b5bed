"""Set a new password for a user and revoke all of their sessions.

Usage: python scripts/reset_pw.py <username> <new password>
"""
import asyncio
import sys

sys.path.insert(0, ".")

from chatforum.database import close_db, init_db, async_session_maker, transaction
from chatforum.kernel.identity.identity_service import IdentityService
from chatforum.kernel.identity.password import hash_password
from chatforum.kernel.identity.session_store import SessionStore


async def main(username: str, new_password: str) -> int:
    await init_db()
    async with transaction(async_session_maker) as session:
        user = await IdentityService(session).get_user_by_username(username)
        if not user:
            print(f"No user named {username!r}")
            return 1
        user.password_hash = hash_password(new_password)
        revoked = await SessionStore(session).invalidate_all_for_user(user.id)
    print(f"Updated password for {username}; revoked {revoked} session(s)")
    await close_db()
    return 0


if __name__ == "__main__":
    if len(sys.argv) != 3:
        print(__doc__)
        sys.exit(2)
    sys.exit(asyncio.run(main(sys.argv[1], sys.argv[2])))
