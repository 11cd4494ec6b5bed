"""
Password hashing utilities using bcrypt.
"""

from typing import Optional

import bcrypt

from chatforum.config import get_settings

# bcrypt only looks at the first 72 bytes
BCRYPT_MAX_BYTES = 72


class PasswordHasher:
    """Password hashing service."""

    def __init__(self, rounds: Optional[int] = None):
        self.rounds = rounds or get_settings().bcrypt_rounds

    @staticmethod
    def _encode(password: str) -> bytes:
        return password.encode("utf-8")[:BCRYPT_MAX_BYTES]

    def hash(self, password: str) -> str:
        """Hash a password with a fresh salt."""
        salt = bcrypt.gensalt(rounds=self.rounds)
        return bcrypt.hashpw(self._encode(password), salt).decode("utf-8")

    def verify(self, plain_password: str, hashed_password: str) -> bool:
        """Check a password against a stored hash. Malformed hashes never match."""
        try:
            return bcrypt.checkpw(self._encode(plain_password), hashed_password.encode("utf-8"))
        except ValueError:
            return False


def hash_password(password: str) -> str:
    """Hash a password."""
    return PasswordHasher().hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password."""
    return PasswordHasher().verify(plain_password, hashed_password)
