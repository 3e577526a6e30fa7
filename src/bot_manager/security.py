"""Password hashing primitive (bcrypt)."""

from __future__ import annotations

import bcrypt

from .constants import DEFAULT_PASSWORD_ROUNDS


def hash_password(password: str, rounds: int = DEFAULT_PASSWORD_ROUNDS) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash.
        return False
