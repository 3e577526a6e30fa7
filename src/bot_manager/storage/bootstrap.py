from __future__ import annotations

from pathlib import Path

from loguru import logger

from ..constants import CREDENTIALS_DIR, ROLE_ADMIN, SEED_ACCOUNTS
from .file_repos import FileUserStore


def ensure_state_root(data_dir: Path) -> Path:
    root = data_dir.expanduser().resolve()
    root.mkdir(parents=True, exist_ok=True)
    (root / CREDENTIALS_DIR).mkdir(parents=True, exist_ok=True)
    return root


def seed_users(users: FileUserStore, *, admin_password: str) -> list[str]:
    """Create the bootstrap accounts. Only called when no user document exists."""
    created: list[str] = []
    users.create("admin", admin_password, ROLE_ADMIN)
    created.append("admin")
    for username, password, role in SEED_ACCOUNTS:
        users.create(username, password, role)
        created.append(username)
    logger.info("Seeded bootstrap accounts: {}", ", ".join(created))
    return created
