from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator

from filelock import FileLock, Timeout
from loguru import logger

from ..config import AppConfig
from ..constants import CREDENTIALS_DIR, LOCK_FILE, TASKS_FILE, USERS_FILE
from ..errors import PersistenceError
from .bootstrap import ensure_state_root, seed_users
from .file_repos import CredentialVault, FileTaskStore, FileUserStore


class Container:
    """Process-scoped owner of the stores.

    One coarse re-entrant lock guards both registries. ``transaction()`` is
    used for operations that touch both stores; it restores both when a
    failure follows a mutation that already reached disk.
    """

    def __init__(self, config: AppConfig) -> None:
        self.config = config
        self.data_dir = ensure_state_root(config.data_dir)
        self.lock = threading.RLock()

        self._process_lock = FileLock(str(self.data_dir / LOCK_FILE))
        try:
            self._process_lock.acquire(timeout=0)
        except Timeout as exc:
            raise PersistenceError(f"Data directory {self.data_dir} is in use by another process") from exc

        try:
            self.users = FileUserStore(
                self.data_dir / USERS_FILE,
                self.lock,
                password_rounds=config.password_rounds,
            )
            self.tasks = FileTaskStore(self.data_dir / TASKS_FILE, self.lock)
            self.credentials = CredentialVault(self.data_dir / CREDENTIALS_DIR)

            if not self.users.load():
                seed_users(self.users, admin_password=config.admin_password)
            self.tasks.load()
        except BaseException:
            self._process_lock.release()
            raise
        logger.info(
            "State loaded from {} ({} users, {} tasks)",
            self.data_dir,
            self.users.count(),
            self.tasks.count(),
        )

    @contextmanager
    def transaction(self) -> Iterator["Container"]:
        """Group mutations of both stores.

        If the block raises after some mutation reached disk, both
        registries are restored and rewritten. A block that fails before
        mutating anything leaves state and files untouched.
        """
        with self.lock:
            users, tasks = self.users.registry, self.tasks.registry
            users_snapshot = users.snapshot()
            tasks_snapshot = tasks.snapshot()
            revisions = (users.revision, tasks.revision)
            try:
                yield self
            except BaseException:
                if (users.revision, tasks.revision) != revisions:
                    users.restore(users_snapshot)
                    tasks.restore(tasks_snapshot)
                    try:
                        self._flush_locked()
                    except PersistenceError as exc:
                        logger.error("Could not resync state after failed transaction: {}", exc)
                raise

    def _flush_locked(self) -> None:
        self.tasks.flush()
        self.users.flush()

    def flush(self) -> None:
        with self.lock:
            self._flush_locked()

    def close(self) -> None:
        try:
            self.flush()
        finally:
            if self._process_lock.is_locked:
                self._process_lock.release()
