from __future__ import annotations

import copy
import re
import threading
from pathlib import Path
from typing import Any, Callable, Generic, Optional, TypeVar

from loguru import logger

from ..constants import ROLES, SCHEMA_VERSION
from ..domain.models import Task, User
from ..errors import AuthenticationError, NotFoundError, PersistenceError, ValidationError
from ..io_utils import _atomic_write_text, load_document, save_document
from ..security import hash_password, verify_password
from ..utils import _now_iso
from .interfaces import TaskStore, UserStore


T = TypeVar("T")

_USERNAME_RE = re.compile(r"^[A-Za-z0-9_.-]{1,64}$")
_TASK_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,128}$")


class _YamlRegistry(Generic[T]):
    """In-memory registry mirrored to one YAML document.

    Memory is authoritative; every mutation rewrites the whole document.
    A mutation whose write fails is rolled back before the error propagates.
    """

    def __init__(
        self,
        path: Path,
        key: str,
        lock: threading.RLock,
        loader: Callable[[str, dict[str, Any]], T],
        dumper: Callable[[T], dict[str, Any]],
    ) -> None:
        self._path = path
        self._key = key
        self._lock = lock
        self._loader = loader
        self._dumper = dumper
        self._items: dict[str, T] = {}
        # Bumped by every mutation that reached disk.
        self.revision = 0

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> bool:
        """Load the document. Returns False if the file does not exist."""
        raw = load_document(self._path, self._key)
        if raw is None:
            self._items = {}
            return False
        items: dict[str, T] = {}
        for item_key, item in raw.items():
            try:
                items[str(item_key)] = self._loader(str(item_key), item)
            except (TypeError, ValueError) as exc:
                raise PersistenceError(f"Corrupt state file {self._path}: entry {item_key!r}: {exc}") from exc
        self._items = items
        return True

    def save(self) -> None:
        payload = {item_key: self._dumper(item) for item_key, item in self._items.items()}
        save_document(self._path, self._key, payload, SCHEMA_VERSION)

    def snapshot(self) -> dict[str, T]:
        with self._lock:
            return copy.deepcopy(self._items)

    def restore(self, items: dict[str, T]) -> None:
        with self._lock:
            self._items = items

    def get(self, item_key: str) -> Optional[T]:
        return self._items.get(item_key)

    def values(self) -> list[T]:
        return list(self._items.values())

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, item_key: object) -> bool:
        return item_key in self._items

    def put(self, item_key: str, item: T) -> None:
        previous = self._items.get(item_key)
        self._items[item_key] = item
        try:
            self.save()
        except PersistenceError:
            if previous is None:
                self._items.pop(item_key, None)
            else:
                self._items[item_key] = previous
            raise
        self.revision += 1

    def remove(self, item_key: str) -> T:
        item = self._items.pop(item_key)
        try:
            self.save()
        except PersistenceError:
            self._items[item_key] = item
            raise
        self.revision += 1
        return item


class FileTaskStore(TaskStore):
    def __init__(self, path: Path, lock: threading.RLock) -> None:
        self._lock = lock
        self._registry = _YamlRegistry[Task](
            path,
            "tasks",
            lock,
            loader=lambda _key, data: Task.from_dict(data),
            dumper=lambda t: t.to_dict(),
        )

    @property
    def registry(self) -> _YamlRegistry[Task]:
        return self._registry

    def load(self) -> None:
        with self._lock:
            self._registry.load()
            logger.debug("Loaded {} tasks from {}", len(self._registry), self._registry.path)

    def create(self, task: Task) -> str:
        with self._lock:
            if task.id in self._registry:
                raise ValidationError(f"Task id already exists: {task.id}")
            self._registry.put(task.id, copy.deepcopy(task))
        return task.id

    def get(self, task_id: str) -> Task:
        with self._lock:
            task = self._registry.get(task_id)
            if task is None:
                raise NotFoundError("Task not found")
            return copy.deepcopy(task)

    def exists(self, task_id: str) -> bool:
        with self._lock:
            return task_id in self._registry

    def list(self) -> list[Task]:
        with self._lock:
            return [copy.deepcopy(t) for t in self._registry.values()]

    def count(self, status: Optional[str] = None) -> int:
        with self._lock:
            if status is None:
                return len(self._registry)
            return sum(1 for t in self._registry.values() if t.status == status)

    def update(self, task_id: str, mutator: Callable[[Task], None]) -> Task:
        """Apply ``mutator`` to a copy of the task and persist it."""
        with self._lock:
            current = self._registry.get(task_id)
            if current is None:
                raise NotFoundError("Task not found")
            updated = copy.deepcopy(current)
            mutator(updated)
            if updated.id != task_id:
                raise ValidationError("Task id is immutable")
            self._registry.put(task_id, updated)
            return copy.deepcopy(updated)

    def delete(self, task_id: str) -> Task:
        with self._lock:
            if task_id not in self._registry:
                raise NotFoundError("Task not found")
            return self._registry.remove(task_id)

    def flush(self) -> None:
        with self._lock:
            self._registry.save()


class FileUserStore(UserStore):
    def __init__(self, path: Path, lock: threading.RLock, *, password_rounds: int) -> None:
        self._lock = lock
        self._password_rounds = password_rounds
        self._registry = _YamlRegistry[User](
            path,
            "users",
            lock,
            loader=User.from_dict,
            dumper=lambda u: {k: v for k, v in u.to_dict().items() if k != "username"},
        )

    @property
    def registry(self) -> _YamlRegistry[User]:
        return self._registry

    def load(self) -> bool:
        with self._lock:
            found = self._registry.load()
            logger.debug("Loaded {} users from {}", len(self._registry), self._registry.path)
            return found

    def authenticate(self, username: str, password: str) -> User:
        with self._lock:
            user = self._registry.get(username)
            hashed = user.password if user else ""
        if not user or not verify_password(password, hashed):
            raise AuthenticationError("Invalid credentials")
        return copy.deepcopy(user)

    def get(self, username: str) -> User:
        with self._lock:
            user = self._registry.get(username)
            if user is None:
                raise NotFoundError(f"User not found: {username}")
            return copy.deepcopy(user)

    def find(self, username: str) -> Optional[User]:
        with self._lock:
            user = self._registry.get(username)
            return copy.deepcopy(user) if user else None

    def list_all(self) -> list[User]:
        with self._lock:
            return [copy.deepcopy(u) for u in self._registry.values()]

    def count(self) -> int:
        with self._lock:
            return len(self._registry)

    def create(self, username: str, password: str, role: str = "user") -> User:
        username = str(username or "").strip()
        if not _USERNAME_RE.match(username):
            raise ValidationError("Username must be 1-64 letters, digits, '.', '_' or '-'")
        if not password:
            raise ValidationError("Password required")
        if role not in ROLES:
            raise ValidationError(f"Unknown role: {role}")
        hashed = hash_password(password, self._password_rounds)
        with self._lock:
            if username in self._registry:
                raise ValidationError(f"User already exists: {username}")
            user = User(username=username, password=hashed, role=role)  # type: ignore[arg-type]
            self._registry.put(username, user)
            return copy.deepcopy(user)

    def _mutate(self, username: str, mutator: Callable[[User], None]) -> User:
        with self._lock:
            current = self._registry.get(username)
            if current is None:
                raise NotFoundError(f"User not found: {username}")
            updated = copy.deepcopy(current)
            mutator(updated)
            self._registry.put(username, updated)
            return copy.deepcopy(updated)

    def record_login(self, username: str) -> User:
        def _touch(user: User) -> None:
            user.last_login = _now_iso()

        return self._mutate(username, _touch)

    def add_task(self, username: str, task_id: str) -> User:
        def _add(user: User) -> None:
            if task_id not in user.tasks:
                user.tasks.append(task_id)

        return self._mutate(username, _add)

    def remove_task(self, username: str, task_id: str) -> bool:
        """Remove ``task_id`` from the user's owned set. False if nothing changed."""
        with self._lock:
            user = self._registry.get(username)
            if user is None or task_id not in user.tasks:
                return False

            def _remove(u: User) -> None:
                u.tasks.remove(task_id)

            self._mutate(username, _remove)
            return True

    def delete(self, username: str) -> User:
        with self._lock:
            if username not in self._registry:
                raise NotFoundError(f"User not found: {username}")
            return self._registry.remove(username)

    def flush(self) -> None:
        with self._lock:
            self._registry.save()


class CredentialVault:
    """One credential blob file per task, named after the task id."""

    def __init__(self, root: Path) -> None:
        self._root = root

    def path_for(self, task_id: str) -> Path:
        if not _TASK_ID_RE.match(task_id):
            raise ValidationError(f"Invalid task id: {task_id!r}")
        return self._root / f"credential_{task_id}.txt"

    def write(self, task_id: str, content: str) -> Path:
        path = self.path_for(task_id)
        try:
            _atomic_write_text(path, content)
        except OSError as exc:
            raise PersistenceError(f"Failed to write credential for {task_id}: {exc}") from exc
        return path

    def read(self, task_id: str) -> str:
        path = self.path_for(task_id)
        if not path.exists():
            raise NotFoundError(f"No credential stored for {task_id}")
        return path.read_text(encoding="utf-8")

    def exists(self, task_id: str) -> bool:
        return self.path_for(task_id).exists()

    def delete(self, task_id: str) -> bool:
        path = self.path_for(task_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise PersistenceError(f"Failed to delete credential for {task_id}: {exc}") from exc
        return True
