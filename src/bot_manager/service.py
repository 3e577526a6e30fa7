"""Application service behind the HTTP and event-channel surfaces.

Every task-scoped operation checks, in this order: the task exists
(``NotFoundError``), then the principal may access it
(``AuthorizationError``). Admin operations check the role first.
"""

from __future__ import annotations

import time
from typing import Any, Optional

from loguru import logger

from .auth import AuthGateway
from .constants import DEFAULT_DELAY_SECONDS, ROLE_USER, TASK_STATUS_RUNNING
from .domain.models import Principal, Task, TaskConfig, User, split_messages
from .errors import PersistenceError, ValidationError
from .events.bus import EventBus
from .lifecycle import TaskLifecycle
from .storage.container import Container


def _require_text(value: Optional[str], label: str) -> str:
    text = str(value or "").strip()
    if not text:
        raise ValidationError(f"Missing required field: {label}")
    return text


def _non_negative_int(value: Any, label: str, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{label} must be an integer") from exc
    if number < 0:
        raise ValidationError(f"{label} must not be negative")
    return number


class BotManagerService:
    def __init__(
        self,
        container: Container,
        auth: AuthGateway,
        bus: EventBus,
        lifecycle: Optional[TaskLifecycle] = None,
    ) -> None:
        self.container = container
        self.auth = auth
        self.bus = bus
        self.lifecycle = lifecycle or TaskLifecycle(container, bus)
        self._started = time.monotonic()

    # -- sessions ----------------------------------------------------------

    def login(self, username: str, password: str) -> tuple[Principal, str]:
        return self.auth.login(username, password)

    def logout(self, principal: Principal) -> None:
        self.auth.logout(principal)
        self.bus.hub.drop_session(principal.session_id)

    # -- tasks -------------------------------------------------------------

    def _load_authorized(self, principal: Principal, task_id: str) -> Task:
        task = self.container.tasks.get(task_id)
        self.auth.authorize_task_access(principal, task)
        return task

    def list_tasks(self, principal: Principal) -> list[Task]:
        with self.container.lock:
            return [t for t in self.container.tasks.list() if self.auth.can_access_task(principal, t)]

    def get_task(self, principal: Principal, task_id: str) -> Task:
        with self.container.lock:
            return self._load_authorized(principal, task_id)

    def create_task(
        self,
        principal: Principal,
        *,
        name: Optional[str],
        thread_id: Optional[str],
        credential_content: Optional[str],
        messages: Optional[str],
        delay: Any = DEFAULT_DELAY_SECONDS,
        haters_name: str = "",
        last_here_name: str = "",
        max_messages: Any = 0,
        auto_restart: bool = False,
    ) -> Task:
        """Create a stopped task owned by ``principal``.

        Raises:
            ValidationError: If a required field is missing or invalid.
            PersistenceError: If the task or its credential could not be stored.
        """
        task_name = _require_text(name, "name")
        thread = _require_text(thread_id, "threadID")
        if not str(credential_content or "").strip():
            raise ValidationError("Missing required field: cookieContent")
        lines = split_messages(_require_text(messages, "messages"))
        if not lines:
            raise ValidationError("Message file contains no messages")

        task = Task(
            name=task_name,
            owner=principal.username,
            config=TaskConfig(
                thread_id=thread,
                delay=_non_negative_int(delay, "delay", DEFAULT_DELAY_SECONDS),
                haters_name=str(haters_name or ""),
                last_here_name=str(last_here_name or ""),
                max_messages=_non_negative_int(max_messages, "maxMessages", 0),
                auto_restart=bool(auto_restart),
            ),
            messages=lines,
        )

        container = self.container
        with container.lock:
            container.users.get(principal.username)
            with container.transaction():
                container.credentials.write(task.id, str(credential_content))
                try:
                    container.tasks.create(task)
                    container.users.add_task(principal.username, task.id)
                except BaseException:
                    try:
                        container.credentials.delete(task.id)
                    except PersistenceError as exc:
                        logger.error("Could not remove credential of failed task {}: {}", task.id, exc)
                    raise
        logger.info("Task {} ({!r}) created by {}", task.id, task.name, principal.username)
        return task

    def control_task(self, principal: Principal, task_id: str, action: str) -> Task:
        with self.container.lock:
            self._load_authorized(principal, task_id)
            return self.lifecycle.transition(task_id, action)

    def delete_task(self, principal: Principal, task_id: str) -> None:
        """Delete a task, its credential blob, and its entry in the owner's set."""
        container = self.container
        with container.lock:
            task = self._load_authorized(principal, task_id)
            credential: Optional[str] = None
            if container.credentials.exists(task_id):
                credential = container.credentials.read(task_id)
            with container.transaction():
                container.credentials.delete(task_id)
                try:
                    container.tasks.delete(task_id)
                    container.users.remove_task(task.owner, task_id)
                except BaseException:
                    if credential is not None:
                        container.credentials.write(task_id, credential)
                    raise
            self.bus.task_deleted(task_id)
        logger.info("Task {} deleted by {}", task_id, principal.username)

    def watch_task(self, principal: Principal, conn_id: str, task_id: str) -> Task:
        """Subscribe a connection to a task and queue its full snapshot.

        Done under the state lock so no log entry can slip between the
        snapshot and the first incremental event.
        """
        with self.container.lock:
            task = self._load_authorized(principal, task_id)
            self.bus.hub.subscribe(conn_id, task_id)
            self.bus.send_snapshot(conn_id, task)
        return task

    # -- administration ----------------------------------------------------

    def list_users(self, principal: Principal) -> list[User]:
        self.auth.authorize_admin(principal)
        return self.container.users.list_all()

    def create_user(self, principal: Principal, username: str, password: str, role: str = ROLE_USER) -> User:
        self.auth.authorize_admin(principal)
        user = self.container.users.create(username, password, role)
        logger.info("User {} ({}) created by {}", user.username, user.role, principal.username)
        return user

    def delete_user(self, principal: Principal, username: str) -> None:
        """Delete an account. Its tasks are kept and become admin-only."""
        self.auth.authorize_admin(principal)
        if username == principal.username:
            raise ValidationError("You cannot delete yourself")
        with self.container.lock:
            user = self.container.users.delete(username)
        dropped = self.auth.drop_user_sessions(username)
        self.bus.hub.drop_principal(username)
        if user.tasks:
            logger.warning("User {} deleted; {} task(s) are now orphaned", username, len(user.tasks))
        logger.info("User {} deleted by {} ({} session(s) closed)", username, principal.username, dropped)

    def system_stats(self, principal: Principal) -> dict[str, Any]:
        self.auth.authorize_admin(principal)
        with self.container.lock:
            total_users = self.container.users.count()
            total_tasks = self.container.tasks.count()
            running = self.container.tasks.count(TASK_STATUS_RUNNING)
        return {
            "totalUsers": total_users,
            "totalTasks": total_tasks,
            "runningTasks": running,
            "activeConnections": self.bus.hub.connection_count,
            "activeSessions": self.auth.session_count,
            "uptime": round(time.monotonic() - self._started, 3),
        }

