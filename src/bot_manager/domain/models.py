from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Literal, Optional

from ..constants import (
    DEFAULT_DELAY_SECONDS,
    LOG_CAPACITY,
    LOG_TYPES,
    ROLE_ADMIN,
    ROLES,
    TASK_STATUS_STOPPED,
    TASK_STATUSES,
)
from ..utils import _new_id, _now_iso


TaskStatus = Literal["stopped", "running"]
LogType = Literal["info", "success", "error", "warning"]
Role = Literal["admin", "user"]


def split_messages(text: str) -> list[str]:
    """Split uploaded message text into lines, dropping blank ones."""
    return [line.strip() for line in str(text or "").splitlines() if line.strip()]


@dataclass
class LogEntry:
    message: str = ""
    type: LogType = "info"
    timestamp: str = field(default_factory=_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {"timestamp": self.timestamp, "message": self.message, "type": self.type}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LogEntry":
        log_type = str(data.get("type") or "info")
        if log_type not in LOG_TYPES:
            raise ValueError(f"Unknown log type: {log_type}")
        return cls(
            message=str(data.get("message") or ""),
            type=log_type,  # type: ignore[arg-type]
            timestamp=str(data.get("timestamp") or _now_iso()),
        )


@dataclass
class TaskConfig:
    thread_id: str = ""
    delay: int = DEFAULT_DELAY_SECONDS
    haters_name: str = ""
    last_here_name: str = ""
    max_messages: int = 0
    auto_restart: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_payload(self) -> dict[str, Any]:
        return {
            "threadID": self.thread_id,
            "delay": self.delay,
            "hatersName": self.haters_name,
            "lastHereName": self.last_here_name,
            "maxMessages": self.max_messages,
            "autoRestart": self.auto_restart,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskConfig":
        return cls(
            thread_id=str(data.get("thread_id") or ""),
            delay=int(data.get("delay", DEFAULT_DELAY_SECONDS)),
            haters_name=str(data.get("haters_name") or ""),
            last_here_name=str(data.get("last_here_name") or ""),
            max_messages=int(data.get("max_messages") or 0),
            auto_restart=bool(data.get("auto_restart", False)),
        )


@dataclass
class TaskStats:
    sent: int = 0
    failed: int = 0
    loops: int = 0
    last_success: Optional[str] = None
    start_time: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_payload(self) -> dict[str, Any]:
        return {
            "sent": self.sent,
            "failed": self.failed,
            "loops": self.loops,
            "lastSuccess": self.last_success,
            "startTime": self.start_time,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskStats":
        return cls(
            sent=int(data.get("sent") or 0),
            failed=int(data.get("failed") or 0),
            loops=int(data.get("loops") or 0),
            last_success=data.get("last_success"),
            start_time=data.get("start_time"),
        )


@dataclass
class Task:
    id: str = field(default_factory=lambda: _new_id("task"))
    name: str = ""
    owner: str = ""
    created: str = field(default_factory=_now_iso)
    status: TaskStatus = TASK_STATUS_STOPPED
    config: TaskConfig = field(default_factory=TaskConfig)
    messages: list[str] = field(default_factory=list)
    stats: TaskStats = field(default_factory=TaskStats)
    logs: list[LogEntry] = field(default_factory=list)

    def append_log(self, entry: LogEntry) -> LogEntry:
        """Prepend ``entry`` and evict the oldest entries beyond capacity."""
        self.logs.insert(0, entry)
        del self.logs[LOG_CAPACITY:]
        return entry

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "owner": self.owner,
            "created": self.created,
            "status": self.status,
            "config": self.config.to_dict(),
            "messages": list(self.messages),
            "stats": self.stats.to_dict(),
            "logs": [entry.to_dict() for entry in self.logs],
        }

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "owner": self.owner,
            "created": self.created,
            "status": self.status,
            **self.config.to_payload(),
            "messages": list(self.messages),
            "stats": self.stats.to_payload(),
            "logs": [entry.to_dict() for entry in self.logs],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        task_id = str(data.get("id") or "").strip()
        if not task_id:
            raise ValueError("Task record without id")
        status = str(data.get("status") or TASK_STATUS_STOPPED)
        if status not in TASK_STATUSES:
            raise ValueError(f"Task {task_id} has unknown status {status!r}")
        logs = [LogEntry.from_dict(item) for item in list(data.get("logs") or []) if isinstance(item, dict)]
        return cls(
            id=task_id,
            name=str(data.get("name") or ""),
            owner=str(data.get("owner") or ""),
            created=str(data.get("created") or _now_iso()),
            status=status,  # type: ignore[arg-type]
            config=TaskConfig.from_dict(dict(data.get("config") or {})),
            messages=[str(m) for m in list(data.get("messages") or []) if str(m).strip()],
            stats=TaskStats.from_dict(dict(data.get("stats") or {})),
            logs=logs[:LOG_CAPACITY],
        )


@dataclass
class User:
    username: str = ""
    password: str = ""
    role: Role = "user"
    tasks: list[str] = field(default_factory=list)
    created: str = field(default_factory=_now_iso)
    last_login: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_summary(self) -> dict[str, Any]:
        # Never includes the password hash.
        return {
            "username": self.username,
            "role": self.role,
            "taskCount": len(self.tasks),
            "created": self.created,
            "lastLogin": self.last_login,
        }

    @classmethod
    def from_dict(cls, username: str, data: dict[str, Any]) -> "User":
        role = str(data.get("role") or "user")
        if role not in ROLES:
            raise ValueError(f"User {username} has unknown role {role!r}")
        password = str(data.get("password") or "")
        if not password:
            raise ValueError(f"User {username} has no password hash")
        tasks: list[str] = []
        for task_id in list(data.get("tasks") or []):
            if str(task_id) not in tasks:
                tasks.append(str(task_id))
        return cls(
            username=username,
            password=password,
            role=role,  # type: ignore[arg-type]
            tasks=tasks,
            created=str(data.get("created") or _now_iso()),
            last_login=data.get("last_login"),
        )


@dataclass(frozen=True)
class Principal:
    """The authenticated identity behind a request or connection."""

    username: str
    role: Role
    session_id: str = ""

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    def to_dict(self) -> dict[str, Any]:
        return {"username": self.username, "role": self.role}
