"""Task lifecycle state machine and the per-task log buffer.

A task is either ``stopped`` or ``running``. Every action is accepted from
either state, re-asserts its target status and appends one log entry.
Every appended entry is persisted and then published to the task's
watchers while the state lock is still held, so watchers see entries in
append order.
"""

from __future__ import annotations

from typing import Callable, Optional

from loguru import logger

from .constants import LOG_TYPES, TASK_STATUS_RUNNING, TASK_STATUS_STOPPED
from .domain.models import LogEntry, Task
from .errors import ValidationError
from .events.bus import EventBus
from .storage.container import Container

# action -> (target status, log message)
TRANSITIONS: dict[str, tuple[str, str]] = {
    "start": (TASK_STATUS_RUNNING, "Task started"),
    "stop": (TASK_STATUS_STOPPED, "Task stopped"),
    "restart": (TASK_STATUS_RUNNING, "Task restarted"),
}


class TaskLifecycle:
    def __init__(self, container: Container, bus: EventBus) -> None:
        self._container = container
        self._bus = bus

    def transition(self, task_id: str, action: str) -> Task:
        if action not in TRANSITIONS:
            raise ValidationError(f"Invalid action: {action!r}")
        target, message = TRANSITIONS[action]
        entry = LogEntry(message=message, type="info")

        def _apply(task: Task) -> None:
            task.status = target  # type: ignore[assignment]
            if action == "start":
                task.stats.start_time = entry.timestamp

        task = self._append(task_id, entry, _apply)
        logger.info("Task {} {} -> {}", task_id, action, task.status)
        return task

    def start(self, task_id: str) -> Task:
        return self.transition(task_id, "start")

    def stop(self, task_id: str) -> Task:
        return self.transition(task_id, "stop")

    def restart(self, task_id: str) -> Task:
        return self.transition(task_id, "restart")

    def record_event(self, task_id: str, message: str, log_type: str = "info") -> LogEntry:
        """Append an operational event to the task log."""
        if log_type not in LOG_TYPES:
            raise ValidationError(f"Invalid log type: {log_type!r}")
        if not str(message or "").strip():
            raise ValidationError("Log message required")
        entry = LogEntry(message=str(message), type=log_type)  # type: ignore[arg-type]
        self._append(task_id, entry)
        return entry

    def record_outcome(self, task_id: str, ok: bool, detail: str = "") -> Task:
        """Count one delivery attempt and log it."""
        if ok:
            entry = LogEntry(message=detail or "Message sent", type="success")
        else:
            entry = LogEntry(message=detail or "Message failed", type="error")

        def _count(task: Task) -> None:
            if ok:
                task.stats.sent += 1
                task.stats.last_success = entry.timestamp
            else:
                task.stats.failed += 1

        return self._append(task_id, entry, _count)

    def record_loop(self, task_id: str) -> Task:
        """Count one completed pass over the message list."""
        entry = LogEntry(message="", type="info")

        def _loop(task: Task) -> None:
            task.stats.loops += 1
            entry.message = f"Loop {task.stats.loops} completed"

        return self._append(task_id, entry, _loop)

    def _append(
        self,
        task_id: str,
        entry: LogEntry,
        mutate: Optional[Callable[[Task], None]] = None,
    ) -> Task:
        def _apply(task: Task) -> None:
            if mutate is not None:
                mutate(task)
            task.append_log(entry)

        with self._container.lock:
            task = self._container.tasks.update(task_id, _apply)
            self._bus.emit_log(task_id, entry)
        return task
