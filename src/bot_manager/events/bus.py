from __future__ import annotations

from typing import Any

from ..domain.models import LogEntry, Task
from .hub import TaskEventHub


def log_message(task_id: str, entry: LogEntry) -> dict[str, Any]:
    return {"type": "log", "taskId": task_id, "log": entry.to_dict()}


def task_update_message(task: Task) -> dict[str, Any]:
    return {"type": "task_update", "taskId": task.id, "task": task.to_payload()}


class EventBus:
    def __init__(self, hub: TaskEventHub) -> None:
        self._hub = hub

    @property
    def hub(self) -> TaskEventHub:
        return self._hub

    def emit_log(self, task_id: str, entry: LogEntry) -> int:
        return self._hub.publish(task_id, log_message(task_id, entry))

    def send_snapshot(self, conn_id: str, task: Task) -> bool:
        return self._hub.send(conn_id, task_update_message(task))

    def task_deleted(self, task_id: str) -> int:
        return self._hub.close_topic(task_id)
