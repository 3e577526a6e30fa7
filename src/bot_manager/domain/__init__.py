from .models import LogEntry, Principal, Task, TaskConfig, TaskStats, User, split_messages

__all__ = ["LogEntry", "Principal", "Task", "TaskConfig", "TaskStats", "User", "split_messages"]
