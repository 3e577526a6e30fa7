from .bus import EventBus
from .hub import Connection, TaskEventHub

__all__ = ["Connection", "EventBus", "TaskEventHub"]
