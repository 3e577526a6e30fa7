from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Callable

from ..domain.models import Task, User


class TaskStore(ABC):
    @abstractmethod
    def create(self, task: Task) -> str:
        raise NotImplementedError

    @abstractmethod
    def get(self, task_id: str) -> Task:
        raise NotImplementedError

    @abstractmethod
    def list(self) -> list[Task]:
        raise NotImplementedError

    @abstractmethod
    def update(self, task_id: str, mutator: Callable[[Task], None]) -> Task:
        raise NotImplementedError

    @abstractmethod
    def delete(self, task_id: str) -> Task:
        raise NotImplementedError

    @abstractmethod
    def flush(self) -> None:
        raise NotImplementedError


class UserStore(ABC):
    @abstractmethod
    def authenticate(self, username: str, password: str) -> User:
        raise NotImplementedError

    @abstractmethod
    def get(self, username: str) -> User:
        raise NotImplementedError

    @abstractmethod
    def list_all(self) -> list[User]:
        raise NotImplementedError

    @abstractmethod
    def create(self, username: str, password: str, role: str = "user") -> User:
        raise NotImplementedError

    @abstractmethod
    def record_login(self, username: str) -> User:
        raise NotImplementedError

    @abstractmethod
    def add_task(self, username: str, task_id: str) -> User:
        raise NotImplementedError

    @abstractmethod
    def remove_task(self, username: str, task_id: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def delete(self, username: str) -> User:
        raise NotImplementedError

    @abstractmethod
    def flush(self) -> None:
        raise NotImplementedError
