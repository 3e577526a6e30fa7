"""Pydantic models for API requests and responses."""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class LoginRequest(BaseModel):
    """Login request. Fields are checked by the service so a missing one is a 400."""

    username: str = ""
    password: str = ""


class LoginResponse(BaseModel):
    """Login response."""

    success: bool = True
    token: str
    token_type: str = "bearer"
    user: dict[str, Any]


class CreateTaskRequest(BaseModel):
    """Task creation request; credential and message files arrive as text."""

    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = None
    thread_id: Optional[str] = Field(None, alias="threadID")
    delay: Optional[int] = None
    haters_name: str = Field("", alias="hatersName")
    last_here_name: str = Field("", alias="lastHereName")
    cookie_content: Optional[str] = Field(None, alias="cookieContent")
    messages: Optional[str] = None
    max_messages: Optional[int] = Field(0, alias="maxMessages")
    auto_restart: bool = Field(False, alias="autoRestart")


class ControlRequest(BaseModel):
    """Control action request."""

    action: str = ""  # start, stop, restart


class ControlResponse(BaseModel):
    success: bool = True
    status: str


class CreateUserRequest(BaseModel):
    username: str = ""
    password: str = ""
    role: str = "user"


class SuccessResponse(BaseModel):
    success: bool = True


class SystemStats(BaseModel):
    totalUsers: int
    totalTasks: int
    runningTasks: int
    activeConnections: int
    activeSessions: int
    uptime: float
