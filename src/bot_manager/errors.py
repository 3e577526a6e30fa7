"""Error taxonomy shared by the stores, services and HTTP layer."""

from __future__ import annotations


class BotManagerError(Exception):
    """Base error. Subclasses carry the HTTP status and a stable code."""

    status_code = 500
    code = "error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class ValidationError(BotManagerError):
    """Missing or invalid request fields."""

    status_code = 400
    code = "validation_error"


class AuthenticationError(BotManagerError):
    """Bad credentials, or no valid session."""

    status_code = 401
    code = "unauthorized"


class AuthorizationError(BotManagerError):
    """Authenticated, but neither the owner nor an admin."""

    status_code = 403
    code = "forbidden"


class NotFoundError(BotManagerError):
    status_code = 404
    code = "not_found"


class PersistenceError(BotManagerError):
    """A durable write failed, or a persisted document is unreadable."""

    status_code = 500
    code = "persistence_error"
