"""Authentication and authorization for HTTP requests and event connections.

Logins open a server-side session and hand back a signed JWT carrying the
session id. A token is only honoured while its session is open and its user
still exists, so logout and user deletion take effect immediately.
"""

from __future__ import annotations

import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from loguru import logger

from .domain.models import Principal, Task
from .errors import AuthenticationError, AuthorizationError, ValidationError
from .storage.file_repos import FileUserStore


def extract_token(authorization: Optional[str], cookie: Optional[str]) -> Optional[str]:
    """Bearer token from an ``Authorization`` header, else the session cookie."""
    header = authorization or ""
    if header.lower().startswith("bearer "):
        return header[7:].strip() or None
    return cookie or None


class AuthGateway:
    algorithm = "HS256"

    def __init__(
        self,
        users: FileUserStore,
        *,
        secret_key: str,
        token_expire_minutes: int,
    ) -> None:
        self._users = users
        self._secret_key = secret_key
        self._expire = timedelta(minutes=token_expire_minutes)
        self._sessions: dict[str, str] = {}  # session id -> username
        self._lock = threading.Lock()

    @property
    def session_count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def login(self, username: str, password: str) -> tuple[Principal, str]:
        """Verify credentials and open a session.

        Returns:
            The principal and its bearer token.

        Raises:
            ValidationError: If either field is missing.
            AuthenticationError: If the credentials do not match.
        """
        if not username or not password:
            raise ValidationError("Username and password required")
        try:
            user = self._users.authenticate(username, password)
        except AuthenticationError:
            logger.warning("Failed login for {!r}", username)
            raise
        self._users.record_login(user.username)

        session_id = uuid.uuid4().hex
        with self._lock:
            self._sessions[session_id] = user.username
        now = datetime.now(timezone.utc)
        token = jwt.encode(
            {"sub": user.username, "sid": session_id, "iat": now, "exp": now + self._expire},
            self._secret_key,
            algorithm=self.algorithm,
        )
        logger.info("User {} logged in (role={})", user.username, user.role)
        return Principal(username=user.username, role=user.role, session_id=session_id), token

    def logout(self, principal: Principal) -> None:
        with self._lock:
            self._sessions.pop(principal.session_id, None)
        logger.info("User {} logged out", principal.username)

    def current_principal(self, token: Optional[str]) -> Principal:
        """Resolve a bearer token to its principal.

        Raises:
            AuthenticationError: If the token is missing, invalid, expired, its
                session was closed, or its user no longer exists.
        """
        if not token:
            raise AuthenticationError("Not authenticated")
        try:
            payload = jwt.decode(token, self._secret_key, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError as exc:
            raise AuthenticationError("Session expired") from exc
        except jwt.InvalidTokenError as exc:
            raise AuthenticationError("Invalid token") from exc

        username = str(payload.get("sub") or "")
        session_id = str(payload.get("sid") or "")
        with self._lock:
            if self._sessions.get(session_id) != username:
                raise AuthenticationError("Session closed")
        user = self._users.find(username)
        if user is None:
            raise AuthenticationError("Not authenticated")
        # Role is re-read so administrative changes apply to live sessions.
        return Principal(username=user.username, role=user.role, session_id=session_id)

    def drop_user_sessions(self, username: str) -> int:
        with self._lock:
            doomed = [sid for sid, owner in self._sessions.items() if owner == username]
            for sid in doomed:
                del self._sessions[sid]
        return len(doomed)

    def can_access_task(self, principal: Principal, task: Task) -> bool:
        if principal.is_admin:
            return True
        if principal.username != task.owner:
            return False
        # An orphaned task (owner gone, or no longer listing it) is admin-only.
        owner = self._users.find(task.owner)
        return owner is not None and task.id in owner.tasks

    def authorize_task_access(self, principal: Principal, task: Task) -> None:
        if not self.can_access_task(principal, task):
            raise AuthorizationError("Access denied")

    def authorize_admin(self, principal: Principal) -> None:
        if not principal.is_admin:
            raise AuthorizationError("Admin access required")
