"""Load server configuration from defaults, ``config.yaml`` and the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Mapping, Optional

from .constants import (
    CONFIG_FILE,
    DATA_DIR_NAME,
    DEFAULT_ADMIN_PASSWORD,
    DEFAULT_FLUSH_INTERVAL_SECONDS,
    DEFAULT_HEARTBEAT_SECONDS,
    DEFAULT_PASSWORD_ROUNDS,
    DEFAULT_SECRET_KEY,
    DEFAULT_TOKEN_EXPIRE_MINUTES,
)
from .errors import ValidationError
from .io_utils import _load_data_with_error

ENV_PREFIX = "BOT_MANAGER_"


@dataclass(frozen=True)
class AppConfig:
    data_dir: Path = field(default_factory=lambda: Path(DATA_DIR_NAME))
    secret_key: str = DEFAULT_SECRET_KEY
    token_expire_minutes: int = DEFAULT_TOKEN_EXPIRE_MINUTES
    flush_interval_seconds: float = DEFAULT_FLUSH_INTERVAL_SECONDS
    heartbeat_interval_seconds: float = DEFAULT_HEARTBEAT_SECONDS
    password_rounds: int = DEFAULT_PASSWORD_ROUNDS
    admin_password: str = DEFAULT_ADMIN_PASSWORD
    log_level: str = "INFO"
    enable_cors: bool = True

    def with_overrides(self, **overrides: Any) -> "AppConfig":
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


# config key -> environment variable suffix
_ENV_KEYS = {
    "data_dir": "DATA_DIR",
    "secret_key": "SECRET_KEY",
    "token_expire_minutes": "TOKEN_EXPIRE_MINUTES",
    "flush_interval_seconds": "FLUSH_INTERVAL",
    "heartbeat_interval_seconds": "HEARTBEAT_INTERVAL",
    "password_rounds": "PASSWORD_ROUNDS",
    "admin_password": "ADMIN_PASSWORD",
    "log_level": "LOG_LEVEL",
    "enable_cors": "ENABLE_CORS",
}


def _coerce(name: str, value: Any) -> Any:
    try:
        if name == "data_dir":
            return Path(str(value)).expanduser()
        if name in {"token_expire_minutes", "password_rounds"}:
            number = int(value)
            if number < 1:
                raise ValueError("must be positive")
            return number
        if name in {"flush_interval_seconds", "heartbeat_interval_seconds"}:
            number = float(value)
            if number <= 0:
                raise ValueError("must be positive")
            return number
        if name == "enable_cors":
            if isinstance(value, bool):
                return value
            return str(value).strip().lower() in {"1", "true", "yes", "on"}
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid value for {name}: {value!r} ({exc})") from exc
    return str(value)


def load_config(
    data_dir: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
) -> AppConfig:
    """Build the effective configuration.

    Precedence, lowest first: defaults, ``<data_dir>/config.yaml``,
    ``BOT_MANAGER_*`` environment variables, the explicit ``data_dir`` argument.

    Raises:
        ValidationError: If the config file is unreadable or a value is invalid.
    """
    env = os.environ if env is None else env
    known = {f.name for f in fields(AppConfig)}
    values: dict[str, Any] = {}

    env_data_dir = env.get(ENV_PREFIX + _ENV_KEYS["data_dir"])
    base_dir = data_dir or (Path(env_data_dir).expanduser() if env_data_dir else Path(DATA_DIR_NAME))

    file_data, err = _load_data_with_error(base_dir / CONFIG_FILE, {})
    if err:
        raise ValidationError(f"Cannot read config: {err}")
    for key, value in file_data.items():
        if key in known and key != "data_dir":
            values[key] = _coerce(key, value)

    for key, suffix in _ENV_KEYS.items():
        raw = env.get(ENV_PREFIX + suffix)
        if raw is not None and raw != "":
            values[key] = _coerce(key, raw)

    values["data_dir"] = base_dir
    return AppConfig(**values)
