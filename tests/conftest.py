from __future__ import annotations

from pathlib import Path

import pytest

from bot_manager.config import AppConfig


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    # Low bcrypt cost and long background intervals keep tests fast and quiet.
    return AppConfig(
        data_dir=tmp_path / "data",
        secret_key="test-secret-key-for-unit-tests-only",
        password_rounds=4,
        flush_interval_seconds=3600.0,
        heartbeat_interval_seconds=3600.0,
    )
