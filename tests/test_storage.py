from __future__ import annotations

from pathlib import Path

import pytest

from bot_manager.config import AppConfig
from bot_manager.domain.models import LogEntry, Task
from bot_manager.errors import AuthenticationError, NotFoundError, PersistenceError, ValidationError
from bot_manager.storage import file_repos
from bot_manager.storage.container import Container


def _config(tmp_path: Path) -> AppConfig:
    return AppConfig(data_dir=tmp_path / "data", password_rounds=4, admin_password="root-pw")


@pytest.fixture
def container(tmp_path: Path):
    c = Container(_config(tmp_path))
    yield c
    c.close()


def test_missing_user_file_seeds_bootstrap_accounts(container: Container) -> None:
    users = {u.username: u for u in container.users.list_all()}

    assert set(users) == {"admin", "user1", "user2", "user3", "user4"}
    assert users["admin"].role == "admin"
    assert users["user1"].role == "user"
    assert users["admin"].password != "root-pw"
    assert container.users.authenticate("admin", "root-pw").username == "admin"
    assert (container.data_dir / "users.yaml").exists()


def test_authenticate_rejects_bad_password(container: Container) -> None:
    with pytest.raises(AuthenticationError):
        container.users.authenticate("user1", "nope")
    with pytest.raises(AuthenticationError):
        container.users.authenticate("ghost", "password1")


def test_missing_task_file_means_empty_registry(container: Container) -> None:
    assert container.tasks.list() == []


def test_state_survives_restart(tmp_path: Path) -> None:
    first = Container(_config(tmp_path))
    task = Task(name="persisted", owner="user1")
    first.tasks.create(task)
    first.users.add_task("user1", task.id)
    first.tasks.update(task.id, lambda t: t.append_log(LogEntry(message="hello")))
    first.close()

    second = Container(_config(tmp_path))
    try:
        loaded = second.tasks.get(task.id)
        assert loaded.name == "persisted"
        assert [entry.message for entry in loaded.logs] == ["hello"]
        assert second.users.get("user1").tasks == [task.id]
    finally:
        second.close()


def test_corrupt_task_file_fails_fast(tmp_path: Path) -> None:
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    (data_dir / "tasks.yaml").write_text("tasks: {oops: [unclosed\n", encoding="utf-8")

    with pytest.raises(PersistenceError) as excinfo:
        Container(_config(tmp_path))
    assert "tasks.yaml" in str(excinfo.value)


def test_wrong_shape_user_file_fails_fast(tmp_path: Path) -> None:
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    (data_dir / "users.yaml").write_text("users:\n  - admin\n", encoding="utf-8")

    with pytest.raises(PersistenceError):
        Container(_config(tmp_path))


def test_failed_open_releases_data_dir(tmp_path: Path) -> None:
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    (data_dir / "tasks.yaml").write_text("- not a mapping\n", encoding="utf-8")
    with pytest.raises(PersistenceError):
        Container(_config(tmp_path))

    (data_dir / "tasks.yaml").unlink()
    Container(_config(tmp_path)).close()


def test_second_process_on_same_data_dir_is_refused(container: Container, tmp_path: Path) -> None:
    with pytest.raises(PersistenceError):
        Container(_config(tmp_path))


def test_update_unknown_task_raises_not_found(container: Container) -> None:
    with pytest.raises(NotFoundError):
        container.tasks.update("task-missing", lambda t: None)
    with pytest.raises(NotFoundError):
        container.tasks.delete("task-missing")


def test_failed_write_rolls_back_update(container: Container, monkeypatch: pytest.MonkeyPatch) -> None:
    task = Task(name="t", owner="user1")
    container.tasks.create(task)

    def _boom(*args, **kwargs):
        raise PersistenceError("disk full")

    monkeypatch.setattr(file_repos, "save_document", _boom)
    with pytest.raises(PersistenceError):
        container.tasks.update(task.id, lambda t: setattr(t, "status", "running"))
    with pytest.raises(PersistenceError):
        container.tasks.create(Task(name="other", owner="user1"))
    monkeypatch.undo()

    assert container.tasks.get(task.id).status == "stopped"
    assert container.tasks.count() == 1


def test_transaction_restores_both_stores(container: Container) -> None:
    task = Task(name="t", owner="user2")

    with pytest.raises(RuntimeError):
        with container.transaction():
            container.tasks.create(task)
            container.users.add_task("user2", task.id)
            raise RuntimeError("abort")

    assert not container.tasks.exists(task.id)
    assert container.users.get("user2").tasks == []


def test_create_user_validates(container: Container) -> None:
    created = container.users.create("carol", "secret", "user")
    assert created.role == "user"

    with pytest.raises(ValidationError):
        container.users.create("carol", "secret")
    with pytest.raises(ValidationError):
        container.users.create("bad name!", "secret")
    with pytest.raises(ValidationError):
        container.users.create("dave", "")
    with pytest.raises(ValidationError):
        container.users.create("erin", "secret", "superuser")


def test_remove_task_from_owner_set(container: Container) -> None:
    container.users.add_task("user1", "task-a")
    container.users.add_task("user1", "task-a")
    assert container.users.get("user1").tasks == ["task-a"]

    assert container.users.remove_task("user1", "task-a") is True
    assert container.users.remove_task("user1", "task-a") is False
    assert container.users.remove_task("ghost", "task-a") is False


def test_credential_vault_paths_and_lifecycle(container: Container) -> None:
    vault = container.credentials
    path = vault.write("task-abc", "c_user=1; xs=2")

    assert path.name == "credential_task-abc.txt"
    assert vault.read("task-abc") == "c_user=1; xs=2"
    assert vault.delete("task-abc") is True
    assert vault.delete("task-abc") is False
    assert not vault.exists("task-abc")
    with pytest.raises(ValidationError):
        vault.path_for("../escape")


def test_transaction_without_mutation_leaves_files_alone(
    container: Container, monkeypatch: pytest.MonkeyPatch
) -> None:
    writes: list[Path] = []
    monkeypatch.setattr(file_repos, "save_document", lambda path, *args, **kwargs: writes.append(path))

    with pytest.raises(NotFoundError):
        with container.transaction():
            container.tasks.get("task-missing")

    assert writes == []
