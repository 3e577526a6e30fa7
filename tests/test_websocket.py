from __future__ import annotations

import time

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from bot_manager.config import AppConfig
from bot_manager.server import create_app

TASK_BODY = {
    "name": "Watcher",
    "threadID": "42",
    "cookieContent": "c_user=1",
    "messages": "ping\npong\n",
}


@pytest.fixture
def client(app_config: AppConfig):
    with TestClient(create_app(app_config)) as test_client:
        yield test_client


def _token(client: TestClient, username: str, password: str) -> str:
    resp = client.post("/api/login", json={"username": username, "password": password})
    assert resp.status_code == 200, resp.text
    return resp.json()["token"]


def _create_task(client: TestClient, token: str) -> str:
    resp = client.post("/api/tasks", json=TASK_BODY, headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 200, resp.text
    return resp.json()["taskId"]


def _control(client: TestClient, token: str, task_id: str, action: str) -> None:
    resp = client.post(
        f"/api/tasks/{task_id}/control",
        json={"action": action},
        headers={"Authorization": f"Bearer {token}"},
    )
    assert resp.status_code == 200, resp.text


def _authenticate(ws, username: str, token: str) -> None:
    ws.send_json({"type": "auth", "username": username, "token": token})
    reply = ws.receive_json()
    assert reply["type"] == "auth_success"
    assert reply["sessionId"]


def _assert_quiet(ws) -> None:
    # Anything queued earlier would arrive before the pong.
    ws.send_json({"type": "ping"})
    assert ws.receive_json() == {"type": "pong"}


def test_subscribe_sends_snapshot_then_live_logs(client: TestClient) -> None:
    token = _token(client, "user1", "password1")
    task_id = _create_task(client, token)
    _control(client, token, task_id, "start")

    with client.websocket_connect("/ws") as ws:
        _authenticate(ws, "user1", token)
        ws.send_json({"type": "subscribe", "taskId": task_id})

        snapshot = ws.receive_json()
        assert snapshot["type"] == "task_update"
        assert snapshot["taskId"] == task_id
        assert snapshot["task"]["status"] == "running"
        assert [e["message"] for e in snapshot["task"]["logs"]] == ["Task started"]

        _control(client, token, task_id, "stop")
        _control(client, token, task_id, "restart")

        first = ws.receive_json()
        second = ws.receive_json()
        assert first["type"] == "log"
        assert first["taskId"] == task_id
        assert first["log"]["message"] == "Task stopped"
        assert first["log"]["type"] == "info"
        assert second["log"]["message"] == "Task restarted"


def test_malformed_messages_are_ignored(client: TestClient) -> None:
    with client.websocket_connect("/ws") as ws:
        ws.send_text("{not json")
        ws.send_json(["no", "type"])
        ws.send_json({"type": "dance"})
        ws.send_json({"type": "subscribe"})
        _assert_quiet(ws)


def test_subscribe_requires_authentication(client: TestClient) -> None:
    token = _token(client, "user1", "password1")
    task_id = _create_task(client, token)

    with client.websocket_connect("/ws") as ws:
        ws.send_json({"type": "subscribe", "taskId": task_id})
        reply = ws.receive_json()
        assert reply["type"] == "error"
        assert reply["code"] == "unauthorized"


def test_auth_rejects_bad_credentials(client: TestClient) -> None:
    token = _token(client, "user1", "password1")

    with client.websocket_connect("/ws") as ws:
        ws.send_json({"type": "auth", "username": "user2", "token": token})
        assert ws.receive_json()["code"] == "unauthorized"
        ws.send_json({"type": "auth", "username": "user1", "token": "garbage"})
        assert ws.receive_json()["code"] == "unauthorized"
        _authenticate(ws, "user1", token)


def test_foreign_and_missing_tasks_are_refused(client: TestClient) -> None:
    owner = _token(client, "user1", "password1")
    other = _token(client, "user2", "password2")
    task_id = _create_task(client, owner)

    with client.websocket_connect("/ws") as ws:
        _authenticate(ws, "user2", other)
        ws.send_json({"type": "subscribe", "taskId": task_id})
        assert ws.receive_json()["code"] == "forbidden"
        ws.send_json({"type": "subscribe", "taskId": "task-missing"})
        assert ws.receive_json()["code"] == "not_found"

        _control(client, owner, task_id, "start")
        _assert_quiet(ws)


def test_admin_may_watch_any_task(client: TestClient) -> None:
    owner = _token(client, "user1", "password1")
    admin = _token(client, "admin", "admin")
    task_id = _create_task(client, owner)

    with client.websocket_connect("/ws") as ws:
        _authenticate(ws, "admin", admin)
        ws.send_json({"type": "subscribe", "taskId": task_id})
        assert ws.receive_json()["type"] == "task_update"


def test_events_are_isolated_per_task(client: TestClient) -> None:
    token = _token(client, "user1", "password1")
    first = _create_task(client, token)
    second = _create_task(client, token)

    with client.websocket_connect("/ws") as ws_a, client.websocket_connect("/ws") as ws_b:
        _authenticate(ws_a, "user1", token)
        _authenticate(ws_b, "user1", token)
        ws_a.send_json({"type": "subscribe", "taskId": first})
        ws_b.send_json({"type": "subscribe", "taskId": second})
        assert ws_a.receive_json()["taskId"] == first
        assert ws_b.receive_json()["taskId"] == second

        _control(client, token, second, "start")

        assert ws_b.receive_json()["log"]["message"] == "Task started"
        _assert_quiet(ws_a)


def test_resubscribe_and_unsubscribe(client: TestClient) -> None:
    token = _token(client, "user1", "password1")
    first = _create_task(client, token)
    second = _create_task(client, token)

    with client.websocket_connect("/ws") as ws:
        _authenticate(ws, "user1", token)
        ws.send_json({"type": "subscribe", "taskId": first})
        ws.receive_json()
        ws.send_json({"type": "subscribe", "taskId": second})
        assert ws.receive_json()["taskId"] == second

        _control(client, token, first, "start")
        _assert_quiet(ws)

        ws.send_json({"type": "unsubscribe"})
        assert ws.receive_json() == {"type": "unsubscribed"}
        _control(client, token, second, "start")
        _assert_quiet(ws)


def _assert_closed_by_server(ws) -> None:
    notice = ws.receive_json()
    assert notice == {"type": "error", "error": "Session closed", "code": "unauthorized"}
    with pytest.raises(WebSocketDisconnect) as exc_info:
        ws.receive_json()
    assert exc_info.value.code == 1008


def test_logout_closes_live_stream(client: TestClient) -> None:
    token = _token(client, "user1", "password1")
    task_id = _create_task(client, token)

    with client.websocket_connect("/ws") as ws:
        _authenticate(ws, "user1", token)
        ws.send_json({"type": "subscribe", "taskId": task_id})
        assert ws.receive_json()["type"] == "task_update"

        client.post("/api/logout", headers={"Authorization": f"Bearer {token}"})

        _assert_closed_by_server(ws)
    assert client.app.state.hub.subscribers(task_id) == set()


def test_logout_leaves_other_sessions_streaming(client: TestClient) -> None:
    first = _token(client, "user1", "password1")
    second = _token(client, "user1", "password1")
    task_id = _create_task(client, first)

    with client.websocket_connect("/ws") as ws:
        _authenticate(ws, "user1", second)
        ws.send_json({"type": "subscribe", "taskId": task_id})
        ws.receive_json()

        client.post("/api/logout", headers={"Authorization": f"Bearer {first}"})
        _control(client, second, task_id, "start")

        assert ws.receive_json()["log"]["message"] == "Task started"


def test_deleted_user_stops_receiving_events(client: TestClient) -> None:
    token = _token(client, "user1", "password1")
    admin = _token(client, "admin", "admin")
    task_id = _create_task(client, token)

    with client.websocket_connect("/ws") as ws:
        _authenticate(ws, "user1", token)
        ws.send_json({"type": "subscribe", "taskId": task_id})
        assert ws.receive_json()["type"] == "task_update"

        resp = client.delete("/api/admin/users/user1", headers={"Authorization": f"Bearer {admin}"})
        assert resp.status_code == 200

        _assert_closed_by_server(ws)
        _control(client, admin, task_id, "start")
    assert client.app.state.hub.subscribers(task_id) == set()


def test_auth_with_session_cookie_only(client: TestClient) -> None:
    token = _token(client, "user1", "password1")
    task_id = _create_task(client, token)
    assert "bot_manager_session" in client.cookies

    with client.websocket_connect("/ws") as ws:
        ws.send_json({"type": "auth", "username": "user2"})
        assert ws.receive_json()["code"] == "unauthorized"

        ws.send_json({"type": "auth", "username": "user1"})
        assert ws.receive_json()["type"] == "auth_success"
        ws.send_json({"type": "subscribe", "taskId": task_id})
        assert ws.receive_json()["type"] == "task_update"


def test_auth_without_any_credentials(client: TestClient) -> None:
    with client.websocket_connect("/ws") as ws:
        ws.send_json({"type": "auth", "username": "user1"})
        assert ws.receive_json()["code"] == "unauthorized"


def test_connections_are_released_on_close(client: TestClient) -> None:
    hub = client.app.state.hub
    with client.websocket_connect("/ws") as ws:
        _assert_quiet(ws)
        assert hub.connection_count == 1
    # The server side finishes its cleanup after the client closes.
    for _ in range(50):
        if hub.connection_count == 0:
            break
        time.sleep(0.02)
    assert hub.connection_count == 0


def test_idle_connection_gets_heartbeat(tmp_path) -> None:
    config = AppConfig(data_dir=tmp_path / "data", password_rounds=4, heartbeat_interval_seconds=0.05)
    with TestClient(create_app(config)) as client:
        with client.websocket_connect("/ws") as ws:
            beat = ws.receive_json()
            assert beat["type"] == "heartbeat"
            assert beat["timestamp"] > 0
