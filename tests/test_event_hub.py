from __future__ import annotations

import asyncio
import threading

from bot_manager.domain.models import Principal
from bot_manager.events.hub import TaskEventHub


async def _next(conn, timeout: float = 1.0):
    return await asyncio.wait_for(conn.outbox.get(), timeout=timeout)


async def _drained(conn) -> bool:
    # Let pending call_soon_threadsafe callbacks run first.
    await asyncio.sleep(0.01)
    return conn.outbox.empty()


def test_publish_reaches_only_subscribers_of_that_task() -> None:
    async def _run() -> None:
        hub = TaskEventHub()
        a = hub.register()
        b = hub.register()
        hub.subscribe(a.id, "task-a")
        hub.subscribe(b.id, "task-b")

        assert hub.publish("task-a", {"type": "log", "n": 1}) == 1

        assert await _next(a) == {"type": "log", "n": 1}
        assert await _drained(b)

    asyncio.run(_run())


def test_resubscribe_replaces_previous_subscription() -> None:
    async def _run() -> None:
        hub = TaskEventHub()
        conn = hub.register()
        hub.subscribe(conn.id, "task-a")
        hub.subscribe(conn.id, "task-b")

        assert hub.subscribers("task-a") == set()
        assert hub.subscribers("task-b") == {conn.id}
        assert hub.publish("task-a", {"n": 1}) == 0
        assert await _drained(conn)

    asyncio.run(_run())


def test_unregister_removes_subscription() -> None:
    async def _run() -> None:
        hub = TaskEventHub()
        conn = hub.register()
        hub.subscribe(conn.id, "task-a")
        hub.unregister(conn.id)

        assert hub.connection_count == 0
        assert hub.subscribers("task-a") == set()
        assert hub.publish("task-a", {"n": 1}) == 0
        assert hub.send(conn.id, {"n": 2}) is False

    asyncio.run(_run())


def test_unsubscribe_and_close_topic() -> None:
    async def _run() -> None:
        hub = TaskEventHub()
        one = hub.register()
        two = hub.register()
        hub.subscribe(one.id, "task-a")
        hub.subscribe(two.id, "task-a")

        assert hub.unsubscribe(one.id) == "task-a"
        assert hub.unsubscribe(one.id) is None
        assert hub.close_topic("task-a") == 1
        assert two.task_id is None
        assert hub.connection_count == 2

    asyncio.run(_run())


def test_publish_from_threads_keeps_order() -> None:
    async def _run() -> None:
        hub = TaskEventHub()
        conn = hub.register()
        hub.subscribe(conn.id, "task-a")

        def _publisher() -> None:
            for i in range(50):
                hub.publish("task-a", {"n": i})

        worker = threading.Thread(target=_publisher)
        worker.start()
        worker.join(timeout=2)

        received = [(await _next(conn))["n"] for _ in range(50)]
        assert received == list(range(50))

    asyncio.run(_run())


def test_connection_with_closed_loop_is_dropped() -> None:
    loop = asyncio.new_event_loop()
    hub = TaskEventHub()
    conn = hub.register(loop=loop)
    hub.subscribe(conn.id, "task-a")
    loop.close()

    assert hub.publish("task-a", {"n": 1}) == 0
    assert hub.connection_count == 0


def test_full_outbox_closes_the_connection() -> None:
    async def _run() -> None:
        hub = TaskEventHub(outbox_capacity=3)
        conn = hub.register()
        hub.subscribe(conn.id, "task-a")

        for i in range(3):
            assert hub.publish("task-a", {"n": i}) == 1
            await asyncio.sleep(0)
        assert hub.publish("task-a", {"n": 3}) == 0
        await asyncio.sleep(0)

        assert conn.closed
        assert conn.close_code == 1013
        assert hub.connection_count == 0
        assert hub.subscribers("task-a") == set()
        queued = [conn.outbox.get_nowait() for _ in range(conn.outbox.qsize())]
        assert queued == [{"n": 0}, {"n": 1}, {"n": 2}, None]

    asyncio.run(_run())


def test_drop_principal_and_session() -> None:
    async def _run() -> None:
        hub = TaskEventHub()
        alice_web = hub.register()
        alice_phone = hub.register()
        bob = hub.register()
        anonymous = hub.register()
        alice_web.principal = Principal("alice", "user", session_id="s1")
        alice_phone.principal = Principal("alice", "user", session_id="s2")
        bob.principal = Principal("bob", "user", session_id="s3")
        for conn in (alice_web, alice_phone, bob, anonymous):
            hub.subscribe(conn.id, "task-a")

        assert hub.drop_session("s1") == 1
        assert hub.drop_session("") == 0
        assert hub.subscribers("task-a") == {alice_phone.id, bob.id, anonymous.id}

        assert hub.drop_principal("alice") == 1
        assert hub.subscribers("task-a") == {bob.id, anonymous.id}
        assert hub.publish("task-a", {"n": 1}) == 2

        await asyncio.sleep(0)
        assert alice_web.outbox.get_nowait()["code"] == "unauthorized"
        assert alice_web.outbox.get_nowait() is None
        assert alice_web.close_code == 1008
        assert alice_phone.closed

    asyncio.run(_run())
