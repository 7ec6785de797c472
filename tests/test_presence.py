import asyncio

from courier.services.activity_log import handle_store
from courier.services.presence import STATUS_EVENT, PresenceTracker


class FakeManager:
    def __init__(self):
        self.broadcasts = []

    async def broadcast(self, message):
        self.broadcasts.append(message)
        return 1


class PresenceLog:
    def __init__(self, fail=False):
        self.writes = []
        self.fail = fail

    def __call__(self, user_id, is_online, last_seen):
        if self.fail:
            raise RuntimeError("database is gone")
        self.writes.append((user_id, is_online))


def test_first_connection_is_an_online_edge():
    manager = FakeManager()
    tracker = PresenceTracker(manager)
    persist = PresenceLog()

    assert asyncio.run(tracker.connect("10000001", "c1", persist)) is True

    assert tracker.is_online("10000001")
    assert persist.writes == [("10000001", True)]
    assert len(manager.broadcasts) == 1
    status = manager.broadcasts[0]
    assert status["type"] == STATUS_EVENT
    assert status["payload"]["user_id"] == "10000001"
    assert status["payload"]["is_online"] is True


def test_extra_tabs_do_not_flap():
    manager = FakeManager()
    tracker = PresenceTracker(manager)
    persist = PresenceLog()

    async def scenario():
        await tracker.connect("10000001", "c1", persist)
        assert await tracker.connect("10000001", "c2", persist) is False
        assert await tracker.disconnect("10000001", "c1", persist) is False
        assert tracker.is_online("10000001")
        assert tracker.connection_count("10000001") == 1
        assert await tracker.disconnect("10000001", "c2", persist) is True

    asyncio.run(scenario())

    assert not tracker.is_online("10000001")
    assert persist.writes == [("10000001", True), ("10000001", False)]
    assert [b["payload"]["is_online"] for b in manager.broadcasts] == [True, False]


def test_disconnect_of_unknown_connection_is_ignored():
    manager = FakeManager()
    tracker = PresenceTracker(manager)
    persist = PresenceLog()

    async def scenario():
        await tracker.connect("10000001", "c1", persist)
        assert await tracker.disconnect("10000001", "nope", persist) is False
        assert await tracker.disconnect("10000002", "c1", persist) is False

    asyncio.run(scenario())

    assert tracker.is_online("10000001")
    assert len(manager.broadcasts) == 1


def test_concurrent_connects_produce_one_edge():
    manager = FakeManager()
    tracker = PresenceTracker(manager)
    persist = PresenceLog()

    async def scenario():
        return await asyncio.gather(
            *(tracker.connect("10000001", f"c{i}", persist) for i in range(5))
        )

    edges = asyncio.run(scenario())

    assert edges.count(True) == 1
    assert tracker.connection_count("10000001") == 5
    assert len(manager.broadcasts) == 1


def test_users_are_tracked_independently():
    manager = FakeManager()
    tracker = PresenceTracker(manager)
    persist = PresenceLog()

    async def scenario():
        await tracker.connect("10000001", "a1", persist)
        await tracker.connect("10000002", "b1", persist)
        await tracker.disconnect("10000001", "a1", persist)

    asyncio.run(scenario())

    assert tracker.online_user_ids() == {"10000002"}
    assert len(manager.broadcasts) == 3


def test_persist_failure_still_broadcasts():
    manager = FakeManager()
    tracker = PresenceTracker(manager)

    asyncio.run(tracker.connect("10000001", "c1", PresenceLog(fail=True)))

    assert tracker.is_online("10000001")
    assert manager.broadcasts[0]["payload"]["is_online"] is True


def test_locks_are_released_once_idle():
    manager = FakeManager()
    tracker = PresenceTracker(manager)
    persist = PresenceLog()

    async def scenario():
        await asyncio.gather(
            *(tracker.connect(f"1000000{i}", f"c{i}", persist) for i in range(5)),
            tracker.connect("10000001", "extra", persist),
        )
        assert tracker._locks == {}
        for i in range(5):
            await tracker.disconnect(f"1000000{i}", f"c{i}", persist)
        await tracker.disconnect("10000001", "extra", persist)

    asyncio.run(scenario())

    assert tracker.online_user_ids() == set()
    assert tracker._locks == {}
    assert tracker._lock_users == {}


def test_offline_edge_forgets_the_handle():
    tracker = PresenceTracker(FakeManager())
    persist = PresenceLog()
    handle_store.set_handle("10000001", "alice")

    async def scenario():
        await tracker.connect("10000001", "c1", persist)
        assert handle_store.get_handle("10000001") == "alice"
        await tracker.disconnect("10000001", "c1", persist)

    asyncio.run(scenario())

    assert handle_store.get_handle("10000001") == "user10000001"
