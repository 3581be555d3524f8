import asyncio

import pytest

from conftest import FakeEC
from swarmboard.backends.base import BackendOps
from swarmboard.errors import AuthFailure, NotConnected, RemoteError, Timeout
from swarmboard.manager import ConnectionManager, ConnectionState


@pytest.mark.asyncio
async def test_connect_installs_client_and_caches_metadata(make_amule_manager):
    fake = FakeEC()
    manager = make_amule_manager(fake)

    assert await manager.init_client() is True

    assert manager.state is ConnectionState.CONNECTED
    assert manager.is_connected()
    assert manager.cached_listen_port == 4662
    assert manager.last_error is None
    assert manager.scheduler.get_job(manager.tracker_job_id) is not None


@pytest.mark.asyncio
async def test_concurrent_connects_leave_one_client(make_amule_manager):
    fake = FakeEC()
    manager = make_amule_manager(fake)

    results = await asyncio.gather(manager.init_client(), manager.init_client())

    assert sorted(results) == [False, True]
    assert fake.connect_count == 1
    assert manager.is_connected()
    assert not manager.connection_in_progress


@pytest.mark.asyncio
async def test_failed_connect_records_error_and_schedules_reconnect(make_amule_manager):
    fake = FakeEC()
    fake.connect_error = AuthFailure("bad password")
    manager = make_amule_manager(fake)

    assert await manager.start_connection() is False

    assert manager.state is ConnectionState.DISCONNECTED
    assert manager.client is None
    assert "bad password" in manager.last_error
    assert manager.last_error_time is not None
    job = manager.scheduler.get_job(manager.reconnect_job_id)
    assert job is not None
    assert job.trigger.interval.total_seconds() == 10


@pytest.mark.asyncio
async def test_reconnect_is_not_stacked(make_amule_manager):
    manager = make_amule_manager(FakeEC())
    manager.schedule_reconnect()
    manager.schedule_reconnect()
    jobs = [j for j in manager.scheduler.get_jobs() if j.id == manager.reconnect_job_id]
    assert len(jobs) == 1


@pytest.mark.asyncio
async def test_reconnect_delay_is_configurable(make_amule_manager):
    manager = make_amule_manager(FakeEC(), reconnectDelay=3)
    manager.schedule_reconnect()
    job = manager.scheduler.get_job(manager.reconnect_job_id)
    assert job.trigger.interval.total_seconds() == 3


@pytest.mark.asyncio
async def test_new_reconnect_delay_replaces_pending_timer(make_amule_manager):
    manager = make_amule_manager(FakeEC())
    manager.schedule_reconnect(3)
    manager.schedule_reconnect(7)

    jobs = [j for j in manager.scheduler.get_jobs() if j.id == manager.reconnect_job_id]
    assert len(jobs) == 1
    assert jobs[0].trigger.interval.total_seconds() == 7


@pytest.mark.asyncio
async def test_successful_reconnect_clears_timer(make_amule_manager):
    fake = FakeEC()
    fake.connect_error = Timeout("connection refused")
    manager = make_amule_manager(fake)
    await manager.start_connection()
    assert manager.scheduler.get_job(manager.reconnect_job_id) is not None

    fake.connect_error = None
    await manager._reconnect_tick()

    assert manager.is_connected()
    assert manager.scheduler.get_job(manager.reconnect_job_id) is None


@pytest.mark.asyncio
async def test_disabled_manager_never_connects(make_amule_manager):
    fake = FakeEC()
    manager = make_amule_manager(fake, enabled=False)
    assert await manager.start_connection() is False
    assert fake.connect_count == 0
    assert manager.scheduler.get_job(manager.reconnect_job_id) is None


@pytest.mark.asyncio
async def test_shutdown_is_bounded_while_connect_is_stuck(make_amule_manager):
    fake = FakeEC()
    fake.connect_gate = asyncio.Event()
    manager = make_amule_manager(fake)
    manager.shutdown_poll_interval = 0.01
    manager.shutdown_poll_attempts = 5

    connect_task = asyncio.ensure_future(manager.init_client())
    await asyncio.sleep(0)
    assert manager.connection_in_progress

    await asyncio.wait_for(manager.shutdown(), timeout=1)
    assert manager.client is None
    assert manager.state is ConnectionState.SHUTTING_DOWN

    # The late connect must not resurrect a client
    fake.connect_gate.set()
    assert await connect_task is False
    assert manager.client is None


@pytest.mark.asyncio
async def test_shutdown_cancels_timers(make_amule_manager):
    manager = make_amule_manager(FakeEC())
    await manager.init_client()
    manager.schedule_reconnect()

    await manager.shutdown()

    assert manager.scheduler.get_job(manager.reconnect_job_id) is None
    assert manager.scheduler.get_job(manager.tracker_job_id) is None
    assert manager.client is None


@pytest.mark.asyncio
async def test_fetch_failure_returns_last_snapshot_and_schedules_reconnect(make_amule_manager):
    fake = FakeEC()
    fake.downloads = [{'hash': 'ABC', 'name': 'file.iso', 'size': 100, 'completed': 50, 'status': 'downloading'}]
    manager = make_amule_manager(fake)
    await manager.init_client()

    first = await manager.fetch_data()
    assert [d['hash'] for d in first['downloads']] == ['abc']
    assert first['downloads'][0]['progress'] == 0.5

    fake.queue_error = Timeout("timed out")
    second = await manager.fetch_data()

    assert second == first
    assert not manager.is_connected()
    assert "timed out" in manager.last_error
    assert manager.scheduler.get_job(manager.reconnect_job_id) is not None


@pytest.mark.asyncio
async def test_fetch_while_disconnected_returns_cached_snapshot(make_amule_manager):
    manager = make_amule_manager(FakeEC())
    data = await manager.fetch_data()
    assert data == {'downloads': [], 'sharedFiles': [], 'uploads': []}


@pytest.mark.asyncio
async def test_control_without_client_raises_not_connected(make_amule_manager):
    manager = make_amule_manager(FakeEC())
    with pytest.raises(NotConnected):
        await manager.pause("abc")
    with pytest.raises(NotConnected):
        await manager.remove_download("abc")


@pytest.mark.asyncio
async def test_control_errors_propagate(make_amule_manager):
    manager = make_amule_manager(FakeEC())
    await manager.init_client()
    with pytest.raises(RemoteError):
        await manager.recheck("abc")
    await manager.stop("abc")
    assert ('stop_download', 'abc') in manager.client.ec.calls


@pytest.mark.asyncio
async def test_listeners_fire_in_registration_order(make_amule_manager):
    manager = make_amule_manager(FakeEC())
    order = []

    def broken(m):
        order.append("broken")
        raise RuntimeError("listener bug")

    async def later(m):
        order.append("async")

    manager.on_connect(lambda m: order.append("first"))
    manager.on_connect(broken)
    manager.on_connect(later)
    manager.on_connect(lambda m: order.append("last"))

    assert await manager.init_client()
    assert order == ["first", "broken", "last"]
    await asyncio.sleep(0)
    assert order == ["first", "broken", "last", "async"]


@pytest.mark.asyncio
async def test_add_with_category_resolves_link(make_amule_manager, store):
    fake = FakeEC()
    manager = make_amule_manager(fake)
    await manager.init_client()
    await store.create("music")

    await manager.add_magnet("ed2k://|file|song.mp3|100|ABC|/", {'categoryName': 'music'})
    await manager.add_magnet("ed2k://|file|other.mp3|100|DEF|/", {'categoryName': 'music'})

    created = [c for c in fake.calls if c[0] == 'create_category']
    assert created == [('create_category', 'music')]
    music_id = store.get_by_name('music').external_ids[manager.instance_id]
    assert [c[2] for c in fake.calls if c[0] == 'add_ed2k_link'] == [music_id, music_id]


class StubClient:
    host = "stub"
    port = 1

    def __init__(self, items):
        self.items = items

    def is_connected(self):
        return True

    async def get_torrents(self):
        return [dict(i) for i in self.items]


class StubOps(BackendOps):
    client_type = "stub"

    def __init__(self, failing=()):
        super().__init__()
        self.failing = set(failing)

    async def fetch_item_trackers(self, client, item):
        if item['hash'] in self.failing:
            raise Timeout("tracker fetch timed out")
        return {
            'trackersDetailed': [{'url': f"udp://{item['hash']}.example:80"}],
            'trackers': [f"udp://{item['hash']}.example:80"],
            'peersDetailed': [],
        }


@pytest.mark.asyncio
async def test_tracker_refresh_omits_failures_and_replaces_cache(scheduler):
    ops = StubOps(failing={'bbb'})
    manager = ConnectionManager("stub-1", ops, {"enabled": True}, scheduler)
    manager.client = StubClient([{'hash': 'aaa'}, {'hash': 'bbb'}])
    manager.tracker_cache = {'gone': {'trackers': ['udp://old:80']}}

    await manager.refresh_trackers()

    assert set(manager.tracker_cache) == {'aaa'}

    items = await manager.get_items()
    by_hash = {i['hash']: i for i in items}
    assert by_hash['aaa']['trackers'] == ['udp://aaa.example:80']
    assert 'trackers' not in by_hash['bbb']


@pytest.mark.asyncio
async def test_control_after_connection_loss_fails_without_relogin(make_amule_manager):
    fake = FakeEC()
    manager = make_amule_manager(fake)
    await manager.init_client()

    fake.queue_error = Timeout("timed out")
    await manager.fetch_data()
    assert manager.state is ConnectionState.DISCONNECTED

    with pytest.raises(NotConnected):
        await manager.pause("abc")
    with pytest.raises(NotConnected):
        await manager.set_category_or_label("abc", category_name="Default")

    assert fake.connect_count == 1
    assert ('pause_download', 'abc') not in fake.calls
    assert not manager.is_connected()
    assert manager.scheduler.get_job(manager.reconnect_job_id) is not None
