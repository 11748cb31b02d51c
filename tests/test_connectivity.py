import asyncio

import pytest

from budget_offline.connectivity import ConnectivityMonitor
from budget_offline.state import SyncState
from conftest import Probe


class Recorder:
    def __init__(self):
        self.calls = 0

    async def __call__(self):
        self.calls += 1


@pytest.mark.asyncio
async def test_start_probes_without_syncing():
    state = SyncState()
    on_online = Recorder()
    monitor = ConnectivityMonitor(state, Probe(online=False), on_online, poll_interval=0)

    await monitor.start()

    assert state.is_online is False
    assert monitor.is_polling is False
    assert on_online.calls == 0


@pytest.mark.asyncio
async def test_sync_fires_only_on_offline_to_online_transition():
    state = SyncState(is_online=False)
    on_online = Recorder()
    monitor = ConnectivityMonitor(state, Probe(), on_online, poll_interval=0)

    monitor.set_online()
    monitor.set_online()
    await monitor.drain()
    assert state.is_online is True
    assert on_online.calls == 1

    monitor.set_offline()
    monitor.set_offline()
    assert state.is_online is False

    monitor.set_online()
    await monitor.drain()
    assert on_online.calls == 2


@pytest.mark.asyncio
async def test_poll_once_follows_the_probe():
    state = SyncState()
    probe = Probe()
    on_online = Recorder()
    monitor = ConnectivityMonitor(state, probe, on_online, poll_interval=0)

    probe.online = False
    assert await monitor.poll_once() is False
    probe.online = True
    assert await monitor.poll_once() is True
    await monitor.drain()

    assert on_online.calls == 1
    assert probe.calls == 2


@pytest.mark.asyncio
async def test_probe_errors_count_as_offline():
    async def broken_probe():
        raise OSError("no route to host")

    state = SyncState()
    monitor = ConnectivityMonitor(state, broken_probe, Recorder(), poll_interval=0)

    assert await monitor.poll_once() is False
    assert state.is_online is False


@pytest.mark.asyncio
async def test_polling_detects_reconnection_and_stops_cleanly():
    state = SyncState()
    probe = Probe(online=False)
    on_online = Recorder()
    monitor = ConnectivityMonitor(state, probe, on_online, poll_interval=0.01)

    await monitor.start()
    assert monitor.is_polling is True
    probe.online = True
    for _ in range(100):
        if on_online.calls:
            break
        await asyncio.sleep(0.01)

    await monitor.stop()
    assert state.is_online is True
    assert on_online.calls == 1
    assert monitor.is_polling is False


@pytest.mark.asyncio
async def test_failed_background_task_is_logged_and_drained(caplog):
    async def failing_sync():
        raise RuntimeError("sync blew up")

    state = SyncState(is_online=False)
    monitor = ConnectivityMonitor(state, Probe(), failing_sync, poll_interval=0)

    monitor.set_online()
    await monitor.drain()

    assert state.is_online is True
    assert "Background task failed" in caplog.text
    assert "sync blew up" in caplog.text
