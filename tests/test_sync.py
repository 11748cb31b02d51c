import asyncio

import pytest

from budget_offline import OfflineStore
from budget_offline.store import SYNC_QUEUE, TRANSACTIONS
from budget_offline.sync import SyncQueue, new_queue_item_id, rewrite_url
from conftest import transaction_payload


def go_offline(store):
    store.monitor.set_offline()


async def queue_offline_creates(store, clock, seeded, descriptions):
    go_offline(store)
    results = []
    for description in descriptions:
        results.append(await store.create_transaction(transaction_payload(seeded, description=description)))
        clock.advance(1)
    return results


def test_rewrite_url_only_touches_the_trailing_id():
    assert rewrite_url("/api/transactions/-17", -17, 42) == "/api/transactions/42"
    assert rewrite_url("/api/transactions/-170", -17, 42) == "/api/transactions/-170"
    assert rewrite_url("/api/accounts/-17/transactions", -17, 42) == "/api/accounts/-17/transactions"


def test_queue_item_ids_carry_the_enqueue_time():
    item_id = new_queue_item_id(1700000000.25)
    assert item_id.startswith("1700000000250-")
    assert len(item_id.split("-")[1]) == 9


@pytest.mark.asyncio
async def test_enqueue_rejects_reads(offline_store):
    with pytest.raises(ValueError):
        await offline_store.queue.enqueue("GET", "/api/accounts")


@pytest.mark.asyncio
async def test_equal_timestamps_keep_enqueue_order(offline_store):
    queue = SyncQueue(offline_store.store, clock=lambda: 5.0)
    first = await queue.enqueue("POST", "/api/transactions", {"n": 1})
    second = await queue.enqueue("delete", "/api/transactions/3")

    assert second["method"] == "DELETE"
    assert [item["id"] for item in await queue.items()] == [first["id"], second["id"]]


@pytest.mark.asyncio
async def test_sync_replays_in_enqueue_order(offline_store, transport, clock, seeded):
    await queue_offline_creates(offline_store, clock, seeded, ["first", "second", "third"])
    assert offline_store.pending_changes == 3
    assert transport.calls == []

    offline_store.monitor.set_online()
    await offline_store.monitor.drain()

    posts = transport.calls_to("POST", "/api/transactions")
    assert [body["description"] for _, _, body in posts] == ["first", "second", "third"]
    assert offline_store.pending_changes == 0
    assert await offline_store.get_sync_queue_count() == 0
    assert offline_store.last_sync_time == clock()


@pytest.mark.asyncio
async def test_concurrent_sync_runs_once(offline_store, transport, clock, seeded):
    await queue_offline_creates(offline_store, clock, seeded, ["only"])
    offline_store.state.is_online = True

    gate = asyncio.Event()

    async def hold():
        await gate.wait()

    transport.delay = hold
    first = asyncio.create_task(offline_store.sync_pending_changes())
    await asyncio.sleep(0)

    assert offline_store.is_syncing is True
    assert await offline_store.sync_pending_changes() is False

    gate.set()
    assert await first is True
    assert offline_store.is_syncing is False
    assert len(transport.calls_to("POST", "/api/transactions")) == 1


@pytest.mark.asyncio
async def test_sync_is_skipped_while_offline(offline_store, transport, clock, seeded):
    await queue_offline_creates(offline_store, clock, seeded, ["later"])

    assert await offline_store.sync_pending_changes() is False
    assert transport.calls == []
    assert offline_store.pending_changes == 1


@pytest.mark.asyncio
async def test_server_errors_retry_until_the_ceiling(offline_store, transport, clock, seeded):
    await queue_offline_creates(offline_store, clock, seeded, ["flaky"])
    offline_store.state.is_online = True
    transport.fail_with[("POST", "/api/transactions")] = 503

    await offline_store.sync_pending_changes()
    [item] = await offline_store.store.get_all(SYNC_QUEUE)
    assert item["retries"] == 1
    assert offline_store.sync_error is None

    await offline_store.sync_pending_changes()
    assert (await offline_store.store.get_all(SYNC_QUEUE))[0]["retries"] == 2

    await offline_store.sync_pending_changes()
    assert await offline_store.get_sync_queue_count() == 0
    assert offline_store.pending_changes == 0
    assert offline_store.sync_error is not None
    [failed] = offline_store.failed_items
    assert failed.status == 503
    assert failed.item["body"]["description"] == "flaky"

    await offline_store.sync_pending_changes()
    assert len(transport.calls_to("POST", "/api/transactions")) == 3


@pytest.mark.asyncio
async def test_network_failure_during_sync_counts_as_a_retry(offline_store, transport, clock, seeded):
    await queue_offline_creates(offline_store, clock, seeded, ["unreachable"])
    offline_store.state.is_online = True
    transport.offline = True

    assert await offline_store.sync_pending_changes() is True
    [item] = await offline_store.store.get_all(SYNC_QUEUE)
    assert item["retries"] == 1

    transport.offline = False
    await offline_store.sync_pending_changes()
    assert await offline_store.get_sync_queue_count() == 0
    assert len(transport.calls_to("POST", "/api/transactions")) == 1


@pytest.mark.asyncio
async def test_rejected_item_is_dropped_after_one_attempt(offline_store, transport, clock, seeded):
    go_offline(offline_store)
    await offline_store.update_transaction(9999, {"description": "gone"})
    clock.advance(1)
    await offline_store.create_transaction(transaction_payload(seeded, description="after"))

    offline_store.monitor.set_online()
    await offline_store.monitor.drain()

    assert len(transport.calls_to("PUT", "/api/transactions/9999")) == 1
    assert len(transport.calls_to("POST", "/api/transactions")) == 1
    assert await offline_store.get_sync_queue_count() == 0
    [failed] = offline_store.failed_items
    assert failed.status == 404
    assert failed.item["url"] == "/api/transactions/9999"
    assert "1 change(s)" in offline_store.sync_error

    offline_store.clear_failed_items()
    assert offline_store.failed_items == []
    assert offline_store.sync_error is None


@pytest.mark.asyncio
async def test_created_record_and_later_items_move_to_the_server_id(offline_store, transport, clock, seeded, api):
    [created] = await queue_offline_creates(offline_store, clock, seeded, ["draft"])
    temp_id = created.id
    await offline_store.update_transaction(temp_id, {"description": "final"})

    offline_store.monitor.set_online()
    await offline_store.monitor.drain()

    [(_, _, post_body)] = transport.calls_to("POST", "/api/transactions")
    assert post_body["description"] == "draft"
    server_rows = (await api.request("GET", "/api/transactions")).json()["transactions"]
    [server_row] = server_rows
    assert server_row["description"] == "final"
    assert len(transport.calls_to("PUT", f"/api/transactions/{server_row['id']}")) == 1

    assert await offline_store.store.get_by_id(TRANSACTIONS, temp_id) is None
    local = await offline_store.store.get_by_id(TRANSACTIONS, server_row["id"])
    assert local["description"] == "final"
    assert offline_store.failed_items == []


@pytest.mark.asyncio
async def test_queue_survives_a_restart(offline_store, transport, clock, seeded, api, local_db, probe):
    await queue_offline_creates(offline_store, clock, seeded, ["persisted"])
    await offline_store.dispose()

    restarted = OfflineStore({"LOCAL_DATABASE": local_db, "POLL_INTERVAL": 0}, api=api, clock=clock, probe=probe)
    await restarted.init()
    try:
        assert restarted.is_online is True
        await restarted.monitor.drain()
        assert len(transport.calls_to("POST", "/api/transactions")) == 1
        assert restarted.pending_changes == 0
    finally:
        await restarted.dispose()


@pytest.mark.asyncio
async def test_sync_with_empty_queue_records_the_time(offline_store, transport, clock):
    clock.advance(30)

    assert await offline_store.sync_pending_changes() is True
    assert offline_store.last_sync_time == clock()
    assert transport.calls == []


@pytest.mark.asyncio
async def test_rejected_create_removes_its_local_record(offline_store, transport, clock, seeded):
    await queue_offline_creates(offline_store, clock, seeded, ["bad"])
    transport.fail_with[("POST", "/api/transactions")] = 422

    offline_store.monitor.set_online()
    await offline_store.monitor.drain()

    assert await offline_store.store.get_all(TRANSACTIONS) == []
    assert await offline_store.get_transactions(force_refresh=True) == []
    assert await offline_store.get_transactions() == []
    [failed] = offline_store.failed_items
    assert failed.status == 422


@pytest.mark.asyncio
async def test_create_dropped_at_the_retry_ceiling_removes_its_local_record(offline_store, transport, clock, seeded):
    [created] = await queue_offline_creates(offline_store, clock, seeded, ["5xx"])
    offline_store.state.is_online = True
    transport.fail_with[("POST", "/api/transactions")] = 503

    await offline_store.sync_pending_changes()
    await offline_store.sync_pending_changes()
    assert (await offline_store.store.get_by_id(TRANSACTIONS, created.id))["description"] == "5xx"

    await offline_store.sync_pending_changes()
    assert await offline_store.store.get_all(TRANSACTIONS) == []

    clock.advance(offline_store.ttl["transactions"])
    assert await offline_store.get_transactions() == []
