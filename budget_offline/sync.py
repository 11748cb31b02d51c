import logging
import re
import time
import uuid

from .api import response_id
from .errors import NetworkError
from .state import FailedSyncItem
from .store import SYNC_QUEUE

logger = logging.getLogger(__name__)

SYNC_METHODS = ("POST", "PUT", "PATCH", "DELETE")
MAX_RETRIES = 3

SYNCED = "synced"
RETRY = "retry"
DROPPED = "dropped"


def new_queue_item_id(now):
    return f"{int(now * 1000)}-{uuid.uuid4().hex[:9]}"


def rewrite_url(url, local_id, server_id):
    """Point a URL that ends in the placeholder id at the server-assigned one."""
    return re.sub(rf"/{re.escape(str(local_id))}$", f"/{server_id}", url)


class SyncQueue:
    """FIFO of mutations that have not reached the server yet."""

    def __init__(self, store, clock=time.time):
        self.store = store
        self.clock = clock

    async def enqueue(self, method, url, body=None, store=None, local_id=None):
        method = method.upper()
        if method not in SYNC_METHODS:
            raise ValueError(f"Unsupported sync method: {method}")
        now = self.clock()
        item = {
            "id": new_queue_item_id(now),
            "timestamp": now,
            "method": method,
            "url": url,
            "body": body,
            "retries": 0,
        }
        if store is not None and local_id is not None:
            item["store"] = store
            item["local_id"] = local_id
        await self.store.put_one(SYNC_QUEUE, item)
        return item

    async def items(self):
        # Stable sort: equal timestamps keep enqueue order.
        return sorted(await self.store.get_all(SYNC_QUEUE), key=lambda item: item["timestamp"])

    async def get(self, item_id):
        return await self.store.get_by_id(SYNC_QUEUE, item_id)

    async def count(self):
        return await self.store.count(SYNC_QUEUE)

    async def save(self, item):
        await self.store.put_one(SYNC_QUEUE, item)

    async def remove(self, item_id):
        await self.store.delete_one(SYNC_QUEUE, item_id)

    async def clear(self):
        await self.store.clear_store(SYNC_QUEUE)


class SyncProcessor:
    """Replays queued mutations in order.

    Per item: 2xx removes it, 4xx drops it, a 5xx or network failure bumps
    ``retries`` and drops it once ``max_retries`` is reached. A failing item
    never stops the items behind it.
    """

    def __init__(self, queue, api, state, max_retries=MAX_RETRIES, clock=time.time):
        self.queue = queue
        self.api = api
        self.state = state
        self.max_retries = max_retries
        self.clock = clock

    async def run(self):
        """Drain the queue once. Returns False when skipped (offline or already syncing)."""
        state = self.state
        if not state.is_online or state.is_syncing:
            return False

        state.is_syncing = True
        state.sync_error = None
        outcomes = {SYNCED: 0, RETRY: 0, DROPPED: 0}
        try:
            for snapshot in await self.queue.items():
                # Reload: an earlier item may have rewritten or removed this one.
                item = await self.queue.get(snapshot["id"])
                if item is None:
                    continue
                outcomes[await self._replay(item)] += 1

            if outcomes[DROPPED]:
                state.sync_error = f"{outcomes[DROPPED]} change(s) could not be synced and were discarded"
            state.last_sync_time = self.clock()
            state.pending_changes = await self.queue.count()
        finally:
            state.is_syncing = False

        if any(outcomes.values()):
            logger.info(
                "Sync finished: %s synced, %s retrying, %s dropped, %s pending",
                outcomes[SYNCED],
                outcomes[RETRY],
                outcomes[DROPPED],
                state.pending_changes,
            )
        return True

    async def _replay(self, item):
        try:
            response = await self.api.request(item["method"], item["url"], item.get("body"))
        except NetworkError as exc:
            return await self._retry(item, None, str(exc))

        status = response.status_code
        if response.is_success:
            await self._complete(item, response)
            return SYNCED
        if 400 <= status < 500:
            logger.warning("Sync item %s failed with %s, removing", item["id"], status)
            await self._drop(item, status, f"{item['method']} {item['url']} rejected with HTTP {status}")
            return DROPPED
        return await self._retry(item, status, f"HTTP {status}")

    async def _retry(self, item, status, reason):
        item = dict(item, retries=int(item.get("retries", 0)) + 1)
        if item["retries"] >= self.max_retries:
            logger.error("Sync item %s failed after %s retries, removing (%s)", item["id"], item["retries"], reason)
            await self._drop(item, status, f"{item['method']} {item['url']} failed {item['retries']} times: {reason}")
            return DROPPED
        logger.warning("Sync item %s failed (%s), will retry (%s/%s)", item["id"], reason, item["retries"], self.max_retries)
        await self.queue.save(item)
        return RETRY

    async def _complete(self, item, response):
        store_name = item.get("store")
        local_id = item.get("local_id")
        server_id = response_id(response) if item["method"] == "POST" else None
        if not store_name or local_id is None or server_id is None:
            await self.queue.remove(item["id"])
            return

        store = self.queue.store
        async with store.transaction():
            await self.queue.remove(item["id"])
            record = await store.get_by_id(store_name, local_id)
            if record is not None:
                await store.delete_one(store_name, local_id)
                record["id"] = server_id
                await store.put_one(store_name, record)
            for pending in await self.queue.items():
                url = rewrite_url(pending["url"], local_id, server_id)
                if url != pending["url"]:
                    await self.queue.save(dict(pending, url=url))
        logger.debug("Replaced placeholder id %s with server id %s in %s", local_id, server_id, store_name)

    async def _drop(self, item, status, reason):
        store_name = item.get("store")
        local_id = item.get("local_id")
        store = self.queue.store
        async with store.transaction():
            await self.queue.remove(item["id"])
            # The server never accepted the record, so its local placeholder goes with it.
            if store_name and local_id is not None:
                await store.delete_one(store_name, local_id)
        self.state.failed_items.append(FailedSyncItem(item=item, status=status, reason=reason))
