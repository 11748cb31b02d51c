import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Optional

from .api import ApiClient, response_id
from .config import load_config
from .connectivity import ConnectivityMonitor
from .errors import NetworkError
from .freshness import CacheFreshness
from .state import SyncState
from .store import (
    ACCOUNTS,
    API_CACHE,
    CATEGORIES,
    CATEGORY_GROUPS,
    ENTITY_STORES,
    METADATA,
    PAYEES,
    SYNC_QUEUE,
    TRANSACTIONS,
    LocalStore,
)
from .sync import SyncProcessor, SyncQueue

logger = logging.getLogger(__name__)

TRANSACTIONS_URL = "/api/transactions"
DASHBOARD_URL = "/api/dashboard"

# store -> (endpoint, key of the list in the response body)
COLLECTIONS = {
    ACCOUNTS: ("/api/accounts?includeInactive=true", "accounts"),
    CATEGORIES: ("/api/categories", "categories"),
    PAYEES: ("/api/payees", "payees"),
    CATEGORY_GROUPS: ("/api/category-groups", "groups"),
}


@dataclass
class ReadOptions:
    force_refresh: bool = False
    account_id: Optional[int] = None


@dataclass
class MutationResult:
    success: bool
    id: Optional[int] = None
    offline: bool = False


def transactions_cache_key(account_id=None):
    return f"transactions_{account_id}" if account_id else "transactions_all"


class OfflineStore:
    """Read/write entry point that hides the online/offline and fresh/stale decisions.

    Reads are served from the local store while their cache key is fresh, from
    the network otherwise, and fall back to whatever is stored when offline or
    when the request fails. Writes go to the network when online; offline they
    are applied locally at once and queued for replay.
    """

    def __init__(self, config=None, store=None, api=None, clock=None, probe=None):
        self.config = load_config(config)
        self.clock = clock or time.time
        self.ttl = self.config["CACHE_TTL"]
        self.state = SyncState()

        self.store = store or LocalStore(self.config["LOCAL_DATABASE"])
        self._owns_api = api is None
        self.api = api or ApiClient(self.config["API_BASE_URL"], timeout=self.config["REQUEST_TIMEOUT"])

        self.freshness = CacheFreshness(self.store, clock=self.clock)
        self.queue = SyncQueue(self.store, clock=self.clock)
        self.processor = SyncProcessor(
            self.queue,
            self.api,
            self.state,
            max_retries=int(self.config["MAX_SYNC_RETRIES"]),
            clock=self.clock,
        )
        self.monitor = ConnectivityMonitor(
            self.state,
            probe or self.api.ping,
            self.sync_pending_changes,
            poll_interval=self.config["POLL_INTERVAL"],
        )
        self._initialized = False
        self._last_temp_id = None

    async def __aenter__(self):
        await self.init()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.dispose()

    @property
    def is_online(self):
        return self.state.is_online

    @property
    def is_syncing(self):
        return self.state.is_syncing

    @property
    def pending_changes(self):
        return self.state.pending_changes

    @property
    def last_sync_time(self):
        return self.state.last_sync_time

    @property
    def sync_error(self):
        return self.state.sync_error

    @property
    def failed_items(self):
        return list(self.state.failed_items)

    async def init(self):
        if self._initialized:
            return
        await self.store.open()
        self.state.pending_changes = await self.queue.count()
        await self.monitor.start()
        self._initialized = True
        if self.state.is_online:
            self.monitor.schedule(self.sync_pending_changes)

    async def dispose(self):
        try:
            if self._initialized:
                await self.monitor.stop()
        finally:
            self._initialized = False
            try:
                if self._owns_api:
                    await self.api.aclose()
            finally:
                self.store.close()

    # Reads

    async def get_accounts(self, force_refresh=False):
        return await self._load_collection(ACCOUNTS, force_refresh)

    async def get_categories(self, force_refresh=False):
        return await self._load_collection(CATEGORIES, force_refresh)

    async def get_payees(self, force_refresh=False):
        return await self._load_collection(PAYEES, force_refresh)

    async def get_category_groups(self, force_refresh=False):
        return await self._load_collection(CATEGORY_GROUPS, force_refresh)

    async def get_transactions(self, options=None, *, account_id=None, force_refresh=False):
        if options is None:
            options = ReadOptions(force_refresh=force_refresh, account_id=account_id)
        url = TRANSACTIONS_URL
        if options.account_id:
            url = f"{TRANSACTIONS_URL}?accountId={options.account_id}"
        return await self._load(
            TRANSACTIONS,
            transactions_cache_key(options.account_id),
            url,
            "transactions",
            self.ttl["transactions"],
            options.force_refresh,
            account_id=options.account_id,
        )

    async def _load_collection(self, store_name, force_refresh):
        url, response_key = COLLECTIONS[store_name]
        return await self._load(store_name, store_name, url, response_key, self.ttl[store_name], force_refresh)

    async def _load(self, store_name, cache_key, url, response_key, ttl, force_refresh, account_id=None):
        if not force_refresh and await self.freshness.is_valid(cache_key):
            return await self._read_local(store_name, account_id)

        if not self.state.is_online:
            return await self._read_local(store_name, account_id)

        try:
            payload = await self.api.get_json(url)
        except NetworkError as exc:
            logger.warning("Failed to fetch %s: %s", url, exc)
            payload = None
        if not isinstance(payload, dict):
            return await self._read_local(store_name, account_id)

        records = payload.get(response_key) or []
        async with self.store.transaction():
            if account_id:
                await self.store.put_many(store_name, records)
            else:
                # Offline-created records still waiting in the queue survive a refresh.
                queued = {item.get("local_id") for item in await self.queue.items() if item.get("store") == store_name}
                placeholders = [r for r in await self.store.get_all(store_name) if r.get("id") in queued]
                await self.store.clear_store(store_name)
                await self.store.put_many(store_name, records + placeholders)
            await self.freshness.set_metadata(cache_key, ttl)
        return records

    async def _read_local(self, store_name, account_id=None):
        if account_id:
            return await self.store.get_by_index(store_name, "account_id", account_id)
        return await self.store.get_all(store_name)

    async def active_accounts(self):
        return [account for account in await self.get_accounts() if account.get("is_active")]

    async def expense_categories(self):
        return [category for category in await self.get_categories() if category.get("type") == "expense"]

    async def income_categories(self):
        return [category for category in await self.get_categories() if category.get("type") == "income"]

    async def preload_essentials(self):
        accounts, categories = await asyncio.gather(self.get_accounts(), self.get_categories())
        return {"accounts": accounts, "categories": categories}

    # Generic cached GETs

    async def fetch_with_offline(self, url, ttl=None):
        """GET ``url``, caching the JSON body; serves the unexpired cached body when offline or failing."""
        ttl = ttl or self.ttl["api_cache"]
        if not self.state.is_online:
            return await self._cached_response(url)

        try:
            data = await self.api.get_json(url)
        except NetworkError as exc:
            logger.warning("Failed to fetch %s: %s", url, exc)
            data = None
        if data is None:
            return await self._cached_response(url)

        now = self.clock()
        await self.store.put_one(API_CACHE, {"url": url, "data": data, "timestamp": now, "expires_at": now + ttl})
        return data

    async def _cached_response(self, url):
        entry = await self.store.get_by_id(API_CACHE, url)
        if entry is not None and self.clock() < entry["expires_at"]:
            return entry["data"]
        return None

    async def get_dashboard_stats(self, force_refresh=False):
        if not force_refresh:
            cached = await self._cached_response(DASHBOARD_URL)
            if cached is not None:
                return cached
        return await self.fetch_with_offline(DASHBOARD_URL, ttl=self.ttl["dashboard"])

    # Writes

    def _next_temp_id(self):
        temp_id = -int(self.clock() * 1000)
        if self._last_temp_id is not None and temp_id >= self._last_temp_id:
            temp_id = self._last_temp_id - 1
        self._last_temp_id = temp_id
        return temp_id

    async def _send(self, method, url, body=None):
        """Returns the response, or None when the request never reached the server."""
        try:
            return await self.api.request(method, url, body)
        except NetworkError as exc:
            logger.warning("%s %s failed, queueing for later: %s", method, url, exc)
            return None

    async def _queued(self, method, url, body=None, local_id=None, local_write=None):
        async with self.store.transaction():
            if local_write is not None:
                await local_write()
            await self.queue.enqueue(
                method,
                url,
                body,
                store=TRANSACTIONS if local_id is not None else None,
                local_id=local_id,
            )
        self.state.pending_changes = await self.queue.count()

    async def create_transaction(self, data):
        data = dict(data)
        if self.state.is_online:
            response = await self._send("POST", TRANSACTIONS_URL, data)
            if response is not None:
                if not response.is_success:
                    logger.warning("Creating transaction failed with %s", response.status_code)
                    return MutationResult(success=False)
                server_id = response_id(response)
                if server_id is None:
                    logger.warning("Created transaction but the response carried no id, refetching on next read")
                    await self.freshness.invalidate(transactions_cache_key())
                    if data.get("account_id"):
                        await self.freshness.invalidate(transactions_cache_key(data["account_id"]))
                else:
                    await self.store.put_one(TRANSACTIONS, dict(data, id=server_id))
                return MutationResult(success=True, id=server_id)

        temp_id = self._next_temp_id()

        async def write_local():
            await self.store.put_one(TRANSACTIONS, dict(data, id=temp_id))

        await self._queued("POST", TRANSACTIONS_URL, data, local_id=temp_id, local_write=write_local)
        return MutationResult(success=True, id=temp_id, offline=True)

    async def update_transaction(self, transaction_id, data):
        data = dict(data)
        url = f"{TRANSACTIONS_URL}/{transaction_id}"

        async def merge_local():
            existing = await self.store.get_by_id(TRANSACTIONS, transaction_id)
            if existing is not None:
                await self.store.put_one(TRANSACTIONS, {**existing, **data, "id": transaction_id})

        if self.state.is_online:
            response = await self._send("PUT", url, data)
            if response is not None:
                if not response.is_success:
                    logger.warning("Updating transaction %s failed with %s", transaction_id, response.status_code)
                    return MutationResult(success=False)
                await merge_local()
                return MutationResult(success=True, id=transaction_id)

        await self._queued("PUT", url, data, local_write=merge_local)
        return MutationResult(success=True, id=transaction_id, offline=True)

    async def delete_transaction(self, transaction_id):
        url = f"{TRANSACTIONS_URL}/{transaction_id}"

        async def remove_local():
            await self.store.delete_one(TRANSACTIONS, transaction_id)

        if self.state.is_online:
            response = await self._send("DELETE", url)
            if response is not None:
                if not response.is_success:
                    logger.warning("Deleting transaction %s failed with %s", transaction_id, response.status_code)
                    return MutationResult(success=False)
                await remove_local()
                return MutationResult(success=True, id=transaction_id)

        await self._queued("DELETE", url, local_write=remove_local)
        return MutationResult(success=True, id=transaction_id, offline=True)

    # Sync and administration

    async def sync_pending_changes(self):
        return await self.processor.run()

    async def get_sync_queue_count(self):
        return await self.queue.count()

    def clear_failed_items(self):
        self.state.failed_items.clear()
        self.state.sync_error = None

    async def invalidate_cache(self, key=None):
        await self.freshness.invalidate(key)

    async def clear_all_data(self):
        async with self.store.transaction():
            for store_name in (*ENTITY_STORES, SYNC_QUEUE, METADATA, API_CACHE):
                await self.store.clear_store(store_name)
        self.state.pending_changes = 0
        logger.info("Cleared all offline data")
