import time

from .config import DEFAULT_CACHE_TTL
from .store import METADATA

CACHE_TTL = DEFAULT_CACHE_TTL


class CacheFreshness:
    """Per-key freshness stamps kept in the ``metadata`` store.

    An entry is only ever replaced, never extended: ``set_metadata`` stamps
    ``timestamp = now`` and ``expires_at = now + ttl``.
    """

    def __init__(self, store, clock=time.time):
        self.store = store
        self.clock = clock

    async def set_metadata(self, key, ttl):
        if ttl <= 0:
            raise ValueError(f"Cache TTL must be positive, got {ttl!r}")
        now = self.clock()
        entry = {"key": key, "timestamp": now, "expires_at": now + ttl}
        await self.store.put_one(METADATA, entry)
        return entry

    async def get_metadata(self, key):
        return await self.store.get_by_id(METADATA, key)

    async def is_valid(self, key):
        metadata = await self.get_metadata(key)
        if metadata is None:
            return False
        return self.clock() < metadata["expires_at"]

    async def invalidate(self, key=None):
        if key is None:
            await self.store.clear_store(METADATA)
        else:
            await self.store.delete_one(METADATA, key)
