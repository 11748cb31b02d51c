from .api import ApiClient
from .config import DEFAULT_CACHE_TTL, load_config
from .connectivity import ConnectivityMonitor
from .errors import NetworkError, OfflineStoreError, StorageError, StorageUnavailableError, UnknownStoreError
from .freshness import CACHE_TTL, CacheFreshness
from .offline import MutationResult, OfflineStore, ReadOptions
from .server import create_app
from .state import FailedSyncItem, SyncState
from .store import LocalStore
from .sync import SyncProcessor, SyncQueue

__all__ = [
    "ApiClient",
    "CACHE_TTL",
    "CacheFreshness",
    "ConnectivityMonitor",
    "DEFAULT_CACHE_TTL",
    "FailedSyncItem",
    "LocalStore",
    "MutationResult",
    "NetworkError",
    "OfflineStore",
    "OfflineStoreError",
    "ReadOptions",
    "StorageError",
    "StorageUnavailableError",
    "SyncProcessor",
    "SyncQueue",
    "SyncState",
    "UnknownStoreError",
    "create_app",
    "load_config",
]
