class OfflineStoreError(RuntimeError):
    """Base class for errors raised by the offline cache."""


class StorageUnavailableError(OfflineStoreError):
    """Raised when the local SQLite store cannot be opened or migrated."""


class StorageError(OfflineStoreError):
    """Raised when a read or write against an open local store fails."""


class UnknownStoreError(StorageError, KeyError):
    """Raised for a store or index name that is not part of the local schema."""

    def __str__(self):
        return Exception.__str__(self)


class NetworkError(OfflineStoreError):
    """Raised when a request never produced an HTTP response (connect, DNS, reset, timeout)."""
