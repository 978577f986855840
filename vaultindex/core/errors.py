"""
Ingestion-side exceptions.

Store-side errors (EntityStoreError, TransientStoreError,
StoreCorruptionError) live in vaultindex.db.store.
"""


class IndexerError(Exception):
    """Base exception for ingestion-side errors."""
    pass


class UnknownEventTypeError(IndexerError):
    """No reducer is registered for the event type."""
    pass


class OrderingConflictError(IndexerError):
    """Two different records claim the same (block_number, log_index)."""
    pass


class SourceUnavailableError(IndexerError):
    """The event source could not answer (timeout, connection, RPC error). Transient."""
    pass


class BackfillUnavailableError(IndexerError):
    """A ledger-state read failed. Transient: the cycle aborts before commit."""
    pass


class IngestionError(IndexerError):
    """A cycle gave up after exhausting its retries."""
    pass
