# Core indexing services
# Pipeline modules (controller, reducers, reorg, ...) import the store and
# are imported by full path.
from .hasher import Hasher, CanonicalSerializationError
from .errors import (
    IndexerError,
    OrderingConflictError,
    SourceUnavailableError,
    BackfillUnavailableError,
    IngestionError,
)
from .abi import ContractRole, EVENT_SPECS, encode_event, role_name
from .decoder import EventDecoder

__all__ = [
    "Hasher",
    "CanonicalSerializationError",
    "IndexerError",
    "OrderingConflictError",
    "SourceUnavailableError",
    "BackfillUnavailableError",
    "IngestionError",
    "ContractRole",
    "EVENT_SPECS",
    "encode_event",
    "role_name",
    "EventDecoder",
]
