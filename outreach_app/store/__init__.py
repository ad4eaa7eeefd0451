"""
Client for the remote record store (Airtable-style REST API).

Everything the engine reads or writes outside the local bookkeeping database
passes through :class:`RecordStoreClient`, which owns rate limiting, retries,
pagination and batching.
"""

from .client import RecordStoreClient, RetryPolicy, StoreRecord, TokenBucket
from .deadline import Deadline, DeadlineExceeded, check_deadline, current_deadline, deadline_scope
from .errors import (
    RecordNotFound,
    StoreError,
    StoreRequestError,
    TerminalStoreError,
    TransientStoreError,
)

__all__ = [
    "Deadline",
    "DeadlineExceeded",
    "RecordNotFound",
    "RecordStoreClient",
    "RetryPolicy",
    "StoreError",
    "StoreRecord",
    "StoreRequestError",
    "TerminalStoreError",
    "TokenBucket",
    "TransientStoreError",
    "check_deadline",
    "current_deadline",
    "deadline_scope",
]
