"""
Repository layer for the royalty engine.

Each component receives its repository by injection:

- ClaimHistoryRepository: memory (default) or JSON file
- NotificationStore, PreferenceStore, EventStore: memory

Usage:
    from storage import get_claim_history_repository

    # Select the backend from the environment
    history = get_claim_history_repository()

Environment Variables:
    ROYALTY_HISTORY_BACKEND=memory|json
    ROYALTY_HISTORY_FILE=claim_history.json
"""

import os

from storage.base import (
    ClaimHistoryRepository,
    EventStore,
    NotificationStore,
    PreferenceStore,
    RecordNotFoundError,
    StorageError,
    StorageReadError,
    StorageWriteError,
)
from storage.json_file import JSONFileClaimHistoryRepository
from storage.memory import (
    MemoryClaimHistoryRepository,
    MemoryEventStore,
    MemoryNotificationStore,
    MemoryPreferenceStore,
)

__all__ = [
    "ClaimHistoryRepository",
    "EventStore",
    "JSONFileClaimHistoryRepository",
    "MemoryClaimHistoryRepository",
    "MemoryEventStore",
    "MemoryNotificationStore",
    "MemoryPreferenceStore",
    "NotificationStore",
    "PreferenceStore",
    "RecordNotFoundError",
    "StorageError",
    "StorageReadError",
    "StorageWriteError",
    "get_claim_history_repository",
]


def get_claim_history_repository() -> ClaimHistoryRepository:
    """
    Get the configured claim history backend.

    A configured ROYALTY_HISTORY_FILE implies the JSON backend.
    """
    history_file = os.getenv("ROYALTY_HISTORY_FILE")
    backend_type = os.getenv(
        "ROYALTY_HISTORY_BACKEND", "json" if history_file else "memory"
    ).lower()

    if backend_type == "json":
        return JSONFileClaimHistoryRepository(history_file or "claim_history.json")

    elif backend_type == "memory":
        return MemoryClaimHistoryRepository()

    else:
        raise StorageError(f"Unknown claim history backend: {backend_type}")
