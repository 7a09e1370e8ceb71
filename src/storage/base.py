"""
Abstract repository interfaces.

Each engine component owns exactly one repository and is the only code that
mutates it. Backends implement these interfaces; the in-memory backends are
used in tests and single-node deployments.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from models import (
    ClaimHistoryEntry,
    ClaimStatus,
    DeliveryRecord,
    DetectedEvent,
    Notification,
    NotificationPreference,
)


class StorageError(Exception):
    """Base exception for storage-related errors."""
    pass


class StorageReadError(StorageError):
    """Raised when reading from storage fails."""
    pass


class StorageWriteError(StorageError):
    """Raised when writing to storage fails."""
    pass


class RecordNotFoundError(StorageError):
    """Raised when updating a record that does not exist."""
    pass


class ClaimHistoryRepository(ABC):
    """
    Append-only store of claim attempts.

    Entries are keyed by author and returned newest first. Only a pending
    entry may be updated; terminal entries are immutable.
    """

    @abstractmethod
    def append(self, entry: ClaimHistoryEntry) -> None:
        """
        Store a new entry.

        Raises:
            StorageWriteError: If an entry with the same id exists
        """
        pass

    @abstractmethod
    def update(self, entry: ClaimHistoryEntry) -> None:
        """
        Replace a pending entry.

        Raises:
            RecordNotFoundError: If no entry has this id
            StorageWriteError: If the stored entry is already terminal
        """
        pass

    @abstractmethod
    def get(self, entry_id: str) -> ClaimHistoryEntry | None:
        pass

    @abstractmethod
    def list_for_author(self, author_address: str) -> list[ClaimHistoryEntry]:
        """All entries for an author, newest first."""
        pass

    @abstractmethod
    def count_by_status(self) -> dict[ClaimStatus, int]:
        pass

    def is_available(self) -> bool:
        return True

    def get_info(self) -> dict[str, Any]:
        return {
            "backend_type": self.__class__.__name__,
            "available": self.is_available(),
        }


class NotificationStore(ABC):
    """Bounded per-author notification queues plus delivery records."""

    @abstractmethod
    def add(self, notification: Notification, capacity: int) -> None:
        """Prepend a notification, evicting the oldest beyond capacity."""
        pass

    @abstractmethod
    def list_for_author(self, author_address: str) -> list[Notification]:
        """The author's queue, newest first."""
        pass

    @abstractmethod
    def mark_read(self, author_address: str, notification_ids: list[str]) -> tuple[int, int]:
        """
        Mark notifications as read.

        Returns:
            Tuple of (marked, not_found). Ids that were already read count
            as neither.
        """
        pass

    @abstractmethod
    def list_all(self) -> list[Notification]:
        pass

    @abstractmethod
    def add_delivery_record(self, record: DeliveryRecord) -> None:
        pass

    @abstractmethod
    def list_delivery_records(self, author_address: str | None = None) -> list[DeliveryRecord]:
        pass

    @abstractmethod
    def purge_delivery_records(self, before: datetime) -> int:
        """Drop delivery records whose last attempt is older than ``before``."""
        pass


class PreferenceStore(ABC):
    """One NotificationPreference per author."""

    @abstractmethod
    def get(self, author_address: str) -> NotificationPreference | None:
        pass

    @abstractmethod
    def save(self, preference: NotificationPreference) -> None:
        pass

    @abstractmethod
    def list_all(self) -> list[NotificationPreference]:
        pass


class EventStore(ABC):
    """Detected events, retained until purged."""

    @abstractmethod
    def add(self, event: DetectedEvent) -> None:
        pass

    @abstractmethod
    def get(self, event_id: str) -> DetectedEvent | None:
        pass

    @abstractmethod
    def update(self, event: DetectedEvent) -> None:
        """
        Raises:
            RecordNotFoundError: If no event has this id
        """
        pass

    @abstractmethod
    def list_for_author(self, author_address: str) -> list[DetectedEvent]:
        """The author's events, newest first."""
        pass

    @abstractmethod
    def list_all(self) -> list[DetectedEvent]:
        pass

    @abstractmethod
    def purge_before(self, cutoff: datetime) -> int:
        """Delete events created before cutoff. Returns the number removed."""
        pass
