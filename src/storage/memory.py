"""
In-memory repositories.

Useful for:
- Unit testing
- Development
- Single-instance deployments where losing state on restart is acceptable

Records are deep-copied on the way in and out so callers can never mutate
stored state behind the owning component's back.
"""

import copy
import threading
from collections import defaultdict
from datetime import datetime

from models import (
    ClaimHistoryEntry,
    ClaimStatus,
    DeliveryRecord,
    DetectedEvent,
    Notification,
    NotificationPreference,
)
from storage.base import (
    ClaimHistoryRepository,
    EventStore,
    NotificationStore,
    PreferenceStore,
    RecordNotFoundError,
    StorageWriteError,
)


def _newest_first(items: list, key=lambda item: item.timestamp) -> list:
    # Later insertions win ties
    return sorted(reversed(items), key=key, reverse=True)


class MemoryClaimHistoryRepository(ClaimHistoryRepository):
    """Thread-safe in-memory claim history."""

    def __init__(self):
        self._entries: dict[str, ClaimHistoryEntry] = {}
        self._by_author: dict[str, list[str]] = defaultdict(list)
        self._lock = threading.RLock()

    def append(self, entry: ClaimHistoryEntry) -> None:
        with self._lock:
            if entry.id in self._entries:
                raise StorageWriteError(f"Claim entry {entry.id} already exists")
            self._entries[entry.id] = copy.deepcopy(entry)
            self._by_author[entry.author_address].append(entry.id)

    def update(self, entry: ClaimHistoryEntry) -> None:
        with self._lock:
            current = self._entries.get(entry.id)
            if current is None:
                raise RecordNotFoundError(f"Claim entry {entry.id} not found")
            if current.status.is_terminal:
                raise StorageWriteError(
                    f"Claim entry {entry.id} is {current.status.value} and cannot change"
                )
            self._entries[entry.id] = copy.deepcopy(entry)

    def get(self, entry_id: str) -> ClaimHistoryEntry | None:
        with self._lock:
            entry = self._entries.get(entry_id)
            return copy.deepcopy(entry) if entry else None

    def list_for_author(self, author_address: str) -> list[ClaimHistoryEntry]:
        with self._lock:
            entries = [self._entries[i] for i in self._by_author.get(author_address, [])]
            return copy.deepcopy(_newest_first(entries))

    def count_by_status(self) -> dict[ClaimStatus, int]:
        with self._lock:
            counts = {status: 0 for status in ClaimStatus}
            for entry in self._entries.values():
                counts[entry.status] += 1
            return counts

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._by_author.clear()


class MemoryNotificationStore(NotificationStore):
    """Thread-safe in-memory notification queues."""

    def __init__(self):
        self._queues: dict[str, list[Notification]] = defaultdict(list)
        self._deliveries: list[DeliveryRecord] = []
        self._lock = threading.RLock()

    def add(self, notification: Notification, capacity: int) -> None:
        with self._lock:
            queue = self._queues[notification.author_address]
            queue.insert(0, copy.deepcopy(notification))
            del queue[capacity:]

    def list_for_author(self, author_address: str) -> list[Notification]:
        with self._lock:
            return copy.deepcopy(self._queues.get(author_address, []))

    def mark_read(self, author_address: str, notification_ids: list[str]) -> tuple[int, int]:
        marked = 0
        not_found = 0
        with self._lock:
            by_id = {n.id: n for n in self._queues.get(author_address, [])}
            for notification_id in dict.fromkeys(notification_ids):
                notification = by_id.get(notification_id)
                if notification is None:
                    not_found += 1
                elif not notification.read:
                    notification.read = True
                    marked += 1
        return marked, not_found

    def list_all(self) -> list[Notification]:
        with self._lock:
            return copy.deepcopy([n for queue in self._queues.values() for n in queue])

    def add_delivery_record(self, record: DeliveryRecord) -> None:
        with self._lock:
            self._deliveries.append(copy.deepcopy(record))

    def list_delivery_records(self, author_address: str | None = None) -> list[DeliveryRecord]:
        with self._lock:
            records = [
                r for r in self._deliveries
                if author_address is None or r.author_address == author_address
            ]
            return copy.deepcopy(records)

    def purge_delivery_records(self, before: datetime) -> int:
        with self._lock:
            kept = [r for r in self._deliveries if r.last_attempt >= before]
            removed = len(self._deliveries) - len(kept)
            self._deliveries = kept
            return removed


class MemoryPreferenceStore(PreferenceStore):
    def __init__(self):
        self._preferences: dict[str, NotificationPreference] = {}
        self._lock = threading.RLock()

    def get(self, author_address: str) -> NotificationPreference | None:
        with self._lock:
            preference = self._preferences.get(author_address)
            return copy.deepcopy(preference) if preference else None

    def save(self, preference: NotificationPreference) -> None:
        with self._lock:
            self._preferences[preference.author_address] = copy.deepcopy(preference)

    def list_all(self) -> list[NotificationPreference]:
        with self._lock:
            return copy.deepcopy(list(self._preferences.values()))


class MemoryEventStore(EventStore):
    def __init__(self):
        self._events: dict[str, DetectedEvent] = {}
        self._lock = threading.RLock()

    def add(self, event: DetectedEvent) -> None:
        with self._lock:
            if event.id in self._events:
                raise StorageWriteError(f"Event {event.id} already exists")
            self._events[event.id] = copy.deepcopy(event)

    def get(self, event_id: str) -> DetectedEvent | None:
        with self._lock:
            event = self._events.get(event_id)
            return copy.deepcopy(event) if event else None

    def update(self, event: DetectedEvent) -> None:
        with self._lock:
            if event.id not in self._events:
                raise RecordNotFoundError(f"Event {event.id} not found")
            self._events[event.id] = copy.deepcopy(event)

    def list_for_author(self, author_address: str) -> list[DetectedEvent]:
        with self._lock:
            events = [e for e in self._events.values() if e.author_address == author_address]
            return copy.deepcopy(_newest_first(events))

    def list_all(self) -> list[DetectedEvent]:
        with self._lock:
            return copy.deepcopy(_newest_first(list(self._events.values())))

    def purge_before(self, cutoff: datetime) -> int:
        with self._lock:
            expired = [i for i, e in self._events.items() if e.timestamp < cutoff]
            for event_id in expired:
                del self._events[event_id]
            return len(expired)
