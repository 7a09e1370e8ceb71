"""
Tests for the repository layer.

Covers the in-memory stores, the JSON file claim history and backend
selection from the environment.
"""

import json
from datetime import datetime, timedelta, timezone

import pytest

from models import (
    ClaimHistoryEntry,
    ClaimStatus,
    DeliveryRecord,
    DetectedEvent,
    EventType,
    Notification,
    NotificationPreference,
    NotificationPriority,
    NotificationType,
    QualityEventData,
)
from storage import (
    JSONFileClaimHistoryRepository,
    MemoryClaimHistoryRepository,
    MemoryEventStore,
    MemoryNotificationStore,
    MemoryPreferenceStore,
    RecordNotFoundError,
    StorageError,
    StorageReadError,
    StorageWriteError,
    get_claim_history_repository,
)

AUTHOR = "0x" + "a" * 40
BASE_TIME = datetime(2026, 1, 1, tzinfo=timezone.utc)


def make_entry(entry_id, minutes=0, status=ClaimStatus.PENDING, author=AUTHOR):
    return ClaimHistoryEntry(
        id=entry_id,
        subject_id="ch-1",
        author_address=author,
        amount=1000,
        platform_fee=50,
        net_amount=48,
        status=status,
        timestamp=BASE_TIME + timedelta(minutes=minutes),
        license_tier="premium",
    )


def make_notification(notification_id, minutes=0):
    return Notification(
        id=notification_id,
        author_address=AUTHOR,
        type=NotificationType.NEW_ROYALTY,
        title="New Royalties Available",
        message="hello",
        priority=NotificationPriority.MEDIUM,
        timestamp=BASE_TIME + timedelta(minutes=minutes),
    )


def make_event(event_id, days=0):
    return DetectedEvent(
        id=event_id,
        type=EventType.QUALITY,
        author_address=AUTHOR,
        subject_id="story-1",
        confidence=0.85,
        data=QualityEventData(0.4, ["Tighten the opening"]),
        timestamp=BASE_TIME + timedelta(days=days),
    )


class TestMemoryClaimHistory:
    """Tests for the in-memory claim history."""

    def test_append_and_list_newest_first(self):
        repo = MemoryClaimHistoryRepository()
        repo.append(make_entry("c1", minutes=0))
        repo.append(make_entry("c2", minutes=5))
        repo.append(make_entry("c3", minutes=5))

        assert [e.id for e in repo.list_for_author(AUTHOR)] == ["c3", "c2", "c1"]
        assert repo.list_for_author("0x" + "b" * 40) == []

    def test_duplicate_id_rejected(self):
        repo = MemoryClaimHistoryRepository()
        repo.append(make_entry("c1"))
        with pytest.raises(StorageWriteError):
            repo.append(make_entry("c1"))

    def test_update_pending_entry(self):
        repo = MemoryClaimHistoryRepository()
        entry = make_entry("c1")
        repo.append(entry)
        entry.status = ClaimStatus.COMPLETED
        repo.update(entry)
        assert repo.get("c1").status is ClaimStatus.COMPLETED

    def test_terminal_entries_are_immutable(self):
        repo = MemoryClaimHistoryRepository()
        repo.append(make_entry("c1", status=ClaimStatus.FAILED))
        with pytest.raises(StorageWriteError):
            repo.update(make_entry("c1", status=ClaimStatus.COMPLETED))

    def test_update_unknown_entry(self):
        with pytest.raises(RecordNotFoundError):
            MemoryClaimHistoryRepository().update(make_entry("missing"))

    def test_returns_copies(self):
        """Mutating a returned entry does not change the store."""
        repo = MemoryClaimHistoryRepository()
        repo.append(make_entry("c1"))
        repo.get("c1").status = ClaimStatus.COMPLETED
        assert repo.get("c1").status is ClaimStatus.PENDING

    def test_count_by_status(self):
        repo = MemoryClaimHistoryRepository()
        repo.append(make_entry("c1"))
        repo.append(make_entry("c2", status=ClaimStatus.COMPLETED))
        counts = repo.count_by_status()
        assert counts[ClaimStatus.PENDING] == 1
        assert counts[ClaimStatus.COMPLETED] == 1
        assert counts[ClaimStatus.FAILED] == 0


class TestJSONFileClaimHistory:
    """Tests for the JSON file claim history."""

    def test_persists_across_instances(self, tmp_path):
        path = str(tmp_path / "history.json")
        repo = JSONFileClaimHistoryRepository(path)
        entry = make_entry("c1")
        repo.append(entry)
        entry.status = ClaimStatus.COMPLETED
        entry.transaction_hash = "0x01"
        repo.update(entry)

        reloaded = JSONFileClaimHistoryRepository(path)
        stored = reloaded.get("c1")
        assert stored.status is ClaimStatus.COMPLETED
        assert stored.transaction_hash == "0x01"
        assert stored.amount == 1000

    def test_file_format(self, tmp_path):
        path = tmp_path / "history.json"
        JSONFileClaimHistoryRepository(str(path)).append(make_entry("c1"))
        data = json.loads(path.read_text())
        assert data["version"] == 1
        assert data["entries"][0]["amount"] == "1000"
        assert data["entries"][0]["chapterId"] == "ch-1"

    def test_empty_file_is_empty_history(self, tmp_path):
        path = tmp_path / "history.json"
        path.write_text("")
        assert JSONFileClaimHistoryRepository(str(path)).list_for_author(AUTHOR) == []

    def test_corrupt_file(self, tmp_path):
        path = tmp_path / "history.json"
        path.write_text("{not json")
        with pytest.raises(StorageReadError):
            JSONFileClaimHistoryRepository(str(path))

    def test_info(self, tmp_path):
        repo = JSONFileClaimHistoryRepository(str(tmp_path / "history.json"))
        repo.append(make_entry("c1"))
        info = repo.get_info()
        assert info["entry_count"] == 1
        assert repo.is_available() is True


class TestBackendSelection:
    """Tests for get_claim_history_repository."""

    def test_memory_by_default(self, monkeypatch):
        monkeypatch.delenv("ROYALTY_HISTORY_FILE", raising=False)
        monkeypatch.delenv("ROYALTY_HISTORY_BACKEND", raising=False)
        assert isinstance(get_claim_history_repository(), MemoryClaimHistoryRepository)

    def test_history_file_implies_json(self, monkeypatch, tmp_path):
        monkeypatch.delenv("ROYALTY_HISTORY_BACKEND", raising=False)
        monkeypatch.setenv("ROYALTY_HISTORY_FILE", str(tmp_path / "h.json"))
        assert isinstance(get_claim_history_repository(), JSONFileClaimHistoryRepository)

    def test_unknown_backend(self, monkeypatch):
        monkeypatch.setenv("ROYALTY_HISTORY_BACKEND", "postgres")
        with pytest.raises(StorageError):
            get_claim_history_repository()


class TestMemoryNotificationStore:
    """Tests for bounded notification queues."""

    def test_newest_first_and_bounded(self):
        store = MemoryNotificationStore()
        for i in range(5):
            store.add(make_notification(f"n{i}", minutes=i), capacity=3)
        assert [n.id for n in store.list_for_author(AUTHOR)] == ["n4", "n3", "n2"]

    def test_mark_read(self):
        store = MemoryNotificationStore()
        store.add(make_notification("n1"), capacity=10)
        store.add(make_notification("n2"), capacity=10)

        assert store.mark_read(AUTHOR, ["n1", "n1", "missing"]) == (1, 1)
        # Already read is neither marked nor missing
        assert store.mark_read(AUTHOR, ["n1"]) == (0, 0)
        assert [n.read for n in store.list_for_author(AUTHOR)] == [False, True]

    def test_delivery_records(self):
        store = MemoryNotificationStore()
        store.add_delivery_record(
            DeliveryRecord("n1", AUTHOR, 1, True, BASE_TIME, {"in_app": True})
        )
        store.add_delivery_record(
            DeliveryRecord("n2", "0x" + "b" * 40, 1, False, BASE_TIME + timedelta(days=2))
        )
        assert len(store.list_delivery_records()) == 2
        assert len(store.list_delivery_records(AUTHOR)) == 1
        assert store.purge_delivery_records(BASE_TIME + timedelta(days=1)) == 1
        assert [r.notification_id for r in store.list_delivery_records()] == ["n2"]


class TestMemoryPreferenceStore:
    def test_save_and_get(self):
        store = MemoryPreferenceStore()
        assert store.get(AUTHOR) is None
        store.save(NotificationPreference(author_address=AUTHOR, push_enabled=False))
        assert store.get(AUTHOR).push_enabled is False
        assert len(store.list_all()) == 1


class TestMemoryEventStore:
    """Tests for detected event storage."""

    def test_add_get_update(self):
        store = MemoryEventStore()
        event = make_event("e1")
        store.add(event)
        event.notification_sent = True
        store.update(event)
        assert store.get("e1").notification_sent is True
        with pytest.raises(StorageWriteError):
            store.add(make_event("e1"))
        with pytest.raises(RecordNotFoundError):
            store.update(make_event("e2"))

    def test_list_and_purge(self):
        store = MemoryEventStore()
        store.add(make_event("old", days=0))
        store.add(make_event("new", days=40))
        assert [e.id for e in store.list_for_author(AUTHOR)] == ["new", "old"]
        assert store.purge_before(BASE_TIME + timedelta(days=30)) == 1
        assert [e.id for e in store.list_all()] == ["new"]
