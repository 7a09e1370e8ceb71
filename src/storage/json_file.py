"""
JSON file claim history.

Persists claim history to a local JSON file for single-node deployments.
The whole history is rewritten on every change (write to a temp file,
then atomic rename), so this backend suits modest volumes.
"""

import json
import logging
import os
import threading
from typing import Any

from models import ClaimHistoryEntry, ClaimStatus
from storage.base import (
    ClaimHistoryRepository,
    StorageReadError,
    StorageWriteError,
)
from storage.memory import MemoryClaimHistoryRepository

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1


class JSONFileClaimHistoryRepository(ClaimHistoryRepository):
    """
    Claim history backed by a JSON file.

    An in-memory index serves reads; every write is flushed to disk before
    returning.
    """

    def __init__(self, file_path: str = "claim_history.json"):
        """
        Initialize JSON file storage.

        Args:
            file_path: Path to the JSON file

        Raises:
            StorageReadError: If an existing file cannot be parsed
        """
        self.file_path = file_path
        self._lock = threading.Lock()
        self._index = MemoryClaimHistoryRepository()
        self._order: list[str] = []
        self._load()

    def _load(self) -> None:
        try:
            if not os.path.exists(self.file_path):
                return
            with open(self.file_path, "r", encoding="utf-8") as f:
                raw_data = f.read()
            if not raw_data.strip():
                return
            data = json.loads(raw_data)
        except PermissionError as e:
            raise StorageReadError(f"Permission denied: {self.file_path}") from e
        except json.JSONDecodeError as e:
            raise StorageReadError(f"Invalid JSON format: {e}") from e
        except OSError as e:
            raise StorageReadError(f"Failed to load claim history: {e}") from e

        try:
            # Replayed oldest first so newest-first ordering is preserved
            for item in data.get("entries", []):
                entry = ClaimHistoryEntry.from_dict(item)
                self._index.append(entry)
                self._order.append(entry.id)
        except (KeyError, TypeError, ValueError) as e:
            raise StorageReadError(f"Corrupt claim history entry: {e}") from e
        logger.info(f"Loaded {len(self._order)} claim history entries from {self.file_path}")

    def _flush(self) -> None:
        entries: list[dict[str, Any]] = []
        for entry_id in self._order:
            entry = self._index.get(entry_id)
            if entry is not None:
                entries.append(entry.to_dict())
        payload = {"version": FORMAT_VERSION, "entries": entries}

        try:
            data = json.dumps(payload, indent=2, ensure_ascii=False)
            temp_path = f"{self.file_path}.tmp"
            with open(temp_path, "w", encoding="utf-8") as f:
                f.write(data)
            os.replace(temp_path, self.file_path)
        except PermissionError as e:
            raise StorageWriteError(f"Permission denied: {self.file_path}") from e
        except OSError as e:
            raise StorageWriteError(f"Failed to save claim history: {e}") from e

    def append(self, entry: ClaimHistoryEntry) -> None:
        with self._lock:
            self._index.append(entry)
            self._order.append(entry.id)
            self._flush()

    def update(self, entry: ClaimHistoryEntry) -> None:
        with self._lock:
            self._index.update(entry)
            self._flush()

    def get(self, entry_id: str) -> ClaimHistoryEntry | None:
        return self._index.get(entry_id)

    def list_for_author(self, author_address: str) -> list[ClaimHistoryEntry]:
        return self._index.list_for_author(author_address)

    def count_by_status(self) -> dict[ClaimStatus, int]:
        return self._index.count_by_status()

    def is_available(self) -> bool:
        directory = os.path.dirname(os.path.abspath(self.file_path))
        return os.access(directory, os.W_OK)

    def get_info(self) -> dict[str, Any]:
        info = super().get_info()
        info.update({"file_path": self.file_path, "entry_count": len(self._order)})
        return info
