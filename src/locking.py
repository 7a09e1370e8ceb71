"""
Claim leases.

A claim holds the lease ``claim:<chapter>:<author>`` from the moment it
reads the claimable balance until the transfer outcome is recorded, so two
requests for the same pair can never both pay out.

- LocalLockManager: in-process leases for a single engine instance
- RedisLockManager: SET NX PX leases shared by every instance on one Redis

Usage:
    from locking import LocalLockManager

    locks = LocalLockManager()
    with locks.lock("claim:chapter-1:0xabc", timeout=0):
        process()
"""

import logging
import threading
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field

import redis

logger = logging.getLogger(__name__)


class LockUnavailableError(Exception):
    def __init__(self, name: str, timeout: float):
        super().__init__(f"Lease '{name}' is held elsewhere (waited {timeout}s)")
        self.name = name
        self.timeout = timeout


@dataclass
class LockInfo:
    """A lease currently held by this process."""

    name: str
    holder_id: str
    acquired_at: float
    ttl: float | None = None
    expires_at: float | None = None


class LockManager(ABC):
    """Named leases. ``timeout`` 0 means a single attempt."""

    @abstractmethod
    def acquire(self, name: str, timeout: float = 0.0, ttl: float = 60.0) -> bool:
        """Take the lease, waiting up to ``timeout`` seconds. False if it stayed held."""

    @abstractmethod
    def release(self, name: str) -> bool:
        """Give the lease back. False if this manager did not hold it."""

    @abstractmethod
    def is_locked(self, name: str) -> bool:
        ...

    @contextmanager
    def lock(self, name: str, timeout: float = 0.0, ttl: float = 60.0):
        if not self.acquire(name, timeout=timeout, ttl=ttl):
            raise LockUnavailableError(name, timeout)
        try:
            yield
        finally:
            self.release(name)


@dataclass
class _Slot:
    mutex: threading.Lock = field(default_factory=threading.Lock)
    # Threads holding or waiting on the mutex; the slot is dropped at zero
    refs: int = 0


class LocalLockManager(LockManager):
    """
    Leases backed by ``threading.Lock``.

    Claims create one lease name per (chapter, author), so a slot only
    lives while some thread holds or waits on it. TTLs are recorded for
    inspection but not enforced in-process.
    """

    def __init__(self):
        self._locks: dict[str, _Slot] = {}
        self._held: dict[str, LockInfo] = {}
        self._registry_lock = threading.Lock()
        self._instance_id = uuid.uuid4().hex[:8]

    def _join(self, name: str) -> _Slot:
        with self._registry_lock:
            slot = self._locks.setdefault(name, _Slot())
            slot.refs += 1
            return slot

    def _leave(self, name: str) -> None:
        with self._registry_lock:
            slot = self._locks[name]
            slot.refs -= 1
            if slot.refs == 0:
                del self._locks[name]

    def acquire(self, name: str, timeout: float = 0.0, ttl: float = 60.0) -> bool:
        slot = self._join(name)
        got_it = slot.mutex.acquire(timeout=timeout) if timeout > 0 else slot.mutex.acquire(False)
        if not got_it:
            self._leave(name)
            return False

        now = time.time()
        self._held[name] = LockInfo(
            name=name,
            holder_id=f"{self._instance_id}:{threading.current_thread().name}",
            acquired_at=now,
            ttl=ttl,
            expires_at=now + ttl if ttl else None,
        )
        return True

    def release(self, name: str) -> bool:
        with self._registry_lock:
            slot = self._locks.get(name)
        if slot is None or name not in self._held:
            return False
        del self._held[name]
        slot.mutex.release()
        self._leave(name)
        return True

    def is_locked(self, name: str) -> bool:
        return name in self._held

    def get_all_locks(self) -> list[LockInfo]:
        return list(self._held.values())


class RedisLockManager(LockManager):
    """
    Leases stored as Redis keys that expire after ``ttl``.

    The key value identifies the holder; release deletes the key only while
    it still carries that value, so a holder whose lease already expired
    cannot drop a lease another instance has since taken.
    """

    COMPARE_AND_DELETE = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("del", KEYS[1])
    end
    return 0
    """

    POLL_START = 0.05
    POLL_MAX = 0.5

    def __init__(self, redis_url: str = "", key_prefix: str = "royalty:lock:", client=None):
        self._redis = client if client is not None else redis.from_url(redis_url)
        self._key_prefix = key_prefix
        self._instance_id = uuid.uuid4().hex
        self._tokens: dict[str, str] = {}
        self._tokens_lock = threading.Lock()

    def _key(self, name: str) -> str:
        return self._key_prefix + name

    def acquire(self, name: str, timeout: float = 0.0, ttl: float = 60.0) -> bool:
        token = f"{self._instance_id}:{threading.get_ident()}:{time.time()}"
        give_up_at = time.time() + timeout
        pause = self.POLL_START

        while not self._redis.set(self._key(name), token, nx=True, px=int(ttl * 1000)):
            if time.time() >= give_up_at:
                return False
            time.sleep(pause)
            pause = min(pause * 1.5, self.POLL_MAX)

        with self._tokens_lock:
            self._tokens[name] = token
        return True

    def release(self, name: str) -> bool:
        with self._tokens_lock:
            token = self._tokens.pop(name, None)
        if token is None:
            return False
        if self._redis.eval(self.COMPARE_AND_DELETE, 1, self._key(name), token):
            return True
        logger.warning(f"Lease '{name}' expired before it was released")
        return False

    def is_locked(self, name: str) -> bool:
        return bool(self._redis.exists(self._key(name)))
