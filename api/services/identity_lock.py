"""
Per-identity locking for contact consolidation.

Two requests that mention the same email or phone number must not interleave
their read-decide-write sequences, or both may conclude "first sighting" and
insert two primaries for one identity. Each request holds an exclusive lock
for every identity key it mentions, acquired in sorted order.

Requests with disjoint identity keys can still reach the same cluster, for
example one bridging clusters 1 and 2 while another extends cluster 2. While
reading and rewriting links they also hold a cluster key for every primary id
their group points at, so a cluster is never merged away under a request that
is about to link into it.

Locks are process-local. A deployment with several worker processes sharing
one database needs a single worker or a store-level constraint.
"""
import logging
import re
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterable, Optional

from config.settings import settings

logger = logging.getLogger(__name__)


class IdentityLockTimeout(Exception):
    """Raised when an identity key stays locked past the timeout."""

    def __init__(self, key: str, timeout: float):
        self.key = key
        self.timeout = timeout
        super().__init__(f"Timed out after {timeout:.1f}s waiting for identity lock '{key}'")


def identity_keys(email: Optional[str], phone_number: Optional[str]) -> list[str]:
    """
    Build the sorted lock keys for an observation.

    Keys are normalized more loosely than matching (case-folded email,
    digits-only phone) so near-identical values share a lock.

    Examples:
        >>> identity_keys("A@x.com ", "(901) 229-5017")
        ['email:a@x.com', 'phone:9012295017']
    """
    keys = set()
    if email:
        keys.add(f"email:{email.strip().lower()}")
    if phone_number:
        digits = re.sub(r'\D', '', phone_number)
        keys.add(f"phone:{digits or phone_number.strip()}")
    return sorted(keys)


def cluster_keys(primary_ids: Iterable[int]) -> list[str]:
    """Sorted lock keys for a set of cluster primary ids."""
    return sorted(f"cluster:{primary_id}" for primary_id in set(primary_ids))


@dataclass
class _KeyLock:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0  # holders plus waiters


class IdentityLockManager:
    """Reference-counted exclusive locks keyed by identity string. Thread-safe."""

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout if timeout is not None else settings.lock_timeout_seconds
        self._guard = threading.Lock()
        self._locks: dict[str, _KeyLock] = {}

    def _checkout(self, key: str) -> _KeyLock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = _KeyLock()
                self._locks[key] = entry
            entry.users += 1
            return entry

    def _checkin(self, key: str, entry: _KeyLock, held: bool) -> None:
        if held:
            entry.lock.release()
        with self._guard:
            entry.users -= 1
            if entry.users == 0:
                self._locks.pop(key, None)

    @contextmanager
    def hold(self, keys: Iterable[str]):
        """
        Hold every key for the duration of the block.

        Raises:
            IdentityLockTimeout: if any key cannot be acquired before the deadline
        """
        deadline = time.monotonic() + self.timeout
        acquired: list[tuple[str, _KeyLock]] = []
        try:
            for key in sorted(set(keys)):
                entry = self._checkout(key)
                remaining = deadline - time.monotonic()
                if remaining > 0:
                    got = entry.lock.acquire(timeout=remaining)
                else:
                    got = entry.lock.acquire(blocking=False)
                if not got:
                    self._checkin(key, entry, held=False)
                    logger.error(f"Identity lock timeout on {key}")
                    raise IdentityLockTimeout(key, self.timeout)
                acquired.append((key, entry))
            yield
        finally:
            for key, entry in reversed(acquired):
                self._checkin(key, entry, held=True)

    def active_keys(self) -> list[str]:
        """Keys currently held or waited on."""
        with self._guard:
            return sorted(self._locks)
