from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Mapping, Optional, Set

from userservice.storage.errors import ConstraintViolation, expect_single_row
from userservice.storage.models import Credential


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MemoryStore:
    """In-memory credential store for tests and local development."""

    def __init__(self) -> None:
        self.credentials: Dict[str, Credential] = {}
        self._names: Dict[str, str] = {}
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None

    def fetch_credential(self, identifier: str) -> Optional[Credential]:
        with self._data_lock:
            user_id = identifier if identifier in self.credentials else self._names.get(identifier)
            if user_id is None:
                return None
            # Callers get a snapshot, never the stored record
            return replace(self.credentials[user_id])

    def insert_credential(self, credential: Credential) -> None:
        with self._data_lock:
            if credential.user_id in self.credentials or credential.user_id in self._names:
                raise ConstraintViolation("user id already exists", {"field": "id"})
            # Lookups match ids and names alike
            if credential.name in self._names or credential.name in self.credentials:
                raise ConstraintViolation("user already exists", {"field": "name"})
            self.credentials[credential.user_id] = replace(credential)
            self._names[credential.name] = credential.user_id

    def _update(self, operation: str, user_id: str, **changes) -> None:
        with self._data_lock:
            existing = self.credentials.get(user_id)
            expect_single_row(operation, 1 if existing else 0, user_id)
            self.credentials[user_id] = replace(existing, **changes)

    def record_login_success(self, user_id: str, when: datetime) -> None:
        self._update(
            "record_login_success",
            user_id,
            login_success=when,
            login_failure=None,
            failure_count=0,
        )

    def record_login_failure(self, user_id: str, when: datetime) -> None:
        with self._data_lock:
            existing = self.credentials.get(user_id)
            count = existing.failure_count + 1 if existing else 0
            self._update(
                "record_login_failure",
                user_id,
                login_failure=when,
                failure_count=count,
            )

    def reset_credential(
        self, user_id: str, password_hash: str, salt: str, when: datetime
    ) -> None:
        self._update(
            "reset_credential",
            user_id,
            password_hash=password_hash,
            salt=salt,
            login_success=when,
            login_failure=None,
            failure_count=0,
            mtime=when,
        )


class MemorySessionStore:
    """In-memory stand-in for the volatile key-value store.

    Mirrors the Redis semantics the session validator relies on: hashes and
    sets share one keyspace, a key with a TTL disappears once the injected
    clock passes its deadline, and a hash with no fields left is deleted.
    """

    def __init__(self, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._clock = clock or _utcnow
        self._hashes: Dict[str, Dict[str, str]] = {}
        self._sets: Dict[str, Set[str]] = {}
        self._expiry: Dict[str, datetime] = {}
        self._lock = threading.Lock()

    def _drop(self, key: str) -> None:
        self._hashes.pop(key, None)
        self._sets.pop(key, None)
        self._expiry.pop(key, None)

    def _live(self, key: str) -> bool:
        deadline = self._expiry.get(key)
        if deadline is not None and deadline <= self._clock():
            self._drop(key)
        return key in self._hashes or key in self._sets

    def verify_connection(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(key)

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        with self._lock:
            if not self._live(key):
                return False
            self._expiry[key] = self._clock() + timedelta(seconds=ttl_seconds)
            return True

    async def hset(self, key: str, mapping: Mapping[str, str]) -> int:
        with self._lock:
            self._live(key)
            fields = self._hashes.setdefault(key, {})
            added = len(set(mapping) - set(fields))
            fields.update({k: str(v) for k, v in mapping.items()})
            return added

    async def hget(self, key: str, field: str) -> Optional[str]:
        with self._lock:
            if not self._live(key):
                return None
            return self._hashes.get(key, {}).get(field)

    async def hgetall(self, key: str) -> Dict[str, str]:
        with self._lock:
            if not self._live(key):
                return {}
            return dict(self._hashes.get(key, {}))

    async def hdel(self, key: str, *fields: str) -> int:
        with self._lock:
            if not self._live(key) or key not in self._hashes:
                return 0
            current = self._hashes[key]
            removed = sum(1 for f in fields if current.pop(f, None) is not None)
            if not current:
                self._drop(key)
            return removed

    async def sadd(self, key: str, *members: str) -> int:
        with self._lock:
            self._live(key)
            current = self._sets.setdefault(key, set())
            added = len(set(members) - current)
            current.update(members)
            return added

    async def srem(self, key: str, *members: str) -> int:
        with self._lock:
            if not self._live(key) or key not in self._sets:
                return 0
            current = self._sets[key]
            removed = len(current & set(members))
            current.difference_update(members)
            if not current:
                self._drop(key)
            return removed

    async def smembers(self, key: str) -> List[str]:
        with self._lock:
            if not self._live(key):
                return []
            return sorted(self._sets.get(key, set()))
