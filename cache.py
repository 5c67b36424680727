"""Derived-state cache for expensive per-user reads.

The cache is never authoritative: every value can be recomputed from the
ledger, so a backend that fails or is switched off only costs speed.
Cached reads live under a per-(operation, user) namespace key holding a
random token; deleting that one fixed key orphans every argument variant
stored under the old token. ``CacheInvalidator`` owns the list of
namespaces per scope, and ``CachedReads`` refuses operations that are not
on it, so a new cached read cannot be added without an invalidation path.
"""

from __future__ import annotations

import copy
import hashlib
import json
import logging
import threading
import time
import uuid
from collections import OrderedDict
from enum import Enum
from functools import lru_cache
from typing import Callable, Optional, Protocol, TypeVar

from config import get_settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Cache(Protocol):
    def get(self, key: str) -> Optional[object]: ...

    def set(self, key: str, value: object, ttl_secs: Optional[float] = None) -> None: ...

    def delete(self, key: str) -> None: ...


class InMemoryCache:
    """Process-local TTL cache with LRU eviction."""

    def __init__(
        self,
        max_entries: int = 2048,
        default_ttl_secs: Optional[float] = 300,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_entries = max_entries
        self.default_ttl_secs = default_ttl_secs
        self._clock = clock
        self._entries: OrderedDict[str, tuple[Optional[float], object]] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[object]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at is not None and expires_at <= self._clock():
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return copy.deepcopy(value)

    def set(self, key: str, value: object, ttl_secs: Optional[float] = None) -> None:
        ttl = self.default_ttl_secs if ttl_secs is None else ttl_secs
        expires_at = self._clock() + ttl if ttl is not None else None
        with self._lock:
            self._entries[key] = (expires_at, copy.deepcopy(value))
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class NullCache:
    """Drop-in backend that never stores anything."""

    def get(self, key: str) -> Optional[object]:
        return None

    def set(self, key: str, value: object, ttl_secs: Optional[float] = None) -> None:
        return None

    def delete(self, key: str) -> None:
        return None


class CacheScope(str, Enum):
    analytics = "analytics"
    budgets = "budgets"
    accounts = "accounts"
    transaction_related = "transaction_related"


SCOPE_OPERATIONS: dict[CacheScope, tuple[str, ...]] = {
    CacheScope.analytics: (
        "analytics:overview",
        "analytics:spending",
        "analytics:income",
        "analytics:trends",
        "analytics:categories",
        "analytics:comparison",
    ),
    CacheScope.budgets: (
        "budgets:overview",
        "budgets:progress",
        "budgets:list",
    ),
    CacheScope.accounts: (
        "accounts:list",
        "accounts:balance",
    ),
}
SCOPE_OPERATIONS[CacheScope.transaction_related] = (
    SCOPE_OPERATIONS[CacheScope.analytics]
    + SCOPE_OPERATIONS[CacheScope.budgets]
    + SCOPE_OPERATIONS[CacheScope.accounts]
)

REGISTERED_OPERATIONS = frozenset(SCOPE_OPERATIONS[CacheScope.transaction_related])


def namespace_key(operation: str, user_id: int) -> str:
    return f"{operation}:{user_id}"


def _normalize(value: object) -> object:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(k): _normalize(v) for k, v in sorted(value.items())}
    if isinstance(value, (list, tuple)):
        return [_normalize(v) for v in value]
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


def args_digest(args: dict[str, object]) -> str:
    payload = json.dumps(_normalize(args), sort_keys=True, separators=(",", ":"))
    return hashlib.md5(payload.encode("utf-8")).hexdigest()


def cache_key(operation: str, user_id: int, token: str, args: dict[str, object]) -> str:
    return f"{namespace_key(operation, user_id)}:{token}:{args_digest(args)}"


class CachedReads:
    def __init__(self, cache: Cache, ttl_secs: Optional[float] = None) -> None:
        self.cache = cache
        self.ttl_secs = ttl_secs if ttl_secs is not None else get_settings().cache_ttl_secs

    def _namespace_token(self, operation: str, user_id: int) -> str:
        ns_key = namespace_key(operation, user_id)
        token = self.cache.get(ns_key)
        if isinstance(token, str):
            return token
        token = uuid.uuid4().hex
        self.cache.set(ns_key, token, self.ttl_secs)
        return token

    def get_or_compute(
        self,
        operation: str,
        user_id: int,
        args: dict[str, object],
        compute: Callable[[], T],
    ) -> T:
        if operation not in REGISTERED_OPERATIONS:
            raise ValueError(f"Cache operation {operation!r} has no invalidation scope")

        try:
            # The token is read before computing so a concurrent invalidation
            # orphans whatever this call stores.
            token = self._namespace_token(operation, user_id)
            key = cache_key(operation, user_id, token, args)
            cached = self.cache.get(key)
        except Exception as exc:
            logger.warning(f"cache_read_failed: operation={operation} error={exc!r}")
            return compute()

        if cached is not None:
            logger.debug(f"cache_hit: key={key}")
            return cached  # type: ignore[return-value]

        logger.debug(f"cache_miss: key={key}")
        result = compute()
        try:
            self.cache.set(key, result, self.ttl_secs)
        except Exception as exc:
            logger.warning(f"cache_write_failed: operation={operation} error={exc!r}")
        return result


class CacheInvalidator:
    def __init__(self, cache: Cache) -> None:
        self.cache = cache

    def invalidate(self, scope: CacheScope, user_id: int) -> None:
        for operation in SCOPE_OPERATIONS[scope]:
            key = namespace_key(operation, user_id)
            try:
                self.cache.delete(key)
            except Exception as exc:
                logger.warning(f"cache_delete_failed: key={key} error={exc!r}")
        logger.info(f"cache_invalidated: scope={scope.value} user_id={user_id}")

    def analytics(self, user_id: int) -> None:
        self.invalidate(CacheScope.analytics, user_id)

    def budgets(self, user_id: int) -> None:
        self.invalidate(CacheScope.budgets, user_id)

    def accounts(self, user_id: int) -> None:
        self.invalidate(CacheScope.accounts, user_id)

    def transaction_related(self, user_id: int) -> None:
        self.invalidate(CacheScope.transaction_related, user_id)


def build_cache(backend: str, *, max_entries: int, ttl_secs: float) -> Cache:
    if backend == "none":
        return NullCache()
    if backend == "memory":
        return InMemoryCache(max_entries=max_entries, default_ttl_secs=ttl_secs)
    raise ValueError(f"Unsupported cache backend: {backend}")


@lru_cache(maxsize=1)
def get_cache() -> Cache:
    settings = get_settings()
    return build_cache(
        settings.cache_backend,
        max_entries=settings.cache_max_entries,
        ttl_secs=settings.cache_ttl_secs,
    )
