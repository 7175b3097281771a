from __future__ import annotations

import logging
import time
from typing import Any, Callable, Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError

from fundwatch.infra.kv_store import KeyValueStore

log = logging.getLogger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


def cache_key(operation: str, *params: Any) -> str:
    """
    Compose a cache key from an operation name and its stable parameters.
    Code lists are sorted and comma-joined so the same set always maps to the
    same key and a different set never collides with it.
    """
    parts = [operation]
    for p in params:
        if isinstance(p, (list, tuple, set, frozenset)):
            parts.append(",".join(sorted(str(x) for x in p)))
        else:
            parts.append("" if p is None else str(p))
    return "_".join(parts)


class CacheStore:
    """
    TTL cache over a KeyValueStore. Every value is stored as an envelope
    {"payload": ..., "expires_at": epoch_ms} under `<prefix><key>`; expires_at
    of 0 never expires. Expired envelopes are deleted by the read that finds them.
    """

    def __init__(
        self,
        store: KeyValueStore,
        prefix: str = "cache_",
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.store = store
        self.prefix = prefix
        self._clock = clock

    def _namespaced(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def set(self, key: str, value: Any, ttl_ms: int) -> bool:
        expires_at = self._clock() + ttl_ms if ttl_ms > 0 else 0
        envelope = {"payload": value, "expires_at": expires_at}
        try:
            self.store.set_key(self._namespaced(key), envelope)
        except (SQLAlchemyError, OSError, TypeError, ValueError) as exc:
            log.warning("cache write failed for %s: %s", key, exc)
            return False
        return True

    def get(self, key: str) -> Optional[Any]:
        """Return the cached payload, or None when absent or expired."""
        name = self._namespaced(key)
        envelope = self.store.get_key(name)
        if not isinstance(envelope, dict) or "payload" not in envelope:
            return None
        try:
            expires_at = int(envelope.get("expires_at") or 0)
        except (TypeError, ValueError):
            expires_at = 1  # unreadable expiry counts as already expired
        if expires_at and expires_at <= self._clock():
            self.store.remove_key(name)
            return None
        return envelope["payload"]

    def remove(self, key: str) -> None:
        self.store.remove_key(self._namespaced(key))

    def keys(self) -> Iterable[str]:
        return [k[len(self.prefix):] for k in self.store.list_all_keys() if k.startswith(self.prefix)]

    def clear(self) -> int:
        """Delete every namespaced key; returns how many were removed."""
        removed = 0
        for name in self.store.list_all_keys():
            if name.startswith(self.prefix):
                self.store.remove_key(name)
                removed += 1
        return removed
