from __future__ import annotations

import copy
from typing import Any, Callable, Dict, List, Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .models import KVEntry


class KeyValueStore(Protocol):
    """
    Synchronous key -> JSON-value store. Single-key reads and writes are atomic;
    there are no multi-key transactions.
    """

    def get_key(self, key: str) -> Optional[Any]: ...

    def set_key(self, key: str, value: Any) -> None: ...

    def remove_key(self, key: str) -> None: ...

    def list_all_keys(self) -> List[str]: ...


class SqlKeyValueStore:
    """KeyValueStore over the kv_store table, one short session per call."""

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None) -> None:
        if session_factory is None:
            from .db import SessionLocal

            session_factory = SessionLocal
        self._session_factory = session_factory

    def get_key(self, key: str) -> Optional[Any]:
        with self._session_factory() as db:
            row = db.get(KVEntry, key)
            return row.value if row is not None else None

    def set_key(self, key: str, value: Any) -> None:
        with self._session_factory() as db:
            try:
                db.merge(KVEntry(key=key, value=value))
                db.commit()
            except SQLAlchemyError:
                db.rollback()
                raise

    def remove_key(self, key: str) -> None:
        with self._session_factory() as db:
            try:
                db.query(KVEntry).filter(KVEntry.key == key).delete()
                db.commit()
            except SQLAlchemyError:
                db.rollback()
                raise

    def list_all_keys(self) -> List[str]:
        with self._session_factory() as db:
            rows = db.query(KVEntry.key).order_by(KVEntry.key.asc()).all()
            return [r[0] for r in rows]


class MemoryKeyValueStore:
    """
    Process-local KeyValueStore. Values are deep-copied on the way in and out so
    callers see the same isolation a serializing store gives them.
    """

    def __init__(self, initial: Optional[Dict[str, Any]] = None) -> None:
        self._data: Dict[str, Any] = copy.deepcopy(initial) if initial else {}

    def get_key(self, key: str) -> Optional[Any]:
        if key not in self._data:
            return None
        return copy.deepcopy(self._data[key])

    def set_key(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)

    def remove_key(self, key: str) -> None:
        self._data.pop(key, None)

    def list_all_keys(self) -> List[str]:
        return list(self._data.keys())
