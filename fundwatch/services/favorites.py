from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from fundwatch.domain.models import FavoriteEntry
from fundwatch.infra.kv_store import KeyValueStore
from fundwatch.infra.settings import Settings, settings as default_settings
from fundwatch.services.cache_utils import now_ms

log = logging.getLogger(__name__)

FAVORITES_KEY = "favorites"
SEARCH_HISTORY_KEY = "searchHistory"
# pre-migration position map {code: {"shares": .., "cost": ..}}
LEGACY_POSITIONS_KEY = "positions"


def coerce_favorite(raw: Any, added_at: int = 0) -> Optional[FavoriteEntry]:
    """
    Build a FavoriteEntry from any stored shape: a plain code string, a
    {"fundcode": ...} object or a {"code": ...} object, with or without
    shares/cost. Returns None when no code can be found.
    """
    if isinstance(raw, FavoriteEntry):
        return raw
    if isinstance(raw, str):
        code = raw.strip()
        return FavoriteEntry(code=code, added_at=added_at) if code else None
    if not isinstance(raw, dict):
        return None
    code = str(raw.get("code") or raw.get("fundcode") or "").strip()
    if not code:
        return None
    return FavoriteEntry(
        code=code,
        name=str(raw.get("name") or ""),
        shares=raw.get("shares", 0),
        cost=raw.get("cost", 0),
        added_at=_added_at(raw, added_at),
    )


def _added_at(raw: Dict[str, Any], fallback: int) -> int:
    value = raw.get("added_at") or raw.get("addedAt")
    if value is None or isinstance(value, bool):
        return fallback
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        log.warning("unreadable added_at %r for favorite %s", value, raw.get("code") or raw.get("fundcode"))
        return fallback


class FavoritesRepository:
    """
    Watch list, held positions and search history in the key-value store.

    The favorites list is one stored value, read-modify-written wholesale; with a
    single foreground user the last writer wins.
    """

    def __init__(
        self,
        store: KeyValueStore,
        config: Optional[Settings] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.store = store
        self.config = config or default_settings
        self._clock = clock

    # ---------- favorites ----------

    def _migrate(self, raw: Any) -> Tuple[List[FavoriteEntry], bool]:
        rows = raw if isinstance(raw, list) else []
        changed = not isinstance(raw, list) and raw is not None

        positions = self.store.get_key(LEGACY_POSITIONS_KEY)
        if not isinstance(positions, dict):
            positions = {}

        entries: List[FavoriteEntry] = []
        seen = set()
        for row in rows:
            entry = coerce_favorite(row, added_at=self._clock())
            if entry is None or entry.code in seen:
                changed = True
                continue
            if not isinstance(row, dict) or row.get("added_at") != entry.added_at or "fundcode" in row:
                changed = True
            legacy = positions.get(entry.code)
            if isinstance(legacy, dict) and not entry.has_position:
                entry = FavoriteEntry(
                    code=entry.code,
                    name=entry.name,
                    shares=legacy.get("shares", 0),
                    cost=legacy.get("cost", 0),
                    added_at=entry.added_at,
                )
                changed = True
            seen.add(entry.code)
            entries.append(entry)
        return entries, changed

    def list_favorites(self) -> List[FavoriteEntry]:
        """
        Return the watch list, newest first. Legacy shapes are migrated to
        FavoriteEntry on first read and written back.
        """
        raw = self.store.get_key(FAVORITES_KEY)
        entries, changed = self._migrate(raw)
        if changed:
            log.info("migrated %d favorites to the current shape", len(entries))
            self._save(entries)
            if self.store.get_key(LEGACY_POSITIONS_KEY) is not None:
                self.store.remove_key(LEGACY_POSITIONS_KEY)
        return entries

    def _save(self, entries: List[FavoriteEntry]) -> None:
        self.store.set_key(FAVORITES_KEY, [e.model_dump() for e in entries])

    def get_favorite(self, code: str) -> Optional[FavoriteEntry]:
        for entry in self.list_favorites():
            if entry.code == code:
                return entry
        return None

    def is_favorite(self, code: str) -> bool:
        return self.get_favorite(code) is not None

    def add_favorite(self, fund: Any, name: str = "", shares: Any = 0, cost: Any = 0) -> bool:
        """
        Prepend a fund to the watch list. `fund` is a code or any favorite shape.
        Adding a code that is already present is a no-op.
        """
        if isinstance(fund, str):
            entry = coerce_favorite({"code": fund, "name": name, "shares": shares, "cost": cost})
        else:
            entry = coerce_favorite(fund)
        if entry is None:
            log.warning("refusing favorite without a code: %r", fund)
            return False

        entries = self.list_favorites()
        if any(e.code == entry.code for e in entries):
            return True
        if not entry.added_at:
            entry = entry.model_copy(update={"added_at": self._clock()})
        entries.insert(0, entry)
        self._save(entries)
        return True

    def remove_favorite(self, code: str) -> bool:
        entries = self.list_favorites()
        kept = [e for e in entries if e.code != code]
        if len(kept) != len(entries):
            self._save(kept)
        return True

    # ---------- positions ----------

    def get_position(self, code: str) -> Optional[Dict[str, float]]:
        entry = self.get_favorite(code)
        if entry is None or not entry.has_position:
            return None
        return {"shares": entry.shares, "cost": entry.cost}

    def update_position(self, code: str, shares: Any, cost: Any) -> bool:
        """Set shares/cost on an existing favorite; False if the code is not watched."""
        entries = self.list_favorites()
        for i, entry in enumerate(entries):
            if entry.code == code:
                entries[i] = FavoriteEntry(
                    code=entry.code,
                    name=entry.name,
                    shares=shares,
                    cost=cost,
                    added_at=entry.added_at,
                )
                self._save(entries)
                return True
        return False

    def clear_position(self, code: str) -> bool:
        return self.update_position(code, 0, 0)

    # ---------- search history ----------

    def get_search_history(self) -> List[str]:
        raw = self.store.get_key(SEARCH_HISTORY_KEY)
        if not isinstance(raw, list):
            return []
        return [str(k) for k in raw if isinstance(k, str)]

    def add_search_history(self, keyword: str) -> bool:
        keyword = (keyword or "").strip()
        if not keyword:
            return False
        history = [k for k in self.get_search_history() if k != keyword]
        history.insert(0, keyword)
        self.store.set_key(SEARCH_HISTORY_KEY, history[: self.config.search_history_limit])
        return True

    def clear_search_history(self) -> None:
        self.store.set_key(SEARCH_HISTORY_KEY, [])
