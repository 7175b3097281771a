from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence

from pydantic import TypeAdapter, ValidationError

from fundwatch.domain.models import (
    DetailRecord,
    HistoryPage,
    ProfitResult,
    RankEntry,
    SearchResult,
    ValuationRecord,
    WatchlistItem,
)
from fundwatch.infra.settings import Settings, settings as default_settings
from fundwatch.services.cache_utils import CacheStore, cache_key, now_ms
from fundwatch.services.favorites import FavoritesRepository, coerce_favorite
from fundwatch.services.fetcher import RawFetcher
from fundwatch.services.normalizer import (
    normalize_detail,
    normalize_history_page,
    normalize_rank_page,
    normalize_search_legacy,
    normalize_search_typed,
    normalize_valuation,
    page_from_trend,
)
from fundwatch.services.outcome import attempt
from fundwatch.services.pnl import compute_profit, current_nav, merge_position

log = logging.getLogger(__name__)

_VALUATION = TypeAdapter(ValuationRecord)
_VALUATION_LIST = TypeAdapter(List[ValuationRecord])
_DETAIL = TypeAdapter(DetailRecord)
_HISTORY = TypeAdapter(HistoryPage)
_RANK_LIST = TypeAdapter(List[RankEntry])


def overlay_live(detail: DetailRecord, valuation: ValuationRecord) -> DetailRecord:
    return detail.model_copy(
        update={
            "code": valuation.code or detail.code,
            "name": valuation.name or detail.name,
            "nav_date": valuation.nav_date,
            "nav": valuation.nav,
            "estimate_value": valuation.estimate_value,
            "estimate_change_pct": valuation.estimate_change_pct,
            "estimate_time": valuation.estimate_time,
            "valuation_source": "live",
        }
    )


def overlay_trend(detail: DetailRecord) -> DetailRecord:
    """Fill the valuation fields from the newest point of the embedded NAV series."""
    if not detail.net_worth_trend:
        return detail.model_copy(update={"valuation_source": "none"})
    last = detail.net_worth_trend[-1]
    return detail.model_copy(
        update={
            "nav_date": last.date,
            "nav": last.nav,
            "estimate_value": last.nav,
            "estimate_change_pct": last.daily_change_pct,
            "estimate_time": "",
            "valuation_source": "net_worth_trend",
        }
    )


class FundDataService:
    """
    Fetch -> normalize -> cache for every fund data operation.

    Single-entity reads (valuation, detail) raise on upstream failure; batch and
    listing reads degrade to partial or empty results (see OPERATION_POLICY).
    """

    def __init__(
        self,
        fetcher: RawFetcher,
        cache: CacheStore,
        favorites: Optional[FavoritesRepository] = None,
        config: Optional[Settings] = None,
    ) -> None:
        self.fetcher = fetcher
        self.cache = cache
        self.favorites = favorites
        self.config = config or default_settings

    # ---------- cache plumbing ----------

    def _ttl_ms(self, operation: str) -> int:
        cfg = self.config
        ttl: Dict[str, int] = {
            "valuation": cfg.valuation_cache_ttl_ms,
            "batch_valuation": cfg.valuation_cache_ttl_ms,
            "detail": cfg.detail_cache_ttl_ms,
            "history": cfg.detail_cache_ttl_ms,
            "rank": cfg.rank_cache_ttl_ms,
        }
        return ttl[operation]

    def _read_cache(self, key: str, adapter: TypeAdapter) -> Optional[Any]:
        payload = self.cache.get(key)
        if payload is None:
            return None
        try:
            return adapter.validate_python(payload)
        except ValidationError:
            # written by an older record shape
            log.warning("discarding unreadable cache entry %s", key)
            self.cache.remove(key)
            return None

    def _write_cache(self, operation: str, key: str, adapter: TypeAdapter, value: Any) -> None:
        self.cache.set(key, adapter.dump_python(value, mode="json"), self._ttl_ms(operation))

    # ---------- upstream steps ----------

    async def _fetch_valuation(self, code: str) -> ValuationRecord:
        text = await self.fetcher.fetch(
            self.config.valuation_url.format(code=code),
            params={"rt": now_ms()},
        )
        return normalize_valuation(text)

    async def _static_detail(self, code: str, use_cache: bool) -> DetailRecord:
        key = cache_key("detail", code)
        if use_cache:
            cached = self._read_cache(key, _DETAIL)
            if cached is not None:
                return cached

        blob = await self.fetcher.fetch(
            self.config.detail_url.format(code=code),
            params={"v": now_ms()},
        )
        detail = normalize_detail(blob)
        if not detail.code:
            detail = detail.model_copy(update={"code": code})
        self._write_cache("detail", key, _DETAIL, detail)
        return detail

    async def _fetch_history(self, code: str, page: int, page_size: int) -> HistoryPage:
        payload = await self.fetcher.fetch_json(
            self.config.history_url,
            params={
                "fundCode": code,
                "pageIndex": page,
                "pageSize": page_size,
                "startDate": "",
                "endDate": "",
            },
            referer=self.config.history_referer,
        )
        return normalize_history_page(payload, code, page, page_size)

    async def _fetch_rank(self, fund_type: str, sort: str, page: int, page_size: int) -> List[RankEntry]:
        blob = await self.fetcher.fetch(
            self.config.rank_url,
            params={
                "op": "ph",
                "dt": "kf",
                "ft": fund_type,
                "rs": "",
                "gs": 0,
                "sc": sort,
                "st": "desc",
                "pi": page,
                "pn": page_size,
                "dx": 1,
                "v": now_ms(),
            },
            referer=self.config.rank_referer,
        )
        return normalize_rank_page(blob)

    async def _fetch_search(self, keyword: str) -> List[SearchResult]:
        params = {"m": 1, "key": keyword}
        if self.config.search_api_version == "legacy":
            text = await self.fetcher.fetch(self.config.search_url, params={**params, "callback": "fundwatch"})
            return normalize_search_legacy(text)
        payload = await self.fetcher.fetch_json(self.config.search_url, params=params)
        return normalize_search_typed(payload)

    # ---------- operations ----------

    async def get_valuation(self, code: str, use_cache: bool = True) -> ValuationRecord:
        key = cache_key("valuation", code)
        if use_cache:
            cached = self._read_cache(key, _VALUATION)
            if cached is not None:
                return cached

        outcome = await attempt(lambda: self._fetch_valuation(code))
        record = outcome.resolve("valuation", ValuationRecord)
        self._write_cache("valuation", key, _VALUATION, record)
        return record

    async def get_batch_valuation(self, favorites: Sequence[Any], use_cache: bool = True) -> List[WatchlistItem]:
        """
        Valuations for a whole watch list, fetched concurrently. A code whose fetch
        fails is dropped; output order follows the input list.

        The batch cache holds only the upstream records, keyed by the sorted code
        set, so shares/cost are merged fresh on every call.
        """
        entries = [e for e in (coerce_favorite(f) for f in favorites) if e is not None]
        if not entries:
            return []

        key = cache_key("batch_valuation", [e.code for e in entries])
        if use_cache:
            cached = self._read_cache(key, _VALUATION_LIST)
            if cached is not None:
                by_code = {v.code: v for v in cached}
                return [merge_position(by_code[e.code], e) for e in entries if e.code in by_code]

        outcomes = await asyncio.gather(
            *(attempt(lambda code=e.code: self.get_valuation(code, use_cache)) for e in entries)
        )

        valuations: List[ValuationRecord] = []
        items: List[WatchlistItem] = []
        for entry, outcome in zip(entries, outcomes):
            valuation = outcome.resolve("batch_valuation", lambda: None)
            if valuation is None:
                continue
            valuations.append(valuation)
            items.append(merge_position(valuation, entry))

        # a partial batch is not cached so the missing codes are retried next call
        if len(valuations) == len(entries):
            self._write_cache("batch_valuation", key, _VALUATION_LIST, valuations)
        else:
            log.warning("batch valuation returned %d of %d funds", len(valuations), len(entries))
        return items

    async def get_watchlist(self, use_cache: bool = True) -> List[WatchlistItem]:
        if self.favorites is None:
            raise RuntimeError("FundDataService was built without a favorites repository")
        return await self.get_batch_valuation(self.favorites.list_favorites(), use_cache=use_cache)

    async def get_history(
        self,
        code: str,
        page: int = 1,
        page_size: int = 20,
        use_cache: bool = True,
    ) -> HistoryPage:
        """
        One page of NAV history, newest first. If the paged endpoint fails or
        comes back empty the page is cut from the detail blob's NAV series; if
        that is unavailable too an empty page is returned.
        """
        page = max(int(page), 1)
        page_size = max(int(page_size), 1)
        key = cache_key("history", code, page, page_size)
        if use_cache:
            cached = self._read_cache(key, _HISTORY)
            if cached is not None:
                return cached

        outcome = await attempt(lambda: self._fetch_history(code, page, page_size))
        primary = outcome.resolve("history", lambda: None)
        if primary is not None and primary.points:
            self._write_cache("history", key, _HISTORY, primary)
            return primary

        log.info("history for %s falling back to the detail NAV series", code)
        fallback = await attempt(lambda: self._static_detail(code, use_cache))
        detail = fallback.resolve("history", lambda: None)
        trend = detail.net_worth_trend if detail is not None else []
        return page_from_trend(code, trend, page, page_size)

    async def get_rank(
        self,
        fund_type: str = "all",
        sort: str = "zzf",
        page: int = 1,
        page_size: int = 50,
        use_cache: bool = True,
    ) -> List[RankEntry]:
        key = cache_key("rank", fund_type, sort, page, page_size)
        if use_cache:
            cached = self._read_cache(key, _RANK_LIST)
            if cached is not None:
                return cached

        outcome = await attempt(lambda: self._fetch_rank(fund_type, sort, page, page_size))
        entries = outcome.resolve("rank", list)
        if entries:
            self._write_cache("rank", key, _RANK_LIST, entries)
        return entries

    async def search(self, keyword: str, remember: bool = False) -> List[SearchResult]:
        keyword = (keyword or "").strip()
        if not keyword:
            return []
        if remember and self.favorites is not None:
            self.favorites.add_search_history(keyword)

        outcome = await attempt(lambda: self._fetch_search(keyword))
        return outcome.resolve("search", list)

    async def get_detail(self, code: str, use_cache: bool = True) -> DetailRecord:
        """
        Static profile from the detail blob (cached at the detail TTL) with the
        live valuation laid over it. When the live valuation is unavailable the
        valuation fields come from the newest NAV point instead.
        """
        static, live = await asyncio.gather(
            attempt(lambda: self._static_detail(code, use_cache)),
            attempt(lambda: self.get_valuation(code, use_cache)),
        )
        detail = static.resolve("detail", DetailRecord)
        if live.is_ok:
            return overlay_live(detail, live.value)
        log.info("live valuation for %s unavailable (%s); using NAV series", code, live.error)
        return overlay_trend(detail)

    async def calculate_position(self, code: str, shares: Any, cost: Any, use_cache: bool = True) -> ProfitResult:
        """Profit of a hypothetical or held position at the fund's current NAV."""
        detail = await self.get_detail(code, use_cache=use_cache)
        return compute_profit(shares, cost, current_nav(detail))

    def clear_cache(self) -> int:
        return self.cache.clear()
