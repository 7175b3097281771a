import asyncio

import pytest

from fundwatch.domain.models import DetailRecord, FavoriteEntry, ProfitResult
from fundwatch.services.errors import FundDataError, ParseError, TransportError
from fundwatch.services.outcome import OPERATION_POLICY, FailurePolicy, Outcome, Status
from payloads import (
    DETAIL_000001,
    HISTORY_000001,
    RANK_OBJECT,
    SEARCH_LEGACY,
    SEARCH_TYPED,
    VALUATION_000001,
    VALUATION_110011,
    VALUATION_161725,
)

GZ = "http://fundgz.1234567.com.cn/js/{}.js"
DETAIL = "http://fund.eastmoney.com/pingzhongdata/{}.js"
HISTORY = "http://api.fund.eastmoney.com/f10/lsjz"
RANK = "http://fund.eastmoney.com/data/rankhandler.aspx"
SEARCH = "https://fundsuggest.eastmoney.com/FundSearch/api/FundSearchAPI.ashx"


def run(coro):
    return asyncio.run(coro)


def test_get_valuation_fetches_then_serves_from_cache(make_service):
    service, fetcher = make_service({GZ.format("000001"): VALUATION_000001})
    first = run(service.get_valuation("000001"))
    second = run(service.get_valuation("000001"))
    assert first == second
    assert first.estimate_value == "1.2120"
    assert fetcher.calls == [GZ.format("000001")]


def test_get_valuation_refetches_after_ttl(make_service, clock, config):
    service, fetcher = make_service({GZ.format("000001"): VALUATION_000001})
    run(service.get_valuation("000001"))
    clock.advance(config.valuation_cache_ttl_ms)
    run(service.get_valuation("000001"))
    assert len(fetcher.calls) == 2


def test_get_valuation_bypassing_cache_still_refreshes_it(make_service):
    service, fetcher = make_service({GZ.format("000001"): VALUATION_000001})
    run(service.get_valuation("000001", use_cache=False))
    run(service.get_valuation("000001", use_cache=False))
    run(service.get_valuation("000001"))
    assert len(fetcher.calls) == 2


def test_get_valuation_propagates_failures(make_service):
    service, _ = make_service({GZ.format("999999"): "jsonpgz();"})
    with pytest.raises(TransportError):
        run(service.get_valuation("000001"))
    with pytest.raises(ParseError):
        run(service.get_valuation("999999"))


def test_batch_valuation_drops_failed_items_and_keeps_order(make_service):
    service, _ = make_service(
        {
            GZ.format("000001"): VALUATION_000001,
            GZ.format("110011"): TransportError(GZ.format("110011"), "HTTP 502", status_code=502),
            GZ.format("161725"): VALUATION_161725,
        }
    )
    items = run(service.get_batch_valuation(["000001", "110011", "161725"]))
    assert [i.code for i in items] == ["000001", "161725"]


def test_batch_valuation_survives_unexpected_errors(make_service):
    service, _ = make_service(
        {
            GZ.format("000001"): RuntimeError("socket exploded"),
            GZ.format("110011"): VALUATION_110011,
        }
    )
    items = run(service.get_batch_valuation(["000001", "110011"]))
    assert [i.code for i in items] == ["110011"]


def test_batch_valuation_merges_positions(make_service):
    service, _ = make_service(
        {
            GZ.format("000001"): VALUATION_000001,
            GZ.format("161725"): VALUATION_161725,
        }
    )
    items = run(
        service.get_batch_valuation(
            [
                FavoriteEntry(code="000001", shares=1000, cost=1.0),
                {"fundcode": "161725", "shares": 100, "cost": 0},
            ]
        )
    )
    held, watched = items
    # estimate 1.2120 is used when present
    assert held.profit == ProfitResult(
        market_value="1212.00", cost_basis="1000.00", profit="212.00", profit_rate_pct="21.20"
    )
    assert watched.profit == ProfitResult()
    assert watched.shares == 100


def test_batch_cache_keyed_by_code_set(make_service):
    service, fetcher = make_service(
        {
            GZ.format("000001"): VALUATION_000001,
            GZ.format("110011"): VALUATION_110011,
        }
    )
    run(service.get_batch_valuation(["000001", "110011"]))
    calls = len(fetcher.calls)

    # same set, different order: batch cache hit, output follows input order
    items = run(service.get_batch_valuation(["110011", "000001"]))
    assert [i.code for i in items] == ["110011", "000001"]
    assert len(fetcher.calls) == calls

    assert service.cache.get("batch_valuation_000001,110011") is not None
    run(service.get_batch_valuation(["000001"]))
    assert service.cache.get("batch_valuation_000001") is not None


def test_batch_cache_hit_uses_current_positions(make_service):
    service, fetcher = make_service({GZ.format("000001"): VALUATION_000001})
    run(service.get_batch_valuation([FavoriteEntry(code="000001")]))
    items = run(service.get_batch_valuation([FavoriteEntry(code="000001", shares=10, cost=1.212)]))
    assert len(fetcher.calls) == 1
    assert items[0].profit.profit == "0.00"
    assert items[0].profit.cost_basis == "12.12"


def test_partial_batch_is_not_cached(make_service):
    service, _ = make_service({GZ.format("000001"): VALUATION_000001})
    run(service.get_batch_valuation(["000001", "110011"]))
    assert service.cache.get("batch_valuation_000001,110011") is None


def test_empty_batch(make_service):
    service, fetcher = make_service()
    assert run(service.get_batch_valuation([])) == []
    assert fetcher.calls == []


def test_watchlist_reads_stored_favorites(make_service, favorites):
    favorites.add_favorite("000001")
    favorites.add_favorite("110011")
    favorites.update_position("000001", 100, 1.0)
    service, _ = make_service(
        {
            GZ.format("000001"): VALUATION_000001,
            GZ.format("110011"): VALUATION_110011,
        }
    )
    items = run(service.get_watchlist())
    assert [i.code for i in items] == ["110011", "000001"]
    assert items[1].profit.profit == "21.20"


def test_history_from_paged_endpoint_is_cached(make_service):
    service, fetcher = make_service({HISTORY: HISTORY_000001})
    page = run(service.get_history("000001"))
    assert page.source == "lsjz"
    assert [p.date for p in page.points] == ["2024-01-05", "2024-01-04"]
    run(service.get_history("000001"))
    assert fetcher.calls == [HISTORY]


def test_history_falls_back_to_detail_series(make_service):
    service, _ = make_service(
        {
            HISTORY: TransportError(HISTORY, "HTTP 500", status_code=500),
            DETAIL.format("000001"): DETAIL_000001,
        }
    )
    page = run(service.get_history("000001", page=1, page_size=1))
    assert page.source == "net_worth_trend"
    assert page.total == 2
    assert [p.date for p in page.points] == ["2024-01-05"]


def test_history_falls_back_when_paged_endpoint_is_empty(make_service):
    service, _ = make_service(
        {
            HISTORY: {"Data": {"LSJZList": []}, "TotalCount": 0},
            DETAIL.format("000001"): DETAIL_000001,
        }
    )
    page = run(service.get_history("000001"))
    assert page.source == "net_worth_trend"
    assert len(page.points) == 2


def test_history_empty_when_everything_fails(make_service):
    service, _ = make_service()
    page = run(service.get_history("000001", page=2, page_size=10))
    assert page.points == []
    assert page.source == "none"
    assert (page.page, page.page_size) == (2, 10)


def test_rank_parses_and_caches(make_service):
    service, fetcher = make_service({RANK: RANK_OBJECT})
    entries = run(service.get_rank("gp", "1n", 1, 50))
    assert [e.code for e in entries] == ["000001", "110011"]
    again = run(service.get_rank("gp", "1n", 1, 50))
    assert again == entries
    assert len(fetcher.calls) == 1
    assert service.cache.get("rank_gp_1n_1_50") is not None


def test_rank_failure_is_empty(make_service):
    service, _ = make_service({RANK: "<html>busy</html>"})
    assert run(service.get_rank()) == []
    service, _ = make_service()
    assert run(service.get_rank()) == []


def test_search_blank_keyword_skips_network(make_service):
    service, fetcher = make_service({SEARCH: SEARCH_TYPED})
    assert run(service.search("   ")) == []
    assert run(service.search("")) == []
    assert fetcher.calls == []


def test_search_typed_and_remembered(make_service, favorites):
    service, _ = make_service({SEARCH: SEARCH_TYPED})
    results = run(service.search(" 华夏 ", remember=True))
    assert [r.code for r in results] == ["000001", "110011"]
    assert favorites.get_search_history() == ["华夏"]


def test_search_legacy_endpoint(make_service, config):
    config.search_api_version = "legacy"
    service, _ = make_service({SEARCH: SEARCH_LEGACY})
    assert [r.code for r in run(service.search("000001"))] == ["000001", "110011"]


def test_search_failure_is_empty(make_service):
    service, _ = make_service({SEARCH: TransportError(SEARCH, "timeout")})
    assert run(service.search("000001")) == []


def test_detail_overlays_live_valuation(make_service):
    service, _ = make_service(
        {
            DETAIL.format("000001"): DETAIL_000001,
            GZ.format("000001"): VALUATION_000001,
        }
    )
    detail = run(service.get_detail("000001"))
    assert detail.valuation_source == "live"
    assert detail.estimate_value == "1.2120"
    assert detail.nav_date == "2024-01-04"
    assert detail.rate == "0.15"
    assert len(detail.net_worth_trend) == 2


def test_detail_falls_back_to_latest_nav_point(make_service):
    service, _ = make_service({DETAIL.format("000001"): DETAIL_000001})
    detail = run(service.get_detail("000001"))
    assert detail.valuation_source == "net_worth_trend"
    assert detail.nav == "1.2"
    assert detail.nav_date == "2024-01-05"
    assert detail.estimate_change_pct == "0.84"
    assert detail.name == "华夏成长混合"


def test_detail_static_part_cached_live_part_not(make_service, clock, config):
    service, fetcher = make_service(
        {
            DETAIL.format("000001"): DETAIL_000001,
            GZ.format("000001"): VALUATION_000001,
        }
    )
    run(service.get_detail("000001"))
    clock.advance(config.valuation_cache_ttl_ms)
    run(service.get_detail("000001"))
    assert fetcher.calls.count(DETAIL.format("000001")) == 1
    assert fetcher.calls.count(GZ.format("000001")) == 2


def test_detail_primary_failure_propagates(make_service):
    service, _ = make_service({GZ.format("000001"): VALUATION_000001})
    with pytest.raises(TransportError):
        run(service.get_detail("000001"))


def test_calculate_position(make_service):
    service, _ = make_service(
        {
            DETAIL.format("000001"): DETAIL_000001,
            GZ.format("000001"): VALUATION_000001,
        }
    )
    result = run(service.calculate_position("000001", "1000", "1.0"))
    assert result.profit == "212.00"
    assert run(service.calculate_position("000001", "", "1.0")) == ProfitResult()


def test_clear_cache_keeps_favorites(make_service, favorites, store):
    favorites.add_favorite("000001")
    service, _ = make_service({GZ.format("000001"): VALUATION_000001})
    run(service.get_valuation("000001"))
    assert service.clear_cache() == 1
    assert store.list_all_keys() == ["favorites"]


def test_stale_cache_shape_is_discarded(make_service):
    service, fetcher = make_service({RANK: RANK_OBJECT})
    service.cache.set("rank_all_zzf_1_50", [{"code": ["not", "a", "string"]}], 0)
    entries = run(service.get_rank())
    assert len(entries) == 2
    assert fetcher.calls == [RANK]


def test_operation_policies():
    assert OPERATION_POLICY["valuation"] is FailurePolicy.HARD
    assert OPERATION_POLICY["detail"] is FailurePolicy.HARD
    for op in ("batch_valuation", "history", "rank", "search"):
        assert OPERATION_POLICY[op] is FailurePolicy.DEGRADE

    err = TransportError("u", "boom")
    with pytest.raises(TransportError):
        Outcome.failed(err).resolve("valuation", list)
    assert Outcome.failed(err).resolve("rank", list) == []
    assert Outcome.empty().resolve("valuation", list) == []
    assert Outcome.ok([1]).resolve("rank", list) == [1]
    assert isinstance(err, FundDataError)


def test_hard_failure_without_captured_error_still_raises():
    with pytest.raises(FundDataError, match="detail failed"):
        Outcome(Status.FAILED).resolve("detail", DetailRecord)
    assert Outcome(Status.FAILED).resolve("search", list) == []
