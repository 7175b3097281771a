from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, DecimalException, InvalidOperation
from typing import Any, Dict, Iterable

from fundwatch.domain.models import FavoriteEntry, ProfitResult, ValuationRecord, WatchlistItem

_ZERO = Decimal("0")
_CENT = Decimal("0.01")


def _to_decimal(value: Any) -> Decimal:
    """Coerce to Decimal; anything unparseable or non-finite becomes 0."""
    if value is None or isinstance(value, bool):
        return _ZERO
    try:
        d = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return _ZERO
    if not d.is_finite():
        return _ZERO
    return d


def _fmt(value: Decimal) -> str:
    q = value.quantize(_CENT, rounding=ROUND_HALF_UP)
    if q == _ZERO:
        q = abs(q)  # no "-0.00"
    return f"{q:.2f}"


def compute_profit(shares: Any, cost: Any, current_nav: Any) -> ProfitResult:
    """
    Holding profit for one position:

      market_value    = shares * current_nav
      cost_basis      = shares * cost
      profit          = market_value - cost_basis
      profit_rate_pct = profit / cost_basis * 100

    All figures are 2-decimal strings. If any input is not strictly positive
    after coercion the all-zero result is returned; this never raises.
    """
    s = _to_decimal(shares)
    c = _to_decimal(cost)
    nav = _to_decimal(current_nav)
    if s <= _ZERO or c <= _ZERO or nav <= _ZERO:
        return ProfitResult()

    try:
        market_value = s * nav
        cost_basis = s * c
        profit = market_value - cost_basis
        rate = profit / cost_basis * 100
        return ProfitResult(
            market_value=_fmt(market_value),
            cost_basis=_fmt(cost_basis),
            profit=_fmt(profit),
            profit_rate_pct=_fmt(rate),
        )
    except DecimalException:
        # overflow, or more digits than the context precision can quantize
        return ProfitResult()


def current_nav(valuation: ValuationRecord) -> str:
    """Live estimate when the upstream has one, else the last official NAV."""
    if _to_decimal(valuation.estimate_value) > _ZERO:
        return valuation.estimate_value
    return valuation.nav


def merge_position(valuation: ValuationRecord, entry: FavoriteEntry) -> WatchlistItem:
    profit = compute_profit(entry.shares, entry.cost, current_nav(valuation)) if entry.has_position else ProfitResult()
    return WatchlistItem(
        **valuation.model_dump(),
        shares=entry.shares,
        cost=entry.cost,
        profit=profit,
    )


def summarize_watchlist(items: Iterable[WatchlistItem]) -> Dict[str, Any]:
    """
    Aggregate the profit figures of watch-list items that carry a position.

    Returns:
      {
        "positions": <count>,
        "market_value": "...",
        "cost_basis": "...",
        "profit": "...",
        "profit_rate_pct": "..."
      }
    """
    total_value = _ZERO
    total_cost = _ZERO
    positions = 0

    for item in items:
        cost_basis = _to_decimal(item.profit.cost_basis)
        if cost_basis <= _ZERO:
            continue
        total_cost += cost_basis
        total_value += _to_decimal(item.profit.market_value)
        positions += 1

    zero = ProfitResult()
    try:
        profit = total_value - total_cost
        rate = profit / total_cost * 100 if total_cost > _ZERO else _ZERO
        figures = (_fmt(total_value), _fmt(total_cost), _fmt(profit), _fmt(rate))
    except DecimalException:
        figures = (zero.market_value, zero.cost_basis, zero.profit, zero.profit_rate_pct)

    return {
        "positions": positions,
        "market_value": figures[0],
        "cost_basis": figures[1],
        "profit": figures[2],
        "profit_rate_pct": figures[3],
    }
