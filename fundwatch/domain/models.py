from __future__ import annotations

from typing import Dict, List

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Upstream numbers are kept as the decimal strings the endpoints send; an empty
# string means "not provided". Every field has a default so consumers only ever
# need emptiness checks.


class ValuationRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str = ""
    name: str = ""
    nav_date: str = ""
    nav: str = ""
    estimate_value: str = ""
    estimate_change_pct: str = ""
    estimate_time: str = ""


class HistoryPoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    date: str = ""
    nav: str = ""
    accumulated_nav: str = ""
    daily_change_pct: str = ""


class HistoryPage(BaseModel):
    code: str = ""
    page: int = 1
    page_size: int = 20
    total: int = 0
    source: str = "none"  # lsjz | net_worth_trend | none
    points: List[HistoryPoint] = Field(default_factory=list)


class ManagerInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = ""
    name: str = ""
    star: str = ""
    work_time: str = ""
    fund_size: str = ""


class DetailRecord(ValuationRecord):
    source_rate: str = ""
    rate: str = ""
    min_subscription: str = ""
    return_1y: str = ""
    return_6m: str = ""
    return_3m: str = ""
    return_1m: str = ""
    stock_codes: List[str] = Field(default_factory=list)
    bond_codes: str = ""
    managers: List[ManagerInfo] = Field(default_factory=list)
    performance: Dict[str, float] = Field(default_factory=dict)
    net_worth_trend: List[HistoryPoint] = Field(default_factory=list)
    valuation_source: str = "none"  # live | net_worth_trend | none


class RankEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str = ""
    name: str = ""
    nav_date: str = ""
    nav: str = ""
    accumulated_nav: str = ""
    day_change_pct: str = ""
    week_pct: str = ""
    month_pct: str = ""
    month3_pct: str = ""
    month6_pct: str = ""
    year1_pct: str = ""
    year2_pct: str = ""
    year3_pct: str = ""
    ytd_pct: str = ""
    since_inception_pct: str = ""


class SearchResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str = ""
    name: str = ""
    type: str = ""
    pinyin: str = ""


class ProfitResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    market_value: str = "0.00"
    cost_basis: str = "0.00"
    profit: str = "0.00"
    profit_rate_pct: str = "0.00"


class FavoriteEntry(BaseModel):
    code: str
    name: str = ""
    shares: float = 0.0
    cost: float = 0.0
    added_at: int = 0  # epoch ms

    @field_validator("shares", "cost", mode="before")
    @classmethod
    def _non_negative(cls, v):
        try:
            val = float(v)
        except (TypeError, ValueError):
            return 0.0
        if val != val or val < 0:  # NaN or negative
            return 0.0
        return val

    @property
    def has_position(self) -> bool:
        return self.shares > 0 and self.cost > 0


class WatchlistItem(ValuationRecord):
    shares: float = 0.0
    cost: float = 0.0
    profit: ProfitResult = Field(default_factory=ProfitResult)
