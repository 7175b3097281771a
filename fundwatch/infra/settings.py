from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    fundwatch_env: str = "dev"

    # key-value store backing favorites and the TTL cache
    db_url: str = "sqlite:///fundwatch.db"

    # --- Eastmoney / Tiantian endpoints ---
    valuation_url: str = "http://fundgz.1234567.com.cn/js/{code}.js"
    detail_url: str = "http://fund.eastmoney.com/pingzhongdata/{code}.js"
    history_url: str = "http://api.fund.eastmoney.com/f10/lsjz"
    history_referer: str = "http://fundf10.eastmoney.com/"
    rank_url: str = "http://fund.eastmoney.com/data/rankhandler.aspx"
    rank_referer: str = "http://fund.eastmoney.com/data/fundranking.html"
    search_url: str = "https://fundsuggest.eastmoney.com/FundSearch/api/FundSearchAPI.ashx"
    # "typed" = JSON objects with CODE/NAME fields, "legacy" = callback-wrapped csv strings
    search_api_version: Literal["typed", "legacy"] = "typed"

    http_timeout_seconds: float = 10.0
    user_agent: str = (
        "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
    )

    # --- cache (milliseconds, <= 0 never expires) ---
    cache_prefix: str = "cache_"
    valuation_cache_ttl_ms: int = 5 * 60 * 1000
    detail_cache_ttl_ms: int = 60 * 60 * 1000
    rank_cache_ttl_ms: int = 30 * 60 * 1000

    search_history_limit: int = 20

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_prefix": "FUNDWATCH_",
        "extra": "ignore",
    }


settings = Settings()
