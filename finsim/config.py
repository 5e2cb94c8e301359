# finsim/config.py
"""Pydantic settings for the quote feed, read from the environment."""

import os
from typing import Optional

from pydantic import BaseModel, Field


class FeedSettings(BaseModel):
    """Quote provider, cache and rate-limit configuration."""

    api_key: Optional[str] = Field(
        default=None,
        description="Alpha Vantage API key; without one every live fetch falls back"
    )
    base_url: str = Field(
        default="https://www.alphavantage.co/query",
        description="Quote provider endpoint"
    )
    exchange_suffix: str = Field(
        default=".BSE",
        description="Appended to NSE symbols when querying the provider"
    )
    cache_ttl_seconds: float = Field(
        default=120.0,
        gt=0.0,
        le=3600.0,
        description="How long a quote is served from cache"
    )
    max_calls_per_minute: int = Field(
        default=5,
        ge=1,
        le=600,
        description="Provider quota per rolling 60-second window"
    )
    daily_call_limit: int = Field(
        default=500,
        ge=1,
        description="Provider quota per day"
    )
    request_timeout_seconds: float = Field(
        default=10.0,
        gt=0.0,
        le=120.0,
        description="Timeout for a single provider request"
    )
    fallback_seed: int = Field(
        default=0,
        description="Seed for the synthetic price generator"
    )

    @property
    def min_interval_seconds(self) -> float:
        """Spacing between provider calls that keeps us inside the per-minute quota."""
        return 60.0 / self.max_calls_per_minute

    @classmethod
    def from_env(cls) -> "FeedSettings":
        values = {
            "api_key": os.getenv("ALPHA_VANTAGE_API_KEY") or None,
            "base_url": os.getenv("ALPHA_VANTAGE_URL"),
            "exchange_suffix": os.getenv("QUOTE_EXCHANGE_SUFFIX"),
            "cache_ttl_seconds": os.getenv("QUOTE_CACHE_TTL_SECONDS"),
            "max_calls_per_minute": os.getenv("QUOTE_MAX_CALLS_PER_MINUTE"),
            "daily_call_limit": os.getenv("QUOTE_DAILY_CALL_LIMIT"),
            "request_timeout_seconds": os.getenv("QUOTE_REQUEST_TIMEOUT_SECONDS"),
            "fallback_seed": os.getenv("QUOTE_FALLBACK_SEED"),
        }
        # Unset variables keep the model defaults
        return cls(**{k: v for k, v in values.items() if v is not None})
