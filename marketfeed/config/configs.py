"""
Configuration for the REST read path (aggregator + source adapters).
Stream configuration lives next to the stream code in data/live/config.py.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class SourceEndpoints(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)
    finnhub_base: str = Field(default="https://finnhub.io/api/v1")
    polygon_base: str = Field(default="https://api.polygon.io")
    coingecko_base: str = Field(default="https://api.coingecko.com/api/v3")


class AggregatorConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    # Cache freshness (seconds)
    quote_ttl_s: float = Field(default=1.0, gt=0, description="quote cache TTL")
    candle_ttl_s: float = Field(default=300.0, gt=0, description="candle range cache TTL")

    # Per-call deadline for every upstream HTTP request
    request_timeout_s: float = Field(default=10.0, gt=0)

    # Retry policy for a single provider call (not the cascade)
    retry_attempts: int = Field(default=3, ge=1)
    retry_base_delay_s: float = Field(default=1.0, ge=0)

    # Reset hint for 429 responses without a Retry-After header
    rate_limit_reset_s: float = Field(default=60.0, gt=0)

    endpoints: SourceEndpoints = Field(default_factory=SourceEndpoints)
