"""Pydantic models for scrape requests and responses."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_json(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class ScrapeRequest(_CamelModel):
    """Body of ``POST /scrape``."""

    url: Optional[str] = None
    proxy: Optional[str] = Field(
        default=None, description="Per-request proxy as username:password@host:port."
    )
    use_proxy: bool = Field(default=True, alias="useProxy")
    normalizer: Optional[str] = Field(default=None, description="basic or semantic.")


class PageMetadata(_CamelModel):
    title: str = ""
    description: Optional[str] = None
    keywords: Optional[str] = None
    author: Optional[str] = None
    canonical_url: Optional[str] = Field(default=None, alias="canonicalUrl")
    url: str = ""
    last_modified: Optional[str] = Field(default=None, alias="lastModified")


class ScrapeStats(_CamelModel):
    content_length: int = Field(default=0, alias="contentLength")
    approximate_word_count: int = Field(default=0, alias="approximateWordCount")
    status_code: Optional[int] = Field(default=None, alias="statusCode")
    headers: dict[str, str] = Field(default_factory=dict)
    attempts: int = 1
    proxy_used: bool = Field(default=False, alias="proxyUsed")
    proxy_fallback: bool = Field(default=False, alias="proxyFallback")


class ScrapeTiming(_CamelModel):
    started_at: str = Field(default_factory=utc_timestamp, alias="startedAt")
    duration_ms: int = Field(default=0, alias="durationMs")


class ScrapeResult(_CamelModel):
    success: bool = True
    url: str
    content: str
    format: str = "markdown"
    metadata: PageMetadata = Field(default_factory=PageMetadata)
    stats: ScrapeStats = Field(default_factory=ScrapeStats)
    timing: ScrapeTiming = Field(default_factory=ScrapeTiming)
    timestamp: str = Field(default_factory=utc_timestamp)


class ScrapeFailure(_CamelModel):
    success: bool = False
    error: str
    details: str = ""
    timestamp: str = Field(default_factory=utc_timestamp)
