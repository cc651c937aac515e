from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

MODE_NORMAL = "normal"
MODE_SLOW = "slow"

PENDING_ACCOUNT_NAME = "待解析"


@dataclass(frozen=True)
class Account:
    biz_id: str
    name: str
    seed_url: str
    star: int
    is_active: bool
    last_fetched: str | None
    article_count: int
    created_at: str | None = None
    updated_at: str | None = None


@dataclass(frozen=True)
class Article:
    id: str
    account_biz_id: str
    title: str
    cover: str | None
    pub_time: str
    url: str
    summary: str | None
    tags: list[str] = field(default_factory=list)
    buzz: float | None = None


@dataclass(frozen=True)
class ParsedArticle:
    title: str
    cover: str | None
    pub_time: str
    summary: str


@dataclass(frozen=True)
class FetchLog:
    id: str
    account_biz_id: str
    started_at: str
    finished_at: str | None
    ok: bool
    http_status: int | None
    retries: int
    message: str | None
    duration_ms: int | None
    articles_found: int = 0
    articles_saved: int = 0


@dataclass(frozen=True)
class SettingsHistoryEntry:
    id: str
    key: str
    value: object
    created_at: str


@dataclass(frozen=True)
class CrawlerState:
    mode: str = MODE_NORMAL
    success_streak: int = 0
    slow_since: datetime | None = None
