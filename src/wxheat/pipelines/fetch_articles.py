from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from ..classifier import classify, sorted_tags
from ..config import Config
from ..fetcher import FetchError
from ..models import PENDING_ACCOUNT_NAME, Account
from ..parser import (
    ParseError,
    discover_article_links,
    extract_account_name,
    normalize_article_url,
    parse_article,
)
from ..rate_limiter import ANTI_BOT_STATUSES, RateLimiter
from ..settings import load_category_rules, load_scoring_profile
from ..storage import get_article, mark_account_fetched, upsert_article
from ..utils import log_event, utc_now
from .recompute import score_article


@dataclass(frozen=True)
class AccountFetchResult:
    biz_id: str
    ok: bool
    http_status: int | None
    found: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    retries: int = 0
    account_name: str | None = None
    errors: list[str] = field(default_factory=list)

    @property
    def saved(self) -> int:
        return self.created + self.updated

    def message(self) -> str:
        if not self.ok:
            return self.errors[0] if self.errors else f"HTTP {self.http_status}"
        text = f"found={self.found} created={self.created} updated={self.updated} skipped={self.skipped}"
        if self.errors:
            text += f" errors={len(self.errors)}"
        return text


def fetch_account_articles(
    conn: Any,
    account: Account,
    fetcher: Any,
    *,
    config: Config,
    logger: logging.Logger,
    now: datetime | None = None,
    limiter: RateLimiter | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> AccountFetchResult:
    """Crawl one account from its seed page.

    Transport failures on the seed page raise :class:`FetchError`. Per-article
    failures are logged and counted, and an anti-bot status on any article stops
    the account early and is reported as the result's ``http_status``.

    With a ``limiter``, every response feeds it and each article request after
    the seed page waits ``limiter.next_delay()`` first.
    """
    response = fetcher.get(account.seed_url)
    if limiter is not None:
        limiter.on_response(response.status)
    retries = response.retries
    if not response.ok:
        return AccountFetchResult(
            biz_id=account.biz_id,
            ok=False,
            http_status=response.status,
            retries=retries,
            errors=[f"HTTP {response.status} for seed page"],
        )

    name = None
    if account.name == PENDING_ACCOUNT_NAME:
        name = extract_account_name(response.body)

    links = discover_article_links(
        response.body,
        account.seed_url,
        account.biz_id,
        config.crawl.max_articles_per_account,
    )
    seed_key = normalize_article_url(account.seed_url)
    profile = load_scoring_profile(conn)
    rules = load_category_rules(conn)
    evaluated_at = now or utc_now()

    status = response.status
    created = updated = skipped = 0
    errors: list[str] = []
    for url in links:
        if url == seed_key:
            html = response.body
        else:
            if limiter is not None:
                delay_ms = limiter.next_delay()
                log_event(logger, logging.DEBUG, "pacing_delay", delay_ms=delay_ms, mode=limiter.state.mode)
                sleep(delay_ms / 1000.0)
            try:
                article_response = fetcher.get(url)
            except FetchError as exc:
                retries += exc.retries
                errors.append(f"{url}: {exc}")
                log_event(logger, logging.WARNING, "article_fetch_failed", biz_id=account.biz_id, url=url, error=str(exc))
                continue
            retries += article_response.retries
            if limiter is not None:
                limiter.on_response(article_response.status)
            if article_response.status in ANTI_BOT_STATUSES:
                status = article_response.status
                errors.append(f"{url}: HTTP {article_response.status}")
                log_event(logger, logging.WARNING, "article_fetch_blocked", biz_id=account.biz_id, url=url, status=status)
                break
            if not article_response.ok:
                errors.append(f"{url}: HTTP {article_response.status}")
                continue
            html = article_response.body

        try:
            parsed = parse_article(html, url)
        except ParseError as exc:
            skipped += 1
            log_event(logger, logging.INFO, "article_parse_failed", biz_id=account.biz_id, url=url, error=str(exc))
            continue

        tags = sorted_tags(classify(parsed.title, parsed.summary, rules))
        article_id, was_created = upsert_article(
            conn,
            account_biz_id=account.biz_id,
            url=url,
            title=parsed.title,
            cover=parsed.cover,
            pub_time=parsed.pub_time,
            summary=parsed.summary,
            tags=tags,
            buzz=config.crawl.default_buzz,
        )
        score_article(
            conn,
            article_id,
            pub_time=parsed.pub_time,
            star=account.star,
            title=parsed.title,
            buzz=_stored_buzz(conn, article_id, config.crawl.default_buzz),
            profile=profile,
            evaluated_at=evaluated_at,
        )
        if was_created:
            created += 1
        else:
            updated += 1

    mark_account_fetched(conn, account.biz_id, evaluated_at.isoformat(), name=name)
    return AccountFetchResult(
        biz_id=account.biz_id,
        ok=status not in ANTI_BOT_STATUSES,
        http_status=status,
        found=len(links),
        created=created,
        updated=updated,
        skipped=skipped,
        retries=retries,
        account_name=name,
        errors=errors,
    )


def _stored_buzz(conn: Any, article_id: str, default: float) -> float:
    article = get_article(conn, article_id)
    if article and article.buzz is not None:
        return article.buzz
    return default
