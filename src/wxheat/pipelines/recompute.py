from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Iterable

from ..classifier import classify, sorted_tags
from ..heat import WINDOWS, ScoringProfile
from ..settings import load_category_rules, load_scoring_profile
from ..storage import (
    get_article_tags,
    list_articles_for_scoring,
    set_article_tags,
    upsert_score,
)
from ..utils import isoformat_z, log_event, utc_now

DEFAULT_RECOMPUTE_DAYS = 7


def score_article(
    conn: Any,
    article_id: str,
    *,
    pub_time: str,
    star: int,
    title: str,
    buzz: float | None,
    profile: ScoringProfile,
    evaluated_at: datetime,
    windows: Iterable[str] = WINDOWS,
) -> float:
    """Write one score row per window, all evaluated at the same instant."""
    heat = profile.heat(pub_time, star, title, buzz, evaluated_at)
    calculated_at = evaluated_at.isoformat()
    for window in windows:
        upsert_score(conn, article_id, window, heat, calculated_at)
    return heat


def recompute_scores(
    conn: Any,
    *,
    article_ids: list[str] | None = None,
    windows: list[str] | None = None,
    force_all: bool = False,
    now: datetime | None = None,
    logger: logging.Logger | None = None,
) -> dict[str, object]:
    logger = logger or logging.getLogger("wxheat.recompute")
    now = now or utc_now()
    windows = list(windows or WINDOWS)
    unknown = [window for window in windows if window not in WINDOWS]
    if unknown:
        raise ValueError(f"unknown window: {', '.join(unknown)}")

    if article_ids is not None:
        rows = list_articles_for_scoring(conn, article_ids=article_ids)
    elif force_all:
        rows = list_articles_for_scoring(conn)
    else:
        since = isoformat_z(now - timedelta(days=DEFAULT_RECOMPUTE_DAYS))
        rows = list_articles_for_scoring(conn, published_since=since)

    profile = load_scoring_profile(conn)
    updated = 0
    errors: list[dict[str, str]] = []
    for row in rows:
        try:
            score_article(
                conn,
                str(row["id"]),
                pub_time=str(row["pub_time"]),
                star=int(row["star"]),
                title=str(row["title"] or ""),
                buzz=row["buzz"],
                profile=profile,
                evaluated_at=now,
                windows=windows,
            )
            updated += 1
        except Exception as exc:  # noqa: BLE001
            log_event(logger, logging.WARNING, "score_recompute_failed", article_id=row["id"], error=str(exc))
            errors.append({"article_id": str(row["id"]), "error": str(exc)})
    log_event(logger, logging.INFO, "scores_recomputed", processed=len(rows), updated=updated)
    return {"processed": len(rows), "updated": updated, "windows": windows, "errors": errors}


def relabel_articles(
    conn: Any,
    *,
    article_ids: list[str] | None = None,
    force_all: bool = True,
    now: datetime | None = None,
    logger: logging.Logger | None = None,
) -> dict[str, int]:
    logger = logger or logging.getLogger("wxheat.recompute")
    if article_ids is not None:
        rows = list_articles_for_scoring(conn, article_ids=article_ids)
    elif force_all:
        rows = list_articles_for_scoring(conn)
    else:
        since = isoformat_z((now or utc_now()) - timedelta(days=DEFAULT_RECOMPUTE_DAYS))
        rows = list_articles_for_scoring(conn, published_since=since)

    rules = load_category_rules(conn)
    changed = 0
    for row in rows:
        article_id = str(row["id"])
        tags = sorted_tags(classify(row["title"], row["summary"], rules))
        if tags != get_article_tags(conn, article_id):
            set_article_tags(conn, article_id, tags)
            changed += 1
    log_event(logger, logging.INFO, "articles_relabeled", processed=len(rows), changed=changed)
    return {"processed": len(rows), "changed": changed, "unchanged": len(rows) - changed}
