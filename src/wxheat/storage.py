from __future__ import annotations

import hashlib
import json
import struct
import uuid
from datetime import datetime
from typing import Any, Iterable

from .config import get_state_db_path
from .db import connect_db
from .models import Account, Article, CrawlerState, FetchLog, MODE_NORMAL, SettingsHistoryEntry
from .utils import json_dumps, parse_iso, utc_now_iso, utc_now_iso_offset

SORT_HEAT_DESC = "heat_desc"
SORT_PUB_DESC = "pub_desc"


def init_db(path: str | None = None):
    return connect_db(path or get_state_db_path())


# settings


def get_setting(conn: Any, key: str, default: object) -> object:
    cursor = conn.execute("SELECT value FROM settings WHERE key = ?", (key,))
    row = cursor.fetchone()
    if not row:
        return default
    try:
        return json.loads(row[0])
    except json.JSONDecodeError:
        return default


def set_setting(conn: Any, key: str, value: object) -> str:
    payload = json_dumps(value)
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO settings (key, value, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """,
        (key, payload, now),
    )
    conn.commit()
    return now


def insert_settings_history(conn: Any, key: str, value: object) -> SettingsHistoryEntry:
    entry = SettingsHistoryEntry(
        id=str(uuid.uuid4()), key=key, value=value, created_at=utc_now_iso()
    )
    conn.execute(
        "INSERT INTO settings_history (id, key, value, created_at) VALUES (?, ?, ?, ?)",
        (entry.id, entry.key, json_dumps(value), entry.created_at),
    )
    conn.commit()
    return entry


def list_settings_history(conn: Any, key: str, limit: int = 50) -> list[SettingsHistoryEntry]:
    cursor = conn.execute(
        """
        SELECT id, key, value, created_at
        FROM settings_history
        WHERE key = ?
        ORDER BY created_at DESC, id DESC
        LIMIT ?
        """,
        (key, limit),
    )
    return [_row_to_history(row) for row in cursor.fetchall()]


def get_settings_history_entry(conn: Any, history_id: str) -> SettingsHistoryEntry | None:
    cursor = conn.execute(
        "SELECT id, key, value, created_at FROM settings_history WHERE id = ?",
        (history_id,),
    )
    row = cursor.fetchone()
    return _row_to_history(row) if row else None


# accounts


def get_account(conn: Any, biz_id: str) -> Account | None:
    cursor = conn.execute(
        """
        SELECT biz_id, name, seed_url, star, is_active, last_fetched, article_count,
               created_at, updated_at
        FROM accounts WHERE biz_id = ?
        """,
        (biz_id,),
    )
    row = cursor.fetchone()
    return _row_to_account(row) if row else None


def list_accounts(conn: Any, active_only: bool = False) -> list[Account]:
    sql = """
        SELECT biz_id, name, seed_url, star, is_active, last_fetched, article_count,
               created_at, updated_at
        FROM accounts
    """
    if active_only:
        sql += " WHERE is_active = 1"
    sql += " ORDER BY created_at, biz_id"
    return [_row_to_account(row) for row in conn.execute(sql).fetchall()]


def insert_account(conn: Any, biz_id: str, name: str, seed_url: str, star: int) -> bool:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        INSERT OR IGNORE INTO accounts
            (biz_id, name, seed_url, star, is_active, last_fetched, article_count,
             created_at, updated_at)
        VALUES (?, ?, ?, ?, 1, NULL, 0, ?, ?)
        """,
        (biz_id, name, seed_url, star, now, now),
    )
    conn.commit()
    return cursor.rowcount == 1


def update_account(
    conn: Any,
    biz_id: str,
    *,
    star: int | None = None,
    is_active: bool | None = None,
    name: str | None = None,
) -> Account | None:
    assignments: list[str] = []
    params: list[object] = []
    if star is not None:
        assignments.append("star = ?")
        params.append(star)
    if is_active is not None:
        assignments.append("is_active = ?")
        params.append(1 if is_active else 0)
    if name is not None:
        assignments.append("name = ?")
        params.append(name)
    if assignments:
        assignments.append("updated_at = ?")
        params.append(utc_now_iso())
        params.append(biz_id)
        conn.execute(
            f"UPDATE accounts SET {', '.join(assignments)} WHERE biz_id = ?",
            tuple(params),
        )
        conn.commit()
    return get_account(conn, biz_id)


def mark_account_fetched(
    conn: Any, biz_id: str, fetched_at: str, name: str | None = None
) -> None:
    count_row = conn.execute(
        "SELECT COUNT(*) FROM articles WHERE account_biz_id = ?", (biz_id,)
    ).fetchone()
    article_count = int(count_row[0]) if count_row else 0
    if name:
        conn.execute(
            """
            UPDATE accounts
            SET last_fetched = ?, article_count = ?, name = ?, updated_at = ?
            WHERE biz_id = ?
            """,
            (fetched_at, article_count, name, utc_now_iso(), biz_id),
        )
    else:
        conn.execute(
            """
            UPDATE accounts
            SET last_fetched = ?, article_count = ?, updated_at = ?
            WHERE biz_id = ?
            """,
            (fetched_at, article_count, utc_now_iso(), biz_id),
        )
    conn.commit()


# articles


def get_article(conn: Any, article_id: str) -> Article | None:
    cursor = conn.execute(
        """
        SELECT id, account_biz_id, title, cover, pub_time, url, summary, buzz
        FROM articles WHERE id = ?
        """,
        (article_id,),
    )
    row = cursor.fetchone()
    if not row:
        return None
    return _row_to_article(row, get_article_tags(conn, row[0]))


def get_article_by_url(conn: Any, url: str) -> Article | None:
    cursor = conn.execute(
        """
        SELECT id, account_biz_id, title, cover, pub_time, url, summary, buzz
        FROM articles WHERE url = ?
        """,
        (url,),
    )
    row = cursor.fetchone()
    if not row:
        return None
    return _row_to_article(row, get_article_tags(conn, row[0]))


def upsert_article(
    conn: Any,
    *,
    account_biz_id: str,
    url: str,
    title: str,
    cover: str | None,
    pub_time: str,
    summary: str | None,
    tags: Iterable[str],
    buzz: float | None = None,
) -> tuple[str, bool]:
    """Insert or update by URL. Returns (article id, created)."""
    now = utc_now_iso()
    existing = conn.execute("SELECT id FROM articles WHERE url = ?", (url,)).fetchone()
    if existing:
        article_id = existing[0]
        conn.execute(
            """
            UPDATE articles
            SET title = ?, cover = ?, pub_time = ?, summary = ?,
                buzz = COALESCE(buzz, ?), updated_at = ?
            WHERE id = ?
            """,
            (title, cover, pub_time, summary, buzz, now, article_id),
        )
        created = False
    else:
        article_id = str(uuid.uuid4())
        conn.execute(
            """
            INSERT INTO articles
                (id, account_biz_id, title, cover, pub_time, url, summary, buzz,
                 created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (article_id, account_biz_id, title, cover, pub_time, url, summary, buzz, now, now),
        )
        created = True
    _replace_tags(conn, article_id, tags)
    conn.commit()
    return article_id, created


def set_article_tags(conn: Any, article_id: str, tags: Iterable[str]) -> None:
    _replace_tags(conn, article_id, tags)
    conn.commit()


def get_article_tags(conn: Any, article_id: str) -> list[str]:
    cursor = conn.execute(
        "SELECT tag FROM article_tags WHERE article_id = ? ORDER BY tag", (article_id,)
    )
    return [row[0] for row in cursor.fetchall()]


def set_article_buzz(conn: Any, article_id: str, buzz: float) -> bool:
    cursor = conn.execute(
        "UPDATE articles SET buzz = ?, updated_at = ? WHERE id = ?",
        (buzz, utc_now_iso(), article_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def list_articles_for_scoring(
    conn: Any,
    *,
    article_ids: list[str] | None = None,
    published_since: str | None = None,
) -> list[dict[str, object]]:
    sql = """
        SELECT a.id, a.title, a.summary, a.pub_time, a.buzz, acc.star
        FROM articles a
        JOIN accounts acc ON acc.biz_id = a.account_biz_id
    """
    clauses: list[str] = []
    params: list[object] = []
    if article_ids is not None:
        if not article_ids:
            return []
        clauses.append(f"a.id IN ({', '.join('?' for _ in article_ids)})")
        params.extend(article_ids)
    if published_since:
        clauses.append("a.pub_time >= ?")
        params.append(published_since)
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)
    sql += " ORDER BY a.pub_time DESC, a.id"
    rows = []
    for article_id, title, summary, pub_time, buzz, star in conn.execute(sql, tuple(params)).fetchall():
        rows.append(
            {
                "id": article_id,
                "title": title,
                "summary": summary,
                "pub_time": pub_time,
                "buzz": buzz,
                "star": star,
            }
        )
    return rows


def query_articles(
    conn: Any,
    *,
    window: str,
    published_since: str,
    tags: list[str] | None = None,
    sort: str = SORT_HEAT_DESC,
    search: str | None = None,
    min_heat: float | None = None,
    accounts: list[str] | None = None,
    limit: int = 20,
    offset: int = 0,
) -> tuple[list[dict[str, object]], int]:
    """Filtered page of scored articles from active accounts, plus the total count."""
    where = ["acc.is_active = 1", "a.pub_time >= ?"]
    params: list[object] = [published_since]
    for tag in tags or []:
        where.append(
            "EXISTS (SELECT 1 FROM article_tags t WHERE t.article_id = a.id AND t.tag = ?)"
        )
        params.append(tag)
    if search:
        pattern = f"%{_escape_like(search)}%"
        where.append("(a.title LIKE ? ESCAPE '\\' OR a.summary LIKE ? ESCAPE '\\')")
        params.extend([pattern, pattern])
    if min_heat is not None:
        where.append("s.proxy_heat >= ?")
        params.append(min_heat)
    if accounts:
        where.append(f"a.account_biz_id IN ({', '.join('?' for _ in accounts)})")
        params.extend(accounts)

    base = f"""
        FROM articles a
        JOIN accounts acc ON acc.biz_id = a.account_biz_id
        JOIN scores s ON s.article_id = a.id AND s.time_window = ?
        WHERE {' AND '.join(where)}
    """
    base_params = [window, *params]
    total_row = conn.execute(f"SELECT COUNT(*) {base}", tuple(base_params)).fetchone()
    total = int(total_row[0]) if total_row else 0

    if sort == SORT_PUB_DESC:
        order = "a.pub_time DESC, s.proxy_heat DESC, a.id"
    else:
        order = "s.proxy_heat DESC, a.pub_time DESC, a.id"
    cursor = conn.execute(
        f"""
        SELECT a.id, a.title, a.cover, a.pub_time, a.url, a.summary,
               acc.biz_id, acc.name, acc.star, s.proxy_heat
        {base}
        ORDER BY {order}
        LIMIT ? OFFSET ?
        """,
        tuple(base_params + [limit, offset]),
    )
    rows = cursor.fetchall()
    tag_map = _tags_for_articles(conn, [row[0] for row in rows])
    items = []
    for article_id, title, cover, pub_time, url, summary, biz_id, name, star, heat in rows:
        items.append(
            {
                "id": article_id,
                "title": title,
                "cover": cover,
                "pub_time": pub_time,
                "url": url,
                "summary": summary,
                "tags": tag_map.get(article_id, []),
                "account": {"id": biz_id, "biz_id": biz_id, "name": name, "star": star},
                "proxy_heat": float(heat),
            }
        )
    return items, total


def top_scored_articles(conn: Any, window: str, limit: int) -> list[dict[str, object]]:
    cursor = conn.execute(
        """
        SELECT a.id, a.title, a.pub_time, a.buzz, acc.star, s.proxy_heat, s.calculated_at
        FROM articles a
        JOIN accounts acc ON acc.biz_id = a.account_biz_id
        JOIN scores s ON s.article_id = a.id AND s.time_window = ?
        WHERE acc.is_active = 1
        ORDER BY s.proxy_heat DESC, a.pub_time DESC, a.id
        LIMIT ?
        """,
        (window, limit),
    )
    rows = []
    for article_id, title, pub_time, buzz, star, heat, calculated_at in cursor.fetchall():
        rows.append(
            {
                "id": article_id,
                "title": title,
                "pub_time": pub_time,
                "buzz": buzz,
                "star": star,
                "proxy_heat": float(heat),
                "calculated_at": calculated_at,
            }
        )
    return rows


# scores


def upsert_score(
    conn: Any, article_id: str, window: str, proxy_heat: float, calculated_at: str
) -> None:
    conn.execute(
        """
        INSERT INTO scores (article_id, time_window, proxy_heat, calculated_at)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(article_id, time_window) DO UPDATE SET
            proxy_heat = excluded.proxy_heat,
            calculated_at = excluded.calculated_at
        """,
        (article_id, window, proxy_heat, calculated_at),
    )
    conn.commit()


def get_scores(conn: Any, article_id: str) -> dict[str, float]:
    cursor = conn.execute(
        "SELECT time_window, proxy_heat FROM scores WHERE article_id = ?", (article_id,)
    )
    return {window: float(heat) for window, heat in cursor.fetchall()}


# fetch logs


def insert_fetch_log(conn: Any, log: FetchLog) -> None:
    conn.execute(
        """
        INSERT INTO fetch_logs
            (id, account_biz_id, started_at, finished_at, ok, http_status, retries,
             message, duration_ms, articles_found, articles_saved)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            log.id,
            log.account_biz_id,
            log.started_at,
            log.finished_at,
            1 if log.ok else 0,
            log.http_status,
            log.retries,
            log.message,
            log.duration_ms,
            log.articles_found,
            log.articles_saved,
        ),
    )
    conn.commit()


def list_fetch_logs(
    conn: Any, account_biz_id: str | None = None, limit: int = 50
) -> list[FetchLog]:
    sql = """
        SELECT id, account_biz_id, started_at, finished_at, ok, http_status, retries,
               message, duration_ms, articles_found, articles_saved
        FROM fetch_logs
    """
    params: list[object] = []
    if account_biz_id:
        sql += " WHERE account_biz_id = ?"
        params.append(account_biz_id)
    sql += " ORDER BY started_at DESC LIMIT ?"
    params.append(limit)
    return [_row_to_fetch_log(row) for row in conn.execute(sql, tuple(params)).fetchall()]


def count_fetch_logs_between(conn: Any, start_iso: str, end_iso: str) -> int:
    row = conn.execute(
        "SELECT COUNT(*) FROM fetch_logs WHERE started_at >= ? AND started_at < ?",
        (start_iso, end_iso),
    ).fetchone()
    return int(row[0]) if row else 0


# crawler state


def load_crawler_state(conn: Any) -> CrawlerState | None:
    row = conn.execute(
        "SELECT mode, success_streak, slow_since FROM crawler_state WHERE id = 1"
    ).fetchone()
    if not row:
        return None
    mode, streak, slow_since = row
    return CrawlerState(
        mode=mode or MODE_NORMAL,
        success_streak=int(streak or 0),
        slow_since=parse_iso(slow_since),
    )


def save_crawler_state(conn: Any, state: CrawlerState) -> None:
    slow_since = state.slow_since.isoformat() if isinstance(state.slow_since, datetime) else None
    conn.execute(
        """
        INSERT INTO crawler_state (id, mode, success_streak, slow_since, updated_at)
        VALUES (1, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            mode = excluded.mode,
            success_streak = excluded.success_streak,
            slow_since = excluded.slow_since,
            updated_at = excluded.updated_at
        """,
        (state.mode, state.success_streak, slow_since, utc_now_iso()),
    )
    conn.commit()


# leases


def try_acquire_lease(
    conn: Any,
    lease_name: str,
    holder: str,
    ttl_seconds: int,
) -> bool:
    if getattr(conn, "backend", "sqlite") == "postgres":
        cursor = conn.execute("SELECT pg_try_advisory_lock(?)", (_lease_key(lease_name),))
        row = cursor.fetchone()
        return bool(row and row[0])
    now = utc_now_iso()
    conn.execute("DELETE FROM leases WHERE name = ? AND expires_at < ?", (lease_name, now))
    cursor = conn.execute(
        "INSERT OR IGNORE INTO leases (name, holder, expires_at) VALUES (?, ?, ?)",
        (lease_name, holder, utc_now_iso_offset(seconds=ttl_seconds)),
    )
    conn.commit()
    return cursor.rowcount == 1


def renew_lease(conn: Any, lease_name: str, holder: str, ttl_seconds: int) -> bool:
    """Push the expiry of a lease this holder still owns. False once it is lost."""
    if getattr(conn, "backend", "sqlite") == "postgres":
        # advisory locks live as long as the session
        return True
    cursor = conn.execute(
        "UPDATE leases SET expires_at = ? WHERE name = ? AND holder = ?",
        (utc_now_iso_offset(seconds=ttl_seconds), lease_name, holder),
    )
    conn.commit()
    return cursor.rowcount == 1


def release_lease(conn: Any, lease_name: str, holder: str) -> bool:
    if getattr(conn, "backend", "sqlite") == "postgres":
        cursor = conn.execute("SELECT pg_advisory_unlock(?)", (_lease_key(lease_name),))
        row = cursor.fetchone()
        return bool(row and row[0])
    cursor = conn.execute(
        "DELETE FROM leases WHERE name = ? AND holder = ?", (lease_name, holder)
    )
    conn.commit()
    return cursor.rowcount == 1


def _lease_key(lease_name: str) -> int:
    digest = hashlib.sha256(lease_name.encode("utf-8")).digest()
    return struct.unpack(">q", digest[:8])[0]


def _replace_tags(conn: Any, article_id: str, tags: Iterable[str]) -> None:
    conn.execute("DELETE FROM article_tags WHERE article_id = ?", (article_id,))
    for tag in sorted(set(tags)):
        conn.execute(
            "INSERT OR IGNORE INTO article_tags (article_id, tag) VALUES (?, ?)",
            (article_id, tag),
        )


def _tags_for_articles(conn: Any, article_ids: list[str]) -> dict[str, list[str]]:
    if not article_ids:
        return {}
    cursor = conn.execute(
        f"""
        SELECT article_id, tag FROM article_tags
        WHERE article_id IN ({', '.join('?' for _ in article_ids)})
        ORDER BY tag
        """,
        tuple(article_ids),
    )
    tag_map: dict[str, list[str]] = {}
    for article_id, tag in cursor.fetchall():
        tag_map.setdefault(article_id, []).append(tag)
    return tag_map


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _row_to_account(row: tuple) -> Account:
    return Account(
        biz_id=row[0],
        name=row[1],
        seed_url=row[2],
        star=int(row[3]),
        is_active=bool(row[4]),
        last_fetched=row[5],
        article_count=int(row[6] or 0),
        created_at=row[7],
        updated_at=row[8],
    )


def _row_to_article(row: tuple, tags: list[str]) -> Article:
    return Article(
        id=row[0],
        account_biz_id=row[1],
        title=row[2],
        cover=row[3],
        pub_time=row[4],
        url=row[5],
        summary=row[6],
        tags=tags,
        buzz=float(row[7]) if row[7] is not None else None,
    )


def _row_to_history(row: tuple) -> SettingsHistoryEntry:
    try:
        value = json.loads(row[2])
    except json.JSONDecodeError:
        value = None
    return SettingsHistoryEntry(id=row[0], key=row[1], value=value, created_at=row[3])


def _row_to_fetch_log(row: tuple) -> FetchLog:
    return FetchLog(
        id=row[0],
        account_biz_id=row[1],
        started_at=row[2],
        finished_at=row[3],
        ok=bool(row[4]),
        http_status=row[5],
        retries=int(row[6] or 0),
        message=row[7],
        duration_ms=row[8],
        articles_found=int(row[9] or 0),
        articles_saved=int(row[10] or 0),
    )
