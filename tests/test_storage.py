import sqlite3
from datetime import datetime, timedelta, timezone

from wxheat.db import _normalize_sql
from wxheat.migrations import _get_migrations, apply_migrations
from wxheat.storage import (
    SORT_PUB_DESC,
    get_article,
    init_db,
    insert_account,
    query_articles,
    release_lease,
    renew_lease,
    set_article_buzz,
    try_acquire_lease,
    update_account,
    upsert_article,
    upsert_score,
)
from wxheat.utils import isoformat_z

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def test_apply_migrations_idempotent(tmp_path):
    db_path = tmp_path / "state.sqlite3"
    conn = sqlite3.connect(str(db_path))
    apply_migrations(conn)
    apply_migrations(conn)

    rows = conn.execute("SELECT version FROM schema_migrations").fetchall()
    versions = [row[0] for row in rows]
    expected = [version for version, _ in _get_migrations()]
    assert sorted(versions) == sorted(expected)
    assert len(versions) == len(set(versions))


def test_initial_schema_has_buzz_and_fetch_counts(tmp_path):
    conn = sqlite3.connect(str(tmp_path / "state.sqlite3"))
    apply_migrations(conn)

    article_columns = {row[1] for row in conn.execute("PRAGMA table_info(articles)").fetchall()}
    log_columns = {row[1] for row in conn.execute("PRAGMA table_info(fetch_logs)").fetchall()}
    tables = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()}
    assert "buzz" in article_columns
    assert {"articles_found", "articles_saved"} <= log_columns
    assert {"crawler_state", "leases"} <= tables


def test_normalize_sql_for_postgres():
    sql = "INSERT OR IGNORE INTO t (a, b) VALUES (?, ?)"
    assert _normalize_sql(sql, "postgres") == "INSERT INTO t (a, b) VALUES (%s, %s) ON CONFLICT DO NOTHING"
    assert _normalize_sql("SELECT '50%' WHERE a = ?", "postgres") == "SELECT '50%%' WHERE a = %s"
    assert _normalize_sql(sql, "sqlite") == sql


def _article(conn, biz_id: str, mid: int, title: str, hours_ago: float, tags, heat: float):
    article_id, _ = upsert_article(
        conn,
        account_biz_id=biz_id,
        url=f"https://mp.weixin.qq.com/s?__biz={biz_id}&mid={mid}&idx=1&sn=x",
        title=title,
        cover=None,
        pub_time=isoformat_z(NOW - timedelta(hours=hours_ago)),
        summary=f"{title} summary",
        tags=tags,
        buzz=0.5,
    )
    upsert_score(conn, article_id, "7d", heat, NOW.isoformat())
    return article_id


def test_upsert_article_by_url_keeps_buzz(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    insert_account(conn, "AAA", "号", "https://mp.weixin.qq.com/s?__biz=AAA", 3)
    url = "https://mp.weixin.qq.com/s?__biz=AAA&mid=1&idx=1&sn=x"
    article_id, created = upsert_article(
        conn,
        account_biz_id="AAA",
        url=url,
        title="v1",
        cover=None,
        pub_time="2025-03-01T00:00:00Z",
        summary="s",
        tags=["效率"],
        buzz=0.5,
    )
    assert created is True
    assert set_article_buzz(conn, article_id, 0.9) is True

    same_id, created = upsert_article(
        conn,
        account_biz_id="AAA",
        url=url,
        title="v2",
        cover=None,
        pub_time="2025-03-01T00:00:00Z",
        summary="s",
        tags=["编程"],
        buzz=0.5,
    )
    assert same_id == article_id
    assert created is False
    article = get_article(conn, article_id)
    assert article.title == "v2"
    assert article.buzz == 0.9
    assert article.tags == ["编程"]
    assert set_article_buzz(conn, "missing", 0.1) is False


def test_query_articles_filters_and_sorts(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    insert_account(conn, "AAA", "甲", "https://mp.weixin.qq.com/s?__biz=AAA", 5)
    insert_account(conn, "BBB", "乙", "https://mp.weixin.qq.com/s?__biz=BBB", 3)
    hot = _article(conn, "AAA", 1, "热门 100%", 30, ["效率", "编程"], 90.0)
    newer = _article(conn, "AAA", 2, "新文章", 2, ["效率"], 60.0)
    tied = _article(conn, "BBB", 3, "同分更新", 1, ["编程"], 60.0)
    _article(conn, "BBB", 4, "太旧", 24 * 10, ["效率"], 99.0)

    since = isoformat_z(NOW - timedelta(days=7))
    items, total = query_articles(conn, window="7d", published_since=since)
    assert total == 3
    assert [item["id"] for item in items] == [hot, tied, newer]
    assert items[0]["account"] == {"id": "AAA", "biz_id": "AAA", "name": "甲", "star": 5}

    items, _ = query_articles(conn, window="7d", published_since=since, sort=SORT_PUB_DESC)
    assert [item["id"] for item in items] == [tied, newer, hot]

    items, total = query_articles(conn, window="7d", published_since=since, tags=["效率", "编程"])
    assert total == 1 and items[0]["id"] == hot

    items, _ = query_articles(conn, window="7d", published_since=since, search="100%")
    assert [item["id"] for item in items] == [hot]

    items, _ = query_articles(conn, window="7d", published_since=since, min_heat=70)
    assert [item["id"] for item in items] == [hot]

    items, total = query_articles(conn, window="7d", published_since=since, limit=1, offset=1)
    assert total == 3 and [item["id"] for item in items] == [tied]

    update_account(conn, "BBB", is_active=False)
    items, total = query_articles(conn, window="7d", published_since=since, accounts=["AAA", "BBB"])
    assert total == 2
    assert tied not in [item["id"] for item in items]


def test_sqlite_lease_is_exclusive(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    assert try_acquire_lease(conn, "scheduler", "one", 60) is True
    assert try_acquire_lease(conn, "scheduler", "two", 60) is False
    assert release_lease(conn, "scheduler", "one") is True
    assert try_acquire_lease(conn, "scheduler", "two", 60) is True
    assert try_acquire_lease(conn, "other", "one", -1) is True
    assert try_acquire_lease(conn, "other", "two", 60) is True


def test_sqlite_lease_renewal_needs_current_holder(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    assert try_acquire_lease(conn, "scheduler", "one", 1) is True
    before = conn.execute("SELECT expires_at FROM leases WHERE name = 'scheduler'").fetchone()[0]

    assert renew_lease(conn, "scheduler", "one", 600) is True
    after = conn.execute("SELECT expires_at FROM leases WHERE name = 'scheduler'").fetchone()[0]
    assert after > before

    assert renew_lease(conn, "scheduler", "two", 600) is False
    assert release_lease(conn, "scheduler", "one") is True
    assert renew_lease(conn, "scheduler", "one", 600) is False
