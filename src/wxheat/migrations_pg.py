from __future__ import annotations

import logging

from .utils import utc_now_iso


def apply_migrations_pg(conn) -> None:
    logger = logging.getLogger("wxheat.migrations")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    applied = {
        row[0]
        for row in conn.execute("SELECT version FROM schema_migrations").fetchall()
    }
    if "pg_bootstrap_001" in applied:
        conn.commit()
        return
    try:
        _bootstrap_schema(conn)
        conn.execute(
            "INSERT INTO schema_migrations (version, applied_at) VALUES (?, ?)",
            ("pg_bootstrap_001", utc_now_iso()),
        )
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    logger.info("migration_applied version=pg_bootstrap_001")


def _bootstrap_schema(conn) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS accounts (
            biz_id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            seed_url TEXT NOT NULL,
            star INTEGER NOT NULL CHECK (star BETWEEN 1 AND 5),
            is_active INTEGER NOT NULL DEFAULT 1,
            last_fetched TEXT NULL,
            article_count INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS articles (
            id TEXT PRIMARY KEY,
            account_biz_id TEXT NOT NULL REFERENCES accounts(biz_id),
            title TEXT NOT NULL,
            cover TEXT NULL,
            pub_time TEXT NOT NULL,
            url TEXT NOT NULL UNIQUE,
            summary TEXT NULL,
            buzz DOUBLE PRECISION NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_articles_account ON articles(account_biz_id)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_articles_pub_time ON articles(pub_time)")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS article_tags (
            article_id TEXT NOT NULL REFERENCES articles(id),
            tag TEXT NOT NULL,
            PRIMARY KEY (article_id, tag)
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_article_tags_tag ON article_tags(tag)")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS scores (
            article_id TEXT NOT NULL REFERENCES articles(id),
            time_window TEXT NOT NULL,
            proxy_heat DOUBLE PRECISION NOT NULL,
            calculated_at TEXT NOT NULL,
            PRIMARY KEY (article_id, time_window)
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_scores_window_heat ON scores(time_window, proxy_heat)"
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS settings (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS settings_history (
            id TEXT PRIMARY KEY,
            key TEXT NOT NULL,
            value TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_settings_history_key ON settings_history(key, created_at)"
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS fetch_logs (
            id TEXT PRIMARY KEY,
            account_biz_id TEXT NOT NULL,
            started_at TEXT NOT NULL,
            finished_at TEXT NULL,
            ok INTEGER NOT NULL DEFAULT 0,
            http_status INTEGER NULL,
            retries INTEGER NOT NULL DEFAULT 0,
            message TEXT NULL,
            duration_ms INTEGER NULL,
            articles_found INTEGER NOT NULL DEFAULT 0,
            articles_saved INTEGER NOT NULL DEFAULT 0
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_fetch_logs_started ON fetch_logs(started_at)")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS crawler_state (
            id INTEGER PRIMARY KEY CHECK (id = 1),
            mode TEXT NOT NULL,
            success_streak INTEGER NOT NULL DEFAULT 0,
            slow_since TEXT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS leases (
            name TEXT PRIMARY KEY,
            holder TEXT NOT NULL,
            expires_at TEXT NOT NULL
        )
        """
    )
