from __future__ import annotations

import argparse
import logging
import os
import time
import uuid
from datetime import datetime
from typing import Any, Callable

from .config import Config, ConfigError, load_config
from .fetcher import FetchError, HttpFetcher
from .models import Account, FetchLog
from .pipelines.fetch_articles import fetch_account_articles
from .rate_limiter import RateLimiter
from .services.errors import AccountInactiveError, NotFoundError, ReadOnlyModeError
from .storage import (
    get_account,
    init_db,
    insert_fetch_log,
    list_accounts,
    release_lease,
    renew_lease,
    try_acquire_lease,
)
from .utils import configure_logging, log_event, utc_now

LEASE_NAME = "scheduler"
REASON_QUOTA = "daily_quota_reached"
REASON_RUNNING = "already_running"
REASON_READ_ONLY = "read_only_mode"
REASON_LEASE_LOST = "lease_lost"

logger = logging.getLogger("wxheat.scheduler")


def _setup_logging() -> logging.Logger:
    return configure_logging("wxheat.scheduler")


def run_scheduled(
    conn: Any,
    fetcher: Any,
    *,
    config: Config | None = None,
    limiter: RateLimiter | None = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], datetime] = utc_now,
    holder: str | None = None,
) -> dict[str, object]:
    """Crawl every active account once, one at a time.

    Stops early, without raising, when the daily quota is used up or when the
    run lease can no longer be renewed. A failing account is logged and the run
    moves on to the next one.
    """
    config = config or load_config()
    if config.app.read_only:
        log_event(logger, logging.WARNING, "scheduler_skipped", reason=REASON_READ_ONLY)
        return {"success": False, "reason": REASON_READ_ONLY}

    holder = holder or f"{os.environ.get('HOSTNAME', 'scheduler')}:{os.getpid()}"
    if not try_acquire_lease(conn, LEASE_NAME, holder, config.scheduler.lease_ttl_seconds):
        log_event(logger, logging.INFO, "scheduler_skipped", reason=REASON_RUNNING)
        return {"success": False, "reason": REASON_RUNNING}

    limiter = limiter or RateLimiter(conn, clock=clock)
    results: list[dict[str, object]] = []
    try:
        accounts = list_accounts(conn, active_only=True)
        log_event(logger, logging.INFO, "scheduler_run_started", accounts=len(accounts))
        for position, account in enumerate(accounts):
            if not renew_lease(conn, LEASE_NAME, holder, config.scheduler.lease_ttl_seconds):
                log_event(logger, logging.ERROR, REASON_LEASE_LOST, holder=holder, processed=len(results))
                return _summary(results, success=False, reason=REASON_LEASE_LOST)
            if not limiter.check_daily_quota():
                log_event(
                    logger,
                    logging.WARNING,
                    REASON_QUOTA,
                    processed=len(results),
                    remaining=len(accounts) - position,
                )
                return _summary(results, success=False, reason=REASON_QUOTA)
            if position > 0:
                delay_ms = limiter.next_delay()
                log_event(logger, logging.DEBUG, "pacing_delay", delay_ms=delay_ms, mode=limiter.state.mode)
                sleep(delay_ms / 1000.0)
            results.append(_crawl_account(conn, account, fetcher, limiter, config, clock, sleep))
    finally:
        release_lease(conn, LEASE_NAME, holder)

    summary = _summary(results, success=True)
    log_event(
        logger,
        logging.INFO,
        "scheduler_run_finished",
        processed=summary["processed"],
        failed=summary["failed"],
        articles_saved=summary["articles_saved"],
    )
    return summary


def refresh_account(
    conn: Any,
    biz_id: str,
    fetcher: Any,
    *,
    config: Config | None = None,
    limiter: RateLimiter | None = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], datetime] = utc_now,
) -> dict[str, object]:
    config = config or load_config()
    if config.app.read_only:
        raise ReadOnlyModeError("read-only mode: refresh disabled")
    account = get_account(conn, biz_id)
    if account is None:
        raise NotFoundError(f"account not found: {biz_id}")
    if not account.is_active:
        raise AccountInactiveError(f"account is inactive: {biz_id}")
    limiter = limiter or RateLimiter(conn, clock=clock)
    return _crawl_account(conn, account, fetcher, limiter, config, clock, sleep)


def _crawl_account(
    conn: Any,
    account: Account,
    fetcher: Any,
    limiter: RateLimiter,
    config: Config,
    clock: Callable[[], datetime],
    sleep: Callable[[float], None],
) -> dict[str, object]:
    started = clock()
    found = saved = retries = 0
    try:
        result = fetch_account_articles(
            conn,
            account,
            fetcher,
            config=config,
            logger=logging.getLogger("wxheat.fetch"),
            now=started,
            limiter=limiter,
            sleep=sleep,
        )
    except FetchError as exc:
        ok = False
        status = exc.status
        retries = exc.retries
        message = str(exc)
        limiter.on_response(status)
    except Exception as exc:  # noqa: BLE001
        ok = False
        status = None
        message = f"{type(exc).__name__}: {exc}"
        _rollback_quietly(conn)
    else:
        ok = result.ok
        status = result.http_status
        retries = result.retries
        found = result.found
        saved = result.saved
        message = result.message()

    finished = clock()
    duration_ms = int((finished - started).total_seconds() * 1000)
    entry = FetchLog(
        id=uuid.uuid4().hex,
        account_biz_id=account.biz_id,
        started_at=started.isoformat(),
        finished_at=finished.isoformat(),
        ok=ok,
        http_status=status,
        retries=retries,
        message=message,
        duration_ms=duration_ms,
        articles_found=found,
        articles_saved=saved,
    )
    try:
        insert_fetch_log(conn, entry)
    except Exception as exc:  # noqa: BLE001
        _rollback_quietly(conn)
        log_event(logger, logging.WARNING, "fetch_log_write_failed", biz_id=account.biz_id, error=str(exc))

    log_event(
        logger,
        logging.INFO if ok else logging.WARNING,
        "account_fetch_ok" if ok else "account_fetch_failed",
        biz_id=account.biz_id,
        status=status,
        found=found,
        saved=saved,
        duration_ms=duration_ms,
        message=None if ok else message,
    )
    return {
        "biz_id": account.biz_id,
        "ok": ok,
        "http_status": status,
        "articles_found": found,
        "articles_saved": saved,
        "retries": retries,
        "duration_ms": duration_ms,
        "message": message,
        "mode": limiter.state.mode,
    }


def _summary(
    results: list[dict[str, object]], *, success: bool, reason: str | None = None
) -> dict[str, object]:
    summary: dict[str, object] = {
        "success": success,
        "processed": len(results),
        "succeeded": sum(1 for item in results if item["ok"]),
        "failed": sum(1 for item in results if not item["ok"]),
        "articles_saved": sum(int(item["articles_saved"]) for item in results),
        "results": results,
    }
    if reason:
        summary["reason"] = reason
    return summary


def _rollback_quietly(conn: Any) -> None:
    try:
        conn.rollback()
    except Exception:  # noqa: BLE001
        pass


def run_once(config_path: str | None = None) -> int:
    log = _setup_logging()
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        log_event(log, logging.ERROR, "config_error", error=str(exc))
        return 1
    conn = init_db(config.paths.state_db)
    try:
        result = run_scheduled(conn, HttpFetcher.from_config(config.http), config=config)
    finally:
        conn.close()
    return 0 if result.get("success") or result.get("reason") == REASON_QUOTA else 1


def run_loop(sleep_seconds: int | None, config_path: str | None = None) -> int:
    log = _setup_logging()
    while True:
        run_once(config_path)
        if sleep_seconds is None:
            try:
                sleep_seconds = load_config(config_path).scheduler.sleep_seconds
            except ConfigError as exc:
                log_event(log, logging.ERROR, "config_error", error=str(exc))
                return 1
        time.sleep(sleep_seconds)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="wxheat-scheduler")
    parser.add_argument("--once", action="store_true", help="Run a single crawl pass and exit")
    parser.add_argument("--sleep", type=int, default=None, help="Sleep seconds between runs")
    parser.add_argument("--config", default=None, help="Path to runtime config YAML")
    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    if args.once:
        return run_once(args.config)
    return run_loop(args.sleep, args.config)


if __name__ == "__main__":
    raise SystemExit(main())
