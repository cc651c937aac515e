from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Any

import uvicorn

from .config import Config, ConfigError, load_config
from .fetcher import HttpFetcher
from .pipelines.recompute import recompute_scores, relabel_articles
from .scheduler import REASON_QUOTA, refresh_account, run_scheduled
from .services.accounts_service import create_account, import_accounts_csv, list_account_dicts
from .services.errors import AccountInactiveError, DuplicateAccountError, NotFoundError, ReadOnlyModeError
from .services.settings_service import (
    get_history,
    list_setting_values,
    rollback,
    save_setting,
    save_with_history,
)
from .settings import SettingsValidationError
from .storage import init_db
from .utils import configure_logging, log_event


def _setup_logging() -> logging.Logger:
    return configure_logging("wxheat.cli")


def _load(args: argparse.Namespace, logger: logging.Logger) -> tuple[Config, Any] | None:
    try:
        config = load_config(args.config)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return None
    return config, init_db(config.paths.state_db)


def _print_json(value: Any) -> None:
    print(json.dumps(value, ensure_ascii=False, indent=2, sort_keys=True, default=str))


def _cmd_accounts_add(args: argparse.Namespace, logger: logging.Logger) -> int:
    loaded = _load(args, logger)
    if loaded is None:
        return 1
    _, conn = loaded
    try:
        account = create_account(conn, args.seed_url, args.star, name=args.name)
    except DuplicateAccountError as exc:
        log_event(logger, logging.WARNING, "account_exists", biz_id=exc.existing.get("biz_id"))
        return 1
    except ValueError as exc:
        log_event(logger, logging.ERROR, "account_invalid", error=str(exc))
        return 1
    _print_json(account)
    return 0


def _cmd_accounts_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    loaded = _load(args, logger)
    if loaded is None:
        return 1
    _, conn = loaded
    accounts = list_account_dicts(conn, active_only=args.active_only)
    for account in accounts:
        log_event(
            logger,
            logging.INFO,
            "account",
            biz_id=account["biz_id"],
            name=account["name"],
            star=account["star"],
            active=account["is_active"],
            last_fetched=account["last_fetched"],
        )
    log_event(logger, logging.INFO, "accounts_listed", count=len(accounts))
    return 0


def _cmd_accounts_import(args: argparse.Namespace, logger: logging.Logger) -> int:
    loaded = _load(args, logger)
    if loaded is None:
        return 1
    config, conn = loaded
    if config.app.read_only:
        log_event(logger, logging.ERROR, "read_only_mode", command="accounts import")
        return 1
    try:
        text = Path(args.path).read_text(encoding="utf-8")
        result = import_accounts_csv(conn, text)
    except (OSError, ValueError) as exc:
        log_event(logger, logging.ERROR, "import_failed", path=args.path, error=str(exc))
        return 1
    _print_json(result)
    return 0


def _cmd_refresh(args: argparse.Namespace, logger: logging.Logger) -> int:
    loaded = _load(args, logger)
    if loaded is None:
        return 1
    config, conn = loaded
    try:
        result = refresh_account(conn, args.biz_id, HttpFetcher.from_config(config.http), config=config)
    except (NotFoundError, AccountInactiveError, ReadOnlyModeError) as exc:
        log_event(logger, logging.ERROR, "refresh_rejected", biz_id=args.biz_id, error=str(exc))
        return 1
    _print_json(result)
    return 0 if result["ok"] else 1


def _cmd_run(args: argparse.Namespace, logger: logging.Logger) -> int:
    loaded = _load(args, logger)
    if loaded is None:
        return 1
    config, conn = loaded
    result = run_scheduled(conn, HttpFetcher.from_config(config.http), config=config)
    _print_json(result)
    return 0 if result["success"] or result.get("reason") == REASON_QUOTA else 1


def _cmd_recompute(args: argparse.Namespace, logger: logging.Logger) -> int:
    loaded = _load(args, logger)
    if loaded is None:
        return 1
    _, conn = loaded
    try:
        result = recompute_scores(
            conn,
            article_ids=args.article or None,
            windows=args.window or None,
            force_all=args.all,
            logger=logger,
        )
    except ValueError as exc:
        log_event(logger, logging.ERROR, "recompute_invalid", error=str(exc))
        return 1
    _print_json(result)
    return 0


def _cmd_relabel(args: argparse.Namespace, logger: logging.Logger) -> int:
    loaded = _load(args, logger)
    if loaded is None:
        return 1
    _, conn = loaded
    result = relabel_articles(conn, article_ids=args.article or None, force_all=True, logger=logger)
    _print_json(result)
    return 0


def _cmd_settings_show(args: argparse.Namespace, logger: logging.Logger) -> int:
    loaded = _load(args, logger)
    if loaded is None:
        return 1
    _, conn = loaded
    values = list_setting_values(conn)
    if args.key:
        if args.key not in values:
            log_event(logger, logging.ERROR, "setting_unknown", key=args.key)
            return 1
        values = {args.key: values[args.key]}
    _print_json(values)
    return 0


def _cmd_settings_set(args: argparse.Namespace, logger: logging.Logger) -> int:
    loaded = _load(args, logger)
    if loaded is None:
        return 1
    _, conn = loaded
    try:
        value = json.loads(args.value)
    except json.JSONDecodeError as exc:
        log_event(logger, logging.ERROR, "setting_value_invalid_json", key=args.key, error=str(exc))
        return 1
    try:
        if args.no_history:
            result = save_setting(conn, args.key, value)
        else:
            result = save_with_history(conn, args.key, value)
    except SettingsValidationError as exc:
        for error in exc.errors:
            log_event(logger, logging.ERROR, "setting_invalid", key=args.key, error=error)
        return 1
    _print_json(result)
    return 0


def _cmd_settings_history(args: argparse.Namespace, logger: logging.Logger) -> int:
    loaded = _load(args, logger)
    if loaded is None:
        return 1
    _, conn = loaded
    _print_json(get_history(conn, args.key, limit=args.limit))
    return 0


def _cmd_settings_rollback(args: argparse.Namespace, logger: logging.Logger) -> int:
    loaded = _load(args, logger)
    if loaded is None:
        return 1
    _, conn = loaded
    try:
        result = rollback(conn, args.history_id)
    except NotFoundError as exc:
        log_event(logger, logging.ERROR, "history_not_found", history_id=args.history_id, error=str(exc))
        return 1
    except SettingsValidationError as exc:
        log_event(logger, logging.ERROR, "setting_invalid", error="; ".join(exc.errors))
        return 1
    _print_json(result)
    return 0


def _cmd_db_migrate(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        config = load_config(args.config)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1

    init_db(config.paths.state_db)
    log_event(logger, logging.INFO, "db_migrated", path=config.paths.state_db)
    return 0


def _cmd_serve(args: argparse.Namespace, logger: logging.Logger) -> int:
    log_event(logger, logging.INFO, "api_starting", host=args.host, port=args.port)
    uvicorn.run("wxheat.admin:app", host=args.host, port=args.port, log_level=args.log_level)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="wxheat", description="WeChat article heat tracker")
    parser.add_argument(
        "--config",
        dest="config",
        default=None,
        help="Path to config.yml (defaults to WXH_CONFIG_PATH or built-in defaults)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    accounts_parser = subparsers.add_parser("accounts", help="Manage tracked accounts")
    accounts_subparsers = accounts_parser.add_subparsers(dest="accounts_command", required=True)

    accounts_add = accounts_subparsers.add_parser("add", help="Add an account from a seed URL")
    accounts_add.add_argument("seed_url")
    accounts_add.add_argument("--star", type=int, default=3, help="Account rating 1-5")
    accounts_add.add_argument("--name", default=None)
    accounts_add.set_defaults(func=_cmd_accounts_add)

    accounts_list = accounts_subparsers.add_parser("list", help="List accounts")
    accounts_list.add_argument("--active-only", action="store_true")
    accounts_list.set_defaults(func=_cmd_accounts_list)

    accounts_import = accounts_subparsers.add_parser("import", help="Import accounts from CSV")
    accounts_import.add_argument("path")
    accounts_import.set_defaults(func=_cmd_accounts_import)

    refresh_parser = subparsers.add_parser("refresh", help="Crawl one account now")
    refresh_parser.add_argument("biz_id")
    refresh_parser.set_defaults(func=_cmd_refresh)

    run_parser = subparsers.add_parser("run", help="Crawl all active accounts once")
    run_parser.set_defaults(func=_cmd_run)

    recompute_parser = subparsers.add_parser("recompute", help="Recompute heat scores")
    recompute_parser.add_argument("--article", action="append", default=[], help="Article id (repeatable)")
    recompute_parser.add_argument("--window", action="append", default=[], help="Window label (repeatable)")
    recompute_parser.add_argument("--all", action="store_true", help="Recompute every article")
    recompute_parser.set_defaults(func=_cmd_recompute)

    relabel_parser = subparsers.add_parser("relabel", help="Re-run the classifier")
    relabel_parser.add_argument("--article", action="append", default=[], help="Article id (repeatable)")
    relabel_parser.set_defaults(func=_cmd_relabel)

    settings_parser = subparsers.add_parser("settings", help="Tunable settings")
    settings_subparsers = settings_parser.add_subparsers(dest="settings_command", required=True)

    settings_show = settings_subparsers.add_parser("show", help="Show effective settings")
    settings_show.add_argument("key", nargs="?", default=None)
    settings_show.set_defaults(func=_cmd_settings_show)

    settings_set = settings_subparsers.add_parser("set", help="Save a setting (JSON value)")
    settings_set.add_argument("key")
    settings_set.add_argument("value", help="JSON-encoded value")
    settings_set.add_argument("--no-history", action="store_true", help="Skip the history snapshot")
    settings_set.set_defaults(func=_cmd_settings_set)

    settings_history = settings_subparsers.add_parser("history", help="Show saved snapshots")
    settings_history.add_argument("key")
    settings_history.add_argument("--limit", type=int, default=20)
    settings_history.set_defaults(func=_cmd_settings_history)

    settings_rollback = settings_subparsers.add_parser("rollback", help="Restore a snapshot")
    settings_rollback.add_argument("history_id")
    settings_rollback.set_defaults(func=_cmd_settings_rollback)

    db_parser = subparsers.add_parser("db", help="Database maintenance")
    db_subparsers = db_parser.add_subparsers(dest="db_command", required=True)
    db_migrate = db_subparsers.add_parser("migrate", help="Apply database migrations")
    db_migrate.set_defaults(func=_cmd_db_migrate)

    serve_parser = subparsers.add_parser("serve", help="Serve the JSON API with uvicorn")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.add_argument("--log-level", default="info")
    serve_parser.set_defaults(func=_cmd_serve)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = _setup_logging()
    return args.func(args, logger)


if __name__ == "__main__":
    raise SystemExit(main())
