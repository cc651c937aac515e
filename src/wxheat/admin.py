from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import datetime, timedelta, timezone
from typing import Any, Iterator

from fastapi import Depends, FastAPI, File, HTTPException, Query, UploadFile
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from .config import Config, ConfigError, load_config
from .export import NO_CACHE_HEADERS, collect_export_rows, export_filename, iter_csv
from .fetcher import FetchError, HttpFetcher
from .heat import WINDOWS, heat_level
from .models import MODE_NORMAL
from .pipelines.recompute import recompute_scores, relabel_articles
from .rate_limiter import count_fetch_logs_today
from .scheduler import refresh_account, run_scheduled
from .services.accounts_service import (
    create_account,
    import_accounts_csv,
    list_account_dicts,
    resolve_and_create,
    update_account_fields,
)
from .services.errors import (
    AccountInactiveError,
    DuplicateAccountError,
    NotFoundError,
    ReadOnlyModeError,
)
from .services.settings_service import (
    get_history,
    get_setting_value,
    list_setting_values,
    preview_weight_change,
    rollback,
    save_setting,
    save_with_history,
)
from .settings import SettingsValidationError, default_settings, load_rate_limits
from .storage import (
    SORT_HEAT_DESC,
    SORT_PUB_DESC,
    get_article,
    init_db,
    list_fetch_logs,
    load_crawler_state,
    query_articles,
    set_article_buzz,
)
from .utils import configure_logging, isoformat_z, log_event, utc_now

app = FastAPI(title="wxheat API")

VALID_SORTS = (SORT_HEAT_DESC, SORT_PUB_DESC)
DEFAULT_WINDOW = "7d"
DEFAULT_LIMIT = 20
MAX_LIMIT = 100

logger = configure_logging("wxheat.admin")


class AccountRequest(BaseModel):
    seed_url: str
    star: Any = None


class AccountUpdateRequest(BaseModel):
    star: int | None = None
    is_active: bool | None = None
    name: str | None = None


class ArticleUpdateRequest(BaseModel):
    buzz: float = Field(ge=0.0, le=1.0)


class SettingRequest(BaseModel):
    key: str
    value: Any


class PreviewRequest(BaseModel):
    weights: dict[str, Any]
    window: str = DEFAULT_WINDOW
    limit: int = Field(default=20, ge=1, le=MAX_LIMIT)


class RollbackRequest(BaseModel):
    history_id: str


class RecomputeRequest(BaseModel):
    article_ids: list[str] | None = None
    windows: list[str] | None = None
    force_all: bool = False


class RelabelRequest(BaseModel):
    article_ids: list[str] | None = None
    force_all: bool = True


def _get_version() -> str:
    try:
        from importlib.metadata import version

        return version("wxheat")
    except Exception:  # noqa: BLE001
        return "unknown"


def get_config() -> Config:
    try:
        return load_config()
    except ConfigError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc


def get_conn(config: Config = Depends(get_config)) -> Iterator[Any]:
    conn = init_db(config.paths.state_db)
    try:
        yield conn
    finally:
        conn.close()


def get_fetcher(config: Config = Depends(get_config)) -> Any:
    return HttpFetcher.from_config(config.http)


def _require_writable(config: Config) -> None:
    if config.app.read_only:
        raise HTTPException(status_code=503, detail="read_only_mode")


@app.get("/")
def root() -> dict[str, str]:
    return {"service": "wxheat API"}


@app.get("/health")
def health() -> dict[str, object]:
    return {
        "ok": True,
        "version": _get_version(),
        "time": datetime.now(tz=timezone.utc).isoformat(),
    }


# accounts


@app.get("/accounts")
def accounts_list(
    active_only: bool = False, conn: Any = Depends(get_conn)
) -> list[dict[str, object]]:
    return list_account_dicts(conn, active_only=active_only)


@app.post("/accounts", status_code=201)
def accounts_create(payload: AccountRequest, conn: Any = Depends(get_conn)):
    try:
        return create_account(conn, payload.seed_url, payload.star)
    except DuplicateAccountError as exc:
        return JSONResponse(status_code=409, content={"error": str(exc), "existing": exc.existing})
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.post("/accounts/resolve", status_code=201)
def accounts_resolve(
    payload: AccountRequest,
    conn: Any = Depends(get_conn),
    fetcher: Any = Depends(get_fetcher),
):
    try:
        return resolve_and_create(conn, payload.seed_url, payload.star, fetcher)
    except DuplicateAccountError as exc:
        return JSONResponse(status_code=409, content={"error": str(exc), "existing": exc.existing})
    except FetchError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.patch("/accounts/{biz_id}")
def accounts_update(
    biz_id: str, payload: AccountUpdateRequest, conn: Any = Depends(get_conn)
) -> dict[str, object]:
    try:
        return update_account_fields(conn, biz_id, payload.model_dump(exclude_unset=True))
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail="account_not_found") from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.post("/import")
async def accounts_import(
    file: UploadFile = File(...),
    config: Config = Depends(get_config),
    conn: Any = Depends(get_conn),
) -> dict[str, object]:
    _require_writable(config)
    raw = await file.read()
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise HTTPException(status_code=400, detail="CSV must be UTF-8 encoded") from exc
    try:
        return import_accounts_csv(conn, text)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


# articles


def _split_param(value: str | None) -> list[str] | None:
    if not value:
        return None
    items = [item.strip() for item in value.split(",") if item.strip()]
    return items or None


def _validate_listing(window: str, sort: str) -> str:
    if window not in WINDOWS:
        raise HTTPException(
            status_code=400,
            detail="Invalid window parameter. Must be one of: " + ", ".join(WINDOWS),
        )
    if sort not in VALID_SORTS:
        raise HTTPException(
            status_code=400,
            detail="Invalid sort parameter. Must be one of: " + ", ".join(VALID_SORTS),
        )
    return isoformat_z(utc_now() - timedelta(hours=WINDOWS[window]))


@app.get("/articles")
def articles_list(
    window: str = DEFAULT_WINDOW,
    tags: str | None = None,
    sort: str = SORT_HEAT_DESC,
    search: str | None = None,
    accounts: str | None = None,
    limit: int = Query(default=DEFAULT_LIMIT, ge=1, le=MAX_LIMIT),
    offset: int = Query(default=0, ge=0),
    conn: Any = Depends(get_conn),
) -> dict[str, object]:
    since = _validate_listing(window, sort)
    items, total = query_articles(
        conn,
        window=window,
        published_since=since,
        tags=_split_param(tags),
        sort=sort,
        search=search.strip() if search and search.strip() else None,
        accounts=_split_param(accounts),
        limit=limit,
        offset=offset,
    )
    for item in items:
        item["heat_level"] = heat_level(float(item["proxy_heat"]))
    return {"items": items, "total": total, "hasMore": offset + len(items) < total}


@app.patch("/articles/{article_id}")
def articles_update(
    article_id: str, payload: ArticleUpdateRequest, conn: Any = Depends(get_conn)
) -> dict[str, object]:
    if not set_article_buzz(conn, article_id, payload.buzz):
        raise HTTPException(status_code=404, detail="article_not_found")
    recompute_scores(conn, article_ids=[article_id], logger=logger)
    article = get_article(conn, article_id)
    return {"id": article_id, "buzz": article.buzz if article else payload.buzz}


@app.get("/export.csv")
def articles_export(
    window: str = DEFAULT_WINDOW,
    tags: str | None = None,
    sort: str = SORT_HEAT_DESC,
    search: str | None = None,
    min_heat: float | None = Query(default=None, ge=0, le=100),
    accounts: str | None = None,
    conn: Any = Depends(get_conn),
) -> StreamingResponse:
    since = _validate_listing(window, sort)
    items = collect_export_rows(
        conn,
        window=window,
        published_since=since,
        tags=_split_param(tags),
        sort=sort,
        search=search.strip() if search and search.strip() else None,
        min_heat=min_heat,
        accounts=_split_param(accounts),
    )
    log_event(logger, logging.INFO, "articles_exported", rows=len(items), window=window)
    headers = dict(NO_CACHE_HEADERS)
    headers["Content-Disposition"] = f'attachment; filename="{export_filename(utc_now())}"'
    return StreamingResponse(
        iter_csv(items), media_type="text/csv; charset=utf-8", headers=headers
    )


# settings


@app.get("/settings")
def settings_list(conn: Any = Depends(get_conn)) -> dict[str, object]:
    return {"settings": list_setting_values(conn)}


@app.get("/settings/default")
def settings_default() -> dict[str, object]:
    return {"settings": default_settings()}


@app.post("/settings")
def settings_save(payload: SettingRequest, conn: Any = Depends(get_conn)) -> dict[str, object]:
    try:
        return {"success": True, **save_setting(conn, payload.key, payload.value)}
    except SettingsValidationError as exc:
        raise HTTPException(status_code=400, detail={"errors": exc.errors}) from exc


@app.post("/settings/save-with-history")
def settings_save_with_history(
    payload: SettingRequest, conn: Any = Depends(get_conn)
) -> dict[str, object]:
    try:
        return save_with_history(conn, payload.key, payload.value)
    except SettingsValidationError as exc:
        raise HTTPException(status_code=400, detail={"errors": exc.errors}) from exc


@app.post("/settings/preview")
def settings_preview(payload: PreviewRequest, conn: Any = Depends(get_conn)) -> dict[str, object]:
    try:
        return preview_weight_change(
            conn, payload.weights, window=payload.window, limit=payload.limit
        )
    except SettingsValidationError as exc:
        raise HTTPException(status_code=400, detail={"errors": exc.errors}) from exc


@app.post("/settings/rollback")
def settings_rollback(payload: RollbackRequest, conn: Any = Depends(get_conn)) -> dict[str, object]:
    try:
        return rollback(conn, payload.history_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail="history_not_found") from exc
    except SettingsValidationError as exc:
        raise HTTPException(status_code=400, detail={"errors": exc.errors}) from exc


@app.get("/settings/{key}/history")
def settings_history(
    key: str,
    limit: int = Query(default=50, ge=1, le=MAX_LIMIT),
    conn: Any = Depends(get_conn),
) -> dict[str, object]:
    try:
        get_setting_value(conn, key)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail="setting_not_found") from exc
    return {"key": key, "history": get_history(conn, key, limit=limit)}


@app.get("/settings/{key}")
def settings_read(key: str, conn: Any = Depends(get_conn)) -> dict[str, object]:
    try:
        return {"key": key, "value": get_setting_value(conn, key)}
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail="setting_not_found") from exc


# crawling


@app.post("/refresh/{biz_id}")
def refresh(
    biz_id: str,
    config: Config = Depends(get_config),
    conn: Any = Depends(get_conn),
    fetcher: Any = Depends(get_fetcher),
) -> dict[str, object]:
    try:
        result = refresh_account(conn, biz_id, fetcher, config=config)
    except ReadOnlyModeError as exc:
        raise HTTPException(status_code=503, detail="read_only_mode") from exc
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail="account_not_found") from exc
    except AccountInactiveError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"success": bool(result["ok"]), **result}


@app.post("/scheduler/run")
def scheduler_run(
    config: Config = Depends(get_config),
    conn: Any = Depends(get_conn),
    fetcher: Any = Depends(get_fetcher),
) -> dict[str, object]:
    return run_scheduled(conn, fetcher, config=config)


@app.post("/recompute")
def recompute(
    payload: RecomputeRequest | None = None, conn: Any = Depends(get_conn)
) -> dict[str, object]:
    payload = payload or RecomputeRequest()
    try:
        result = recompute_scores(
            conn,
            article_ids=payload.article_ids,
            windows=payload.windows,
            force_all=payload.force_all,
            logger=logger,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"success": True, **result}


@app.post("/relabel")
def relabel(
    payload: RelabelRequest | None = None, conn: Any = Depends(get_conn)
) -> dict[str, object]:
    payload = payload or RelabelRequest()
    result = relabel_articles(
        conn, article_ids=payload.article_ids, force_all=payload.force_all, logger=logger
    )
    return {"success": True, **result}


@app.get("/fetch-logs")
def fetch_logs(
    account: str | None = None,
    limit: int = Query(default=50, ge=1, le=MAX_LIMIT),
    conn: Any = Depends(get_conn),
) -> list[dict[str, object]]:
    return [asdict(log) for log in list_fetch_logs(conn, account_biz_id=account, limit=limit)]


@app.get("/crawler/state")
def crawler_state(conn: Any = Depends(get_conn)) -> dict[str, object]:
    state = load_crawler_state(conn)
    limits = load_rate_limits(conn)
    used = count_fetch_logs_today(conn, utc_now())
    return {
        "mode": state.mode if state else MODE_NORMAL,
        "success_streak": state.success_streak if state else 0,
        "slow_since": state.slow_since.isoformat() if state and state.slow_since else None,
        "daily_limit": limits.daily,
        "used_today": used,
        "remaining_today": max(0, limits.daily - used),
    }
