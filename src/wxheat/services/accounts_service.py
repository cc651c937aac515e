from __future__ import annotations

import csv
import io
import logging
from dataclasses import asdict
from typing import Any

from ..models import PENDING_ACCOUNT_NAME, Account
from ..parser import (
    MalformedUrlError,
    extract_account_id,
    extract_account_id_from_html,
    is_wechat_article_url,
)
from ..storage import get_account, insert_account, list_accounts, update_account
from ..utils import log_event
from .errors import DuplicateAccountError, NotFoundError

IMPORT_COLUMNS = ("name", "seed_url", "star")

INVALID_URL = "Invalid WeChat URL"
MISSING_BIZ = "URL must contain __biz parameter"
NO_BIZ_ID = "Cannot extract biz_id"
NAME_REQUIRED = "Name is required"
STAR_RANGE = "Star rating must be between 1 and 5"

logger = logging.getLogger("wxheat.accounts")


def account_to_dict(account: Account) -> dict[str, object]:
    data = asdict(account)
    data["id"] = account.biz_id
    return data


def list_account_dicts(conn: Any, active_only: bool = False) -> list[dict[str, object]]:
    return [account_to_dict(account) for account in list_accounts(conn, active_only=active_only)]


def create_account(
    conn: Any, seed_url: str, star: Any, name: str | None = None
) -> dict[str, object]:
    seed_url = (seed_url or "").strip()
    if not is_wechat_article_url(seed_url):
        raise ValueError(INVALID_URL)
    if "__biz=" not in seed_url:
        raise ValueError(MISSING_BIZ)
    star_value = _parse_star(star)
    if star_value is None:
        raise ValueError(STAR_RANGE)
    try:
        biz_id = extract_account_id(seed_url)
    except MalformedUrlError as exc:
        raise ValueError(NO_BIZ_ID) from exc
    return _insert(conn, biz_id, seed_url, star_value, name)


def update_account_fields(conn: Any, biz_id: str, payload: dict[str, Any]) -> dict[str, object]:
    if get_account(conn, biz_id) is None:
        raise NotFoundError(f"account not found: {biz_id}")
    star = None
    if payload.get("star") is not None:
        star = _parse_star(payload["star"])
        if star is None:
            raise ValueError(STAR_RANGE)
    is_active = payload.get("is_active")
    if is_active is not None and not isinstance(is_active, bool):
        raise ValueError("is_active must be a boolean")
    name = payload.get("name")
    if name is not None:
        name = str(name).strip()
        if not name:
            raise ValueError(NAME_REQUIRED)
    account = update_account(conn, biz_id, star=star, is_active=is_active, name=name)
    log_event(logger, logging.INFO, "account_updated", biz_id=biz_id)
    return account_to_dict(account)


def resolve_and_create(conn: Any, url: str, star: Any, fetcher: Any) -> dict[str, object]:
    """Create an account from any WeChat article link, including short links.

    Short links carry no ``__biz``; the id is taken from the redirect target
    when there is one, otherwise from the page itself.
    """
    url = (url or "").strip()
    if not is_wechat_article_url(url):
        raise ValueError(INVALID_URL)
    if _parse_star(star) is None:
        raise ValueError(STAR_RANGE)
    if "__biz=" in url:
        return create_account(conn, url, star)

    response = fetcher.get(url, follow_redirects=False)
    location = response.location
    if location and "__biz=" in location:
        return create_account(conn, location, star)
    if location:
        response = fetcher.get(location)
    biz_id = extract_account_id_from_html(response.body) if response.ok else None
    if not biz_id:
        raise ValueError(NO_BIZ_ID)
    log_event(logger, logging.INFO, "account_resolved", url=url, biz_id=biz_id)
    return _insert(conn, biz_id, url, _parse_star(star), None)


def import_accounts_csv(conn: Any, text: str) -> dict[str, object]:
    """Bulk-create accounts from a ``name,seed_url,star`` CSV document.

    Bad rows are reported by file line and never abort the import; accounts
    that already exist, or repeat an earlier row, are counted as skipped.
    """
    reader = csv.reader(io.StringIO(text.lstrip("\ufeff")))
    header = next(reader, None)
    columns = [column.strip().lower() for column in header or []]
    if sorted(columns) != sorted(IMPORT_COLUMNS):
        raise ValueError("CSV header must be exactly: name,seed_url,star")
    index = {column: columns.index(column) for column in IMPORT_COLUMNS}

    inserted = 0
    skipped = 0
    errors: list[dict[str, object]] = []
    seen: set[str] = set()
    for row in reader:
        line = reader.line_num
        if not any(cell.strip() for cell in row):
            continue
        values = {
            column: row[position].strip() if position < len(row) else ""
            for column, position in index.items()
        }
        reason, biz_id, star = _check_import_row(values)
        if reason:
            errors.append({"row": line, "reason": reason})
            continue
        if biz_id in seen or not insert_account(conn, biz_id, values["name"], values["seed_url"], star):
            skipped += 1
            seen.add(biz_id)
            continue
        seen.add(biz_id)
        inserted += 1
    log_event(
        logger,
        logging.INFO,
        "accounts_imported",
        inserted=inserted,
        skipped=skipped,
        errors=len(errors),
    )
    return {"inserted": inserted, "skipped": skipped, "errors": errors}


def _check_import_row(values: dict[str, str]) -> tuple[str | None, str, int]:
    if not values["name"]:
        return NAME_REQUIRED, "", 0
    if not is_wechat_article_url(values["seed_url"]):
        return INVALID_URL, "", 0
    try:
        biz_id = extract_account_id(values["seed_url"])
    except MalformedUrlError:
        return NO_BIZ_ID, "", 0
    star = _parse_star(values["star"])
    if star is None:
        return STAR_RANGE, "", 0
    return None, biz_id, star


def _insert(
    conn: Any, biz_id: str, seed_url: str, star: int, name: str | None
) -> dict[str, object]:
    existing = get_account(conn, biz_id)
    if existing is not None:
        raise DuplicateAccountError("Account already exists", account_to_dict(existing))
    if not insert_account(conn, biz_id, name or PENDING_ACCOUNT_NAME, seed_url, star):
        existing = get_account(conn, biz_id)
        raise DuplicateAccountError("Account already exists", account_to_dict(existing))
    log_event(logger, logging.INFO, "account_created", biz_id=biz_id, star=star)
    return account_to_dict(get_account(conn, biz_id))


def _parse_star(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, float):
        if not value.is_integer():
            return None
        value = int(value)
    if isinstance(value, str):
        value = value.strip()
        if not value.isdigit():
            return None
        value = int(value)
    if not isinstance(value, int) or not 1 <= value <= 5:
        return None
    return value
