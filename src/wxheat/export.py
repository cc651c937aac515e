from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Iterator

from .storage import SORT_HEAT_DESC, query_articles

EXPORT_COLUMNS = (
    "title",
    "summary",
    "pub_time",
    "author_name",
    "heat",
    "tags",
    "url",
    "read_count",
    "like_count",
)
EXPORT_MAX_ROWS = 1000
NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}

_SPECIAL_CHARS = (",", '"', "\n", "\r")


def escape_csv_field(value: Any) -> str:
    if value is None:
        return ""
    text = str(value)
    if any(char in text for char in _SPECIAL_CHARS):
        return '"' + text.replace('"', '""') + '"'
    return text


def unescape_csv_field(value: str) -> str:
    if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
        return value[1:-1].replace('""', '"')
    return value


def format_row(values: Iterable[Any]) -> str:
    return ",".join(escape_csv_field(value) for value in values) + "\r\n"


def article_row(item: dict[str, Any]) -> list[Any]:
    account = item.get("account") or {}
    return [
        item.get("title"),
        item.get("summary"),
        item.get("pub_time"),
        account.get("name"),
        f"{float(item.get('proxy_heat') or 0.0):.1f}",
        ";".join(item.get("tags") or []),
        item.get("url"),
        "",
        "",
    ]


def export_filename(now: datetime) -> str:
    return f"articles_{now.strftime('%Y-%m-%d')}.csv"


def collect_export_rows(
    conn: Any,
    *,
    window: str,
    published_since: str,
    tags: list[str] | None = None,
    sort: str = SORT_HEAT_DESC,
    search: str | None = None,
    min_heat: float | None = None,
    accounts: list[str] | None = None,
    limit: int = EXPORT_MAX_ROWS,
) -> list[dict[str, Any]]:
    items, _ = query_articles(
        conn,
        window=window,
        published_since=published_since,
        tags=tags,
        sort=sort,
        search=search,
        min_heat=min_heat,
        accounts=accounts,
        limit=min(limit, EXPORT_MAX_ROWS),
        offset=0,
    )
    return items


def iter_csv(items: Iterable[dict[str, Any]]) -> Iterator[str]:
    yield format_row(EXPORT_COLUMNS)
    for item in items:
        yield format_row(article_row(item))
