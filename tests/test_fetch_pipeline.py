import logging
from datetime import datetime, timezone

import pytest

from wxheat.config import load_config
from wxheat.fetcher import FetchError, FetchResponse
from wxheat.models import PENDING_ACCOUNT_NAME
from wxheat.pipelines.fetch_articles import fetch_account_articles
from wxheat.storage import get_account, get_article_by_url, get_scores, init_db, insert_account

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
SEED = "https://mp.weixin.qq.com/s?__biz=AAA&mid=1&idx=1&sn=a"
SECOND = "https://mp.weixin.qq.com/s?__biz=AAA&mid=2&idx=1&sn=b"
THIRD = "https://mp.weixin.qq.com/s?__biz=AAA&mid=3&idx=1&sn=c"
FOREIGN = "https://mp.weixin.qq.com/s?__biz=ZZZ&mid=9&idx=1&sn=z"


def _page(title: str, time_text: str = "2025年2月28日 09:00", links=(), extra: str = "") -> str:
    anchors = "".join(f'<a href="{link}">more</a>' for link in links)
    return f"""
    <html>
    <head>
      <meta property="og:title" content="{title}" />
      <meta property="og:description" content="{title} 的摘要" />
    </head>
    <body>
      <em id="publish_time">{time_text}</em>
      {anchors}
      {extra}
    </body>
    </html>
    """


class FakeFetcher:
    def __init__(self, pages):
        self.pages = pages
        self.requested = []

    def get(self, url, follow_redirects=True):
        self.requested.append(url)
        page = self.pages[url]
        if isinstance(page, Exception):
            raise page
        if isinstance(page, int):
            return FetchResponse(url=url, status=page, body="")
        return FetchResponse(url=url, status=200, body=page)


def _setup(tmp_path, name=PENDING_ACCOUNT_NAME):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    insert_account(conn, "AAA", name, SEED, 4)
    return conn, get_account(conn, "AAA")


def _fetch(conn, account, fetcher):
    return fetch_account_articles(
        conn,
        account,
        fetcher,
        config=load_config(),
        logger=logging.getLogger("test"),
        now=NOW,
    )


def test_fetch_saves_linked_articles_and_names_account(tmp_path):
    conn, account = _setup(tmp_path)
    fetcher = FakeFetcher(
        {
            SEED: _page(
                "5个一键提效的办公模板",
                links=[SECOND, THIRD, FOREIGN],
                extra='<script>var nickname = "效率研究所";</script>',
            ),
            SECOND: _page("Cursor 部署实战"),
            THIRD: _page("没有发布时间", time_text=""),
        }
    )

    result = _fetch(conn, account, fetcher)

    assert result.ok is True
    assert result.http_status == 200
    assert result.found == 3
    assert result.created == 2
    assert result.skipped == 1
    assert result.account_name == "效率研究所"
    assert FOREIGN not in fetcher.requested

    stored = get_account(conn, "AAA")
    assert stored.name == "效率研究所"
    assert stored.article_count == 2
    assert stored.last_fetched == NOW.isoformat()

    seed_article = get_article_by_url(conn, SEED)
    assert seed_article.pub_time == "2025-02-28T09:00:00Z"
    assert seed_article.buzz == 0.5
    assert "效率" in seed_article.tags
    assert "编程" in get_article_by_url(conn, SECOND).tags
    assert set(get_scores(conn, seed_article.id)) == {"24h", "3d", "7d", "30d"}


def test_refetch_updates_instead_of_duplicating(tmp_path):
    conn, account = _setup(tmp_path, name="已命名")
    fetcher = FakeFetcher({SEED: _page("第一版标题")})
    first = _fetch(conn, account, fetcher)
    fetcher.pages[SEED] = _page("第二版标题")
    second = _fetch(conn, get_account(conn, "AAA"), fetcher)

    assert first.created == 1
    assert second.created == 0
    assert second.updated == 1
    assert get_article_by_url(conn, SEED).title == "第二版标题"
    assert get_account(conn, "AAA").name == "已命名"


def test_blocked_article_stops_account(tmp_path):
    conn, account = _setup(tmp_path)
    fetcher = FakeFetcher(
        {
            SEED: _page("种子文章", links=[SECOND, THIRD]),
            SECOND: 429,
            THIRD: _page("不会被请求"),
        }
    )

    result = _fetch(conn, account, fetcher)

    assert result.ok is False
    assert result.http_status == 429
    assert result.created == 1
    assert THIRD not in fetcher.requested
    assert get_article_by_url(conn, THIRD) is None


def test_non_blocking_article_error_is_counted(tmp_path):
    conn, account = _setup(tmp_path)
    fetcher = FakeFetcher(
        {
            SEED: _page("种子文章", links=[SECOND, THIRD]),
            SECOND: 404,
            THIRD: FetchError("connection reset", retries=1),
        }
    )

    result = _fetch(conn, account, fetcher)

    assert result.ok is True
    assert result.created == 1
    assert len(result.errors) == 2
    assert result.retries == 1
    assert "errors=2" in result.message()


def test_seed_failure_reports_status(tmp_path):
    conn, account = _setup(tmp_path)
    result = _fetch(conn, account, FakeFetcher({SEED: 500}))

    assert result.ok is False
    assert result.http_status == 500
    assert result.message() == "HTTP 500 for seed page"
    assert get_account(conn, "AAA").last_fetched is None


def test_seed_transport_error_propagates(tmp_path):
    conn, account = _setup(tmp_path)
    with pytest.raises(FetchError):
        _fetch(conn, account, FakeFetcher({SEED: FetchError("timed out")}))
