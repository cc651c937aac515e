"""Field extraction for WeChat article pages.

Every extractor walks a fixed priority list of sources and falls through to
the next one when a source is missing or empty. Failures surface as
:class:`ParseError` subclasses so callers can skip one article without
aborting a whole account.
"""

from __future__ import annotations

import re
from datetime import datetime
from urllib.parse import parse_qsl, unquote, urlencode, urljoin, urlsplit, urlunsplit

from bs4 import BeautifulSoup

from .models import ParsedArticle

SUMMARY_MAX_CHARS = 120
SUMMARY_CUT_AT = 117
SUMMARY_MIN_BOUNDARY = 80
ELLIPSIS = "..."

WECHAT_HOST = "mp.weixin.qq.com"
CANONICAL_PARAMS = ("__biz", "mid", "idx", "sn", "chksm")

_BIZ_QUERY_RE = re.compile(r"[?&]__biz=([^&#]+)")
_BIZ_PATH_RE = re.compile(r"/s/__biz=([^&?#]+)")
_BIZ_HTML_RES = (
    re.compile(r"""window\.__biz\s*=\s*["']([A-Za-z0-9+=/%_-]+)["']"""),
    re.compile(r"""var\s+biz\s*=\s*["']([A-Za-z0-9+=/%_-]+)["']"""),
    re.compile(r"__biz=([A-Za-z0-9+=/%_-]+)"),
)
_NICKNAME_RES = (
    re.compile(r"""var\s+nickname\s*=\s*(?:htmlDecode\()?["']([^"']+)["']"""),
    re.compile(r"""nick_name\s*[:=]\s*["']([^"']+)["']"""),
)
_ARTICLE_LINK_RE = re.compile(
    r"""https?://mp\.weixin\.qq\.com/s\?[^"'<>\s]*__biz=[^"'<>\s]+"""
)

_TIME_TAIL = r"\s*(\d{1,2}):(\d{1,2})(?::(\d{1,2}))?"
CHINESE_TIME_RE = re.compile(r"(\d{4})年(\d{1,2})月(\d{1,2})日" + _TIME_TAIL)
TIME_PATTERNS = (
    CHINESE_TIME_RE,
    re.compile(r"(\d{4})-(\d{1,2})-(\d{1,2})\s+(\d{1,2}):(\d{1,2}):(\d{1,2})"),
    re.compile(r"(\d{4})-(\d{1,2})-(\d{1,2})" + _TIME_TAIL),
    re.compile(r"(\d{4})/(\d{1,2})/(\d{1,2})" + _TIME_TAIL),
)


class ParseError(ValueError):
    pass


class MalformedUrlError(ParseError):
    pass


class TimeExtractionError(ParseError):
    pass


class SummaryExtractionError(ParseError):
    pass


class EmptyDocumentError(ParseError):
    pass


def is_wechat_article_url(url: str | None) -> bool:
    if not url:
        return False
    try:
        parts = urlsplit(url.strip())
        host = (parts.hostname or "").lower()
    except ValueError:
        return False
    return parts.scheme.lower() in ("http", "https") and host == WECHAT_HOST


def extract_account_id(url: str) -> str:
    """Return the ``__biz`` account id embedded in a WeChat article URL."""
    if not url or not url.strip():
        raise MalformedUrlError("URL is empty")
    url = url.strip()
    try:
        params = dict(parse_qsl(urlsplit(url).query, keep_blank_values=False))
    except ValueError:
        params = {}
    value = params.get("__biz")
    if value:
        return value
    match = _BIZ_QUERY_RE.search(url)
    if match:
        return unquote(match.group(1))
    match = _BIZ_PATH_RE.search(url)
    if match:
        return unquote(match.group(1))
    raise MalformedUrlError(f"no __biz parameter in {url}")


def extract_account_id_from_html(html: str) -> str | None:
    for pattern in _BIZ_HTML_RES:
        match = pattern.search(html or "")
        if match:
            return unquote(match.group(1))
    return None


def normalize_article_url(url: str) -> str:
    """Keep only the query params that identify an article."""
    split = urlsplit(url.strip())
    params = [(key, value) for key, value in parse_qsl(split.query) if key in CANONICAL_PARAMS]
    params.sort(key=lambda item: CANONICAL_PARAMS.index(item[0]))
    query = urlencode(params, safe="=")
    return urlunsplit((split.scheme or "https", split.netloc.lower(), split.path, query, ""))


def parse_article(html: str, url: str) -> ParsedArticle:
    if html is None or not html.strip():
        raise EmptyDocumentError(f"empty document for {url}")
    soup = BeautifulSoup(html, "html.parser")
    return ParsedArticle(
        title=extract_title(soup),
        cover=extract_cover(soup),
        pub_time=extract_pub_time(html),
        summary=extract_summary(soup),
    )


def extract_title(soup: BeautifulSoup) -> str:
    value = _meta_content(soup, "og:title")
    if value:
        return value
    heading = soup.find(["h1", "h2"], class_="rich_media_title") or soup.find(
        id="activity-name"
    )
    if heading:
        text = heading.get_text(" ", strip=True)
        if text:
            return text
    if soup.title and soup.title.string:
        text = soup.title.string.strip()
        if text:
            return text
    return ""


def extract_cover(soup: BeautifulSoup) -> str | None:
    value = _meta_content(soup, "og:image")
    if value:
        return value
    for img in soup.find_all("img"):
        src = (img.get("src") or "").strip()
        if src:
            return src
    return None


def extract_pub_time(text: str) -> str:
    for pattern in TIME_PATTERNS:
        for match in pattern.finditer(text or ""):
            parsed = _validated_datetime(match.groups())
            if parsed:
                return parsed.strftime("%Y-%m-%dT%H:%M:%SZ")
    raise TimeExtractionError("no valid publish time found")


def _validated_datetime(groups: tuple[str | None, ...]) -> datetime | None:
    year, month, day, hour, minute, second = (int(item) if item else 0 for item in groups[:6])
    if not 1 <= month <= 12 or not 1 <= day <= 31:
        return None
    if not 0 <= hour <= 23 or not 0 <= minute <= 59 or not 0 <= second <= 59:
        return None
    try:
        return datetime(year, month, day, hour, minute, second)
    except ValueError:
        return None


def extract_summary(soup: BeautifulSoup) -> str:
    value = _meta_content(soup, "og:description")
    if value:
        return truncate_summary(_collapse(value))
    body = soup.body or soup
    for tag in body(["script", "style", "noscript"]):
        tag.decompose()
    paragraphs = [p.get_text(" ", strip=True) for p in body.find_all("p")]
    paragraphs.extend(body.get_text("\n").split("\n"))
    for paragraph in paragraphs:
        text = _collapse(paragraph)
        if not text or _is_timestamp_line(text):
            continue
        return truncate_summary(text)
    raise SummaryExtractionError("no summary source found")


def truncate_summary(text: str) -> str:
    if len(text) <= SUMMARY_MAX_CHARS:
        return text
    cut = text[:SUMMARY_CUT_AT]
    boundary = cut.rfind(" ")
    if boundary > SUMMARY_MIN_BOUNDARY:
        cut = cut[:boundary]
    return cut + ELLIPSIS


def extract_account_name(html: str) -> str | None:
    for pattern in _NICKNAME_RES:
        match = pattern.search(html or "")
        if match and match.group(1).strip():
            return match.group(1).strip()
    soup = BeautifulSoup(html or "", "html.parser")
    node = soup.find(id="js_name") or soup.find(class_="profile_nickname")
    if node:
        text = node.get_text(" ", strip=True)
        if text:
            return text
    return _meta_content(soup, "og:site_name") or None


def discover_article_links(html: str, seed_url: str, biz_id: str, limit: int) -> list[str]:
    """Collect same-account article URLs from a page, seed first."""
    seen: list[str] = []

    def _add(candidate: str) -> None:
        if len(seen) >= limit:
            return
        absolute = urljoin(seed_url, candidate.replace("&amp;", "&"))
        if not is_wechat_article_url(absolute):
            return
        try:
            if extract_account_id(absolute) != biz_id:
                return
        except MalformedUrlError:
            return
        normalized = normalize_article_url(absolute)
        if normalized not in seen:
            seen.append(normalized)

    _add(seed_url)
    soup = BeautifulSoup(html or "", "html.parser")
    for anchor in soup.find_all("a", href=True):
        _add(anchor["href"])
    for match in _ARTICLE_LINK_RE.finditer(html or ""):
        _add(match.group(0))
    return seen


def _meta_content(soup: BeautifulSoup, name: str) -> str | None:
    tag = soup.find("meta", attrs={"property": name})
    if not tag:
        return None
    value = (tag.get("content") or "").strip()
    return value or None


def _is_timestamp_line(text: str) -> bool:
    return any(pattern.fullmatch(text) for pattern in TIME_PATTERNS) or bool(
        CHINESE_TIME_RE.search(text) and len(text) <= 30
    )


def _collapse(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()
