from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable
from urllib.error import HTTPError, URLError
from urllib.request import HTTPRedirectHandler, Request, build_opener

from .config import HttpConfig
from .utils import log_event

logger = logging.getLogger("wxheat.fetch")


class FetchError(RuntimeError):
    def __init__(self, message: str, status: int | None = None, retries: int = 0) -> None:
        super().__init__(message)
        self.status = status
        self.retries = retries


@dataclass(frozen=True)
class FetchResponse:
    url: str
    status: int
    body: str
    headers: dict[str, str] = field(default_factory=dict)
    retries: int = 0

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def location(self) -> str | None:
        for key, value in self.headers.items():
            if key.lower() == "location":
                return value
        return None


class _NoRedirect(HTTPRedirectHandler):
    def redirect_request(self, req, fp, code, msg, headers, newurl):
        return None


class HttpFetcher:
    """GET-only client that always reports the numeric status.

    Non-2xx answers come back as a :class:`FetchResponse`; only transport
    failures (DNS, refused, timeout) raise :class:`FetchError`.
    """

    def __init__(
        self,
        timeout_seconds: int,
        user_agent: str,
        max_retries: int = 0,
        backoff_seconds: int = 0,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.user_agent = user_agent
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

    @classmethod
    def from_config(cls, http: HttpConfig) -> "HttpFetcher":
        return cls(
            timeout_seconds=http.timeout_seconds,
            user_agent=http.user_agent,
            max_retries=http.max_retries,
            backoff_seconds=http.backoff_seconds,
        )

    def get(self, url: str, follow_redirects: bool = True) -> FetchResponse:
        headers = {
            "User-Agent": self.user_agent,
            "Accept-Language": "zh-CN,zh;q=0.9",
        }
        opener = build_opener() if follow_redirects else build_opener(_NoRedirect)
        attempt = 0
        while True:
            try:
                request = Request(url, headers=headers)
                with opener.open(request, timeout=self.timeout_seconds) as response:
                    status = response.getcode()
                    body = _decode(response.read(), response.headers.get_content_charset())
                    return FetchResponse(
                        url=response.geturl() or url,
                        status=status,
                        body=body,
                        headers=dict(response.headers.items()),
                        retries=attempt,
                    )
            except HTTPError as exc:
                raw = exc.read() if exc.fp is not None else b""
                charset = exc.headers.get_content_charset() if exc.headers else None
                return FetchResponse(
                    url=url,
                    status=exc.code,
                    body=_decode(raw, charset),
                    headers=dict(exc.headers.items()) if exc.headers else {},
                    retries=attempt,
                )
            except (URLError, TimeoutError, OSError) as exc:
                if attempt >= self.max_retries:
                    log_event(logger, logging.WARNING, "fetch_failed", url=url, error=str(exc), retries=attempt)
                    raise FetchError(str(exc), retries=attempt) from exc
                self._sleep(self.backoff_seconds * (attempt + 1))
                attempt += 1


def _decode(raw: bytes, charset: str | None) -> str:
    try:
        return raw.decode(charset or "utf-8", errors="replace")
    except LookupError:
        return raw.decode("utf-8", errors="replace")
