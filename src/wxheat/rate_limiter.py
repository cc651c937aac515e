"""Crawl pacing.

Two modes. ``normal`` paces requests at ``interval_ms`` plus or minus
``jitter_ms``. A 429 or 403 switches to ``slow``, which waits a random
``slow_min_ms``..``slow_max_ms`` between requests until one of the recovery
conditions in :func:`on_response` holds.

The state machine itself is pure: :func:`next_delay` and :func:`on_response`
take a :class:`CrawlerState` and return a value. :class:`RateLimiter` binds
them to a database connection, re-reading ``rate_limits`` on every call and
persisting the state after every transition.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass, fields, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping

from .models import MODE_SLOW, CrawlerState
from .storage import count_fetch_logs_between, get_setting, load_crawler_state, save_crawler_state
from .utils import log_event, utc_now

ANTI_BOT_STATUSES = frozenset({429, 403})

DEFAULT_RATE_LIMITS: dict[str, int] = {
    "daily": 3000,
    "interval_ms": 2500,
    "jitter_ms": 800,
    "slow_min_ms": 10000,
    "slow_max_ms": 20000,
    "slow_hold_minutes": 60,
    "success_restore": 10,
    "no_429_minutes": 30,
}

logger = logging.getLogger("wxheat.rate_limiter")


@dataclass(frozen=True)
class RateLimits:
    daily: int = DEFAULT_RATE_LIMITS["daily"]
    interval_ms: int = DEFAULT_RATE_LIMITS["interval_ms"]
    jitter_ms: int = DEFAULT_RATE_LIMITS["jitter_ms"]
    slow_min_ms: int = DEFAULT_RATE_LIMITS["slow_min_ms"]
    slow_max_ms: int = DEFAULT_RATE_LIMITS["slow_max_ms"]
    slow_hold_minutes: int = DEFAULT_RATE_LIMITS["slow_hold_minutes"]
    success_restore: int = DEFAULT_RATE_LIMITS["success_restore"]
    no_429_minutes: int = DEFAULT_RATE_LIMITS["no_429_minutes"]

    @classmethod
    def from_mapping(cls, value: Mapping[str, Any] | None) -> "RateLimits":
        """Stored values win per field; defaults fill the gaps."""
        merged: dict[str, int] = dict(DEFAULT_RATE_LIMITS)
        for item in fields(cls):
            raw = (value or {}).get(item.name)
            if isinstance(raw, bool) or not isinstance(raw, (int, float)):
                continue
            merged[item.name] = int(raw)
        return cls(**merged)


def next_delay(
    state: CrawlerState, limits: RateLimits, rng: random.Random | None = None
) -> int:
    rng = rng or random.Random()
    if state.mode == MODE_SLOW:
        low = min(limits.slow_min_ms, limits.slow_max_ms)
        high = max(limits.slow_min_ms, limits.slow_max_ms)
        return rng.randint(low, high)
    jitter = abs(limits.jitter_ms)
    return max(0, limits.interval_ms + rng.randint(-jitter, jitter))


def on_response(
    state: CrawlerState, status: int | None, limits: RateLimits, now: datetime
) -> CrawlerState:
    if status in ANTI_BOT_STATUSES:
        return CrawlerState(
            mode=MODE_SLOW,
            success_streak=0,
            slow_since=state.slow_since or now,
        )
    if state.mode != MODE_SLOW:
        return state

    streak = state.success_streak + 1
    minutes_slow = _minutes_since(state.slow_since, now)
    if (
        streak >= limits.success_restore
        or minutes_slow >= limits.no_429_minutes
        or minutes_slow >= limits.slow_hold_minutes
    ):
        return CrawlerState()
    return replace(state, success_streak=streak)


def check_daily_quota(conn: Any, daily_limit: int, now: datetime | None = None) -> bool:
    """True while today's fetch-log count (UTC day) is under ``daily_limit``.

    Fails open: a failed count never blocks crawling.
    """
    now = now or utc_now()
    try:
        used = count_fetch_logs_today(conn, now)
    except Exception as exc:  # noqa: BLE001
        log_event(logger, logging.WARNING, "daily_quota_check_failed", error=str(exc))
        return True
    return used < daily_limit


def count_fetch_logs_today(conn: Any, now: datetime) -> int:
    day_start = now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    day_end = day_start + timedelta(days=1)
    return count_fetch_logs_between(conn, day_start.isoformat(), day_end.isoformat())


def _minutes_since(start: datetime | None, now: datetime) -> float:
    # A lost slow-mode entry marker counts as "long ago" so the limiter recovers.
    if start is None:
        return float("inf")
    return (now - start).total_seconds() / 60.0


class RateLimiter:
    def __init__(
        self,
        conn: Any,
        *,
        clock: Callable[[], datetime] = utc_now,
        rng: random.Random | None = None,
    ) -> None:
        self._conn = conn
        self._clock = clock
        self._rng = rng or random.Random()
        self.state = self._load_state()

    def limits(self) -> RateLimits:
        return RateLimits.from_mapping(get_setting(self._conn, "rate_limits", None))

    def next_delay(self) -> int:
        return next_delay(self.state, self.limits(), self._rng)

    def on_response(self, status: int | None) -> CrawlerState:
        previous = self.state
        self.state = on_response(previous, status, self.limits(), self._clock())
        if previous.mode != self.state.mode:
            if self.state.mode == MODE_SLOW:
                log_event(logger, logging.WARNING, "rate_limiter_slow_entered", status=status)
            else:
                log_event(
                    logger,
                    logging.INFO,
                    "rate_limiter_recovered",
                    streak=previous.success_streak + 1,
                    slow_since=previous.slow_since.isoformat() if previous.slow_since else None,
                )
        if self.state != previous:
            self._save_state()
        return self.state

    def check_daily_quota(self, daily_limit: int | None = None) -> bool:
        limit = self.limits().daily if daily_limit is None else daily_limit
        return check_daily_quota(self._conn, limit, self._clock())

    def _load_state(self) -> CrawlerState:
        try:
            return load_crawler_state(self._conn) or CrawlerState()
        except Exception as exc:  # noqa: BLE001
            log_event(logger, logging.WARNING, "crawler_state_load_failed", error=str(exc))
            return CrawlerState()

    def _save_state(self) -> None:
        try:
            save_crawler_state(self._conn, self.state)
        except Exception as exc:  # noqa: BLE001
            log_event(logger, logging.WARNING, "crawler_state_save_failed", error=str(exc))
