import random
from datetime import datetime, timedelta, timezone

from wxheat.models import MODE_NORMAL, MODE_SLOW, CrawlerState, FetchLog
from wxheat.rate_limiter import (
    RateLimiter,
    RateLimits,
    check_daily_quota,
    next_delay,
    on_response,
)
from wxheat.storage import init_db, insert_fetch_log, load_crawler_state, set_setting

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
LIMITS = RateLimits()


def _log(conn, started_at: datetime, index: int) -> None:
    insert_fetch_log(
        conn,
        FetchLog(
            id=f"log-{index}",
            account_biz_id="AAA",
            started_at=started_at.isoformat(),
            finished_at=started_at.isoformat(),
            ok=True,
            http_status=200,
            retries=0,
            message=None,
            duration_ms=10,
        ),
    )


def test_normal_delay_stays_within_jitter():
    rng = random.Random(7)
    for _ in range(200):
        delay = next_delay(CrawlerState(), LIMITS, rng)
        assert 2500 - 800 <= delay <= 2500 + 800


def test_slow_delay_after_429_stays_in_slow_window():
    state = on_response(CrawlerState(), 429, LIMITS, NOW)
    assert state.mode == MODE_SLOW
    assert state.slow_since == NOW
    rng = random.Random(3)
    for _ in range(200):
        assert 10000 <= next_delay(state, LIMITS, rng) <= 20000


def test_repeated_block_keeps_first_entry_marker():
    state = on_response(CrawlerState(), 403, LIMITS, NOW)
    state = on_response(state, 200, LIMITS, NOW + timedelta(minutes=1))
    state = on_response(state, 429, LIMITS, NOW + timedelta(minutes=2))
    assert state.slow_since == NOW
    assert state.success_streak == 0


def test_recovers_after_success_restore_streak():
    state = on_response(CrawlerState(), 429, LIMITS, NOW)
    for step in range(LIMITS.success_restore - 1):
        state = on_response(state, 200, LIMITS, NOW + timedelta(seconds=step + 1))
        assert state.mode == MODE_SLOW
    state = on_response(state, 200, LIMITS, NOW + timedelta(seconds=30))
    assert state == CrawlerState()


def test_recovers_after_quiet_period():
    state = on_response(CrawlerState(), 429, LIMITS, NOW)
    state = on_response(state, 200, LIMITS, NOW + timedelta(minutes=LIMITS.no_429_minutes))
    assert state.mode == MODE_NORMAL
    assert state.slow_since is None


def test_lost_entry_marker_recovers():
    state = CrawlerState(mode=MODE_SLOW, success_streak=0, slow_since=None)
    assert on_response(state, 200, LIMITS, NOW).mode == MODE_NORMAL


def test_normal_success_is_noop():
    state = CrawlerState()
    assert on_response(state, 200, LIMITS, NOW) is state


def test_limits_merge_per_field():
    limits = RateLimits.from_mapping({"interval_ms": 100, "jitter_ms": "x", "daily": True})
    assert limits.interval_ms == 100
    assert limits.jitter_ms == 800
    assert limits.daily == 3000


def test_daily_quota_counts_only_today(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    _log(conn, NOW - timedelta(days=1), 0)
    _log(conn, NOW.replace(hour=0, minute=0), 1)
    _log(conn, NOW, 2)
    assert check_daily_quota(conn, 3, NOW) is True
    assert check_daily_quota(conn, 2, NOW) is False


def test_daily_quota_fails_open():
    class BrokenConn:
        def execute(self, *args, **kwargs):
            raise RuntimeError("database is gone")

    assert check_daily_quota(BrokenConn(), 0, NOW) is True


def test_rate_limiter_reads_settings_and_persists_state(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    clock = iter([NOW, NOW + timedelta(seconds=1)])
    limiter = RateLimiter(conn, clock=lambda: next(clock), rng=random.Random(1))

    set_setting(conn, "rate_limits", {"slow_min_ms": 50, "slow_max_ms": 60, "success_restore": 1})
    limiter.on_response(429)
    assert 50 <= limiter.next_delay() <= 60

    stored = load_crawler_state(conn)
    assert stored.mode == MODE_SLOW
    assert stored.slow_since == NOW

    reloaded = RateLimiter(conn)
    assert reloaded.state.mode == MODE_SLOW

    limiter.on_response(200)
    assert limiter.state.mode == MODE_NORMAL
    assert load_crawler_state(conn).mode == MODE_NORMAL
