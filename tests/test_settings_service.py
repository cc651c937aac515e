from datetime import datetime, timedelta, timezone

import pytest

from wxheat.heat import DEFAULT_WEIGHTS, ScoringProfile
from wxheat.pipelines.recompute import score_article
from wxheat.services import settings_service
from wxheat.services.errors import NotFoundError
from wxheat.settings import SettingsValidationError
from wxheat.storage import get_scores, init_db, insert_account, upsert_article
from wxheat.utils import isoformat_z

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def _seed_scored_articles(conn):
    insert_account(conn, "AAA", "五星号", "https://mp.weixin.qq.com/s?__biz=AAA&mid=1", 5)
    insert_account(conn, "BBB", "一星号", "https://mp.weixin.qq.com/s?__biz=BBB&mid=1", 1)
    profile = ScoringProfile()
    ids = []
    samples = [
        ("AAA", "老文章但账号好", 60, 5),
        ("BBB", "5个一键提效的新工具对比", 1, 1),
        ("AAA", "普通标题", 20, 5),
    ]
    for index, (biz_id, title, hours_ago, star) in enumerate(samples):
        pub_time = isoformat_z(NOW - timedelta(hours=hours_ago))
        article_id, _ = upsert_article(
            conn,
            account_biz_id=biz_id,
            url=f"https://mp.weixin.qq.com/s?__biz={biz_id}&mid={index + 10}&idx=1&sn=x",
            title=title,
            cover=None,
            pub_time=pub_time,
            summary="summary",
            tags=["效率"],
            buzz=0.5,
        )
        score_article(
            conn,
            article_id,
            pub_time=pub_time,
            star=star,
            title=title,
            buzz=0.5,
            profile=profile,
            evaluated_at=NOW,
        )
        ids.append(article_id)
    return ids


def test_save_and_get_setting(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    weights = {**DEFAULT_WEIGHTS, "time_decay": 0.35, "title_ctr": 0.25}
    result = settings_service.save_setting(conn, "heat_weights", weights)
    assert result["updated_at"]
    assert settings_service.get_setting_value(conn, "heat_weights") == weights
    assert settings_service.get_history(conn, "heat_weights") == []

    with pytest.raises(SettingsValidationError):
        settings_service.save_setting(conn, "heat_weights", {**weights, "buzz": 0.5})
    with pytest.raises(NotFoundError):
        settings_service.get_setting_value(conn, "nope")


def test_save_with_history_and_rollback(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    first = {"daily": 100}
    second = {"daily": 200}
    saved_first = settings_service.save_with_history(conn, "rate_limits", first)
    saved_second = settings_service.save_with_history(conn, "rate_limits", second)
    assert saved_first["success"] is True
    assert "warning" not in saved_second

    history = settings_service.get_history(conn, "rate_limits")
    assert [entry["value"] for entry in history] == [second, first]
    assert history[0]["id"] == saved_second["history_id"]

    restored = settings_service.rollback(conn, saved_first["history_id"])
    assert restored["success"] is True
    assert settings_service.get_setting_value(conn, "rate_limits")["daily"] == 100
    assert len(settings_service.get_history(conn, "rate_limits")) == 2

    with pytest.raises(NotFoundError):
        settings_service.rollback(conn, "missing-id")


def test_history_failure_is_only_a_warning(tmp_path, monkeypatch):
    conn = init_db(str(tmp_path / "state.sqlite3"))

    def _boom(*args, **kwargs):
        raise RuntimeError("history table unavailable")

    monkeypatch.setattr(settings_service, "insert_settings_history", _boom)
    result = settings_service.save_with_history(conn, "time_decay_hours", 48)
    assert result["success"] is True
    assert result["history_id"] is None
    assert "history table unavailable" in result["warning"]
    assert settings_service.get_setting_value(conn, "time_decay_hours") == 48


def test_save_with_history_rejects_invalid_value(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    with pytest.raises(SettingsValidationError):
        settings_service.save_with_history(conn, "time_decay_hours", -1)
    assert settings_service.get_history(conn, "time_decay_hours") == []


def test_preview_with_current_weights_is_identity(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    _seed_scored_articles(conn)
    preview = settings_service.preview_weight_change(conn, dict(DEFAULT_WEIGHTS))
    assert preview["window"] == "7d"
    before = [(item["id"], item["proxy_heat"]) for item in preview["before"]]
    after = [(item["id"], item["proxy_heat"]) for item in preview["after"]]
    assert before == after
    assert all(item["rank_change"] == 0 for item in preview["after"])


def test_preview_reranks_without_persisting(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    ids = _seed_scored_articles(conn)
    stored = {article_id: get_scores(conn, article_id)["7d"] for article_id in ids}

    account_only = {"time_decay": 0.0, "account": 1.0, "title_ctr": 0.0, "buzz": 0.0, "freshness": 0.0}
    first = settings_service.preview_weight_change(conn, account_only)
    second = settings_service.preview_weight_change(conn, account_only)
    assert first == second

    after = first["after"]
    assert [item["rank"] for item in after] == [1, 2, 3]
    assert after[-1]["id"] == ids[1]
    assert after[-1]["proxy_heat"] == 0.0
    assert {item["id"] for item in after} == set(ids)
    assert {article_id: get_scores(conn, article_id)["7d"] for article_id in ids} == stored


def test_preview_rejects_bad_weights(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    with pytest.raises(SettingsValidationError):
        settings_service.preview_weight_change(conn, {**DEFAULT_WEIGHTS, "buzz": 0.2})
