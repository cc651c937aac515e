import pytest

from wxheat.classifier import DEFAULT_CATEGORY_RULES
from wxheat.heat import DEFAULT_WEIGHTS
from wxheat.settings import (
    SettingsValidationError,
    effective_setting,
    ensure_valid,
    load_category_rules,
    load_rate_limits,
    load_scoring_profile,
    validate_heat_weights,
    validate_setting,
)
from wxheat.storage import init_db, set_setting


def _weights(**overrides):
    weights = dict(DEFAULT_WEIGHTS)
    weights.update(overrides)
    return weights


def test_weight_validator_tolerance():
    assert validate_heat_weights(_weights(time_decay=0.50)) == [
        "Weights must sum to 1.0, currently sum to 1.10"
    ]
    assert validate_heat_weights(_weights()) == []
    assert validate_heat_weights(_weights(freshness=0.049)) == []


def test_weight_validator_rejects_missing_and_negative():
    errors = validate_heat_weights({"time_decay": 1.0})
    assert "heat_weights.account must be a number" in errors
    assert validate_heat_weights(_weights(buzz=-0.1, freshness=0.25)) == ["heat_weights.buzz must be >= 0"]


def test_validate_setting_schema_errors():
    assert validate_setting("unknown", 1) == ["unknown setting key: unknown"]
    errors = validate_setting("rate_limits", {"daily": "many"})
    assert errors and errors[0].startswith("rate_limits.daily")
    assert validate_setting("rate_limits", {"slow_min_ms": 30000, "slow_max_ms": 20000}) == [
        "rate_limits.slow_min_ms must not exceed slow_max_ms"
    ]
    assert validate_setting("title_rules", {"boost": {"numbers_weight": 0.2}}) == []
    assert validate_setting("time_decay_hours", 0)
    with pytest.raises(SettingsValidationError) as excinfo:
        ensure_valid("heat_weights", _weights(account=0.5))
    assert excinfo.value.errors == ["Weights must sum to 1.0, currently sum to 1.25"]


def test_effective_setting_merges_over_defaults(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    assert effective_setting(conn, "category_rules") == DEFAULT_CATEGORY_RULES

    set_setting(conn, "rate_limits", {"daily": 10})
    limits = load_rate_limits(conn)
    assert limits.daily == 10
    assert limits.interval_ms == 2500

    set_setting(conn, "title_rules", {"penalty": {"too_long": 10}})
    rules = effective_setting(conn, "title_rules")
    assert rules["penalty"]["too_long"] == 10
    assert rules["penalty"]["jargon_weight"] == 0.06
    assert rules["boost"]["numbers"] is True


def test_loaders_fall_back_on_bad_stored_values(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    set_setting(conn, "category_rules", {"bad": "not-a-list"})
    set_setting(conn, "time_decay_hours", -5)
    set_setting(conn, "heat_weights", _weights(buzz=0.9))

    assert load_category_rules(conn) == DEFAULT_CATEGORY_RULES
    profile = load_scoring_profile(conn)
    assert profile.decay_hours == 36.0
    assert profile.weights == DEFAULT_WEIGHTS
