from __future__ import annotations

import copy
import math
from typing import Any

from jsonschema import Draft7Validator

from .classifier import DEFAULT_CATEGORY_RULES
from .heat import (
    DEFAULT_DECAY_HOURS,
    DEFAULT_FRESHNESS_HOURS,
    DEFAULT_TITLE_RULES,
    DEFAULT_WEIGHTS,
    SETTINGS_WEIGHT_TOLERANCE,
    WEIGHT_KEYS,
    ScoringProfile,
    merge_title_rules,
    resolve_weights,
)
from .rate_limiter import DEFAULT_RATE_LIMITS, RateLimits
from .storage import get_setting

HEAT_WEIGHTS = "heat_weights"
TITLE_RULES = "title_rules"
CATEGORY_RULES = "category_rules"
RATE_LIMITS = "rate_limits"
TIME_DECAY_HOURS = "time_decay_hours"
FRESHNESS_HOURS = "freshness_hours"

DEFAULT_SETTINGS: dict[str, Any] = {
    HEAT_WEIGHTS: DEFAULT_WEIGHTS,
    TITLE_RULES: DEFAULT_TITLE_RULES,
    CATEGORY_RULES: DEFAULT_CATEGORY_RULES,
    RATE_LIMITS: DEFAULT_RATE_LIMITS,
    TIME_DECAY_HOURS: DEFAULT_DECAY_HOURS,
    FRESHNESS_HOURS: DEFAULT_FRESHNESS_HOURS,
}

_WEIGHT = {"type": "number", "minimum": 0, "maximum": 1}
_WORDS = {"type": "array", "items": {"type": "string"}}
_COUNT = {"type": "integer", "minimum": 0}

SETTING_SCHEMAS: dict[str, dict[str, Any]] = {
    HEAT_WEIGHTS: {
        "type": "object",
        "properties": {key: _WEIGHT for key in WEIGHT_KEYS},
        "required": list(WEIGHT_KEYS),
        "additionalProperties": False,
    },
    TITLE_RULES: {
        "type": "object",
        "properties": {
            "boost": {
                "type": "object",
                "properties": {
                    "numbers": {"type": "boolean"},
                    "numbers_weight": _WEIGHT,
                    "contrast_words": _WORDS,
                    "contrast_weight": _WEIGHT,
                    "benefit_words": _WORDS,
                    "benefit_weight": _WEIGHT,
                    "pain_words": _WORDS,
                    "pain_weight": _WEIGHT,
                    "persona_words": _WORDS,
                    "persona_weight": _WEIGHT,
                    "scenarios": _WORDS,
                    "scenarios_weight": _WEIGHT,
                },
                "additionalProperties": False,
            },
            "penalty": {
                "type": "object",
                "properties": {
                    "too_long": {"type": "integer", "minimum": 1},
                    "too_long_weight": _WEIGHT,
                    "jargon": _WORDS,
                    "jargon_weight": _WEIGHT,
                },
                "additionalProperties": False,
            },
        },
        "additionalProperties": False,
    },
    CATEGORY_RULES: {
        "type": "object",
        "minProperties": 1,
        "additionalProperties": _WORDS,
    },
    RATE_LIMITS: {
        "type": "object",
        "properties": {
            "daily": _COUNT,
            "interval_ms": _COUNT,
            "jitter_ms": _COUNT,
            "slow_min_ms": _COUNT,
            "slow_max_ms": _COUNT,
            "slow_hold_minutes": _COUNT,
            "success_restore": {"type": "integer", "minimum": 1},
            "no_429_minutes": _COUNT,
        },
        "additionalProperties": False,
    },
    TIME_DECAY_HOURS: {"type": "number", "exclusiveMinimum": 0},
    FRESHNESS_HOURS: {"type": "number", "exclusiveMinimum": 0},
}


class SettingsValidationError(ValueError):
    def __init__(self, errors: list[str]) -> None:
        super().__init__("; ".join(errors))
        self.errors = errors


def validate_setting(key: str, value: Any) -> list[str]:
    schema = SETTING_SCHEMAS.get(key)
    if schema is None:
        return [f"unknown setting key: {key}"]
    errors = [_format_error(key, error) for error in _schema_errors(schema, value)]
    if errors:
        return errors
    if key == HEAT_WEIGHTS:
        return validate_heat_weights(value)
    if key == RATE_LIMITS:
        limits = RateLimits.from_mapping(value)
        if limits.slow_min_ms > limits.slow_max_ms:
            return ["rate_limits.slow_min_ms must not exceed slow_max_ms"]
    return []


def validate_heat_weights(value: Any) -> list[str]:
    """Settings-boundary check: five non-negative weights summing to 1.0 +/- 0.01."""
    if not isinstance(value, dict):
        return ["heat_weights must be an object"]
    errors: list[str] = []
    total = 0.0
    for key in WEIGHT_KEYS:
        weight = value.get(key)
        if isinstance(weight, bool) or not isinstance(weight, (int, float)) or math.isnan(weight):
            errors.append(f"heat_weights.{key} must be a number")
            continue
        if weight < 0:
            errors.append(f"heat_weights.{key} must be >= 0")
        total += float(weight)
    if errors:
        return errors
    if abs(total - 1.0) > SETTINGS_WEIGHT_TOLERANCE + 1e-9:
        return [f"Weights must sum to 1.0, currently sum to {total:.2f}"]
    return []


def ensure_valid(key: str, value: Any) -> None:
    errors = validate_setting(key, value)
    if errors:
        raise SettingsValidationError(errors)


def default_settings() -> dict[str, Any]:
    return copy.deepcopy(DEFAULT_SETTINGS)


def effective_setting(conn: Any, key: str) -> Any:
    """Stored value merged over the default for ``key``."""
    default = copy.deepcopy(DEFAULT_SETTINGS[key])
    stored = get_setting(conn, key, None)
    if stored is None:
        return default
    if key == TITLE_RULES:
        return merge_title_rules(stored if isinstance(stored, dict) else None)
    if key in (HEAT_WEIGHTS, RATE_LIMITS) and isinstance(stored, dict):
        default.update(stored)
        return default
    return stored


def load_rate_limits(conn: Any) -> RateLimits:
    return RateLimits.from_mapping(get_setting(conn, RATE_LIMITS, None))


def load_category_rules(conn: Any) -> dict[str, list[str]]:
    rules = effective_setting(conn, CATEGORY_RULES)
    if not isinstance(rules, dict) or validate_setting(CATEGORY_RULES, rules):
        return copy.deepcopy(DEFAULT_CATEGORY_RULES)
    return rules


def load_scoring_profile(conn: Any) -> ScoringProfile:
    decay = effective_setting(conn, TIME_DECAY_HOURS)
    freshness = effective_setting(conn, FRESHNESS_HOURS)
    return ScoringProfile(
        weights=resolve_weights(effective_setting(conn, HEAT_WEIGHTS)),
        title_rules=effective_setting(conn, TITLE_RULES),
        decay_hours=float(decay) if _positive_number(decay) else DEFAULT_DECAY_HOURS,
        freshness_hours=float(freshness) if _positive_number(freshness) else DEFAULT_FRESHNESS_HOURS,
    )


def _schema_errors(schema: dict[str, Any], value: Any):
    validator = Draft7Validator(schema)
    return sorted(validator.iter_errors(value), key=lambda error: [str(part) for part in error.absolute_path])


def _format_error(key: str, error) -> str:
    path = ".".join(str(part) for part in error.absolute_path)
    location = f"{key}.{path}" if path else key
    return f"{location}: {error.message}"


def _positive_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0
