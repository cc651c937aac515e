"""Proxy heat scoring.

``heat = 100 * sum(weight_i * component_i)`` over five components:

* ``time_decay``  exp(-hours / decay_hours)
* ``account``     (star - 1) / 4
* ``title_ctr``   keyword heuristics over the title, base 0.5
* ``buzz``        external signal in [0, 1], passed through
* ``freshness``   small linear boost inside the first ``freshness_hours``

Everything here is pure: the evaluation instant is always an argument.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Mapping

from .utils import log_event, parse_iso

WINDOWS: dict[str, int] = {"24h": 24, "3d": 72, "7d": 168, "30d": 720}

WEIGHT_KEYS = ("time_decay", "account", "title_ctr", "buzz", "freshness")
DEFAULT_WEIGHTS: dict[str, float] = {
    "time_decay": 0.40,
    "account": 0.25,
    "title_ctr": 0.20,
    "buzz": 0.10,
    "freshness": 0.05,
}
STRICT_WEIGHT_TOLERANCE = 0.001
SETTINGS_WEIGHT_TOLERANCE = 0.01

DEFAULT_DECAY_HOURS = 36.0
DEFAULT_FRESHNESS_HOURS = 24.0
FRESHNESS_MAX = 0.1
FRESHNESS_FLOOR = 0.051
TITLE_BASE_SCORE = 0.5

DEFAULT_TITLE_RULES: dict[str, dict[str, Any]] = {
    "boost": {
        "numbers": True,
        "numbers_weight": 0.08,
        "contrast_words": ["对比", "vs", "VS", "还是", "or", "OR"],
        "contrast_weight": 0.06,
        "benefit_words": ["提效", "一键", "避坑", "升级", "速通", "模板", "指南", "全流程", "免费", "白嫖"],
        "benefit_weight": 0.10,
        "pain_words": ["翻车", "踩雷", "坑", "别再", "毁了", "血亏"],
        "pain_weight": 0.07,
        "persona_words": ["马斯克", "余承东", "OpenAI", "Claude", "Cursor", "Gemini", "Midjourney"],
        "persona_weight": 0.05,
        "scenarios": ["PPT", "会议纪要", "效率", "上班", "副业", "变现"],
        "scenarios_weight": 0.05,
    },
    "penalty": {
        "too_long": 28,
        "too_long_weight": 0.08,
        "jargon": ["LoRA参数", "采样器", "温度系数", "推理token"],
        "jargon_weight": 0.06,
    },
}

_BOOST_GROUPS = (
    ("contrast", "contrast_words", "contrast_weight"),
    ("benefit", "benefit_words", "benefit_weight"),
    ("pain", "pain_words", "pain_weight"),
    ("persona", "persona_words", "persona_weight"),
    ("scenario", "scenarios", "scenarios_weight"),
)
_DIGIT_RE = re.compile(r"\d")

logger = logging.getLogger("wxheat.heat")


def validate_weights(weights: Mapping[str, Any] | None) -> bool:
    """Strict check used by the scoring library: all five keys, each in [0, 1],
    summing to 1.0 within 0.001."""
    if not isinstance(weights, Mapping):
        return False
    total = 0.0
    for key in WEIGHT_KEYS:
        value = weights.get(key)
        if not _is_number(value) or not 0 <= value <= 1:
            return False
        total += float(value)
    return abs(total - 1.0) <= STRICT_WEIGHT_TOLERANCE


def resolve_weights(weights: Mapping[str, Any] | None) -> dict[str, float]:
    """Merge caller weights over the defaults and make them usable for scoring.

    Maps that pass the strict check are used as-is. Maps that only pass the
    looser settings tolerance are rescaled to sum to exactly 1.0. Anything else
    falls back to the defaults.
    """
    if not weights:
        return dict(DEFAULT_WEIGHTS)
    merged: dict[str, Any] = dict(DEFAULT_WEIGHTS)
    merged.update({key: weights[key] for key in WEIGHT_KEYS if key in weights})
    if validate_weights(merged):
        return {key: float(merged[key]) for key in WEIGHT_KEYS}
    if all(_is_number(merged[key]) and merged[key] >= 0 for key in WEIGHT_KEYS):
        total = sum(float(merged[key]) for key in WEIGHT_KEYS)
        if abs(total - 1.0) <= SETTINGS_WEIGHT_TOLERANCE and total > 0:
            return {key: float(merged[key]) / total for key in WEIGHT_KEYS}
    log_event(logger, logging.WARNING, "heat_weights_rejected", weights=dict(weights))
    return dict(DEFAULT_WEIGHTS)


def merge_title_rules(title_rules: Mapping[str, Any] | None) -> dict[str, dict[str, Any]]:
    merged = {section: dict(values) for section, values in DEFAULT_TITLE_RULES.items()}
    for section in ("boost", "penalty"):
        override = (title_rules or {}).get(section)
        if isinstance(override, Mapping):
            merged[section].update(override)
    return merged


def hours_between(start: datetime, end: datetime) -> float:
    return max(0.0, (end - start).total_seconds() / 3600.0)


def time_decay(hours_since_publish: float, decay_hours: float = DEFAULT_DECAY_HOURS) -> float:
    hours = max(0.0, hours_since_publish)
    if decay_hours <= 0:
        return 1.0 if hours == 0 else 0.0
    return math.exp(-hours / decay_hours)


def account_score(star: float) -> float:
    return _clamp((star - 1) / 4.0)


def freshness_boost(hours_since_publish: float, freshness_hours: float = DEFAULT_FRESHNESS_HOURS) -> float:
    hours = max(0.0, hours_since_publish)
    if freshness_hours <= 0 or hours > freshness_hours:
        return 0.0
    return max(FRESHNESS_FLOOR, FRESHNESS_MAX * (1 - hours / freshness_hours))


def title_ctr_score(
    title: str, title_rules: Mapping[str, Any] | None = None
) -> tuple[float, dict[str, float]]:
    """Return the title score and the adjustments that produced it."""
    rules = merge_title_rules(title_rules)
    boost = rules["boost"]
    penalty = rules["penalty"]
    lowered = (title or "").lower()
    score = TITLE_BASE_SCORE
    reasons: dict[str, float] = {}

    if boost.get("numbers", True) and _DIGIT_RE.search(title or ""):
        weight = float(boost.get("numbers_weight", 0))
        score += weight
        reasons["numbers"] = weight

    for name, words_key, weight_key in _BOOST_GROUPS:
        words = boost.get(words_key) or []
        if any(str(word).lower() in lowered for word in words if word):
            weight = float(boost.get(weight_key, 0))
            score += weight
            reasons[name] = weight

    too_long = penalty.get("too_long")
    if too_long is not None and len(title or "") > int(too_long):
        weight = float(penalty.get("too_long_weight", 0))
        score -= weight
        reasons["too_long"] = -weight

    jargon_words = {str(word).lower() for word in penalty.get("jargon") or [] if word}
    jargon_hits = sum(1 for word in jargon_words if word in lowered)
    if jargon_hits:
        weight = float(penalty.get("jargon_weight", 0)) * jargon_hits
        score -= weight
        reasons["jargon"] = -weight

    return _clamp(score), reasons


def compute_heat(
    pub_time: str | datetime | None,
    star: float | None,
    title: str | None,
    buzz: float | None,
    evaluated_at: str | datetime | None,
    weights: Mapping[str, Any] | None = None,
    title_rules: Mapping[str, Any] | None = None,
    *,
    decay_hours: float = DEFAULT_DECAY_HOURS,
    freshness_hours: float = DEFAULT_FRESHNESS_HOURS,
) -> float:
    explained = explain_heat(
        pub_time,
        star,
        title,
        buzz,
        evaluated_at,
        weights,
        title_rules,
        decay_hours=decay_hours,
        freshness_hours=freshness_hours,
    )
    return explained["heat"]


def explain_heat(
    pub_time: str | datetime | None,
    star: float | None,
    title: str | None,
    buzz: float | None,
    evaluated_at: str | datetime | None,
    weights: Mapping[str, Any] | None = None,
    title_rules: Mapping[str, Any] | None = None,
    *,
    decay_hours: float = DEFAULT_DECAY_HOURS,
    freshness_hours: float = DEFAULT_FRESHNESS_HOURS,
) -> dict[str, Any]:
    published = parse_iso(pub_time)
    evaluated = parse_iso(evaluated_at)
    if published is None or evaluated is None or not title or not _is_number(star) or not _is_number(buzz):
        return {"heat": 0.0, "components": {}, "weights": {}, "title_reasons": {}, "missing_input": True}

    resolved = resolve_weights(weights)
    hours = hours_between(published, evaluated)
    title_score, title_reasons = title_ctr_score(title, title_rules)
    components = {
        "time_decay": time_decay(hours, decay_hours),
        "account": account_score(float(star)),
        "title_ctr": title_score,
        "buzz": _clamp(float(buzz)),
        "freshness": freshness_boost(hours, freshness_hours),
    }
    total = sum(resolved[key] * components[key] for key in WEIGHT_KEYS)
    heat = round(min(100.0, max(0.0, 100.0 * total)), 1)
    return {
        "heat": heat,
        "components": components,
        "weights": resolved,
        "title_reasons": title_reasons,
        "hours_since_publish": hours,
        "missing_input": False,
    }


@dataclass(frozen=True)
class ScoringProfile:
    weights: dict[str, float] = field(default_factory=lambda: dict(DEFAULT_WEIGHTS))
    title_rules: dict[str, Any] = field(default_factory=lambda: merge_title_rules(None))
    decay_hours: float = DEFAULT_DECAY_HOURS
    freshness_hours: float = DEFAULT_FRESHNESS_HOURS

    def with_weights(self, weights: Mapping[str, Any]) -> "ScoringProfile":
        return replace(self, weights=resolve_weights(weights))

    def heat(
        self,
        pub_time: str | datetime | None,
        star: float | None,
        title: str | None,
        buzz: float | None,
        evaluated_at: str | datetime | None,
    ) -> float:
        return compute_heat(
            pub_time,
            star,
            title,
            buzz,
            evaluated_at,
            self.weights,
            self.title_rules,
            decay_hours=self.decay_hours,
            freshness_hours=self.freshness_hours,
        )


def heat_level(heat: float) -> str:
    if heat >= 90:
        return "极高"
    if heat >= 75:
        return "高"
    if heat >= 50:
        return "中"
    return "低"


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and not math.isnan(value)


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))
