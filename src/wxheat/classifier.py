from __future__ import annotations

from typing import Iterable, Mapping

OTHER = "其他"

DEFAULT_CATEGORY_RULES: dict[str, list[str]] = {
    "效率": ["效率", "办公", "PPT", "模板", "自动化", "纪要", "总结", "快捷"],
    "编程": ["代码", "vibe coding", "Cursor", "Claude", "API", "SDK", "部署", "Vercel", "Supabase"],
    "AIGC": ["生图", "生视频", "配音", "提示词", "模型", "LoRA", "图生图", "文生图"],
    "赚钱": ["变现", "引流", "私域", "课程", "付费", "转化", "成交"],
    "人物": ["采访", "访谈", "对谈", "观点", "经验", "案例", "成长"],
    "提示词": ["提示词", "咒语", "prompt", "模版"],
    OTHER: [],
}


def _normalize_keywords(keywords: Iterable[str] | None) -> list[str]:
    normalized: list[str] = []
    for keyword in keywords or []:
        if not keyword:
            continue
        value = str(keyword).strip().lower()
        if value:
            normalized.append(value)
    return normalized


def classify(
    title: str | None,
    summary: str | None,
    rules: Mapping[str, Iterable[str]] | None = None,
) -> set[str]:
    rules = DEFAULT_CATEGORY_RULES if rules is None else rules
    text = f"{title or ''} {summary or ''}".lower()

    categories: set[str] = set()
    if text.strip():
        for category, keywords in rules.items():
            if category == OTHER:
                continue
            if any(keyword in text for keyword in _normalize_keywords(keywords)):
                categories.add(category)

    if not categories:
        return {OTHER}
    return categories


def sorted_tags(categories: Iterable[str]) -> list[str]:
    return sorted(set(categories))
