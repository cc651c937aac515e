from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any

from ..heat import WINDOWS, resolve_weights
from ..settings import (
    DEFAULT_SETTINGS,
    SettingsValidationError,
    effective_setting,
    ensure_valid,
    load_scoring_profile,
    validate_heat_weights,
)
from ..storage import (
    get_settings_history_entry,
    insert_settings_history,
    list_settings_history,
    set_setting,
    top_scored_articles,
)
from ..utils import log_event
from .errors import NotFoundError

PREVIEW_WINDOW = "7d"
PREVIEW_LIMIT = 20

logger = logging.getLogger("wxheat.settings")


def get_setting_value(conn: Any, key: str) -> Any:
    if key not in DEFAULT_SETTINGS:
        raise NotFoundError(f"unknown setting key: {key}")
    return effective_setting(conn, key)


def list_setting_values(conn: Any) -> dict[str, Any]:
    return {key: effective_setting(conn, key) for key in DEFAULT_SETTINGS}


def save_setting(conn: Any, key: str, value: Any) -> dict[str, object]:
    ensure_valid(key, value)
    updated_at = set_setting(conn, key, value)
    log_event(logger, logging.INFO, "setting_saved", key=key)
    return {"key": key, "value": value, "updated_at": updated_at}


def save_with_history(conn: Any, key: str, value: Any) -> dict[str, object]:
    """Save ``value`` and snapshot it into history.

    The settings write is the primary operation and its failures propagate.
    A failed snapshot only adds a ``warning`` to the result.
    """
    saved = save_setting(conn, key, value)
    result: dict[str, object] = {"success": True, **saved, "history_id": None}
    try:
        entry = insert_settings_history(conn, key, value)
        result["history_id"] = entry.id
    except Exception as exc:  # noqa: BLE001
        _rollback_quietly(conn)
        log_event(logger, logging.WARNING, "settings_history_write_failed", key=key, error=str(exc))
        result["warning"] = f"Settings saved but history snapshot failed: {exc}"
    return result


def get_history(conn: Any, key: str, limit: int = 50) -> list[dict[str, object]]:
    return [asdict(entry) for entry in list_settings_history(conn, key, limit=limit)]


def rollback(conn: Any, history_id: str) -> dict[str, object]:
    entry = get_settings_history_entry(conn, history_id)
    if entry is None:
        raise NotFoundError(f"history entry not found: {history_id}")
    saved = save_setting(conn, entry.key, entry.value)
    log_event(logger, logging.INFO, "setting_rolled_back", key=entry.key, history_id=history_id)
    return {"success": True, "history_id": history_id, **saved}


def preview_weight_change(
    conn: Any,
    candidate_weights: dict[str, Any],
    *,
    window: str = PREVIEW_WINDOW,
    limit: int = PREVIEW_LIMIT,
) -> dict[str, object]:
    """Project how the current top articles would re-rank under new weights.

    Each article is re-scored under the current and the candidate weights at
    the instant its stored score was calculated; the stored score is scaled by
    the ratio of the two. Nothing is written.
    """
    errors = validate_heat_weights(candidate_weights)
    if errors:
        raise SettingsValidationError(errors)
    if window not in WINDOWS:
        raise SettingsValidationError([f"unknown window: {window}"])

    current = load_scoring_profile(conn)
    candidate = current.with_weights(candidate_weights)
    rows = top_scored_articles(conn, window, limit)

    before = []
    projected = []
    for rank, row in enumerate(rows, start=1):
        stored = float(row["proxy_heat"])
        before.append({"id": row["id"], "title": row["title"], "proxy_heat": stored, "rank": rank})
        args = (row["pub_time"], row["star"], row["title"], row["buzz"], row["calculated_at"])
        current_heat = current.heat(*args)
        candidate_heat = candidate.heat(*args)
        if current_heat > 0:
            value = stored * candidate_heat / current_heat
        else:
            value = candidate_heat
        projected.append(
            {
                "id": row["id"],
                "title": row["title"],
                "pub_time": row["pub_time"],
                "proxy_heat": round(min(100.0, max(0.0, value)), 1),
                "previous_heat": stored,
                "previous_rank": rank,
            }
        )

    projected.sort(key=lambda item: (-item["proxy_heat"], _desc_key(item["pub_time"]), item["id"]))
    after = []
    for rank, item in enumerate(projected, start=1):
        item.pop("pub_time")
        item["rank"] = rank
        item["rank_change"] = item["previous_rank"] - rank
        after.append(item)
    return {
        "window": window,
        "weights": resolve_weights(candidate_weights),
        "before": before,
        "after": after,
    }


def _desc_key(value: str) -> tuple[int, ...]:
    return tuple(-ord(ch) for ch in value or "")


def _rollback_quietly(conn: Any) -> None:
    try:
        conn.rollback()
    except Exception:  # noqa: BLE001
        pass
