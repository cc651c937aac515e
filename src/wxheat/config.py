from __future__ import annotations

import copy
import os
from dataclasses import dataclass
from typing import Any

import yaml

from .utils import env_flag

WECHAT_USER_AGENT = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 15_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Mobile/15E148 MicroMessenger/8.0.40"
)


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class AppConfig:
    name: str
    read_only: bool


@dataclass(frozen=True)
class PathsConfig:
    data_dir: str
    state_db: str


@dataclass(frozen=True)
class HttpConfig:
    timeout_seconds: int
    user_agent: str
    max_retries: int
    backoff_seconds: int


@dataclass(frozen=True)
class CrawlConfig:
    max_articles_per_account: int
    default_buzz: float


@dataclass(frozen=True)
class SchedulerConfig:
    lease_ttl_seconds: int
    sleep_seconds: int


@dataclass(frozen=True)
class Config:
    app: AppConfig
    paths: PathsConfig
    http: HttpConfig
    crawl: CrawlConfig
    scheduler: SchedulerConfig


DEFAULT_CONFIG: dict[str, Any] = {
    "app": {
        "name": "wxheat",
        "read_only": False,
    },
    "paths": {
        "data_dir": "/data",
        "state_db": "",
    },
    "http": {
        "timeout_seconds": 30,
        "user_agent": WECHAT_USER_AGENT,
        "max_retries": 1,
        "backoff_seconds": 2,
    },
    "crawl": {
        "max_articles_per_account": 10,
        "default_buzz": 0.5,
    },
    "scheduler": {
        "lease_ttl_seconds": 3600,
        "sleep_seconds": 1800,
    },
}


def get_state_db_path() -> str:
    data_dir = os.environ.get("WXH_DATA_DIR", DEFAULT_CONFIG["paths"]["data_dir"])
    return os.path.join(data_dir, "state.sqlite3")


def load_config(path: str | None = None) -> Config:
    """Load runtime config from YAML, merged over DEFAULT_CONFIG.

    The file is optional; without ``path`` the ``WXH_CONFIG_PATH`` env var is
    consulted, and without either the defaults are used as-is.
    """
    path = path or os.environ.get("WXH_CONFIG_PATH")
    raw: dict[str, Any] = {}
    if path:
        try:
            with open(path, "r", encoding="utf-8") as handle:
                loaded = yaml.safe_load(handle)
        except FileNotFoundError as exc:
            raise ConfigError(f"config file not found: {path}") from exc
        except yaml.YAMLError as exc:
            raise ConfigError(f"invalid YAML in {path}: {exc}") from exc
        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ConfigError("config root must be a mapping")
        raw = loaded
    errors = validate_config(raw)
    if errors:
        raise ConfigError("Invalid config: " + "; ".join(errors))
    merged = _merge(copy.deepcopy(DEFAULT_CONFIG), raw)
    return _build_config(merged)


def validate_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config", errors)
    return errors


def _validate_dict(value: dict[str, Any], schema: dict[str, Any], path: str, errors: list[str]) -> None:
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    for key in value.keys():
        if key not in schema:
            errors.append(f"unknown {path}.{key}")
    for key, default in schema.items():
        if key not in value:
            continue
        _validate_value(value[key], default, f"{path}.{key}", errors)


def _validate_value(value: Any, default: Any, path: str, errors: list[str]) -> None:
    if isinstance(default, dict):
        _validate_dict(value, default, path, errors)
        return
    if isinstance(default, bool):
        if not isinstance(value, bool):
            errors.append(f"{path} must be a boolean")
        return
    if isinstance(default, int):
        if not isinstance(value, int) or isinstance(value, bool):
            errors.append(f"{path} must be an integer")
        elif value < 0:
            errors.append(f"{path} must be >= 0")
        return
    if isinstance(default, float):
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            errors.append(f"{path} must be a number")
        return
    if isinstance(default, str):
        if not isinstance(value, str):
            errors.append(f"{path} must be a string")
        return


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


def _build_config(cfg: dict[str, Any]) -> Config:
    app_cfg = cfg["app"]
    paths_cfg = cfg["paths"]
    http_cfg = cfg["http"]
    crawl_cfg = cfg["crawl"]
    scheduler_cfg = cfg["scheduler"]

    data_dir = os.environ.get("WXH_DATA_DIR") or str(paths_cfg["data_dir"])
    state_db = str(paths_cfg["state_db"] or os.path.join(data_dir, "state.sqlite3"))

    app = AppConfig(
        name=str(app_cfg["name"]),
        read_only=env_flag("WXH_READ_ONLY", bool(app_cfg["read_only"])),
    )
    paths = PathsConfig(data_dir=data_dir, state_db=state_db)
    http = HttpConfig(
        timeout_seconds=int(http_cfg["timeout_seconds"]),
        user_agent=str(http_cfg["user_agent"]),
        max_retries=int(http_cfg["max_retries"]),
        backoff_seconds=int(http_cfg["backoff_seconds"]),
    )
    crawl = CrawlConfig(
        max_articles_per_account=int(crawl_cfg["max_articles_per_account"]),
        default_buzz=float(crawl_cfg["default_buzz"]),
    )
    scheduler = SchedulerConfig(
        lease_ttl_seconds=int(scheduler_cfg["lease_ttl_seconds"]),
        sleep_seconds=int(scheduler_cfg["sleep_seconds"]),
    )
    return Config(app=app, paths=paths, http=http, crawl=crawl, scheduler=scheduler)
