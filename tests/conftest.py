from __future__ import annotations

import pytest


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path, monkeypatch):
    for name in ("WXH_DB_URL", "WXH_CONFIG_PATH", "WXH_READ_ONLY", "WXH_LOG_FILE", "WXH_LOG_LEVELS"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("WXH_DATA_DIR", str(tmp_path / "data"))
