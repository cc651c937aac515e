from pathlib import Path

import yaml
from fastapi.testclient import TestClient

from wxheat.admin import app, get_fetcher
from wxheat.fetcher import FetchError, FetchResponse

ARTICLE_URL = "https://mp.weixin.qq.com/s?__biz=ABC123&mid=1&idx=1&sn=x"
SHORT_URL = "https://mp.weixin.qq.com/s/AbCdEf123"


def _write_config(tmp_path: Path) -> Path:
    config = {
        "app": {"name": "wxheat-test", "read_only": False},
        "paths": {
            "data_dir": str(tmp_path / "data"),
            "state_db": str(tmp_path / "data" / "api.sqlite3"),
        },
        "http": {"timeout_seconds": 5, "user_agent": "wxheat/test", "max_retries": 0},
    }
    cfg_path = tmp_path / "config.yml"
    cfg_path.write_text(yaml.safe_dump(config, allow_unicode=True), encoding="utf-8")
    return cfg_path


def _client(tmp_path, monkeypatch) -> TestClient:
    monkeypatch.setenv("WXH_CONFIG_PATH", str(_write_config(tmp_path)))
    return TestClient(app)


class StubFetcher:
    def __init__(self, responses):
        self.responses = responses
        self.calls = []

    def get(self, url, follow_redirects=True):
        self.calls.append((url, follow_redirects))
        response = self.responses[url]
        if isinstance(response, Exception):
            raise response
        return response


def test_health(tmp_path, monkeypatch):
    client = _client(tmp_path, monkeypatch)
    response = client.get("/health")
    assert response.status_code == 200
    payload = response.json()
    assert payload["ok"] is True
    assert "version" in payload
    assert "time" in payload


def test_create_account_and_duplicate(tmp_path, monkeypatch):
    client = _client(tmp_path, monkeypatch)

    response = client.post("/accounts", json={"seed_url": ARTICLE_URL, "star": 4})
    assert response.status_code == 201
    created = response.json()
    assert created["biz_id"] == "ABC123"
    assert created["id"] == "ABC123"
    assert created["name"] == "待解析"
    assert created["star"] == 4
    assert created["is_active"] is True

    response = client.post("/accounts", json={"seed_url": ARTICLE_URL, "star": 2})
    assert response.status_code == 409
    body = response.json()
    assert body["existing"]["biz_id"] == "ABC123"
    assert body["existing"]["star"] == 4

    listed = client.get("/accounts").json()
    assert [item["biz_id"] for item in listed] == ["ABC123"]
    assert (tmp_path / "data" / "api.sqlite3").exists()


def test_create_account_validation(tmp_path, monkeypatch):
    client = _client(tmp_path, monkeypatch)

    cases = [
        ({"seed_url": ARTICLE_URL, "star": 6}, "Star rating must be between 1 and 5"),
        ({"seed_url": ARTICLE_URL, "star": "x"}, "Star rating must be between 1 and 5"),
        ({"seed_url": ARTICLE_URL}, "Star rating must be between 1 and 5"),
        ({"seed_url": "https://example.com/s?__biz=ABC", "star": 3}, "Invalid WeChat URL"),
        (
            {"seed_url": "http://mp.weixin.qq.com.evil.example/s?__biz=EVIL&mid=1", "star": 3},
            "Invalid WeChat URL",
        ),
        ({"seed_url": "https://evil.example/?next=mp.weixin.qq.com&__biz=EVIL", "star": 3}, "Invalid WeChat URL"),
        ({"seed_url": "mp.weixin.qq.com/s?__biz=EVIL&mid=1", "star": 3}, "Invalid WeChat URL"),
        ({"seed_url": SHORT_URL, "star": 3}, "URL must contain __biz parameter"),
    ]
    for body, detail in cases:
        response = client.post("/accounts", json=body)
        assert response.status_code == 400, body
        assert response.json()["detail"] == detail
    assert client.get("/accounts").json() == []


def test_update_account(tmp_path, monkeypatch):
    client = _client(tmp_path, monkeypatch)
    client.post("/accounts", json={"seed_url": ARTICLE_URL, "star": 4})

    response = client.patch("/accounts/ABC123", json={"star": 5, "is_active": False})
    assert response.status_code == 200
    assert response.json()["star"] == 5
    assert response.json()["is_active"] is False
    assert client.get("/accounts", params={"active_only": True}).json() == []

    assert client.patch("/accounts/ABC123", json={"star": 0}).status_code == 400
    missing = client.patch("/accounts/NOPE", json={"star": 3})
    assert missing.status_code == 404
    assert missing.json()["detail"] == "account_not_found"


def test_resolve_short_link_via_redirect(tmp_path, monkeypatch):
    client = _client(tmp_path, monkeypatch)
    stub = StubFetcher(
        {
            SHORT_URL: FetchResponse(
                url=SHORT_URL,
                status=302,
                body="",
                headers={"Location": "https://mp.weixin.qq.com/s?__biz=XYZ789&mid=5&idx=1&sn=q"},
            )
        }
    )
    app.dependency_overrides[get_fetcher] = lambda: stub
    try:
        response = client.post("/accounts/resolve", json={"seed_url": SHORT_URL, "star": 3})
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 201
    assert response.json()["biz_id"] == "XYZ789"
    assert stub.calls == [(SHORT_URL, False)]


def test_resolve_short_link_from_page(tmp_path, monkeypatch):
    client = _client(tmp_path, monkeypatch)
    stub = StubFetcher(
        {SHORT_URL: FetchResponse(url=SHORT_URL, status=200, body='<script>var biz = "MzHTML==";</script>')}
    )
    app.dependency_overrides[get_fetcher] = lambda: stub
    try:
        response = client.post("/accounts/resolve", json={"seed_url": SHORT_URL, "star": 2})
        assert response.status_code == 201
        assert response.json()["biz_id"] == "MzHTML=="
        assert response.json()["seed_url"] == SHORT_URL

        stub.responses[SHORT_URL] = FetchResponse(url=SHORT_URL, status=200, body="<p>nothing</p>")
        response = client.post("/accounts/resolve", json={"seed_url": SHORT_URL, "star": 2})
        assert response.status_code == 400
        assert response.json()["detail"] == "Cannot extract biz_id"

        stub.responses[SHORT_URL] = FetchError("timed out")
        response = client.post("/accounts/resolve", json={"seed_url": SHORT_URL, "star": 2})
        assert response.status_code == 502
    finally:
        app.dependency_overrides.clear()
