"""Tests for the FastAPI front end (WebSocket chat + JSON endpoints)."""

from __future__ import annotations

import json

import pytest
from starlette.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from conftest import (
    SAMPLE_CLIENT,
    FakeVerifier,
    MemoryStore,
    delta_chunk,
    finish_chunk,
    role_chunk,
    sse,
    streaming_client,
)
from chat_relay.metrics import RelayMetrics
from chat_relay.server import caller_metadata, create_app

ADMIN_ENV = "CHAT_RELAY_ADMIN_SECRET"

STREAM = sse(role_chunk(), delta_chunk("Tom works "), delta_chunk("at home."), finish_chunk(), "[DONE]")


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def verifier():
    return FakeVerifier()


@pytest.fixture
def metrics():
    return RelayMetrics()


@pytest.fixture
def app(sample_config, store, verifier, metrics):
    return create_app(
        config=sample_config,
        store=store,
        verifier=verifier,
        http_client=streaming_client([STREAM]),
        metrics=metrics,
    )


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


def _ask(client, question="Where does Tom work?", headers=None) -> list[dict]:
    received = []
    with client.websocket_connect("/chat", headers=headers or {}) as ws:
        ws.send_text(json.dumps({"question": question, "captcha_token": "tok"}))
        while True:
            msg = ws.receive_json()
            received.append(msg)
            if msg["type"] in ("end", "error"):
                break
    return received


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def test_seeds_empty_store_from_config(app, store):
    assert store.client is not None
    assert store.client.welcome == SAMPLE_CLIENT["welcome"]


def test_does_not_overwrite_stored_config(sample_config, sample_client_config):
    sample_client_config.welcome = "Already stored"
    store = MemoryStore(client=sample_client_config)
    create_app(config=sample_config, store=store, verifier=FakeVerifier(),
               http_client=streaming_client([STREAM]))
    assert store.client.welcome == "Already stored"


# ---------------------------------------------------------------------------
# WebSocket /chat
# ---------------------------------------------------------------------------


class TestChat:
    def test_streams_answer(self, client, store):
        received = _ask(client, headers={"origin": "https://tomshen.io"})
        types = [m["type"] for m in received]
        assert types == ["start", "delta", "delta", "finish", "end"]
        assert received[0] == {"type": "start", "max_tokens": 200}
        assert "".join(m["content"] for m in received if m["type"] == "delta") == "Tom works at home."
        assert received[3] == {"type": "finish", "reason": "stop"}

        session_id = received[-1]["id"]
        assert store.transcripts[session_id].answer == "Tom works at home."

    def test_no_origin_header_is_allowed(self, client):
        assert _ask(client)[-1]["type"] == "end"

    def test_disallowed_origin_is_rejected(self, client, verifier):
        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect("/chat", headers={"origin": "https://evil.example"}):
                pass
        assert exc.value.code == 1008
        assert verifier.calls == []

    def test_edge_headers_reach_transcript(self, client, store):
        received = _ask(client, headers={
            "cf-connecting-ip": "198.51.100.9",
            "cf-ipcountry": "DE",
            "cf-ipcity": "Berlin",
            "cf-timezone": "Europe/Berlin",
        })
        record = store.transcripts[received[-1]["id"]]
        assert record.metadata.remote_ip == "198.51.100.9"
        assert record.metadata.country == "DE"
        assert record.metadata.city == "Berlin"
        assert record.metadata.timezone == "Europe/Berlin"

    def test_too_long_question_gets_error(self, client, store):
        received = _ask(client, question="x" * 301)
        assert len(received) == 1
        assert received[0]["type"] == "error"
        assert received[0]["status_code"] == 400
        assert store.transcripts == {}

    def test_captcha_failure_gets_403(self, sample_config, store):
        app = create_app(
            config=sample_config,
            store=store,
            verifier=FakeVerifier(success=False, error_codes=["invalid-input-response"]),
            http_client=streaming_client([STREAM]),
        )
        with TestClient(app) as c:
            received = _ask(c)
        assert received[-1]["type"] == "error"
        assert received[-1]["status_code"] == 403

    def test_sessions_feed_stats(self, client):
        _ask(client)
        _ask(client)
        stats = client.get("/stats").json()
        assert stats["total_sessions"] == 2
        assert stats["outcomes"] == {"completed": 2}
        assert stats["finish_reasons"] == {"stop": 2}


# ---------------------------------------------------------------------------
# JSON endpoints
# ---------------------------------------------------------------------------


def test_hint_returns_sample_questions(client):
    resp = client.get("/hint")
    assert resp.status_code == 200
    hints = resp.json()["hint"]
    assert len(hints) == 3
    assert len(set(hints)) == 3
    assert set(hints) <= set(SAMPLE_CLIENT["questions"])


def test_hint_with_few_questions(sample_config, sample_client_config):
    sample_client_config.questions = ["Only one?"]
    app = create_app(config=sample_config, store=MemoryStore(client=sample_client_config),
                     verifier=FakeVerifier(), http_client=streaming_client([STREAM]))
    with TestClient(app) as c:
        assert c.get("/hint").json() == {"hint": ["Only one?"]}


def test_welcome(client):
    assert client.get("/welcome").json() == {
        "welcome": SAMPLE_CLIENT["welcome"],
        "announcement": None,
    }


def test_missing_config_is_500(sample_config):
    sample_config.client = None
    app = create_app(config=sample_config, store=MemoryStore(), verifier=FakeVerifier(),
                     http_client=streaming_client([STREAM]))
    with TestClient(app) as c:
        resp = c.get("/welcome")
    assert resp.status_code == 500
    assert resp.json() == {"error": "internal error", "status_code": 500}


def test_cors_preflight(client):
    resp = client.options("/hint", headers={
        "origin": "https://tomshen.io",
        "access-control-request-method": "GET",
    })
    assert resp.headers["access-control-allow-origin"] == "https://tomshen.io"


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------


class TestAdmin:
    def test_forbidden_when_secret_unset(self, client, monkeypatch):
        monkeypatch.delenv(ADMIN_ENV, raising=False)
        resp = client.get("/admin/config", headers={"Authorization": "Bearer anything"})
        assert resp.status_code == 403

    def test_forbidden_with_wrong_secret(self, client, monkeypatch):
        monkeypatch.setenv(ADMIN_ENV, "right")
        assert client.get("/admin/config").status_code == 403
        assert client.get("/admin/config", headers={"Authorization": "Bearer wrong"}).status_code == 403

    def test_get_config(self, client, monkeypatch):
        monkeypatch.setenv(ADMIN_ENV, "right")
        resp = client.get("/admin/config", headers={"Authorization": "Bearer right"})
        assert resp.status_code == 200
        assert resp.json()["prompt"]["model"] == "gpt-3.5-turbo"
        assert resp.json()["questions"] == SAMPLE_CLIENT["questions"]

    def test_post_config_replaces_and_backs_up(self, client, store, monkeypatch):
        monkeypatch.setenv(ADMIN_ENV, "right")
        new_doc = json.loads(json.dumps(SAMPLE_CLIENT))
        new_doc["welcome"] = "New welcome"
        resp = client.post("/admin/config", json=new_doc, headers={"Authorization": "Bearer right"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["backup"] in store.backups
        assert store.backups[body["backup"]].welcome == SAMPLE_CLIENT["welcome"]
        assert client.get("/welcome").json()["welcome"] == "New welcome"

    def test_post_invalid_config(self, client, store, monkeypatch):
        monkeypatch.setenv(ADMIN_ENV, "right")
        bad = {"prompt": {"model": "m", "messages": [{"role": "user", "content": "hi"}]}}
        resp = client.post("/admin/config", json=bad, headers={"Authorization": "Bearer right"})
        assert resp.status_code == 400
        assert "system" in resp.json()["error"]
        assert store.backups == {}

    def test_post_non_object(self, client, monkeypatch):
        monkeypatch.setenv(ADMIN_ENV, "right")
        resp = client.post("/admin/config", json=[1, 2], headers={"Authorization": "Bearer right"})
        assert resp.status_code == 400

    @pytest.mark.parametrize("path,value", [
        (("questions",), None),
        (("prompt", "messages"), None),
        (("prompt", "max_tokens"), "200"),
    ])
    def test_post_badly_typed_field(self, client, store, monkeypatch, path, value):
        monkeypatch.setenv(ADMIN_ENV, "right")
        doc = json.loads(json.dumps(SAMPLE_CLIENT))
        target = doc
        for key in path[:-1]:
            target = target[key]
        target[path[-1]] = value
        resp = client.post("/admin/config", json=doc, headers={"Authorization": "Bearer right"})
        assert resp.status_code == 400
        assert resp.json()["error"].startswith("invalid request:")
        assert store.backups == {}
        assert store.client.welcome == SAMPLE_CLIENT["welcome"]


# ---------------------------------------------------------------------------
# caller_metadata
# ---------------------------------------------------------------------------


class TestCallerMetadata:
    def test_cloudflare_headers(self):
        meta = caller_metadata({
            "cf-connecting-ip": "203.0.113.1",
            "cf-ipcountry": "JP",
            "cf-region": "Tokyo",
            "cf-ipcity": "Tokyo",
            "cf-timezone": "Asia/Tokyo",
            "user-agent": "Mozilla/5.0",
        }, "10.0.0.1")
        assert meta.remote_ip == "203.0.113.1"
        assert meta.country == "JP"
        assert meta.region == "Tokyo"
        assert meta.timezone == "Asia/Tokyo"
        assert meta.user_agent == "Mozilla/5.0"
        assert meta.timestamp > 0

    def test_forwarded_for_fallback(self):
        meta = caller_metadata({"x-forwarded-for": "198.51.100.4, 10.0.0.2"}, "10.0.0.1")
        assert meta.remote_ip == "198.51.100.4"

    def test_peer_fallback(self):
        meta = caller_metadata({}, "10.0.0.1")
        assert meta.remote_ip == "10.0.0.1"
        assert meta.country is None
