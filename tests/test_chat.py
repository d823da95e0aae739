import asyncio
import json

from conftest import seed_tenant
from preik.db import persistence
from preik.db.base import db_session
from preik.db.models import Conversation, Tenant
from preik.routes import chat as chat_route
from preik.routes.chat import CREDITS_EXHAUSTED_REPLY
from preik.services.embedder import embed_texts
from preik.services.ratelimit import RATE_LIMITS

ORIGIN = {"Origin": "https://www.shop.no"}


def _body(text="Hvilken voks anbefaler dere til gelcoat?", **extra):
    return {"storeId": "shop", "sessionId": "sess-1", "messages": [{"role": "user", "content": text}], **extra}


def test_rejects_oversized_body(client):
    r = client.post("/api/chat", content=json.dumps(_body("x" * 40_000)), headers={"Content-Type": "application/json", **ORIGIN})
    assert r.status_code == 413


def test_rejects_non_json_content_type(client):
    r = client.post("/api/chat", content="hei", headers={"Content-Type": "text/plain", **ORIGIN})
    assert r.status_code == 415


def test_rejects_malformed_and_invalid_requests(client):
    seed_tenant()
    r = client.post("/api/chat", content="{not json", headers={"Content-Type": "application/json", **ORIGIN})
    assert r.status_code == 400
    assert r.json() == {"error": "Invalid request"}
    r = client.post("/api/chat", json={"storeId": "shop", "messages": []}, headers=ORIGIN)
    assert r.status_code == 400
    r = client.post("/api/chat", json=_body() | {"storeId": "Bad_Id"}, headers=ORIGIN)
    assert r.status_code == 400
    assert r.json()["error"] == "Invalid storeId"


def test_unknown_store(client):
    r = client.post("/api/chat", json=_body(), headers=ORIGIN)
    assert r.status_code == 404
    assert r.json() == {"error": "Unknown store"}


def test_origin_not_allowed(client):
    seed_tenant()
    r = client.post("/api/chat", json=_body(), headers={"Origin": "https://evil.example"})
    assert r.status_code == 403
    assert r.json() == {"error": "Forbidden", "message": "Origin not allowed"}
    r = client.post("/api/chat", json=_body())
    assert r.status_code == 403


def test_json_reply_uses_retrieved_content_and_logs_conversation(client):
    seed_tenant(credit_limit=10)
    text = "Gelcoat-voks fra Båtpleie gir blank overflate i en hel sesong."
    persistence.insert_documents("shop", [text], embed_texts([text]), {"source": "https://shop.no/voks"})

    r = client.post("/api/chat", json=_body(noStream=True), headers=ORIGIN)
    assert r.status_code == 200
    assert r.json() == {"role": "assistant", "content": text}
    assert r.headers["access-control-allow-origin"] == "https://www.shop.no"
    assert r.headers["x-ratelimit-remaining"] == str(RATE_LIMITS["chat"].max_requests - 1)

    with db_session() as s:
        assert s.get(Tenant, "shop").credits_used == 1
        conv = s.query(Conversation).one()
        assert conv.session_id == "sess-1"
        assert conv.user_query == "Hvilken voks anbefaler dere til gelcoat?"
        assert conv.detected_intent == "product_query"
        assert conv.conv_metadata["docsFound"] == 1
        assert conv.conv_metadata["model"] == "fallback"
        assert conv.conv_metadata["nonStreaming"] is True


def test_streamed_reply_for_simple_message(client):
    seed_tenant()
    r = client.post("/api/chat", json=_body("Hei!"), headers=ORIGIN)
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/plain")
    assert "Jeg fant ikke informasjon" in r.text
    with db_session() as s:
        conv = s.query(Conversation).one()
        assert conv.was_handled is False
        assert conv.conv_metadata["docsFound"] == 0
        assert conv.conv_metadata["finishReason"] == "stop"


def test_webview_user_agent_gets_json(client):
    seed_tenant()
    ua = "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0) [FBAN/FBIOS;FBAV/400.0]"
    r = client.post("/api/chat", json=_body("Hei"), headers={**ORIGIN, "User-Agent": ua})
    assert r.json()["role"] == "assistant"


def test_credits_exhausted_returns_polite_message(client):
    seed_tenant(credit_limit=5, credits_used=5)
    r = client.post("/api/chat", json=_body(noStream=True), headers=ORIGIN)
    assert r.status_code == 200
    assert r.json() == {"role": "assistant", "content": CREDITS_EXHAUSTED_REPLY}
    with db_session() as s:
        assert s.get(Tenant, "shop").credits_used == 5
        assert s.query(Conversation).count() == 0


def test_session_rate_limit(client, monkeypatch):
    seed_tenant(credit_limit=1000)
    monkeypatch.setitem(RATE_LIMITS, "chat", RATE_LIMITS["chat"].model_copy(update={"max_requests": 2}))
    for _ in range(2):
        assert client.post("/api/chat", json=_body("Hei", noStream=True), headers=ORIGIN).status_code == 200
    r = client.post("/api/chat", json=_body("Hei", noStream=True), headers=ORIGIN)
    assert r.status_code == 429
    assert r.json()["error"] == "Too Many Requests"
    assert r.json()["retryAfterMs"] > 0
    assert int(r.headers["retry-after"]) >= 1
    # Another session is counted separately
    other = _body("Hei", noStream=True) | {"sessionId": "sess-2"}
    assert client.post("/api/chat", json=other, headers=ORIGIN).status_code == 200


def test_ip_rate_limit_catches_session_rotation(client, monkeypatch):
    seed_tenant(credit_limit=1000)
    monkeypatch.setitem(RATE_LIMITS, "chat_ip", RATE_LIMITS["chat_ip"].model_copy(update={"max_requests": 2}))
    headers = {**ORIGIN, "X-Forwarded-For": "203.0.113.7"}
    for i in range(2):
        body = _body("Hei", noStream=True) | {"sessionId": f"rot-{i}"}
        assert client.post("/api/chat", json=body, headers=headers).status_code == 200
    body = _body("Hei", noStream=True) | {"sessionId": "rot-9"}
    assert client.post("/api/chat", json=body, headers=headers).status_code == 429


def test_no_user_message(client):
    seed_tenant()
    body = {"storeId": "shop", "messages": [{"role": "assistant", "content": "Hei!"}]}
    r = client.post("/api/chat", json=body, headers=ORIGIN)
    assert r.status_code == 400


def test_preflight_for_widget_paths(client):
    r = client.options("/api/chat", headers={"Origin": "https://any.site", "Access-Control-Request-Method": "POST"})
    assert r.status_code == 204
    assert r.headers["access-control-allow-origin"] == "https://any.site"
    assert "POST" in r.headers["access-control-allow-methods"]


def test_rate_limit_lookups_run_off_the_event_loop(client, monkeypatch):
    seed_tenant(credit_limit=1000)
    seen = []
    real = chat_route.check_rate_limit

    def recording(identifier, config):
        try:
            asyncio.get_running_loop()
            seen.append("event-loop")
        except RuntimeError:
            seen.append("worker-thread")
        return real(identifier, config)

    monkeypatch.setattr(chat_route, "check_rate_limit", recording)
    assert client.post("/api/chat", json=_body("Hei", noStream=True), headers=ORIGIN).status_code == 200
    assert seen == ["worker-thread", "worker-thread"]
