import uuid
from datetime import timedelta

from conftest import OUTSIDER, SUPER_ADMIN, TENANT_ADMIN, TENANT_VIEWER, auth_headers, make_token, seed_tenant
from preik.db import persistence
from preik.db.base import db_session
from preik.db.models import AuditLog, Conversation, DocumentModel, utcnow
from preik.services.embedder import embed_texts
from preik.services.tenants import SECURITY_GUARDRAIL


def _add_docs(store_id, source, texts, **meta):
    persistence.insert_documents(store_id, texts, embed_texts(texts), {"source": source, **meta})


def _add_conversation(store_id, query, handled=True, intent="general", days_ago=0, email=False):
    with db_session() as s:
        s.add(
            Conversation(
                id=str(uuid.uuid4()),
                store_id=store_id,
                session_id="s",
                user_query=query,
                ai_response="svar",
                detected_intent=intent,
                was_handled=handled,
                referred_to_email=email,
                created_at=utcnow() - timedelta(days=days_ago),
            )
        )


def test_requires_authentication(client, tenant):
    assert client.get(f"/api/tenant/{tenant}/content").status_code == 401
    bad = {"Authorization": f"Bearer {make_token(TENANT_ADMIN, secret='wrong-secret-wrong-secret-wrong-secret')}"}
    assert client.get(f"/api/tenant/{tenant}/content", headers=bad).status_code == 401
    wrong_aud = {"Authorization": f"Bearer {make_token(TENANT_ADMIN, audience='anon')}"}
    assert client.get(f"/api/tenant/{tenant}/content", headers=wrong_aud).status_code == 401


def test_access_is_per_tenant_and_role(client, tenant):
    assert client.get(f"/api/tenant/{tenant}/content", headers=auth_headers(OUTSIDER)).status_code == 403
    assert client.get(f"/api/tenant/{tenant}/content", headers=auth_headers(TENANT_VIEWER)).status_code == 200
    r = client.post(f"/api/tenant/{tenant}/content", json={"text": "Hei"}, headers=auth_headers(TENANT_VIEWER))
    assert r.status_code == 403
    assert client.get(f"/api/tenant/{tenant}/content", headers=auth_headers(SUPER_ADMIN)).status_code == 200


def test_list_content_paginates_and_searches(client, tenant):
    _add_docs(tenant, "https://shop.no/a", ["Båtvoks 100% naturlig", "Polish"])
    _add_docs(tenant, "manual", ["Åpningstider"], title="Info", manual=True)
    seed_tenant("other")
    _add_docs("other", "https://other.no", ["Båtvoks fra konkurrent"])
    h = auth_headers(TENANT_VIEWER)

    r = client.get(f"/api/tenant/{tenant}/content?limit=2&page=1", headers=h)
    body = r.json()
    assert r.headers["cache-control"].startswith("private")
    assert len(body["documents"]) == 2
    assert body["pagination"] == {"page": 1, "limit": 2, "total": 3, "totalPages": 2}

    r = client.get(f"/api/tenant/{tenant}/content?search=100%25", headers=h)
    assert [d["content"] for d in r.json()["documents"]] == ["Båtvoks 100% naturlig"]
    r = client.get(f"/api/tenant/{tenant}/content?search=_", headers=h)
    assert r.json()["documents"] == []

    r = client.get(f"/api/tenant/{tenant}/content?limit=abc", headers=h)
    assert r.json()["pagination"]["limit"] == 50


def test_list_content_grouped_and_by_source(client, tenant):
    _add_docs(tenant, "https://shop.no/a", ["Del en", "Del to"], title="Side A")
    _add_docs(tenant, "manual", ["Manuell"], title="Info", manual=True)
    h = auth_headers(TENANT_VIEWER)

    groups = client.get(f"/api/tenant/{tenant}/content?grouped=true", headers=h).json()
    assert groups["totalSources"] == 2
    by_source = {g["source"]: g for g in groups["sources"]}
    assert by_source["https://shop.no/a"]["chunkCount"] == 2
    assert by_source["https://shop.no/a"]["title"] == "Side A"
    assert by_source["manual"]["isManual"] is True

    full = client.get(f"/api/tenant/{tenant}/content", params={"source": "https://shop.no/a"}, headers=h).json()
    assert full["fullText"] == "Del en\n\nDel to"
    assert full["chunkCount"] == 2
    assert full["title"] == "Side A"


def test_add_edit_delete_content(client, tenant):
    h = auth_headers(TENANT_ADMIN)
    r = client.post(f"/api/tenant/{tenant}/content", json={"text": "Vi har åpent 10-16.", "url": "https://shop.no/info"}, headers=h)
    assert r.status_code == 200
    assert r.json()["chunksCount"] == 1

    r = client.post(f"/api/tenant/{tenant}/content", json={"text": "Duplikat", "url": "https://shop.no/info"}, headers=h)
    assert r.status_code == 409

    r = client.patch(
        f"/api/tenant/{tenant}/content",
        json={"source": "https://shop.no/info", "text": "Nye tider: 9-17.", "title": "Åpningstider"},
        headers=h,
    )
    assert r.status_code == 200
    with db_session() as s:
        docs = s.query(DocumentModel).filter(DocumentModel.store_id == tenant).all()
        assert [d.content for d in docs] == ["Nye tider: 9-17."]
        doc_id = docs[0].id

    assert client.delete(f"/api/tenant/{tenant}/content", params={"id": "nope"}, headers=h).status_code == 404
    assert client.delete(f"/api/tenant/{tenant}/content", headers=h).status_code == 400
    r = client.delete(f"/api/tenant/{tenant}/content", params={"id": doc_id}, headers=h)
    assert r.status_code == 200
    assert client.delete(f"/api/tenant/{tenant}/content", params={"source": "https://shop.no/info"}, headers=h).status_code == 404

    with db_session() as s:
        actions = sorted(a.action for a in s.query(AuditLog).all())
    assert actions == ["create", "delete", "update"]


def test_delete_content_by_source(client, tenant):
    _add_docs(tenant, "https://shop.no/a", ["en", "to"])
    r = client.delete(f"/api/tenant/{tenant}/content", params={"source": "https://shop.no/a"}, headers=auth_headers(TENANT_ADMIN))
    assert r.json()["deletedCount"] == 2
    assert persistence.count_documents(tenant) == 0


def test_conversations_filters(client, tenant):
    _add_conversation(tenant, "Hva koster voks?", intent="product_query")
    _add_conversation(tenant, "Jeg vil klage", handled=False, intent="support")
    _add_conversation("other", "Fremmed samtale")
    h = auth_headers(TENANT_VIEWER)

    body = client.get(f"/api/tenant/{tenant}/conversations", headers=h).json()
    assert body["pagination"]["total"] == 2
    assert client.get(f"/api/tenant/{tenant}/conversations?wasHandled=false", headers=h).json()["conversations"][0]["user_query"] == "Jeg vil klage"
    assert client.get(f"/api/tenant/{tenant}/conversations?intent=product_query", headers=h).json()["pagination"]["total"] == 1
    assert client.get(f"/api/tenant/{tenant}/conversations?search=voks", headers=h).json()["pagination"]["total"] == 1


def test_stats(client, tenant):
    _add_conversation(tenant, "Hva koster båtvoks?", intent="product_query")
    _add_conversation(tenant, "Har dere båtvoks", intent="product_query", email=True)
    _add_conversation(tenant, "Jeg vil klage", handled=False, intent="support")
    _add_conversation(tenant, "Gammel samtale", days_ago=60)
    _add_docs(tenant, "manual", ["en"])

    body = client.get(f"/api/tenant/{tenant}/stats?days=30", headers=auth_headers(TENANT_VIEWER)).json()
    assert body["period"] == "30 days"
    assert body["stats"] == {
        "total_conversations": 3,
        "handled_count": 2,
        "unhandled_count": 1,
        "email_referrals": 1,
        "product_queries": 2,
        "support_queries": 1,
        "handled_rate": 66.7,
    }
    assert body["topSearchTerms"][0] == {"term": "båtvoks", "count": 2}
    assert [q["user_query"] for q in body["unansweredQueries"]] == ["Jeg vil klage"]
    assert len(body["dailyVolume"]) == 14
    assert body["dailyVolume"][-1]["count"] == 3
    assert body["documentCount"] == 1
    assert body["credits"]["creditLimit"] == 100


def test_credits_endpoint(client, tenant):
    body = client.get(f"/api/tenant/{tenant}/credits", headers=auth_headers(TENANT_VIEWER)).json()
    assert body["creditLimit"] == 100
    assert body["creditsRemaining"] == 100
    assert body["percentUsed"] == 0


def test_prompt_default_then_custom(client, tenant):
    body = client.get(f"/api/tenant/{tenant}/prompt", headers=auth_headers(TENANT_VIEWER)).json()
    assert body["isCustom"] is False
    assert body["systemPrompt"].startswith(SECURITY_GUARDRAIL)

    h = auth_headers(TENANT_ADMIN)
    assert client.put(f"/api/tenant/{tenant}/prompt", json={"systemPrompt": "   "}, headers=h).status_code == 400
    assert client.put(f"/api/tenant/{tenant}/prompt", json={"systemPrompt": "Svar kort."}, headers=h).json()["version"] == 1
    assert client.put(f"/api/tenant/{tenant}/prompt", json={"systemPrompt": "Svar lenger."}, headers=h).json()["version"] == 2

    body = client.get(f"/api/tenant/{tenant}/prompt", headers=h).json()
    assert body == {"systemPrompt": "Svar lenger.", "version": 2, "updatedAt": body["updatedAt"], "isCustom": True}


def test_widget_config_roundtrip(client, tenant):
    h = auth_headers(TENANT_ADMIN)
    assert client.get(f"/api/tenant/{tenant}/widget-config", headers=h).json() == {"config": None}
    cfg = {"primaryColor": "#6C63FF", "greeting": "Hei! Hva lurer du på?"}
    assert client.put(f"/api/tenant/{tenant}/widget-config", json={"config": cfg}, headers=h).json() == {"success": True}
    assert client.get(f"/api/tenant/{tenant}/widget-config", headers=h).json()["config"] == cfg

    public = client.get(f"/api/widget-config/{tenant}")
    assert public.json() == {"config": cfg}
    assert public.headers["access-control-allow-origin"] == "*"
    assert "max-age=300" in public.headers["cache-control"]


def test_user_tenants_lists_memberships(client, tenant):
    body = client.get("/api/user/tenants", headers=auth_headers(TENANT_VIEWER)).json()
    assert body == {"tenants": [{"id": "shop", "name": "Båtpleie AS", "role": "viewer", "persona": None}]}
    assert client.get("/api/user/tenants", headers=auth_headers(OUTSIDER)).json() == {"tenants": []}
