import asyncio

import httpx

from conftest import seed_tenant
from preik.db.base import db_session
from preik.db.models import Tenant
from preik.services import email


def _capture(monkeypatch):
    sent = []

    async def fake_send(api_key, message):
        sent.append((api_key, message))

    monkeypatch.setattr(email, "_send", fake_send)
    return sent


def _last_warning():
    with db_session() as s:
        return s.get(Tenant, "shop").last_credit_warning


def test_render_escapes_tenant_name():
    rendered = email.render_credit_warning("<b>Shop</b>", "100", 100, 100)
    assert "&lt;b&gt;Shop&lt;/b&gt;" in rendered["html"]
    assert "<b>Shop</b>" not in rendered["html"]
    assert rendered["subject"].startswith("Kredittgrensen er nådd")
    assert email.render_credit_warning("Shop", "80", 80, 100)["subject"].startswith("80%")


def test_warning_sent_once_per_level(monkeypatch):
    monkeypatch.setenv("RESEND_API_KEY", "re_test")
    sent = _capture(monkeypatch)
    seed_tenant(credits_used=80, credit_limit=100)

    asyncio.run(email.send_credit_warning_if_needed("shop", "80"))
    assert len(sent) == 1
    api_key, message = sent[0]
    assert api_key == "re_test"
    assert message["to"] == "post@shop.no"
    assert "80 av 100" in message["html"]
    assert _last_warning() == "80"

    asyncio.run(email.send_credit_warning_if_needed("shop", "80"))
    assert len(sent) == 1

    asyncio.run(email.send_credit_warning_if_needed("shop", "100"))
    assert len(sent) == 2
    assert _last_warning() == "100"


def test_no_email_without_key_or_contact(monkeypatch):
    sent = _capture(monkeypatch)
    seed_tenant(contact_email=None)
    asyncio.run(email.send_credit_warning_if_needed("shop", "80"))
    monkeypatch.setenv("RESEND_API_KEY", "re_test")
    asyncio.run(email.send_credit_warning_if_needed("shop", "80"))
    assert sent == []
    assert _last_warning() is None


def test_send_failure_is_logged_not_raised(monkeypatch):
    monkeypatch.setenv("RESEND_API_KEY", "re_test")
    seed_tenant()

    async def failing_send(api_key, message):
        raise httpx.ConnectError("resend unreachable")

    monkeypatch.setattr(email, "_send", failing_send)
    asyncio.run(email.send_credit_warning_if_needed("shop", "100"))
    assert _last_warning() is None
