import uuid

from conftest import seed_tenant
from preik.db.base import db_session
from preik.db.models import TenantPrompt
from preik.services.tenants import (
    SECURITY_GUARDRAIL,
    TenantConfig,
    extract_domain,
    get_tenant_config,
    get_tenant_system_prompt,
    is_valid_store_id,
    validate_origin,
    with_guardrail,
)


def _config(domains):
    return TenantConfig(id="shop", name="Shop", allowed_domains=domains)


def test_store_id_format():
    assert is_valid_store_id("baatpleiern-2")
    assert not is_valid_store_id("Shop")
    assert not is_valid_store_id("shop_1")
    assert not is_valid_store_id("")
    assert not is_valid_store_id(None)
    assert not is_valid_store_id("a" * 101)


def test_extract_domain():
    assert extract_domain("https://www.Shop.no/side?x=1") == "www.shop.no"
    assert extract_domain("https://user:pw@shop.no:8443/") == "shop.no:8443"
    assert extract_domain("shop.no/produkter") == "shop.no"
    assert extract_domain(None) is None
    assert extract_domain("") is None


def test_origin_exact_and_subdomain_match():
    cfg = _config(["shop.no"])
    assert validate_origin(cfg, "https://shop.no", None).allowed
    assert validate_origin(cfg, "https://www.shop.no", None).allowed
    assert validate_origin(cfg, None, "https://butikk.shop.no/produkt/1").allowed


def test_origin_rejects_lookalikes_and_missing_headers():
    cfg = _config(["shop.no"])
    evil = validate_origin(cfg, "https://evilshop.no", None)
    assert not evil.allowed
    assert "evilshop.no" in evil.reason
    assert not validate_origin(cfg, "https://shop.no.evil.com", None).allowed
    missing = validate_origin(cfg, None, None)
    assert not missing.allowed
    assert missing.reason == "Missing origin header"


def test_development_mode_allows_any_origin(monkeypatch):
    monkeypatch.setenv("PREIK_ENV", "development")
    assert validate_origin(_config([]), None, None).allowed


def test_guardrail_is_prefixed_once():
    once = with_guardrail("Du er en hjelper.")
    assert once.startswith(SECURITY_GUARDRAIL)
    assert with_guardrail(once) == once


def test_tenant_config_from_database():
    seed_tenant(persona="båtekspert", allowed_domains=["shop.no", "butikk.no"])
    cfg = get_tenant_config("shop")
    assert cfg.name == "Båtpleie AS"
    assert cfg.allowed_domains == ["shop.no", "butikk.no"]
    assert cfg.system_prompt.startswith(SECURITY_GUARDRAIL)
    assert "båtekspert for Båtpleie AS" in cfg.system_prompt
    assert get_tenant_config("missing") is None
    assert get_tenant_config("../etc") is None


def test_system_prompt_prefers_custom_prompt():
    seed_tenant()
    assert "Båtpleie AS" in get_tenant_system_prompt("shop")
    with db_session() as s:
        s.add(TenantPrompt(id=str(uuid.uuid4()), tenant_id="shop", system_prompt="Svar kort.", version=1))
    assert get_tenant_system_prompt("shop") == SECURITY_GUARDRAIL + "Svar kort."


def test_system_prompt_for_unknown_tenant_is_generic():
    prompt = get_tenant_system_prompt("ukjent")
    assert prompt.startswith(SECURITY_GUARDRAIL)
    assert "ukjent" in prompt
