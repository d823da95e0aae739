"""Transactional email through the Resend REST API."""
from __future__ import annotations

import html
import logging
import os
from typing import Dict, Literal

import httpx
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from preik.db.base import db_session
from preik.db.models import Tenant

logger = logging.getLogger(__name__)

RESEND_URL = "https://api.resend.com/emails"
DASHBOARD_URL = "https://preik.ai/dashboard"


def _from_address() -> str:
    return f"Preik <{os.getenv('RESEND_FROM_EMAIL', 'noreply@preik.ai')}>"


@retry(
    reraise=True,
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
    retry=retry_if_exception_type(httpx.TransportError),
)
async def _send(api_key: str, message: Dict) -> None:
    async with httpx.AsyncClient(timeout=10.0) as client:
        resp = await client.post(RESEND_URL, json=message, headers={"Authorization": f"Bearer {api_key}"})
    resp.raise_for_status()


def render_credit_warning(name: str, level: str, credits_used: int, credit_limit: int) -> Dict[str, str]:
    is_limit = level == "100"
    safe_name = html.escape(name, quote=True)
    if is_limit:
        subject = f"Kredittgrensen er nådd – {name}"
        headline = "Kredittgrensen er nådd"
        body = (
            f"Chatboten for <strong>{safe_name}</strong> har brukt alle {credit_limit} kreditter denne perioden. "
            "Chatboten vil ikke svare på nye meldinger før kredittene nullstilles eller grensen økes."
        )
    else:
        subject = f"80% av kredittene er brukt – {name}"
        headline = "80% av kredittene er brukt"
        body = (
            f"Chatboten for <strong>{safe_name}</strong> har brukt {credits_used} av {credit_limit} kreditter (80%). "
            "Vurder å øke grensen for å unngå at chatboten stopper."
        )
    color = "#dc2626" if is_limit else "#d97706"
    markup = f"""
<div style="font-family: sans-serif; max-width: 600px; margin: 0 auto;">
  <h2 style="color: {color};">{headline}</h2>
  <p style="color: #1a1a2e; line-height: 1.6;">{body}</p>
  <div style="margin-top: 24px; padding: 16px; background: #f5f5f5; border-radius: 8px;">
    <p style="margin: 0; color: #666; font-size: 14px;"><strong>Brukt:</strong> {credits_used} / {credit_limit} kreditter</p>
  </div>
  <p style="margin-top: 24px; font-size: 13px; color: #666;">
    Logg inn på <a href="{DASHBOARD_URL}" style="color: #6C63FF;">dashbordet</a> for å administrere kreditter.
  </p>
  <p style="margin-top: 24px; font-size: 12px; color: #999;">Preik – AI-chatbot for nettbutikker</p>
</div>
"""
    return {"subject": subject, "html": markup}


async def send_credit_warning_if_needed(tenant_id: str, level: Literal["80", "100"]) -> None:
    """Email the tenant's contact once per level per billing cycle. Never raises."""
    api_key = os.getenv("RESEND_API_KEY", "")
    if not api_key:
        logger.warning("email: RESEND_API_KEY not set, emails disabled")
        return
    try:
        with db_session() as s:
            t = s.get(Tenant, tenant_id)
            if t is None:
                logger.error("email: no tenant %s for credit warning", tenant_id)
                return
            name, to = t.name, t.contact_email
            used, limit, last = int(t.credits_used or 0), int(t.credit_limit or 0), t.last_credit_warning

        # Don't spam: skip when this level or a higher one was already sent
        if last and int(last) >= int(level):
            return
        if not to:
            logger.warning("email: no contact_email for tenant %s, skipping credit warning", tenant_id)
            return

        rendered = render_credit_warning(name, level, used, limit)
        await _send(api_key, {"from": _from_address(), "to": to, **rendered})

        with db_session() as s:
            s.execute(update(Tenant).where(Tenant.id == tenant_id).values(last_credit_warning=level))
        logger.info("email: credit warning sent", extra={"tenantId": tenant_id, "level": level})
    except (httpx.HTTPError, SQLAlchemyError, RuntimeError, ValueError) as e:
        logger.error("email: failed to send credit warning for %s (level %s): %s", tenant_id, level, e)
