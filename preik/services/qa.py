"""Chat answering: prompt assembly, model fallback chain, conversation logging."""
from __future__ import annotations

import logging
import os
import re
import uuid
from typing import Any, Dict, Iterator, List, Literal, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from preik.db.base import db_session
from preik.db.models import Conversation
from preik.models.types import ChatMessage, MatchedDocument

logger = logging.getLogger(__name__)

Intent = Literal["product_query", "support", "general", "unknown"]

SIMPLE_MESSAGE_MAX_LEN = 20
_PRODUCT_HINT_RE = re.compile(r"produkt|pris|anbefal|kjøp|voks|polish|båt", re.IGNORECASE)

_SUPPORT_TERMS = ("reklam", "retur", "bytte", "klage", "kontakt", "snakke med", "menneske", "hjelp", "support", "help")
_PRODUCT_TERMS = (
    "pris", "koster", "kjøp", "produkt", "voks", "polish", "båtløft", "rengjør", "anbefal",
    "price", "product", "buy", "recommend",
)
_GENERAL_TERMS = ("hvordan", "hva er", "kan jeg", "how", "what is", "where")

# Phrases meaning the assistant could not answer
UNHANDLED_PATTERNS = (
    "jeg fant ikke",
    "jeg vet ikke",
    "har ikke informasjon",
    "finner ikke",
    "ikke tilgjengelig",
    "kan ikke finne",
    "mangler informasjon",
    "couldn't find",
    "could not find",
    "don't have information",
    "no information about",
)

_RATE_LIMIT_MARKERS = ("429", "rate limit", "resource exhausted", "quota")

NO_CONTEXT_REPLY = (
    "Jeg fant ikke informasjon om dette i innholdet mitt. "
    "Ta gjerne kontakt med butikken direkte, så hjelper de deg videre."
)


def detect_intent(query: str) -> Intent:
    q = query.lower()
    if any(t in q for t in _SUPPORT_TERMS):
        return "support"
    if any(t in q for t in _PRODUCT_TERMS):
        return "product_query"
    if any(t in q for t in _GENERAL_TERMS):
        return "general"
    return "unknown"


def check_if_handled(response: str) -> bool:
    lower = response.lower()
    return not any(p in lower for p in UNHANDLED_PATTERNS)


def check_email_referral(response: str, contact_email: Optional[str] = None) -> bool:
    lower = response.lower()
    if contact_email and contact_email.lower() in lower:
        return True
    return "email" in lower or "e-post" in lower


def is_webview(user_agent: Optional[str]) -> bool:
    """In-app browsers (Facebook, Instagram, Android/iOS WebViews) that can't read streams."""
    if not user_agent:
        return False
    ua = user_agent.lower()
    return (
        "fban" in ua
        or "fbav" in ua
        or "instagram" in ua
        or "messenger" in ua
        or "webview" in ua
        or "wv)" in ua
        or ("iphone" in ua and "safari" not in ua)
        or ("ipad" in ua and "safari" not in ua)
    )


def is_rate_limit_error(error: BaseException) -> bool:
    message = str(error).lower()
    return any(m in message for m in _RATE_LIMIT_MARKERS)


def extract_text(message: ChatMessage) -> str:
    """Text parts joined when present, else plain content."""
    if message.parts:
        return "".join(p.text for p in message.parts if p.type == "text" and p.text)
    return message.content or ""


def is_simple_message(text: str) -> bool:
    # Greetings and the like: skip embedding and search
    return len(text) < SIMPLE_MESSAGE_MAX_LEN and not _PRODUCT_HINT_RE.search(text)


def build_context(docs: List[MatchedDocument]) -> str:
    blocks = []
    for d in docs:
        url = d.metadata.get("source") or d.metadata.get("url") or "NO URL AVAILABLE"
        blocks.append(f"--- DOCUMENT START ---\nSOURCE-URL: {url}\nCONTENT: {d.content}\n--- DOCUMENT END ---")
    return "\n\n".join(blocks)


def build_system_prompt(system_prompt: str, context: str) -> str:
    if not context:
        return system_prompt
    return f"{system_prompt}\n\nCONTEXT FROM DATABASE:\n{context}"


def chat_models() -> List[str]:
    raw = os.getenv("CHAT_MODELS", "gpt-4o-mini,gpt-4.1-mini")
    models = [m.strip() for m in raw.split(",") if m.strip()]
    return models or ["gpt-4o-mini"]


def _client():
    from openai import OpenAI
    return OpenAI()


def _to_openai_messages(system: str, messages: List[Dict[str, str]]) -> List[Dict[str, str]]:
    return [{"role": "system", "content": system}] + [
        {"role": m["role"], "content": m["content"]} for m in messages
    ]


def _fallback_reply(system: str) -> str:
    # No key configured: echo the best context block so dev setups stay usable
    marker = "CONTENT: "
    start = system.find(marker)
    if start < 0:
        return NO_CONTEXT_REPLY
    end = system.find("\n--- DOCUMENT END ---", start)
    snippet = system[start + len(marker):end if end > 0 else None].strip()
    return snippet[:500]


def generate_reply(system: str, messages: List[Dict[str, str]]) -> Tuple[str, str]:
    """Complete once, walking the model chain on rate limits. Returns (text, model)."""
    if not os.getenv("OPENAI_API_KEY"):
        return _fallback_reply(system), "fallback"
    models = chat_models()
    client = _client()
    for i, model in enumerate(models):
        try:
            resp = client.chat.completions.create(
                model=model,
                messages=_to_openai_messages(system, messages),
                temperature=0.3,
            )
            return resp.choices[0].message.content or "", model
        except Exception as e:
            if is_rate_limit_error(e) and i < len(models) - 1:
                logger.warning("chat: %s rate limited, trying %s", model, models[i + 1])
                continue
            raise
    raise RuntimeError("no chat model configured")


def open_reply_stream(system: str, messages: List[Dict[str, str]]) -> Tuple[Iterator[str], str]:
    """Start a streamed completion, walking the model chain on rate limits.

    Rate limits surface when the request is opened, so fallback happens here,
    before the first byte is sent to the client.
    """
    if not os.getenv("OPENAI_API_KEY"):
        return iter([_fallback_reply(system)]), "fallback"
    models = chat_models()
    client = _client()
    for i, model in enumerate(models):
        try:
            stream = client.chat.completions.create(
                model=model,
                messages=_to_openai_messages(system, messages),
                temperature=0.3,
                stream=True,
            )
        except Exception as e:
            if is_rate_limit_error(e) and i < len(models) - 1:
                logger.warning("chat: %s rate limited, trying %s", model, models[i + 1])
                continue
            raise
        return _deltas(stream), model
    raise RuntimeError("no chat model configured")


def _deltas(stream) -> Iterator[str]:
    for event in stream:
        if not event.choices:
            continue
        delta = event.choices[0].delta.content
        if delta:
            yield delta


def log_conversation(
    store_id: str,
    session_id: Optional[str],
    user_query: str,
    ai_response: str,
    metadata: Optional[Dict[str, Any]] = None,
    contact_email: Optional[str] = None,
) -> None:
    # A failed insert must never fail the chat request
    try:
        with db_session() as s:
            s.add(
                Conversation(
                    id=str(uuid.uuid4()),
                    store_id=store_id,
                    session_id=session_id,
                    user_query=user_query,
                    ai_response=ai_response,
                    detected_intent=detect_intent(user_query),
                    was_handled=check_if_handled(ai_response),
                    referred_to_email=check_email_referral(ai_response, contact_email),
                    conv_metadata=metadata or {},
                )
            )
    except (SQLAlchemyError, RuntimeError) as e:
        logger.error("chat: failed to log conversation for %s: %s", store_id, e)
