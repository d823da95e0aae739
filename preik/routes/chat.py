from __future__ import annotations

import asyncio
import json
import logging
import time
from datetime import datetime, timezone
from typing import Dict, Iterator, List

from fastapi import APIRouter, BackgroundTasks, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from preik.db.persistence import is_db_enabled
from preik.models.types import ChatRequest
from preik.services import qa
from preik.services.credits import check_and_increment_credits, should_send_warning_email
from preik.services.email import send_credit_warning_if_needed
from preik.services.embedder import embed_query
from preik.services.ratelimit import (
    RATE_LIMITS,
    check_rate_limit,
    get_client_identifier,
    get_client_ip,
    rate_limit_headers,
)
from preik.services.retriever import match_site_content
from preik.services.tenants import get_tenant_config, get_tenant_system_prompt, is_valid_store_id, validate_origin

router = APIRouter()
logger = logging.getLogger(__name__)

MAX_BODY_BYTES = 32 * 1024

CREDITS_EXHAUSTED_REPLY = (
    "Beklager, chatboten har nådd sin månedlige grense for antall meldinger. "
    "Ta gjerne kontakt med butikken direkte, så hjelper de deg videre."
)

STREAM_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "X-Content-Type-Options": "nosniff",
    "X-Accel-Buffering": "no",
}


def _error(status: int, error: str, headers: Dict[str, str] | None = None, **extra) -> JSONResponse:
    return JSONResponse({"error": error, **extra}, status_code=status, headers=headers)


def _ms(t0: float) -> int:
    return int((time.perf_counter() - t0) * 1000)


def _reply(text: str, stream: bool, headers: Dict[str, str]):
    if stream:
        return StreamingResponse(iter([text]), media_type="text/plain; charset=utf-8", headers={**STREAM_HEADERS, **headers})
    return JSONResponse({"role": "assistant", "content": text}, headers=headers)


@router.post("/chat")
async def chat(request: Request, background: BackgroundTasks):
    # --- request shape ---
    try:
        declared = int(request.headers.get("content-length") or 0)
    except ValueError:
        declared = 0
    if declared > MAX_BODY_BYTES:
        return _error(413, "Request too large")
    if "application/json" not in (request.headers.get("content-type") or "").lower():
        return _error(415, "Content-Type must be application/json")
    raw = await request.body()
    if len(raw) > MAX_BODY_BYTES:
        return _error(413, "Request too large")
    try:
        body = ChatRequest.model_validate(json.loads(raw or b"null"))
    except (ValueError, ValidationError):
        return _error(400, "Invalid request")

    store_id = body.storeId
    if not is_valid_store_id(store_id):
        return _error(400, "Invalid storeId")
    if not is_db_enabled():
        return _error(503, "Service unavailable")

    config = await asyncio.to_thread(get_tenant_config, store_id)
    if config is None:
        return _error(404, "Unknown store")

    # --- origin allowlist ---
    origin = request.headers.get("origin")
    check = validate_origin(config, origin, request.headers.get("referer"))
    if not check.allowed:
        logger.warning("chat: origin blocked: %s", check.reason)
        return _error(403, "Forbidden", message="Origin not allowed")
    cors = {"Access-Control-Allow-Origin": origin or "*"}

    # --- rate limits: per session and per IP ---
    client_id = get_client_identifier(body.sessionId, request.headers)
    ip = get_client_ip(request.headers)
    rl = await asyncio.to_thread(check_rate_limit, f"chat:{store_id}:{client_id}", RATE_LIMITS["chat"])
    if rl.allowed:
        ip_rl = await asyncio.to_thread(check_rate_limit, f"chatIp:{store_id}:{ip}", RATE_LIMITS["chat_ip"])
        if not ip_rl.allowed:
            rl = ip_rl
    if not rl.allowed:
        logger.warning("chat: rate limited %s for tenant %s", client_id, store_id)
        return _error(
            429,
            "Too Many Requests",
            headers={**cors, **rate_limit_headers(rl)},
            message="Please wait before sending more messages",
            retryAfterMs=rl.retry_after_ms,
        )
    rl_headers = {**cors, "X-RateLimit-Remaining": str(rl.remaining), "X-RateLimit-Reset": str(rl.reset_at)}

    last_user = next((m for m in reversed(body.messages) if m.role == "user"), None)
    if last_user is None:
        return _error(400, "No user message found", headers=cors)

    use_json = body.noStream is True or qa.is_webview(request.headers.get("user-agent"))

    try:
        return await _answer(background, store_id, config, body, qa.extract_text(last_user), use_json, rl_headers)
    except Exception:
        logger.exception("chat: unhandled error for tenant %s", store_id)
        return _error(500, "Internal server error", headers=cors)


async def _answer(background: BackgroundTasks, store_id: str, config, body: ChatRequest, user_text: str, use_json: bool, headers: Dict[str, str]):
    credit = await asyncio.to_thread(check_and_increment_credits, store_id, body.sessionId)
    level = should_send_warning_email(credit.credits_used, credit.credit_limit)
    if level:
        background.add_task(send_credit_warning_if_needed, store_id, level)
    if not credit.allowed:
        logger.info("chat: credits exhausted for %s (%d/%d)", store_id, credit.credits_used, credit.credit_limit)
        return _reply(CREDITS_EXHAUSTED_REPLY, not use_json, headers)

    start = time.perf_counter()
    timings: Dict[str, int] = {}
    docs_found = 0
    context = ""

    if qa.is_simple_message(user_text):
        system_prompt = await asyncio.to_thread(get_tenant_system_prompt, store_id)
        timings["promptFetch"] = _ms(start)
    else:
        embedding, system_prompt = await asyncio.gather(
            asyncio.to_thread(embed_query, user_text),
            asyncio.to_thread(get_tenant_system_prompt, store_id),
        )
        timings["embedding"] = _ms(start)
        search_start = time.perf_counter()
        try:
            docs = await asyncio.to_thread(match_site_content, store_id, embedding)
        except Exception as e:
            # Answer without context rather than fail the message
            logger.error("chat: vector search failed for %s: %s", store_id, e)
            docs = []
        timings["vectorSearch"] = _ms(search_start)
        docs_found = len(docs)
        context = qa.build_context(docs)

    timings["preAI"] = _ms(start)
    system = qa.build_system_prompt(system_prompt, context)
    messages: List[Dict[str, str]] = [{"role": m.role, "content": qa.extract_text(m)} for m in body.messages]

    def _metadata(model: str, **extra) -> Dict:
        return {
            "docsFound": docs_found,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "tenant": config.name,
            "model": model,
            "timings": timings,
            **extra,
        }

    ai_start = time.perf_counter()
    if use_json:
        text, model = await asyncio.to_thread(qa.generate_reply, system, messages)
        timings["aiTotal"] = _ms(ai_start)
        timings["total"] = _ms(start)
        background.add_task(
            qa.log_conversation, store_id, body.sessionId, user_text, text,
            _metadata(model, nonStreaming=True), config.contact_email,
        )
        return JSONResponse({"role": "assistant", "content": text}, headers=headers)

    deltas, model = await asyncio.to_thread(qa.open_reply_stream, system, messages)

    def _stream() -> Iterator[str]:
        parts: List[str] = []
        finish = "stop"
        try:
            for delta in deltas:
                parts.append(delta)
                yield delta
        except Exception as e:
            finish = "error"
            logger.error("chat: stream from %s broke off for %s: %s", model, store_id, e)
        timings["aiTotal"] = _ms(ai_start)
        timings["total"] = _ms(start)
        text = "".join(parts)
        if not text:
            logger.error("chat: empty response from %s for %s", model, store_id)
        qa.log_conversation(
            store_id, body.sessionId, user_text, text,
            _metadata(model, finishReason=finish), config.contact_email,
        )

    return StreamingResponse(_stream(), media_type="text/plain; charset=utf-8", headers={**STREAM_HEADERS, **headers})
