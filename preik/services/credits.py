from __future__ import annotations

import calendar
import logging
import math
import uuid
from datetime import datetime, timedelta
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel
from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError

from preik.db.base import db_session
from preik.db.models import AuditLog, Conversation, CreditUsageLog, Tenant, as_utc, utcnow

logger = logging.getLogger(__name__)

CRON_ACTION = "cron_reset_credits"
CONVERSATION_RETENTION_DAYS = 90


class CreditCheckResult(BaseModel):
    allowed: bool
    credits_used: int
    credit_limit: int
    percent_used: int


class CreditStatus(BaseModel):
    credit_limit: int
    credits_used: int
    credits_remaining: int
    percent_used: float
    billing_cycle_start: datetime
    billing_cycle_end: datetime


def add_months(dt: datetime, months: int) -> datetime:
    """Same day-of-month `months` later, clamped to the target month's last day."""
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def usage_percent(used: int, limit: int) -> int:
    """Whole percent, halves rounded up (1 of 8 is 13)."""
    return math.floor(used / limit * 100 + 0.5) if limit > 0 else 0


_DENIED = CreditCheckResult(allowed=False, credits_used=0, credit_limit=0, percent_used=0)


def check_and_increment_credits(tenant_id: str, session_id: Optional[str] = None) -> CreditCheckResult:
    """Consume one credit if the tenant has any left.

    The increment is a single conditional UPDATE, so concurrent requests can
    never push credits_used past credit_limit. Fails closed: if the database
    is unavailable the request is denied.
    """
    try:
        with db_session() as s:
            row = s.execute(
                update(Tenant)
                .where(Tenant.id == tenant_id, Tenant.credits_used < Tenant.credit_limit)
                .values(credits_used=Tenant.credits_used + 1)
                .returning(Tenant.credits_used, Tenant.credit_limit)
                .execution_options(synchronize_session=False)
            ).first()
            if row is None:
                current = s.execute(
                    select(Tenant.credits_used, Tenant.credit_limit).where(Tenant.id == tenant_id)
                ).first()
                if current is None:
                    logger.error("credits: unknown tenant %s", tenant_id)
                    return _DENIED
                used, limit = current
                return CreditCheckResult(allowed=False, credits_used=used, credit_limit=limit, percent_used=usage_percent(used, limit))
            used, limit = row
            s.add(
                CreditUsageLog(
                    id=str(uuid.uuid4()),
                    tenant_id=tenant_id,
                    session_id=session_id,
                    credits_consumed=1,
                )
            )
    except (SQLAlchemyError, RuntimeError) as e:
        logger.error("credits: check failed for tenant %s: %s", tenant_id, e)
        return _DENIED
    return CreditCheckResult(allowed=True, credits_used=used, credit_limit=limit, percent_used=usage_percent(used, limit))


def get_credit_status(tenant_id: str) -> Optional[CreditStatus]:
    try:
        with db_session() as s:
            t = s.get(Tenant, tenant_id)
            if t is None:
                logger.error("credits: status requested for unknown tenant %s", tenant_id)
                return None
            limit, used = int(t.credit_limit or 0), int(t.credits_used or 0)
            start = as_utc(t.billing_cycle_start) or utcnow()
    except (SQLAlchemyError, RuntimeError) as e:
        logger.error("credits: status failed for tenant %s: %s", tenant_id, e)
        return None
    return CreditStatus(
        credit_limit=limit,
        credits_used=used,
        credits_remaining=max(0, limit - used),
        percent_used=math.floor(used / limit * 1000 + 0.5) / 10 if limit > 0 else 0.0,
        billing_cycle_start=start,
        billing_cycle_end=add_months(start, 1),
    )


def reset_credits(tenant_id: str) -> bool:
    """Start a new billing cycle now with zero usage."""
    try:
        with db_session() as s:
            result = s.execute(
                update(Tenant)
                .where(Tenant.id == tenant_id)
                .values(credits_used=0, billing_cycle_start=utcnow(), last_credit_warning=None)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                logger.error("credits: reset requested for unknown tenant %s", tenant_id)
                return False
    except (SQLAlchemyError, RuntimeError) as e:
        logger.error("credits: reset failed for tenant %s: %s", tenant_id, e)
        return False
    return True


def should_send_warning_email(credits_used: int, credit_limit: int) -> Optional[Literal["80", "100"]]:
    if credit_limit <= 0:
        return None
    percent = credits_used / credit_limit * 100
    if percent >= 100:
        return "100"
    if percent >= 80:
        return "80"
    return None


def run_credit_reset(now: Optional[datetime] = None) -> Dict:
    """Reset every tenant whose billing cycle is over, then prune old conversations.

    Safe to trigger more than once: a run recorded in the audit log within the
    last hour makes later calls a no-op.
    """
    now = now or utcnow()
    with db_session() as s:
        recent = s.execute(
            select(AuditLog.id)
            .where(AuditLog.action == CRON_ACTION, AuditLog.created_at >= now - timedelta(hours=1))
            .limit(1)
        ).first()
        if recent is not None:
            logger.info("credit reset already ran within the last hour, skipping")
            return {"success": True, "skipped": True}
        s.add(
            AuditLog(
                id=str(uuid.uuid4()),
                actor_email="system",
                action=CRON_ACTION,
                entity_type="system",
                entity_id="cron",
                details={},
                created_at=now,
            )
        )

    cutoff = add_months(now, -1)
    with db_session() as s:
        due = s.execute(
            select(Tenant.id, Tenant.name, Tenant.credits_used)
            .where(Tenant.billing_cycle_start <= cutoff, Tenant.credits_used > 0)
            .order_by(Tenant.id.asc())
        ).all()

    results: List[Dict] = []
    for tenant_id, name, previous in due:
        ok = reset_credits(tenant_id)
        results.append({"id": tenant_id, "name": name, "success": ok})
        if ok:
            logger.info("reset credits for tenant", extra={"tenantId": tenant_id, "previousUsage": previous})
        else:
            logger.error("failed to reset credits for tenant", extra={"tenantId": tenant_id})

    success_count = sum(1 for r in results if r["success"])
    fail_count = len(results) - success_count

    deleted = 0
    try:
        with db_session() as s:
            res = s.execute(
                delete(Conversation)
                .where(Conversation.created_at < now - timedelta(days=CONVERSATION_RETENTION_DAYS))
                .execution_options(synchronize_session=False)
            )
            deleted = res.rowcount or 0
    except SQLAlchemyError as e:
        logger.error("conversation cleanup failed: %s", e)
    if deleted:
        logger.info("cleaned up old conversations", extra={"deleted": deleted})

    logger.info("credit reset complete", extra={"successCount": success_count, "failCount": fail_count})
    return {
        "success": True,
        "reset": success_count,
        "failed": fail_count,
        "details": results,
        "conversationsDeleted": deleted,
    }
