import hmac
import logging
import os
from typing import Optional

from fastapi import APIRouter, Header, HTTPException

from preik.db.persistence import is_db_enabled
from preik.services.credits import run_credit_reset

router = APIRouter()
logger = logging.getLogger(__name__)


def _authorized(authorization: Optional[str]) -> bool:
    secret = os.getenv("CRON_SECRET", "")
    if not secret:
        return False
    return hmac.compare_digest((authorization or "").encode(), f"Bearer {secret}".encode())


@router.get("/cron/reset-credits")
def cron_reset_credits(authorization: Optional[str] = Header(default=None)):
    if not _authorized(authorization):
        logger.warning("cron: unauthorized reset-credits attempt")
        raise HTTPException(status_code=401, detail="Unauthorized")
    if not is_db_enabled():
        raise HTTPException(status_code=503, detail="Database not configured")
    return run_credit_reset()
