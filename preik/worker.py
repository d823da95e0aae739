from __future__ import annotations

import asyncio
import logging
from typing import Dict

from dotenv import load_dotenv
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from zoneinfo import ZoneInfo

# Load env early so DATABASE_URL and friends are visible to init_db
load_dotenv()

from preik.db.base import init_db
from preik.db.persistence import is_db_enabled
from preik.logging_config import configure_logging
from preik.services.credits import run_credit_reset

log = logging.getLogger("worker")


async def job_reset_credits() -> Dict:
    """Start new billing cycles for tenants whose month is over; prune old conversations."""
    if not is_db_enabled():
        log.warning("reset_credits: database not configured, skipping")
        return {"success": False, "skipped": True}
    try:
        summary = await asyncio.to_thread(run_credit_reset)
    except Exception as e:
        log.exception("reset_credits failed: %s", e)
        return {"success": False, "error": str(e)}
    if summary.get("skipped"):
        log.info("reset_credits: already ran within the last hour")
    else:
        log.info("reset_credits: %d reset, %d failed", summary.get("reset", 0), summary.get("failed", 0))
    return summary


def build_scheduler() -> AsyncIOScheduler:
    scheduler = AsyncIOScheduler(timezone=ZoneInfo("UTC"))
    scheduler.add_job(job_reset_credits, "cron", hour=0, minute=5, id="reset_credits")  # 00:05 UTC daily
    return scheduler


async def main() -> None:
    configure_logging()
    init_db()
    scheduler = build_scheduler()
    scheduler.start()

    # The run is idempotent, so catching up on startup is safe
    await job_reset_credits()

    # Keep process alive
    await asyncio.Event().wait()


if __name__ == "__main__":
    asyncio.run(main())
