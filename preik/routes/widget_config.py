from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from preik.db.base import db_session
from preik.db.models import WidgetConfig
from preik.db.persistence import is_db_enabled
from preik.services.ratelimit import RATE_LIMITS, check_rate_limit, get_client_ip

router = APIRouter()

PUBLIC_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Cache-Control": "public, max-age=300, stale-while-revalidate=3600",
}


@router.get("/widget-config/{store_id}")
def public_widget_config(store_id: str, request: Request):
    """Widget appearance for the embed script; public, cached at the edge."""
    if not store_id or len(store_id) > 100 or not is_db_enabled():
        return JSONResponse({"config": None}, headers=PUBLIC_HEADERS)

    rl = check_rate_limit(f"widgetcfg:{get_client_ip(request.headers)}", RATE_LIMITS["widget_config"])
    if not rl.allowed:
        return JSONResponse({"config": None}, status_code=429, headers={**PUBLIC_HEADERS, "Retry-After": "60"})

    with db_session() as s:
        row = s.get(WidgetConfig, store_id)
        config = dict(row.config or {}) if row is not None else None
    return JSONResponse({"config": config}, headers=PUBLIC_HEADERS)
