import logging
import os
from dotenv import load_dotenv

# Load .env as early as possible so downstream modules (e.g., DB) see env vars
load_dotenv()

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from preik.logging_config import configure_logging
from preik.routes import health, chat, ingest, scrape, tenant, admin, cron, widget_config
from preik.db.base import init_db

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="Preik Backend")

# Dashboard origins; the widget endpoints below answer any origin themselves
origins_env = os.getenv(
    "ALLOW_ORIGINS",
    "http://localhost:3000,https://preik.ai,https://www.preik.ai",
)
regex_env = os.getenv("ALLOW_ORIGIN_REGEX", "")

raw_origins = [o.strip() for o in origins_env.split(",") if o.strip()] if origins_env else ["*"]
allowed_origins = [o for o in raw_origins if "*" not in o or o == "*"]
allow_origin_regex = regex_env.strip() or None

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_origin_regex=allow_origin_regex,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Embedded on tenant sites; origin checks happen per tenant inside the handlers
WIDGET_PATHS = ("/api/chat", "/api/widget-config/")


@app.middleware("http")
async def widget_preflight(request: Request, call_next):
    path = request.url.path
    if request.method == "OPTIONS" and (path == WIDGET_PATHS[0] or path.startswith(WIDGET_PATHS[1])):
        return Response(
            status_code=204,
            headers={
                "Access-Control-Allow-Origin": request.headers.get("origin") or "*",
                "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
                "Access-Control-Allow-Headers": "Content-Type",
                "Access-Control-Max-Age": "86400",
            },
        )
    return await call_next(request)


@app.exception_handler(RequestValidationError)
async def _validation_error(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"error": "Invalid request", "details": jsonable_encoder(exc.errors())})


@app.exception_handler(Exception)
async def _unhandled_error(request: Request, exc: Exception):
    logger.exception("unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


@app.on_event("startup")
def _startup():
    # Initialize DB if configured
    init_db()


app.include_router(health.router)
app.include_router(chat.router, prefix="/api")
app.include_router(ingest.router, prefix="/api")
app.include_router(scrape.router, prefix="/api")
app.include_router(tenant.router, prefix="/api")
app.include_router(admin.router, prefix="/api")
app.include_router(cron.router, prefix="/api")
app.include_router(widget_config.router, prefix="/api")


@app.get("/")
def root():
    return {"message": "Preik backend running"}
