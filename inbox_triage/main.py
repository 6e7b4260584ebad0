"""
FastAPI application entry point.

Run with:
    uvicorn inbox_triage.main:app --reload --port 8000
"""

import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from inbox_triage.agent.prompts import PromptBuilder
from inbox_triage.api.routes_emails import router as email_router
from inbox_triage.config import settings
from inbox_triage.llm.client import build_generation_client
from inbox_triage.logging.config import current_user_var, request_id_var, setup_logging
from inbox_triage.storage.locks import KeyedLocks
from inbox_triage.storage.store import build_document_store

# --- Initialize logging FIRST ---
setup_logging(level=settings.log_level)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the long-lived collaborators once and close them on shutdown."""
    app.state.prompts = PromptBuilder(settings.prompt_config_path)
    app.state.llm = build_generation_client()
    app.state.store = build_document_store()
    app.state.document_locks = KeyedLocks()
    app.state.sync_locks = KeyedLocks()

    logger.info(
        "app.started",
        extra={
            "action": "app.started",
            "provider": settings.generation_provider,
            "store_backend": settings.store_backend,
            "prompt_version": app.state.prompts.version,
        },
    )
    try:
        yield
    finally:
        await app.state.llm.aclose()
        await app.state.store.close()


app = FastAPI(
    title=settings.app_name,
    docs_url="/docs" if settings.app_env == "development" else None,
    redoc_url=None,
    lifespan=lifespan,
)


# --- Middleware: Request context + logging ---
@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    """Set up request ID and request timing."""
    req_id = str(uuid.uuid4())[:8]
    request_id_var.set(req_id)
    current_user_var.set("anonymous")

    start = time.monotonic()
    response = await call_next(request)

    response.headers["X-Request-ID"] = req_id

    latency_ms = int((time.monotonic() - start) * 1000)
    logger.info(
        "http.request",
        extra={
            "action": "http.request",
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "latency_ms": latency_ms,
        },
    )

    return response


app.include_router(email_router)


# --- Health check endpoints ---
@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/ready")
async def ready(request: Request):
    """Readiness: config loaded and the generation engine answers its probe."""
    checks = {
        "config_loaded": True,
        "prompts_loaded": bool(getattr(request.app.state, "prompts", None)),
        "generation_engine": await request.app.state.llm.health(),
    }
    all_ok = all(checks.values())
    return {"status": "ready" if all_ok else "not_ready", "checks": checks}
