"""
AgentFlow Backend API
=====================
B2B sales-to-invoice pipeline: outreach, negotiation with human-approved
offers, invoicing and lifecycle follow-ups.
Orchestrator: LangGraph | LLM: OpenRouter (OpenAI-compatible)
"""

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import settings
from app.logging_config import setup_logging
from app.database import engine, init_db
from app.admin import setup_admin
from app.agents.orchestrator import WorkflowEngine
from app.errors import (
    AgentFlowError,
    DeliveryError,
    EntityNotFoundError,
    InvalidTransitionError,
    LLMOutputError,
    OfferConflictError,
)
from app.services.lifecycle_poller import LifecyclePoller

from app.routers import (
    deals_router,
    workflows_router,
    offers_router,
    tasks_router,
    settings_router,
    ws_router,
)

logger = logging.getLogger("main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    # ── Startup ──
    setup_logging("DEBUG" if settings.DEBUG else "INFO")
    logger.info("Starting AgentFlow Backend v1.0.0")
    logger.info("LLM model: %s", settings.LLM_MODEL)

    init_db()
    logger.info("Database tables initialised (%s)", settings.DATABASE_URL.split("://")[0])

    app.state.engine = WorkflowEngine()
    app.state.poller = LifecyclePoller(app.state.engine)
    if settings.POLLER_ENABLED:
        await app.state.poller.start()
    else:
        logger.info("Lifecycle poller disabled (POLLER_ENABLED=false)")
    logger.info("AgentFlow Backend ready, listening on %s:%s", settings.HOST, settings.PORT)

    yield

    # ── Shutdown ──
    logger.info("Shutting down AgentFlow Backend...")
    await app.state.poller.stop()


app = FastAPI(
    title="AgentFlow API",
    description="Multi-agent B2B sales pipeline from first contact to invoice.",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Admin UI, available at /admin (manual review of failed tasks)
setup_admin(app, engine)


# ── Error mapping ──

ERROR_STATUS = [
    (EntityNotFoundError, 404),
    (InvalidTransitionError, 409),
    (OfferConflictError, 409),
    (DeliveryError, 502),
    (LLMOutputError, 502),
]


@app.exception_handler(AgentFlowError)
async def agentflow_error_handler(request: Request, exc: AgentFlowError):
    status_code = next((code for cls, code in ERROR_STATUS if isinstance(exc, cls)), 500)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


# Register routers
app.include_router(deals_router)
app.include_router(workflows_router)
app.include_router(offers_router)
app.include_router(tasks_router)
app.include_router(settings_router)
app.include_router(ws_router)


@app.get("/", tags=["Health"])
async def root():
    return {
        "service": "AgentFlow API",
        "version": "1.0.0",
        "status": "operational",
    }


@app.get("/health", tags=["Health"])
async def health_check():
    return {
        "status": "healthy",
        "database": "connected",
        "poller": settings.POLLER_ENABLED,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
    )
