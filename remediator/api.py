"""
FastAPI application for Cluster Remediator.

Provides:
- REST API for remediation interactions and session lookup
- Health and readiness endpoints
- Prometheus metrics
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from . import __version__
from .config import settings
from .errors import InfrastructureUnavailable, SessionNotFound
from .metrics import get_metrics_response, metrics_middleware, remediator_info
from .models import RemediateRequest, RemediateResponse
from .remediate import Remediator, get_remediator
from .session_store import SessionStore, get_session_store

logger = structlog.get_logger(__name__)


# =============================================================================
# RESPONSE MODELS
# =============================================================================


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    timestamp: str
    components: Dict[str, str]


# =============================================================================
# APPLICATION STATE
# =============================================================================


class AppState:
    """Global application state."""

    def __init__(self):
        self.remediator: Optional[Remediator] = None
        self.store: Optional[SessionStore] = None


app_state = AppState()


# =============================================================================
# LIFECYCLE
# =============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle management."""
    logger.info("Starting Cluster Remediator", host=settings.host, port=settings.port)

    app_state.store = get_session_store()
    await app_state.store.connect()
    app_state.remediator = get_remediator()
    logger.info(
        "Remediator initialized",
        session_backend=settings.session_backend,
        llm_provider=settings.llm_provider,
        llm_model=settings.llm_model,
    )

    yield

    logger.info("Shutting down Cluster Remediator")
    await app_state.store.close()
    app_state.remediator = None


# =============================================================================
# FASTAPI APP
# =============================================================================


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    app = FastAPI(
        title="Cluster Remediator API",
        description="AI-directed investigation and remediation of Kubernetes issues",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    metrics_middleware(app)

    # Register routes
    app.include_router(health_router)
    app.include_router(remediate_router)
    app.include_router(metrics_router)

    return app


# =============================================================================
# HEALTH ROUTES
# =============================================================================

health_router = APIRouter(tags=["Health"])


@health_router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    remediator_info.info(
        {
            "version": __version__,
            "llm_provider": settings.llm_provider,
            "llm_model": settings.llm_model,
            "session_backend": settings.session_backend,
        }
    )

    return HealthResponse(
        status="healthy",
        version=__version__,
        timestamp=datetime.now(timezone.utc).isoformat(),
        components={
            "remediator": "ready" if app_state.remediator else "not_initialized",
            "session_store": settings.session_backend,
        },
    )


@health_router.get("/ready")
async def readiness_check():
    """Readiness probe for Kubernetes."""
    if not app_state.remediator:
        raise HTTPException(status_code=503, detail="Remediator not ready")
    return {"status": "ready"}


@health_router.get("/live")
async def liveness_check():
    """Liveness probe for Kubernetes."""
    return {"status": "alive"}


# =============================================================================
# REMEDIATION ROUTES
# =============================================================================

remediate_router = APIRouter(prefix="/api/v1", tags=["Remediation"])


@remediate_router.post(
    "/remediate",
    response_model=RemediateResponse,
    response_model_by_alias=True,
    response_model_exclude_none=True,
)
async def remediate(request: RemediateRequest):
    """
    Run one remediation interaction.

    Starts a new investigation for ``issue``, or continues the session named by
    ``sessionId`` (execution choice, manual-execution follow-up, or resume).
    """
    if not app_state.remediator:
        raise HTTPException(status_code=503, detail="Remediator not initialized")

    try:
        return await app_state.remediator.remediate(request)
    except SessionNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except InfrastructureUnavailable as exc:
        logger.error("Remediation aborted", error=str(exc), session_id=request.session_id)
        raise HTTPException(status_code=503, detail=str(exc))


@remediate_router.get("/sessions/{session_id}")
async def get_session(session_id: str) -> Dict[str, Any]:
    """Return the persisted session record."""
    store = app_state.store or get_session_store()
    try:
        session = await store.get(session_id)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid session id: {session_id}")
    except InfrastructureUnavailable as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    if session is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return session.model_dump(mode="json", by_alias=True)


# =============================================================================
# METRICS ROUTES
# =============================================================================

metrics_router = APIRouter(tags=["Metrics"])


@metrics_router.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    return get_metrics_response()


# =============================================================================
# ENTRY POINT
# =============================================================================

app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "remediator.api:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
