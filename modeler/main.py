"""
Modeler - Main Application

Editing engine and HTTP API for hierarchical data model definitions.

A model definition is a tree of table nodes joined parent to child, with
dimension links on each node's columns. The API exposes:
- Model persistence (/v1/config/models)
- Editor sessions driving the tree editor (/v1/editor/sessions)
"""

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from modeler.core.config import settings
from modeler.errors import install_error_handlers
from modeler.modeling.routes import close_api_client, editor_router, models_router


# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)

# Add request_id filter
class RequestIdFilter(logging.Filter):
    def filter(self, record):
        if not hasattr(record, 'request_id'):
            record.request_id = '-'
        return True

for handler in logging.root.handlers:
    handler.addFilter(RequestIdFilter())

logger = logging.getLogger(__name__)


# =============================================================================
# APPLICATION INITIALIZATION
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        f"{settings.app_name} {settings.app_version} starting "
        f"({settings.environment}, persistence={settings.persistence_mode})"
    )
    if settings.persistence_mode == "remote" and not settings.api_token:
        logger.warning("MODELER_API_TOKEN not set. Upstream requests are unauthenticated.")
    yield
    await close_api_client()
    logger.info("Shutdown complete")


app = FastAPI(
    title=f"{settings.app_name} API",
    version=settings.app_version,
    description="Editing engine for hierarchical data model definitions",
    lifespan=lifespan
)

install_error_handlers(app)


# =============================================================================
# MIDDLEWARE
# =============================================================================

# Request ID middleware for tracing
@app.middleware("http")
async def add_request_id(request: Request, call_next):
    """Add request ID for tracing and structured logging."""
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4())[:8])
    request.state.request_id = request_id

    # Add to logging context
    old_factory = logging.getLogRecordFactory()

    def record_factory(*args, **kwargs):
        record = old_factory(*args, **kwargs)
        record.request_id = request_id
        return record

    logging.setLogRecordFactory(record_factory)
    try:
        response = await call_next(request)
    finally:
        logging.setLogRecordFactory(old_factory)

    response.headers["X-Request-ID"] = request_id
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*", "Authorization", "App-ID"],
)


# =============================================================================
# ROUTERS
# =============================================================================

app.include_router(models_router)
app.include_router(editor_router)


# =============================================================================
# PUBLIC ENDPOINTS
# =============================================================================

@app.get("/v1/health", tags=["Health"])
def health():
    """Public health check endpoint."""
    return {
        "status": "ok",
        "time": datetime.now(timezone.utc).isoformat(),
        "version": settings.app_version,
        "persistence": settings.persistence_mode,
    }
