"""
Council Orchestrator FastAPI Application.

This is the main entry point for the council orchestrator API.
It delegates every stage to the CouncilOrchestrator.

DESIGN PRINCIPLE:
- main.py is a THIN HTTP LAYER
- All pipeline logic lives in council_orchestrator
- main.py only handles: HTTP concerns, request validation, response formatting
"""

import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Callable, Optional

import colorlog
import httpx
import redis
from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from app.config import Settings, load_cors_origins, load_settings
from app.models.council import StageOptions
from app.pipeline.state_store import RedisRunPersistence, RunStore
from app.services.backend_client import BackendClient
from app.services.council_errors import (
    CouncilError,
    InvalidRequestError,
    RunNotFoundError,
    StagePreconditionError,
)
from app.services.council_orchestrator import CouncilOrchestrator
from app.services.heartbeat_monitor import HeartbeatMonitor

# Load environment variables
load_dotenv()

# =============================================================================
# CONFIGURATION
# =============================================================================

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Configure logging

def setup_global_color_logging():
    # Configure root logger
    logging.basicConfig(level=getattr(logging, LOG_LEVEL.upper(), logging.INFO))
    root_logger = logging.getLogger()

    # Remove existing handlers to avoid duplicates
    root_logger.handlers.clear()

    # Create console handler
    handler = logging.StreamHandler()
    handler.setFormatter(colorlog.ColoredFormatter(
        "%(log_color)s%(levelname)-8s%(reset)s %(name)s: %(message)s",
        log_colors={
            'DEBUG': 'cyan',
            'INFO': 'green',
            'WARNING': 'yellow',
            'ERROR': 'red',
            'CRITICAL': 'bold_red',
        }
    ))
    root_logger.addHandler(handler)

setup_global_color_logging()
logger = logging.getLogger(__name__)


# =============================================================================
# APPLICATION STATE
# =============================================================================

@dataclass
class AppState:
    """Application state container for dependencies."""
    settings: Settings
    client: BackendClient
    store: RunStore
    heartbeat: HeartbeatMonitor
    orchestrator: CouncilOrchestrator


def get_orchestrator(request: Request) -> CouncilOrchestrator:
    return request.app.state.council.orchestrator


# =============================================================================
# REQUEST MODELS
# =============================================================================

class Stage1Request(BaseModel):
    """Request model for a new council run."""
    query: str = Field(
        ...,
        min_length=1,
        description="User question sent to every council member",
        json_schema_extra={"example": "What are the trade-offs of event sourcing?"}
    )
    options: Optional[StageOptions] = None


class StageRequest(BaseModel):
    """Request model for stage 2 and stage 3."""
    request_id: str = Field(..., min_length=1)
    options: Optional[StageOptions] = None


# =============================================================================
# HELPER: MAP ORCHESTRATOR ERROR TO HTTP STATUS
# =============================================================================

def _get_http_status_for_error(error: CouncilError) -> int:
    """
    Map orchestrator failures to HTTP status codes.

    - Unknown request id -> 404
    - Blank input / stage preconditions -> 400 (client called too early)
    - Anything else -> 500
    """
    if isinstance(error, RunNotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(error, (StagePreconditionError, InvalidRequestError)):
        return status.HTTP_400_BAD_REQUEST
    return status.HTTP_500_INTERNAL_SERVER_ERROR


# =============================================================================
# APP FACTORY
# =============================================================================

def create_app(
    settings_loader: Callable[[], Settings] = load_settings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    redis_client: Optional[redis.Redis] = None,
) -> FastAPI:
    """
    Build the FastAPI app.

    Settings are loaded in the lifespan so a bad configuration stops startup.
    Tests pass a fake transport and Redis client.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Initialize services on startup, cleanup on shutdown."""
        logger.info("Starting council orchestrator...")
        settings = settings_loader()

        client = BackendClient(timeout_ms=settings.timeout_ms, transport=transport)

        persistence = None
        if settings.persistence_enabled:
            persistence = RedisRunPersistence(
                redis_url=settings.redis_url,
                key_prefix=settings.persistence_key_prefix,
                client=redis_client,
            )
        store = RunStore(persistence)
        await store.bootstrap(settings.persistence_bootstrap_limit)

        heartbeat = HeartbeatMonitor(
            client,
            settings.member_urls,
            settings.chairman_url,
            interval_ms=settings.heartbeat_interval_ms,
            timeout_ms=settings.heartbeat_timeout_ms,
        )
        heartbeat.start()

        app.state.council = AppState(
            settings=settings,
            client=client,
            store=store,
            heartbeat=heartbeat,
            orchestrator=CouncilOrchestrator(settings, client, store, heartbeat),
        )
        logger.info(
            f"Council orchestrator started: {len(settings.member_urls)} member(s), "
            f"chairman {settings.chairman_url}, persistence "
            f"{'on' if store.persistence_enabled else 'off'}"
        )

        yield

        # Shutdown
        logger.info("Shutting down council orchestrator...")
        heartbeat.stop()
        await store.flush()
        await client.aclose()

    app = FastAPI(
        title="Council Orchestrator API",
        description="Three-stage answer, review and synthesis pipeline over a council of model services",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=load_cors_origins(),
        allow_origin_regex=r"^http://localhost:\d+$",
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type"],
    )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "Invalid request", "details": jsonable_encoder(exc.errors())},
        )

    @app.exception_handler(CouncilError)
    async def council_error_handler(request: Request, exc: CouncilError):
        http_status = _get_http_status_for_error(exc)
        logger.warning(f"{exc.__class__.__name__} on {request.url.path}: {exc.message}")
        return JSONResponse(status_code=http_status, content=exc.to_dict())

    _register_routes(app)
    return app


# =============================================================================
# ENDPOINTS
# =============================================================================

def _register_routes(app: FastAPI) -> None:

    @app.get("/health", tags=["Health"])
    async def health_check(orchestrator: CouncilOrchestrator = Depends(get_orchestrator)):
        """Probe every backend now and include the heartbeat snapshot."""
        return await orchestrator.get_health()

    @app.get("/heartbeat", tags=["Health"])
    async def heartbeat(orchestrator: CouncilOrchestrator = Depends(get_orchestrator)):
        """Latest background heartbeat snapshot, without probing."""
        return orchestrator.get_heartbeat()

    @app.post("/stage1", tags=["Pipeline"], summary="Collect answers from every member")
    async def stage1(
        request: Stage1Request,
        orchestrator: CouncilOrchestrator = Depends(get_orchestrator),
    ):
        logger.info(f"Received query: {request.query[:100]}")
        return await orchestrator.run_stage1(request.query, request.options)

    @app.post("/stage2", tags=["Pipeline"], summary="Collect peer reviews and aggregate rankings")
    async def stage2(
        request: StageRequest,
        orchestrator: CouncilOrchestrator = Depends(get_orchestrator),
    ):
        return await orchestrator.run_stage2(request.request_id, request.options)

    @app.post("/stage3", tags=["Pipeline"], summary="Synthesize the final answer")
    async def stage3(
        request: StageRequest,
        orchestrator: CouncilOrchestrator = Depends(get_orchestrator),
    ):
        return await orchestrator.run_stage3(request.request_id, request.options)

    @app.get("/runs", tags=["Runs"])
    async def list_runs(
        limit: int = Query(default=20),
        orchestrator: CouncilOrchestrator = Depends(get_orchestrator),
    ):
        return {"runs": await orchestrator.list_runs(max(limit, 1))}

    @app.get("/runs/{request_id}", tags=["Runs"])
    async def get_run(request_id: str, orchestrator: CouncilOrchestrator = Depends(get_orchestrator)):
        return await orchestrator.get_run(request_id)

    @app.get("/request/{request_id}", tags=["Runs"], include_in_schema=False)
    async def get_request(request_id: str, orchestrator: CouncilOrchestrator = Depends(get_orchestrator)):
        return await orchestrator.get_run(request_id)

    @app.delete("/runs/{request_id}", tags=["Runs"])
    async def delete_run(request_id: str, orchestrator: CouncilOrchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
        orchestrator.delete_run(request_id)
        return {"ok": True}


app = create_app()


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    host = os.getenv("API_HOST", "0.0.0.0")
    port = int(os.getenv("API_PORT", "9000"))

    uvicorn.run(app, host=host, port=port)
