"""
ChartRecall - FastAPI Application Entry Point

Patient-scoped clinical question answering and tiered summarization
"""

import logging
import time
import uuid
from contextlib import asynccontextmanager
from datetime import date
from typing import Any

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse

from chartrecall import __version__
from chartrecall.core.errors import (
    ChartRecallError,
    EncounterNotClosed,
    InvalidIdentifierFormat,
    IsolationViolation,
    MissingPatientIdentifier,
    ObjectNotFound,
    PatientNotFound,
    SummaryNotReady,
    UpstreamTimeout,
    UpstreamUnavailable,
)
from chartrecall.core.types import ConversationContext
from chartrecall.security.input_validation import (
    InputValidator,
    QueryRequest,
    SummarizeRequest,
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

ERROR_STATUS: dict[type[ChartRecallError], int] = {
    InvalidIdentifierFormat: status.HTTP_400_BAD_REQUEST,
    MissingPatientIdentifier: status.HTTP_400_BAD_REQUEST,
    PatientNotFound: status.HTTP_404_NOT_FOUND,
    ObjectNotFound: status.HTTP_404_NOT_FOUND,
    EncounterNotClosed: status.HTTP_409_CONFLICT,
    SummaryNotReady: status.HTTP_409_CONFLICT,
    UpstreamTimeout: status.HTTP_504_GATEWAY_TIMEOUT,
    UpstreamUnavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    logger.info("Starting ChartRecall API v%s", __version__)

    # Initialize database tables
    try:
        from chartrecall.db.postgres import init_db

        await init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.warning("Database initialization failed: %s", e)

    # Wire the query pipeline (store, index, object store, model)
    try:
        from chartrecall.pipelines.clinical import create_pipeline

        app.state.pipeline = create_pipeline()
        logger.info("Query pipeline initialized")
    except Exception as e:
        logger.warning("Query pipeline initialization failed: %s", e)
        app.state.pipeline = None

    # Initialize Ollama LLM client
    try:
        from chartrecall.llm.ollama_client import OllamaClient

        app.state.ollama_client = OllamaClient()
        if await app.state.ollama_client.health_check():
            logger.info("Ollama reachable; warming up model...")
            if not await app.state.ollama_client.warmup():
                logger.warning("LLM warmup failed (model may still be loading)")
        else:
            logger.warning("Ollama client initialized but service is unreachable")
    except Exception as e:
        logger.warning("Ollama client initialization failed: %s", e)
        app.state.ollama_client = None

    yield

    # Shutdown
    from chartrecall.db.postgres import close_db

    await close_db()
    logger.info("Shutting down ChartRecall API")


# Create FastAPI application
app = FastAPI(
    title="ChartRecall",
    description="Patient-scoped clinical query resolution and tiered summarization",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)


def _get_pipeline():
    pipeline = getattr(app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Query pipeline not available",
        )
    return pipeline


# ============================================
# Health Check Endpoints
# ============================================


@app.get("/health", tags=["Health"])
async def health_check() -> dict[str, Any]:
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": __version__,
        "service": "chartrecall-api",
    }


@app.get("/ready", tags=["Health"])
async def readiness_check() -> dict[str, Any]:
    """Readiness check with dependency status."""
    from chartrecall.db.postgres import check_database_health

    database = await check_database_health()
    ollama_client = getattr(app.state, "ollama_client", None)
    ollama_status = "unavailable"
    if ollama_client:
        ollama_status = "ok" if await ollama_client.health_check() else "degraded"
    pipeline_ready = getattr(app.state, "pipeline", None) is not None

    return {
        "ready": pipeline_ready and database.get("status") == "healthy",
        "checks": {
            "database": database.get("status", "unknown"),
            "ollama": ollama_status,
            "pipeline": "ok" if pipeline_ready else "unavailable",
        },
    }


# ============================================
# API v1 Routes
# ============================================


@app.post("/api/v1/query", tags=["Query"])
async def query_endpoint(body: QueryRequest) -> dict[str, Any]:
    """
    Answer a clinical question about one patient.

    The MRN comes from the question, else from the caller-held conversation
    MRN in the request. The response echoes the MRN to hold for follow-ups.
    """
    validator = InputValidator()
    question = validator.sanitize(body.question)
    if not validator.is_safe(question):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Query contains potentially unsafe content",
        )

    pipeline = _get_pipeline()
    context = ConversationContext(mrn=body.mrn)
    start_time = time.time()
    answer = await pipeline.answer_query(question, body.reference_date or date.today(), context)

    response = answer.to_dict()
    response["conversation_mrn"] = context.mrn
    response["processing_time_ms"] = round((time.time() - start_time) * 1000, 1)
    return response


@app.post("/api/v1/summarize", tags=["Summaries"])
async def summarize_endpoint(body: SummarizeRequest) -> dict[str, Any]:
    """Summarize one patient's record over a date range."""
    pipeline = _get_pipeline()
    result = await pipeline.summarize(body.mrn, body.start, body.end, body.condition_filter)
    return result.to_dict()


@app.post(
    "/api/v1/encounters/{encounter_id}/closed",
    tags=["Summaries"],
    status_code=status.HTTP_202_ACCEPTED,
)
async def encounter_closed_endpoint(encounter_id: str) -> dict[str, Any]:
    """Queue the encounter-tier summary for a newly closed encounter."""
    try:
        uuid.UUID(encounter_id)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid encounter id"
        ) from e

    from chartrecall.worker import summarize_closed_encounter

    task = summarize_closed_encounter.delay(encounter_id)
    return {"encounter_id": encounter_id, "task_id": task.id, "status": "queued"}


@app.get("/metrics", tags=["Monitoring"])
async def metrics_endpoint():
    """Prometheus metrics endpoint."""
    from chartrecall.observability.metrics import get_metrics_text

    return PlainTextResponse(get_metrics_text(), media_type="text/plain; version=0.0.4")


# ============================================
# Exception Handlers
# ============================================


@app.exception_handler(IsolationViolation)
async def isolation_violation_handler(request: Request, exc: IsolationViolation):
    """Abort with no content; details stay in the CRITICAL log."""
    logger.critical("Request %s aborted: isolation violation", request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Request aborted", "kind": exc.kind},
    )


@app.exception_handler(ChartRecallError)
async def chartrecall_error_handler(request: Request, exc: ChartRecallError):
    code = ERROR_STATUS.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR)
    return JSONResponse(status_code=code, content={"error": exc.message, "kind": exc.kind})


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST, content={"error": str(exc)}
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler for unhandled errors."""
    logger.exception("Unhandled exception: %s", exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "detail": str(exc) if app.debug else "An unexpected error occurred",
        },
    )


# ============================================
# Main Entry Point
# ============================================


def main():
    """Run the application using uvicorn."""
    import uvicorn

    uvicorn.run(
        "chartrecall.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )


if __name__ == "__main__":
    main()
