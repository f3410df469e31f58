"""
FastAPI Application for the Site Audit Service

Endpoints to submit an audit batch, poll its progress, download the PDF
report and delete finished audits. Requests are protected by:
- API key authentication
- Rate limiting on submission
- Per-user seo-audit permissions (X-User-Id header)
- CORS configuration
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response, Security, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

import config
from audit_jobs import AuditJobManager
from audit_log import AuditLogger
from blob_store import LocalBlobStore
from content_analyzer import LLMService
from database import create_tables, make_engine, make_session_factory
from errors import AuditServiceError, ValidationError
from job_store import JobStore
from models import AuditJob
from performance_analyzer import PerformanceAnalyzer
from permissions import default_policy
from screenshot_service import ScreenshotService
from site_crawler import SiteCrawler
from website_audit_agent import create_agent

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if config.DEBUG else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

limiter = Limiter(key_func=get_remote_address)

# API Key Security
API_KEY_NAME = "X-API-Key"
api_key_header = APIKeyHeader(name=API_KEY_NAME, auto_error=False)

if not config.API_KEY:
    logger.warning(
        "API_KEY not set in environment variables. API will be accessible without authentication."
    )


def verify_api_key(api_key: Optional[str] = Security(api_key_header)) -> bool:
    """
    Verify API key from request header.

    Raises:
        HTTPException: If API key is invalid or missing
    """
    if not config.API_KEY:
        return True

    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API key is missing. Please provide X-API-Key header.",
        )

    if api_key != config.API_KEY:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key.",
        )

    return True


def get_identity(x_user_id: Optional[str] = Header(None)) -> Optional[str]:
    """Requesting user, as forwarded by the upstream authentication layer."""
    return x_user_id.strip() if x_user_id and x_user_id.strip() else None


def get_manager(request: Request) -> AuditJobManager:
    return request.app.state.manager


# Request/Response Models
class AuditRequest(BaseModel):
    """Request model for an audit batch."""

    urls: str = Field(
        ...,
        description="URLs to audit, separated by newlines or commas",
    )
    language: str = Field(
        "en",
        min_length=2,
        max_length=8,
        description="Language code for the report (e.g. en, de, hu)",
    )


class AuditAccepted(BaseModel):
    """Response model for an admitted audit."""

    jobId: str
    status: str = "pending"
    warnings: List[str] = []


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    message: str
    version: str = "1.0.0"


class ErrorResponse(BaseModel):
    """Error response model."""

    error: str
    detail: Optional[str] = None
    error_type: Optional[str] = None
    errors: Optional[List[str]] = None
    warnings: Optional[List[str]] = None


def build_manager() -> AuditJobManager:
    """Wire the production collaborators from configuration."""
    engine = make_engine()
    create_tables(engine)
    session_factory = make_session_factory(engine)

    blob_store = LocalBlobStore()
    screenshots = ScreenshotService()
    llm_service = LLMService()
    agent = create_agent(
        SiteCrawler(blob_store, screenshots=screenshots),
        PerformanceAnalyzer(),
        llm_service,
    )
    return AuditJobManager(
        store=JobStore(session_factory),
        blob_store=blob_store,
        agent=agent,
        llm_service=llm_service,
        permissions=default_policy(),
        audit_logger=AuditLogger(session_factory),
        on_shutdown=screenshots.close,
    )


# Lifespan context manager
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan events for the FastAPI app."""
    logger.info("Starting Site Audit API...")
    if getattr(app.state, "manager", None) is None:
        app.state.manager = build_manager()
    # Fails orphaned jobs left by a crashed process, now and periodically
    app.state.manager.start_stale_sweeper()
    yield
    logger.info("Shutting down Site Audit API...")
    await app.state.manager.shutdown()


# Create FastAPI app
app = FastAPI(
    title="Site Audit API",
    description="Background SEO audits of URL batches with live progress and PDF reports",
    version="1.0.0",
    lifespan=lifespan,
)

# Add rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AuditServiceError)
async def audit_error_handler(request: Request, exc: AuditServiceError) -> JSONResponse:
    body: Dict[str, Any] = {
        "error": exc.message,
        "detail": exc.detail,
        "error_type": exc.error_type,
    }
    if isinstance(exc, ValidationError):
        body["errors"] = exc.errors
        body["warnings"] = exc.warnings
    if exc.status_code >= 500:
        logger.error(f"{exc.error_type}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=body)


# Routes
@app.get(
    "/health",
    response_model=HealthResponse,
    tags=["Health"],
    summary="Health check endpoint",
)
async def health_check():
    return HealthResponse(
        status="healthy",
        message="Site Audit API is running",
        version="1.0.0",
    )


@app.post(
    "/api/v1/audits",
    response_model=AuditAccepted,
    status_code=status.HTTP_202_ACCEPTED,
    responses={400: {"model": ErrorResponse}, 403: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    tags=["SEO Audit"],
    summary="Submit a batch of URLs for auditing",
    dependencies=[Depends(verify_api_key)],
)
@limiter.limit(f"{config.RATE_LIMIT_PER_MINUTE}/minute")
async def submit_audit(
    request_data: AuditRequest,
    request: Request,
    identity: Optional[str] = Depends(get_identity),
    manager: AuditJobManager = Depends(get_manager),
):
    """
    Start a background audit of up to SEO_AUDIT_MAX_URLS URLs.

    The audit runs after the response is sent; poll
    GET /api/v1/audits/{job_id} for progress and results.
    """
    logger.info(f"Received audit request from user={identity!r}")
    job_id, warnings = await manager.submit(identity, request_data.urls, request_data.language)
    return AuditAccepted(jobId=job_id, status="pending", warnings=warnings)


@app.get(
    "/api/v1/audits/{job_id}",
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    tags=["SEO Audit"],
    summary="Audit status, progress and results",
    dependencies=[Depends(verify_api_key)],
)
async def get_audit(
    job_id: str,
    identity: Optional[str] = Depends(get_identity),
    manager: AuditJobManager = Depends(get_manager),
) -> Dict[str, Any]:
    job: AuditJob = await manager.get_status(identity, job_id)
    return job.model_dump(by_alias=True, mode="json")


@app.get(
    "/api/v1/audits/{job_id}/report",
    response_class=Response,
    responses={
        200: {"content": {"application/pdf": {}}},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    },
    tags=["SEO Audit"],
    summary="Download the PDF report of a completed audit",
    dependencies=[Depends(verify_api_key)],
)
async def get_audit_report(
    job_id: str,
    identity: Optional[str] = Depends(get_identity),
    manager: AuditJobManager = Depends(get_manager),
):
    pdf_bytes = await manager.get_report(identity, job_id)
    return Response(
        content=pdf_bytes,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="seo-audit-{job_id}.pdf"'},
    )


@app.delete(
    "/api/v1/audits/{job_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    tags=["SEO Audit"],
    summary="Delete a finished audit and its files",
    dependencies=[Depends(verify_api_key)],
)
async def delete_audit(
    job_id: str,
    identity: Optional[str] = Depends(get_identity),
    manager: AuditJobManager = Depends(get_manager),
):
    await manager.delete(identity, job_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.get(
    "/",
    tags=["Root"],
    summary="API root endpoint",
)
async def root():
    return {
        "name": "Site Audit API",
        "version": "1.0.0",
        "description": "Background SEO audits of URL batches with live progress and PDF reports",
        "endpoints": {
            "health": "/health",
            "submit": "/api/v1/audits",
            "status": "/api/v1/audits/{job_id}",
            "report": "/api/v1/audits/{job_id}/report",
            "docs": "/docs",
            "redoc": "/redoc",
        },
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=config.HOST,
        port=config.PORT,
        reload=config.DEBUG,
        log_level="info",
    )
