import asyncio
import logging
import traceback
from contextlib import asynccontextmanager
from datetime import date as Date, datetime, timezone
from typing import Optional

import httpx
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .catalog import CatalogClient, is_valid_date
from .config import Settings, get_settings
from .errors import CatalogError, CatalogUnavailable, ConfigurationError, ValidationError
from .interpretation import InterpretationOrchestrator
from .llm import DashScopeClient
from .models import InterpretationRequest
from .pdf_fetch import PdfFetcher, validate_pdf_url
from .ratelimit import (
    GENERAL_LIMIT_MESSAGE,
    INTERPRETATION_LIMIT_MESSAGE,
    ClientRateLimiter,
    RateLimited,
    general_limit,
    interpretation_limit,
)
from .relay import SSE_HEADERS, RelaySession

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

EXAMPLE_PDF_URL = "https://arxiv.org/pdf/2509.19803.pdf"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ===== Papers =====

papers_router = APIRouter(prefix="/api/papers", tags=["papers"])


@papers_router.get("", dependencies=[Depends(general_limit)])
async def api_papers(request: Request, date: Optional[str] = None):
    if not date:
        return JSONResponse(
            status_code=400,
            content={"error": "Date parameter is required", "example": "/api/papers?date=2024-01-15"},
        )

    if not is_valid_date(date):
        return JSONResponse(
            status_code=400,
            content={
                "error": "Invalid date format. Please use YYYY-MM-DD format",
                "provided": date,
                "example": "2024-01-15",
            },
        )

    today = Date.today().isoformat()
    if date > today:
        return JSONResponse(
            status_code=400,
            content={"error": "Cannot fetch papers for future dates", "provided": date, "maxDate": today},
        )

    try:
        papers = await request.app.state.catalog.fetch_daily_papers(date)
    except CatalogUnavailable:
        return JSONResponse(
            status_code=503,
            content={"error": "Service temporarily unavailable", "details": "Unable to connect to HuggingFace API"},
        )
    except CatalogError as e:
        return JSONResponse(status_code=502, content={"error": "External API error", "details": str(e)})

    return {"success": True, "date": date, "count": len(papers), "papers": papers}


@papers_router.get("/health")
async def papers_health():
    return {
        "service": "papers",
        "status": "OK",
        "timestamp": _now(),
        "endpoints": {"fetchPapers": "GET /api/papers?date=YYYY-MM-DD"},
    }


# ===== AI Interpretation =====

interpretation_router = APIRouter(prefix="/api/ai-interpretation", tags=["ai-interpretation"])


@interpretation_router.post("", dependencies=[Depends(interpretation_limit)])
async def api_interpret(req: InterpretationRequest, request: Request):
    if not req.pdf_url:
        return JSONResponse(
            status_code=400,
            content={"error": "pdf_url is required", "example": {"pdf_url": EXAMPLE_PDF_URL}},
        )

    settings: Settings = request.app.state.settings
    try:
        req.pdf_url = validate_pdf_url(req.pdf_url, settings.allowed_pdf_hosts)
    except ValidationError as e:
        return JSONResponse(
            status_code=400,
            content={"error": str(e), "provided": req.pdf_url, "allowed_hosts": settings.allowed_pdf_hosts},
        )

    orchestrator: Optional[InterpretationOrchestrator] = request.app.state.orchestrator
    if orchestrator is None:
        return JSONResponse(
            status_code=503,
            content={"error": "AI interpretation is not configured", "details": "DASHSCOPE_API_KEY is not set"},
        )

    session = RelaySession(heartbeat_interval=settings.heartbeat_interval)
    return StreamingResponse(
        session.stream(lambda s: orchestrator.run(req, s)),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@interpretation_router.get("/health")
async def interpretation_health(request: Request):
    return {
        "service": "ai-interpretation",
        "status": "OK",
        "timestamp": _now(),
        "dashscope_configured": request.app.state.settings.dashscope_configured,
        "endpoints": {"interpret": "POST /api/ai-interpretation"},
    }


# ===== App =====

async def _sweep_periodically(fetcher: PdfFetcher, interval: int, max_age: int):
    while True:
        await asyncio.sleep(interval)
        fetcher.sweep_stale(max_age)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    removed = app.state.fetcher.sweep_stale(settings.stale_artifact_age)
    if removed:
        logger.info(f"Removed {removed} stale PDF(s) from {settings.scratch_dir}")
    sweeper = asyncio.create_task(
        _sweep_periodically(app.state.fetcher, settings.sweep_interval, settings.stale_artifact_age)
    )
    yield
    sweeper.cancel()


def create_app(
    settings: Optional[Settings] = None,
    *,
    pdf_transport: Optional[httpx.AsyncBaseTransport] = None,
    provider_transport: Optional[httpx.AsyncBaseTransport] = None,
    catalog_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    settings = settings or get_settings()
    logging.getLogger().setLevel(settings.log_level.upper())

    app = FastAPI(title="Daily Paper Extractor", lifespan=lifespan)
    app.state.settings = settings
    app.state.general_limiter = ClientRateLimiter(
        "general", settings.general_rate_limit, settings.general_rate_window, GENERAL_LIMIT_MESSAGE
    )
    app.state.interpretation_limiter = ClientRateLimiter(
        "ai-interpretation",
        settings.interpretation_rate_limit,
        settings.interpretation_rate_window,
        INTERPRETATION_LIMIT_MESSAGE,
    )
    app.state.catalog = CatalogClient(settings.catalog_base_url, settings.catalog_timeout, transport=catalog_transport)
    app.state.fetcher = PdfFetcher(
        settings.scratch_dir,
        settings.allowed_pdf_hosts,
        max_bytes=settings.max_pdf_bytes,
        timeout=settings.download_timeout,
        transport=pdf_transport,
    )

    try:
        client = DashScopeClient.from_settings(settings, transport=provider_transport)
        app.state.orchestrator = InterpretationOrchestrator(app.state.fetcher, client)
    except ConfigurationError as e:
        logger.warning(f"AI interpretation disabled: {e}")
        app.state.orchestrator = None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.is_dev else ["http://localhost:3000", "http://127.0.0.1:3000"],
        allow_credentials=not settings.is_dev,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(papers_router)
    app.include_router(interpretation_router)

    @app.get("/health")
    async def health_check():
        return {"status": "OK", "timestamp": _now()}

    @app.exception_handler(RateLimited)
    async def rate_limited_handler(request: Request, exc: RateLimited):
        return JSONResponse(
            status_code=429,
            content={"error": exc.message},
            headers={"Retry-After": str(exc.retry_after)},
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        fields = [str(err["loc"][-1]) for err in errors if err.get("loc")]
        content = {
            "error": "Invalid PDF URL" if "pdf_url" in fields else "Invalid request body",
            "details": [f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}" for err in errors],
        }
        if "pdf_url" in fields:
            content["example"] = {"pdf_url": EXAMPLE_PDF_URL}
        return JSONResponse(status_code=400, content=content)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return JSONResponse(status_code=404, content={"error": "Route not found"})
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error(f"Error: {traceback.format_exc()}")
        content = {"error": "Internal server error"}
        if settings.is_dev:
            content["details"] = str(exc)
        return JSONResponse(status_code=500, content=content)

    return app


app = create_app()
