"""
FastAPI application for the project voting API.

Lists projects, accepts captcha-gated votes while the voting window is
open and reports per-IP capped vote totals. Storage and captcha checks
are delegated to remote HTTP services.
"""
import logging
import math
import time
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import APIRouter, Depends, FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from pydantic import ValidationError
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException

from .captcha import CaptchaVerifier
from .config import Settings, get_settings
from .database import Database
from .errors import InternalError
from .models import (
    ErrorResponse,
    HealthResponse,
    Project,
    VoteRequest,
    VoteTally,
    VotingStatus,
)
from .rate_limit import create_limiter, get_client_ip

logger = logging.getLogger(__name__)

NOT_FOUND_BODY = "404, not found!"
UNEXPECTED_ERROR_MESSAGE = "An unexpected error occurred."

# Prometheus metrics
vote_counter = Counter(
    "votes_submitted_total",
    "Total number of votes recorded",
    ["project_id"]
)
vote_errors = Counter(
    "vote_errors_total",
    "Total number of rejected vote submissions",
    ["error_type"]
)
request_duration = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint", "status"]
)


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_database(request: Request) -> Database:
    return request.app.state.database


def get_captcha(request: Request) -> CaptchaVerifier:
    return request.app.state.captcha


def parse_project_id(raw: Optional[str]) -> int:
    """
    Parse the project id path segment.

    Raises:
        InternalError: 400 if the id is missing, not a number, zero,
            negative or not integral
    """
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise InternalError("Invalid project id", status.HTTP_400_BAD_REQUEST)

    if not math.isfinite(value) or value <= 0 or not value.is_integer():
        raise InternalError("Invalid project id", status.HTTP_400_BAD_REQUEST)

    return int(value)


async def read_vote_request(request: Request) -> VoteRequest:
    """Decode the vote body, treating malformed JSON like a missing token."""
    try:
        payload = await request.json()
    except ValueError:
        payload = {}

    try:
        return VoteRequest.model_validate(payload if isinstance(payload, dict) else {})
    except ValidationError as e:
        logger.debug(f"Rejected vote body: {e}")
        return VoteRequest()


router = APIRouter()


@router.get("/projects", response_model=list[Project])
async def list_projects(
    response: Response,
    settings: Settings = Depends(get_app_settings),
    database: Database = Depends(get_database),
) -> list[Project]:
    """
    List all projects.

    Vote records are never included. The response may be cached by
    browsers and shared caches.
    """
    documents = await database.get_projects()
    response.headers["Cache-Control"] = settings.PROJECTS_CACHE_CONTROL
    return [Project.model_validate(document) for document in documents]


@router.get("/projects/vote-count", response_model=list[VoteTally])
async def get_vote_counts(database: Database = Depends(get_database)) -> list[VoteTally]:
    """Get per-project vote totals (each IP counted at most VOTE_CAP_PER_IP times), highest first."""
    documents = await database.get_vote_counts()
    return [VoteTally.model_validate(document) for document in documents]


VOTE_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Invalid project id or captcha response"},
    404: {"model": ErrorResponse, "description": "Project not found"},
    408: {"model": ErrorResponse, "description": "Voting time is over"},
    422: {"model": ErrorResponse, "description": "Invalid captcha"},
    429: {"description": "Rate limit exceeded"},
    500: {"model": ErrorResponse, "description": "Internal server error"}
}


async def cast_vote(
    request: Request,
    project_id: str,
    settings: Settings = Depends(get_app_settings),
    database: Database = Depends(get_database),
    captcha: CaptchaVerifier = Depends(get_captcha),
) -> Response:
    """
    Cast a vote for a project.

    - **project_id**: Project identifier (positive integer)
    - **captchaResponse**: Captcha token in the JSON body

    Returns 201 with an empty body once the vote is stored.
    """
    try:
        pid = parse_project_id(project_id)
    except InternalError:
        vote_errors.labels(error_type="invalid_project_id").inc()
        raise

    vote = await read_vote_request(request)
    if not vote.captcha_response:
        vote_errors.labels(error_type="invalid_captcha_response").inc()
        raise InternalError("Invalid captcha response", status.HTTP_400_BAD_REQUEST)

    if settings.remaining_voting_time() <= 0:
        vote_errors.labels(error_type="voting_closed").inc()
        raise InternalError("Voting time is over", 408)

    ip = get_client_ip(request)

    captcha_valid = await captcha.verify(settings.RECAPTCHA_SECRET, vote.captcha_response, ip)
    if not captcha_valid:
        vote_errors.labels(error_type="captcha_rejected").inc()
        raise InternalError("Invalid captcha", 422)

    changed = await database.vote(pid, ip, request.headers.get("User-Agent", ""))
    if not changed:
        vote_errors.labels(error_type="project_not_found").inc()
        raise InternalError(
            "Could not find project. Nothing has changed.",
            status.HTTP_404_NOT_FOUND
        )

    vote_counter.labels(project_id=str(pid)).inc()
    logger.info(f"Vote recorded: project_id={pid}, ip={ip}")

    return Response(status_code=status.HTTP_201_CREATED)


def register_vote_route(app: FastAPI, limiter: Optional[Limiter] = None) -> None:
    """Mount the vote endpoint, behind the per-IP limit when one is configured."""
    endpoint = cast_vote
    if limiter is not None:
        endpoint = limiter.limit(app.state.settings.VOTE_RATE_LIMIT)(cast_vote)

    app.add_api_route(
        "/projects/{project_id}/vote",
        endpoint,
        methods=["POST"],
        status_code=status.HTTP_201_CREATED,
        response_class=Response,
        responses=VOTE_RESPONSES
    )


@router.get("/status")
async def voting_status(settings: Settings = Depends(get_app_settings)) -> JSONResponse:
    """Report whether voting is open and, if so, the milliseconds left."""
    voting = VotingStatus.from_remaining(settings.remaining_voting_time())
    return JSONResponse(content=voting.to_response())


@router.get(
    "/health",
    response_model=HealthResponse,
    responses={
        503: {"model": HealthResponse, "description": "Service unhealthy"}
    }
)
async def health_check(database: Database = Depends(get_database)) -> JSONResponse:
    """Check reachability of the document store."""
    store_healthy = await database.check_health()
    services = {"document_store": "connected" if store_healthy else "disconnected"}

    response = HealthResponse(
        status="healthy" if store_healthy else "unhealthy",
        services=services
    )
    return JSONResponse(
        status_code=status.HTTP_200_OK if store_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content=response.model_dump(mode="json")
    )


@router.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open and close the outbound HTTP clients."""
    settings: Settings = app.state.settings
    logger.info(f"Starting {settings.SERVICE_NAME} service...")

    try:
        await app.state.database.initialize()
        await app.state.captcha.initialize()
        logger.info(f"{settings.SERVICE_NAME} started successfully")
    except Exception as e:
        logger.error(f"Failed to start {settings.SERVICE_NAME}: {e}")
        raise

    yield

    logger.info(f"Shutting down {settings.SERVICE_NAME} service...")
    await app.state.captcha.close()
    await app.state.database.close()
    logger.info(f"{settings.SERVICE_NAME} shut down successfully")


def register_error_handlers(app: FastAPI) -> None:
    """Render every failure as `{"error": message}` and unknown routes as plain text."""

    @app.exception_handler(InternalError)
    async def internal_error_handler(request: Request, exc: InternalError) -> JSONResponse:
        level = logging.WARNING if exc.http_status < 500 else logging.ERROR
        logger.log(level, f"An error occurred on {request.method} {request.url.path}: {exc!r}")
        return JSONResponse(status_code=exc.http_status, content=exc.to_response())

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> Response:
        if exc.status_code in (status.HTTP_404_NOT_FOUND, status.HTTP_405_METHOD_NOT_ALLOWED):
            return PlainTextResponse(NOT_FOUND_BODY, status_code=status.HTTP_404_NOT_FOUND)
        return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(f"An error occurred on {request.method} {request.url.path}", exc_info=exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": UNEXPECTED_ERROR_MESSAGE},
            # Rendered outside the http middlewares, so the CORS header is set here
            headers={"access-control-allow-origin": "*"}
        )


def create_app(
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Configuration (defaults to the environment)
        transport: Optional httpx transport shared by the outbound clients

    Returns:
        Configured FastAPI app
    """
    settings = settings or get_settings()

    logging.basicConfig(
        level=logging.INFO if not settings.DEBUG else logging.DEBUG,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    app = FastAPI(
        title="Project Voting API",
        description="API for listing projects, casting votes and reading vote totals",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.settings = settings
    app.state.database = Database(settings, transport=transport)
    app.state.captcha = CaptchaVerifier(settings, transport=transport)

    limiter = None
    if settings.VOTE_RATE_LIMIT:
        limiter = create_limiter()
        app.state.limiter = limiter
        app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    register_error_handlers(app)

    @app.middleware("http")
    async def prometheus_middleware(request: Request, call_next):
        """Track request duration per matched route."""
        start = time.perf_counter()
        response = await call_next(request)

        route = request.scope.get("route")
        request_duration.labels(
            method=request.method,
            endpoint=getattr(route, "path", "unmatched"),
            status=response.status_code
        ).observe(time.perf_counter() - start)

        return response

    @app.middleware("http")
    async def cors_middleware(request: Request, call_next):
        """Answer bare preflight requests and open every response to any origin."""
        if request.method == "OPTIONS":
            response = Response(status_code=status.HTTP_204_NO_CONTENT)
            response.headers["access-control-allow-methods"] = "GET, POST"
            response.headers["access-control-allow-headers"] = "Content-Type"
        else:
            response = await call_next(request)

        response.headers["access-control-allow-origin"] = "*"
        return response

    # CORS preflight requests carrying Origin are answered here first
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    app.include_router(router)
    register_vote_route(app, limiter)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "services.voting_api.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level="info"
    )
