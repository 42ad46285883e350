from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from prometheus_client import Counter, make_asgi_app
from starlette.background import BackgroundTask
from starlette.exceptions import HTTPException as StarletteHTTPException

from libs.core import logging as core_logging
from libs.core.llm_provider import resolve_provider
from libs.core.models import CacheRecord, ComparisonRequest, SummaryRequest
from libs.core.ndjson import NDJSON_MEDIA_TYPE
from libs.core.retry import RetryPolicy
from services.summaries.summaries_core import (
    GenerationEngine,
    InputResolver,
    ListingDirectory,
    PageFetcher,
    PreparedGeneration,
    ProfileDirectory,
    ResultCache,
    StreamingGeneration,
    SummaryConfig,
    SummaryError,
    SummaryService,
)
from services.summaries.summaries_core.errors import RateLimited

from .auth import AuthError, StaticTokenVerifier, TokenVerifier, bearer_token
from .database import create_engine, create_session_factory, init_models
from .rate_limit import RateLimiter
from .summary_store import SqlListingDirectory, SqlProfileDirectory, SqlResultCache

core_logging.configure_logging("summaries")
LOGGER = core_logging.get_logger("summaries")

API_PREFIX = "/api/v1"
NDJSON_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}

summary_generations_total = Counter(
    "summary_generations_total", "Summary and comparison generations", ["kind", "outcome"]
)
summary_cache_lookups_total = Counter(
    "summary_cache_lookups_total", "Generation cache lookups", ["kind", "result"]
)


def build_generation_engine(config: SummaryConfig) -> Optional[GenerationEngine]:
    if not config.llm_configured:
        LOGGER.warning("llm_not_configured", provider=config.llm_provider)
        return None
    provider = resolve_provider(
        config.llm_provider,
        api_key=config.openai_api_key,
        model=config.openai_model,
        base_url=config.openai_base_url,
        temperature=config.openai_temperature,
        max_output_tokens=config.openai_max_output_tokens,
        timeout_s=config.openai_timeout_s,
    )
    policy = RetryPolicy(
        max_attempts=config.generation_max_attempts,
        base_delay_s=config.generation_backoff_s,
        fallback_model=config.openai_fallback_model,
    )
    return GenerationEngine(provider, policy=policy, timeout_s=config.openai_timeout_s)


def build_service(
    config: SummaryConfig,
    *,
    cache: ResultCache,
    listings: ListingDirectory,
    profiles: ProfileDirectory,
) -> SummaryService:
    resolver = InputResolver(listings, PageFetcher(), fetch_timeout_s=config.page_fetch_timeout_s)
    return SummaryService(
        resolver=resolver,
        cache=cache,
        profiles=profiles,
        engine=build_generation_engine(config),
        cache_ttl_s=config.cache_ttl_s,
    )


def get_service(request: Request) -> SummaryService:
    return request.app.state.service


async def current_requester(request: Request) -> str:
    verifier: TokenVerifier = request.app.state.verifier
    return await verifier.verify(bearer_token(request))


def rate_limited_requester(request: Request, requester_id: str = Depends(current_requester)) -> str:
    limiter: RateLimiter = request.app.state.rate_limiter
    retry_after = limiter.hit(requester_id)
    if retry_after is not None:
        LOGGER.info("rate_limited", requester_id=requester_id, retry_after_s=retry_after)
        raise RateLimited(retry_after)
    return requester_id


def _ok(data: Any) -> JSONResponse:
    return JSONResponse({"success": True, "data": data})


def _error_response(
    status_code: int, message: str, headers: Optional[Dict[str, str]] = None
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "message": message},
        headers=headers,
    )


def _record_lookup(prepared: PreparedGeneration, force_regenerate: bool) -> None:
    if force_regenerate:
        result = "bypass"
    elif prepared.cached is not None:
        result = "hit"
    else:
        result = "miss"
    summary_cache_lookups_total.labels(kind=prepared.kind.value, result=result).inc()


async def _generate_buffered(service: SummaryService, prepared: PreparedGeneration) -> CacheRecord:
    if prepared.cached is not None:
        return prepared.cached
    try:
        record = await service.generate(prepared)
    except SummaryError:
        summary_generations_total.labels(kind=prepared.kind.value, outcome="failure").inc()
        raise
    summary_generations_total.labels(kind=prepared.kind.value, outcome="success").inc()
    return record


async def _persist_stream(streaming: StreamingGeneration, kind: str) -> None:
    await streaming.persist()
    outcome = "success" if streaming.payload is not None else "failure"
    summary_generations_total.labels(kind=kind, outcome=outcome).inc()


def _respond_stream(service: SummaryService, prepared: PreparedGeneration) -> Response:
    if prepared.cached is not None:
        return _ok(prepared.cached.to_response())
    streaming = service.stream(prepared)
    return StreamingResponse(
        streaming.body(),
        media_type=NDJSON_MEDIA_TYPE,
        headers=NDJSON_HEADERS,
        background=BackgroundTask(_persist_stream, streaming, prepared.kind.value),
    )


router = APIRouter()


@router.get("/health")
def health(service: SummaryService = Depends(get_service)) -> Dict[str, Any]:
    return {"status": "ok", "llmConfigured": bool(service and service.configured)}


@router.post("/summaries")
async def create_summary(
    body: SummaryRequest,
    requester_id: str = Depends(rate_limited_requester),
    service: SummaryService = Depends(get_service),
) -> Response:
    prepared = await service.prepare_summary(requester_id, body)
    _record_lookup(prepared, body.force_regenerate)
    record = await _generate_buffered(service, prepared)
    return _ok(record.to_response())


@router.post("/summaries/stream")
async def stream_summary(
    body: SummaryRequest,
    requester_id: str = Depends(rate_limited_requester),
    service: SummaryService = Depends(get_service),
) -> Response:
    prepared = await service.prepare_summary(requester_id, body)
    _record_lookup(prepared, body.force_regenerate)
    return _respond_stream(service, prepared)


@router.post("/summaries/compare")
async def compare_listings(
    body: ComparisonRequest,
    requester_id: str = Depends(rate_limited_requester),
    service: SummaryService = Depends(get_service),
) -> Response:
    prepared = await service.prepare_comparison(requester_id, body)
    _record_lookup(prepared, body.force_regenerate)
    record = await _generate_buffered(service, prepared)
    return _ok(record.to_response())


@router.post("/summaries/compare/stream")
async def stream_comparison(
    body: ComparisonRequest,
    requester_id: str = Depends(rate_limited_requester),
    service: SummaryService = Depends(get_service),
) -> Response:
    prepared = await service.prepare_comparison(requester_id, body)
    _record_lookup(prepared, body.force_regenerate)
    return _respond_stream(service, prepared)


@router.get("/summaries/listing/{listing_id}")
async def summary_for_listing(
    listing_id: str,
    requester_id: str = Depends(current_requester),
    service: SummaryService = Depends(get_service),
) -> Response:
    return _ok(await service.get_summary_for_listing(requester_id, listing_id))


@router.get("/summaries/{record_id}")
async def get_summary(
    record_id: str,
    requester_id: str = Depends(current_requester),
    service: SummaryService = Depends(get_service),
) -> Response:
    return _ok(await service.get_summary(requester_id, record_id))


@router.delete("/summaries/{record_id}")
async def delete_summary(
    record_id: str,
    requester_id: str = Depends(current_requester),
    service: SummaryService = Depends(get_service),
) -> Response:
    await service.delete_summary(requester_id, record_id)
    return _ok({"id": record_id})


async def _summary_error_handler(request: Request, exc: SummaryError) -> JSONResponse:
    if exc.status_code >= 500:
        LOGGER.warning("request_failed", path=request.url.path, status_code=exc.status_code)
    headers = {"Retry-After": str(exc.retry_after_s)} if isinstance(exc, RateLimited) else None
    return _error_response(exc.status_code, exc.detail, headers)


async def _auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    return _error_response(exc.status_code, exc.detail)


async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    LOGGER.info("invalid_body", path=request.url.path, errors=len(exc.errors()))
    return _error_response(400, "Invalid body")


async def _http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return _error_response(exc.status_code, str(exc.detail), getattr(exc, "headers", None))


async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    LOGGER.exception("unhandled_error", path=request.url.path, error_type=exc.__class__.__name__)
    return _error_response(500, "Internal server error")


def create_app(
    config: Optional[SummaryConfig] = None,
    *,
    service: Optional[SummaryService] = None,
    verifier: Optional[TokenVerifier] = None,
    rate_limiter: Optional[RateLimiter] = None,
) -> FastAPI:
    config = config or SummaryConfig.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        db_engine = None
        if app.state.service is None:
            db_engine = create_engine(config.database_url)
            await init_models(db_engine)
            sessions = create_session_factory(db_engine)
            app.state.service = build_service(
                config,
                cache=SqlResultCache(sessions),
                listings=SqlListingDirectory(sessions),
                profiles=SqlProfileDirectory(sessions),
            )
            LOGGER.info("summaries_started", llm_configured=config.llm_configured)
        try:
            yield
        finally:
            if db_engine is not None:
                await db_engine.dispose()

    app = FastAPI(title="Job Summary Service", lifespan=lifespan)
    app.state.config = config
    app.state.service = service
    app.state.verifier = verifier or StaticTokenVerifier(config.api_tokens)
    app.state.rate_limiter = rate_limiter or RateLimiter(config.rate_limit, config.rate_window_s)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.mount("/metrics", make_asgi_app())

    app.add_exception_handler(SummaryError, _summary_error_handler)
    app.add_exception_handler(AuthError, _auth_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, _http_error_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)

    app.include_router(router, prefix=API_PREFIX)
    return app


app = create_app()
