"""FastAPI application exposing the Ad Library search endpoints."""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import date
from typing import Annotated, AsyncIterator, List, Optional

import httpx
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError

from cache import CacheService, InMemoryCache, RedisCache
from categorization import CategorizationService, GeminiTextGenerator
from config import Settings
from errors import ConfigurationError, UpstreamAPIError, UpstreamTimeoutError
from http_client import HttpClient
from logging_config import ContextLogger, setup_logging
from meta_client import (
    CACHE_TTL_SECONDS,
    NOT_CONFIGURED_MESSAGE,
    AdLibraryService,
    FacebookApiServiceFactory,
)
from models import (
    ActiveStatus,
    AdContent,
    AdType,
    ConnectionStatus,
    FacebookApiResponse,
    MediaType,
    SearchHistory,
    SearchParams,
    SearchType,
)
from storage import DEFAULT_POPULAR_LIMIT, MemStorage, SearchHistoryStore

MAX_RESULTS_LIMIT = 500
MAX_PREVIEW_REDIRECTS = 5
PREVIEW_DOMAINS = ("facebook.com", "fbcdn.net")

logger = ContextLogger("Routes")
router = APIRouter(prefix="/api")


def get_ad_library(request: Request) -> AdLibraryService:
    """Return the Ad Library client, or raise why it could not be built.

    A fresh error is raised per request. The one stored at startup is
    never re-raised.
    """
    service = request.app.state.ad_library
    if service is None:
        error = request.app.state.config_error
        if error is None:
            raise ConfigurationError(NOT_CONFIGURED_MESSAGE)
        raise ConfigurationError(error.message, error.problems)
    return service


def get_storage(request: Request) -> SearchHistoryStore:
    """Return the search history store."""
    return request.app.state.storage


def get_categorizer(request: Request) -> Optional[CategorizationService]:
    """Return the categorizer, or ``None`` when no Gemini key is configured."""
    return request.app.state.categorizer


def _preview_target(url: str) -> httpx.URL:
    """Parse a snapshot URL, accepting only http(s) on the Facebook hosts."""

    try:
        parsed = httpx.URL(url)
    except httpx.InvalidURL as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="url is not a valid URL",
        ) from exc
    if parsed.scheme not in ("http", "https"):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="url must be an absolute http(s) URL",
        )
    host = parsed.host.lower()
    if not any(host == domain or host.endswith("." + domain) for domain in PREVIEW_DOMAINS):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="url must point to a Facebook ad snapshot host",
        )
    return parsed


async def _search_params_dependency(
    search_terms: Annotated[
        str,
        Query(min_length=1, description="Text to search for in the ads."),
    ],
    country: Annotated[
        List[str],
        Query(description="Two letter ISO country codes; repeat or comma-separate."),
    ],
    ad_type: Annotated[AdType, Query()] = "ALL",
    ad_active_status: Annotated[ActiveStatus, Query()] = "ACTIVE",
    media_type: Annotated[MediaType, Query()] = "ALL",
    search_type: Annotated[SearchType, Query()] = "KEYWORD_UNORDERED",
    ad_delivery_date_min: Annotated[Optional[date], Query()] = None,
    ad_delivery_date_max: Annotated[Optional[date], Query()] = None,
) -> SearchParams:
    """Build the validated search parameters for downstream use."""

    codes = [code for value in country for code in value.split(",") if code.strip()]
    try:
        return SearchParams(
            search_terms=search_terms,
            search_type=search_type,
            ad_type=ad_type,
            country=codes,
            ad_active_status=ad_active_status,
            media_type=media_type,
            ad_delivery_date_min=ad_delivery_date_min,
            ad_delivery_date_max=ad_delivery_date_max,
        )
    except ValidationError as exc:
        raise RequestValidationError(
            exc.errors(include_url=False, include_context=False)
        ) from exc


async def _attach_categories(
    response: FacebookApiResponse, categorizer: CategorizationService
) -> FacebookApiResponse:
    """Label ads with categories; on failure return them unlabelled."""

    try:
        labels = await categorizer.categorize_ads(
            [AdContent.from_ad(ad) for ad in response.data]
        )
    except Exception as exc:
        logger.error("Categorization failed, returning ads without categories: %s", exc)
        return response

    ads = [
        ad.model_copy(update={"categories": labels[number]}) if number in labels else ad
        for number, ad in enumerate(response.data, start=1)
    ]
    return response.model_copy(update={"data": ads})


@router.get("/ads", response_model=FacebookApiResponse, response_model_exclude_none=True)
async def search_ads(
    params: Annotated[SearchParams, Depends(_search_params_dependency)],
    ad_library: Annotated[AdLibraryService, Depends(get_ad_library)],
    storage: Annotated[SearchHistoryStore, Depends(get_storage)],
    categorizer: Annotated[Optional[CategorizationService], Depends(get_categorizer)],
    limit: Annotated[
        Optional[int],
        Query(ge=1, le=MAX_RESULTS_LIMIT, description="Maximum number of ads to return."),
    ] = None,
    categorize: Annotated[bool, Query(description="Attach topic categories.")] = True,
) -> FacebookApiResponse:
    """Search the Ad Library and return matching ads."""

    response = await ad_library.search_ads(params, limit)
    if categorize and categorizer is not None and response.data:
        response = await _attach_categories(response, categorizer)

    await storage.create_search_history(params, len(response.data))
    return response


@router.get("/test-connection", response_model=ConnectionStatus)
async def connection_status(
    ad_library: Annotated[AdLibraryService, Depends(get_ad_library)],
) -> ConnectionStatus:
    """Check the access token with a single-result query."""
    return await ad_library.test_connection()


@router.get("/search-history", response_model=List[SearchHistory])
async def search_history(
    storage: Annotated[SearchHistoryStore, Depends(get_storage)],
) -> List[SearchHistory]:
    """Every search made since startup, oldest first."""
    return await storage.get_search_history()


@router.get("/popular-searches", response_model=List[str])
async def popular_searches(
    storage: Annotated[SearchHistoryStore, Depends(get_storage)],
    limit: Annotated[int, Query(ge=1, le=50)] = DEFAULT_POPULAR_LIMIT,
) -> List[str]:
    """Most frequent search terms, most frequent first."""
    return await storage.get_popular_searches(limit)


@router.get("/ad-preview")
async def ad_preview(
    request: Request,
    url: Annotated[str, Query(min_length=1, description="Ad snapshot URL to proxy.")],
) -> Response:
    """Fetch an ad snapshot page and relay its status, body and content type.

    Redirects are followed by hand, up to ``MAX_PREVIEW_REDIRECTS`` hops, so
    that every hop is checked against the snapshot hosts.
    """

    target = _preview_target(url)
    for _ in range(MAX_PREVIEW_REDIRECTS + 1):
        upstream = await request.app.state.http.get_raw(str(target), headers={"Accept": "*/*"})
        if upstream.next_request is None:
            return Response(
                content=upstream.content,
                status_code=upstream.status_code,
                media_type=upstream.headers.get("content-type", "text/html"),
            )
        target = _preview_target(str(upstream.next_request.url))

    logger.warning("Ad preview gave up after %s redirects", MAX_PREVIEW_REDIRECTS)
    raise HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail="Too many redirects",
    )


async def _configuration_error_handler(request: Request, exc: ConfigurationError) -> JSONResponse:
    """Missing or invalid API configuration: 500 with the problems found."""
    content = {"error": exc.message}
    if exc.problems:
        content["details"] = exc.problems
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=content)


async def _timeout_handler(request: Request, exc: UpstreamTimeoutError) -> JSONResponse:
    """Upstream did not answer in time: 504."""
    return JSONResponse(
        status_code=status.HTTP_504_GATEWAY_TIMEOUT,
        content={"error": "Upstream timeout"},
    )


async def _upstream_error_handler(request: Request, exc: UpstreamAPIError) -> JSONResponse:
    """Structured upstream failure: 502 with the mapped code and message."""
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content={
            "error": {
                "code": exc.code,
                "message": exc.message,
                "upstream_message": exc.upstream_message,
            }
        },
    )


async def _transport_error_handler(request: Request, exc: httpx.TransportError) -> JSONResponse:
    """Upstream unreachable after retries: 502."""
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content={"error": "Upstream unavailable"},
    )


async def _invalid_url_handler(request: Request, exc: httpx.InvalidURL) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": f"Invalid URL: {exc}"},
    )


def create_app(
    settings: Optional[Settings] = None,
    *,
    ad_library: Optional[AdLibraryService] = None,
    categorizer: Optional[CategorizationService] = None,
    storage: Optional[SearchHistoryStore] = None,
    cache: Optional[CacheService] = None,
    http_client: Optional[HttpClient] = None,
) -> FastAPI:
    """Build the application.

    Services are constructed once at startup and kept on ``app.state``.
    Anything passed in is used as-is instead, which is how tests inject
    doubles. Without an access token the Ad Library routes answer 500.
    """
    settings = settings or Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        setup_logging(settings.LOG_LEVEL, settings.LOG_FORMAT, settings.API_LOG_FILE or None)
        owned = []

        app.state.settings = settings
        app.state.storage = storage if storage is not None else MemStorage()
        app.state.config_error = None
        app.state.cache = cache
        if cache is None and settings.REDIS_URL:
            redis_cache = RedisCache(settings.REDIS_URL, default_ttl=CACHE_TTL_SECONDS)
            await redis_cache.connect()
            owned.append(redis_cache)
            if redis_cache.redis is not None:
                app.state.cache = redis_cache
        if app.state.cache is None:
            app.state.cache = InMemoryCache(CACHE_TTL_SECONDS)

        app.state.ad_library = ad_library
        if ad_library is None:
            try:
                app.state.ad_library = FacebookApiServiceFactory.create(
                    settings.facebook_api_config(), cache=app.state.cache
                )
                owned.append(app.state.ad_library)
            except ConfigurationError as exc:
                logger.error("Ad Library client unavailable: %s", exc)
                app.state.config_error = exc

        app.state.http = http_client
        if http_client is None:
            app.state.http = HttpClient(
                ContextLogger("HttpClient"),
                timeout=settings.REQUEST_TIMEOUT,
                retries=settings.MAX_RETRIES,
            )
            owned.append(app.state.http)

        app.state.categorizer = categorizer
        if categorizer is None and settings.GEMINI_API_KEY:
            app.state.categorizer = CategorizationService(
                GeminiTextGenerator(app.state.http, settings.GEMINI_API_KEY, settings.GEMINI_MODEL)
            )

        try:
            yield
        finally:
            for resource in owned:
                await resource.aclose()

    application = FastAPI(title=settings.APP_NAME, lifespan=lifespan)
    application.include_router(router)
    application.add_exception_handler(ConfigurationError, _configuration_error_handler)
    application.add_exception_handler(UpstreamTimeoutError, _timeout_handler)
    application.add_exception_handler(UpstreamAPIError, _upstream_error_handler)
    application.add_exception_handler(httpx.TransportError, _transport_error_handler)
    application.add_exception_handler(httpx.InvalidURL, _invalid_url_handler)
    return application


app = create_app()
