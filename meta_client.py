"""Client for the Meta Ad Library (Graph API ``ads_archive`` endpoint)."""

from __future__ import annotations

import base64
import json
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple, Union

import httpx
from pydantic import BaseModel, Field, ValidationError

from api_logger import ApiTrafficLogger
from cache import CacheService
from errors import ConfigurationError
from http_client import DEFAULT_RETRIES, DEFAULT_TIMEOUT, HttpClient, HttpClientProtocol, RateLimiter
from logging_config import ContextLogger
from models import Ad, ConnectionDetails, ConnectionStatus, Cursors, FacebookApiResponse, Paging, SearchParams

GRAPH_API_URL = "https://graph.facebook.com"
DEFAULT_API_VERSION = "v23.0"
DEFAULT_PAGE_SIZE = 24
CACHE_KEY_PREFIX = "fb_ads:"
CACHE_TTL_SECONDS = 3600
HAS_MORE_CURSOR = "has_more"
NOT_CONFIGURED_MESSAGE = "Facebook API access token not configured"

FACEBOOK_AD_FIELDS: Dict[str, Tuple[str, ...]] = {
    "BASIC": ("id", "page_name", "ad_creative_bodies", "bylines"),
    "FULL": (
        "id",
        "page_id",
        "page_name",
        "ad_creative_bodies",
        "ad_creative_link_captions",
        "ad_creative_link_descriptions",
        "ad_creative_link_titles",
        "ad_creation_time",
        "ad_delivery_start_time",
        "ad_delivery_stop_time",
        "ad_snapshot_url",
        "currency",
        "impressions",
        "spend",
        "demographic_distribution",
        "delivery_by_region",
        "publisher_platforms",
        "target_ages",
        "target_gender",
        "target_locations",
        "bylines",
        "languages",
    ),
}


def ads_archive_url(api_version: str) -> str:
    return f"{GRAPH_API_URL}/{api_version}/ads_archive"


class FacebookApiConfig(BaseModel):
    """Settings for :class:`FacebookApiService`. Times are in seconds."""

    access_token: str = Field(..., min_length=1)
    api_version: str = Field(default=DEFAULT_API_VERSION, pattern=r"^v\d+\.\d+$")
    request_timeout: Optional[float] = Field(default=None, gt=0)
    min_request_interval: Optional[float] = Field(default=None, gt=0)
    max_retries: Optional[int] = Field(default=None, gt=0)
    default_page_size: Optional[int] = Field(default=None, gt=0, le=100)


class AdLibraryService(Protocol):
    """Operations the HTTP layer needs from the Ad Library client."""

    async def test_connection(self) -> ConnectionStatus: ...

    async def search_ads(
        self, params: SearchParams, max_results: Optional[int] = None
    ) -> FacebookApiResponse: ...

    async def aclose(self) -> None: ...


def build_cache_key(params: SearchParams, max_results: int) -> str:
    """Stable key covering every search parameter and the result cap."""

    raw = CACHE_KEY_PREFIX + json.dumps(
        {**params.model_dump(mode="json"), "maxResults": max_results},
        sort_keys=True,
        separators=(",", ":"),
    )
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")


class FacebookApiService:
    """Searches the Ad Library with pagination and an optional lookaside cache."""

    def __init__(
        self,
        http_client: HttpClientProtocol,
        logger: ContextLogger,
        config: FacebookApiConfig,
        cache: Optional[CacheService] = None,
    ) -> None:
        if not config.access_token:
            raise ConfigurationError(NOT_CONFIGURED_MESSAGE)
        self._http = http_client
        self._log = logger
        self._cache = cache
        self.access_token = config.access_token
        self.api_version = config.api_version
        self.default_page_size = config.default_page_size or DEFAULT_PAGE_SIZE
        self.url = ads_archive_url(self.api_version)

        self._log.info(
            "FacebookApiService initialized",
            extra={
                "api_version": self.api_version,
                "default_page_size": self.default_page_size,
            },
        )

    async def aclose(self) -> None:
        closer = getattr(self._http, "aclose", None)
        if closer is not None:
            await closer()

    def build_query(
        self,
        params: SearchParams,
        fields: Sequence[str],
        after: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Query parameters for one ``ads_archive`` request; ``None`` values are dropped."""

        query = {
            "access_token": self.access_token,
            "search_terms": params.search_terms,
            "search_type": params.search_type,
            "ad_type": params.ad_type,
            "ad_reached_countries": json.dumps(params.country, separators=(",", ":")),
            "limit": str(limit or self.default_page_size),
            "fields": ",".join(fields),
            "ad_active_status": params.ad_active_status,
            "media_type": params.media_type,
            "ad_delivery_date_min": _iso_or_none(params.ad_delivery_date_min),
            "ad_delivery_date_max": _iso_or_none(params.ad_delivery_date_max),
            "after": after,
        }
        return {key: value for key, value in query.items() if value is not None}

    async def test_connection(self) -> ConnectionStatus:
        """Run a single-result query and report what came back."""

        self._log.info("Testing Facebook API connection")
        sample = SearchParams(
            search_terms="test",
            search_type="KEYWORD_UNORDERED",
            ad_type="ALL",
            country=["US"],
            ad_active_status="ACTIVE",
            media_type="ALL",
        )
        try:
            payload = await self._http.get(
                self.url,
                params=self.build_query(sample, FACEBOOK_AD_FIELDS["BASIC"], limit=1),
            )
        except Exception:
            self._log.error("API connection test failed")
            raise

        page = FacebookApiResponse.model_validate(payload)
        result = ConnectionStatus(
            status="connected",
            api_version=self.api_version,
            response_data=ConnectionDetails(
                data_count=len(page.data),
                has_paging=page.paging is not None,
                timestamp=datetime.now(timezone.utc).isoformat(),
            ),
        )
        self._log.info("API connection test successful", extra={"result": result})
        return result

    async def search_ads(
        self, params: SearchParams, max_results: Optional[int] = None
    ) -> FacebookApiResponse:
        """Return at most ``max_results`` ads matching ``params``.

        The ``paging`` of the result is a marker only: ``after`` is
        ``"has_more"`` when the cap was reached and the upstream had more,
        and it cannot be used to resume the search.
        """

        if max_results is None:
            max_results = self.default_page_size
        if max_results < 1:
            raise ValueError("max_results must be at least 1")

        self._log.info(
            "Searching for ads", extra={"params": params, "max_results": max_results}
        )
        try:
            cache_key = build_cache_key(params, max_results)
            if self._cache is not None:
                cached = await self._cache.get(cache_key)
                if cached is not None:
                    self._log.debug("Returning cached results", extra={"cache_key": cache_key})
                    return FacebookApiResponse.model_validate(cached)

            ads, more = await self._fetch_all_ads(params, max_results)
            has_more = more and len(ads) == max_results
            response = FacebookApiResponse(
                data=ads,
                paging=Paging(cursors=Cursors(before="", after=HAS_MORE_CURSOR))
                if has_more
                else None,
            )

            if self._cache is not None:
                await self._cache.set(
                    cache_key,
                    response.model_dump(mode="json", exclude_none=True),
                    CACHE_TTL_SECONDS,
                )
        except Exception:
            self._log.error("Ad search failed", extra={"params": params})
            raise

        self._log.info(
            "Ad search completed",
            extra={"results_count": len(ads), "has_more": has_more},
        )
        return response

    async def _fetch_all_ads(
        self, params: SearchParams, max_results: int
    ) -> Tuple[List[Ad], bool]:
        """Page through the endpoint until the cap or the last page.

        Returns the truncated ads and whether the upstream may hold more.
        """

        ads: List[Ad] = []
        after: Optional[str] = None
        page_count = 0
        start_time = time.perf_counter()

        try:
            while len(ads) < max_results:
                page_count += 1
                self._log.debug(
                    "Fetching ads page",
                    extra={"page": page_count, "current_count": len(ads)},
                )
                payload = await self._http.get(
                    self.url,
                    params=self.build_query(params, FACEBOOK_AD_FIELDS["FULL"], after),
                )
                page = FacebookApiResponse.model_validate(payload)
                ads.extend(page.data)
                after = page.after
                if not after:
                    break
        finally:
            duration_ms = int((time.perf_counter() - start_time) * 1000)
            self._log.info(
                "Meta request search_terms=%s countries=%s pages=%s duration_ms=%s",
                params.search_terms,
                ",".join(params.country),
                page_count,
                duration_ms,
            )

        more = after is not None or len(ads) > max_results
        return ads[:max_results], more


class FacebookApiServiceFactory:
    """Validates configuration and wires a ready-to-use service."""

    @staticmethod
    def create(
        config: Union[FacebookApiConfig, Mapping[str, Any]],
        cache: Optional[CacheService] = None,
        logger_context: str = "FacebookAPI",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> AdLibraryService:
        raw = config.model_dump() if isinstance(config, BaseModel) else dict(config)
        try:
            validated = FacebookApiConfig.model_validate(raw)
        except ValidationError as exc:
            problems = [
                f"{'.'.join(str(part) for part in error['loc']) or 'config'}: {error['msg']}"
                for error in exc.errors()
            ]
            if not raw.get("access_token"):
                raise ConfigurationError(NOT_CONFIGURED_MESSAGE, problems) from exc
            raise ConfigurationError("Invalid Facebook API configuration", problems) from exc

        logger = ContextLogger(logger_context)
        rate_limiter = None
        if validated.min_request_interval is not None:
            rate_limiter = RateLimiter(max_requests=1, window=validated.min_request_interval)

        http_client = HttpClient(
            logger,
            timeout=validated.request_timeout or DEFAULT_TIMEOUT,
            retries=validated.max_retries or DEFAULT_RETRIES,
            transport=transport,
            rate_limiter=rate_limiter,
            traffic_logger=ApiTrafficLogger(),
        )
        return FacebookApiService(http_client, logger, validated, cache)


def _iso_or_none(value: Any) -> Optional[str]:
    return value.isoformat() if value is not None else None
