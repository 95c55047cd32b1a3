"""Pydantic models for the Ad Library search API."""

from __future__ import annotations

from datetime import date, datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

SearchType = Literal["KEYWORD_UNORDERED", "KEYWORD_EXACT_PHRASE"]
AdType = Literal["ALL", "POLITICAL_AND_ISSUE_ADS"]
ActiveStatus = Literal["ACTIVE", "ALL", "INACTIVE"]
MediaType = Literal["ALL", "IMAGE", "MEME", "VIDEO", "NONE"]


class SearchParams(BaseModel):
    """Validated filters for one Ad Library search."""

    model_config = ConfigDict(str_strip_whitespace=True, frozen=True)

    search_terms: str = Field(..., min_length=1, description="Text to search for.")
    search_type: SearchType = Field(
        default="KEYWORD_UNORDERED",
        description="Exact phrase or unordered keywords.",
    )
    ad_type: AdType = "ALL"
    country: List[str] = Field(
        ...,
        min_length=1,
        description="Two letter ISO country codes the ads reached.",
    )
    ad_active_status: ActiveStatus = "ACTIVE"
    media_type: MediaType = "ALL"
    ad_delivery_date_min: Optional[date] = None
    ad_delivery_date_max: Optional[date] = None

    @field_validator("country")
    @classmethod
    def normalise_countries(cls, value: List[str]) -> List[str]:
        """Upper-case every code and require exactly two letters."""

        codes = []
        for code in value:
            code = code.strip().upper()
            if len(code) != 2 or not code.isalpha():
                raise ValueError(f"country code must be two letters, got {code!r}")
            codes.append(code)
        return codes

    @model_validator(mode="after")
    def check_date_range(self) -> "SearchParams":
        """Reject a delivery window that ends before it starts."""
        low, high = self.ad_delivery_date_min, self.ad_delivery_date_max
        if low is not None and high is not None and low > high:
            raise ValueError("ad_delivery_date_min must not be after ad_delivery_date_max")
        return self


class Bounds(BaseModel):
    """Lower/upper range reported for impressions and spend."""

    lower_bound: Optional[int] = None
    upper_bound: Optional[int] = None


class TargetLocation(BaseModel):
    """A place an ad was targeted at, or excluded from."""

    model_config = ConfigDict(extra="allow")

    name: Optional[str] = None
    type: Optional[str] = None
    excluded: bool = False
    num_obfuscated: int = 0


class RegionDelivery(BaseModel):
    """Share of an ad's reach delivered in one region."""

    region: Optional[str] = None
    percentage: Optional[float] = None


class DemographicShare(BaseModel):
    """Share of an ad's reach for one age range and gender."""

    age: Optional[str] = None
    gender: Optional[str] = None
    percentage: Optional[float] = None


class Ad(BaseModel):
    """An archived ad as returned by the Ad Library.

    Creative fields are lists because one ad can carry several variants.
    Unknown upstream fields are kept as-is.
    """

    model_config = ConfigDict(extra="allow")

    id: str
    page_id: Optional[str] = None
    page_name: Optional[str] = None
    ad_creative_bodies: List[str] = Field(default_factory=list)
    ad_creative_link_captions: List[str] = Field(default_factory=list)
    ad_creative_link_titles: List[str] = Field(default_factory=list)
    ad_creative_link_descriptions: List[str] = Field(default_factory=list)
    ad_creation_time: Optional[str] = None
    ad_delivery_start_time: Optional[str] = None
    ad_delivery_stop_time: Optional[str] = None
    ad_snapshot_url: Optional[str] = None
    currency: Optional[str] = None
    bylines: Optional[str] = None
    languages: Optional[List[str]] = None
    publisher_platforms: Optional[List[str]] = None
    target_ages: Optional[List[str]] = None
    target_gender: Optional[str] = None
    target_locations: Optional[List[TargetLocation]] = None
    delivery_by_region: Optional[List[RegionDelivery]] = None
    demographic_distribution: Optional[List[DemographicShare]] = None
    impressions: Optional[Bounds] = None
    spend: Optional[Bounds] = None
    categories: Optional[List[str]] = None


class Cursors(BaseModel):
    """Opaque Graph API page cursors."""

    before: Optional[str] = None
    after: Optional[str] = None


class Paging(BaseModel):
    """Pagination block of a Graph API page.

    ``next`` is the ready-made URL of the following page. The service pages
    with ``cursors.after``.
    """

    cursors: Optional[Cursors] = None
    next: Optional[str] = None


class FacebookApiResponse(BaseModel):
    """One page of ads, or a merged search result."""

    data: List[Ad] = Field(default_factory=list)
    paging: Optional[Paging] = None

    @property
    def after(self) -> Optional[str]:
        """The continuation cursor, if the upstream reported one."""

        if self.paging is None or self.paging.cursors is None:
            return None
        return self.paging.cursors.after or None


class ConnectionDetails(BaseModel):
    """What the single-result connection query returned."""

    data_count: int
    has_paging: bool
    timestamp: str


class ConnectionStatus(BaseModel):
    """Outcome of a successful connection test."""

    status: str
    api_version: str
    response_data: ConnectionDetails


class AdContent(BaseModel):
    """Text of one ad, as sent for categorization."""

    page_name: str = ""
    ad_creative_bodies: List[str] = Field(default_factory=list)
    ad_creative_link_captions: List[str] = Field(default_factory=list)
    ad_creative_link_titles: List[str] = Field(default_factory=list)

    @classmethod
    def from_ad(cls, ad: Ad) -> "AdContent":
        """Take the text fields of ``ad``; a missing page name becomes empty."""
        return cls(
            page_name=ad.page_name or "",
            ad_creative_bodies=ad.ad_creative_bodies,
            ad_creative_link_captions=ad.ad_creative_link_captions,
            ad_creative_link_titles=ad.ad_creative_link_titles,
        )


class SearchHistory(BaseModel):
    """A completed search. Never modified after creation."""

    model_config = ConfigDict(frozen=True)

    id: int
    search_params: SearchParams
    result_count: int
    timestamp: datetime
