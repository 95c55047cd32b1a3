"""Topic categorization of ads through a generative text model."""

from __future__ import annotations

import re
from typing import Any, Dict, List, Optional, Protocol, Sequence

from http_client import HttpClientProtocol
from logging_config import ContextLogger
from models import AdContent

CATEGORIES = (
    "All",
    "E-Commerce & Online Shopping",
    "Health & Wellness",
    "Beauty & Personal Care",
    "Fashion & Accessories",
    "Home & Living",
    "Parenting & Baby Products",
    "Pets & Animal Care",
    "Technology & Gadgets",
    "Finance & Investing",
    "Education & Online Learning",
    "Business & Entrepreneurship",
    "Relationships & Dating",
    "Self-Improvement & Motivation",
    "Travel & Tourism",
    "Food & Cooking",
    "Automotive & Transportation",
    "Outdoor & Adventure",
    "Entertainment & Pop Culture",
    "Legal & Consulting Services",
    "Events & Experiences",
    "Others",
)
MAX_CHARS = 800
GEMINI_API_URL = "https://generativelanguage.googleapis.com/v1beta/models"
DEFAULT_GEMINI_MODEL = "gemini-2.0-flash"

_REPLY_LINE = re.compile(r"^#(\d+):\s*(.+)$")


class TextGenerator(Protocol):
    async def generate(self, prompt: str) -> str: ...


class GeminiTextGenerator:
    """Calls the Gemini ``generateContent`` REST endpoint."""

    def __init__(
        self,
        http_client: HttpClientProtocol,
        api_key: str,
        model: str = DEFAULT_GEMINI_MODEL,
    ) -> None:
        self._http = http_client
        self._api_key = api_key
        self.model = model

    async def generate(self, prompt: str) -> str:
        payload = await self._http.post(
            f"{GEMINI_API_URL}/{self.model}:generateContent",
            json={"contents": [{"parts": [{"text": prompt}]}]},
            headers={"x-goog-api-key": self._api_key},
        )
        return _candidate_text(payload)


def _candidate_text(payload: Any) -> str:
    candidates = payload.get("candidates") if isinstance(payload, dict) else None
    if not candidates:
        raise ValueError("Generative model returned no candidates")
    parts = (candidates[0].get("content") or {}).get("parts") or []
    return "".join(part.get("text", "") for part in parts)


def format_ad_content(ad: AdContent) -> str:
    """Labelled text of one ad, cut to ``MAX_CHARS``."""

    parts = [
        f"page_name: {ad.page_name}",
        f"ad_creative_bodies: {' '.join(ad.ad_creative_bodies)}",
        f"ad_creative_link_captions: {' '.join(ad.ad_creative_link_captions)}",
        f"ad_creative_link_titles: {' '.join(ad.ad_creative_link_titles)}",
    ]
    content = "\n".join(parts).strip()
    if len(content) > MAX_CHARS:
        content = content[:MAX_CHARS] + "..."
    return content


def build_prompt(ads: Sequence[AdContent]) -> str:
    categories_list = "\n".join(CATEGORIES)
    formatted_ads = "\n\n".join(
        f"#{number} ad: {format_ad_content(ad)}" for number, ad in enumerate(ads, start=1)
    )
    return (
        "There are parsed ads from facebook. And I need you to categorize given ads "
        "into following categories. One ad can fall into few categories.\n\n"
        f"{categories_list}\n\n"
        f"{formatted_ads}\n\n"
        "Respond in the following format for each ad:\n"
        "#1: Category1, Category2\n"
        "#2: Category1\n"
        "...\n"
        "Only include the ad number and categories, nothing else."
    )


def parse_response(response: str) -> Dict[int, List[str]]:
    """Map 1-based ad numbers to the known categories named in the reply.

    Lines in any other shape, and labels outside ``CATEGORIES``, are ignored.
    """

    results: Dict[int, List[str]] = {}
    for line in response.splitlines():
        match = _REPLY_LINE.match(line.strip())
        if not match:
            continue
        categories = [
            label
            for label in (part.strip() for part in match.group(2).split(","))
            if label in CATEGORIES
        ]
        if categories:
            results[int(match.group(1))] = categories
    return results


class CategorizationService:
    """Labels ads with topic categories using a text generation model.

    All ads go into one prompt, numbered from 1. The reply is parsed back into
    a map from that number to the categories named for the ad; labels outside
    :data:`CATEGORIES` are dropped and ads the model skipped are absent.
    Generator failures are logged and re-raised.
    """

    def __init__(
        self, generator: TextGenerator, logger: Optional[ContextLogger] = None
    ) -> None:
        self._generator = generator
        self._log = logger or ContextLogger("Categorization")

    async def categorize_ads(self, ads: Sequence[AdContent]) -> Dict[int, List[str]]:
        """Categorize ``ads`` in one model call; keys are 1-based positions."""

        if not ads:
            return {}

        prompt = build_prompt(ads)
        self._log.debug("Sending categorization prompt", extra={"ad_count": len(ads)})
        try:
            response = await self._generator.generate(prompt)
        except Exception:
            self._log.error("Error categorizing ads", extra={"ad_count": len(ads)})
            raise

        categorized = parse_response(response)
        self._log.info(
            "Categorized %s of %s ads",
            len(categorized),
            len(ads),
            extra={"categories": {str(k): v for k, v in categorized.items()}},
        )
        return categorized
