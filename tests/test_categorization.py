"""Tests for ad categorization."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import List

import pytest
import respx


sys.path.append(str(Path(__file__).resolve().parents[1]))

from categorization import (
    CATEGORIES,
    GEMINI_API_URL,
    MAX_CHARS,
    CategorizationService,
    GeminiTextGenerator,
    build_prompt,
    format_ad_content,
    parse_response,
)
from http_client import HttpClient
from logging_config import ContextLogger
from models import Ad, AdContent


class RecordingGenerator:
    def __init__(self, reply: str) -> None:
        self.reply = reply
        self.prompts: List[str] = []

    async def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        return self.reply


class BrokenGenerator:
    async def generate(self, prompt: str) -> str:
        raise RuntimeError("quota exceeded")


def test_parse_response_keeps_only_known_categories() -> None:
    reply = "#1: Health & Wellness, Beauty & Personal Care\n#2: garbage-not-a-category"
    assert parse_response(reply) == {1: ["Health & Wellness", "Beauty & Personal Care"]}


def test_parse_response_ignores_malformed_lines() -> None:
    reply = "\n".join(
        [
            "Here are the categories:",
            "  #3:  Travel & Tourism ,Food & Cooking  ",
            "#4 Others",
            "#5: Pets & Animal Care, Dinosaurs",
            "# 6: Others",
        ]
    )
    assert parse_response(reply) == {
        3: ["Travel & Tourism", "Food & Cooking"],
        5: ["Pets & Animal Care"],
    }


def test_format_ad_content_truncates_long_text() -> None:
    ad = AdContent(page_name="Shop", ad_creative_bodies=["x" * 2000])
    content = format_ad_content(ad)

    assert len(content) == MAX_CHARS + 3
    assert content.endswith("...")
    assert content.startswith("page_name: Shop\nad_creative_bodies: x")


def test_format_ad_content_joins_variants() -> None:
    ad = AdContent(
        page_name="Shop",
        ad_creative_bodies=["one", "two"],
        ad_creative_link_captions=["shop.example"],
        ad_creative_link_titles=["Sale"],
    )
    assert format_ad_content(ad) == (
        "page_name: Shop\n"
        "ad_creative_bodies: one two\n"
        "ad_creative_link_captions: shop.example\n"
        "ad_creative_link_titles: Sale"
    )


def test_build_prompt_numbers_ads_and_lists_categories() -> None:
    prompt = build_prompt([AdContent(page_name="A"), AdContent(page_name="B")])

    assert "#1 ad: page_name: A" in prompt
    assert "#2 ad: page_name: B" in prompt
    assert all(category in prompt for category in CATEGORIES)
    assert "#1: Category1, Category2" in prompt


def test_ad_content_from_ad() -> None:
    ad = Ad(id="1", ad_creative_bodies=["body"], ad_creative_link_titles=["title"])
    content = AdContent.from_ad(ad)

    assert content.page_name == ""
    assert content.ad_creative_bodies == ["body"]
    assert content.ad_creative_link_titles == ["title"]


@pytest.mark.asyncio
async def test_categorize_ads_parses_model_reply() -> None:
    generator = RecordingGenerator("#1: Finance & Investing\n#2: Others")
    service = CategorizationService(generator)

    result = await service.categorize_ads(
        [AdContent(page_name="Bank"), AdContent(page_name="Misc")]
    )

    assert result == {1: ["Finance & Investing"], 2: ["Others"]}
    assert len(generator.prompts) == 1


@pytest.mark.asyncio
async def test_categorize_ads_skips_empty_input() -> None:
    generator = RecordingGenerator("#1: Others")
    assert await CategorizationService(generator).categorize_ads([]) == {}
    assert generator.prompts == []


@pytest.mark.asyncio
async def test_categorize_ads_propagates_generator_errors() -> None:
    with pytest.raises(RuntimeError, match="quota"):
        await CategorizationService(BrokenGenerator()).categorize_ads([AdContent(page_name="A")])


@pytest.mark.asyncio
async def test_gemini_generator_posts_prompt() -> None:
    """The key travels in a header, and text parts of the first candidate are joined."""

    http = HttpClient(ContextLogger("HttpClient"), retries=1)
    generator = GeminiTextGenerator(http, api_key="gem-key", model="gemini-2.0-flash")
    reply = {
        "candidates": [
            {"content": {"parts": [{"text": "#1: Others"}, {"text": "\n#2: Home & Living"}]}}
        ]
    }

    async with respx.mock(assert_all_called=True) as router:
        route = router.post(f"{GEMINI_API_URL}/gemini-2.0-flash:generateContent").respond(
            200, json=reply
        )
        text = await generator.generate("categorize these")
    await http.aclose()

    assert text == "#1: Others\n#2: Home & Living"
    request = route.calls.last.request
    assert request.headers["x-goog-api-key"] == "gem-key"
    assert "gem-key" not in str(request.url)


@pytest.mark.asyncio
async def test_gemini_generator_without_candidates_fails() -> None:
    http = HttpClient(ContextLogger("HttpClient"), retries=1)
    generator = GeminiTextGenerator(http, api_key="gem-key")

    async with respx.mock(assert_all_called=True) as router:
        router.post(f"{GEMINI_API_URL}/gemini-2.0-flash:generateContent").respond(
            200, json={"candidates": []}
        )
        with pytest.raises(ValueError):
            await generator.generate("prompt")
    await http.aclose()
