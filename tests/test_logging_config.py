"""Tests for secret redaction and log formatting."""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

import pytest


sys.path.append(str(Path(__file__).resolve().parents[1]))

from api_logger import ApiTrafficLogger
from logging_config import (
    REDACTED,
    ContextLogger,
    JSONFormatter,
    RedactingFilter,
    redact_text,
    sanitize,
    setup_logging,
)
from models import SearchParams


def test_sanitize_redacts_nested_secrets() -> None:
    data = {
        "access_token": "abc",
        "nested": {"api_key": "k", "keep": "value"},
        "items": [{"password": "p"}, "https://x.test/?access_token=abc&limit=2"],
        "Authorization": "Bearer t",
    }
    cleaned = sanitize(data)

    assert cleaned["access_token"] == REDACTED
    assert cleaned["nested"] == {"api_key": REDACTED, "keep": "value"}
    assert cleaned["items"][0] == {"password": REDACTED}
    assert cleaned["items"][1] == f"https://x.test/?access_token={REDACTED}&limit=2"
    assert cleaned["Authorization"] == REDACTED
    assert data["access_token"] == "abc"


def test_sanitize_handles_models() -> None:
    params = SearchParams(search_terms="tea", country=["gb"], ad_delivery_date_min="2024-01-01")
    cleaned = sanitize(params)

    assert cleaned["country"] == ["GB"]
    assert cleaned["ad_delivery_date_min"] == "2024-01-01"


def test_redact_text_leaves_other_parameters() -> None:
    assert redact_text("search_terms=tea&key=xyz") == f"search_terms=tea&key={REDACTED}"


def test_context_logger_never_writes_token(caplog: pytest.LogCaptureFixture) -> None:
    """An access token in extras, args or the message never reaches a sink."""

    log = ContextLogger("Test")
    with caplog.at_level(logging.INFO):
        log.info(
            "Calling %s",
            "https://graph.facebook.com/v23.0/ads_archive?access_token=abc",
            extra={"params": {"access_token": "abc", "search_terms": "tea"}},
        )

    record = caplog.records[-1]
    assert record.getMessage().startswith("[Test] Calling https://graph.facebook.com")
    assert record.context == "Test"
    assert record.params == {"access_token": REDACTED, "search_terms": "tea"}
    assert "abc" not in caplog.text
    assert "abc" not in JSONFormatter().format(record)


def test_json_formatter_includes_extras() -> None:
    record = logging.LogRecord("svc", logging.WARNING, __file__, 1, "hello %s", ("world",), None)
    record.context = "Svc"
    record.attempt = 2

    payload = json.loads(JSONFormatter().format(record))

    assert payload["message"] == "hello world"
    assert payload["level"] == "WARNING"
    assert payload["context"] == "Svc"
    assert payload["attempt"] == 2


def test_setup_logging_writes_api_traffic_file(tmp_path: Path) -> None:
    log_file = tmp_path / "logs" / "api.log"
    setup_logging(level="INFO", fmt="json", api_log_file=str(log_file))
    try:
        ApiTrafficLogger().log_request(
            "https://graph.facebook.com/v23.0/ads_archive?access_token=abc",
            method="GET",
            attempt=1,
            query_params={"access_token": "abc"},
        )
    finally:
        setup_logging(level="INFO")

    lines = log_file.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 1
    entry = json.loads(lines[0])
    assert entry["type"] == "REQUEST"
    assert entry["query_params"] == {"access_token": REDACTED}
    assert "abc" not in lines[0]


def test_redacting_filter_scrubs_third_party_records() -> None:
    """Records from loggers that bypass ContextLogger are redacted at the handler."""

    record = logging.LogRecord(
        "httpx",
        logging.INFO,
        __file__,
        1,
        'HTTP Request: %s %s "%s"',
        ("GET", "https://graph.facebook.com/v23.0/ads_archive?access_token=abc&limit=1", "200 OK"),
        None,
    )

    assert RedactingFilter().filter(record) is True
    assert record.getMessage() == (
        "HTTP Request: GET https://graph.facebook.com/v23.0/ads_archive"
        f'?access_token={REDACTED}&limit=1 "200 OK"'
    )


def test_setup_logging_guards_every_handler(tmp_path: Path) -> None:
    setup_logging(level="DEBUG", api_log_file=str(tmp_path / "api.log"))
    try:
        handlers = [
            handler
            for name in (None, "api_traffic")
            for handler in logging.getLogger(name).handlers
            if getattr(handler, "_ad_library_handler", False)
        ]
        assert len(handlers) == 2
        for handler in handlers:
            assert any(isinstance(item, RedactingFilter) for item in handler.filters)
        assert logging.getLogger("httpx").getEffectiveLevel() == logging.WARNING
        assert logging.getLogger("httpcore").getEffectiveLevel() == logging.WARNING
    finally:
        setup_logging(level="INFO")
