"""Append-only record of every upstream HTTP attempt."""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional

from logging_config import API_TRAFFIC_LOGGER, ContextLogger


class ApiTrafficLogger:
    """Write request, response and error records to the ``api_traffic`` logger.

    Records are emitted at DEBUG level with the payload attached as extras, so
    :func:`logging_config.setup_logging` can route them to a JSON-lines file.
    Secrets are scrubbed by :class:`ContextLogger` before the record exists.
    """

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self._log = ContextLogger(
            "ApiTraffic", logger or logging.getLogger(API_TRAFFIC_LOGGER)
        )

    def log_request(
        self,
        url: str,
        *,
        method: str,
        attempt: int,
        headers: Optional[Mapping[str, str]] = None,
        body: Any = None,
        query_params: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._log.debug(
            "REQUEST %s %s",
            method,
            url,
            extra={
                "type": "REQUEST",
                "url": url,
                "method": method,
                "attempt": attempt,
                "headers": dict(headers or {}),
                "body": body,
                "query_params": query_params or {},
            },
        )

    def log_response(self, url: str, *, status_code: int, response: Any) -> None:
        self._log.debug(
            "RESPONSE %s %s",
            status_code,
            url,
            extra={
                "type": "RESPONSE",
                "url": url,
                "status_code": status_code,
                "response": response,
            },
        )

    def log_error(self, url: str, error: BaseException) -> None:
        self._log.debug(
            "ERROR %s %s",
            type(error).__name__,
            url,
            extra={
                "type": "ERROR",
                "url": url,
                "error": {"type": type(error).__name__, "message": str(error)},
            },
        )
