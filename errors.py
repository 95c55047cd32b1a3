"""Exception types shared by the Ad Library service layer."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

RATE_LIMIT_CODES = frozenset({4, 17})
INVALID_TOKEN_CODE = 190
INVALID_PARAMETER_CODE = 100


class AdLibraryError(Exception):
    """Base class for errors raised by this service."""


class ConfigurationError(AdLibraryError):
    """Raised when the service is missing or given invalid configuration."""

    def __init__(self, message: str, problems: Optional[List[str]] = None) -> None:
        self.message = message
        self.problems = problems or []
        if self.problems:
            message = f"{message}: " + "; ".join(self.problems)
        super().__init__(message)


class UpstreamAPIError(AdLibraryError):
    """Raised when an upstream API returns an error response."""

    def __init__(
        self,
        status_code: int,
        code: Optional[int],
        message: str,
        upstream_message: Optional[str] = None,
    ) -> None:
        self.status_code = status_code
        self.code = code
        self.message = message
        self.upstream_message = upstream_message or message
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        return self.status_code >= 500

    @classmethod
    def from_payload(cls, status_code: int, payload: Any) -> "UpstreamAPIError":
        """Build an error from a Graph-style ``{"error": {...}}`` body."""

        error: Dict[str, Any] = {}
        if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
            error = payload["error"]
        code = error.get("code")
        if not isinstance(code, int):
            code = None
        upstream_message = error.get("message") or f"HTTP {status_code}"
        return cls(
            status_code=status_code,
            code=code,
            message=describe_api_error(code, upstream_message),
            upstream_message=upstream_message,
        )


class UpstreamTimeoutError(AdLibraryError):
    """Raised when an upstream request times out on every attempt."""


def describe_api_error(code: Optional[int], upstream_message: Optional[str]) -> str:
    """Map a Graph API error code to a human-readable message."""

    if code in RATE_LIMIT_CODES:
        return "Rate limit exceeded. Please try again later."
    if code == INVALID_TOKEN_CODE:
        return "Invalid or expired access token. Please check your configuration."
    if code == INVALID_PARAMETER_CODE:
        return "Invalid parameter in request. Please check your inputs."
    return upstream_message or "An unknown error occurred"
