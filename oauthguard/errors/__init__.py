# Copyright (c) 2025 Gimel Foundation and the persons identified as the document authors.
# All rights reserved. This file is subject to the Gimel Foundation's Legal Provisions Relating to GiFo Documents.
# See http://GimelFoundation.com or https://github.com/Gimel-Foundation for details.
# Code Components extracted from GiFo-RfC 0111 must include this license text and are provided without warranty.

"""
Error taxonomy for calls made against the OAuth identity/API provider.

Errors are classified by an explicit ErrorKind rather than by which methods
an exception object happens to implement. Recovery strategies select on the
kind alone (see error_kind()), and every error carries enough structured
payload (error code, HTTP status, retry hints) to be audited.
"""

import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Union
from urllib.parse import parse_qs

import aiohttp

logger = logging.getLogger(__name__)


class ErrorKind(Enum):
    """Kinds of provider failure the recovery subsystem distinguishes."""

    NETWORK_ERROR = "network_error"
    SERVER_ERROR = "server_error"
    RATE_LIMIT_ERROR = "rate_limit_error"
    INVALID_ACCESS_TOKEN = "invalid_access_token"
    INVALID_REFRESH_TOKEN = "invalid_refresh_token"
    ACCESS_REVOKED = "access_revoked"
    SCOPE_ERROR = "scope_error"
    CONFIGURATION_ERROR = "configuration_error"
    UNKNOWN = "unknown_error"


# Kinds that can only be resolved by sending the user back through authorization
REAUTHENTICATION_KINDS = frozenset({
    ErrorKind.INVALID_REFRESH_TOKEN,
    ErrorKind.ACCESS_REVOKED,
    ErrorKind.SCOPE_ERROR,
})


class CircuitOpenError(Exception):
    """Raised when a guarded operation is refused because its circuit is open."""

    def __init__(self, operation_id: str, message: Optional[str] = None):
        self.operation_id = operation_id
        default_message = f"Circuit breaker is open for '{operation_id}'"
        super().__init__(message or default_message)


class OAuthError(Exception):
    """
    Base exception for all provider-side OAuth errors.

    Subclasses set ``kind`` and ``default_message``; instances carry the
    provider's error code/description, the HTTP status and the raw body.
    """

    kind: ErrorKind = ErrorKind.UNKNOWN
    default_message: str = "OAuth provider error"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        error_code: Optional[str] = None,
        error_description: Optional[str] = None,
        http_status: Optional[int] = None,
        raw_response: Optional[str] = None,
    ):
        self.message = message or self.default_message
        self.error_code = error_code
        self.error_description = error_description
        self.http_status = http_status
        self.raw_response = raw_response
        super().__init__(self.message)

    @property
    def requires_reauthentication(self) -> bool:
        return self.kind in REAUTHENTICATION_KINDS

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary representation."""
        return {
            "message": self.message,
            "error_kind": self.kind.value,
            "error_code": self.error_code,
            "error_description": self.error_description,
            "http_status": self.http_status,
            "error_type": type(self).__name__,
        }

    def loggable_details(self) -> Dict[str, Any]:
        details = self.to_dict()
        if self.raw_response:
            details["raw_response"] = self.raw_response
        return details


class TokenError(OAuthError):
    default_message = "OAuth token error"


class InvalidRefreshTokenError(TokenError):
    kind = ErrorKind.INVALID_REFRESH_TOKEN
    default_message = "Refresh token is invalid or expired"


class InvalidAccessTokenError(TokenError):
    kind = ErrorKind.INVALID_ACCESS_TOKEN
    default_message = "Access token is invalid or expired"


class AuthorizationError(OAuthError):
    default_message = "OAuth authorization error"


class AccessRevokedError(AuthorizationError):
    kind = ErrorKind.ACCESS_REVOKED
    default_message = "User has revoked access or denied authorization"

    @classmethod
    def from_error(cls, error: OAuthError) -> "AccessRevokedError":
        """Re-type another provider error that turned out to signal revocation."""
        return cls(
            error.message,
            error_code=error.error_code,
            error_description=error.error_description,
            http_status=error.http_status,
            raw_response=error.raw_response,
        )


class ScopeError(OAuthError):
    kind = ErrorKind.SCOPE_ERROR
    default_message = "Invalid or insufficient OAuth scope"


class ConfigurationError(OAuthError):
    kind = ErrorKind.CONFIGURATION_ERROR
    default_message = "OAuth configuration error"


class NetworkError(OAuthError):
    kind = ErrorKind.NETWORK_ERROR
    default_message = "Network error occurred during OAuth request"


class ServerError(OAuthError):
    kind = ErrorKind.SERVER_ERROR
    default_message = "Server error occurred"


class RateLimitError(OAuthError):
    """Provider rate limit; carries the provider's retry hints when it sent any."""

    kind = ErrorKind.RATE_LIMIT_ERROR
    default_message = "API rate limit exceeded"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        retry_after: Union[int, float, timedelta, None] = None,
        reset_time: Optional[datetime] = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        if isinstance(retry_after, timedelta):
            retry_after = retry_after.total_seconds()
        self.retry_after = retry_after
        self.reset_time = reset_time

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["retry_after"] = self.retry_after
        result["reset_time"] = self.reset_time.isoformat() if self.reset_time else None
        return result


class ChallengeRequiredError(OAuthError):
    """The provider answered with an interstitial challenge page instead of JSON."""

    default_message = "Provider challenge required"

    def __init__(self, challenge, message: Optional[str] = None, **kwargs):
        super().__init__(message or f"Provider returned a {challenge.type.value} challenge", **kwargs)
        self.challenge = challenge

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["challenge"] = self.challenge.to_dict()
        return result


def error_kind(error: BaseException) -> ErrorKind:
    """
    Map any exception to its ErrorKind.

    Strategy selection is a pure function of this value. Transport timeouts
    and connection failures count as network errors even when they were not
    wrapped in a NetworkError at the calling boundary.
    """
    if isinstance(error, OAuthError):
        return error.kind
    if isinstance(error, aiohttp.ClientResponseError) and error.status >= 500:
        return ErrorKind.SERVER_ERROR
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError,
                          aiohttp.ClientConnectionError, aiohttp.ServerTimeoutError)):
        return ErrorKind.NETWORK_ERROR
    return ErrorKind.UNKNOWN


# OAuth error codes that mean the grant itself is gone
REVOCATION_ERROR_CODES = frozenset({"access_denied", "revoked_token", "invalid_grant"})

# Only token and unclassified errors carry revocation signals; a 403 on a
# scope error, rate limit or challenge page means something else
_REVOCATION_CANDIDATE_KINDS = frozenset({
    ErrorKind.INVALID_ACCESS_TOKEN,
    ErrorKind.INVALID_REFRESH_TOKEN,
    ErrorKind.UNKNOWN,
})


def indicates_revocation(error: BaseException) -> bool:
    """
    Report whether ``error`` shows that the user revoked the grant.

    Besides AccessRevokedError itself, a token or unclassified provider error
    counts when it has HTTP status 403, an ``access_denied``,
    ``revoked_token`` or ``invalid_grant`` code, or mentions "revoked" or
    "access denied" in its message or description.
    """
    if not isinstance(error, OAuthError) or isinstance(error, ChallengeRequiredError):
        return False
    if error.kind is ErrorKind.ACCESS_REVOKED:
        return True
    if error.kind not in _REVOCATION_CANDIDATE_KINDS:
        return False

    text = " ".join(filter(None, (error.message, error.error_description))).lower()
    return (
        error.http_status == 403
        or error.error_code in REVOCATION_ERROR_CODES
        or "revoked" in text
        or "access denied" in text
    )


class ErrorClassifier:
    """Turns raw HTTP responses and transport exceptions into OAuthErrors."""

    # Map OAuth2 error codes to specific error classes
    OAUTH_ERROR_MAPPING = {
        "invalid_request": TokenError,
        "invalid_client": ConfigurationError,
        "invalid_grant": InvalidRefreshTokenError,
        "unauthorized_client": ConfigurationError,
        "unsupported_grant_type": ConfigurationError,
        "invalid_scope": ScopeError,
        "access_denied": AccessRevokedError,
        "invalid_token": InvalidAccessTokenError,
        "expired_token": InvalidAccessTokenError,
        "revoked_token": AccessRevokedError,
        "insufficient_scope": ScopeError,
    }

    @classmethod
    def status_error_class(cls, status_code: int) -> type:
        if status_code == 400:
            return TokenError
        if status_code == 401:
            return InvalidAccessTokenError
        if status_code == 403:
            return AccessRevokedError
        if status_code == 429:
            return RateLimitError
        if 500 <= status_code <= 599:
            return ServerError
        return OAuthError

    @classmethod
    def classify_http_error(
        cls,
        status_code: int,
        response_body: Optional[str] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> OAuthError:
        """
        Classify a non-successful provider response.

        Args:
            status_code: HTTP status code
            response_body: Raw response body, JSON or URL-encoded
            headers: Response headers (case-insensitive lookup)

        Returns:
            OAuthError subclass instance matching the response
        """
        headers = {k.lower(): v for k, v in (headers or {}).items()}

        if status_code == 429:
            retry_after = _parse_int(headers.get("retry-after"))
            reset_epoch = _parse_int(headers.get("x-ratelimit-reset"))
            return RateLimitError(
                "Rate limit exceeded",
                http_status=status_code,
                retry_after=retry_after,
                reset_time=datetime.fromtimestamp(reset_epoch, tz=timezone.utc) if reset_epoch else None,
                raw_response=response_body,
            )

        error_class = cls.status_error_class(status_code)
        oauth_error = (cls.parse_oauth_error(response_body) if response_body else None) or {}
        # Some providers nest an object under "error"; only string codes are OAuth codes
        error_code = _string_or_none(oauth_error.get("error"))
        if error_code in cls.OAUTH_ERROR_MAPPING:
            error_class = cls.OAUTH_ERROR_MAPPING[error_code]

        error_description = _string_or_none(oauth_error.get("error_description"))
        return error_class(
            error_description or f"HTTP {status_code} error",
            error_code=error_code,
            error_description=error_description,
            http_status=status_code,
            raw_response=response_body,
        )

    @staticmethod
    def classify_network_error(exception: BaseException) -> NetworkError:
        """Wrap a transport exception in a NetworkError."""
        if isinstance(exception, (asyncio.TimeoutError, TimeoutError, aiohttp.ServerTimeoutError)):
            return NetworkError(f"Request timeout: {exception}")
        if isinstance(exception, (aiohttp.ClientConnectionError, ConnectionError)):
            return NetworkError(f"Connection error: {exception}")
        if isinstance(exception, aiohttp.ClientError):
            return NetworkError(f"HTTP error: {exception}")
        return NetworkError(f"Network error: {exception}")

    @staticmethod
    def parse_oauth_error(response_body: str) -> Optional[Dict[str, Any]]:
        """Parse an OAuth error body, trying JSON first and then form encoding."""
        try:
            parsed = json.loads(response_body)
            return parsed if isinstance(parsed, dict) else None
        except (json.JSONDecodeError, TypeError):
            pass

        parsed_form = parse_qs(response_body)
        if not parsed_form:
            logger.debug("Failed to parse OAuth error response")
            return None
        return {key: values[0] for key, values in parsed_form.items()}


def _parse_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _string_or_none(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


__all__ = [
    "ErrorKind",
    "REAUTHENTICATION_KINDS",
    "CircuitOpenError",
    "OAuthError",
    "TokenError",
    "InvalidRefreshTokenError",
    "InvalidAccessTokenError",
    "AuthorizationError",
    "AccessRevokedError",
    "ScopeError",
    "ConfigurationError",
    "NetworkError",
    "ServerError",
    "RateLimitError",
    "ChallengeRequiredError",
    "error_kind",
    "indicates_revocation",
    "REVOCATION_ERROR_CODES",
    "ErrorClassifier",
]
