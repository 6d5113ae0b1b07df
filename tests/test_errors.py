"""
Tests for the error taxonomy and classifier.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import aiohttp
import pytest

from oauthguard.challenge import Challenge, ChallengeType
from oauthguard.errors import (
    AccessRevokedError,
    ChallengeRequiredError,
    ConfigurationError,
    ErrorClassifier,
    ErrorKind,
    InvalidAccessTokenError,
    InvalidRefreshTokenError,
    NetworkError,
    OAuthError,
    RateLimitError,
    ScopeError,
    ServerError,
    TokenError,
    error_kind,
    indicates_revocation,
)


class TestErrorKind:
    """Test kind resolution"""

    def test_oauth_errors_report_their_kind(self):
        assert error_kind(NetworkError()) is ErrorKind.NETWORK_ERROR
        assert error_kind(ServerError()) is ErrorKind.SERVER_ERROR
        assert error_kind(RateLimitError()) is ErrorKind.RATE_LIMIT_ERROR
        assert error_kind(InvalidAccessTokenError()) is ErrorKind.INVALID_ACCESS_TOKEN
        assert error_kind(InvalidRefreshTokenError()) is ErrorKind.INVALID_REFRESH_TOKEN
        assert error_kind(AccessRevokedError()) is ErrorKind.ACCESS_REVOKED
        assert error_kind(ScopeError()) is ErrorKind.SCOPE_ERROR
        assert error_kind(ConfigurationError()) is ErrorKind.CONFIGURATION_ERROR
        assert error_kind(OAuthError()) is ErrorKind.UNKNOWN

    def test_transport_timeouts_are_network_errors(self):
        assert error_kind(asyncio.TimeoutError()) is ErrorKind.NETWORK_ERROR
        assert error_kind(TimeoutError()) is ErrorKind.NETWORK_ERROR
        assert error_kind(ConnectionResetError()) is ErrorKind.NETWORK_ERROR

    def test_other_exceptions_are_unknown(self):
        assert error_kind(ValueError("boom")) is ErrorKind.UNKNOWN
        assert error_kind(KeyError("k")) is ErrorKind.UNKNOWN

    def test_requires_reauthentication(self):
        assert InvalidRefreshTokenError().requires_reauthentication
        assert AccessRevokedError().requires_reauthentication
        assert ScopeError().requires_reauthentication
        assert not InvalidAccessTokenError().requires_reauthentication
        assert not NetworkError().requires_reauthentication

    def test_to_dict(self):
        error = InvalidRefreshTokenError(
            "Token refresh failed, reauthentication required",
            error_code="refresh_failed",
            error_description="Unable to refresh access token",
        )

        data = error.to_dict()
        assert data["error_kind"] == "invalid_refresh_token"
        assert data["error_code"] == "refresh_failed"
        assert data["error_type"] == "InvalidRefreshTokenError"
        assert str(error) == "Token refresh failed, reauthentication required"

    def test_rate_limit_accepts_timedelta(self):
        error = RateLimitError(retry_after=timedelta(seconds=90))
        assert error.retry_after == 90


class TestErrorClassifier:
    """Test HTTP response classification"""

    def test_invalid_grant(self):
        error = ErrorClassifier.classify_http_error(400, '{"error":"invalid_grant","error_description":"expired"}')

        assert isinstance(error, InvalidRefreshTokenError)
        assert error.error_code == "invalid_grant"
        assert error.error_description == "expired"
        assert error.http_status == 400

    def test_invalid_client_is_configuration_error(self):
        error = ErrorClassifier.classify_http_error(401, '{"error":"invalid_client"}')
        assert isinstance(error, ConfigurationError)

    def test_form_encoded_body(self):
        error = ErrorClassifier.classify_http_error(400, "error=invalid_scope&error_description=missing+scope")

        assert isinstance(error, ScopeError)
        assert error.error_description == "missing scope"

    def test_nested_error_object(self):
        body = '{"error": {"code": 503, "message": "backend unavailable"}, "error_description": ["x"]}'
        error = ErrorClassifier.classify_http_error(503, body)

        assert type(error) is ServerError
        assert error.error_code is None
        assert error.error_description is None
        assert error.message == "HTTP 503 error"
        assert error.raw_response == body

    @pytest.mark.parametrize("status,expected", [
        (400, TokenError),
        (401, InvalidAccessTokenError),
        (403, AccessRevokedError),
        (500, ServerError),
        (503, ServerError),
        (418, OAuthError),
    ])
    def test_status_fallbacks(self, status, expected):
        error = ErrorClassifier.classify_http_error(status, "<html>oops</html>")
        assert type(error) is expected

    def test_rate_limit_headers(self):
        reset = int(datetime(2025, 1, 1, 13, 0, tzinfo=timezone.utc).timestamp())
        error = ErrorClassifier.classify_http_error(
            429, "slow down", {"Retry-After": "45", "X-RateLimit-Reset": str(reset)})

        assert isinstance(error, RateLimitError)
        assert error.retry_after == 45
        assert error.reset_time == datetime(2025, 1, 1, 13, 0, tzinfo=timezone.utc)

    def test_rate_limit_without_headers(self):
        error = ErrorClassifier.classify_http_error(429, None)

        assert error.retry_after is None
        assert error.reset_time is None

    def test_classify_network_error(self):
        assert "timeout" in str(ErrorClassifier.classify_network_error(asyncio.TimeoutError())).lower()
        error = ErrorClassifier.classify_network_error(aiohttp.ClientConnectionError("refused"))
        assert isinstance(error, NetworkError)
        assert "Connection error" in str(error)


class TestRevocationDetection:
    """Test which errors count as a revoked grant"""

    @pytest.mark.parametrize("error", [
        AccessRevokedError(),
        InvalidRefreshTokenError(error_code="invalid_grant"),
        InvalidAccessTokenError(http_status=403),
        InvalidAccessTokenError("Token was revoked by the user"),
        OAuthError(error_code="revoked_token"),
        TokenError(error_description="Access denied by resource owner"),
    ])
    def test_revocation_signals(self, error):
        assert indicates_revocation(error)

    @pytest.mark.parametrize("error", [
        InvalidRefreshTokenError(),
        InvalidAccessTokenError(http_status=401),
        ScopeError(http_status=403, error_code="insufficient_scope"),
        RateLimitError(http_status=403),
        ServerError("upstream revoked our lease", http_status=503),
        NetworkError(),
        ValueError("revoked"),
    ])
    def test_not_revocation(self, error):
        assert not indicates_revocation(error)

    def test_challenge_page_is_not_revocation(self):
        challenge = Challenge(type=ChallengeType.TURNSTILE, site_key="k")
        assert not indicates_revocation(ChallengeRequiredError(challenge, http_status=403))

    def test_from_error_keeps_provider_details(self):
        original = InvalidRefreshTokenError("bad grant", error_code="invalid_grant", http_status=400,
                                            raw_response='{"error":"invalid_grant"}')
        revoked = AccessRevokedError.from_error(original)

        assert error_kind(revoked) is ErrorKind.ACCESS_REVOKED
        assert revoked.error_code == "invalid_grant"
        assert revoked.http_status == 400
        assert revoked.raw_response == original.raw_response
