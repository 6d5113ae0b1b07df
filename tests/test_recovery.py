"""
Tests for recovery strategies and the dispatcher.
"""

from datetime import timedelta

import pytest

from oauthguard.audit import AuditEventKind
from oauthguard.core.types import Escalation, RecoveryContext
from oauthguard.errors import (
    AccessRevokedError,
    ConfigurationError,
    InvalidAccessTokenError,
    InvalidRefreshTokenError,
    NetworkError,
    OAuthError,
    RateLimitError,
    ScopeError,
    ServerError,
)
from oauthguard.notifications import NotificationPriority
from oauthguard.recovery import (
    DefaultStrategy,
    NetworkRetryStrategy,
    RateLimitStrategy,
    ReauthenticationStrategy,
    RecoveryDispatcher,
    TokenRefreshStrategy,
    humanize_duration,
    rate_limit_cache_key,
)

from .support import make_token


class TestDispatcherSelection:
    """Test strategy order"""

    def test_fixed_order(self, dispatcher):
        names = [type(s).__name__ for s in dispatcher.strategies]
        assert names == [
            "NetworkRetryStrategy",
            "RateLimitStrategy",
            "ReauthenticationStrategy",
            "TokenRefreshStrategy",
            "DefaultStrategy",
        ]

    @pytest.mark.parametrize("error,expected", [
        (NetworkError(), NetworkRetryStrategy),
        (ServerError(), NetworkRetryStrategy),
        (TimeoutError(), NetworkRetryStrategy),
        (RateLimitError(), RateLimitStrategy),
        (AccessRevokedError(), ReauthenticationStrategy),
        (InvalidRefreshTokenError(), ReauthenticationStrategy),
        (ScopeError(), ReauthenticationStrategy),
        (InvalidAccessTokenError(), TokenRefreshStrategy),
        (ConfigurationError(), DefaultStrategy),
        (OAuthError(), DefaultStrategy),
        (ValueError("boom"), DefaultStrategy),
    ])
    def test_strategy_for(self, dispatcher, error, expected):
        assert isinstance(dispatcher.strategy_for(error), expected)


class TestNetworkRetryStrategy:
    """Test backoff advice"""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("attempt", [1, 2])
    async def test_retry_allowed(self, dispatcher, user, notifications, attempt):
        result = await dispatcher.recover(user, NetworkError("reset"), RecoveryContext(attempt_count=attempt))

        assert result.strategy == "retry_with_backoff"
        assert result.action_taken == "backoff_applied"
        assert result.can_retry is True
        assert 0 < result.retry_delay <= 300
        assert result.details["next_attempt"] == attempt + 1
        assert notifications.for_user(user.id) == []

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, dispatcher, user, notifications):
        result = await dispatcher.recover(user, ServerError("502"), RecoveryContext(attempt_count=3))

        assert result.can_retry is False
        assert result.action_taken == "max_retries_exceeded"
        assert result.user_notified is True
        sent = notifications.for_user(user.id)
        assert len(sent) == 1
        assert sent[0].title == "Connection Problem"

    def test_delay_is_jittered_exponential(self, dispatcher):
        strategy = dispatcher.strategies[0]
        for _ in range(50):
            assert 1 <= strategy.retry_delay(1) <= 3
            assert 4 <= strategy.retry_delay(3) <= 12

    def test_delay_is_capped(self, dispatcher):
        strategy = dispatcher.strategies[0]
        assert strategy.retry_delay(20) == 300

    @pytest.mark.asyncio
    async def test_retry_audited(self, dispatcher, user, audit_logger):
        await dispatcher.recover(user, NetworkError(), RecoveryContext(attempt_count=1, correlation_id="corr_1"))

        events = await audit_logger.get_events(kind=AuditEventKind.NETWORK_ERROR_RETRY)
        assert len(events) == 1
        assert events[0].correlation_id == "corr_1"
        assert events[0].user_id == user.id


class TestRateLimitStrategy:
    """Test rate limit handling"""

    @pytest.mark.asyncio
    async def test_retry_after(self, dispatcher, user):
        result = await dispatcher.recover(user, RateLimitError(retry_after=45))

        assert result.strategy == "wait_and_retry"
        assert result.retry_delay == 45
        assert result.can_retry is True

    @pytest.mark.asyncio
    async def test_reset_time(self, dispatcher, user, clock):
        result = await dispatcher.recover(user, RateLimitError(reset_time=clock() + timedelta(seconds=120)))
        assert result.retry_delay == pytest.approx(120, abs=1)

    @pytest.mark.asyncio
    async def test_reset_time_in_past_uses_default(self, dispatcher, user, clock):
        result = await dispatcher.recover(user, RateLimitError(reset_time=clock() - timedelta(seconds=5)))
        assert result.retry_delay == 60

    @pytest.mark.asyncio
    async def test_default_delay(self, dispatcher, user):
        result = await dispatcher.recover(user, RateLimitError())
        assert result.retry_delay == 60

    @pytest.mark.asyncio
    async def test_notifies_with_human_duration(self, dispatcher, user, notifications):
        await dispatcher.recover(user, RateLimitError(retry_after=120))

        sent = notifications.for_user(user.id)[0]
        assert sent.title == "Service Temporarily Unavailable"
        assert sent.message == "Too many requests. Please wait 2 minutes before trying again."
        assert sent.auto_dismiss_after == 120
        assert sent.dismissible is True

    @pytest.mark.asyncio
    async def test_caches_rate_limit_state(self, dispatcher, user, cache, clock):
        context = RecoveryContext(endpoint_path="/api/v1/people/me")
        await dispatcher.recover(user, RateLimitError(retry_after=30), context)

        entry = await cache.read(rate_limit_cache_key(user.id, "provider"))
        assert entry["retry_delay"] == 30
        assert entry["endpoint"] == "/api/v1/people/me"

        clock.advance(seconds=31)
        assert await cache.read(rate_limit_cache_key(user.id, "provider")) is None

    @pytest.mark.parametrize("seconds,expected", [
        (45, "45 seconds"),
        (60, "1 minute"),
        (120, "2 minutes"),
        (3599, "59 minutes"),
        (3600, "1 hour"),
        (7200, "2 hours"),
    ])
    def test_humanize_duration(self, seconds, expected):
        assert humanize_duration(seconds) == expected


class TestReauthenticationStrategy:
    """Test forced re-authorization"""

    @pytest.mark.asyncio
    async def test_invalidates_all_tokens(self, dispatcher, user, token_store, clock):
        tokens = [make_token(clock, expires_in=timedelta(hours=h)) for h in (1, 2, 3)]
        for token in tokens:
            await token_store.save(token)

        result = await dispatcher.recover(user, AccessRevokedError())

        assert result.requires_user_action is True
        assert result.redirect_url == "/auth/provider"
        assert result.details["tokens_invalidated"] == 3
        assert all(t.expires_at <= clock() for t in tokens)
        # Invalidated, not deleted
        assert len(await token_store.tokens_for(user.id)) == 3

    @pytest.mark.asyncio
    async def test_requires_user_action_without_tokens(self, dispatcher, user):
        result = await dispatcher.recover(user, InvalidRefreshTokenError())
        assert result.requires_user_action is True

    @pytest.mark.asyncio
    async def test_scope_error_requests_extended_scope(self, dispatcher, user):
        result = await dispatcher.recover(user, ScopeError())
        assert result.redirect_url == "/auth/provider?scope=extended"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error,fragment", [
        (AccessRevokedError(), "revoked"),
        (InvalidRefreshTokenError(), "session has expired"),
        (ScopeError(), "Additional permissions"),
    ])
    async def test_message_by_kind(self, dispatcher, user, notifications, error, fragment):
        await dispatcher.recover(user, error)

        sent = notifications.for_user(user.id)[0]
        assert sent.title == "Re-authentication Required"
        assert fragment in sent.message
        assert sent.priority == NotificationPriority.HIGH
        assert sent.dismissible is False


class TestRevocationDetection:
    """Test the revocation check that runs before strategy selection"""

    @pytest.mark.asyncio
    async def test_invalid_grant_is_treated_as_revocation(self, dispatcher, user, token_store, clock,
                                                         notifications, audit_logger):
        token = make_token(clock)
        await token_store.save(token)

        result = await dispatcher.recover(user, InvalidRefreshTokenError(error_code="invalid_grant"))

        assert result.strategy == "reauthentication_required"
        assert token.expires_at == clock()
        assert "revoked" in notifications.for_user(user.id)[0].message

        detected = await audit_logger.get_events(kind=AuditEventKind.ACCESS_REVOCATION_DETECTED)
        assert detected[0].payload["reclassified"] is True
        assert detected[0].payload["error_code"] == "invalid_grant"
        reauth = await audit_logger.get_events(kind=AuditEventKind.REAUTHENTICATION_REQUIRED)
        assert reauth[0].payload["error_kind"] == "access_revoked"
        assert reauth[0].payload["original_error"] == "InvalidRefreshTokenError"

    @pytest.mark.asyncio
    async def test_revoked_access_token_is_not_refreshed(self, dispatcher, user, token_store, clock, refresher):
        await token_store.save(make_token(clock))

        result = await dispatcher.recover(user, InvalidAccessTokenError(http_status=403))

        assert result.strategy == "reauthentication_required"
        assert result.requires_user_action is True
        assert refresher.calls == 0

    @pytest.mark.asyncio
    async def test_access_revoked_error_is_audited_unchanged(self, dispatcher, user, audit_logger):
        await dispatcher.recover(user, AccessRevokedError())

        detected = await audit_logger.get_events(kind=AuditEventKind.ACCESS_REVOCATION_DETECTED)
        assert detected[0].payload["reclassified"] is False

    @pytest.mark.asyncio
    async def test_plain_expired_access_token_still_refreshes(self, dispatcher, user, token_store, clock,
                                                             refresher, audit_logger):
        await token_store.save(make_token(clock))

        result = await dispatcher.recover(user, InvalidAccessTokenError(http_status=401))

        assert result.strategy == "token_refresh"
        assert refresher.calls == 1
        assert await audit_logger.get_events(kind=AuditEventKind.ACCESS_REVOCATION_DETECTED) == []

    @pytest.mark.asyncio
    async def test_detection_can_be_disabled(self, dispatcher, user, token_store, clock, refresher):
        await token_store.save(make_token(clock))
        dispatcher.detect_revocation = False

        result = await dispatcher.recover(user, InvalidAccessTokenError(http_status=403))

        assert result.strategy == "token_refresh"


class TestTokenRefreshStrategy:
    """Test refresh and escalation"""

    @pytest.mark.asyncio
    async def test_successful_refresh(self, dispatcher, user, token_store, clock, refresher):
        token = make_token(clock, expires_in=timedelta(minutes=1))
        await token_store.save(token)

        result = await dispatcher.recover(user, InvalidAccessTokenError())

        assert result.strategy == "token_refresh"
        assert result.action_taken == "tokens_refreshed"
        assert result.can_retry is True
        assert refresher.calls == 1
        assert token.version == 2

    @pytest.mark.asyncio
    async def test_missing_refresh_token_escalates(self, dispatcher, user, token_store, clock, audit_logger):
        await token_store.save(make_token(clock, refresh_token=None))

        result = await dispatcher.recover(user, InvalidAccessTokenError())

        assert result.strategy == "reauthentication_required"
        assert result.redirect_url == "/auth/provider"
        assert result.requires_user_action is True

        events = await audit_logger.get_events(kind=AuditEventKind.REAUTHENTICATION_REQUIRED)
        assert events[0].payload["original_error"] == "InvalidAccessTokenError"
        assert events[0].payload["error_code"] == "refresh_failed"

    @pytest.mark.asyncio
    async def test_escalation_matches_direct_reauthentication(self, dispatcher, user, token_store, clock):
        await token_store.save(make_token(clock, refresh_token=None))
        escalated = await dispatcher.recover(user, InvalidAccessTokenError())
        direct = await dispatcher.recover(user, InvalidRefreshTokenError())

        assert escalated.strategy == direct.strategy
        assert escalated.action_taken == direct.action_taken
        assert escalated.redirect_url == direct.redirect_url
        assert escalated.requires_user_action == direct.requires_user_action

    @pytest.mark.asyncio
    async def test_no_token_escalates(self, dispatcher, user):
        result = await dispatcher.recover(user, InvalidAccessTokenError())
        assert result.strategy == "reauthentication_required"

    @pytest.mark.asyncio
    async def test_rejected_refresh_escalates(self, dispatcher, user, token_store, clock, refresher):
        refresher.result = False
        await token_store.save(make_token(clock))

        result = await dispatcher.recover(user, InvalidAccessTokenError())

        assert refresher.calls == 1
        assert result.redirect_url == "/auth/provider"

    @pytest.mark.asyncio
    async def test_refresh_error_escalates(self, dispatcher, user, token_store, clock, refresher):
        refresher.error = InvalidRefreshTokenError(error_code="invalid_grant")
        token = make_token(clock)
        await token_store.save(token)

        result = await dispatcher.recover(user, InvalidAccessTokenError())

        assert result.strategy == "reauthentication_required"
        assert token.expires_at <= clock()


class TestDefaultStrategy:
    """Test the catch-all"""

    @pytest.mark.asyncio
    async def test_configuration_error(self, dispatcher, user, notifications):
        result = await dispatcher.recover(user, ConfigurationError())

        assert result.strategy == "log_and_fail"
        assert result.admin_notified is True
        assert result.requires_user_action is False
        assert "Our team has been notified" in notifications.for_user(user.id)[0].message
        assert notifications.for_admins()[0].title == "Unknown OAuth Error"

    @pytest.mark.asyncio
    async def test_unclassified_provider_error(self, dispatcher, user, notifications):
        result = await dispatcher.recover(user, OAuthError("weird"))

        assert result.admin_notified is True
        assert "contact support" in notifications.for_user(user.id)[0].message

    @pytest.mark.asyncio
    async def test_unexpected_error(self, dispatcher, user, notifications):
        result = await dispatcher.recover(user, ValueError("boom"))

        assert result.admin_notified is False
        assert notifications.for_admins() == []
        assert notifications.for_user(user.id)[0].message == "An unexpected error occurred. Please try again later."

    @pytest.mark.asyncio
    async def test_critical_context_notifies_admin(self, dispatcher, user):
        result = await dispatcher.recover(user, ValueError("boom"), RecoveryContext(critical=True))
        assert result.admin_notified is True

    @pytest.mark.asyncio
    async def test_stack_frames_audited(self, dispatcher, user, audit_logger):
        def fail():
            raise ValueError("deep")

        try:
            fail()
        except ValueError as e:
            error = e

        await dispatcher.recover(user, error)

        events = await audit_logger.get_events(kind=AuditEventKind.UNHANDLED_ERROR)
        frames = events[0].payload["stack_trace"]
        assert 0 < len(frames) <= 10
        assert "fail" in frames[-1]

    @pytest.mark.asyncio
    async def test_secrets_masked_in_audit(self, dispatcher, user, audit_logger, notifications):
        context = RecoveryContext(extra={"refresh_token": "r-secret", "endpoint": "/api/v1/people"})

        await dispatcher.recover(user, OAuthError("weird", error_code="odd", http_status=418), context)

        payload = (await audit_logger.get_events(kind=AuditEventKind.UNHANDLED_ERROR))[0].payload
        assert payload["error_details"]["error_code"] == "odd"
        assert payload["error_details"]["http_status"] == 418
        assert payload["context"]["extra"]["refresh_token"] == "***"
        assert payload["context"]["extra"]["endpoint"] == "/api/v1/people"
        assert notifications.for_admins()[0].context["extra"]["refresh_token"] == "***"


class _AlwaysEscalating(TokenRefreshStrategy):
    async def execute(self, user, error, context):
        return Escalation(InvalidAccessTokenError(), {"hop": context.extra.get("hop", 0) + 1})


class _Broken(RateLimitStrategy):
    async def execute(self, user, error, context):
        raise RuntimeError("cache down")


class TestDispatcherLoop:
    """Test escalation bounds and strategy failures"""

    def _dispatcher(self, dispatcher, **overrides):
        network, rate, reauth, refresh, default = dispatcher.strategies
        parts = dict(network_retry=network, rate_limit=rate, reauthentication=reauth,
                     token_refresh=refresh, default=default)
        parts.update(overrides)
        return RecoveryDispatcher(max_escalations=3, **parts)

    @pytest.mark.asyncio
    async def test_escalation_is_bounded(self, dispatcher, user, notifications, audit_logger, token_store,
                                         lifecycle):
        looping = self._dispatcher(dispatcher, token_refresh=_AlwaysEscalating(
            notifications, audit_logger, token_store, lifecycle))

        result = await looping.recover(user, InvalidAccessTokenError())

        assert result.strategy == "log_and_fail"

    @pytest.mark.asyncio
    async def test_failing_strategy_falls_back_to_default(self, dispatcher, user, notifications, audit_logger,
                                                          cache):
        broken = self._dispatcher(dispatcher, rate_limit=_Broken(notifications, audit_logger, cache))

        result = await broken.recover(user, RateLimitError(retry_after=5))

        assert result.strategy == "log_and_fail"
        assert result.admin_notified is True

    @pytest.mark.asyncio
    async def test_context_defaults(self, dispatcher, user, audit_logger):
        await dispatcher.recover(user, NetworkError())

        events = await audit_logger.get_events(kind=AuditEventKind.OAUTH_ERROR)
        assert events[0].payload["attempt_count"] == 1
        assert events[0].correlation_id.startswith("corr_")

    @pytest.mark.asyncio
    async def test_metrics_recorded(self, dispatcher, user, metrics):
        await dispatcher.recover(user, RateLimitError(retry_after=5))
        assert metrics.count("recovery_wait_and_retry_rate_limit_applied") == 1
