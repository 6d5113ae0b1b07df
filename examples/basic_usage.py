"""
Basic oauthguard usage example.

This example walks through the main operations:
- Building an OAuthGuard
- Guarding a provider call with a circuit breaker
- Recovering from provider failures
- Scheduling proactive token refreshes
"""

import asyncio
from datetime import timedelta

from oauthguard import Config, OAuthGuard, OAuthToken, RecoveryContext, User
from oauthguard.common.utils import get_current_time
from oauthguard.errors import InvalidRefreshTokenError, NetworkError, RateLimitError
from oauthguard.notifications import MemoryNotificationService


async def refresh_with_provider(token: OAuthToken) -> bool:
    """Stand-in for a real refresh grant."""
    token.update_tokens(access_token="refreshed-access-token", expires_in=3600)
    return True


async def basic_example():
    """Demonstrate basic oauthguard usage"""
    print("Basic oauthguard Example")
    print("=" * 30)

    # 1. Create configuration
    config = Config()
    config.recovery.provider_name = "nationbuilder"
    config.recovery.reauth_path = "/auth/nationbuilder"
    config.circuit.failure_threshold = 2

    # 2. Create the guard
    notifications = MemoryNotificationService()
    guard = OAuthGuard.new(config, notifications=notifications)
    guard.token_store.set_refresher(refresh_with_provider)
    print("✓ Created OAuthGuard")

    user = User(id="user-42", email="user@example.com")
    await guard.token_store.save(OAuthToken(
        user_id=user.id,
        access_token="access-token",
        refresh_token="refresh-token",
        expires_at=get_current_time() + timedelta(minutes=10),
    ))

    try:
        # 3. Guard a flaky provider call
        async def fetch_people():
            raise NetworkError("Connection reset by peer")

        for _ in range(3):
            try:
                await guard.guard("fetch_people", fetch_people)
            except NetworkError as e:
                result = await guard.recover(user, e, RecoveryContext(endpoint_path="/api/v1/people"))
                print(f"✓ Network failure handled: {result.action_taken} (retry in {result.retry_delay:.1f}s)")
            except Exception as e:
                print(f"✓ Circuit rejected the call: {e}")
        print(f"✓ Circuit open: {guard.circuit_stats()['fetch_people'].open}")

        # 4. Rate limiting
        result = await guard.recover(user, RateLimitError(retry_after=90))
        print(f"✓ Rate limited until: {await guard.rate_limited_until(user)} ({result.action_taken})")

        # 5. Revoked refresh token
        result = await guard.recover(user, InvalidRefreshTokenError(error_code="invalid_grant"))
        print(f"✓ Reauthentication required, redirect to {result.redirect_url}")

        # 6. Serve cached data while the provider is down
        async def fetch_tags():
            return {"tags": ["volunteer", "donor"]}

        async def tags_unavailable():
            raise NetworkError("Connection reset by peer")

        await guard.fetch_with_fallbacks("fetch_tags", "tags", fetch_tags, user=user)
        tags = await guard.fetch_with_fallbacks("fetch_tags", "tags", tags_unavailable, user=user)
        print(f"✓ Served {tags['tags']} from {tags['_data_source']}: {tags['_cache_warning']}")

        queued = await guard.degradation.queue_for_later(user, "tag_person", {"person_id": 7, "tag": "donor"})
        replayed = await guard.degradation.process_queued_operations(user, lambda op: True)
        print(f"✓ Queued {queued.id}; replayed {len(replayed)} until the user reconnects")

        # 7. Proactive refresh
        await guard.token_store.save(OAuthToken(
            user_id="user-7",
            access_token="access-token",
            refresh_token="refresh-token",
            expires_at=get_current_time() + timedelta(minutes=20),
        ))
        scheduled = await guard.schedule_expiring_refresh_check()
        await guard.lifecycle.wait_pending()
        print(f"✓ Scheduled refreshes for: {sorted(scheduled)}")

        # 8. Notifications and audit
        print(f"✓ Notifications for {user.id}: {[n.title for n in notifications.for_user(user.id)]}")
        events = await guard.audit_logger.get_events()
        print(f"✓ Audit events logged: {len(events)}")

    finally:
        # 9. Cleanup
        await guard.close()
        print("✓ OAuthGuard closed")


if __name__ == "__main__":
    asyncio.run(basic_example())
