# Copyright (c) 2025 Gimel Foundation and the persons identified as the document authors.
# All rights reserved. This file is subject to the Gimel Foundation's Legal Provisions Relating to GiFo Documents.
# See http://GimelFoundation.com or https://github.com/Gimel-Foundation for details.
# Code Components extracted from GiFo-RfC 0111 must include this license text and are provided without warranty.

"""
Token expiry tracking and proactive refresh scheduling.

Refreshes are serialized per token. Refresh tokens are usually single-use, so
two concurrent refreshes of one token would invalidate each other: the first
refresh wins and a caller that queued behind it reuses its result instead of
calling the provider again (detected through ``OAuthToken.version``).
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Set

from ..audit import AuditEventKind, AuditLogger
from ..core.config import TokenLifecycleConfig
from ..core.types import OAuthToken
from ..common.utils import get_current_time
from ..errors import NetworkError
from .store import TokenStore

logger = logging.getLogger(__name__)


class TokenLifecycle:
    """Decides when tokens need refreshing and runs refreshes one at a time per token."""

    def __init__(
        self,
        store: TokenStore,
        config: Optional[TokenLifecycleConfig] = None,
        clock: Callable[[], datetime] = get_current_time,
        metrics=None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        """
        Initialize token lifecycle management.

        Args:
            store: Token persistence
            config: Refresh window, check interval and timeouts
            clock: Callable returning the current time
            metrics: Optional RecoveryMetrics
            audit_logger: Optional sink for refresh audit records
        """
        self.store = store
        self.config = config or TokenLifecycleConfig()
        self._clock = clock
        self._metrics = metrics
        self._audit = audit_logger
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_holders: Dict[str, int] = {}
        self._pending: Dict[str, asyncio.Task] = {}
        self._check_task: Optional[asyncio.Task] = None
        self._running = False

    def needs_refresh(self, token: OAuthToken, window: Optional[timedelta] = None) -> bool:
        return token.needs_refresh(window or self.config.refresh_window, self._clock())

    def is_expired(self, token: OAuthToken) -> bool:
        return token.is_expired(self._clock())

    @property
    def tracked_locks(self) -> int:
        """Number of tokens with a refresh lock currently held or awaited."""
        return len(self._locks)

    @asynccontextmanager
    async def _token_lock(self, token_id: str):
        # Entries live only while someone holds or waits on the lock
        lock = self._locks.setdefault(token_id, asyncio.Lock())
        self._lock_holders[token_id] = self._lock_holders.get(token_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_holders[token_id] -= 1
            if not self._lock_holders[token_id]:
                del self._lock_holders[token_id]
                del self._locks[token_id]

    async def refresh(self, token: OAuthToken, expected_version: Optional[int] = None) -> bool:
        """
        Refresh ``token`` on behalf of a request that just failed with it.

        ``expected_version`` is the version the caller saw; when another task
        has rotated the token since, the refresh is considered done and the
        provider is not contacted again. Provider failures propagate.
        """
        observed = token.version if expected_version is None else expected_version
        async with self._token_lock(token.id):
            if token.version != observed:
                logger.info(f"Token {token.id} already refreshed (version {observed} -> {token.version})")
                self._record("reactive", "superseded")
                return True
            return await self._refresh_locked(token, "reactive")

    async def _refresh_locked(self, token: OAuthToken, trigger: str) -> bool:
        timeout = self.config.refresh_timeout.total_seconds()
        try:
            refreshed = await asyncio.wait_for(self.store.refresh(token), timeout=timeout)
        except asyncio.TimeoutError:
            self._record(trigger, "timeout")
            await self._audit_refresh(AuditEventKind.TOKEN_REFRESH_FAILED, token, trigger, reason="timeout")
            raise NetworkError(f"Token refresh timed out after {timeout:g}s")
        except Exception as e:
            self._record(trigger, "error")
            await self._audit_refresh(AuditEventKind.TOKEN_REFRESH_FAILED, token, trigger, reason=str(e))
            raise

        if refreshed:
            self._record(trigger, "success")
            await self._audit_refresh(AuditEventKind.TOKEN_REFRESHED, token, trigger)
        else:
            self._record(trigger, "failed")
            await self._audit_refresh(AuditEventKind.TOKEN_REFRESH_FAILED, token, trigger, reason="refresh_rejected")
        return refreshed

    async def enqueue_expiring_refreshes(self, buffer_minutes: Optional[int] = None) -> Set[str]:
        """
        Schedule one refresh task per user whose token expires within the buffer.

        Tokens already expired and tokens expiring beyond the buffer are left
        alone. Returns the user ids that were scheduled.
        """
        if buffer_minutes is None:
            buffer_minutes = self.config.check_buffer_minutes
        buffer = timedelta(minutes=buffer_minutes)
        now = self._clock()

        tokens = await self.store.expiring_between(now, now + buffer)
        user_ids = {token.user_id for token in tokens}
        logger.info(f"Found {len(user_ids)} users with tokens expiring within {buffer_minutes} minutes")

        for user_id in user_ids:
            self._schedule(user_id, buffer)
        return user_ids

    def _schedule(self, user_id: str, window: timedelta) -> None:
        existing = self._pending.get(user_id)
        if existing and not existing.done():
            logger.debug(f"Refresh already pending for user {user_id}")
            return

        task = asyncio.create_task(self.run_scheduled_refresh(user_id, window))
        self._pending[user_id] = task
        task.add_done_callback(lambda t, uid=user_id: self._forget(uid, t))

    def _forget(self, user_id: str, task: asyncio.Task) -> None:
        if self._pending.get(user_id) is task:
            del self._pending[user_id]

    async def run_scheduled_refresh(self, user_id: str, window: Optional[timedelta] = None) -> bool:
        """
        Body of a scheduled refresh task.

        Re-checks the user's token when the task runs rather than trusting the
        state seen at enqueue time. Returns True only if a refresh was performed.
        """
        token = await self.store.most_recent(user_id)
        if token is None:
            logger.info(f"Skipping scheduled refresh for user {user_id}: no token (integration unlinked)")
            self._record("scheduled", "skipped")
            return False

        async with self._token_lock(token.id):
            if not self.needs_refresh(token, window):
                logger.info(f"Skipping scheduled refresh for user {user_id}: token no longer needs refresh")
                self._record("scheduled", "skipped")
                return False

            try:
                refreshed = await self._refresh_locked(token, "scheduled")
            except Exception as e:
                logger.error(f"Scheduled token refresh failed for user {user_id}: {e}")
                return False

        if refreshed:
            logger.info(f"Refreshed token for user {user_id}")
        else:
            logger.error(f"Scheduled token refresh was rejected for user {user_id}")
        return refreshed

    @property
    def pending_tasks(self) -> Dict[str, asyncio.Task]:
        return dict(self._pending)

    async def wait_pending(self) -> None:
        """Wait for every scheduled refresh task to finish."""
        tasks = list(self._pending.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def start(self) -> None:
        """Start the periodic expiring-token check."""
        if not self._running:
            self._running = True
            self._check_task = asyncio.create_task(self._periodic_check())
            logger.info("Started token refresh scheduler")

    async def stop(self) -> None:
        """Stop the periodic check and cancel scheduled refreshes."""
        if self._running:
            self._running = False
            if self._check_task:
                self._check_task.cancel()
                try:
                    await self._check_task
                except asyncio.CancelledError:
                    pass
            logger.info("Stopped token refresh scheduler")

        for task in list(self._pending.values()):
            task.cancel()
        await self.wait_pending()

    async def _periodic_check(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.config.check_interval.total_seconds())
                if self._running:
                    await self.enqueue_expiring_refreshes(self.config.check_buffer_minutes)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in expiring token check: {e}")

    def _record(self, trigger: str, outcome: str) -> None:
        if self._metrics:
            self._metrics.record_token_refresh(trigger, outcome)

    async def _audit_refresh(self, kind: AuditEventKind, token: OAuthToken, trigger: str, **extra) -> None:
        if self._audit is None:
            return
        await self._audit.log_event(kind, {
            "user_id": token.user_id,
            "token_id": token.id,
            "token_version": token.version,
            "trigger": trigger,
            **extra,
        })
