# Copyright (c) 2025 Gimel Foundation and the persons identified as the document authors.
# All rights reserved. This file is subject to the Gimel Foundation's Legal Provisions Relating to GiFo Documents.
# See http://GimelFoundation.com or https://github.com/Gimel-Foundation for details.
# Code Components extracted from GiFo-RfC 0111 must include this license text and are provided without warranty.

"""
OAuthGuard: the resilience subsystem wired together behind one object.
"""

import logging
import random
from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional, Set

import aiohttp

from ..audit import AuditLogger, MemoryAuditLogger
from ..cache import Cache, create_cache
from ..challenge import Challenge, ChallengeDetector
from ..circuit import CircuitBreaker, CircuitStats, GuardedOperationConfig
from ..common.utils import get_current_time
from ..degradation import GracefulDegradation
from ..metrics import RecoveryMetrics
from ..notifications import LoggingNotificationService, NotificationService
from ..provider import ProviderTokenClient, ProviderTokenRefresher
from ..recovery import RecoveryDispatcher, create_recovery_dispatcher, rate_limit_cache_key
from ..token import MemoryTokenStore, TokenLifecycle, TokenStore
from .config import Config
from .types import RecoveryContext, RecoveryResult, User

logger = logging.getLogger(__name__)


class OAuthGuard:
    """
    Facade over the circuit breaker, recovery dispatcher and token lifecycle.

    Application code guards provider calls with :meth:`guard`, hands any
    failure to :meth:`recover`, and runs :meth:`schedule_expiring_refresh_check`
    periodically (or calls :meth:`start` to let the guard do it).
    """

    def __init__(
        self,
        config: Config,
        breaker: CircuitBreaker,
        detector: ChallengeDetector,
        token_store: TokenStore,
        lifecycle: TokenLifecycle,
        dispatcher: RecoveryDispatcher,
        cache: Cache,
        notifications: NotificationService,
        audit_logger: AuditLogger,
        metrics: RecoveryMetrics,
        provider_client: Optional[ProviderTokenClient] = None,
        degradation: Optional[GracefulDegradation] = None,
    ):
        self.config = config
        self.breaker = breaker
        self.detector = detector
        self.token_store = token_store
        self.lifecycle = lifecycle
        self.dispatcher = dispatcher
        self.cache = cache
        self.notifications = notifications
        self.audit_logger = audit_logger
        self.metrics = metrics
        self.provider_client = provider_client
        self.degradation = degradation or GracefulDegradation(cache, config.degradation, token_store)

    @classmethod
    def new(
        cls,
        config: Optional[Config] = None,
        *,
        token_store: Optional[TokenStore] = None,
        notifications: Optional[NotificationService] = None,
        audit_logger: Optional[AuditLogger] = None,
        cache: Optional[Cache] = None,
        metrics: Optional[RecoveryMetrics] = None,
        operations: Optional[Mapping[str, GuardedOperationConfig]] = None,
        session: Optional[aiohttp.ClientSession] = None,
        clock: Callable[[], datetime] = get_current_time,
        rng: Optional[random.Random] = None,
    ) -> "OAuthGuard":
        """
        Build a guard from configuration, filling in default collaborators.

        Args:
            config: Configuration; defaults are used when omitted
            token_store: Token persistence; an in-memory store otherwise
            notifications: Notification sink; log-only otherwise
            audit_logger: Audit sink; in-memory otherwise
            cache: Rate-limit cache; built from ``config.cache`` otherwise
            metrics: Prometheus metrics holder
            operations: Per-operation circuit configuration
            session: aiohttp session for the provider client
            clock: Source of the current time
            rng: Random source for retry jitter

        Returns:
            Configured OAuthGuard
        """
        config = config or Config()
        config.validate()

        metrics = metrics or RecoveryMetrics()
        notifications = notifications or LoggingNotificationService()
        audit_logger = audit_logger or MemoryAuditLogger()
        cache = cache or create_cache(config.cache)
        detector = ChallengeDetector(config.challenge)

        provider_client = None
        if token_store is None:
            token_store = MemoryTokenStore(clock=clock)
            if config.provider.token_url:
                provider_client = ProviderTokenClient(
                    config.provider, session=session, detector=detector, metrics=metrics)
                token_store.set_refresher(ProviderTokenRefresher(provider_client, clock=clock, rng=rng))

        breaker = CircuitBreaker(
            config.recovery.provider_name,
            operations=operations,
            default_config=GuardedOperationConfig(
                failure_threshold=config.circuit.failure_threshold,
                open_timeout=config.circuit.open_timeout,
            ),
            clock=clock,
            metrics=metrics,
        )
        lifecycle = TokenLifecycle(
            token_store, config.tokens, clock=clock, metrics=metrics, audit_logger=audit_logger)
        dispatcher = create_recovery_dispatcher(
            notifications=notifications,
            audit_logger=audit_logger,
            cache=cache,
            token_store=token_store,
            lifecycle=lifecycle,
            config=config.recovery,
            metrics=metrics,
            clock=clock,
            rng=rng,
        )

        logger.info(f"OAuthGuard initialized for provider '{config.recovery.provider_name}'")
        return cls(
            config=config,
            breaker=breaker,
            detector=detector,
            token_store=token_store,
            lifecycle=lifecycle,
            dispatcher=dispatcher,
            cache=cache,
            notifications=notifications,
            audit_logger=audit_logger,
            metrics=metrics,
            provider_client=provider_client,
            degradation=GracefulDegradation(cache, config.degradation, token_store, clock=clock),
        )

    async def guard(self, operation_id: str, call: Callable[[], Any],
                    fallback: Optional[Callable[[], Any]] = None) -> Any:
        """Run ``call`` behind the circuit for ``operation_id``."""
        return await self.breaker.guard(operation_id, call, fallback)

    async def fetch_with_fallbacks(self, operation_id: str, data_type: str, call: Callable[[], Any],
                                   user: Optional[User] = None, default_data: Any = None) -> Any:
        """
        Run ``call`` behind the circuit, serving cached or default data on failure.

        Live results are cached per user and ``data_type``; see
        :meth:`GracefulDegradation.get_data_with_fallbacks`.
        """
        return await self.degradation.get_data_with_fallbacks(
            data_type,
            lambda: self.breaker.guard(operation_id, call),
            user=user,
            default_data=default_data,
        )

    async def recover(self, user: User, error: BaseException,
                      context: Optional[RecoveryContext] = None) -> RecoveryResult:
        """Dispatch a failed provider call to the matching recovery strategy."""
        return await self.dispatcher.recover(user, error, context)

    async def schedule_expiring_refresh_check(self, buffer_minutes: Optional[int] = None) -> Set[str]:
        """Entry point for an external job scheduler; returns the user ids scheduled."""
        return await self.lifecycle.enqueue_expiring_refreshes(buffer_minutes)

    def detect_challenge(self, status_code: int, body: Optional[str]) -> Optional[Challenge]:
        challenge = self.detector.detect(status_code, body)
        if challenge is not None:
            self.metrics.record_challenge(challenge.type.value)
        return challenge

    async def rate_limited_until(self, user: User) -> Optional[datetime]:
        """When the user's cached rate limit lapses, or None if not limited."""
        entry = await self.cache.read(rate_limit_cache_key(user.id, self.config.recovery.provider_name))
        if not entry:
            return None
        return datetime.fromisoformat(entry["limited_until"])

    def circuit_stats(self) -> Dict[str, CircuitStats]:
        return self.breaker.stats()

    async def start(self) -> None:
        await self.lifecycle.start()

    async def stop(self) -> None:
        await self.lifecycle.stop()

    async def close(self) -> None:
        """Stop background work and release network and storage resources."""
        await self.stop()
        if self.provider_client is not None:
            await self.provider_client.close()
        await self.cache.close()
        await self.audit_logger.close()

    async def __aenter__(self) -> "OAuthGuard":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
