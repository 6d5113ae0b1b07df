# Copyright (c) 2025 Gimel Foundation and the persons identified as the document authors.
# All rights reserved. This file is subject to the Gimel Foundation's Legal Provisions Relating to GiFo Documents.
# See http://GimelFoundation.com or https://github.com/Gimel-Foundation for details.
# Code Components extracted from GiFo-RfC 0111 must include this license text and are provided without warranty.

"""
Recovery dispatcher: the single entry point for handling a failed provider call.

Strategies are consulted in a fixed order (network retry, rate limit,
reauthentication, token refresh, default) and the first one whose
``can_handle`` matches runs. The default strategy is always last and always
matches, so every error produces a RecoveryResult.

Before any strategy runs, an error that shows the user revoked the grant (see
``indicates_revocation``) is re-typed as AccessRevokedError, so a revoked
grant is never refreshed or retried.
"""

import json
import logging
import random
from datetime import datetime
from typing import Callable, Optional, Tuple

from ..audit import AuditEventKind, AuditLogger
from ..cache import Cache
from ..core.config import RecoveryConfig
from ..core.types import Escalation, RecoveryContext, RecoveryResult, User
from ..common.utils import get_current_time
from ..errors import AccessRevokedError, ErrorKind, error_kind, indicates_revocation
from ..notifications import NotificationService
from ..token import TokenLifecycle, TokenStore
from .base import RecoveryStrategy
from .default import DefaultStrategy
from .network_retry import NetworkRetryStrategy
from .rate_limit import RateLimitStrategy
from .reauthentication import ReauthenticationStrategy
from .token_refresh import TokenRefreshStrategy

logger = logging.getLogger(__name__)


class RecoveryDispatcher:
    """
    Routes errors to recovery strategies.

    Escalations returned by a strategy are re-resolved against the same
    ordered list with the escalation's extras merged into the context. After
    ``max_escalations`` hops the default strategy takes over.
    """

    def __init__(
        self,
        *,
        network_retry: NetworkRetryStrategy,
        rate_limit: RateLimitStrategy,
        reauthentication: ReauthenticationStrategy,
        token_refresh: TokenRefreshStrategy,
        default: DefaultStrategy,
        max_escalations: int = 3,
        detect_revocation: bool = True,
        audit_logger: Optional[AuditLogger] = None,
        metrics=None,
    ):
        self._strategies: Tuple[RecoveryStrategy, ...] = (
            network_retry,
            rate_limit,
            reauthentication,
            token_refresh,
            default,
        )
        self._default = default
        self.max_escalations = max_escalations
        self.detect_revocation = detect_revocation
        self._audit = audit_logger
        self._metrics = metrics

    @property
    def strategies(self) -> Tuple[RecoveryStrategy, ...]:
        return self._strategies

    def strategy_for(self, error: BaseException) -> RecoveryStrategy:
        for strategy in self._strategies:
            if strategy.can_handle(error):
                return strategy
        return self._default

    async def recover(self, user: User, error: BaseException,
                      context: Optional[RecoveryContext] = None) -> RecoveryResult:
        """
        Handle ``error`` for ``user`` and return advice for the caller.

        Args:
            user: User whose provider call failed
            error: The failure
            context: Attempt count, correlation id and opaque extras

        Returns:
            RecoveryResult from the strategy that resolved the error
        """
        context = context or RecoveryContext()
        await self._audit_error(user, error, context)

        if self.detect_revocation and indicates_revocation(error):
            error, context = await self._revocation_detected(user, error, context)

        hops = 0
        while True:
            strategy = self.strategy_for(error) if hops <= self.max_escalations else self._default
            outcome = await self._execute(strategy, user, error, context)

            if isinstance(outcome, Escalation):
                hops += 1
                logger.info(json.dumps({
                    "event": "recovery_escalated",
                    "from_strategy": type(strategy).__name__,
                    "error_kind": error_kind(outcome.error).value,
                    "user_id": user.id,
                    "correlation_id": context.correlation_id,
                    "hops": hops,
                }))
                error = outcome.error
                context = context.merge(**outcome.extra)
                continue

            if self._metrics:
                self._metrics.record_recovery(outcome)
            return outcome

    async def _execute(self, strategy: RecoveryStrategy, user: User, error: BaseException,
                       context: RecoveryContext):
        if strategy is self._default:
            return await strategy.execute(user, error, context)

        try:
            return await strategy.execute(user, error, context)
        except Exception as strategy_error:
            logger.exception(f"{type(strategy).__name__} failed while recovering from {type(error).__name__}")
            if self._audit:
                await self._audit.log_event(AuditEventKind.RECOVERY_FAILURE, {
                    "user_id": user.id,
                    "error_kind": error_kind(error).value,
                    "correlation_id": context.correlation_id,
                    "strategy": strategy.name,
                    "strategy_error": str(strategy_error),
                })
            return await self._default.execute(user, error, context.merge(strategy_error=strategy_error))

    async def _revocation_detected(self, user: User, error: BaseException,
                                   context: RecoveryContext) -> Tuple[BaseException, RecoveryContext]:
        reclassified = error_kind(error) is not ErrorKind.ACCESS_REVOKED
        details = {
            "user_id": user.id,
            "error_type": type(error).__name__,
            "error_code": getattr(error, "error_code", None),
            "http_status": getattr(error, "http_status", None),
            "correlation_id": context.correlation_id,
            "reclassified": reclassified,
        }
        logger.warning(json.dumps({"event": "access_revocation_detected", **details}))
        if self._audit:
            await self._audit.log_event(AuditEventKind.ACCESS_REVOCATION_DETECTED, {
                "error_kind": error_kind(error).value,
                **details,
            })

        if not reclassified:
            return error, context
        return AccessRevokedError.from_error(error), context.merge(original_error=error)

    async def _audit_error(self, user: User, error: BaseException, context: RecoveryContext) -> None:
        if self._audit is None:
            return
        details = error.to_dict() if hasattr(error, "to_dict") else {"message": str(error)}
        await self._audit.log_event(AuditEventKind.OAUTH_ERROR, {
            "user_id": user.id,
            "error_kind": error_kind(error).value,
            "correlation_id": context.correlation_id,
            "attempt_count": context.attempt_count,
            "error": details,
        })


def create_recovery_dispatcher(
    *,
    notifications: NotificationService,
    audit_logger: AuditLogger,
    cache: Cache,
    token_store: TokenStore,
    lifecycle: TokenLifecycle,
    config: Optional[RecoveryConfig] = None,
    metrics=None,
    clock: Callable[[], datetime] = get_current_time,
    rng: Optional[random.Random] = None,
) -> RecoveryDispatcher:
    """Build a dispatcher with the standard strategy set sharing one set of collaborators."""
    config = config or RecoveryConfig()
    return RecoveryDispatcher(
        network_retry=NetworkRetryStrategy(notifications, audit_logger, config, rng=rng),
        rate_limit=RateLimitStrategy(notifications, audit_logger, cache, config, clock=clock),
        reauthentication=ReauthenticationStrategy(notifications, audit_logger, token_store, config),
        token_refresh=TokenRefreshStrategy(notifications, audit_logger, token_store, lifecycle, config),
        default=DefaultStrategy(notifications, audit_logger, config),
        max_escalations=config.max_escalations,
        detect_revocation=config.detect_revocation,
        audit_logger=audit_logger,
        metrics=metrics,
    )
