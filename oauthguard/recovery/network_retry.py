# Copyright (c) 2025 Gimel Foundation and the persons identified as the document authors.
# All rights reserved. This file is subject to the Gimel Foundation's Legal Provisions Relating to GiFo Documents.
# See http://GimelFoundation.com or https://github.com/Gimel-Foundation for details.
# Code Components extracted from GiFo-RfC 0111 must include this license text and are provided without warranty.

"""Exponential backoff with jitter for transport failures and provider 5xx."""

import random
from typing import Optional

from ..audit import AuditEventKind
from ..core.types import RecoveryResult
from ..errors import ErrorKind
from ..notifications import NotificationPriority
from .base import RecoveryStrategy


class NetworkRetryStrategy(RecoveryStrategy):
    """Advise the caller to retry after a jittered, capped backoff."""

    name = "retry_with_backoff"
    handles = frozenset({ErrorKind.NETWORK_ERROR, ErrorKind.SERVER_ERROR})

    def __init__(self, notifications, audit_logger, config=None, rng: Optional[random.Random] = None):
        super().__init__(notifications, audit_logger, config)
        self._rng = rng or random.Random()

    def retry_delay(self, attempt_count: int) -> float:
        """``base ** attempt`` scaled by a jitter in [0.5, 1.5), capped at the max delay."""
        jitter = self._rng.uniform(0.5, 1.5)
        delay = (self.config.backoff_base ** attempt_count) * jitter
        return min(delay, self.config.max_retry_delay.total_seconds())

    async def execute(self, user, error, context) -> RecoveryResult:
        attempt_count = context.attempt_count or 1
        can_retry = attempt_count < self.config.max_network_attempts
        retry_delay = self.retry_delay(attempt_count)

        self._log_attempt("network_retry", user, error, context, {
            "attempt_count": attempt_count,
            "retry_delay": retry_delay,
            "can_retry": can_retry,
        })

        if can_retry:
            await self._audit(
                AuditEventKind.NETWORK_ERROR_RETRY, user, error, context,
                attempt_count=attempt_count,
                retry_delay=retry_delay,
                error_message=str(error),
            )
            return RecoveryResult(
                strategy=self.name,
                action_taken="backoff_applied",
                can_retry=True,
                retry_delay=retry_delay,
                details={"attempt_count": attempt_count, "next_attempt": attempt_count + 1},
            )

        self._log_failure("network_retry", "Max retries exceeded", user, error, context,
                          {"total_attempts": attempt_count})
        await self._audit(
            AuditEventKind.RECOVERY_FAILURE, user, error, context,
            strategy=self.name,
            reason="max_retries_exceeded",
            total_attempts=attempt_count,
        )
        await self.notifications.notify_user(
            user,
            kind="network_error",
            title="Connection Problem",
            message=("Unable to connect to the authentication service. "
                     "Please check your internet connection and try again."),
            priority=NotificationPriority.MEDIUM,
            dismissible=True,
        )
        return RecoveryResult(
            strategy=self.name,
            action_taken="max_retries_exceeded",
            can_retry=False,
            retry_delay=0,
            user_notified=True,
            details={"attempt_count": attempt_count},
        )
