# Copyright (c) 2025 Gimel Foundation and the persons identified as the document authors.
# All rights reserved. This file is subject to the Gimel Foundation's Legal Provisions Relating to GiFo Documents.
# See http://GimelFoundation.com or https://github.com/Gimel-Foundation for details.
# Code Components extracted from GiFo-RfC 0111 must include this license text and are provided without warranty.

"""
Provider rate-limit handling.

Rate limiting is advisory: the user is told how long to wait, the limited
state is cached so callers can skip the provider until it lapses, and the
result always allows a retry.
"""

from datetime import datetime, timedelta
from typing import Callable, Optional

from ..audit import AuditEventKind
from ..cache import Cache
from ..core.types import RecoveryResult
from ..common.utils import get_current_time, isoformat_or_none
from ..errors import ErrorKind
from ..notifications import NotificationPriority
from .base import RecoveryStrategy


def humanize_duration(seconds: float) -> str:
    """Render a delay as e.g. ``45 seconds``, ``2 minutes`` or ``1 hour``."""
    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds} seconds"
    if seconds < 3600:
        minutes = seconds // 60
        return f"{minutes} minute{'s' if minutes != 1 else ''}"
    hours = seconds // 3600
    return f"{hours} hour{'s' if hours != 1 else ''}"


def rate_limit_cache_key(user_id: str, provider: str) -> str:
    return f"rate_limit:{user_id}:{provider}"


class RateLimitStrategy(RecoveryStrategy):
    name = "wait_and_retry"
    handles = frozenset({ErrorKind.RATE_LIMIT_ERROR})

    def __init__(self, notifications, audit_logger, cache: Cache, config=None,
                 clock: Callable[[], datetime] = get_current_time):
        super().__init__(notifications, audit_logger, config)
        self.cache = cache
        self._clock = clock

    def retry_delay(self, error) -> float:
        """Explicit retry-after, else time until the reset, else the default delay."""
        retry_after = getattr(error, "retry_after", None)
        if retry_after is not None:
            return retry_after

        reset_time: Optional[datetime] = getattr(error, "reset_time", None)
        now = self._clock()
        if reset_time is not None and reset_time > now:
            return int((reset_time - now).total_seconds())

        return self.config.default_rate_limit_delay.total_seconds()

    async def execute(self, user, error, context) -> RecoveryResult:
        retry_delay = self.retry_delay(error)
        reset_time = getattr(error, "reset_time", None)

        self._log_attempt("rate_limit_encountered", user, error, context, {
            "retry_delay": retry_delay,
            "retry_after": getattr(error, "retry_after", None),
            "reset_time": isoformat_or_none(reset_time),
        })

        await self.notifications.notify_user(
            user,
            kind="rate_limit",
            title="Service Temporarily Unavailable",
            message=f"Too many requests. Please wait {humanize_duration(retry_delay)} before trying again.",
            priority=NotificationPriority.MEDIUM,
            dismissible=True,
            auto_dismiss_after=retry_delay,
        )

        await self._audit(
            AuditEventKind.RATE_LIMIT_EXCEEDED, user, error, context,
            retry_delay=retry_delay,
            retry_after_header=getattr(error, "retry_after", None),
            reset_time=isoformat_or_none(reset_time),
        )

        await self.cache.write(
            rate_limit_cache_key(user.id, self.config.provider_name),
            {
                "limited_until": (self._clock() + timedelta(seconds=retry_delay)).isoformat(),
                "retry_delay": retry_delay,
                "endpoint": context.endpoint_path,
            },
            retry_delay,
        )

        return RecoveryResult(
            strategy=self.name,
            action_taken="rate_limit_applied",
            can_retry=True,
            retry_delay=retry_delay,
            user_notified=True,
            details={"reset_time": reset_time},
        )
