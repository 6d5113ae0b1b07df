# Copyright (c) 2025 Gimel Foundation and the persons identified as the document authors.
# All rights reserved. This file is subject to the Gimel Foundation's Legal Provisions Relating to GiFo Documents.
# See http://GimelFoundation.com or https://github.com/Gimel-Foundation for details.
# Code Components extracted from GiFo-RfC 0111 must include this license text and are provided without warranty.

"""
Core types and data structures shared by the recovery subsystem.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from ..common.utils import generate_correlation_id, generate_id, get_current_time, isoformat_or_none


@dataclass
class User:
    """Application user as seen from the OAuth integration."""
    id: str
    email: Optional[str] = None


@dataclass
class OAuthToken:
    """
    Provider token issued to a user.

    Created on a successful exchange or refresh. ``version`` increases on
    every refresh so concurrent refreshers can detect they lost the race.
    """
    user_id: str
    access_token: str
    expires_at: datetime
    refresh_token: Optional[str] = None
    scope: str = ""
    raw_response: Optional[Dict[str, Any]] = None
    id: str = field(default_factory=lambda: generate_id("tok_"))
    created_at: datetime = field(default_factory=get_current_time)
    version: int = 1
    rotated_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Check if the token is expired."""
        now = now or get_current_time()
        return self.expires_at <= now

    def needs_refresh(self, window: timedelta, now: Optional[datetime] = None) -> bool:
        """True once the remaining time to expiry falls inside ``window``."""
        now = now or get_current_time()
        return self.expires_at <= now + window

    def update_tokens(
        self,
        access_token: str,
        expires_in: float,
        refresh_token: Optional[str] = None,
        scope: Optional[str] = None,
        raw_response: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """Apply a successful refresh response to this token."""
        now = now or get_current_time()
        self.access_token = access_token
        # Providers may omit the refresh token when they do not rotate it
        self.refresh_token = refresh_token or self.refresh_token
        self.expires_at = now + timedelta(seconds=expires_in)
        self.scope = scope or self.scope
        self.raw_response = raw_response
        self.version += 1
        self.rotated_at = now

    def invalidate(self, now: Optional[datetime] = None) -> None:
        """Force expiry without deleting the token, preserving its history."""
        self.expires_at = now or get_current_time()


@dataclass
class RecoveryContext:
    """
    Per-failure context handed to recovery strategies.

    ``extra`` is passed opaquely between strategies; escalation stores the
    original error there under ``original_error``.
    """
    attempt_count: int = 1
    correlation_id: str = field(default_factory=generate_correlation_id)
    endpoint_path: Optional[str] = None
    critical: bool = False
    extra: Dict[str, Any] = field(default_factory=dict)

    def merge(self, **extra: Any) -> "RecoveryContext":
        """Return a copy with additional opaque key/value pairs."""
        return replace(self, extra={**self.extra, **extra})

    def next_attempt(self) -> "RecoveryContext":
        return replace(self, attempt_count=self.attempt_count + 1)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempt_count": self.attempt_count,
            "correlation_id": self.correlation_id,
            "endpoint_path": self.endpoint_path,
            "critical": self.critical,
            "extra": {k: (str(v) if isinstance(v, BaseException) else v) for k, v in self.extra.items()},
        }


@dataclass
class RecoveryResult:
    """Outcome of a recovery strategy, consumed by the presentation layer."""
    strategy: str
    action_taken: str
    can_retry: bool = False
    retry_delay: Optional[float] = None
    requires_user_action: bool = False
    redirect_url: Optional[str] = None
    user_notified: bool = False
    admin_notified: bool = False
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "strategy": self.strategy,
            "action_taken": self.action_taken,
            "can_retry": self.can_retry,
            "retry_delay": self.retry_delay,
            "requires_user_action": self.requires_user_action,
            "redirect_url": self.redirect_url,
            "user_notified": self.user_notified,
            "admin_notified": self.admin_notified,
            "details": {k: (isoformat_or_none(v) if isinstance(v, datetime) else v)
                        for k, v in self.details.items()},
        }


@dataclass(frozen=True)
class Escalation:
    """
    Signal returned by a strategy that cannot resolve an error itself.

    The dispatcher re-resolves ``error`` against its strategy list with
    ``extra`` merged into the context.
    """
    error: BaseException
    extra: Dict[str, Any] = field(default_factory=dict)
