# Copyright (c) 2025 Gimel Foundation and the persons identified as the document authors.
# All rights reserved. This file is subject to the Gimel Foundation's Legal Provisions Relating to GiFo Documents.
# See http://GimelFoundation.com or https://github.com/Gimel-Foundation for details.
# Code Components extracted from GiFo-RfC 0111 must include this license text and are provided without warranty.

"""Catch-all strategy: log, tell the user something generic, alert admins when warranted."""

import json
import logging
import traceback
from typing import List

from ..audit import AuditEventKind
from ..common.utils import sanitize_dict
from ..core.types import RecoveryResult
from ..errors import ConfigurationError, OAuthError, error_kind
from ..notifications import NotificationPriority
from .base import RecoveryStrategy

logger = logging.getLogger(__name__)

CONFIGURATION_ERROR_MESSAGE = (
    "We're experiencing technical difficulties with our authentication service. "
    "Our team has been notified."
)
PROVIDER_ERROR_MESSAGE = (
    "There was a problem connecting to your account. "
    "Please try again or contact support if the issue persists."
)
UNEXPECTED_ERROR_MESSAGE = "An unexpected error occurred. Please try again later."

STACK_FRAME_LIMIT = 10


def stack_frames(error: BaseException, limit: int = STACK_FRAME_LIMIT) -> List[str]:
    """The first ``limit`` formatted frames of the error's traceback."""
    if error.__traceback__ is None:
        return []
    return [frame.rstrip() for frame in traceback.format_tb(error.__traceback__)[:limit]]


class DefaultStrategy(RecoveryStrategy):
    name = "log_and_fail"

    def can_handle(self, error) -> bool:
        return True

    def should_notify_admin(self, error, context) -> bool:
        return isinstance(error, OAuthError) or context.critical

    def user_message(self, error) -> str:
        if isinstance(error, ConfigurationError):
            return CONFIGURATION_ERROR_MESSAGE
        if isinstance(error, OAuthError):
            return PROVIDER_ERROR_MESSAGE
        return UNEXPECTED_ERROR_MESSAGE

    async def execute(self, user, error, context) -> RecoveryResult:
        notify_admin = self.should_notify_admin(error, context)
        frames = stack_frames(error)
        details = sanitize_dict(error.loggable_details()) if isinstance(error, OAuthError) else {}
        context_details = sanitize_dict(context.to_dict())

        logger.error(json.dumps({
            "recovery_strategy": type(self).__name__,
            "action": "default_strategy",
            "user_id": user.id,
            "error_kind": error_kind(error).value,
            "error_type": type(error).__name__,
            "error_message": str(error),
            "correlation_id": context.correlation_id,
            "error_details": details,
            "stack_trace": frames,
        }, default=str))

        if notify_admin:
            await self.notifications.notify_admin(
                kind="unknown_error",
                title="Unknown OAuth Error",
                message=f"An unhandled OAuth error occurred for user {user.id}: {type(error).__name__}",
                severity=NotificationPriority.HIGH,
                context={"user_id": user.id, **context_details},
            )

        await self.notifications.notify_user(
            user,
            kind="error",
            title="Service Error",
            message=self.user_message(error),
            priority=NotificationPriority.MEDIUM,
            dismissible=True,
        )

        await self._audit(
            AuditEventKind.UNHANDLED_ERROR, user, error, context,
            error_message=str(error),
            error_details=details,
            context=context_details,
            stack_trace=frames,
        )

        return RecoveryResult(
            strategy=self.name,
            action_taken="error_logged",
            requires_user_action=False,
            user_notified=True,
            admin_notified=notify_admin,
        )
