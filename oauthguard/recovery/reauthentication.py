# Copyright (c) 2025 Gimel Foundation and the persons identified as the document authors.
# All rights reserved. This file is subject to the Gimel Foundation's Legal Provisions Relating to GiFo Documents.
# See http://GimelFoundation.com or https://github.com/Gimel-Foundation for details.
# Code Components extracted from GiFo-RfC 0111 must include this license text and are provided without warranty.

"""Send the user back through authorization when tokens can no longer be used."""

from ..audit import AuditEventKind
from ..core.types import RecoveryResult
from ..errors import REAUTHENTICATION_KINDS, ErrorKind, error_kind
from ..notifications import NotificationPriority
from ..token import TokenStore
from .base import RecoveryStrategy

REAUTHENTICATION_MESSAGES = {
    ErrorKind.ACCESS_REVOKED:
        "Your access has been revoked. Please log in again to restore access to your account.",
    ErrorKind.INVALID_REFRESH_TOKEN:
        "Your session has expired. Please log in again to continue.",
    ErrorKind.SCOPE_ERROR:
        "Additional permissions are required. Please log in again to grant access.",
}
DEFAULT_REAUTHENTICATION_MESSAGE = "Please log in again to continue using the service."


class ReauthenticationStrategy(RecoveryStrategy):
    """
    Invalidate the user's tokens and require a fresh authorization.

    Tokens are expired in place rather than deleted so their history stays
    available for audit.
    """

    name = "reauthentication_required"
    handles = REAUTHENTICATION_KINDS

    def __init__(self, notifications, audit_logger, token_store: TokenStore, config=None):
        super().__init__(notifications, audit_logger, config)
        self.token_store = token_store

    def redirect_url(self, error) -> str:
        if error_kind(error) is ErrorKind.SCOPE_ERROR:
            return f"{self.config.reauth_path}?{self.config.extended_scope_query}"
        return self.config.reauth_path

    def message_for(self, error) -> str:
        return REAUTHENTICATION_MESSAGES.get(error_kind(error), DEFAULT_REAUTHENTICATION_MESSAGE)

    async def execute(self, user, error, context) -> RecoveryResult:
        self._log_attempt("reauthentication_required", user, error, context)

        invalidated = await self.token_store.invalidate_all(user.id)
        self._log_attempt("tokens_invalidated", user, error, context, {"count": invalidated})
        await self._audit(AuditEventKind.TOKENS_INVALIDATED, user, error, context, count=invalidated)

        redirect_url = self.redirect_url(error)
        await self.notifications.notify_user(
            user,
            kind="reauthentication_required",
            title="Re-authentication Required",
            message=self.message_for(error),
            priority=NotificationPriority.HIGH,
            dismissible=False,
        )

        original_error = context.extra.get("original_error")
        await self._audit(
            AuditEventKind.REAUTHENTICATION_REQUIRED, user, error, context,
            error_code=getattr(error, "error_code", None),
            tokens_invalidated=invalidated,
            redirect_url=redirect_url,
            original_error=type(original_error).__name__ if original_error is not None else None,
        )

        return RecoveryResult(
            strategy=self.name,
            action_taken="tokens_invalidated",
            requires_user_action=True,
            redirect_url=redirect_url,
            user_notified=True,
            details={"tokens_invalidated": invalidated},
        )
