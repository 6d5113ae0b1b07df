# Copyright (c) 2025 Gimel Foundation and the persons identified as the document authors.
# All rights reserved. This file is subject to the Gimel Foundation's Legal Provisions Relating to GiFo Documents.
# See http://GimelFoundation.com or https://github.com/Gimel-Foundation for details.
# Code Components extracted from GiFo-RfC 0111 must include this license text and are provided without warranty.

"""Refresh the user's access token so a failed call can be retried."""

from ..audit import AuditEventKind
from ..core.types import Escalation, RecoveryResult
from ..common.utils import isoformat_or_none
from ..errors import ErrorKind, InvalidRefreshTokenError
from ..token import TokenLifecycle, TokenStore
from .base import RecoveryStrategy, StrategyOutcome


class TokenRefreshStrategy(RecoveryStrategy):
    name = "token_refresh"
    handles = frozenset({ErrorKind.INVALID_ACCESS_TOKEN})

    def __init__(self, notifications, audit_logger, token_store: TokenStore,
                 lifecycle: TokenLifecycle, config=None):
        super().__init__(notifications, audit_logger, config)
        self.token_store = token_store
        self.lifecycle = lifecycle

    async def execute(self, user, error, context) -> StrategyOutcome:
        self._log_attempt("token_refresh", user, error, context)

        token = await self.token_store.most_recent(user.id)
        if token is None:
            self._log_failure("token_refresh", "No token found for user", user, error, context)
            return self._escalate(error)
        if not token.refresh_token:
            self._log_failure("token_refresh", "No refresh token available", user, error, context)
            return self._escalate(error)

        try:
            refreshed = await self.lifecycle.refresh(token, expected_version=token.version)
        except Exception as refresh_error:
            self._log_failure("token_refresh", str(refresh_error), user, error, context,
                              {"refresh_error_type": type(refresh_error).__name__})
            await self._audit(
                AuditEventKind.RECOVERY_FAILURE, user, error, context,
                strategy=self.name,
                token_id=token.id,
                refresh_error=type(refresh_error).__name__,
                refresh_error_message=str(refresh_error),
            )
            return self._escalate(error)

        if not refreshed:
            self._log_failure("token_refresh", "Token refresh returned false", user, error, context)
            return self._escalate(error)

        self._log_attempt("token_refresh_successful", user, error, context, {"token_id": token.id})
        await self._audit(
            AuditEventKind.RECOVERY_ATTEMPT, user, error, context,
            strategy=self.name,
            token_id=token.id,
            expires_at=isoformat_or_none(token.expires_at),
        )
        return RecoveryResult(
            strategy=self.name,
            action_taken="tokens_refreshed",
            can_retry=True,
            details={"token_id": token.id, "token_version": token.version},
        )

    @staticmethod
    def _escalate(error) -> Escalation:
        reauth_error = InvalidRefreshTokenError(
            "Token refresh failed, reauthentication required",
            error_code="refresh_failed",
            error_description="Unable to refresh access token",
        )
        return Escalation(reauth_error, {"original_error": error})
