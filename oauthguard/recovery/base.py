# Copyright (c) 2025 Gimel Foundation and the persons identified as the document authors.
# All rights reserved. This file is subject to the Gimel Foundation's Legal Provisions Relating to GiFo Documents.
# See http://GimelFoundation.com or https://github.com/Gimel-Foundation for details.
# Code Components extracted from GiFo-RfC 0111 must include this license text and are provided without warranty.

"""
Base class for recovery strategies.

A strategy maps one or more error kinds to a remediation and to advice for the
caller. Strategies never reference each other: one that cannot finish the job
returns an Escalation and the dispatcher picks the next handler.
"""

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, FrozenSet, Optional, Union

from ..audit import AuditEventKind, AuditLogger
from ..core.config import RecoveryConfig
from ..core.types import Escalation, RecoveryContext, RecoveryResult, User
from ..errors import ErrorKind, error_kind
from ..notifications import NotificationService

logger = logging.getLogger(__name__)

StrategyOutcome = Union[RecoveryResult, Escalation]


class RecoveryStrategy(ABC):
    """Abstract recovery strategy."""

    #: Value reported in RecoveryResult.strategy
    name: str = ""
    #: Error kinds this strategy resolves
    handles: FrozenSet[ErrorKind] = frozenset()

    def __init__(
        self,
        notifications: NotificationService,
        audit_logger: AuditLogger,
        config: Optional[RecoveryConfig] = None,
    ):
        self.notifications = notifications
        self.audit_logger = audit_logger
        self.config = config or RecoveryConfig()

    def can_handle(self, error: BaseException) -> bool:
        return error_kind(error) in self.handles

    @abstractmethod
    async def execute(self, user: User, error: BaseException, context: RecoveryContext) -> StrategyOutcome:
        """Run the strategy for ``error``; must not sleep for any advised delay."""
        pass

    def _log_attempt(self, action: str, user: User, error: BaseException,
                     context: RecoveryContext, details: Optional[Dict[str, Any]] = None) -> None:
        logger.info(json.dumps({
            "recovery_strategy": type(self).__name__,
            "action": action,
            "user_id": user.id,
            "error_kind": error_kind(error).value,
            "error_type": type(error).__name__,
            "correlation_id": context.correlation_id,
            "details": details or {},
        }, default=str))

    def _log_failure(self, action: str, reason: str, user: User, error: BaseException,
                     context: RecoveryContext, details: Optional[Dict[str, Any]] = None) -> None:
        logger.error(json.dumps({
            "recovery_strategy": type(self).__name__,
            "action": action,
            "failure_reason": reason,
            "user_id": user.id,
            "error_kind": error_kind(error).value,
            "error_type": type(error).__name__,
            "correlation_id": context.correlation_id,
            "details": details or {},
        }, default=str))

    async def _audit(self, kind: AuditEventKind, user: User, error: BaseException,
                     context: RecoveryContext, /, **details: Any) -> None:
        await self.audit_logger.log_event(kind, {
            "user_id": user.id,
            "error_kind": error_kind(error).value,
            "error_type": type(error).__name__,
            "correlation_id": context.correlation_id,
            "endpoint": context.endpoint_path,
            **details,
        })
