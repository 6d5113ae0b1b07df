# Copyright (c) 2025 Gimel Foundation and the persons identified as the document authors.
# All rights reserved. This file is subject to the Gimel Foundation's Legal Provisions Relating to GiFo Documents.
# See http://GimelFoundation.com or https://github.com/Gimel-Foundation for details.
# Code Components extracted from GiFo-RfC 0111 must include this license text and are provided without warranty.

"""
Notification sinks for user- and admin-facing recovery messages.

Delivery (flash, email, dashboards) belongs to the host application; from the
recovery subsystem's point of view notifications are fire-and-forget.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from ..common.utils import generate_id, get_current_time

logger = logging.getLogger(__name__)


class NotificationPriority(Enum):
    """Notification priority / severity levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class Notification:
    """A notification addressed to a user or to administrators."""
    kind: str
    title: str
    message: str
    priority: NotificationPriority = NotificationPriority.MEDIUM
    user_id: Optional[str] = None
    dismissible: bool = True
    auto_dismiss_after: Optional[float] = None
    context: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: generate_id("ntf_"))
    created_at: datetime = field(default_factory=get_current_time)

    @property
    def for_admin(self) -> bool:
        return self.user_id is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "title": self.title,
            "message": self.message,
            "priority": self.priority.value,
            "user_id": self.user_id,
            "dismissible": self.dismissible,
            "auto_dismiss_after": self.auto_dismiss_after,
            "context": self.context,
            "created_at": self.created_at.isoformat(),
        }


class NotificationService(ABC):
    """Abstract sink for recovery notifications."""

    @abstractmethod
    async def notify_user(
        self,
        user,
        kind: str,
        title: str,
        message: str,
        priority: NotificationPriority = NotificationPriority.MEDIUM,
        dismissible: bool = True,
        auto_dismiss_after: Optional[float] = None,
    ) -> Notification:
        """Send a notification to ``user``; ``auto_dismiss_after`` is in seconds."""
        pass

    @abstractmethod
    async def notify_admin(
        self,
        kind: str,
        title: str,
        message: str,
        severity: NotificationPriority = NotificationPriority.HIGH,
        context: Optional[Dict[str, Any]] = None,
    ) -> Notification:
        """Send a notification to administrators."""
        pass


class MemoryNotificationService(NotificationService):
    """Keeps notifications in memory; used in tests and single-process setups."""

    def __init__(self, max_entries: int = 1000):
        self.max_entries = max_entries
        self.notifications: List[Notification] = []
        self._lock = asyncio.Lock()

    async def notify_user(self, user, kind, title, message,
                          priority=NotificationPriority.MEDIUM, dismissible=True,
                          auto_dismiss_after=None) -> Notification:
        notification = Notification(
            kind=kind,
            title=title,
            message=message,
            priority=priority,
            user_id=user.id,
            dismissible=dismissible,
            auto_dismiss_after=auto_dismiss_after,
        )
        await self._append(notification)
        return notification

    async def notify_admin(self, kind, title, message,
                           severity=NotificationPriority.HIGH, context=None) -> Notification:
        notification = Notification(
            kind=kind,
            title=title,
            message=message,
            priority=severity,
            dismissible=True,
            context=dict(context or {}),
        )
        await self._append(notification)
        return notification

    async def _append(self, notification: Notification) -> None:
        async with self._lock:
            self.notifications.append(notification)
            if len(self.notifications) > self.max_entries:
                self.notifications = self.notifications[-self.max_entries:]

    def for_user(self, user_id: str) -> List[Notification]:
        return [n for n in self.notifications if n.user_id == user_id]

    def for_admins(self) -> List[Notification]:
        return [n for n in self.notifications if n.for_admin]


class LoggingNotificationService(NotificationService):
    """Writes notifications to the application log as JSON records."""

    def __init__(self, log: Optional[logging.Logger] = None):
        self.log = log or logger

    async def notify_user(self, user, kind, title, message,
                          priority=NotificationPriority.MEDIUM, dismissible=True,
                          auto_dismiss_after=None) -> Notification:
        notification = Notification(
            kind=kind,
            title=title,
            message=message,
            priority=priority,
            user_id=user.id,
            dismissible=dismissible,
            auto_dismiss_after=auto_dismiss_after,
        )
        self.log.info(json.dumps({"event": "user_notification_sent", **notification.to_dict()}, default=str))
        return notification

    async def notify_admin(self, kind, title, message,
                           severity=NotificationPriority.HIGH, context=None) -> Notification:
        notification = Notification(
            kind=kind,
            title=title,
            message=message,
            priority=severity,
            context=dict(context or {}),
        )
        level = logging.ERROR if severity in (NotificationPriority.HIGH, NotificationPriority.CRITICAL) else logging.WARNING
        self.log.log(level, json.dumps({"event": "admin_notification_sent", **notification.to_dict()}, default=str))
        return notification
