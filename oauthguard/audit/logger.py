"""
Audit logging sinks for recovery and token lifecycle events.

Copyright (c) 2025 Gimel Foundation and the persons identified as the document authors.
All rights reserved. This file is subject to the Gimel Foundation's Legal Provisions Relating to GiFo Documents.
See http://GimelFoundation.com or https://github.com/Gimel-Foundation for details.
Code Components extracted from GiFo-RfC 0111 must include this license text and are provided without warranty.
"""

from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Union
import asyncio
import json
import logging

from ..common.utils import generate_id, get_current_time

logger = logging.getLogger(__name__)


class AuditEventKind(Enum):
    """Kinds of audit record emitted by the recovery subsystem"""
    OAUTH_ERROR = "oauth_error"
    RECOVERY_ATTEMPT = "recovery_attempt"
    RECOVERY_FAILURE = "recovery_failure"
    NETWORK_ERROR_RETRY = "network_error_retry"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    REAUTHENTICATION_REQUIRED = "reauthentication_required"
    TOKENS_INVALIDATED = "tokens_invalidated"
    TOKEN_REFRESHED = "token_refreshed"
    TOKEN_REFRESH_FAILED = "token_refresh_failed"
    UNHANDLED_ERROR = "unhandled_oauth_error"
    ACCESS_REVOCATION_DETECTED = "access_revocation_detected"


KindLike = Union[AuditEventKind, str]


def _kind_value(kind: KindLike) -> str:
    return kind.value if isinstance(kind, AuditEventKind) else str(kind)


@dataclass
class AuditEvent:
    """One audit record. The payload carries user id, error kind and correlation id when known."""
    kind: str
    payload: Dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=generate_id)
    timestamp: datetime = field(default_factory=get_current_time)

    @property
    def user_id(self) -> Optional[str]:
        return self.payload.get("user_id")

    @property
    def correlation_id(self) -> Optional[str]:
        return self.payload.get("correlation_id")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "kind": self.kind,
            "timestamp": self.timestamp.isoformat(),
            "payload": self.payload,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditEvent":
        return cls(
            kind=data["kind"],
            payload=data.get("payload", {}),
            event_id=data["event_id"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
        )


@dataclass
class AuditFilter:
    kind: Optional[KindLike] = None
    user_id: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    def matches(self, event: AuditEvent) -> bool:
        if self.kind is not None and event.kind != _kind_value(self.kind):
            return False
        if self.user_id is not None and event.user_id != self.user_id:
            return False
        if self.start_time is not None and event.timestamp < self.start_time:
            return False
        if self.end_time is not None and event.timestamp > self.end_time:
            return False
        return True


class AuditLogger(ABC):
    """
    Audit sink consumed by recovery strategies and the token lifecycle.

    Subclasses persist events in :meth:`log` and replay them in
    :meth:`_stored_events`; filtering is shared.
    """

    async def log_event(self, kind: KindLike, payload: Dict[str, Any]) -> AuditEvent:
        event = AuditEvent(kind=_kind_value(kind), payload=dict(payload))
        await self.log(event)
        return event

    @abstractmethod
    async def log(self, event: AuditEvent) -> None:
        pass

    @abstractmethod
    async def _stored_events(self) -> Iterable[AuditEvent]:
        pass

    async def get_events(
        self,
        kind: Optional[KindLike] = None,
        user_id: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
    ) -> List[AuditEvent]:
        query = AuditFilter(kind, user_id, start_time, end_time)
        return [event for event in await self._stored_events() if query.matches(event)]

    async def close(self) -> None:
        pass


class MemoryAuditLogger(AuditLogger):
    """Bounded in-process audit log for development and tests"""

    def __init__(self, max_entries: int = 1000):
        self.max_entries = max_entries
        self.events: deque = deque(maxlen=max_entries)
        self._lock = asyncio.Lock()

    async def log(self, event: AuditEvent) -> None:
        async with self._lock:
            self.events.append(event)

    async def _stored_events(self) -> Iterable[AuditEvent]:
        async with self._lock:
            return list(self.events)


class FileAuditLogger(AuditLogger):
    """Appends events to a JSON-lines file"""

    def __init__(self, file_path: str):
        self.file_path = file_path
        self._lock = asyncio.Lock()

    async def log(self, event: AuditEvent) -> None:
        line = json.dumps(event.to_dict(), default=str)
        async with self._lock:
            try:
                with open(self.file_path, "a", encoding="utf-8") as f:
                    f.write(line + "\n")
            except OSError as e:
                logger.error(f"Failed to write audit log to {self.file_path}: {e}")

    async def _stored_events(self) -> Iterable[AuditEvent]:
        events = []
        try:
            with open(self.file_path, "r", encoding="utf-8") as f:
                for number, line in enumerate(f, start=1):
                    if not line.strip():
                        continue
                    try:
                        events.append(AuditEvent.from_dict(json.loads(line)))
                    except (json.JSONDecodeError, KeyError, TypeError, ValueError):
                        logger.warning(f"Skipping malformed audit line {number} in {self.file_path}")
        except FileNotFoundError:
            pass
        return events


def create_audit_logger(logger_type: str = "memory", **kwargs) -> AuditLogger:
    """
    Build an audit sink.

    Args:
        logger_type: "memory" or "file"
        **kwargs: ``max_entries`` for memory, ``file_path`` for file

    Returns:
        AuditLogger instance
    """
    if logger_type == "memory":
        return MemoryAuditLogger(kwargs.get("max_entries", 1000))
    if logger_type == "file":
        return FileAuditLogger(kwargs.get("file_path", "oauthguard-audit.log"))
    raise ValueError(f"Unknown logger type: {logger_type}")
