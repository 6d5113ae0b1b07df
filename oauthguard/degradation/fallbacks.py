# Copyright (c) 2025 Gimel Foundation and the persons identified as the document authors.
# All rights reserved. This file is subject to the Gimel Foundation's Legal Provisions Relating to GiFo Documents.
# See http://GimelFoundation.com or https://github.com/Gimel-Foundation for details.
# Code Components extracted from GiFo-RfC 0111 must include this license text and are provided without warranty.

"""
Graceful degradation while the provider is unavailable.

Successful reads are cached so that a later failure (or an open circuit) can
serve the last known data marked as stale. Writes that need a working
integration can be queued and replayed once the user's token is usable again.
"""

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..cache import Cache
from ..common.utils import generate_id, get_current_time, isoformat_or_none
from ..core.config import DegradationConfig
from ..core.types import User
from ..errors import CircuitOpenError, ErrorKind, OAuthError, error_kind
from ..token import TokenStore

logger = logging.getLogger(__name__)


class DataUnavailableError(Exception):
    """Raised when neither the provider, the cache nor a default can supply data."""

    def __init__(self, data_type: str, cause: Optional[BaseException] = None):
        self.data_type = data_type
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Data not available for '{data_type}'{detail}")


class FeatureLevel(Enum):
    """How much of the integration a user can currently use, best first."""
    FULL = "full"
    LIMITED = "limited"
    READONLY = "readonly"
    NONE = "none"


class QueueStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class QueuedOperation:
    """A provider write deferred until the integration works again."""
    operation: str
    data: Dict[str, Any]
    user_id: str
    id: str = field(default_factory=lambda: generate_id("op_"))
    queued_at: datetime = field(default_factory=get_current_time)
    status: QueueStatus = QueueStatus.PENDING
    result: Any = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "operation": self.operation,
            "data": self.data,
            "user_id": self.user_id,
            "queued_at": isoformat_or_none(self.queued_at),
            "status": self.status.value,
            "error": self.error,
        }


Executor = Callable[[QueuedOperation], Any]


def _degradable(error: BaseException) -> bool:
    return (
        isinstance(error, (OAuthError, CircuitOpenError))
        or error_kind(error) is not ErrorKind.UNKNOWN
    )


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class GracefulDegradation:
    """
    Serves cached or default data when live provider data is unavailable.

    Args:
        cache: Where last known good data is kept
        config: TTL, key prefix and queue bound
        token_store: Used to work out the user's feature level
        clock: Callable returning the current time
    """

    def __init__(
        self,
        cache: Cache,
        config: Optional[DegradationConfig] = None,
        token_store: Optional[TokenStore] = None,
        clock: Callable[[], datetime] = get_current_time,
    ):
        self.cache = cache
        self.config = config or DegradationConfig()
        self.token_store = token_store
        self._clock = clock
        self._queues: Dict[str, List[QueuedOperation]] = {}
        self._queue_lock = asyncio.Lock()

    def cache_key(self, data_type: str, user: Optional[User] = None) -> str:
        owner = user.id if user is not None else "shared"
        return f"{self.config.key_prefix}:{owner}:{data_type}"

    async def get_data_with_fallbacks(
        self,
        data_type: str,
        primary_fetch: Callable[[], Any],
        *,
        user: Optional[User] = None,
        cache_fetch: Optional[Callable[[], Any]] = None,
        default_data: Any = None,
    ) -> Any:
        """
        Fetch live data, falling back to cached data and then to a default.

        Live results are cached under :meth:`cache_key`. On a provider failure
        or open circuit, ``cache_fetch`` (or the cached copy) is returned with
        a staleness warning, then ``default_data`` with an unavailability
        notice. Errors that are not provider failures propagate.

        Raises:
            DataUnavailableError: no fallback could supply the data
        """
        self._log("data_fetch_attempted", user, data_type=data_type)
        try:
            data = await _resolve(primary_fetch())
        except Exception as e:
            if not _degradable(e):
                raise
            self._log("data_fetch_failed", user, data_type=data_type, error=type(e).__name__)
            return await self._fallback(data_type, user, cache_fetch, default_data, cause=e)

        if data is not None:
            await self.cache.write(self.cache_key(data_type, user), {
                "data": data,
                "stored_at": self._clock().isoformat(),
            }, self.config.data_ttl)
        self._log("data_fetch_succeeded", user, data_type=data_type, method="primary")
        return data

    def cached_fallback(self, data_type: str, user: Optional[User] = None,
                        default_data: Any = None) -> Callable[[], Awaitable[Any]]:
        """
        Zero-argument fallback for CircuitBreaker.guard serving the cached copy.

        Data is only cached by :meth:`get_data_with_fallbacks`.
        """
        async def fallback():
            return await self._fallback(data_type, user, None, default_data)

        return fallback

    async def _fallback(self, data_type: str, user: Optional[User], cache_fetch: Optional[Callable[[], Any]],
                        default_data: Any, cause: Optional[BaseException] = None) -> Any:
        try:
            if cache_fetch is not None:
                cached, stored_at = await _resolve(cache_fetch()), None
            else:
                cached, stored_at = await self._read_cached(data_type, user)
        except Exception as cache_error:
            self._log("cache_fetch_failed", user, data_type=data_type, error=str(cache_error))
            cached, stored_at = None, None

        if cached is not None:
            self._log("data_fetch_succeeded", user, data_type=data_type, method="cache")
            return self.add_staleness_warning(cached, stored_at)

        if default_data is not None:
            self._log("data_fetch_succeeded", user, data_type=data_type, method="default")
            return self.add_unavailability_notice(default_data)

        self._log("data_fetch_exhausted", user, data_type=data_type)
        raise DataUnavailableError(data_type, cause) from cause

    async def _read_cached(self, data_type: str, user: Optional[User]):
        entry = await self.cache.read(self.cache_key(data_type, user))
        if not entry:
            return None, None
        return entry.get("data"), entry.get("stored_at")

    @staticmethod
    def add_staleness_warning(data: Any, stored_at: Optional[str] = None) -> Any:
        if not isinstance(data, dict):
            return data
        last_updated = stored_at or "unknown"
        return {
            **data,
            "_cache_warning": f"This data may be outdated. Last updated: {last_updated}",
            "_data_source": "cache",
        }

    @staticmethod
    def add_unavailability_notice(data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        return {
            **data,
            "_availability_notice": "Live data unavailable. Showing default/placeholder data.",
            "_data_source": "default",
        }

    async def current_feature_level(self, user: Optional[User]) -> FeatureLevel:
        """Feature level implied by the user's most recent token."""
        if user is None or self.token_store is None:
            return FeatureLevel.NONE
        token = await self.token_store.most_recent(user.id)
        if token is None:
            return FeatureLevel.NONE
        if not token.is_expired(self._clock()):
            return FeatureLevel.FULL
        if token.refresh_token:
            return FeatureLevel.LIMITED
        return FeatureLevel.READONLY

    async def queue_for_later(self, user: User, operation: str, data: Dict[str, Any]) -> QueuedOperation:
        """
        Defer a provider write until the user's integration works again.

        Raises:
            ValueError: the user's queue is full
        """
        queued = QueuedOperation(operation=operation, data=dict(data), user_id=user.id, queued_at=self._clock())
        async with self._queue_lock:
            queue = self._queues.setdefault(user.id, [])
            if len(queue) >= self.config.max_queued_per_user:
                raise ValueError(f"Operation queue for user {user.id} is full")
            queue.append(queued)

        self._log("operation_queued", user, operation=operation, queue_id=queued.id)
        return queued

    async def queued_operations(self, user: User) -> List[QueuedOperation]:
        async with self._queue_lock:
            return list(self._queues.get(user.id, []))

    async def process_queued_operations(self, user: User, executor: Executor) -> List[QueuedOperation]:
        """
        Replay the user's pending operations through ``executor``.

        Runs only at full feature level. Completed operations leave the queue;
        failed ones stay with status FAILED and are not retried. Returns the
        operations processed in this call.
        """
        if await self.current_feature_level(user) is not FeatureLevel.FULL:
            logger.info(f"Not replaying queued operations for user {user.id}: integration not fully available")
            return []

        async with self._queue_lock:
            pending = [op for op in self._queues.get(user.id, []) if op.status is QueueStatus.PENDING]

        for op in pending:
            try:
                op.result = await _resolve(executor(op))
            except Exception as e:
                op.status = QueueStatus.FAILED
                op.error = str(e)
                self._log("queued_operation_failed", user, queue_id=op.id, error=str(e))
            else:
                op.status = QueueStatus.COMPLETED
                self._log("queued_operation_completed", user, queue_id=op.id)

        async with self._queue_lock:
            remaining = [op for op in self._queues.get(user.id, []) if op.status is not QueueStatus.COMPLETED]
            if remaining:
                self._queues[user.id] = remaining
            else:
                self._queues.pop(user.id, None)
        return pending

    def _log(self, event: str, user: Optional[User], **details: Any) -> None:
        logger.info(json.dumps({
            "event": f"graceful_degradation_{event}",
            "user_id": user.id if user is not None else None,
            **details,
        }, default=str))
