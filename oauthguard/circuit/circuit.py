# Copyright (c) 2025 Gimel Foundation and the persons identified as the document authors.
# All rights reserved. This file is subject to the Gimel Foundation's Legal Provisions Relating to GiFo Documents.
# See http://GimelFoundation.com or https://github.com/Gimel-Foundation for details.
# Code Components extracted from GiFo-RfC 0111 must include this license text and are provided without warranty.

"""
Circuit breaker implementation guarding outbound provider calls.
"""

import asyncio
import inspect
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from functools import partial, wraps
from types import MappingProxyType
from typing import Any, Callable, Dict, Mapping, Optional

from ..common.utils import get_current_time, isoformat_or_none
from ..errors import CircuitOpenError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GuardedOperationConfig:
    """Per-operation circuit configuration, fixed once the breaker is built."""
    failure_threshold: int = 5
    open_timeout: timedelta = field(default_factory=lambda: timedelta(seconds=60))
    fallback: Optional[Callable[[], Any]] = None

    def __post_init__(self):
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        if self.open_timeout < timedelta(0):
            raise ValueError("open_timeout must not be negative")


@dataclass
class CircuitStats:
    """Point-in-time view of a circuit."""
    operation_id: str
    open: bool
    failure_count: int
    failure_threshold: int
    open_timeout: timedelta
    last_failure_time: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'operation_id': self.operation_id,
            'open': self.open,
            'failure_count': self.failure_count,
            'failure_threshold': self.failure_threshold,
            'open_timeout': self.open_timeout.total_seconds(),
            'last_failure_time': isoformat_or_none(self.last_failure_time),
        }


class Circuit:
    """
    Failure-tracking state for one guarded operation.

    There is no half-open trial state: once ``open_timeout`` has elapsed since
    the last failure the circuit is fully closed again, and it only re-opens
    after ``failure_threshold`` new failures.

    Every read-modify-write runs under one lock, including the open check
    whose auto-reset clears state as a side effect.
    """

    def __init__(self, failure_threshold: int, open_timeout: timedelta,
                 clock: Callable[[], datetime] = get_current_time):
        self.failure_threshold = failure_threshold
        self.open_timeout = open_timeout
        self._clock = clock
        self._failure_count = 0
        self._last_failure_time: Optional[datetime] = None
        self._lock = threading.Lock()

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._failure_count

    @property
    def last_failure_time(self) -> Optional[datetime]:
        with self._lock:
            return self._last_failure_time

    def is_open(self) -> bool:
        """Report whether calls must be refused, auto-resetting after the timeout."""
        with self._lock:
            return self._is_open_locked()

    def success(self) -> None:
        with self._lock:
            self._reset_locked()

    def failure(self) -> bool:
        """Record a failure; returns True only for the failure that opens the circuit."""
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = self._clock()
            return self._failure_count == self.failure_threshold

    def snapshot(self, operation_id: str) -> CircuitStats:
        with self._lock:
            is_open = self._is_open_locked()
            return CircuitStats(
                operation_id=operation_id,
                open=is_open,
                failure_count=self._failure_count,
                failure_threshold=self.failure_threshold,
                open_timeout=self.open_timeout,
                last_failure_time=self._last_failure_time,
            )

    def _is_open_locked(self) -> bool:
        if self._failure_count < self.failure_threshold:
            return False
        if self._last_failure_time is None:
            return False

        if self._clock() - self._last_failure_time > self.open_timeout:
            self._reset_locked()
            return False
        return True

    def _reset_locked(self) -> None:
        self._failure_count = 0
        self._last_failure_time = None


class CircuitBreaker:
    """
    Wraps guarded operations with a Circuit per operation id.

    The breaker only decides whether a call is attempted at all; failures of
    attempted calls are re-raised for the recovery subsystem to classify.

    Args:
        name: Name of the owning service, used in logs and errors
        operations: Configuration per operation id
        default_config: Configuration for operation ids not listed
        clock: Source of the current time
        metrics: Optional RecoveryMetrics to record circuit activity
    """

    def __init__(
        self,
        name: str,
        operations: Optional[Mapping[str, GuardedOperationConfig]] = None,
        default_config: Optional[GuardedOperationConfig] = None,
        clock: Callable[[], datetime] = get_current_time,
        metrics=None,
    ):
        self.name = name
        self._configs = MappingProxyType(dict(operations or {}))
        self._default_config = default_config or GuardedOperationConfig()
        self._clock = clock
        self._metrics = metrics
        self._circuits: Dict[str, Circuit] = {}
        self._lock = threading.Lock()

        logger.info(f"Circuit breaker '{self.name}' initialized with {len(self._configs)} configured operations")

    def config_for(self, operation_id: str) -> GuardedOperationConfig:
        return self._configs.get(operation_id, self._default_config)

    def circuit_for(self, operation_id: str) -> Circuit:
        """Get (creating on first use) the circuit owned for an operation."""
        with self._lock:
            circuit = self._circuits.get(operation_id)
            if circuit is None:
                config = self.config_for(operation_id)
                circuit = Circuit(config.failure_threshold, config.open_timeout, clock=self._clock)
                self._circuits[operation_id] = circuit
            return circuit

    def is_open(self, operation_id: str) -> bool:
        return self.circuit_for(operation_id).is_open()

    def stats(self) -> Dict[str, CircuitStats]:
        with self._lock:
            circuits = dict(self._circuits)
        return {op: circuit.snapshot(op) for op, circuit in circuits.items()}

    async def guard(self, operation_id: str, call: Callable[[], Any],
                    fallback: Optional[Callable[[], Any]] = None) -> Any:
        """Execute ``call`` with circuit protection."""
        circuit = self.circuit_for(operation_id)
        fallback = fallback or self.config_for(operation_id).fallback

        if circuit.is_open():
            return await _await_if_needed(self._handle_open(operation_id, fallback))

        try:
            result = await _await_if_needed(call())
        except CircuitOpenError:
            raise
        except Exception as e:
            if self._record_failure(operation_id, circuit, e) and fallback is not None:
                return await _await_if_needed(fallback())
            raise

        circuit.success()
        return result

    def guard_sync(self, operation_id: str, call: Callable[[], Any],
                   fallback: Optional[Callable[[], Any]] = None) -> Any:
        """Execute ``call`` with circuit protection (synchronous)."""
        circuit = self.circuit_for(operation_id)
        fallback = fallback or self.config_for(operation_id).fallback

        if circuit.is_open():
            return self._handle_open(operation_id, fallback)

        try:
            result = call()
        except CircuitOpenError:
            raise
        except Exception as e:
            if self._record_failure(operation_id, circuit, e) and fallback is not None:
                return fallback()
            raise

        circuit.success()
        return result

    def _handle_open(self, operation_id: str, fallback: Optional[Callable[[], Any]]) -> Any:
        if self._metrics:
            self._metrics.record_circuit_rejection(operation_id)

        if fallback is not None:
            logger.info(f"Circuit '{self.name}#{operation_id}' is open, using fallback")
            return fallback()

        raise CircuitOpenError(f"{self.name}#{operation_id}")

    def _record_failure(self, operation_id: str, circuit: Circuit, error: Exception) -> bool:
        now_open = circuit.failure()
        if now_open:
            logger.error(
                f"Circuit breaker opened for '{self.name}#{operation_id}' after "
                f"{circuit.failure_count} failures: {error}"
            )
            if self._metrics:
                self._metrics.record_circuit_open(operation_id)
        else:
            logger.warning(f"Circuit '{self.name}#{operation_id}' recorded failure: {error}")
        return now_open


async def _await_if_needed(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def guarded(breaker: CircuitBreaker, operation_id: Optional[str] = None,
            fallback: Optional[Callable[..., Any]] = None):
    """
    Decorator for circuit breaker protection.

    The fallback, if given, is called with the same arguments as the
    decorated function.
    """
    def decorator(func: Callable):
        op = operation_id or func.__qualname__

        def bind(args, kwargs):
            call = partial(func, *args, **kwargs)
            bound_fallback = partial(fallback, *args, **kwargs) if fallback else None
            return call, bound_fallback

        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            call, bound_fallback = bind(args, kwargs)
            return await breaker.guard(op, call, bound_fallback)

        @wraps(func)
        def sync_wrapper(*args, **kwargs):
            call, bound_fallback = bind(args, kwargs)
            return breaker.guard_sync(op, call, bound_fallback)

        if asyncio.iscoroutinefunction(func):
            return async_wrapper
        else:
            return sync_wrapper

    return decorator
