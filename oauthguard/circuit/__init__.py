# Copyright (c) 2025 Gimel Foundation and the persons identified as the document authors.
# All rights reserved. This file is subject to the Gimel Foundation's Legal Provisions Relating to GiFo Documents.
# See http://GimelFoundation.com or https://github.com/Gimel-Foundation for details.
# Code Components extracted from GiFo-RfC 0111 must include this license text and are provided without warranty.

"""
Package circuit provides the circuit breaker guarding outbound provider calls.

This package implements the circuit breaker pattern to stop calling a failing
provider operation:
- Per-operation failure tracking (Circuit)
- Threshold-based opening with timeout auto-reset
- Optional fallbacks when a circuit is open
- Statistics snapshots for status views
"""

from .circuit import (
    # Core circuit breaker
    CircuitBreaker,
    GuardedOperationConfig,

    # State management
    Circuit,

    # Statistics
    CircuitStats,

    # Decorators and utilities
    guarded,
)
from ..errors import CircuitOpenError

__all__ = [
    # Core circuit breaker
    'CircuitBreaker',
    'GuardedOperationConfig',

    # State management
    'Circuit',

    # Statistics
    'CircuitStats',

    # Exceptions
    'CircuitOpenError',

    # Decorators and utilities
    'guarded',
]
