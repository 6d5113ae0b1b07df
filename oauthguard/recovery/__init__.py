# Copyright (c) 2025 Gimel Foundation and the persons identified as the document authors.
# All rights reserved. This file is subject to the Gimel Foundation's Legal Provisions Relating to GiFo Documents.
# See http://GimelFoundation.com or https://github.com/Gimel-Foundation for details.
# Code Components extracted from GiFo-RfC 0111 must include this license text and are provided without warranty.

"""
Recovery strategies and the dispatcher that selects between them.
"""

from .base import RecoveryStrategy
from .network_retry import NetworkRetryStrategy
from .rate_limit import RateLimitStrategy, humanize_duration, rate_limit_cache_key
from .reauthentication import ReauthenticationStrategy
from .token_refresh import TokenRefreshStrategy
from .default import DefaultStrategy
from .dispatcher import RecoveryDispatcher, create_recovery_dispatcher

__all__ = [
    "RecoveryStrategy",
    "NetworkRetryStrategy",
    "RateLimitStrategy",
    "ReauthenticationStrategy",
    "TokenRefreshStrategy",
    "DefaultStrategy",
    "RecoveryDispatcher",
    "create_recovery_dispatcher",
    "humanize_duration",
    "rate_limit_cache_key",
]
