"""
oauthguard Python Package

Resilience and recovery for calls against an unreliable OAuth provider:
circuit breaking, error recovery strategies, token lifecycle management and
challenge page detection.
"""

__version__ = "0.1.0"

from .core.guard import OAuthGuard
from .degradation import GracefulDegradation
from .core.config import Config
from .core.types import (
    User,
    OAuthToken,
    RecoveryContext,
    RecoveryResult,
)
from .circuit import CircuitBreaker, GuardedOperationConfig, guarded
from .challenge import Challenge, ChallengeDetector, ChallengeType
from .errors import CircuitOpenError, ErrorKind, OAuthError
from .recovery import RecoveryDispatcher

__all__ = [
    "OAuthGuard",
    "Config",
    "User",
    "OAuthToken",
    "RecoveryContext",
    "RecoveryResult",
    "CircuitBreaker",
    "GuardedOperationConfig",
    "guarded",
    "Challenge",
    "ChallengeDetector",
    "ChallengeType",
    "CircuitOpenError",
    "ErrorKind",
    "OAuthError",
    "RecoveryDispatcher",
    "GracefulDegradation",
]
