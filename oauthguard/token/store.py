# Copyright (c) 2025 Gimel Foundation and the persons identified as the document authors.
# All rights reserved. This file is subject to the Gimel Foundation's Legal Provisions Relating to GiFo Documents.
# See http://GimelFoundation.com or https://github.com/Gimel-Foundation for details.
# Code Components extracted from GiFo-RfC 0111 must include this license text and are provided without warranty.

"""
Token persistence interface used by recovery and lifecycle code.

Stores hand out the live OAuthToken objects they hold; a refresh mutates the
token in place (see OAuthToken.update_tokens) so every holder observes the new
``version``.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional

from ..core.types import OAuthToken
from ..common.utils import get_current_time

logger = logging.getLogger(__name__)

# Performs the provider round-trip for a token; returns True on success
Refresher = Callable[[OAuthToken], Awaitable[bool]]


class TokenStore(ABC):
    """Abstract base class for OAuth token storage."""

    @abstractmethod
    async def save(self, token: OAuthToken) -> None:
        """Store or replace a token."""
        pass

    @abstractmethod
    async def get(self, token_id: str) -> Optional[OAuthToken]:
        pass

    @abstractmethod
    async def tokens_for(self, user_id: str) -> List[OAuthToken]:
        """All tokens held for a user, oldest first."""
        pass

    @abstractmethod
    async def most_recent(self, user_id: str) -> Optional[OAuthToken]:
        """The user's most recently issued token, if any."""
        pass

    @abstractmethod
    async def invalidate_all(self, user_id: str) -> int:
        """Force every unexpired token of the user to expire now; returns the count."""
        pass

    @abstractmethod
    async def expiring_between(self, start: datetime, end: datetime) -> List[OAuthToken]:
        """Tokens with ``start < expires_at <= end``."""
        pass

    @abstractmethod
    async def unlink(self, user_id: str) -> int:
        """Remove the user's integration entirely; returns tokens removed."""
        pass

    @abstractmethod
    async def refresh(self, token: OAuthToken) -> bool:
        """Refresh ``token`` against the provider. May raise."""
        pass


class MemoryTokenStore(TokenStore):
    """
    In-memory token store.

    Args:
        refresher: Coroutine performing the provider refresh for a token
        clock: Callable returning the current time
    """

    def __init__(self, refresher: Optional[Refresher] = None,
                 clock: Callable[[], datetime] = get_current_time):
        self._tokens: Dict[str, OAuthToken] = {}
        self._lock = asyncio.Lock()
        self._refresher = refresher
        self._clock = clock

    def set_refresher(self, refresher: Refresher) -> None:
        self._refresher = refresher

    async def save(self, token: OAuthToken) -> None:
        async with self._lock:
            self._tokens[token.id] = token
            logger.debug(f"Stored token {token.id} for user {token.user_id}")

    async def get(self, token_id: str) -> Optional[OAuthToken]:
        async with self._lock:
            return self._tokens.get(token_id)

    async def tokens_for(self, user_id: str) -> List[OAuthToken]:
        async with self._lock:
            tokens = [t for t in self._tokens.values() if t.user_id == user_id]
        return sorted(tokens, key=lambda t: t.created_at)

    async def most_recent(self, user_id: str) -> Optional[OAuthToken]:
        tokens = await self.tokens_for(user_id)
        return tokens[-1] if tokens else None

    async def invalidate_all(self, user_id: str) -> int:
        now = self._clock()
        async with self._lock:
            # Already-expired tokens keep their original expiry
            tokens = [t for t in self._tokens.values() if t.user_id == user_id and t.expires_at > now]
            for token in tokens:
                token.invalidate(now)

        if tokens:
            logger.info(f"Invalidated {len(tokens)} tokens for user {user_id}")
        return len(tokens)

    async def expiring_between(self, start: datetime, end: datetime) -> List[OAuthToken]:
        async with self._lock:
            return [t for t in self._tokens.values() if start < t.expires_at <= end]

    async def unlink(self, user_id: str) -> int:
        async with self._lock:
            token_ids = [tid for tid, t in self._tokens.items() if t.user_id == user_id]
            for token_id in token_ids:
                del self._tokens[token_id]

        logger.info(f"Unlinked user {user_id}, removed {len(token_ids)} tokens")
        return len(token_ids)

    async def refresh(self, token: OAuthToken) -> bool:
        if not token.refresh_token:
            logger.warning(f"Token {token.id} has no refresh token")
            return False
        if self._refresher is None:
            logger.warning("No refresher configured, cannot refresh tokens")
            return False
        return bool(await self._refresher(token))

    async def size(self) -> int:
        async with self._lock:
            return len(self._tokens)
