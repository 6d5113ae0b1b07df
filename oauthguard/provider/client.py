# Copyright (c) 2025 Gimel Foundation and the persons identified as the document authors.
# All rights reserved. This file is subject to the Gimel Foundation's Legal Provisions Relating to GiFo Documents.
# See http://GimelFoundation.com or https://github.com/Gimel-Foundation for details.
# Code Components extracted from GiFo-RfC 0111 must include this license text and are provided without warranty.

"""
Refresh-grant client for the OAuth provider's token endpoint.

This is the token-exchange boundary: error responses are first run through
the ChallengeDetector and only then classified as OAuth errors.
"""

import asyncio
import json
import logging
import random
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

import aiohttp

from ..challenge import ChallengeDetector, ChallengeType
from ..core.config import ProviderConfig
from ..core.types import OAuthToken
from ..common.utils import get_current_time
from ..errors import (
    ChallengeRequiredError,
    ConfigurationError,
    ErrorClassifier,
    ErrorKind,
    ServerError,
    TokenError,
    error_kind,
)

logger = logging.getLogger(__name__)


class ProviderTokenClient:
    """Posts refresh grants to the provider and maps failures onto the error taxonomy."""

    def __init__(
        self,
        config: ProviderConfig,
        session: Optional[aiohttp.ClientSession] = None,
        detector: Optional[ChallengeDetector] = None,
        metrics=None,
    ):
        """
        Initialize the provider client.

        Args:
            config: Token endpoint and client credentials
            session: Shared aiohttp session; one is created on first use otherwise
            detector: Challenge detector for error responses
            metrics: Optional RecoveryMetrics
        """
        self.config = config
        self.detector = detector or ChallengeDetector()
        self._session = session
        self._owns_session = session is None
        self._metrics = metrics

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(headers={"User-Agent": self.config.user_agent})
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    async def refresh_grant(self, refresh_token: str) -> Dict[str, Any]:
        """
        Exchange a refresh token for a new access token.

        Returns:
            Parsed token response (``access_token``, ``expires_in``, ...)

        Raises:
            ChallengeRequiredError: the provider answered with a challenge page
            OAuthError: any other classified provider or transport failure
        """
        if not self.config.token_url or not self.config.client_id:
            raise ConfigurationError("Provider token endpoint is not configured")

        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
        }
        timeout = aiohttp.ClientTimeout(total=self.config.request_timeout.total_seconds())

        try:
            async with self._get_session().post(
                self.config.token_url,
                data=data,
                headers={"Accept": "application/json"},
                timeout=timeout,
            ) as resp:
                status = resp.status
                headers = dict(resp.headers)
                body = await resp.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Token refresh request failed: {e}")
            raise ErrorClassifier.classify_network_error(e) from e

        if 200 <= status < 300:
            return self._parse_token_response(status, body)

        self._raise_for_challenge(status, body, headers)
        error = ErrorClassifier.classify_http_error(status, body, headers)
        logger.warning(f"Token refresh rejected: {json.dumps(error.to_dict())}")
        raise error

    def _parse_token_response(self, status: int, body: str) -> Dict[str, Any]:
        try:
            payload = json.loads(body)
        except json.JSONDecodeError:
            # Some edges serve a challenge page with a 200
            self._raise_for_challenge(status, body, {})
            raise ServerError("Provider returned a non-JSON token response", http_status=status, raw_response=body)

        if not isinstance(payload, dict) or not payload.get("access_token"):
            raise TokenError("Token response did not include an access token", http_status=status, raw_response=body)
        return payload

    def _raise_for_challenge(self, status: int, body: str, headers: Dict[str, str]) -> None:
        challenge = self.detector.detect(status, body)
        if challenge is None:
            return

        if self._metrics:
            self._metrics.record_challenge(challenge.type.value)
        if challenge.type is ChallengeType.RATE_LIMIT:
            # Plain 429s keep their retry hints
            raise ErrorClassifier.classify_http_error(status, body, headers)
        raise ChallengeRequiredError(challenge, http_status=status, raw_response=body)


_TRANSIENT_KINDS = frozenset({ErrorKind.NETWORK_ERROR, ErrorKind.SERVER_ERROR})


class ProviderTokenRefresher:
    """
    Refresher hook for token stores, backed by a ProviderTokenClient.

    Network and server failures of the refresh grant are retried up to
    ``config.refresh_retries`` times with capped exponential backoff and
    10-30% jitter. Rejections of the grant itself are raised immediately.
    """

    def __init__(self, client: ProviderTokenClient, clock: Callable[[], datetime] = get_current_time,
                 default_expires_in: float = 3600, sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                 rng: Optional[random.Random] = None):
        self.client = client
        self._clock = clock
        self.default_expires_in = default_expires_in
        self._sleep = sleep
        self._rng = rng or random.Random()

    def retry_delay(self, attempt: int) -> float:
        """Seconds to wait before retry number ``attempt`` (1-based)."""
        config = self.client.config
        base = config.retry_base_delay.total_seconds() * (2 ** (attempt - 1))
        delay = min(base, config.retry_max_delay.total_seconds())
        return delay * (1 + self._rng.uniform(0.1, 0.3))

    async def __call__(self, token: OAuthToken) -> bool:
        payload = await self._refresh_grant(token)
        token.update_tokens(
            access_token=payload["access_token"],
            expires_in=float(payload.get("expires_in") or self.default_expires_in),
            refresh_token=payload.get("refresh_token"),
            scope=payload.get("scope"),
            raw_response=payload,
            now=self._clock(),
        )
        logger.info(f"Refreshed token {token.id} for user {token.user_id} (version {token.version})")
        return True

    async def _refresh_grant(self, token: OAuthToken) -> Dict[str, Any]:
        retries = self.client.config.refresh_retries
        attempt = 0
        while True:
            try:
                return await self.client.refresh_grant(token.refresh_token)
            except Exception as e:
                if error_kind(e) not in _TRANSIENT_KINDS:
                    raise
                attempt += 1
                if attempt > retries:
                    logger.error(f"Token refresh for {token.id} failed after {attempt} attempts: {e}")
                    raise
                delay = self.retry_delay(attempt)
                logger.warning(f"Refresh attempt {attempt} for token {token.id} failed: {e}. "
                               f"Retrying in {delay:.2f}s")
                await self._sleep(delay)
