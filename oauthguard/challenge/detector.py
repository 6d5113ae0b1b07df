# Copyright (c) 2025 Gimel Foundation and the persons identified as the document authors.
# All rights reserved. This file is subject to the Gimel Foundation's Legal Provisions Relating to GiFo Documents.
# See http://GimelFoundation.com or https://github.com/Gimel-Foundation for details.
# Code Components extracted from GiFo-RfC 0111 must include this license text and are provided without warranty.

"""
Detection of provider interstitial challenge pages.

A provider sitting behind a bot-protection edge sometimes answers with an
HTML verification page instead of a JSON API response. The detector tells
those pages apart from genuine API errors so callers can render the right
UI rather than treating the page as a failed token exchange.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Union

from ..core.config import ChallengeConfig

logger = logging.getLogger(__name__)


class ChallengeType(str, Enum):
    """Kinds of interstitial challenge."""
    TURNSTILE = "turnstile"
    BROWSER_CHALLENGE = "browser_challenge"
    RATE_LIMIT = "rate_limit"


@dataclass(frozen=True)
class Challenge:
    """
    Challenge extracted from a provider response.

    Attributes:
        type: Challenge kind
        site_key: Widget site key, only present for turnstile challenges
        challenge_data: Which markers matched
    """
    type: ChallengeType
    site_key: Optional[str] = None
    challenge_data: Mapping[str, Union[bool, str]] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, 'challenge_data', MappingProxyType(dict(self.challenge_data)))

    @property
    def manual_verification(self) -> bool:
        return self.type is ChallengeType.BROWSER_CHALLENGE

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.type.value,
            'site_key': self.site_key,
            'challenge_data': dict(self.challenge_data),
        }


class ChallengeDetector:
    """
    Classifies raw HTTP responses as challenges or ordinary errors.

    Precedence is fixed because bodies can carry overlapping markers:
    turnstile, then browser challenge, then rate limit (status 429).
    """

    def __init__(self, config: Optional[ChallengeConfig] = None):
        self.config = config or ChallengeConfig()
        self._site_key_pattern = re.compile(self.config.site_key_pattern)

    def detect(self, status_code: int, body: Optional[str]) -> Optional[Challenge]:
        """
        Inspect a response for a provider challenge.

        Args:
            status_code: HTTP status code of the response
            body: Response body text

        Returns:
            Challenge if one was recognised, None for a genuine API error
        """
        body = body or ""

        if self._has_turnstile(body):
            challenge = Challenge(
                type=ChallengeType.TURNSTILE,
                site_key=self._extract_site_key(body),
                challenge_data={'turnstile_present': True},
            )
        elif self._has_challenge_stage(body):
            challenge = Challenge(
                type=ChallengeType.BROWSER_CHALLENGE,
                challenge_data={'challenge_stage_present': True},
            )
        elif self._has_legacy_marker(body):
            challenge = Challenge(
                type=ChallengeType.BROWSER_CHALLENGE,
                challenge_data={'legacy_detection': True},
            )
        elif status_code == 429:
            challenge = Challenge(
                type=ChallengeType.RATE_LIMIT,
                challenge_data={'rate_limited': True},
            )
        else:
            return None

        logger.info(f"Detected {challenge.type.value} challenge in provider response (status {status_code})")
        return challenge

    def _has_turnstile(self, body: str) -> bool:
        return any(marker in body for marker in self.config.turnstile_markers)

    def _has_challenge_stage(self, body: str) -> bool:
        return any(marker in body for marker in self.config.challenge_stage_markers)

    def _has_legacy_marker(self, body: str) -> bool:
        return any(marker in body for marker in self.config.legacy_markers)

    def _extract_site_key(self, body: str) -> Optional[str]:
        match = self._site_key_pattern.search(body)
        return match.group(1) if match else None
