# Copyright (c) 2025 Gimel Foundation and the persons identified as the document authors.
# All rights reserved. This file is subject to the Gimel Foundation's Legal Provisions Relating to GiFo Documents.
# See http://GimelFoundation.com or https://github.com/Gimel-Foundation for details.
# Code Components extracted from GiFo-RfC 0111 must include this license text and are provided without warranty.

"""
Configuration module for oauthguard.

Configuration is layered: dataclass defaults, then an optional YAML/JSON
file, then ``OAUTHGUARD_*`` environment variables.
"""

from dataclasses import dataclass, field, fields
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

from ..util.config import get_config_value, load_config_file, parse_duration


@dataclass
class CircuitConfig:
    """Defaults for guarded operations without explicit configuration"""
    failure_threshold: int = 5
    open_timeout: timedelta = field(default_factory=lambda: timedelta(seconds=60))


@dataclass
class RecoveryConfig:
    """Recovery strategy settings"""
    max_network_attempts: int = 3
    backoff_base: float = 2.0
    max_retry_delay: timedelta = field(default_factory=lambda: timedelta(minutes=5))
    default_rate_limit_delay: timedelta = field(default_factory=lambda: timedelta(seconds=60))
    provider_name: str = "provider"
    reauth_path: str = "/auth/provider"
    extended_scope_query: str = "scope=extended"
    max_escalations: int = 3
    detect_revocation: bool = True


@dataclass
class TokenLifecycleConfig:
    """Token expiry tracking and proactive refresh settings"""
    refresh_window: timedelta = field(default_factory=lambda: timedelta(minutes=5))
    check_interval: timedelta = field(default_factory=lambda: timedelta(minutes=15))
    check_buffer_minutes: int = 30
    refresh_timeout: timedelta = field(default_factory=lambda: timedelta(seconds=30))


@dataclass
class ChallengeConfig:
    """Markers identifying provider interstitial pages"""
    turnstile_markers: Tuple[str, ...] = ("cf-turnstile",)
    challenge_stage_markers: Tuple[str, ...] = ("challenge-stage", "cf-challenge-running")
    legacy_markers: Tuple[str, ...] = ("Just a moment...", "Just a moment…")
    site_key_pattern: str = r"""data-sitekey=["']([^"']+)["']"""


@dataclass
class ProviderConfig:
    """OAuth provider endpoint settings"""
    token_url: str = ""
    client_id: str = ""
    client_secret: str = ""
    request_timeout: timedelta = field(default_factory=lambda: timedelta(seconds=15))
    user_agent: str = "oauthguard/0.1"
    refresh_retries: int = 3
    retry_base_delay: timedelta = field(default_factory=lambda: timedelta(seconds=1))
    retry_max_delay: timedelta = field(default_factory=lambda: timedelta(seconds=16))


@dataclass
class DegradationConfig:
    """Cached-data fallbacks and the deferred operation queue"""
    data_ttl: timedelta = field(default_factory=lambda: timedelta(hours=24))
    key_prefix: str = "degraded_data"
    max_queued_per_user: int = 100


@dataclass
class CacheConfig:
    """Cache backend settings"""
    backend: str = "memory"
    redis_url: str = "redis://localhost:6379/0"
    key_prefix: str = ""


@dataclass
class Config:
    """Configuration for the OAuth resilience subsystem"""
    circuit: CircuitConfig = field(default_factory=CircuitConfig)
    recovery: RecoveryConfig = field(default_factory=RecoveryConfig)
    tokens: TokenLifecycleConfig = field(default_factory=TokenLifecycleConfig)
    challenge: ChallengeConfig = field(default_factory=ChallengeConfig)
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    degradation: DegradationConfig = field(default_factory=DegradationConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        """Build configuration from a nested dictionary (e.g. a parsed file)"""
        return cls(
            circuit=_build_section(CircuitConfig, data.get("circuit")),
            recovery=_build_section(RecoveryConfig, data.get("recovery")),
            tokens=_build_section(TokenLifecycleConfig, data.get("tokens")),
            challenge=_build_section(ChallengeConfig, data.get("challenge")),
            provider=_build_section(ProviderConfig, data.get("provider")),
            cache=_build_section(CacheConfig, data.get("cache")),
            degradation=_build_section(DegradationConfig, data.get("degradation")),
        )

    @classmethod
    def from_file(cls, file_path: Union[str, Path]) -> "Config":
        """Create configuration from a YAML or JSON file, then apply environment overrides"""
        config = cls.from_dict(load_config_file(file_path))
        config.apply_env()
        return config

    @classmethod
    def from_env(cls) -> "Config":
        """Create configuration from environment variables"""
        config = cls()
        config.apply_env()
        return config

    def apply_env(self) -> None:
        """Override settings with OAUTHGUARD_* environment variables"""
        self.circuit.failure_threshold = get_config_value(
            "circuit_failure_threshold", self.circuit.failure_threshold, int)
        self.circuit.open_timeout = get_config_value(
            "circuit_open_timeout", self.circuit.open_timeout, timedelta)

        self.recovery.provider_name = get_config_value("provider_name", self.recovery.provider_name)
        self.recovery.reauth_path = get_config_value("reauth_path", self.recovery.reauth_path)
        self.recovery.max_network_attempts = get_config_value(
            "max_network_attempts", self.recovery.max_network_attempts, int)

        self.tokens.refresh_window = get_config_value("refresh_window", self.tokens.refresh_window, timedelta)
        self.tokens.check_interval = get_config_value(
            "refresh_check_interval", self.tokens.check_interval, timedelta)
        self.tokens.check_buffer_minutes = get_config_value(
            "refresh_check_buffer_minutes", self.tokens.check_buffer_minutes, int)
        self.tokens.refresh_timeout = get_config_value("refresh_timeout", self.tokens.refresh_timeout, timedelta)

        self.provider.token_url = get_config_value("provider_token_url", self.provider.token_url)
        self.provider.client_id = get_config_value("provider_client_id", self.provider.client_id)
        self.provider.client_secret = get_config_value("provider_client_secret", self.provider.client_secret)
        self.provider.refresh_retries = get_config_value(
            "provider_refresh_retries", self.provider.refresh_retries, int)

        self.cache.backend = get_config_value("cache_backend", self.cache.backend)
        self.cache.redis_url = get_config_value("redis_url", self.cache.redis_url)

        self.degradation.data_ttl = get_config_value(
            "degraded_data_ttl", self.degradation.data_ttl, timedelta)

    def validate(self) -> bool:
        """Validate the configuration"""
        if self.circuit.failure_threshold < 1:
            raise ValueError("circuit.failure_threshold must be at least 1")
        if self.recovery.max_network_attempts < 1:
            raise ValueError("recovery.max_network_attempts must be at least 1")
        if not self.recovery.reauth_path:
            raise ValueError("recovery.reauth_path is required")
        if self.tokens.check_buffer_minutes <= 0:
            raise ValueError("tokens.check_buffer_minutes must be positive")
        if self.provider.refresh_retries < 0:
            raise ValueError("provider.refresh_retries must not be negative")
        if self.degradation.max_queued_per_user < 1:
            raise ValueError("degradation.max_queued_per_user must be at least 1")
        if self.cache.backend not in ("memory", "redis"):
            raise ValueError(f"Unknown cache backend: {self.cache.backend}")
        if self.provider.token_url and not self.provider.client_id:
            raise ValueError("provider.client_id is required when provider.token_url is set")
        return True


def _build_section(section_cls: type, data: Optional[Dict[str, Any]]):
    if not data:
        return section_cls()

    known = {f.name: f for f in fields(section_cls)}
    unknown = set(data) - set(known)
    if unknown:
        raise ValueError(f"Unknown {section_cls.__name__} settings: {', '.join(sorted(unknown))}")

    kwargs = {}
    for name, value in data.items():
        field_type = known[name].type
        if field_type is timedelta:
            value = parse_duration(value)
        elif field_type == Tuple[str, ...]:
            value = tuple(value) if isinstance(value, (list, tuple)) else (value,)
        kwargs[name] = value
    return section_cls(**kwargs)
