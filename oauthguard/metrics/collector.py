"""
Prometheus metrics for OAuth recovery, circuit breaking and token refresh.

Copyright (c) 2025 Gimel Foundation and the persons identified as the document authors.
All rights reserved. This file is subject to the Gimel Foundation's Legal Provisions Relating to GiFo Documents.
See http://GimelFoundation.com or https://github.com/Gimel-Foundation for details.
Code Components extracted from GiFo-RfC 0111 must include this license text and are provided without warranty.
"""

import logging
from typing import Any, Dict, Optional

from prometheus_client import CollectorRegistry, Counter, generate_latest

from ..common.utils import get_current_time

logger = logging.getLogger(__name__)


class RecoveryMetrics:
    """Counters for the recovery subsystem, kept on a private registry."""

    def __init__(self, registry: Optional[CollectorRegistry] = None, namespace: str = "oauthguard"):
        """
        Initialize recovery metrics.

        Args:
            registry: Prometheus registry; a fresh one is created when omitted
            namespace: Metric name prefix
        """
        self.registry = registry or CollectorRegistry()
        self._metrics_cache: Dict[str, float] = {}

        self.recoveries = Counter(
            f"{namespace}_recoveries_total",
            "Total number of recovery outcomes",
            ["strategy", "action"],
            registry=self.registry,
        )
        self.circuit_opens = Counter(
            f"{namespace}_circuit_opens_total",
            "Number of failures that left a circuit open",
            ["operation"],
            registry=self.registry,
        )
        self.circuit_rejections = Counter(
            f"{namespace}_circuit_rejections_total",
            "Calls refused because the circuit was open",
            ["operation"],
            registry=self.registry,
        )
        self.token_refreshes = Counter(
            f"{namespace}_token_refreshes_total",
            "Token refresh attempts",
            ["trigger", "outcome"],
            registry=self.registry,
        )
        self.challenges = Counter(
            f"{namespace}_challenges_total",
            "Provider challenge pages detected",
            ["type"],
            registry=self.registry,
        )

    def _bump(self, key: str) -> None:
        self._metrics_cache[key] = self._metrics_cache.get(key, 0) + 1

    def record_recovery(self, result) -> None:
        """Record a RecoveryResult."""
        self.recoveries.labels(strategy=result.strategy, action=result.action_taken).inc()
        self._bump(f"recovery_{result.strategy}_{result.action_taken}")
        logger.debug(f"Recorded recovery: {result.strategy} -> {result.action_taken}")

    def record_circuit_open(self, operation_id: str) -> None:
        self.circuit_opens.labels(operation=operation_id).inc()
        self._bump(f"circuit_open_{operation_id}")

    def record_circuit_rejection(self, operation_id: str) -> None:
        self.circuit_rejections.labels(operation=operation_id).inc()
        self._bump(f"circuit_rejection_{operation_id}")

    def record_token_refresh(self, trigger: str, outcome: str) -> None:
        """Record a refresh; trigger is reactive or scheduled, outcome is a short status word."""
        self.token_refreshes.labels(trigger=trigger, outcome=outcome).inc()
        self._bump(f"token_refresh_{trigger}_{outcome}")

    def record_challenge(self, challenge_type: str) -> None:
        self.challenges.labels(type=challenge_type).inc()
        self._bump(f"challenge_{challenge_type}")

    def count(self, key: str) -> float:
        return self._metrics_cache.get(key, 0)

    def export(self) -> str:
        """Export metrics in Prometheus text format."""
        return generate_latest(self.registry).decode("utf-8")

    def get_metrics_summary(self) -> Dict[str, Any]:
        return {
            "metrics_count": len(self._metrics_cache),
            "cached_metrics": self._metrics_cache.copy(),
            "timestamp": get_current_time().isoformat(),
        }
