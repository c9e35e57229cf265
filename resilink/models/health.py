from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Tuple


class Stability(str, Enum):
    """Predicted link quality, best first."""

    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"

    @property
    def rank(self) -> int:
        return _STABILITY_ORDER.index(self)

    def worsen(self, levels: int) -> "Stability":
        index = min(len(_STABILITY_ORDER) - 1, self.rank + max(0, levels))
        return _STABILITY_ORDER[index]

    def is_worse_than(self, other: "Stability") -> bool:
        return self.rank > other.rank


_STABILITY_ORDER: Tuple[Stability, ...] = (
    Stability.EXCELLENT,
    Stability.GOOD,
    Stability.FAIR,
    Stability.POOR,
)


class RiskFactor(str, Enum):
    JITTER = "jitter"
    RISING_LATENCY = "rising_latency"
    ERROR_BURST = "error_burst"
    FREQUENT_TRANSPORT_CHANGES = "frequent_transport_changes"
    STALE_PINGS = "stale_pings"


@dataclass(frozen=True, slots=True)
class HealthPrediction:
    """Short-horizon health estimate derived from one connection record."""

    connection_id: str
    average_latency: float
    jitter: float
    latency_trend: float
    error_count_window: int
    predicted_stability: Stability
    risk_factors: FrozenSet[RiskFactor] = field(default_factory=frozenset)
    recommendations: Tuple[str, ...] = ()
    sample_count: int = 0
    computed_at: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "connection_id": self.connection_id,
            "average_latency": self.average_latency,
            "jitter": self.jitter,
            "latency_trend": self.latency_trend,
            "error_count_window": self.error_count_window,
            "predicted_stability": self.predicted_stability.value,
            "risk_factors": sorted(factor.value for factor in self.risk_factors),
            "recommendations": list(self.recommendations),
            "sample_count": self.sample_count,
            "computed_at": self.computed_at,
        }
