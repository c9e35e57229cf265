from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, NamedTuple, Optional, Tuple, TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover - typing only
    from resilink.models.connection_record import ConnectionRecord


class DisconnectionCause(str, Enum):
    NETWORK_LOSS = "network_loss"
    SERVER_RESTART = "server_restart"
    CLIENT_TIMEOUT = "client_timeout"
    TRANSPORT_ERROR = "transport_error"
    AUTHORIZATION_FAILURE = "authorization_failure"
    USER_INITIATED = "user_initiated"
    UNKNOWN = "unknown"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Recoverability(str, Enum):
    IMMEDIATE = "immediate"
    DELAYED = "delayed"
    MANUAL = "manual"


class ReconnectionStrategy(str, Enum):
    IMMEDIATE_RETRY = "immediate-retry"
    EXPONENTIAL_BACKOFF = "exponential-backoff"
    TRANSPORT_FALLBACK = "transport-fallback"
    USER_PROMPT = "user-prompt"


@dataclass(frozen=True, slots=True)
class ConnectionHistorySnapshot:
    """Read-only summary of a connection used to classify its disconnect."""

    duration_seconds: float = 0.0
    error_count: int = 0
    recent_error_count: int = 0
    transport_upgrades: int = 0
    recent_failures: int = 0
    network_type: Optional[str] = None
    longest_connection_seconds: Optional[float] = None

    @classmethod
    def from_record(
        cls,
        record: "ConnectionRecord",
        now: float,
        *,
        error_window: float = 60.0,
        recent_failures: int = 0,
        longest_connection_seconds: Optional[float] = None,
    ) -> "ConnectionHistorySnapshot":
        reference = record.end_time if record.end_time is not None else now
        recent = sum(1 for entry in record.errors if reference - entry.timestamp <= error_window)
        return cls(
            duration_seconds=record.duration(now),
            error_count=len(record.errors),
            recent_error_count=recent,
            transport_upgrades=record.upgrade_count,
            recent_failures=recent_failures,
            network_type=record.client_info.network_type,
            longest_connection_seconds=longest_connection_seconds,
        )


@dataclass(frozen=True, slots=True)
class DisconnectionAnalysis:
    connection_id: str
    reported_reason: str
    cause: DisconnectionCause
    severity: Severity
    recoverability: Recoverability
    contextual_factors: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "connection_id": self.connection_id,
            "reported_reason": self.reported_reason,
            "cause": self.cause.value,
            "severity": self.severity.value,
            "recoverability": self.recoverability.value,
            "contextual_factors": list(self.contextual_factors),
        }


class ReconnectionAttempt(NamedTuple):
    attempt: int
    delay_ms: float
    transport: str


@dataclass(frozen=True, slots=True)
class ReconnectionPlan:
    """Stateless recovery recommendation handed to the orchestrator."""

    connection_id: str
    strategy: ReconnectionStrategy
    estimated_delay_ms: float
    max_attempts: int
    tips: Tuple[str, ...] = ()
    schedule: Tuple[ReconnectionAttempt, ...] = ()
    cause: DisconnectionCause = DisconnectionCause.UNKNOWN
    issued_at: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "connection_id": self.connection_id,
            "strategy": self.strategy.value,
            "estimated_delay_ms": self.estimated_delay_ms,
            "max_attempts": self.max_attempts,
            "tips": list(self.tips),
            "schedule": [attempt._asdict() for attempt in self.schedule],
            "cause": self.cause.value,
            "issued_at": self.issued_at,
        }
