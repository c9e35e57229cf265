"""Data model shared by the resilience services.

Records and candidates are owned by exactly one service; everything handed
across a service boundary is either immutable or a snapshot copy.
"""
from .connection_record import (
    ClientInfo,
    ConnectionRecord,
    ConnectionState,
    ErrorEntry,
    PingSample,
    TransportUpgrade,
)
from .discovered import AuthorizationState, DiscoveredDevice, DiscoveredService
from .disconnection import (
    ConnectionHistorySnapshot,
    DisconnectionAnalysis,
    DisconnectionCause,
    ReconnectionAttempt,
    ReconnectionPlan,
    ReconnectionStrategy,
    Recoverability,
    Severity,
)
from .health import HealthPrediction, RiskFactor, Stability

__all__ = [
    "AuthorizationState",
    "ClientInfo",
    "ConnectionHistorySnapshot",
    "ConnectionRecord",
    "ConnectionState",
    "DisconnectionAnalysis",
    "DisconnectionCause",
    "DiscoveredDevice",
    "DiscoveredService",
    "ErrorEntry",
    "HealthPrediction",
    "PingSample",
    "ReconnectionAttempt",
    "ReconnectionPlan",
    "ReconnectionStrategy",
    "Recoverability",
    "RiskFactor",
    "Severity",
    "Stability",
    "TransportUpgrade",
]
