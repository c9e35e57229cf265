"""Disconnect classification and reconnection planning."""
from __future__ import annotations

import logging
import random
import time
from collections import Counter, deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence, Tuple

from resilink.config import ReconnectionConfig
from resilink.events import EventBus
from resilink.models import (
    ConnectionHistorySnapshot,
    DisconnectionAnalysis,
    DisconnectionCause,
    ReconnectionAttempt,
    ReconnectionPlan,
    ReconnectionStrategy,
    Recoverability,
    Severity,
)

logger = logging.getLogger(__name__)

# Checked in order; the first matching phrase wins.
REASON_KEYWORDS: Tuple[Tuple[Tuple[str, ...], DisconnectionCause], ...] = (
    (("unauthorized", "forbidden", "auth"), DisconnectionCause.AUTHORIZATION_FAILURE),
    (("client namespace disconnect", "user"), DisconnectionCause.USER_INITIATED),
    (("io server disconnect", "server error", "shutdown", "restart"), DisconnectionCause.SERVER_RESTART),
    (("ping timeout", "timeout"), DisconnectionCause.CLIENT_TIMEOUT),
    (("transport error", "parse error"), DisconnectionCause.TRANSPORT_ERROR),
    (("transport close", "network", "connection lost"), DisconnectionCause.NETWORK_LOSS),
)

_ABRUPT_MARKERS = ("close", "reset", "abort", "lost")
_FALLBACK_TRANSPORTS = ("websocket", "polling")

_STRATEGY_SUCCESS_WEIGHT = {
    ReconnectionStrategy.IMMEDIATE_RETRY: 0.8,
    ReconnectionStrategy.EXPONENTIAL_BACKOFF: 1.2,
    ReconnectionStrategy.TRANSPORT_FALLBACK: 1.1,
    ReconnectionStrategy.USER_PROMPT: 1.0,
}

_TIPS = {
    DisconnectionCause.NETWORK_LOSS: "Network connection was lost; reconnect once the network is back",
    DisconnectionCause.SERVER_RESTART: "The server restarted; it should be reachable again shortly",
    DisconnectionCause.CLIENT_TIMEOUT: "Heartbeats timed out; move closer to the access point or use USB",
    DisconnectionCause.TRANSPORT_ERROR: "The transport failed; falling back to an alternative transport",
    DisconnectionCause.AUTHORIZATION_FAILURE: "Re-pair the device: its credentials were rejected",
    DisconnectionCause.USER_INITIATED: "The connection was closed on purpose; reconnect when ready",
    DisconnectionCause.UNKNOWN: "Connection dropped for an unknown reason; retrying with backoff",
}

DEFAULT_SUCCESS_PROBABILITY = 0.7


def classify_reason(reported_reason: Optional[str]) -> DisconnectionCause:
    reason = (reported_reason or "").strip().lower()
    if not reason:
        return DisconnectionCause.UNKNOWN
    for phrases, cause in REASON_KEYWORDS:
        if any(phrase in reason for phrase in phrases):
            return cause
    return DisconnectionCause.UNKNOWN


@dataclass(slots=True)
class PlanLogEntry:
    plan: ReconnectionPlan
    analysis: DisconnectionAnalysis

    def to_dict(self) -> Dict[str, Any]:
        return {"plan": self.plan.to_dict(), "analysis": self.analysis.to_dict()}


@dataclass(slots=True)
class OutcomeSample:
    attempt: int
    success: bool
    duration_ms: float
    timestamp: float


@dataclass(slots=True)
class ClientReconnectionState:
    attempts: int = 0
    successes: int = 0
    failures: int = 0
    total_duration_ms: float = 0.0
    last_attempt_at: Optional[float] = None
    patterns: Deque[OutcomeSample] = field(default_factory=lambda: deque(maxlen=20))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempts": self.attempts,
            "successes": self.successes,
            "failures": self.failures,
            "total_duration_ms": self.total_duration_ms,
            "last_attempt_at": self.last_attempt_at,
        }


class SmartReconnectionManager:
    """Turn a disconnect into a concrete retry plan.

    Classification and planning do no I/O and never raise; the only state kept
    here is the bounded plan log and the optional outcome feedback used by
    :meth:`predict_success` and :meth:`get_recommendations`.
    """

    def __init__(
        self,
        config: Optional[ReconnectionConfig] = None,
        *,
        bus: Optional[EventBus] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or ReconnectionConfig()
        self.bus = bus
        self._rng = rng or random.Random()
        self._clock = clock
        self._plan_log: Deque[PlanLogEntry] = deque(maxlen=self.config.plan_log_size)
        self._clients: Dict[str, ClientReconnectionState] = {}
        self._by_strategy: Counter[str] = Counter()
        self._by_cause: Counter[str] = Counter()
        self.plans_issued = 0
        self.successful_reconnections = 0
        self.failed_reconnections = 0
        self._total_reconnection_ms = 0.0

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------
    def analyze_disconnection_cause(
        self,
        connection_id: str,
        reported_reason: Optional[str],
        history: Optional[ConnectionHistorySnapshot] = None,
    ) -> DisconnectionAnalysis:
        reason = (reported_reason or "").strip().lower()
        cause = classify_reason(reason)
        factors: List[str] = []
        if history is None:
            factors.append("no_history")
            history = ConnectionHistorySnapshot()
        else:
            cause = self._apply_history_bias(cause, reason, history, factors)

        severity = self._severity(cause, history)
        recoverability = self._recoverability(cause, severity)
        analysis = DisconnectionAnalysis(
            connection_id=connection_id,
            reported_reason=reported_reason or "",
            cause=cause,
            severity=severity,
            recoverability=recoverability,
            contextual_factors=tuple(factors),
        )
        logger.debug(
            "Disconnect %s classified as %s/%s/%s",
            connection_id,
            cause.value,
            severity.value,
            recoverability.value,
        )
        return analysis

    def _apply_history_bias(
        self,
        cause: DisconnectionCause,
        reason: str,
        history: ConnectionHistorySnapshot,
        factors: List[str],
    ) -> DisconnectionCause:
        cfg = self.config
        if history.duration_seconds < cfg.short_lived_seconds:
            factors.append("short_lived_connection")
            if cause is DisconnectionCause.NETWORK_LOSS:
                cause = DisconnectionCause.TRANSPORT_ERROR
        elif history.duration_seconds >= cfg.long_lived_seconds:
            factors.append("long_lived_connection")
            if cause is DisconnectionCause.UNKNOWN and any(marker in reason for marker in _ABRUPT_MARKERS):
                cause = DisconnectionCause.NETWORK_LOSS

        if history.transport_upgrades >= cfg.frequent_upgrade_threshold:
            if cause in (DisconnectionCause.NETWORK_LOSS, DisconnectionCause.TRANSPORT_ERROR):
                cause = DisconnectionCause.UNKNOWN
            factors.append("unstable_network")

        if history.recent_error_count >= cfg.high_error_count:
            factors.append("error_burst")
        if (history.network_type or "").lower() in {"mobile", "cellular"}:
            factors.append("mobile_network")
        return cause

    def _severity(self, cause: DisconnectionCause, history: ConnectionHistorySnapshot) -> Severity:
        cfg = self.config
        if cause is DisconnectionCause.USER_INITIATED:
            return Severity.LOW
        if cause is DisconnectionCause.AUTHORIZATION_FAILURE:
            return Severity.HIGH
        if history.recent_error_count >= cfg.high_error_count or history.recent_failures > 3:
            return Severity.HIGH
        if cause is DisconnectionCause.UNKNOWN:
            return Severity.MEDIUM
        if history.error_count == 0 and history.duration_seconds >= cfg.long_lived_seconds:
            return Severity.LOW
        if cause in (DisconnectionCause.CLIENT_TIMEOUT, DisconnectionCause.TRANSPORT_ERROR):
            return Severity.HIGH
        return Severity.MEDIUM

    @staticmethod
    def _recoverability(cause: DisconnectionCause, severity: Severity) -> Recoverability:
        if cause in (DisconnectionCause.AUTHORIZATION_FAILURE, DisconnectionCause.USER_INITIATED):
            return Recoverability.MANUAL
        if severity is Severity.LOW and cause in (
            DisconnectionCause.NETWORK_LOSS,
            DisconnectionCause.TRANSPORT_ERROR,
            DisconnectionCause.CLIENT_TIMEOUT,
        ):
            return Recoverability.IMMEDIATE
        return Recoverability.DELAYED

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------
    def recommend_strategy(
        self,
        analysis: DisconnectionAnalysis,
        history: Optional[ConnectionHistorySnapshot] = None,
    ) -> ReconnectionPlan:
        cfg = self.config
        now = self._clock()
        tips = [_TIPS[analysis.cause]]

        if analysis.recoverability is Recoverability.MANUAL:
            tips.append("Manual action is required before reconnecting")
            return ReconnectionPlan(
                connection_id=analysis.connection_id,
                strategy=ReconnectionStrategy.USER_PROMPT,
                estimated_delay_ms=0.0,
                max_attempts=0,
                tips=tuple(tips),
                cause=analysis.cause,
                issued_at=now,
            )

        if analysis.recoverability is Recoverability.IMMEDIATE:
            schedule = tuple(
                ReconnectionAttempt(attempt, cfg.immediate_delay_ms, "websocket")
                for attempt in range(1, cfg.immediate_attempts + 1)
            )
            return ReconnectionPlan(
                connection_id=analysis.connection_id,
                strategy=ReconnectionStrategy.IMMEDIATE_RETRY,
                estimated_delay_ms=cfg.immediate_delay_ms,
                max_attempts=cfg.immediate_attempts,
                tips=tuple(tips),
                schedule=schedule,
                cause=analysis.cause,
                issued_at=now,
            )

        strategy = ReconnectionStrategy.EXPONENTIAL_BACKOFF
        if analysis.cause is DisconnectionCause.TRANSPORT_ERROR:
            strategy = ReconnectionStrategy.TRANSPORT_FALLBACK

        multiplier = cfg.backoff_multiplier
        max_attempts = cfg.backoff_attempts
        base_delay = cfg.base_delay_ms
        if history is not None:
            if history.recent_failures > 5:
                multiplier *= 1.5
                max_attempts = max(3, max_attempts - 2)
                tips.append("Several recent reconnects failed; backing off further")
            if (history.longest_connection_seconds or 0.0) > cfg.long_lived_seconds:
                max_attempts += 2
            if "mobile_network" in analysis.contextual_factors:
                multiplier *= 1.3
                tips.append("Mobile networks recover slowly; a Wi-Fi or USB link is more stable")
        if "unstable_network" in analysis.contextual_factors:
            base_delay *= 2

        schedule = self._backoff_schedule(strategy, base_delay, multiplier, max_attempts)
        return ReconnectionPlan(
            connection_id=analysis.connection_id,
            strategy=strategy,
            estimated_delay_ms=schedule[0].delay_ms if schedule else 0.0,
            max_attempts=max_attempts,
            tips=tuple(tips),
            schedule=schedule,
            cause=analysis.cause,
            issued_at=now,
        )

    def _backoff_schedule(
        self,
        strategy: ReconnectionStrategy,
        base_delay: float,
        multiplier: float,
        attempts: int,
    ) -> Tuple[ReconnectionAttempt, ...]:
        cap = self.config.max_delay_ms
        ratio = self.config.jitter_ratio
        schedule: List[ReconnectionAttempt] = []
        delay = min(base_delay, cap)
        for attempt in range(1, attempts + 1):
            jittered = delay * (1.0 + self._rng.uniform(-ratio, ratio))
            jittered = max(1.0, min(cap, jittered))
            transport = "websocket"
            if strategy is ReconnectionStrategy.TRANSPORT_FALLBACK:
                transport = _FALLBACK_TRANSPORTS[attempt % len(_FALLBACK_TRANSPORTS)]
            schedule.append(ReconnectionAttempt(attempt, round(jittered, 1), transport))
            delay = min(delay * multiplier, cap)
        return tuple(schedule)

    def plan_for_disconnect(
        self,
        connection_id: str,
        reported_reason: Optional[str],
        history: Optional[ConnectionHistorySnapshot] = None,
    ) -> ReconnectionPlan:
        """Classify, plan, record and publish guidance for one disconnect."""
        analysis = self.analyze_disconnection_cause(connection_id, reported_reason, history)
        plan = self.recommend_strategy(analysis, history)

        self._plan_log.append(PlanLogEntry(plan, analysis))
        self.plans_issued += 1
        self._by_strategy[plan.strategy.value] += 1
        self._by_cause[analysis.cause.value] += 1

        logger.info(
            "Reconnection plan for %s: %s (cause %s, first delay %.0fms, %d attempts)",
            connection_id,
            plan.strategy.value,
            analysis.cause.value,
            plan.estimated_delay_ms,
            plan.max_attempts,
        )
        if self.bus is not None:
            self.bus.emit("reconnectionGuidance", connection_id, plan=plan.to_dict(), analysis=analysis.to_dict())
        return plan

    # ------------------------------------------------------------------
    # Outcome feedback
    # ------------------------------------------------------------------
    def record_outcome(self, connection_id: str, success: bool, duration_ms: float, *, attempt: int = 1) -> None:
        now = self._clock()
        state = self._clients.setdefault(connection_id, ClientReconnectionState())
        state.attempts += 1
        state.total_duration_ms += duration_ms
        state.last_attempt_at = now
        state.patterns.append(OutcomeSample(attempt, success, duration_ms, now))
        if success:
            state.successes += 1
            self.successful_reconnections += 1
        else:
            state.failures += 1
            self.failed_reconnections += 1
        self._total_reconnection_ms += duration_ms

        logger.info(
            "Reconnection outcome for %s: attempt %d, success=%s, %.0fms",
            connection_id,
            attempt,
            success,
            duration_ms,
        )
        if self.bus is not None:
            self.bus.emit(
                "reconnectionOutcome",
                connection_id,
                attempt=attempt,
                success=success,
                duration_ms=duration_ms,
                client_state=state.to_dict(),
            )

    def recent_failures(self, connection_id: str) -> int:
        state = self._clients.get(connection_id)
        if state is None:
            return 0
        return sum(1 for sample in list(state.patterns)[-10:] if not sample.success)

    def predict_success(self, connection_id: str, strategy: ReconnectionStrategy) -> float:
        state = self._clients.get(connection_id)
        if state is None or len(state.patterns) < 3:
            return DEFAULT_SUCCESS_PROBABILITY
        recent = list(state.patterns)[-5:]
        base_rate = sum(1 for sample in recent if sample.success) / len(recent)
        return min(1.0, base_rate * _STRATEGY_SUCCESS_WEIGHT.get(strategy, 1.0))

    def get_recommendations(self, connection_id: str) -> List[Dict[str, str]]:
        state = self._clients.get(connection_id)
        if state is None or not state.patterns:
            return []
        recommendations: List[Dict[str, str]] = []
        recent = list(state.patterns)[-10:]
        success_rate = sum(1 for sample in recent if sample.success) / len(recent)
        if success_rate < 0.3:
            recommendations.append(
                {
                    "type": "connection_method",
                    "message": "Consider switching connection method or checking the network",
                    "priority": "high",
                }
            )
        if state.failures > state.successes * 2:
            recommendations.append(
                {
                    "type": "backoff_strategy",
                    "message": "Increase backoff delays to reduce connection pressure",
                    "priority": "medium",
                }
            )
        if state.total_duration_ms / state.attempts > 10000:
            recommendations.append(
                {
                    "type": "timeout_adjustment",
                    "message": "Connection timeouts may be too aggressive",
                    "priority": "low",
                }
            )
        return recommendations

    def reset_client(self, connection_id: str) -> None:
        self._clients.pop(connection_id, None)

    def cleanup(self, max_age_seconds: float = 24 * 60 * 60) -> int:
        cutoff = self._clock() - max_age_seconds
        stale = [
            connection_id
            for connection_id, state in self._clients.items()
            if state.last_attempt_at is not None and state.last_attempt_at < cutoff
        ]
        for connection_id in stale:
            del self._clients[connection_id]
        if stale:
            logger.debug("Dropped %d stale reconnection states", len(stale))
        return len(stale)

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------
    def recent_plans(self, limit: Optional[int] = None) -> Sequence[PlanLogEntry]:
        entries = list(self._plan_log)
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return entries

    def get_global_stats(self) -> Dict[str, Any]:
        attempts = self.successful_reconnections + self.failed_reconnections
        return {
            "plans_issued": self.plans_issued,
            "by_strategy": dict(self._by_strategy),
            "by_cause": dict(self._by_cause),
            "total_reconnection_attempts": attempts,
            "successful_reconnections": self.successful_reconnections,
            "failed_reconnections": self.failed_reconnections,
            "average_reconnection_ms": self._total_reconnection_ms / attempts if attempts else 0.0,
            "active_clients": len(self._clients),
            "plan_log_size": len(self._plan_log),
            "last_updated": self._clock(),
        }

    def clear(self) -> None:
        self._plan_log.clear()
        self._clients.clear()


__all__ = [
    "ClientReconnectionState",
    "DEFAULT_SUCCESS_PROBABILITY",
    "PlanLogEntry",
    "REASON_KEYWORDS",
    "SmartReconnectionManager",
    "classify_reason",
]
