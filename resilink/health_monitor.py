"""Live health scoring for client connections.

The monitor turns per-connection lifecycle events (pings, transport upgrades,
socket errors) into a rolling :class:`HealthPrediction`. Scoring is table
driven: each :class:`RiskFactor` carries a penalty and an advisory string in
:data:`RISK_POLICIES`, so the policy can change without touching the
mechanics in :func:`predict_health`.
"""
from __future__ import annotations

import logging
import math
import time
from collections import Counter, OrderedDict
from dataclasses import dataclass
from statistics import fmean, pvariance
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

from resilink.config import HealthConfig
from resilink.events import EventBus
from resilink.models import (
    ClientInfo,
    ConnectionHistorySnapshot,
    ConnectionRecord,
    ConnectionState,
    ErrorEntry,
    HealthPrediction,
    PingSample,
    RiskFactor,
    Stability,
    TransportUpgrade,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RiskPolicy:
    penalty: int
    recommendation: str


RISK_POLICIES: Mapping[RiskFactor, RiskPolicy] = {
    RiskFactor.JITTER: RiskPolicy(1, "Latency is erratic; prefer a wired/USB transport"),
    RiskFactor.RISING_LATENCY: RiskPolicy(1, "Latency is climbing; consider switching to a more stable transport"),
    RiskFactor.ERROR_BURST: RiskPolicy(2, "Repeated socket errors; the connection may benefit from a restart"),
    RiskFactor.FREQUENT_TRANSPORT_CHANGES: RiskPolicy(1, "Transport keeps changing; pin the client to one transport"),
    RiskFactor.STALE_PINGS: RiskPolicy(1, "No recent heartbeat; check that the client is still reachable"),
}

PREEMPTIVE_ACTIONS: Tuple[str, ...] = ("clear_buffers", "optimize_transport", "adjust_timeouts")


def _stability_from_latency(average: float, thresholds: Sequence[float]) -> Stability:
    excellent, good, fair = thresholds
    if average < excellent:
        return Stability.EXCELLENT
    if average < good:
        return Stability.GOOD
    if average < fair:
        return Stability.FAIR
    return Stability.POOR


def _errors_in_window(errors: Sequence[ErrorEntry], now: float, window: float) -> int:
    return sum(1 for entry in errors if now - entry.timestamp <= window)


def _latency_trend(latencies: Sequence[float], window: int) -> float:
    """Mean of the newest ``window`` samples minus the mean of the ones before."""
    if len(latencies) < window:
        return 0.0
    recent = latencies[-window:]
    older = latencies[-2 * window:-window]
    if not older:
        return 0.0
    return fmean(recent) - fmean(older)


def predict_health(
    record: ConnectionRecord,
    config: HealthConfig,
    now: float,
    policies: Mapping[RiskFactor, RiskPolicy] = RISK_POLICIES,
) -> HealthPrediction:
    """Score ``record`` without mutating it."""
    latencies = [sample.latency_ms for sample in record.ping_history]
    average = fmean(latencies) if latencies else 0.0
    recent = latencies[-config.jitter_window:]
    jitter = pvariance(recent) if len(recent) >= 2 else 0.0
    trend = _latency_trend(latencies, config.trend_window)
    error_count = _errors_in_window(record.errors, now, config.error_window_seconds)

    factors = set()
    if len(recent) >= min(3, config.jitter_window) and average > 0:
        if math.sqrt(jitter) > config.jitter_ratio * average:
            factors.add(RiskFactor.JITTER)
    if trend > config.trend_threshold_ms:
        factors.add(RiskFactor.RISING_LATENCY)
    if error_count >= config.error_burst_threshold:
        factors.add(RiskFactor.ERROR_BURST)
    if record.upgrade_count > config.frequent_upgrade_threshold:
        factors.add(RiskFactor.FREQUENT_TRANSPORT_CHANGES)
    if (
        record.last_ping is not None
        and not record.ended
        and now - record.last_ping > config.stale_ping_seconds
    ):
        factors.add(RiskFactor.STALE_PINGS)

    stability = _stability_from_latency(average, config.latency_thresholds_ms)
    penalty = sum(policies[factor].penalty for factor in factors if factor in policies)
    stability = stability.worsen(penalty)

    ordered = sorted(factors, key=lambda factor: factor.value)
    recommendations = tuple(policies[factor].recommendation for factor in ordered if factor in policies)

    return HealthPrediction(
        connection_id=record.id,
        average_latency=average,
        jitter=jitter,
        latency_trend=trend,
        error_count_window=error_count,
        predicted_stability=stability,
        risk_factors=frozenset(factors),
        recommendations=recommendations,
        sample_count=len(latencies),
        computed_at=now,
    )


def _percentile(values: Sequence[float], percentile: float) -> float:
    ordered = sorted(values)
    if not ordered:
        return 0.0
    rank = max(1, math.ceil(percentile / 100.0 * len(ordered)))
    return ordered[rank - 1]


def latency_summary(samples: Sequence[PingSample]) -> Dict[str, Any]:
    latencies = [sample.latency_ms for sample in samples]
    if not latencies:
        return {"count": 0, "min": None, "max": None, "avg": None, "p95": None}
    return {
        "count": len(latencies),
        "min": min(latencies),
        "max": max(latencies),
        "avg": fmean(latencies),
        "p95": _percentile(latencies, 95.0),
    }


class ConnectionStore:
    """Registry of active and archived connection records.

    Owned by a single :class:`ConnectionHealthMonitor`; created when the
    subsystem starts and cleared when it stops.
    """

    def __init__(self, archive_size: int = 100) -> None:
        self.archive_size = archive_size
        self._active: Dict[str, ConnectionRecord] = {}
        self._archive: "OrderedDict[str, ConnectionRecord]" = OrderedDict()

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._active or connection_id in self._archive

    def __len__(self) -> int:
        return len(self._active)

    def active(self, connection_id: str) -> Optional[ConnectionRecord]:
        return self._active.get(connection_id)

    def archived(self, connection_id: str) -> Optional[ConnectionRecord]:
        return self._archive.get(connection_id)

    def add(self, record: ConnectionRecord) -> None:
        self._active[record.id] = record

    def archive(self, connection_id: str) -> Optional[ConnectionRecord]:
        record = self._active.pop(connection_id, None)
        if record is None:
            return None
        self._archive[connection_id] = record
        while len(self._archive) > self.archive_size:
            evicted, _ = self._archive.popitem(last=False)
            logger.debug("Evicted archived connection %s", evicted)
        return record

    def iter_active(self) -> Iterator[ConnectionRecord]:
        return iter(tuple(self._active.values()))

    def iter_archived(self) -> Iterator[ConnectionRecord]:
        return iter(tuple(self._archive.values()))

    @property
    def archived_count(self) -> int:
        return len(self._archive)

    def clear(self) -> None:
        self._active.clear()
        self._archive.clear()


class ConnectionHealthMonitor:
    """Track connections and publish health predictions.

    Unknown connection ids are ignored by every operation: a late ping for a
    connection that has just ended is expected, not an error.
    """

    def __init__(
        self,
        config: Optional[HealthConfig] = None,
        *,
        store: Optional[ConnectionStore] = None,
        bus: Optional[EventBus] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or HealthConfig()
        self.store = store if store is not None else ConnectionStore(self.config.archive_size)
        self.bus = bus or EventBus(clock)
        self._clock = clock
        self.total_tracked = 0
        self.successful_sessions = 0
        self.failed_sessions = 0
        self._total_session_seconds = 0.0
        self._longest_session_seconds = 0.0

    # ------------------------------------------------------------------
    # Event ingestion
    # ------------------------------------------------------------------
    def track_connection(
        self,
        connection_id: str,
        client_info: Union[ClientInfo, Mapping[str, Any], None] = None,
    ) -> Optional[ConnectionRecord]:
        if connection_id in self.store:
            logger.debug("Connection %s already tracked", connection_id)
            return None
        info = client_info if isinstance(client_info, ClientInfo) else ClientInfo.from_mapping(client_info)
        now = self._clock()
        record = ConnectionRecord(
            id=connection_id,
            start_time=now,
            client_info=info,
            transport=info.transport,
        )
        self.store.add(record)
        self.total_tracked += 1
        logger.info("Tracking connection %s (transport: %s)", connection_id, info.transport)
        self.bus.emit("connectionStarted", connection_id, transport=info.transport, platform=info.platform)
        return record.snapshot()

    def record_latency(self, connection_id: str, sample_ms: float) -> Optional[HealthPrediction]:
        record = self.store.active(connection_id)
        if record is None:
            return None
        now = self._clock()
        record.ping_history.append(PingSample(now, float(sample_ms)))
        record.last_ping = now
        self._evict_samples(record, now)

        prediction = predict_health(record, self.config, now)
        logger.debug(
            "Latency for %s: %.1fms (stability: %s)",
            connection_id,
            sample_ms,
            prediction.predicted_stability.value,
        )
        self.bus.emit("healthPrediction", connection_id, **prediction.to_dict())
        if prediction.predicted_stability is Stability.POOR:
            self.bus.emit(
                "preemptiveHealing",
                connection_id,
                actions=list(PREEMPTIVE_ACTIONS),
                reason="predicted_instability",
            )
        return prediction

    def record_transport_upgrade(self, connection_id: str, from_transport: str, to_transport: str) -> None:
        record = self.store.active(connection_id)
        if record is None:
            return
        record.transport_upgrades.append(TransportUpgrade(from_transport, to_transport, self._clock()))
        record.transport = to_transport
        logger.info("Transport upgrade for %s: %s -> %s", connection_id, from_transport, to_transport)
        self.bus.emit(
            "transportUpgrade",
            connection_id,
            from_transport=from_transport,
            to_transport=to_transport,
            count=record.upgrade_count,
        )

    def record_error(self, connection_id: str, kind: str, message: str = "") -> None:
        record = self.store.active(connection_id)
        if record is None:
            return
        now = self._clock()
        entry = ErrorEntry(now, kind, message)
        record.errors.append(entry)
        logger.warning("Error on %s: %s - %s", connection_id, kind, message)

        self._detect_error_pattern(record)

        recent = _errors_in_window(record.errors, now, self.config.error_window_seconds)
        if recent >= self.config.degrade_error_threshold:
            if record.state is ConnectionState.ACTIVE:
                record.state = ConnectionState.DEGRADED
                logger.warning("Connection %s degraded (%d errors in window)", connection_id, recent)
            self.bus.emit(
                "connectionError",
                connection_id,
                error=entry._asdict(),
                errors_in_window=recent,
                state=record.state.value,
            )

    def end_connection(self, connection_id: str, reason: str = "unknown") -> Optional[ConnectionRecord]:
        archived = self.store.archived(connection_id)
        if archived is not None:
            return archived.snapshot()
        record = self.store.active(connection_id)
        if record is None:
            return None

        now = self._clock()
        record.state = ConnectionState.ENDED
        record.end_reason = reason
        record.end_time = now
        self.store.archive(connection_id)

        duration = record.duration(now)
        if record.errors:
            self.failed_sessions += 1
        else:
            self.successful_sessions += 1
        self._total_session_seconds += duration
        self._longest_session_seconds = max(self._longest_session_seconds, duration)

        logger.info("Connection %s ended after %.1fs (reason: %s)", connection_id, duration, reason)
        self.bus.emit(
            "connectionEnded",
            connection_id,
            reason=reason,
            duration_ms=duration * 1000.0,
            error_count=len(record.errors),
        )
        return record.snapshot()

    # ------------------------------------------------------------------
    # Periodic sweep
    # ------------------------------------------------------------------
    def check_health(self) -> List[str]:
        """Warn about active connections that stopped pinging."""
        now = self._clock()
        stale: List[str] = []
        for record in self.store.iter_active():
            reference = record.last_ping if record.last_ping is not None else record.start_time
            silent_for = now - reference
            if silent_for > self.config.stale_ping_seconds:
                stale.append(record.id)
                logger.warning("No ping from %s for %.0fs", record.id, silent_for)
                self.bus.emit("healthWarning", record.id, silent_seconds=silent_for)
            self._evict_samples(record, now)
        return stale

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------
    def get_prediction(self, connection_id: str) -> Optional[HealthPrediction]:
        record = self._find(connection_id)
        if record is None:
            return None
        return predict_health(record.snapshot(), self.config, self._clock())

    def get_connection_analytics(self, connection_id: str) -> Optional[Dict[str, Any]]:
        record = self._find(connection_id)
        if record is None:
            return None
        snapshot = record.snapshot()
        now = self._clock()
        prediction = predict_health(snapshot, self.config, now)
        return {
            "id": snapshot.id,
            "state": snapshot.state.value,
            "end_reason": snapshot.end_reason,
            "transport": snapshot.transport,
            "client_info": snapshot.client_info.to_dict(),
            "uptime_seconds": snapshot.duration(now),
            "prediction": prediction.to_dict(),
            "latency": latency_summary(snapshot.ping_history),
            "errors": {
                "total": len(snapshot.errors),
                "in_window": _errors_in_window(snapshot.errors, now, self.config.error_window_seconds),
                "by_kind": dict(Counter(entry.kind for entry in snapshot.errors)),
            },
            "transport_upgrades": {
                "count": snapshot.upgrade_count,
                "last": snapshot.last_upgrade._asdict() if snapshot.last_upgrade else None,
            },
        }

    def list_connection_analytics(self) -> Dict[str, Dict[str, Any]]:
        analytics: Dict[str, Dict[str, Any]] = {}
        for record in self.store.iter_active():
            entry = self.get_connection_analytics(record.id)
            if entry is not None:
                analytics[record.id] = entry
        return analytics

    def get_global_analytics(self) -> Dict[str, Any]:
        now = self._clock()
        active = [record.snapshot() for record in self.store.iter_active()]
        averages: List[float] = []
        qualities: Counter[str] = Counter()
        for record in active:
            prediction = predict_health(record, self.config, now)
            if prediction.sample_count:
                averages.append(prediction.average_latency)
            qualities[prediction.predicted_stability.value] += 1
        ended = self.successful_sessions + self.failed_sessions
        return {
            "total_connections": self.total_tracked,
            "active_connections": len(active),
            "degraded_connections": sum(1 for record in active if record.state is ConnectionState.DEGRADED),
            "archived_connections": self.store.archived_count,
            "successful_sessions": self.successful_sessions,
            "failed_sessions": self.failed_sessions,
            "avg_session_seconds": self._total_session_seconds / ended if ended else 0.0,
            "avg_latency": fmean(averages) if averages else 0.0,
            "stability_distribution": dict(qualities),
            "last_updated": now,
        }

    def history_snapshot(self, connection_id: str, *, recent_failures: int = 0) -> Optional[ConnectionHistorySnapshot]:
        record = self._find(connection_id)
        if record is None:
            return None
        return ConnectionHistorySnapshot.from_record(
            record.snapshot(),
            self._clock(),
            error_window=self.config.error_window_seconds,
            recent_failures=recent_failures,
            longest_connection_seconds=self._longest_session_seconds or None,
        )

    def clear(self) -> None:
        self.store.clear()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _find(self, connection_id: str) -> Optional[ConnectionRecord]:
        return self.store.active(connection_id) or self.store.archived(connection_id)

    def _evict_samples(self, record: ConnectionRecord, now: float) -> None:
        history = record.ping_history
        cutoff = now - self.config.retention_seconds
        drop = 0
        while drop < len(history) and history[drop].timestamp < cutoff:
            drop += 1
        overflow = len(history) - drop - self.config.max_samples
        if overflow > 0:
            drop += overflow
        if drop:
            del history[:drop]

    def _detect_error_pattern(self, record: ConnectionRecord) -> None:
        latest = record.errors[-1]
        window = record.errors[-self.config.error_pattern_window:]
        count = sum(1 for entry in window if entry.kind == latest.kind)
        if count >= self.config.error_pattern_threshold:
            logger.info("Error pattern on %s: %s x%d", record.id, latest.kind, count)
            self.bus.emit("errorPattern", record.id, error_kind=latest.kind, count=count)


__all__ = [
    "ConnectionHealthMonitor",
    "ConnectionStore",
    "PREEMPTIVE_ACTIONS",
    "RISK_POLICIES",
    "RiskPolicy",
    "latency_summary",
    "predict_health",
]
