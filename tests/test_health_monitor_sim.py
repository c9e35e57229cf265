"""Simulation tests for connection health scoring."""
from __future__ import annotations

import unittest
from statistics import fmean

from resilink.config import HealthConfig
from resilink.events import EventBus, EventRecorder
from resilink.health_monitor import ConnectionHealthMonitor, latency_summary
from resilink.models import ConnectionState, PingSample, RiskFactor, Stability


class FakeClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class HealthMonitorSimulationTest(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()
        self.bus = EventBus(self.clock)
        self.recorder = EventRecorder(self.bus)

    def _monitor(self, **overrides) -> ConnectionHealthMonitor:
        return ConnectionHealthMonitor(HealthConfig(**overrides), bus=self.bus, clock=self.clock)

    def test_average_latency_tracks_retained_sample_window(self) -> None:
        monitor = self._monitor(max_samples=5)
        monitor.track_connection("c1", {"transport": "websocket"})
        samples = [20.0, 40.0, 60.0, 80.0, 100.0, 30.0, 50.0, 70.0]
        prediction = None
        for sample in samples:
            self.clock.advance(1)
            prediction = monitor.record_latency("c1", sample)
        assert prediction is not None
        self.assertEqual(prediction.sample_count, 5)
        self.assertAlmostEqual(prediction.average_latency, fmean(samples[-5:]))

    def test_samples_older_than_retention_are_dropped(self) -> None:
        monitor = self._monitor(retention_seconds=300)
        monitor.track_connection("c1")
        monitor.record_latency("c1", 400.0)
        self.clock.advance(301)
        prediction = monitor.record_latency("c1", 20.0)
        assert prediction is not None
        self.assertEqual(prediction.sample_count, 1)
        self.assertEqual(prediction.average_latency, 20.0)
        self.assertEqual(prediction.predicted_stability, Stability.EXCELLENT)

    def test_errors_never_improve_predicted_stability(self) -> None:
        monitor = self._monitor()
        monitor.track_connection("c1")
        for _ in range(6):
            self.clock.advance(1)
            monitor.record_latency("c1", 40.0)

        previous = monitor.get_prediction("c1")
        assert previous is not None
        self.assertEqual(previous.predicted_stability, Stability.EXCELLENT)
        for _ in range(6):
            self.clock.advance(1)
            monitor.record_error("c1", "transport error", "socket hiccup")
            current = monitor.get_prediction("c1")
            assert current is not None
            self.assertGreaterEqual(current.predicted_stability.rank, previous.predicted_stability.rank)
            previous = current

        self.assertIn(RiskFactor.ERROR_BURST, previous.risk_factors)
        self.assertTrue(previous.predicted_stability.is_worse_than(Stability.EXCELLENT))

    def test_prediction_is_computed_from_the_record_on_read(self) -> None:
        monitor = self._monitor()
        monitor.track_connection("c1")
        monitor.record_latency("c1", 40.0)
        for _ in range(3):
            monitor.record_error("c1", "timeout", "no pong")
        self.assertEqual(self.recorder.kinds().count("healthPrediction"), 1)

        current = monitor.get_prediction("c1")
        assert current is not None
        self.assertIn(RiskFactor.ERROR_BURST, current.risk_factors)

        monitor.end_connection("c1", "transport close")
        ended = monitor.get_prediction("c1")
        assert ended is not None
        self.assertEqual(ended.sample_count, 1)

        monitor.clear()
        self.assertIsNone(monitor.get_prediction("c1"))

    def test_latency_jump_with_errors_is_flagged_as_unstable(self) -> None:
        monitor = self._monitor()
        monitor.track_connection("C1", {"platform": "android", "transport": "websocket"})
        for sample in (10, 12, 11, 200, 210, 205):
            self.clock.advance(1)
            monitor.record_latency("C1", sample)
        monitor.record_error("C1", "ping timeout")
        self.clock.advance(2)
        monitor.record_error("C1", "ping timeout")

        prediction = monitor.get_prediction("C1")
        assert prediction is not None
        self.assertTrue(prediction.risk_factors & {RiskFactor.JITTER, RiskFactor.RISING_LATENCY})
        self.assertIn(prediction.predicted_stability, (Stability.POOR, Stability.FAIR))
        self.assertTrue(prediction.recommendations)
        self.assertTrue(self.recorder.of_kind("preemptiveHealing"))

    def test_end_connection_keeps_first_reason(self) -> None:
        monitor = self._monitor()
        monitor.track_connection("c1")
        self.clock.advance(30)
        first = monitor.end_connection("c1", "transport close")
        second = monitor.end_connection("c1", "server shutdown")

        assert first is not None and second is not None
        self.assertEqual(first.end_reason, "transport close")
        self.assertEqual(second.end_reason, "transport close")
        self.assertEqual(second.state, ConnectionState.ENDED)
        self.assertEqual(len(self.recorder.of_kind("connectionEnded")), 1)

        analytics = monitor.get_connection_analytics("c1")
        assert analytics is not None
        self.assertEqual(analytics["end_reason"], "transport close")
        self.assertEqual(analytics["uptime_seconds"], 30)

    def test_unknown_connection_ids_are_ignored(self) -> None:
        monitor = self._monitor()
        self.assertIsNone(monitor.record_latency("ghost", 10.0))
        monitor.record_error("ghost", "transport error")
        monitor.record_transport_upgrade("ghost", "polling", "websocket")
        self.assertIsNone(monitor.end_connection("ghost", "transport close"))
        self.assertIsNone(monitor.get_connection_analytics("ghost"))
        self.assertEqual(self.recorder.events, [])

    def test_tracking_twice_is_a_no_op(self) -> None:
        monitor = self._monitor()
        self.assertIsNotNone(monitor.track_connection("c1"))
        self.assertIsNone(monitor.track_connection("c1"))
        self.assertEqual(monitor.get_global_analytics()["total_connections"], 1)

    def test_error_threshold_degrades_connection(self) -> None:
        monitor = self._monitor(degrade_error_threshold=5)
        monitor.track_connection("c1")
        for index in range(5):
            self.clock.advance(1)
            monitor.record_error("c1", "transport error", f"failure {index}")

        analytics = monitor.get_connection_analytics("c1")
        assert analytics is not None
        self.assertEqual(analytics["state"], ConnectionState.DEGRADED.value)
        self.assertEqual(analytics["errors"]["in_window"], 5)
        self.assertEqual(analytics["errors"]["by_kind"], {"transport error": 5})

        errors = self.recorder.of_kind("connectionError")
        self.assertEqual(len(errors), 1)
        self.assertEqual(errors[0].payload["error"]["message"], "failure 4")
        self.assertTrue(self.recorder.of_kind("errorPattern"))

    def test_errors_outside_window_do_not_degrade(self) -> None:
        monitor = self._monitor(degrade_error_threshold=3, error_window_seconds=60)
        monitor.track_connection("c1")
        for _ in range(4):
            monitor.record_error("c1", "transport error")
            self.clock.advance(40)
        analytics = monitor.get_connection_analytics("c1")
        assert analytics is not None
        self.assertEqual(analytics["state"], ConnectionState.ACTIVE.value)
        self.assertEqual(self.recorder.of_kind("connectionError"), [])

    def test_frequent_transport_changes_are_a_risk(self) -> None:
        monitor = self._monitor()
        monitor.track_connection("c1", {"transport": "polling"})
        for index in range(4):
            monitor.record_transport_upgrade("c1", "polling", "websocket" if index % 2 == 0 else "polling")
        prediction = monitor.record_latency("c1", 30.0)
        assert prediction is not None
        self.assertIn(RiskFactor.FREQUENT_TRANSPORT_CHANGES, prediction.risk_factors)
        self.assertEqual(prediction.predicted_stability, Stability.GOOD)
        self.assertEqual(len(self.recorder.of_kind("transportUpgrade")), 4)

    def test_archive_evicts_oldest_records(self) -> None:
        monitor = self._monitor(archive_size=2)
        for name in ("a", "b", "c"):
            monitor.track_connection(name)
            monitor.end_connection(name, "transport close")
        self.assertIsNone(monitor.get_connection_analytics("a"))
        self.assertIsNotNone(monitor.get_connection_analytics("b"))
        self.assertIsNotNone(monitor.get_connection_analytics("c"))

    def test_check_health_warns_about_silent_connections(self) -> None:
        monitor = self._monitor(stale_ping_seconds=60)
        monitor.track_connection("quiet")
        monitor.track_connection("chatty")
        self.clock.advance(61)
        monitor.record_latency("chatty", 15.0)

        stale = monitor.check_health()
        self.assertEqual(stale, ["quiet"])
        warnings = self.recorder.of_kind("healthWarning")
        self.assertEqual([event.key for event in warnings], ["quiet"])

    def test_analytics_snapshot_is_detached_from_live_record(self) -> None:
        monitor = self._monitor()
        monitor.track_connection("c1")
        for sample in range(1, 21):
            self.clock.advance(1)
            monitor.record_latency("c1", float(sample))

        analytics = monitor.get_connection_analytics("c1")
        assert analytics is not None
        self.assertEqual(analytics["latency"]["count"], 20)
        self.assertEqual(analytics["latency"]["min"], 1.0)
        self.assertEqual(analytics["latency"]["max"], 20.0)
        self.assertAlmostEqual(analytics["latency"]["avg"], 10.5)
        self.assertEqual(analytics["latency"]["p95"], 19.0)

        monitor.record_latency("c1", 500.0)
        self.assertEqual(analytics["latency"]["count"], 20)

    def test_global_analytics_counts_sessions(self) -> None:
        monitor = self._monitor()
        monitor.track_connection("ok")
        monitor.track_connection("bad")
        monitor.track_connection("live")
        monitor.record_latency("live", 30.0)
        monitor.record_error("bad", "transport error")
        self.clock.advance(10)
        monitor.end_connection("ok", "client namespace disconnect")
        monitor.end_connection("bad", "transport error")

        stats = monitor.get_global_analytics()
        self.assertEqual(stats["total_connections"], 3)
        self.assertEqual(stats["active_connections"], 1)
        self.assertEqual(stats["archived_connections"], 2)
        self.assertEqual(stats["successful_sessions"], 1)
        self.assertEqual(stats["failed_sessions"], 1)
        self.assertAlmostEqual(stats["avg_session_seconds"], 10.0)
        self.assertAlmostEqual(stats["avg_latency"], 30.0)
        self.assertEqual(stats["stability_distribution"], {"excellent": 1})

    def test_history_snapshot_summarises_ended_record(self) -> None:
        monitor = self._monitor()
        monitor.track_connection("c1", {"network_type": "mobile"})
        monitor.record_transport_upgrade("c1", "polling", "websocket")
        monitor.record_error("c1", "ping timeout")
        self.clock.advance(120)
        monitor.end_connection("c1", "ping timeout")

        history = monitor.history_snapshot("c1", recent_failures=2)
        assert history is not None
        self.assertEqual(history.duration_seconds, 120)
        self.assertEqual(history.error_count, 1)
        self.assertEqual(history.recent_error_count, 0)
        self.assertEqual(history.transport_upgrades, 1)
        self.assertEqual(history.recent_failures, 2)
        self.assertEqual(history.network_type, "mobile")
        self.assertIsNone(monitor.history_snapshot("ghost"))


class LatencySummaryTest(unittest.TestCase):
    def test_empty_summary(self) -> None:
        self.assertEqual(latency_summary([])["count"], 0)

    def test_single_sample(self) -> None:
        summary = latency_summary([PingSample(0.0, 42.0)])
        self.assertEqual(summary["p95"], 42.0)
        self.assertEqual(summary["avg"], 42.0)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
