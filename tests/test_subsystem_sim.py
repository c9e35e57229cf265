"""End-to-end simulation of the wired resilience subsystem."""
from __future__ import annotations

import asyncio
import csv
import random
import tempfile
from pathlib import Path
from types import SimpleNamespace
from typing import Any, List
from unittest import IsolatedAsyncioTestCase

from resilink.bridge import BridgeDevice
from resilink.config import ResilienceConfig, UsbConfig
from resilink.events import EventRecorder
from resilink.models import ReconnectionStrategy
from resilink.subsystem import ResilienceSubsystem


class FakeClock:
    def __init__(self, start: float = 50_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeBridge:
    def __init__(self) -> None:
        self.devices: List[BridgeDevice] = []
        self.removed: List[Any] = []

    async def check_available(self) -> bool:
        return True

    async def list_devices(self) -> List[BridgeDevice]:
        return list(self.devices)

    async def forward(self, local_port: int, serial: str, remote_port: int) -> bool:
        return True

    async def reverse(self, device_port: int, serial: str, local_port: int) -> bool:
        return True

    async def remove_forward(self, local_port: int, serial: str) -> bool:
        self.removed.append((local_port, serial))
        return True

    async def remove_reverse(self, device_port: int, serial: str) -> bool:
        self.removed.append((device_port, serial))
        return True


def fake_adapters() -> List[Any]:
    return [
        SimpleNamespace(
            nice_name="eth0",
            ips=[SimpleNamespace(ip="10.1.2.3", network_prefix=16, is_IPv4=True)],
        )
    ]


class SubsystemSimulationTest(IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()
        self.bridge = FakeBridge()

    def _subsystem(self, config: ResilienceConfig | None = None) -> ResilienceSubsystem:
        subsystem = ResilienceSubsystem(
            config,
            clock=self.clock,
            bridge=self.bridge,
            adapters_provider=fake_adapters,
            rng=random.Random(1),
        )
        self.addCleanup(subsystem.close)
        return subsystem

    async def test_start_and_stop_manage_background_work(self) -> None:
        config = ResilienceConfig(usb=UsbConfig(scan_interval=0.01))
        subsystem = self._subsystem(config)
        self.bridge.devices = [BridgeDevice("SER1", "device")]

        await subsystem.start(network=False)
        self.assertTrue(subsystem.started)
        self.assertTrue(subsystem.usb.running)
        for _ in range(50):
            if subsystem.usb.forwarding():
                break
            await asyncio.sleep(0.01)
        self.assertEqual(subsystem.usb.forwarding(), {"SER1": 3001})
        self.assertTrue(subsystem.health()["usb"]["available"])

        await subsystem.stop()
        self.assertFalse(subsystem.started)
        self.assertFalse(subsystem.usb.running)
        self.assertEqual(self.bridge.removed, [(3001, "SER1")])
        self.assertEqual(subsystem.health()["active_connections"], 0)

    async def test_closed_connection_gets_a_single_plan(self) -> None:
        subsystem = self._subsystem()
        recorder = EventRecorder(subsystem.bus, kinds=["reconnectionGuidance"])

        subsystem.connection_opened("C2", {"platform": "web", "transport": "websocket"})
        self.clock.advance(600)
        plan = subsystem.connection_closed("C2", "transport close")
        assert plan is not None
        self.assertIs(plan.strategy, ReconnectionStrategy.IMMEDIATE_RETRY)
        self.assertEqual(plan.estimated_delay_ms, 500.0)
        self.assertEqual(plan.max_attempts, 3)

        self.assertIsNone(subsystem.connection_closed("C2", "transport close"))
        self.assertIsNone(subsystem.connection_closed("never-opened", "transport close"))
        self.assertEqual(len(recorder.events), 1)

    async def test_outcome_history_shapes_the_next_plan(self) -> None:
        subsystem = self._subsystem()
        for attempt in range(1, 7):
            subsystem.reconnection.record_outcome("C3", False, 1500.0, attempt=attempt)

        subsystem.connection_opened("C3")
        self.clock.advance(100)
        plan = subsystem.connection_closed("C3", "transport close")
        assert plan is not None
        self.assertIs(plan.strategy, ReconnectionStrategy.EXPONENTIAL_BACKOFF)
        self.assertEqual(plan.max_attempts, 6)

    async def test_events_for_one_connection_arrive_in_order(self) -> None:
        subsystem = self._subsystem()
        recorder = EventRecorder(subsystem.bus)

        subsystem.connection_opened("C1", {"transport": "polling"})
        subsystem.connection_ping("C1", 35.0)
        subsystem.connection_upgraded("C1", "polling", "websocket")
        subsystem.connection_error("C1", "transport error", "frame dropped")
        self.clock.advance(20)
        subsystem.connection_closed("C1", "transport error")

        kinds = [event.kind for event in recorder.events if event.key == "C1"]
        self.assertEqual(
            kinds,
            ["connectionStarted", "healthPrediction", "transportUpgrade", "connectionEnded", "reconnectionGuidance"],
        )

    async def test_journal_records_events(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "metrics.csv"
            subsystem = self._subsystem(ResilienceConfig(metrics_path=str(path)))
            subsystem.connection_opened("C4")
            subsystem.connection_ping("C4", 20.0)
            subsystem.close()
            subsystem.connection_ping("C4", 25.0)

            with path.open(newline="", encoding="utf-8") as handle:
                rows = list(csv.DictReader(handle))
        self.assertEqual([row["event"] for row in rows], ["connectionStarted", "healthPrediction"])
        self.assertEqual(rows[1]["key"], "C4")
        self.assertEqual(rows[1]["status"], "excellent")

    async def test_recommendations_use_attached_devices(self) -> None:
        subsystem = self._subsystem()
        self.bridge.devices = [BridgeDevice("SER1", "device")]
        await subsystem.usb.scan_once()

        result = subsystem.recommend_connection_methods({"address": "10.1.200.7"})
        methods = [entry["method"] for entry in result["recommendations"]]
        self.assertEqual(methods, ["usb_adb", "network", "manual"])
        await subsystem.usb.stop()
