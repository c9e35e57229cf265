"""Integration-style tests for the FastAPI layer using fakes."""
from __future__ import annotations

import time
import unittest
from types import SimpleNamespace
from typing import Any, List

from fastapi.testclient import TestClient

import resilink.api as api_module
from resilink.bridge import BridgeDevice
from resilink.config import NetworkConfig, ResilienceConfig
from resilink.subsystem import ResilienceSubsystem


class _FakeBridge:
    def __init__(self) -> None:
        self.devices: List[BridgeDevice] = []

    async def check_available(self) -> bool:
        return True

    async def list_devices(self) -> List[BridgeDevice]:
        return list(self.devices)

    async def forward(self, local_port: int, serial: str, remote_port: int) -> bool:
        return True

    async def reverse(self, device_port: int, serial: str, local_port: int) -> bool:
        return True

    async def remove_forward(self, local_port: int, serial: str) -> bool:
        return True

    async def remove_reverse(self, device_port: int, serial: str) -> bool:
        return True


def _fake_adapters() -> List[Any]:
    return [
        SimpleNamespace(
            nice_name="wlan0",
            ips=[SimpleNamespace(ip="192.168.1.20", network_prefix=24, is_IPv4=True)],
        )
    ]


class ApiSimulationTest(unittest.TestCase):
    def setUp(self) -> None:
        self.bridge = _FakeBridge()
        config = ResilienceConfig(network=NetworkConfig(pairing_secret="api-secret"))
        self.subsystem = ResilienceSubsystem(config, bridge=self.bridge, adapters_provider=_fake_adapters)
        api_module.configure(self.subsystem, autostart=False)
        self.client = TestClient(api_module.app)

    def tearDown(self) -> None:
        self.client.close()
        self.subsystem.close()
        api_module._subsystem = None
        api_module._autostart = False

    def test_health_endpoint_returns_ok(self) -> None:
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["status"], "ok")
        self.assertFalse(payload["started"])
        self.assertIn("timestamp", payload)

    def test_connection_analytics(self) -> None:
        self.subsystem.connection_opened("C1", {"platform": "android", "transport": "websocket"})
        self.subsystem.connection_ping("C1", 42.0)

        listing = self.client.get("/analytics/connections").json()
        self.assertEqual(list(listing), ["C1"])

        detail = self.client.get("/analytics/connections/C1")
        self.assertEqual(detail.status_code, 200)
        self.assertEqual(detail.json()["client_info"]["platform"], "android")
        self.assertEqual(detail.json()["latency"]["count"], 1)

        missing = self.client.get("/analytics/connections/ghost")
        self.assertEqual(missing.status_code, 404)
        self.assertIn("ghost", missing.json()["detail"])

        stats = self.client.get("/analytics/global").json()
        self.assertEqual(stats["active_connections"], 1)

    def test_reconnection_analytics_lists_recent_plans(self) -> None:
        self.subsystem.connection_opened("C2")
        self.subsystem.connection_closed("C2", "io server disconnect")

        payload = self.client.get("/analytics/reconnection", params={"recent": 5}).json()
        self.assertEqual(payload["plans_issued"], 1)
        self.assertEqual(len(payload["recent_plans"]), 1)
        self.assertEqual(payload["recent_plans"][0]["analysis"]["cause"], "server_restart")

        self.assertEqual(self.client.get("/analytics/reconnection", params={"recent": -1}).status_code, 422)

    def test_outcome_report_returns_recommendations(self) -> None:
        for attempt in (1, 2, 3):
            response = self.client.post(
                "/analytics/reconnection/outcome",
                json={"connection_id": "C3", "success": False, "duration_ms": 2500, "attempt": attempt},
            )
            self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["status"], "recorded")
        self.assertIn("connection_method", [item["type"] for item in payload["recommendations"]])

        invalid = self.client.post("/analytics/reconnection/outcome", json={"connection_id": "C3"})
        self.assertEqual(invalid.status_code, 422)

    def test_usb_scan_and_status(self) -> None:
        self.bridge.devices = [BridgeDevice("SER1", "device", model="Pixel_7")]
        scan = self.client.post("/usb/scan")
        self.assertEqual(scan.status_code, 200)
        self.assertEqual(scan.json()["forwarding"], {"SER1": 3001})

        status = self.client.get("/usb/status").json()
        self.assertEqual(status["devices"][0]["model"], "Pixel_7")
        self.assertEqual(status["scan_count"], 1)

    def test_discovery_status_and_services(self) -> None:
        status = self.client.get("/discovery/status").json()
        self.assertEqual(status["network"]["primary_address"], "192.168.1.20")
        self.assertFalse(status["advertisement"]["active"])
        self.assertEqual(self.client.get("/discovery/services").json(), [])

    def test_pairing_code_and_redeem(self) -> None:
        response = self.client.get("/discovery/pairing", params={"size": 128, "expiry_hours": 1})
        self.assertEqual(response.status_code, 200)
        code = response.json()
        self.assertEqual(code["server"]["address"], "192.168.1.20")
        self.assertEqual(code["error_correction"], "H")
        self.assertGreater(code["expires_at"], time.time())

        first = self.client.post("/discovery/pairing/redeem", json={"token": code["token"]})
        self.assertEqual(first.status_code, 200)
        self.assertEqual(first.json()["port"], 3001)

        second = self.client.post("/discovery/pairing/redeem", json={"token": code["token"]})
        self.assertEqual(second.status_code, 409)

        garbage = self.client.post("/discovery/pairing/redeem", json={"token": "not-a-token"})
        self.assertEqual(garbage.status_code, 400)

    def test_expired_pairing_token_is_gone(self) -> None:
        code = self.client.get("/discovery/pairing", params={"expiry_hours": 0}).json()
        response = self.client.post("/discovery/pairing/redeem", json={"token": code["token"]})
        self.assertEqual(response.status_code, 410)

    def test_pairing_rejects_bad_size(self) -> None:
        self.assertEqual(self.client.get("/discovery/pairing", params={"size": 10}).status_code, 422)

    def test_connection_recommendation(self) -> None:
        response = self.client.get(
            "/discovery/recommendation",
            params={"platform": "android", "usb_debugging": "true", "connection_type": "wifi"},
        )
        self.assertEqual(response.status_code, 200)
        methods = [(entry["method"], entry["rank"]) for entry in response.json()["recommendations"]]
        self.assertEqual(methods, [("network", 2), ("usb_adb", 3), ("manual", 4)])

    def test_event_stream_forwards_bus_events(self) -> None:
        with TestClient(api_module.app) as client:
            with client.websocket_connect("/events?kinds=reconnectionOutcome") as ws:
                client.post(
                    "/analytics/reconnection/outcome",
                    json={"connection_id": "C9", "success": True, "duration_ms": 120},
                )
                message = ws.receive_json()
        self.assertEqual(message["kind"], "reconnectionOutcome")
        self.assertEqual(message["key"], "C9")
        self.assertTrue(message["payload"]["success"])


if __name__ == "__main__":
    unittest.main()
