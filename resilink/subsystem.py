"""Composition root wiring the resilience services onto one event bus."""
from __future__ import annotations

import logging
import random
import time
from typing import Any, Callable, Dict, Mapping, Optional, Union

from resilink.bridge import DeviceBridgeClient
from resilink.config import ResilienceConfig
from resilink.events import EventBus
from resilink.health_monitor import ConnectionHealthMonitor, ConnectionStore
from resilink.metrics import MetricsLogger
from resilink.models import ClientInfo, HealthPrediction, ReconnectionPlan
from resilink.network_discovery import NetworkDiscoveryService
from resilink.reconnection import SmartReconnectionManager
from resilink.scheduling import PeriodicTask
from resilink.usb_discovery import UsbDiscoveryService

logger = logging.getLogger(__name__)


class ResilienceSubsystem:
    """Own every service for the lifetime of one host process.

    The ``connection_*`` methods are what a socket server calls from its
    accept loop; everything else is reached through the service attributes.
    """

    def __init__(
        self,
        config: Optional[ResilienceConfig] = None,
        *,
        clock: Callable[[], float] = time.time,
        bridge: Optional[DeviceBridgeClient] = None,
        zeroconf_factory: Optional[Callable[[], Any]] = None,
        adapters_provider: Optional[Callable[[], Any]] = None,
        rng: Optional[random.Random] = None,
        metrics: Optional[MetricsLogger] = None,
    ) -> None:
        self.config = config or ResilienceConfig()
        self._clock = clock
        self.bus = EventBus(clock)

        self.metrics = metrics
        if self.metrics is None and self.config.metrics_path:
            self.metrics = MetricsLogger(self.config.metrics_path)
        self._journal = self.metrics.attach(self.bus) if self.metrics else None

        self.store = ConnectionStore(self.config.health.archive_size)
        self.monitor = ConnectionHealthMonitor(self.config.health, store=self.store, bus=self.bus, clock=clock)
        self.reconnection = SmartReconnectionManager(self.config.reconnection, bus=self.bus, rng=rng, clock=clock)

        usb_cfg = self.config.usb
        self.bridge = bridge or DeviceBridgeClient(usb_cfg.adb_path, timeout=usb_cfg.command_timeout, metrics=self.metrics)
        self.usb = UsbDiscoveryService(self.bridge, bus=self.bus, config=usb_cfg, clock=clock, metrics=self.metrics)
        network_kwargs: Dict[str, Any] = {}
        if zeroconf_factory is not None:
            network_kwargs["zeroconf_factory"] = zeroconf_factory
        if adapters_provider is not None:
            network_kwargs["adapters_provider"] = adapters_provider
        self.network = NetworkDiscoveryService(self.config.network, bus=self.bus, clock=clock, **network_kwargs)

        self._health_task = PeriodicTask(
            "health-check",
            self.config.health.health_check_interval,
            self.monitor.check_health,
            run_immediately=False,
        )
        self.started = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self, *, usb: bool = True, network: bool = True) -> None:
        if self.started:
            return
        self.started = True
        self._health_task.start()
        if usb:
            await self.usb.start()
        if network:
            try:
                await self.network.start()
            except Exception:
                logger.exception("Network discovery failed to start")
        logger.info("Resilience subsystem started")

    async def stop(self) -> None:
        if not self.started:
            return
        self.started = False
        await self._health_task.stop()
        await self.usb.stop()
        await self.network.stop()
        self.monitor.clear()
        logger.info("Resilience subsystem stopped")

    def close(self) -> None:
        if self._journal is not None:
            self._journal.cancel()
            self._journal = None
        self.bus.clear()

    # ------------------------------------------------------------------
    # Connection lifecycle pass-through
    # ------------------------------------------------------------------
    def connection_opened(
        self,
        connection_id: str,
        client_info: Union[ClientInfo, Mapping[str, Any], None] = None,
    ) -> None:
        self.monitor.track_connection(connection_id, client_info)

    def connection_ping(self, connection_id: str, latency_ms: float) -> Optional[HealthPrediction]:
        return self.monitor.record_latency(connection_id, latency_ms)

    def connection_upgraded(self, connection_id: str, from_transport: str, to_transport: str) -> None:
        self.monitor.record_transport_upgrade(connection_id, from_transport, to_transport)

    def connection_error(self, connection_id: str, kind: str, message: str = "") -> None:
        self.monitor.record_error(connection_id, kind, message)

    def connection_closed(self, connection_id: str, reason: str) -> Optional[ReconnectionPlan]:
        """End the connection and publish reconnection guidance for it."""
        if self.store.active(connection_id) is None:
            return None
        record = self.monitor.end_connection(connection_id, reason)
        if record is None:
            return None
        history = self.monitor.history_snapshot(
            connection_id,
            recent_failures=self.reconnection.recent_failures(connection_id),
        )
        return self.reconnection.plan_for_disconnect(connection_id, record.end_reason or reason, history)

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------
    def health(self) -> Dict[str, Any]:
        return {
            "status": "ok",
            "started": self.started,
            "active_connections": len(self.store),
            "usb": {"available": self.usb.available, "running": self.usb.running},
            "timestamp": self._clock(),
        }

    def recommend_connection_methods(self, hints: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        return self.network.recommend_connection_methods(hints, self.usb.devices())


__all__ = ["ResilienceSubsystem"]
