"""Detect cable-attached devices and keep a port forwarded to each of them."""
from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, ContextManager, Dict, List, Optional, Set

from resilink.bridge import BridgeDevice, DeviceBridgeClient
from resilink.config import UsbConfig
from resilink.events import EventBus
from resilink.metrics import MetricsLogger
from resilink.models import AuthorizationState, DiscoveredDevice
from resilink.presence import PresenceTracker
from resilink.scheduling import PeriodicTask

logger = logging.getLogger(__name__)


class DeviceState(str, Enum):
	ATTACHED_UNAUTHORIZED = "attached_unauthorized"
	ATTACHED_AUTHORIZED = "attached_authorized"
	FORWARDING_ESTABLISHED = "forwarding_established"
	DETACHED = "detached"


@dataclass(slots=True)
class _DeviceEntry:
	device: DiscoveredDevice
	state: DeviceState
	local_port: Optional[int] = None
	forward_failures: int = 0
	next_attempt_at: float = 0.0

	def to_dict(self) -> Dict[str, Any]:
		payload = self.device.to_dict()
		payload.update(
			{
				"state": self.state.value,
				"local_port": self.local_port,
				"forward_failures": self.forward_failures,
				"next_attempt_at": self.next_attempt_at or None,
			}
		)
		return payload


class UsbDiscoveryService:
	"""Poll the debug bridge and manage per-device forwarding.

	Each serial moves through ``attached (unauthorized) -> attached
	(authorized) -> forwarding established -> detached``. A serial is only
	considered gone after ``miss_threshold`` consecutive scans without it, so a
	flaky ``adb devices`` run never tears a working forward down. Failed
	forwards are retried by later scans once their backoff expires; nothing is
	left scheduled when the service stops.
	"""

	def __init__(
		self,
		bridge: DeviceBridgeClient,
		*,
		bus: Optional[EventBus] = None,
		config: Optional[UsbConfig] = None,
		clock: Callable[[], float] = time.time,
		metrics: Optional[MetricsLogger] = None,
	) -> None:
		self.bridge = bridge
		self.config = config or UsbConfig()
		self.bus = bus or EventBus(clock)
		self.metrics = metrics
		self._clock = clock
		self._tracker = PresenceTracker(self.config.miss_threshold)
		self._entries: Dict[str, _DeviceEntry] = {}
		self._lock = asyncio.Lock()
		self._task = PeriodicTask("usb-discovery", self.config.scan_interval, self.scan_once)
		self.available: Optional[bool] = None
		self.last_scan_at: Optional[float] = None
		self.scan_count = 0

	# ------------------------------------------------------------------
	# Lifecycle
	# ------------------------------------------------------------------
	@property
	def running(self) -> bool:
		return self._task.running

	async def start(self) -> bool:
		if self.running:
			return True
		self.available = await self.bridge.check_available()
		if not self.available:
			logger.warning("adb not available at %s; USB discovery disabled", self.config.adb_path)
			return False
		self._task.start()
		logger.info("USB discovery started (every %.1fs)", self.config.scan_interval)
		return True

	async def stop(self) -> None:
		await self._task.stop()
		async with self._lock:
			for serial, entry in list(self._entries.items()):
				if entry.state is DeviceState.FORWARDING_ESTABLISHED:
					await self._remove_forwarding(serial, entry)
			self._entries.clear()
			self._tracker.clear()
		logger.info("USB discovery stopped")

	# ------------------------------------------------------------------
	# Scanning
	# ------------------------------------------------------------------
	async def scan_once(self) -> None:
		async with self._lock:
			with self._scan_timer() as outcome:
				try:
					listed = await self.bridge.list_devices()
				except Exception as exc:
					logger.exception("USB device scan failed")
					outcome["status"] = "error"
					self.bus.emit("scanError", None, message=str(exc))
					return
				if listed is None:
					# Unknown result: leave presence counters and forwards untouched.
					logger.warning("adb device listing failed; keeping %d known device(s)", len(self._entries))
					outcome["status"] = "unavailable"
					self.bus.emit("scanError", None, message="adb device listing failed", transient=True)
					return

				now = self._clock()
				current = {device.serial: device for device in listed}
				delta = self._tracker.observe(current)

				for serial in delta.added:
					self._attach(current[serial], now)
				for serial in delta.present:
					await self._refresh(current[serial], now)
				for serial in delta.missing:
					logger.debug("Device %s missing from scan (%d/%d)", serial, self._tracker.misses(serial), self.config.miss_threshold)
				for serial in delta.removed:
					await self._detach(serial)

				for serial in sorted(current):
					entry = self._entries.get(serial)
					if entry is None or entry.state is not DeviceState.ATTACHED_AUTHORIZED:
						continue
					if now < entry.next_attempt_at:
						continue
					await self._establish_forwarding(serial, entry, now)

				self.last_scan_at = now
				self.scan_count += 1
				outcome["devices"] = len(current)
				outcome["forwarding"] = len(self.forwarding())

	async def force_scan(self) -> Dict[str, Any]:
		await self.scan_once()
		return self.get_status()

	def _scan_timer(self) -> ContextManager[Dict[str, Any]]:
		if self.metrics is None:
			return contextlib.nullcontext({})
		return self.metrics.timer("usb_scan", cycle=self.scan_count + 1)

	# ------------------------------------------------------------------
	# Read side
	# ------------------------------------------------------------------
	def devices(self) -> List[DiscoveredDevice]:
		return [dataclasses.replace(entry.device) for _, entry in sorted(self._entries.items())]

	def authorized_devices(self) -> List[DiscoveredDevice]:
		return [device for device in self.devices() if device.authorized]

	def forwarding(self) -> Dict[str, int]:
		return {
			serial: entry.local_port
			for serial, entry in sorted(self._entries.items())
			if entry.state is DeviceState.FORWARDING_ESTABLISHED and entry.local_port is not None
		}

	def get_status(self) -> Dict[str, Any]:
		return {
			"available": self.available,
			"running": self.running,
			"last_scan": self.last_scan_at,
			"scan_count": self.scan_count,
			"devices": [entry.to_dict() for _, entry in sorted(self._entries.items())],
			"forwarding": self.forwarding(),
			"config": {
				"scan_interval": self.config.scan_interval,
				"miss_threshold": self.config.miss_threshold,
				"local_port_base": self.config.local_port_base,
				"device_port": self.config.device_port,
				"mode": "reverse" if self.config.use_reverse else "forward",
			},
		}

	# ------------------------------------------------------------------
	# State transitions
	# ------------------------------------------------------------------
	def _attach(self, listed: BridgeDevice, now: float) -> None:
		authorization = AuthorizationState.from_bridge_status(listed.status)
		device = DiscoveredDevice(
			identifier=listed.serial,
			authorization_state=authorization,
			last_seen=now,
			model=listed.model,
			product=listed.product,
		)
		entry = _DeviceEntry(device=device, state=self._state_for(authorization))
		self._entries[listed.serial] = entry
		logger.info("USB device attached: %s (%s)", listed.serial, listed.status)
		self.bus.emit("deviceAttached", listed.serial, device=device.to_dict(), state=entry.state.value)
		if authorization is AuthorizationState.PENDING_USER_APPROVAL:
			self._request_authorization(entry)

	async def _refresh(self, listed: BridgeDevice, now: float) -> None:
		entry = self._entries.get(listed.serial)
		if entry is None:
			self._attach(listed, now)
			return
		entry.device.last_seen = now
		if listed.model:
			entry.device.model = listed.model
		authorization = AuthorizationState.from_bridge_status(listed.status)
		previous = entry.device.authorization_state
		if authorization is previous:
			return

		entry.device.authorization_state = authorization
		if authorization is AuthorizationState.AUTHORIZED:
			entry.state = DeviceState.ATTACHED_AUTHORIZED
			entry.forward_failures = 0
			entry.next_attempt_at = 0.0
		else:
			if entry.state is DeviceState.FORWARDING_ESTABLISHED:
				await self._remove_forwarding(listed.serial, entry)
			entry.state = DeviceState.ATTACHED_UNAUTHORIZED
		logger.info("USB device %s status %s -> %s", listed.serial, previous.value, authorization.value)
		self.bus.emit(
			"deviceStatusChanged",
			listed.serial,
			previous_status=previous.value,
			authorization_state=authorization.value,
			device=entry.device.to_dict(),
		)
		if authorization is AuthorizationState.PENDING_USER_APPROVAL:
			self._request_authorization(entry)

	def _request_authorization(self, entry: _DeviceEntry) -> None:
		logger.info("USB device %s requires authorization on the device", entry.device.identifier)
		self.bus.emit(
			"deviceRequiresAuthorization",
			entry.device.identifier,
			device=entry.device.to_dict(),
			message="Accept the USB debugging prompt on the device",
		)

	async def _detach(self, serial: str) -> None:
		entry = self._entries.pop(serial, None)
		if entry is None:
			return
		if entry.state is DeviceState.FORWARDING_ESTABLISHED:
			await self._remove_forwarding(serial, entry)
		entry.state = DeviceState.DETACHED
		logger.info("USB device detached: %s", serial)
		self.bus.emit("deviceDetached", serial, device=entry.device.to_dict(), state=entry.state.value)

	# ------------------------------------------------------------------
	# Forwarding
	# ------------------------------------------------------------------
	async def _establish_forwarding(self, serial: str, entry: _DeviceEntry, now: float) -> None:
		port = self._allocate_port()
		if self.config.use_reverse:
			ok = await self.bridge.reverse(self.config.device_port, serial, port)
		else:
			ok = await self.bridge.forward(port, serial, self.config.device_port)

		if ok:
			entry.state = DeviceState.FORWARDING_ESTABLISHED
			entry.local_port = port
			entry.device.port = port
			entry.forward_failures = 0
			entry.next_attempt_at = 0.0
			logger.info("Port forwarding established for %s on %d", serial, port)
			self.bus.emit(
				"portForwardingEstablished",
				serial,
				device=serial,
				port=port,
				device_port=self.config.device_port,
				mode="reverse" if self.config.use_reverse else "forward",
			)
			return

		entry.forward_failures += 1
		delay = min(
			self.config.retry_max_seconds,
			self.config.retry_base_seconds * (2 ** (entry.forward_failures - 1)),
		)
		entry.next_attempt_at = now + delay
		logger.warning("Port forwarding failed for %s (attempt %d); retrying in %.0fs", serial, entry.forward_failures, delay)
		self.bus.emit(
			"portForwardingError",
			serial,
			device=serial,
			port=port,
			attempt=entry.forward_failures,
			retry_in_seconds=delay,
		)

	async def _remove_forwarding(self, serial: str, entry: _DeviceEntry) -> None:
		port = entry.local_port
		self._release_port(entry)
		if port is None:
			return
		if self.config.use_reverse:
			removed = await self.bridge.remove_reverse(self.config.device_port, serial)
		else:
			removed = await self.bridge.remove_forward(port, serial)
		if not removed:
			logger.debug("Forward for %s on %d was already gone", serial, port)

	def _release_port(self, entry: _DeviceEntry) -> None:
		entry.local_port = None
		entry.device.port = None
		if entry.state is DeviceState.FORWARDING_ESTABLISHED:
			entry.state = DeviceState.ATTACHED_AUTHORIZED

	def _allocate_port(self) -> int:
		# Reverse mode points every device at the same host server port.
		if self.config.use_reverse:
			return self.config.local_port_base
		used: Set[int] = {entry.local_port for entry in self._entries.values() if entry.local_port is not None}
		port = self.config.local_port_base
		while port in used:
			port += 1
		return port

	@staticmethod
	def _state_for(authorization: AuthorizationState) -> DeviceState:
		if authorization is AuthorizationState.AUTHORIZED:
			return DeviceState.ATTACHED_AUTHORIZED
		return DeviceState.ATTACHED_UNAUTHORIZED


__all__ = ["DeviceState", "UsbDiscoveryService"]
