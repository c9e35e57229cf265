"""Async wrapper around the Android debug bridge executable."""
from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from resilink.metrics import MetricsLogger

logger = logging.getLogger(__name__)

_DETAIL_PROPS: Tuple[Tuple[str, str], ...] = (
	("model", "ro.product.model"),
	("manufacturer", "ro.product.manufacturer"),
	("android_version", "ro.build.version.release"),
	("sdk", "ro.build.version.sdk"),
)


@dataclass(frozen=True, slots=True)
class BridgeDevice:
	"""One row of ``adb devices -l``."""

	serial: str
	status: str
	model: Optional[str] = None
	product: Optional[str] = None
	transport: Optional[str] = None


@dataclass(frozen=True, slots=True)
class CommandResult:
	returncode: Optional[int]
	stdout: str
	stderr: str
	timed_out: bool = False

	@property
	def ok(self) -> bool:
		return self.returncode == 0 and not self.timed_out


def parse_devices_output(text: str) -> List[BridgeDevice]:
	"""Parse the output of ``adb devices -l``.

	Header lines, daemon chatter (``* daemon started ...``) and blank lines are
	skipped. Key/value columns such as ``model:Pixel_7`` are picked up when
	present.
	"""
	devices: List[BridgeDevice] = []
	for raw in text.splitlines():
		line = raw.strip()
		if not line or line.startswith("List of devices") or line.startswith("*"):
			continue
		parts = line.split()
		if len(parts) < 2:
			continue
		serial, status = parts[0], parts[1]
		attrs: Dict[str, str] = {}
		for token in parts[2:]:
			key, sep, value = token.partition(":")
			if sep:
				attrs[key] = value
		devices.append(
			BridgeDevice(
				serial=serial,
				status=status,
				model=attrs.get("model"),
				product=attrs.get("product"),
				transport=attrs.get("transport_id"),
			)
		)
	return devices


class DeviceBridgeClient:
	"""Run ``adb`` commands with a hard timeout.

	No method raises for command failures: a missing executable, a non-zero
	exit or a timeout is logged and reported as ``False``, an empty result,
	or ``None`` from :meth:`list_devices` so that a failed listing is never
	mistaken for "no devices". Callers retry on their next scan cycle.
	"""

	def __init__(
		self,
		adb_path: str = "adb",
		*,
		timeout: float = 5.0,
		metrics: Optional[MetricsLogger] = None,
	) -> None:
		self.adb_path = adb_path
		self.timeout = timeout
		self.metrics = metrics

	# ------------------------------------------------------------------
	# Commands
	# ------------------------------------------------------------------
	async def check_available(self) -> bool:
		result = await self._run(["version"])
		if result.ok:
			first_line = result.stdout.strip().splitlines()[0] if result.stdout.strip() else ""
			logger.info("adb available: %s", first_line)
		return result.ok

	async def list_devices(self) -> Optional[List[BridgeDevice]]:
		result = await self._run(["devices", "-l"])
		if not result.ok:
			return None
		return parse_devices_output(result.stdout)

	async def forward(self, local_port: int, serial: str, remote_port: int) -> bool:
		result = await self._run(["-s", serial, "forward", f"tcp:{local_port}", f"tcp:{remote_port}"])
		self._metrics_log("forward", result, serial, extra={"local_port": local_port, "remote_port": remote_port})
		return result.ok

	async def reverse(self, device_port: int, serial: str, local_port: int) -> bool:
		result = await self._run(["-s", serial, "reverse", f"tcp:{device_port}", f"tcp:{local_port}"])
		self._metrics_log("reverse", result, serial, extra={"device_port": device_port, "local_port": local_port})
		return result.ok

	async def remove_forward(self, local_port: int, serial: str) -> bool:
		result = await self._run(["-s", serial, "forward", "--remove", f"tcp:{local_port}"])
		self._metrics_log("remove_forward", result, serial, extra={"local_port": local_port})
		return result.ok

	async def remove_reverse(self, device_port: int, serial: str) -> bool:
		result = await self._run(["-s", serial, "reverse", "--remove", f"tcp:{device_port}"])
		self._metrics_log("remove_reverse", result, serial, extra={"device_port": device_port})
		return result.ok

	async def device_details(self, serial: str) -> Dict[str, str]:
		details: Dict[str, str] = {}
		for name, prop in _DETAIL_PROPS:
			result = await self._run(["-s", serial, "shell", "getprop", prop])
			if result.ok and result.stdout.strip():
				details[name] = result.stdout.strip()
		return details

	# ------------------------------------------------------------------
	# Plumbing
	# ------------------------------------------------------------------
	async def _run(self, args: Sequence[str]) -> CommandResult:
		argv = [self.adb_path, *args]
		try:
			process = await asyncio.create_subprocess_exec(
				*argv,
				stdout=asyncio.subprocess.PIPE,
				stderr=asyncio.subprocess.PIPE,
			)
		except (FileNotFoundError, PermissionError) as exc:
			logger.warning("Cannot execute %s: %s", self.adb_path, exc)
			return CommandResult(None, "", str(exc))

		try:
			stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
		except asyncio.TimeoutError:
			logger.warning("adb %s timed out after %.1fs", " ".join(args), self.timeout)
			await self._reap(process)
			return CommandResult(None, "", "timeout", timed_out=True)
		except asyncio.CancelledError:
			await asyncio.shield(self._reap(process))
			raise

		result = CommandResult(
			process.returncode,
			stdout.decode("utf-8", errors="replace"),
			stderr.decode("utf-8", errors="replace"),
		)
		if not result.ok:
			logger.debug("adb %s exited %s: %s", " ".join(args), result.returncode, result.stderr.strip())
		return result

	@staticmethod
	async def _reap(process: asyncio.subprocess.Process) -> None:
		if process.returncode is None:
			with contextlib.suppress(ProcessLookupError):
				process.kill()
		await process.wait()

	def _metrics_log(self, action: str, result: CommandResult, serial: str, *, extra: Optional[Dict[str, int]] = None) -> None:
		if not self.metrics:
			return
		status = "ok" if result.ok else ("timeout" if result.timed_out else "error")
		try:
			self.metrics.log(
				f"adb_{action}",
				key=serial,
				status=status,
				message=result.stderr.strip() or None,
				extra=extra,
			)
		except OSError:
			logger.debug("Metrics logging failed for adb %s", action, exc_info=True)


__all__ = ["BridgeDevice", "CommandResult", "DeviceBridgeClient", "parse_devices_output"]
