"""Resilink command-line interface."""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from resilink.bridge import DeviceBridgeClient
from resilink.config import ConfigError, ResilienceConfig, load_config
from resilink.events import EventBus, EventRecorder
from resilink.network_discovery import NetworkDiscoveryService
from resilink.usb_discovery import UsbDiscoveryService

logger = logging.getLogger("resilink.cli")


def _configure_logging(level: str) -> None:
	logging.basicConfig(
		level=level.upper(),
		format="%(message)s",
		datefmt="[%X]",
		handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
	)


def _dump_json(data: Any) -> None:
	json.dump(data, sys.stdout, indent=2, default=str)
	sys.stdout.write("\n")


async def _cmd_usb_scan(args: argparse.Namespace, config: ResilienceConfig) -> int:
	usb_cfg = config.usb
	bridge = DeviceBridgeClient(usb_cfg.adb_path, timeout=usb_cfg.command_timeout)
	if not await bridge.check_available():
		logger.error("adb not found at %s", usb_cfg.adb_path)
		return 2

	bus = EventBus()
	recorder = EventRecorder(bus)
	service = UsbDiscoveryService(bridge, bus=bus, config=usb_cfg)
	service.available = True
	for cycle in range(args.cycles):
		if cycle:
			await asyncio.sleep(usb_cfg.scan_interval)
		await service.scan_once()
	status = service.get_status()

	if args.json:
		_dump_json({"status": status, "events": [event.to_dict() for event in recorder.events]})
		return 0

	console = Console()
	table = Table(title="USB Devices", show_lines=False)
	for column in ("serial", "model", "authorization", "state", "port"):
		table.add_column(column.upper())
	for entry in status["devices"]:
		table.add_row(
			str(entry.get("identifier", "")),
			str(entry.get("model") or ""),
			str(entry.get("authorization_state", "")),
			str(entry.get("state", "")),
			str(entry.get("local_port") or ""),
		)
	console.print(table)
	for event in recorder.of_kind("deviceRequiresAuthorization"):
		console.print(f"[yellow]{event.key}[/yellow]: accept the USB debugging prompt on the device")
	return 0


async def _cmd_pair(args: argparse.Namespace, config: ResilienceConfig) -> int:
	service = NetworkDiscoveryService(config.network)
	code = service.generate_pairing_code(size=args.size, expiry_hours=args.expiry_hours)
	if args.svg:
		path = Path(args.svg)
		path.parent.mkdir(parents=True, exist_ok=True)
		path.write_text(code.svg, encoding="utf-8")
		logger.info("Wrote pairing QR to %s", path)

	if args.json:
		payload: Dict[str, Any] = code.to_dict()
		if args.svg:
			payload.pop("svg", None)
		_dump_json(payload)
		return 0

	console = Console()
	console.print(code.text, highlight=False)
	info = service.network_info()
	console.print(f"Host: [bold]{info.primary_address}:{config.network.server_port}[/bold]")
	console.print(f"Token: {code.token}", highlight=False, soft_wrap=True)
	return 0


def _cmd_serve(args: argparse.Namespace, config: ResilienceConfig) -> int:
	import uvicorn

	from resilink import api
	from resilink.subsystem import ResilienceSubsystem

	if args.metrics:
		config.metrics_path = args.metrics
	api.configure(ResilienceSubsystem(config), autostart=True)
	uvicorn.run(api.app, host=args.host, port=args.port, log_level=config.log_level.lower())
	return 0


def _build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(description="Resilink connection resilience utilities")
	parser.add_argument("--log-level", help="Logging level (default: RESILINK_LOG_LEVEL or INFO)")
	sub = parser.add_subparsers(dest="command", required=True)

	usb = sub.add_parser("usb-scan", help="List USB devices and set up port forwarding")
	usb.add_argument("--cycles", type=int, default=1, help="Number of scan cycles to run")
	usb.add_argument("--json", action="store_true", help="Output JSON")
	usb.set_defaults(handler=_cmd_usb_scan)

	pair = sub.add_parser("pair", help="Generate a pairing QR code")
	pair.add_argument("--size", type=int, default=256, help="QR size hint in pixels")
	pair.add_argument("--expiry-hours", type=float, default=24.0, help="Token lifetime in hours")
	pair.add_argument("--svg", help="Write the QR code as SVG to this path")
	pair.add_argument("--json", action="store_true", help="Output JSON")
	pair.set_defaults(handler=_cmd_pair)

	serve = sub.add_parser("serve", help="Run the HTTP/websocket API")
	serve.add_argument("--host", default="127.0.0.1", help="Bind address")
	serve.add_argument("--port", type=int, default=8000, help="Bind port")
	serve.add_argument("--metrics", help="Path to the metrics CSV journal")
	serve.set_defaults(handler=_cmd_serve, sync=True)

	return parser


def main(argv: Optional[List[str]] = None) -> int:
	parser = _build_parser()
	args = parser.parse_args(argv)
	try:
		config = load_config()
	except ConfigError as exc:
		parser.error(str(exc))
	if args.log_level:
		config.log_level = args.log_level.upper()
	_configure_logging(config.log_level)

	try:
		if getattr(args, "sync", False):
			return args.handler(args, config)
		return asyncio.run(args.handler(args, config))
	except ValueError as exc:
		parser.error(str(exc))


if __name__ == "__main__":
	sys.exit(main())
