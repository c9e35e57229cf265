"""Tests for the adb wrapper: output parsing and subprocess handling."""
from __future__ import annotations

import asyncio
import os
import stat
import sys
import tempfile
import textwrap
import unittest
from pathlib import Path
from unittest import IsolatedAsyncioTestCase

from resilink.bridge import DeviceBridgeClient, parse_devices_output
from resilink.metrics import MetricsLogger

SAMPLE_OUTPUT = textwrap.dedent(
    """\
    * daemon not running; starting now at tcp:5037
    * daemon started successfully
    List of devices attached
    0123456789ABCDEF       device usb:1-1 product:panther model:Pixel_7 device:panther transport_id:3
    emulator-5554          unauthorized transport_id:1

    R58M1234XYZ            offline
    """
)


class ParseDevicesOutputTest(unittest.TestCase):
    def test_parses_rows_and_attributes(self) -> None:
        devices = parse_devices_output(SAMPLE_OUTPUT)
        self.assertEqual([device.serial for device in devices], ["0123456789ABCDEF", "emulator-5554", "R58M1234XYZ"])
        pixel = devices[0]
        self.assertEqual(pixel.status, "device")
        self.assertEqual(pixel.model, "Pixel_7")
        self.assertEqual(pixel.product, "panther")
        self.assertEqual(pixel.transport, "3")
        self.assertEqual(devices[1].status, "unauthorized")
        self.assertIsNone(devices[2].model)

    def test_empty_listing(self) -> None:
        self.assertEqual(parse_devices_output("List of devices attached\n\n"), [])
        self.assertEqual(parse_devices_output(""), [])


@unittest.skipIf(sys.platform.startswith("win"), "uses POSIX shell scripts as a fake adb")
class DeviceBridgeClientTest(IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.tmp = Path(self._tmp.name)

    def _script(self, body: str) -> str:
        path = self.tmp / "adb"
        path.write_text("#!/bin/sh\n" + textwrap.dedent(body), encoding="utf-8")
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(path)

    async def test_missing_executable_is_not_fatal(self) -> None:
        client = DeviceBridgeClient(os.path.join(self._tmp.name, "no-such-adb"), timeout=1.0)
        self.assertFalse(await client.check_available())
        self.assertIsNone(await client.list_devices())
        self.assertFalse(await client.forward(3001, "SER1", 8080))

    async def test_lists_devices_from_executable(self) -> None:
        adb = self._script(
            """\
            if [ "$1" = "devices" ]; then
              echo "List of devices attached"
              echo "SER1    device model:Pixel_7"
              exit 0
            fi
            echo "Android Debug Bridge version 1.0.41"
            """
        )
        client = DeviceBridgeClient(adb, timeout=5.0)
        self.assertTrue(await client.check_available())
        devices = await client.list_devices()
        self.assertEqual([(device.serial, device.model) for device in devices], [("SER1", "Pixel_7")])

    async def test_forward_passes_arguments_and_journals(self) -> None:
        log_path = self.tmp / "args.txt"
        adb = self._script(
            f"""\
            echo "$@" > "{log_path}"
            exit 0
            """
        )
        metrics = MetricsLogger(self.tmp / "metrics.csv")
        client = DeviceBridgeClient(adb, metrics=metrics)
        self.assertTrue(await client.forward(3001, "SER1", 8080))
        self.assertEqual(log_path.read_text(encoding="utf-8").strip(), "-s SER1 forward tcp:3001 tcp:8080")

        journal = (self.tmp / "metrics.csv").read_text(encoding="utf-8")
        self.assertIn("adb_forward", journal)
        self.assertIn("SER1", journal)

    async def test_failed_command_returns_false(self) -> None:
        adb = self._script(
            """\
            echo "error: device 'SER1' not found" >&2
            exit 1
            """
        )
        client = DeviceBridgeClient(adb)
        self.assertFalse(await client.remove_forward(3001, "SER1"))
        self.assertFalse(await client.reverse(8080, "SER1", 3001))

    async def test_hung_command_times_out(self) -> None:
        adb = self._script(
            """\
            exec sleep 10
            """
        )
        client = DeviceBridgeClient(adb, timeout=0.2)
        self.assertIsNone(await client.list_devices())

    async def test_empty_listing_is_not_a_failure(self) -> None:
        adb = self._script(
            """\
            echo "List of devices attached"
            echo ""
            """
        )
        client = DeviceBridgeClient(adb)
        self.assertEqual(await client.list_devices(), [])

    async def test_cancelled_command_kills_the_child(self) -> None:
        pid_file = self.tmp / "adb.pid"
        adb = self._script(
            f"""\
            echo $$ > {pid_file}
            exec sleep 10
            """
        )
        client = DeviceBridgeClient(adb, timeout=30.0)
        task = asyncio.create_task(client.list_devices())
        for _ in range(200):
            if pid_file.exists() and pid_file.read_text(encoding="utf-8").strip():
                break
            await asyncio.sleep(0.01)
        pid = int(pid_file.read_text(encoding="utf-8").strip())

        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task
        with self.assertRaises(ProcessLookupError):
            os.kill(pid, 0)

    async def test_device_details_reads_properties(self) -> None:
        adb = self._script(
            """\
            case "$5" in
              ro.product.model) echo "Pixel 7" ;;
              ro.build.version.release) echo "14" ;;
            esac
            exit 0
            """
        )
        client = DeviceBridgeClient(adb)
        details = await client.device_details("SER1")
        self.assertEqual(details, {"model": "Pixel 7", "android_version": "14"})


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
