"""
Battery and storage gate applied before a device receives any package.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import List, Sequence

from fleet_deploy.adb_bridge import BridgeError, DeviceBridge
from fleet_deploy.config import DEFAULT_BATTERY_FLOOR, DEFAULT_STORAGE_FLOOR_KB
from fleet_deploy.models import Device, HealthReport

logger = logging.getLogger("fleet_deploy.health_checker")


class HealthChecker:
    """
    Decides whether a device is healthy enough to deploy to.

    A device is eligible when its battery is at least *battery_floor* percent
    and it has at least *storage_floor_kb* KB free on /data. Both floors are
    inclusive. Any query failure makes the device ineligible.
    """

    def __init__(
        self,
        bridge: DeviceBridge,
        battery_floor: int = DEFAULT_BATTERY_FLOOR,
        storage_floor_kb: int = DEFAULT_STORAGE_FLOOR_KB,
    ) -> None:
        self._bridge = bridge
        self.battery_floor = battery_floor
        self.storage_floor_kb = storage_floor_kb

    async def check(self, device: Device) -> HealthReport:
        serial = device.serial
        try:
            battery = await self._bridge.read_battery(serial)
            storage = await self._bridge.read_free_storage(serial)
        except BridgeError as exc:
            logger.warning("Health check failed for %s, skipping device: %s", serial, exc)
            return HealthReport(serial=serial, eligible=False, reason=f"health check failed: {exc}")

        problems: List[str] = []
        if battery < self.battery_floor:
            problems.append(f"battery {battery}% below {self.battery_floor}%")
        if storage < self.storage_floor_kb:
            problems.append(f"free storage {storage} KB below {self.storage_floor_kb} KB")

        report = HealthReport(
            serial=serial,
            eligible=not problems,
            battery_level=battery,
            free_storage_kb=storage,
            reason="; ".join(problems),
        )
        if report.eligible:
            logger.debug("Health OK: %s (battery=%d%%, free=%d KB)", serial, battery, storage)
        else:
            logger.warning("Device %s is not eligible: %s", serial, report.reason)
        return report

    async def is_eligible(self, device: Device) -> bool:
        report = await self.check(device)
        return report.eligible

    async def check_all(self, devices: Sequence[Device]) -> List[HealthReport]:
        """Check every device concurrently; reports come back in input order."""
        return list(await asyncio.gather(*[self.check(d) for d in devices]))

    @staticmethod
    def annotate(device: Device, report: HealthReport) -> Device:
        """Return *device* carrying the readings from *report*."""
        return replace(
            device,
            battery_level=report.battery_level,
            free_storage_kb=report.free_storage_kb,
        )
