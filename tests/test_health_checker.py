"""Tests for the battery/storage health gate."""
from __future__ import annotations

import pytest

from fleet_deploy.adb_bridge import BridgeCommandError, BridgeTimeoutError
from fleet_deploy.health_checker import HealthChecker

FLOOR_KB = 1_048_576


class TestHealthChecker:
    """Eligibility decisions."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("battery,storage,eligible", [
        (20, FLOOR_KB, True),           # exactly at both floors
        (100, 64 * FLOOR_KB, True),
        (19, FLOOR_KB, False),
        (20, FLOOR_KB - 1, False),
        (10, 10, False),
        (0, 0, False),
    ])
    async def test_floors_are_inclusive(self, fake_bridge_factory, make_device, battery, storage, eligible):
        bridge = fake_bridge_factory(serials=["a"], battery={"a": battery}, storage={"a": storage})
        checker = HealthChecker(bridge)
        assert await checker.is_eligible(make_device("a")) is eligible

    @pytest.mark.asyncio
    async def test_report_carries_readings_and_reason(self, fake_bridge_factory, make_device):
        bridge = fake_bridge_factory(serials=["a"], battery={"a": 10}, storage={"a": 500})
        report = await HealthChecker(bridge).check(make_device("a"))
        assert report.eligible is False
        assert report.battery_level == 10
        assert report.free_storage_kb == 500
        assert "battery 10%" in report.reason
        assert "free storage 500 KB" in report.reason

    @pytest.mark.asyncio
    async def test_custom_floors(self, fake_bridge_factory, make_device):
        bridge = fake_bridge_factory(serials=["a"], battery={"a": 15}, storage={"a": 2048})
        checker = HealthChecker(bridge, battery_floor=10, storage_floor_kb=1024)
        assert await checker.is_eligible(make_device("a")) is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize("failure", [
        BridgeCommandError("battery level not found in dumpsys output"),
        BridgeTimeoutError("adb shell dumpsys battery timed out after 30s"),
    ])
    async def test_query_failure_is_ineligible_not_fatal(self, fake_bridge_factory, make_device, failure):
        bridge = fake_bridge_factory(serials=["a"], battery={"a": failure})
        report = await HealthChecker(bridge).check(make_device("a"))
        assert report.eligible is False
        assert report.reason.startswith("health check failed")

    @pytest.mark.asyncio
    async def test_storage_failure_is_ineligible(self, fake_bridge_factory, make_device):
        bridge = fake_bridge_factory(serials=["a"], storage={"a": BridgeCommandError("df failed")})
        assert await HealthChecker(bridge).is_eligible(make_device("a")) is False

    @pytest.mark.asyncio
    async def test_check_all_preserves_order(self, fake_bridge_factory, make_device):
        bridge = fake_bridge_factory(
            serials=["a", "b", "c"],
            battery={"a": 90, "b": 5, "c": BridgeCommandError("offline")},
        )
        reports = await HealthChecker(bridge).check_all([make_device(s) for s in "abc"])
        assert [r.serial for r in reports] == ["a", "b", "c"]
        assert [r.eligible for r in reports] == [True, False, False]

    @pytest.mark.unit
    def test_annotate_returns_new_device(self, make_device):
        from fleet_deploy.models import HealthReport

        device = make_device("a")
        report = HealthReport(serial="a", eligible=True, battery_level=55, free_storage_kb=2_000_000)
        annotated = HealthChecker.annotate(device, report)
        assert annotated.battery_level == 55
        assert annotated.free_storage_kb == 2_000_000
        assert device.battery_level is None
