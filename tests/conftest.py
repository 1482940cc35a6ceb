"""
Shared fixtures for the fleet_deploy test suite.

Provides a scriptable in-memory device bridge and a factory for minimal
but real APK files, so every test runs WITHOUT adb or a connected device.
"""

import asyncio
import logging
import struct
import zipfile
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple, Union

import pytest

from fleet_deploy.adb_bridge import (
    BridgeCommandError,
    BridgeUnavailableError,
    InstallResult,
)
from fleet_deploy.config import RunConfig
from fleet_deploy.log_setup import ROOT_LOGGER, reset_logging
from fleet_deploy.models import Device, Package


# ---------------------------------------------------------------------------
# Logging isolation
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _isolate_logging():
    """Undo configure_logging() so caplog keeps seeing package records."""
    yield
    reset_logging()
    logging.getLogger(ROOT_LOGGER).propagate = True


# ---------------------------------------------------------------------------
# APK fixtures
# ---------------------------------------------------------------------------

def build_binary_manifest(package_id: str, utf8: bool = False) -> bytes:
    """Build a binary AndroidManifest.xml with a single <manifest package=...> element."""
    strings = ["manifest", "package", package_id]

    encoded = b""
    offsets = []
    for s in strings:
        offsets.append(len(encoded))
        if utf8:
            raw = s.encode("utf-8")
            encoded += bytes([len(s), len(raw)]) + raw + b"\x00"
        else:
            encoded += struct.pack("<H", len(s)) + s.encode("utf-16-le") + b"\x00\x00"
    while len(encoded) % 4:
        encoded += b"\x00"

    header_size = 28
    strings_start = header_size + 4 * len(strings)
    pool_size = strings_start + len(encoded)
    flags = 1 << 8 if utf8 else 0
    pool = (
        struct.pack("<HHIIIIII", 0x0001, header_size, pool_size, len(strings), 0, flags, strings_start, 0)
        + struct.pack(f"<{len(strings)}I", *offsets)
        + encoded
    )

    # attribute: ns, name="package"(1), rawValue=package_id(2), typed value (string -> 2)
    attr = struct.pack("<IIIHBBI", 0xFFFFFFFF, 1, 2, 8, 0, 0x03, 2)
    # element ext: ns, name="manifest"(0), attributeStart, attributeSize, count, id, class, style
    ext = struct.pack("<IIHHHHHH", 0xFFFFFFFF, 0, 20, 20, 1, 0, 0, 0)
    element_size = 16 + len(ext) + len(attr)
    element = struct.pack("<HHIII", 0x0102, 16, element_size, 1, 0xFFFFFFFF) + ext + attr

    body = pool + element
    return struct.pack("<HHI", 0x0003, 8, 8 + len(body)) + body


@pytest.fixture
def make_apk(tmp_path):
    """Factory: write ``<package_id>.apk`` containing a binary manifest."""

    def _make(package_id: str = "com.example.app", name: Optional[str] = None, utf8: bool = False) -> Path:
        path = tmp_path / (name or f"{package_id}.apk")
        with zipfile.ZipFile(path, "w") as zf:
            zf.writestr("AndroidManifest.xml", build_binary_manifest(package_id, utf8=utf8))
            zf.writestr("classes.dex", b"dex\n035\x00")
        return path

    return _make


# ---------------------------------------------------------------------------
# Fake bridge
# ---------------------------------------------------------------------------

Scripted = Union[int, str, Exception]


class FakeBridge:
    """
    In-memory DeviceBridge.

    The package id of an installed APK is its file stem, matching what
    ``make_apk`` writes. Values in the per-device dicts may be exceptions,
    which are raised instead of returned.
    """

    def __init__(
        self,
        serials: Optional[List[str]] = None,
        versions: Optional[Dict[str, Scripted]] = None,
        battery: Optional[Dict[str, Scripted]] = None,
        storage: Optional[Dict[str, Scripted]] = None,
        install_failures: Optional[Dict[Tuple[str, str], str]] = None,
        unverified: Optional[Set[Tuple[str, str]]] = None,
        install_delay: float = 0.0,
        available: bool = True,
    ) -> None:
        self.serials = list(serials or [])
        self.versions = versions or {}
        self.battery = battery or {}
        self.storage = storage or {}
        self.install_failures = dict(install_failures or {})
        self.unverified = set(unverified or set())
        self.install_delay = install_delay
        self.available = available

        self.installed: Dict[str, Set[str]] = {s: set() for s in self.serials}
        self.calls: List[Tuple[str, str]] = []
        self.installs: List[Tuple[str, str]] = []
        self._active: Dict[str, int] = {}
        self.max_active_per_device = 0
        self.max_active_total = 0

    @staticmethod
    def _value(value: Scripted):
        if isinstance(value, Exception):
            raise value
        return value

    def ensure_available(self) -> None:
        self.calls.append(("ensure_available", ""))
        if not self.available:
            raise BridgeUnavailableError("adb command not found")

    async def list_devices(self) -> List[Device]:
        self.calls.append(("list_devices", ""))
        return [Device(serial=s, model=f"Model-{s}") for s in self.serials]

    async def get_property(self, serial: str, key: str) -> str:
        self.calls.append(("get_property", serial))
        return self._value(self.versions.get(serial, "14"))

    async def read_battery(self, serial: str) -> int:
        self.calls.append(("read_battery", serial))
        return self._value(self.battery.get(serial, 80))

    async def read_free_storage(self, serial: str) -> int:
        self.calls.append(("read_free_storage", serial))
        return self._value(self.storage.get(serial, 4_000_000))

    async def install(self, serial: str, apk_path: Path) -> InstallResult:
        name = Path(apk_path).name
        self.calls.append(("install", serial))
        self.installs.append((serial, name))

        self._active[serial] = self._active.get(serial, 0) + 1
        self.max_active_per_device = max(self.max_active_per_device, self._active[serial])
        self.max_active_total = max(self.max_active_total, sum(self._active.values()))
        try:
            if self.install_delay:
                await asyncio.sleep(self.install_delay)
            else:
                await asyncio.sleep(0)
        finally:
            self._active[serial] -= 1

        failure = self.install_failures.get((serial, name))
        if failure:
            return InstallResult(success=False, reason=failure)
        package_id = Path(apk_path).stem
        if (serial, package_id) not in self.unverified:
            self.installed.setdefault(serial, set()).add(package_id)
        return InstallResult(success=True, output="Performing Streamed Install\nSuccess")

    async def list_installed_packages(self, serial: str) -> Set[str]:
        self.calls.append(("list_installed_packages", serial))
        if serial not in self.installed:
            raise BridgeCommandError(f"device {serial} not found")
        return set(self.installed[serial])

    def contacted(self, serial: str) -> bool:
        return any(s == serial for _op, s in self.calls)


@pytest.fixture
def fake_bridge_factory():
    return FakeBridge


@pytest.fixture
def three_device_bridge():
    """Three healthy devices on Android 14."""
    return FakeBridge(serials=["emulator-5554", "R5CT123ABCD", "192.168.1.100:5555"])


@pytest.fixture
def run_config(tmp_path):
    """Non-interactive config logging into the temp dir."""
    return RunConfig(log_file=tmp_path / "deployment.log", assume_yes=True)


@pytest.fixture
def make_device():
    """Factory: Device with a predictable model name."""

    def _make(serial: str, version: Optional[str] = None) -> Device:
        return Device(serial=serial, model=f"Model-{serial}", os_version=version)

    return _make


@pytest.fixture
def make_package(tmp_path):
    """Factory: Package whose file stem is its application id."""

    def _make(package_id: str) -> Package:
        return Package(path=tmp_path / f"{package_id}.apk", package_id=package_id)

    return _make
