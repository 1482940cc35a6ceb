"""
ADB device bridge.

Thin async wrapper around the ``adb`` command-line tool. Every call runs
as a subprocess with a bounded timeout; a call that overruns is killed and
reported as ``BridgeTimeoutError`` so a single hung device can never stall
a run.

Usage:
    from fleet_deploy.adb_bridge import AdbBridge

    bridge = AdbBridge(adb_path="adb", timeout=30)
    bridge.ensure_available()
    devices = await bridge.list_devices()
    version = await bridge.get_property(devices[0].serial, "ro.build.version.release")
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Protocol, Sequence, Set

from fleet_deploy.config import ADB_PATH, DEFAULT_COMMAND_TIMEOUT, DEFAULT_INSTALL_TIMEOUT
from fleet_deploy.models import Device

logger = logging.getLogger("fleet_deploy.adb_bridge")

VERSION_PROPERTY = "ro.build.version.release"

_FAILURE_RE = re.compile(r"Failure\s*\[([^\]]+)\]")
_BATTERY_LEVEL_RE = re.compile(r"^\s*level:\s*(\d+)\s*$", re.MULTILINE)
_SIZE_RE = re.compile(r"^(\d+(?:\.\d+)?)([KMGT]?)$", re.IGNORECASE)
_SIZE_MULTIPLIERS_KB = {"": 1, "K": 1, "M": 1024, "G": 1024 ** 2, "T": 1024 ** 3}


# ===================================================================
# ERRORS
# ===================================================================

class BridgeError(Exception):
    """A device-bridge call failed."""


class BridgeUnavailableError(BridgeError):
    """The adb binary is not installed or not on PATH."""


class BridgeTimeoutError(BridgeError):
    """An adb call did not finish within its timeout and was killed."""


class BridgeCommandError(BridgeError):
    """adb ran but returned an error or output that could not be parsed."""


# ===================================================================
# DATA CLASSES
# ===================================================================

@dataclass(frozen=True)
class CommandResult:
    """Exit status and decoded output of one adb invocation."""
    returncode: int
    stdout: str
    stderr: str

    @property
    def output(self) -> str:
        return (self.stdout + "\n" + self.stderr).strip()


@dataclass(frozen=True)
class InstallResult:
    """Outcome of ``adb install``."""
    success: bool
    reason: str = ""
    output: str = ""


# ===================================================================
# PROTOCOL
# ===================================================================

class DeviceBridge(Protocol):
    """Operations the deployment pipeline needs from a device bridge."""

    def ensure_available(self) -> None: ...

    async def list_devices(self) -> List[Device]: ...

    async def get_property(self, serial: str, key: str) -> str: ...

    async def install(self, serial: str, apk_path: Path) -> InstallResult: ...

    async def list_installed_packages(self, serial: str) -> Set[str]: ...

    async def read_battery(self, serial: str) -> int: ...

    async def read_free_storage(self, serial: str) -> int: ...


# ===================================================================
# OUTPUT PARSERS
# ===================================================================

def parse_devices_output(output: str) -> List[Device]:
    """
    Parse ``adb devices -l`` output.

    Lines look like:
        emulator-5554    device  product:sdk_gphone64_x86_64 model:sdk_gphone64 ...
        R5CT123ABCD      unauthorized usb:1-1 transport_id:3

    Every listed device is returned, whatever its state.
    """
    devices: List[Device] = []
    for line in output.strip().splitlines():
        line = line.strip()
        if not line or line.startswith("List of devices") or line.startswith("*"):
            continue

        parts = line.split()
        if len(parts) < 2:
            continue

        model = ""
        for p in parts[2:]:
            if p.startswith("model:"):
                model = p.split(":", 1)[1]
                break

        devices.append(Device(serial=parts[0], state=parts[1], model=model))
    return devices


def parse_install_output(returncode: int, output: str) -> InstallResult:
    """Decide whether ``adb install`` succeeded and extract the failure reason."""
    failure = _FAILURE_RE.search(output)
    if failure:
        return InstallResult(success=False, reason=failure.group(1), output=output)

    succeeded = any(line.strip() == "Success" for line in output.splitlines())
    if returncode == 0 and succeeded:
        return InstallResult(success=True, output=output)

    lines = [ln.strip() for ln in output.splitlines() if ln.strip()]
    reason = lines[-1] if lines else f"adb install exited with status {returncode}"
    return InstallResult(success=False, reason=reason, output=output)


def parse_package_list(output: str) -> Set[str]:
    """Parse ``pm list packages`` output into a set of application ids."""
    packages: Set[str] = set()
    for line in output.splitlines():
        line = line.strip()
        if line.startswith("package:"):
            name = line[len("package:"):]
            # ``pm list packages -f`` prints package:/path/base.apk=com.example
            if "=" in name:
                name = name.rsplit("=", 1)[1]
            if name:
                packages.add(name)
    return packages


def parse_battery_level(output: str) -> int:
    """Extract the ``level:`` value from ``dumpsys battery``."""
    match = _BATTERY_LEVEL_RE.search(output)
    if not match:
        raise BridgeCommandError("battery level not found in dumpsys output")
    level = int(match.group(1))
    if not 0 <= level <= 100:
        raise BridgeCommandError(f"battery level out of range: {level}")
    return level


def _size_to_kb(value: str, unit_is_kb: bool) -> int:
    match = _SIZE_RE.match(value)
    if not match:
        raise BridgeCommandError(f"unrecognised size value: {value!r}")
    number, suffix = match.group(1), match.group(2).upper()
    if not suffix and not unit_is_kb and "." in number:
        raise BridgeCommandError(f"ambiguous size value: {value!r}")
    return int(float(number) * _SIZE_MULTIPLIERS_KB[suffix])


def parse_df_available_kb(output: str) -> int:
    """
    Extract free space (KB) for the filesystem reported by ``df /data``.

    Handles the toybox layout::

        Filesystem     1K-blocks    Used Available Use% Mounted on
        /dev/block/dm-5 115276852 20000000 95276852  18% /data

    and the older toolbox layout with human-readable sizes::

        Filesystem   Size   Used   Free   Blksize
        /data       12.1G   5.2G   6.9G   4096
    """
    lines = [ln for ln in output.strip().splitlines() if ln.strip()]
    if len(lines) < 2:
        raise BridgeCommandError("df output has no data line")

    header = lines[0].replace("Mounted on", "Mounted_on").split()
    column = None
    for name in ("Available", "Avail", "Free"):
        if name in header:
            column = header.index(name)
            break
    if column is None:
        raise BridgeCommandError(f"df header has no free-space column: {lines[0]!r}")

    # Long filesystem names make df wrap a row onto two lines.
    tokens = " ".join(lines[1:]).split()
    from_end = len(header) - column
    if len(tokens) < from_end:
        raise BridgeCommandError("df data line is truncated")

    unit_is_kb = any(h.lower() == "1k-blocks" for h in header)
    return _size_to_kb(tokens[-from_end], unit_is_kb)


# ===================================================================
# ADB BRIDGE
# ===================================================================

class AdbBridge:
    """
    DeviceBridge backed by the ``adb`` binary.

    *timeout* bounds every query; *install_timeout* bounds ``adb install``,
    which legitimately takes longer for large packages.
    """

    def __init__(
        self,
        adb_path: str = ADB_PATH,
        timeout: float = DEFAULT_COMMAND_TIMEOUT,
        install_timeout: float = DEFAULT_INSTALL_TIMEOUT,
    ) -> None:
        self.adb_path = adb_path
        self.timeout = timeout
        self.install_timeout = install_timeout

    # ------------------------------------------------------------------
    # Low-level execution
    # ------------------------------------------------------------------

    def ensure_available(self) -> None:
        """Raise BridgeUnavailableError when the adb binary cannot be found."""
        if shutil.which(self.adb_path) is None and not (
            os.path.isfile(self.adb_path) and os.access(self.adb_path, os.X_OK)
        ):
            raise BridgeUnavailableError(
                f"adb command not found ('{self.adb_path}'). "
                "Please ensure the Android SDK platform-tools are installed and on PATH, "
                "or set ADB_PATH."
            )

    async def run(self, args: Sequence[str], timeout: Optional[float] = None) -> CommandResult:
        """Run ``adb *args`` and return its exit status and output."""
        timeout = self.timeout if timeout is None else timeout
        try:
            proc = await asyncio.create_subprocess_exec(
                self.adb_path, *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BridgeUnavailableError(f"adb binary not found at '{self.adb_path}'") from exc

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
            raise BridgeTimeoutError(
                f"adb {' '.join(args)} timed out after {timeout:.0f}s"
            ) from None

        return CommandResult(
            returncode=proc.returncode if proc.returncode is not None else 0,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )

    async def shell(self, serial: str, *command: str, timeout: Optional[float] = None) -> str:
        """Run a shell command on *serial*; raise BridgeCommandError on non-zero exit."""
        result = await self.run(["-s", serial, "shell", *command], timeout=timeout)
        if result.returncode != 0:
            raise BridgeCommandError(
                f"'{' '.join(command)}' failed on {serial} "
                f"(exit {result.returncode}): {result.output[:200]}"
            )
        return result.stdout

    # ------------------------------------------------------------------
    # DeviceBridge operations
    # ------------------------------------------------------------------

    async def list_devices(self) -> List[Device]:
        """
        Run ``adb devices -l`` and return the devices that are ready
        (state ``device``). Unauthorized or offline devices are logged and
        left out.
        """
        result = await self.run(["devices", "-l"])
        if result.returncode != 0:
            raise BridgeCommandError(f"adb devices failed: {result.output[:200]}")

        ready: List[Device] = []
        for device in parse_devices_output(result.stdout):
            if device.state != "device":
                logger.warning("Ignoring device %s (state=%s)", device.serial, device.state)
                continue
            ready.append(device)
        logger.debug("adb reported %d ready device(s)", len(ready))
        return ready

    async def get_property(self, serial: str, key: str) -> str:
        out = await self.shell(serial, "getprop", key)
        value = out.strip()
        if not value:
            raise BridgeCommandError(f"property {key} is empty on {serial}")
        return value

    async def install(self, serial: str, apk_path: Path) -> InstallResult:
        """``adb -s SERIAL install -r APK`` (reinstall keeps app data)."""
        result = await self.run(
            ["-s", serial, "install", "-r", str(apk_path)],
            timeout=self.install_timeout,
        )
        install = parse_install_output(result.returncode, result.output)
        logger.debug("adb install %s on %s:\n%s", apk_path, serial, result.output)
        return install

    async def list_installed_packages(self, serial: str) -> Set[str]:
        out = await self.shell(serial, "pm", "list", "packages")
        return parse_package_list(out)

    async def read_battery(self, serial: str) -> int:
        out = await self.shell(serial, "dumpsys", "battery")
        return parse_battery_level(out)

    async def read_free_storage(self, serial: str) -> int:
        out = await self.shell(serial, "df", "/data")
        return parse_df_available_kb(out)
