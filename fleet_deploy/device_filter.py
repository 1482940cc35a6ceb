"""
Android version filtering.

Pattern semantics:

    ""        every device is kept, no device is queried
    "9"       component-wise prefix: keeps 9, 9.0, 9.1 -- never 90 or 19
    "8.1"     keeps 8.1, 8.1.0 -- not 8.10
    "10+"     numeric >=: keeps 10, 10.0.1, 11, 14 -- drops 9, 9.1
    "8.1+"    keeps 8.1, 8.2, 9 -- drops 8.0, 7.1.2

Versions whose leading component is not a number (codenames such as
``UpsideDownCake`` on preview builds) are treated as unknown and never
match a non-empty pattern.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, replace
from typing import List, Optional, Sequence, Tuple

from fleet_deploy.adb_bridge import VERSION_PROPERTY, BridgeError, DeviceBridge
from fleet_deploy.models import Device

logger = logging.getLogger("fleet_deploy.device_filter")

_COMPONENT_RE = re.compile(r"^\d+$")


def parse_version(version: Optional[str]) -> Optional[Tuple[int, ...]]:
    """
    Parse the leading dotted numeric components of *version*.

    ``"9"`` -> (9,), ``"10.0.1"`` -> (10, 0, 1), ``"12L"`` -> (12,)
    (trailing non-numeric suffix dropped), ``"Tiramisu"`` -> None.
    """
    if not version:
        return None
    parts: List[int] = []
    for piece in version.strip().split("."):
        match = re.match(r"^(\d+)", piece)
        if not match:
            break
        parts.append(int(match.group(1)))
        if match.group(1) != piece:
            break
    return tuple(parts) if parts else None


@dataclass(frozen=True)
class VersionPattern:
    """A parsed ``--filter`` value."""
    raw: str
    components: Tuple[int, ...]
    at_least: bool

    @classmethod
    def parse(cls, pattern: str) -> VersionPattern:
        raw = pattern.strip()
        at_least = raw.endswith("+")
        body = raw[:-1].strip() if at_least else raw
        pieces = body.split(".") if body else []
        if not pieces or not all(_COMPONENT_RE.match(p) for p in pieces):
            raise ValueError(
                f"Invalid version filter {pattern!r}: expected e.g. '9', '8.1' or '10+'"
            )
        return cls(raw=raw, components=tuple(int(p) for p in pieces), at_least=at_least)

    def matches(self, version: Optional[str]) -> bool:
        parsed = parse_version(version)
        if parsed is None:
            return False
        if self.at_least:
            width = max(len(parsed), len(self.components))
            padded = parsed + (0,) * (width - len(parsed))
            wanted = self.components + (0,) * (width - len(self.components))
            return padded >= wanted
        return parsed[:len(self.components)] == self.components


class DeviceFilter:
    """Keeps the devices whose Android version matches a pattern."""

    def __init__(self, bridge: DeviceBridge) -> None:
        self._bridge = bridge

    async def _with_version(self, device: Device) -> Optional[Device]:
        try:
            version = await self._bridge.get_property(device.serial, VERSION_PROPERTY)
        except BridgeError as exc:
            logger.warning(
                "Could not read Android version of %s, excluding it: %s", device.serial, exc
            )
            return None
        return replace(device, os_version=version)

    async def select(self, devices: Sequence[Device], pattern: str) -> List[Device]:
        """
        Return the devices matching *pattern*, in discovery order.

        An empty pattern returns *devices* unchanged without querying them.
        Matched devices come back with ``os_version`` filled in.
        """
        if not pattern or not pattern.strip():
            return list(devices)

        version_pattern = VersionPattern.parse(pattern)
        logger.info("Filtering devices by Android version: %s", version_pattern.raw)

        enriched = await asyncio.gather(*[self._with_version(d) for d in devices])

        selected: List[Device] = []
        for device in enriched:
            if device is None:
                continue
            if version_pattern.matches(device.os_version):
                selected.append(device)
            else:
                logger.info(
                    "Excluding %s: Android %s does not match '%s'",
                    device.serial, device.os_version, version_pattern.raw,
                )
        return selected
