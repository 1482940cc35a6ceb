"""
APK resolution.

Turns the paths given on the command line into ``Package`` values: checks
that each file exists and reads the application id from the APK's binary
``AndroidManifest.xml``. When the manifest cannot be decoded and ``aapt``
is installed, ``aapt dump badging`` is used instead.

The application id is what post-install verification looks for in
``pm list packages``.
"""

from __future__ import annotations

import logging
import re
import shutil
import struct
import subprocess
import zipfile
from pathlib import Path
from typing import Iterable, List, Optional

from fleet_deploy.config import AAPT_PATH
from fleet_deploy.models import Package

logger = logging.getLogger("fleet_deploy.packages")

MANIFEST_NAME = "AndroidManifest.xml"
AAPT_TIMEOUT = 60

# Binary XML chunk types
RES_STRING_POOL_TYPE = 0x0001
RES_XML_TYPE = 0x0003
RES_XML_START_ELEMENT_TYPE = 0x0102

UTF8_FLAG = 1 << 8
TYPE_STRING = 0x03
NO_INDEX = 0xFFFFFFFF

_AAPT_PACKAGE_RE = re.compile(r"^package:\s*name='([^']+)'", re.MULTILINE)


class PackageError(Exception):
    """A package path is missing or its application id cannot be read."""


# ===================================================================
# BINARY MANIFEST
# ===================================================================

def _read_length8(data: bytes, pos: int):
    n = data[pos]
    if n & 0x80:
        return ((n & 0x7F) << 8) | data[pos + 1], pos + 2
    return n, pos + 1


def _read_length16(data: bytes, pos: int):
    n = struct.unpack_from("<H", data, pos)[0]
    if n & 0x8000:
        low = struct.unpack_from("<H", data, pos + 2)[0]
        return ((n & 0x7FFF) << 16) | low, pos + 4
    return n, pos + 2


def _read_string_pool(data: bytes, offset: int) -> List[str]:
    (_type, header_size, _size, count, _styles,
     flags, strings_start, _styles_start) = struct.unpack_from("<HHIIIIII", data, offset)
    utf8 = bool(flags & UTF8_FLAG)
    offsets = struct.unpack_from(f"<{count}I", data, offset + header_size)
    base = offset + strings_start

    strings: List[str] = []
    for rel in offsets:
        pos = base + rel
        if utf8:
            _chars, pos = _read_length8(data, pos)
            nbytes, pos = _read_length8(data, pos)
            strings.append(data[pos:pos + nbytes].decode("utf-8", errors="replace"))
        else:
            nchars, pos = _read_length16(data, pos)
            strings.append(data[pos:pos + 2 * nchars].decode("utf-16-le", errors="replace"))
    return strings


def _lookup(strings: List[str], index: int) -> Optional[str]:
    if index == NO_INDEX or index >= len(strings):
        return None
    return strings[index]


def read_manifest_package(data: bytes) -> str:
    """Return the ``package`` attribute of the ``<manifest>`` element in a binary XML document."""
    try:
        xml_type, header_size, _total = struct.unpack_from("<HHI", data, 0)
        if xml_type != RES_XML_TYPE:
            raise PackageError("manifest is not a binary XML document")

        strings: List[str] = []
        offset = header_size
        while offset + 8 <= len(data):
            chunk_type, chunk_header, chunk_size = struct.unpack_from("<HHI", data, offset)
            if chunk_size < 8:
                raise PackageError(f"corrupt chunk at offset {offset}")

            if chunk_type == RES_STRING_POOL_TYPE:
                strings = _read_string_pool(data, offset)
            elif chunk_type == RES_XML_START_ELEMENT_TYPE:
                ext = offset + chunk_header
                _ns, name_idx, attr_start, attr_size, attr_count = struct.unpack_from(
                    "<IIHHH", data, ext
                )
                if _lookup(strings, name_idx) == "manifest":
                    for i in range(attr_count):
                        pos = ext + attr_start + i * attr_size
                        (_a_ns, a_name, a_raw, _vsize, _res0,
                         data_type, a_data) = struct.unpack_from("<IIIHBBI", data, pos)
                        if _lookup(strings, a_name) != "package":
                            continue
                        value = _lookup(strings, a_raw)
                        if value is None and data_type == TYPE_STRING:
                            value = _lookup(strings, a_data)
                        if value:
                            return value
                    raise PackageError("<manifest> has no package attribute")

            offset += chunk_size
    except (struct.error, IndexError) as exc:
        raise PackageError(f"truncated binary manifest: {exc}") from exc

    raise PackageError("no <manifest> element found")


def package_id_from_apk(apk_path: Path) -> str:
    """Read the application id from the APK's AndroidManifest.xml."""
    try:
        with zipfile.ZipFile(apk_path) as zf:
            data = zf.read(MANIFEST_NAME)
    except zipfile.BadZipFile as exc:
        raise PackageError(f"{apk_path} is not a valid APK (zip) archive") from exc
    except KeyError as exc:
        raise PackageError(f"{apk_path} has no {MANIFEST_NAME}") from exc
    return read_manifest_package(data)


# ===================================================================
# AAPT
# ===================================================================

def package_id_from_aapt(apk_path: Path, aapt_path: str = AAPT_PATH) -> str:
    """Read the application id with ``aapt dump badging``."""
    try:
        proc = subprocess.run(
            [aapt_path, "dump", "badging", str(apk_path)],
            capture_output=True,
            text=True,
            timeout=AAPT_TIMEOUT,
        )
    except FileNotFoundError as exc:
        raise PackageError(f"aapt not found at '{aapt_path}'") from exc
    except subprocess.TimeoutExpired as exc:
        raise PackageError(f"aapt timed out reading {apk_path}") from exc

    match = _AAPT_PACKAGE_RE.search(proc.stdout)
    if proc.returncode != 0 or not match:
        raise PackageError(
            f"aapt could not read {apk_path}: {(proc.stderr or proc.stdout).strip()[:200]}"
        )
    return match.group(1)


# ===================================================================
# RESOLUTION
# ===================================================================

def resolve_package(path: str | Path, aapt_path: str = AAPT_PATH) -> Package:
    """Resolve one APK path to a Package, failing fast if it does not exist."""
    apk = Path(path).expanduser()
    if not apk.exists():
        raise PackageError(f"APK file not found: {apk}")
    if not apk.is_file():
        raise PackageError(f"APK path is not a file: {apk}")
    apk = apk.resolve()

    try:
        package_id = package_id_from_apk(apk)
    except PackageError as exc:
        if shutil.which(aapt_path) is None:
            raise
        logger.debug("Manifest decode failed for %s (%s); trying aapt", apk, exc)
        package_id = package_id_from_aapt(apk, aapt_path)

    logger.debug("Resolved %s -> %s", apk, package_id)
    return Package(path=apk, package_id=package_id)


def resolve_packages(paths: Iterable[str | Path], aapt_path: str = AAPT_PATH) -> List[Package]:
    """
    Resolve every path, in order. Duplicate paths are dropped.

    Raises PackageError when no path is given or any path is unusable.
    """
    packages: List[Package] = []
    seen = set()
    for path in paths:
        package = resolve_package(path, aapt_path)
        if package.path in seen:
            logger.warning("Ignoring duplicate package %s", package.path)
            continue
        seen.add(package.path)
        packages.append(package)

    if not packages:
        raise PackageError("No APK files supplied.")
    return packages
