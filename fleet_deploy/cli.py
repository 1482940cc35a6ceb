"""
Command-line entry point.

    fleet-deploy [-v] [-c] [-l LOGFILE] [-f FILTER] [--list] [-y] APK [APK ...]

Examples:
    fleet-deploy app-release.apk
    fleet-deploy -v -c -f 10+ app.apk companion.apk
    fleet-deploy --list
    ADB_PATH=/opt/android/platform-tools/adb fleet-deploy -y app.apk

Exit status: 0 when every task succeeded (or ``--list``), 1 on a fatal
condition or any failed task, 2 on invalid arguments.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from fleet_deploy import __version__
from fleet_deploy.adb_bridge import BridgeError
from fleet_deploy.config import (
    AAPT_PATH,
    ADB_PATH,
    DEFAULT_BATTERY_FLOOR,
    DEFAULT_COMMAND_TIMEOUT,
    DEFAULT_INSTALL_RETRIES,
    DEFAULT_INSTALL_TIMEOUT,
    DEFAULT_LOG_FILE,
    DEFAULT_MAX_PARALLEL_DEVICES,
    DEFAULT_RETRY_BASE_DELAY,
    DEFAULT_STORAGE_FLOOR_KB,
    RunConfig,
)
from fleet_deploy.device_filter import VersionPattern
from fleet_deploy.log_setup import configure_logging
from fleet_deploy.models import Device
from fleet_deploy.packages import PackageError
from fleet_deploy.pipeline import DeploymentPipeline, FatalDeploymentError
from fleet_deploy.reporter import OutcomeReporter, format_table

logger = logging.getLogger("fleet_deploy.cli")

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fleet-deploy",
        description="Deploy Android APKs to every connected adb device.",
    )
    parser.add_argument("apks", nargs="*", metavar="APK", help="APK file(s) to install")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Echo log lines to stdout")
    parser.add_argument("-c", "--continue-on-failure", action="store_true",
                        help="Keep deploying when an installation fails on a device")
    parser.add_argument("-l", "--log-file", default=DEFAULT_LOG_FILE,
                        help=f"Log file (default: {DEFAULT_LOG_FILE})")
    parser.add_argument("-f", "--filter", default="",
                        help="Only deploy to devices with this Android version "
                             "(e.g. '9', '8.1', '10+')")
    parser.add_argument("--list", action="store_true",
                        help="List connected devices and exit without installing")
    parser.add_argument("-y", "--yes", action="store_true",
                        help="Do not ask for confirmation")
    parser.add_argument("--battery-floor", type=int, default=DEFAULT_BATTERY_FLOOR,
                        help=f"Minimum battery percent (default: {DEFAULT_BATTERY_FLOOR})")
    parser.add_argument("--storage-floor-kb", type=int, default=DEFAULT_STORAGE_FLOOR_KB,
                        help=f"Minimum free storage in KB (default: {DEFAULT_STORAGE_FLOOR_KB})")
    parser.add_argument("--timeout", type=float, default=DEFAULT_COMMAND_TIMEOUT,
                        help=f"Timeout in seconds for adb queries (default: {DEFAULT_COMMAND_TIMEOUT:.0f})")
    parser.add_argument("--install-timeout", type=float, default=DEFAULT_INSTALL_TIMEOUT,
                        help=f"Timeout in seconds for one install (default: {DEFAULT_INSTALL_TIMEOUT:.0f})")
    parser.add_argument("--max-parallel", type=int, default=DEFAULT_MAX_PARALLEL_DEVICES,
                        help=f"Devices deployed to at once (default: {DEFAULT_MAX_PARALLEL_DEVICES})")
    parser.add_argument("--retries", type=int, default=DEFAULT_INSTALL_RETRIES,
                        help="Retries per failed install (default: 0)")
    parser.add_argument("--retry-delay", type=float, default=DEFAULT_RETRY_BASE_DELAY,
                        help=f"Base retry delay in seconds, doubled per retry (default: {DEFAULT_RETRY_BASE_DELAY})")
    parser.add_argument("--adb", default=ADB_PATH, help="Path to adb (env: ADB_PATH)")
    parser.add_argument("--aapt", default=AAPT_PATH, help="Path to aapt (env: AAPT_PATH)")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def _format_devices(devices: List[Device]) -> str:
    headers = ["Serial", "Model", "Android", "Battery", "Free storage"]
    rows = []
    for d in devices:
        rows.append([
            d.serial,
            d.model or "-",
            d.os_version or "?",
            f"{d.battery_level}%" if d.battery_level is not None else "?",
            f"{d.free_storage_kb // 1024} MB" if d.free_storage_kb is not None else "?",
        ])
    return format_table(headers, rows)


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point. Returns the process exit status."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = RunConfig.from_args(args)
        if config.version_filter:
            VersionPattern.parse(config.version_filter)
    except ValueError as exc:
        parser.error(str(exc))

    configure_logging(config.log_file, verbose=config.verbose)
    pipeline = DeploymentPipeline(config, args.apks)

    try:
        if config.list_only:
            devices = asyncio.run(pipeline.list_devices())
            print(f"\n  Connected devices  --  {len(devices)}\n")
            print(_format_devices(devices))
            print()
            return EXIT_OK

        result = asyncio.run(pipeline.run())
    except (BridgeError, PackageError, FatalDeploymentError) as exc:
        logger.error("%s", exc)
        if not config.verbose:
            print(f"error: {exc}", file=sys.stderr)
        print(f"See log file: {config.log_file}")
        return EXIT_FAILURE
    except KeyboardInterrupt:
        logger.error("Interrupted.")
        return EXIT_INTERRUPTED

    summary = result.summary
    print()
    print(OutcomeReporter.render_table(result.outcomes))
    print(
        f"\n{summary.succeeded} succeeded, {summary.failed} failed, {summary.skipped} skipped"
        + (f", {summary.not_scheduled} not scheduled" if summary.not_scheduled else "")
    )
    if not summary.ok:
        logger.error("Deployment failed. Check log file: %s", config.log_file)
    print(f"See log file: {config.log_file}")
    return EXIT_OK if summary.ok else EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
