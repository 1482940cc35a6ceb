"""
Run configuration.

A ``RunConfig`` is built once from the command line (falling back to the
environment for tool paths and the log file) and then handed, read-only,
to every stage of the pipeline.
"""

from __future__ import annotations

import argparse
import os
from dataclasses import dataclass, replace
from pathlib import Path

# ---------------------------------------------------------------------------
# Defaults & environment
# ---------------------------------------------------------------------------

# Tool binaries
ADB_PATH = os.getenv("ADB_PATH", "adb")
AAPT_PATH = os.getenv("AAPT_PATH", "aapt")

DEFAULT_LOG_FILE = os.getenv("FLEET_DEPLOY_LOG", "deployment.log")

# Health floors (inclusive)
DEFAULT_BATTERY_FLOOR = 20
DEFAULT_STORAGE_FLOOR_KB = 1_048_576  # 1 GiB

# Per-call timeouts (seconds)
DEFAULT_COMMAND_TIMEOUT = 30.0
DEFAULT_INSTALL_TIMEOUT = 300.0

# Maximum devices deployed to at once
DEFAULT_MAX_PARALLEL_DEVICES = 8

# Install retry policy (0 = no retries)
DEFAULT_INSTALL_RETRIES = 0
DEFAULT_RETRY_BASE_DELAY = 2.0


@dataclass(frozen=True)
class RunConfig:
    """Immutable snapshot of everything a run needs to know."""
    verbose: bool = False
    continue_on_failure: bool = False
    version_filter: str = ""
    log_file: Path = Path(DEFAULT_LOG_FILE)
    list_only: bool = False
    assume_yes: bool = False
    battery_floor: int = DEFAULT_BATTERY_FLOOR
    storage_floor_kb: int = DEFAULT_STORAGE_FLOOR_KB
    adb_path: str = ADB_PATH
    aapt_path: str = AAPT_PATH
    command_timeout: float = DEFAULT_COMMAND_TIMEOUT
    install_timeout: float = DEFAULT_INSTALL_TIMEOUT
    max_parallel_devices: int = DEFAULT_MAX_PARALLEL_DEVICES
    install_retries: int = DEFAULT_INSTALL_RETRIES
    retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY

    def __post_init__(self) -> None:
        if not 0 <= self.battery_floor <= 100:
            raise ValueError(f"battery floor must be 0-100, got {self.battery_floor}")
        if self.storage_floor_kb < 0:
            raise ValueError(f"storage floor must be >= 0, got {self.storage_floor_kb}")
        if self.command_timeout <= 0 or self.install_timeout <= 0:
            raise ValueError("timeouts must be positive")
        if self.max_parallel_devices < 1:
            raise ValueError(f"max parallel devices must be >= 1, got {self.max_parallel_devices}")
        if self.install_retries < 0:
            raise ValueError(f"install retries must be >= 0, got {self.install_retries}")

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> RunConfig:
        """Build a config from parsed CLI arguments."""
        return cls(
            verbose=args.verbose,
            continue_on_failure=args.continue_on_failure,
            version_filter=(args.filter or "").strip(),
            log_file=Path(args.log_file),
            list_only=args.list,
            assume_yes=args.yes,
            battery_floor=args.battery_floor,
            storage_floor_kb=args.storage_floor_kb,
            adb_path=args.adb,
            aapt_path=args.aapt,
            command_timeout=args.timeout,
            install_timeout=args.install_timeout,
            max_parallel_devices=args.max_parallel,
            install_retries=args.retries,
            retry_base_delay=args.retry_delay,
        )

    def with_continue_on_failure(self, value: bool = True) -> RunConfig:
        return replace(self, continue_on_failure=value)
