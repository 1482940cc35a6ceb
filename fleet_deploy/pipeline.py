"""
Deployment Pipeline -- from ``adb devices`` to a summary.

    enumerate -> version filter -> health check -> confirm -> deploy -> report

Everything up to and including the confirmation gate can end the run with
a ``FatalDeploymentError`` (or a bridge/package error); nothing is
installed in that case. After the gate, failures are per-task outcomes.

Usage:
    from fleet_deploy.config import RunConfig
    from fleet_deploy.pipeline import DeploymentPipeline

    config = RunConfig(continue_on_failure=True, version_filter="10+")
    pipeline = DeploymentPipeline(config, ["app-release.apk"])
    result = asyncio.run(pipeline.run())
    print(result.summary.ok)
"""

from __future__ import annotations

import asyncio
import logging
import sys
from dataclasses import dataclass, field, replace
from typing import Callable, List, Optional, Sequence, TextIO, Tuple

from fleet_deploy.adb_bridge import VERSION_PROPERTY, AdbBridge, BridgeError, DeviceBridge
from fleet_deploy.config import RunConfig
from fleet_deploy.device_filter import DeviceFilter
from fleet_deploy.health_checker import HealthChecker
from fleet_deploy.models import (
    DeploymentSummary,
    DeploymentTask,
    Device,
    Outcome,
    Package,
)
from fleet_deploy.orchestrator import DeploymentOrchestrator
from fleet_deploy.packages import resolve_packages
from fleet_deploy.reporter import OutcomeReporter

logger = logging.getLogger("fleet_deploy.pipeline")

_YES = ("y", "yes")


# ===================================================================
# ERRORS
# ===================================================================

class FatalDeploymentError(Exception):
    """The run cannot start; nothing has been installed."""


class NoDevicesError(FatalDeploymentError):
    """adb reports no ready devices."""


class NoEligibleDevicesError(FatalDeploymentError):
    """Every device was removed by the version filter or the health check."""


class DeploymentCancelled(FatalDeploymentError):
    """The user declined the confirmation prompt."""


# ===================================================================
# RESULT
# ===================================================================

@dataclass
class PipelineResult:
    """Summary plus the per-task outcomes it was built from."""
    summary: DeploymentSummary
    outcomes: List[Outcome] = field(default_factory=list)
    devices: List[Device] = field(default_factory=list)
    config: Optional[RunConfig] = None


# ===================================================================
# PIPELINE
# ===================================================================

class DeploymentPipeline:
    """Runs one deployment from a RunConfig and a list of APK paths."""

    def __init__(
        self,
        config: RunConfig,
        package_paths: Sequence[str] = (),
        bridge: Optional[DeviceBridge] = None,
        prompt: Optional[Callable[[str], str]] = None,
        stdin: Optional[TextIO] = None,
        reporter: Optional[OutcomeReporter] = None,
    ) -> None:
        self.config = config
        self.package_paths = list(package_paths)
        self.bridge: DeviceBridge = bridge or AdbBridge(
            adb_path=config.adb_path,
            timeout=config.command_timeout,
            install_timeout=config.install_timeout,
        )
        self._prompt = prompt or input
        self._stdin = stdin
        self.reporter = reporter or OutcomeReporter()
        self.device_filter = DeviceFilter(self.bridge)
        self.health_checker = HealthChecker(
            self.bridge,
            battery_floor=config.battery_floor,
            storage_floor_kb=config.storage_floor_kb,
        )

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def discover(self) -> List[Device]:
        devices = await self.bridge.list_devices()
        if not devices:
            raise NoDevicesError("No devices connected. Please connect a device and try again.")
        logger.info("Found %d connected device(s)", len(devices))
        return devices

    async def select_eligible(
        self, devices: Sequence[Device], packages: Sequence[Package]
    ) -> Tuple[List[Device], List[Outcome]]:
        """
        Apply the version filter and health check.

        Returns the eligible devices and one SKIPPED outcome per package for
        every device that failed its health check.
        """
        selected = await self.device_filter.select(devices, self.config.version_filter)
        if not selected:
            raise NoEligibleDevicesError(
                f"No devices match version filter '{self.config.version_filter}'."
            )

        reports = await self.health_checker.check_all(selected)
        eligible: List[Device] = []
        skipped: List[Outcome] = []
        for device, report in zip(selected, reports):
            if report.eligible:
                eligible.append(HealthChecker.annotate(device, report))
                continue
            for package in packages:
                task = DeploymentTask(device=device, package=package)
                skipped.append(Outcome.skipped_for(task, report.reason))

        if not eligible:
            raise NoEligibleDevicesError("No devices passed the health check.")
        return eligible, skipped

    def is_interactive(self) -> bool:
        if self.config.assume_yes:
            return False
        stdin = self._stdin if self._stdin is not None else sys.stdin
        return stdin is not None and hasattr(stdin, "isatty") and stdin.isatty()

    def _ask(self, question: str) -> bool:
        try:
            answer = self._prompt(question)
        except EOFError:
            return False
        return answer.strip().lower() in _YES

    def confirm(self, devices: Sequence[Device]) -> RunConfig:
        """
        Show the target devices and, when interactive, ask before deploying.

        Returns the config to deploy with; the second prompt can switch on
        continue-on-failure for this run.
        """
        logger.info("This will deploy to the following devices:")
        for device in devices:
            logger.info("  - %s", device.label)

        config = self.config
        if not self.is_interactive():
            return config

        if not self._ask("Are you sure you want to proceed? (y/n): "):
            logger.warning("Aborting...")
            raise DeploymentCancelled("Deployment cancelled by user.")

        if not config.continue_on_failure:
            if self._ask("Continue if installation fails on a device? (y/n): "):
                config = config.with_continue_on_failure(True)
        return config

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def run(self) -> PipelineResult:
        """Run the whole pipeline."""
        self.bridge.ensure_available()
        packages = resolve_packages(self.package_paths, self.config.aapt_path)

        devices = await self.discover()
        eligible, skipped = await self.select_eligible(devices, packages)
        config = self.confirm(eligible)

        logger.info(
            "Starting deployment of %s",
            ", ".join(p.name for p in packages),
        )
        orchestrator = DeploymentOrchestrator(
            self.bridge,
            max_parallel_devices=config.max_parallel_devices,
            install_retries=config.install_retries,
            retry_base_delay=config.retry_base_delay,
        )
        deployment = await orchestrator.run(eligible, packages, config.continue_on_failure)

        outcomes = skipped + deployment.outcomes
        summary = self.reporter.summarize(
            outcomes,
            aborted=deployment.aborted,
            total_tasks=deployment.total_tasks + len(skipped),
        )
        return PipelineResult(summary=summary, outcomes=outcomes, devices=eligible, config=config)

    async def _describe(self, device: Device) -> Device:
        try:
            version = await self.bridge.get_property(device.serial, VERSION_PROPERTY)
        except BridgeError as exc:
            logger.warning("Could not read Android version of %s: %s", device.serial, exc)
            version = None
        report = await self.health_checker.check(device)
        return replace(HealthChecker.annotate(device, report), os_version=version)

    async def list_devices(self) -> List[Device]:
        """Device-list-only mode: enumerate and describe devices, install nothing."""
        self.bridge.ensure_available()
        devices = await self.discover()
        return list(await asyncio.gather(*[self._describe(d) for d in devices]))
