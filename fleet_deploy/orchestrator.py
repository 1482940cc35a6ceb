"""
Deployment Orchestrator -- parallel install-and-verify across devices.

Architecture:
    DeploymentOrchestrator.run(devices, packages)
      |
      +-- one worker per device (bounded by a semaphore)
      |     |
      |     +-- task 1: install -> verify      (serial within a device)
      |     +-- task 2: install -> verify
      |
      +-- shared abort Event + lock-guarded outcome list

Installs on different devices run concurrently; installs on the same device
never overlap because adb cannot run two installs against one device
session. When continue-on-failure is off, the first failed task sets the
abort flag: workers stop picking up new tasks, while anything already
running is left to finish.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import List, Optional, Sequence, Tuple

from fleet_deploy.adb_bridge import BridgeError, DeviceBridge, InstallResult
from fleet_deploy.config import (
    DEFAULT_INSTALL_RETRIES,
    DEFAULT_MAX_PARALLEL_DEVICES,
    DEFAULT_RETRY_BASE_DELAY,
)
from fleet_deploy.models import (
    DeploymentRun,
    DeploymentTask,
    Device,
    Outcome,
    OutcomeStatus,
    Package,
)

logger = logging.getLogger("fleet_deploy.orchestrator")

MAX_RETRY_DELAY = 60.0
RETRY_EXPONENTIAL_BASE = 2.0


class DeploymentOrchestrator:
    """Fans install+verify tasks out over devices and collects their outcomes."""

    def __init__(
        self,
        bridge: DeviceBridge,
        max_parallel_devices: int = DEFAULT_MAX_PARALLEL_DEVICES,
        install_retries: int = DEFAULT_INSTALL_RETRIES,
        retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY,
    ) -> None:
        self._bridge = bridge
        self.max_parallel_devices = max_parallel_devices
        self.install_retries = install_retries
        self.retry_base_delay = retry_base_delay

    # ==================================================================
    # VERIFICATION
    # ==================================================================

    async def verify(self, device: Device, package: Package) -> bool:
        """True iff the package's application id is installed on the device."""
        try:
            installed = await self._bridge.list_installed_packages(device.serial)
        except BridgeError as exc:
            logger.warning("Could not list packages on %s: %s", device.serial, exc)
            return False
        return package.package_id in installed

    # ==================================================================
    # SINGLE TASK
    # ==================================================================

    def _retry_delay(self, attempt: int) -> float:
        """delay = min(base * 2^attempt, MAX_RETRY_DELAY)"""
        delay = self.retry_base_delay * (RETRY_EXPONENTIAL_BASE ** attempt)
        return round(min(delay, MAX_RETRY_DELAY), 3)

    async def _install(self, task: DeploymentTask) -> Tuple[InstallResult, int]:
        """Install with bounded retries. Returns the last result and the attempt count."""
        serial = task.device.serial
        result = InstallResult(success=False, reason="not attempted")
        attempts = 0

        for attempt in range(self.install_retries + 1):
            attempts += 1
            try:
                result = await self._bridge.install(serial, task.package.path)
            except BridgeError as exc:
                result = InstallResult(success=False, reason=str(exc))

            if result.success:
                if attempt > 0:
                    logger.info(
                        "Install of %s on %s succeeded on attempt %d/%d",
                        task.package.name, serial, attempts, self.install_retries + 1,
                    )
                break

            if attempt < self.install_retries:
                delay = self._retry_delay(attempt)
                logger.warning(
                    "Install of %s on %s failed (%s); retry %d/%d in %.1fs",
                    task.package.name, serial, result.reason,
                    attempt + 1, self.install_retries, delay,
                )
                await asyncio.sleep(delay)

        return result, attempts

    async def execute(self, task: DeploymentTask) -> Outcome:
        """Install one package on one device, verify it, and return the outcome."""
        device, package = task.device, task.package
        started = time.monotonic()
        logger.debug("Installing %s on device: %s", package.name, device.serial)

        result, attempts = await self._install(task)

        if not result.success:
            status = OutcomeStatus.INSTALL_FAILED
            reason = result.reason or "install failed"
            logger.error(
                "Error deploying %s to device %s: %s", package.name, device.serial, reason,
            )
        elif await self.verify(device, package):
            status = OutcomeStatus.SUCCESS
            reason = ""
            logger.info("Successfully installed %s on device: %s", package.name, device.serial)
        else:
            status = OutcomeStatus.VERIFICATION_FAILED
            reason = f"{package.package_id} not listed by the package manager after install"
            logger.error(
                "Verification failed for %s on device %s: %s",
                package.name, device.serial, reason,
            )

        return Outcome(
            device_serial=device.serial,
            package_id=package.package_id,
            package_path=str(package.path),
            status=status,
            reason=reason,
            attempts=attempts,
            duration_ms=round((time.monotonic() - started) * 1000, 1),
        )

    # ==================================================================
    # PARALLEL EXECUTION
    # ==================================================================

    async def run(
        self,
        devices: Sequence[Device],
        packages: Sequence[Package],
        continue_on_failure: bool = False,
    ) -> DeploymentRun:
        """
        Deploy every package to every device.

        Returns a DeploymentRun. Without an abort it holds one outcome per
        (device, package) pair. After an abort it holds the outcomes of the
        tasks that ran, one of which is flagged ``aborted_run``.
        """
        per_device: List[List[DeploymentTask]] = [
            [DeploymentTask(device=d, package=p) for p in packages] for d in devices
        ]
        run = DeploymentRun(total_tasks=len(devices) * len(packages))
        if run.total_tasks == 0:
            return run

        abort = asyncio.Event()
        lock = asyncio.Lock()
        semaphore = asyncio.Semaphore(self.max_parallel_devices)

        logger.info(
            "Deploying %d package(s) to %d device(s) (%d tasks)",
            len(packages), len(devices), run.total_tasks,
        )

        async def _record(outcome: Outcome) -> None:
            async with lock:
                if outcome.failed and not continue_on_failure and not abort.is_set():
                    outcome.aborted_run = True
                    abort.set()
                    logger.error(
                        "Deployment failed on %s; not scheduling further tasks.",
                        outcome.device_serial,
                    )
                run.outcomes.append(outcome)

        async def _device_worker(tasks: List[DeploymentTask]) -> None:
            async with semaphore:
                for task in tasks:
                    if abort.is_set():
                        logger.debug(
                            "Abort set; not scheduling %s on %s",
                            task.package.name, task.device.serial,
                        )
                        return
                    outcome = await self.execute(task)
                    await _record(outcome)

        results = await asyncio.gather(
            *[_device_worker(tasks) for tasks in per_device], return_exceptions=True
        )

        first_error: Optional[BaseException] = None
        for r in results:
            if isinstance(r, BaseException):
                logger.error("Device worker crashed: %s", r)
                first_error = first_error or r
        if first_error is not None:
            raise first_error

        run.aborted = abort.is_set()
        return run
