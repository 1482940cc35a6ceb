"""
Data model shared by every stage of a deployment run.

Devices and packages are immutable snapshots; stages that learn something
new about a device (its Android version, battery, storage) hand back a new
``Device`` built with ``dataclasses.replace`` instead of mutating the one
they were given.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional


# ===================================================================
# ENUMS
# ===================================================================

class OutcomeStatus(str, Enum):
    """Terminal state of a single (device, package) task."""
    SUCCESS = "success"
    INSTALL_FAILED = "install_failed"
    VERIFICATION_FAILED = "verification_failed"
    SKIPPED = "skipped"


FAILED_STATUSES = frozenset({
    OutcomeStatus.INSTALL_FAILED,
    OutcomeStatus.VERIFICATION_FAILED,
})


# ===================================================================
# DATA CLASSES
# ===================================================================

@dataclass(frozen=True)
class Device:
    """A device reported by ``adb devices``."""
    serial: str
    model: str = ""
    state: str = "device"
    os_version: Optional[str] = None
    battery_level: Optional[int] = None
    free_storage_kb: Optional[int] = None

    @property
    def label(self) -> str:
        return f"{self.serial} ({self.model})" if self.model else self.serial

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class Package:
    """An APK on the host plus the application id declared in its manifest."""
    path: Path
    package_id: str

    @property
    def name(self) -> str:
        return self.path.name


@dataclass(frozen=True)
class DeploymentTask:
    """One unit of work: install *package* on *device*, then verify it."""
    device: Device
    package: Package


@dataclass
class Outcome:
    """Result of one deployment task."""
    device_serial: str
    package_id: str
    status: OutcomeStatus
    package_path: str = ""
    reason: str = ""
    attempts: int = 0
    duration_ms: float = 0.0
    aborted_run: bool = False

    def __post_init__(self) -> None:
        if isinstance(self.status, str):
            self.status = OutcomeStatus(self.status)

    @property
    def failed(self) -> bool:
        return self.status in FAILED_STATUSES

    @property
    def skipped(self) -> bool:
        return self.status == OutcomeStatus.SKIPPED

    @property
    def succeeded(self) -> bool:
        return self.status == OutcomeStatus.SUCCESS

    def to_dict(self) -> dict:
        d = asdict(self)
        d["status"] = self.status.value
        return d

    @classmethod
    def skipped_for(cls, task: DeploymentTask, reason: str) -> Outcome:
        return cls(
            device_serial=task.device.serial,
            package_id=task.package.package_id,
            package_path=str(task.package.path),
            status=OutcomeStatus.SKIPPED,
            reason=reason,
        )


@dataclass(frozen=True)
class HealthReport:
    """Battery/storage readings for a device and the eligibility verdict."""
    serial: str
    eligible: bool
    battery_level: Optional[int] = None
    free_storage_kb: Optional[int] = None
    reason: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class DeploymentRun:
    """Everything the orchestrator produced for one run."""
    outcomes: List[Outcome] = field(default_factory=list)
    total_tasks: int = 0
    aborted: bool = False

    @property
    def not_scheduled(self) -> int:
        return max(0, self.total_tasks - len(self.outcomes))

    @property
    def abort_marker(self) -> Optional[Outcome]:
        for outcome in self.outcomes:
            if outcome.aborted_run:
                return outcome
        return None


@dataclass
class DeploymentSummary:
    """Aggregated counts over a run's outcomes."""
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    aborted: bool = False
    not_scheduled: int = 0

    @property
    def total(self) -> int:
        return self.succeeded + self.failed + self.skipped

    @property
    def ok(self) -> bool:
        return self.failed == 0 and not self.aborted

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["ok"] = self.ok
        return d
