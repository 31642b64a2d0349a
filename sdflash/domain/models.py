"""Domain model for a flashing session.

Type-safe objects passed between the storage helpers and the session
controller, instead of raw paths and tuples.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional


# ==============================================================================
# Target Device Domain
# ==============================================================================


@dataclass(frozen=True)
class TargetDevice:
    """A block device selected by the operator.

    Resolved once at session start; only inspected and repartitioned.
    """

    path: str  # e.g., "/dev/sdb" (symlinks resolved)
    requested_path: str = ""  # As typed on the command line
    mounted_partitions: tuple[tuple[str, str], ...] = ()  # (device, mountpoint)
    sensitive: bool = False
    sensitive_reasons: tuple[str, ...] = ()

    @property
    def is_mounted(self) -> bool:
        return bool(self.mounted_partitions)

    @property
    def mountpoints(self) -> list[str]:
        return [mountpoint for _device, mountpoint in self.mounted_partitions]


# ==============================================================================
# Partition Domain
# ==============================================================================


@dataclass(frozen=True)
class PartitionPlan:
    """The single partition written to a fresh DOS partition table."""

    device: str
    size: str = "+64M"  # Size expression, kept verbatim
    type_code: str = "e"
    bootable: bool = True
    number: int = 1


# ==============================================================================
# Payload Domain
# ==============================================================================


@dataclass(frozen=True)
class PayloadArtifact:
    """A prebuilt bootloader image and the name it gets on the boot partition."""

    role: str  # "first-stage" or "main"
    source: Path
    destination_name: str

    def destination(self, mount_path: Path) -> Path:
        return Path(mount_path) / self.destination_name


@dataclass(frozen=True)
class MountSession:
    """A new partition mounted on a private temporary directory."""

    partition: str
    path: Path


# ==============================================================================
# Session Domain
# ==============================================================================


class SessionState(Enum):
    """States of a flashing session, in the order they are reached."""

    START = "start"
    PRECONDITIONS_CHECKED = "preconditions_checked"
    DEVICE_VALIDATED = "device_validated"
    USER_CONFIRMED = "user_confirmed"
    PARTITIONED = "partitioned"
    PROVISIONED = "provisioned"
    PAYLOAD_INSTALLED = "payload_installed"
    CLEANED_UP = "cleaned_up"
    DONE = "done"
    FAILED = "failed"


@dataclass
class SessionResult:
    """Outcome of FlashSession.run()."""

    state: SessionState
    exit_code: int
    cancelled: bool = False
    error: Optional[Exception] = None
    history: list[SessionState] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.state is SessionState.DONE and not self.cancelled
