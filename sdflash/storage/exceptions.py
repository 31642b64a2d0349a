"""Custom exceptions for the flashing workflow.

Every fatal condition of a session is a subclass of FlashError, so the
session controller can report it and exit nonzero with a single handler.

Exception Hierarchy:
    FlashError (base)
        ├── PreconditionError
        │   ├── MissingArtifactError
        │   └── MissingToolError
        ├── DeviceError
        │   └── NotABlockDeviceError
        ├── InvalidSizeError
        ├── CommandError
        └── DestructiveStepError
            ├── PartitioningFailedError
            ├── PartitionNotReadyError
            ├── FormatFailedError
            ├── LabelFailedError
            ├── MountFailedError
            └── PayloadCopyFailedError

Usage:
    from sdflash.storage.exceptions import NotABlockDeviceError

    if not stat.S_ISBLK(mode):
        raise NotABlockDeviceError(path)
"""

from __future__ import annotations

import shlex
from typing import Sequence


class FlashError(Exception):
    """Base exception for all flashing operations."""


class PreconditionError(FlashError):
    """A required input or utility is missing. Raised before any device access."""


class MissingArtifactError(PreconditionError):
    """A payload image was not found or is not readable."""

    def __init__(self, path: str, role: str = ""):
        self.path = str(path)
        self.role = role
        label = f"{role} image" if role else "Payload image"
        super().__init__(f"{label} not found or unreadable: {self.path}")


class MissingToolError(PreconditionError):
    """A required external utility is not on PATH."""

    def __init__(self, tool: str):
        self.tool = tool
        super().__init__(f"Required tool '{tool}' not found")


class DeviceError(FlashError):
    """Base exception for target device problems."""


class NotABlockDeviceError(DeviceError):
    """Target path does not exist or is not a block special file."""

    def __init__(self, device_path: str):
        self.device_path = device_path
        super().__init__(
            f"Device {device_path} does not exist or is not a block device"
        )


class InvalidSizeError(FlashError):
    """Partition size expression cannot be understood."""

    def __init__(self, expression: str):
        self.expression = expression
        super().__init__(
            f"Invalid partition size '{expression}' (expected e.g. +64M or 131072)"
        )


class CommandError(FlashError):
    """An external command exited with a nonzero status."""

    def __init__(
        self,
        argv: Sequence[str],
        returncode: int,
        stdout: str = "",
        stderr: str = "",
    ):
        self.argv = list(argv)
        self.returncode = returncode
        self.stdout = stdout or ""
        self.stderr = stderr or ""
        message = self.stderr.strip() or self.stdout.strip() or "no output"
        super().__init__(
            f"Command failed ({returncode}): {shlex.join(self.argv)}: {message}"
        )


class DestructiveStepError(FlashError):
    """A step that mutates the device failed. Never retried."""

    def __init__(self, message: str, device: str | None = None):
        self.device = device
        super().__init__(message)


class PartitioningFailedError(DestructiveStepError):
    """Writing the partition table or setting the boot flag failed."""


class PartitionNotReadyError(DestructiveStepError):
    """The new partition node did not appear before the timeout."""

    def __init__(self, partition: str, timeout: float):
        self.partition = partition
        self.timeout = timeout
        super().__init__(
            f"Partition {partition} did not appear within {timeout:g}s",
            device=partition,
        )


class FormatFailedError(DestructiveStepError):
    """mkfs failed on the new partition."""


class LabelFailedError(DestructiveStepError):
    """Setting the volume label failed."""


class MountFailedError(DestructiveStepError):
    """Mounting the new partition failed."""


class PayloadCopyFailedError(DestructiveStepError):
    """Copying or verifying a payload image failed."""

    def __init__(self, artifact, reason: str = ""):
        self.artifact = artifact
        message = (
            f"Failed to install {artifact.role} image "
            f"{artifact.source} as {artifact.destination_name}"
        )
        if reason:
            message += f": {reason}"
        super().__init__(message)
