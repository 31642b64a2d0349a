"""Safety validation of the target device.

This module decides whether a path may be flashed at all and whether the
operator must confirm twice:
- The path must resolve to an existing block special file
- Mounted partitions of the device are reported (they are unmounted later)
- Devices that look like the system disk are flagged as sensitive

Sensitive devices are flagged, not rejected. The session controller turns the
flag into an extra confirmation prompt.

Example:
    from sdflash.storage.validation import validate_target_device

    target = validate_target_device("/dev/sdb", ["/dev/sda"])
    if target.sensitive:
        ...
"""

from __future__ import annotations

import fnmatch
import os
import re
import stat
from typing import Iterable

import psutil

from sdflash.domain.models import TargetDevice
from sdflash.logging import LoggerFactory
from sdflash.storage.exceptions import NotABlockDeviceError


log = LoggerFactory.for_storage()

ROOT_MOUNTPOINTS = {"/", "/boot", "/boot/firmware"}

# nvme0n1p1 -> nvme0n1, mmcblk0p1 -> mmcblk0, loop0p1 -> loop0
_P_SUFFIX_PARTITION = re.compile(r"^(/dev/(?:nvme\d+n\d+|mmcblk\d+|loop\d+))p\d+$")
# sda1 -> sda, hdb2 -> hdb, vdc3 -> vdc
_DIGIT_SUFFIX_PARTITION = re.compile(r"^(/dev/(?:sd|hd|vd|xvd)[a-z]+)\d+$")


def resolve_device_path(device_path: str) -> str:
    """Follow symlinks such as /dev/disk/by-id/... to the kernel node."""
    return os.path.realpath(device_path)


def is_block_device(path: str) -> bool:
    try:
        return stat.S_ISBLK(os.stat(path).st_mode)
    except OSError:
        return False


def validate_block_device(device_path: str) -> str:
    """Validate that a path is an existing block device.

    Returns:
        The resolved device path

    Raises:
        NotABlockDeviceError: If the path is missing or not a block device
    """
    if not device_path:
        raise NotABlockDeviceError("(empty path)")
    resolved = resolve_device_path(device_path)
    if not is_block_device(resolved):
        raise NotABlockDeviceError(device_path)
    return resolved


def is_partition_of(device_path: str, candidate: str) -> bool:
    """True if candidate is the device itself or one of its partitions.

    /dev/sdb matches /dev/sdb and /dev/sdb1 but not /dev/sdba.
    /dev/mmcblk0 matches /dev/mmcblk0p1 but not /dev/mmcblk01.
    """
    if candidate == device_path:
        return True
    separator = "p" if device_path[-1:].isdigit() else ""
    return re.fullmatch(re.escape(device_path) + separator + r"\d+", candidate) is not None


def whole_disk_path(device_path: str) -> str:
    """Strip a partition suffix from a device path, if it has one."""
    for pattern in (_P_SUFFIX_PARTITION, _DIGIT_SUFFIX_PARTITION):
        match = pattern.match(device_path)
        if match:
            return match.group(1)
    return device_path


def find_mounted_partitions(device_path: str) -> tuple[tuple[str, str], ...]:
    """List (device, mountpoint) pairs mounted from the device or its partitions."""
    mounted = []
    for partition in psutil.disk_partitions(all=True):
        source = partition.device
        if not source.startswith("/dev/"):
            continue
        if is_partition_of(device_path, resolve_device_path(source)):
            mounted.append((source, partition.mountpoint))
    return tuple(mounted)


def sensitive_reasons(
    device_path: str,
    patterns: Iterable[str],
    mounted: Iterable[tuple[str, str]] = (),
) -> list[str]:
    """Explain why a device needs the extra confirmation, if it does."""
    reasons = []
    candidates = {device_path, whole_disk_path(device_path)}
    for pattern in patterns:
        if any(fnmatch.fnmatchcase(candidate, pattern) for candidate in candidates):
            reasons.append(f"matches system disk pattern {pattern}")
            break
    for source, mountpoint in mounted:
        if mountpoint in ROOT_MOUNTPOINTS:
            reasons.append(f"{source} is mounted at {mountpoint}")
    return reasons


def is_sensitive_device(
    device_path: str,
    patterns: Iterable[str],
    mounted: Iterable[tuple[str, str]] = (),
) -> bool:
    return bool(sensitive_reasons(device_path, patterns, mounted))


def validate_target_device(
    device_path: str, sensitive_patterns: Iterable[str]
) -> TargetDevice:
    """Perform all validations on the target before confirmation.

    Raises:
        NotABlockDeviceError: If the path is not a block device
    """
    log.info("Validating SD card device: {}", device_path)
    resolved = validate_block_device(device_path)
    if resolved != device_path:
        log.info("{} resolves to {}", device_path, resolved)

    mounted = find_mounted_partitions(resolved)
    reasons = sensitive_reasons(resolved, sensitive_patterns, mounted)
    target = TargetDevice(
        path=resolved,
        requested_path=device_path,
        mounted_partitions=mounted,
        sensitive=bool(reasons),
        sensitive_reasons=tuple(reasons),
    )

    if target.is_mounted:
        log.warning(
            "Device {} has mounted partitions: {}",
            target.path,
            ", ".join(target.mountpoints),
        )
        log.info("Will attempt to unmount them")

    for reason in target.sensitive_reasons:
        log.warning("{} might be your system drive ({})", target.path, reason)

    log.info("Device validation passed")
    return target
