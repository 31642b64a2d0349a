"""FAT32 formatting, labelling and scoped mounting of the boot partition.

None of these steps is retried: a failed format leaves a valid partition table
with no usable filesystem, and the only safe recovery is a fresh session.

mounted_partition() is the scoped resource for the mount. Its cleanup (sync,
umount, removal of the temporary directory) runs on every exit from the
with-block, including exceptions raised by the payload installer.
"""

from __future__ import annotations

import contextlib
import tempfile
from pathlib import Path
from typing import Iterator

from sdflash.domain.models import MountSession
from sdflash.logging import LoggerFactory
from sdflash.storage.commands import CommandRunner
from sdflash.storage.exceptions import (
    CommandError,
    FormatFailedError,
    LabelFailedError,
    MountFailedError,
)


log = LoggerFactory.for_storage()

MOUNT_DIR_PREFIX = "sdcard."


def format_partition(runner: CommandRunner, partition: str) -> None:
    """Create a FAT32 filesystem on the partition.

    Raises:
        FormatFailedError: If mkfs.vfat fails
    """
    log.info("Formatting partition as FAT32...")
    try:
        runner.run(["mkfs.vfat", "-F", "32", partition])
    except CommandError as error:
        raise FormatFailedError(
            f"Failed to format {partition} as FAT32: {error}", device=partition
        ) from error


def label_partition(runner: CommandRunner, partition: str, label: str = "boot") -> None:
    """Raises LabelFailedError if fatlabel fails."""
    log.info("Labeling partition as '{}'...", label)
    try:
        runner.run(["fatlabel", partition, label])
    except CommandError as error:
        raise LabelFailedError(
            f"Failed to label {partition} as '{label}': {error}", device=partition
        ) from error


def _remove_mount_dir(path: Path) -> None:
    try:
        path.rmdir()
    except FileNotFoundError:
        pass
    except OSError as error:
        log.warning("Could not remove mount directory {}: {}", path, error)


def _release(runner: CommandRunner, session: MountSession) -> None:
    log.info("Syncing and unmounting...")
    runner.run_best_effort(["sync"])
    result = runner.run_best_effort(["umount", str(session.path)])
    if result is None or not result.ok:
        log.warning("Unmount of {} failed, trying lazy unmount", session.path)
        result = runner.run_best_effort(["umount", "-l", str(session.path)])
        if result is None or not result.ok:
            log.error(
                "{} is still mounted at {}; unmount it manually",
                session.partition,
                session.path,
            )
            return
    _remove_mount_dir(session.path)


@contextlib.contextmanager
def mounted_partition(
    runner: CommandRunner,
    partition: str,
    *,
    base_dir: str | None = None,
) -> Iterator[MountSession]:
    """Mount the partition on a fresh temporary directory for the with-block.

    Raises:
        MountFailedError: If the temporary directory cannot be created, or if
            mount fails (the temporary directory is removed)
    """
    try:
        mount_dir = Path(tempfile.mkdtemp(prefix=MOUNT_DIR_PREFIX, dir=base_dir))
    except OSError as error:
        raise MountFailedError(
            f"Failed to create a mount directory for {partition}: {error}",
            device=partition,
        ) from error
    log.info("Mounting SD card partition...")
    try:
        runner.run(["mount", partition, str(mount_dir)])
    except CommandError as error:
        _remove_mount_dir(mount_dir)
        raise MountFailedError(
            f"Failed to mount {partition} on {mount_dir}: {error}", device=partition
        ) from error

    session = MountSession(partition=partition, path=mount_dir)
    log.debug("Mounted {} at {}", partition, mount_dir)
    try:
        yield session
    finally:
        _release(runner, session)
