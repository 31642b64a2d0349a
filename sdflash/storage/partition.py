"""Partition table creation for the boot medium.

The target always ends up with a fresh DOS partition table holding a single
primary partition, number 1, marked bootable.

Steps (PartitionPlanner.apply):
    1. unmount_partitions(): best-effort umount of the device and its partitions
    2. wipe_signatures(): best-effort wipefs -a on the whole device
    3. write_partition_table(): one atomic sfdisk (or legacy fdisk) call
    4. wait_for_partition(): partprobe, then poll until the node appears
    5. set_boot_flag(): parted set 1 boot on

Failures in steps 1, 2 and the re-read part of 4 mean the device was already
in the desired state and are ignored. Steps 3 and 5 raise
PartitioningFailedError; a partition node that never appears raises
PartitionNotReadyError.

Partition Tools:
    sfdisk: Non-interactive script (default)
    fdisk:  Legacy keystroke dialog piped into fdisk, judged only by exit status
"""

from __future__ import annotations

import glob
import re
import time
from typing import Iterable, NamedTuple, Optional

from sdflash.domain.models import PartitionPlan
from sdflash.logging import LoggerFactory
from sdflash.storage.commands import CommandRunner
from sdflash.storage.exceptions import (
    CommandError,
    InvalidSizeError,
    PartitioningFailedError,
    PartitionNotReadyError,
)
from sdflash.storage.validation import is_block_device, is_partition_of


log = LoggerFactory.for_storage()

POLL_INTERVAL_SECONDS = 0.5

_SIZE_PATTERN = re.compile(r"^\+?(\d+)(?:([KMGTP])(?:iB)?)?$", re.IGNORECASE)


class SizeSpec(NamedTuple):
    count: int
    unit: Optional[str]  # None means sectors


def parse_size_expression(expression: str) -> SizeSpec:
    """Parse an fdisk-style size such as +64M, 128MiB or 131072 (sectors).

    Raises:
        InvalidSizeError: If the expression is malformed or zero
    """
    match = _SIZE_PATTERN.match((expression or "").strip())
    if not match:
        raise InvalidSizeError(expression)
    count = int(match.group(1))
    if count == 0:
        raise InvalidSizeError(expression)
    unit = match.group(2).upper() if match.group(2) else None
    return SizeSpec(count, unit)


def partition_path(device_path: str, number: int = 1) -> str:
    """Partition node for a device (sdb -> sdb1, mmcblk0 -> mmcblk0p1)."""
    suffix = "p" if device_path[-1:].isdigit() else ""
    return f"{device_path}{suffix}{number}"


def render_sfdisk_script(plan: PartitionPlan) -> str:
    """sfdisk input for a fresh DOS table with the planned partition.

    sfdisk has no "+" syntax, so the size is rewritten in binary units:
    +128M becomes size=128MiB (the same size fdisk gives +128M), and a bare
    number stays a sector count.
    """
    spec = parse_size_expression(plan.size)
    size = f"{spec.count}{spec.unit}iB" if spec.unit else str(spec.count)
    fields = [f"size={size}", f"type={plan.type_code}"]
    if plan.bootable:
        fields.append("bootable")
    return "label: dos\n\n" + ", ".join(fields) + "\n"


def render_fdisk_dialog(plan: PartitionPlan) -> str:
    """Keystrokes for fdisk: new table, new primary partition, type, active flag."""
    parse_size_expression(plan.size)
    keystrokes = [
        "o",  # new DOS table
        "n",
        "p",
        str(plan.number),
        "",  # default first sector
        plan.size,
        "t",
        plan.type_code,
    ]
    if plan.bootable:
        keystrokes += ["a", str(plan.number)]
    keystrokes.append("w")
    return "\n".join(keystrokes) + "\n"


def unmount_partitions(
    runner: CommandRunner,
    device_path: str,
    mounted: Iterable[tuple[str, str]] = (),
) -> list[str]:
    """Best-effort umount of the device and every partition node it has.

    Returns the nodes an unmount was attempted on.
    """
    candidates = {
        node for node in glob.glob(f"{device_path}*") if is_partition_of(device_path, node)
    }
    candidates.update(source for source, _mountpoint in mounted)
    candidates.add(device_path)

    attempted = sorted(candidates)
    for node in attempted:
        result = runner.run_best_effort(["umount", node])
        if result is not None and result.ok:
            log.info("Unmounted {}", node)
    return attempted


def wipe_signatures(runner: CommandRunner, device_path: str) -> None:
    runner.run_best_effort(["wipefs", "-a", device_path])


def write_partition_table(
    runner: CommandRunner, plan: PartitionPlan, tool: str = "sfdisk"
) -> None:
    """Write the new table in a single external call.

    Raises:
        PartitioningFailedError: If the partitioning tool exits nonzero
    """
    if tool == "fdisk":
        command = ["fdisk", plan.device]
        script = render_fdisk_dialog(plan)
    else:
        command = ["sfdisk", "--wipe", "always", plan.device]
        script = render_sfdisk_script(plan)
    log.debug("{} script:\n{}", tool, script)
    try:
        runner.run(command, input_text=script)
    except CommandError as error:
        raise PartitioningFailedError(
            f"Failed to create partition table on {plan.device}: {error}",
            device=plan.device,
        ) from error


def wait_for_partition(
    runner: CommandRunner,
    device_path: str,
    partition: str,
    timeout: float = 10.0,
    *,
    reread: bool = True,
) -> None:
    """Ask the kernel to re-read the table, then poll for the partition node.

    Raises:
        PartitionNotReadyError: If the node is not a block device by the timeout
    """
    if reread:
        runner.run_best_effort(["partprobe", device_path])
        runner.run_best_effort(["udevadm", "settle", f"--timeout={int(timeout)}"])

    deadline = time.monotonic() + timeout
    while True:
        if is_block_device(partition):
            log.debug("Partition node found: {}", partition)
            return
        if time.monotonic() >= deadline:
            raise PartitionNotReadyError(partition, timeout)
        time.sleep(POLL_INTERVAL_SECONDS)


def set_boot_flag(runner: CommandRunner, device_path: str, number: int = 1) -> None:
    """Raises PartitioningFailedError if parted cannot set the flag."""
    try:
        runner.run(["parted", "-s", device_path, "set", str(number), "boot", "on"])
    except CommandError as error:
        raise PartitioningFailedError(
            f"Failed to mark partition {number} on {device_path} as bootable: {error}",
            device=device_path,
        ) from error


class PartitionPlanner:
    """Replace the partition table of a device with a single boot partition."""

    def __init__(
        self,
        runner: CommandRunner,
        *,
        tool: str = "sfdisk",
        settle_timeout: float = 10.0,
    ):
        self.runner = runner
        self.tool = tool
        self.settle_timeout = settle_timeout

    def apply(
        self, plan: PartitionPlan, mounted: Iterable[tuple[str, str]] = ()
    ) -> str:
        """Run all partitioning steps in order and return the partition path."""
        device = plan.device
        partition = partition_path(device, plan.number)

        log.info("Unmounting existing partitions on {}...", device)
        unmount_partitions(self.runner, device, mounted)

        log.info("Wiping existing filesystem signatures...")
        wipe_signatures(self.runner, device)

        log.info("Creating new partition table and partition ({})...", plan.size)
        write_partition_table(self.runner, plan, self.tool)

        wait_for_partition(self.runner, device, partition, self.settle_timeout)

        log.info("Marking partition as bootable...")
        set_boot_flag(self.runner, device, plan.number)
        # parted rewrites the table, so the node can briefly disappear
        wait_for_partition(
            self.runner, device, partition, self.settle_timeout, reread=False
        )
        return partition
