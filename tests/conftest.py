"""
Pytest configuration and shared fixtures for sdflash tests.

No test touches a real block device: commands go through RecordingRunner,
and block-device checks and mount tables are patched.
"""

from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace
from typing import Callable, Dict, List, Optional, Union

import pytest

from sdflash.config.settings import FlashConfig
from sdflash.logging import logger
from sdflash.storage.commands import CommandResult, CommandRunner
from sdflash.storage.exceptions import CommandError


FAKE_DIGEST = "9f86d081884c7d659a2feaa0c55ad015a3bf4f1b2b0b822cd15d6c15b0f00a08"

Failure = Union[int, Callable[[List[str]], int]]


class RecordingRunner(CommandRunner):
    """CommandRunner that records argv instead of executing anything.

    failures maps a command name (or "name arg") to a return code, or to a
    callable taking argv and returning one.
    """

    def __init__(
        self,
        failures: Optional[Dict[str, Failure]] = None,
        stdout: Optional[Callable[[List[str]], str]] = None,
        missing_tools: tuple = (),
    ):
        super().__init__()
        self.failures = failures or {}
        self.stdout = stdout or self._default_stdout
        self.missing_tools = set(missing_tools)
        self.calls: List[List[str]] = []
        self.inputs: List[Optional[str]] = []

    @staticmethod
    def _default_stdout(argv: List[str]) -> str:
        if argv[0] == "sha256sum":
            return f"{FAKE_DIGEST}  {argv[-1]}\n"
        return ""

    def _returncode(self, argv: List[str]) -> int:
        for key in (" ".join(argv[:2]), argv[0]):
            if key in self.failures:
                failure = self.failures[key]
                return failure(argv) if callable(failure) else failure
        return 0

    def run(self, command, *, check=True, input_text=None):
        argv = [str(part) for part in command]
        self.calls.append(argv)
        self.inputs.append(input_text)
        returncode = self._returncode(argv)
        stderr = "" if returncode == 0 else f"{argv[0]}: simulated failure"
        result = CommandResult(
            argv=argv,
            returncode=returncode,
            stdout=self.stdout(argv) if returncode == 0 else "",
            stderr=stderr,
        )
        if check and returncode != 0:
            raise CommandError(argv, returncode, result.stdout, result.stderr)
        return result

    def which(self, tool):
        if tool in self.missing_tools:
            return None
        return f"/usr/bin/{tool}"

    @property
    def commands(self) -> List[str]:
        return [argv[0] for argv in self.calls]

    def calls_to(self, name: str) -> List[List[str]]:
        return [argv for argv in self.calls if argv[0] == name]

    def input_for(self, name: str) -> Optional[str]:
        for argv, input_text in zip(self.calls, self.inputs):
            if argv[0] == name:
                return input_text
        return None


DESTRUCTIVE_COMMANDS = {
    "umount",
    "wipefs",
    "sfdisk",
    "fdisk",
    "parted",
    "mkfs.vfat",
    "fatlabel",
    "mount",
    "cp",
}


class ScriptedReader:
    """Replays answers to confirmation prompts and records the prompts."""

    def __init__(self, *answers: str):
        self.answers = list(answers)
        self.prompts: List[str] = []

    def __call__(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if not self.answers:
            raise EOFError
        return self.answers.pop(0)


# ==============================================================================
# Fixtures
# ==============================================================================


@pytest.fixture
def runner() -> RecordingRunner:
    return RecordingRunner()


@pytest.fixture
def build_dir(tmp_path) -> Path:
    """Build output directory holding both bootloader images."""
    images = tmp_path / "build" / "images"
    images.mkdir(parents=True)
    (images / "barebox-am33xx-beaglebone-mlo.mmc.img").write_bytes(b"\x40MLO" * 64)
    (images / "barebox-am33xx-beaglebone.img").write_bytes(b"\x7fBAREBOX" * 256)
    return images


@pytest.fixture
def make_config(build_dir) -> Callable[..., FlashConfig]:
    def _make(device: str = "/dev/sdb", **overrides) -> FlashConfig:
        values = {
            "build_dir": build_dir,
            "use_sudo": False,
            "settle_timeout_seconds": 1.0,
        }
        values.update(overrides)
        return FlashConfig(device=device, **values)

    return _make


@pytest.fixture
def block_devices(mocker):
    """Treat the listed paths (and nothing else) as block devices.

    Returns the set so tests can add partition nodes.
    """
    nodes = {"/dev/sdb", "/dev/sdb1", "/dev/sda", "/dev/sda1", "/dev/mmcblk0", "/dev/mmcblk0p1"}

    def _is_block(path):
        return path in nodes

    mocker.patch("sdflash.storage.validation.is_block_device", side_effect=_is_block)
    mocker.patch("sdflash.storage.partition.is_block_device", side_effect=_is_block)
    mocker.patch("sdflash.storage.validation.resolve_device_path", side_effect=lambda p: p)
    return nodes


@pytest.fixture
def mount_table(mocker):
    """Controllable psutil mount table (list of (device, mountpoint))."""
    entries: List[tuple] = []

    def _partitions(all=False):
        return [
            SimpleNamespace(device=device, mountpoint=mountpoint, fstype="vfat", opts="rw")
            for device, mountpoint in entries
        ]

    mocker.patch(
        "sdflash.storage.validation.psutil.disk_partitions", side_effect=_partitions
    )
    return entries


@pytest.fixture(autouse=True)
def no_device_nodes(mocker):
    """Never glob the real /dev and never sleep while polling."""
    mocker.patch("sdflash.storage.partition.glob.glob", return_value=[])
    mocker.patch("sdflash.storage.partition.time.sleep")


@pytest.fixture
def log_records():
    """Capture loguru records emitted during a test."""
    records: List[dict] = []
    handler_id = logger.add(lambda message: records.append(message.record), level="DEBUG")
    yield records
    logger.remove(handler_id)
