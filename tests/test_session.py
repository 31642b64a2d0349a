"""
Tests for sdflash.session - the end-to-end flashing workflow.

Every scenario runs FlashSession against a RecordingRunner and a scripted
reader, so the full sequence of external commands can be asserted without
touching a device.
"""

from pathlib import Path

import pytest

from sdflash.domain.models import SessionState
from sdflash.session import FINAL_PROMPT, SENSITIVE_PROMPT, FlashSession, confirm
from sdflash.storage.exceptions import (
    FormatFailedError,
    MissingArtifactError,
    MissingToolError,
    MountFailedError,
    NotABlockDeviceError,
    PartitioningFailedError,
    PartitionNotReadyError,
    PayloadCopyFailedError,
)

from .conftest import DESTRUCTIVE_COMMANDS, RecordingRunner, ScriptedReader


@pytest.fixture
def make_session(make_config, block_devices, mount_table):
    def _make(device="/dev/sdb", *, runner=None, answers=("yes",), **overrides):
        runner = runner or RecordingRunner()
        reader = ScriptedReader(*answers)
        session = FlashSession(
            make_config(device, **overrides),
            runner=runner,
            reader=reader,
            elevated=False,
        )
        return session, runner, reader

    return _make


def mount_dir_of(runner):
    """Temporary directory passed to the mount command."""
    (mount_call,) = runner.calls_to("mount")
    return Path(mount_call[-1])


class TestConfirm:
    """Tests for confirm()."""

    def test_exact_yes(self):
        assert confirm(ScriptedReader("yes"), FINAL_PROMPT) is True

    def test_surrounding_whitespace_ignored(self):
        assert confirm(ScriptedReader("  yes \n"), FINAL_PROMPT) is True

    @pytest.mark.parametrize("answer", ["no", "y", "YES", "Yes", "", "yess"])
    def test_anything_else_declines(self, answer):
        assert confirm(ScriptedReader(answer), FINAL_PROMPT) is False

    def test_end_of_input_declines(self):
        assert confirm(ScriptedReader(), FINAL_PROMPT) is False


class TestSuccessfulSession:
    """A removable card is flashed end to end."""

    def test_exit_code_and_final_state(self, make_session):
        session, _runner, _reader = make_session()

        result = session.run()

        assert result.exit_code == 0
        assert result.success
        assert result.state is SessionState.DONE

    def test_state_history(self, make_session):
        session, _runner, _reader = make_session()

        result = session.run()

        assert result.history == [
            SessionState.START,
            SessionState.PRECONDITIONS_CHECKED,
            SessionState.DEVICE_VALIDATED,
            SessionState.USER_CONFIRMED,
            SessionState.PARTITIONED,
            SessionState.PROVISIONED,
            SessionState.PAYLOAD_INSTALLED,
            SessionState.CLEANED_UP,
            SessionState.DONE,
        ]

    def test_command_sequence(self, make_session):
        session, runner, _reader = make_session(verify_payload=False)

        session.run()

        assert runner.commands == [
            "umount",
            "wipefs",
            "sfdisk",
            "partprobe",
            "udevadm",
            "parted",
            "mkfs.vfat",
            "fatlabel",
            "mount",
            "cp",
            "cp",
            "sync",
            "umount",
        ]

    def test_payload_lands_under_fixed_names(self, make_session, build_dir):
        session, runner, _reader = make_session()

        session.run()

        mount_dir = mount_dir_of(runner)
        assert runner.calls_to("cp") == [
            [
                "cp",
                str(build_dir / "barebox-am33xx-beaglebone-mlo.mmc.img"),
                str(mount_dir / "MLO"),
            ],
            [
                "cp",
                str(build_dir / "barebox-am33xx-beaglebone.img"),
                str(mount_dir / "barebox.bin"),
            ],
        ]

    def test_partition_formatted_and_labelled(self, make_session):
        session, runner, _reader = make_session()

        session.run()

        assert runner.calls_to("mkfs.vfat") == [["mkfs.vfat", "-F", "32", "/dev/sdb1"]]
        assert runner.calls_to("fatlabel") == [["fatlabel", "/dev/sdb1", "boot"]]
        assert runner.calls_to("parted") == [
            ["parted", "-s", "/dev/sdb", "set", "1", "boot", "on"]
        ]

    def test_temporary_mount_directory_removed(self, make_session):
        session, runner, _reader = make_session()

        session.run()

        mount_dir = mount_dir_of(runner)
        assert ["umount", str(mount_dir)] in runner.calls
        assert not mount_dir.exists()

    def test_default_partition_size(self, make_session):
        session, runner, _reader = make_session()

        session.run()

        assert "size=64MiB" in runner.input_for("sfdisk")

    def test_custom_partition_size(self, make_session):
        session, runner, _reader = make_session(partition_size="+128M")

        session.run()

        assert "size=128MiB" in runner.input_for("sfdisk")

    def test_custom_partition_size_legacy_fdisk(self, make_session):
        session, runner, _reader = make_session(
            partition_size="+128M", partition_tool="fdisk"
        )

        session.run()

        assert "\n+128M\n" in runner.input_for("fdisk")

    def test_mmc_partition_naming(self, make_session):
        session, runner, _reader = make_session("/dev/mmcblk0")

        result = session.run()

        assert result.exit_code == 0
        assert ["mount", "/dev/mmcblk0p1", str(mount_dir_of(runner))] in runner.calls

    def test_mounted_partitions_unmounted_first(self, make_session, mount_table):
        mount_table.append(("/dev/sdb1", "/media/user/BOOT"))
        session, runner, _reader = make_session()

        result = session.run()

        assert result.exit_code == 0
        assert runner.calls[:2] == [["umount", "/dev/sdb"], ["umount", "/dev/sdb1"]]

    def test_single_prompt_for_removable_device(self, make_session):
        session, _runner, reader = make_session()

        session.run()

        assert reader.prompts == [FINAL_PROMPT]


class TestPreconditionFailures:
    """Nothing touches the device when a prerequisite is missing."""

    def test_missing_main_image(self, make_session, build_dir):
        (build_dir / "barebox-am33xx-beaglebone.img").unlink()
        session, runner, reader = make_session()

        result = session.run()

        assert result.exit_code == 1
        assert result.state is SessionState.FAILED
        assert isinstance(result.error, MissingArtifactError)
        assert not DESTRUCTIVE_COMMANDS.intersection(runner.commands)
        assert reader.prompts == []

    def test_missing_first_stage_image(self, make_session, build_dir):
        (build_dir / "barebox-am33xx-beaglebone-mlo.mmc.img").unlink()
        session, runner, _reader = make_session()

        result = session.run()

        assert result.error.role == "first-stage"
        assert runner.calls == []

    def test_missing_tool(self, make_session):
        session, runner, _reader = make_session(
            runner=RecordingRunner(missing_tools=("fatlabel",))
        )

        result = session.run()

        assert result.exit_code == 1
        assert isinstance(result.error, MissingToolError)
        assert runner.calls == []

    def test_not_a_block_device(self, make_session):
        session, runner, reader = make_session("/dev/sdz")

        result = session.run()

        assert result.exit_code == 1
        assert isinstance(result.error, NotABlockDeviceError)
        assert runner.calls == []
        assert reader.prompts == []

    def test_invalid_size_rejected_before_device_access(self, make_session):
        session, runner, _reader = make_session(partition_size="lots")

        result = session.run()

        assert result.exit_code == 1
        assert runner.calls == []
        assert SessionState.PRECONDITIONS_CHECKED not in result.history


class TestConfirmationGates:
    """Consent is required before any destructive step."""

    def test_final_gate_declined(self, make_session):
        session, runner, reader = make_session(answers=("no",))

        result = session.run()

        assert result.exit_code == 0
        assert result.cancelled
        assert not result.success
        assert runner.calls == []
        assert reader.prompts == [FINAL_PROMPT]

    def test_end_of_input_cancels(self, make_session):
        session, runner, _reader = make_session(answers=())

        result = session.run()

        assert result.exit_code == 0
        assert result.cancelled
        assert runner.calls == []

    def test_sensitive_device_declined(self, make_session):
        session, runner, reader = make_session("/dev/sda", answers=("no",))

        result = session.run()

        assert result.exit_code == 0
        assert result.cancelled
        assert runner.calls == []
        assert reader.prompts == [SENSITIVE_PROMPT]

    def test_sensitive_device_then_final_declined(self, make_session):
        session, runner, reader = make_session("/dev/sda", answers=("yes", "no"))

        result = session.run()

        assert result.exit_code == 0
        assert runner.calls == []
        assert reader.prompts == [SENSITIVE_PROMPT, FINAL_PROMPT]

    def test_sensitive_device_both_accepted(self, make_session):
        session, runner, _reader = make_session("/dev/sda", answers=("yes", "yes"))

        result = session.run()

        assert result.exit_code == 0
        assert ["sfdisk", "--wipe", "always", "/dev/sda"] in runner.calls

    def test_system_disk_warning_logged(self, make_session, log_records):
        session, _runner, _reader = make_session("/dev/sda", answers=("no",))

        session.run()

        assert any("system drive" in r["message"] for r in log_records)


class TestDestructiveFailures:
    """Failures after partitioning abort without retrying."""

    def test_format_failure(self, make_session):
        session, runner, _reader = make_session(
            runner=RecordingRunner(failures={"mkfs.vfat": 1})
        )

        result = session.run()

        assert result.exit_code == 1
        assert isinstance(result.error, FormatFailedError)
        assert len(runner.calls_to("sfdisk")) == 1
        assert len(runner.calls_to("mkfs.vfat")) == 1
        assert "mount" not in runner.commands
        assert "cp" not in runner.commands
        assert result.history[-2:] == [SessionState.CLEANED_UP, SessionState.FAILED]

    def test_format_failure_warns_about_repartitioned_device(
        self, make_session, log_records
    ):
        session, _runner, _reader = make_session(
            runner=RecordingRunner(failures={"mkfs.vfat": 1})
        )

        session.run()

        assert any(
            r["level"].name == "WARNING" and "repartitioned" in r["message"]
            for r in log_records
        )

    def test_partition_never_appears(self, make_session, block_devices):
        block_devices.discard("/dev/sdb1")
        session, runner, _reader = make_session(settle_timeout_seconds=0.01)

        result = session.run()

        assert isinstance(result.error, PartitionNotReadyError)
        assert "parted" not in runner.commands

    def test_mount_failure(self, make_session):
        session, runner, _reader = make_session(
            runner=RecordingRunner(failures={"mount": 32})
        )

        result = session.run()

        assert isinstance(result.error, MountFailedError)
        assert "cp" not in runner.commands
        assert result.exit_code == 1

    def test_copy_failure_still_unmounts(self, make_session):
        session, runner, _reader = make_session(
            runner=RecordingRunner(
                failures={"cp": lambda argv: 1 if argv[-1].endswith("barebox.bin") else 0}
            )
        )

        result = session.run()

        assert isinstance(result.error, PayloadCopyFailedError)
        assert result.error.artifact.role == "main"
        mount_dir = mount_dir_of(runner)
        assert runner.commands[-2:] == ["sync", "umount"]
        assert not mount_dir.exists()
        assert SessionState.PROVISIONED in result.history
        assert SessionState.PAYLOAD_INSTALLED not in result.history
        assert result.exit_code == 1

    def test_mount_directory_failure_is_reported(self, make_session, mocker):
        mocker.patch(
            "sdflash.storage.filesystem.tempfile.mkdtemp",
            side_effect=PermissionError("denied"),
        )
        session, runner, _reader = make_session()

        result = session.run()

        assert result.exit_code == 1
        assert result.state is SessionState.FAILED
        assert isinstance(result.error, MountFailedError)
        assert "mount" not in runner.commands


class TestRepartitionedWarning:
    """The operator is told when a failure leaves the card without a bootloader."""

    @staticmethod
    def warned(log_records):
        return any(
            r["level"].name == "WARNING" and "no valid bootloader" in r["message"]
            for r in log_records
        )

    def test_partition_node_timeout_warns(self, make_session, block_devices, log_records):
        block_devices.discard("/dev/sdb1")
        session, _runner, _reader = make_session(settle_timeout_seconds=0.01)

        result = session.run()

        assert isinstance(result.error, PartitionNotReadyError)
        assert self.warned(log_records)

    def test_boot_flag_failure_warns(self, make_session, log_records):
        session, _runner, _reader = make_session(
            runner=RecordingRunner(failures={"parted": 1})
        )

        result = session.run()

        assert isinstance(result.error, PartitioningFailedError)
        assert self.warned(log_records)

    def test_table_write_failure_warns(self, make_session, log_records):
        session, _runner, _reader = make_session(
            runner=RecordingRunner(failures={"sfdisk": 1})
        )

        session.run()

        assert self.warned(log_records)

    def test_no_warning_before_device_is_touched(self, make_session, build_dir, log_records):
        (build_dir / "barebox-am33xx-beaglebone.img").unlink()
        session, _runner, _reader = make_session()

        session.run()

        assert not self.warned(log_records)
