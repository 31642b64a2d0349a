"""Session controller for flashing a boot medium.

Runs the workflow as a linear state machine:

    START -> PRECONDITIONS_CHECKED -> DEVICE_VALIDATED -> USER_CONFIRMED
          -> PARTITIONED -> PROVISIONED -> PAYLOAD_INSTALLED -> CLEANED_UP -> DONE

Any FlashError moves the session to CLEANED_UP and then FAILED (exit code 1).
Declining a confirmation prompt ends the session in DONE with exit code 0.
The mount acquired while provisioning is released by its context manager, so
cleanup happens on every path past that point without extra calls here.

Confirmation input, PATH lookup and command execution are constructor
arguments and the build directory comes from FlashConfig, so the whole
workflow can run against fakes.
"""

from __future__ import annotations

from typing import Callable, Optional

from sdflash.config.settings import FlashConfig
from sdflash.domain.models import PartitionPlan, SessionResult, SessionState
from sdflash.logging import LoggerFactory, operation_context
from sdflash.storage.commands import CommandRunner, needs_elevation
from sdflash.storage.exceptions import DestructiveStepError, FlashError
from sdflash.storage.filesystem import format_partition, label_partition, mounted_partition
from sdflash.storage.partition import PartitionPlanner, parse_size_expression
from sdflash.storage.payload import install_payloads, resolve_artifacts
from sdflash.storage.preconditions import check_preconditions
from sdflash.storage.validation import validate_target_device


AFFIRMATIVE = "yes"
SENSITIVE_PROMPT = "Are you sure you want to continue? (yes/no): "
FINAL_PROMPT = "Continue? (yes/no): "

Reader = Callable[[str], str]


def confirm(reader: Reader, prompt: str) -> bool:
    """Ask a yes/no question. Only an exact "yes" counts as consent."""
    try:
        answer = reader(prompt)
    except EOFError:
        return False
    return (answer or "").strip() == AFFIRMATIVE


class FlashSession:
    """One run of the flashing workflow against one device."""

    def __init__(
        self,
        config: FlashConfig,
        *,
        runner: Optional[CommandRunner] = None,
        reader: Optional[Reader] = None,
        which: Optional[Callable[[str], Optional[str]]] = None,
        elevated: Optional[bool] = None,
    ):
        self.config = config
        self.elevated = needs_elevation(config.use_sudo) if elevated is None else elevated
        self.runner = runner or CommandRunner(
            verbose=config.verbose, use_sudo=self.elevated
        )
        self.reader = reader or input
        self.which = which or self.runner.which
        self.log = LoggerFactory.for_session()
        self.state = SessionState.START
        self.history: list[SessionState] = [SessionState.START]

    def _advance(self, state: SessionState) -> None:
        self.log.debug("{} -> {}", self.state.name, state.name)
        self.state = state
        self.history.append(state)

    def _cancelled(self) -> SessionResult:
        self.log.info("Operation cancelled by user")
        self._advance(SessionState.DONE)
        return SessionResult(
            state=self.state, exit_code=0, cancelled=True, history=list(self.history)
        )

    def run(self) -> SessionResult:
        config = self.config
        try:
            parse_size_expression(config.partition_size)
            artifacts = resolve_artifacts(config)
            check_preconditions(
                config, artifacts, elevated=self.elevated, which=self.which
            )
            self._advance(SessionState.PRECONDITIONS_CHECKED)

            target = validate_target_device(config.device, config.sensitive_devices)
            self._advance(SessionState.DEVICE_VALIDATED)

            if target.sensitive and not confirm(self.reader, SENSITIVE_PROMPT):
                return self._cancelled()

            self.log.warning("This will DESTROY all data on {}!", target.path)
            if not confirm(self.reader, FINAL_PROMPT):
                return self._cancelled()
            self._advance(SessionState.USER_CONFIRMED)

            with operation_context("flash", device=target.path):
                self.log.info("Preparing SD card: {}", target.path)
                plan = PartitionPlan(
                    device=target.path,
                    size=config.partition_size,
                    type_code=config.partition_type,
                )
                planner = PartitionPlanner(
                    self.runner,
                    tool=config.partition_tool,
                    settle_timeout=config.settle_timeout_seconds,
                )
                partition = planner.apply(plan, target.mounted_partitions)
                self._advance(SessionState.PARTITIONED)

                format_partition(self.runner, partition)
                label_partition(self.runner, partition, config.volume_label)
                with mounted_partition(self.runner, partition) as mount:
                    self._advance(SessionState.PROVISIONED)
                    install_payloads(
                        self.runner, mount, artifacts, verify=config.verify_payload
                    )
                    self._advance(SessionState.PAYLOAD_INSTALLED)
                self._advance(SessionState.CLEANED_UP)
        except FlashError as error:
            return self._failed(error)

        self._advance(SessionState.DONE)
        self.log.success("SD card preparation complete!")
        self.log.info("Success! Insert the SD card into the board and boot.")
        return SessionResult(state=self.state, exit_code=0, history=list(self.history))

    def _failed(self, error: FlashError) -> SessionResult:
        self.log.error("{}: {}", type(error).__name__, error)
        # Destructive steps only run after wipefs, so the old contents are gone
        if isinstance(error, DestructiveStepError):
            self.log.warning(
                "{} was wiped or repartitioned but holds no valid bootloader; "
                "run again to retry",
                self.config.device,
            )
        if self.state is not SessionState.CLEANED_UP:
            self._advance(SessionState.CLEANED_UP)
        self._advance(SessionState.FAILED)
        return SessionResult(
            state=self.state, exit_code=1, error=error, history=list(self.history)
        )
