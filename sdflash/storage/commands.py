"""External command execution for the flashing workflow.

Every device mutation goes through CommandRunner so that:
    - verbose mode can echo each command before it runs
    - commands are elevated with sudo when the process is not root
    - failures surface as CommandError with argv, return code and output
    - tests can swap in a recording runner instead of patching subprocess

Best-effort steps use run_best_effort(), which logs and swallows failures.
"""

from __future__ import annotations

import os
import shlex
import shutil
import subprocess
from dataclasses import dataclass
from typing import Optional, Sequence

from sdflash.logging import LoggerFactory
from sdflash.storage.exceptions import CommandError


log = LoggerFactory.for_command()


@dataclass(frozen=True)
class CommandResult:
    argv: list[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def needs_elevation(use_sudo: bool) -> bool:
    """True when commands must be prefixed with sudo."""
    return use_sudo and os.geteuid() != 0


class CommandRunner:
    """Run external commands synchronously with consistent logging."""

    def __init__(self, *, verbose: bool = False, use_sudo: bool = False):
        self.verbose = verbose
        self.use_sudo = use_sudo

    def _argv(self, command: Sequence[str]) -> list[str]:
        argv = [str(part) for part in command]
        if self.use_sudo:
            argv = ["sudo", *argv]
        return argv

    def which(self, tool: str) -> Optional[str]:
        return shutil.which(tool)

    def run(
        self,
        command: Sequence[str],
        *,
        check: bool = True,
        input_text: Optional[str] = None,
    ) -> CommandResult:
        """Run a command and return its result.

        Raises:
            CommandError: If check is True and the command exits nonzero, or
                if the executable cannot be started.
        """
        argv = self._argv(command)
        if self.verbose:
            log.info("+ {}", shlex.join(argv))
        else:
            log.debug("Running command: {}", shlex.join(argv))

        try:
            process = subprocess.run(
                argv,
                input=input_text,
                text=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as error:
            raise CommandError(argv, 127, stderr=str(error)) from error

        if process.stdout:
            log.debug("stdout: {}", process.stdout.strip())
        if process.stderr:
            log.debug("stderr: {}", process.stderr.strip())

        result = CommandResult(
            argv=argv,
            returncode=process.returncode,
            stdout=process.stdout or "",
            stderr=process.stderr or "",
        )
        if check and not result.ok:
            raise CommandError(argv, result.returncode, result.stdout, result.stderr)
        return result

    def run_best_effort(
        self, command: Sequence[str], *, input_text: Optional[str] = None
    ) -> Optional[CommandResult]:
        """Run a command whose failure means "already in the desired state".

        Returns the result, or None if the command could not be run at all.
        """
        try:
            result = self.run(command, check=False, input_text=input_text)
        except CommandError as error:
            log.debug("Best-effort command failed ({}): {}", command[0], error)
            return None
        if not result.ok:
            log.debug(
                "Best-effort command {} exited {} (ignored)",
                command[0],
                result.returncode,
            )
        return result
