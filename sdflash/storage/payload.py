"""Payload installation onto the mounted boot partition.

The two bootloader images are copied byte-for-byte under their fixed
destination names. Copies go through the command runner (cp) so they run with
the same privileges as the mount. With verification enabled, sha256 digests of
source and destination are compared after the copy.
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterable

from sdflash.config.settings import FlashConfig
from sdflash.domain.models import MountSession, PayloadArtifact
from sdflash.logging import LoggerFactory
from sdflash.storage.commands import CommandRunner
from sdflash.storage.exceptions import CommandError, PayloadCopyFailedError


log = LoggerFactory.for_storage()

FIRST_STAGE = "first-stage"
MAIN = "main"


def resolve_artifacts(config: FlashConfig) -> list[PayloadArtifact]:
    """First-stage loader first, main bootloader image second."""
    build_dir = Path(config.build_dir)
    return [
        PayloadArtifact(
            role=FIRST_STAGE,
            source=build_dir / config.first_stage_image,
            destination_name=config.first_stage_name,
        ),
        PayloadArtifact(
            role=MAIN,
            source=build_dir / config.main_image,
            destination_name=config.main_image_name,
        ),
    ]


def _sha256(runner: CommandRunner, path: Path) -> str:
    result = runner.run(["sha256sum", str(path)])
    digest = result.stdout.split()[0] if result.stdout.split() else ""
    if not digest:
        raise CommandError(result.argv, result.returncode, result.stdout, "no digest")
    return digest


def verify_payload(runner: CommandRunner, artifact: PayloadArtifact, destination: Path) -> None:
    """Raises PayloadCopyFailedError if the copy differs from its source."""
    try:
        source_digest = _sha256(runner, artifact.source)
        destination_digest = _sha256(runner, destination)
    except CommandError as error:
        raise PayloadCopyFailedError(artifact, f"verification failed: {error}") from error
    if source_digest != destination_digest:
        raise PayloadCopyFailedError(
            artifact,
            f"checksum mismatch ({source_digest[:12]} != {destination_digest[:12]})",
        )
    log.debug("Verified {} (sha256 {})", artifact.destination_name, source_digest)


def install_payloads(
    runner: CommandRunner,
    mount: MountSession,
    artifacts: Iterable[PayloadArtifact],
    *,
    verify: bool = True,
) -> list[Path]:
    """Copy every artifact into the mounted filesystem.

    Returns:
        Destination paths, in artifact order

    Raises:
        PayloadCopyFailedError: Naming the artifact whose copy failed
    """
    log.info("Copying bootloader components to SD card...")
    installed = []
    for artifact in artifacts:
        destination = artifact.destination(mount.path)
        try:
            runner.run(["cp", str(artifact.source), str(destination)])
        except CommandError as error:
            raise PayloadCopyFailedError(artifact, str(error)) from error
        if verify:
            verify_payload(runner, artifact, destination)
        log.info("{} -> {}", artifact.source.name, artifact.destination_name)
        installed.append(destination)
    return installed
