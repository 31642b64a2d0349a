"""Checks that run before any device is touched.

Both payload images must be present and every utility the session will call
must be on PATH. Nothing here has side effects.
"""

from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Callable, Iterable, Optional

from sdflash.config.settings import FlashConfig
from sdflash.domain.models import PayloadArtifact
from sdflash.logging import LoggerFactory
from sdflash.storage.exceptions import MissingArtifactError, MissingToolError


log = LoggerFactory.for_system()

BASE_TOOLS = ("parted", "mkfs.vfat", "fatlabel", "wipefs", "mount", "umount", "cp")


def required_tools(config: FlashConfig, *, elevated: bool = False) -> list[str]:
    """Utilities the session calls with a fatal outcome on failure.

    partprobe, udevadm and sync are best-effort and are not required.
    """
    tools = []
    if elevated:
        tools.append("sudo")
    tools.append(config.partition_tool)
    tools.extend(BASE_TOOLS)
    if config.verify_payload:
        tools.append("sha256sum")
    return tools


def check_artifacts(artifacts: Iterable[PayloadArtifact]) -> None:
    """Raise MissingArtifactError for the first image that is not a readable file."""
    for artifact in artifacts:
        source = Path(artifact.source)
        if not source.is_file() or not os.access(source, os.R_OK):
            log.error("{} not found in {}", source.name, source.parent)
            raise MissingArtifactError(str(source), artifact.role)
        log.debug("Found {} image: {}", artifact.role, source)


def check_tools(
    tools: Iterable[str],
    which: Optional[Callable[[str], Optional[str]]] = None,
) -> None:
    """Raise MissingToolError for the first tool not resolvable on PATH."""
    which = which or shutil.which
    for tool in tools:
        if not which(tool):
            raise MissingToolError(tool)


def check_preconditions(
    config: FlashConfig,
    artifacts: Iterable[PayloadArtifact],
    *,
    elevated: bool = False,
    which: Optional[Callable[[str], Optional[str]]] = None,
) -> None:
    log.info("Validating build environment...")
    check_artifacts(artifacts)
    check_tools(required_tools(config, elevated=elevated), which=which)
    log.info("Environment validation passed")
