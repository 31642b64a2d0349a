from __future__ import annotations

import os
import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from loguru import Logger

from loguru import logger

DEFAULT_LOG_DIR = Path(
    os.environ.get(
        "SDFLASH_LOG_DIR",
        Path.home() / ".local" / "state" / "sdflash" / "logs",
    )
)


def setup_logging(
    *,
    debug: bool = False,
    log_dir: Path | None = None,
    file_logging: bool = True,
) -> Logger:
    """
    Setup console and file sinks for a flashing session.

    Logging Tiers:
    - CRITICAL/ERROR: Failed destructive steps, missing prerequisites
    - SUCCESS/INFO: Session progress, warnings about the target device
    - DEBUG: Command output, best-effort failures that were ignored

    Log Files:
    - operations.log: INFO+ events (7 day retention)
    - debug.log: DEBUG+ events when --debug is enabled (3 day retention)

    Args:
        debug: Enable DEBUG level logging
        log_dir: Custom log directory (defaults to ~/.local/state/sdflash/logs)
        file_logging: Disable to keep logging on the console only
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "APP"})

    console_level = "DEBUG" if debug else "INFO"

    # SINK 1: Console (stderr) - operator-facing
    logger.add(
        sys.stderr,
        level=console_level,
        backtrace=False,
        diagnose=False,
        colorize=True,
        format=(
            "<green>{time:HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[source]: <10}</cyan> | "
            "{message}"
        ),
    )

    if not file_logging:
        return logger

    log_dir = log_dir or DEFAULT_LOG_DIR
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
    except OSError as error:
        logger.warning("File logging disabled, cannot create {}: {}", log_dir, error)
        return logger

    # SINK 2: Operations Log - what was done to which device (INFO+)
    logger.add(
        log_dir / "operations.log",
        level="INFO",
        rotation="5 MB",
        retention="7 days",
        compression="zip",
        backtrace=False,
        diagnose=False,
        format=(
            "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
            "{level: <8} | "
            "{extra[source]: <10} | "
            "{extra[job_id]: <15} | "
            "{message}"
        ),
    )

    # SINK 3: Debug Log - command output and ignored failures
    if debug:
        logger.add(
            log_dir / "debug.log",
            level="DEBUG",
            rotation="10 MB",
            retention="3 days",
            compression="zip",
            backtrace=True,
            diagnose=True,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{extra[source]: <10} | "
                "{extra[job_id]: <15} | "
                "{extra[tags]} | "
                "{message}"
            ),
        )

    return logger


def get_logger(
    *,
    job_id: str | None = None,
    tags: Iterable[str] | None = None,
    source: str | None = None,
) -> Logger:
    """
    Get a logger with bound context.

    Args:
        job_id: Job identifier for tracking a session
        tags: Tags for filtering (e.g., ["partition", "storage"])
        source: Source component (e.g., "session", "storage", "cmd")

    Returns:
        Logger with bound context
    """
    extras: dict[str, object] = {}
    if job_id is not None:
        extras["job_id"] = job_id
    if tags is not None:
        extras["tags"] = list(tags)
    if source is not None:
        extras["source"] = source
    return logger.bind(**extras)


@contextmanager
def operation_context(operation: str, **details):
    """
    Context manager for tracking an operation with automatic timing.

    Logs operation start, completion, and failure with duration tracking.

    Example:
        with operation_context("flash", device="/dev/sdb") as log:
            log.info("Partitioning")
    """
    job_id = f"{operation}-{uuid.uuid4().hex[:8]}"

    with logger.contextualize(job_id=job_id, operation=operation, **details):
        start_time = time.time()
        log = logger.bind(source=operation, job_id=job_id, tags=[operation])

        log.info(f"{operation.capitalize()} started", **details)

        try:
            yield log
            duration = time.time() - start_time
            log.success(
                f"{operation.capitalize()} completed",
                duration_seconds=round(duration, 2),
            )
        except Exception as e:
            duration = time.time() - start_time
            log.error(
                f"{operation.capitalize()} failed",
                error=str(e),
                error_type=type(e).__name__,
                duration_seconds=round(duration, 2),
            )
            raise


class LoggerFactory:
    """
    Factory for creating domain-specific loggers with automatic context.
    """

    @staticmethod
    def for_session(job_id: str | None = None) -> Logger:
        """Logger for the flashing session controller."""
        if job_id is None:
            job_id = f"flash-{uuid.uuid4().hex[:8]}"
        return logger.bind(job_id=job_id, source="session", tags=["session"])

    @staticmethod
    def for_storage() -> Logger:
        """Logger for partitioning, formatting and mount handling."""
        return logger.bind(source="storage", tags=["storage", "device"])

    @staticmethod
    def for_command() -> Logger:
        """Logger for external command execution."""
        return logger.bind(source="cmd", tags=["cmd"])

    @staticmethod
    def for_system() -> Logger:
        """Logger for startup and configuration."""
        return logger.bind(source="system", tags=["system"])
