"""Domain models for flashing sessions.

This package contains type-safe domain objects shared by the storage helpers
and the session controller.
"""

from __future__ import annotations

from .models import (
    MountSession,
    PartitionPlan,
    PayloadArtifact,
    SessionResult,
    SessionState,
    TargetDevice,
)


__all__ = [
    "MountSession",
    "PartitionPlan",
    "PayloadArtifact",
    "SessionResult",
    "SessionState",
    "TargetDevice",
]
