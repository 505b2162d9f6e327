"""
Data types shared by the supervisor components.

Agent identity, the child-process states, and the outcome of a skills
synchronization attempt. Nothing here is persisted.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional


@dataclass(frozen=True)
class AgentIdentity:
    """Who this supervisor runs the gateway for. Fixed for the process lifetime."""

    name: str
    workspace: Path

    def to_dict(self) -> dict:
        return {"name": self.name, "workspace": str(self.workspace)}


class ChildState(Enum):
    ABSENT = "absent"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class SyncStatus(Enum):
    UPDATED = "updated"
    NO_CHANGE = "no_change"
    SKIPPED = "skipped"
    FAILED = "failed"


class SyncFailure(str, Enum):
    FETCH_ERROR = "fetch-error"
    MISSING_SUBTREE = "missing-subtree"
    NO_CREDENTIAL = "no-credential"
    PUBLISH_ERROR = "publish-error"


SKIPPED_DISABLED = "disabled"


@dataclass(frozen=True)
class SyncOutcome:
    """Result of one synchronization attempt."""

    status: SyncStatus
    reason: Optional[str] = None
    error: Optional[str] = None
    revision: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)
    duration_seconds: Optional[float] = None

    @classmethod
    def updated(cls, revision: Optional[str] = None) -> "SyncOutcome":
        return cls(SyncStatus.UPDATED, revision=revision)

    @classmethod
    def no_change(cls, revision: Optional[str] = None) -> "SyncOutcome":
        return cls(SyncStatus.NO_CHANGE, revision=revision)

    @classmethod
    def skipped(cls, reason: str = SKIPPED_DISABLED) -> "SyncOutcome":
        return cls(SyncStatus.SKIPPED, reason=reason)

    @classmethod
    def failed(cls, reason: SyncFailure, error: Optional[str] = None) -> "SyncOutcome":
        return cls(SyncStatus.FAILED, reason=reason.value, error=error)

    @property
    def is_failure(self) -> bool:
        return self.status is SyncStatus.FAILED

    def with_duration(self, seconds: float) -> "SyncOutcome":
        return replace(self, duration_seconds=round(seconds, 3))

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "reason": self.reason,
            "error": self.error,
            "revision": self.revision,
            "timestamp": self.timestamp.isoformat(),
            "duration_seconds": self.duration_seconds,
        }
