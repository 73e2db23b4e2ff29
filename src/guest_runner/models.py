"""Data models for guest-runner."""

from __future__ import annotations

import posixpath
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime  # noqa: TC003 - pydantic resolves at runtime
from enum import Enum
from pathlib import Path  # noqa: TC003 - pydantic resolves at runtime

from pydantic import BaseModel, ConfigDict, Field, SecretStr

from guest_runner import constants


class ProcessState(str, Enum):
    """Guest process state as seen by the completion poller."""

    UNKNOWN = "unknown"
    RUNNING = "running"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"


class RunOutcome(str, Enum):
    """How a run that produced an output file ended."""

    COMPLETED = "completed"
    TIMED_OUT = "timed_out"


class GuestCredentials(BaseModel):
    """Guest OS login used for every guest-operations call."""

    model_config = ConfigDict(frozen=True)

    username: str = Field(min_length=1)
    password: SecretStr


class GuestFileAttributes(BaseModel):
    """POSIX ownership and permissions applied to the staged script."""

    model_config = ConfigDict(frozen=True)

    owner_id: int = Field(default=constants.DEFAULT_GUEST_OWNER_ID, ge=0)
    group_id: int = Field(default=constants.DEFAULT_GUEST_GROUP_ID, ge=0)
    permissions: int = Field(default=constants.DEFAULT_GUEST_PERMISSIONS, ge=0, le=0o7777)


class RunRequest(BaseModel):
    """Everything needed for one run. Immutable once the run starts."""

    model_config = ConfigDict(frozen=True)

    target: str = Field(min_length=1, description="VM name the script runs on")
    credentials: GuestCredentials
    script: bytes = Field(max_length=constants.MAX_SCRIPT_SIZE_BYTES)


class GuestProcessInfo(BaseModel):
    """One entry of a guest process listing."""

    pid: int
    end_time: datetime | None = None
    exit_code: int | None = None


class ProcessStatus(BaseModel):
    """Process state derived from a single poll (or from giving up)."""

    state: ProcessState
    exit_code: int | None = None

    @classmethod
    def from_listing(cls, processes: list[GuestProcessInfo]) -> ProcessStatus:
        """Derive status from a ListProcessStatus response for one pid.

        An empty listing means the guest does not (yet) know the pid.
        """
        if not processes:
            return cls(state=ProcessState.UNKNOWN)
        info = processes[0]
        if info.end_time is None:
            return cls(state=ProcessState.RUNNING)
        return cls(state=ProcessState.COMPLETED, exit_code=info.exit_code)


class CleanupResult(BaseModel):
    """Outcome of deleting one guest path. Failures are recorded, not raised."""

    path: str
    deleted: bool
    error: str | None = None


class TimingBreakdown(BaseModel):
    """Wall-clock phase timings of a run, in milliseconds."""

    stage_ms: int = Field(description="Credential check plus script upload")
    wait_ms: int = Field(description="Launch plus completion polling")
    retrieve_ms: int = Field(description="Output download")
    total_ms: int = Field(description="Whole run, excluding cleanup")


class RunResult(BaseModel):
    """Result of a run that produced a local output file."""

    outcome: RunOutcome
    exit_code: int | None = Field(
        default=None,
        description="Exit code the guest reports for the wrapper shell (None when timed out)",
    )
    script_exit_code: int | None = Field(
        default=None,
        description="Script's own exit code from the trailing EXIT:<code> line (None if absent)",
    )
    pid: int
    output_path: Path
    uploaded_bytes: int
    cleanup: list[CleanupResult] = Field(default_factory=list)
    timing: TimingBreakdown | None = None

    @property
    def timed_out(self) -> bool:
        return self.outcome is RunOutcome.TIMED_OUT


def parse_exit_marker(tail: bytes) -> int | None:
    """Exit code from the last "EXIT:<code>" line of output, if there is one.

    Only the final non-empty line counts: a script printing its own
    "EXIT:" lines earlier in the output does not affect the result.
    """
    lines = tail.rstrip(b"\r\n").splitlines()
    if not lines:
        return None
    prefix = constants.EXIT_MARKER_PREFIX.encode()
    last = lines[-1].strip()
    if not last.startswith(prefix):
        return None
    try:
        return int(last[len(prefix) :])
    except ValueError:
        return None


_suffix_lock = threading.Lock()
_last_suffix = 0


def unique_suffix() -> str:
    """Return a per-process unique, strictly increasing run suffix.

    Based on time.time_ns(); when the clock does not advance between calls
    the previous value is bumped by one, so suffixes never repeat.
    """
    global _last_suffix  # noqa: PLW0603
    with _suffix_lock:
        value = max(time.time_ns(), _last_suffix + 1)
        _last_suffix = value
    return str(value)


@dataclass
class RunContext:
    """Per-run bookkeeping owned by the runner and discarded after cleanup.

    Attributes:
        suffix: Unique run suffix shared by both guest paths
        script_path: Guest path of the staged script
        output_path: Guest path the launched shell writes into
        pid: Guest process id once launched
        deadline: Event-loop time at which polling gives up
        created_paths: Guest paths that may exist and need cleanup
    """

    suffix: str
    script_path: str
    output_path: str
    pid: int | None = None
    deadline: float | None = None
    created_paths: list[str] = field(default_factory=list)

    @classmethod
    def create(cls, guest_tmp_dir: str = constants.DEFAULT_GUEST_TMP_DIR) -> RunContext:
        suffix = unique_suffix()
        return cls(
            suffix=suffix,
            script_path=posixpath.join(
                guest_tmp_dir, f"{constants.GUEST_SCRIPT_PREFIX}{suffix}{constants.GUEST_SCRIPT_SUFFIX}"
            ),
            output_path=posixpath.join(
                guest_tmp_dir, f"{constants.GUEST_OUTPUT_PREFIX}{suffix}{constants.GUEST_OUTPUT_SUFFIX}"
            ),
        )

    def track(self, path: str) -> None:
        """Record a guest path for cleanup (once)."""
        if path not in self.created_paths:
            self.created_paths.append(path)
